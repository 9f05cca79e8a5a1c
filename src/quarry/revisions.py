"""Revision tokens for stored documents.

A revision token has the form ``<generation>-<digest>``: the generation counts
writes and the digest is the MD5 of the document body serialized as canonical
JSON (sorted keys, no whitespace, bookkeeping fields excluded).
"""

from __future__ import annotations

import hashlib
import json
import math
from typing import Any


class DocumentEncodingError(TypeError):
    """Raised when a document holds values that are not plain JSON."""


def _check(value: Any, path: str) -> None:
    if value is None or isinstance(value, (str, bool, int)):
        return
    if isinstance(value, float):
        if not math.isfinite(value):
            raise DocumentEncodingError(f"Non-finite number at {path}")
        return
    if isinstance(value, list):
        for idx, item in enumerate(value):
            _check(item, f"{path}[{idx}]")
        return
    if isinstance(value, dict):
        for key, item in value.items():
            if not isinstance(key, str):
                raise DocumentEncodingError(f"Non-string key at {path}")
            _check(item, f"{path}.{key}")
        return
    raise DocumentEncodingError(f"Unsupported value at {path}: {type(value).__name__}")


def canonical_dumps(value: Any) -> str:
    _check(value, "$")
    return json.dumps(value, sort_keys=True, ensure_ascii=False, separators=(",", ":"), allow_nan=False)


def revision_number(rev: str | None) -> int:
    if not isinstance(rev, str) or "-" not in rev:
        return 0
    head = rev.split("-", 1)[0]
    return int(head) if head.isdigit() else 0


def next_revision(current: str | None, doc: dict) -> str:
    body = {key: val for key, val in doc.items() if key not in ("_id", "_rev")}
    digest = hashlib.md5(canonical_dumps(body).encode("utf-8")).hexdigest()
    return f"{revision_number(current) + 1}-{digest}"
