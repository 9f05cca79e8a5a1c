"""Explicit per-request context handed to every handler."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict

from starlette.requests import Request

from quarry.doc_ids import is_dev_app_id, is_prod_app_id

APP_ID_HEADER = "x-quarry-app-id"


@dataclass(frozen=True)
class RequestContext:
    app_id: str | None
    cookies: Dict[str, str] = field(default_factory=dict)
    trace_id: str | None = None

    @property
    def is_production(self) -> bool:
        return is_prod_app_id(self.app_id)

    @property
    def is_development(self) -> bool:
        return is_dev_app_id(self.app_id)


def context_from_request(request: Request) -> RequestContext:
    app_id = request.headers.get(APP_ID_HEADER) or request.query_params.get("appId") or None
    return RequestContext(
        app_id=app_id.strip() if isinstance(app_id, str) else None,
        cookies=dict(request.cookies),
        trace_id=request.headers.get("x-request-id"),
    )
