"""In-memory document store for per-application databases."""

from __future__ import annotations

import copy
import threading
from datetime import datetime, timezone
from typing import Dict, List

from quarry.revisions import next_revision


def _now() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


class StoreError(RuntimeError):
    pass


class DocumentNotFoundError(StoreError):
    def __init__(self, app_id: str, doc_id: str) -> None:
        super().__init__(f"Document {doc_id} not found in {app_id}")
        self.app_id = app_id
        self.doc_id = doc_id


class DocumentConflictError(StoreError):
    def __init__(self, app_id: str, doc_id: str) -> None:
        super().__init__(f"Document update conflict for {doc_id}")
        self.app_id = app_id
        self.doc_id = doc_id


def check_revision(app_id: str, doc_id: str, stored: dict | None, rev: str | None) -> None:
    """Reject writes whose revision does not match the stored one."""
    if stored is None:
        if rev:
            raise DocumentConflictError(app_id, doc_id)
        return
    if rev != stored.get("_rev"):
        raise DocumentConflictError(app_id, doc_id)


class MemoryDocumentStore:
    def __init__(self) -> None:
        self._dbs: Dict[str, Dict[str, dict]] = {}
        self._lock = threading.Lock()

    def get(self, app_id: str, doc_id: str) -> dict:
        doc = self._dbs.get(app_id, {}).get(doc_id)
        if doc is None:
            raise DocumentNotFoundError(app_id, doc_id)
        return copy.deepcopy(doc)

    def put(self, app_id: str, doc: dict) -> dict:
        doc_id = doc.get("_id")
        if not isinstance(doc_id, str) or not doc_id:
            raise StoreError("Document _id is required")
        with self._lock:
            db = self._dbs.setdefault(app_id, {})
            stored = db.get(doc_id)
            check_revision(app_id, doc_id, stored, doc.get("_rev"))
            record = copy.deepcopy(doc)
            record["_rev"] = next_revision(doc.get("_rev"), record)
            db[doc_id] = record
        return {"ok": True, "id": doc_id, "rev": record["_rev"]}

    def remove(self, app_id: str, doc_id: str, rev: str | None) -> dict:
        with self._lock:
            db = self._dbs.get(app_id, {})
            stored = db.get(doc_id)
            if stored is None:
                raise DocumentNotFoundError(app_id, doc_id)
            check_revision(app_id, doc_id, stored, rev)
            del db[doc_id]
        return {"ok": True, "id": doc_id}

    def all_docs(self, app_id: str, prefix: str | None = None) -> List[dict]:
        db = self._dbs.get(app_id, {})
        items = [
            copy.deepcopy(doc)
            for doc_id, doc in sorted(db.items())
            if prefix is None or doc_id.startswith(prefix)
        ]
        return items

    def exists_db(self, app_id: str) -> bool:
        return app_id in self._dbs

    def list_dbs(self) -> List[str]:
        return sorted(self._dbs.keys())

    def copy_db(self, source_app_id: str, target_app_id: str) -> int:
        """Replace the target database with a copy of the source database."""
        with self._lock:
            source = self._dbs.get(source_app_id)
            if source is None:
                raise StoreError(f"Database {source_app_id} does not exist")
            self._dbs[target_app_id] = copy.deepcopy(source)
            return len(source)

    def drop_db(self, app_id: str) -> bool:
        with self._lock:
            return self._dbs.pop(app_id, None) is not None
