"""Postgres-backed document store (USE_DB=1)."""

from __future__ import annotations

import json
import logging
from typing import List

from app.db import execute, fetch_all, fetch_one, get_conn
from app.stores import DocumentNotFoundError, StoreError, check_revision
from quarry.revisions import next_revision

logger = logging.getLogger("quarry.db")

_SCHEMA_SQL = """
create table if not exists app_documents (
  app_id text not null,
  doc_id text not null,
  rev text not null,
  doc jsonb not null,
  updated_at timestamptz not null default now(),
  primary key (app_id, doc_id)
)
"""


def _json_dumps(value: object) -> str:
    return json.dumps(value, default=str)


def _escape_like(prefix: str) -> str:
    return prefix.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


class DbDocumentStore:
    def __init__(self) -> None:
        self._schema_ready = False

    def _ensure_schema(self) -> None:
        if self._schema_ready:
            return
        # own transaction; the flag is only set once the table is committed
        with get_conn() as conn:
            execute(conn, _SCHEMA_SQL, query_name="app_documents.create_table")
        self._schema_ready = True

    def get(self, app_id: str, doc_id: str) -> dict:
        self._ensure_schema()
        with get_conn() as conn:
            row = fetch_one(
                conn,
                "select doc, rev from app_documents where app_id=%s and doc_id=%s",
                [app_id, doc_id],
                query_name="app_documents.get",
            )
        if not row:
            raise DocumentNotFoundError(app_id, doc_id)
        doc = dict(row["doc"])
        doc["_id"] = doc_id
        doc["_rev"] = row["rev"]
        return doc

    def put(self, app_id: str, doc: dict) -> dict:
        doc_id = doc.get("_id")
        if not isinstance(doc_id, str) or not doc_id:
            raise StoreError("Document _id is required")
        self._ensure_schema()
        with get_conn() as conn:
            stored = fetch_one(
                conn,
                "select rev from app_documents where app_id=%s and doc_id=%s for update",
                [app_id, doc_id],
                query_name="app_documents.lock",
            )
            check_revision(app_id, doc_id, {"_rev": stored["rev"]} if stored else None, doc.get("_rev"))
            body = {key: val for key, val in doc.items() if key not in ("_id", "_rev")}
            rev = next_revision(doc.get("_rev"), doc)
            execute(
                conn,
                """
                insert into app_documents (app_id, doc_id, rev, doc, updated_at)
                values (%s, %s, %s, %s::jsonb, now())
                on conflict (app_id, doc_id)
                do update set rev=excluded.rev, doc=excluded.doc, updated_at=excluded.updated_at
                """,
                [app_id, doc_id, rev, _json_dumps(body)],
                query_name="app_documents.upsert",
            )
        return {"ok": True, "id": doc_id, "rev": rev}

    def remove(self, app_id: str, doc_id: str, rev: str | None) -> dict:
        self._ensure_schema()
        with get_conn() as conn:
            stored = fetch_one(
                conn,
                "select rev from app_documents where app_id=%s and doc_id=%s for update",
                [app_id, doc_id],
                query_name="app_documents.lock",
            )
            if not stored:
                raise DocumentNotFoundError(app_id, doc_id)
            check_revision(app_id, doc_id, {"_rev": stored["rev"]}, rev)
            execute(
                conn,
                "delete from app_documents where app_id=%s and doc_id=%s",
                [app_id, doc_id],
                query_name="app_documents.delete",
            )
        return {"ok": True, "id": doc_id}

    def all_docs(self, app_id: str, prefix: str | None = None) -> List[dict]:
        self._ensure_schema()
        with get_conn() as conn:
            if prefix:
                rows = fetch_all(
                    conn,
                    """
                    select doc_id, rev, doc from app_documents
                    where app_id=%s and doc_id like %s escape '\\'
                    order by doc_id
                    """,
                    [app_id, _escape_like(prefix) + "%"],
                    query_name="app_documents.list_prefix",
                )
            else:
                rows = fetch_all(
                    conn,
                    "select doc_id, rev, doc from app_documents where app_id=%s order by doc_id",
                    [app_id],
                    query_name="app_documents.list",
                )
        items = []
        for row in rows:
            doc = dict(row["doc"])
            doc["_id"] = row["doc_id"]
            doc["_rev"] = row["rev"]
            items.append(doc)
        return items

    def exists_db(self, app_id: str) -> bool:
        self._ensure_schema()
        with get_conn() as conn:
            row = fetch_one(
                conn,
                "select 1 as found from app_documents where app_id=%s limit 1",
                [app_id],
                query_name="app_documents.exists",
            )
        return bool(row)

    def list_dbs(self) -> List[str]:
        self._ensure_schema()
        with get_conn() as conn:
            rows = fetch_all(
                conn,
                "select distinct app_id from app_documents order by app_id",
                query_name="app_documents.list_dbs",
            )
        return [row["app_id"] for row in rows]

    def copy_db(self, source_app_id: str, target_app_id: str) -> int:
        self._ensure_schema()
        with get_conn() as conn:
            execute(conn, "delete from app_documents where app_id=%s", [target_app_id], query_name="app_documents.clear")
            copied = execute(
                conn,
                """
                insert into app_documents (app_id, doc_id, rev, doc, updated_at)
                select %s, doc_id, rev, doc, now() from app_documents where app_id=%s
                """,
                [target_app_id, source_app_id],
                query_name="app_documents.copy",
            )
            if not copied:
                raise StoreError(f"Database {source_app_id} does not exist")
        logger.info("db_copied source=%s target=%s docs=%s", source_app_id, target_app_id, copied)
        return copied

    def drop_db(self, app_id: str) -> bool:
        self._ensure_schema()
        with get_conn() as conn:
            removed = execute(conn, "delete from app_documents where app_id=%s", [app_id], query_name="app_documents.drop")
        return removed > 0
