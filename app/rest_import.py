"""Bulk import of REST queries from OpenAPI 3 and Swagger 2 documents."""

from __future__ import annotations

import json
import logging
import re
from typing import Any, Callable

import yaml

from app.stores import StoreError
from quarry.doc_ids import generate_query_id
from quarry.revisions import DocumentEncodingError

logger = logging.getLogger("quarry.import")

_METHOD_VERBS = {
    "get": "read",
    "post": "create",
    "put": "update",
    "patch": "patch",
    "delete": "delete",
}
_PATH_PARAM_RE = re.compile(r"\{([^}/]+)\}")


class ImportSourceError(ValueError):
    pass


def _parse(data: Any) -> dict:
    if isinstance(data, dict):
        return data
    if not isinstance(data, str) or not data.strip():
        raise ImportSourceError("Import data must be a JSON or YAML document")
    try:
        parsed = json.loads(data)
    except ValueError:
        try:
            parsed = yaml.safe_load(data)
        except yaml.YAMLError as exc:
            raise ImportSourceError(f"Import data could not be parsed: {exc}") from exc
    if not isinstance(parsed, dict):
        raise ImportSourceError("Import data must be a JSON or YAML object")
    return parsed


def _example(schema: Any) -> Any:
    if not isinstance(schema, dict):
        return None
    if "example" in schema:
        return schema["example"]
    if schema.get("type") == "object" or "properties" in schema:
        return {name: _example(prop) for name, prop in (schema.get("properties") or {}).items()}
    if schema.get("type") == "array":
        item = _example(schema.get("items"))
        return [item] if item is not None else []
    return schema.get("default")


class RestImporter:
    def __init__(self, data: Any) -> None:
        self.data = data
        self.document: dict | None = None
        self.kind: str | None = None

    def init(self) -> None:
        document = _parse(self.data)
        if str(document.get("openapi", "")).startswith("3"):
            self.kind = "openapi3"
        elif str(document.get("swagger", "")).startswith("2"):
            self.kind = "swagger2"
        else:
            raise ImportSourceError("Only OpenAPI 3 and Swagger 2 documents can be imported")
        if not isinstance(document.get("paths"), dict):
            raise ImportSourceError("Import document has no paths")
        self.document = document

    def _require(self) -> dict:
        if self.document is None:
            raise ImportSourceError("Importer has not been initialised")
        return self.document

    def get_info(self) -> dict:
        document = self._require()
        name = (document.get("info") or {}).get("title") or "REST API"
        if self.kind == "openapi3":
            servers = document.get("servers") or []
            url = servers[0].get("url") if servers and isinstance(servers[0], dict) else ""
        else:
            schemes = document.get("schemes") or ["https"]
            host = document.get("host") or ""
            url = f"{schemes[0]}://{host}{document.get('basePath') or ''}" if host else ""
        return {"url": url or "", "name": name}

    def _request_body(self, operation: dict) -> str:
        if self.kind == "openapi3":
            content = (operation.get("requestBody") or {}).get("content") or {}
            media = content.get("application/json") or next(iter(content.values()), None)
            example = None
            if isinstance(media, dict):
                example = media.get("example", _example(media.get("schema")))
        else:
            body_params = [p for p in operation.get("parameters") or [] if p.get("in") == "body"]
            example = _example(body_params[0].get("schema")) if body_params else None
        return json.dumps(example, indent=2) if example is not None else ""

    def _queries(self, datasource_id: str) -> list[dict]:
        document = self._require()
        queries = []
        for path, item in document["paths"].items():
            if not isinstance(item, dict):
                continue
            shared = [p for p in item.get("parameters") or [] if isinstance(p, dict)]
            for method, operation in item.items():
                verb = _METHOD_VERBS.get(method.lower())
                if verb is None or not isinstance(operation, dict):
                    continue
                params = shared + [p for p in operation.get("parameters") or [] if isinstance(p, dict)]
                query_params = [p["name"] for p in params if p.get("in") == "query" and p.get("name")]
                header_params = [p["name"] for p in params if p.get("in") == "header" and p.get("name")]
                declared = [p for p in params if p.get("in") in ("path", "query", "header") and p.get("name")]
                queries.append(
                    {
                        "datasourceId": datasource_id,
                        "name": operation.get("operationId") or operation.get("summary") or f"{method.upper()} {path}",
                        "queryVerb": verb,
                        "fields": {
                            "path": _PATH_PARAM_RE.sub(r"{{ \1 }}", path),
                            "queryString": "&".join(f"{name}={{{{ {name} }}}}" for name in query_params),
                            "headers": {name: f"{{{{ {name} }}}}" for name in header_params},
                            "requestBody": self._request_body(operation),
                        },
                        "parameters": [
                            {"name": p["name"], "default": (p.get("schema") or {}).get("default", p.get("default", ""))}
                            for p in declared
                        ],
                        "transformer": "return data",
                        "schema": {},
                    }
                )
        return queries

    def import_queries(self, store, app_id: str, datasource_id: str, emit: Callable | None = None) -> dict:
        """Save one query per operation; failures are reported per operation index."""
        saved: list[dict] = []
        errors: dict[str, str] = {}
        for idx, query in enumerate(self._queries(datasource_id)):
            query["_id"] = generate_query_id(datasource_id)
            try:
                response = store.put(app_id, query)
            except (StoreError, DocumentEncodingError) as exc:
                errors[str(idx)] = str(exc)
                continue
            query["_rev"] = response["rev"]
            saved.append(query)
        logger.info(
            "queries_imported app_id=%s datasource_id=%s count=%s errors=%s",
            app_id,
            datasource_id,
            len(saved),
            len(errors),
        )
        if emit is not None:
            emit("query.imported", {"datasource_id": datasource_id, "count": len(saved), "source": self.kind})
        return {"queries": saved, "errors": errors}
