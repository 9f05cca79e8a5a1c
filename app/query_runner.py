"""Query runner: executes a query against its datasource off the event loop.

Each run is dispatched to a worker thread and bounded by a timeout. The
runner resolves ``{{ name }}`` bindings in the query fields, calls the
integration for the datasource's source type, applies the transformer and
reports ``{rows, keys, info, extra, pagination}``.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import re
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any, Dict, List

import boto3
import httpx
import psycopg2
import psycopg2.extras
from botocore.exceptions import BotoCoreError, ClientError

from app.datasources import (
    Datasource,
    PostgresConfig,
    RestConfig,
    S3Config,
    UnsupportedDatasourceError,
    parse_datasource,
)
from app.template_render import TransformerError, apply_transformer, render_fields

logger = logging.getLogger("quarry.runner")

QUERY_TIMEOUT_MS = int(os.getenv("QUARRY_QUERY_TIMEOUT_MS", "10000"))
QUERY_WORKERS = int(os.getenv("QUARRY_QUERY_WORKERS", "4"))

VERB_CREATE = "create"
VERB_READ = "read"
VERB_UPDATE = "update"
VERB_DELETE = "delete"


class QueryRunError(Exception):
    def __init__(self, code: str, message: str) -> None:
        super().__init__(message)
        self.code = code
        self.message = message

    def __str__(self) -> str:  # pragma: no cover - simple formatting
        return self.message


class QueryTimeoutError(QueryRunError):
    def __init__(self, timeout_ms: int) -> None:
        super().__init__("QUERY_TIMEOUT", f"Query did not finish within {timeout_ms}ms")


@dataclass
class QueryJob:
    app_id: str
    datasource: dict
    query_verb: str
    fields: Dict[str, Any] = field(default_factory=dict)
    parameters: Dict[str, Any] = field(default_factory=dict)
    transformer: str | None = None
    query_id: str | None = None
    pagination: Dict[str, Any] | None = None


def _rows(data: Any) -> List[dict]:
    if data is None:
        return []
    if isinstance(data, list):
        return [item if isinstance(item, dict) else {"value": item} for item in data]
    if isinstance(data, dict):
        return [data]
    return [{"value": data}]


def collect_keys(rows: List[dict]) -> List[str]:
    keys: List[str] = []
    seen = set()
    for row in rows:
        for key in row.keys():
            if key not in seen:
                seen.add(key)
                keys.append(key)
    return keys


class RestIntegration:
    _METHODS = {
        VERB_CREATE: "POST",
        VERB_READ: "GET",
        VERB_UPDATE: "PUT",
        "patch": "PATCH",
        VERB_DELETE: "DELETE",
    }

    def __init__(self, transport: httpx.BaseTransport | None = None, timeout_s: float = 30.0) -> None:
        self._transport = transport
        self._timeout_s = timeout_s

    def prepare_fields(self, fields: dict, parameters: dict) -> dict:
        return render_fields(fields, parameters)

    def _url(self, config: RestConfig, fields: dict) -> str:
        path = str(fields.get("path") or "")
        if path.startswith("http://") or path.startswith("https://"):
            url = path
        else:
            base = config.url.rstrip("/")
            url = f"{base}/{path.lstrip('/')}" if path else base
        query_string = str(fields.get("queryString") or "").lstrip("?")
        if query_string:
            url = f"{url}{'&' if '?' in url else '?'}{query_string}"
        return url

    def _pagination_params(self, fields: dict, pagination: dict | None) -> dict:
        settings = fields.get("pagination") or {}
        if not pagination or not settings:
            return {}
        params = {}
        page_param = settings.get("pageParam")
        size_param = settings.get("sizeParam")
        page = pagination.get("page")
        if page_param and page not in (None, ""):
            params[page_param] = page
        if size_param and pagination.get("limit"):
            params[size_param] = pagination["limit"]
        return params

    def _body(self, fields: dict) -> Any:
        body = fields.get("requestBody")
        if isinstance(body, str):
            text = body.strip()
            if not text:
                return None
            try:
                return json.loads(text)
            except ValueError:
                return text
        return body

    def execute(self, job: QueryJob, datasource: Datasource, fields: dict) -> dict:
        config: RestConfig = datasource.config
        method = self._METHODS.get(job.query_verb)
        if method is None:
            raise QueryRunError("VERB_UNSUPPORTED", f"REST queries do not support verb {job.query_verb}")
        headers = {**config.default_headers, **{str(k): str(v) for k, v in (fields.get("headers") or {}).items()}}
        body = self._body(fields)
        request_kwargs: dict = {"headers": headers, "params": self._pagination_params(fields, job.pagination)}
        if body is not None and method in ("POST", "PUT", "PATCH"):
            if isinstance(body, (dict, list)):
                request_kwargs["json"] = body
            else:
                request_kwargs["content"] = str(body)
        started = time.perf_counter()
        with httpx.Client(timeout=self._timeout_s, transport=self._transport) as client:
            try:
                res = client.request(method, self._url(config, fields), **request_kwargs)
            except httpx.HTTPError as exc:
                raise QueryRunError("REST_REQUEST_FAILED", f"Request failed: {exc}") from exc
        elapsed_ms = round((time.perf_counter() - started) * 1000)
        if res.status_code >= 400:
            raise QueryRunError("REST_RESPONSE_ERROR", f"Request failed with status {res.status_code}: {res.text[:500]}")
        content_type = res.headers.get("content-type", "")
        data: Any = res.text
        if "json" in content_type:
            try:
                data = res.json()
            except ValueError:
                data = res.text
        return {
            "data": data,
            "info": {"code": res.status_code, "size": f"{len(res.content)}B", "time": f"{elapsed_ms}ms"},
            "extra": {"raw": res.text, "headers": dict(res.headers)},
            "pagination": self._response_pagination(fields, job.pagination, data),
        }

    def _response_pagination(self, fields: dict, pagination: dict | None, data: Any) -> dict | None:
        settings = fields.get("pagination") or {}
        if not settings:
            return None
        if settings.get("type") == "cursor":
            cursor = None
            response_param = settings.get("responseParam")
            if response_param and isinstance(data, dict):
                cursor = data.get(response_param)
            return {"cursor": cursor}
        return {"page": (pagination or {}).get("page")}


class S3Integration:
    def prepare_fields(self, fields: dict, parameters: dict) -> dict:
        return render_fields(fields, parameters)

    def _client(self, config: S3Config):
        return boto3.client(
            "s3",
            region_name=config.region,
            aws_access_key_id=config.access_key_id,
            aws_secret_access_key=config.secret_access_key,
            endpoint_url=config.endpoint,
        )

    def execute(self, job: QueryJob, datasource: Datasource, fields: dict) -> dict:
        bucket = fields.get("bucket")
        if not bucket:
            raise QueryRunError("S3_BUCKET_REQUIRED", "bucket is required")
        client = self._client(datasource.config)
        try:
            if job.query_verb == VERB_READ:
                kwargs = {"Bucket": bucket}
                if fields.get("prefix"):
                    kwargs["Prefix"] = fields["prefix"]
                if fields.get("maxKeys"):
                    kwargs["MaxKeys"] = int(fields["maxKeys"])
                response = client.list_objects_v2(**kwargs)
                data = [
                    {
                        "Key": item.get("Key"),
                        "Size": item.get("Size"),
                        "LastModified": str(item.get("LastModified")),
                        "ETag": item.get("ETag"),
                    }
                    for item in response.get("Contents", [])
                ]
            elif job.query_verb == VERB_DELETE:
                if not fields.get("key"):
                    raise QueryRunError("S3_KEY_REQUIRED", "key is required")
                client.delete_object(Bucket=bucket, Key=fields["key"])
                data = [{"deleted": True, "key": fields["key"]}]
            else:
                raise QueryRunError("VERB_UNSUPPORTED", f"S3 queries do not support verb {job.query_verb}")
        except (BotoCoreError, ClientError) as exc:
            raise QueryRunError("S3_REQUEST_FAILED", str(exc)) from exc
        return {"data": data, "info": {"bucket": bucket}, "extra": {}}


_BINDING_RE = re.compile(r"\{\{\s*([A-Za-z_][A-Za-z0-9_]*)\s*\}\}")


class PostgresIntegration:
    def __init__(self, connect_timeout_s: int = 10) -> None:
        self._connect_timeout_s = connect_timeout_s

    def prepare_fields(self, fields: dict, parameters: dict) -> dict:
        # Bindings become driver placeholders; values never reach the SQL text.
        sql = str(fields.get("sql") or "").replace("%", "%%")
        return {**fields, "sql": _BINDING_RE.sub(r"%(\1)s", sql)}

    def execute(self, job: QueryJob, datasource: Datasource, fields: dict) -> dict:
        config: PostgresConfig = datasource.config
        sql = fields.get("sql")
        if not sql:
            raise QueryRunError("SQL_REQUIRED", "sql is required")
        params = {name: job.parameters.get(name) for name in _BINDING_RE.findall(str(job.fields.get("sql") or ""))}
        try:
            conn = psycopg2.connect(
                host=config.host,
                port=config.port,
                dbname=config.database,
                user=config.user,
                password=config.password,
                sslmode="require" if config.ssl else "prefer",
                connect_timeout=self._connect_timeout_s,
            )
        except psycopg2.Error as exc:
            raise QueryRunError("POSTGRES_CONNECT_FAILED", str(exc).strip()) from exc
        try:
            with conn:
                with conn.cursor(cursor_factory=psycopg2.extras.RealDictCursor) as cur:
                    cur.execute(sql, params)
                    if cur.description is not None:
                        data = [dict(row) for row in cur.fetchall()]
                        keys = [col.name for col in cur.description]
                    else:
                        data = [{"rowCount": cur.rowcount}]
                        keys = ["rowCount"]
        except psycopg2.Error as exc:
            raise QueryRunError("POSTGRES_QUERY_FAILED", str(exc).strip()) from exc
        finally:
            conn.close()
        return {"data": json.loads(json.dumps(data, default=str)), "keys": keys, "info": {}, "extra": {}}


class QueryRunner:
    def __init__(
        self,
        timeout_ms: int = QUERY_TIMEOUT_MS,
        max_workers: int = QUERY_WORKERS,
        integrations: dict | None = None,
    ) -> None:
        self.timeout_ms = timeout_ms
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="quarry-query")
        self._integrations = integrations or {
            RestConfig: RestIntegration(),
            S3Config: S3Integration(),
            PostgresConfig: PostgresIntegration(),
        }

    def _integration_for(self, datasource: Datasource):
        integration = self._integrations.get(type(datasource.config))
        if integration is None:
            raise QueryRunError("DATASOURCE_UNSUPPORTED", f"No integration for source {datasource.source}")
        return integration

    def _execute(self, job: QueryJob, datasource: Datasource) -> dict:
        integration = self._integration_for(datasource)
        fields = integration.prepare_fields(job.fields or {}, job.parameters or {})
        raw = integration.execute(job, datasource, fields)
        try:
            data = apply_transformer(job.transformer, raw.get("data"), job.parameters)
        except TransformerError as exc:
            raise QueryRunError("TRANSFORMER_FAILED", str(exc)) from exc
        rows = _rows(data)
        keys = raw.get("keys") if job.transformer in (None, "") and raw.get("keys") else collect_keys(rows)
        return {
            "rows": rows,
            "keys": keys,
            "info": raw.get("info") or {},
            "extra": raw.get("extra") or {},
            "pagination": raw.get("pagination"),
        }

    async def run(self, job: QueryJob) -> dict:
        try:
            datasource = parse_datasource(job.datasource)
        except UnsupportedDatasourceError as exc:
            raise QueryRunError("DATASOURCE_UNSUPPORTED", str(exc)) from exc
        loop = asyncio.get_running_loop()
        started = time.perf_counter()
        future = loop.run_in_executor(self._executor, self._execute, job, datasource)
        try:
            result = await asyncio.wait_for(future, timeout=self.timeout_ms / 1000)
        except asyncio.TimeoutError as exc:
            logger.warning(
                "query_timeout app_id=%s query_id=%s timeout_ms=%s", job.app_id, job.query_id, self.timeout_ms
            )
            raise QueryTimeoutError(self.timeout_ms) from exc
        except QueryRunError:
            raise
        except Exception as exc:
            logger.warning("query_failed app_id=%s query_id=%s error=%s", job.app_id, job.query_id, exc)
            raise QueryRunError("QUERY_FAILED", str(exc)) from exc
        logger.info(
            "query_run app_id=%s query_id=%s source=%s verb=%s rows=%s ms=%.1f",
            job.app_id,
            job.query_id,
            datasource.source,
            job.query_verb,
            len(result["rows"]),
            (time.perf_counter() - started) * 1000,
        )
        return result

    def shutdown(self) -> None:
        self._executor.shutdown(wait=False)
