"""FastAPI app for the Quarry builder server."""

from __future__ import annotations

import os
import re
import sys
from pathlib import Path

from fastapi import FastAPI, File, Request, UploadFile
from fastapi.encoders import jsonable_encoder
from fastapi.responses import FileResponse, HTMLResponse, JSONResponse, Response

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


def _load_env_file(path: Path) -> None:
    if not path.exists():
        return
    for line in path.read_text(encoding="utf-8").splitlines():
        line = line.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, value = line.split("=", 1)
        key = key.strip()
        value = value.strip().strip('"').strip("'")
        if key and key not in os.environ:
            os.environ[key] = value


_load_env_file(ROOT / "app" / ".env")

import asyncio
import logging
import time

import anyio.to_thread

from app.attachments import (
    SignedUrlError,
    StorageError,
    apps_bucket,
    attachment_url,
    get_signed_upload_url,
    prepare_upload,
    read_bytes,
)
from app.context import RequestContext, context_from_request
from app.datasources import UnsupportedDatasourceError, list_datasources, redact_datasource, save_datasource
from app.db import get_db_stats, reset_db_stats
from app.deployments import (
    AppNotFoundError,
    app_summary,
    create_app,
    find_published_by_url,
    list_apps,
    publish,
    unpublish,
)
from app.dynamic_variables import variable_cache
from app.queries import QueryDispatcher, destroy_query, fetch_queries, find_query, save_query
from app.query_runner import QueryRunError, QueryRunner
from app.quotas import QueryQuota, QuotaExceededError
from app.rest_import import ImportSourceError, RestImporter
from app.static_serve import (
    DESIGN_UI_COOKIE,
    BundleDownloadError,
    beta_cookie_name,
    builder_root,
    client_library_file,
    client_library_url,
    ensure_beta_bundle,
    is_builder_asset,
    resolve_static,
)
from app.stores import DocumentConflictError, DocumentNotFoundError, MemoryDocumentStore
from app.stores_db import DbDocumentStore
from app.template_render import render_app_document, render_app_shell
from event_bus import EventBus, make_event
from outbox import Outbox
from quarry.doc_ids import APP_METADATA_ID, is_dev_app_id


app = FastAPI(title="Quarry")
logger = logging.getLogger("quarry")
logging.basicConfig(level=logging.INFO)

APP_ENV = os.getenv("APP_ENV", os.getenv("ENV", "dev")).strip().lower() or "dev"
IS_TEST = APP_ENV == "test"
IS_PROD = APP_ENV == "prod"
USE_DB = os.getenv("USE_DB", "").strip() == "1"
REQ_SLOW_MS = float(os.getenv("QUARRY_REQ_SLOW_MS", "250"))
BETA_UI_URL = os.getenv("QUARRY_BETA_UI_URL", "").strip() or None
_LOCAL_CORS_REGEX = re.compile(r"^http://(localhost|127\.0\.0\.1):\d+$")
_CORS_ORIGINS = {
    origin.strip().rstrip("/")
    for origin in os.getenv("QUARRY_CORS_ORIGINS", "").split(",")
    if origin.strip()
}

store = DbDocumentStore() if USE_DB else MemoryDocumentStore()
runner = QueryRunner()
quota = QueryQuota()
outbox = Outbox()
event_bus = EventBus(outbox)
dispatcher = QueryDispatcher(store, runner, quota, cache=variable_cache)
logger.info("quarry_started env=%s use_db=%s query_timeout_ms=%s", APP_ENV, USE_DB, runner.timeout_ms)


@app.middleware("http")
async def local_cors_middleware(request: Request, call_next):
    origin = request.headers.get("origin")
    if request.method == "OPTIONS":
        response = JSONResponse({}, status_code=200)
    else:
        response = await call_next(request)
    normalized_origin = origin.rstrip("/") if isinstance(origin, str) else origin
    if normalized_origin and (normalized_origin in _CORS_ORIGINS or _LOCAL_CORS_REGEX.match(normalized_origin)):
        response.headers.setdefault("Access-Control-Allow-Origin", origin)
        response.headers.setdefault("Access-Control-Allow-Credentials", "true")
        response.headers.setdefault("Access-Control-Allow-Headers", "*")
        response.headers.setdefault("Access-Control-Allow-Methods", "*")
        response.headers.setdefault("Vary", "Origin")
    return response


@app.middleware("http")
async def timing_middleware(request: Request, call_next):
    reset_db_stats()
    start = time.perf_counter()
    response = await call_next(request)
    total_ms = (time.perf_counter() - start) * 1000
    db_stats = get_db_stats()
    db_ms = db_stats.get("total_ms", 0.0)
    logger.info(
        "%s %s %s total_ms=%.1f db_ms=%.1f db_q=%s",
        request.method,
        request.url.path,
        response.status_code,
        total_ms,
        db_ms,
        db_stats.get("queries", 0),
    )
    if total_ms >= REQ_SLOW_MS:
        logger.warning(
            "slow_request method=%s path=%s total_ms=%.1f db_ms=%.1f status=%s",
            request.method,
            request.url.path,
            total_ms,
            db_ms,
            response.status_code,
        )
    if not IS_PROD:
        response.headers["X-Req-MS"] = f"{total_ms:.1f}"
        response.headers["X-DB-MS"] = f"{db_ms:.1f}"
    return response


def _error_response(code: str, message: str, path: str | None = None, detail: dict | None = None, status: int = 400) -> JSONResponse:
    body = {
        "ok": False,
        "errors": [{"code": code, "message": message, "path": path, "detail": detail}],
        "warnings": [],
    }
    return JSONResponse(jsonable_encoder(body), status_code=status)


def _json(payload, status: int = 200, message: str | None = None) -> JSONResponse:
    headers = None
    if message:
        headers = {"X-Message": message.encode("latin-1", "replace").decode("latin-1")}
    return JSONResponse(jsonable_encoder(payload), status_code=status, headers=headers)


@app.exception_handler(DocumentNotFoundError)
async def not_found_handler(request: Request, exc: DocumentNotFoundError):
    return _error_response("DOCUMENT_NOT_FOUND", str(exc), detail={"id": exc.doc_id}, status=404)


@app.exception_handler(DocumentConflictError)
async def conflict_handler(request: Request, exc: DocumentConflictError):
    return _error_response("DOCUMENT_CONFLICT", str(exc), detail={"id": exc.doc_id}, status=409)


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    logger.exception("unhandled_error path=%s", request.url.path)
    return _error_response("INTERNAL_ERROR", "Unexpected server error", detail={"error": str(exc)}, status=500)


async def _safe_json(request: Request) -> dict:
    try:
        body = await request.json()
    except ValueError:
        return {}
    return body if isinstance(body, dict) else {}


def _resolve_context(request: Request) -> RequestContext | JSONResponse:
    ctx = context_from_request(request)
    if not ctx.app_id:
        return _error_response("APP_ID_REQUIRED", "An app id is required for this request", "x-quarry-app-id")
    return ctx


def _emit(ctx: RequestContext | None, name: str, payload: dict) -> None:
    try:
        event_bus.publish(
            make_event(name, payload, app_id=ctx.app_id if ctx else None, trace_id=ctx.trace_id if ctx else None)
        )
    except Exception as exc:
        logger.warning("event_emit_failed name=%s error=%s", name, exc)


def _emitter(ctx: RequestContext | None):
    return lambda name, payload: _emit(ctx, name, payload)


def _run_failed(exc: Exception) -> JSONResponse:
    if isinstance(exc, QuotaExceededError):
        return _error_response("QUOTA_EXCEEDED", str(exc), status=400)
    code = getattr(exc, "code", None) or "QUERY_RUN_FAILED"
    return _error_response("QUERY_RUN_FAILED", str(exc), detail={"reason": code}, status=400)


@app.get("/health")
async def health() -> dict:
    return {"ok": True}


# ---- Queries ----


@app.get("/api/queries")
async def list_queries(request: Request):
    ctx = _resolve_context(request)
    if isinstance(ctx, JSONResponse):
        return ctx
    return _json(fetch_queries(store, ctx))


@app.post("/api/queries/import")
async def import_queries(request: Request):
    ctx = _resolve_context(request)
    if isinstance(ctx, JSONResponse):
        return ctx
    body = await _safe_json(request)
    importer = RestImporter(body.get("data"))
    try:
        importer.init()
        if not body.get("datasourceId"):
            info = importer.get_info()
            datasource = save_datasource(
                store,
                ctx.app_id,
                {
                    "type": "datasource",
                    "source": "REST",
                    "config": {"url": info["url"], "defaultHeaders": []},
                    "name": info["name"],
                },
                emit=_emitter(ctx),
            )
            datasource_id = datasource["_id"]
        else:
            datasource_id = body["datasourceId"]
            store.get(ctx.app_id, datasource_id)
    except ImportSourceError as exc:
        return _error_response("IMPORT_INVALID", str(exc), "data")
    result = importer.import_queries(store, ctx.app_id, datasource_id, emit=_emitter(ctx))
    return _json({**result, "datasourceId": datasource_id})


@app.post("/api/queries/preview")
async def preview_query(request: Request):
    ctx = _resolve_context(request)
    if isinstance(ctx, JSONResponse):
        return ctx
    body = await _safe_json(request)
    try:
        result = await dispatcher.preview(ctx, body, _emitter(ctx))
    except (QueryRunError, QuotaExceededError) as exc:
        return _run_failed(exc)
    return _json(result)


@app.get("/api/queries/{query_id}")
async def get_query(query_id: str, request: Request):
    ctx = _resolve_context(request)
    if isinstance(ctx, JSONResponse):
        return ctx
    return _json(find_query(store, ctx, query_id))


@app.post("/api/queries")
async def save_query_route(request: Request):
    ctx = _resolve_context(request)
    if isinstance(ctx, JSONResponse):
        return ctx
    body = await _safe_json(request)
    if not body.get("datasourceId"):
        return _error_response("DATASOURCE_REQUIRED", "datasourceId is required", "datasourceId")
    query, message = save_query(store, ctx, body, _emitter(ctx))
    return _json(query, message=message)


@app.delete("/api/queries/{query_id}/{rev}")
async def delete_query(query_id: str, rev: str, request: Request):
    ctx = _resolve_context(request)
    if isinstance(ctx, JSONResponse):
        return ctx
    message = destroy_query(store, ctx, query_id, rev, _emitter(ctx), cache=variable_cache)
    return _json({"message": message}, message=message)


async def _execute(request: Request, query_id: str, rows_only: bool):
    ctx = _resolve_context(request)
    if isinstance(ctx, JSONResponse):
        return ctx
    body = await _safe_json(request)
    try:
        result = await dispatcher.execute(ctx, query_id, body, rows_only=rows_only)
    except (QueryRunError, QuotaExceededError) as exc:
        return _run_failed(exc)
    return _json(result)


@app.post("/api/queries/{query_id}")
async def execute_query_v1(query_id: str, request: Request):
    return await _execute(request, query_id, rows_only=True)


@app.post("/api/v2/queries/{query_id}")
async def execute_query_v2(query_id: str, request: Request):
    return await _execute(request, query_id, rows_only=False)


# ---- Datasources ----


@app.get("/api/datasources")
async def list_datasources_route(request: Request):
    ctx = _resolve_context(request)
    if isinstance(ctx, JSONResponse):
        return ctx
    return _json([redact_datasource(doc) for doc in list_datasources(store, ctx.app_id)])


@app.get("/api/datasources/{datasource_id}")
async def get_datasource(datasource_id: str, request: Request):
    ctx = _resolve_context(request)
    if isinstance(ctx, JSONResponse):
        return ctx
    return _json(redact_datasource(store.get(ctx.app_id, datasource_id)))


@app.post("/api/datasources")
async def save_datasource_route(request: Request):
    ctx = _resolve_context(request)
    if isinstance(ctx, JSONResponse):
        return ctx
    body = await _safe_json(request)
    datasource = body.get("datasource") if isinstance(body.get("datasource"), dict) else body
    try:
        saved = save_datasource(store, ctx.app_id, datasource, emit=_emitter(ctx))
    except UnsupportedDatasourceError as exc:
        return _error_response("DATASOURCE_UNSUPPORTED", str(exc), "source")
    return _json({"datasource": redact_datasource(saved)})


# ---- Attachments ----


@app.post("/api/attachments/upload")
async def upload_file(request: Request, file: list[UploadFile] = File(...)):
    ctx = _resolve_context(request)
    if isinstance(ctx, JSONResponse):
        return ctx

    async def _store(upload: UploadFile) -> dict:
        data = await upload.read()
        return await anyio.to_thread.run_sync(
            prepare_upload,
            ctx.app_id,
            upload.filename or "file",
            data,
            upload.content_type or "application/octet-stream",
        )

    try:
        stored = await asyncio.gather(*(_store(upload) for upload in file))
    except (StorageError, OSError) as exc:
        logger.warning("upload_failed app_id=%s error=%s", ctx.app_id, exc)
        return _error_response("UPLOAD_FAILED", str(exc), "file")
    return _json(
        [
            {
                "size": item["size"],
                "name": item["name"],
                "url": attachment_url(item["key"]),
                "extension": item["extension"],
                "key": item["key"],
            }
            for item in stored
        ]
    )


@app.post("/api/attachments/{datasource_id}/url")
async def signed_upload_url(datasource_id: str, request: Request):
    ctx = _resolve_context(request)
    if isinstance(ctx, JSONResponse):
        return ctx
    body = await _safe_json(request)
    try:
        datasource = store.get(ctx.app_id, datasource_id)
    except DocumentNotFoundError:
        datasource = None
    try:
        result = get_signed_upload_url(datasource, body.get("bucket"), body.get("key"))
    except SignedUrlError as exc:
        return _error_response("SIGNED_URL_FAILED", str(exc), "datasourceId")
    return _json(result)


@app.get("/files/{bucket}/{key:path}")
async def download_file(bucket: str, key: str):
    if bucket != apps_bucket():
        return _error_response("FILE_NOT_FOUND", "File not found", "key", status=404)
    try:
        data = await anyio.to_thread.run_sync(read_bytes, bucket, key)
    except FileNotFoundError:
        return _error_response("FILE_NOT_FOUND", "File not found", "key", status=404)
    return Response(content=data, media_type="application/octet-stream")


# ---- Builder and app serving ----


@app.post("/api/beta/{feature}")
async def toggle_beta_ui_feature(feature: str, request: Request):
    cookie_name = beta_cookie_name(feature)
    if request.cookies.get(cookie_name):
        response = _json({"message": f"{feature} disabled"})
        response.delete_cookie(cookie_name, path="/")
        return response
    try:
        await anyio.to_thread.run_sync(ensure_beta_bundle, BETA_UI_URL)
    except BundleDownloadError as exc:
        logger.warning("beta_bundle_failed feature=%s error=%s", feature, exc)
        return _error_response("BETA_UI_UNAVAILABLE", str(exc), "feature")
    response = _json({"message": f"{feature} enabled"})
    response.set_cookie(cookie_name, "1", path="/", httponly=True, samesite="lax")
    return response


@app.get("/builder")
@app.get("/builder/{file_path:path}")
async def serve_builder(request: Request, file_path: str = ""):
    root = builder_root(use_beta=bool(request.cookies.get(DESIGN_UI_COOKIE)))
    try:
        target = resolve_static(root, file_path)
    except FileNotFoundError:
        return _error_response("FILE_NOT_FOUND", "File not found", "path", status=404)
    if not is_builder_asset(file_path):
        _emit(None, "serve.served_builder", {"path": file_path or "index.html"})
    return FileResponse(target)


@app.get("/api/assets/client")
async def serve_client_library():
    path = client_library_file()
    if not path.is_file():
        return _error_response("FILE_NOT_FOUND", "Client library is not built", "client", status=404)
    return FileResponse(path, media_type="application/javascript")


def _serve_app(ctx: RequestContext):
    app_info = store.get(ctx.app_id, APP_METADATA_ID)
    app_id = app_info.get("appId") or ctx.app_id
    if not IS_TEST:
        shell = render_app_shell(
            title=app_info.get("name") or "",
            production=IS_PROD,
            app_id=app_id,
            client_lib_path=client_library_url(app_id, app_info.get("version"), IS_PROD),
        )
        response = HTMLResponse(render_app_document(shell, app_id))
    else:
        response = _json(app_info)
    payload = {"app_id": app_id, "name": app_info.get("name"), "version": app_info.get("version")}
    if is_dev_app_id(app_id):
        _emit(ctx, "serve.served_app_preview", payload)
    else:
        _emit(ctx, "serve.served_app", payload)
    return response


@app.get("/app/{app_url}")
async def serve_published_app(app_url: str, request: Request):
    try:
        app_id = find_published_by_url(store, app_url)
    except AppNotFoundError as exc:
        return _error_response("APP_NOT_FOUND", str(exc), "app_url", status=404)
    base = context_from_request(request)
    return _serve_app(RequestContext(app_id=app_id, cookies=base.cookies, trace_id=base.trace_id))


@app.get("/preview/{app_id}")
async def serve_app_preview(app_id: str, request: Request):
    base = context_from_request(request)
    return _serve_app(RequestContext(app_id=app_id, cookies=base.cookies, trace_id=base.trace_id))


# ---- Applications ----


@app.get("/api/applications")
async def list_applications():
    return _json(list_apps(store))


@app.post("/api/applications")
async def create_application(request: Request):
    body = await _safe_json(request)
    name = body.get("name")
    if not isinstance(name, str) or not name.strip():
        return _error_response("APP_NAME_REQUIRED", "name is required", "name")
    try:
        metadata = create_app(store, name.strip(), body.get("url"))
    except ValueError as exc:
        return _error_response("APP_INVALID", str(exc), "name")
    ctx = RequestContext(app_id=metadata["appId"])
    _emit(ctx, "app.created", {"app_id": metadata["appId"], "name": metadata["name"]})
    return _json(app_summary(store, metadata["appId"]))


@app.get("/api/applications/{app_id}")
async def get_application(app_id: str):
    try:
        return _json(app_summary(store, app_id))
    except AppNotFoundError as exc:
        return _error_response("APP_NOT_FOUND", str(exc), "app_id", status=404)


@app.post("/api/applications/{app_id}/publish")
async def publish_application(app_id: str):
    try:
        summary = publish(store, app_id)
    except AppNotFoundError as exc:
        return _error_response("APP_NOT_FOUND", str(exc), "app_id", status=404)
    _emit(RequestContext(app_id=summary["appId"]), "app.published", {"app_id": summary["appId"], "url": summary["publicUrl"]})
    return _json(summary)


@app.post("/api/applications/{app_id}/unpublish")
async def unpublish_application(app_id: str):
    try:
        summary = unpublish(store, app_id)
    except AppNotFoundError as exc:
        return _error_response("APP_NOT_FOUND", str(exc), "app_id", status=404)
    _emit(RequestContext(app_id=summary["appId"]), "app.unpublished", {"app_id": summary["appId"]})
    return _json(summary)
