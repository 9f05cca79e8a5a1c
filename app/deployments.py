"""Application metadata, publishing and unpublishing.

Builders edit the development copy (``app_dev_<hex>``). Publishing replaces the
production database (``app_<hex>``) with a copy of the development one;
unpublishing drops the production database.
"""

from __future__ import annotations

import logging
import os
import re
from datetime import datetime, timezone

from app.stores import DocumentNotFoundError
from quarry.doc_ids import APP_METADATA_ID, generate_app_id, get_dev_app_id, get_prod_app_id, is_dev_app_id

logger = logging.getLogger("quarry.deployments")

STATUS_PUBLISHED = "Published"
STATUS_UNPUBLISHED = "Unpublished"
_SLUG_RE = re.compile(r"[^a-z0-9]+")


class AppNotFoundError(LookupError):
    pass


def _now() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def base_url() -> str:
    return (os.getenv("QUARRY_BASE_URL") or "http://localhost:10000").strip().rstrip("/")


def slugify(name: str) -> str:
    return _SLUG_RE.sub("-", (name or "").strip().lower()).strip("-")


def _metadata(store, app_id: str) -> dict:
    try:
        return store.get(app_id, APP_METADATA_ID)
    except DocumentNotFoundError as exc:
        raise AppNotFoundError(f"Application {app_id} not found") from exc


def create_app(store, name: str, url: str | None = None) -> dict:
    slug = slugify(url or name)
    if not slug:
        raise ValueError("Application name is required")
    for existing in list_apps(store):
        if existing.get("url") == f"/{slug}":
            raise ValueError(f"An application with URL /{slug} already exists")
    app_id = generate_app_id()
    now = _now()
    metadata = {
        "_id": APP_METADATA_ID,
        "appId": app_id,
        "name": name,
        "url": f"/{slug}",
        "version": "0.0.1",
        "createdAt": now,
        "updatedAt": now,
    }
    metadata["_rev"] = store.put(app_id, metadata)["rev"]
    logger.info("app_created app_id=%s url=%s", app_id, metadata["url"])
    return metadata


def list_apps(store) -> list[dict]:
    apps = []
    for app_id in store.list_dbs():
        if not is_dev_app_id(app_id):
            continue
        try:
            apps.append(app_summary(store, app_id))
        except AppNotFoundError:
            continue
    return apps


def is_published(store, app_id: str) -> bool:
    return store.exists_db(get_prod_app_id(app_id))


def public_url(metadata: dict) -> str:
    return f"{base_url()}/app{metadata.get('url') or ''}"


def app_summary(store, app_id: str) -> dict:
    dev_id = get_dev_app_id(app_id)
    metadata = _metadata(store, dev_id)
    published = is_published(store, dev_id)
    summary = dict(metadata)
    summary["status"] = STATUS_PUBLISHED if published else STATUS_UNPUBLISHED
    summary["prodAppId"] = get_prod_app_id(dev_id)
    summary["publicUrl"] = public_url(metadata) if published else None
    return summary


def publish(store, app_id: str) -> dict:
    dev_id = get_dev_app_id(app_id)
    prod_id = get_prod_app_id(dev_id)
    metadata = _metadata(store, dev_id)
    metadata["publishedAt"] = _now()
    metadata["updatedAt"] = metadata["publishedAt"]
    store.put(dev_id, metadata)
    copied = store.copy_db(dev_id, prod_id)
    prod_metadata = store.get(prod_id, APP_METADATA_ID)
    prod_metadata["appId"] = prod_id
    store.put(prod_id, prod_metadata)
    logger.info("app_published app_id=%s prod_app_id=%s docs=%s", dev_id, prod_id, copied)
    return app_summary(store, dev_id)


def unpublish(store, app_id: str) -> dict:
    dev_id = get_dev_app_id(app_id)
    _metadata(store, dev_id)
    dropped = store.drop_db(get_prod_app_id(dev_id))
    logger.info("app_unpublished app_id=%s dropped=%s", dev_id, dropped)
    return app_summary(store, dev_id)


def find_published_by_url(store, app_url: str) -> str:
    """Return the production app id serving ``/app/<app_url>``."""
    wanted = f"/{slugify(app_url)}"
    for app_id in store.list_dbs():
        if is_dev_app_id(app_id):
            continue
        try:
            metadata = store.get(app_id, APP_METADATA_ID)
        except DocumentNotFoundError:
            continue
        if metadata.get("url") == wanted:
            return app_id
    raise AppNotFoundError(f"No published application at /app{wanted}")
