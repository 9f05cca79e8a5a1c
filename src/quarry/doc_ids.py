"""Document and application id conventions.

Development copies of an application live under ``app_dev_<hex>``; the
published copy of the same application uses ``app_<hex>``. Documents inside an
application database are namespaced by a type prefix so they can be listed by
id range.
"""

from __future__ import annotations

import uuid

SEPARATOR = "_"
APP_PREFIX = "app"
APP_DEV_PREFIX = "app_dev"
APP_METADATA_ID = "app_metadata"
QUERY_PREFIX = "query"
DATASOURCE_PREFIX = "datasource"


def _new_hex() -> str:
    return uuid.uuid4().hex


def generate_app_id() -> str:
    """Return a new development app id."""
    return f"{APP_DEV_PREFIX}{SEPARATOR}{_new_hex()}"


def is_dev_app_id(app_id: str | None) -> bool:
    return isinstance(app_id, str) and app_id.startswith(f"{APP_DEV_PREFIX}{SEPARATOR}")


def is_prod_app_id(app_id: str | None) -> bool:
    if not isinstance(app_id, str):
        return False
    return app_id.startswith(f"{APP_PREFIX}{SEPARATOR}") and not is_dev_app_id(app_id)


def get_prod_app_id(app_id: str) -> str:
    if is_dev_app_id(app_id):
        return f"{APP_PREFIX}{SEPARATOR}{app_id[len(APP_DEV_PREFIX) + 1:]}"
    return app_id


def get_dev_app_id(app_id: str) -> str:
    if is_prod_app_id(app_id):
        return f"{APP_DEV_PREFIX}{SEPARATOR}{app_id[len(APP_PREFIX) + 1:]}"
    return app_id


def generate_datasource_id() -> str:
    return f"{DATASOURCE_PREFIX}{SEPARATOR}{_new_hex()}"


def generate_query_id(datasource_id: str) -> str:
    """Query ids embed their datasource so a datasource's queries share a prefix."""
    return f"{QUERY_PREFIX}{SEPARATOR}{datasource_id}{SEPARATOR}{_new_hex()}"


def query_prefix(datasource_id: str | None = None) -> str:
    if datasource_id:
        return f"{QUERY_PREFIX}{SEPARATOR}{datasource_id}{SEPARATOR}"
    return f"{QUERY_PREFIX}{SEPARATOR}"


def datasource_prefix() -> str:
    return f"{DATASOURCE_PREFIX}{SEPARATOR}"
