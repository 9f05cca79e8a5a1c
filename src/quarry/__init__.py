"""Quarry document conventions."""

from .doc_ids import (
    APP_METADATA_ID,
    generate_app_id,
    generate_datasource_id,
    generate_query_id,
    get_dev_app_id,
    get_prod_app_id,
    is_dev_app_id,
    is_prod_app_id,
)
from .revisions import DocumentEncodingError, canonical_dumps, next_revision, revision_number

__all__ = [
    "APP_METADATA_ID",
    "DocumentEncodingError",
    "canonical_dumps",
    "generate_app_id",
    "generate_datasource_id",
    "generate_query_id",
    "get_dev_app_id",
    "get_prod_app_id",
    "is_dev_app_id",
    "is_prod_app_id",
    "next_revision",
    "revision_number",
]
