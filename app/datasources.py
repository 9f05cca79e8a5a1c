"""Datasource documents and their per-source configuration shapes."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Union

from quarry.doc_ids import datasource_prefix, generate_datasource_id

logger = logging.getLogger("quarry.datasources")

SOURCE_REST = "REST"
SOURCE_S3 = "S3"
SOURCE_POSTGRES = "POSTGRES"
DEFAULT_S3_REGION = "eu-west-1"
SECRET_PLACEHOLDER = "--secret-value--"
_SECRET_KEYS = ("secretAccessKey", "password")


class UnsupportedDatasourceError(ValueError):
    pass


@dataclass
class RestConfig:
    url: str = ""
    default_headers: Dict[str, str] = field(default_factory=dict)
    dynamic_variables: List[dict] = field(default_factory=list)


@dataclass
class S3Config:
    region: str = DEFAULT_S3_REGION
    access_key_id: str | None = None
    secret_access_key: str | None = None
    endpoint: str | None = None


@dataclass
class PostgresConfig:
    host: str = "localhost"
    port: int = 5432
    database: str = "postgres"
    user: str | None = None
    password: str | None = None
    ssl: bool = False


DatasourceConfig = Union[RestConfig, S3Config, PostgresConfig]


@dataclass
class Datasource:
    id: str | None
    name: str | None
    source: str
    config: DatasourceConfig
    doc: dict


def _headers(value: Any) -> Dict[str, str]:
    # Builder stores headers as [{key, value}] rows; imports may send a mapping.
    if isinstance(value, dict):
        return {str(k): str(v) for k, v in value.items()}
    headers: Dict[str, str] = {}
    if isinstance(value, list):
        for item in value:
            if isinstance(item, dict) and item.get("key"):
                headers[str(item["key"])] = str(item.get("value") or "")
    return headers


def parse_datasource(doc: dict) -> Datasource:
    source = doc.get("source")
    config = doc.get("config") or {}
    if source == SOURCE_REST:
        parsed: DatasourceConfig = RestConfig(
            url=str(config.get("url") or ""),
            default_headers=_headers(config.get("defaultHeaders")),
            dynamic_variables=list(config.get("dynamicVariables") or []),
        )
    elif source == SOURCE_S3:
        parsed = S3Config(
            region=config.get("region") or DEFAULT_S3_REGION,
            access_key_id=config.get("accessKeyId"),
            secret_access_key=config.get("secretAccessKey"),
            endpoint=config.get("endpoint") or None,
        )
    elif source == SOURCE_POSTGRES:
        parsed = PostgresConfig(
            host=config.get("host") or "localhost",
            port=int(config.get("port") or 5432),
            database=config.get("database") or "postgres",
            user=config.get("user"),
            password=config.get("password"),
            ssl=bool(config.get("ssl")),
        )
    else:
        raise UnsupportedDatasourceError(f"Unsupported datasource source: {source}")
    return Datasource(id=doc.get("_id"), name=doc.get("name"), source=source, config=parsed, doc=doc)


def save_datasource(store, app_id: str, datasource: dict, emit=None) -> dict:
    """Persist a datasource document, minting an id for new ones."""
    doc = dict(datasource)
    doc.setdefault("type", "datasource")
    parse_datasource(doc)
    created = not doc.get("_id")
    if created:
        doc["_id"] = generate_datasource_id()
    else:
        _restore_secrets(store, app_id, doc)
    response = store.put(app_id, doc)
    doc["_rev"] = response["rev"]
    logger.info("datasource_saved app_id=%s datasource_id=%s source=%s", app_id, doc["_id"], doc.get("source"))
    if emit is not None:
        emit("datasource.created" if created else "datasource.updated", {"datasource_id": doc["_id"], "source": doc.get("source")})
    return doc


def list_datasources(store, app_id: str) -> list[dict]:
    return store.all_docs(app_id, datasource_prefix())


def redact_datasource(doc: dict) -> dict:
    """Strip credentials before a datasource leaves the server."""
    out = dict(doc)
    config = dict(out.get("config") or {})
    for key in _SECRET_KEYS:
        if config.get(key):
            config[key] = SECRET_PLACEHOLDER
    out["config"] = config
    return out


def _restore_secrets(store, app_id: str, doc: dict) -> None:
    config = doc.get("config") or {}
    redacted = [key for key in _SECRET_KEYS if config.get(key) == SECRET_PLACEHOLDER]
    if not redacted:
        return
    existing = store.get(app_id, doc["_id"]).get("config") or {}
    config = dict(config)
    for key in redacted:
        config[key] = existing.get(key)
    doc["config"] = config
