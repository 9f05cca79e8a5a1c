from __future__ import annotations

import logging
import os
import uuid
from pathlib import Path
from urllib.parse import quote

import boto3
import httpx
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from app.datasources import S3Config, UnsupportedDatasourceError, parse_datasource

logger = logging.getLogger("quarry.storage")


class StorageError(RuntimeError):
    pass


class SignedUrlError(ValueError):
    pass


def _supabase_url() -> str:
    return (os.getenv("SUPABASE_URL") or "").strip().rstrip("/")


def _supabase_service_role_key() -> str:
    return (os.getenv("SUPABASE_SERVICE_ROLE_KEY") or "").strip()


def using_supabase_storage() -> bool:
    return bool(_supabase_url() and _supabase_service_role_key())


def apps_bucket() -> str:
    return (os.getenv("QUARRY_STORAGE_BUCKET_APPS") or "apps").strip()


def _storage_root() -> Path:
    return Path(os.getenv("QUARRY_STORAGE_DIR", "storage"))


def _supabase_headers(content_type: str | None = None) -> dict:
    headers = {
        "Authorization": f"Bearer {_supabase_service_role_key()}",
        "apikey": _supabase_service_role_key(),
        "x-upsert": "true",
    }
    if content_type:
        headers["Content-Type"] = content_type
    return headers


def _supabase_upload(bucket: str, key: str, data: bytes, mime_type: str | None) -> None:
    url = f"{_supabase_url()}/storage/v1/object/{bucket}/{quote(key, safe='/')}"
    try:
        with httpx.Client(timeout=30.0) as client:
            res = client.post(url, headers=_supabase_headers(mime_type), content=data)
    except httpx.HTTPError as exc:
        raise StorageError(f"upload_failed:{exc}") from exc
    if res.status_code >= 400:
        raise StorageError(f"upload_failed:{res.status_code}:{res.text}")


def local_path(bucket: str, key: str) -> Path:
    root = (_storage_root() / bucket).resolve()
    path = (root / key).resolve()
    if root not in path.parents:
        raise FileNotFoundError(key)
    return path


def upload(bucket: str, key: str, data: bytes, mime_type: str | None = None) -> dict:
    """Store ``data`` under ``key`` and return the stored key."""
    if using_supabase_storage():
        _supabase_upload(bucket, key, data, mime_type)
    else:
        path = local_path(bucket, key)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(data)
    logger.info("object_uploaded bucket=%s key=%s size=%s", bucket, key, len(data))
    return {"bucket": bucket, "key": key, "size": len(data)}


def attachment_url(key: str, bucket: str | None = None) -> str:
    """Derive the URL for a stored object; never persisted because the base can change."""
    selected = bucket or apps_bucket()
    if using_supabase_storage():
        return f"{_supabase_url()}/storage/v1/object/public/{selected}/{quote(key, safe='/')}"
    return f"/files/{selected}/{quote(key, safe='/')}"


def file_extension(filename: str) -> str:
    if "." not in filename:
        return ""
    return filename.rsplit(".", 1)[-1]


def attachment_key(app_id: str, filename: str) -> str:
    extension = file_extension(filename)
    name = uuid.uuid4().hex
    if extension:
        name = f"{name}.{extension}"
    return f"{app_id}/attachments/{name}"


def prepare_upload(app_id: str, filename: str, data: bytes, mime_type: str | None = None) -> dict:
    key = attachment_key(app_id, filename)
    stored = upload(apps_bucket(), key, data, mime_type=mime_type)
    return {
        "size": stored["size"],
        "name": filename,
        "extension": file_extension(filename),
        "key": stored["key"],
    }


def read_bytes(bucket: str, key: str) -> bytes:
    path = local_path(bucket, key)
    if not path.is_file():
        raise FileNotFoundError(key)
    return path.read_bytes()


SIGNED_URL_TTL_S = int(os.getenv("QUARRY_SIGNED_URL_TTL_S", "3600"))


def get_signed_upload_url(datasource_doc: dict | None, bucket: str | None, key: str | None) -> dict:
    """Return a pre-signed PUT URL and the public URL for an S3 datasource object."""
    if not datasource_doc:
        raise SignedUrlError("The specified datasource could not be found")
    if (datasource_doc.get("config") or {}).get("endpoint"):
        raise SignedUrlError("S3 datasources with custom endpoints are not supported")
    try:
        datasource = parse_datasource(datasource_doc)
    except UnsupportedDatasourceError as exc:
        raise SignedUrlError("Signed upload URLs are only supported for S3 datasources") from exc
    if not isinstance(datasource.config, S3Config):
        raise SignedUrlError("Signed upload URLs are only supported for S3 datasources")
    if not bucket or not key:
        raise SignedUrlError("bucket and key values are required")
    config: S3Config = datasource.config
    try:
        client = boto3.client(
            "s3",
            region_name=config.region,
            aws_access_key_id=config.access_key_id,
            aws_secret_access_key=config.secret_access_key,
            config=Config(signature_version="s3v4"),
        )
        signed_url = client.generate_presigned_url(
            "put_object",
            Params={"Bucket": bucket, "Key": key},
            ExpiresIn=SIGNED_URL_TTL_S,
        )
    except (BotoCoreError, ClientError) as exc:
        raise SignedUrlError(str(exc)) from exc
    return {
        "signedUrl": signed_url,
        "publicUrl": f"https://{bucket}.s3.{config.region}.amazonaws.com/{key}",
    }
