"""Builder asset roots, beta UI bundles and the client library."""

from __future__ import annotations

import io
import logging
import os
import tarfile
from pathlib import Path

import httpx

logger = logging.getLogger("quarry.serve")

ROOT = Path(__file__).resolve().parents[1]
BUILDER_UI_DIR = "builder"
BETA_UI_DIR = "new_design_ui"
DESIGN_UI_COOKIE = "beta:design_ui"
CLIENT_LIBRARY_FILE = "quarry-client.js"
# extraction filters landed in 3.10.12 and 3.11.4
_HAS_DATA_FILTER = hasattr(tarfile, "data_filter")


class BundleDownloadError(RuntimeError):
    pass


def top_level_path() -> Path:
    return Path(os.getenv("QUARRY_TOP_LEVEL_PATH") or ROOT / "ui")


def client_dist_path() -> Path:
    return Path(os.getenv("QUARRY_CLIENT_DIST") or ROOT / "client" / "dist")


def beta_cookie_name(feature: str) -> str:
    return f"beta:{feature}"


def builder_root(use_beta: bool) -> Path:
    return top_level_path() / (BETA_UI_DIR if use_beta else BUILDER_UI_DIR)


def resolve_static(root: Path, file_path: str) -> Path:
    """Resolve ``file_path`` inside ``root``; anything outside it is not found."""
    base = root.resolve()
    target = (base / (file_path or "index.html")).resolve()
    if target != base and base not in target.parents:
        raise FileNotFoundError(file_path)
    if target.is_dir():
        target = target / "index.html"
    if not target.is_file():
        raise FileNotFoundError(file_path)
    return target


def is_builder_asset(file_path: str) -> bool:
    return "assets/" in (file_path or "")


def _bundle_present(path: Path) -> bool:
    return path.is_dir() and any(path.iterdir())


def _safe_members(archive: tarfile.TarFile, dest: Path):
    base = dest.resolve()
    for member in archive.getmembers():
        if member.issym() or member.islnk():
            continue
        target = (base / member.name).resolve()
        if target != base and base not in target.parents:
            raise BundleDownloadError(f"Archive member escapes bundle directory: {member.name}")
        yield member


def download_tarball(url: str, dest: Path, timeout_s: float = 60.0) -> int:
    """Fetch a .tar.gz archive and unpack it into ``dest``."""
    try:
        with httpx.Client(timeout=timeout_s, follow_redirects=True) as client:
            res = client.get(url)
    except httpx.HTTPError as exc:
        raise BundleDownloadError(f"Bundle download failed: {exc}") from exc
    if res.status_code >= 400:
        raise BundleDownloadError(f"Bundle download failed with status {res.status_code}")
    dest.mkdir(parents=True, exist_ok=True)
    try:
        with tarfile.open(fileobj=io.BytesIO(res.content), mode="r:gz") as archive:
            members = list(_safe_members(archive, dest))
            if _HAS_DATA_FILTER:
                archive.extractall(dest, members=members, filter="data")
            else:
                archive.extractall(dest, members=members)
    except tarfile.TarError as exc:
        raise BundleDownloadError(f"Bundle is not a valid archive: {exc}") from exc
    logger.info("bundle_unpacked url=%s dest=%s files=%s", url, dest, len(members))
    return len(members)


def ensure_beta_bundle(url: str | None) -> Path:
    dest = builder_root(use_beta=True)
    if _bundle_present(dest):
        return dest
    if not url:
        raise BundleDownloadError("QUARRY_BETA_UI_URL is not configured")
    download_tarball(url, dest)
    return dest


def client_library_file() -> Path:
    return client_dist_path() / CLIENT_LIBRARY_FILE


def client_library_url(app_id: str, version: str | None, production: bool) -> str:
    cdn = (os.getenv("QUARRY_CDN_URL") or "").strip().rstrip("/")
    if production and cdn:
        return f"{cdn}/{app_id}/{CLIENT_LIBRARY_FILE}?v={version or '0.0.0'}"
    return f"/api/assets/client?appId={app_id}&v={version or '0.0.0'}"
