import io
import os
import sys
import tarfile
import tempfile
import unittest
from pathlib import Path
from unittest import mock

import httpx


ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)

from app.static_serve import (
    BundleDownloadError,
    builder_root,
    client_library_url,
    download_tarball,
    ensure_beta_bundle,
    is_builder_asset,
    resolve_static,
)


def _tarball(files: dict) -> bytes:
    buf = io.BytesIO()
    with tarfile.open(fileobj=buf, mode="w:gz") as archive:
        for name, content in files.items():
            info = tarfile.TarInfo(name)
            info.size = len(content)
            archive.addfile(info, io.BytesIO(content))
    return buf.getvalue()


class _MockedHttpx:
    def __init__(self, handler) -> None:
        self._real_client = httpx.Client
        self._handler = handler

    def __enter__(self):
        def factory(**kwargs):
            return self._real_client(transport=httpx.MockTransport(self._handler), **kwargs)

        self._patch = mock.patch("app.static_serve.httpx.Client", side_effect=factory)
        self._patch.start()
        return self

    def __exit__(self, *exc) -> None:
        self._patch.stop()


class TestStaticServe(unittest.TestCase):
    def setUp(self) -> None:
        self.tmp = tempfile.TemporaryDirectory()
        self.root = Path(self.tmp.name)
        self.env = mock.patch.dict(os.environ, {"QUARRY_TOP_LEVEL_PATH": self.tmp.name, "QUARRY_CDN_URL": ""})
        self.env.start()

    def tearDown(self) -> None:
        self.env.stop()
        self.tmp.cleanup()

    def test_builder_roots(self) -> None:
        self.assertEqual(builder_root(False), self.root / "builder")
        self.assertEqual(builder_root(True), self.root / "new_design_ui")

    def test_resolve_static_index_and_traversal(self) -> None:
        builder = self.root / "builder"
        (builder / "assets").mkdir(parents=True)
        (builder / "index.html").write_text("<html></html>", encoding="utf-8")
        (builder / "assets" / "app.js").write_text("1", encoding="utf-8")
        (self.root / "secret.txt").write_text("no", encoding="utf-8")
        self.assertEqual(resolve_static(builder, ""), (builder / "index.html").resolve())
        self.assertEqual(resolve_static(builder, "assets/app.js"), (builder / "assets" / "app.js").resolve())
        with self.assertRaises(FileNotFoundError):
            resolve_static(builder, "../secret.txt")
        with self.assertRaises(FileNotFoundError):
            resolve_static(builder, "missing.js")

    def test_is_builder_asset(self) -> None:
        self.assertTrue(is_builder_asset("assets/index-abc.js"))
        self.assertFalse(is_builder_asset("apps/123"))

    def test_client_library_url(self) -> None:
        self.assertEqual(client_library_url("app_1", "1.2.0", True), "/api/assets/client?appId=app_1&v=1.2.0")
        with mock.patch.dict(os.environ, {"QUARRY_CDN_URL": "https://cdn.example.com/"}):
            self.assertEqual(
                client_library_url("app_1", "1.2.0", True), "https://cdn.example.com/app_1/quarry-client.js?v=1.2.0"
            )
            self.assertEqual(client_library_url("app_dev_1", None, False), "/api/assets/client?appId=app_dev_1&v=0.0.0")

    def test_download_tarball_unpacks(self) -> None:
        payload = _tarball({"index.html": b"<html>beta</html>", "assets/app.js": b"1"})
        dest = self.root / "new_design_ui"
        with _MockedHttpx(lambda request: httpx.Response(200, content=payload)):
            count = download_tarball("https://cdn.example.com/beta.tar.gz", dest)
        self.assertEqual(count, 2)
        self.assertEqual((dest / "index.html").read_text(encoding="utf-8"), "<html>beta</html>")

    def test_download_tarball_rejects_escaping_members(self) -> None:
        payload = _tarball({"../evil.txt": b"x"})
        with _MockedHttpx(lambda request: httpx.Response(200, content=payload)):
            with self.assertRaises(BundleDownloadError):
                download_tarball("https://cdn.example.com/beta.tar.gz", self.root / "new_design_ui")
        self.assertFalse((self.root / "evil.txt").exists())

    def test_download_tarball_without_extraction_filter(self) -> None:
        payload = _tarball({"index.html": b"<html>beta</html>"})
        dest = self.root / "new_design_ui"
        with mock.patch("app.static_serve._HAS_DATA_FILTER", False):
            with _MockedHttpx(lambda request: httpx.Response(200, content=payload)):
                self.assertEqual(download_tarball("https://cdn.example.com/beta.tar.gz", dest), 1)
            self.assertEqual((dest / "index.html").read_text(encoding="utf-8"), "<html>beta</html>")

            escaping = _tarball({"../evil.txt": b"x"})
            with _MockedHttpx(lambda request: httpx.Response(200, content=escaping)):
                with self.assertRaises(BundleDownloadError):
                    download_tarball("https://cdn.example.com/beta.tar.gz", self.root / "other_ui")
        self.assertFalse((self.root / "evil.txt").exists())

    def test_download_tarball_http_error(self) -> None:
        with _MockedHttpx(lambda request: httpx.Response(404)):
            with self.assertRaises(BundleDownloadError):
                download_tarball("https://cdn.example.com/beta.tar.gz", self.root / "new_design_ui")

    def test_ensure_beta_bundle_downloads_once(self) -> None:
        with mock.patch("app.static_serve.download_tarball") as download:
            with self.assertRaises(BundleDownloadError):
                ensure_beta_bundle(None)
            ensure_beta_bundle("https://cdn.example.com/beta.tar.gz")
            download.assert_called_once()
        beta = self.root / "new_design_ui"
        beta.mkdir(exist_ok=True)
        (beta / "index.html").write_text("x", encoding="utf-8")
        with mock.patch("app.static_serve.download_tarball") as download:
            ensure_beta_bundle(None)
            download.assert_not_called()


if __name__ == "__main__":
    unittest.main()
