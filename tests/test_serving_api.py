import os
import sys
import tempfile
import unittest
from pathlib import Path
from unittest import mock


ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
SRC = os.path.join(ROOT, "src")
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)
if SRC not in sys.path:
    sys.path.insert(0, SRC)

os.environ["APP_ENV"] = "test"
os.environ["USE_DB"] = "0"

import httpx
from fastapi.testclient import TestClient

from app import main
from app.attachments import StorageError, prepare_upload
from app.static_serve import BundleDownloadError


class TestServingApi(unittest.TestCase):
    def setUp(self) -> None:
        self.tmp = tempfile.TemporaryDirectory()
        self.root = Path(self.tmp.name)
        self.env = mock.patch.dict(
            os.environ,
            {
                "QUARRY_TOP_LEVEL_PATH": str(self.root / "ui"),
                "QUARRY_STORAGE_DIR": str(self.root / "storage"),
                "QUARRY_STORAGE_BUCKET_APPS": "apps",
                "QUARRY_CLIENT_DIST": str(self.root / "client"),
                "SUPABASE_URL": "",
                "SUPABASE_SERVICE_ROLE_KEY": "",
            },
        )
        self.env.start()
        self.client = TestClient(main.app)
        self.headers = {"x-quarry-app-id": "app_dev_serving"}
        main.outbox.clear()

    def tearDown(self) -> None:
        self.env.stop()
        self.tmp.cleanup()

    def _write(self, relative: str, content: str) -> None:
        path = self.root / relative
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content, encoding="utf-8")

    def test_upload_and_download(self) -> None:
        res = self.client.post(
            "/api/attachments/upload",
            files=[
                ("file", ("notes.txt", b"hello", "text/plain")),
                ("file", ("LICENSE", b"mit", "application/octet-stream")),
            ],
            headers=self.headers,
        )
        self.assertEqual(res.status_code, 200, res.text)
        first, second = res.json()
        self.assertEqual(first["name"], "notes.txt")
        self.assertEqual(first["size"], 5)
        self.assertEqual(first["extension"], "txt")
        self.assertEqual(first["url"], f"/files/apps/{first['key']}")
        self.assertEqual(second["extension"], "")
        self.assertEqual(self.client.get(first["url"]).content, b"hello")

    def test_upload_transport_error_is_400(self) -> None:
        real_client = httpx.Client

        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        def factory(*args, **kwargs):
            kwargs.pop("transport", None)
            return real_client(transport=httpx.MockTransport(handler), **kwargs)

        env = {"SUPABASE_URL": "http://storage.invalid", "SUPABASE_SERVICE_ROLE_KEY": "service-key"}
        with mock.patch.dict(os.environ, env), mock.patch("app.attachments.httpx.Client", side_effect=factory):
            res = self.client.post(
                "/api/attachments/upload",
                files=[("file", ("notes.txt", b"hello", "text/plain"))],
                headers=self.headers,
            )
        self.assertEqual(res.status_code, 400, res.text)
        self.assertEqual(res.json()["errors"][0]["code"], "UPLOAD_FAILED")

    def test_upload_fails_when_any_file_fails(self) -> None:
        def prepare(app_id, filename, data, mime_type=None):
            if filename == "second.txt":
                raise StorageError("upload_failed:503:unavailable")
            return prepare_upload(app_id, filename, data, mime_type=mime_type)

        with mock.patch("app.main.prepare_upload", side_effect=prepare):
            res = self.client.post(
                "/api/attachments/upload",
                files=[
                    ("file", ("first.txt", b"one", "text/plain")),
                    ("file", ("second.txt", b"two", "text/plain")),
                ],
                headers=self.headers,
            )
        self.assertEqual(res.status_code, 400)
        error = res.json()["errors"][0]
        self.assertEqual(error["code"], "UPLOAD_FAILED")
        self.assertIn("503", error["message"])

    def test_download_missing_file(self) -> None:
        self.assertEqual(self.client.get("/files/apps/app_dev_serving/attachments/nope.txt").status_code, 404)
        self.assertEqual(self.client.get("/files/other/anything").status_code, 404)

    def test_signed_url_missing_datasource(self) -> None:
        res = self.client.post(
            "/api/attachments/datasource_missing/url", json={"bucket": "b", "key": "k"}, headers=self.headers
        )
        self.assertEqual(res.status_code, 400)
        self.assertEqual(res.json()["errors"][0]["message"], "The specified datasource could not be found")

    def test_builder_stable_and_beta(self) -> None:
        self._write("ui/builder/index.html", "stable")
        self._write("ui/builder/assets/app.js", "js")
        self._write("ui/new_design_ui/index.html", "beta")
        self.assertEqual(self.client.get("/builder").text, "stable")
        self.assertEqual(self.client.get("/builder/assets/app.js").text, "js")
        self.assertEqual([e["name"] for e in main.outbox.pending()], ["serve.served_builder"])

        self.client.cookies.set("beta:design_ui", "1")
        try:
            self.assertEqual(self.client.get("/builder/index.html").text, "beta")
        finally:
            self.client.cookies.clear()
        self.assertEqual(self.client.get("/builder/missing.html").status_code, 404)

    def test_beta_toggle(self) -> None:
        with mock.patch.object(main, "BETA_UI_URL", None):
            res = self.client.post("/api/beta/design_ui")
        self.assertEqual(res.status_code, 400)
        self.assertEqual(res.json()["errors"][0]["code"], "BETA_UI_UNAVAILABLE")

        with mock.patch.object(main, "ensure_beta_bundle") as ensure:
            enabled = self.client.post("/api/beta/design_ui")
        ensure.assert_called_once()
        self.assertEqual(enabled.json(), {"message": "design_ui enabled"})
        self.assertIn("beta:design_ui", enabled.headers["set-cookie"])

        self.client.cookies.set("beta:design_ui", "1")
        disabled = self.client.post("/api/beta/design_ui")
        self.client.cookies.clear()
        self.assertEqual(disabled.json(), {"message": "design_ui disabled"})

    def test_beta_bundle_failure(self) -> None:
        with mock.patch.object(main, "ensure_beta_bundle", side_effect=BundleDownloadError("gone")):
            res = self.client.post("/api/beta/design_ui")
        self.assertEqual(res.status_code, 400)

    def test_client_library(self) -> None:
        self.assertEqual(self.client.get("/api/assets/client").status_code, 404)
        self._write("client/quarry-client.js", "export {}")
        res = self.client.get("/api/assets/client?appId=app_1&v=1")
        self.assertEqual(res.status_code, 200)
        self.assertEqual(res.text, "export {}")
        self.assertIn("javascript", res.headers["content-type"])

    def test_health(self) -> None:
        self.assertEqual(self.client.get("/health").json(), {"ok": True})


if __name__ == "__main__":
    unittest.main()
