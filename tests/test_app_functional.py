import io
import os
import sys
import tempfile
import unittest
from pathlib import Path
from unittest import mock

from jinja2 import TemplateError

JSON_HEADERS = {"Accept": "application/json"}


class DirShareAppIntegrationTests(unittest.TestCase):
    def setUp(self):
        self.storage_dir = tempfile.TemporaryDirectory()
        self.parent = Path(self.storage_dir.name)
        self.root = self.parent / "share"
        self.root.mkdir()
        os.environ["DIRSHARE_SOURCE_DIR"] = str(self.root)
        os.environ["DIRSHARE_PORT"] = "8080"
        self._reload_app()
        self.app.config.update(TESTING=True, WTF_CSRF_ENABLED=False)
        self.client = self.app.test_client()

    def tearDown(self):
        self.storage_dir.cleanup()
        for key in ["DIRSHARE_SOURCE_DIR", "DIRSHARE_PORT"]:
            os.environ.pop(key, None)
        sys.modules.pop("dirshare.app", None)

    def _reload_app(self):
        sys.modules.pop("dirshare.app", None)
        import importlib

        app_module = importlib.import_module("dirshare.app")  # noqa: WPS433

        self.app = app_module.app
        self.app_module = app_module
        self.server_config = app_module.app.config["SERVER_CONFIG"]

    def _listing(self, path="/"):
        response = self.client.get(path, headers=JSON_HEADERS)
        self.assertEqual(response.status_code, 200)
        return response.get_json()

    def test_root_listing_orders_directories_first(self):
        (self.root / "b.txt").write_text("b")
        (self.root / "a.txt").write_text("a")
        (self.root / "z").mkdir()
        (self.root / "m").mkdir()
        (self.root / ".git").mkdir()

        payload = self._listing()

        self.assertEqual(
            [entry["name"] for entry in payload["files"]], ["m", "z", "a.txt", "b.txt"]
        )
        self.assertEqual(payload["path"], ".")
        self.assertIsNone(payload["parent_path"])
        self.assertEqual(payload["port"], "8080")
        self.assertEqual(payload["source_dir"], str(self.root))
        self.assertTrue(payload["ip_addresses"])

    def test_root_page_renders_html_with_control_form(self):
        (self.root / "notes.txt").write_text("hello")

        response = self.client.get("/")

        self.assertEqual(response.status_code, 200)
        self.assertIn("text/html", response.headers["Content-Type"])
        body = response.get_data(as_text=True)
        self.assertIn("notes.txt", body)
        self.assertIn('name="port"', body)
        self.assertIn('name="directory"', body)
        self.assertIn('action="/upload"', body)

    def test_empty_root_lists_nothing(self):
        payload = self._listing()
        self.assertEqual(payload["files"], [])

    def test_file_is_served_with_static_headers(self):
        (self.root / "page.html").write_text("<p>hi</p>")

        response = self.client.get("/page.html")

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.data, b"<p>hi</p>")
        self.assertIn("text/html", response.headers["Content-Type"])
        self.assertIn("Last-Modified", response.headers)
        response.close()

    def test_subdirectory_listing_uses_root_relative_paths(self):
        nested = self.root / "docs"
        nested.mkdir()
        (nested / "guide.md").write_text("# guide")
        (nested / ".cache").write_text("x")

        payload = self._listing("/docs")

        self.assertEqual(payload["path"], "docs")
        self.assertEqual(payload["parent_path"], ".")
        self.assertEqual(
            [entry["rel_path"] for entry in payload["files"]], ["docs/guide.md"]
        )

    def test_listing_collapses_parent_references(self):
        (self.root / "docs").mkdir()
        (self.root / "docs" / "a.txt").write_text("a")
        (self.root / "other").mkdir()

        payload = self._listing("/other/../docs")

        self.assertEqual(payload["path"], "docs")
        self.assertEqual(payload["parent_path"], ".")
        rel_paths = [entry["rel_path"] for entry in payload["files"]]
        self.assertEqual(rel_paths, ["docs/a.txt"])
        for rel_path in rel_paths:
            self.assertNotIn("..", rel_path)

        root_payload = self._listing("/docs/..")
        self.assertEqual(root_payload["path"], ".")
        self.assertIsNone(root_payload["parent_path"])

    def test_nested_file_is_served(self):
        nested = self.root / "docs"
        nested.mkdir()
        (nested / "guide.md").write_text("# guide")

        response = self.client.get("/docs/guide.md")

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.data, b"# guide")
        response.close()

    def test_missing_path_returns_404(self):
        response = self.client.get("/does-not-exist")
        self.assertEqual(response.status_code, 404)

        json_response = self.client.get("/does-not-exist", headers=JSON_HEADERS)
        self.assertEqual(json_response.status_code, 404)
        self.assertEqual(json_response.get_json(), {"error": "Not found"})

    def test_traversal_outside_root_is_not_served(self):
        (self.parent / "secret.txt").write_text("top secret")

        response = self.client.get("/..%2fsecret.txt")

        self.assertEqual(response.status_code, 404)
        self.assertNotIn(b"top secret", response.data)

    def test_control_submission_changes_directory(self):
        other = self.parent / "other"
        other.mkdir()
        (other / "fresh.txt").write_text("fresh")

        response = self.client.post(
            "/", data={"directory": str(other)}, headers=JSON_HEADERS
        )

        self.assertEqual(response.status_code, 200)
        payload = response.get_json()
        self.assertEqual(payload["source_dir"], str(other))
        self.assertEqual([entry["name"] for entry in payload["files"]], ["fresh.txt"])
        self.assertEqual(self.server_config.source_dir, str(other))

        served = self.client.get("/fresh.txt")
        self.assertEqual(served.data, b"fresh")
        served.close()

    def test_control_submission_changes_port(self):
        response = self.client.post("/", data={"port": "9090"})

        self.assertEqual(response.status_code, 200)
        self.assertEqual(self.server_config.port, "9090")
        self.assertIn("Settings updated.", response.get_data(as_text=True))

    def test_control_submission_with_missing_directory_is_rejected(self):
        response = self.client.post(
            "/",
            data={"port": "9999", "directory": str(self.parent / "missing")},
            headers=JSON_HEADERS,
        )

        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.get_json(), {"error": "Directory does not exist"})
        self.assertEqual(self.server_config.source_dir, str(self.root))
        self.assertEqual(self.server_config.port, "8080")

    def test_upload_writes_file_and_redirects(self):
        response = self.client.post(
            "/upload",
            data={"file": (io.BytesIO(b"hello world"), "sample.txt")},
            content_type="multipart/form-data",
        )

        self.assertEqual(response.status_code, 303)
        self.assertTrue(response.headers["Location"].endswith("/"))
        self.assertEqual((self.root / "sample.txt").read_bytes(), b"hello world")

    def test_upload_sanitizes_traversal_filename(self):
        response = self.client.post(
            "/upload",
            data={"file": (io.BytesIO(b"payload"), "evil/../../name.txt")},
            content_type="multipart/form-data",
        )

        self.assertEqual(response.status_code, 303)
        self.assertEqual((self.root / "evil_____name.txt").read_bytes(), b"payload")
        self.assertEqual(sorted(os.listdir(self.parent)), ["share"])

    def test_upload_then_listing_round_trip(self):
        content = b"0123456789" * 100
        self.client.post(
            "/upload",
            data={"file": (io.BytesIO(content), "report.bin")},
            content_type="multipart/form-data",
        )

        payload = self._listing()

        (entry,) = payload["files"]
        self.assertEqual(entry["rel_path"], "report.bin")
        self.assertEqual(entry["size"], len(content))
        self.assertFalse(entry["is_dir"])

    def test_upload_overwrites_same_name(self):
        for content in (b"first upload", b"second"):
            response = self.client.post(
                "/upload",
                data={"file": (io.BytesIO(content), "same.txt")},
                content_type="multipart/form-data",
            )
            self.assertEqual(response.status_code, 303)

        self.assertEqual((self.root / "same.txt").read_bytes(), b"second")

    def test_upload_goes_to_current_root(self):
        other = self.parent / "other"
        other.mkdir()
        self.client.post("/", data={"directory": str(other)})

        self.client.post(
            "/upload",
            data={"file": (io.BytesIO(b"x"), "moved.txt")},
            content_type="multipart/form-data",
        )

        self.assertTrue((other / "moved.txt").exists())
        self.assertFalse((self.root / "moved.txt").exists())

    def test_upload_without_file_field_returns_400(self):
        response = self.client.post(
            "/upload",
            data={"other": "value"},
            content_type="multipart/form-data",
            headers=JSON_HEADERS,
        )

        self.assertEqual(response.status_code, 400)
        self.assertIn("error", response.get_json())

    def test_upload_io_failure_returns_500(self):
        with mock.patch.object(
            self.app_module, "save_upload", side_effect=PermissionError("denied")
        ):
            response = self.client.post(
                "/upload",
                data={"file": (io.BytesIO(b"x"), "x.txt")},
                content_type="multipart/form-data",
                headers=JSON_HEADERS,
            )

        self.assertEqual(response.status_code, 500)
        self.assertEqual(response.get_json(), {"error": "Error saving file"})

    def test_listing_io_failure_returns_500(self):
        with mock.patch.object(
            self.app_module, "list_directory", side_effect=PermissionError("denied")
        ):
            response = self.client.get("/", headers=JSON_HEADERS)

        self.assertEqual(response.status_code, 500)

    def test_render_failure_returns_500(self):
        with mock.patch.object(
            self.app_module, "render_template", side_effect=TemplateError("boom")
        ):
            response = self.client.get("/")

        self.assertEqual(response.status_code, 500)
        self.assertIn("Error rendering template", response.get_data(as_text=True))

    def test_post_to_file_path_is_not_allowed(self):
        response = self.client.post("/anything")
        self.assertEqual(response.status_code, 405)

    def test_security_and_request_id_headers(self):
        response = self.client.get("/", headers={"X-Request-ID": "abc123"})

        self.assertEqual(response.headers["X-Request-ID"], "abc123")
        self.assertEqual(response.headers["X-Frame-Options"], "DENY")
        self.assertEqual(response.headers["X-Content-Type-Options"], "nosniff")
        self.assertIn("Content-Security-Policy", response.headers)

    def test_human_filesize_filter(self):
        self.assertEqual(self.app_module.human_filesize(512), "512 B")
        self.assertEqual(self.app_module.human_filesize(2048), "2.00 KB")
        self.assertEqual(self.app_module.human_filesize(5 * 1024 * 1024), "5.00 MB")

    def test_main_prints_addresses_and_runs_server(self):
        with mock.patch.object(self.app, "run") as run, mock.patch(
            "builtins.print"
        ) as printed:
            self.app_module.main()

        run.assert_called_once_with(host="0.0.0.0", port=8080, debug=False, threaded=True)
        lines = [call.args[0] for call in printed.call_args_list]
        self.assertEqual(lines[0], "Server starting on http://localhost:8080")
        self.assertEqual(
            lines[1:],
            [f"Accessible at http://{ip}:8080" for ip in self.server_config.ip_addresses],
        )

    def test_main_exits_when_bind_fails(self):
        with mock.patch.object(
            self.app, "run", side_effect=OSError("Address already in use")
        ), mock.patch("builtins.print"):
            with self.assertRaises(SystemExit) as ctx:
                self.app_module.main()
        self.assertEqual(ctx.exception.code, 1)


if __name__ == "__main__":
    unittest.main()
