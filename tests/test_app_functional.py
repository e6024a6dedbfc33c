import base64
import importlib
import io
import json
import os
import sys
import tempfile
import time
import unittest
import zipfile
from pathlib import Path
from unittest import mock

import requests


def _segment(raw: str) -> str:
    return base64.urlsafe_b64encode(raw.encode("utf-8")).decode("ascii").rstrip("=")


def make_token(user_id="1", is_admin=False, expires_in=3600, username="tester"):
    payload = json.dumps(
        {"user_id": user_id, "is_admin": is_admin, "exp": time.time() + expires_in, "username": username}
    )
    return ".".join([_segment('{"alg":"HS256","typ":"JWT"}'), _segment(payload), "signature"])


def _modules():
    return [name for name in sys.modules if name == "filedesk" or name.startswith("filedesk.")]


class FileDeskAppIntegrationTests(unittest.TestCase):
    def setUp(self):
        self.storage_dir = tempfile.TemporaryDirectory()
        root = Path(self.storage_dir.name)
        os.environ["FILEDESK_STORAGE_ROOT"] = str(root)
        os.environ["FILEDESK_DATA_DIR"] = str(root / "data")
        os.environ["FILEDESK_LOGS_DIR"] = str(root / "logs")
        os.environ["SECRET_KEY"] = "test-secret"
        os.environ["SESSION_COOKIE_SECURE"] = "0"
        os.environ.pop("FILEDESK_API_URL", None)
        self._reload_app()
        self.app.config.update(TESTING=True, WTF_CSRF_ENABLED=False)
        self.client = self.app.test_client()

        patcher = mock.patch.object(self.app_module, "StorageAPIClient")
        self.client_cls = patcher.start()
        self.addCleanup(patcher.stop)
        self.api = self.client_cls.return_value
        self.api.list_users.return_value = []
        self.api.list_all_folders.return_value = []
        self.api.list_files.return_value = {"path": "", "folders": [], "files": []}

    def tearDown(self):
        self.app_module._shutdown_scheduler()
        self.storage_dir.cleanup()
        for key in [
            "FILEDESK_STORAGE_ROOT",
            "FILEDESK_DATA_DIR",
            "FILEDESK_LOGS_DIR",
            "SECRET_KEY",
            "SESSION_COOKIE_SECURE",
        ]:
            os.environ.pop(key, None)
        for module in _modules():
            sys.modules.pop(module, None)

    def _reload_app(self):
        for module in _modules():
            del sys.modules[module]

        app_module = importlib.import_module("filedesk.app")  # noqa: WPS433
        self.app = app_module.app
        self.app_module = app_module
        self.api_module = importlib.import_module("filedesk.api")
        self.operations_module = importlib.import_module("filedesk.operations")

    def _sign_in(self, is_admin=True, user_id="1", **kwargs):
        with self.client.session_transaction() as sess:
            sess["api_token"] = make_token(user_id=user_id, is_admin=is_admin, **kwargs)
            sess.pop("api_claims", None)

    def _session(self):
        with self.client.session_transaction() as sess:
            return dict(sess)

    # Authentication

    def test_index_redirects_by_role(self):
        response = self.client.get("/")
        self.assertTrue(response.headers["Location"].endswith("/login"))

        self._sign_in(is_admin=True)
        response = self.client.get("/")
        self.assertTrue(response.headers["Location"].endswith("/admin"))

        self._sign_in(is_admin=False)
        response = self.client.get("/")
        self.assertTrue(response.headers["Location"].endswith("/dashboard"))

    def test_login_stores_token_and_redirects_admin(self):
        token = make_token(user_id="123456789012345678", is_admin=True)
        self.api.login.return_value = token

        response = self.client.post("/login", data={"username": "admin", "password": "secret"})

        self.assertEqual(response.status_code, 302)
        self.assertTrue(response.headers["Location"].endswith("/admin"))
        self.api.login.assert_called_once_with("admin", "secret")
        self.client_cls.assert_any_call("http://localhost:8080/api/v1", token=None, timeout=30.0)
        session = self._session()
        self.assertEqual(session["api_token"], token)
        self.assertEqual(session["api_claims"]["user_id"], "123456789012345678")

    def test_login_redirects_regular_user_to_dashboard(self):
        self.api.login.return_value = make_token(is_admin=False)
        response = self.client.post("/login", data={"username": "bob", "password": "secret"})
        self.assertTrue(response.headers["Location"].endswith("/dashboard"))

    def test_login_failure_shows_error(self):
        self.api.login.side_effect = self.api_module.APIError("Invalid credentials", 401)
        response = self.client.post("/login", data={"username": "bob", "password": "bad"})
        self.assertEqual(response.status_code, 401)
        self.assertIn(b"Login failed", response.data)
        self.assertNotIn("api_token", self._session())

    def test_login_returns_to_requested_page(self):
        response = self.client.get("/dashboard", query_string={"path": "docs/"})
        self.assertTrue(response.headers["Location"].endswith("/login"))

        self.api.login.return_value = make_token(is_admin=False)
        response = self.client.post("/login", data={"username": "bob", "password": "secret"})
        self.assertIn("/dashboard?path=docs", response.headers["Location"])

    def test_logout_clears_session(self):
        self._sign_in()
        response = self.client.post("/logout")
        self.assertTrue(response.headers["Location"].endswith("/login"))
        self.assertNotIn("api_token", self._session())

    def test_expired_token_requires_login(self):
        self._sign_in(expires_in=-5)
        response = self.client.get("/dashboard")
        self.assertTrue(response.headers["Location"].endswith("/login"))
        self.assertNotIn("api_token", self._session())

    def test_backend_rejection_of_token_ends_session(self):
        self._sign_in(is_admin=False)
        self.api.list_files.side_effect = self.api_module.APIError("token expired", 401)
        response = self.client.get("/dashboard")
        self.assertTrue(response.headers["Location"].endswith("/login"))
        self.assertNotIn("api_token", self._session())

    def test_admin_pages_reject_regular_users(self):
        self._sign_in(is_admin=False)
        response = self.client.get("/admin")
        self.assertEqual(response.status_code, 302)
        self.assertTrue(response.headers["Location"].endswith("/login"))
        self.api.list_users.assert_not_called()

    def test_json_routes_return_401_and_403(self):
        response = self.client.get("/api/files")
        self.assertEqual(response.status_code, 401)
        self.assertIn("error", response.get_json())

        self._sign_in(is_admin=False)
        response = self.client.post("/api/storage/move", json={"items": ["a.txt"], "destination": "b/"})
        self.assertEqual(response.status_code, 403)

    # Administration

    def test_admin_panel_lists_users(self):
        self._sign_in()
        self.api.list_users.return_value = [
            {
                "id": "7",
                "username": "alice",
                "alias": "Alice A.",
                "email": "alice@example.com",
                "is_admin": False,
                "notify_by_email": True,
                "created_at": "2024-01-02T03:04:05Z",
                "permissions": [{"id": "3", "folder_prefix": "docs/"}],
            }
        ]
        response = self.client.get("/admin")
        self.assertEqual(response.status_code, 200)
        self.assertIn(b"alice", response.data)
        self.assertIn(b"docs/", response.data)
        self.assertIn(b"2024-01-02 03:04 UTC", response.data)

    def test_created_user_password_is_shown_once(self):
        self._sign_in()
        self.api.create_user.return_value = {"message": "", "user_id": "5", "password": "Gen3rated!"}

        response = self.client.post(
            "/admin/users", data={"username": "bob", "password": "", "alias": "Bob", "email": ""}
        )
        self.assertEqual(response.status_code, 302)
        self.api.create_user.assert_called_once_with(
            "bob", "", "Bob", is_admin=False, email="", notify_by_email=False
        )

        first = self.client.get("/admin")
        self.assertIn(b"Gen3rated!", first.data)
        self.assertIn(b"User bob created.", first.data)
        second = self.client.get("/admin")
        self.assertNotIn(b"Gen3rated!", second.data)

    def test_create_user_rejects_invalid_input(self):
        self._sign_in()
        response = self.client.post(
            "/admin/users", data={"username": "bad name", "password": ""}, follow_redirects=True
        )
        self.assertIn(b"Failed to create user", response.data)
        self.api.create_user.assert_not_called()

        response = self.client.post(
            "/admin/users",
            data={"username": "bob", "notify_by_email": "1", "email": ""},
            follow_redirects=True,
        )
        self.assertIn(b"Email is required", response.data)
        self.api.create_user.assert_not_called()

    def test_update_user_sends_profile(self):
        self._sign_in()
        response = self.client.post(
            "/admin/users/7",
            data={"username": "alice", "alias": "Alice", "email": "a@example.com", "notify_by_email": "1"},
        )
        self.assertEqual(response.status_code, 302)
        self.api.update_user.assert_called_once_with("7", "Alice", "a@example.com", True)

    def test_reset_password_shows_generated_password(self):
        self._sign_in()
        self.api.reset_user_password.return_value = {"message": "", "password": "N3wGenerated"}
        self.client.post("/admin/users/7/password", data={"username": "alice", "password": ""})
        self.api.reset_user_password.assert_called_once_with("7", "")
        self.assertIn(b"N3wGenerated", self.client.get("/admin").data)

    def test_delete_user(self):
        self._sign_in()
        response = self.client.post("/admin/users/7/delete", follow_redirects=True)
        self.api.delete_user.assert_called_once_with("7")
        self.assertIn(b"User deleted.", response.data)

    def test_duplicate_permission_is_not_sent(self):
        self._sign_in()
        self.api.get_user.return_value = {"id": "7", "permissions": [{"folder_prefix": "docs/"}]}
        response = self.client.post(
            "/admin/users/7/permissions", data={"folder_prefix": "docs"}, follow_redirects=True
        )
        self.assertIn(b"Permission already exists.", response.data)
        self.api.assign_permission.assert_not_called()

    def test_grant_and_revoke_permission(self):
        self._sign_in()
        self.api.get_user.return_value = {"id": "7", "permissions": []}
        self.client.post("/admin/users/7/permissions", data={"folder_prefix": "/reports"})
        self.api.assign_permission.assert_called_once_with("7", "reports/")

        self.client.post("/admin/permissions/3/revoke")
        self.api.revoke_permission.assert_called_once_with("3")

    def test_admin_self_update_logs_out(self):
        self._sign_in()
        response = self.client.post("/admin/self", data={"username": "", "password": "newpassword1"})
        self.api.update_admin_self.assert_called_once_with("", "newpassword1")
        self.assertTrue(response.headers["Location"].endswith("/login"))
        self.assertNotIn("api_token", self._session())

    def test_admin_self_update_requires_a_change(self):
        self._sign_in()
        self.client.post("/admin/self", data={"username": "", "password": ""})
        self.api.update_admin_self.assert_not_called()
        self.assertIn("api_token", self._session())

    def test_settings_update_persists(self):
        self._sign_in()
        response = self.client.post(
            "/settings",
            data={
                "api_base_url": "https://api.example.com/",
                "proxy_hosts": "storage.example.com, cdn.example.com",
                "proxy_prefix": "/s3proxy",
                "default_locale": "en",
                "success_message_ms": "4000",
                "archive_max_files": "25",
            },
        )
        self.assertEqual(response.status_code, 302)
        config = self.app_module.get_config(refresh=True)
        self.assertEqual(config["api_base_url"], "https://api.example.com")
        self.assertEqual(config["proxy_hosts"], ["storage.example.com", "cdn.example.com"])
        self.assertEqual(config["success_message_ms"], 4000.0)
        self.assertEqual(config["archive_max_files"], 25.0)

        self.client.get("/dashboard")
        self.client_cls.assert_called_with(
            "https://api.example.com/api/v1", token=mock.ANY, timeout=30.0
        )

    def test_settings_rejects_non_numeric_values(self):
        self._sign_in()
        response = self.client.post("/settings", data={"success_message_ms": "soon"})
        self.assertEqual(response.status_code, 400)

    # File manager

    def test_dashboard_lists_folder_contents(self):
        self._sign_in()
        self.api.list_files.return_value = {
            "path": "docs/",
            "folders": ["docs/reports/"],
            "files": [
                {
                    "key": "docs/a.pdf",
                    "name": "a.pdf",
                    "url": None,
                    "created_at": "2024-01-02T03:04:05Z",
                    "access_type": "read_only",
                    "access_list": [{"username": "bob", "alias": "Bobby", "last_viewed_at": None}],
                }
            ],
        }
        response = self.client.get("/dashboard", query_string={"path": "docs"})
        self.assertEqual(response.status_code, 200)
        self.api.list_files.assert_called_once_with("docs/")
        self.assertIn(b"reports", response.data)
        self.assertIn(b"a.pdf", response.data)
        self.assertIn(b"Bobby", response.data)
        self.assertIn(b"View only", response.data)

    def test_dashboard_hides_admin_controls_from_users(self):
        self._sign_in(is_admin=False)
        response = self.client.get("/dashboard")
        self.assertEqual(response.status_code, 200)
        self.assertNotIn(b'value="move"', response.data)
        self.assertIn(b'value="download"', response.data)
        self.api.list_all_folders.assert_not_called()

    def test_create_folder(self):
        self._sign_in()
        self.client.post("/dashboard/folders", data={"path": "docs/", "name": "new"})
        self.api.create_folder.assert_called_once_with("docs/new/")

    def test_batch_move_calls_backend(self):
        self._sign_in()
        response = self.client.post(
            "/dashboard/batch",
            data={"action": "move", "items": ["docs/a.pdf", "docs/old/"], "destination": "archive/", "path": "docs/"},
        )
        self.assertIn("/dashboard", response.headers["Location"])
        self.api.move_items.assert_called_once_with(["docs/old/", "docs/a.pdf"], "archive/")

    def test_batch_move_into_itself_is_rejected(self):
        self._sign_in()
        response = self.client.post(
            "/dashboard/batch",
            data={"action": "move", "items": ["docs/"], "destination": "docs/inner/"},
            follow_redirects=True,
        )
        self.api.move_items.assert_not_called()
        self.assertIn(b"into its own subfolder", response.data)

    def test_batch_without_selection(self):
        self._sign_in()
        response = self.client.post("/dashboard/batch", data={"action": "delete"}, follow_redirects=True)
        self.assertIn(b"Select at least one item first.", response.data)
        self.api.delete_items.assert_not_called()

    def test_batch_changes_require_admin(self):
        self._sign_in(is_admin=False)
        self.client.post("/dashboard/batch", data={"action": "delete", "items": ["a.txt"]})
        self.api.delete_items.assert_not_called()

    def test_batch_access_update(self):
        self._sign_in()
        response = self.client.post(
            "/dashboard/batch",
            data={"action": "access", "items": ["a.pdf", "b.pdf"], "access_type": "read_only"},
            follow_redirects=True,
        )
        self.api.set_access_type.assert_called_once_with(["a.pdf", "b.pdf"], "read_only")
        self.assertIn(b"Access updated for 2 files.", response.data)

    def test_russian_batch_message_uses_plural_forms(self):
        self._sign_in()
        self.client.get("/lang/ru")
        response = self.client.post(
            "/dashboard/batch",
            data={"action": "delete", "items": ["a.txt", "b.txt", "c.txt", "d.txt", "e.txt"]},
            follow_redirects=True,
        )
        self.assertIn("Удалено: 5 элементов.", response.get_data(as_text=True))

    def test_download_skips_unreachable_files(self):
        self._sign_in(is_admin=False)
        self.api.request_archive.return_value = self.api_module.ArchivePlan(
            entries=[
                {"key": "docs/a.txt", "url": "https://s/a"},
                {"key": "docs/b.txt", "url": "https://s/b"},
            ]
        )

        timeouts = []

        def fake_fetch(session, url, timeout):
            timeouts.append(timeout)
            if url.endswith("/b"):
                raise requests.ConnectionError("reset")
            return b"alpha"

        with mock.patch.object(self.operations_module, "fetch_object", side_effect=fake_fetch):
            response = self.client.post(
                "/dashboard/batch",
                data={"action": "download", "items": ["docs/a.txt", "docs/b.txt"], "path": "docs/"},
            )

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.mimetype, "application/zip")
        self.assertEqual(response.headers["X-Archive-Failed"], "1")
        self.assertIn("archive.zip", response.headers["Content-Disposition"])
        with zipfile.ZipFile(io.BytesIO(response.data)) as archive:
            self.assertEqual(archive.read("a.txt"), b"alpha")
            self.assertIn("_failed.txt", archive.namelist())
        self.api.request_archive.assert_called_once_with(["docs/a.txt", "docs/b.txt"], [])
        self.assertEqual(timeouts, [30.0, 30.0])

    def test_open_file_redirects_through_proxy(self):
        self._sign_in(is_admin=False)
        self.api.presign.return_value = {
            "url": "https://storage.yandexcloud.net/bucket/docs/a.pdf?X-Amz-Signature=abc",
            "status": None,
            "pages": [],
        }
        response = self.client.get("/files/open", query_string={"key": "docs/a.pdf"})
        self.assertEqual(response.status_code, 302)
        self.assertTrue(
            response.headers["Location"].endswith("/s3proxy/bucket/docs/a.pdf?X-Amz-Signature=abc")
        )

    def test_open_converted_document_uses_viewer(self):
        self._sign_in(is_admin=False)
        self.api.presign.return_value = {"url": None, "status": "converted", "pages": ["https://x/1.png"]}
        response = self.client.get("/files/open", query_string={"key": "docs/a.pdf"})
        self.assertIn("/view?fileKey=docs", response.headers["Location"])

    def test_viewer_renders_proxied_pages(self):
        self._sign_in(is_admin=False)
        self.api.presign.return_value = {
            "url": None,
            "status": "converted",
            "pages": [
                "https://storage.yandexcloud.net/bucket/pages/1.png?sig=1",
                "https://storage.yandexcloud.net/bucket/pages/2.png?sig=2",
            ],
        }
        response = self.client.get("/view", query_string={"fileKey": "docs/a.pdf"})
        self.assertEqual(response.status_code, 200)
        self.assertIn(b"/s3proxy/bucket/pages/1.png?sig=1", response.data)
        self.assertIn(b"Page 1 of 2", response.data)

    def test_viewer_rejects_unconverted_files(self):
        self._sign_in(is_admin=False)
        self.api.presign.return_value = {"url": "https://x/a.pdf", "status": None, "pages": []}
        response = self.client.get("/view", query_string={"fileKey": "docs/a.pdf"})
        self.assertEqual(response.status_code, 415)
        self.assertIn(b"cannot be opened in view mode", response.data)

    def test_storage_proxy_forwards_range(self):
        self._sign_in(is_admin=False)
        upstream = mock.Mock(
            status_code=206,
            headers={"Content-Type": "application/pdf", "Content-Range": "bytes 0-3/10", "Content-Length": "4"},
        )
        upstream.iter_content.return_value = [b"%PDF"]
        with mock.patch.object(self.app_module.requests, "get", return_value=upstream) as get:
            response = self.client.get("/s3proxy/bucket/a.pdf?sig=1", headers={"Range": "bytes=0-3"})
            body = response.data

        self.assertEqual(response.status_code, 206)
        self.assertEqual(body, b"%PDF")
        self.assertEqual(response.headers["Content-Range"], "bytes 0-3/10")
        get.assert_called_once_with(
            "https://storage.yandexcloud.net/bucket/a.pdf?sig=1",
            headers={"Range": "bytes=0-3"},
            stream=True,
            timeout=30.0,
        )
        upstream.close.assert_called_once()

    def test_upload_is_tracked(self):
        self._sign_in(user_id="42")
        self.api.generate_upload_url.return_value = "https://storage.yandexcloud.net/bucket/docs/a.txt?sig=1"
        with mock.patch("filedesk.uploads.requests.put", return_value=mock.Mock(ok=True, status_code=200)) as put:
            response = self.client.post(
                "/dashboard/upload",
                data={"path": "docs/", "files": [(io.BytesIO(b"hello"), "a.txt")]},
                content_type="multipart/form-data",
                headers={"Accept": "application/json"},
            )

        self.assertEqual(response.status_code, 201)
        record = response.get_json()["uploads"][0]
        self.assertEqual(record["key"], "docs/a.txt")
        self.assertEqual(record["status"], "done")
        self.assertEqual(record["size"], 5)
        self.assertEqual(put.call_count, 1)

        listing = self.client.get("/uploads").get_json()
        self.assertEqual([item["id"] for item in listing["uploads"]], [record["id"]])
        self.assertEqual(self.client.get(f"/uploads/{record['id']}").status_code, 200)

        self._sign_in(user_id="43")
        self.assertEqual(self.client.get(f"/uploads/{record['id']}").status_code, 404)

    def test_failed_upload_is_reported(self):
        self._sign_in()
        self.api.generate_upload_url.side_effect = self.api_module.APIError("Forbidden", 403)
        response = self.client.post(
            "/dashboard/upload",
            data={"path": "", "files": [(io.BytesIO(b"hello"), "a.txt")]},
            content_type="multipart/form-data",
            follow_redirects=True,
        )
        self.assertIn(b"Upload of a.txt failed: Forbidden", response.data)

    # JSON endpoints

    def test_api_files_rewrites_storage_urls(self):
        self._sign_in(is_admin=False)
        self.api.list_files.return_value = {
            "path": "",
            "folders": [],
            "files": [{"key": "a.txt", "name": "a.txt", "url": "https://storage.yandexcloud.net/b/a.txt?s=1"}],
        }
        payload = self.client.get("/api/files").get_json()
        self.assertEqual(payload["files"][0]["url"], "/s3proxy/b/a.txt?s=1")

    def test_api_move_rejects_descendant(self):
        self._sign_in()
        response = self.client.post("/api/storage/move", json={"items": ["docs/"], "destination": "docs/a/"})
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.get_json()["field"], "destination")
        self.api.move_items.assert_not_called()

    def test_api_copy(self):
        self._sign_in()
        self.api.copy_items.return_value = "copied"
        response = self.client.post("/api/storage/copy", json={"sources": ["a.txt"], "destination": "b"})
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.get_json()["message"], "copied")
        self.api.copy_items.assert_called_once_with(["a.txt"], "b/")

    def test_api_delete_items(self):
        self._sign_in()
        self.api.delete_items.return_value = "deleted"
        response = self.client.delete("/api/storage/items", json={"keys": ["a.txt"], "folders": ["old"]})
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.get_json()["message"], "deleted")
        self.api.delete_items.assert_called_once_with(["a.txt"], ["old/"])

    def test_api_backend_errors_keep_status(self):
        self._sign_in()
        self.api.set_access_type.side_effect = self.api_module.APIError("No such key", 404)
        response = self.client.put("/api/storage/access", json={"keys": ["a.txt"], "access_type": "read_only"})
        self.assertEqual(response.status_code, 404)
        self.assertEqual(response.get_json()["error"], "No such key")

    # Ambient behaviour

    def test_language_switch(self):
        self.client.get("/lang/ru")
        response = self.client.get("/login")
        self.assertIn("Вход", response.get_data(as_text=True))

    def test_security_headers_and_request_id(self):
        response = self.client.get("/login", headers={"X-Request-ID": "abc123"})
        self.assertEqual(response.headers["X-Frame-Options"], "DENY")
        self.assertEqual(response.headers["X-Content-Type-Options"], "nosniff")
        self.assertEqual(response.headers["X-Request-ID"], "abc123")

    def test_health_check(self):
        response = self.client.get("/health")
        self.assertEqual(response.status_code, 200)
        payload = response.get_json()
        self.assertEqual(payload["status"], "healthy")
        self.assertEqual(payload["checks"]["upload_pruning"], "scheduled")

    def test_scheduler_shutdown_can_repeat(self):
        self.app_module._shutdown_scheduler()
        self.assertFalse(self.app_module.scheduler.running)
        self.app_module._shutdown_scheduler()

    def test_unknown_page_renders_404(self):
        response = self.client.get("/does-not-exist")
        self.assertEqual(response.status_code, 404)
        self.assertIn(b"Page not found", response.data)


if __name__ == "__main__":
    unittest.main()
