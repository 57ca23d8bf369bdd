import asyncio
import gc
import unittest
from unittest.mock import patch

import bcrypt
from fastapi.testclient import TestClient

from memopad import routes
from memopad.app import create_app
from memopad.config import Settings
from memopad.platform import InMemoryPlatformClient, PlatformError


def _settings(**overrides) -> Settings:
    values = dict(
        _env_file=None,
        use_in_memory_backends=True,
        app_env="test",
        password_hash_rounds=4,
    )
    values.update(overrides)
    return Settings(**values)


class AppTestCase(unittest.TestCase):
    def setUp(self):
        self.platform = InMemoryPlatformClient()
        self.settings = _settings()
        self.client = TestClient(
            create_app(settings=self.settings, platform=self.platform)
        )

    def seed_memos(self, rows):
        asyncio.run(self.platform.insert("memos", rows))

    def sign_in(self, email="ada@example.com") -> str:
        asyncio.run(self.platform.sign_up(email, "correct horse"))
        code = self.platform.issue_auth_code(email)
        session = asyncio.run(self.platform.exchange_code_for_session(code))
        return session.access_token


class AuthCallbackTests(AppTestCase):
    def test_valid_code_redirects_to_landing_page(self):
        asyncio.run(self.platform.sign_up("ada@example.com", "correct horse"))
        code = self.platform.issue_auth_code("ada@example.com")

        response = self.client.get(
            "/api/auth/callback", params={"code": code}, follow_redirects=False
        )
        self.assertEqual(response.status_code, 307)
        self.assertEqual(response.headers["location"], "/home")
        self.assertIn("memopad-access-token=", response.headers["set-cookie"])
        self.assertEqual(len(self.platform.sessions), 1)

    def test_invalid_code_returns_500_with_platform_message(self):
        response = self.client.get(
            "/api/auth/callback", params={"code": "nope"}, follow_redirects=False
        )
        self.assertEqual(response.status_code, 500)
        self.assertEqual(
            response.json(), {"error": "invalid flow state, no valid flow state found"}
        )
        self.assertNotIn("location", response.headers)

    def test_missing_code_is_rejected_by_platform(self):
        response = self.client.get("/api/auth/callback", follow_redirects=False)
        self.assertEqual(response.status_code, 500)
        self.assertIn("error", response.json())

    def test_code_cannot_be_reused(self):
        asyncio.run(self.platform.sign_up("ada@example.com", "correct horse"))
        code = self.platform.issue_auth_code("ada@example.com")
        first = self.client.get(
            "/api/auth/callback", params={"code": code}, follow_redirects=False
        )
        second = self.client.get(
            "/api/auth/callback", params={"code": code}, follow_redirects=False
        )
        self.assertEqual(first.status_code, 307)
        self.assertEqual(second.status_code, 500)

    def test_legacy_callback_path(self):
        asyncio.run(self.platform.sign_up("ada@example.com", "correct horse"))
        code = self.platform.issue_auth_code("ada@example.com")
        response = self.client.get(
            "/api/auth/collback", params={"code": code}, follow_redirects=False
        )
        self.assertEqual(response.status_code, 307)


class HomeTests(AppTestCase):
    def test_session_shows_user_email(self):
        token = self.sign_in("ada@example.com")
        response = self.client.get(
            "/home",
            headers={"Authorization": f"Bearer {token}"},
            follow_redirects=False,
        )
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["email"], "ada@example.com")
        self.assertEqual(response.json()["message"], "Sign-up succeeded!")

    def test_no_session_redirects_to_signup(self):
        response = self.client.get("/home", follow_redirects=False)
        self.assertEqual(response.status_code, 307)
        self.assertEqual(response.headers["location"], "/signup")
        self.assertEqual(self.platform.calls.count(("get_session", "auth")), 1)

    def test_unknown_token_redirects_to_signup(self):
        response = self.client.get(
            "/home",
            headers={"Authorization": "Bearer forged"},
            follow_redirects=False,
        )
        self.assertEqual(response.status_code, 307)
        self.assertEqual(response.headers["location"], "/signup")

    def test_signup_form_lists_required_fields(self):
        response = self.client.get("/signup")
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["required"], ["email", "username", "password"])


class SignUpTests(AppTestCase):
    payload = {"email": "ada@example.com", "username": "ada", "password": "s3cret-pass"}

    def test_signup_creates_account_and_profile(self):
        response = self.client.post("/api/signup", json=self.payload)
        self.assertEqual(response.status_code, 201)
        body = response.json()
        self.assertEqual(body["email"], "ada@example.com")
        self.assertEqual(body["username"], "ada")

        self.assertIn("ada@example.com", self.platform.accounts)
        [profile] = self.platform.tables["users"]
        self.assertEqual(profile["username"], "ada")
        self.assertNotEqual(profile["password_hash"], "s3cret-pass")
        self.assertTrue(
            bcrypt.checkpw(b"s3cret-pass", profile["password_hash"].encode("utf-8"))
        )

    def test_duplicate_email_shows_platform_error(self):
        self.client.post("/api/signup", json=self.payload)
        response = self.client.post("/api/signup", json=self.payload)
        self.assertEqual(response.status_code, 400)
        self.assertEqual(
            response.json(),
            {"error": "User already registered", "account_created": False},
        )
        self.assertEqual(len(self.platform.tables["users"]), 1)

    def test_profile_failure_is_flagged_as_partial(self):
        with patch.object(
            self.platform, "insert", side_effect=PlatformError("permission denied")
        ):
            response = self.client.post("/api/signup", json=self.payload)
        self.assertEqual(response.status_code, 400)
        self.assertEqual(
            response.json(),
            {"error": "permission denied", "account_created": True},
        )
        self.assertIn("ada@example.com", self.platform.accounts)
        self.assertNotIn("users", self.platform.tables)

    def test_missing_field_is_rejected_before_platform(self):
        response = self.client.post(
            "/api/signup", json={"email": "ada@example.com", "password": "s3cret-pass"}
        )
        self.assertEqual(response.status_code, 422)
        self.assertEqual(self.platform.calls, [])

    def test_hash_column_can_be_disabled(self):
        client = TestClient(
            create_app(
                settings=_settings(store_profile_password_hash=False),
                platform=self.platform,
            )
        )
        response = client.post("/api/signup", json=self.payload)
        self.assertEqual(response.status_code, 201)
        [profile] = self.platform.tables["users"]
        self.assertNotIn("password_hash", profile)

    def test_profile_upsert_setting_merges_on_email(self):
        client = TestClient(
            create_app(settings=_settings(profile_upsert=True), platform=self.platform)
        )
        response = client.post("/api/signup", json=self.payload)
        self.assertEqual(response.status_code, 201)
        self.assertIn(("upsert", "users"), self.platform.calls)


class MemoRouteTests(AppTestCase):
    def test_list_is_newest_first(self):
        self.seed_memos(
            [
                {"id": 1, "content": "A", "created_at": "2024-05-02T00:00:00+00:00"},
                {"id": 2, "content": "B", "created_at": "2024-05-01T00:00:00+00:00"},
            ]
        )
        response = self.client.get("/api/memos")
        self.assertEqual(response.status_code, 200)
        self.assertEqual([m["content"] for m in response.json()], ["A", "B"])

    def test_create_and_delete(self):
        created = self.client.post("/api/memos", json={"content": "Buy milk"})
        self.assertEqual(created.status_code, 201)
        memo = created.json()
        self.assertEqual(memo["content"], "Buy milk")
        self.assertIsNotNone(memo["created_at"])

        deleted = self.client.delete(f"/api/memos/{memo['id']}")
        self.assertEqual(deleted.status_code, 204)
        self.assertEqual(self.client.get("/api/memos").json(), [])

    def test_blank_content_is_ignored(self):
        response = self.client.post("/api/memos", json={"content": "   \n"})
        self.assertEqual(response.status_code, 204)
        self.assertNotIn(("insert", "memos"), self.platform.calls)

    def test_delete_unknown_id_is_noop(self):
        self.seed_memos([{"content": "keep"}])
        response = self.client.delete("/api/memos/999")
        self.assertEqual(response.status_code, 204)
        self.assertEqual(len(self.client.get("/api/memos").json()), 1)

    def test_platform_failure_returns_502(self):
        with patch.object(
            self.platform, "select", side_effect=PlatformError("connection reset")
        ):
            with self.assertLogs("memopad.routes", level="ERROR"):
                response = self.client.get("/api/memos")
        self.assertEqual(response.status_code, 502)
        self.assertEqual(response.json()["detail"], "connection reset")


class LiveMemoTests(AppTestCase):
    def test_snapshot_then_local_changes(self):
        self.seed_memos([{"content": "B"}])
        with self.client.websocket_connect("/api/memos/live") as ws:
            snapshot = ws.receive_json()
            self.assertEqual(snapshot["type"], "SNAPSHOT")
            self.assertEqual([m["content"] for m in snapshot["memos"]], ["B"])

            ws.send_json({"action": "add", "content": "Buy milk"})
            inserted = ws.receive_json()
            self.assertEqual(inserted["type"], "INSERT")
            self.assertEqual(
                [m["content"] for m in inserted["memos"]], ["Buy milk", "B"]
            )

            # The feed echo of our own insert must not produce a second message.
            new_id = inserted["memos"][0]["id"]
            ws.send_json({"action": "delete", "id": new_id})
            deleted = ws.receive_json()
            self.assertEqual(deleted["type"], "DELETE")
            self.assertEqual([m["content"] for m in deleted["memos"]], ["B"])

    def test_changes_from_other_clients_are_pushed(self):
        with self.client.websocket_connect("/api/memos/live") as ws:
            self.assertEqual(ws.receive_json()["memos"], [])

            created = self.client.post("/api/memos", json={"content": "C"})
            self.assertEqual(created.status_code, 201)
            pushed = ws.receive_json()
            self.assertEqual(pushed["type"], "INSERT")
            self.assertEqual([m["content"] for m in pushed["memos"]], ["C"])

            self.client.delete(f"/api/memos/{created.json()['id']}")
            pushed = ws.receive_json()
            self.assertEqual(pushed["type"], "DELETE")
            self.assertEqual(pushed["memos"], [])

    def test_blank_and_invalid_actions(self):
        with self.client.websocket_connect("/api/memos/live") as ws:
            ws.receive_json()
            ws.send_json({"action": "add", "content": "   "})
            ws.send_json({"action": "rename"})
            error = ws.receive_json()
            self.assertEqual(error["type"], "ERROR")

            ws.send_json({"action": "delete"})
            error = ws.receive_json()
            self.assertEqual(error, {"type": "ERROR", "memos": [], "detail": "id is required"})
        self.assertNotIn(("insert", "memos"), self.platform.calls)

    def test_binary_frames_get_an_error(self):
        with self.client.websocket_connect("/api/memos/live") as ws:
            ws.receive_json()
            ws.send_bytes(b"\x00\x01")
            error = ws.receive_json()
            self.assertEqual(
                error, {"type": "ERROR", "memos": [], "detail": "text frames only"}
            )

            ws.send_json({"action": "add", "content": "still here"})
            self.assertEqual(ws.receive_json()["type"], "INSERT")


class ClosedSocket:
    """A client that drops before the first send goes out."""

    def __init__(self):
        self.sends = 0

    async def accept(self):
        pass

    async def send_json(self, data):
        self.sends += 1
        raise RuntimeError('Cannot call "send" once a close message has been sent.')

    async def receive(self):
        await asyncio.sleep(0.01)
        return {"type": "websocket.disconnect", "code": 1000}


class LiveMemoHandlerTests(unittest.IsolatedAsyncioTestCase):
    async def test_failed_send_is_collected_on_disconnect(self):
        loop_errors = []
        asyncio.get_running_loop().set_exception_handler(
            lambda loop, context: loop_errors.append(context)
        )
        platform = InMemoryPlatformClient()
        websocket = ClosedSocket()

        await routes.live_memos(websocket, platform=platform, settings=_settings())
        gc.collect()

        self.assertEqual(websocket.sends, 1)
        self.assertEqual(platform.listener_count, 0)
        self.assertEqual(loop_errors, [])


if __name__ == "__main__":
    unittest.main()
