import unittest
from unittest.mock import patch

from fastapi.testclient import TestClient

from love_health.app import create_app
from love_health.cache import InMemoryCache, profile_key
from love_health.config import Settings
from love_health.db import Database
from love_health.storage import InMemoryStorageClient

USERS = "/api/v1/users"


def build_settings(**overrides) -> Settings:
    values = dict(
        database_url="sqlite+pysqlite:///:memory:",
        jwt_secret="test-secret",
        bcrypt_rounds=4,
        use_in_memory_backends=True,
    )
    values.update(overrides)
    return Settings(**values)


class AppTestCase(unittest.TestCase):
    def setUp(self):
        self.settings = build_settings()
        self.db = Database(self.settings.database_url)
        self.addCleanup(self.db.dispose)
        self.storage = InMemoryStorageClient()
        self.cache = InMemoryCache()
        self.app = create_app(
            self.settings, database=self.db, storage=self.storage, cache=self.cache
        )
        # Entering the client runs the lifespan, which creates the tables.
        self.client = TestClient(self.app)
        self.client.__enter__()
        self.addCleanup(self.client.__exit__, None, None, None)

    @property
    def store(self):
        return self.app.state.user_store

    def register(self, username="alice1", password="Aa123456", **extra):
        payload = {"username": username, "password": password}
        payload.update(extra)
        return self.client.post(f"{USERS}/register", json=payload)

    def token_for(self, username="alice1", password="Aa123456", **extra) -> str:
        resp = self.register(username, password, **extra)
        self.assertEqual(resp.status_code, 201, resp.text)
        return resp.json()["data"]["token"]

    @staticmethod
    def auth(token: str) -> dict:
        return {"Authorization": f"Bearer {token}"}


class RegistrationTests(AppTestCase):
    def test_register_returns_user_and_token(self):
        resp = self.register(email="alice@example.com", nickname="Alice")
        self.assertEqual(resp.status_code, 201)
        body = resp.json()
        self.assertTrue(body["success"])
        self.assertEqual(body["code"], 201)
        self.assertIsInstance(body["timestamp"], int)
        user = body["data"]["user"]
        self.assertIsInstance(user["id"], int)
        self.assertEqual(user["nickname"], "Alice")
        self.assertNotIn("password_hash", user)
        self.assertTrue(body["data"]["token"])

    def test_nickname_defaults_to_username(self):
        resp = self.register()
        self.assertEqual(resp.json()["data"]["user"]["nickname"], "alice1")

    def test_duplicate_username_conflicts(self):
        self.register()
        resp = self.register()
        self.assertEqual(resp.status_code, 409)
        self.assertFalse(resp.json()["success"])
        self.assertEqual(resp.json()["message"], "Username already exists")

    def test_duplicate_email_conflicts(self):
        self.register(email="same@example.com")
        resp = self.register("bob123", email="same@example.com")
        self.assertEqual(resp.status_code, 409)
        self.assertEqual(resp.json()["message"], "Email is already in use")

    def test_validation_errors_use_envelope(self):
        resp = self.client.post(f"{USERS}/register", json={"username": "alice1"})
        self.assertEqual(resp.status_code, 400)
        body = resp.json()
        self.assertFalse(body["success"])
        self.assertIn("password", [item["field"] for item in body["data"]])

    def test_weak_password_rejected(self):
        resp = self.register(password="abcdef")
        self.assertEqual(resp.status_code, 400)


class LoginTests(AppTestCase):
    def setUp(self):
        super().setUp()
        self.register(email="alice@example.com", phone="13800138000")

    def login(self, username, password="Aa123456", **extra):
        payload = {"username": username, "password": password}
        payload.update(extra)
        return self.client.post(f"{USERS}/login", json=payload)

    def test_login_by_username_email_and_phone(self):
        for identifier in ("alice1", "alice@example.com", "13800138000"):
            resp = self.login(identifier)
            self.assertEqual(resp.status_code, 200, identifier)
            self.assertEqual(resp.json()["data"]["user"]["username"], "alice1")
            self.assertTrue(resp.json()["data"]["token"])

    def test_wrong_password(self):
        resp = self.login("alice1", "Wrong1234")
        self.assertEqual(resp.status_code, 401)
        self.assertFalse(resp.json()["success"])
        self.assertEqual(resp.json()["message"], "Incorrect password")

    def test_unknown_user(self):
        resp = self.login("nobody")
        self.assertEqual(resp.status_code, 404)

    def test_disabled_account(self):
        user = self.store.find_by_username("alice1")
        self.store.users.update(user["id"], {"status": 0})
        resp = self.login("alice1")
        self.assertEqual(resp.status_code, 403)

    def test_remember_me_issues_longer_token(self):
        resp = self.login("alice1", remember=True)
        self.assertTrue(resp.json()["data"]["remember"])


class ProfileTests(AppTestCase):
    def setUp(self):
        super().setUp()
        self.token = self.token_for(email="alice@example.com")

    def test_profile_requires_token(self):
        resp = self.client.get(f"{USERS}/profile")
        self.assertEqual(resp.status_code, 401)
        self.assertEqual(resp.json()["message"], "No bearer token supplied")

        resp = self.client.get(f"{USERS}/profile", headers=self.auth("garbage"))
        self.assertEqual(resp.status_code, 401)
        self.assertEqual(resp.json()["message"], "Invalid or expired token")

    def test_get_profile_is_cached(self):
        resp = self.client.get(f"{USERS}/profile", headers=self.auth(self.token))
        self.assertEqual(resp.status_code, 200)
        user = resp.json()["data"]["user"]
        self.assertEqual(user["username"], "alice1")
        self.assertTrue(
            self.cache.exists(profile_key(self.settings.cache_prefix, user["id"]))
        )

    def test_update_profile_invalidates_cache(self):
        self.client.get(f"{USERS}/profile", headers=self.auth(self.token))
        resp = self.client.put(
            f"{USERS}/profile",
            headers=self.auth(self.token),
            json={
                "nickname": "Ally",
                "birthday": "1995-03-04",
                "height": 165.5,
                "preference": {"diet": "vegan"},
                "phone": "13900139000",
            },
        )
        self.assertEqual(resp.status_code, 200, resp.text)
        updated = resp.json()["data"]["user"]
        self.assertEqual(updated["nickname"], "Ally")
        self.assertEqual(updated["birthday"], "1995-03-04")
        self.assertEqual(updated["preference"], {"diet": "vegan"})

        resp = self.client.get(f"{USERS}/profile", headers=self.auth(self.token))
        self.assertEqual(resp.json()["data"]["user"]["nickname"], "Ally")
        self.assertEqual(resp.json()["data"]["user"]["phone"], "13900139000")

    def test_update_profile_rejects_taken_email(self):
        self.register("bob123", email="bob@example.com")
        resp = self.client.put(
            f"{USERS}/profile",
            headers=self.auth(self.token),
            json={"email": "bob@example.com"},
        )
        self.assertEqual(resp.status_code, 409)

    def test_keeping_own_email_is_allowed(self):
        resp = self.client.put(
            f"{USERS}/profile",
            headers=self.auth(self.token),
            json={"email": "alice@example.com"},
        )
        self.assertEqual(resp.status_code, 200)

    def test_password_change(self):
        resp = self.client.put(
            f"{USERS}/profile",
            headers=self.auth(self.token),
            json={"password": "Bb654321"},
        )
        self.assertEqual(resp.status_code, 200)
        self.assertNotIn("password_hash", resp.json()["data"]["user"])
        login = self.client.post(
            f"{USERS}/login", json={"username": "alice1", "password": "Bb654321"}
        )
        self.assertEqual(login.status_code, 200)

    def test_status_cannot_be_changed_by_owner(self):
        resp = self.client.put(
            f"{USERS}/profile", headers=self.auth(self.token), json={"status": 0}
        )
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(self.store.find_by_username("alice1")["status"], 1)

    def test_avatar_upload(self):
        resp = self.client.post(
            f"{USERS}/avatar",
            headers=self.auth(self.token),
            files={"file": ("me.png", b"\x89PNG fake", "image/png")},
        )
        self.assertEqual(resp.status_code, 200, resp.text)
        data = resp.json()["data"]
        self.assertTrue(data["object_name"].startswith("me-"))
        self.assertTrue(data["object_name"].endswith(".png"))
        self.assertEqual(
            self.storage.get_bytes(self.storage.public_bucket, data["object_name"]),
            b"\x89PNG fake",
        )
        self.assertEqual(self.store.find_by_username("alice1")["avatar"], data["url"])

    def test_avatar_must_be_image(self):
        resp = self.client.post(
            f"{USERS}/avatar",
            headers=self.auth(self.token),
            files={"file": ("notes.txt", b"hello", "text/plain")},
        )
        self.assertEqual(resp.status_code, 400)


class AccountLifecycleTests(AppTestCase):
    def setUp(self):
        super().setUp()
        self.token = self.token_for()
        self.user_id = self.store.find_by_username("alice1")["id"]

    def promote(self, username):
        user = self.store.find_by_username(username)
        self.store.users.update(user["id"], {"role": "admin"})

    def test_deleted_account_token_rejected(self):
        resp = self.client.delete(f"{USERS}/account", headers=self.auth(self.token))
        self.assertEqual(resp.status_code, 200)

        resp = self.client.get(f"{USERS}/profile", headers=self.auth(self.token))
        self.assertEqual(resp.status_code, 401)
        self.assertEqual(
            resp.json()["message"], "User does not exist or has been disabled"
        )
        login = self.client.post(
            f"{USERS}/login", json={"username": "alice1", "password": "Aa123456"}
        )
        self.assertEqual(login.status_code, 404)
        self.assertIsNotNone(self.store.get(self.user_id, include_deleted=True))

    def test_admin_routes_forbidden_for_users(self):
        resp = self.client.get(f"{USERS}/list", headers=self.auth(self.token))
        self.assertEqual(resp.status_code, 403)
        resp = self.client.post(
            f"{USERS}/{self.user_id}/restore", headers=self.auth(self.token)
        )
        self.assertEqual(resp.status_code, 403)

    def test_admin_list_and_restore(self):
        admin_token = self.token_for("admin1", "Admin123")
        self.promote("admin1")
        self.client.delete(f"{USERS}/account", headers=self.auth(self.token))

        resp = self.client.get(f"{USERS}/list", headers=self.auth(admin_token))
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json()["data"]["pagination"]["total"], 1)

        resp = self.client.get(
            f"{USERS}/list",
            params={"with_deleted": "true", "limit": 1},
            headers=self.auth(admin_token),
        )
        pagination = resp.json()["data"]["pagination"]
        self.assertEqual(pagination["total"], 2)
        self.assertEqual(pagination["total_pages"], 2)
        self.assertEqual(len(resp.json()["data"]["users"]), 1)

        resp = self.client.post(
            f"{USERS}/{self.user_id}/restore", headers=self.auth(admin_token)
        )
        self.assertEqual(resp.status_code, 200)
        resp = self.client.get(f"{USERS}/profile", headers=self.auth(self.token))
        self.assertEqual(resp.status_code, 200)

    def test_restore_unknown_user(self):
        admin_token = self.token_for("admin1", "Admin123")
        self.promote("admin1")
        resp = self.client.post(f"{USERS}/9999/restore", headers=self.auth(admin_token))
        self.assertEqual(resp.status_code, 404)

    def test_list_rejects_bad_paging(self):
        admin_token = self.token_for("admin1", "Admin123")
        self.promote("admin1")
        resp = self.client.get(
            f"{USERS}/list", params={"limit": 0}, headers=self.auth(admin_token)
        )
        self.assertEqual(resp.status_code, 400)


class UserCardTests(AppTestCase):
    def setUp(self):
        super().setUp()
        self.token = self.token_for(email="alice@example.com")
        self.user_id = self.store.find_by_username("alice1")["id"]

    def test_anonymous_sees_public_card(self):
        resp = self.client.get(f"{USERS}/{self.user_id}")
        self.assertEqual(resp.status_code, 200)
        user = resp.json()["data"]["user"]
        self.assertEqual(user["username"], "alice1")
        self.assertNotIn("email", user)

    def test_invalid_token_falls_back_to_public_card(self):
        resp = self.client.get(f"{USERS}/{self.user_id}", headers=self.auth("junk"))
        self.assertEqual(resp.status_code, 200)
        self.assertNotIn("email", resp.json()["data"]["user"])

    def test_owner_sees_full_record(self):
        resp = self.client.get(f"{USERS}/{self.user_id}", headers=self.auth(self.token))
        self.assertEqual(resp.json()["data"]["user"]["email"], "alice@example.com")

    def test_other_user_sees_public_card(self):
        other = self.token_for("bob123", "Bb123456")
        resp = self.client.get(f"{USERS}/{self.user_id}", headers=self.auth(other))
        self.assertNotIn("email", resp.json()["data"]["user"])

    def test_deleted_user_card_not_found(self):
        self.store.soft_delete(self.user_id)
        resp = self.client.get(f"{USERS}/{self.user_id}")
        self.assertEqual(resp.status_code, 404)


class PlumbingTests(AppTestCase):
    def test_health(self):
        resp = self.client.get("/health")
        self.assertEqual(resp.json(), {"status": "ok", "database": True})

    def test_unknown_route_uses_envelope(self):
        resp = self.client.get("/api/v1/nothing-here")
        self.assertEqual(resp.status_code, 404)
        body = resp.json()
        self.assertFalse(body["success"])
        self.assertEqual(body["message"], "The requested API resource was not found")

    def test_unexpected_errors_become_500(self):
        client = TestClient(self.app, raise_server_exceptions=False)
        with patch("love_health.routes.issue_token", side_effect=RuntimeError("boom")):
            resp = client.post(
                f"{USERS}/register", json={"username": "alice1", "password": "Aa123456"}
            )
        self.assertEqual(resp.status_code, 500)
        self.assertFalse(resp.json()["success"])
        self.assertEqual(resp.json()["message"], "boom")


if __name__ == "__main__":
    unittest.main()
