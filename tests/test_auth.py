import unittest

from src.config.settings import settings
from src.core.security import verify_password
from src.domain.users.models import User, UserRole, UserSession
from tests.base import DEFAULT_PASSWORD, BaseTest


class TestAuthEndpoints(BaseTest):
    """Test suite for email/password sign-up, sign-in and sign-out."""

    def _sign_up_payload(self, **overrides) -> dict:
        payload = {
            "email": "New.Dev@Example.com",
            "password": "secret123",
            "confirmPassword": "secret123",
            "role": "developer",
            "fullName": "New Dev",
            "givenName": "New",
            "familyName": "Dev",
        }
        payload.update(overrides)
        return payload

    async def test_sign_up_creates_user_and_session(self) -> None:
        response = await self.client.post("/api/auth/sign-up/email", json=self._sign_up_payload())

        self.assertEqual(response.status_code, 201)
        body = response.json()
        self.assertEqual(body["user"]["email"], "new.dev@example.com")
        self.assertEqual(body["user"]["role"], "developer")
        self.assertEqual(body["user"]["givenName"], "New")
        self.assertNotIn("passwordHash", body["user"])
        self.assertIn("expiresAt", body)

        set_cookie = response.headers["set-cookie"]
        self.assertIn(f"{settings.SESSION_COOKIE_NAME}=", set_cookie)
        self.assertIn("HttpOnly", set_cookie)
        self.assertEqual(await self.count(UserSession), 1)

        stored = await self.reload(User, body["user"]["id"])
        self.assertTrue(verify_password("secret123", stored.password_hash))

    async def test_sign_up_normalizes_camel_case_roles(self) -> None:
        response = await self.client.post(
            "/api/auth/sign-up/email", json=self._sign_up_payload(role="businessAnalyst")
        )

        self.assertEqual(response.status_code, 201)
        self.assertEqual(response.json()["user"]["role"], "business analyst")

    async def test_sign_up_duplicate_email_conflicts(self) -> None:
        await self.create_user(UserRole.DEVELOPER, email="new.dev@example.com")

        response = await self.client.post("/api/auth/sign-up/email", json=self._sign_up_payload())

        self.assertEqual(response.status_code, 409)
        self.assertEqual(response.json()["error"], "Conflict")

    async def test_sign_up_validation_failures(self) -> None:
        cases = [
            {"role": "admin"},
            {"password": "123"},
            {"confirmPassword": "different"},
            {"email": "not-an-email"},
        ]
        for overrides in cases:
            with self.subTest(overrides=overrides):
                response = await self.client.post("/api/auth/sign-up/email", json=self._sign_up_payload(**overrides))

                self.assertEqual(response.status_code, 400)
                body = response.json()
                self.assertEqual(body["type"], "ValidationFailed")
                self.assertTrue(body["details"])

        self.assertEqual(await self.count(User), 0)

    async def test_sign_in_and_cookie_session(self) -> None:
        """Verifies the cookie issued at sign-in authenticates follow-up requests."""
        user = await self.create_user(UserRole.DEVELOPER, email="dev@example.com")

        response = await self.client.post(
            "/api/auth/sign-in/email", json={"email": "DEV@example.com", "password": DEFAULT_PASSWORD}
        )
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["user"]["id"], user.id)

        me = await self.client.get("/api/users/me")
        self.assertEqual(me.status_code, 200)
        self.assertEqual(me.json()["email"], "dev@example.com")

    async def test_sign_in_rejects_bad_credentials(self) -> None:
        await self.create_user(UserRole.DEVELOPER, email="dev@example.com")

        wrong_password = await self.client.post(
            "/api/auth/sign-in/email", json={"email": "dev@example.com", "password": "wrong-one"}
        )
        unknown_email = await self.client.post(
            "/api/auth/sign-in/email", json={"email": "ghost@example.com", "password": DEFAULT_PASSWORD}
        )

        self.assertEqual(wrong_password.status_code, 401)
        self.assertEqual(unknown_email.status_code, 401)
        self.assertEqual(wrong_password.json()["message"], unknown_email.json()["message"])
        self.assertEqual(await self.count(UserSession), 0)

    async def test_sign_out_destroys_session(self) -> None:
        user = await self.create_user(UserRole.DEVELOPER)
        headers = await self.auth_headers(user)

        response = await self.client.post("/api/auth/sign-out", headers=headers)

        self.assertEqual(response.status_code, 200)
        self.assertEqual(await self.count(UserSession), 0)
        self.assertEqual((await self.client.get("/api/users/me", headers=headers)).status_code, 401)

    async def test_sign_out_without_session_still_succeeds(self) -> None:
        response = await self.client.post("/api/auth/sign-out")
        self.assertEqual(response.status_code, 200)


if __name__ == "__main__":
    unittest.main()
