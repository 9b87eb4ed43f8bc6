import unittest
from datetime import timedelta

from src import version
from src.config.settings import settings
from src.domain.users.models import UserRole
from tests.base import BaseTest


class TestApplication(BaseTest):
    """Test suite for system endpoints, tracing headers and error envelopes."""

    async def test_health_check(self) -> None:
        response = await self.client.get("/health")

        self.assertEqual(response.status_code, 200)
        self.assertEqual(
            response.json(), {"status": "ok", "service": settings.APP_NAME, "version": version.VERSION}
        )

    async def test_request_tracing_headers(self) -> None:
        first = await self.client.get("/health")
        second = await self.client.get("/health")

        self.assertIn("X-Process-Time", first.headers)
        self.assertNotEqual(first.headers["X-Request-ID"], second.headers["X-Request-ID"])

    async def test_missing_session_payload(self) -> None:
        response = await self.client.get("/api/bugs")

        self.assertEqual(response.status_code, 401)
        self.assertEqual(response.json()["error"], "Unauthenticated")
        self.assertIn("X-Request-ID", response.headers)

    async def test_expired_session_payload(self) -> None:
        user = await self.create_user(UserRole.DEVELOPER)
        token = await self.open_session(user, ttl=timedelta(minutes=-1))

        response = await self.client.get("/api/bugs", headers={"Authorization": f"Bearer {token}"})

        self.assertEqual(response.status_code, 401)
        self.assertEqual(response.json()["error"], "SessionExpired")

    async def test_forbidden_payload_names_roles(self) -> None:
        _, headers = await self.login_as(UserRole.USER)

        response = await self.client.get("/api/bugs", headers=headers)

        self.assertEqual(response.status_code, 403)
        body = response.json()
        self.assertEqual(body["error"], "Forbidden")
        self.assertEqual(body["actual"], "user")

    async def test_malformed_path_parameter_is_400(self) -> None:
        _, headers = await self.login_as(UserRole.DEVELOPER)

        response = await self.client.get("/api/bugs/not-a-number", headers=headers)

        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()["type"], "ValidationFailed")


if __name__ == "__main__":
    unittest.main()
