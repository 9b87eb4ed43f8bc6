import unittest
from unittest.mock import MagicMock

from fastapi import Response

from src.config.settings import settings
from src.core.security import (
    clear_session_cookie,
    extract_session_token,
    generate_session_token,
    hash_password,
    set_session_cookie,
    verify_password,
)


class TestPasswordHashing(unittest.TestCase):
    """Test suite for bcrypt password handling."""

    def test_hash_and_verify(self) -> None:
        hashed = hash_password("secret123")

        self.assertNotEqual(hashed, "secret123")
        self.assertTrue(verify_password("secret123", hashed))
        self.assertFalse(verify_password("secret124", hashed))

    def test_verify_rejects_missing_or_malformed_hash(self) -> None:
        """Verifies corrupt rows can never be signed into instead of raising."""
        self.assertFalse(verify_password("secret123", None))
        self.assertFalse(verify_password("secret123", ""))
        self.assertFalse(verify_password("secret123", "not-a-bcrypt-hash"))


class TestSessionTokens(unittest.TestCase):
    """Test suite for opaque session token transport."""

    def _request(self, cookies: dict[str, str] | None = None, headers: dict[str, str] | None = None) -> MagicMock:
        request = MagicMock()
        request.cookies = cookies or {}
        request.headers = headers or {}
        return request

    def test_generated_tokens_are_unique(self) -> None:
        tokens = {generate_session_token() for _ in range(50)}
        self.assertEqual(len(tokens), 50)

    def test_extract_prefers_cookie_over_bearer(self) -> None:
        request = self._request(
            cookies={settings.SESSION_COOKIE_NAME: "from-cookie"},
            headers={"Authorization": "Bearer from-header"},
        )
        self.assertEqual(extract_session_token(request), "from-cookie")

    def test_extract_falls_back_to_bearer_header(self) -> None:
        request = self._request(headers={"Authorization": "bearer  from-header "})
        self.assertEqual(extract_session_token(request), "from-header")

    def test_extract_ignores_other_schemes(self) -> None:
        self.assertIsNone(extract_session_token(self._request(headers={"Authorization": "Basic dXNlcjpwYXNz"})))
        self.assertIsNone(extract_session_token(self._request()))

    def test_session_cookie_attributes(self) -> None:
        """Verifies the cookie is httpOnly, sameSite=lax, path=/ with the configured lifetime."""
        response = Response()
        set_session_cookie(response, "tok")

        header = response.headers["set-cookie"]
        self.assertIn(f"{settings.SESSION_COOKIE_NAME}=tok", header)
        self.assertIn("HttpOnly", header)
        self.assertIn("SameSite=lax", header)
        self.assertIn("Path=/", header)
        self.assertIn(f"Max-Age={settings.SESSION_TTL_SECONDS}", header)

    def test_clear_session_cookie_expires_it(self) -> None:
        response = Response()
        clear_session_cookie(response)

        header = response.headers["set-cookie"]
        self.assertIn(f'{settings.SESSION_COOKIE_NAME}=""', header)
        self.assertIn("Max-Age=0", header)


if __name__ == "__main__":
    unittest.main()
