import secrets

import bcrypt
from fastapi import Request, Response
from loguru import logger

from src.config.settings import settings

# bcrypt only looks at the first 72 bytes of the secret
_BCRYPT_MAX_BYTES = 72


def hash_password(plain_password: str) -> str:
    """Hashes a plain-text password with bcrypt using the configured work factor."""
    salt = bcrypt.gensalt(rounds=settings.BCRYPT_ROUNDS)
    return bcrypt.hashpw(plain_password.encode("utf-8")[:_BCRYPT_MAX_BYTES], salt).decode("utf-8")


def verify_password(plain_password: str, password_hash: str | None) -> bool:
    """Verifies a plain-text password against a stored bcrypt hash.

    Returns False for missing or malformed hashes instead of raising, so a corrupt
    user row can never be signed into.
    """
    if not password_hash:
        return False
    try:
        return bcrypt.checkpw(plain_password.encode("utf-8")[:_BCRYPT_MAX_BYTES], password_hash.encode("utf-8"))
    except ValueError as e:
        logger.warning(f"Rejected password check against malformed hash: {e}")
        return False


def generate_session_token() -> str:
    """Generates an opaque, URL-safe session token."""
    return secrets.token_urlsafe(32)


def extract_session_token(request: Request) -> str | None:
    """Reads the session token from the cookie, falling back to a bearer header."""
    token = request.cookies.get(settings.SESSION_COOKIE_NAME)
    if token:
        return token

    authorization = request.headers.get("Authorization", "")
    scheme, _, credentials = authorization.partition(" ")
    if scheme.lower() == "bearer" and credentials.strip():
        return credentials.strip()
    return None


def set_session_cookie(response: Response, token: str) -> None:
    """Attaches the session cookie (httpOnly, sameSite=lax, path=/)."""
    response.set_cookie(
        key=settings.SESSION_COOKIE_NAME,
        value=token,
        max_age=settings.SESSION_TTL_SECONDS,
        httponly=True,
        samesite="lax",
        path="/",
        secure=settings.SESSION_COOKIE_SECURE,
    )


def clear_session_cookie(response: Response) -> None:
    """Expires the session cookie on the client."""
    response.delete_cookie(
        key=settings.SESSION_COOKIE_NAME,
        path="/",
        httponly=True,
        samesite="lax",
        secure=settings.SESSION_COOKIE_SECURE,
    )
