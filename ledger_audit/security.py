"""Password hashing and credential extraction helpers."""
from __future__ import annotations

from typing import List, Mapping, Optional

from passlib.context import CryptContext
from starlette.responses import Response

SESSION_COOKIE_NAME = "session"

# New hashes use PBKDF2; bcrypt hashes produced by older seed data still verify.
_pwd_context = CryptContext(schemes=["pbkdf2_sha256", "bcrypt"], deprecated="auto")


def hash_password(password: str) -> str:
    if not password:
        raise ValueError("Password must not be empty")
    return _pwd_context.hash(password)


def verify_password(password: str, hashed: Optional[str]) -> bool:
    """Return ``True`` when ``password`` matches ``hashed``.

    Malformed or unknown hash formats are treated as a mismatch.
    """
    if not hashed:
        _pwd_context.dummy_verify()
        return False
    try:
        return _pwd_context.verify(password, hashed)
    except (ValueError, TypeError):
        return False


def dummy_verify() -> None:
    """Spend the same time as a real verification when no account matched."""

    _pwd_context.dummy_verify()


def bearer_token(headers: Mapping[str, str]) -> Optional[str]:
    auth = headers.get("authorization")
    if not auth or not auth.lower().startswith("bearer "):
        return None
    token = auth.split(" ", 1)[1].strip()
    return token or None


def request_tokens(cookies: Mapping[str, str], headers: Mapping[str, str]) -> List[str]:
    """Return every distinct session token presented, cookie first."""

    tokens: List[str] = []
    for token in (cookies.get(SESSION_COOKIE_NAME), bearer_token(headers)):
        if token and token not in tokens:
            tokens.append(token)
    return tokens


def issue_session_cookie(response: Response, token: str, *, max_age: int, secure: bool) -> None:
    response.set_cookie(
        SESSION_COOKIE_NAME,
        token,
        max_age=max_age,
        secure=secure,
        httponly=True,
        samesite="lax",
        path="/",
    )


def clear_session_cookie(response: Response) -> None:
    response.delete_cookie(SESSION_COOKIE_NAME, path="/")


__all__ = [
    "SESSION_COOKIE_NAME",
    "bearer_token",
    "clear_session_cookie",
    "dummy_verify",
    "hash_password",
    "issue_session_cookie",
    "request_tokens",
    "verify_password",
]
