"""Database-backed session handling for authenticated users."""

from __future__ import annotations

import secrets
from datetime import datetime, timedelta, timezone
from typing import Optional

from .database import Database
from .models import Session


class SessionStore:
    """Generate, resolve, and revoke opaque session tokens."""

    def __init__(self, database: Database, *, ttl: timedelta = timedelta(hours=24)) -> None:
        self._database = database
        self._ttl = ttl

    @property
    def ttl(self) -> timedelta:
        return self._ttl

    @property
    def cookie_max_age(self) -> int:
        return int(self._ttl.total_seconds())

    def create(self, user_id: int) -> Session:
        token = secrets.token_urlsafe(32)
        return self._database.create_session(token, user_id, self._now() + self._ttl)

    def resolve(self, token: str) -> Optional[int]:
        """Return the owning user id, or ``None`` for unknown and expired tokens."""

        if not token:
            return None
        record = self._database.get_session(token)
        if record is None:
            return None
        if record.expires_at <= self._now():
            self._database.delete_session(token)
            return None
        return record.user_id

    def destroy(self, token: str) -> None:
        if token:
            self._database.delete_session(token)

    def purge_expired(self) -> int:
        return self._database.delete_expired_sessions(self._now())

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)


__all__ = ["SessionStore"]
