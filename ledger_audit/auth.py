"""Email/password authentication and session lifecycle."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from .audit_log import AuditLogger
from .database import Database
from .errors import InvalidCredentials
from .models import User
from .security import dummy_verify, verify_password
from .sessions import SessionStore

logger = logging.getLogger("ledger_audit.auth")


@dataclass(frozen=True)
class LoginResult:
    user: User
    token: str


class Authenticator:
    """The only component allowed to issue or revoke sessions."""

    def __init__(self, database: Database, sessions: SessionStore, audit: AuditLogger) -> None:
        self._database = database
        self._sessions = sessions
        self._audit = audit

    @property
    def sessions(self) -> SessionStore:
        return self._sessions

    def login(
        self,
        email: str,
        password: str,
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> LoginResult:
        """Verify credentials and open a new session.

        Raises :class:`InvalidCredentials` for unknown emails and wrong
        passwords alike. When the email is unknown a dummy hash is verified so
        that both failures take comparable time.
        """
        credentials = self._database.get_credentials(email)
        if credentials is None:
            dummy_verify()
            user = None
        else:
            candidate, password_hash = credentials
            user = candidate if verify_password(password, password_hash) else None

        if user is None:
            logger.warning("Failed login attempt from %s", ip_address or "unknown")
            self._audit.log_failed_login(email, ip_address=ip_address, user_agent=user_agent)
            raise InvalidCredentials()

        session = self._sessions.create(user.id)
        logger.info("User %s signed in", user.id)
        self._audit.log_login(user.id, ip_address=ip_address, user_agent=user_agent)
        return LoginResult(user=user, token=session.token)

    def validate_session(self, token: Optional[str]) -> Optional[User]:
        """Return the session's user, or ``None`` when the token is not usable."""

        if not token:
            return None
        user_id = self._sessions.resolve(token)
        if user_id is None:
            return None
        user = self._database.get_user(user_id)
        if user is None:
            self._sessions.destroy(token)
            return None
        return user

    def logout(
        self,
        token: Optional[str],
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> None:
        """Revoke ``token``. Revoking an unknown token is a no-op."""

        if not token:
            return
        user = self.validate_session(token)
        self._sessions.destroy(token)
        if user is not None:
            logger.info("User %s signed out", user.id)
            self._audit.log_logout(user.id, ip_address=ip_address, user_agent=user_agent)


__all__ = ["Authenticator", "LoginResult"]
