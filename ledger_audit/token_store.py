"""Encrypted persistence of accounting API OAuth tokens."""
from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Mapping, Optional

from .crypto import DecryptionError, EncryptionKeyError, decrypt, encrypt
from .database import Database
from .models import OAuthToken

logger = logging.getLogger("ledger_audit.token_store")

# Tokens are treated as expired this long before the provider's deadline.
TOKEN_BUFFER = timedelta(minutes=5)


def parse_token_response(payload: Any) -> Optional[Dict[str, Any]]:
    """Validate a token endpoint response, returning ``None`` when malformed."""

    if not isinstance(payload, Mapping):
        return None
    if not (
        isinstance(payload.get("access_token"), str)
        and isinstance(payload.get("refresh_token"), str)
        and isinstance(payload.get("expires_in"), int)
        and not isinstance(payload.get("expires_in"), bool)
        and isinstance(payload.get("token_type"), str)
    ):
        return None
    parsed: Dict[str, Any] = {
        "access_token": payload["access_token"],
        "refresh_token": payload["refresh_token"],
        "expires_in": payload["expires_in"],
        "token_type": payload["token_type"],
        "scope": payload["scope"] if isinstance(payload.get("scope"), str) else None,
    }
    if isinstance(payload.get("created_at"), int):
        parsed["created_at"] = payload["created_at"]
    return parsed


class OAuthTokenStore:
    """Store per-company access/refresh tokens encrypted at rest."""

    def __init__(self, database: Database, *, encryption_key: Optional[str] = None) -> None:
        self._database = database
        self._key = encryption_key

    def save(self, company_id: str, token_response: Mapping[str, Any]) -> OAuthToken:
        parsed = parse_token_response(token_response)
        if parsed is None:
            raise ValueError("Malformed token response")

        expires_at = self._now() + timedelta(seconds=parsed["expires_in"]) - TOKEN_BUFFER
        self._database.save_oauth_token(
            company_id,
            access_token=encrypt(parsed["access_token"], key=self._key),
            refresh_token=encrypt(parsed["refresh_token"], key=self._key),
            expires_at=expires_at,
            token_type=parsed["token_type"],
            scope=parsed["scope"],
        )
        return OAuthToken(
            access_token=parsed["access_token"],
            refresh_token=parsed["refresh_token"],
            expires_at=expires_at,
            token_type=parsed["token_type"],
            scope=parsed["scope"],
        )

    def get(self, company_id: str) -> Optional[OAuthToken]:
        row = self._database.get_oauth_token(company_id)
        if row is None:
            return None
        try:
            access_token = decrypt(row["access_token"], key=self._key)
            refresh_token = decrypt(row["refresh_token"], key=self._key)
        except (DecryptionError, EncryptionKeyError):
            logger.error("Failed to decrypt stored token for company %s", company_id)
            return None
        return OAuthToken(
            access_token=access_token,
            refresh_token=refresh_token,
            expires_at=row["expires_at"],
            token_type=row["token_type"],
            scope=row["scope"],
        )

    def delete(self, company_id: str) -> bool:
        return self._database.delete_oauth_token(company_id)

    def is_expired(self, company_id: str) -> bool:
        token = self.get(company_id)
        if token is None:
            return True
        return self._now() >= token.expires_at

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)


__all__ = ["OAuthTokenStore", "TOKEN_BUFFER", "parse_token_response"]
