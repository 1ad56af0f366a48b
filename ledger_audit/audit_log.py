"""Append-only audit trail for security-relevant actions."""
from __future__ import annotations

import logging
import sqlite3
from typing import Any, Dict, List, Optional

from .database import Database
from .models import AuditLogEntry

logger = logging.getLogger("ledger_audit.audit_log")

SUCCESS = "SUCCESS"
FAILURE = "FAILURE"


class AuditLogger:
    """Write audit records without ever failing the calling operation."""

    def __init__(self, database: Database) -> None:
        self._database = database

    def log(
        self,
        action: str,
        resource: str,
        *,
        result: str = SUCCESS,
        user_id: Optional[int] = None,
        resource_id: Optional[str] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        try:
            self._database.add_audit_log(
                action=action,
                resource=resource,
                result=result,
                user_id=user_id,
                resource_id=resource_id,
                ip_address=ip_address,
                user_agent=user_agent,
                details=details,
            )
        except (sqlite3.Error, TypeError, ValueError):
            logger.exception("Failed to write audit log entry for action %s", action)

    def log_login(self, user_id: int, *, ip_address: Optional[str], user_agent: Optional[str]) -> None:
        self.log("LOGIN", "session", user_id=user_id, ip_address=ip_address, user_agent=user_agent)

    def log_logout(self, user_id: int, *, ip_address: Optional[str], user_agent: Optional[str]) -> None:
        self.log("LOGOUT", "session", user_id=user_id, ip_address=ip_address, user_agent=user_agent)

    def log_failed_login(
        self,
        email: str,
        *,
        ip_address: Optional[str],
        user_agent: Optional[str],
    ) -> None:
        self.log(
            "LOGIN_FAILED",
            "session",
            result=FAILURE,
            ip_address=ip_address,
            user_agent=user_agent,
            details={"email": email},
        )

    def log_api_call(
        self,
        provider: str,
        endpoint: str,
        method: str,
        *,
        status_code: int,
        duration_ms: int,
        user_id: Optional[int] = None,
        error: Optional[str] = None,
    ) -> None:
        details: Dict[str, Any] = {
            "provider": provider,
            "endpoint": endpoint,
            "method": method,
            "statusCode": status_code,
            "durationMs": duration_ms,
        }
        if error:
            details["error"] = error
        self.log(
            f"API_CALL:{provider}",
            f"{method} {endpoint}",
            result=SUCCESS if 200 <= status_code < 400 else FAILURE,
            user_id=user_id,
            details=details,
        )

    def recent(
        self,
        limit: int = 100,
        *,
        user_id: Optional[int] = None,
        action: Optional[str] = None,
    ) -> List[AuditLogEntry]:
        return self._database.list_audit_logs(limit=limit, user_id=user_id, action=action)


__all__ = ["AuditLogger", "FAILURE", "SUCCESS"]
