"""Domain models for the ledger audit service."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime
from enum import Enum
from typing import Any, Dict, Optional


class Role(str, Enum):
    ADMIN = "ADMIN"
    USER = "USER"


class AuditStatus(str, Enum):
    PENDING = "PENDING"
    PASSED = "PASSED"
    FAILED = "FAILED"
    SKIPPED = "SKIPPED"


@dataclass(frozen=True)
class User:
    """Public projection of a user account. Never carries the password hash."""

    id: int
    email: str
    name: str
    role: Role
    company_id: Optional[str]
    created_at: datetime

    def to_public(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "email": self.email,
            "name": self.name,
            "role": self.role.value,
            "companyId": self.company_id,
        }


@dataclass(frozen=True)
class Company:
    """An accounting entity whose journals are audited."""

    id: str
    name: str
    fiscal_year_start: int
    freee_company_id: Optional[str]
    created_at: datetime


@dataclass(frozen=True)
class Session:
    token: str
    user_id: int
    expires_at: datetime
    created_at: datetime


@dataclass(frozen=True)
class AuditLogEntry:
    id: int
    action: str
    resource: str
    result: str
    created_at: datetime
    user_id: Optional[int] = None
    resource_id: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    details: Optional[Dict[str, Any]] = None


@dataclass(frozen=True)
class Journal:
    id: int
    company_id: str
    freee_journal_id: str
    entry_date: date
    description: str
    debit_account: str
    credit_account: str
    amount: int
    tax_amount: int
    audit_status: AuditStatus
    synced_at: datetime
    tax_type: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "companyId": self.company_id,
            "freeeJournalId": self.freee_journal_id,
            "entryDate": self.entry_date.isoformat(),
            "description": self.description,
            "debitAccount": self.debit_account,
            "creditAccount": self.credit_account,
            "amount": self.amount,
            "taxAmount": self.tax_amount,
            "taxType": self.tax_type,
            "auditStatus": self.audit_status.value,
            "syncedAt": self.synced_at.isoformat(),
        }


@dataclass(frozen=True)
class OAuthToken:
    """Decrypted accounting API credentials for a company."""

    access_token: str
    refresh_token: str
    expires_at: datetime
    token_type: str
    scope: Optional[str] = None


__all__ = [
    "AuditLogEntry",
    "AuditStatus",
    "Company",
    "Journal",
    "OAuthToken",
    "Role",
    "Session",
    "User",
]
