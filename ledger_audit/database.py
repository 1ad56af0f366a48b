"""SQLite-backed persistence for users, sessions, and audit data."""
from __future__ import annotations

import json
import sqlite3
from datetime import date, datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from .config import resolve_database_path
from .models import AuditLogEntry, AuditStatus, Company, Journal, Role, Session, User
from .security import hash_password


def _ensure_directory(path: Path) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)


def _current_timestamp() -> datetime:
    return datetime.now(timezone.utc)


def _serialize_datetime(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat()


def _parse_datetime(value: str) -> datetime:
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class Database:
    """Simple wrapper around SQLite for the audit service's tables."""

    def __init__(self, path: Path) -> None:
        _ensure_directory(path)
        self._path = path

    @property
    def path(self) -> Path:
        return self._path

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self._path, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        return conn

    def initialize(self) -> None:
        """Create the required tables if they do not already exist."""

        with self._connect() as conn:
            conn.executescript(
                """
                CREATE TABLE IF NOT EXISTS companies (
                    id TEXT PRIMARY KEY,
                    name TEXT NOT NULL,
                    fiscal_year_start INTEGER NOT NULL DEFAULT 4,
                    freee_company_id TEXT,
                    created_at TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS users (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    email TEXT NOT NULL UNIQUE,
                    password_hash TEXT NOT NULL,
                    name TEXT NOT NULL,
                    role TEXT NOT NULL DEFAULT 'USER',
                    company_id TEXT REFERENCES companies(id) ON DELETE SET NULL,
                    created_at TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS sessions (
                    token TEXT PRIMARY KEY,
                    user_id INTEGER NOT NULL REFERENCES users(id) ON DELETE CASCADE,
                    expires_at TEXT NOT NULL,
                    created_at TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS audit_logs (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    user_id INTEGER,
                    action TEXT NOT NULL,
                    resource TEXT NOT NULL,
                    resource_id TEXT,
                    ip_address TEXT,
                    user_agent TEXT,
                    details TEXT,
                    result TEXT NOT NULL,
                    created_at TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS journals (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    company_id TEXT NOT NULL REFERENCES companies(id) ON DELETE CASCADE,
                    freee_journal_id TEXT NOT NULL,
                    entry_date TEXT NOT NULL,
                    description TEXT NOT NULL DEFAULT '',
                    debit_account TEXT NOT NULL DEFAULT '',
                    credit_account TEXT NOT NULL DEFAULT '',
                    amount INTEGER NOT NULL DEFAULT 0,
                    tax_amount INTEGER NOT NULL DEFAULT 0,
                    tax_type TEXT,
                    audit_status TEXT NOT NULL DEFAULT 'PENDING',
                    synced_at TEXT NOT NULL,
                    UNIQUE (company_id, freee_journal_id)
                );

                CREATE TABLE IF NOT EXISTS oauth_tokens (
                    company_id TEXT PRIMARY KEY,
                    access_token TEXT NOT NULL,
                    refresh_token TEXT NOT NULL,
                    expires_at TEXT NOT NULL,
                    token_type TEXT NOT NULL,
                    scope TEXT,
                    updated_at TEXT NOT NULL
                );

                CREATE INDEX IF NOT EXISTS idx_sessions_user_id ON sessions(user_id);
                CREATE INDEX IF NOT EXISTS idx_sessions_expires_at ON sessions(expires_at);
                CREATE INDEX IF NOT EXISTS idx_audit_logs_created_at ON audit_logs(created_at);
                CREATE INDEX IF NOT EXISTS idx_journals_entry_date ON journals(company_id, entry_date);
                """
            )

    def health_check(self) -> bool:
        """Return ``True`` when the database answers a trivial query."""

        try:
            with self._connect() as conn:
                conn.execute("SELECT 1").fetchone()
        except sqlite3.Error:
            return False
        return True

    # ------------------------------------------------------------------
    # Company management
    # ------------------------------------------------------------------
    def upsert_company(
        self,
        company_id: str,
        *,
        name: str,
        fiscal_year_start: int = 4,
        freee_company_id: Optional[str] = None,
    ) -> Company:
        """Create the company if it is missing; existing rows are left untouched."""

        if not 1 <= fiscal_year_start <= 12:
            raise ValueError("fiscal_year_start must be a month between 1 and 12")

        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO companies (id, name, fiscal_year_start, freee_company_id, created_at)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(id) DO NOTHING
                """,
                (
                    company_id,
                    name,
                    fiscal_year_start,
                    freee_company_id,
                    _serialize_datetime(_current_timestamp()),
                ),
            )

        company = self.get_company(company_id)
        if company is None:
            raise RuntimeError("Failed to load company after upsert")
        return company

    def get_company(self, company_id: str) -> Optional[Company]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM companies WHERE id = ?", (company_id,)).fetchone()
        if row is None:
            return None
        return self._row_to_company(row)

    def first_company(self) -> Optional[Company]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM companies ORDER BY created_at, id LIMIT 1").fetchone()
        if row is None:
            return None
        return self._row_to_company(row)

    def list_companies(self) -> List[Company]:
        with self._connect() as conn:
            rows = conn.execute("SELECT * FROM companies ORDER BY name").fetchall()
        return [self._row_to_company(row) for row in rows]

    # ------------------------------------------------------------------
    # User management
    # ------------------------------------------------------------------
    def create_user(
        self,
        email: str,
        password: str,
        *,
        name: str,
        role: Role = Role.USER,
        company_id: Optional[str] = None,
    ) -> User:
        """Create a new user with a freshly hashed password."""

        normalized_email = email.strip()
        if not normalized_email:
            raise ValueError("Email must not be empty")

        password_hash = hash_password(password)
        with self._connect() as conn:
            try:
                cursor = conn.execute(
                    """
                    INSERT INTO users (email, password_hash, name, role, company_id, created_at)
                    VALUES (?, ?, ?, ?, ?, ?)
                    """,
                    (
                        normalized_email,
                        password_hash,
                        name,
                        Role(role).value,
                        company_id,
                        _serialize_datetime(_current_timestamp()),
                    ),
                )
            except sqlite3.IntegrityError as exc:
                raise ValueError("A user with that email already exists") from exc
            user_id = cursor.lastrowid

        user = self.get_user(user_id)
        if user is None:
            raise RuntimeError("Failed to load user after creation")
        return user

    def upsert_user(
        self,
        email: str,
        password: str,
        *,
        name: str,
        role: Role = Role.USER,
        company_id: Optional[str] = None,
    ) -> User:
        """Return the user with ``email``, creating it when absent."""

        existing = self.get_user_by_email(email)
        if existing is not None:
            return existing
        try:
            return self.create_user(email, password, name=name, role=role, company_id=company_id)
        except ValueError:
            # Lost a race with a concurrent insert of the same email.
            existing = self.get_user_by_email(email)
            if existing is None:
                raise
            return existing

    def get_user(self, user_id: int) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM users WHERE id = ?", (user_id,)).fetchone()
        if row is None:
            return None
        return self._row_to_user(row)

    def get_user_by_email(self, email: str) -> Optional[User]:
        credentials = self.get_credentials(email)
        if credentials is None:
            return None
        return credentials[0]

    def get_credentials(self, email: str) -> Optional[Tuple[User, str]]:
        """Return the user and stored password hash for an exact email match."""

        # Emails are trimmed when stored, so lookups trim too; case is never folded.
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM users WHERE email = ?",
                (email.strip(),),
            ).fetchone()
        if row is None:
            return None
        return self._row_to_user(row), str(row["password_hash"])

    def list_users(self) -> List[User]:
        with self._connect() as conn:
            rows = conn.execute("SELECT * FROM users ORDER BY id").fetchall()
        return [self._row_to_user(row) for row in rows]

    def update_user_role(self, user_id: int, role: Role) -> User:
        with self._connect() as conn:
            cursor = conn.execute(
                "UPDATE users SET role = ? WHERE id = ?",
                (Role(role).value, user_id),
            )
            if cursor.rowcount == 0:
                raise ValueError("User not found")

        refreshed = self.get_user(user_id)
        if refreshed is None:
            raise ValueError("User not found")
        return refreshed

    def set_user_password(self, user_id: int, password: str) -> None:
        password_hash = hash_password(password)
        with self._connect() as conn:
            cursor = conn.execute(
                "UPDATE users SET password_hash = ? WHERE id = ?",
                (password_hash, user_id),
            )
            if cursor.rowcount == 0:
                raise ValueError("User not found")

    # ------------------------------------------------------------------
    # Session rows
    # ------------------------------------------------------------------
    def create_session(self, token: str, user_id: int, expires_at: datetime) -> Session:
        created_at = _current_timestamp()
        with self._connect() as conn:
            conn.execute(
                "INSERT INTO sessions (token, user_id, expires_at, created_at) VALUES (?, ?, ?, ?)",
                (token, user_id, _serialize_datetime(expires_at), _serialize_datetime(created_at)),
            )
        return Session(token=token, user_id=user_id, expires_at=expires_at, created_at=created_at)

    def get_session(self, token: str) -> Optional[Session]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM sessions WHERE token = ?", (token,)).fetchone()
        if row is None:
            return None
        return Session(
            token=str(row["token"]),
            user_id=int(row["user_id"]),
            expires_at=_parse_datetime(str(row["expires_at"])),
            created_at=_parse_datetime(str(row["created_at"])),
        )

    def delete_session(self, token: str) -> bool:
        with self._connect() as conn:
            cursor = conn.execute("DELETE FROM sessions WHERE token = ?", (token,))
            return cursor.rowcount > 0

    def delete_expired_sessions(self, now: Optional[datetime] = None) -> int:
        cutoff = _serialize_datetime(now or _current_timestamp())
        with self._connect() as conn:
            cursor = conn.execute("DELETE FROM sessions WHERE expires_at <= ?", (cutoff,))
            return cursor.rowcount

    # ------------------------------------------------------------------
    # Audit log
    # ------------------------------------------------------------------
    def add_audit_log(
        self,
        *,
        action: str,
        resource: str,
        result: str,
        user_id: Optional[int] = None,
        resource_id: Optional[str] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> int:
        with self._connect() as conn:
            cursor = conn.execute(
                """
                INSERT INTO audit_logs (
                    user_id, action, resource, resource_id, ip_address, user_agent, details, result, created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    user_id,
                    action,
                    resource,
                    resource_id,
                    ip_address,
                    user_agent,
                    json.dumps(details, ensure_ascii=False) if details is not None else None,
                    result,
                    _serialize_datetime(_current_timestamp()),
                ),
            )
            return int(cursor.lastrowid)

    def list_audit_logs(
        self,
        *,
        limit: int = 100,
        user_id: Optional[int] = None,
        action: Optional[str] = None,
    ) -> List[AuditLogEntry]:
        clauses: List[str] = []
        values: List[object] = []
        if user_id is not None:
            clauses.append("user_id = ?")
            values.append(user_id)
        if action is not None:
            clauses.append("action = ?")
            values.append(action)

        query = "SELECT * FROM audit_logs"
        if clauses:
            query += " WHERE " + " AND ".join(clauses)
        query += " ORDER BY created_at DESC, id DESC LIMIT ?"
        values.append(limit)

        with self._connect() as conn:
            rows = conn.execute(query, values).fetchall()
        return [self._row_to_audit_log(row) for row in rows]

    # ------------------------------------------------------------------
    # Journals
    # ------------------------------------------------------------------
    def upsert_journal(
        self,
        company_id: str,
        *,
        freee_journal_id: str,
        entry_date: date,
        description: str,
        debit_account: str,
        credit_account: str,
        amount: int,
        tax_amount: int = 0,
        tax_type: Optional[str] = None,
    ) -> Journal:
        """Insert or refresh a synchronised journal entry.

        Refreshing keeps the stored audit status so completed checks survive a re-sync.
        """
        synced_at = _serialize_datetime(_current_timestamp())
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO journals (
                    company_id, freee_journal_id, entry_date, description, debit_account,
                    credit_account, amount, tax_amount, tax_type, audit_status, synced_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(company_id, freee_journal_id) DO UPDATE SET
                    entry_date = excluded.entry_date,
                    description = excluded.description,
                    debit_account = excluded.debit_account,
                    credit_account = excluded.credit_account,
                    amount = excluded.amount,
                    tax_amount = excluded.tax_amount,
                    tax_type = excluded.tax_type,
                    synced_at = excluded.synced_at
                """,
                (
                    company_id,
                    freee_journal_id,
                    entry_date.isoformat(),
                    description,
                    debit_account,
                    credit_account,
                    int(amount),
                    int(tax_amount),
                    tax_type,
                    AuditStatus.PENDING.value,
                    synced_at,
                ),
            )
            row = conn.execute(
                "SELECT * FROM journals WHERE company_id = ? AND freee_journal_id = ?",
                (company_id, freee_journal_id),
            ).fetchone()
        return self._row_to_journal(row)

    def list_journals(
        self,
        company_id: str,
        *,
        start_date: Optional[date] = None,
        end_date: Optional[date] = None,
        limit: int = 100,
    ) -> List[Journal]:
        return self.search_journals(company_id=company_id, start_date=start_date, end_date=end_date, limit=limit)

    def search_journals(
        self,
        *,
        company_id: Optional[str] = None,
        audit_status: Optional[AuditStatus] = None,
        start_date: Optional[date] = None,
        end_date: Optional[date] = None,
        limit: Optional[int] = None,
        offset: int = 0,
        oldest_first: bool = False,
    ) -> List[Journal]:
        """Return journals matching every given filter, newest entry first by default."""

        where, values = self._journal_filters(company_id, audit_status, start_date, end_date)
        direction = "ASC" if oldest_first else "DESC"
        query = f"SELECT * FROM journals{where} ORDER BY entry_date {direction}, id {direction}"
        if limit is not None:
            query += " LIMIT ? OFFSET ?"
            values.extend([limit, offset])

        with self._connect() as conn:
            rows = conn.execute(query, values).fetchall()
        return [self._row_to_journal(row) for row in rows]

    def count_journals(
        self,
        *,
        company_id: Optional[str] = None,
        audit_status: Optional[AuditStatus] = None,
        start_date: Optional[date] = None,
        end_date: Optional[date] = None,
    ) -> int:
        where, values = self._journal_filters(company_id, audit_status, start_date, end_date)
        with self._connect() as conn:
            row = conn.execute(f"SELECT COUNT(*) FROM journals{where}", values).fetchone()
        return int(row[0])

    def set_journal_audit_status(self, journal_id: int, status: AuditStatus) -> None:
        with self._connect() as conn:
            cursor = conn.execute(
                "UPDATE journals SET audit_status = ? WHERE id = ?",
                (AuditStatus(status).value, journal_id),
            )
            if cursor.rowcount == 0:
                raise ValueError("Journal not found")

    @staticmethod
    def _journal_filters(
        company_id: Optional[str],
        audit_status: Optional[AuditStatus],
        start_date: Optional[date],
        end_date: Optional[date],
    ) -> Tuple[str, List[object]]:
        clauses: List[str] = []
        values: List[object] = []
        if company_id is not None:
            clauses.append("company_id = ?")
            values.append(company_id)
        if audit_status is not None:
            clauses.append("audit_status = ?")
            values.append(AuditStatus(audit_status).value)
        if start_date is not None:
            clauses.append("entry_date >= ?")
            values.append(start_date.isoformat())
        if end_date is not None:
            clauses.append("entry_date <= ?")
            values.append(end_date.isoformat())
        if not clauses:
            return "", values
        return " WHERE " + " AND ".join(clauses), values

    # ------------------------------------------------------------------
    # OAuth tokens (values are stored already encrypted)
    # ------------------------------------------------------------------
    def save_oauth_token(
        self,
        company_id: str,
        *,
        access_token: str,
        refresh_token: str,
        expires_at: datetime,
        token_type: str,
        scope: Optional[str],
    ) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO oauth_tokens (
                    company_id, access_token, refresh_token, expires_at, token_type, scope, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(company_id) DO UPDATE SET
                    access_token = excluded.access_token,
                    refresh_token = excluded.refresh_token,
                    expires_at = excluded.expires_at,
                    token_type = excluded.token_type,
                    scope = excluded.scope,
                    updated_at = excluded.updated_at
                """,
                (
                    company_id,
                    access_token,
                    refresh_token,
                    _serialize_datetime(expires_at),
                    token_type,
                    scope,
                    _serialize_datetime(_current_timestamp()),
                ),
            )

    def get_oauth_token(self, company_id: str) -> Optional[Dict[str, Any]]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM oauth_tokens WHERE company_id = ?",
                (company_id,),
            ).fetchone()
        if row is None:
            return None
        return {
            "company_id": str(row["company_id"]),
            "access_token": str(row["access_token"]),
            "refresh_token": str(row["refresh_token"]),
            "expires_at": _parse_datetime(str(row["expires_at"])),
            "token_type": str(row["token_type"]),
            "scope": row["scope"],
        }

    def delete_oauth_token(self, company_id: str) -> bool:
        with self._connect() as conn:
            cursor = conn.execute("DELETE FROM oauth_tokens WHERE company_id = ?", (company_id,))
            return cursor.rowcount > 0

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------
    def _row_to_user(self, row: sqlite3.Row) -> User:
        return User(
            id=int(row["id"]),
            email=str(row["email"]),
            name=str(row["name"]),
            role=Role(str(row["role"])),
            company_id=row["company_id"],
            created_at=_parse_datetime(str(row["created_at"])),
        )

    def _row_to_company(self, row: sqlite3.Row) -> Company:
        return Company(
            id=str(row["id"]),
            name=str(row["name"]),
            fiscal_year_start=int(row["fiscal_year_start"]),
            freee_company_id=row["freee_company_id"],
            created_at=_parse_datetime(str(row["created_at"])),
        )

    def _row_to_audit_log(self, row: sqlite3.Row) -> AuditLogEntry:
        details = row["details"]
        return AuditLogEntry(
            id=int(row["id"]),
            user_id=row["user_id"],
            action=str(row["action"]),
            resource=str(row["resource"]),
            resource_id=row["resource_id"],
            ip_address=row["ip_address"],
            user_agent=row["user_agent"],
            details=json.loads(details) if details else None,
            result=str(row["result"]),
            created_at=_parse_datetime(str(row["created_at"])),
        )

    def _row_to_journal(self, row: sqlite3.Row) -> Journal:
        return Journal(
            id=int(row["id"]),
            company_id=str(row["company_id"]),
            freee_journal_id=str(row["freee_journal_id"]),
            entry_date=date.fromisoformat(str(row["entry_date"])),
            description=str(row["description"]),
            debit_account=str(row["debit_account"]),
            credit_account=str(row["credit_account"]),
            amount=int(row["amount"]),
            tax_amount=int(row["tax_amount"]),
            tax_type=row["tax_type"],
            audit_status=AuditStatus(str(row["audit_status"])),
            synced_at=_parse_datetime(str(row["synced_at"])),
        )


__all__ = ["Database", "resolve_database_path"]
