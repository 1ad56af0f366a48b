"""HTTP client for the freee accounting API and journal synchronisation."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from datetime import date
from typing import Any, Dict, List, Optional
from urllib.parse import urlencode

import httpx

from .audit_log import AuditLogger
from .database import Database
from .errors import ValidationError
from .models import Company
from .token_store import OAuthTokenStore

logger = logging.getLogger("ledger_audit.freee")

API_BASE_URL = "https://api.freee.co.jp"
AUTHORIZE_URL = "https://accounts.secure.freee.co.jp/public_api/authorize"
TOKEN_URL = "https://accounts.secure.freee.co.jp/public_api/token"

_MOCK_TOKEN = {
    "access_token": "mock_access_token",
    "refresh_token": "mock_refresh_token",
    "expires_in": 86400,
    "token_type": "bearer",
    "scope": "read write",
}

_MOCK_COMPANIES = [
    {
        "id": 123456,
        "name": "サンプル株式会社",
        "name_kana": "サンプルカブシキガイシャ",
        "display_name": "サンプル株式会社",
    }
]

_MOCK_JOURNALS = [
    {
        "id": 1001,
        "issue_date": "2024-01-15",
        "description": "売上計上",
        "details": [
            {
                "id": 10011,
                "account_item_id": 101,
                "account_item_name": "現金",
                "amount": 110000,
                "vat": 10000,
                "vat_name": "消費税10%",
                "entry_side": "debit",
                "description": "売上代金",
            },
            {
                "id": 10012,
                "account_item_id": 401,
                "account_item_name": "売上高",
                "amount": 100000,
                "vat": None,
                "vat_name": None,
                "entry_side": "credit",
                "description": "売上計上",
            },
        ],
    }
]


class FreeeAPIError(Exception):
    """Raised when the accounting API answers with a non-success status."""

    def __init__(self, status_code: int, message: str) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.message = message


@dataclass(frozen=True)
class FreeeCredentials:
    client_id: Optional[str]
    client_secret: Optional[str]
    redirect_uri: str
    mock_mode: bool = False

    @property
    def is_mock(self) -> bool:
        return self.mock_mode or not (self.client_id and self.client_secret)


def _extract_error_message(payload: object, default: str) -> str:
    if isinstance(payload, dict):
        errors = payload.get("errors")
        if isinstance(errors, list):
            messages = [
                str(message)
                for entry in errors
                if isinstance(entry, dict)
                for message in (entry.get("messages") or [])
            ]
            if messages:
                return "; ".join(messages)
        for key in ("message", "error_description", "error"):
            value = payload.get(key)
            if isinstance(value, str) and value.strip():
                return value.strip()
    return default


class FreeeClient:
    """Thin wrapper over the freee REST and OAuth endpoints.

    Without client credentials (or with mock mode enabled) every call returns
    canned data so the application can be exercised offline.
    """

    def __init__(
        self,
        credentials: FreeeCredentials,
        *,
        token_store: Optional[OAuthTokenStore] = None,
        audit: Optional[AuditLogger] = None,
        http_client: Optional[httpx.Client] = None,
        timeout: float = 30.0,
    ) -> None:
        self._credentials = credentials
        self._tokens = token_store
        self._audit = audit
        self._http = http_client or httpx.Client(timeout=timeout)

    @property
    def mock_mode(self) -> bool:
        return self._credentials.is_mock

    def close(self) -> None:
        self._http.close()

    # ------------------------------------------------------------------
    # OAuth
    # ------------------------------------------------------------------
    def authorization_url(self, state: Optional[str] = None) -> str:
        params = {
            "client_id": self._credentials.client_id or "",
            "redirect_uri": self._credentials.redirect_uri,
            "response_type": "code",
            "scope": "read write",
        }
        if state:
            params["state"] = state
        return f"{AUTHORIZE_URL}?{urlencode(params)}"

    def exchange_code(self, code: str) -> Dict[str, Any]:
        if self.mock_mode:
            return dict(_MOCK_TOKEN)
        return self._token_request(
            {
                "grant_type": "authorization_code",
                "code": code,
                "client_id": self._credentials.client_id,
                "client_secret": self._credentials.client_secret,
                "redirect_uri": self._credentials.redirect_uri,
            }
        )

    def refresh(self, refresh_token: str) -> Dict[str, Any]:
        if self.mock_mode:
            return dict(_MOCK_TOKEN)
        return self._token_request(
            {
                "grant_type": "refresh_token",
                "refresh_token": refresh_token,
                "client_id": self._credentials.client_id,
                "client_secret": self._credentials.client_secret,
            }
        )

    def _token_request(self, form: Dict[str, Any]) -> Dict[str, Any]:
        response = self._send("POST", TOKEN_URL, data=form)
        payload = self._decode(response)
        if not isinstance(payload, dict):
            raise FreeeAPIError(response.status_code, "Token endpoint returned an unexpected payload")
        return payload

    def access_token_for(self, company_id: str) -> str:
        """Return a usable access token for ``company_id``, refreshing if expired."""

        if self.mock_mode:
            return _MOCK_TOKEN["access_token"]
        if self._tokens is None:
            raise FreeeAPIError(401, "No token store configured")

        token = self._tokens.get(company_id)
        if token is None:
            raise FreeeAPIError(401, "No token found. Please authenticate first.")
        if self._tokens.is_expired(company_id):
            refreshed = self.refresh(token.refresh_token)
            return self._tokens.save(company_id, refreshed).access_token
        return token.access_token

    # ------------------------------------------------------------------
    # Resources
    # ------------------------------------------------------------------
    def get_companies(self, *, company_id: Optional[str] = None) -> List[Dict[str, Any]]:
        if self.mock_mode:
            return [dict(item) for item in _MOCK_COMPANIES]
        payload = self._get("/api/1/companies", company_id=company_id)
        return list(payload.get("companies", []))

    def get_journals(
        self,
        freee_company_id: int,
        *,
        start_date: Optional[str] = None,
        end_date: Optional[str] = None,
        limit: int = 100,
        offset: int = 0,
        company_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Return ``{"data": [...], "meta": {...}}`` for one page of journals."""

        if self.mock_mode:
            return {
                "data": [dict(item) for item in _MOCK_JOURNALS],
                "meta": {"total_count": len(_MOCK_JOURNALS), "limit": limit, "offset": offset},
            }
        payload = self._get(
            "/api/1/journals",
            company_id=company_id,
            params={
                "company_id": freee_company_id,
                "start_issue_date": start_date,
                "end_issue_date": end_date,
                "limit": limit,
                "offset": offset,
            },
        )
        return {"data": list(payload.get("journals", [])), "meta": dict(payload.get("meta", {}))}

    def get_trial_balance(
        self,
        freee_company_id: int,
        *,
        fiscal_year: Optional[int] = None,
        start_month: Optional[int] = None,
        end_month: Optional[int] = None,
        company_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        if self.mock_mode:
            return {
                "trial_bs": {
                    "company_id": freee_company_id,
                    "fiscal_year": fiscal_year,
                    "balances": [],
                }
            }
        return self._get(
            "/api/1/reports/trial_bs",
            company_id=company_id,
            params={
                "company_id": freee_company_id,
                "fiscal_year": fiscal_year,
                "start_month": start_month,
                "end_month": end_month,
            },
        )

    def _get(
        self,
        path: str,
        *,
        company_id: Optional[str],
        params: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        if company_id is None:
            raise FreeeAPIError(400, "Company ID is required")
        access_token = self.access_token_for(company_id)
        cleaned = {key: value for key, value in (params or {}).items() if value is not None}
        response = self._send(
            "GET",
            f"{API_BASE_URL}{path}",
            params=cleaned,
            headers={"Authorization": f"Bearer {access_token}"},
        )
        payload = self._decode(response)
        if not isinstance(payload, dict):
            raise FreeeAPIError(response.status_code, "freee API returned an unexpected payload")
        return payload

    def _send(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        started = time.monotonic()
        status_code = 0
        error: Optional[str] = None
        try:
            response = self._http.request(method, url, **kwargs)
            status_code = response.status_code
            return response
        except httpx.RequestError as exc:
            error = str(exc)
            raise FreeeAPIError(502, f"Failed to contact freee API: {exc}") from exc
        finally:
            if self._audit is not None:
                self._audit.log_api_call(
                    "freee",
                    httpx.URL(url).path,
                    method,
                    status_code=status_code or 500,
                    duration_ms=int((time.monotonic() - started) * 1000),
                    error=error,
                )

    def _decode(self, response: httpx.Response) -> Any:
        try:
            payload = response.json()
        except ValueError:
            payload = None

        if response.status_code >= 400:
            default = f"freee API request failed with status {response.status_code}"
            raise FreeeAPIError(response.status_code, _extract_error_message(payload, default))
        if payload is None:
            raise FreeeAPIError(response.status_code, "freee API returned an invalid response")
        return payload


def _journal_fields(entry: Dict[str, Any]) -> Dict[str, Any]:
    details = entry.get("details") or []
    debit = next((item for item in details if item.get("entry_side") == "debit"), {})
    credit = next((item for item in details if item.get("entry_side") == "credit"), {})
    return {
        "freee_journal_id": str(entry["id"]),
        "entry_date": date.fromisoformat(str(entry["issue_date"])),
        "description": entry.get("description") or "",
        "debit_account": debit.get("account_item_name") or "",
        "credit_account": credit.get("account_item_name") or "",
        "amount": int(debit.get("amount") or 0),
        "tax_amount": int(debit.get("vat") or credit.get("vat") or 0),
        "tax_type": debit.get("vat_name") or credit.get("vat_name"),
    }


def linked_company_number(company: Company) -> int:
    """Return the numeric freee company id ``company`` is linked to."""

    if not company.freee_company_id:
        raise ValidationError("Company is not linked to freee")
    try:
        return int(company.freee_company_id)
    except ValueError as exc:
        raise ValidationError(
            details=[
                {
                    "field": "freee_company_id",
                    "message": "freee company id must be numeric",
                    "type": "value_error",
                }
            ]
        ) from exc


def sync_journals(
    database: Database,
    client: FreeeClient,
    company: Company,
    *,
    start_date: Optional[str] = None,
    end_date: Optional[str] = None,
    page_size: int = 100,
) -> int:
    """Copy journal entries for ``company`` from the API into the database.

    Returns the number of entries stored. Malformed entries are skipped and logged.
    """
    freee_company_id = linked_company_number(company)

    today = date.today()
    start = start_date or today.replace(day=1).isoformat()
    end = end_date or today.isoformat()

    synced = 0
    offset = 0
    while True:
        page = client.get_journals(
            freee_company_id,
            start_date=start,
            end_date=end,
            limit=page_size,
            offset=offset,
            company_id=company.id,
        )
        for entry in page["data"]:
            try:
                fields = _journal_fields(entry)
            except (AttributeError, KeyError, TypeError, ValueError):
                logger.warning("Skipping malformed journal entry for company %s: %r", company.id, entry)
                continue
            database.upsert_journal(company.id, **fields)
            synced += 1

        total = int(page.get("meta", {}).get("total_count", 0))
        offset += page_size
        if offset >= total:
            break

    logger.info("Synchronised %s journal(s) for company %s", synced, company.id)
    return synced


__all__ = ["FreeeAPIError", "FreeeClient", "FreeeCredentials", "linked_company_number", "sync_journals"]
