"""JSON API: authentication, health, journals, and accounting API integration."""

from __future__ import annotations

import logging
import secrets
from datetime import date, datetime, timezone
from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import urlencode

from fastapi import APIRouter, Depends, FastAPI, Query, Request, status
from fastapi.responses import JSONResponse, RedirectResponse
from pydantic import BaseModel, Field, field_validator

from .audit_log import AuditLogger
from .auth import Authenticator
from .config import Settings
from .crypto import EncryptionKeyError, constant_time_compare, generate_secure_token
from .database import Database
from .errors import NotFound, Unauthenticated, ValidationError, error_response
from .freee import FreeeAPIError, FreeeClient, linked_company_number, sync_journals
from .journal_checker import JournalChecker, run_audit
from .models import AuditStatus, Company, User
from .rate_limit import RateLimiter, client_key, rate_limit_dependency
from .security import (
    SESSION_COOKIE_NAME,
    bearer_token,
    clear_session_cookie,
    issue_session_cookie,
)
from .token_store import OAuthTokenStore

logger = logging.getLogger("ledger_audit.api")

OAUTH_STATE_COOKIE = "freee_oauth_state"


class LoginRequest(BaseModel):
    email: str = Field(..., min_length=3, max_length=320)
    password: str = Field(..., min_length=1)

    @field_validator("email")
    @classmethod
    def _email_shape(cls, value: str) -> str:
        local, _, domain = value.partition("@")
        if not local or "." not in domain or " " in value:
            raise ValueError("Invalid email address")
        return value


class CompanyRequest(BaseModel):
    company_id: str = Field(..., min_length=1)


class SyncRequest(BaseModel):
    company_id: str = Field(..., min_length=1)
    start_date: Optional[date] = None
    end_date: Optional[date] = None


class AuditRunRequest(BaseModel):
    company_id: Optional[str] = None
    status: AuditStatus = AuditStatus.PENDING
    start_date: Optional[date] = None
    end_date: Optional[date] = None

    @field_validator("status")
    @classmethod
    def _rerunnable(cls, value: AuditStatus) -> AuditStatus:
        if value not in (AuditStatus.PENDING, AuditStatus.FAILED):
            raise ValueError("Only PENDING or FAILED journals can be audited")
        return value


def client_details(request: Request) -> Tuple[str, str]:
    """Return the caller's address and user agent for audit records."""

    return client_key(request), request.headers.get("user-agent", "unknown")


def _parse_date(value: Optional[str], field: str) -> Optional[date]:
    if not value:
        return None
    try:
        return date.fromisoformat(value)
    except ValueError as exc:
        raise ValidationError(
            details=[{"field": field, "message": "Expected a date in YYYY-MM-DD format", "type": "date"}]
        ) from exc


def _parse_audit_status(value: Optional[str]) -> Optional[AuditStatus]:
    if not value:
        return None
    try:
        return AuditStatus(value)
    except ValueError as exc:
        allowed = ", ".join(member.value for member in AuditStatus)
        raise ValidationError(
            details=[{"field": "auditStatus", "message": f"Expected one of {allowed}", "type": "enum"}]
        ) from exc


def register_api_routes(
    app: FastAPI,
    *,
    database: Database,
    authenticator: Authenticator,
    settings: Settings,
    freee_client: FreeeClient,
    token_store: OAuthTokenStore,
    journals_limiter: RateLimiter,
    journal_checker: JournalChecker,
    audit: AuditLogger,
) -> None:
    """Expose the JSON API endpoints on the provided FastAPI application."""

    router = APIRouter(prefix="/api")
    cookie_max_age = authenticator.sessions.cookie_max_age

    def _bearer_user(request: Request) -> User:
        token = bearer_token(request.headers)
        if not token:
            raise Unauthenticated()
        user = authenticator.validate_session(token)
        if user is None:
            raise Unauthenticated("Invalid session")
        return user

    def _resolve_company(company_id: str) -> Company:
        if company_id != "default":
            company = database.get_company(company_id)
            if company is None:
                raise ValidationError(
                    details=[{"field": "company_id", "message": "Unknown company", "type": "value_error"}]
                )
            return company

        company = database.first_company()
        if company is None:
            company = database.upsert_company(
                f"company_{secrets.token_hex(6)}",
                name="Default Company",
                fiscal_year_start=1,
            )
        return company

    def _linked_company(company_id: Optional[str]) -> Tuple[Company, int]:
        if not company_id:
            raise ValidationError("company_id is required")
        company = database.get_company(company_id)
        if company is None:
            raise NotFound("Company not found")
        return company, linked_company_number(company)

    def _current_user_id(request: Request) -> Optional[int]:
        user = getattr(request.state, "user", None)
        return user.id if user is not None else None

    # ------------------------------------------------------------------
    # Authentication
    # ------------------------------------------------------------------
    @router.post("/auth/login")
    async def login(payload: LoginRequest, request: Request) -> JSONResponse:
        ip_address, user_agent = client_details(request)
        result = authenticator.login(
            payload.email,
            payload.password,
            ip_address=ip_address,
            user_agent=user_agent,
        )
        response = JSONResponse({"success": True, "user": result.user.to_public()})
        issue_session_cookie(response, result.token, max_age=cookie_max_age, secure=settings.secure_cookies)
        return response

    @router.post("/auth/logout")
    async def logout(request: Request) -> JSONResponse:
        ip_address, user_agent = client_details(request)
        authenticator.logout(
            request.cookies.get(SESSION_COOKIE_NAME),
            ip_address=ip_address,
            user_agent=user_agent,
        )
        response = JSONResponse({"success": True})
        clear_session_cookie(response)
        return response

    @router.get("/auth/me")
    async def me(request: Request) -> JSONResponse:
        token = request.cookies.get(SESSION_COOKIE_NAME)
        if not token:
            return error_response(status.HTTP_401_UNAUTHORIZED, "Not authenticated")

        user = authenticator.validate_session(token)
        if user is None:
            response = error_response(status.HTTP_401_UNAUTHORIZED, "Invalid or expired session")
            clear_session_cookie(response)
            return response

        return JSONResponse({"success": True, "user": user.to_public()})

    # ------------------------------------------------------------------
    # Health
    # ------------------------------------------------------------------
    @router.get("/health")
    async def health() -> JSONResponse:
        healthy = database.health_check()
        payload = {
            "status": "healthy" if healthy else "unhealthy",
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "version": settings.version,
            "checks": {"database": "ok" if healthy else "error"},
        }
        return JSONResponse(
            payload,
            status_code=status.HTTP_200_OK if healthy else status.HTTP_503_SERVICE_UNAVAILABLE,
        )

    # ------------------------------------------------------------------
    # Journals
    # ------------------------------------------------------------------
    @router.get("/journals", dependencies=[Depends(rate_limit_dependency(journals_limiter, scope="journals"))])
    async def list_journals(
        request: Request,
        company_id: Optional[str] = Query(default=None, alias="companyId"),
        start_date: Optional[str] = Query(default=None, alias="startDate"),
        end_date: Optional[str] = Query(default=None, alias="endDate"),
    ) -> JSONResponse:
        _bearer_user(request)
        if not company_id:
            return error_response(status.HTTP_400_BAD_REQUEST, "companyId is required")

        journals = database.list_journals(
            company_id,
            start_date=_parse_date(start_date, "startDate"),
            end_date=_parse_date(end_date, "endDate"),
        )
        return JSONResponse({"success": True, "data": [journal.to_dict() for journal in journals]})

    # ------------------------------------------------------------------
    # Journal audit
    # ------------------------------------------------------------------
    @router.get("/audit/journals")
    def audit_journals(
        page: int = Query(default=1, ge=1),
        limit: int = Query(default=50, ge=1, le=200),
        company_id: Optional[str] = Query(default=None, alias="companyId"),
        start_date: Optional[str] = Query(default=None, alias="startDate"),
        end_date: Optional[str] = Query(default=None, alias="endDate"),
        audit_status: Optional[str] = Query(default=None, alias="auditStatus"),
    ) -> JSONResponse:
        filters = {
            "company_id": company_id,
            "audit_status": _parse_audit_status(audit_status),
            "start_date": _parse_date(start_date, "startDate"),
            "end_date": _parse_date(end_date, "endDate"),
        }
        total = database.count_journals(**filters)
        journals = database.search_journals(limit=limit, offset=(page - 1) * limit, **filters)
        return JSONResponse(
            {
                "success": True,
                "data": [journal.to_dict() for journal in journals],
                "pagination": {
                    "page": page,
                    "limit": limit,
                    "total": total,
                    "totalPages": (total + limit - 1) // limit,
                },
            }
        )

    @router.post("/audit/run")
    def audit_run(payload: AuditRunRequest, request: Request) -> JSONResponse:
        if payload.company_id and database.get_company(payload.company_id) is None:
            raise NotFound("Company not found")

        result = run_audit(
            database,
            journal_checker,
            company_id=payload.company_id,
            status=payload.status,
            start_date=payload.start_date,
            end_date=payload.end_date,
            audit=audit,
            user_id=_current_user_id(request),
        )
        failures = [
            {"freeeJournalId": journal_id, "issues": [issue.to_dict() for issue in issues]}
            for journal_id, issues in result.failures.items()
        ]
        return JSONResponse({"success": True, "result": result.to_dict(), "failures": failures})

    # ------------------------------------------------------------------
    # Accounting API integration
    # ------------------------------------------------------------------
    @router.get("/freee/auth")
    def freee_authorize(company_id: str = Query(default="default")) -> RedirectResponse:
        state = generate_secure_token(16)
        response = RedirectResponse(
            freee_client.authorization_url(f"{company_id}:{state}"),
            status_code=status.HTTP_307_TEMPORARY_REDIRECT,
        )
        response.set_cookie(
            OAUTH_STATE_COOKIE,
            state,
            max_age=600,
            secure=settings.secure_cookies,
            httponly=True,
            samesite="lax",
            path="/",
        )
        return response

    @router.get("/freee/callback")
    def freee_callback(
        request: Request,
        code: Optional[str] = None,
        state: Optional[str] = None,
        error: Optional[str] = None,
        error_description: Optional[str] = None,
    ) -> RedirectResponse:
        def _finish(query: Dict[str, str]) -> RedirectResponse:
            response = RedirectResponse(
                f"/{settings.default_locale}/dashboard?{urlencode(query)}",
                status_code=status.HTTP_303_SEE_OTHER,
            )
            response.delete_cookie(OAUTH_STATE_COOKIE, path="/")
            return response

        if error:
            return _finish({"freee_error": error_description or error})
        if not code or not state:
            return _finish({"freee_error": "missing_parameters"})

        stored_state = request.cookies.get(OAUTH_STATE_COOKIE)
        company_id, _, state_token = state.rpartition(":")
        if not stored_state or not state_token or not constant_time_compare(stored_state, state_token):
            logger.warning("Rejected accounting API callback with invalid state")
            return _finish({"freee_error": "invalid_state"})

        try:
            token_response = freee_client.exchange_code(code)
            company = _resolve_company(company_id or "default")
            token_store.save(company.id, token_response)
        except (EncryptionKeyError, FreeeAPIError, ValueError, ValidationError):
            logger.exception("Failed to complete accounting API authorisation")
            return _finish({"freee_error": "authentication_failed"})

        logger.info("Stored accounting API token for company %s", company.id)
        return _finish({"freee": "connected"})

    @router.post("/freee/refresh")
    def freee_refresh(payload: CompanyRequest) -> JSONResponse:
        token = token_store.get(payload.company_id)
        if token is None:
            return error_response(status.HTTP_401_UNAUTHORIZED, "No token found. Please authenticate first.")

        try:
            refreshed = token_store.save(payload.company_id, freee_client.refresh(token.refresh_token))
        except (FreeeAPIError, ValueError):
            logger.exception("Failed to refresh accounting API token for company %s", payload.company_id)
            return error_response(status.HTTP_500_INTERNAL_SERVER_ERROR, "Failed to refresh token")

        return JSONResponse({"success": True, "expires_at": refreshed.expires_at.isoformat()})

    @router.get("/freee/companies")
    def freee_companies(company_id: Optional[str] = Query(default=None)) -> JSONResponse:
        try:
            companies: List[Dict[str, Any]] = freee_client.get_companies(company_id=company_id)
        except FreeeAPIError as exc:
            logger.error("Failed to fetch companies: %s", exc.message)
            return error_response(status.HTTP_502_BAD_GATEWAY, "Failed to fetch companies")
        return JSONResponse({"success": True, "companies": companies, "mock_mode": freee_client.mock_mode})

    @router.get("/freee/journals")
    def freee_journals(
        company_id: Optional[str] = Query(default=None),
        start_date: Optional[date] = Query(default=None),
        end_date: Optional[date] = Query(default=None),
        limit: int = Query(default=100, ge=1, le=100),
        offset: int = Query(default=0, ge=0),
    ) -> JSONResponse:
        company, freee_company_id = _linked_company(company_id)
        try:
            page = freee_client.get_journals(
                freee_company_id,
                start_date=start_date.isoformat() if start_date else None,
                end_date=end_date.isoformat() if end_date else None,
                limit=limit,
                offset=offset,
                company_id=company.id,
            )
        except FreeeAPIError as exc:
            logger.error("Failed to fetch journals for company %s: %s", company.id, exc.message)
            return error_response(status.HTTP_502_BAD_GATEWAY, "Failed to fetch journals")
        return JSONResponse(
            {
                "success": True,
                "journals": page["data"],
                "meta": page["meta"],
                "mock_mode": freee_client.mock_mode,
            }
        )

    @router.get("/freee/reports/trial")
    def freee_trial_balance(
        company_id: Optional[str] = Query(default=None),
        fiscal_year: Optional[int] = Query(default=None, ge=1900),
        start_month: Optional[int] = Query(default=None, ge=1, le=12),
        end_month: Optional[int] = Query(default=None, ge=1, le=12),
    ) -> JSONResponse:
        company, freee_company_id = _linked_company(company_id)
        try:
            report = freee_client.get_trial_balance(
                freee_company_id,
                fiscal_year=fiscal_year,
                start_month=start_month,
                end_month=end_month,
                company_id=company.id,
            )
        except FreeeAPIError as exc:
            logger.error("Failed to fetch trial balance for company %s: %s", company.id, exc.message)
            return error_response(status.HTTP_502_BAD_GATEWAY, "Failed to fetch trial balance")
        return JSONResponse(
            {
                "success": True,
                "trial_balance": report.get("trial_bs"),
                "mock_mode": freee_client.mock_mode,
            }
        )

    @router.post("/freee/disconnect")
    def freee_disconnect(payload: CompanyRequest, request: Request) -> JSONResponse:
        removed = token_store.delete(payload.company_id)
        ip_address, user_agent = client_details(request)
        audit.log(
            "FREEE_DISCONNECT",
            "oauth_token",
            user_id=_current_user_id(request),
            resource_id=payload.company_id,
            ip_address=ip_address,
            user_agent=user_agent,
        )
        return JSONResponse({"success": True, "disconnected": removed})

    @router.post("/freee/sync")
    def freee_sync(payload: SyncRequest) -> JSONResponse:
        company, _ = _linked_company(payload.company_id)

        try:
            synced = sync_journals(
                database,
                freee_client,
                company,
                start_date=payload.start_date.isoformat() if payload.start_date else None,
                end_date=payload.end_date.isoformat() if payload.end_date else None,
            )
        except FreeeAPIError as exc:
            logger.error("Journal sync for company %s failed: %s", company.id, exc.message)
            return error_response(status.HTTP_502_BAD_GATEWAY, "Failed to synchronise journals")

        return JSONResponse({"success": True, "synced": synced})

    app.include_router(router)


__all__ = ["LoginRequest", "client_details", "register_api_routes"]
