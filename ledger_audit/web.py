"""Locale-prefixed HTML pages: sign-in, sign-out, and the dashboard."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional, Tuple
from urllib.parse import parse_qs

from fastapi import APIRouter, FastAPI, Request, status
from fastapi.responses import HTMLResponse, RedirectResponse
from fastapi.templating import Jinja2Templates

from .api import client_details
from .auth import Authenticator
from .database import Database
from .errors import InvalidCredentials
from .locales import MessageCatalog
from .models import User
from .security import SESSION_COOKIE_NAME, clear_session_cookie, issue_session_cookie

logger = logging.getLogger("ledger_audit.web")

RECENT_JOURNAL_LIMIT = 20


def _template_environment() -> Jinja2Templates:
    base_dir = Path(__file__).resolve().parent
    return Jinja2Templates(directory=str(base_dir / "templates"))


async def _parse_login_form(request: Request) -> Tuple[str, str]:
    body_bytes = await request.body()
    content_type = request.headers.get("content-type", "")
    charset = "utf-8"
    if "charset=" in content_type:
        charset = content_type.split("charset=", 1)[1].split(";", 1)[0].strip() or "utf-8"
    try:
        decoded = body_bytes.decode(charset)
    except (LookupError, UnicodeDecodeError):
        decoded = body_bytes.decode("utf-8", errors="ignore")
    data = parse_qs(decoded, keep_blank_values=True)
    email = data.get("email", [""])[0].strip()
    password = data.get("password", [""])[0]
    return email, password


def register_ui_routes(
    app: FastAPI,
    database: Database,
    *,
    authenticator: Authenticator,
    catalog: MessageCatalog,
    secure_cookies: bool,
) -> None:
    """Expose the HTML pages on the provided FastAPI app."""

    templates = _template_environment()
    router = APIRouter(include_in_schema=False)
    cookie_max_age = authenticator.sessions.cookie_max_age

    def _context(request: Request, locale: str, user: Optional[User], title_key: str, **extra):
        t = catalog.bundle(locale)
        context = {
            "request": request,
            "locale": locale,
            "user": user,
            "t": t,
            "title": t(title_key),
        }
        context.update(extra)
        return context

    def _load_user(request: Request) -> Tuple[Optional[User], Optional[str]]:
        token = request.cookies.get(SESSION_COOKIE_NAME)
        user = getattr(request.state, "user", None)
        if user is not None or not token:
            return user, token
        return authenticator.validate_session(token), token

    def _render_login(
        request: Request,
        locale: str,
        *,
        email: str = "",
        error: Optional[str] = None,
        status_code: int = status.HTTP_200_OK,
    ):
        user, token = _load_user(request)
        if user is not None:
            return RedirectResponse(
                request.url_for("ui_dashboard", locale=locale), status_code=status.HTTP_303_SEE_OTHER
            )

        context = _context(request, locale, None, "login.title", email=email, error=error)
        response = templates.TemplateResponse(request, "login.html", context, status_code=status_code)
        if token:
            clear_session_cookie(response)
        return response

    @router.get("/{locale}/login", response_class=HTMLResponse, name="ui_login")
    async def login_form(locale: str, request: Request):
        return _render_login(request, catalog.resolve_locale(locale))

    @router.post("/{locale}/login", name="ui_login_submit")
    async def login_submit(locale: str, request: Request):
        locale = catalog.resolve_locale(locale)
        email, password = await _parse_login_form(request)
        if not email or not password:
            return _render_login(
                request,
                locale,
                email=email,
                error=catalog.translate(locale, "login.missing_fields"),
                status_code=status.HTTP_400_BAD_REQUEST,
            )

        ip_address, user_agent = client_details(request)
        try:
            result = authenticator.login(email, password, ip_address=ip_address, user_agent=user_agent)
        except InvalidCredentials:
            return _render_login(
                request,
                locale,
                email=email,
                error=catalog.translate(locale, "login.invalid_credentials"),
                status_code=status.HTTP_401_UNAUTHORIZED,
            )

        existing_token = request.cookies.get(SESSION_COOKIE_NAME)
        if existing_token:
            authenticator.sessions.destroy(existing_token)

        logger.info("User %s signed in to the web interface", result.user.id)
        response = RedirectResponse(
            request.url_for("ui_dashboard", locale=locale), status_code=status.HTTP_303_SEE_OTHER
        )
        issue_session_cookie(response, result.token, max_age=cookie_max_age, secure=secure_cookies)
        return response

    @router.get("/{locale}/logout", name="ui_logout")
    async def logout(locale: str, request: Request):
        ip_address, user_agent = client_details(request)
        authenticator.logout(
            request.cookies.get(SESSION_COOKIE_NAME),
            ip_address=ip_address,
            user_agent=user_agent,
        )
        response = RedirectResponse(
            request.url_for("ui_login", locale=catalog.resolve_locale(locale)),
            status_code=status.HTTP_303_SEE_OTHER,
        )
        clear_session_cookie(response)
        return response

    @router.get("/{locale}/dashboard", response_class=HTMLResponse, name="ui_dashboard")
    async def dashboard(locale: str, request: Request):
        locale = catalog.resolve_locale(locale)
        user, token = _load_user(request)
        if user is None:
            response = RedirectResponse(
                request.url_for("ui_login", locale=locale), status_code=status.HTTP_303_SEE_OTHER
            )
            if token:
                clear_session_cookie(response)
            return response

        company = database.get_company(user.company_id) if user.company_id else None
        journals = database.list_journals(company.id, limit=RECENT_JOURNAL_LIMIT) if company else []
        context = _context(
            request,
            locale,
            user,
            "dashboard.title",
            company=company,
            journals=journals,
            freee_status=request.query_params.get("freee"),
            freee_error=request.query_params.get("freee_error"),
        )
        return templates.TemplateResponse(request, "dashboard.html", context)

    app.include_router(router)


__all__ = ["register_ui_routes"]
