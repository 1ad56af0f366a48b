"""Request gating: classify each inbound request and allow, reject, or redirect it."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional, Sequence

from fastapi import Request, status
from fastapi.responses import RedirectResponse
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.responses import Response

from .auth import Authenticator
from .errors import error_response
from .locales import DEFAULT_LOCALE, LOCALES
from .security import clear_session_cookie, request_tokens

logger = logging.getLogger("ledger_audit.gate")

PUBLIC_PATHS = ("/login", "/api/auth/login", "/api/auth/logout", "/api/health")
UNGATED_PREFIXES = ("/static/", "/favicon.ico")
API_PREFIX = "/api/"

SECURITY_HEADERS = {
    "X-Frame-Options": "DENY",
    "X-Content-Type-Options": "nosniff",
    "Referrer-Policy": "strict-origin-when-cross-origin",
}


class GateAction(str, Enum):
    ALLOW = "allow"
    UNAUTHORIZED = "unauthorized"
    REDIRECT = "redirect"


@dataclass(frozen=True)
class GateDecision:
    action: GateAction
    location: Optional[str] = None
    clear_cookie: bool = False


def is_public_path(path: str) -> bool:
    return any(public in path for public in PUBLIC_PATHS)


def match_locale(path: str, locales: Sequence[str] = LOCALES) -> Optional[str]:
    for locale in locales:
        if path == f"/{locale}" or path.startswith(f"/{locale}/"):
            return locale
    return None


def decide(
    path: str,
    token: Optional[str],
    *,
    session_valid: Optional[Callable[[str], bool]] = None,
    locales: Sequence[str] = LOCALES,
    default_locale: str = DEFAULT_LOCALE,
) -> GateDecision:
    """Decide what to do with a request for ``path`` carrying ``token``.

    ``session_valid`` checks that a presented token belongs to a live session.
    When it is ``None`` the mere presence of a token is accepted.
    """
    if path.startswith(UNGATED_PREFIXES):
        return GateDecision(GateAction.ALLOW)

    if path.startswith(API_PREFIX) or path == API_PREFIX.rstrip("/"):
        if is_public_path(path):
            return GateDecision(GateAction.ALLOW)
        if not token:
            return GateDecision(GateAction.UNAUTHORIZED)
        if session_valid is not None and not session_valid(token):
            return GateDecision(GateAction.UNAUTHORIZED, clear_cookie=True)
        return GateDecision(GateAction.ALLOW)

    if path == "/":
        return GateDecision(GateAction.REDIRECT, location=f"/{default_locale}/login")

    locale = match_locale(path, locales)
    if locale is None:
        return GateDecision(GateAction.REDIRECT, location=f"/{default_locale}{path}")

    if is_public_path(path):
        return GateDecision(GateAction.ALLOW)

    login_url = f"/{locale}/login"
    if not token:
        return GateDecision(GateAction.REDIRECT, location=login_url)
    if session_valid is not None and not session_valid(token):
        return GateDecision(GateAction.REDIRECT, location=login_url, clear_cookie=True)
    return GateDecision(GateAction.ALLOW)


class RequestGateMiddleware(BaseHTTPMiddleware):
    """Apply :func:`decide` to every request and add security headers."""

    def __init__(
        self,
        app,
        *,
        authenticator: Authenticator,
        validate_sessions: bool = True,
        default_locale: str = DEFAULT_LOCALE,
    ) -> None:
        super().__init__(app)
        self._authenticator = authenticator
        self._validate_sessions = validate_sessions
        self._default_locale = default_locale

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        tokens = request_tokens(request.cookies, request.headers)
        request.state.user = None

        def session_valid(value: str) -> bool:
            # A stale cookie must not mask a live bearer token, or the reverse.
            for candidate in dict.fromkeys([value, *tokens]):
                user = self._authenticator.validate_session(candidate)
                if user is not None:
                    request.state.user = user
                    return True
            return False

        decision = decide(
            request.url.path,
            tokens[0] if tokens else None,
            session_valid=session_valid if self._validate_sessions else None,
            default_locale=self._default_locale,
        )

        if decision.action is GateAction.UNAUTHORIZED:
            logger.debug("Rejected unauthenticated API request to %s", request.url.path)
            response: Response = error_response(status.HTTP_401_UNAUTHORIZED, "Unauthorized")
        elif decision.action is GateAction.REDIRECT:
            location = decision.location or "/"
            if request.url.query and not location.endswith("/login"):
                location = f"{location}?{request.url.query}"
            response = RedirectResponse(location, status_code=status.HTTP_307_TEMPORARY_REDIRECT)
        else:
            response = await call_next(request)

        if decision.clear_cookie:
            clear_session_cookie(response)
        for header, value in SECURITY_HEADERS.items():
            response.headers.setdefault(header, value)
        return response


__all__ = [
    "GateAction",
    "GateDecision",
    "PUBLIC_PATHS",
    "RequestGateMiddleware",
    "decide",
    "is_public_path",
    "match_locale",
]
