"""Application factory wiring the stores, gate, API, and pages together."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from datetime import timedelta

from fastapi import FastAPI

from .api import register_api_routes
from .audit_log import AuditLogger
from .auth import Authenticator
from .config import Settings
from .database import Database
from .errors import register_error_handlers
from .freee import FreeeClient, FreeeCredentials
from .gate import RequestGateMiddleware
from .journal_checker import JournalChecker
from .locales import MessageCatalog
from .rate_limit import RateLimiter
from .sessions import SessionStore
from .token_store import OAuthTokenStore
from .web import register_ui_routes

logger = logging.getLogger("ledger_audit.service")


def _initialise_database(database: Database) -> None:
    database.initialize()
    logger.info("Database ready at %s", database.path)


def create_app(
    *,
    database: Database | None = None,
    settings: Settings | None = None,
    freee_client: FreeeClient | None = None,
) -> FastAPI:
    """Instantiate the FastAPI application for the ledger audit service."""

    config = settings or Settings.from_env()
    db = database or Database(config.database_path)
    _initialise_database(db)

    if not config.secure_cookies:
        logger.warning(
            "Session cookies are not marked as secure. Only disable secure cookies for"
            " local development."
        )

    sessions = SessionStore(db, ttl=timedelta(hours=config.session_ttl_hours))
    audit = AuditLogger(db)
    authenticator = Authenticator(db, sessions, audit)
    token_store = OAuthTokenStore(db, encryption_key=config.encryption_key)
    client = freee_client or FreeeClient(
        FreeeCredentials(
            client_id=config.freee_client_id,
            client_secret=config.freee_client_secret,
            redirect_uri=config.freee_redirect_uri,
            mock_mode=config.freee_mock_mode,
        ),
        token_store=token_store,
        audit=audit,
    )
    if client.mock_mode:
        logger.info("Accounting API client running in mock mode")
    catalog = MessageCatalog(default_locale=config.default_locale)
    journals_limiter = RateLimiter(config.journals_rate_limit, config.journals_rate_window_seconds)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        purged = sessions.purge_expired()
        if purged:
            logger.info("Removed %s expired session(s)", purged)
        yield
        client.close()

    app = FastAPI(
        title="Ledger Audit",
        version=config.version,
        description="Authenticated journal audit service backed by the freee accounting API.",
        docs_url=None,
        redoc_url=None,
        lifespan=lifespan,
    )

    app.state.settings = config
    app.state.database = db
    app.state.authenticator = authenticator
    app.state.audit = audit
    app.state.freee_client = client
    app.state.journals_limiter = journals_limiter

    register_error_handlers(app)
    app.add_middleware(
        RequestGateMiddleware,
        authenticator=authenticator,
        validate_sessions=config.validate_page_sessions,
        default_locale=catalog.default_locale,
    )
    register_api_routes(
        app,
        database=db,
        authenticator=authenticator,
        settings=config,
        freee_client=client,
        token_store=token_store,
        journals_limiter=journals_limiter,
        journal_checker=JournalChecker(),
        audit=audit,
    )
    register_ui_routes(
        app,
        db,
        authenticator=authenticator,
        catalog=catalog,
        secure_cookies=config.secure_cookies,
    )
    return app


__all__ = ["create_app"]
