"""Configuration management for the ledger audit service."""
from __future__ import annotations

import os
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Dict, Mapping, Optional

import yaml


_TRUTHY = {"1", "true", "yes", "on"}


def _env_flag(value: Optional[str], default: bool = False) -> bool:
    if value is None:
        return default
    return value.strip().lower() in _TRUTHY


@dataclass(frozen=True)
class Settings:
    """Runtime settings for the web service and its integrations."""

    database_path: Path
    secure_cookies: bool = False
    session_ttl_hours: int = 24
    validate_page_sessions: bool = True
    encryption_key: Optional[str] = None
    default_locale: str = "ja"
    journals_rate_limit: int = 60
    journals_rate_window_seconds: int = 60
    freee_client_id: Optional[str] = None
    freee_client_secret: Optional[str] = None
    freee_redirect_uri: str = "http://localhost:8000/api/freee/callback"
    freee_mock_mode: bool = False
    version: str = "1.0.0"

    @staticmethod
    def from_env(environ: Mapping[str, str] | None = None) -> "Settings":
        """Build settings from ``LEDGER_AUDIT_*`` and ``FREEE_*`` variables."""

        env = os.environ if environ is None else environ
        settings = Settings(
            database_path=resolve_database_path(env.get("LEDGER_AUDIT_DB_PATH")),
            # Secure cookies are the production default; disable for plain HTTP development.
            secure_cookies=_env_flag(env.get("LEDGER_AUDIT_SECURE_COOKIES"), env.get("LEDGER_AUDIT_ENV") == "production"),
            session_ttl_hours=int(env.get("LEDGER_AUDIT_SESSION_TTL_HOURS", "24")),
            validate_page_sessions=_env_flag(env.get("LEDGER_AUDIT_VALIDATE_PAGE_SESSIONS"), True),
            encryption_key=env.get("LEDGER_AUDIT_ENCRYPTION_KEY") or None,
            default_locale=env.get("LEDGER_AUDIT_DEFAULT_LOCALE", "ja"),
            journals_rate_limit=int(env.get("LEDGER_AUDIT_RATE_LIMIT_MAX", "60")),
            journals_rate_window_seconds=int(env.get("LEDGER_AUDIT_RATE_LIMIT_WINDOW", "60")),
            freee_client_id=env.get("FREEE_CLIENT_ID") or None,
            freee_client_secret=env.get("FREEE_CLIENT_SECRET") or None,
            freee_redirect_uri=env.get("FREEE_REDIRECT_URI", "http://localhost:8000/api/freee/callback"),
            freee_mock_mode=_env_flag(env.get("FREEE_MOCK_MODE")),
        )

        config_file = env.get("LEDGER_AUDIT_CONFIG")
        if config_file:
            settings = load_settings_file(resolve_config_path(config_file), settings)
        return settings


_FILE_KEYS = {
    "database_path",
    "secure_cookies",
    "session_ttl_hours",
    "validate_page_sessions",
    "default_locale",
    "journals_rate_limit",
    "journals_rate_window_seconds",
    "freee_client_id",
    "freee_redirect_uri",
    "freee_mock_mode",
}


def load_settings_file(config_path: Path, base: Settings) -> Settings:
    """Overlay values from a YAML file on top of ``base``.

    Secrets (client secret, encryption key) are only read from the environment.
    """
    with config_path.open("r", encoding="utf-8") as handle:
        raw = yaml.safe_load(handle) or {}

    if not isinstance(raw, dict):
        raise ValueError("Configuration file must contain a mapping at the top level")

    unknown = set(raw) - _FILE_KEYS
    if unknown:
        raise ValueError(f"Unknown configuration keys: {', '.join(sorted(unknown))}")

    overrides: Dict[str, object] = dict(raw)
    if "database_path" in overrides:
        raw_path = Path(str(overrides["database_path"])).expanduser()
        if not raw_path.is_absolute():
            raw_path = config_path.parent / raw_path
        overrides["database_path"] = raw_path.resolve(strict=False)
    return replace(base, **overrides)


def resolve_database_path(env_value: Optional[str]) -> Path:
    """Resolve the on-disk path for the application database."""

    if env_value:
        return Path(env_value).expanduser().resolve(strict=False)
    base_dir = Path(__file__).resolve().parent.parent / "data"
    return (base_dir / "ledger_audit.sqlite3").resolve(strict=False)


def resolve_config_path(env_value: Optional[str]) -> Path:
    """Resolve the path to the optional YAML configuration file."""
    if env_value:
        return Path(env_value).expanduser().resolve(strict=False)
    return (Path(__file__).resolve().parent.parent / "config" / "ledger_audit.yaml").resolve(strict=False)


__all__ = ["Settings", "load_settings_file", "resolve_config_path", "resolve_database_path"]
