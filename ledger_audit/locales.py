"""Static locale catalogs loaded once from the packaged YAML message files."""
from __future__ import annotations

from pathlib import Path
from typing import Any, Dict, Mapping, Optional

import yaml

LOCALES = ("ja", "en")
DEFAULT_LOCALE = "ja"

_MESSAGES_DIR = Path(__file__).resolve().parent / "messages"


def _load_catalog(locale: str) -> Dict[str, Any]:
    path = _MESSAGES_DIR / f"{locale}.yaml"
    with path.open("r", encoding="utf-8") as handle:
        data = yaml.safe_load(handle) or {}
    if not isinstance(data, dict):
        raise ValueError(f"Message catalog {path.name} must contain a mapping")
    return data


def load_catalogs() -> Dict[str, Dict[str, Any]]:
    """Return a mapping of every supported locale to its message catalog."""

    return {locale: _load_catalog(locale) for locale in LOCALES}


class MessageCatalog:
    """Lookup of dotted message keys with fallback to the default locale."""

    def __init__(
        self,
        catalogs: Optional[Mapping[str, Mapping[str, Any]]] = None,
        *,
        default_locale: str = DEFAULT_LOCALE,
    ) -> None:
        self._catalogs = dict(catalogs) if catalogs is not None else load_catalogs()
        if default_locale not in self._catalogs:
            raise ValueError(f"Default locale '{default_locale}' has no catalog")
        self._default = default_locale

    @property
    def default_locale(self) -> str:
        return self._default

    @property
    def locales(self) -> tuple[str, ...]:
        return tuple(self._catalogs)

    def resolve_locale(self, value: Optional[str]) -> str:
        if value and value in self._catalogs:
            return value
        return self._default

    def translate(self, locale: str, key: str) -> str:
        for candidate in (locale, self._default):
            value = _lookup(self._catalogs.get(candidate, {}), key)
            if isinstance(value, str):
                return value
        return key

    def bundle(self, locale: str):
        """Return a ``t(key)`` callable bound to ``locale`` for templates."""

        resolved = self.resolve_locale(locale)
        return lambda key: self.translate(resolved, key)


def _lookup(catalog: Mapping[str, Any], key: str) -> Any:
    node: Any = catalog
    for part in key.split("."):
        if not isinstance(node, Mapping) or part not in node:
            return None
        node = node[part]
    return node


__all__ = ["DEFAULT_LOCALE", "LOCALES", "MessageCatalog", "load_catalogs"]
