from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from ledger_audit.database import Database
from ledger_audit.token_store import OAuthTokenStore, parse_token_response

KEY = "0123456789abcdef" * 4
OTHER_KEY = "fedcba9876543210" * 4

RESPONSE = {
    "access_token": "access-1",
    "refresh_token": "refresh-1",
    "expires_in": 86400,
    "token_type": "bearer",
    "scope": "read write",
}


def test_parse_token_response_validates_shape() -> None:
    assert parse_token_response(RESPONSE)["scope"] == "read write"
    assert parse_token_response({**RESPONSE, "expires_in": "86400"}) is None
    assert parse_token_response({**RESPONSE, "expires_in": True}) is None
    assert parse_token_response({"access_token": "only"}) is None
    assert parse_token_response(["not", "a", "mapping"]) is None


def test_tokens_are_encrypted_at_rest(database: Database, company) -> None:
    store = OAuthTokenStore(database, encryption_key=KEY)

    saved = store.save(company.id, RESPONSE)

    row = database.get_oauth_token(company.id)
    assert row["access_token"] != "access-1"
    assert row["refresh_token"] != "refresh-1"
    assert store.get(company.id) == saved


def test_expiry_includes_safety_buffer(database: Database, company) -> None:
    store = OAuthTokenStore(database, encryption_key=KEY)
    before = datetime.now(timezone.utc)

    saved = store.save(company.id, RESPONSE)

    expected = before + timedelta(seconds=86400) - timedelta(minutes=5)
    assert abs((saved.expires_at - expected).total_seconds()) < 5
    assert store.is_expired(company.id) is False


def test_short_lived_token_counts_as_expired(database: Database, company) -> None:
    store = OAuthTokenStore(database, encryption_key=KEY)
    store.save(company.id, {**RESPONSE, "expires_in": 120})

    assert store.is_expired(company.id) is True


def test_malformed_response_is_not_saved(database: Database, company) -> None:
    store = OAuthTokenStore(database, encryption_key=KEY)

    with pytest.raises(ValueError):
        store.save(company.id, {"access_token": "x"})
    assert store.get(company.id) is None


def test_wrong_key_reads_as_missing(database: Database, company) -> None:
    OAuthTokenStore(database, encryption_key=KEY).save(company.id, RESPONSE)

    assert OAuthTokenStore(database, encryption_key=OTHER_KEY).get(company.id) is None


def test_delete(database: Database, company) -> None:
    store = OAuthTokenStore(database, encryption_key=KEY)
    store.save(company.id, RESPONSE)

    assert store.delete(company.id) is True
    assert store.delete(company.id) is False
    assert store.is_expired(company.id) is True
