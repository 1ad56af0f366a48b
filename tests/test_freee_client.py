from __future__ import annotations

from datetime import date
from typing import List
from urllib.parse import parse_qs

import httpx
import pytest

from ledger_audit.audit_log import AuditLogger
from ledger_audit.database import Database
from ledger_audit.errors import ValidationError
from ledger_audit.freee import TOKEN_URL, FreeeAPIError, FreeeClient, FreeeCredentials, sync_journals
from ledger_audit.token_store import OAuthTokenStore

TEST_KEY = "0123456789abcdef" * 4

CREDENTIALS = FreeeCredentials(
    client_id="client-id",
    client_secret="client-secret",
    redirect_uri="http://localhost:8000/api/freee/callback",
)


def _token(access: str, expires_in: int = 86400) -> dict:
    return {
        "access_token": access,
        "refresh_token": f"refresh-{access}",
        "expires_in": expires_in,
        "token_type": "bearer",
        "scope": "read write",
    }


@pytest.fixture()
def store(database: Database) -> OAuthTokenStore:
    return OAuthTokenStore(database, encryption_key=TEST_KEY)


def _client(handler, store: OAuthTokenStore, database: Database) -> FreeeClient:
    return FreeeClient(
        CREDENTIALS,
        token_store=store,
        audit=AuditLogger(database),
        http_client=httpx.Client(transport=httpx.MockTransport(handler)),
    )


def test_authorization_url_carries_client_and_state() -> None:
    client = FreeeClient(CREDENTIALS, http_client=httpx.Client(transport=httpx.MockTransport(lambda r: None)))

    url = client.authorization_url("company_1:abc")

    assert "client_id=client-id" in url
    assert "state=company_1%3Aabc" in url
    assert "response_type=code" in url


def test_missing_credentials_enable_mock_mode() -> None:
    client = FreeeClient(FreeeCredentials(client_id=None, client_secret=None, redirect_uri="http://x"))
    try:
        assert client.mock_mode is True
        assert client.exchange_code("anything")["access_token"] == "mock_access_token"
    finally:
        client.close()


def test_exchange_code_posts_form(store: OAuthTokenStore, database: Database) -> None:
    seen: List[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json=_token("fresh"))

    client = _client(handler, store, database)
    payload = client.exchange_code("the-code")

    assert payload["access_token"] == "fresh"
    assert str(seen[0].url) == TOKEN_URL
    form = parse_qs(seen[0].content.decode())
    assert form["grant_type"] == ["authorization_code"]
    assert form["code"] == ["the-code"]


def test_expired_token_is_refreshed_before_request(
    store: OAuthTokenStore, database: Database, company
) -> None:
    # Lifetime shorter than the expiry buffer, so the token is already stale.
    store.save(company.id, _token("stale", expires_in=60))
    paths: List[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        paths.append(request.url.path)
        if request.url.path.endswith("/token"):
            return httpx.Response(200, json=_token("renewed"))
        assert request.headers["Authorization"] == "Bearer renewed"
        return httpx.Response(200, json={"companies": [{"id": 1, "name": "Renewed Co"}]})

    client = _client(handler, store, database)
    companies = client.get_companies(company_id=company.id)

    assert companies == [{"id": 1, "name": "Renewed Co"}]
    assert paths == ["/public_api/token", "/api/1/companies"]
    assert store.get(company.id).access_token == "renewed"


def test_error_payload_becomes_api_error(store: OAuthTokenStore, database: Database, company) -> None:
    store.save(company.id, _token("valid"))

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(403, json={"errors": [{"messages": ["forbidden company"]}]})

    client = _client(handler, store, database)
    with pytest.raises(FreeeAPIError) as excinfo:
        client.get_companies(company_id=company.id)

    assert excinfo.value.status_code == 403
    assert excinfo.value.message == "forbidden company"
    logged = AuditLogger(database).recent(action="API_CALL:freee")
    assert logged[0].result == "FAILURE"
    assert logged[0].details["statusCode"] == 403


def test_transport_failure_is_reported_as_bad_gateway(store: OAuthTokenStore, database: Database) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    client = _client(handler, store, database)
    with pytest.raises(FreeeAPIError) as excinfo:
        client.exchange_code("code")

    assert excinfo.value.status_code == 502


def test_request_without_stored_token_fails(store: OAuthTokenStore, database: Database, company) -> None:
    client = _client(lambda request: httpx.Response(200, json={}), store, database)

    with pytest.raises(FreeeAPIError) as excinfo:
        client.get_companies(company_id=company.id)

    assert excinfo.value.status_code == 401


def test_sync_journals_pages_and_skips_malformed(store: OAuthTokenStore, database: Database, company) -> None:
    store.save(company.id, _token("valid"))
    pages = {
        "0": {
            "journals": [
                {
                    "id": 1,
                    "issue_date": "2024-04-01",
                    "description": "家賃",
                    "details": [
                        {"entry_side": "debit", "account_item_name": "地代家賃", "amount": 50000},
                        {"entry_side": "credit", "account_item_name": "普通預金", "amount": 50000},
                    ],
                },
                {"id": 2, "issue_date": "not-a-date", "details": []},
            ],
            "meta": {"total_count": 3},
        },
        "2": {
            "journals": [
                {
                    "id": 3,
                    "issue_date": "2024-04-02",
                    "details": [{"entry_side": "debit", "account_item_name": "消耗品費", "amount": 1200, "vat": 109}],
                }
            ],
            "meta": {"total_count": 3},
        },
    }

    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.params["company_id"] == "12345"
        return httpx.Response(200, json=pages[request.url.params["offset"]])

    client = _client(handler, store, database)
    synced = sync_journals(
        database, client, company, start_date="2024-04-01", end_date="2024-04-30", page_size=2
    )

    assert synced == 2
    journals = database.list_journals(company.id)
    assert [journal.freee_journal_id for journal in journals] == ["3", "1"]
    assert journals[0].tax_amount == 109
    assert journals[1].entry_date == date(2024, 4, 1)


def test_sync_requires_linked_company(store: OAuthTokenStore, database: Database) -> None:
    unlinked = database.upsert_company("company_2", name="Unlinked", fiscal_year_start=1)
    client = _client(lambda request: httpx.Response(200, json={}), store, database)

    with pytest.raises(ValidationError):
        sync_journals(database, client, unlinked)


def test_sync_rejects_non_numeric_company_link(store: OAuthTokenStore, database: Database) -> None:
    mislinked = database.upsert_company("company_3", name="Mislinked", fiscal_year_start=1, freee_company_id="abc")
    requests: List[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return httpx.Response(200, json={})

    with pytest.raises(ValidationError) as excinfo:
        sync_journals(database, _client(handler, store, database), mislinked)

    assert excinfo.value.details[0]["field"] == "freee_company_id"
    assert requests == []
