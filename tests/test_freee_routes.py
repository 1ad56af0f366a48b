from __future__ import annotations

from urllib.parse import parse_qs, urlparse

from fastapi.testclient import TestClient

from ledger_audit.database import Database
from ledger_audit.freee import AUTHORIZE_URL


def _authorize(client: TestClient, company_id: str) -> str:
    response = client.get("/api/freee/auth", params={"company_id": company_id}, follow_redirects=False)
    assert response.status_code == 307
    location = response.headers["location"]
    assert location.startswith(AUTHORIZE_URL)
    return parse_qs(urlparse(location).query)["state"][0]


def test_authorize_requires_session(client: TestClient) -> None:
    response = client.get("/api/freee/auth", follow_redirects=False)

    assert response.status_code == 401


def test_callback_stores_encrypted_token(
    client: TestClient, database: Database, company, session_token: str
) -> None:
    state = _authorize(client, company.id)
    assert client.cookies.get("freee_oauth_state") == state.split(":", 1)[1]

    response = client.get(
        "/api/freee/callback",
        params={"code": "auth-code", "state": state},
        follow_redirects=False,
    )

    assert response.status_code == 303
    assert response.headers["location"] == "/ja/dashboard?freee=connected"
    stored = database.get_oauth_token(company.id)
    assert stored is not None
    assert stored["access_token"] != "mock_access_token"


def test_callback_rejects_mismatched_state(
    client: TestClient, database: Database, company, session_token: str
) -> None:
    _authorize(client, company.id)

    response = client.get(
        "/api/freee/callback",
        params={"code": "auth-code", "state": f"{company.id}:forged"},
        follow_redirects=False,
    )

    assert response.status_code == 303
    assert response.headers["location"] == "/ja/dashboard?freee_error=invalid_state"
    assert database.get_oauth_token(company.id) is None


def test_callback_reports_provider_error(client: TestClient, session_token: str) -> None:
    response = client.get(
        "/api/freee/callback",
        params={"error": "access_denied"},
        follow_redirects=False,
    )

    assert response.status_code == 303
    assert response.headers["location"] == "/ja/dashboard?freee_error=access_denied"


def test_refresh_without_stored_token(client: TestClient, company, session_token: str) -> None:
    response = client.post("/api/freee/refresh", json={"company_id": company.id})

    assert response.status_code == 401
    assert response.json()["success"] is False


def test_refresh_replaces_stored_token(
    client: TestClient, database: Database, company, session_token: str
) -> None:
    state = _authorize(client, company.id)
    client.get("/api/freee/callback", params={"code": "c", "state": state}, follow_redirects=False)
    before = database.get_oauth_token(company.id)

    response = client.post("/api/freee/refresh", json={"company_id": company.id})

    assert response.status_code == 200
    assert response.json()["success"] is True
    assert response.json()["expires_at"]
    assert database.get_oauth_token(company.id)["access_token"] != before["access_token"]


def test_companies_in_mock_mode(client: TestClient, session_token: str) -> None:
    response = client.get("/api/freee/companies")

    assert response.status_code == 200
    payload = response.json()
    assert payload["mock_mode"] is True
    assert payload["companies"][0]["name"] == "サンプル株式会社"


def test_sync_pulls_journals_into_database(client: TestClient, company, session_token: str) -> None:
    response = client.post("/api/freee/sync", json={"company_id": company.id})

    assert response.status_code == 200
    assert response.json() == {"success": True, "synced": 1}

    journals = client.get(
        "/api/journals",
        params={"companyId": company.id},
        headers={"Authorization": f"Bearer {session_token}"},
    ).json()["data"]
    assert len(journals) == 1
    assert journals[0]["debitAccount"] == "現金"
    assert journals[0]["amount"] == 110000
    assert journals[0]["taxAmount"] == 10000


def test_sync_unknown_company(client: TestClient, session_token: str) -> None:
    response = client.post("/api/freee/sync", json={"company_id": "missing"})

    assert response.status_code == 404


def test_sync_rejects_non_numeric_freee_company(client: TestClient, database: Database, session_token: str) -> None:
    database.upsert_company("company_2", name="Mislinked", fiscal_year_start=1, freee_company_id="abc")

    response = client.post("/api/freee/sync", json={"company_id": "company_2"})

    assert response.status_code == 400
    payload = response.json()
    assert payload["success"] is False
    assert payload["details"][0]["field"] == "freee_company_id"


def test_sync_rejects_unlinked_company(client: TestClient, database: Database, session_token: str) -> None:
    database.upsert_company("company_3", name="Unlinked", fiscal_year_start=1)

    response = client.post("/api/freee/sync", json={"company_id": "company_3"})

    assert response.status_code == 400
    assert response.json()["error"] == "Company is not linked to freee"


def test_callback_accepts_company_id_containing_colon(
    client: TestClient, database: Database, session_token: str
) -> None:
    database.upsert_company("acme:jp", name="Acme Japan", fiscal_year_start=4, freee_company_id="777")
    state = _authorize(client, "acme:jp")

    response = client.get(
        "/api/freee/callback",
        params={"code": "auth-code", "state": state},
        follow_redirects=False,
    )

    assert response.headers["location"] == "/ja/dashboard?freee=connected"
    assert database.get_oauth_token("acme:jp") is not None


def test_journals_proxy_in_mock_mode(client: TestClient, company, session_token: str) -> None:
    response = client.get("/api/freee/journals", params={"company_id": company.id, "limit": 10})

    assert response.status_code == 200
    payload = response.json()
    assert payload["mock_mode"] is True
    assert payload["journals"][0]["id"] == 1001
    assert payload["meta"]["limit"] == 10


def test_journals_proxy_requires_company(client: TestClient, session_token: str) -> None:
    response = client.get("/api/freee/journals")

    assert response.status_code == 400
    assert response.json()["error"] == "company_id is required"


def test_trial_balance_in_mock_mode(client: TestClient, company, session_token: str) -> None:
    response = client.get("/api/freee/reports/trial", params={"company_id": company.id, "fiscal_year": 2024})

    assert response.status_code == 200
    payload = response.json()
    assert payload["success"] is True
    assert payload["trial_balance"]["company_id"] == 12345
    assert payload["trial_balance"]["fiscal_year"] == 2024


def test_trial_balance_unknown_company(client: TestClient, session_token: str) -> None:
    response = client.get("/api/freee/reports/trial", params={"company_id": "missing"})

    assert response.status_code == 404
    assert response.json() == {"success": False, "error": "Company not found"}


def test_trial_balance_rejects_bad_month(client: TestClient, company, session_token: str) -> None:
    response = client.get("/api/freee/reports/trial", params={"company_id": company.id, "start_month": 13})

    assert response.status_code == 400


def test_disconnect_removes_stored_token(
    client: TestClient, database: Database, company, user, session_token: str
) -> None:
    state = _authorize(client, company.id)
    client.get("/api/freee/callback", params={"code": "c", "state": state}, follow_redirects=False)

    first = client.post("/api/freee/disconnect", json={"company_id": company.id})
    second = client.post("/api/freee/disconnect", json={"company_id": company.id})

    assert first.json() == {"success": True, "disconnected": True}
    assert second.json() == {"success": True, "disconnected": False}
    assert database.get_oauth_token(company.id) is None
    entries = database.list_audit_logs(action="FREEE_DISCONNECT")
    assert entries[0].user_id == user.id
    assert entries[0].resource_id == company.id
