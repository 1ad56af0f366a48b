from __future__ import annotations

from pathlib import Path
from typing import Iterator

import pytest
from fastapi.testclient import TestClient

from ledger_audit.config import Settings
from ledger_audit.database import Database
from ledger_audit.models import Role
from ledger_audit.service import create_app

TEST_KEY = "0123456789abcdef" * 4
EMAIL = "auditor@example.com"
PASSWORD = "correct-horse-battery"


@pytest.fixture()
def database(tmp_path: Path) -> Database:
    db = Database(tmp_path / "ledger_audit.sqlite3")
    db.initialize()
    return db


@pytest.fixture()
def settings(tmp_path: Path) -> Settings:
    return Settings(
        database_path=tmp_path / "ledger_audit.sqlite3",
        secure_cookies=False,
        encryption_key=TEST_KEY,
        freee_mock_mode=True,
    )


@pytest.fixture()
def company(database: Database):
    return database.upsert_company(
        "company_1",
        name="サンプル株式会社",
        fiscal_year_start=4,
        freee_company_id="12345",
    )


@pytest.fixture()
def user(database: Database, company):
    return database.create_user(EMAIL, PASSWORD, name="Auditor", role=Role.USER, company_id=company.id)


@pytest.fixture()
def client(database: Database, settings: Settings) -> Iterator[TestClient]:
    app = create_app(database=database, settings=settings)
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture()
def session_token(client: TestClient, user) -> str:
    """Sign ``user`` in through the JSON API and return the session token."""

    response = client.post("/api/auth/login", json={"email": EMAIL, "password": PASSWORD})
    assert response.status_code == 200, response.text
    token = client.cookies.get("session")
    assert token
    return token
