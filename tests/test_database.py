from __future__ import annotations

from datetime import date, datetime, timedelta, timezone

import pytest

from ledger_audit.database import Database
from ledger_audit.models import AuditStatus, Role


def test_create_user_hashes_password(database: Database, company) -> None:
    user = database.create_user("owner@example.com", "Sup3rSecurePwd!", name="Owner", company_id=company.id)

    stored_user, password_hash = database.get_credentials("owner@example.com")
    assert stored_user == user
    assert password_hash != "Sup3rSecurePwd!"
    assert password_hash.startswith("$pbkdf2-sha256$")
    assert user.role is Role.USER


def test_duplicate_email_is_rejected(database: Database) -> None:
    database.create_user("dup@example.com", "first-password", name="First")

    with pytest.raises(ValueError):
        database.create_user("dup@example.com", "second-password", name="Second")


def test_upsert_user_keeps_existing_account(database: Database) -> None:
    original = database.upsert_user("admin@example.com", "first-password", name="Admin", role=Role.ADMIN)
    again = database.upsert_user("admin@example.com", "other-password", name="Renamed")

    assert again == original
    assert len(database.list_users()) == 1


def test_update_user_role(database: Database) -> None:
    user = database.create_user("staff@example.com", "password-123", name="Staff")

    promoted = database.update_user_role(user.id, Role.ADMIN)

    assert promoted.role is Role.ADMIN
    assert database.get_user_by_email("staff@example.com").role is Role.ADMIN


def test_empty_password_is_rejected(database: Database) -> None:
    with pytest.raises(ValueError):
        database.create_user("empty@example.com", "", name="Empty")


def test_upsert_company_does_not_overwrite(database: Database) -> None:
    first = database.upsert_company("company_1", name="Original", fiscal_year_start=4)
    second = database.upsert_company("company_1", name="Changed", fiscal_year_start=1)

    assert second == first
    assert database.first_company() == first


def test_upsert_company_validates_fiscal_month(database: Database) -> None:
    with pytest.raises(ValueError):
        database.upsert_company("company_x", name="Bad", fiscal_year_start=13)


def test_expired_sessions_are_purged(database: Database) -> None:
    user = database.create_user("session@example.com", "password-123", name="Session")
    now = datetime.now(timezone.utc)
    database.create_session("live", user.id, now + timedelta(hours=1))
    database.create_session("dead", user.id, now - timedelta(hours=1))

    assert database.delete_expired_sessions(now) == 1
    assert database.get_session("live") is not None
    assert database.get_session("dead") is None


def test_sessions_are_removed_with_their_user(database: Database) -> None:
    user = database.create_user("gone@example.com", "password-123", name="Gone")
    database.create_session("tok", user.id, datetime.now(timezone.utc) + timedelta(hours=1))

    with database._connect() as conn:
        conn.execute("DELETE FROM users WHERE id = ?", (user.id,))

    assert database.get_session("tok") is None


def test_journal_upsert_refreshes_fields(database: Database, company) -> None:
    first = database.upsert_journal(
        company.id,
        freee_journal_id="77",
        entry_date=date(2024, 5, 1),
        description="仮払",
        debit_account="仮払金",
        credit_account="現金",
        amount=3000,
    )
    second = database.upsert_journal(
        company.id,
        freee_journal_id="77",
        entry_date=date(2024, 5, 2),
        description="仮払精算",
        debit_account="旅費交通費",
        credit_account="仮払金",
        amount=2800,
        tax_amount=254,
        tax_type="課対仕入10%",
    )

    assert second.id == first.id
    assert second.amount == 2800
    assert second.audit_status is AuditStatus.PENDING
    assert [journal.description for journal in database.list_journals(company.id)] == ["仮払精算"]


def test_list_journals_filters_by_date(database: Database, company) -> None:
    for index in range(1, 4):
        database.upsert_journal(
            company.id,
            freee_journal_id=str(index),
            entry_date=date(2024, 1, index * 10),
            description="",
            debit_account="",
            credit_account="",
            amount=index,
        )

    window = database.list_journals(company.id, start_date=date(2024, 1, 15), end_date=date(2024, 1, 25))
    assert [journal.freee_journal_id for journal in window] == ["2"]
    assert len(database.list_journals(company.id, limit=2)) == 2


def test_health_check(database: Database) -> None:
    assert database.health_check() is True


def test_set_user_password_replaces_hash(database: Database) -> None:
    user = database.create_user("reset@example.com", "old-password-1", name="Reset")
    _, before = database.get_credentials("reset@example.com")

    database.set_user_password(user.id, "new-password-2")

    _, after = database.get_credentials("reset@example.com")
    assert after != before
    with pytest.raises(ValueError):
        database.set_user_password(9999, "whatever-123")


def test_email_lookup_trims_but_keeps_case(database: Database) -> None:
    database.create_user("  Mixed@Example.com ", "password-123", name="Mixed")

    assert database.get_user_by_email("Mixed@Example.com") is not None
    assert database.get_user_by_email(" Mixed@Example.com") is not None
    assert database.get_user_by_email("mixed@example.com") is None


def test_search_and_count_journals_across_companies(database: Database, company) -> None:
    other = database.upsert_company("company_2", name="Other", fiscal_year_start=1)
    for owner, freee_id in ((company.id, "1"), (company.id, "2"), (other.id, "3")):
        database.upsert_journal(
            owner,
            freee_journal_id=freee_id,
            entry_date=date(2024, 6, int(freee_id)),
            description="",
            debit_account="",
            credit_account="",
            amount=100,
        )
    first = database.search_journals(company_id=company.id, oldest_first=True)[0]
    database.set_journal_audit_status(first.id, AuditStatus.PASSED)

    assert database.count_journals() == 3
    assert database.count_journals(company_id=company.id) == 2
    assert database.count_journals(audit_status=AuditStatus.PENDING) == 2
    assert [journal.freee_journal_id for journal in database.search_journals(limit=1, offset=1)] == ["2"]
    assert database.search_journals(audit_status=AuditStatus.PASSED)[0].freee_journal_id == "1"
    with pytest.raises(ValueError):
        database.set_journal_audit_status(9999, AuditStatus.FAILED)
