from ledger_audit.audit_log import AuditLogger
from ledger_audit.auth import Authenticator
from ledger_audit.database import Database
from ledger_audit.models import Role
from ledger_audit.seed import ADMIN_EMAIL, ADMIN_PASSWORD, seed_database
from ledger_audit.sessions import SessionStore


def test_seed_creates_company_and_admin(database: Database) -> None:
    result = seed_database(database)

    assert result.company.id == "company_1"
    assert result.company.name == "サンプル株式会社"
    assert result.company.fiscal_year_start == 4
    assert result.company.freee_company_id == "12345"
    assert result.admin.role is Role.ADMIN
    assert result.admin.company_id == "company_1"


def test_seed_is_repeatable(database: Database) -> None:
    first = seed_database(database)
    second = seed_database(database)

    assert second == first
    assert len(database.list_users()) == 1
    assert len(database.list_companies()) == 1


def test_seeded_admin_can_sign_in(database: Database) -> None:
    seed_database(database)
    authenticator = Authenticator(database, SessionStore(database), AuditLogger(database))

    result = authenticator.login(ADMIN_EMAIL, ADMIN_PASSWORD)

    assert result.user.email == ADMIN_EMAIL
