"""Development fixtures: one sample company and its administrator."""

from __future__ import annotations

import logging
from dataclasses import dataclass

from .database import Database
from .models import Company, Role, User

logger = logging.getLogger("ledger_audit.seed")

SAMPLE_COMPANY_ID = "company_1"
SAMPLE_COMPANY_NAME = "サンプル株式会社"
SAMPLE_FREEE_COMPANY_ID = "12345"
ADMIN_EMAIL = "admin@example.com"
ADMIN_PASSWORD = "admin123"
ADMIN_NAME = "管理者"


@dataclass(frozen=True)
class SeedResult:
    company: Company
    admin: User


def seed_database(database: Database) -> SeedResult:
    """Insert the sample company and admin account; existing rows are kept."""

    company = database.upsert_company(
        SAMPLE_COMPANY_ID,
        name=SAMPLE_COMPANY_NAME,
        fiscal_year_start=4,
        freee_company_id=SAMPLE_FREEE_COMPANY_ID,
    )
    admin = database.upsert_user(
        ADMIN_EMAIL,
        ADMIN_PASSWORD,
        name=ADMIN_NAME,
        role=Role.ADMIN,
        company_id=company.id,
    )
    logger.info("Seeded company %s and admin user %s", company.id, admin.email)
    return SeedResult(company=company, admin=admin)


__all__ = ["ADMIN_EMAIL", "ADMIN_PASSWORD", "SeedResult", "seed_database"]
