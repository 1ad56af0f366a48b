"""Consistency checks between journal entries and their supporting documents."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from datetime import date
from typing import Any, Dict, List, Optional, Tuple

from .audit_log import AuditLogger
from .database import Database
from .models import AuditStatus, Journal

logger = logging.getLogger("ledger_audit.journal_checker")

ERROR = "error"
WARNING = "warning"
INFO = "info"

# (description pattern, side checked, accounts that look wrong on that side)
_SUSPICIOUS_ACCOUNTS = (
    (re.compile(r"売上|収入"), "credit", ("現金", "普通預金", "売掛金")),
    (re.compile(r"仕入|経費|費用"), "debit", ("売上", "収入")),
)


@dataclass(frozen=True)
class DocumentData:
    """Figures read from the receipt or invoice backing a journal entry."""

    date: Optional[date] = None
    amount: Optional[int] = None
    tax_amount: Optional[int] = None
    description: str = ""
    vendor_name: str = ""
    confidence: float = 0.0


@dataclass(frozen=True)
class ValidationIssue:
    field: str
    severity: str
    message: str
    message_en: str
    expected: Any = None
    actual: Any = None

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "field": self.field,
            "severity": self.severity,
            "message": self.message,
            "messageEn": self.message_en,
        }
        if self.expected is not None:
            payload["expectedValue"] = self.expected
        if self.actual is not None:
            payload["actualValue"] = self.actual
        return payload


@dataclass(frozen=True)
class CheckResult:
    status: AuditStatus
    issues: Tuple[ValidationIssue, ...] = ()


class AuditProvider:
    """Document analysis and entry validation backend.

    The default implementation analyses nothing, so every entry without
    externally supplied document data is skipped.
    """

    def analyze_document(self, journal: Journal) -> Optional[DocumentData]:
        return None

    def validate_entry(self, journal: Journal, document: DocumentData) -> Optional[CheckResult]:
        return None


_SKIPPED_ISSUE = ValidationIssue(
    field="document",
    severity=INFO,
    message="証憑が添付されていないため自動チェックをスキップしました",
    message_en="Skipped automatic check as no document is attached",
)


class JournalChecker:
    """Compare a journal entry against its document within configured tolerances."""

    def __init__(
        self,
        *,
        provider: Optional[AuditProvider] = None,
        tolerance_amount: int = 1,
        tolerance_days: int = 0,
    ) -> None:
        self.provider = provider or AuditProvider()
        self._tolerance_amount = tolerance_amount
        self._tolerance_days = tolerance_days

    def check(self, journal: Journal, document: Optional[DocumentData]) -> CheckResult:
        if document is None:
            return CheckResult(AuditStatus.SKIPPED, (_SKIPPED_ISSUE,))

        issues: List[ValidationIssue] = []
        self._check_date(journal, document, issues)
        self._check_amount(journal, document, issues)
        self._check_tax_amount(journal, document, issues)
        self._check_description(journal, document, issues)
        self._check_accounts(journal, issues)

        if not issues:
            verdict = self.provider.validate_entry(journal, document)
            if verdict is not None:
                return verdict

        failed = any(issue.severity == ERROR for issue in issues)
        return CheckResult(AuditStatus.FAILED if failed else AuditStatus.PASSED, tuple(issues))

    def _check_date(self, journal: Journal, document: DocumentData, issues: List[ValidationIssue]) -> None:
        if document.date is None:
            return
        if abs((journal.entry_date - document.date).days) <= self._tolerance_days:
            return
        entry, expected = journal.entry_date.isoformat(), document.date.isoformat()
        issues.append(
            ValidationIssue(
                field="date",
                severity=ERROR,
                message=f"仕訳日付({entry})と証憑日付({expected})が一致しません",
                message_en=f"Journal date ({entry}) does not match document date ({expected})",
                expected=expected,
                actual=entry,
            )
        )

    def _check_amount(self, journal: Journal, document: DocumentData, issues: List[ValidationIssue]) -> None:
        if document.amount is None:
            return
        diff = abs(journal.amount - document.amount)
        if diff <= self._tolerance_amount:
            return
        issues.append(
            ValidationIssue(
                field="amount",
                severity=ERROR if diff > 100 else WARNING,
                message=f"仕訳金額(¥{journal.amount:,})と証憑金額(¥{document.amount:,})が一致しません",
                message_en=(
                    f"Journal amount (¥{journal.amount:,}) does not match document amount (¥{document.amount:,})"
                ),
                expected=document.amount,
                actual=journal.amount,
            )
        )

    def _check_tax_amount(self, journal: Journal, document: DocumentData, issues: List[ValidationIssue]) -> None:
        if document.tax_amount is None:
            return
        diff = abs(journal.tax_amount - document.tax_amount)
        if diff <= self._tolerance_amount:
            return
        issues.append(
            ValidationIssue(
                field="taxAmount",
                severity=ERROR if diff > 10 else WARNING,
                message=f"仕訳税額(¥{journal.tax_amount:,})と証憑税額(¥{document.tax_amount:,})が一致しません",
                message_en=(
                    f"Journal tax amount (¥{journal.tax_amount:,}) does not match"
                    f" document tax amount (¥{document.tax_amount:,})"
                ),
                expected=document.tax_amount,
                actual=journal.tax_amount,
            )
        )

    def _check_description(self, journal: Journal, document: DocumentData, issues: List[ValidationIssue]) -> None:
        if not document.description or not document.vendor_name:
            return
        mentioned = (
            document.vendor_name in journal.description
            or document.description[:10] in journal.description
        )
        if mentioned or document.confidence <= 0.8:
            return
        issues.append(
            ValidationIssue(
                field="description",
                severity=INFO,
                message=f"摘要に取引先名「{document.vendor_name}」の記載を検討してください",
                message_en=f'Consider including vendor name "{document.vendor_name}" in the description',
            )
        )

    def _check_accounts(self, journal: Journal, issues: List[ValidationIssue]) -> None:
        for pattern, side, wrong_accounts in _SUSPICIOUS_ACCOUNTS:
            if not pattern.search(journal.description):
                continue
            account = journal.credit_account if side == "credit" else journal.debit_account
            if any(wrong in account for wrong in wrong_accounts):
                issues.append(
                    ValidationIssue(
                        field=f"{side}Account",
                        severity=WARNING,
                        message=f"勘定科目「{account}」が適切か確認してください",
                        message_en=f'Please verify if account "{account}" is appropriate',
                    )
                )


@dataclass
class AuditRunResult:
    processed: int = 0
    passed: int = 0
    failed: int = 0
    skipped: int = 0
    failures: Dict[str, Tuple[ValidationIssue, ...]] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "processed": self.processed,
            "passed": self.passed,
            "failed": self.failed,
            "skipped": self.skipped,
        }


def run_audit(
    database: Database,
    checker: JournalChecker,
    *,
    company_id: Optional[str] = None,
    status: AuditStatus = AuditStatus.PENDING,
    start_date: Optional[date] = None,
    end_date: Optional[date] = None,
    audit: Optional[AuditLogger] = None,
    user_id: Optional[int] = None,
) -> AuditRunResult:
    """Check every journal in ``status`` and record each verdict on the journal."""

    journals = database.search_journals(
        company_id=company_id,
        audit_status=status,
        start_date=start_date,
        end_date=end_date,
        oldest_first=True,
    )
    logger.info("Auditing %s journal(s)", len(journals))

    result = AuditRunResult()
    for journal in journals:
        verdict = checker.check(journal, checker.provider.analyze_document(journal))
        database.set_journal_audit_status(journal.id, verdict.status)
        result.processed += 1
        if verdict.status is AuditStatus.PASSED:
            result.passed += 1
        elif verdict.status is AuditStatus.SKIPPED:
            result.skipped += 1
        else:
            result.failed += 1
            result.failures[journal.freee_journal_id] = verdict.issues

    if audit is not None:
        audit.log(
            "AUDIT_RUN",
            "journals",
            user_id=user_id,
            resource_id=company_id,
            details=result.to_dict(),
        )
    logger.info(
        "Audit complete: %s passed, %s failed, %s skipped",
        result.passed,
        result.failed,
        result.skipped,
    )
    return result


__all__ = [
    "AuditProvider",
    "AuditRunResult",
    "CheckResult",
    "DocumentData",
    "JournalChecker",
    "ValidationIssue",
    "run_audit",
]
