"""
Legacy Backfill Module
Turns rows of the flat legacy transaction log into posted journal entries.
Safe to re-run: a legacy row already referenced by a journal entry is skipped,
and the unique source index makes a second entry for it impossible.
"""
from __future__ import annotations

import sqlite3
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple
import logging

from . import db
from . import validation
from .accounting import JournalEngine, JournalLine
from .errors import LedgerError, ValidationError

logger = logging.getLogger(__name__)

CASH_ON_HAND = "1010"
BANK_ACCOUNT = "1020"
ACCOUNTS_RECEIVABLE = "1100"
SALARIES_TEACHING = "5010"
GOVERNMENT_GRANTS = "4100"
DONATIONS = "4200"


class LegacyCategory(Enum):
    TUITION = "TUITION"
    BOARDING = "BOARDING"
    TRANSPORT = "TRANSPORT"
    ACTIVITY = "ACTIVITY"
    EXAM = "EXAM"
    OTHER_INCOME = "OTHER_INCOME"
    SALARY_TEACHING = "SALARY_TEACHING"
    SALARY_NON_TEACHING = "SALARY_NON_TEACHING"
    SALARY_DRIVERS = "SALARY_DRIVERS"
    FOOD = "FOOD"
    FUEL = "FUEL"
    ELECTRICITY = "ELECTRICITY"
    WATER = "WATER"
    STATIONERY = "STATIONERY"
    CLEANING = "CLEANING"
    REPAIRS = "REPAIRS"
    BANK_CHARGES = "BANK_CHARGES"
    PROFESSIONAL_FEES = "PROFESSIONAL_FEES"
    MISCELLANEOUS = "MISCELLANEOUS"


REVENUE_CODES: Dict[LegacyCategory, str] = {
    LegacyCategory.TUITION: "4010",
    LegacyCategory.BOARDING: "4020",
    LegacyCategory.TRANSPORT: "4030",
    LegacyCategory.ACTIVITY: "4040",
    LegacyCategory.EXAM: "4050",
    LegacyCategory.OTHER_INCOME: "4300",
}

EXPENSE_CODES: Dict[LegacyCategory, str] = {
    LegacyCategory.SALARY_TEACHING: "5010",
    LegacyCategory.SALARY_NON_TEACHING: "5020",
    LegacyCategory.SALARY_DRIVERS: "5210",
    LegacyCategory.FOOD: "5100",
    LegacyCategory.FUEL: "5200",
    LegacyCategory.ELECTRICITY: "5300",
    LegacyCategory.WATER: "5310",
    LegacyCategory.STATIONERY: "5400",
    LegacyCategory.CLEANING: "5410",
    LegacyCategory.REPAIRS: "5500",
    LegacyCategory.BANK_CHARGES: "5700",
    LegacyCategory.PROFESSIONAL_FEES: "5800",
    LegacyCategory.MISCELLANEOUS: "5900",
}

SALARY_CATEGORIES = (
    LegacyCategory.SALARY_TEACHING,
    LegacyCategory.SALARY_NON_TEACHING,
    LegacyCategory.SALARY_DRIVERS,
)

# Legacy transaction type -> journal entry type
ENTRY_TYPE_FOR: Dict[str, str] = {
    "FEE_PAYMENT": "FEE_PAYMENT",
    "EXPENSE": "EXPENSE",
    "SALARY_PAYMENT": "SALARY",
    "DONATION": "DONATION",
    "GRANT": "GRANT",
    "REFUND": "REFUND",
    "INCOME": "INCOME",
}


def parse_category(raw: Optional[str]) -> Optional[LegacyCategory]:
    """'Food & Catering' style labels are not guessed at; only enum names are accepted."""
    if raw is None or not str(raw).strip():
        return None
    key = str(raw).strip().upper().replace(" ", "_").replace("-", "_")
    try:
        return LegacyCategory(key)
    except ValueError:
        raise ValidationError(f"Unmapped legacy category: {raw!r}") from None


def cash_account_for(payment_method: Optional[str]) -> str:
    return CASH_ON_HAND if (payment_method or "").strip().upper() == "CASH" else BANK_ACCOUNT


def map_legacy_transaction(row: sqlite3.Row) -> Tuple[str, str, str]:
    """Return (entry_type, debit_code, credit_code) for one legacy row."""
    txn_type = (row["transaction_type"] or "").strip().upper()
    entry_type = ENTRY_TYPE_FOR.get(txn_type)
    if entry_type is None:
        raise ValidationError(f"Unmapped legacy transaction type: {row['transaction_type']!r}")
    category = parse_category(row["category"])
    cash = cash_account_for(row["payment_method"])

    if txn_type == "FEE_PAYMENT":
        return entry_type, cash, ACCOUNTS_RECEIVABLE
    if txn_type == "REFUND":
        return entry_type, ACCOUNTS_RECEIVABLE, cash
    if txn_type == "DONATION":
        return entry_type, cash, DONATIONS
    if txn_type == "GRANT":
        return entry_type, cash, GOVERNMENT_GRANTS
    if txn_type == "SALARY_PAYMENT":
        if category is None:
            return entry_type, SALARIES_TEACHING, cash
        if category not in SALARY_CATEGORIES:
            raise ValidationError(f"Category {category.value} is not a salary category")
        return entry_type, EXPENSE_CODES[category], cash
    if txn_type == "EXPENSE":
        if category not in EXPENSE_CODES:
            raise ValidationError(f"Expense needs an expense category, got {row['category']!r}")
        return entry_type, EXPENSE_CODES[category], cash
    # INCOME
    if category not in REVENUE_CODES:
        raise ValidationError(f"Income needs a revenue category, got {row['category']!r}")
    return entry_type, cash, REVENUE_CODES[category]


class LegacyBackfill:
    def __init__(self, conn: sqlite3.Connection, journal: Optional[JournalEngine] = None) -> None:
        self.conn = conn
        self.journal = journal or JournalEngine(conn)

    def pending_rows(self) -> List[sqlite3.Row]:
        return self.conn.execute(
            """
            SELECT lt.* FROM legacy_transaction lt
            WHERE lt.is_voided = 0
              AND NOT EXISTS (SELECT 1 FROM journal_entry je WHERE je.source_legacy_transaction_id = lt.id)
            ORDER BY lt.transaction_date, lt.id
            """
        ).fetchall()

    def run(self, user_id: str, *, dry_run: bool = False) -> Dict[str, Any]:
        try:
            validation.require_actor(user_id)
        except LedgerError as e:
            return e.as_result()

        total = self.conn.execute("SELECT COUNT(*) AS n FROM legacy_transaction").fetchone()["n"]
        pending = self.pending_rows()
        migrated = 0
        failed = 0
        errors: List[str] = []
        for row in pending:
            try:
                entry_type, debit_code, credit_code = map_legacy_transaction(row)
                amount = row["amount"]
                if amount is None or amount <= 0:
                    raise ValidationError("Amount must be positive")
                if dry_run:
                    migrated += 1
                    continue
                description = row["description"] or f"{row['transaction_type']} {row['transaction_ref']}"
                self.journal.record_entry(
                    entry_type,
                    row["transaction_date"],
                    f"[Migrated] {description}",
                    [
                        JournalLine(debit_code, debit=amount, description=description),
                        JournalLine(credit_code, credit=amount, description=description),
                    ],
                    row["recorded_by"] or user_id,
                    student_id=row["student_id"],
                    staff_id=row["staff_id"],
                    term_id=row["term_id"],
                    entry_ref=f"MIG-{row['transaction_ref']}",
                    source_legacy_transaction_id=row["id"],
                    bypass_approval=True,
                )
                migrated += 1
            except LedgerError as e:
                failed += 1
                errors.append(f"{row['transaction_ref']}: {e.message}")
            except sqlite3.Error:
                logger.exception(f"Store failure while migrating legacy row {row['transaction_ref']}")
                raise

        skipped = total - len(pending)
        if not dry_run:
            with db.atomic(self.conn):
                db.log_audit(
                    action="legacy_backfill_run",
                    details=db.audit_details(migrated=migrated, skipped=skipped, failed=failed),
                    user=user_id,
                    entity_type="LEGACY_TRANSACTION",
                    conn=self.conn,
                )
        logger.info(
            f"Backfill {'dry run' if dry_run else 'run'}: {migrated} migrated, {skipped} skipped, {failed} failed"
        )
        for err in errors:
            logger.warning(f"Backfill: {err}")
        return {
            "success": failed == 0,
            "dry_run": dry_run,
            "migrated": migrated,
            "skipped": skipped,
            "failed": failed,
            "errors": errors,
            "message": f"Migrated {migrated} legacy transactions",
        }

    def validate_migration(self) -> Dict[str, Any]:
        """Compare legacy totals per type with the journal entries sourced from them."""
        rows = self.conn.execute(
            """
            SELECT lt.transaction_type,
                   COUNT(*) AS legacy_count,
                   COALESCE(SUM(lt.amount), 0) AS legacy_total,
                   COUNT(je.id) AS migrated_count,
                   COALESCE(SUM(CASE WHEN je.id IS NOT NULL THEN lt.amount ELSE 0 END), 0) AS migrated_legacy_total,
                   COALESCE(SUM(jt.debits), 0) AS journal_total
            FROM legacy_transaction lt
            LEFT JOIN journal_entry je ON je.source_legacy_transaction_id = lt.id
            LEFT JOIN (
                SELECT journal_entry_id, SUM(debit_amount) AS debits
                FROM journal_entry_line GROUP BY journal_entry_id
            ) jt ON jt.journal_entry_id = je.id
            WHERE lt.is_voided = 0
            GROUP BY lt.transaction_type
            ORDER BY lt.transaction_type
            """
        ).fetchall()
        report = []
        for r in rows:
            item = dict(r)
            item["unmigrated"] = item["legacy_count"] - item["migrated_count"]
            item["difference"] = item["migrated_legacy_total"] - item["journal_total"]
            report.append(item)
        is_valid = all(r["difference"] == 0 and r["unmigrated"] == 0 for r in report)
        return {
            "is_valid": is_valid,
            "by_type": report,
            "message": "Migration totals agree" if is_valid else "Migration incomplete or totals differ",
        }

    def get_migration_stats(self) -> Dict[str, int]:
        row = self.conn.execute(
            """
            SELECT COUNT(*) AS total,
                   COALESCE(SUM(CASE WHEN lt.is_voided = 1 THEN 1 ELSE 0 END), 0) AS voided,
                   COALESCE(SUM(CASE WHEN je.id IS NOT NULL THEN 1 ELSE 0 END), 0) AS migrated
            FROM legacy_transaction lt
            LEFT JOIN journal_entry je ON je.source_legacy_transaction_id = lt.id
            """
        ).fetchone()
        total, voided, migrated = int(row["total"]), int(row["voided"]), int(row["migrated"])
        return {
            "total": total,
            "voided": voided,
            "migrated": migrated,
            "pending": total - voided - migrated,
        }
