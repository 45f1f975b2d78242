"""
Opening Balance Module
Loads pre-system balances (per student or per GL account) as balanced
journal entries and verifies that each year's batch nets to zero.
"""
from __future__ import annotations

import sqlite3
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional
import logging

from . import db
from . import validation
from .accounting import JournalEngine, JournalLine
from .errors import LedgerError, NotFoundError, ValidationError

logger = logging.getLogger(__name__)

ACCOUNTS_RECEIVABLE = "1100"
STUDENT_CREDIT_BALANCES = "2020"
RETAINED_EARNINGS = "3020"


@dataclass
class StudentOpeningBalance:
    student_id: int
    amount: int
    balance_type: str  # DEBIT: student owes, CREDIT: student overpaid
    description: Optional[str] = None


@dataclass
class GLOpeningBalance:
    gl_account_code: str
    debit_amount: int = 0
    credit_amount: int = 0
    description: Optional[str] = None


class OpeningBalanceImporter:
    def __init__(self, conn: sqlite3.Connection, journal: Optional[JournalEngine] = None) -> None:
        self.conn = conn
        self.journal = journal or JournalEngine(conn)

    def import_student_opening_balances(
        self,
        balances: Iterable[StudentOpeningBalance],
        year_id: int,
        source: str,
        user_id: str,
        *,
        entry_date: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        One journal entry per student:
        DEBIT  -> Dr Accounts Receivable / Cr Retained Earnings
        CREDIT -> Dr Retained Earnings / Cr Student Credit Balances
        The whole batch is written or nothing is.
        """
        try:
            items = list(balances)
            validation.require_actor(user_id)
            if not items:
                raise ValidationError("No opening balances supplied")
            for idx, bal in enumerate(items, start=1):
                self._check_student_balance(idx, bal)
            entry_date = entry_date or db.today_iso()

            entry_ids: List[int] = []
            now = db.now_iso()
            with db.atomic(self.conn):
                for bal in items:
                    kind = bal.balance_type.upper()
                    description = bal.description or f"Opening balance - student {bal.student_id}"
                    if kind == "DEBIT":
                        lines = [
                            JournalLine(ACCOUNTS_RECEIVABLE, debit=bal.amount),
                            JournalLine(RETAINED_EARNINGS, credit=bal.amount),
                        ]
                        gl_code, debit, credit = ACCOUNTS_RECEIVABLE, bal.amount, 0
                    else:
                        lines = [
                            JournalLine(RETAINED_EARNINGS, debit=bal.amount),
                            JournalLine(STUDENT_CREDIT_BALANCES, credit=bal.amount),
                        ]
                        gl_code, debit, credit = STUDENT_CREDIT_BALANCES, 0, bal.amount
                    entry_id, _, _ = self.journal.record_entry(
                        "OPENING_BALANCE",
                        entry_date,
                        description,
                        lines,
                        user_id,
                        student_id=bal.student_id,
                        bypass_approval=True,
                    )
                    self.conn.execute(
                        """
                        INSERT INTO opening_balance(
                            academic_year_id, balance_type, gl_account_code, student_id, description,
                            debit_amount, credit_amount, source, journal_entry_id, imported_by, imported_at
                        )
                        VALUES (?, 'STUDENT', ?, ?, ?, ?, ?, ?, ?, ?, ?)
                        """,
                        (year_id, gl_code, bal.student_id, description, debit, credit, source,
                         entry_id, str(user_id), now),
                    )
                    entry_ids.append(entry_id)
                db.log_audit(
                    action="student_opening_balances_imported",
                    details=db.audit_details(year_id=year_id, source=source, count=len(items)),
                    user=user_id,
                    entity_type="OPENING_BALANCE",
                    conn=self.conn,
                )
            logger.info(f"Imported {len(items)} student opening balances for year {year_id}")
            return {
                "success": True,
                "imported": len(items),
                "entry_ids": entry_ids,
                "message": f"Imported {len(items)} student opening balances",
            }
        except LedgerError as e:
            return e.as_result()

    def import_gl_opening_balances(
        self,
        balances: Iterable[GLOpeningBalance],
        year_id: int,
        user_id: str,
        *,
        source: Optional[str] = None,
        entry_date: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Store GL-side opening balances. A batch that balances on its own is also
        posted as one OPENING_BALANCE journal entry.
        """
        try:
            items = list(balances)
            validation.require_actor(user_id)
            if not items:
                raise ValidationError("No opening balances supplied")
            for idx, bal in enumerate(items, start=1):
                self._check_gl_balance(idx, bal)

            total_debits = sum(b.debit_amount for b in items)
            total_credits = sum(b.credit_amount for b in items)
            post_entry = total_debits == total_credits and len(items) >= 2
            now = db.now_iso()
            entry_id: Optional[int] = None
            with db.atomic(self.conn):
                if post_entry:
                    entry_id, _, _ = self.journal.record_entry(
                        "OPENING_BALANCE",
                        entry_date or db.today_iso(),
                        f"GL opening balances - year {year_id}",
                        [
                            JournalLine(b.gl_account_code, debit=b.debit_amount, credit=b.credit_amount,
                                        description=b.description)
                            for b in items
                        ],
                        user_id,
                        bypass_approval=True,
                    )
                self.conn.executemany(
                    """
                    INSERT INTO opening_balance(
                        academic_year_id, balance_type, gl_account_code, description,
                        debit_amount, credit_amount, source, journal_entry_id, imported_by, imported_at
                    )
                    VALUES (?, 'GL', ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    [
                        (year_id, b.gl_account_code.strip(), b.description, b.debit_amount, b.credit_amount,
                         source, entry_id, str(user_id), now)
                        for b in items
                    ],
                )
                db.log_audit(
                    action="gl_opening_balances_imported",
                    details=db.audit_details(
                        year_id=year_id, count=len(items), total_debits=total_debits,
                        total_credits=total_credits, journal_entry_id=entry_id,
                    ),
                    user=user_id,
                    entity_type="OPENING_BALANCE",
                    conn=self.conn,
                )
            logger.info(f"Imported {len(items)} GL opening balances for year {year_id}")
            message = f"Imported {len(items)} GL opening balances"
            if not post_entry:
                message += "; batch does not balance on its own and was stored without a journal entry"
            return {
                "success": True,
                "imported": len(items),
                "journal_entry_id": entry_id,
                "is_balanced": total_debits == total_credits,
                "message": message,
            }
        except LedgerError as e:
            return e.as_result()

    def verify_opening_balances(self, year_id: int, user_id: Optional[str] = None) -> Dict[str, Any]:
        """
        Sum every opening balance of the year. Only an exact zero variance counts
        as balanced; when balanced and a user is given the rows are marked verified.
        """
        row = self.conn.execute(
            """
            SELECT COUNT(*) AS row_count,
                   COALESCE(SUM(debit_amount), 0) AS total_debits,
                   COALESCE(SUM(credit_amount), 0) AS total_credits
            FROM opening_balance
            WHERE academic_year_id = ?
            """,
            (year_id,),
        ).fetchone()
        total_debits = int(row["total_debits"])
        total_credits = int(row["total_credits"])
        variance = total_debits - total_credits
        is_balanced = variance == 0 and int(row["row_count"]) > 0

        verified = False
        if is_balanced and user_id:
            with db.atomic(self.conn):
                self.conn.execute(
                    """
                    UPDATE opening_balance
                    SET is_verified = 1, verified_by = ?, verified_at = ?
                    WHERE academic_year_id = ?
                    """,
                    (str(user_id), db.now_iso(), year_id),
                )
                db.log_audit(
                    action="opening_balances_verified",
                    details=db.audit_details(year_id=year_id, total=total_debits),
                    user=user_id,
                    entity_type="OPENING_BALANCE",
                    conn=self.conn,
                )
            verified = True

        if int(row["row_count"]) == 0:
            message = f"No opening balances recorded for year {year_id}"
        elif is_balanced:
            message = "Opening balances are balanced"
        else:
            message = f"Opening balances are OUT OF BALANCE by {validation.format_amount(abs(variance))}"
            logger.warning(f"Year {year_id}: {message}")
        return {
            "success": True,
            "year_id": year_id,
            "total_debits": total_debits,
            "total_credits": total_credits,
            "variance": variance,
            "is_balanced": is_balanced,
            "is_verified": verified,
            "message": message,
        }

    def get_opening_balance_summary(self, year_id: int) -> Dict[str, Any]:
        by_type = self.conn.execute(
            """
            SELECT balance_type, COUNT(*) AS count,
                   COALESCE(SUM(debit_amount), 0) AS total_debits,
                   COALESCE(SUM(credit_amount), 0) AS total_credits
            FROM opening_balance
            WHERE academic_year_id = ?
            GROUP BY balance_type
            ORDER BY balance_type
            """,
            (year_id,),
        ).fetchall()
        by_account = self.conn.execute(
            """
            SELECT ob.gl_account_code, ga.name AS account_name,
                   COALESCE(SUM(ob.debit_amount), 0) AS total_debits,
                   COALESCE(SUM(ob.credit_amount), 0) AS total_credits
            FROM opening_balance ob
            JOIN gl_account ga ON ga.code = ob.gl_account_code
            WHERE ob.academic_year_id = ?
            GROUP BY ob.gl_account_code, ga.name
            ORDER BY ob.gl_account_code
            """,
            (year_id,),
        ).fetchall()
        unverified = self.conn.execute(
            "SELECT COUNT(*) AS n FROM opening_balance WHERE academic_year_id = ? AND is_verified = 0",
            (year_id,),
        ).fetchone()["n"]
        total_debits = sum(int(r["total_debits"]) for r in by_type)
        total_credits = sum(int(r["total_credits"]) for r in by_type)
        return {
            "year_id": year_id,
            "by_type": [dict(r) for r in by_type],
            "by_account": [dict(r) for r in by_account],
            "total_debits": total_debits,
            "total_credits": total_credits,
            "variance": total_debits - total_credits,
            "is_verified": bool(by_type) and int(unverified) == 0,
        }

    def get_student_ledger(self, student_id: int, as_of: Optional[str] = None) -> Dict[str, Any]:
        """Student statement: receivable and credit-balance movements with a running balance owed."""
        params: list = [student_id, ACCOUNTS_RECEIVABLE, STUDENT_CREDIT_BALANCES]
        date_filter = ""
        if as_of:
            date_filter = "AND je.entry_date <= ?"
            params.append(as_of)
        cur = self.conn.execute(
            f"""
            SELECT je.id AS entry_id, je.entry_ref, je.entry_date, je.entry_type, je.description,
                   jel.gl_account_code, jel.debit_amount, jel.credit_amount
            FROM journal_entry je
            JOIN journal_entry_line jel ON jel.journal_entry_id = je.id
            WHERE je.student_id = ? AND jel.gl_account_code IN (?, ?)
              AND je.is_posted = 1 AND je.is_voided = 0
              {date_filter}
            ORDER BY je.entry_date, je.id, jel.line_number
            """,
            params,
        )
        balance = 0
        transactions: List[Dict[str, Any]] = []
        for r in cur.fetchall():
            balance += int(r["debit_amount"]) - int(r["credit_amount"])
            item = dict(r)
            item["running_balance"] = balance
            transactions.append(item)
        opening = self.conn.execute(
            """
            SELECT COALESCE(SUM(debit_amount - credit_amount), 0) AS net
            FROM opening_balance WHERE balance_type = 'STUDENT' AND student_id = ?
            """,
            (student_id,),
        ).fetchone()
        return {
            "student_id": student_id,
            "opening_balance": int(opening["net"]),
            "transactions": transactions,
            "closing_balance": balance,
        }

    # Checks
    @staticmethod
    def _check_student_balance(idx: int, bal: StudentOpeningBalance) -> None:
        if bal.student_id is None:
            raise ValidationError(f"Row {idx}: student is required")
        if not isinstance(bal.amount, int) or isinstance(bal.amount, bool) or bal.amount <= 0:
            raise ValidationError(f"Row {idx}: amount must be a positive whole number of minor units")
        if (bal.balance_type or "").upper() not in ("DEBIT", "CREDIT"):
            raise ValidationError(f"Row {idx}: balance type must be DEBIT or CREDIT")

    def _check_gl_balance(self, idx: int, bal: GLOpeningBalance) -> None:
        account = self.journal.accounts.get_account(bal.gl_account_code)
        if account is None:
            raise NotFoundError(f"Row {idx}: GL account not found: {bal.gl_account_code}")
        if not account["is_active"]:
            raise ValidationError(f"Row {idx}: GL account {bal.gl_account_code} is inactive")
        for amount in (bal.debit_amount, bal.credit_amount):
            if not isinstance(amount, int) or isinstance(amount, bool) or amount < 0:
                raise ValidationError(f"Row {idx}: amounts must be non-negative whole minor units")
        if (bal.debit_amount > 0) == (bal.credit_amount > 0):
            raise ValidationError(f"Row {idx}: exactly one of debit or credit must be positive")
