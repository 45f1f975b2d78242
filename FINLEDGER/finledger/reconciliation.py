"""
Reconciliation Module
Matches bank statement lines against ledger entries, computes statement
variance per bank account and runs ledger integrity checks.
"""
from __future__ import annotations

import json
import sqlite3
from datetime import date as _date
from typing import Any, Dict, List, Optional
import logging

from . import db
from . import validation
from .accounting import JournalEngine
from .errors import ConstraintViolation, LedgerError, NotFoundError, ValidationError

logger = logging.getLogger(__name__)

MATCH_AMOUNT_TOLERANCE = 100  # minor units
MATCH_DATE_TOLERANCE_DAYS = 7
STALE_APPROVAL_DAYS = 7
ADJUSTMENT_TYPES = ("BANK_CHARGE", "INTEREST", "ERROR", "TIMING", "OTHER")


class ReconciliationEngine:
    def __init__(self, conn: sqlite3.Connection, journal: Optional[JournalEngine] = None) -> None:
        self.conn = conn
        self.journal = journal or JournalEngine(conn)

    # Bank accounts and statements
    def create_bank_account(
        self,
        account_name: str,
        account_number: str,
        gl_account_code: str,
        user_id: str,
        *,
        bank_name: Optional[str] = None,
        opening_balance: int = 0,
    ) -> Dict[str, Any]:
        try:
            validation.require_actor(user_id)
            account_name = validation.sanitize_string(account_name, max_length=100)
            account_number = validation.sanitize_string(account_number, max_length=50)
            if not account_name or not account_number:
                raise ValidationError("Account name and number are required")
            gl = self.journal.accounts.resolve_account(gl_account_code)
            if gl["account_type"] != "ASSET" or not gl["is_active"]:
                raise ValidationError(f"GL account {gl_account_code} must be an active asset account")
            try:
                with db.atomic(self.conn):
                    cur = self.conn.execute(
                        """
                        INSERT INTO bank_account(account_name, account_number, bank_name, gl_account_code, opening_balance)
                        VALUES (?, ?, ?, ?, ?)
                        """,
                        (account_name, account_number, bank_name, gl["code"], int(opening_balance)),
                    )
                    db.log_audit(
                        action="bank_account_created",
                        details=db.audit_details(account_number=account_number, gl_account_code=gl["code"]),
                        user=user_id,
                        entity_type="BANK_ACCOUNT",
                        entity_id=cur.lastrowid,
                        conn=self.conn,
                    )
            except sqlite3.IntegrityError as e:
                raise ConstraintViolation(f"Bank account number already exists: {account_number}") from e
            return {"success": True, "id": int(cur.lastrowid), "message": "Bank account created"}
        except LedgerError as e:
            return e.as_result()

    def list_bank_accounts(self, *, active_only: bool = True) -> List[sqlite3.Row]:
        where = "WHERE is_active = 1" if active_only else ""
        return self.conn.execute(f"SELECT * FROM bank_account {where} ORDER BY id").fetchall()

    def create_statement(
        self,
        bank_account_id: int,
        statement_date: str,
        opening_balance: int,
        closing_balance: int,
        user_id: str,
        *,
        statement_reference: Optional[str] = None,
    ) -> Dict[str, Any]:
        try:
            validation.require_actor(user_id)
            self._get_bank_account(bank_account_id)
            ok, parsed = validation.validate_date(statement_date)
            if not ok:
                raise ValidationError("Statement date must be in ISO format YYYY-MM-DD")
            for amount in (opening_balance, closing_balance):
                if not isinstance(amount, int) or isinstance(amount, bool):
                    raise ValidationError("Statement balances must be whole minor units")
            with db.atomic(self.conn):
                cur = self.conn.execute(
                    """
                    INSERT INTO bank_statement(bank_account_id, statement_date, opening_balance, closing_balance,
                                               statement_reference)
                    VALUES (?, ?, ?, ?, ?)
                    """,
                    (bank_account_id, parsed.isoformat(), opening_balance, closing_balance, statement_reference),
                )
                db.log_audit(
                    action="bank_statement_created",
                    details=db.audit_details(bank_account_id=bank_account_id, statement_date=parsed.isoformat()),
                    user=user_id,
                    entity_type="BANK_STATEMENT",
                    entity_id=cur.lastrowid,
                    conn=self.conn,
                )
            return {"success": True, "id": int(cur.lastrowid), "message": "Bank statement created"}
        except LedgerError as e:
            return e.as_result()

    def add_statement_line(
        self,
        statement_id: int,
        transaction_date: str,
        description: str,
        user_id: str,
        *,
        debit_amount: int = 0,
        credit_amount: int = 0,
        reference: Optional[str] = None,
        running_balance: Optional[int] = None,
    ) -> Dict[str, Any]:
        try:
            validation.require_actor(user_id)
            statement = self._get_statement(statement_id)
            description = validation.sanitize_string(description, max_length=validation.MAX_DESCRIPTION_LENGTH)
            if not description:
                raise ValidationError("Description is required")
            ok, parsed = validation.validate_date(transaction_date)
            if not ok:
                raise ValidationError("Transaction date must be in ISO format YYYY-MM-DD")
            if parsed > _date.today():
                raise ValidationError("Transaction date cannot be in the future")
            if parsed.isoformat() > statement["statement_date"]:
                raise ValidationError("Transaction date cannot be after the statement date")
            for amount in (debit_amount, credit_amount):
                if not isinstance(amount, int) or isinstance(amount, bool) or amount < 0:
                    raise ValidationError("Amounts must be non-negative whole minor units")
            if (debit_amount > 0) == (credit_amount > 0):
                raise ValidationError("Exactly one of debit or credit must be positive")
            with db.atomic(self.conn):
                cur = self.conn.execute(
                    """
                    INSERT INTO bank_statement_line(
                        bank_statement_id, transaction_date, description, reference,
                        debit_amount, credit_amount, running_balance
                    )
                    VALUES (?, ?, ?, ?, ?, ?, ?)
                    """,
                    (statement_id, parsed.isoformat(), description, reference, debit_amount, credit_amount,
                     running_balance),
                )
                line_id = int(cur.lastrowid)
                db.log_audit(
                    action="statement_line_added",
                    details=db.audit_details(
                        bank_statement_id=statement_id,
                        transaction_date=parsed.isoformat(),
                        debit_amount=debit_amount,
                        credit_amount=credit_amount,
                        reference=reference,
                    ),
                    user=user_id,
                    entity_type="BANK_STATEMENT_LINE",
                    entity_id=line_id,
                    conn=self.conn,
                )
            return {"success": True, "id": line_id, "message": "Statement line added"}
        except LedgerError as e:
            return e.as_result()

    def get_statement_lines(self, statement_id: int) -> List[sqlite3.Row]:
        return self.conn.execute(
            "SELECT * FROM bank_statement_line WHERE bank_statement_id = ? ORDER BY transaction_date, id",
            (statement_id,),
        ).fetchall()

    def get_unmatched_statement_lines(self, statement_id: int) -> List[sqlite3.Row]:
        return self.conn.execute(
            """
            SELECT * FROM bank_statement_line
            WHERE bank_statement_id = ? AND is_matched = 0
            ORDER BY transaction_date, id
            """,
            (statement_id,),
        ).fetchall()

    # Matching
    def match_transaction(self, line_id: int, entry_id: int, user_id: str) -> Dict[str, Any]:
        """Link one statement line to one ledger entry. A matched line must be unmatched first."""
        try:
            validation.require_actor(user_id)
            line = self._get_line(line_id)
            if line["is_matched"]:
                raise ConstraintViolation("Statement line is already matched; unmatch it first")
            entry = self.journal.get_entry(entry_id)
            if entry["is_voided"]:
                raise ValidationError("Cannot match a voided journal entry")
            if not entry["is_posted"]:
                raise ValidationError("Cannot match an entry that has not been posted")
            taken = self.conn.execute(
                "SELECT id FROM bank_statement_line WHERE matched_entry_id = ?", (entry_id,)
            ).fetchone()
            if taken:
                raise ConstraintViolation(f"Journal entry {entry_id} is already matched to line {taken['id']}")

            statement = self._get_statement(line["bank_statement_id"])
            bank = self._get_bank_account(statement["bank_account_id"])
            movement = sum(
                ln["debit_amount"] - ln["credit_amount"]
                for ln in entry["lines"]
                if ln["gl_account_code"] == bank["gl_account_code"]
            )
            if movement == 0:
                raise ValidationError(
                    f"Journal entry {entry_id} does not move bank GL account {bank['gl_account_code']}"
                )
            # Money in on the statement is a debit to the bank GL account
            line_movement = line["credit_amount"] - line["debit_amount"]
            if (movement > 0) != (line_movement > 0):
                raise ValidationError("Statement line and journal entry move the bank in opposite directions")
            if abs(abs(movement) - abs(line_movement)) > MATCH_AMOUNT_TOLERANCE:
                raise ValidationError(
                    f"Amount mismatch: statement {validation.format_amount(abs(line_movement))}, "
                    f"ledger {validation.format_amount(abs(movement))}"
                )
            day_gap = abs((_date.fromisoformat(line["transaction_date"])
                           - _date.fromisoformat(entry["entry_date"])).days)
            if day_gap > MATCH_DATE_TOLERANCE_DAYS:
                raise ValidationError(f"Dates are {day_gap} days apart (limit {MATCH_DATE_TOLERANCE_DAYS})")

            try:
                with db.atomic(self.conn):
                    cur = self.conn.execute(
                        """
                        UPDATE bank_statement_line
                        SET is_matched = 1, matched_entry_id = ?, matched_by = ?, matched_at = ?
                        WHERE id = ? AND is_matched = 0
                        """,
                        (entry_id, str(user_id), db.now_iso(), line_id),
                    )
                    if cur.rowcount != 1:
                        raise ConstraintViolation("Statement line is already matched; unmatch it first")
                    db.log_audit(
                        action="statement_line_matched",
                        details=db.audit_details(line_id=line_id, entry_id=entry_id),
                        user=user_id,
                        entity_type="BANK_STATEMENT_LINE",
                        entity_id=line_id,
                        conn=self.conn,
                    )
            except sqlite3.IntegrityError as e:
                raise ConstraintViolation(f"Journal entry {entry_id} is already matched") from e
            return {"success": True, "line_id": line_id, "entry_id": entry_id, "message": "Transaction matched"}
        except LedgerError as e:
            return e.as_result()

    def unmatch_transaction(self, line_id: int, user_id: str) -> Dict[str, Any]:
        try:
            validation.require_actor(user_id)
            line = self._get_line(line_id)
            if not line["is_matched"]:
                raise ValidationError("Statement line is not matched")
            statement = self._get_statement(line["bank_statement_id"])
            if statement["status"] == "RECONCILED":
                raise ValidationError("Cannot unmatch a line on a reconciled statement")
            with db.atomic(self.conn):
                self.conn.execute(
                    """
                    UPDATE bank_statement_line
                    SET is_matched = 0, matched_entry_id = NULL, matched_by = NULL, matched_at = NULL
                    WHERE id = ?
                    """,
                    (line_id,),
                )
                db.log_audit(
                    action="statement_line_unmatched",
                    details=db.audit_details(line_id=line_id, entry_id=line["matched_entry_id"]),
                    user=user_id,
                    entity_type="BANK_STATEMENT_LINE",
                    entity_id=line_id,
                    conn=self.conn,
                )
            return {"success": True, "line_id": line_id, "message": "Transaction unmatched"}
        except LedgerError as e:
            return e.as_result()

    def get_unmatched_transactions(
        self,
        start_date: str,
        end_date: str,
        *,
        bank_account_id: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        """Posted entries moving a bank GL account in the range that no statement line claims."""
        params: list = []
        bank_filter = ""
        if bank_account_id is not None:
            bank_filter = "AND ba.id = ?"
            params.append(bank_account_id)
        params.extend([start_date, end_date])
        cur = self.conn.execute(
            f"""
            SELECT je.id AS entry_id, je.entry_ref, je.entry_date, je.entry_type, je.description,
                   jel.gl_account_code,
                   SUM(jel.debit_amount) - SUM(jel.credit_amount) AS bank_movement
            FROM journal_entry je
            JOIN journal_entry_line jel ON jel.journal_entry_id = je.id
            JOIN (SELECT DISTINCT ba.gl_account_code FROM bank_account ba
                   WHERE ba.is_active = 1 {bank_filter}) banks
              ON banks.gl_account_code = jel.gl_account_code
            WHERE je.is_posted = 1 AND je.is_voided = 0
              AND je.entry_date BETWEEN ? AND ?
              AND NOT EXISTS (SELECT 1 FROM bank_statement_line bsl WHERE bsl.matched_entry_id = je.id)
            GROUP BY je.id, jel.gl_account_code
            ORDER BY je.entry_date, je.id
            """,
            params,
        )
        return [dict(r) for r in cur.fetchall()]

    # Adjustments
    def add_adjustment(
        self,
        statement_id: int,
        adjustment_type: str,
        amount: int,
        description: str,
        user_id: str,
    ) -> Dict[str, Any]:
        try:
            validation.require_actor(user_id)
            self._get_statement(statement_id)
            adjustment_type = (adjustment_type or "").upper()
            if adjustment_type not in ADJUSTMENT_TYPES:
                raise ValidationError(f"Invalid adjustment type: {adjustment_type}")
            if not isinstance(amount, int) or isinstance(amount, bool) or amount == 0:
                raise ValidationError("Adjustment amount must be a non-zero whole number of minor units")
            description = validation.sanitize_string(description, max_length=validation.MAX_DESCRIPTION_LENGTH)
            if not description:
                raise ValidationError("Description is required")
            with db.atomic(self.conn):
                cur = self.conn.execute(
                    """
                    INSERT INTO reconciliation_adjustment(bank_statement_id, adjustment_type, amount, description, created_by)
                    VALUES (?, ?, ?, ?, ?)
                    """,
                    (statement_id, adjustment_type, amount, description, str(user_id)),
                )
                db.log_audit(
                    action="reconciliation_adjustment_added",
                    details=db.audit_details(statement_id=statement_id, type=adjustment_type, amount=amount),
                    user=user_id,
                    entity_type="BANK_STATEMENT",
                    entity_id=statement_id,
                    conn=self.conn,
                )
            return {"success": True, "id": int(cur.lastrowid), "message": "Adjustment recorded"}
        except LedgerError as e:
            return e.as_result()

    # Reconciliation runs
    def run_reconciliation(self, user_id: str, *, as_of: Optional[str] = None) -> Dict[str, Any]:
        """
        For each active bank account, take its latest statement and compute
        calculated = opening + credits - debits over matched lines, then
        variance = calculated - closing. One ledger_reconciliation row per account.
        """
        try:
            validation.require_actor(user_id)
            results: List[Dict[str, Any]] = []
            run_date = as_of or db.today_iso()
            with db.atomic(self.conn):
                for bank in self.list_bank_accounts():
                    statement = self.conn.execute(
                        """
                        SELECT * FROM bank_statement
                        WHERE bank_account_id = ? AND statement_date <= ?
                        ORDER BY statement_date DESC, id DESC
                        LIMIT 1
                        """,
                        (bank["id"], run_date),
                    ).fetchone()
                    if statement is None:
                        results.append({
                            "bank_account_id": bank["id"],
                            "account_name": bank["account_name"],
                            "skipped": True,
                            "message": "No statement on file",
                        })
                        continue
                    totals = self._matched_totals(statement["id"])
                    calculated = statement["opening_balance"] + totals["credits"] - totals["debits"]
                    variance = calculated - statement["closing_balance"]
                    try:
                        ledger_balance = self.journal.accounts.get_account_balance(
                            bank["gl_account_code"], statement["statement_date"]
                        )
                    except NotFoundError:
                        logger.warning(
                            f"Bank account {bank['account_name']} points at missing GL account {bank['gl_account_code']}"
                        )
                        ledger_balance = None
                    result = {
                        "bank_account_id": bank["id"],
                        "account_name": bank["account_name"],
                        "gl_account_code": bank["gl_account_code"],
                        "bank_statement_id": statement["id"],
                        "opening_balance": statement["opening_balance"],
                        "total_debits": totals["debits"],
                        "total_credits": totals["credits"],
                        "closing_balance": statement["closing_balance"],
                        "calculated_balance": calculated,
                        "variance": variance,
                        "is_balanced": variance == 0,
                        "unmatched_lines": totals["unmatched"],
                        "adjustments_total": self._adjustments_total(statement["id"]),
                        "ledger_balance": ledger_balance,
                        "skipped": False,
                    }
                    self.conn.execute(
                        """
                        INSERT INTO ledger_reconciliation(
                            reconciliation_date, bank_account_id, bank_statement_id, gl_account_code,
                            opening_balance, total_debits, total_credits, closing_balance,
                            calculated_balance, variance, is_balanced, reconciled_by
                        )
                        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                        """,
                        (run_date, bank["id"], statement["id"], bank["gl_account_code"],
                         statement["opening_balance"], totals["debits"], totals["credits"],
                         statement["closing_balance"], calculated, variance, 1 if variance == 0 else 0,
                         str(user_id)),
                    )
                    if variance:
                        logger.warning(
                            f"Bank account {bank['account_name']} out by {validation.format_amount(variance)}"
                        )
                    results.append(result)
                db.log_audit(
                    action="reconciliation_run",
                    details=db.audit_details(run_date=run_date, accounts=len(results)),
                    user=user_id,
                    entity_type="LEDGER_RECONCILIATION",
                    conn=self.conn,
                )
            checked = [r for r in results if not r["skipped"]]
            return {
                "success": True,
                "run_date": run_date,
                "results": results,
                "all_balanced": all(r["is_balanced"] for r in checked),
                "message": f"Reconciled {len(checked)} bank account(s)",
            }
        except LedgerError as e:
            return e.as_result()

    def mark_statement_reconciled(self, statement_id: int, user_id: str) -> Dict[str, Any]:
        try:
            validation.require_actor(user_id)
            statement = self._get_statement(statement_id)
            if statement["status"] == "RECONCILED":
                raise ValidationError("Statement is already reconciled")
            totals = self._matched_totals(statement_id)
            if totals["unmatched"]:
                raise ValidationError(f"{totals['unmatched']} statement line(s) are still unmatched")
            calculated = statement["opening_balance"] + totals["credits"] - totals["debits"]
            if calculated != statement["closing_balance"]:
                raise ValidationError(
                    f"Calculated closing {validation.format_amount(calculated)} does not equal "
                    f"statement closing {validation.format_amount(statement['closing_balance'])}"
                )
            with db.atomic(self.conn):
                self.conn.execute(
                    """
                    UPDATE bank_statement
                    SET status = 'RECONCILED', reconciled_by = ?, reconciled_at = ?
                    WHERE id = ?
                    """,
                    (str(user_id), db.now_iso(), statement_id),
                )
                db.log_audit(
                    action="bank_statement_reconciled",
                    details=db.audit_details(statement_id=statement_id),
                    user=user_id,
                    entity_type="BANK_STATEMENT",
                    entity_id=statement_id,
                    conn=self.conn,
                )
            return {"success": True, "statement_id": statement_id, "message": "Statement reconciled"}
        except LedgerError as e:
            return e.as_result()

    def get_bank_reconciliations(self, bank_account_id: Optional[int] = None) -> List[sqlite3.Row]:
        params: list = []
        where = ""
        if bank_account_id is not None:
            where = "WHERE bank_account_id = ?"
            params.append(bank_account_id)
        return self.conn.execute(
            f"SELECT * FROM ledger_reconciliation {where} ORDER BY id DESC", params
        ).fetchall()

    # Integrity checks
    def run_integrity_checks(self, user_id: str) -> Dict[str, Any]:
        try:
            validation.require_actor(user_id)
        except LedgerError as e:
            return e.as_result()
        checks = [
            self._check_trial_balance(),
            self._check_entry_balance(),
            self._check_abnormal_balances(),
            self._check_stale_approvals(),
            self._check_unlinked_legacy(),
        ]
        summary = {
            "total_checks": len(checks),
            "passed": sum(1 for c in checks if c["status"] == "PASS"),
            "failed": sum(1 for c in checks if c["status"] == "FAIL"),
            "warnings": sum(1 for c in checks if c["status"] == "WARNING"),
        }
        if summary["failed"]:
            overall = "FAIL"
        elif summary["warnings"]:
            overall = "WARNING"
        else:
            overall = "PASS"
        run_date = db.now_iso()
        with db.atomic(self.conn):
            self.conn.execute(
                """
                INSERT INTO integrity_check_run(
                    run_date, overall_status, total_checks, passed_checks, failed_checks,
                    warning_checks, details_json, performed_by
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (run_date, overall, summary["total_checks"], summary["passed"], summary["failed"],
                 summary["warnings"], json.dumps(checks, default=str), str(user_id)),
            )
            db.log_audit(
                action="integrity_checks_run",
                details=db.audit_details(status=overall, checks=summary["total_checks"]),
                user=user_id,
                entity_type="LEDGER_RECONCILIATION",
                conn=self.conn,
            )
        if overall != "PASS":
            logger.warning(f"Integrity checks finished with status {overall}")
        return {"success": True, "run_date": run_date, "overall_status": overall, "checks": checks, "summary": summary}

    def get_reconciliation_history(self, limit: int = 30) -> List[Dict[str, Any]]:
        cur = self.conn.execute(
            "SELECT * FROM integrity_check_run ORDER BY id DESC LIMIT ?", (limit,)
        )
        history = []
        for r in cur.fetchall():
            item = dict(r)
            item["checks"] = json.loads(item.pop("details_json") or "[]")
            history.append(item)
        return history

    def _check_trial_balance(self) -> Dict[str, Any]:
        row = self.conn.execute(
            """
            SELECT COALESCE(SUM(jel.debit_amount), 0) AS debits, COALESCE(SUM(jel.credit_amount), 0) AS credits
            FROM journal_entry je
            JOIN journal_entry_line jel ON jel.journal_entry_id = je.id
            WHERE je.is_posted = 1 AND je.is_voided = 0
            """
        ).fetchone()
        variance = int(row["debits"]) - int(row["credits"])
        if variance == 0:
            return {"check_name": "Trial Balance Verification", "status": "PASS",
                    "message": f"Books are balanced at {validation.format_amount(int(row['debits']))}"}
        return {"check_name": "Trial Balance Verification", "status": "FAIL",
                "message": "Trial balance is out of balance", "variance": variance}

    def _check_entry_balance(self) -> Dict[str, Any]:
        rows = self.conn.execute(
            """
            SELECT je.id, je.entry_ref,
                   SUM(jel.debit_amount) AS debits, SUM(jel.credit_amount) AS credits,
                   SUM(CASE WHEN (jel.debit_amount > 0) + (jel.credit_amount > 0) != 1 THEN 1 ELSE 0 END) AS bad_lines
            FROM journal_entry je
            JOIN journal_entry_line jel ON jel.journal_entry_id = je.id
            WHERE je.is_voided = 0
            GROUP BY je.id, je.entry_ref
            HAVING SUM(jel.debit_amount) != SUM(jel.credit_amount) OR bad_lines > 0
            """
        ).fetchall()
        if not rows:
            return {"check_name": "Entry Balance Verification", "status": "PASS",
                    "message": "Every active entry balances"}
        return {"check_name": "Entry Balance Verification", "status": "FAIL",
                "message": f"{len(rows)} entries are unbalanced or carry malformed lines",
                "details": [dict(r) for r in rows]}

    def _check_abnormal_balances(self) -> Dict[str, Any]:
        rows = self.conn.execute(
            """
            SELECT ga.code, ga.name, ga.account_type, ga.normal_balance,
                   CASE WHEN ga.normal_balance = 'DEBIT'
                        THEN SUM(jel.debit_amount) - SUM(jel.credit_amount)
                        ELSE SUM(jel.credit_amount) - SUM(jel.debit_amount) END AS balance
            FROM gl_account ga
            JOIN journal_entry_line jel ON jel.gl_account_code = ga.code
            JOIN journal_entry je ON je.id = jel.journal_entry_id
            WHERE je.is_posted = 1 AND je.is_voided = 0 AND ga.account_type IN ('ASSET', 'LIABILITY')
            GROUP BY ga.code, ga.name, ga.account_type, ga.normal_balance
            HAVING balance < 0
            """
        ).fetchall()
        if not rows:
            return {"check_name": "Abnormal Balance Detection", "status": "PASS",
                    "message": "No abnormal GL account balances detected"}
        return {"check_name": "Abnormal Balance Detection", "status": "WARNING",
                "message": f"Found {len(rows)} GL accounts against their normal balance",
                "details": [dict(r) for r in rows]}

    def _check_stale_approvals(self) -> Dict[str, Any]:
        row = self.conn.execute(
            """
            SELECT COUNT(*) AS n FROM approval_request
            WHERE status = 'PENDING' AND julianday('now') - julianday(requested_at) > ?
            """,
            (STALE_APPROVAL_DAYS,),
        ).fetchone()
        if int(row["n"]) == 0:
            return {"check_name": "Pending Approval Age", "status": "PASS",
                    "message": "No approval requests are overdue"}
        return {"check_name": "Pending Approval Age", "status": "WARNING",
                "message": f"{row['n']} approval requests pending for more than {STALE_APPROVAL_DAYS} days"}

    def _check_unlinked_legacy(self) -> Dict[str, Any]:
        row = self.conn.execute(
            """
            SELECT COUNT(*) AS n FROM legacy_transaction lt
            WHERE lt.is_voided = 0
              AND NOT EXISTS (SELECT 1 FROM journal_entry je WHERE je.source_legacy_transaction_id = lt.id)
            """
        ).fetchone()
        if int(row["n"]) == 0:
            return {"check_name": "Legacy Linkage Check", "status": "PASS",
                    "message": "All legacy transactions are linked to journal entries"}
        return {"check_name": "Legacy Linkage Check", "status": "WARNING",
                "message": f"{row['n']} legacy transactions have not been backfilled"}

    # Internals
    def _matched_totals(self, statement_id: int) -> Dict[str, int]:
        row = self.conn.execute(
            """
            SELECT COALESCE(SUM(CASE WHEN is_matched = 1 THEN debit_amount ELSE 0 END), 0) AS debits,
                   COALESCE(SUM(CASE WHEN is_matched = 1 THEN credit_amount ELSE 0 END), 0) AS credits,
                   COALESCE(SUM(CASE WHEN is_matched = 0 THEN 1 ELSE 0 END), 0) AS unmatched
            FROM bank_statement_line
            WHERE bank_statement_id = ?
            """,
            (statement_id,),
        ).fetchone()
        return {"debits": int(row["debits"]), "credits": int(row["credits"]), "unmatched": int(row["unmatched"])}

    def _adjustments_total(self, statement_id: int) -> int:
        row = self.conn.execute(
            "SELECT COALESCE(SUM(amount), 0) AS total FROM reconciliation_adjustment WHERE bank_statement_id = ?",
            (statement_id,),
        ).fetchone()
        return int(row["total"])

    def _get_bank_account(self, bank_account_id: int) -> sqlite3.Row:
        row = self.conn.execute("SELECT * FROM bank_account WHERE id = ?", (bank_account_id,)).fetchone()
        if row is None:
            raise NotFoundError(f"Bank account {bank_account_id} not found")
        return row

    def _get_statement(self, statement_id: int) -> sqlite3.Row:
        row = self.conn.execute("SELECT * FROM bank_statement WHERE id = ?", (statement_id,)).fetchone()
        if row is None:
            raise NotFoundError(f"Bank statement {statement_id} not found")
        return row

    def _get_line(self, line_id: int) -> sqlite3.Row:
        row = self.conn.execute("SELECT * FROM bank_statement_line WHERE id = ?", (line_id,)).fetchone()
        if row is None:
            raise NotFoundError(f"Statement line {line_id} not found")
        return row
