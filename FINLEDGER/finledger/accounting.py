from __future__ import annotations

import json
import sqlite3
import uuid
from dataclasses import dataclass, replace
from datetime import date as _date, datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple
import logging

from . import db
from . import validation
from .accounts import ChartOfAccounts
from .approvals import ApprovalRuleEngine, ApprovalWorkflow
from .errors import ConstraintViolation, LedgerError, NotFoundError, ValidationError

logger = logging.getLogger(__name__)

ENTITY_JOURNAL_ENTRY = "JOURNAL_ENTRY"
ACTION_POST = "POST"
ACTION_VOID = "VOID"


@dataclass
class JournalLine:
    account_code: str
    debit: int = 0
    credit: int = 0
    description: Optional[str] = None

    def as_tuple(self) -> Tuple[str, int, int]:
        return (self.account_code, self.debit, self.credit)


def generate_entry_ref(entry_type: str) -> str:
    stamp = datetime.now(timezone.utc).strftime("%Y%m%d%H%M%S")
    return f"{entry_type[:3].upper()}-{stamp}-{uuid.uuid4().hex[:8].upper()}"


def days_between(earlier: str, later: Optional[_date] = None) -> int:
    later = later or datetime.now(timezone.utc).date()
    return max(0, (later - _date.fromisoformat(earlier[:10])).days)


class JournalEngine:
    """
    Creates, posts and voids balanced journal entries and builds the read-only
    reports over them.

    Voiding flips the entry's void flag and writes a void_audit row; no
    reversing entry is posted. Every balance therefore filters on
    ``is_voided = 0`` (and ``is_posted = 1``) rather than assuming that a
    recorded entry stays in the books.
    """

    def __init__(
        self,
        conn: sqlite3.Connection,
        *,
        accounts: Optional[ChartOfAccounts] = None,
        rules: Optional[ApprovalRuleEngine] = None,
        workflow: Optional[ApprovalWorkflow] = None,
    ) -> None:
        self.conn = conn
        self.accounts = accounts or ChartOfAccounts(conn)
        self.rules = rules or ApprovalRuleEngine(conn)
        self.workflow = workflow or ApprovalWorkflow(conn)
        self.workflow.register_handler(
            ENTITY_JOURNAL_ENTRY,
            ACTION_POST,
            on_approve=self._post_approved_entry,
            on_reject=self._reject_pending_entry,
            on_cancel=self._cancel_pending_entry,
        )
        self.workflow.register_handler(ENTITY_JOURNAL_ENTRY, ACTION_VOID, on_approve=self._void_approved_entry)

    # Transaction Entry & Journalization
    def create_journal_entry(
        self,
        entry_type: str,
        entry_date: str,
        description: str,
        lines: Iterable[JournalLine],
        created_by: str,
        *,
        student_id: Optional[int] = None,
        staff_id: Optional[int] = None,
        term_id: Optional[int] = None,
        department: Optional[str] = None,
    ) -> Dict[str, Any]:
        try:
            entry_id, entry_ref, request_id = self.record_entry(
                entry_type,
                entry_date,
                description,
                lines,
                created_by,
                student_id=student_id,
                staff_id=staff_id,
                term_id=term_id,
                department=department,
            )
        except LedgerError as e:
            logger.warning(f"Journal entry rejected: {e.message}")
            return e.as_result()
        if request_id is not None:
            return {
                "success": True,
                "entry_id": entry_id,
                "entry_ref": entry_ref,
                "is_posted": False,
                "approval_status": "PENDING",
                "requires_approval": True,
                "request_id": request_id,
                "message": "Journal entry created and submitted for approval",
            }
        return {
            "success": True,
            "entry_id": entry_id,
            "entry_ref": entry_ref,
            "is_posted": True,
            "approval_status": "APPROVED",
            "requires_approval": False,
            "message": "Journal entry created and posted",
        }

    def record_entry(
        self,
        entry_type: str,
        entry_date: str,
        description: str,
        lines: Iterable[JournalLine],
        created_by: str,
        *,
        student_id: Optional[int] = None,
        staff_id: Optional[int] = None,
        term_id: Optional[int] = None,
        department: Optional[str] = None,
        entry_ref: Optional[str] = None,
        source_legacy_transaction_id: Optional[int] = None,
        bypass_approval: bool = False,
    ) -> Tuple[int, str, Optional[int]]:
        """
        Validate and write one entry with its lines atomically.
        Returns (entry_id, entry_ref, approval_request_id or None).
        Raises ValidationError / ConstraintViolation before anything is kept.
        """
        line_list = list(lines)
        validation.require_actor(created_by)
        entry_type = (entry_type or "").upper()
        if entry_type not in db.ENTRY_TYPES:
            raise ValidationError(f"Invalid entry type: {entry_type or '(blank)'}")
        ok_date, parsed_date = validation.validate_date(entry_date)
        if not ok_date:
            raise ValidationError("Entry date must be in ISO format YYYY-MM-DD")
        entry_date = parsed_date.isoformat()
        description = validation.sanitize_string(description, max_length=validation.MAX_DESCRIPTION_LENGTH)
        if not description:
            raise ValidationError("Description is required")

        ok, msg = validation.validate_journal_entry_lines(line_list)
        if not ok:
            raise ValidationError(msg)
        line_list = [replace(ln, account_code=str(ln.account_code).strip()) for ln in line_list]
        for ln in line_list:
            if not self.accounts.is_active(ln.account_code):
                raise ValidationError(
                    f"Invalid GL account code: {ln.account_code}. "
                    "Check Chart of Accounts or verify account is active."
                )

        amount = sum(ln.debit for ln in line_list)
        rule = None
        if not bypass_approval:
            rule = self.rules.evaluate(entry_type, amount, days_between(entry_date))

        entry_ref = entry_ref or generate_entry_ref(entry_type)
        now = db.now_iso()
        approved = rule is None
        request_id: Optional[int] = None
        try:
            with db.atomic(self.conn):
                cur = self.conn.execute(
                    """
                    INSERT INTO journal_entry(
                        entry_ref, entry_date, entry_type, description,
                        student_id, staff_id, term_id, department,
                        is_posted, posted_by, posted_at,
                        approval_status, approved_by, approved_at,
                        created_by, created_at, source_legacy_transaction_id
                    )
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        entry_ref,
                        entry_date,
                        entry_type,
                        description,
                        student_id,
                        staff_id,
                        term_id,
                        department,
                        1 if approved else 0,
                        str(created_by) if approved else None,
                        now if approved else None,
                        "APPROVED" if approved else "PENDING",
                        str(created_by) if approved else None,
                        now if approved else None,
                        str(created_by),
                        now,
                        source_legacy_transaction_id,
                    ),
                )
                entry_id = int(cur.lastrowid)
                self.conn.executemany(
                    """
                    INSERT INTO journal_entry_line(
                        journal_entry_id, line_number, gl_account_code, debit_amount, credit_amount, description
                    )
                    VALUES (?, ?, ?, ?, ?, ?)
                    """,
                    [
                        (entry_id, idx, ln.account_code, ln.debit, ln.credit, ln.description)
                        for idx, ln in enumerate(line_list, start=1)
                    ],
                )
                if rule is not None:
                    request_id = self.workflow.create_request(
                        ENTITY_JOURNAL_ENTRY,
                        entry_id,
                        ACTION_POST,
                        created_by,
                        rule=rule,
                        notes=f"Entry requires approval: {rule.rule_name}",
                    )
                db.log_audit(
                    action="journal_entry_created",
                    details=db.audit_details(
                        entry_ref=entry_ref,
                        entry_type=entry_type,
                        entry_date=entry_date,
                        amount=amount,
                        approval_status="APPROVED" if approved else "PENDING",
                        source_legacy_transaction_id=source_legacy_transaction_id,
                    ),
                    user=created_by,
                    entity_type=ENTITY_JOURNAL_ENTRY,
                    entity_id=entry_id,
                    conn=self.conn,
                )
        except sqlite3.IntegrityError as e:
            raise ConstraintViolation(f"Journal entry violates a uniqueness constraint: {e}") from e

        if approved:
            logger.info(f"Journal entry {entry_ref} posted ({validation.format_amount(amount)})")
        else:
            logger.info(f"Journal entry {entry_ref} pending approval under '{rule.rule_name}'")
        return entry_id, entry_ref, request_id

    # Voids
    def void_journal_entry(self, entry_id: int, reason: str, user_id: str) -> Dict[str, Any]:
        try:
            validation.require_actor(user_id)
            reason = validation.sanitize_string(reason, max_length=validation.MAX_DESCRIPTION_LENGTH)
            if not reason:
                raise ValidationError("A void reason is required")
            entry = self._get_entry_row(entry_id)
            if entry["is_voided"]:
                raise ValidationError("Journal entry is already voided")
            if entry["approval_status"] == "PENDING":
                raise ValidationError(
                    "Journal entry is awaiting approval; reject or cancel its request instead of voiding"
                )

            amount = self._entry_amount(entry_id)
            age = days_between(entry["entry_date"])
            rule = self.rules.evaluate("VOID", amount, age)
            if rule is not None:
                request_id = self.workflow.create_request(
                    ENTITY_JOURNAL_ENTRY,
                    entry_id,
                    ACTION_VOID,
                    user_id,
                    rule=rule,
                    notes=f"Void requires approval: {rule.rule_name}",
                    payload={"reason": reason},
                )
                logger.info(f"Void of entry {entry['entry_ref']} deferred to request {request_id}")
                return {
                    "success": True,
                    "voided": False,
                    "requires_approval": True,
                    "request_id": request_id,
                    "required_role": rule.required_role,
                    "message": "Void request submitted for approval",
                }

            with db.atomic(self.conn):
                void_audit_id = self._apply_void(entry, amount, reason, user_id)
            return {
                "success": True,
                "voided": True,
                "requires_approval": False,
                "void_audit_id": void_audit_id,
                "message": "Journal entry voided",
            }
        except LedgerError as e:
            return e.as_result()

    def record_void_recovery(
        self,
        void_audit_id: int,
        recovered_amount: int,
        method: str,
        user_id: str,
        *,
        notes: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Attach the recovery outcome to a void; the only change a void record accepts."""
        try:
            validation.require_actor(user_id)
            row = self.conn.execute("SELECT * FROM void_audit WHERE id = ?", (void_audit_id,)).fetchone()
            if row is None:
                raise NotFoundError(f"Void record {void_audit_id} not found")
            if row["recovered_amount"] is not None:
                raise ValidationError("Recovery has already been recorded for this void")
            if not isinstance(recovered_amount, int) or recovered_amount <= 0:
                raise ValidationError("Recovered amount must be a positive whole number of minor units")
            if recovered_amount > row["original_amount"]:
                raise ValidationError("Recovered amount cannot exceed the voided amount")
            if not method:
                raise ValidationError("Recovery method is required")
            with db.atomic(self.conn):
                self.conn.execute(
                    """
                    UPDATE void_audit
                    SET recovered_amount = ?, recovered_method = ?, recovered_at = ?, recovered_by = ?,
                        notes = COALESCE(?, notes)
                    WHERE id = ? AND recovered_amount IS NULL
                    """,
                    (recovered_amount, method, db.now_iso(), str(user_id), notes, void_audit_id),
                )
                db.log_audit(
                    action="void_recovery_recorded",
                    details=db.audit_details(void_audit_id=void_audit_id, amount=recovered_amount, method=method),
                    user=user_id,
                    entity_type="VOID_AUDIT",
                    entity_id=void_audit_id,
                    conn=self.conn,
                )
            return {"success": True, "void_audit_id": void_audit_id, "message": "Recovery recorded"}
        except LedgerError as e:
            return e.as_result()

    def _apply_void(
        self,
        entry: sqlite3.Row,
        amount: int,
        reason: str,
        voided_by: str,
        *,
        approval_request_id: Optional[int] = None,
        notes: Optional[str] = None,
    ) -> int:
        now = db.now_iso()
        cur = self.conn.execute(
            """
            UPDATE journal_entry
            SET is_voided = 1, voided_reason = ?, voided_by = ?, voided_at = ?
            WHERE id = ? AND is_voided = 0
            """,
            (reason, str(voided_by), now, entry["id"]),
        )
        if cur.rowcount != 1:
            raise ValidationError("Journal entry is already voided")
        cur = self.conn.execute(
            """
            INSERT INTO void_audit(
                journal_entry_id, entry_type, original_amount, description, void_reason,
                voided_by, voided_at, approval_request_id, notes
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                entry["id"],
                entry["entry_type"],
                amount,
                entry["description"],
                reason,
                str(voided_by),
                now,
                approval_request_id,
                notes,
            ),
        )
        void_audit_id = int(cur.lastrowid)
        db.log_audit(
            action="journal_entry_voided",
            details=db.audit_details(
                entry_ref=entry["entry_ref"],
                amount=amount,
                reason=reason,
                approval_request_id=approval_request_id,
            ),
            user=voided_by,
            entity_type=ENTITY_JOURNAL_ENTRY,
            entity_id=entry["id"],
            conn=self.conn,
        )
        logger.info(f"Journal entry {entry['entry_ref']} voided by {voided_by}")
        return void_audit_id

    # Approval handlers (run inside the workflow's savepoint)
    def _post_approved_entry(self, request: sqlite3.Row, reviewer: str) -> None:
        now = db.now_iso()
        cur = self.conn.execute(
            """
            UPDATE journal_entry
            SET approval_status = 'APPROVED', approved_by = ?, approved_at = ?,
                is_posted = 1, posted_by = ?, posted_at = ?
            WHERE id = ? AND approval_status = 'PENDING' AND is_voided = 0
            """,
            (reviewer, now, reviewer, now, request["entity_id"]),
        )
        if cur.rowcount != 1:
            raise ValidationError(f"Journal entry {request['entity_id']} is no longer awaiting approval")
        db.log_audit(
            action="journal_entry_posted",
            details=db.audit_details(approval_request_id=request["id"]),
            user=reviewer,
            entity_type=ENTITY_JOURNAL_ENTRY,
            entity_id=request["entity_id"],
            conn=self.conn,
        )

    def _reject_pending_entry(self, request: sqlite3.Row, reviewer: str, notes: str) -> None:
        self._close_pending_entry(request, reviewer, f"Rejected: {notes}")

    def _cancel_pending_entry(self, request: sqlite3.Row, requester: str, notes: Optional[str]) -> None:
        self._close_pending_entry(request, requester, f"Cancelled: {notes or 'request withdrawn by requester'}")

    def _close_pending_entry(self, request: sqlite3.Row, user: str, reason: str) -> None:
        """A creation that will never be approved: mark it REJECTED and void it."""
        entry = self._get_entry_row(request["entity_id"])
        self.conn.execute(
            "UPDATE journal_entry SET approval_status = 'REJECTED', approved_by = ?, approved_at = ? WHERE id = ?",
            (user, db.now_iso(), entry["id"]),
        )
        self._apply_void(
            entry,
            self._entry_amount(entry["id"]),
            reason,
            user,
            approval_request_id=request["id"],
        )

    def _void_approved_entry(self, request: sqlite3.Row, reviewer: str) -> None:
        entry = self._get_entry_row(request["entity_id"])
        payload = json.loads(request["payload"] or "{}")
        self._apply_void(
            entry,
            self._entry_amount(entry["id"]),
            payload.get("reason") or "Approved void",
            request["requested_by"],
            approval_request_id=request["id"],
            notes=f"Approved by {reviewer}",
        )

    # Lookups
    def get_entry(self, entry_id: int) -> Dict[str, Any]:
        entry = dict(self._get_entry_row(entry_id))
        entry["lines"] = [dict(r) for r in self.get_entry_lines(entry_id)]
        entry["amount"] = sum(ln["debit_amount"] for ln in entry["lines"])
        return entry

    def get_entry_lines(self, entry_id: int) -> List[sqlite3.Row]:
        cur = self.conn.execute(
            """
            SELECT jel.id, jel.line_number, jel.gl_account_code, ga.name AS account_name,
                   jel.debit_amount, jel.credit_amount, jel.description
            FROM journal_entry_line jel
            JOIN gl_account ga ON ga.code = jel.gl_account_code
            WHERE jel.journal_entry_id = ?
            ORDER BY jel.line_number
            """,
            (entry_id,),
        )
        return cur.fetchall()

    def _get_entry_row(self, entry_id: int) -> sqlite3.Row:
        row = self.conn.execute("SELECT * FROM journal_entry WHERE id = ?", (entry_id,)).fetchone()
        if row is None:
            raise NotFoundError(f"Journal entry {entry_id} not found")
        return row

    def _entry_amount(self, entry_id: int) -> int:
        row = self.conn.execute(
            "SELECT COALESCE(SUM(debit_amount), 0) AS amount FROM journal_entry_line WHERE journal_entry_id = ?",
            (entry_id,),
        ).fetchone()
        return int(row["amount"])

    # Reports
    def _account_activity(
        self,
        *,
        start_date: Optional[str] = None,
        end_date: Optional[str] = None,
    ) -> List[sqlite3.Row]:
        params: list = []
        date_filter = ""
        if start_date:
            date_filter += " AND je.entry_date >= ?"
            params.append(start_date)
        if end_date:
            date_filter += " AND je.entry_date <= ?"
            params.append(end_date)
        sql = f"""
            SELECT ga.code, ga.name, ga.account_type, ga.normal_balance,
                   COALESCE(SUM(jel.debit_amount), 0) AS debit_total,
                   COALESCE(SUM(jel.credit_amount), 0) AS credit_total
            FROM gl_account ga
            JOIN journal_entry_line jel ON jel.gl_account_code = ga.code
            JOIN journal_entry je ON je.id = jel.journal_entry_id
            WHERE je.is_posted = 1 AND je.is_voided = 0
              {date_filter}
            GROUP BY ga.code, ga.name, ga.account_type, ga.normal_balance
            ORDER BY ga.code
        """
        return self.conn.execute(sql, params).fetchall()

    def get_trial_balance(self, start_date: Optional[str] = None, end_date: Optional[str] = None) -> Dict[str, Any]:
        """
        Trial balance over posted, non-voided entries in [start_date, end_date].
        Each account's activity is netted into a debit or credit column.
        """
        rows: List[Dict[str, Any]] = []
        total_debits = 0
        total_credits = 0
        for r in self._account_activity(start_date=start_date, end_date=end_date):
            net = int(r["debit_total"]) - int(r["credit_total"])
            line = {
                "code": r["code"],
                "name": r["name"],
                "account_type": r["account_type"],
                "normal_balance": r["normal_balance"],
                "debit_total": int(r["debit_total"]),
                "credit_total": int(r["credit_total"]),
                "net_debit": net if net > 0 else 0,
                "net_credit": -net if net < 0 else 0,
            }
            total_debits += line["net_debit"]
            total_credits += line["net_credit"]
            rows.append(line)
        return {
            "start_date": start_date,
            "end_date": end_date,
            "rows": rows,
            "total_debits": total_debits,
            "total_credits": total_credits,
            "difference": total_debits - total_credits,
            "is_balanced": total_debits == total_credits,
        }

    def get_income_statement(self, start_date: str, end_date: str) -> Dict[str, Any]:
        revenue: List[Dict[str, Any]] = []
        expenses: List[Dict[str, Any]] = []
        for r in self._account_activity(start_date=start_date, end_date=end_date):
            if r["account_type"] == "REVENUE":
                revenue.append({"code": r["code"], "name": r["name"],
                                "amount": int(r["credit_total"]) - int(r["debit_total"])})
            elif r["account_type"] == "EXPENSE":
                expenses.append({"code": r["code"], "name": r["name"],
                                 "amount": int(r["debit_total"]) - int(r["credit_total"])})
        total_revenue = sum(x["amount"] for x in revenue)
        total_expenses = sum(x["amount"] for x in expenses)
        return {
            "start_date": start_date,
            "end_date": end_date,
            "revenue": revenue,
            "expenses": expenses,
            "total_revenue": total_revenue,
            "total_expenses": total_expenses,
            "net_income": total_revenue - total_expenses,
        }

    def get_balance_sheet(self, as_of: str) -> Dict[str, Any]:
        """
        Balance sheet as of a date. Contra accounts (e.g. accumulated
        depreciation) reduce their section; current-period surplus is
        revenue less expenses up to the same date.
        """
        assets: List[Dict[str, Any]] = []
        liabilities: List[Dict[str, Any]] = []
        equity: List[Dict[str, Any]] = []
        net_income = 0

        for r in self._account_activity(end_date=as_of):
            debit_side = int(r["debit_total"]) - int(r["credit_total"])
            acc_type = r["account_type"]
            if acc_type == "ASSET":
                if debit_side:
                    assets.append({"code": r["code"], "name": r["name"], "amount": debit_side})
            elif acc_type == "LIABILITY":
                if debit_side:
                    liabilities.append({"code": r["code"], "name": r["name"], "amount": -debit_side})
            elif acc_type == "EQUITY":
                if debit_side:
                    equity.append({"code": r["code"], "name": r["name"], "amount": -debit_side})
            else:
                # Revenue and expense roll into the period surplus
                net_income -= debit_side

        total_assets = sum(x["amount"] for x in assets)
        total_liabilities = sum(x["amount"] for x in liabilities)
        total_equity = sum(x["amount"] for x in equity)
        total_liabilities_and_equity = total_liabilities + total_equity + net_income
        return {
            "as_of": as_of,
            "assets": assets,
            "liabilities": liabilities,
            "equity": equity,
            "total_assets": total_assets,
            "total_liabilities": total_liabilities,
            "total_equity": total_equity,
            "net_income": net_income,
            "total_liabilities_and_equity": total_liabilities_and_equity,
            "balance_check": total_assets - total_liabilities_and_equity,
            "is_balanced": total_assets == total_liabilities_and_equity,
        }

    def get_general_ledger(
        self,
        account_code: Optional[str] = None,
        start_date: Optional[str] = None,
        end_date: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Per-account postings with running balances signed by the normal side."""
        try:
            report = self._build_general_ledger(account_code, start_date, end_date)
        except LedgerError as e:
            return e.as_result()
        report["success"] = True
        return report

    def _build_general_ledger(
        self,
        account_code: Optional[str],
        start_date: Optional[str],
        end_date: Optional[str],
    ) -> Dict[str, Any]:
        if account_code:
            accounts = [self.accounts.resolve_account(account_code)]
        else:
            accounts = [
                self.accounts.resolve_account(r["code"])
                for r in self._account_activity(start_date=start_date, end_date=end_date)
            ]

        sections: List[Dict[str, Any]] = []
        for acct in accounts:
            sign = 1 if acct["normal_balance"] == "DEBIT" else -1
            opening = 0
            if start_date:
                prior = self.conn.execute(
                    """
                    SELECT COALESCE(SUM(jel.debit_amount - jel.credit_amount), 0) AS net
                    FROM journal_entry_line jel
                    JOIN journal_entry je ON je.id = jel.journal_entry_id
                    WHERE jel.gl_account_code = ? AND je.is_posted = 1 AND je.is_voided = 0
                      AND je.entry_date < ?
                    """,
                    (acct["code"], start_date),
                ).fetchone()
                opening = sign * int(prior["net"])

            params: list = [acct["code"]]
            date_filter = ""
            if start_date:
                date_filter += " AND je.entry_date >= ?"
                params.append(start_date)
            if end_date:
                date_filter += " AND je.entry_date <= ?"
                params.append(end_date)
            cur = self.conn.execute(
                f"""
                SELECT je.id AS entry_id, je.entry_ref, je.entry_date, je.entry_type, je.description,
                       jel.line_number, jel.debit_amount, jel.credit_amount
                FROM journal_entry_line jel
                JOIN journal_entry je ON je.id = jel.journal_entry_id
                WHERE jel.gl_account_code = ? AND je.is_posted = 1 AND je.is_voided = 0
                  {date_filter}
                ORDER BY je.entry_date, je.id, jel.line_number
                """,
                params,
            )
            running = opening
            postings: List[Dict[str, Any]] = []
            for r in cur.fetchall():
                running += sign * (int(r["debit_amount"]) - int(r["credit_amount"]))
                posting = dict(r)
                posting["running_balance"] = running
                postings.append(posting)
            sections.append(
                {
                    "code": acct["code"],
                    "name": acct["name"],
                    "account_type": acct["account_type"],
                    "normal_balance": acct["normal_balance"],
                    "opening_balance": opening,
                    "postings": postings,
                    "closing_balance": running,
                }
            )
        return {"start_date": start_date, "end_date": end_date, "accounts": sections}

    def get_voided_transactions(
        self,
        start_date: Optional[str] = None,
        end_date: Optional[str] = None,
    ) -> List[Dict[str, Any]]:
        params: list = []
        date_filter = ""
        if start_date:
            date_filter += " AND date(va.voided_at) >= date(?)"
            params.append(start_date)
        if end_date:
            date_filter += " AND date(va.voided_at) <= date(?)"
            params.append(end_date)
        cur = self.conn.execute(
            f"""
            SELECT va.*, je.entry_ref, je.entry_date
            FROM void_audit va
            JOIN journal_entry je ON je.id = va.journal_entry_id
            WHERE 1 = 1 {date_filter}
            ORDER BY va.voided_at DESC, va.id DESC
            """,
            params,
        )
        return [dict(r) for r in cur.fetchall()]

    def list_entries(
        self,
        *,
        start_date: Optional[str] = None,
        end_date: Optional[str] = None,
        include_voided: bool = False,
    ) -> List[sqlite3.Row]:
        params: list = []
        clauses = []
        if not include_voided:
            clauses.append("je.is_voided = 0")
        if start_date:
            clauses.append("je.entry_date >= ?")
            params.append(start_date)
        if end_date:
            clauses.append("je.entry_date <= ?")
            params.append(end_date)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        cur = self.conn.execute(
            f"""
            SELECT je.*, COALESCE(SUM(jel.debit_amount), 0) AS amount
            FROM journal_entry je
            LEFT JOIN journal_entry_line jel ON jel.journal_entry_id = je.id
            {where}
            GROUP BY je.id
            ORDER BY je.entry_date, je.id
            """,
            params,
        )
        return cur.fetchall()

    # Export
    def export_trial_balance(
        self,
        output_path: Path,
        start_date: Optional[str] = None,
        end_date: Optional[str] = None,
    ) -> Path:
        report = self.get_trial_balance(start_date, end_date)
        headers = ["code", "name", "account_type", "net_debit", "net_credit"]
        rows: Sequence = report["rows"] + [
            {"code": "", "name": "TOTAL", "account_type": "",
             "net_debit": report["total_debits"], "net_credit": report["total_credits"]}
        ]
        return self._export(rows, headers, Path(output_path), sheet_name="Trial Balance")

    def export_general_ledger(
        self,
        output_path: Path,
        account_code: Optional[str] = None,
        start_date: Optional[str] = None,
        end_date: Optional[str] = None,
    ) -> Path:
        ledger = self._build_general_ledger(account_code, start_date, end_date)
        headers = ["code", "entry_date", "entry_ref", "description", "debit_amount", "credit_amount", "running_balance"]
        rows = [
            dict(posting, code=section["code"])
            for section in ledger["accounts"]
            for posting in section["postings"]
        ]
        return self._export(rows, headers, Path(output_path), sheet_name="General Ledger")

    @staticmethod
    def _export(rows: Sequence, headers: List[str], output_path: Path, *, sheet_name: str) -> Path:
        if output_path.suffix.lower() == ".csv":
            db.export_rows_to_csv(rows, headers, output_path)
        elif output_path.suffix.lower() == ".xlsx":
            db.export_rows_to_excel(rows, headers, output_path, sheet_name=sheet_name)
        else:
            raise ValueError(f"Unsupported export format: {output_path.suffix}")
        return output_path
