"""
Budget Module
Allocated vs. actual spend per (GL account, fiscal year, department).
Actual spend is derived from posted, non-voided journal lines; nothing is
cached on the allocation row.
"""
from __future__ import annotations

import json
import sqlite3
from typing import Any, Dict, List, Optional
import logging

from . import db
from . import validation
from .accounts import ChartOfAccounts
from .approvals import ApprovalRuleEngine, ApprovalWorkflow
from .errors import ApprovalRequiredError, ConstraintViolation, ExceedsBudget, LedgerError, NotFoundError, ValidationError

logger = logging.getLogger(__name__)

ENTITY_BUDGET_ALLOCATION = "BUDGET_ALLOCATION"
ACTION_SET = "SET"
WARNING_THRESHOLD = 80
CRITICAL_THRESHOLD = 90


def normalize_department(department: Optional[str]) -> str:
    department = validation.sanitize_string(department, max_length=50)
    return department.upper() if department else db.ALL_DEPARTMENTS


class BudgetAllocator:
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
        self.workflow.register_handler(ENTITY_BUDGET_ALLOCATION, ACTION_SET, on_approve=self._apply_approved_allocation)

    # Allocations
    def set_budget_allocation(
        self,
        gl_account_code: str,
        fiscal_year: int,
        allocated_amount: int,
        user_id: str,
        *,
        department: Optional[str] = None,
        notes: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Create or replace the allocation for the key. When a BUDGET_ALLOCATION
        rule matches the amount the change waits for approval; a new key is
        held as an inactive row until then.
        """
        try:
            validation.require_actor(user_id)
            account = self.accounts.resolve_account(gl_account_code)
            if not account["is_active"]:
                raise ValidationError(f"GL account {account['code']} is inactive")
            if not isinstance(fiscal_year, int) or not 2000 <= fiscal_year <= 2100:
                raise ValidationError(f"Invalid fiscal year: {fiscal_year}")
            if not isinstance(allocated_amount, int) or isinstance(allocated_amount, bool) or allocated_amount < 0:
                raise ValidationError("Allocated amount must be a non-negative whole number of minor units")
            dept = normalize_department(department)
            notes = validation.sanitize_string(notes, max_length=validation.MAX_DESCRIPTION_LENGTH) or None

            existing = self._find_allocation(account["code"], fiscal_year, dept)
            rule = self.rules.evaluate(ENTITY_BUDGET_ALLOCATION, allocated_amount)
            request_id: Optional[int] = None
            with db.atomic(self.conn):
                if rule is not None:
                    if existing is None:
                        cur = self.conn.execute(
                            """
                            INSERT INTO budget_allocation(gl_account_code, fiscal_year, department, allocated_amount,
                                                          notes, is_active, created_by)
                            VALUES (?, ?, ?, 0, ?, 0, ?)
                            """,
                            (account["code"], fiscal_year, dept, notes, str(user_id)),
                        )
                        allocation_id = int(cur.lastrowid)
                    else:
                        allocation_id = existing["id"]
                    request_id = self.workflow.create_request(
                        ENTITY_BUDGET_ALLOCATION,
                        allocation_id,
                        ACTION_SET,
                        user_id,
                        rule=rule,
                        notes=f"Budget allocation requires approval: {rule.rule_name}",
                        payload={"allocated_amount": allocated_amount, "notes": notes},
                    )
                else:
                    allocation_id = self._write_allocation(
                        account["code"], fiscal_year, dept, allocated_amount, notes, user_id, existing
                    )
            if request_id is not None:
                logger.info(f"Budget allocation {allocation_id} deferred to approval request {request_id}")
                result = ApprovalRequiredError(
                    "Budget allocation submitted for approval", request_id, rule.required_role
                ).as_result()
                result["id"] = allocation_id
                return result
            logger.info(
                f"Budget for {account['code']} FY{fiscal_year} ({dept}) set to "
                f"{validation.format_amount(allocated_amount)} by {user_id}"
            )
            return {
                "success": True,
                "id": allocation_id,
                "department": dept,
                "requires_approval": False,
                "message": "Budget allocation saved",
            }
        except LedgerError as e:
            return e.as_result()

    def _write_allocation(
        self,
        code: str,
        fiscal_year: int,
        dept: str,
        allocated_amount: int,
        notes: Optional[str],
        user_id: str,
        existing: Optional[sqlite3.Row],
    ) -> int:
        if existing is None:
            try:
                cur = self.conn.execute(
                    """
                    INSERT INTO budget_allocation(gl_account_code, fiscal_year, department, allocated_amount,
                                                  notes, is_active, created_by)
                    VALUES (?, ?, ?, ?, ?, 1, ?)
                    """,
                    (code, fiscal_year, dept, allocated_amount, notes, str(user_id)),
                )
            except sqlite3.IntegrityError as e:
                raise ConstraintViolation(f"Budget allocation already exists for {code} FY{fiscal_year} {dept}") from e
            allocation_id = int(cur.lastrowid)
            previous = None
        else:
            allocation_id = existing["id"]
            previous = existing["allocated_amount"]
            self.conn.execute(
                """
                UPDATE budget_allocation
                SET allocated_amount = ?, notes = COALESCE(?, notes), is_active = 1, updated_at = ?
                WHERE id = ?
                """,
                (allocated_amount, notes, db.now_iso(), allocation_id),
            )
        db.log_audit(
            action="budget_allocation_set",
            details=db.audit_details(
                gl_account_code=code,
                fiscal_year=fiscal_year,
                department=dept,
                previous_amount=previous,
                allocated_amount=allocated_amount,
            ),
            user=user_id,
            entity_type=ENTITY_BUDGET_ALLOCATION,
            entity_id=allocation_id,
            conn=self.conn,
        )
        return allocation_id

    def _apply_approved_allocation(self, request: sqlite3.Row, reviewer: str) -> None:
        row = self.conn.execute(
            "SELECT * FROM budget_allocation WHERE id = ?", (request["entity_id"],)
        ).fetchone()
        if row is None:
            raise NotFoundError(f"Budget allocation {request['entity_id']} not found")
        payload = json.loads(request["payload"] or "{}")
        self._write_allocation(
            row["gl_account_code"],
            row["fiscal_year"],
            row["department"],
            int(payload["allocated_amount"]),
            payload.get("notes"),
            request["requested_by"],
            row,
        )

    def deactivate_allocation(self, allocation_id: int, user_id: str) -> Dict[str, Any]:
        try:
            validation.require_actor(user_id)
            row = self.conn.execute("SELECT * FROM budget_allocation WHERE id = ?", (allocation_id,)).fetchone()
            if row is None:
                raise NotFoundError(f"Budget allocation {allocation_id} not found")
            with db.atomic(self.conn):
                self.conn.execute(
                    "UPDATE budget_allocation SET is_active = 0, updated_at = ? WHERE id = ?",
                    (db.now_iso(), allocation_id),
                )
                db.log_audit(
                    action="budget_allocation_deactivated",
                    details=db.audit_details(gl_account_code=row["gl_account_code"], fiscal_year=row["fiscal_year"]),
                    user=user_id,
                    entity_type=ENTITY_BUDGET_ALLOCATION,
                    entity_id=allocation_id,
                    conn=self.conn,
                )
            return {"success": True, "id": allocation_id, "message": "Budget allocation deactivated"}
        except LedgerError as e:
            return e.as_result()

    # Validation
    def validate_transaction(
        self,
        gl_account_code: str,
        amount: int,
        fiscal_year: int,
        department: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Advisory check of amount + spend so far against the allocation."""
        try:
            status = self.check_transaction(gl_account_code, amount, fiscal_year, department)
        except ExceedsBudget as e:
            logger.warning(e.message)
            result = e.as_result()
            result["allowed"] = False
            result["warnings"] = []
            return result
        except LedgerError as e:
            result = e.as_result()
            result["allowed"] = False
            return result
        return status

    def check_transaction(
        self,
        gl_account_code: str,
        amount: int,
        fiscal_year: int,
        department: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Like validate_transaction but raises ExceedsBudget for callers that block."""
        if not isinstance(amount, int) or isinstance(amount, bool) or amount < 0:
            raise ValidationError("Amount must be a non-negative whole number of minor units")
        account = self.accounts.resolve_account(gl_account_code)
        dept = normalize_department(department)
        allocation = self._find_allocation(account["code"], fiscal_year, dept, active_only=True)
        if allocation is None:
            return {
                "success": True,
                "allowed": True,
                "has_budget": False,
                "warnings": [],
                "budget_status": None,
                "message": f"No budget allocated for {account['code']} in FY{fiscal_year}",
            }

        allocated = allocation["allocated_amount"]
        spent = self.get_actual_spend(account["code"], fiscal_year, dept)
        after = spent + amount
        status = {
            "allocated": allocated,
            "spent": spent,
            "remaining": allocated - spent,
            "utilization": _utilization(spent, allocated),
            "after_transaction": after,
            "utilization_after": _utilization(after, allocated),
            "department": dept,
        }
        if after > allocated:
            raise ExceedsBudget(
                f"Transaction exceeds budget for {account['code']}: "
                f"{validation.format_amount(after)} against {validation.format_amount(allocated)} allocated",
                status,
            )
        warnings: List[str] = []
        if status["utilization_after"] >= CRITICAL_THRESHOLD:
            warnings.append(f"Budget utilization will reach {status['utilization_after']:.1f}% (critical)")
        elif status["utilization_after"] >= WARNING_THRESHOLD:
            warnings.append(f"Budget utilization will reach {status['utilization_after']:.1f}%")
        for w in warnings:
            logger.warning(f"{account['code']} FY{fiscal_year}: {w}")
        return {
            "success": True,
            "allowed": True,
            "has_budget": True,
            "warnings": warnings,
            "budget_status": status,
            "message": "Within budget",
        }

    # Reporting
    def get_actual_spend(self, gl_account_code: str, fiscal_year: int, department: Optional[str] = None) -> int:
        dept = normalize_department(department)
        params: list = [gl_account_code, str(fiscal_year)]
        dept_clause = ""
        if dept != db.ALL_DEPARTMENTS:
            dept_clause = "AND UPPER(je.department) = ?"
            params.append(dept)
        row = self.conn.execute(
            f"""
            SELECT COALESCE(SUM(jel.debit_amount), 0) - COALESCE(SUM(jel.credit_amount), 0) AS spent
            FROM journal_entry_line jel
            JOIN journal_entry je ON je.id = jel.journal_entry_id
            WHERE jel.gl_account_code = ?
              AND strftime('%Y', je.entry_date) = ?
              AND je.is_posted = 1 AND je.is_voided = 0
              {dept_clause}
            """,
            params,
        ).fetchone()
        return int(row["spent"])

    def get_budget_allocations(self, fiscal_year: int, department: Optional[str] = None) -> List[Dict[str, Any]]:
        params: list = [fiscal_year]
        dept_clause = ""
        if department:
            dept_clause = "AND ba.department = ?"
            params.append(normalize_department(department))
        cur = self.conn.execute(
            f"""
            SELECT ba.*, ga.name AS account_name, ga.account_type
            FROM budget_allocation ba
            JOIN gl_account ga ON ga.code = ba.gl_account_code
            WHERE ba.fiscal_year = ? AND ba.is_active = 1 {dept_clause}
            ORDER BY ba.gl_account_code, ba.department
            """,
            params,
        )
        allocations = []
        for r in cur.fetchall():
            item = dict(r)
            spent = self.get_actual_spend(r["gl_account_code"], fiscal_year, r["department"])
            item["spent"] = spent
            item["remaining"] = r["allocated_amount"] - spent
            item["utilization"] = _utilization(spent, r["allocated_amount"])
            allocations.append(item)
        return allocations

    def get_budget_variance_report(self, fiscal_year: int, department: Optional[str] = None) -> Dict[str, Any]:
        rows = []
        for item in self.get_budget_allocations(fiscal_year, department):
            variance = item["allocated_amount"] - item["spent"]
            if variance < 0:
                status = "OVER_BUDGET"
            elif variance == 0:
                status = "ON_BUDGET"
            else:
                status = "UNDER_BUDGET"
            rows.append({**item, "variance": variance, "status": status})
        total_allocated = sum(r["allocated_amount"] for r in rows)
        total_spent = sum(r["spent"] for r in rows)
        return {
            "fiscal_year": fiscal_year,
            "department": normalize_department(department) if department else None,
            "rows": rows,
            "total_allocated": total_allocated,
            "total_spent": total_spent,
            "total_variance": total_allocated - total_spent,
            "utilization": _utilization(total_spent, total_allocated),
        }

    def get_budget_alerts(self, fiscal_year: int, threshold: float = WARNING_THRESHOLD) -> List[Dict[str, Any]]:
        alerts = []
        for item in self.get_budget_allocations(fiscal_year):
            if item["utilization"] < threshold:
                continue
            if item["utilization"] >= 100:
                severity = "EXCEEDED"
            elif item["utilization"] >= CRITICAL_THRESHOLD:
                severity = "CRITICAL"
            else:
                severity = "WARNING"
            alerts.append({**item, "severity": severity})
        alerts.sort(key=lambda a: a["utilization"], reverse=True)
        return alerts

    def _find_allocation(
        self, code: str, fiscal_year: int, dept: str, *, active_only: bool = False
    ) -> Optional[sqlite3.Row]:
        active = "AND is_active = 1" if active_only else ""
        return self.conn.execute(
            f"""
            SELECT * FROM budget_allocation
            WHERE gl_account_code = ? AND fiscal_year = ? AND department = ? {active}
            """,
            (code, fiscal_year, dept),
        ).fetchone()


def _utilization(spent: int, allocated: int) -> float:
    if allocated <= 0:
        return 100.0 if spent > 0 else 0.0
    return round(spent * 100.0 / allocated, 2)
