"""
Approval Module
Rule evaluation for governed transactions and the request/response
workflow (PENDING -> APPROVED / REJECTED / CANCELLED) that gates them.
"""
from __future__ import annotations

import json
import sqlite3
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Tuple
import logging

from . import db
from . import validation
from .errors import ConstraintViolation, LedgerError, NotFoundError, ValidationError

logger = logging.getLogger(__name__)

# Higher rank is more restrictive.
ROLE_RANK: Dict[str, int] = {
    "CLERK": 1,
    "BURSAR": 2,
    "ACCOUNTANT": 3,
    "FINANCE_MANAGER": 4,
    "PRINCIPAL": 5,
    "ADMIN": 6,
}

STATUSES = ("PENDING", "APPROVED", "REJECTED", "CANCELLED")


def role_rank(role: Optional[str]) -> int:
    return ROLE_RANK.get((role or "").upper(), 0)


@dataclass
class ApprovalRule:
    id: int
    rule_name: str
    transaction_type: str
    required_role: str
    min_amount: Optional[int] = None
    max_amount: Optional[int] = None
    days_since_transaction: Optional[int] = None
    description: Optional[str] = None

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "ApprovalRule":
        return cls(
            id=int(row["id"]),
            rule_name=row["rule_name"],
            transaction_type=row["transaction_type"],
            required_role=row["required_role"],
            min_amount=row["min_amount"],
            max_amount=row["max_amount"],
            days_since_transaction=row["days_since_transaction"],
            description=row["description"],
        )

    def matches(self, amount: int, age_in_days: int = 0) -> bool:
        # Every threshold the rule sets must hold; a rule without thresholds always matches.
        if self.min_amount is not None and amount < self.min_amount:
            return False
        if self.max_amount is not None and amount > self.max_amount:
            return False
        if self.days_since_transaction is not None and age_in_days < self.days_since_transaction:
            return False
        return True


class ApprovalRuleEngine:
    """Decides whether a transaction needs approval, and from which role."""

    def __init__(self, conn: sqlite3.Connection) -> None:
        self.conn = conn

    def list_rules(self, transaction_type: Optional[str] = None, *, active_only: bool = True) -> List[ApprovalRule]:
        clauses = []
        params: list = []
        if transaction_type:
            clauses.append("transaction_type = ?")
            params.append(transaction_type)
        if active_only:
            clauses.append("is_active = 1")
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        cur = self.conn.execute(f"SELECT * FROM approval_rule {where} ORDER BY id", params)
        return [ApprovalRule.from_row(r) for r in cur.fetchall()]

    def matching_rules(self, transaction_type: str, amount: int, age_in_days: int = 0) -> List[ApprovalRule]:
        return [r for r in self.list_rules(transaction_type) if r.matches(amount, age_in_days)]

    def evaluate(self, transaction_type: str, amount: int, age_in_days: int = 0) -> Optional[ApprovalRule]:
        """
        Return the governing rule, or None when the transaction may proceed.
        When several rules match, the one naming the most restrictive role wins
        (ties go to the earliest rule).
        """
        matched = self.matching_rules(transaction_type, amount, age_in_days)
        if not matched:
            return None
        best = matched[0]
        for rule in matched[1:]:
            if role_rank(rule.required_role) > role_rank(best.required_role):
                best = rule
        if len(matched) > 1:
            logger.info(
                f"{len(matched)} approval rules matched {transaction_type}; "
                f"'{best.rule_name}' ({best.required_role}) governs"
            )
        return best

    def create_rule(
        self,
        rule_name: str,
        transaction_type: str,
        required_role: str,
        *,
        min_amount: Optional[int] = None,
        max_amount: Optional[int] = None,
        days_since_transaction: Optional[int] = None,
        description: Optional[str] = None,
        user_id: str,
    ) -> int:
        validation.require_actor(user_id)
        if not rule_name or not transaction_type or not required_role:
            raise ValidationError("Rule name, transaction type and required role are required")
        if min_amount is not None and max_amount is not None and min_amount > max_amount:
            raise ValidationError("Rule minimum amount exceeds its maximum amount")
        try:
            with db.atomic(self.conn):
                cur = self.conn.execute(
                    """
                    INSERT INTO approval_rule(
                        rule_name, description, transaction_type, min_amount, max_amount,
                        days_since_transaction, required_role
                    )
                    VALUES (?, ?, ?, ?, ?, ?, ?)
                    """,
                    (rule_name, description, transaction_type, min_amount, max_amount,
                     days_since_transaction, required_role.upper()),
                )
                rule_id = int(cur.lastrowid)
                db.log_audit(
                    action="approval_rule_created",
                    details=db.audit_details(
                        rule_name=rule_name,
                        transaction_type=transaction_type,
                        required_role=required_role.upper(),
                        min_amount=min_amount,
                        max_amount=max_amount,
                        days_since_transaction=days_since_transaction,
                    ),
                    user=user_id,
                    entity_type="APPROVAL_RULE",
                    entity_id=rule_id,
                    conn=self.conn,
                )
        except sqlite3.IntegrityError as e:
            raise ConstraintViolation(f"Approval rule already exists: {rule_name}") from e
        logger.info(f"Approval rule '{rule_name}' created by {user_id}")
        return rule_id

    def set_rule_active(self, rule_id: int, is_active: bool, *, user_id: str) -> None:
        validation.require_actor(user_id)
        with db.atomic(self.conn):
            cur = self.conn.execute(
                "UPDATE approval_rule SET is_active = ? WHERE id = ?", (1 if is_active else 0, rule_id)
            )
            if cur.rowcount == 0:
                raise NotFoundError(f"Approval rule {rule_id} not found")
            db.log_audit(
                action="approval_rule_activated" if is_active else "approval_rule_deactivated",
                details=db.audit_details(rule_id=rule_id),
                user=user_id,
                entity_type="APPROVAL_RULE",
                entity_id=rule_id,
                conn=self.conn,
            )


# on_approve(request, reviewer) / on_reject(request, reviewer, notes) / on_cancel(request, requester, notes)
ApproveHandler = Callable[[sqlite3.Row, str], None]
RejectHandler = Callable[[sqlite3.Row, str, str], None]
CancelHandler = Callable[[sqlite3.Row, str, Optional[str]], None]


class ApprovalWorkflow:
    """
    Stateful approval requests. The side effect of a decision runs through the
    handler registered for the request's (entity_type, action) inside the same
    savepoint as the status change, so a request that is still PENDING never has
    its mutation partially applied.
    """

    def __init__(self, conn: sqlite3.Connection) -> None:
        self.conn = conn
        self._handlers: Dict[Tuple[str, str], Tuple[ApproveHandler, Optional[RejectHandler], Optional[CancelHandler]]] = {}

    def register_handler(
        self,
        entity_type: str,
        action: str,
        *,
        on_approve: ApproveHandler,
        on_reject: Optional[RejectHandler] = None,
        on_cancel: Optional[CancelHandler] = None,
    ) -> None:
        self._handlers[(entity_type, action)] = (on_approve, on_reject, on_cancel)

    # Requests
    def create_request(
        self,
        entity_type: str,
        entity_id: int,
        action: str,
        requested_by: str,
        *,
        rule: Optional[ApprovalRule] = None,
        notes: Optional[str] = None,
        payload: Optional[Dict[str, Any]] = None,
    ) -> int:
        ok, msg = validation.validate_actor(requested_by)
        if not ok:
            raise ValidationError(msg)
        existing = self.conn.execute(
            """
            SELECT id FROM approval_request
            WHERE entity_type = ? AND entity_id = ? AND action = ? AND status = 'PENDING'
            """,
            (entity_type, entity_id, action),
        ).fetchone()
        if existing:
            raise ConstraintViolation(
                f"A pending approval request already exists for {entity_type} {entity_id} ({action})"
            )
        now = db.now_iso()
        with db.atomic(self.conn):
            cur = self.conn.execute(
                """
                INSERT INTO approval_request(
                    entity_type, entity_id, action, rule_id, required_role, status,
                    requested_by, requested_at, request_notes, payload
                )
                VALUES (?, ?, ?, ?, ?, 'PENDING', ?, ?, ?, ?)
                """,
                (
                    entity_type,
                    entity_id,
                    action,
                    rule.id if rule else None,
                    rule.required_role if rule else None,
                    str(requested_by),
                    now,
                    notes,
                    json.dumps(payload) if payload is not None else None,
                ),
            )
            request_id = int(cur.lastrowid)
            self._record_history(request_id, "REQUESTED", requested_by, None, "PENDING", notes)
            db.log_audit(
                action="approval_requested",
                details=db.audit_details(
                    entity_type=entity_type,
                    entity_id=entity_id,
                    request_action=action,
                    rule=rule.rule_name if rule else None,
                ),
                user=requested_by,
                entity_type="APPROVAL_REQUEST",
                entity_id=request_id,
                conn=self.conn,
            )
        logger.info(f"Approval request {request_id} opened for {entity_type} {entity_id} ({action})")
        return request_id

    def approve_transaction(
        self,
        request_id: int,
        reviewer_id: str,
        notes: Optional[str] = None,
        *,
        reviewer_role: Optional[str] = None,
    ) -> Dict[str, Any]:
        try:
            with db.atomic(self.conn):
                request = self._load_pending(request_id, reviewer_id, reviewer_role)
                handler = self._handlers.get((request["entity_type"], request["action"]))
                if handler is None:
                    raise ValidationError(
                        f"No approval handler registered for {request['entity_type']} ({request['action']})"
                    )
                self._transition(request, "APPROVED", reviewer_id, notes)
                handler[0](request, str(reviewer_id))
            logger.info(f"Approval request {request_id} approved by {reviewer_id}")
            return {"success": True, "request_id": request_id, "status": "APPROVED", "message": "Request approved"}
        except LedgerError as e:
            logger.warning(f"Approval of request {request_id} refused: {e.message}")
            return e.as_result()

    def reject_transaction(
        self,
        request_id: int,
        reviewer_id: str,
        notes: str,
        *,
        reviewer_role: Optional[str] = None,
    ) -> Dict[str, Any]:
        try:
            if not notes or not str(notes).strip():
                raise ValidationError("Review notes are required for rejection")
            with db.atomic(self.conn):
                request = self._load_pending(request_id, reviewer_id, reviewer_role)
                self._transition(request, "REJECTED", reviewer_id, notes)
                handler = self._handlers.get((request["entity_type"], request["action"]))
                if handler and handler[1]:
                    handler[1](request, str(reviewer_id), notes)
            logger.info(f"Approval request {request_id} rejected by {reviewer_id}")
            return {"success": True, "request_id": request_id, "status": "REJECTED", "message": "Request rejected"}
        except LedgerError as e:
            return e.as_result()

    def cancel_request(self, request_id: int, user_id: str, notes: Optional[str] = None) -> Dict[str, Any]:
        try:
            with db.atomic(self.conn):
                request = self._load_pending(request_id, user_id, None)
                if str(request["requested_by"]) != str(user_id):
                    raise ValidationError("Only the requester can cancel this request")
                self._transition(request, "CANCELLED", user_id, notes)
                handler = self._handlers.get((request["entity_type"], request["action"]))
                if handler and handler[2]:
                    handler[2](request, str(user_id), notes)
            logger.info(f"Approval request {request_id} cancelled by {user_id}")
            return {"success": True, "request_id": request_id, "status": "CANCELLED", "message": "Request cancelled"}
        except LedgerError as e:
            return e.as_result()

    # Queries
    def get_request(self, request_id: int) -> sqlite3.Row:
        row = self.conn.execute("SELECT * FROM approval_request WHERE id = ?", (request_id,)).fetchone()
        if row is None:
            raise NotFoundError(f"Approval request {request_id} not found")
        return row

    def get_approval_queue(
        self,
        status: Optional[str] = "PENDING",
        *,
        entity_type: Optional[str] = None,
    ) -> List[Dict[str, Any]]:
        clauses = []
        params: list = []
        if status:
            clauses.append("ar.status = ?")
            params.append(status)
        if entity_type:
            clauses.append("ar.entity_type = ?")
            params.append(entity_type)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        cur = self.conn.execute(
            f"""
            SELECT ar.*, r.rule_name,
                   je.entry_ref, je.entry_type, je.description AS entry_description,
                   (SELECT COALESCE(SUM(jel.debit_amount), 0)
                      FROM journal_entry_line jel
                     WHERE ar.entity_type = 'JOURNAL_ENTRY' AND jel.journal_entry_id = ar.entity_id) AS amount
            FROM approval_request ar
            LEFT JOIN approval_rule r ON r.id = ar.rule_id
            LEFT JOIN journal_entry je ON ar.entity_type = 'JOURNAL_ENTRY' AND je.id = ar.entity_id
            {where}
            ORDER BY ar.requested_at DESC, ar.id DESC
            """,
            params,
        )
        return [dict(r) for r in cur.fetchall()]

    def get_approval_counts(self) -> Dict[str, int]:
        row = self.conn.execute(
            """
            SELECT COUNT(*) AS total,
                   COALESCE(SUM(CASE WHEN status = 'PENDING' THEN 1 ELSE 0 END), 0) AS pending,
                   COALESCE(SUM(CASE WHEN status = 'APPROVED' THEN 1 ELSE 0 END), 0) AS approved,
                   COALESCE(SUM(CASE WHEN status = 'REJECTED' THEN 1 ELSE 0 END), 0) AS rejected,
                   COALESCE(SUM(CASE WHEN status = 'CANCELLED' THEN 1 ELSE 0 END), 0) AS cancelled
            FROM approval_request
            """
        ).fetchone()
        return {k: int(row[k]) for k in ("total", "pending", "approved", "rejected", "cancelled")}

    def get_history(self, request_id: int) -> List[sqlite3.Row]:
        cur = self.conn.execute(
            "SELECT * FROM approval_history WHERE approval_request_id = ? ORDER BY id",
            (request_id,),
        )
        return cur.fetchall()

    def pending_request_for(self, entity_type: str, entity_id: int, action: str) -> Optional[sqlite3.Row]:
        return self.conn.execute(
            """
            SELECT * FROM approval_request
            WHERE entity_type = ? AND entity_id = ? AND action = ? AND status = 'PENDING'
            """,
            (entity_type, entity_id, action),
        ).fetchone()

    # Internals
    def _load_pending(self, request_id: int, actor: str, actor_role: Optional[str]) -> sqlite3.Row:
        ok, msg = validation.validate_actor(actor)
        if not ok:
            raise ValidationError(msg)
        request = self.get_request(request_id)
        if request["status"] != "PENDING":
            raise ValidationError("This request has already been processed")
        if actor_role is not None and role_rank(actor_role) < role_rank(request["required_role"]):
            raise ValidationError(
                f"Role {actor_role} cannot decide a request requiring {request['required_role']}"
            )
        return request

    def _transition(self, request: sqlite3.Row, new_status: str, actor: str, notes: Optional[str]) -> None:
        cur = self.conn.execute(
            """
            UPDATE approval_request
            SET status = ?, reviewed_by = ?, reviewed_at = ?, review_notes = ?
            WHERE id = ? AND status = 'PENDING'
            """,
            (new_status, str(actor), db.now_iso(), notes, request["id"]),
        )
        if cur.rowcount != 1:
            raise ValidationError("This request has already been processed")
        self._record_history(request["id"], new_status, actor, "PENDING", new_status, notes)
        db.log_audit(
            action=f"approval_{new_status.lower()}",
            details=db.audit_details(
                entity_type=request["entity_type"],
                entity_id=request["entity_id"],
                request_action=request["action"],
                notes=notes,
            ),
            user=actor,
            entity_type="APPROVAL_REQUEST",
            entity_id=request["id"],
            conn=self.conn,
        )

    def _record_history(
        self,
        request_id: int,
        action: str,
        actor: str,
        previous_status: Optional[str],
        new_status: str,
        notes: Optional[str],
    ) -> None:
        self.conn.execute(
            """
            INSERT INTO approval_history(
                approval_request_id, action, action_by, previous_status, new_status, notes, created_at
            )
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (request_id, action, str(actor), previous_status, new_status, notes, db.now_iso()),
        )
