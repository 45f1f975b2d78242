"""
Chart of Accounts Module
Resolves GL accounts by code and maintains the account list.
Account codes are the only key other components use to refer to accounts.
"""
from __future__ import annotations

import sqlite3
from typing import Any, Dict, List, Optional
import logging

from . import db
from . import validation
from .errors import ConstraintViolation, LedgerError, NotFoundError, ValidationError

logger = logging.getLogger(__name__)

DEFAULT_NORMAL_BALANCE = {
    "ASSET": "DEBIT",
    "EXPENSE": "DEBIT",
    "LIABILITY": "CREDIT",
    "EQUITY": "CREDIT",
    "REVENUE": "CREDIT",
}


class ChartOfAccounts:
    def __init__(self, conn: sqlite3.Connection) -> None:
        self.conn = conn

    # Lookups
    def resolve_account(self, code: str) -> sqlite3.Row:
        row = self.get_account(code)
        if row is None:
            raise NotFoundError(f"GL account not found: {code}")
        return row

    def get_account(self, code: str) -> Optional[sqlite3.Row]:
        cur = self.conn.execute("SELECT * FROM gl_account WHERE code = ?", (str(code).strip(),))
        return cur.fetchone()

    def is_active(self, code: str) -> bool:
        row = self.get_account(code)
        return bool(row and row["is_active"])

    def list_accounts(self, account_type: Optional[str] = None, *, active_only: bool = False) -> List[sqlite3.Row]:
        clauses = []
        params: list = []
        if account_type:
            clauses.append("account_type = ?")
            params.append(account_type.upper())
        if active_only:
            clauses.append("is_active = 1")
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        cur = self.conn.execute(f"SELECT * FROM gl_account {where} ORDER BY code", params)
        return cur.fetchall()

    def get_account_balance(self, code: str, as_of: Optional[str] = None) -> int:
        """Balance signed by the account's normal side, posted and non-voided entries only."""
        account = self.resolve_account(code)
        params: list = [account["code"]]
        date_clause = ""
        if as_of:
            date_clause = "AND je.entry_date <= ?"
            params.append(as_of)
        row = self.conn.execute(
            f"""
            SELECT COALESCE(SUM(jel.debit_amount), 0) AS debits,
                   COALESCE(SUM(jel.credit_amount), 0) AS credits
            FROM journal_entry_line jel
            JOIN journal_entry je ON je.id = jel.journal_entry_id
            WHERE jel.gl_account_code = ?
              AND je.is_posted = 1 AND je.is_voided = 0
              {date_clause}
            """,
            params,
        ).fetchone()
        if account["normal_balance"] == "DEBIT":
            return int(row["debits"]) - int(row["credits"])
        return int(row["credits"]) - int(row["debits"])

    # Maintenance
    def create_gl_account(
        self,
        code: str,
        name: str,
        account_type: str,
        *,
        user_id: str,
        normal_balance: Optional[str] = None,
        parent_code: Optional[str] = None,
        description: Optional[str] = None,
    ) -> Dict[str, Any]:
        try:
            validation.require_actor(user_id)
            code = validation.sanitize_string(code)
            name = validation.sanitize_string(name, max_length=100)
            account_type = (account_type or "").upper()
            if not validation.validate_account_code(code):
                raise ValidationError(f"Invalid account code format: {code!r}")
            if not validation.validate_account_name(name):
                raise ValidationError("Account name must be 2-100 printable characters")
            if account_type not in db.ACCOUNT_TYPES:
                raise ValidationError(f"Invalid account type: {account_type}")
            normal_balance = (normal_balance or DEFAULT_NORMAL_BALANCE[account_type]).upper()
            if normal_balance not in ("DEBIT", "CREDIT"):
                raise ValidationError(f"Invalid normal balance: {normal_balance}")
            if parent_code:
                self.resolve_account(parent_code)
            if self.get_account(code) is not None:
                raise ConstraintViolation(f"GL account code already exists: {code}")

            with db.atomic(self.conn):
                cur = self.conn.execute(
                    """
                    INSERT INTO gl_account(code, name, account_type, normal_balance, parent_code, description)
                    VALUES (?, ?, ?, ?, ?, ?)
                    """,
                    (code, name, account_type, normal_balance, parent_code, description),
                )
                db.log_audit(
                    action="gl_account_created",
                    details=db.audit_details(code=code, name=name, account_type=account_type),
                    user=user_id,
                    entity_type="GL_ACCOUNT",
                    entity_id=cur.lastrowid,
                    conn=self.conn,
                )
            logger.info(f"GL account {code} created by {user_id}")
            return {"success": True, "id": int(cur.lastrowid), "code": code, "message": "GL account created"}
        except LedgerError as e:
            return e.as_result()

    def update_gl_account(
        self,
        code: str,
        *,
        user_id: str,
        name: Optional[str] = None,
        description: Optional[str] = None,
        parent_code: Optional[str] = None,
        is_active: Optional[bool] = None,
    ) -> Dict[str, Any]:
        """Update the given fields one by one. Codes, types and normal balances never change."""
        try:
            validation.require_actor(user_id)
            account = self.resolve_account(code)
            changes: Dict[str, Any] = {}
            with db.atomic(self.conn):
                if name is not None:
                    name = validation.sanitize_string(name, max_length=100)
                    if not validation.validate_account_name(name):
                        raise ValidationError("Account name must be 2-100 printable characters")
                    self.conn.execute("UPDATE gl_account SET name = ? WHERE code = ?", (name, account["code"]))
                    changes["name"] = name
                if description is not None:
                    self.conn.execute(
                        "UPDATE gl_account SET description = ? WHERE code = ?",
                        (validation.sanitize_string(description, max_length=500), account["code"]),
                    )
                    changes["description"] = description
                if parent_code is not None:
                    if parent_code == account["code"]:
                        raise ValidationError("An account cannot be its own parent")
                    self.resolve_account(parent_code)
                    self.conn.execute(
                        "UPDATE gl_account SET parent_code = ? WHERE code = ?", (parent_code, account["code"])
                    )
                    changes["parent_code"] = parent_code
                if is_active is not None:
                    if not is_active and account["is_active"]:
                        self._check_can_deactivate(account)
                    self.conn.execute(
                        "UPDATE gl_account SET is_active = ? WHERE code = ?",
                        (1 if is_active else 0, account["code"]),
                    )
                    changes["is_active"] = bool(is_active)
                if not changes:
                    raise ValidationError("No fields to update")
                self.conn.execute(
                    "UPDATE gl_account SET updated_at = ? WHERE code = ?", (db.now_iso(), account["code"])
                )
                db.log_audit(
                    action="gl_account_updated",
                    details=db.audit_details(code=account["code"], changes=changes),
                    user=user_id,
                    entity_type="GL_ACCOUNT",
                    entity_id=account["id"],
                    conn=self.conn,
                )
            return {"success": True, "code": account["code"], "changes": changes, "message": "GL account updated"}
        except LedgerError as e:
            return e.as_result()

    def delete_gl_account(self, code: str, *, user_id: str) -> Dict[str, Any]:
        """Soft delete: the account is deactivated and keeps its history."""
        try:
            validation.require_actor(user_id)
            account = self.resolve_account(code)
            if not account["is_active"]:
                return {"success": True, "code": account["code"], "message": "GL account already inactive"}
            self._check_can_deactivate(account)
            with db.atomic(self.conn):
                self.conn.execute(
                    "UPDATE gl_account SET is_active = 0, updated_at = ? WHERE code = ?",
                    (db.now_iso(), account["code"]),
                )
                db.log_audit(
                    action="gl_account_deactivated",
                    details=db.audit_details(code=account["code"]),
                    user=user_id,
                    entity_type="GL_ACCOUNT",
                    entity_id=account["id"],
                    conn=self.conn,
                )
            logger.info(f"GL account {account['code']} deactivated by {user_id}")
            return {"success": True, "code": account["code"], "message": "GL account deactivated"}
        except LedgerError as e:
            return e.as_result()

    def _check_can_deactivate(self, account: sqlite3.Row) -> None:
        if account["is_system"] and self.get_account_balance(account["code"]) != 0:
            raise ValidationError(
                f"System account {account['code']} carries a balance and cannot be deactivated"
            )
