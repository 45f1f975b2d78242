"""
Ledger
One object per store connection holding every engine, so approval handlers
registered by the journal and the budget allocator share a single workflow.
"""
from __future__ import annotations

import sqlite3
from typing import Optional

from . import db
from .accounting import JournalEngine
from .accounts import ChartOfAccounts
from .approvals import ApprovalRuleEngine, ApprovalWorkflow
from .backfill import LegacyBackfill
from .budget import BudgetAllocator
from .opening_balances import OpeningBalanceImporter
from .reconciliation import ReconciliationEngine


class Ledger:
    def __init__(self, conn: Optional[sqlite3.Connection] = None) -> None:
        self.conn = conn or db.get_connection()
        self.accounts = ChartOfAccounts(self.conn)
        self.rules = ApprovalRuleEngine(self.conn)
        self.workflow = ApprovalWorkflow(self.conn)
        self.journal = JournalEngine(self.conn, accounts=self.accounts, rules=self.rules, workflow=self.workflow)
        self.opening_balances = OpeningBalanceImporter(self.conn, self.journal)
        self.reconciliation = ReconciliationEngine(self.conn, self.journal)
        self.budget = BudgetAllocator(self.conn, accounts=self.accounts, rules=self.rules, workflow=self.workflow)
        self.backfill = LegacyBackfill(self.conn, self.journal)

    @classmethod
    def open(cls, path=None, *, seed: bool = True) -> "Ledger":
        """Connect, create or migrate the schema, and seed reference data."""
        conn = db.get_connection(path)
        db.init_db(conn)
        if seed:
            db.seed_chart_of_accounts(conn)
            db.seed_approval_rules(conn)
        return cls(conn)

    def close(self) -> None:
        self.conn.close()

    def __enter__(self) -> "Ledger":
        return self

    def __exit__(self, *exc) -> None:
        self.close()
