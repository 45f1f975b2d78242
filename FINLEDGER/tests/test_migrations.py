import unittest
import os, sys
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

from finledger import db


class MigrationTests(unittest.TestCase):
    def setUp(self):
        self.conn = db.get_connection(":memory:")
        # A store created before migrations were tracked: schema only, amounts in major units
        db._create_schema(self.conn)
        self.conn.execute(
            """
            INSERT INTO legacy_transaction(transaction_ref, transaction_date, transaction_type, amount)
            VALUES ('OLD-1', '2023-11-30', 'FEE_PAYMENT', 1250.5)
            """
        )
        self.conn.execute(
            "INSERT INTO gl_account(code, name, account_type, normal_balance) VALUES ('5100', 'Food', 'EXPENSE', 'DEBIT')"
        )
        self.conn.execute(
            """
            INSERT INTO budget_allocation(gl_account_code, fiscal_year, department, allocated_amount, created_by)
            VALUES ('5100', 2023, NULL, 800, 'system')
            """
        )

    def tearDown(self):
        self.conn.close()

    def test_all_steps_apply_in_order(self):
        applied = db.run_migrations(self.conn)
        self.assertEqual(applied, [name for name, _ in db.MIGRATIONS])
        self.assertEqual(db.list_applied_migrations(self.conn), applied)

    def test_minor_unit_conversion_runs_once(self):
        db.run_migrations(self.conn)
        amount = self.conn.execute("SELECT amount FROM legacy_transaction WHERE transaction_ref = 'OLD-1'").fetchone()[0]
        self.assertEqual(amount, 125050)
        self.assertEqual(db.run_migrations(self.conn), [])
        db.init_db(self.conn)
        amount = self.conn.execute("SELECT amount FROM legacy_transaction WHERE transaction_ref = 'OLD-1'").fetchone()[0]
        self.assertEqual(amount, 125050)

    def test_budget_department_sentinel(self):
        db.run_migrations(self.conn)
        dept = self.conn.execute("SELECT department, allocated_amount FROM budget_allocation").fetchone()
        self.assertEqual(dept['department'], db.ALL_DEPARTMENTS)
        self.assertEqual(dept['allocated_amount'], 80000)

    def test_legacy_source_is_unique(self):
        db.run_migrations(self.conn)
        indexes = [r['name'] for r in self.conn.execute("PRAGMA index_list(journal_entry)")]
        self.assertIn('idx_journal_entry_legacy_source', indexes)

    def test_reset_clears_domain_rows(self):
        db.init_db(self.conn)
        db.seed_chart_of_accounts(self.conn)
        db.init_db(self.conn, reset=True)
        n = self.conn.execute("SELECT COUNT(*) FROM legacy_transaction").fetchone()[0]
        self.assertEqual(n, 0)
        self.assertGreater(self.conn.execute("SELECT COUNT(*) FROM gl_account").fetchone()[0], 0)


if __name__ == '__main__':
    unittest.main()
