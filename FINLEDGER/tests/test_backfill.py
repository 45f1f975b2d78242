import unittest
import os, sys
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

from finledger import db
from finledger.backfill import LegacyCategory, map_legacy_transaction, parse_category
from finledger.errors import ValidationError
from finledger.ledger import Ledger

LEGACY_ROWS = [
    # ref, date, type, category, amount, method
    ('TXN-0001', '2024-02-01', 'FEE_PAYMENT', None, 2500000, 'MPESA'),
    ('TXN-0002', '2024-02-02', 'FEE_PAYMENT', None, 300000, 'CASH'),
    ('TXN-0003', '2024-02-03', 'EXPENSE', 'FOOD', 450000, 'BANK_TRANSFER'),
    ('TXN-0004', '2024-02-05', 'SALARY_PAYMENT', 'SALARY_NON_TEACHING', 2000000, 'BANK_TRANSFER'),
    ('TXN-0005', '2024-02-06', 'DONATION', None, 1000000, 'CHEQUE'),
    ('TXN-0006', '2024-02-07', 'GRANT', None, 30000000, 'BANK_TRANSFER'),
    ('TXN-0007', '2024-02-08', 'REFUND', None, 50000, 'CASH'),
    ('TXN-0008', '2024-02-09', 'INCOME', 'OTHER_INCOME', 80000, 'CASH'),
]


class LegacyBackfillTests(unittest.TestCase):
    def setUp(self):
        self.ledger = Ledger.open(":memory:")
        self.conn = self.ledger.conn
        self.backfill = self.ledger.backfill
        for row in LEGACY_ROWS:
            self._insert(*row)

    def tearDown(self):
        self.ledger.close()

    def _insert(self, ref, txn_date, txn_type, category, amount, method, is_voided=0):
        self.conn.execute(
            """
            INSERT INTO legacy_transaction(transaction_ref, transaction_date, transaction_type, category,
                                           amount, payment_method, is_voided)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (ref, txn_date, txn_type, category, amount, method, is_voided),
        )

    def _entry_count(self):
        return self.conn.execute("SELECT COUNT(*) AS n FROM journal_entry").fetchone()['n']

    def test_backfill_is_idempotent(self):
        first = self.backfill.run('migrator')
        self.assertEqual(first['migrated'], len(LEGACY_ROWS))
        self.assertEqual(first['failed'], 0)
        count = self._entry_count()
        second = self.backfill.run('migrator')
        self.assertEqual(second['migrated'], 0)
        self.assertEqual(second['skipped'], len(LEGACY_ROWS))
        self.assertEqual(self._entry_count(), count)

    def test_migrated_entries_are_posted_and_balanced(self):
        self.backfill.run('migrator')
        tb = self.ledger.journal.get_trial_balance()
        self.assertTrue(tb['is_balanced'])
        refund = self.conn.execute(
            "SELECT * FROM journal_entry WHERE entry_ref = 'MIG-TXN-0007'").fetchone()
        self.assertEqual(refund['is_posted'], 1)
        self.assertEqual(refund['approval_status'], 'APPROVED')
        self.assertEqual(refund['entry_type'], 'REFUND')
        self.assertEqual(self.ledger.accounts.get_account_balance('1010'), 300000 - 50000 + 80000)
        self.assertEqual(self.ledger.accounts.get_account_balance('5020'), 2000000)
        validation = self.backfill.validate_migration()
        self.assertTrue(validation['is_valid'])

    def test_dry_run_writes_nothing(self):
        res = self.backfill.run('migrator', dry_run=True)
        self.assertEqual(res['migrated'], len(LEGACY_ROWS))
        self.assertEqual(self._entry_count(), 0)

    def test_unmapped_category_is_reported(self):
        self._insert('TXN-0100', '2024-02-10', 'EXPENSE', 'Food & Catering', 1000, 'CASH')
        self._insert('TXN-0101', '2024-02-10', 'LOAN', None, 1000, 'CASH')
        res = self.backfill.run('migrator')
        self.assertEqual(res['failed'], 2)
        self.assertEqual(res['migrated'], len(LEGACY_ROWS))
        self.assertTrue(any('TXN-0100' in e for e in res['errors']))
        stats = self.backfill.get_migration_stats()
        self.assertEqual(stats['pending'], 2)
        self.assertFalse(self.backfill.validate_migration()['is_valid'])

    def test_voided_legacy_rows_are_skipped(self):
        self._insert('TXN-0200', '2024-02-11', 'DONATION', None, 1000, 'CASH', is_voided=1)
        res = self.backfill.run('migrator')
        self.assertEqual(res['migrated'], len(LEGACY_ROWS))
        self.assertEqual(res['skipped'], 1)
        self.assertEqual(self.backfill.get_migration_stats()['voided'], 1)

    def test_mapping_table(self):
        self.assertEqual(parse_category('salary teaching'), LegacyCategory.SALARY_TEACHING)
        self.assertIsNone(parse_category(''))
        with self.assertRaises(ValidationError):
            parse_category('Stationary')
        row = {'transaction_type': 'EXPENSE', 'category': 'FUEL', 'payment_method': 'CASH'}
        self.assertEqual(map_legacy_transaction(row), ('EXPENSE', '5200', '1010'))
        row = {'transaction_type': 'FEE_PAYMENT', 'category': None, 'payment_method': 'MPESA'}
        self.assertEqual(map_legacy_transaction(row), ('FEE_PAYMENT', '1020', '1100'))
        row = {'transaction_type': 'SALARY_PAYMENT', 'category': 'FOOD', 'payment_method': 'BANK'}
        with self.assertRaises(ValidationError):
            map_legacy_transaction(row)

    def test_backfill_is_audited(self):
        self.backfill.run('migrator')
        rows = db.list_audit_log(entity_type='LEGACY_TRANSACTION', conn=self.conn)
        self.assertEqual(rows[0]['action'], 'legacy_backfill_run')


if __name__ == '__main__':
    unittest.main()
