import unittest
from datetime import date
from unittest import mock
import os, sys
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

from finledger import db
from finledger.accounting import JournalEngine
from finledger.errors import ConstraintViolation
from finledger.opening_balances import GLOpeningBalance, OpeningBalanceImporter, StudentOpeningBalance


class OpeningBalanceTests(unittest.TestCase):
    def setUp(self):
        self.conn = db.get_connection(":memory:")
        db.init_db(self.conn)
        db.seed_chart_of_accounts(self.conn)
        db.seed_approval_rules(self.conn)
        self.journal = JournalEngine(self.conn)
        self.importer = OpeningBalanceImporter(self.conn, self.journal)

    def tearDown(self):
        self.conn.close()

    def _import_students(self):
        return self.importer.import_student_opening_balances([
            StudentOpeningBalance(student_id=1, amount=12000, balance_type='DEBIT'),
            StudentOpeningBalance(student_id=2, amount=5000, balance_type='CREDIT'),
        ], 2024, 'Manual', 'bursar')

    def test_student_only_import_is_out_of_balance(self):
        res = self._import_students()
        self.assertTrue(res['success'])
        self.assertEqual(res['imported'], 2)
        check = self.importer.verify_opening_balances(2024)
        self.assertFalse(check['is_balanced'])
        self.assertEqual(check['variance'], 7000)
        self.assertIn('OUT OF BALANCE by 70.00', check['message'])

    def test_offsetting_gl_balance_closes_the_year(self):
        self._import_students()
        res = self.importer.import_gl_opening_balances([
            GLOpeningBalance('3020', credit_amount=7000, description='Offset'),
        ], 2024, 'accountant')
        self.assertTrue(res['success'])
        self.assertIsNone(res['journal_entry_id'])
        check = self.importer.verify_opening_balances(2024, 'accountant')
        self.assertEqual(check['variance'], 0)
        self.assertTrue(check['is_balanced'])
        self.assertTrue(check['is_verified'])
        self.assertTrue(self.importer.get_opening_balance_summary(2024)['is_verified'])

    def test_student_entries_are_posted_and_balanced(self):
        res = self._import_students()
        for entry_id in res['entry_ids']:
            entry = self.journal.get_entry(entry_id)
            self.assertEqual(entry['entry_type'], 'OPENING_BALANCE')
            self.assertEqual(entry['is_posted'], 1)
        tb = self.journal.get_trial_balance()
        self.assertTrue(tb['is_balanced'])
        self.assertEqual(self.journal.accounts.get_account_balance('1100'), 12000)
        self.assertEqual(self.journal.accounts.get_account_balance('2020'), 5000)

    def test_balanced_gl_batch_posts_one_entry(self):
        res = self.importer.import_gl_opening_balances([
            GLOpeningBalance('1020', debit_amount=500000),
            GLOpeningBalance('3010', credit_amount=500000),
        ], 2025, 'accountant', entry_date=date.today().isoformat())
        self.assertTrue(res['success'])
        self.assertIsNotNone(res['journal_entry_id'])
        self.assertTrue(self.importer.verify_opening_balances(2025)['is_balanced'])

    def test_bad_rows_reject_the_whole_batch(self):
        res = self.importer.import_student_opening_balances([
            StudentOpeningBalance(student_id=1, amount=12000, balance_type='DEBIT'),
            StudentOpeningBalance(student_id=2, amount=-5, balance_type='CREDIT'),
        ], 2024, 'Manual', 'bursar')
        self.assertFalse(res['success'])
        n = self.conn.execute("SELECT COUNT(*) AS n FROM opening_balance").fetchone()['n']
        self.assertEqual(n, 0)
        res = self.importer.import_gl_opening_balances([
            GLOpeningBalance('9999', debit_amount=100),
        ], 2024, 'accountant')
        self.assertFalse(res['success'])
        self.assertEqual(res['error'], 'NotFoundError')

    def test_failure_mid_batch_rolls_back_written_entries(self):
        record_entry = self.journal.record_entry
        calls = []

        def fail_on_second(*args, **kwargs):
            calls.append(args[2])
            if len(calls) == 2:
                raise ConstraintViolation('entry ref already used')
            return record_entry(*args, **kwargs)

        with mock.patch.object(self.journal, 'record_entry', side_effect=fail_on_second):
            res = self._import_students()
        self.assertFalse(res['success'])
        self.assertEqual(len(calls), 2)
        for table in ('journal_entry', 'journal_entry_line', 'opening_balance'):
            n = self.conn.execute(f"SELECT COUNT(*) AS n FROM {table}").fetchone()['n']
            self.assertEqual(n, 0, table)
        self.assertTrue(self.journal.get_trial_balance()['is_balanced'])

    def test_empty_year_is_not_balanced(self):
        check = self.importer.verify_opening_balances(1999)
        self.assertFalse(check['is_balanced'])

    def test_student_ledger(self):
        self._import_students()
        ledger = self.importer.get_student_ledger(1)
        self.assertEqual(ledger['opening_balance'], 12000)
        self.assertEqual(ledger['closing_balance'], 12000)
        ledger = self.importer.get_student_ledger(2)
        self.assertEqual(ledger['closing_balance'], -5000)


if __name__ == '__main__':
    unittest.main()
