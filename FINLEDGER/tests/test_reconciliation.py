import unittest
from datetime import date, timedelta
import os, sys
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

from finledger import db
from finledger.accounting import JournalLine
from finledger.ledger import Ledger


class ReconciliationTests(unittest.TestCase):
    def setUp(self):
        self.ledger = Ledger.open(":memory:")
        self.rec = self.ledger.reconciliation
        self.journal = self.ledger.journal
        self.today = date.today().isoformat()
        self.bank_id = self.rec.create_bank_account('Main Account', '0011223344', '1020', 'bursar',
                                                    bank_name='KCB')['id']
        self.stmt_id = self.rec.create_statement(self.bank_id, self.today, 100000, 120000, 'bursar')['id']

    def tearDown(self):
        self.ledger.close()

    def _receipt(self, amount, entry_date=None, bank='1020'):
        return self.journal.create_journal_entry('FEE_PAYMENT', entry_date or self.today, 'Fee receipt', [
            JournalLine(bank, debit=amount),
            JournalLine('1100', credit=amount),
        ], 'bursar')['entry_id']

    def test_bank_account_must_be_asset(self):
        res = self.rec.create_bank_account('Wrong', '999', '4010', 'bursar')
        self.assertFalse(res['success'])

    def test_statement_line_validation(self):
        tomorrow = (date.today() + timedelta(days=1)).isoformat()
        self.assertFalse(self.rec.add_statement_line(self.stmt_id, self.today, '', 'bursar', credit_amount=1)['success'])
        self.assertFalse(self.rec.add_statement_line(self.stmt_id, tomorrow, 'Late', 'bursar', credit_amount=1)['success'])
        self.assertFalse(self.rec.add_statement_line(self.stmt_id, self.today, 'Both', 'bursar',
                                                     debit_amount=1, credit_amount=1)['success'])
        self.assertFalse(self.rec.add_statement_line(self.stmt_id, self.today, 'Neither', 'bursar')['success'])
        self.assertTrue(self.rec.add_statement_line(self.stmt_id, self.today, 'Deposit', 'bursar',
                                                    credit_amount=500)['success'])

    def test_statement_line_records_actor(self):
        res = self.rec.add_statement_line(self.stmt_id, self.today, 'Deposit', 'clerk7', credit_amount=100)
        rows = db.list_audit_log(entity_type='BANK_STATEMENT_LINE', conn=self.ledger.conn)
        self.assertEqual(len(rows), 1)
        self.assertEqual(rows[0]['user'], 'clerk7')
        self.assertEqual(rows[0]['entity_id'], res['id'])
        self.assertFalse(self.rec.add_statement_line(self.stmt_id, self.today, 'Deposit', '',
                                                     credit_amount=100)['success'])

    def test_match_and_unmatch(self):
        entry_id = self._receipt(20000)
        line_id = self.rec.add_statement_line(self.stmt_id, self.today, 'Deposit', 'bursar',
                                              credit_amount=20050)['id']
        res = self.rec.match_transaction(line_id, entry_id, 'bursar')
        self.assertTrue(res['success'])
        self.assertEqual(self.rec.get_unmatched_transactions(self.today, self.today), [])
        again = self.rec.match_transaction(line_id, entry_id, 'bursar')
        self.assertFalse(again['success'])

        other_line = self.rec.add_statement_line(self.stmt_id, self.today, 'Deposit 2', 'bursar',
                                                 credit_amount=20000)['id']
        taken = self.rec.match_transaction(other_line, entry_id, 'bursar')
        self.assertFalse(taken['success'])

        self.assertTrue(self.rec.unmatch_transaction(line_id, 'bursar')['success'])
        unmatched = self.rec.get_unmatched_transactions(self.today, self.today)
        self.assertEqual([u['entry_id'] for u in unmatched], [entry_id])
        self.assertEqual(unmatched[0]['bank_movement'], 20000)

    def test_match_rules(self):
        entry_id = self._receipt(20000)
        far_amount = self.rec.add_statement_line(self.stmt_id, self.today, 'Deposit', 'bursar',
                                                 credit_amount=20101)['id']
        self.assertFalse(self.rec.match_transaction(far_amount, entry_id, 'bursar')['success'])
        withdrawal = self.rec.add_statement_line(self.stmt_id, self.today, 'Cheque', 'bursar',
                                                 debit_amount=20000)['id']
        self.assertFalse(self.rec.match_transaction(withdrawal, entry_id, 'bursar')['success'])

        old_date = (date.today() - timedelta(days=10)).isoformat()
        old_line = self.rec.add_statement_line(self.stmt_id, old_date, 'Old deposit', 'bursar',
                                               credit_amount=20000)['id']
        self.assertFalse(self.rec.match_transaction(old_line, entry_id, 'bursar')['success'])

        cash_entry = self._receipt(20000, bank='1010')
        ok_line = self.rec.add_statement_line(self.stmt_id, self.today, 'Deposit', 'bursar',
                                              credit_amount=20000)['id']
        self.assertFalse(self.rec.match_transaction(ok_line, cash_entry, 'bursar')['success'])

        self.journal.void_journal_entry(entry_id, 'Error', 'bursar')
        self.assertFalse(self.rec.match_transaction(ok_line, entry_id, 'bursar')['success'])

    def test_run_reconciliation_variance(self):
        entry_id = self._receipt(20000)
        line_id = self.rec.add_statement_line(self.stmt_id, self.today, 'Deposit', 'bursar',
                                              credit_amount=20000)['id']
        res = self.rec.run_reconciliation('bursar')
        self.assertTrue(res['success'])
        result = res['results'][0]
        self.assertEqual(result['calculated_balance'], 100000)
        self.assertEqual(result['variance'], -20000)
        self.assertFalse(res['all_balanced'])

        self.rec.match_transaction(line_id, entry_id, 'bursar')
        res = self.rec.run_reconciliation('bursar')
        self.assertEqual(res['results'][0]['variance'], 0)
        self.assertTrue(res['all_balanced'])
        self.assertEqual(len(self.rec.get_bank_reconciliations(self.bank_id)), 2)

        done = self.rec.mark_statement_reconciled(self.stmt_id, 'bursar')
        self.assertTrue(done['success'])
        self.assertFalse(self.rec.unmatch_transaction(line_id, 'bursar')['success'])

    def test_cannot_reconcile_with_unmatched_lines(self):
        self.rec.add_statement_line(self.stmt_id, self.today, 'Deposit', 'bursar', credit_amount=20000)
        res = self.rec.mark_statement_reconciled(self.stmt_id, 'bursar')
        self.assertFalse(res['success'])
        self.assertEqual(len(self.rec.get_unmatched_statement_lines(self.stmt_id)), 1)

    def test_adjustment_types(self):
        self.assertTrue(self.rec.add_adjustment(self.stmt_id, 'bank_charge', -350, 'Ledger fee', 'bursar')['success'])
        self.assertFalse(self.rec.add_adjustment(self.stmt_id, 'FEE', 100, 'Unknown', 'bursar')['success'])
        res = self.rec.run_reconciliation('bursar')
        self.assertEqual(res['results'][0]['adjustments_total'], -350)

    def test_integrity_checks(self):
        self.journal.create_journal_entry('INCOME', self.today, 'Tuition', [
            JournalLine('1020', debit=5000),
            JournalLine('4010', credit=5000),
        ], 'bursar')
        report = self.rec.run_integrity_checks('auditor')
        self.assertEqual(report['overall_status'], 'PASS')
        self.conn_insert_legacy()
        report = self.rec.run_integrity_checks('auditor')
        self.assertEqual(report['overall_status'], 'WARNING')
        history = self.rec.get_reconciliation_history(10)
        self.assertEqual(len(history), 2)
        self.assertEqual(history[0]['overall_status'], 'WARNING')
        self.assertEqual(len(history[0]['checks']), report['summary']['total_checks'])

    def conn_insert_legacy(self):
        self.ledger.conn.execute(
            """
            INSERT INTO legacy_transaction(transaction_ref, transaction_date, transaction_type, amount)
            VALUES ('TXN-1', ?, 'DONATION', 1000)
            """,
            (self.today,),
        )


if __name__ == '__main__':
    unittest.main()
