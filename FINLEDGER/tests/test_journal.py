import unittest
from datetime import date, timedelta
import os, sys
import tempfile
from pathlib import Path
from unittest import mock
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

from finledger import db
from finledger.accounting import JournalEngine, JournalLine, generate_entry_ref
from finledger.errors import ConstraintViolation


class JournalEngineTests(unittest.TestCase):
    def setUp(self):
        self.conn = db.get_connection(":memory:")
        db.init_db(self.conn)
        db.seed_chart_of_accounts(self.conn)
        db.seed_approval_rules(self.conn)
        self.eng = JournalEngine(self.conn)
        self.today = date.today().isoformat()

    def tearDown(self):
        self.conn.close()

    def _fee_payment(self, amount=25000, entry_date=None):
        return self.eng.create_journal_entry('FEE_PAYMENT', entry_date or self.today, 'Fee payment', [
            JournalLine('1020', debit=amount),
            JournalLine('1100', credit=amount),
        ], 'bursar', student_id=1)

    def test_balanced_entry_is_posted(self):
        res = self._fee_payment()
        self.assertTrue(res['success'])
        self.assertTrue(res['is_posted'])
        self.assertEqual(res['approval_status'], 'APPROVED')
        entry = self.eng.get_entry(res['entry_id'])
        self.assertEqual(entry['amount'], 25000)
        self.assertEqual(len(entry['lines']), 2)
        self.assertTrue(entry['entry_ref'].startswith('FEE-'))

    def test_unbalanced_entry_rejected_without_writes(self):
        res = self.eng.create_journal_entry('FEE_PAYMENT', self.today, 'Short', [
            JournalLine('1020', debit=25000),
            JournalLine('1100', credit=20000),
        ], 'bursar')
        self.assertFalse(res['success'])
        self.assertEqual(res['error'], 'ValidationError')
        n = self.conn.execute("SELECT COUNT(*) AS n FROM journal_entry").fetchone()['n']
        self.assertEqual(n, 0)

    def test_line_must_be_debit_xor_credit(self):
        both = self.eng.create_journal_entry('ADJUSTMENT', self.today, 'Both sides', [
            JournalLine('1010', debit=100, credit=100),
            JournalLine('1020', debit=100),
            JournalLine('1030', credit=100),
        ], 'accountant')
        self.assertFalse(both['success'])
        self.assertIn('both', both['message'])
        neither = self.eng.create_journal_entry('ADJUSTMENT', self.today, 'Empty line', [
            JournalLine('1010'),
            JournalLine('1020', debit=100),
            JournalLine('1030', credit=100),
        ], 'accountant')
        self.assertFalse(neither['success'])

    def test_single_line_and_float_amounts_rejected(self):
        res = self.eng.create_journal_entry('ADJUSTMENT', self.today, 'One line', [
            JournalLine('1010', debit=100),
        ], 'accountant')
        self.assertFalse(res['success'])
        res = self.eng.create_journal_entry('ADJUSTMENT', self.today, 'Floats', [
            JournalLine('1010', debit=10.5),
            JournalLine('1020', credit=10.5),
        ], 'accountant')
        self.assertFalse(res['success'])

    def test_unknown_or_inactive_account_rejected(self):
        res = self.eng.create_journal_entry('EXPENSE', self.today, 'Bad code', [
            JournalLine('9999', debit=100),
            JournalLine('1010', credit=100),
        ], 'bursar')
        self.assertFalse(res['success'])
        self.assertIn('Invalid GL account code: 9999', res['message'])
        self.conn.execute("UPDATE gl_account SET is_active = 0 WHERE code = '5900'")
        res = self.eng.create_journal_entry('EXPENSE', self.today, 'Inactive', [
            JournalLine('5900', debit=100),
            JournalLine('1010', credit=100),
        ], 'bursar')
        self.assertFalse(res['success'])

    def test_actor_required(self):
        res = self.eng.create_journal_entry('EXPENSE', self.today, 'Anon', [
            JournalLine('5900', debit=100),
            JournalLine('1010', credit=100),
        ], '')
        self.assertFalse(res['success'])

    def test_duplicate_entry_ref_is_constraint_violation(self):
        lines = [JournalLine('5900', debit=100), JournalLine('1010', credit=100)]
        self.eng.record_entry('EXPENSE', self.today, 'First', lines, 'bursar', entry_ref='EXP-FIXED')
        with self.assertRaises(ConstraintViolation):
            self.eng.record_entry('EXPENSE', self.today, 'Second', lines, 'bursar', entry_ref='EXP-FIXED')

    def test_entry_ref_format(self):
        ref = generate_entry_ref('SALARY')
        prefix, stamp, nonce = ref.split('-')
        self.assertEqual(prefix, 'SAL')
        self.assertEqual(len(stamp), 14)
        self.assertEqual(len(nonce), 8)

    def test_void_leaves_lines_untouched(self):
        res = self._fee_payment(amount=30000)
        before = [tuple(r) for r in self.conn.execute(
            "SELECT * FROM journal_entry_line WHERE journal_entry_id = ? ORDER BY id", (res['entry_id'],))]
        out = self.eng.void_journal_entry(res['entry_id'], 'Duplicate receipt', 'bursar')
        self.assertTrue(out['voided'])
        after = [tuple(r) for r in self.conn.execute(
            "SELECT * FROM journal_entry_line WHERE journal_entry_id = ? ORDER BY id", (res['entry_id'],))]
        self.assertEqual(before, after)
        entry = self.eng.get_entry(res['entry_id'])
        self.assertEqual(entry['is_voided'], 1)
        self.assertEqual(entry['voided_by'], 'bursar')
        audit = self.eng.get_voided_transactions()
        self.assertEqual(len(audit), 1)
        self.assertEqual(audit[0]['original_amount'], 30000)

    def test_void_twice_refused(self):
        res = self._fee_payment()
        self.eng.void_journal_entry(res['entry_id'], 'Error', 'bursar')
        again = self.eng.void_journal_entry(res['entry_id'], 'Error', 'bursar')
        self.assertFalse(again['success'])

    def test_void_requires_approval_above_threshold(self):
        self.eng.rules.create_rule('Test Void Threshold', 'VOID', 'FINANCE_MANAGER', min_amount=50000, user_id='admin')
        res = self._fee_payment(amount=60000)
        out = self.eng.void_journal_entry(res['entry_id'], 'Wrong student', 'bursar')
        self.assertTrue(out['requires_approval'])
        self.assertFalse(out['voided'])
        self.assertEqual(out['required_role'], 'FINANCE_MANAGER')
        self.assertEqual(self.eng.get_entry(res['entry_id'])['is_voided'], 0)

        low = self.eng.workflow.approve_transaction(out['request_id'], 'clerk1', reviewer_role='CLERK')
        self.assertFalse(low['success'])
        self.assertEqual(self.eng.get_entry(res['entry_id'])['is_voided'], 0)

        ok = self.eng.workflow.approve_transaction(out['request_id'], 'fm1', 'Checked', reviewer_role='FINANCE_MANAGER')
        self.assertTrue(ok['success'])
        entry = self.eng.get_entry(res['entry_id'])
        self.assertEqual(entry['is_voided'], 1)
        self.assertEqual(entry['voided_reason'], 'Wrong student')
        audit = self.eng.get_voided_transactions()[0]
        self.assertEqual(audit['approval_request_id'], out['request_id'])

    def test_rejected_void_leaves_entry(self):
        self.eng.rules.create_rule('Test Void Threshold', 'VOID', 'FINANCE_MANAGER', min_amount=50000, user_id='admin')
        res = self._fee_payment(amount=60000)
        out = self.eng.void_journal_entry(res['entry_id'], 'Wrong student', 'bursar')
        rej = self.eng.workflow.reject_transaction(out['request_id'], 'fm1', 'Receipt is valid')
        self.assertTrue(rej['success'])
        self.assertEqual(self.eng.get_entry(res['entry_id'])['is_voided'], 0)
        again = self.eng.workflow.approve_transaction(out['request_id'], 'fm1')
        self.assertFalse(again['success'])
        self.assertIn('already been processed', again['message'])

    def test_aged_entry_void_needs_approval(self):
        old = (date.today() - timedelta(days=30)).isoformat()
        res = self._fee_payment(amount=1000, entry_date=old)
        out = self.eng.void_journal_entry(res['entry_id'], 'Old error', 'bursar')
        self.assertTrue(out['requires_approval'])

    def test_gated_creation_posts_on_approval(self):
        res = self.eng.create_journal_entry('REFUND', self.today, 'Refund overpayment', [
            JournalLine('1100', debit=5000),
            JournalLine('1020', credit=5000),
        ], 'bursar', student_id=3)
        self.assertTrue(res['requires_approval'])
        self.assertFalse(res['is_posted'])
        tb = self.eng.get_trial_balance()
        self.assertEqual(tb['rows'], [])

        ok = self.eng.workflow.approve_transaction(res['request_id'], 'principal', 'OK', reviewer_role='PRINCIPAL')
        self.assertTrue(ok['success'])
        entry = self.eng.get_entry(res['entry_id'])
        self.assertEqual(entry['is_posted'], 1)
        self.assertEqual(entry['approval_status'], 'APPROVED')
        self.assertEqual(entry['approved_by'], 'principal')

    def test_rejected_creation_is_voided(self):
        res = self.eng.create_journal_entry('REFUND', self.today, 'Refund', [
            JournalLine('1100', debit=5000),
            JournalLine('1020', credit=5000),
        ], 'bursar')
        self.eng.workflow.reject_transaction(res['request_id'], 'principal', 'No basis')
        entry = self.eng.get_entry(res['entry_id'])
        self.assertEqual(entry['approval_status'], 'REJECTED')
        self.assertEqual(entry['is_voided'], 1)
        self.assertEqual(entry['voided_reason'], 'Rejected: No basis')
        self.assertEqual(entry['is_posted'], 0)

    def test_pending_entry_cannot_be_voided_directly(self):
        res = self.eng.create_journal_entry('REFUND', self.today, 'Refund', [
            JournalLine('1100', debit=5000),
            JournalLine('1020', credit=5000),
        ], 'bursar')
        out = self.eng.void_journal_entry(res['entry_id'], 'Oops', 'bursar')
        self.assertFalse(out['success'])

    def test_cancelled_creation_is_voided(self):
        res = self.eng.create_journal_entry('REFUND', self.today, 'Refund', [
            JournalLine('1100', debit=5000),
            JournalLine('1020', credit=5000),
        ], 'bursar')
        out = self.eng.workflow.cancel_request(res['request_id'], 'bursar', 'Entered twice')
        self.assertTrue(out['success'])
        entry = self.eng.get_entry(res['entry_id'])
        self.assertEqual(entry['approval_status'], 'REJECTED')
        self.assertEqual(entry['is_voided'], 1)
        self.assertEqual(entry['is_posted'], 0)
        self.assertEqual(entry['voided_reason'], 'Cancelled: Entered twice')
        self.assertEqual(self.eng.workflow.get_approval_counts()['pending'], 0)

    def test_failed_approval_request_leaves_no_entry(self):
        with mock.patch.object(self.eng.workflow, 'create_request',
                               side_effect=ConstraintViolation('request store unavailable')):
            res = self.eng.create_journal_entry('REFUND', self.today, 'Refund', [
                JournalLine('1100', debit=5000),
                JournalLine('1020', credit=5000),
            ], 'bursar')
        self.assertFalse(res['success'])
        self.assertEqual(res['error'], 'ConstraintViolation')
        self.assertEqual(self.conn.execute("SELECT COUNT(*) FROM journal_entry").fetchone()[0], 0)
        self.assertEqual(self.conn.execute("SELECT COUNT(*) FROM journal_entry_line").fetchone()[0], 0)
        self.assertEqual(db.list_audit_log(entity_type='JOURNAL_ENTRY', conn=self.conn), [])

    def test_numeric_account_codes(self):
        res = self.eng.create_journal_entry('FEE_PAYMENT', self.today, 'Fee payment', [
            JournalLine(1020, debit=2000),
            JournalLine(1100, credit=2000),
        ], 'bursar')
        self.assertTrue(res['success'])
        codes = [ln['gl_account_code'] for ln in self.eng.get_entry(res['entry_id'])['lines']]
        self.assertEqual(codes, ['1020', '1100'])

    def test_void_recovery_recorded_once(self):
        res = self._fee_payment(amount=4000)
        out = self.eng.void_journal_entry(res['entry_id'], 'Bounced cheque', 'bursar')
        rec = self.eng.record_void_recovery(out['void_audit_id'], 4000, 'CASH', 'bursar')
        self.assertTrue(rec['success'])
        again = self.eng.record_void_recovery(out['void_audit_id'], 4000, 'CASH', 'bursar')
        self.assertFalse(again['success'])

    def test_trial_balance_excludes_voided(self):
        self._fee_payment(amount=25000)
        voided = self._fee_payment(amount=7000)
        self.eng.create_journal_entry('EXPENSE', self.today, 'Fuel', [
            JournalLine('5200', debit=3000),
            JournalLine('1010', credit=3000),
        ], 'bursar')
        self.eng.void_journal_entry(voided['entry_id'], 'Duplicate', 'bursar')
        tb = self.eng.get_trial_balance(self.today, self.today)
        self.assertTrue(tb['is_balanced'])
        by_code = {r['code']: r for r in tb['rows']}
        self.assertEqual(by_code['1020']['net_debit'], 25000)
        self.assertEqual(by_code['1100']['net_credit'], 25000)
        self.assertEqual(by_code['1010']['net_credit'], 3000)

    def test_balance_sheet_balances(self):
        self.eng.create_journal_entry('ADJUSTMENT', self.today, 'Capital', [
            JournalLine('1020', debit=100000),
            JournalLine('3010', credit=100000),
        ], 'accountant')
        self.eng.create_journal_entry('INCOME', self.today, 'Tuition', [
            JournalLine('1010', debit=40000),
            JournalLine('4010', credit=40000),
        ], 'accountant')
        self.eng.create_journal_entry('EXPENSE', self.today, 'Food', [
            JournalLine('5100', debit=15000),
            JournalLine('1010', credit=15000),
        ], 'accountant')
        bs = self.eng.get_balance_sheet(self.today)
        self.assertEqual(bs['total_assets'], 125000)
        self.assertEqual(bs['net_income'], 25000)
        self.assertTrue(bs['is_balanced'])
        inc = self.eng.get_income_statement(self.today, self.today)
        self.assertEqual(inc['net_income'], 25000)

    def test_general_ledger_running_balance(self):
        self._fee_payment(amount=10000)
        self._fee_payment(amount=2500)
        gl = self.eng.get_general_ledger('1020')
        section = gl['accounts'][0]
        self.assertEqual([p['running_balance'] for p in section['postings']], [10000, 12500])
        self.assertEqual(section['closing_balance'], 12500)

    def test_general_ledger_unknown_account(self):
        gl = self.eng.get_general_ledger('9999')
        self.assertFalse(gl['success'])
        self.assertEqual(gl['error'], 'NotFoundError')

    def test_export_trial_balance_csv(self):
        self._fee_payment()
        with tempfile.TemporaryDirectory() as tmp:
            path = self.eng.export_trial_balance(Path(tmp) / 'tb.csv')
            text = path.read_text(encoding='utf-8')
        self.assertIn('code,name,account_type,net_debit,net_credit', text)
        self.assertIn('TOTAL', text)

    def test_mutations_are_audited(self):
        res = self._fee_payment()
        self.eng.void_journal_entry(res['entry_id'], 'Error', 'bursar')
        actions = [r['action'] for r in db.list_audit_log(conn=self.conn)]
        self.assertIn('journal_entry_created', actions)
        self.assertIn('journal_entry_voided', actions)


if __name__ == '__main__':
    unittest.main()
