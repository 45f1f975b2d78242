import unittest
from datetime import date
import os, sys
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

from finledger import db
from finledger.accounting import JournalLine
from finledger.errors import ExceedsBudget
from finledger.ledger import Ledger


class BudgetAllocatorTests(unittest.TestCase):
    def setUp(self):
        self.ledger = Ledger.open(":memory:")
        self.budget = self.ledger.budget
        self.today = date.today()
        self.year = self.today.year

    def tearDown(self):
        self.ledger.close()

    def _spend(self, amount, code='5100', department=None):
        return self.ledger.journal.create_journal_entry('EXPENSE', self.today.isoformat(), 'Food', [
            JournalLine(code, debit=amount),
            JournalLine('1020', credit=amount),
        ], 'bursar', department=department)

    def test_allocation_uses_department_sentinel(self):
        res = self.budget.set_budget_allocation('5100', self.year, 100000, 'accountant')
        self.assertTrue(res['success'])
        self.assertEqual(res['department'], db.ALL_DEPARTMENTS)
        again = self.budget.set_budget_allocation('5100', self.year, 150000, 'accountant')
        self.assertEqual(again['id'], res['id'])
        rows = self.budget.get_budget_allocations(self.year)
        self.assertEqual(len(rows), 1)
        self.assertEqual(rows[0]['allocated_amount'], 150000)

    def test_validate_within_and_over_budget(self):
        self.budget.set_budget_allocation('5100', self.year, 100000, 'accountant')
        self._spend(70000)
        ok = self.budget.validate_transaction('5100', 15000, self.year)
        self.assertTrue(ok['allowed'])
        self.assertEqual(ok['budget_status']['spent'], 70000)
        self.assertEqual(len(ok['warnings']), 1)
        over = self.budget.validate_transaction('5100', 40000, self.year)
        self.assertFalse(over['allowed'])
        self.assertEqual(over['error'], 'ExceedsBudget')
        self.assertEqual(over['budget_status']['after_transaction'], 110000)
        with self.assertRaises(ExceedsBudget):
            self.budget.check_transaction('5100', 40000, self.year)

    def test_voided_spend_is_not_counted(self):
        self.budget.set_budget_allocation('5100', self.year, 100000, 'accountant')
        res = self._spend(90000)
        self.ledger.journal.void_journal_entry(res['entry_id'], 'Duplicate invoice', 'bursar')
        self.assertEqual(self.budget.get_actual_spend('5100', self.year), 0)

    def test_department_scoped_spend(self):
        self.budget.set_budget_allocation('5100', self.year, 50000, 'accountant', department='boarding')
        self._spend(30000, department='BOARDING')
        self._spend(30000, department='DAY')
        self.assertEqual(self.budget.get_actual_spend('5100', self.year, 'Boarding'), 30000)
        self.assertEqual(self.budget.get_actual_spend('5100', self.year), 60000)
        res = self.budget.validate_transaction('5100', 25000, self.year, 'boarding')
        self.assertFalse(res['allowed'])

    def test_no_allocation_is_allowed(self):
        res = self.budget.validate_transaction('5200', 10**9, self.year)
        self.assertTrue(res['allowed'])
        self.assertFalse(res['has_budget'])

    def test_variance_report_and_alerts(self):
        self.budget.set_budget_allocation('5100', self.year, 100000, 'accountant')
        self.budget.set_budget_allocation('5200', self.year, 10000, 'accountant')
        self._spend(95000, code='5100')
        self._spend(12000, code='5200')
        report = self.budget.get_budget_variance_report(self.year)
        status = {r['gl_account_code']: r['status'] for r in report['rows']}
        self.assertEqual(status, {'5100': 'UNDER_BUDGET', '5200': 'OVER_BUDGET'})
        alerts = self.budget.get_budget_alerts(self.year)
        self.assertEqual([a['severity'] for a in alerts], ['EXCEEDED', 'CRITICAL'])

    def test_allocation_gated_by_rule(self):
        self.ledger.rules.create_rule('Large Budget', 'BUDGET_ALLOCATION', 'PRINCIPAL', min_amount=1_000_000, user_id='admin')
        res = self.budget.set_budget_allocation('5100', self.year, 2_000_000, 'accountant')
        self.assertTrue(res['requires_approval'])
        self.assertEqual(self.budget.get_budget_allocations(self.year), [])
        ok = self.ledger.workflow.approve_transaction(res['request_id'], 'head', reviewer_role='PRINCIPAL')
        self.assertTrue(ok['success'])
        rows = self.budget.get_budget_allocations(self.year)
        self.assertEqual(rows[0]['allocated_amount'], 2_000_000)

    def test_deactivate(self):
        res = self.budget.set_budget_allocation('5100', self.year, 100000, 'accountant')
        self.assertTrue(self.budget.deactivate_allocation(res['id'], 'accountant')['success'])
        self.assertFalse(self.budget.validate_transaction('5100', 1, self.year)['has_budget'])


if __name__ == '__main__':
    unittest.main()
