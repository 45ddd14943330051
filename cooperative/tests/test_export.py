from datetime import date
from decimal import Decimal
from io import BytesIO

from django.test import TestCase
from openpyxl import load_workbook

from cooperative.tests.factories import create_disbursed_loan, create_user, get_cash_account, seed_ledger
from cooperative.utils.accounting_helpers import get_trial_balance
from cooperative.utils.excel_export import export_schedule_excel, export_trial_balance_excel


class TestExcelExport(TestCase):

    def setUp(self):
        seed_ledger()
        self.loan = create_disbursed_loan(create_user(), get_cash_account('I'))

    def test_schedule_workbook(self):
        self.loan.installments.get(installment_number=1).pay('cash', payment_date=date(2026, 2, 15))

        content = export_schedule_excel(self.loan)

        self.assertTrue(content.startswith(b'PK'))
        sheet = load_workbook(BytesIO(content))['Schedule']
        self.assertEqual(sheet['A1'].value, f'LOAN SCHEDULE {self.loan.loan_number}')
        self.assertIn('Siti Rahma | Principal Rp12,000,000.00', sheet['A2'].value)
        self.assertEqual(sheet['A4'].value, 'No')
        self.assertEqual(sheet['A5'].value, 1)
        self.assertEqual(sheet['E5'].value, 1066185)
        self.assertEqual(sheet['H5'].value, 'Paid')
        self.assertEqual(sheet['B17'].value, 'TOTAL')
        self.assertAlmostEqual(sheet['C17'].value, 12000000, places=2)

    def test_trial_balance_workbook(self):
        report = get_trial_balance(as_of=date(2026, 1, 31))

        sheet = load_workbook(BytesIO(export_trial_balance_excel(report)))['Trial Balance']

        self.assertEqual(sheet['A1'].value, 'TRIAL BALANCE')
        self.assertEqual(sheet['A2'].value, 'As of 31 January 2026 | BALANCED')
        self.assertEqual([sheet['A5'].value, sheet['D5'].value], ['1-101', 0])
        self.assertEqual([sheet['A6'].value, sheet['D6'].value], ['1-201', float(Decimal('12000000'))])
        self.assertEqual(sheet['B7'].value, 'TOTAL')
