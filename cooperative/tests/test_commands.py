from datetime import date
from decimal import Decimal
from io import StringIO

from django.core.management import call_command
from django.core.management.base import CommandError
from django.test import TestCase

from cooperative.models import CashAccount, ChartOfAccount, Installment
from cooperative.tests.factories import create_disbursed_loan, create_user, get_cash_account
from cooperative.utils.accounting_helpers import ManualEntry, create_journal_entry


class TestInitChartOfAccounts(TestCase):

    def run_command(self, **options):
        out = StringIO()
        call_command('init_chart_of_accounts', stdout=out, **options)
        return out.getvalue()

    def test_creates_accounts(self):
        output = self.run_command(opening_balance='5000000')

        self.assertEqual(ChartOfAccount.objects.count(), 29)
        self.assertEqual(CashAccount.objects.count(), 5)
        self.assertEqual(get_cash_account('V').balance, Decimal('5000000.00'))
        self.assertEqual(get_cash_account('II').coa_code, '1-102')
        self.assertIn('[+] Created: 1-101 - General Cash', output)

    def test_second_run_is_idempotent(self):
        self.run_command()
        output = self.run_command(opening_balance='1000')

        self.assertEqual(ChartOfAccount.objects.count(), 29)
        self.assertEqual(get_cash_account('I').balance, Decimal('0.00'))
        self.assertIn('[*] Exists: 4-101 - Loan Interest Income', output)

    def test_reset_keeps_accounts_with_postings(self):
        self.run_command()
        create_journal_entry(
            'general', date(2026, 1, 5), 'Opening capital', None,
            [
                {'account_code': '1-105', 'debit': Decimal('1000'), 'credit': 0},
                {'account_code': '3-101', 'debit': 0, 'credit': Decimal('1000')},
            ],
            source=ManualEntry(),
            auto_generated=False,
        )
        original = ChartOfAccount.objects.get(code='1-105')

        self.run_command(reset=True)

        self.assertEqual(ChartOfAccount.objects.count(), 29)
        self.assertEqual(ChartOfAccount.objects.get(code='1-105').pk, original.pk)

    def test_negative_opening_balance_rejected(self):
        with self.assertRaises(CommandError):
            self.run_command(opening_balance='-1')
        with self.assertRaises(CommandError):
            self.run_command(opening_balance='lots')


class TestMarkOverdueInstallments(TestCase):

    def test_marks_past_due_installments(self):
        call_command('init_chart_of_accounts', opening_balance='100000000', stdout=StringIO())
        create_disbursed_loan(create_user(), get_cash_account('I'))

        out = StringIO()
        call_command('mark_overdue_installments', as_of='2026-05-01', stdout=out)

        self.assertIn('3 installment(s) marked overdue', out.getvalue())
        self.assertEqual(Installment.objects.filter(status='overdue').count(), 3)

    def test_bad_date_rejected(self):
        with self.assertRaises(CommandError):
            call_command('mark_overdue_installments', as_of='May first', stdout=StringIO())
