from datetime import date
from decimal import Decimal

from django.test import TestCase

from cooperative.exceptions import InvalidInput, InvalidTransition, PeriodClosed
from cooperative.models import AccountingPeriod, Journal, Saving
from cooperative.tests.factories import create_user, get_cash_account, seed_ledger

DEPOSITED_ON = date(2026, 2, 10)


class TestSaving(TestCase):

    def setUp(self):
        seed_ledger()
        self.member = create_user()
        self.teller = create_user('teller', 'Agus', 'Wibowo')
        self.cash = get_cash_account('I')

    def record(self, savings_type='voluntary', amount='250000', on=DEPOSITED_ON):
        return Saving.record(self.member, self.cash, savings_type, Decimal(amount), on)

    def test_record_is_pending(self):
        saving = self.record()

        self.assertEqual(saving.status, 'pending')
        self.assertTrue(saving.saving_number.startswith('SAV'))
        self.assertIsNone(saving.journal)
        self.assertEqual(get_cash_account('I').balance, Decimal('100000000.00'))

    def test_approve_credits_cash_and_posts_journal(self):
        saving = self.record()

        journal = saving.approve(self.teller)

        self.assertEqual(saving.status, 'approved')
        self.assertEqual(saving.approved_by, self.teller)
        self.assertEqual(get_cash_account('I').balance, Decimal('100250000.00'))
        self.assertEqual(journal.source_kind, 'saving')
        self.assertEqual(journal.saving, saving)
        self.assertEqual(saving.journal, journal)

        lines = [
            (line.account.code, line.debit, line.credit)
            for line in journal.lines.select_related('account').order_by('line_number')
        ]
        self.assertEqual(lines, [
            ('1-101', Decimal('250000.00'), Decimal('0.00')),
            ('2-203', Decimal('0.00'), Decimal('250000.00')),
        ])

    def test_savings_type_picks_liability_account(self):
        journal = self.record('mandatory', '100000').approve(self.teller)

        credited = journal.lines.get(credit__gt=0)
        self.assertEqual(credited.account.code, '2-202')

    def test_approve_twice_rejected(self):
        saving = self.record()
        saving.approve(self.teller)

        with self.assertRaises(InvalidTransition):
            saving.approve(self.teller)
        self.assertEqual(get_cash_account('I').balance, Decimal('100250000.00'))

    def test_reject(self):
        saving = self.record().reject(self.teller, 'Duplicate slip')

        self.assertEqual(saving.status, 'rejected')
        self.assertEqual(saving.rejected_by, self.teller)
        self.assertEqual(saving.rejection_reason, 'Duplicate slip')
        with self.assertRaises(InvalidTransition):
            saving.approve(self.teller)

    def test_bad_input(self):
        with self.assertRaises(InvalidInput):
            self.record(savings_type='pension')
        with self.assertRaises(InvalidInput):
            self.record(amount='0')
        self.assertFalse(Saving.objects.exists())

    def test_closed_period_rolls_back_cash(self):
        saving = self.record(on=date(2026, 1, 20))
        AccountingPeriod.create_monthly(2026, 1).close(self.teller)

        with self.assertRaises(PeriodClosed):
            saving.approve(self.teller)

        saving.refresh_from_db()
        self.assertEqual(saving.status, 'pending')
        self.assertEqual(get_cash_account('I').balance, Decimal('100000000.00'))
        self.assertEqual(Journal.objects.filter(source_kind='saving').count(), 0)

    def test_member_balance_counts_approved_only(self):
        self.record('voluntary', '250000').approve(self.teller)
        self.record('mandatory', '100000').approve(self.teller)
        self.record('voluntary', '75000')
        self.record('voluntary', '40000').reject(self.teller)

        self.assertEqual(Saving.objects.balance_for_member(self.member), Decimal('350000.00'))
        self.assertEqual(
            Saving.objects.balance_for_member(self.member, 'voluntary'), Decimal('250000.00')
        )
        self.assertEqual(
            Saving.objects.balance_for_member(create_user('other'), 'voluntary'), Decimal('0.00')
        )
