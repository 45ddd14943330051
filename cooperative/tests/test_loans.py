from datetime import date
from decimal import Decimal

from django.test import TestCase

from cooperative.exceptions import (
    AlreadyDisbursed, AlreadyPaid, InsufficientFunds, InvalidInput, InvalidTransition,
    NotActive, PeriodClosed,
)
from cooperative.models import AccountingPeriod, Installment, Loan
from cooperative.tests.factories import (
    create_disbursed_loan, create_loan, create_user, get_cash_account, seed_ledger,
)


class LoanTestCase(TestCase):

    def setUp(self):
        seed_ledger()
        self.member = create_user()
        self.officer = create_user('officer', 'Agus', 'Wibowo')
        self.cash = get_cash_account('I')

    def installment(self, loan, number=1):
        return loan.installments.get(installment_number=number)

    def journal_lines(self, journal):
        return [
            (line.account.code, line.debit, line.credit)
            for line in journal.lines.select_related('account').order_by('line_number')
        ]


class TestLoanApproval(LoanTestCase):

    def test_new_loan_is_pending(self):
        loan = create_loan(self.member, self.cash)

        self.assertEqual(loan.status, 'pending')
        self.assertTrue(loan.loan_number.startswith('LN-'))
        self.assertEqual(loan.member_display, 'Siti Rahma')

    def test_approve(self):
        loan = create_loan(self.member, self.cash).approve(self.officer)

        self.assertEqual(loan.status, 'approved')
        self.assertEqual(loan.approved_by, self.officer)
        with self.assertRaises(InvalidTransition):
            loan.approve(self.officer)
        with self.assertRaises(InvalidTransition):
            loan.reject(self.officer, 'Too late')

    def test_reject(self):
        loan = create_loan(self.member, self.cash).reject(self.officer, 'Incomplete documents')

        self.assertEqual(loan.status, 'rejected')
        self.assertEqual(loan.rejection_reason, 'Incomplete documents')
        self.assertEqual(loan.rejected_by, self.officer)
        self.assertIsNotNone(loan.rejection_date)
        self.assertIsNone(loan.approved_by)
        self.assertIsNone(loan.approval_date)
        with self.assertRaises(AlreadyDisbursed):
            loan.disburse(self.officer)

    def test_mixed_percentages_must_sum_to_100(self):
        with self.assertRaises(InvalidInput):
            create_loan(
                self.member, self.cash, deduction_method='mixed',
                salary_deduction_percentage=Decimal('60'),
                service_allowance_deduction_percentage=Decimal('30'),
            )

    def test_invalid_terms(self):
        with self.assertRaises(InvalidInput):
            create_loan(self.member, self.cash, principal='0')
        with self.assertRaises(InvalidInput):
            create_loan(self.member, self.cash, tenure=0)
        with self.assertRaises(InvalidInput):
            create_loan(self.member, self.cash, deduction_method='payroll')
        self.assertEqual(Loan.objects.count(), 0)

    def test_terms_that_overpay_principal_rejected(self):
        with self.assertRaises(InvalidInput) as ctx:
            create_loan(self.member, self.cash, principal='50', rate='12', tenure=36)

        self.assertEqual(ctx.exception.context['tenure_months'], 36)
        self.assertEqual(Loan.objects.count(), 0)
        self.assertEqual(get_cash_account('I').balance, Decimal('100000000.00'))


class TestDisbursement(LoanTestCase):

    def test_disbursement_writes_schedule_and_journal(self):
        loan = create_disbursed_loan(self.member, self.cash, self.officer)

        self.assertEqual(loan.status, 'disbursed')
        self.assertEqual(loan.installment_amount, Decimal('1066185'))
        self.assertEqual(loan.remaining_principal, Decimal('12000000.00'))
        self.assertEqual(loan.installments.count(), 12)
        self.assertEqual(loan.installments.all().totals()['principal'], Decimal('12000000.00'))
        self.assertEqual(self.installment(loan).due_date, date(2026, 2, 15))
        self.assertEqual(get_cash_account('I').balance, Decimal('88000000.00'))

        journal = loan.journals.get(source_kind='loan_disbursement')
        self.assertEqual(journal.journal_type, 'special')
        self.assertEqual(journal.transaction_date, date(2026, 1, 15))
        self.assertEqual(self.journal_lines(journal), [
            ('1-201', Decimal('12000000.00'), Decimal('0.00')),
            ('1-101', Decimal('0.00'), Decimal('12000000.00')),
        ])

    def test_disburse_twice_rejected(self):
        loan = create_disbursed_loan(self.member, self.cash, self.officer)
        with self.assertRaises(AlreadyDisbursed):
            loan.disburse(self.officer, date(2026, 1, 16))
        self.assertEqual(loan.installments.count(), 12)

    def test_insufficient_cash_leaves_loan_approved(self):
        loan = create_loan(self.member, self.cash, principal='150000000').approve(self.officer)

        with self.assertRaises(InsufficientFunds):
            loan.disburse(self.officer, date(2026, 1, 15))

        loan.refresh_from_db()
        self.assertEqual(loan.status, 'approved')
        self.assertEqual(loan.installments.count(), 0)
        self.assertFalse(loan.journals.exists())

    def test_closed_period_rolls_back_cash(self):
        AccountingPeriod.create_monthly(2026, 1).close(self.officer)
        loan = create_loan(self.member, self.cash).approve(self.officer)

        with self.assertRaises(PeriodClosed):
            loan.disburse(self.officer, date(2026, 1, 15))

        self.assertEqual(get_cash_account('I').balance, Decimal('100000000.00'))
        self.assertEqual(Installment.objects.count(), 0)
        self.assertEqual(Loan.objects.get(pk=loan.pk).status, 'approved')


class TestInstallmentPayment(LoanTestCase):

    def setUp(self):
        super().setUp()
        self.loan = create_disbursed_loan(self.member, self.cash, self.officer)

    def test_full_payment_splits_interest_and_principal(self):
        installment = self.installment(self.loan).pay('cash', self.officer, payment_date=date(2026, 2, 15))

        self.assertEqual(installment.status, 'paid')
        self.assertEqual(installment.paid_amount, Decimal('1066185.00'))
        self.assertEqual(installment.principal_paid, Decimal('946185.00'))

        self.loan.refresh_from_db()
        self.assertEqual(self.loan.status, 'active')
        self.assertEqual(self.loan.remaining_principal, Decimal('11053815.00'))
        self.assertEqual(get_cash_account('I').balance, Decimal('89066185.00'))

        self.assertEqual(self.journal_lines(installment.journals.get()), [
            ('1-101', Decimal('1066185.00'), Decimal('0.00')),
            ('1-201', Decimal('0.00'), Decimal('946185.00')),
            ('4-101', Decimal('0.00'), Decimal('120000.00')),
        ])

    def test_paid_installment_rejects_second_payment(self):
        installment = self.installment(self.loan).pay('cash')
        with self.assertRaises(AlreadyPaid):
            installment.pay('cash')

    def test_partial_payment_covers_interest_first(self):
        installment = self.installment(self.loan).pay('cash', amount=Decimal('100000'))

        self.assertEqual(installment.status, 'partial')
        self.assertEqual(installment.principal_paid, Decimal('0.00'))
        self.assertEqual(installment.outstanding_amount, Decimal('966185.00'))
        self.assertEqual(Loan.objects.get(pk=self.loan.pk).remaining_principal, Decimal('12000000.00'))
        self.assertEqual(self.journal_lines(installment.journals.get()), [
            ('1-101', Decimal('100000.00'), Decimal('0.00')),
            ('4-101', Decimal('0.00'), Decimal('100000.00')),
        ])

        installment.pay('cash')

        self.assertEqual(installment.status, 'paid')
        self.assertEqual(Loan.objects.get(pk=self.loan.pk).remaining_principal, Decimal('11053815.00'))
        last = installment.journals.order_by('-created_at').first()
        self.assertIn(('4-101', Decimal('0.00'), Decimal('20000.00')), self.journal_lines(last))

    def test_overpayment_rejected(self):
        with self.assertRaises(InvalidInput):
            self.installment(self.loan).pay('cash', amount=Decimal('1066186'))
        with self.assertRaises(InvalidInput):
            self.installment(self.loan).pay('cheque')

    def test_deduction_method_marks_auto_paid(self):
        self.assertEqual(self.installment(self.loan).pay('salary').status, 'auto_paid')

    def test_last_payment_pays_off_loan(self):
        for installment in self.loan.installments.order_by('installment_number'):
            installment.pay('transfer', self.officer)

        self.loan.refresh_from_db()
        self.assertEqual(self.loan.status, 'paid_off')
        self.assertEqual(self.loan.remaining_principal, Decimal('0.00'))
        self.assertEqual(self.loan.reconcile_remaining_principal(), (Decimal('0.00'), Decimal('0.00')))

    def test_remaining_principal_reconciles(self):
        self.installment(self.loan).pay('cash', amount=Decimal('1000000'))
        self.loan.refresh_from_db()

        stored, computed = self.loan.reconcile_remaining_principal()
        self.assertEqual(stored, Decimal('11120000.00'))
        self.assertEqual(stored, computed)

    def test_payments_from_stale_instances_keep_every_principal_reduction(self):
        """Two installments of one loan paid through copies loaded before either write"""
        stale_loan = Loan.objects.get(pk=self.loan.pk)
        first = Installment.objects.get(loan=stale_loan, installment_number=1)
        second = Installment.objects.get(loan=stale_loan, installment_number=2)

        first.pay('cash', payment_date=date(2026, 2, 15))
        second.pay('transfer', payment_date=date(2026, 2, 16))

        self.assertEqual(stale_loan.remaining_principal, Decimal('12000000.00'))
        stale_loan.refresh_from_db()
        paid_principal = first.principal_paid + second.principal_paid
        self.assertEqual(paid_principal, Decimal('946185.00') + Decimal('955646.85'))
        self.assertEqual(stale_loan.remaining_principal, Decimal('12000000.00') - paid_principal)
        self.assertEqual(stale_loan.remaining_principal, Decimal('10098168.15'))
        self.assertEqual(stale_loan.reconcile_remaining_principal(), (Decimal('10098168.15'), Decimal('10098168.15')))
        self.assertEqual(stale_loan.status, 'active')

    def test_mark_overdue(self):
        count = Installment.objects.mark_overdue(as_of=date(2026, 3, 20))

        self.assertEqual(count, 2)
        self.assertEqual(self.installment(self.loan, 2).status, 'overdue')
        self.assertEqual(self.installment(self.loan, 3).status, 'pending')
        self.assertEqual(self.installment(self.loan, 1).pay('cash').status, 'paid')

    def test_manual_payment_waits_for_confirmation(self):
        installment = self.installment(self.loan).submit_manual_payment('Paid at the branch')

        self.assertEqual(installment.status, 'manual_pending')
        with self.assertRaises(InvalidTransition):
            installment.submit_manual_payment()

        installment.pay('cash', self.officer)
        self.assertEqual(installment.status, 'paid')
        with self.assertRaises(AlreadyPaid):
            installment.submit_manual_payment()


class TestEarlySettlement(LoanTestCase):

    def setUp(self):
        super().setUp()
        self.loan = create_disbursed_loan(self.member, self.cash, self.officer)

    def test_settlement_cancels_remaining_schedule(self):
        self.installment(self.loan).pay('cash', payment_date=date(2026, 2, 15))

        summary = self.loan.settle_early(self.officer, 'Year-end bonus', date(2026, 3, 1))

        self.assertEqual(summary['settlement_amount'], Decimal('11053815.00'))
        self.assertEqual(summary['original_principal'], Decimal('12000000.00'))
        self.assertEqual(summary['cancelled_installments'], 11)
        self.assertEqual(summary['saved_interest'], self.loan.total_interest - Decimal('120000.00'))

        self.assertEqual(self.loan.status, 'paid_off')
        self.assertTrue(self.loan.is_early_settlement)
        self.assertEqual(self.loan.remaining_principal, Decimal('0.00'))
        self.assertEqual(self.loan.installments.filter(status='cancelled').count(), 11)
        self.assertEqual(get_cash_account('I').balance, Decimal('100120000.00'))
        self.assertEqual(self.journal_lines(summary['journal']), [
            ('1-101', Decimal('11053815.00'), Decimal('0.00')),
            ('1-201', Decimal('0.00'), Decimal('11053815.00')),
        ])

    def test_partial_interest_not_counted_as_saved(self):
        self.installment(self.loan).pay('cash', amount=Decimal('100000'))

        summary = self.loan.settle_early(self.officer, settlement_date=date(2026, 2, 20))

        self.assertEqual(summary['settlement_amount'], Decimal('12000000.00'))
        self.assertEqual(summary['cancelled_installments'], 12)
        self.assertEqual(summary['saved_interest'], self.loan.total_interest - Decimal('100000.00'))

    def test_settled_loan_is_closed(self):
        self.loan.settle_early(self.officer, settlement_date=date(2026, 2, 1))

        with self.assertRaises(NotActive):
            self.loan.settle_early(self.officer)
        self.assertFalse(Loan.objects.open().for_member(self.member).exists())
        with self.assertRaises(NotActive):
            self.installment(self.loan, 2).pay('cash')
