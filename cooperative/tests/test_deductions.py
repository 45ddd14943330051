from datetime import date
from decimal import Decimal

from django.test import TestCase

from cooperative.exceptions import DuplicatePeriod, InvalidInput
from cooperative.models import SalaryDeduction, ServiceAllowance
from cooperative.tests.factories import (
    create_disbursed_loan, create_user, get_cash_account, seed_ledger,
)

PAYDAY = date(2026, 2, 25)


class DeductionTestCase(TestCase):

    def setUp(self):
        seed_ledger()
        self.member = create_user()
        self.payroll = create_user('payroll', 'Rina', 'Kusuma')
        self.cash = get_cash_account('I')

    def first_installment(self, loan):
        return loan.installments.get(installment_number=1)

    def run_salary(self, gross='5000000', month=2, **options):
        return SalaryDeduction.process_for_member(
            self.member, month, 2026, Decimal(gross),
            processed_by=self.payroll, deduction_date=PAYDAY, **options
        )

    def run_allowance(self, received, month=2):
        return ServiceAllowance.process_for_member(
            self.member, month, 2026, Decimal(received),
            processed_by=self.payroll, payment_date=PAYDAY,
        )


class TestSalaryDeduction(DeductionTestCase):

    def test_salary_loan_collected_with_savings(self):
        loan = create_disbursed_loan(self.member, self.cash, deduction_method='salary')

        deduction = self.run_salary(
            savings_deduction=Decimal('100000'), other_deductions=Decimal('50000'),
        )

        self.assertEqual(deduction.loan_deduction, Decimal('1066185.00'))
        self.assertEqual(deduction.total_deductions, Decimal('1216185.00'))
        self.assertEqual(deduction.net_salary, Decimal('3783815.00'))
        self.assertEqual(deduction.period_label, '02/2026')
        self.assertEqual(self.first_installment(loan).status, 'auto_paid')

        # 100M opening - 12M disbursed + installment + savings and other
        self.assertEqual(get_cash_account('I').balance, Decimal('89216185.00'))

        lines = [
            (line.account.code, line.debit, line.credit)
            for line in deduction.journal.lines.select_related('account').order_by('line_number')
        ]
        self.assertEqual(lines, [
            ('1-101', Decimal('150000.00'), Decimal('0.00')),
            ('2-202', Decimal('0.00'), Decimal('100000.00')),
            ('4-201', Decimal('0.00'), Decimal('50000.00')),
        ])

    def test_same_month_twice_rejected(self):
        create_disbursed_loan(self.member, self.cash, deduction_method='salary')
        self.run_salary()

        with self.assertRaises(DuplicatePeriod):
            self.run_salary()
        self.assertEqual(SalaryDeduction.objects.count(), 1)

    def test_next_month_collects_next_installment(self):
        loan = create_disbursed_loan(self.member, self.cash, deduction_method='salary')
        self.run_salary(month=2)
        self.run_salary(month=3)

        self.assertEqual(loan.installments.filter(status='auto_paid').count(), 2)

    def test_deductions_above_gross_rejected(self):
        loan = create_disbursed_loan(self.member, self.cash, deduction_method='salary')

        with self.assertRaises(InvalidInput):
            self.run_salary(gross='1000000')

        self.assertEqual(self.first_installment(loan).status, 'pending')
        self.assertFalse(SalaryDeduction.objects.exists())

    def test_manual_loans_untouched(self):
        loan = create_disbursed_loan(self.member, self.cash)

        deduction = self.run_salary()

        self.assertEqual(deduction.loan_deduction, Decimal('0.00'))
        self.assertEqual(deduction.net_salary, Decimal('5000000.00'))
        self.assertIsNone(deduction.journal)
        self.assertEqual(self.first_installment(loan).status, 'pending')

    def test_invalid_month(self):
        with self.assertRaises(InvalidInput):
            self.run_salary(month=13)
        with self.assertRaises(InvalidInput):
            self.run_salary(gross='-1')


class TestMixedDeduction(DeductionTestCase):

    def setUp(self):
        super().setUp()
        self.loan = create_disbursed_loan(
            self.member, self.cash, deduction_method='mixed',
            salary_deduction_percentage=Decimal('60'),
            service_allowance_deduction_percentage=Decimal('40'),
        )

    def test_salary_then_allowance_settle_installment(self):
        deduction = self.run_salary()

        installment = self.first_installment(self.loan)
        self.assertEqual(deduction.loan_deduction, Decimal('639711.00'))
        self.assertEqual(installment.status, 'partial')
        self.assertEqual(installment.outstanding_amount, Decimal('426474.00'))

        allowance = self.run_allowance('1000000')

        installment.refresh_from_db()
        self.assertEqual(installment.status, 'auto_paid')
        self.assertEqual(allowance.installment_paid, Decimal('426474.00'))
        self.assertEqual(allowance.remaining_amount, Decimal('573526.00'))
        self.assertEqual(allowance.remaining_installment_due, Decimal('0.00'))
        self.assertEqual(allowance.installments_covered, 1)

        self.loan.refresh_from_db()
        self.assertEqual(self.loan.remaining_principal, Decimal('11053815.00'))


class TestServiceAllowance(DeductionTestCase):

    def setUp(self):
        super().setUp()
        self.loan = create_disbursed_loan(self.member, self.cash, deduction_method='service_allowance')

    def test_allowance_covers_installment(self):
        allowance = self.run_allowance('1500000')

        self.assertEqual(allowance.installment_paid, Decimal('1066185.00'))
        self.assertEqual(allowance.remaining_amount, Decimal('433815.00'))
        self.assertEqual(self.first_installment(self.loan).status, 'auto_paid')

    def test_shortfall_leaves_installment_partial(self):
        allowance = self.run_allowance('500000')

        self.assertEqual(allowance.installment_paid, Decimal('500000.00'))
        self.assertEqual(allowance.remaining_amount, Decimal('0.00'))
        self.assertEqual(allowance.remaining_installment_due, Decimal('566185.00'))
        self.assertEqual(allowance.installments_covered, 0)
        self.assertEqual(self.first_installment(self.loan).status, 'partial')

    def test_salary_run_skips_allowance_loans(self):
        self.assertEqual(self.run_salary().loan_deduction, Decimal('0.00'))
        self.assertEqual(self.first_installment(self.loan).status, 'pending')

    def test_same_month_twice_rejected(self):
        self.run_allowance('1500000')
        with self.assertRaises(DuplicatePeriod):
            self.run_allowance('1500000')

    def test_installment_journals_point_at_the_run(self):
        allowance = self.run_allowance('1500000')

        journal = allowance.journals.get()
        self.assertEqual(journal.source_kind, 'service_allowance')
        self.assertEqual(journal.installment, self.first_installment(self.loan))
        self.assertEqual(journal.loan, self.loan)
        self.assertEqual(journal.get_total_debits(), Decimal('1066185.00'))

    def test_empty_run_posts_nothing(self):
        allowance = self.run_allowance('0')

        self.assertEqual(allowance.journals.count(), 0)
        self.assertEqual(self.first_installment(self.loan).status, 'pending')
