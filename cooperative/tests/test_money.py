import unittest
from datetime import date
from decimal import Decimal

from cooperative.exceptions import InvalidInput
from cooperative.utils.money import (
    MoneyCalculator, build_schedule, compute_installment, schedule_summary,
)


class TestMoneyCalculator(unittest.TestCase):

    def test_round_money_half_up(self):
        self.assertEqual(MoneyCalculator.round_money('2.345'), Decimal('2.35'))
        self.assertEqual(MoneyCalculator.round_money(Decimal('2.344')), Decimal('2.34'))

    def test_floats_rejected(self):
        with self.assertRaises(InvalidInput):
            MoneyCalculator.round_money(0.1)
        with self.assertRaises(InvalidInput):
            MoneyCalculator.to_decimal(True)

    def test_unparsable_string_rejected(self):
        with self.assertRaises(InvalidInput):
            MoneyCalculator.to_decimal('twelve')

    def test_format_currency(self):
        self.assertEqual(MoneyCalculator.format_currency(Decimal('1234567.891')), 'Rp1,234,567.89')

    def test_calculate_percentage(self):
        self.assertEqual(
            MoneyCalculator.calculate_percentage(Decimal('1066185'), 60), Decimal('639711.00')
        )


class TestComputeInstallment(unittest.TestCase):

    def test_reducing_balance_rounds_to_whole_unit(self):
        """12,000,000 at 12% over 12 months"""
        self.assertEqual(
            compute_installment(Decimal('12000000'), Decimal('12'), 12), Decimal('1066185')
        )

    def test_zero_rate_splits_principal(self):
        self.assertEqual(compute_installment(Decimal('1000000'), Decimal('0'), 3), Decimal('333333.33'))

    def test_single_month(self):
        # 1,000,000 plus one month at 1%
        self.assertEqual(compute_installment(Decimal('1000000'), Decimal('12'), 1), Decimal('1010000'))

    def test_invalid_terms(self):
        with self.assertRaises(InvalidInput):
            compute_installment(Decimal('1000000'), Decimal('12'), 0)
        with self.assertRaises(InvalidInput):
            compute_installment(Decimal('1000000'), Decimal('-1'), 12)
        with self.assertRaises(InvalidInput):
            compute_installment(Decimal('0'), Decimal('12'), 12)
        with self.assertRaises(InvalidInput):
            compute_installment(1000000.0, Decimal('12'), 12)


class TestBuildSchedule(unittest.TestCase):

    def schedule(self, principal='12000000', rate='12', months=12, start=date(2026, 1, 15)):
        installment = compute_installment(Decimal(principal), Decimal(rate), months)
        return build_schedule(Decimal(principal), Decimal(rate), months, installment, start)

    def test_first_rows(self):
        rows = self.schedule()

        self.assertEqual(rows[0].interest_amount, Decimal('120000.00'))
        self.assertEqual(rows[0].principal_amount, Decimal('946185.00'))
        self.assertEqual(rows[0].remaining_principal, Decimal('11053815.00'))
        self.assertEqual(rows[1].interest_amount, Decimal('110538.15'))
        self.assertEqual(rows[1].principal_amount, Decimal('955646.85'))

    def test_principal_sums_exactly(self):
        rows = self.schedule()

        self.assertEqual(len(rows), 12)
        self.assertEqual(sum(r.principal_amount for r in rows), Decimal('12000000.00'))
        self.assertEqual(rows[-1].remaining_principal, Decimal('0.00'))
        for row in rows:
            self.assertEqual(row.principal_amount + row.interest_amount, row.total_amount)
        for row in rows[:-1]:
            self.assertEqual(row.total_amount, Decimal('1066185'))

    def test_last_row_absorbs_residue(self):
        rows = self.schedule(principal='1000', rate='10', months=3)

        self.assertEqual([r.interest_amount for r in rows], [Decimal('8.33'), Decimal('5.58'), Decimal('2.80')])
        self.assertEqual(rows[-1].principal_amount, Decimal('335.91'))
        self.assertEqual(rows[-1].total_amount, Decimal('338.71'))
        self.assertEqual(sum(r.principal_amount for r in rows), Decimal('1000.00'))

    def test_due_dates_clamp_to_month_end(self):
        rows = self.schedule(months=3, start=date(2026, 1, 31))

        self.assertEqual(
            [r.due_date for r in rows],
            [date(2026, 2, 28), date(2026, 3, 31), date(2026, 4, 30)],
        )

    def test_zero_rate_schedule(self):
        rows = self.schedule(principal='1000000', rate='0', months=3)

        self.assertTrue(all(r.interest_amount == 0 for r in rows))
        self.assertEqual(rows[-1].principal_amount, Decimal('333333.34'))
        self.assertEqual(sum(r.principal_amount for r in rows), Decimal('1000000.00'))

    def test_summary(self):
        summary = schedule_summary(self.schedule())

        self.assertEqual(summary['installments'], 12)
        self.assertEqual(summary['total_principal'], Decimal('12000000.00'))
        self.assertEqual(summary['total_payment'], summary['total_principal'] + summary['total_interest'])

    def test_interest_strictly_decreases(self):
        for principal in ('1000000', '12000000', '250000000'):
            for rate in ('6', '12', '18', '24'):
                for months in (6, 12, 24, 36, 60):
                    with self.subTest(principal=principal, rate=rate, months=months):
                        rows = self.schedule(principal=principal, rate=rate, months=months)
                        interest = [r.interest_amount for r in rows]

                        self.assertTrue(all(a > b for a, b in zip(interest, interest[1:])))
                        self.assertTrue(all(r.principal_amount > 0 for r in rows))
                        self.assertEqual(sum(r.principal_amount for r in rows), Decimal(principal))

    def test_tiny_balance_interest_can_repeat(self):
        rows = self.schedule(principal='100', rate='1', months=12)
        interest = [r.interest_amount for r in rows]

        self.assertEqual(interest[:3], [Decimal('0.08'), Decimal('0.08'), Decimal('0.07')])
        self.assertTrue(all(a >= b for a, b in zip(interest, interest[1:])))

    def test_installment_rounded_past_principal_rejected(self):
        """50 at 12% over 36 months rounds the installment up to 2 and repays early"""
        installment = compute_installment(Decimal('50'), Decimal('12'), 36)
        self.assertEqual(installment, Decimal('2'))

        with self.assertRaises(InvalidInput) as ctx:
            build_schedule(Decimal('50'), Decimal('12'), 36, installment, date(2026, 1, 15))

        self.assertEqual(ctx.exception.context['tenure_months'], 36)
        self.assertEqual(ctx.exception.context['principal'], '50')
