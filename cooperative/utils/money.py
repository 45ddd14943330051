"""
Decimal and Money Calculation Utilities
========================================

Provides consistent rounding, the reducing-balance installment formula and
amortization schedules. Money is always ``Decimal``; floats are rejected
because they cannot represent the minor unit exactly.
"""

from dataclasses import dataclass
from datetime import date
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP

from dateutil.relativedelta import relativedelta

from cooperative.exceptions import InvalidInput


class MoneyCalculator:
    """
    Consistent money calculations with proper rounding

    Usage:
        total = MoneyCalculator.round_money('123.456')         # Decimal('123.46')
        share = MoneyCalculator.calculate_percentage(1000, 60)  # Decimal('600.00')
    """

    TWO_PLACES = Decimal('0.01')
    WHOLE_UNIT = Decimal('1')
    ZERO = Decimal('0.00')

    @staticmethod
    def to_decimal(value, field='amount'):
        """
        Coerce an int, str or Decimal into Decimal

        Raises:
            InvalidInput: For floats, booleans, None and unparsable strings
        """
        if isinstance(value, Decimal):
            return value
        if isinstance(value, bool) or isinstance(value, float) or value is None:
            raise InvalidInput(f"{field} must be a Decimal, int or numeric string", field=field)
        try:
            return Decimal(str(value).strip())
        except (InvalidOperation, ValueError):
            raise InvalidInput(f"{field} is not a valid number: {value!r}", field=field)

    @staticmethod
    def round_money(amount, places=None, rounding=ROUND_HALF_UP):
        """
        Round amount to specified decimal places

        Args:
            amount: Amount to round (Decimal, int or str)
            places: Decimal precision (default: 2 places)
            rounding: Rounding mode (default: ROUND_HALF_UP)

        Returns:
            Decimal: Rounded amount
        """
        if amount is None:
            return MoneyCalculator.ZERO

        if places is None:
            places = MoneyCalculator.TWO_PLACES

        return MoneyCalculator.to_decimal(amount).quantize(places, rounding=rounding)

    @staticmethod
    def calculate_percentage(amount, percent, places=None):
        """
        Calculate ``percent``% of amount

        Example:
            >>> MoneyCalculator.calculate_percentage(Decimal('1066185'), 60)
            Decimal('639711.00')
        """
        if not amount or not percent:
            return MoneyCalculator.ZERO

        result = MoneyCalculator.to_decimal(amount) * MoneyCalculator.to_decimal(percent, 'percent') / 100
        return MoneyCalculator.round_money(result, places)

    @staticmethod
    def format_currency(amount, symbol='Rp'):
        """
        Format amount as currency string

        Example:
            >>> MoneyCalculator.format_currency(Decimal('1234567.89'))
            'Rp1,234,567.89'
        """
        amount = MoneyCalculator.round_money(amount)
        return f"{symbol}{amount:,.2f}"


@dataclass(frozen=True)
class ScheduleRow:
    installment_number: int
    due_date: date
    principal_amount: Decimal
    interest_amount: Decimal
    total_amount: Decimal
    remaining_principal: Decimal


def _validate_terms(principal, annual_rate_percent, months):
    principal = MoneyCalculator.to_decimal(principal, 'principal')
    rate = MoneyCalculator.to_decimal(annual_rate_percent, 'annual_interest_rate')

    if isinstance(months, bool) or not isinstance(months, int):
        raise InvalidInput("tenure must be a whole number of months", field='tenure_months')
    if months <= 0:
        raise InvalidInput("tenure must be at least one month", field='tenure_months')
    if principal <= 0:
        raise InvalidInput("principal must be positive", field='principal')
    if rate < 0:
        raise InvalidInput("interest rate cannot be negative", field='annual_interest_rate')

    return principal, rate


def monthly_rate(annual_rate_percent):
    """Annual percentage rate to a monthly fraction: 12 -> 0.01"""
    return MoneyCalculator.to_decimal(annual_rate_percent, 'annual_interest_rate') / 12 / 100


def compute_installment(principal, annual_rate_percent, months):
    """
    Fixed monthly installment under the reducing-balance method

    Formula: P × i × (1+i)^n / ((1+i)^n - 1), with i = rate / 12 / 100,
    rounded half-up to the whole currency unit. A zero rate splits the
    principal evenly and rounds to the minor unit instead.

    Args:
        principal: Loan principal
        annual_rate_percent: Annual interest rate in percent (12 for 12%)
        months: Tenure in months

    Returns:
        Decimal: Installment amount

    Raises:
        InvalidInput: For non-positive tenure or principal, negative rate,
            or float arguments

    Example:
        >>> compute_installment(Decimal('12000000'), Decimal('12'), 12)
        Decimal('1066185')
    """
    principal, rate = _validate_terms(principal, annual_rate_percent, months)

    if rate == 0:
        return MoneyCalculator.round_money(principal / months)

    i = monthly_rate(rate)
    factor = (1 + i) ** months
    installment = principal * i * factor / (factor - 1)

    return MoneyCalculator.round_money(installment, MoneyCalculator.WHOLE_UNIT)


def build_schedule(principal, annual_rate_percent, months, installment_amount, disbursement_date):
    """
    Generate the amortization schedule for a disbursed loan

    Interest for each month is the remaining balance times the monthly rate,
    rounded to the minor unit. The last row absorbs the rounding residue so
    the principal column sums to the loan principal exactly.

    Interest never increases from one row to the next. On tiny balances two
    neighbouring rows can round to the same minor unit (100 at 1% over 12
    months opens with 0.08, 0.08, 0.07).

    Args:
        principal: Loan principal
        annual_rate_percent: Annual interest rate in percent
        months: Tenure in months
        installment_amount: Frozen installment from ``compute_installment``
        disbursement_date: Row k falls due ``k`` months after this date

    Returns:
        list[ScheduleRow]

    Raises:
        InvalidInput: The whole-unit installment repays the principal before
            the last month, leaving rows with a negative amount
    """
    principal, rate = _validate_terms(principal, annual_rate_percent, months)
    installment = MoneyCalculator.to_decimal(installment_amount, 'installment_amount')
    i = monthly_rate(rate)

    remaining = principal
    rows = []

    for k in range(1, months + 1):
        interest = MoneyCalculator.round_money(remaining * i)
        principal_part = installment - interest
        remaining -= principal_part

        if k == months:
            principal_part += remaining
            remaining = Decimal('0.00')

        rows.append(ScheduleRow(
            installment_number=k,
            due_date=disbursement_date + relativedelta(months=k),
            principal_amount=MoneyCalculator.round_money(principal_part),
            interest_amount=interest,
            total_amount=MoneyCalculator.round_money(principal_part + interest),
            remaining_principal=MoneyCalculator.round_money(remaining),
        ))

    if any(
        row.principal_amount < 0 or row.interest_amount < 0
        or row.total_amount < 0 or row.remaining_principal < 0
        for row in rows
    ):
        raise InvalidInput(
            f"Installment {installment} repays {principal} at {rate}% before month {months}; "
            f"choose a larger principal or a shorter tenure",
            principal=str(principal),
            annual_interest_rate=str(rate),
            tenure_months=months,
        )

    return rows


def schedule_summary(rows):
    """Totals of a schedule: payment, interest and principal"""
    total_principal = sum((row.principal_amount for row in rows), Decimal('0.00'))
    total_interest = sum((row.interest_amount for row in rows), Decimal('0.00'))
    return {
        'installments': len(rows),
        'total_principal': total_principal,
        'total_interest': total_interest,
        'total_payment': total_principal + total_interest,
    }
