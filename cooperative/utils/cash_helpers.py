"""
Cash account balance manager

The only code path that changes ``CashAccount.balance``. Callers run it in
the same ``transaction.atomic`` block as the journal describing the
movement, so a failure in either leaves both untouched.
"""

from decimal import Decimal
import logging

from django.db import transaction
from django.db.models import F
from django.utils import timezone

from cooperative.exceptions import AccountInactive, ConcurrencyConflict, InsufficientFunds, InvalidInput
from cooperative.utils.money import MoneyCalculator

logger = logging.getLogger(__name__)

CREDIT = 'credit'   # money in
DEBIT = 'debit'     # money out


def lock_cash_accounts(*accounts):
    """
    Lock cash account rows in primary-key order

    Two transfers moving money in opposite directions between the same pair
    of accounts acquire their locks in the same order.

    Returns:
        dict: pk -> locked CashAccount
    """
    from cooperative.models import CashAccount

    pks = sorted({account.pk for account in accounts}, key=str)
    locked = CashAccount.objects.select_for_update().filter(pk__in=pks).order_by('pk')
    return {account.pk: account for account in locked}


@transaction.atomic
def adjust_cash_balance(account, amount, direction, reference=''):
    """
    Increment or decrement a cash account balance

    Args:
        account: CashAccount (stale instances are fine, the row is re-read)
        amount: Positive amount to move
        direction: CREDIT adds to the balance, DEBIT subtracts from it
        reference: Loan, transfer or run number for the log

    Returns:
        Decimal: The new balance

    Raises:
        InvalidInput: Non-positive amount or unknown direction
        AccountInactive: Account is deactivated
        InsufficientFunds: A debit larger than the current balance
    """
    from cooperative.models import CashAccount

    amount = MoneyCalculator.round_money(amount)
    if amount <= 0:
        raise InvalidInput("Cash movement amount must be positive", field='amount')
    if direction not in (CREDIT, DEBIT):
        raise InvalidInput(f"Unknown cash movement direction: {direction}", field='direction')

    locked = CashAccount.objects.select_for_update().get(pk=account.pk)

    if not locked.is_active:
        logger.warning(f"Cash movement rejected: Account={locked.code} is inactive, Ref={reference}")
        raise AccountInactive(f"Cash account {locked.code} is inactive", account=locked.code)

    old_balance = locked.balance

    if direction == DEBIT and old_balance < amount:
        logger.warning(
            f"Cash movement rejected: Account={locked.code}, "
            f"Amount={amount}, Balance={old_balance}, Ref={reference}"
        )
        raise InsufficientFunds(
            f"Insufficient balance in {locked.name}: available {old_balance:,.2f}, required {amount:,.2f}",
            account=locked.code,
            available=str(old_balance),
            required=str(amount),
        )

    delta = amount if direction == CREDIT else -amount
    CashAccount.objects.filter(pk=locked.pk).update(
        balance=F('balance') + delta,
        updated_at=timezone.now(),
    )
    locked.refresh_from_db(fields=['balance'])

    expected_balance = old_balance + delta
    if abs(locked.balance - expected_balance) > Decimal('0.01'):
        logger.error(
            f"Balance mismatch after cash movement! "
            f"Expected: {expected_balance}, Actual: {locked.balance}, Account: {locked.code}"
        )
        raise ConcurrencyConflict("Balance update verification failed", account=locked.code)

    account.balance = locked.balance

    logger.info(
        f"Cash {direction}: Account={locked.code}, Amount={amount}, "
        f"OldBalance={old_balance}, NewBalance={locked.balance}, Ref={reference}"
    )
    return locked.balance
