"""
Cooperative Engine Services

Entry points for callers that hold ids rather than model instances
(views, tasks, other apps). Each service method resolves its records,
delegates to the model or ledger helper that owns the rule, and reports
failures as ``CooperativeError`` subclasses:

- a missing row becomes ``NotFound``
- a lock wait that times out or deadlocks becomes ``ConcurrencyConflict``
"""

from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from functools import wraps
import logging

from django.contrib.auth import get_user_model
from django.core.exceptions import ObjectDoesNotExist, ValidationError
from django.db import OperationalError, transaction

from cooperative.exceptions import (
    BusinessRuleViolation, ConcurrencyConflict, InvalidInput, NotFound,
)
from cooperative.models import (
    AccountingPeriod, CashAccount, CashTransfer, Installment, Journal, Loan,
    SalaryDeduction, Saving, ServiceAllowance,
)
from cooperative.utils import accounting_helpers
from cooperative.utils.accounting_helpers import ManualEntry
from cooperative.utils.money import compute_installment

logger = logging.getLogger(__name__)


# =============================================================================
# RESULTS
# =============================================================================

@dataclass(frozen=True)
class SettlementSummary:
    loan_number: str
    original_principal: Decimal
    settlement_amount: Decimal
    saved_interest: Decimal
    cancelled_installments: int
    journal: Journal


@dataclass(frozen=True)
class CashTransferResult:
    transfer: CashTransfer
    from_balance: Decimal
    to_balance: Decimal
    journal: Journal


@dataclass(frozen=True)
class ServiceAllowanceResult:
    allowance: ServiceAllowance
    installment_paid: Decimal
    remaining_amount: Decimal
    remaining_installment_due: Decimal


# =============================================================================
# HELPERS
# =============================================================================

def _get(model, pk, label=None):
    if pk is None:
        raise NotFound(f"{label or model._meta.verbose_name} id is required")
    try:
        return model.objects.get(pk=pk)
    except (ObjectDoesNotExist, ValidationError, ValueError):
        raise NotFound(f"{label or model._meta.verbose_name} {pk} not found", id=str(pk))


def _get_user(user_id):
    if user_id is None:
        return None
    return _get(get_user_model(), user_id, 'User')


def service_call(func):
    """Log rejected operations and translate lock failures"""

    @wraps(func)
    def wrapper(*args, **kwargs):
        try:
            return func(*args, **kwargs)
        except OperationalError as exc:
            logger.warning(f"{func.__qualname__} lost a lock race: {exc}")
            raise ConcurrencyConflict(str(exc)) from exc
        except (BusinessRuleViolation, InvalidInput, NotFound) as exc:
            logger.warning(f"{func.__qualname__} rejected: [{exc.code}] {exc.message}")
            raise

    return wrapper


# =============================================================================
# LOAN SERVICE
# =============================================================================

class LoanService:
    """Loan lifecycle: approval, disbursement, repayment, settlement"""

    @staticmethod
    def calculate_installment(principal, annual_rate_percent, months):
        """
        Preview the fixed monthly installment

        Example:
            LoanService.calculate_installment(Decimal('12000000'), Decimal('12'), 12)
            # Decimal('1066185')
        """
        return compute_installment(principal, annual_rate_percent, months)

    @staticmethod
    @service_call
    @transaction.atomic
    def apply_for_loan(member_id, cash_account_id, principal_amount, annual_interest_rate,
                       tenure_months, deduction_method='none', salary_deduction_percentage=0,
                       service_allowance_deduction_percentage=0, loan_purpose=''):
        """Register a pending loan application"""
        loan = Loan(
            member=_get_user(member_id),
            cash_account=_get(CashAccount, cash_account_id),
            principal_amount=principal_amount,
            annual_interest_rate=annual_interest_rate,
            tenure_months=tenure_months,
            deduction_method=deduction_method,
            salary_deduction_percentage=salary_deduction_percentage,
            service_allowance_deduction_percentage=service_allowance_deduction_percentage,
            loan_purpose=loan_purpose,
        )
        loan.save()
        logger.info(f"Loan application registered: {loan.loan_number} for {loan.member_display}")
        return loan

    @staticmethod
    @service_call
    def approve_loan(loan_id, approved_by_id=None):
        return _get(Loan, loan_id).approve(_get_user(approved_by_id))

    @staticmethod
    @service_call
    def reject_loan(loan_id, rejected_by_id=None, reason=''):
        return _get(Loan, loan_id).reject(_get_user(rejected_by_id), reason)

    @staticmethod
    @service_call
    def disburse_loan(loan_id, disbursed_by_id=None, disbursement_date=None):
        """
        Disburse an approved loan

        Returns:
            Loan: Refreshed loan, status 'disbursed', schedule written
        """
        loan = _get(Loan, loan_id)
        loan.disburse(_get_user(disbursed_by_id), disbursement_date)
        return loan

    @staticmethod
    @service_call
    def pay_installment(installment_id, method, confirmed_by_id=None, amount=None, notes='',
                        payment_date=None):
        """
        Record a payment against an installment

        Args:
            installment_id: Installment id
            method: 'cash', 'transfer', 'salary' or 'service_allowance'
            confirmed_by_id: Confirming user id (optional)
            amount: Amount received, default everything outstanding
            notes: Free text
            payment_date: Default today

        Returns:
            Installment
        """
        installment = _get(Installment, installment_id)
        return installment.pay(
            method,
            confirmed_by=_get_user(confirmed_by_id),
            amount=amount,
            notes=notes,
            payment_date=payment_date,
        )

    @staticmethod
    @service_call
    def submit_manual_payment(installment_id, notes=''):
        return _get(Installment, installment_id).submit_manual_payment(notes)

    @staticmethod
    @service_call
    def settle_early(loan_id, settled_by_id=None, notes=None, settlement_date=None):
        """
        Settle a loan early for its remaining principal

        Returns:
            SettlementSummary
        """
        loan = _get(Loan, loan_id)
        summary = loan.settle_early(_get_user(settled_by_id), notes or '', settlement_date)
        return SettlementSummary(**summary)

    @staticmethod
    @service_call
    def mark_overdue(as_of=None):
        count = Installment.objects.mark_overdue(as_of)
        logger.info(f"Installments marked overdue: {count}")
        return count


# =============================================================================
# LEDGER SERVICE
# =============================================================================

class LedgerService:
    """Manual journals, reversals, accounting periods and reports"""

    @staticmethod
    @service_call
    def post_journal(lines, transaction_date, journal_type='general', source=None,
                     description='', created_by_id=None):
        """
        Post a balanced journal

        Args:
            lines: [{'account_code': '1-101', 'debit': Decimal('100'), 'credit': 0, 'memo': ''}]
            transaction_date: Date of the entry
            journal_type: 'general', 'special', 'adjusting', 'closing' or 'reversing'
            source: Journal source event, default ManualEntry
            description: Journal description
            created_by_id: Posting user id (optional)

        Returns:
            Journal
        """
        source = source or ManualEntry()
        return accounting_helpers.create_journal_entry(
            journal_type=journal_type,
            transaction_date=transaction_date,
            description=description,
            created_by=_get_user(created_by_id),
            lines=lines,
            source=source,
            auto_generated=not isinstance(source, ManualEntry),
        )

    @staticmethod
    @service_call
    def reverse_journal(journal_id, reversed_by_id=None, reason='', reversal_date=None):
        journal = _get(Journal, journal_id)
        return accounting_helpers.reverse_journal(journal, _get_user(reversed_by_id), reason, reversal_date)

    @staticmethod
    @service_call
    @transaction.atomic
    def create_period(start_date, end_date, name=''):
        if not isinstance(start_date, date) or not isinstance(end_date, date):
            raise InvalidInput("Period start and end must be dates")
        period = AccountingPeriod(start_date=start_date, end_date=end_date, name=name)
        period.save()
        logger.info(f"Accounting period created: {period.name}")
        return period

    @staticmethod
    @service_call
    def close_period(period_id, closed_by_id=None):
        period = _get(AccountingPeriod, period_id)
        period.close(_get_user(closed_by_id))
        return period

    @staticmethod
    @service_call
    def reopen_period(period_id, reopened_by_id=None):
        period = _get(AccountingPeriod, period_id)
        period.reopen(_get_user(reopened_by_id))
        return period

    @staticmethod
    def trial_balance(as_of=None):
        return accounting_helpers.get_trial_balance(as_of)


# =============================================================================
# CASH SERVICE
# =============================================================================

class CashService:
    """Transfers between cash accounts: one-step or request, approve, cancel"""

    @staticmethod
    def _result(transfer):
        return CashTransferResult(
            transfer=transfer,
            from_balance=transfer.from_account.balance,
            to_balance=transfer.to_account.balance,
            journal=transfer.journal,
        )

    @staticmethod
    @service_call
    def transfer_cash(from_account_id, to_account_id, amount, transfer_date=None, purpose='',
                      created_by_id=None, notes=''):
        """
        Move money between cash accounts

        Returns:
            CashTransferResult
        """
        if from_account_id == to_account_id:
            raise InvalidInput("Cannot transfer to the same account", field='to_account')

        source = _get(CashAccount, from_account_id)
        destination = _get(CashAccount, to_account_id)

        transfer = CashTransfer.execute(
            source, destination, amount, transfer_date, purpose,
            created_by=_get_user(created_by_id), notes=notes,
        )
        return CashService._result(transfer)

    @staticmethod
    @service_call
    def request_transfer(from_account_id, to_account_id, amount, transfer_date=None, purpose='',
                         created_by_id=None, notes=''):
        """Register a pending transfer; balances move on approval"""
        if from_account_id == to_account_id:
            raise InvalidInput("Cannot transfer to the same account", field='to_account')

        return CashTransfer.request(
            _get(CashAccount, from_account_id),
            _get(CashAccount, to_account_id),
            amount, transfer_date, purpose,
            created_by=_get_user(created_by_id), notes=notes,
        )

    @staticmethod
    @service_call
    def approve_transfer(transfer_id, approved_by_id=None):
        """
        Complete a pending transfer

        Returns:
            CashTransferResult
        """
        transfer = _get(CashTransfer, transfer_id)
        transfer.approve(_get_user(approved_by_id))
        return CashService._result(transfer)

    @staticmethod
    @service_call
    def cancel_transfer(transfer_id, cancelled_by_id=None, reason=''):
        return _get(CashTransfer, transfer_id).cancel(_get_user(cancelled_by_id), reason)


# =============================================================================
# SAVINGS SERVICE
# =============================================================================

class SavingsService:
    """Member savings deposits"""

    @staticmethod
    @service_call
    @transaction.atomic
    def record_saving(member_id, cash_account_id, savings_type, amount, transaction_date=None, notes=''):
        return Saving.record(
            _get_user(member_id), _get(CashAccount, cash_account_id), savings_type, amount,
            transaction_date=transaction_date, notes=notes,
        )

    @staticmethod
    @service_call
    def approve_saving(saving_id, approved_by_id=None):
        """
        Approve a pending saving

        Returns:
            Saving: Refreshed, status 'approved', journal posted
        """
        saving = _get(Saving, saving_id)
        saving.approve(_get_user(approved_by_id))
        return saving

    @staticmethod
    @service_call
    def reject_saving(saving_id, rejected_by_id=None, reason=''):
        return _get(Saving, saving_id).reject(_get_user(rejected_by_id), reason)

    @staticmethod
    def member_balance(member_id, savings_type=None):
        return Saving.objects.balance_for_member(_get_user(member_id), savings_type)


# =============================================================================
# DEDUCTION SERVICE
# =============================================================================

class DeductionService:

    @staticmethod
    @service_call
    def distribute_salary_deduction(member_id, month, year, gross_salary, options=None,
                                    processed_by_id=None):
        """
        Run the payroll deduction for one member and month

        Args:
            options: {'savings_deduction', 'other_deductions', 'notes', 'deduction_date'}

        Returns:
            SalaryDeduction
        """
        options = dict(options or {})
        unknown = set(options) - {'savings_deduction', 'other_deductions', 'notes', 'deduction_date'}
        if unknown:
            raise InvalidInput(f"Unknown options: {', '.join(sorted(unknown))}")

        return SalaryDeduction.process_for_member(
            _get_user(member_id), month, year, gross_salary,
            processed_by=_get_user(processed_by_id),
            **options
        )

    @staticmethod
    @service_call
    def distribute_service_allowance(member_id, month, year, received_amount, processed_by_id=None,
                                     notes='', payment_date=None):
        allowance = ServiceAllowance.process_for_member(
            _get_user(member_id), month, year, received_amount,
            processed_by=_get_user(processed_by_id),
            notes=notes,
            payment_date=payment_date,
        )
        return ServiceAllowanceResult(
            allowance=allowance,
            installment_paid=allowance.installment_paid,
            remaining_amount=allowance.remaining_amount,
            remaining_installment_due=allowance.remaining_installment_due,
        )
