"""
Accounting Helper Functions for the Cooperative Ledger

This module builds and persists double-entry journals. Every money-moving
event (disbursement, installment payment, early settlement, cash transfer,
payroll deduction, member saving) posts through ``create_journal_entry``
inside the same database transaction as the balance change it describes.

Posting rules:
- A journal has at least 2 lines
- Each line carries exactly one positive side
- Total debits equal total credits
- Every account exists and is active
- The transaction date does not fall inside a closed accounting period
"""

from dataclasses import dataclass
from datetime import date
from decimal import Decimal
import logging

from django.db import transaction
from django.db.models import Sum
from django.utils import timezone

from cooperative import signals
from cooperative.conf import get_setting
from cooperative.exceptions import (
    AccountInactive, InsufficientLines, InvalidInput, InvalidLine,
    InvalidTransition, NotFound, PeriodClosed, UnbalancedEntry,
)
from cooperative.utils.money import MoneyCalculator

logger = logging.getLogger(__name__)


# =============================================================================
# JOURNAL SOURCES
# =============================================================================

@dataclass(frozen=True)
class ManualEntry:
    """Journal keyed in by staff, not generated by an event"""

    def journal_fields(self):
        return {'source_kind': 'manual'}


@dataclass(frozen=True)
class LoanEvent:
    loan: object
    kind: str = 'loan_disbursement'

    def journal_fields(self):
        return {'source_kind': self.kind, 'loan': self.loan}


@dataclass(frozen=True)
class InstallmentEvent:
    installment: object

    def journal_fields(self):
        return {
            'source_kind': 'installment_payment',
            'installment': self.installment,
            'loan': self.installment.loan,
        }


@dataclass(frozen=True)
class TransferEvent:
    transfer: object

    def journal_fields(self):
        return {'source_kind': 'cash_transfer', 'cash_transfer': self.transfer}


@dataclass(frozen=True)
class SalaryDeductionEvent:
    deduction: object

    def journal_fields(self):
        return {'source_kind': 'salary_deduction', 'salary_deduction': self.deduction}


@dataclass(frozen=True)
class ServiceAllowanceEvent:
    """Installment collected by a service allowance run"""
    allowance: object
    installment: object

    def journal_fields(self):
        return {
            'source_kind': 'service_allowance',
            'service_allowance': self.allowance,
            'installment': self.installment,
            'loan': self.installment.loan,
        }


@dataclass(frozen=True)
class SavingEvent:
    saving: object

    def journal_fields(self):
        return {'source_kind': 'saving', 'saving': self.saving}


@dataclass(frozen=True)
class ReversalEvent:
    journal: object

    def journal_fields(self):
        return {'source_kind': 'reversal', 'reversed_journal': self.journal}


# =============================================================================
# VALIDATION
# =============================================================================

def normalize_journal_lines(lines):
    """
    Validate raw line dicts and convert amounts to Decimal

    Args:
        lines: List of dicts with format:
               [{'account_code': '1-101', 'debit': Decimal('100'), 'credit': 0, 'memo': '...'}]

    Returns:
        list: Normalized line dicts

    Raises:
        InsufficientLines: Fewer than 2 lines
        InvalidLine: A line with both sides, neither side, or a negative side
        UnbalancedEntry: Debits != credits
    """
    if not lines or len(lines) < 2:
        raise InsufficientLines(f"Journal needs at least 2 lines, got {len(lines or [])}")

    normalized = []
    for position, line in enumerate(lines, start=1):
        if not line.get('account_code'):
            raise InvalidLine(f"Line {position} has no account code", line=position)

        debit = MoneyCalculator.round_money(line.get('debit') or 0)
        credit = MoneyCalculator.round_money(line.get('credit') or 0)

        if debit < 0 or credit < 0:
            raise InvalidLine(f"Line {position} has a negative amount", line=position)
        if debit > 0 and credit > 0:
            raise InvalidLine(f"Line {position} has both debit and credit amounts", line=position)
        if debit == 0 and credit == 0:
            raise InvalidLine(f"Line {position} has neither debit nor credit amount", line=position)

        normalized.append({
            'account_code': line['account_code'],
            'debit': debit,
            'credit': credit,
            'memo': line.get('memo') or line.get('description') or '',
        })

    validate_journal_balance(normalized)
    return normalized


def validate_journal_balance(lines):
    """
    Validate that total debits equal total credits

    Raises:
        UnbalancedEntry: If debits != credits
    """
    total_debits = sum((Decimal(line['debit']) for line in lines), Decimal('0.00'))
    total_credits = sum((Decimal(line['credit']) for line in lines), Decimal('0.00'))

    if total_debits != total_credits:
        raise UnbalancedEntry(
            f"Journal entry not balanced: Debits {total_debits:,.2f} != Credits {total_credits:,.2f}",
            total_debits=str(total_debits),
            total_credits=str(total_credits),
        )


def get_account(code):
    """
    Look up a chart entry by code

    Raises:
        NotFound: Unknown code
    """
    from cooperative.models import ChartOfAccount

    try:
        return ChartOfAccount.objects.get_by_code(code)
    except ChartOfAccount.DoesNotExist:
        raise NotFound(f"Account {code} not found. Please initialize Chart of Accounts.", code=code)


def resolve_accounts(lines):
    accounts = {}
    for line in lines:
        code = line['account_code']
        if code in accounts:
            continue
        account = get_account(code)
        if not account.is_active:
            raise AccountInactive(f"Account {code} is inactive", code=code)
        accounts[code] = account
    return accounts


def resolve_period(transaction_date):
    """
    Lock and return the period covering the date, if any

    Raises:
        PeriodClosed: The covering period is closed
    """
    from cooperative.models import AccountingPeriod

    period = AccountingPeriod.objects.select_for_update().covering(transaction_date).first()

    if period is None and get_setting('AUTO_CREATE_PERIODS'):
        period = AccountingPeriod.create_monthly(transaction_date.year, transaction_date.month)

    if period is not None and period.is_closed:
        raise PeriodClosed(
            f"Cannot post on {transaction_date}: period {period.name} is closed",
            period=period.name,
        )
    return period


# =============================================================================
# POSTING
# =============================================================================

@transaction.atomic
def create_journal_entry(
    journal_type,
    transaction_date,
    description,
    created_by,
    lines,
    source=None,
    auto_generated=True,
):
    """
    Master function for creating journal entries with validation

    All checks run before the first write. Header and lines are written in
    one transaction and the journal is stamped as posted last.

    Args:
        journal_type: 'general', 'special', 'adjusting', 'closing' or 'reversing'
        transaction_date: Date of the transaction
        description: Journal description
        created_by: User posting the entry (optional)
        lines: List of line dicts (see ``normalize_journal_lines``)
        source: Journal source event (ManualEntry, LoanEvent, ...)
        auto_generated: False for entries keyed in by staff

    Returns:
        Journal: The posted journal

    Raises:
        InsufficientLines, InvalidLine, UnbalancedEntry, NotFound,
        AccountInactive, PeriodClosed
    """
    from cooperative.models import Journal, JournalLine

    if journal_type not in dict(Journal.TYPE_CHOICES):
        raise InvalidInput(f"Unknown journal type: {journal_type}", field='journal_type')
    if not isinstance(transaction_date, date):
        raise InvalidInput("transaction_date must be a date", field='transaction_date')

    normalized = normalize_journal_lines(lines)
    accounts = resolve_accounts(normalized)
    period = resolve_period(transaction_date)

    source = source or ManualEntry()

    journal = Journal(
        journal_type=journal_type,
        transaction_date=transaction_date,
        period=period,
        description=description,
        is_auto_generated=auto_generated,
        created_by=created_by,
        **source.journal_fields()
    )
    journal.save()

    for line_number, line in enumerate(normalized, start=1):
        JournalLine.objects.create(
            journal=journal,
            line_number=line_number,
            account=accounts[line['account_code']],
            debit=line['debit'],
            credit=line['credit'],
            memo=line['memo'],
        )

    journal.mark_posted()

    total = sum((line['debit'] for line in normalized), Decimal('0.00'))
    logger.info(
        f"Journal entry posted: {journal.journal_number} | "
        f"Type: {journal_type} | Source: {journal.source_kind} | Amount: {total:,.2f}"
    )

    signals.emit(
        signals.journal_posted,
        sender=Journal,
        journal_number=journal.journal_number,
        source_kind=journal.source_kind,
        amount=str(total),
        transaction_date=str(transaction_date),
    )

    return journal


@transaction.atomic
def reverse_journal(journal, reversed_by, reason='', reversal_date=None):
    """
    Post a reversing journal with every line's sides swapped

    The original is never modified. The reversal date must fall in an open
    period; it defaults to today.

    Raises:
        InvalidTransition: Journal not posted, already reversed, or itself a reversal
        PeriodClosed: Reversal date inside a closed period
    """
    from cooperative.models import Journal

    if not journal.is_posted:
        raise InvalidTransition(f"Journal {journal.journal_number} is not posted")
    if journal.journal_type == 'reversing':
        raise InvalidTransition(f"Journal {journal.journal_number} is already a reversal")
    if Journal.objects.filter(reversed_journal=journal).exists():
        raise InvalidTransition(f"Journal {journal.journal_number} has already been reversed")

    lines = [
        {
            'account_code': line.account.code,
            'debit': line.credit,
            'credit': line.debit,
            'memo': f"Reversal: {line.memo}",
        }
        for line in journal.lines.select_related('account')
    ]

    reversal = create_journal_entry(
        journal_type='reversing',
        transaction_date=reversal_date or timezone.localdate(),
        description=f"Reversal of {journal.journal_number}: {reason}".strip(),
        created_by=reversed_by,
        lines=lines,
        source=ReversalEvent(journal),
        auto_generated=False,
    )

    signals.emit(
        signals.journal_reversed,
        sender=Journal,
        journal_number=journal.journal_number,
        reversal_number=reversal.journal_number,
        reason=reason,
    )
    return reversal


# =============================================================================
# ACCOUNT MAPPING
# =============================================================================

def get_cash_coa_code(cash_account):
    """
    Chart code that mirrors a cash account

    Raises:
        NotFound: No mapping for the cash account type
    """
    mapping = get_setting('CASH_ACCOUNT_COA_MAP')
    code = mapping.get(cash_account.type)
    if not code:
        raise NotFound(f"No chart account mapped for cash account type {cash_account.type}")
    return code


def get_saving_coa_code(savings_type):
    """
    Liability account holding a savings type

    Raises:
        NotFound: No mapping for the savings type
    """
    code = get_setting('SAVING_TYPE_COA_MAP').get(savings_type)
    if not code:
        raise NotFound(f"No chart account mapped for savings type {savings_type}")
    return code


# =============================================================================
# EVENT JOURNALS
# =============================================================================

def post_loan_disbursement_journal(loan, disbursed_by):
    """
    Create journal entry for loan disbursement

    Journal Entry:
        Dr  1-201 Loan Receivable               xxx
            Cr  1-10x Cash (loan's cash account)    xxx
    """
    lines = [
        {
            'account_code': get_setting('RECEIVABLE_ACCOUNT'),
            'debit': loan.principal_amount,
            'credit': 0,
            'memo': f"Loan disbursement to {loan.member_display}",
        },
        {
            'account_code': get_cash_coa_code(loan.cash_account),
            'debit': 0,
            'credit': loan.principal_amount,
            'memo': f"Cash paid for loan {loan.loan_number}",
        },
    ]

    return create_journal_entry(
        journal_type='special',
        transaction_date=loan.disbursement_date or timezone.localdate(),
        description=f"Loan Disbursement: {loan.loan_number}",
        created_by=disbursed_by,
        lines=lines,
        source=LoanEvent(loan, 'loan_disbursement'),
    )


def post_installment_payment_journal(installment, amount, principal_portion, interest_portion,
                                     processed_by, payment_date, source=None):
    """
    Create journal entry for an installment payment

    ``source`` defaults to ``InstallmentEvent``; allowance runs pass a
    ``ServiceAllowanceEvent`` so the journal points back at the run.

    Journal Entry:
        Dr  1-10x Cash                          xxx
            Cr  1-201 Loan Receivable               [principal]
            Cr  4-101 Interest Income               [interest]
    """
    loan = installment.loan

    lines = [
        {
            'account_code': get_cash_coa_code(loan.cash_account),
            'debit': amount,
            'credit': 0,
            'memo': f"Installment {installment.installment_number} from {loan.member_display}",
        }
    ]

    if principal_portion > 0:
        lines.append({
            'account_code': get_setting('RECEIVABLE_ACCOUNT'),
            'debit': 0,
            'credit': principal_portion,
            'memo': f"Principal repayment for loan {loan.loan_number}",
        })

    if interest_portion > 0:
        lines.append({
            'account_code': get_setting('INTEREST_INCOME_ACCOUNT'),
            'debit': 0,
            'credit': interest_portion,
            'memo': f"Interest income from loan {loan.loan_number}",
        })

    return create_journal_entry(
        journal_type='special',
        transaction_date=payment_date,
        description=f"Installment Payment: {loan.loan_number} #{installment.installment_number}",
        created_by=processed_by,
        lines=lines,
        source=source or InstallmentEvent(installment),
    )


def post_early_settlement_journal(loan, settlement_amount, settled_by, settlement_date):
    """
    Create journal entry for early settlement

    Journal Entry:
        Dr  1-10x Cash                          xxx
            Cr  1-201 Loan Receivable               xxx
    """
    lines = [
        {
            'account_code': get_cash_coa_code(loan.cash_account),
            'debit': settlement_amount,
            'credit': 0,
            'memo': f"Early settlement from {loan.member_display}",
        },
        {
            'account_code': get_setting('RECEIVABLE_ACCOUNT'),
            'debit': 0,
            'credit': settlement_amount,
            'memo': f"Remaining principal of loan {loan.loan_number}",
        },
    ]

    return create_journal_entry(
        journal_type='special',
        transaction_date=settlement_date,
        description=f"Early Settlement: {loan.loan_number}",
        created_by=settled_by,
        lines=lines,
        source=LoanEvent(loan, 'early_settlement'),
    )


def post_cash_transfer_journal(transfer, created_by):
    """
    Create journal entry for a transfer between cash accounts

    Journal Entry:
        Dr  Destination cash                    xxx
            Cr  Source cash                         xxx
    """
    lines = [
        {
            'account_code': get_cash_coa_code(transfer.to_account),
            'debit': transfer.amount,
            'credit': 0,
            'memo': f"Transfer in from {transfer.from_account.name}",
        },
        {
            'account_code': get_cash_coa_code(transfer.from_account),
            'debit': 0,
            'credit': transfer.amount,
            'memo': f"Transfer out to {transfer.to_account.name}",
        },
    ]

    return create_journal_entry(
        journal_type='general',
        transaction_date=transfer.transfer_date,
        description=f"Cash Transfer: {transfer.transfer_number} - {transfer.purpose}",
        created_by=created_by,
        lines=lines,
        source=TransferEvent(transfer),
    )


def post_salary_deduction_journal(deduction, cash_account, processed_by):
    """
    Create journal entry for the non-loan part of a payroll deduction

    Loan installments collected by the same run post their own journals.

    Journal Entry:
        Dr  1-101 General Cash                  xxx
            Cr  2-202 Mandatory Savings             [savings]
            Cr  4-201 Other Income                  [other]
    """
    amount = deduction.savings_deduction + deduction.other_deductions
    member = deduction.member_display

    lines = [
        {
            'account_code': get_cash_coa_code(cash_account),
            'debit': amount,
            'credit': 0,
            'memo': f"Payroll deduction {deduction.period_label} from {member}",
        }
    ]

    if deduction.savings_deduction > 0:
        lines.append({
            'account_code': get_setting('MANDATORY_SAVINGS_ACCOUNT'),
            'debit': 0,
            'credit': deduction.savings_deduction,
            'memo': f"Mandatory savings of {member}",
        })

    if deduction.other_deductions > 0:
        lines.append({
            'account_code': get_setting('OTHER_INCOME_ACCOUNT'),
            'debit': 0,
            'credit': deduction.other_deductions,
            'memo': f"Other deductions of {member}",
        })

    return create_journal_entry(
        journal_type='special',
        transaction_date=deduction.deduction_date,
        description=f"Salary Deduction: {member} {deduction.period_label}",
        created_by=processed_by,
        lines=lines,
        source=SalaryDeductionEvent(deduction),
    )


def post_saving_journal(saving, approved_by):
    """
    Create journal entry for an approved member saving

    Journal Entry:
        Dr  1-10x Cash (saving's cash account)   xxx
            Cr  2-20x Member Savings (by type)      xxx
    """
    lines = [
        {
            'account_code': get_cash_coa_code(saving.cash_account),
            'debit': saving.amount,
            'credit': 0,
            'memo': f"{saving.get_savings_type_display()} from {saving.member_display}",
        },
        {
            'account_code': get_saving_coa_code(saving.savings_type),
            'debit': 0,
            'credit': saving.amount,
            'memo': f"{saving.get_savings_type_display()} of {saving.member_display}",
        },
    ]

    return create_journal_entry(
        journal_type='special',
        transaction_date=saving.transaction_date,
        description=f"Member Saving: {saving.saving_number}",
        created_by=approved_by,
        lines=lines,
        source=SavingEvent(saving),
    )


# =============================================================================
# REPORTING
# =============================================================================

def get_trial_balance(as_of=None):
    """
    Trial balance over posted journals

    Args:
        as_of: Include journals dated on or before this date (default: all)

    Returns:
        dict: {'rows': [...], 'total_debits', 'total_credits', 'is_balanced', 'as_of'}
    """
    from cooperative.models import ChartOfAccount, JournalLine

    line_filter = {'journal__posted_at__isnull': False, 'journal__deleted_at__isnull': True}
    if as_of:
        line_filter['journal__transaction_date__lte'] = as_of

    sums = {
        row['account_id']: row
        for row in JournalLine.objects.filter(**line_filter)
        .values('account_id')
        .annotate(debit_total=Sum('debit'), credit_total=Sum('credit'))
    }

    rows = []
    total_debits = Decimal('0.00')
    total_credits = Decimal('0.00')

    for account in ChartOfAccount.objects.filter(pk__in=sums.keys()).order_by('code'):
        net = (sums[account.pk]['debit_total'] or Decimal('0.00')) - (sums[account.pk]['credit_total'] or Decimal('0.00'))
        debit = net if net > 0 else Decimal('0.00')
        credit = -net if net < 0 else Decimal('0.00')
        total_debits += debit
        total_credits += credit
        rows.append({'account': account, 'debit': debit, 'credit': credit})

    return {
        'rows': rows,
        'total_debits': total_debits,
        'total_credits': total_credits,
        'is_balanced': total_debits == total_credits,
        'as_of': as_of,
    }
