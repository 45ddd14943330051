"""
Cooperative Ledger - Consolidated Models
========================================

Ledger:   ChartOfAccount, AccountingPeriod, Journal, JournalLine
Cash:     CashAccount, CashTransfer
Loans:    Loan, Installment
Payroll:  SalaryDeduction, ServiceAllowance
Savings:  Saving

State changes that move money live on the model that owns them and run
inside ``db_transaction.atomic`` together with the journal they post.
"""

from django.conf import settings
from django.core.exceptions import ValidationError
from django.core.validators import MinValueValidator, MaxValueValidator
from django.db import IntegrityError, models, transaction as db_transaction
from django.db.models import F, Q, Sum
from django.utils import timezone
from django.utils.crypto import get_random_string
from datetime import date
from decimal import Decimal
import calendar
import logging

from .base import BaseModel, StatusTrackingMixin
from cooperative import signals
from cooperative.conf import get_setting
from cooperative.exceptions import (
    AccountInactive, AlreadyDisbursed, AlreadyPaid, AlreadySettled, DuplicatePeriod,
    ImmutableRecord, InsufficientFunds, InvalidInput, InvalidTransition, NotActive, NotFound,
    PeriodClosed, PeriodOpen, PeriodOverlap,
)
from cooperative.managers import (
    AccountingPeriodManager, CashAccountManager, ChartOfAccountManager,
    InstallmentManager, JournalManager, LoanManager, SavingManager,
)
from cooperative.utils.accounting_helpers import (
    ServiceAllowanceEvent,
    post_cash_transfer_journal,
    post_early_settlement_journal,
    post_installment_payment_journal,
    post_loan_disbursement_journal,
    post_salary_deduction_journal,
    post_saving_journal,
)
from cooperative.utils.cash_helpers import CREDIT, DEBIT, adjust_cash_balance, lock_cash_accounts
from cooperative.utils.money import MoneyCalculator, build_schedule, compute_installment

logger = logging.getLogger(__name__)

MONEY = dict(max_digits=15, decimal_places=2)


def _generate_number(model, field, prefix):
    """Unique document number: PREFIX-YYYYMMDD-XXXXXX"""
    timestamp = timezone.now().strftime('%Y%m%d')
    number = f"{prefix}-{timestamp}-{get_random_string(6, '0123456789')}"
    while model.all_objects.filter(**{field: number}).exists():
        number = f"{prefix}-{timestamp}-{get_random_string(6, '0123456789')}"
    return number


def _display_user(user):
    if user is None:
        return 'system'
    full_name = user.get_full_name() if hasattr(user, 'get_full_name') else ''
    return full_name or user.get_username()


# =============================================================================
# CHART OF ACCOUNTS
# =============================================================================

class ChartOfAccount(BaseModel, StatusTrackingMixin):
    """
    General ledger account

    The normal side defaults from the category (assets and expenses are
    debit-normal, the rest credit-normal). A contra account sits in its
    category but carries the opposite balance.
    """

    ASSETS = 'assets'
    LIABILITIES = 'liabilities'
    EQUITY = 'equity'
    REVENUE = 'revenue'
    EXPENSES = 'expenses'

    CATEGORY_CHOICES = [
        (ASSETS, 'Assets'),
        (LIABILITIES, 'Liabilities'),
        (EQUITY, 'Equity'),
        (REVENUE, 'Revenue'),
        (EXPENSES, 'Expenses'),
    ]

    NORMAL_SIDE_CHOICES = [
        ('debit', 'Debit'),
        ('credit', 'Credit'),
    ]

    DEFAULT_NORMAL_SIDE = {
        ASSETS: 'debit',
        EXPENSES: 'debit',
        LIABILITIES: 'credit',
        EQUITY: 'credit',
        REVENUE: 'credit',
    }

    # Frozen once a posted line references the account
    STRUCTURAL_FIELDS = ('code', 'category', 'normal_side', 'is_contra')

    code = models.CharField(max_length=20, unique=True, db_index=True)
    name = models.CharField(max_length=200)
    category = models.CharField(max_length=20, choices=CATEGORY_CHOICES, db_index=True)
    normal_side = models.CharField(max_length=6, choices=NORMAL_SIDE_CHOICES, blank=True)
    is_contra = models.BooleanField(default=False)
    description = models.TextField(blank=True)

    objects = ChartOfAccountManager()

    class Meta:
        verbose_name = "Chart of Account"
        verbose_name_plural = "Chart of Accounts"
        ordering = ['code']

    def __str__(self):
        return f"{self.code} - {self.name}"

    @property
    def effective_normal_side(self):
        side = self.normal_side or self.DEFAULT_NORMAL_SIDE[self.category]
        if self.is_contra:
            return 'credit' if side == 'debit' else 'debit'
        return side

    def save(self, *args, **kwargs):
        if self.category not in self.DEFAULT_NORMAL_SIDE:
            raise InvalidInput(f"Unknown account category: {self.category}", field='category')
        if not self.normal_side:
            self.normal_side = self.DEFAULT_NORMAL_SIDE[self.category]

        if not self._state.adding:
            stored = ChartOfAccount.all_objects.filter(pk=self.pk).values(*self.STRUCTURAL_FIELDS).first()
            if stored and self.journal_lines.exists():
                changed = [f for f in self.STRUCTURAL_FIELDS if stored[f] != getattr(self, f)]
                if changed:
                    raise ImmutableRecord(
                        f"Account {stored['code']} has postings; cannot change {', '.join(changed)}",
                        fields=changed,
                    )
        super().save(*args, **kwargs)

    def get_balance(self, as_of_date=None):
        """Balance on the account's effective normal side"""
        lines = self.journal_lines.filter(journal__posted_at__isnull=False)
        if as_of_date:
            lines = lines.filter(journal__transaction_date__lte=as_of_date)

        totals = lines.aggregate(debit=Sum('debit'), credit=Sum('credit'))
        debit = totals['debit'] or Decimal('0.00')
        credit = totals['credit'] or Decimal('0.00')

        if self.effective_normal_side == 'debit':
            return debit - credit
        return credit - debit


# =============================================================================
# ACCOUNTING PERIODS
# =============================================================================

class AccountingPeriod(BaseModel):
    """
    Non-overlapping date range that can be closed against new postings

    Closing locks the journals dated inside the range. Reopening is allowed
    only while no later period is closed.
    """

    name = models.CharField(max_length=100, blank=True)
    start_date = models.DateField(db_index=True)
    end_date = models.DateField(db_index=True)
    is_closed = models.BooleanField(default=False, db_index=True)
    closed_by = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name='closed_periods'
    )
    closed_at = models.DateTimeField(null=True, blank=True)

    objects = AccountingPeriodManager()

    class Meta:
        verbose_name = "Accounting Period"
        verbose_name_plural = "Accounting Periods"
        ordering = ['start_date']
        constraints = [
            models.CheckConstraint(
                condition=Q(start_date__lte=F('end_date')),
                name='accountingperiod_start_before_end'
            ),
        ]

    def __str__(self):
        return f"{self.name} ({self.start_date} to {self.end_date})"

    def clean(self):
        if not self.start_date or not self.end_date:
            raise InvalidInput("Period needs a start and an end date")
        if self.start_date > self.end_date:
            raise InvalidInput(
                f"Period start {self.start_date} is after its end {self.end_date}",
                field='start_date',
            )

        clash = AccountingPeriod.objects.overlapping(self.start_date, self.end_date).exclude(pk=self.pk).first()
        if clash:
            raise PeriodOverlap(
                f"{self.start_date} to {self.end_date} overlaps period {clash.name}",
                period=clash.name,
            )

    def save(self, *args, **kwargs):
        self.clean()
        if not self.name:
            self.name = self.generate_period_name(self.start_date, self.end_date)
        super().save(*args, **kwargs)

    @staticmethod
    def generate_period_name(start_date, end_date):
        """
        Human name for a period range

        Example:
            >>> AccountingPeriod.generate_period_name(date(2026, 3, 1), date(2026, 3, 31))
            'March 2026'
        """
        def month_end(year, month):
            return date(year, month, calendar.monthrange(year, month)[1])

        if start_date.day == 1:
            if end_date == month_end(start_date.year, start_date.month):
                return start_date.strftime('%B %Y')
            if start_date.month in (1, 4, 7, 10) and start_date.year == end_date.year \
                    and end_date == month_end(start_date.year, start_date.month + 2):
                return f"Q{(start_date.month - 1) // 3 + 1} {start_date.year}"
            if start_date.month == 1 and end_date == date(start_date.year, 12, 31):
                return f"FY {start_date.year}"

        return f"{start_date:%d %b %Y} - {end_date:%d %b %Y}"

    @classmethod
    def create_monthly(cls, year, month):
        last_day = calendar.monthrange(year, month)[1]
        period = cls(start_date=date(year, month, 1), end_date=date(year, month, last_day))
        period.save()
        logger.info(f"Accounting period created: {period.name}")
        return period

    @db_transaction.atomic
    def close(self, closed_by=None):
        """
        Close the period and lock its journals

        Raises:
            PeriodClosed: Already closed
        """
        period = AccountingPeriod.objects.select_for_update().get(pk=self.pk)
        if period.is_closed:
            raise PeriodClosed(f"Period {period.name} is already closed", period=period.name)

        now = timezone.now()
        AccountingPeriod.objects.filter(pk=period.pk).update(
            is_closed=True, closed_by=closed_by, closed_at=now, updated_at=now
        )
        locked = Journal.objects.between(period.start_date, period.end_date).update(is_locked=True)

        self.is_closed = True
        self.closed_by = closed_by
        self.closed_at = now

        logger.info(f"Accounting period closed: {period.name}, journals locked: {locked}")
        signals.emit(
            signals.period_closed,
            sender=AccountingPeriod,
            period=period.name,
            closed_by=_display_user(closed_by),
            journals_locked=locked,
        )
        return locked

    @db_transaction.atomic
    def reopen(self, reopened_by=None):
        """
        Reopen a closed period and unlock its journals

        Raises:
            PeriodOpen: Not closed
            PeriodClosed: A later period is already closed
        """
        period = AccountingPeriod.objects.select_for_update().get(pk=self.pk)
        if not period.is_closed:
            raise PeriodOpen(f"Period {period.name} is not closed", period=period.name)

        later = AccountingPeriod.objects.closed().after(period).order_by('start_date').first()
        if later:
            raise PeriodClosed(
                f"Cannot reopen {period.name}: later period {later.name} is closed",
                period=later.name,
            )

        AccountingPeriod.objects.filter(pk=period.pk).update(
            is_closed=False, closed_by=None, closed_at=None, updated_at=timezone.now()
        )
        unlocked = Journal.objects.between(period.start_date, period.end_date).update(is_locked=False)

        self.is_closed = False
        self.closed_by = None
        self.closed_at = None

        logger.info(f"Accounting period reopened: {period.name}, journals unlocked: {unlocked}")
        signals.emit(
            signals.period_reopened,
            sender=AccountingPeriod,
            period=period.name,
            reopened_by=_display_user(reopened_by),
        )
        return unlocked


# =============================================================================
# JOURNALS
# =============================================================================

class Journal(BaseModel):
    """
    Journal header - double-entry bookkeeping

    Written once by ``create_journal_entry`` and never modified afterwards;
    mistakes are corrected with a reversing journal.
    """

    TYPE_CHOICES = [
        ('general', 'General Journal'),
        ('special', 'Special Journal'),
        ('adjusting', 'Adjusting Entry'),
        ('closing', 'Closing Entry'),
        ('reversing', 'Reversing Entry'),
    ]

    NUMBER_PREFIX = {
        'general': 'GJ',
        'special': 'SJ',
        'adjusting': 'AJ',
        'closing': 'CJ',
        'reversing': 'RJ',
    }

    SOURCE_CHOICES = [
        ('manual', 'Manual Entry'),
        ('loan_disbursement', 'Loan Disbursement'),
        ('installment_payment', 'Installment Payment'),
        ('early_settlement', 'Early Settlement'),
        ('cash_transfer', 'Cash Transfer'),
        ('salary_deduction', 'Salary Deduction'),
        ('service_allowance', 'Service Allowance'),
        ('saving', 'Member Saving'),
        ('reversal', 'Reversal'),
    ]

    journal_number = models.CharField(max_length=50, unique=True, db_index=True)
    journal_type = models.CharField(max_length=20, choices=TYPE_CHOICES, db_index=True)
    transaction_date = models.DateField(db_index=True)
    period = models.ForeignKey(
        AccountingPeriod,
        on_delete=models.PROTECT,
        null=True,
        blank=True,
        related_name='journals'
    )
    description = models.TextField(blank=True)

    is_locked = models.BooleanField(default=False, db_index=True)
    is_auto_generated = models.BooleanField(default=True)

    # Source event: one kind plus the matching reference
    source_kind = models.CharField(max_length=30, choices=SOURCE_CHOICES, default='manual', db_index=True)
    loan = models.ForeignKey(
        'Loan', on_delete=models.PROTECT, null=True, blank=True, related_name='journals'
    )
    installment = models.ForeignKey(
        'Installment', on_delete=models.PROTECT, null=True, blank=True, related_name='journals'
    )
    cash_transfer = models.ForeignKey(
        'CashTransfer', on_delete=models.PROTECT, null=True, blank=True, related_name='journals'
    )
    salary_deduction = models.ForeignKey(
        'SalaryDeduction', on_delete=models.PROTECT, null=True, blank=True, related_name='journals'
    )
    service_allowance = models.ForeignKey(
        'ServiceAllowance', on_delete=models.PROTECT, null=True, blank=True, related_name='journals'
    )
    saving = models.ForeignKey(
        'Saving', on_delete=models.PROTECT, null=True, blank=True, related_name='journals'
    )
    reversed_journal = models.ForeignKey(
        'self', on_delete=models.PROTECT, null=True, blank=True, related_name='reversals'
    )

    created_by = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name='journals_created'
    )
    posted_at = models.DateTimeField(null=True, blank=True)

    objects = JournalManager()

    class Meta:
        verbose_name = "Journal"
        verbose_name_plural = "Journals"
        ordering = ['-transaction_date', '-created_at']
        indexes = [
            models.Index(fields=['transaction_date', 'journal_type']),
        ]

    def __str__(self):
        return f"{self.journal_number} - {self.transaction_date}"

    def save(self, *args, **kwargs):
        if not self._state.adding:
            raise ImmutableRecord(f"Journal {self.journal_number} cannot be modified; post a reversal instead")
        if not self.journal_number:
            self.journal_number = self.generate_journal_number(self.journal_type)
        super().save(*args, **kwargs)

    def delete(self, *args, **kwargs):
        raise ImmutableRecord(f"Journal {self.journal_number} cannot be deleted; post a reversal instead")

    @staticmethod
    def generate_journal_number(journal_type):
        """Generate unique journal number: SJ-YYYYMMDD-XXXXXX"""
        prefix = Journal.NUMBER_PREFIX.get(journal_type, 'GJ')
        return _generate_number(Journal, 'journal_number', prefix)

    def mark_posted(self):
        now = timezone.now()
        Journal.objects.filter(pk=self.pk, posted_at__isnull=True).update(posted_at=now, updated_at=now)
        self.posted_at = now

    @property
    def is_posted(self):
        return self.posted_at is not None

    def get_total_debits(self):
        total = self.lines.aggregate(total=Sum('debit'))['total']
        return total or Decimal('0.00')

    def get_total_credits(self):
        total = self.lines.aggregate(total=Sum('credit'))['total']
        return total or Decimal('0.00')

    def is_balanced(self):
        return self.get_total_debits() == self.get_total_credits()


class JournalLine(BaseModel):
    """
    Journal line - one debit or one credit

    Rules:
    - Each line has EITHER debit OR credit (not both, not neither)
    - Lines are added only while the journal is being posted
    """

    journal = models.ForeignKey(Journal, on_delete=models.PROTECT, related_name='lines')
    line_number = models.PositiveIntegerField()
    account = models.ForeignKey(ChartOfAccount, on_delete=models.PROTECT, related_name='journal_lines')
    debit = models.DecimalField(default=Decimal('0.00'), **MONEY)
    credit = models.DecimalField(default=Decimal('0.00'), **MONEY)
    memo = models.CharField(max_length=255, blank=True)

    class Meta:
        verbose_name = "Journal Line"
        verbose_name_plural = "Journal Lines"
        ordering = ['journal', 'line_number']
        constraints = [
            models.UniqueConstraint(fields=['journal', 'line_number'], name='unique_journal_line_number'),
            models.CheckConstraint(condition=Q(debit__gte=0), name='journalline_debit_positive'),
            models.CheckConstraint(condition=Q(credit__gte=0), name='journalline_credit_positive'),
            models.CheckConstraint(
                condition=(Q(debit__gt=0) & Q(credit=0)) | (Q(debit=0) & Q(credit__gt=0)),
                name='journalline_single_side'
            ),
        ]

    def __str__(self):
        if self.debit > 0:
            return f"{self.account.code} - Dr: {self.debit:,.2f}"
        return f"{self.account.code} - Cr: {self.credit:,.2f}"

    def clean(self):
        super().clean()

        if self.debit > 0 and self.credit > 0:
            raise ValidationError("A line cannot have both debit and credit amounts")

        if self.debit == 0 and self.credit == 0:
            raise ValidationError("A line must have either a debit or credit amount")

    def save(self, *args, **kwargs):
        if not self._state.adding or self.journal.is_posted:
            raise ImmutableRecord(f"Lines of journal {self.journal.journal_number} cannot be changed")
        self.full_clean()
        super().save(*args, **kwargs)

    def delete(self, *args, **kwargs):
        raise ImmutableRecord("Journal lines cannot be deleted")


# =============================================================================
# CASH ACCOUNTS
# =============================================================================

class CashAccount(BaseModel, StatusTrackingMixin):
    """
    Physical or bank cash pool

    ``balance`` starts at ``opening_balance`` and afterwards changes only
    through ``adjust_cash_balance``; ``save()`` never writes it.
    """

    TYPE_CHOICES = [
        ('I', 'General Cash'),
        ('II', 'Social Fund'),
        ('III', 'Procurement Fund'),
        ('IV', 'Gift Fund'),
        ('V', 'Bank'),
    ]

    code = models.CharField(max_length=20, unique=True, db_index=True)
    name = models.CharField(max_length=200)
    type = models.CharField(max_length=5, choices=TYPE_CHOICES, db_index=True)
    opening_balance = models.DecimalField(default=Decimal('0.00'), **MONEY)
    balance = models.DecimalField(default=Decimal('0.00'), editable=False, **MONEY)
    description = models.TextField(blank=True)

    objects = CashAccountManager()

    class Meta:
        verbose_name = "Cash Account"
        verbose_name_plural = "Cash Accounts"
        ordering = ['code']
        constraints = [
            models.CheckConstraint(condition=Q(balance__gte=0), name='cashaccount_balance_non_negative'),
            models.CheckConstraint(condition=Q(opening_balance__gte=0), name='cashaccount_opening_non_negative'),
        ]

    def __str__(self):
        return f"{self.code} - {self.name}"

    def save(self, *args, **kwargs):
        if self._state.adding:
            if self.opening_balance < 0:
                raise InvalidInput("Opening balance cannot be negative", field='opening_balance')
            self.balance = self.opening_balance
        else:
            update_fields = kwargs.get('update_fields')
            if update_fields is None:
                update_fields = [
                    f.name for f in self._meta.concrete_fields
                    if not f.primary_key and f.name != 'balance'
                ]
            kwargs['update_fields'] = [f for f in update_fields if f != 'balance']
        super().save(*args, **kwargs)

    @property
    def coa_code(self):
        return get_setting('CASH_ACCOUNT_COA_MAP').get(self.type)


class CashTransfer(BaseModel):
    """
    Money moved between two cash accounts

    Workflow:
        pending -> completed (approve: balances move, journal posted)
        pending -> cancelled
    """

    STATUS_CHOICES = [
        ('pending', 'Pending Approval'),
        ('completed', 'Completed'),
        ('cancelled', 'Cancelled'),
    ]

    transfer_number = models.CharField(max_length=50, unique=True, db_index=True)
    from_account = models.ForeignKey(CashAccount, on_delete=models.PROTECT, related_name='outgoing_transfers')
    to_account = models.ForeignKey(CashAccount, on_delete=models.PROTECT, related_name='incoming_transfers')
    amount = models.DecimalField(validators=[MinValueValidator(Decimal('0.01'))], **MONEY)
    transfer_date = models.DateField()
    purpose = models.CharField(max_length=255)
    notes = models.TextField(blank=True)
    status = models.CharField(max_length=20, choices=STATUS_CHOICES, default='pending', db_index=True)
    created_by = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name='cash_transfers'
    )
    approved_by = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name='cash_transfers_approved'
    )
    approved_at = models.DateTimeField(null=True, blank=True)
    cancellation_reason = models.TextField(blank=True)

    class Meta:
        verbose_name = "Cash Transfer"
        verbose_name_plural = "Cash Transfers"
        ordering = ['-transfer_date', '-created_at']

    def __str__(self):
        return f"{self.transfer_number}: {self.from_account.code} -> {self.to_account.code} {self.amount:,.2f}"

    def save(self, *args, **kwargs):
        if not self.transfer_number:
            self.transfer_number = _generate_number(CashTransfer, 'transfer_number', 'TRF')
        super().save(*args, **kwargs)

    @property
    def journal(self):
        return self.journals.first()

    def _locked(self):
        return CashTransfer.objects.select_for_update().get(pk=self.pk)

    @classmethod
    @db_transaction.atomic
    def request(cls, from_account, to_account, amount, transfer_date, purpose, created_by=None, notes=''):
        """
        Register a pending transfer; no money moves until ``approve()``

        Returns:
            CashTransfer: Status 'pending'

        Raises:
            InvalidInput: Same account on both sides, non-positive amount or
                missing purpose
            AccountInactive: Either account is inactive
            InsufficientFunds: Source balance below the amount
        """
        amount = MoneyCalculator.round_money(amount)
        if amount <= 0:
            raise InvalidInput("Transfer amount must be positive", field='amount')
        if from_account.pk == to_account.pk:
            raise InvalidInput("Cannot transfer to the same account", field='to_account')
        if not purpose:
            raise InvalidInput("Transfer purpose is required", field='purpose')

        source = CashAccount.objects.get(pk=from_account.pk)
        destination = CashAccount.objects.get(pk=to_account.pk)
        for account in (source, destination):
            if not account.is_active:
                raise AccountInactive(f"Cash account {account.code} is inactive", account=account.code)
        if source.balance < amount:
            raise InsufficientFunds(
                f"Cash account {source.code} holds {source.balance:,.2f}, transfer needs {amount:,.2f}",
                account=source.code,
            )

        transfer = cls(
            from_account=source,
            to_account=destination,
            amount=amount,
            transfer_date=transfer_date or timezone.localdate(),
            purpose=purpose,
            notes=notes,
            created_by=created_by,
        )
        transfer.save()

        logger.info(
            f"Cash transfer requested: {transfer.transfer_number}, "
            f"{source.code} -> {destination.code}, Amount={amount}"
        )
        signals.emit(
            signals.cash_transfer_requested,
            sender=CashTransfer,
            transfer_number=transfer.transfer_number,
            from_account=source.code,
            to_account=destination.code,
            amount=str(amount),
        )
        return transfer

    @db_transaction.atomic
    def approve(self, approved_by=None):
        """
        Complete a pending transfer and post Dr destination / Cr source

        Both cash rows are locked in primary-key order and the source
        balance is checked again under the lock.

        Returns:
            CashTransfer: self, refreshed; ``from_account`` and ``to_account``
            carry the new balances

        Raises:
            InvalidTransition: Transfer is not pending
            AccountInactive, InsufficientFunds: From the cash accounts
        """
        transfer = self._locked()
        if transfer.status != 'pending':
            raise InvalidTransition(
                f"Cannot approve transfer with status: {transfer.get_status_display()}",
                status=transfer.status,
            )

        locked = lock_cash_accounts(transfer.from_account, transfer.to_account)
        source = locked[transfer.from_account_id]
        destination = locked[transfer.to_account_id]

        adjust_cash_balance(source, transfer.amount, DEBIT, reference=transfer.transfer_number)
        adjust_cash_balance(destination, transfer.amount, CREDIT, reference=transfer.transfer_number)

        transfer.status = 'completed'
        transfer.approved_by = approved_by
        transfer.approved_at = timezone.now()
        transfer.save(update_fields=['status', 'approved_by', 'approved_at', 'updated_at'])

        transfer.from_account = source
        transfer.to_account = destination
        post_cash_transfer_journal(transfer, approved_by)

        self.refresh_from_db()
        self.from_account = source
        self.to_account = destination

        logger.info(
            f"Cash transfer completed: {transfer.transfer_number}, "
            f"{source.code}={source.balance}, {destination.code}={destination.balance}"
        )
        signals.emit(
            signals.cash_transferred,
            sender=CashTransfer,
            transfer_number=transfer.transfer_number,
            from_account=source.code,
            to_account=destination.code,
            amount=str(transfer.amount),
        )
        return self

    @db_transaction.atomic
    def cancel(self, cancelled_by=None, reason=''):
        """
        Raises:
            InvalidTransition: Transfer is not pending
        """
        transfer = self._locked()
        if transfer.status != 'pending':
            raise InvalidTransition(
                f"Cannot cancel transfer with status: {transfer.get_status_display()}",
                status=transfer.status,
            )

        transfer.status = 'cancelled'
        transfer.cancellation_reason = reason
        transfer.save(update_fields=['status', 'cancellation_reason', 'updated_at'])
        self.refresh_from_db()

        logger.info(
            f"Cash transfer cancelled: {transfer.transfer_number} by {_display_user(cancelled_by)}, "
            f"Reason={reason}"
        )
        signals.emit(
            signals.cash_transfer_cancelled,
            sender=CashTransfer,
            transfer_number=transfer.transfer_number,
            cancelled_by=_display_user(cancelled_by),
            reason=reason,
        )
        return self

    @classmethod
    @db_transaction.atomic
    def execute(cls, from_account, to_account, amount, transfer_date, purpose, created_by=None, notes=''):
        """
        Request and approve a transfer in one step

        Updates ``balance`` on the two account instances passed in.

        Returns:
            CashTransfer: The completed transfer
        """
        transfer = cls.request(
            from_account, to_account, amount, transfer_date, purpose,
            created_by=created_by, notes=notes,
        )
        transfer.approve(created_by)

        from_account.balance = transfer.from_account.balance
        to_account.balance = transfer.to_account.balance
        return transfer


# =============================================================================
# LOANS
# =============================================================================

class Loan(BaseModel):
    """
    Member loan with reducing-balance amortization

    Lifecycle:
        pending -> approved -> disbursed -> active -> paid_off
        pending -> rejected

    ``remaining_principal`` always equals the unpaid principal of the
    installments that are neither paid nor cancelled.
    """

    STATUS_CHOICES = [
        ('pending', 'Pending Approval'),
        ('approved', 'Approved'),
        ('rejected', 'Rejected'),
        ('disbursed', 'Disbursed'),
        ('active', 'Active'),
        ('paid_off', 'Paid Off'),
    ]

    OPEN_STATUSES = ('approved', 'disbursed', 'active')

    DEDUCTION_METHOD_CHOICES = [
        ('none', 'Manual Payment'),
        ('salary', 'Salary Deduction'),
        ('service_allowance', 'Service Allowance Deduction'),
        ('mixed', 'Salary and Service Allowance'),
    ]

    PERCENT_VALIDATORS = [MinValueValidator(Decimal('0')), MaxValueValidator(Decimal('100'))]

    # =========================================================================
    # IDENTIFIERS
    # =========================================================================

    loan_number = models.CharField(max_length=50, unique=True, db_index=True)
    member = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.PROTECT,
        related_name='loans'
    )
    cash_account = models.ForeignKey(CashAccount, on_delete=models.PROTECT, related_name='loans')

    # =========================================================================
    # TERMS
    # =========================================================================

    principal_amount = models.DecimalField(validators=[MinValueValidator(Decimal('0.01'))], **MONEY)
    annual_interest_rate = models.DecimalField(
        max_digits=5, decimal_places=2, validators=PERCENT_VALIDATORS,
        help_text="Annual rate in percent, e.g. 12.00"
    )
    tenure_months = models.PositiveIntegerField(validators=[MinValueValidator(1)])
    installment_amount = models.DecimalField(
        null=True, blank=True, help_text="Frozen at disbursement", **MONEY
    )
    remaining_principal = models.DecimalField(default=Decimal('0.00'), **MONEY)

    status = models.CharField(max_length=20, choices=STATUS_CHOICES, default='pending', db_index=True)

    deduction_method = models.CharField(max_length=20, choices=DEDUCTION_METHOD_CHOICES, default='none')
    salary_deduction_percentage = models.DecimalField(
        max_digits=5, decimal_places=2, default=Decimal('0'), validators=PERCENT_VALIDATORS
    )
    service_allowance_deduction_percentage = models.DecimalField(
        max_digits=5, decimal_places=2, default=Decimal('0'), validators=PERCENT_VALIDATORS
    )

    loan_purpose = models.TextField(blank=True)
    rejection_reason = models.TextField(blank=True)

    # =========================================================================
    # DATES & ACTORS
    # =========================================================================

    application_date = models.DateField(default=timezone.localdate)
    approval_date = models.DateField(null=True, blank=True)
    rejection_date = models.DateField(null=True, blank=True)
    disbursement_date = models.DateField(null=True, blank=True)

    approved_by = models.ForeignKey(
        settings.AUTH_USER_MODEL, on_delete=models.SET_NULL, null=True, blank=True,
        related_name='loans_approved'
    )
    rejected_by = models.ForeignKey(
        settings.AUTH_USER_MODEL, on_delete=models.SET_NULL, null=True, blank=True,
        related_name='loans_rejected'
    )
    disbursed_by = models.ForeignKey(
        settings.AUTH_USER_MODEL, on_delete=models.SET_NULL, null=True, blank=True,
        related_name='loans_disbursed'
    )

    # =========================================================================
    # EARLY SETTLEMENT
    # =========================================================================

    is_early_settlement = models.BooleanField(default=False)
    settlement_date = models.DateField(null=True, blank=True)
    settlement_amount = models.DecimalField(null=True, blank=True, **MONEY)
    settled_by = models.ForeignKey(
        settings.AUTH_USER_MODEL, on_delete=models.SET_NULL, null=True, blank=True,
        related_name='loans_settled'
    )
    settlement_notes = models.TextField(blank=True)

    objects = LoanManager()

    class Meta:
        verbose_name = "Loan"
        verbose_name_plural = "Loans"
        ordering = ['-application_date', '-created_at']
        constraints = [
            models.CheckConstraint(condition=Q(remaining_principal__gte=0), name='loan_remaining_non_negative'),
        ]

    def __str__(self):
        return f"{self.loan_number} - {self.member_display}"

    def save(self, *args, **kwargs):
        if self._state.adding:
            self.validate_terms()
            if not self.loan_number:
                self.loan_number = _generate_number(Loan, 'loan_number', 'LN')
        super().save(*args, **kwargs)

    def validate_terms(self):
        """
        Raises:
            InvalidInput: Non-positive principal or tenure, rate outside
                0..100, mixed percentages not summing to 100, or terms whose
                schedule would overpay the principal
        """
        principal = MoneyCalculator.to_decimal(self.principal_amount, 'principal_amount')
        rate = MoneyCalculator.to_decimal(self.annual_interest_rate, 'annual_interest_rate')

        if principal <= 0:
            raise InvalidInput("Loan principal must be positive", field='principal_amount')
        if rate < 0 or rate > 100:
            raise InvalidInput("Interest rate must be between 0 and 100", field='annual_interest_rate')
        if not self.tenure_months or self.tenure_months < 1:
            raise InvalidInput("Tenure must be at least one month", field='tenure_months')
        if self.deduction_method not in dict(self.DEDUCTION_METHOD_CHOICES):
            raise InvalidInput(f"Unknown deduction method: {self.deduction_method}", field='deduction_method')

        if self.deduction_method == 'mixed':
            total = (
                MoneyCalculator.to_decimal(self.salary_deduction_percentage)
                + MoneyCalculator.to_decimal(self.service_allowance_deduction_percentage)
            )
            if total != 100:
                raise InvalidInput(
                    f"Salary and allowance percentages must sum to 100, got {total}",
                    field='salary_deduction_percentage',
                )

        build_schedule(
            principal, rate, self.tenure_months,
            compute_installment(principal, rate, self.tenure_months),
            self.application_date or timezone.localdate(),
        )

    # =========================================================================
    # PROPERTIES
    # =========================================================================

    @property
    def member_display(self):
        return _display_user(self.member)

    @property
    def is_open(self):
        return self.status in self.OPEN_STATUSES

    @property
    def total_interest(self):
        total = self.installments.aggregate(total=Sum('interest_amount'))['total']
        return total or Decimal('0.00')

    def reconcile_remaining_principal(self):
        """
        Recompute the unpaid principal from the schedule

        Returns:
            tuple: (stored remaining_principal, principal still owed on the schedule)
        """
        owed = self.installments.exclude(status__in=['paid', 'auto_paid', 'cancelled']).aggregate(
            principal=Sum('principal_amount'), paid=Sum('principal_paid')
        )
        computed = (owed['principal'] or Decimal('0.00')) - (owed['paid'] or Decimal('0.00'))
        return self.remaining_principal, computed

    def _locked(self):
        return Loan.objects.select_for_update().get(pk=self.pk)

    # =========================================================================
    # WORKFLOW METHODS
    # =========================================================================

    @db_transaction.atomic
    def approve(self, approved_by):
        loan = self._locked()
        if loan.status != 'pending':
            raise InvalidTransition(
                f"Cannot approve loan with status: {loan.get_status_display()}", status=loan.status
            )

        loan.status = 'approved'
        loan.approved_by = approved_by
        loan.approval_date = timezone.localdate()
        loan.save(update_fields=['status', 'approved_by', 'approval_date', 'updated_at'])
        self.refresh_from_db()

        logger.info(f"Loan approved: {loan.loan_number} by {_display_user(approved_by)}")
        signals.emit(signals.loan_approved, sender=Loan, loan_number=loan.loan_number,
                     approved_by=_display_user(approved_by))
        return self

    @db_transaction.atomic
    def reject(self, rejected_by, reason=''):
        loan = self._locked()
        if loan.status != 'pending':
            raise InvalidTransition(
                f"Cannot reject loan with status: {loan.get_status_display()}", status=loan.status
            )

        loan.status = 'rejected'
        loan.rejected_by = rejected_by
        loan.rejection_date = timezone.localdate()
        loan.rejection_reason = reason
        loan.save(update_fields=['status', 'rejected_by', 'rejection_date', 'rejection_reason', 'updated_at'])
        self.refresh_from_db()

        logger.info(f"Loan rejected: {loan.loan_number}, Reason={reason}")
        signals.emit(signals.loan_rejected, sender=Loan, loan_number=loan.loan_number, reason=reason)
        return self

    @db_transaction.atomic
    def disburse(self, disbursed_by=None, disbursement_date=None):
        """
        Pay the principal out of the loan's cash account

        Freezes the installment amount, writes the schedule, debits the cash
        account and posts Dr receivable / Cr cash, all or nothing.

        Returns:
            Journal: The disbursement journal

        Raises:
            AlreadyDisbursed: Loan is not in the approved state
            InsufficientFunds, AccountInactive: From the cash account
            PeriodClosed: Disbursement date inside a closed period
        """
        loan = self._locked()
        if loan.status != 'approved':
            raise AlreadyDisbursed(
                f"Cannot disburse loan with status: {loan.get_status_display()}", status=loan.status
            )

        disbursement_date = disbursement_date or timezone.localdate()

        logger.info(
            f"Disbursement initiated: Loan={loan.loan_number}, Amount={loan.principal_amount}, "
            f"CashAccount={loan.cash_account.code}"
        )

        installment_amount = compute_installment(
            loan.principal_amount, loan.annual_interest_rate, loan.tenure_months
        )
        rows = build_schedule(
            loan.principal_amount, loan.annual_interest_rate, loan.tenure_months,
            installment_amount, disbursement_date,
        )

        adjust_cash_balance(loan.cash_account, loan.principal_amount, DEBIT, reference=loan.loan_number)

        Installment.objects.bulk_create([
            Installment(
                loan=loan,
                installment_number=row.installment_number,
                due_date=row.due_date,
                principal_amount=row.principal_amount,
                interest_amount=row.interest_amount,
                total_amount=row.total_amount,
                remaining_principal=row.remaining_principal,
            )
            for row in rows
        ])

        loan.status = 'disbursed'
        loan.installment_amount = installment_amount
        loan.remaining_principal = loan.principal_amount
        loan.disbursement_date = disbursement_date
        loan.disbursed_by = disbursed_by
        loan.save(update_fields=[
            'status', 'installment_amount', 'remaining_principal',
            'disbursement_date', 'disbursed_by', 'updated_at'
        ])

        journal = post_loan_disbursement_journal(loan, disbursed_by)
        self.refresh_from_db()

        logger.info(
            f"Loan disbursed: {loan.loan_number}, Installment={installment_amount} x {loan.tenure_months}, "
            f"Journal={journal.journal_number}"
        )
        signals.emit(
            signals.loan_disbursed,
            sender=Loan,
            loan_number=loan.loan_number,
            amount=str(loan.principal_amount),
            installment_amount=str(installment_amount),
            journal_number=journal.journal_number,
        )
        return journal

    @db_transaction.atomic
    def settle_early(self, settled_by=None, notes='', settlement_date=None):
        """
        Pay off the remaining principal and forgo future interest

        Cancels every installment still expecting money, credits the cash
        account with the remaining principal and posts Dr cash / Cr
        receivable.

        Returns:
            dict: loan_number, original_principal, settlement_amount,
                  saved_interest, cancelled_installments, journal

        Raises:
            NotActive: Loan is not open
            AlreadySettled: No principal remains
        """
        loan = self._locked()
        if not loan.is_open:
            raise NotActive(
                f"Cannot settle loan with status: {loan.get_status_display()}", status=loan.status
            )
        if loan.remaining_principal <= 0:
            raise AlreadySettled(f"Loan {loan.loan_number} has no remaining principal")

        settlement_date = settlement_date or timezone.localdate()
        settlement_amount = loan.remaining_principal

        open_installments = list(
            loan.installments.select_for_update().outstanding().order_by('installment_number')
        )
        saved_interest = sum(
            (inst.interest_amount - inst.interest_paid for inst in open_installments), Decimal('0.00')
        )

        Installment.objects.filter(pk__in=[inst.pk for inst in open_installments]).update(
            status='cancelled',
            notes=f"Cancelled by early settlement on {settlement_date}",
            updated_at=timezone.now(),
        )

        adjust_cash_balance(loan.cash_account, settlement_amount, CREDIT, reference=loan.loan_number)

        loan.status = 'paid_off'
        loan.remaining_principal = Decimal('0.00')
        loan.is_early_settlement = True
        loan.settlement_date = settlement_date
        loan.settlement_amount = settlement_amount
        loan.settled_by = settled_by
        loan.settlement_notes = notes or ''
        loan.save(update_fields=[
            'status', 'remaining_principal', 'is_early_settlement', 'settlement_date',
            'settlement_amount', 'settled_by', 'settlement_notes', 'updated_at'
        ])

        journal = post_early_settlement_journal(loan, settlement_amount, settled_by, settlement_date)
        self.refresh_from_db()

        logger.info(
            f"Loan settled early: {loan.loan_number}, Amount={settlement_amount}, "
            f"SavedInterest={saved_interest}, Cancelled={len(open_installments)}"
        )
        signals.emit(
            signals.loan_settled,
            sender=Loan,
            loan_number=loan.loan_number,
            settlement_amount=str(settlement_amount),
            saved_interest=str(saved_interest),
            journal_number=journal.journal_number,
        )

        return {
            'loan_number': loan.loan_number,
            'original_principal': loan.principal_amount,
            'settlement_amount': settlement_amount,
            'saved_interest': saved_interest,
            'cancelled_installments': len(open_installments),
            'journal': journal,
        }

    def _advance_after_payment(self):
        """disbursed -> active on first payment, -> paid_off when nothing is owed"""
        loan = self._locked()
        if loan.status == 'disbursed':
            loan.status = 'active'
        if loan.status == 'active' and not loan.installments.outstanding().exists():
            loan.status = 'paid_off'
            logger.info(f"Loan paid off: {loan.loan_number}")
        loan.save(update_fields=['status', 'updated_at'])
        return loan


class Installment(BaseModel):
    """
    One row of a loan's amortization schedule

    ``principal_paid`` and ``paid_amount`` grow with each payment; payments
    cover outstanding interest first, then principal.
    """

    STATUS_CHOICES = [
        ('pending', 'Pending'),
        ('partial', 'Partially Paid'),
        ('auto_paid', 'Paid by Deduction'),
        ('manual_pending', 'Awaiting Confirmation'),
        ('paid', 'Paid'),
        ('overdue', 'Overdue'),
        ('cancelled', 'Cancelled'),
    ]

    PAYMENT_METHOD_CHOICES = [
        ('cash', 'Cash'),
        ('transfer', 'Bank Transfer'),
        ('salary', 'Salary Deduction'),
        ('service_allowance', 'Service Allowance'),
    ]

    DEDUCTION_METHODS = ('salary', 'service_allowance')
    SETTLED_STATUSES = ('paid', 'auto_paid')

    loan = models.ForeignKey(Loan, on_delete=models.PROTECT, related_name='installments')
    installment_number = models.PositiveIntegerField()
    due_date = models.DateField(db_index=True)

    principal_amount = models.DecimalField(**MONEY)
    interest_amount = models.DecimalField(**MONEY)
    total_amount = models.DecimalField(**MONEY)
    remaining_principal = models.DecimalField(
        help_text="Scheduled balance after this installment", **MONEY
    )

    paid_amount = models.DecimalField(default=Decimal('0.00'), **MONEY)
    principal_paid = models.DecimalField(default=Decimal('0.00'), **MONEY)

    status = models.CharField(max_length=20, choices=STATUS_CHOICES, default='pending', db_index=True)
    payment_date = models.DateField(null=True, blank=True)
    payment_method = models.CharField(max_length=20, choices=PAYMENT_METHOD_CHOICES, blank=True)
    confirmed_by = models.ForeignKey(
        settings.AUTH_USER_MODEL, on_delete=models.SET_NULL, null=True, blank=True,
        related_name='installments_confirmed'
    )
    notes = models.TextField(blank=True)

    objects = InstallmentManager()

    class Meta:
        verbose_name = "Installment"
        verbose_name_plural = "Installments"
        ordering = ['loan', 'installment_number']
        constraints = [
            models.UniqueConstraint(fields=['loan', 'installment_number'], name='unique_loan_installment'),
            models.CheckConstraint(
                condition=Q(total_amount=F('principal_amount') + F('interest_amount')),
                name='installment_total_is_principal_plus_interest'
            ),
            models.CheckConstraint(condition=Q(paid_amount__lte=F('total_amount')), name='installment_not_overpaid'),
        ]

    def __str__(self):
        return f"{self.loan.loan_number} #{self.installment_number} ({self.get_status_display()})"

    @property
    def outstanding_amount(self):
        return self.total_amount - self.paid_amount

    @property
    def interest_paid(self):
        return self.paid_amount - self.principal_paid

    @property
    def is_settled(self):
        return self.status in self.SETTLED_STATUSES

    @db_transaction.atomic
    def pay(self, method, confirmed_by=None, amount=None, notes='', payment_date=None, allowance=None):
        """
        Record money received against this installment

        Args:
            method: 'cash', 'transfer', 'salary' or 'service_allowance'
            confirmed_by: User confirming the payment (optional)
            amount: Amount received (default: everything outstanding)
            notes: Free text kept on the installment
            payment_date: Default today
            allowance: ServiceAllowance run collecting the payment, linked
                from the journal

        Returns:
            Installment: self, refreshed

        Raises:
            InvalidInput: Unknown method, or amount not in (0, outstanding]
            AlreadyPaid: Installment already paid
            NotActive: Installment cancelled or loan not open
        """
        if method not in dict(self.PAYMENT_METHOD_CHOICES):
            raise InvalidInput(f"Unknown payment method: {method}", field='method')

        installment = Installment.objects.select_for_update().get(pk=self.pk)
        loan = Loan.objects.select_for_update().select_related('cash_account', 'member').get(pk=installment.loan_id)

        if installment.is_settled:
            raise AlreadyPaid(
                f"Installment {installment.installment_number} of {loan.loan_number} is already paid"
            )
        if installment.status == 'cancelled':
            raise NotActive(f"Installment {installment.installment_number} of {loan.loan_number} is cancelled")
        if not loan.is_open:
            raise NotActive(f"Loan {loan.loan_number} is {loan.get_status_display()}", status=loan.status)

        outstanding = installment.outstanding_amount
        amount = outstanding if amount is None else MoneyCalculator.round_money(amount)
        if amount <= 0 or amount > outstanding:
            raise InvalidInput(
                f"Payment must be between 0.01 and {outstanding:,.2f}", field='amount'
            )

        payment_date = payment_date or timezone.localdate()
        interest_due = installment.interest_amount - installment.interest_paid
        interest_part = min(amount, interest_due)
        principal_part = amount - interest_part

        if amount == outstanding:
            status = 'auto_paid' if method in self.DEDUCTION_METHODS else 'paid'
        else:
            status = 'partial'

        Installment.objects.filter(pk=installment.pk).update(
            paid_amount=F('paid_amount') + amount,
            principal_paid=F('principal_paid') + principal_part,
            status=status,
            payment_date=payment_date,
            payment_method=method,
            confirmed_by=confirmed_by,
            notes=notes or installment.notes,
            updated_at=timezone.now(),
        )
        if principal_part > 0:
            Loan.objects.filter(pk=loan.pk).update(
                remaining_principal=F('remaining_principal') - principal_part
            )

        adjust_cash_balance(loan.cash_account, amount, CREDIT, reference=loan.loan_number)

        installment.loan = loan
        source = ServiceAllowanceEvent(allowance, installment) if allowance is not None else None
        journal = post_installment_payment_journal(
            installment, amount, principal_part, interest_part, confirmed_by, payment_date, source
        )

        loan = loan._advance_after_payment()
        self.refresh_from_db()

        logger.info(
            f"Installment payment: Loan={loan.loan_number} #{installment.installment_number}, "
            f"Amount={amount}, Principal={principal_part}, Interest={interest_part}, "
            f"Method={method}, Status={status}, LoanStatus={loan.status}"
        )
        signals.emit(
            signals.installment_paid,
            sender=Installment,
            loan_number=loan.loan_number,
            installment_number=installment.installment_number,
            amount=str(amount),
            method=method,
            status=status,
            journal_number=journal.journal_number,
        )
        return self

    @db_transaction.atomic
    def submit_manual_payment(self, notes=''):
        """Member reports a manual payment; it waits for ``pay()`` to confirm it"""
        installment = Installment.objects.select_for_update().get(pk=self.pk)
        if installment.is_settled:
            raise AlreadyPaid(f"Installment {installment.installment_number} is already paid")
        if installment.status not in ('pending', 'overdue'):
            raise InvalidTransition(
                f"Cannot submit payment for installment with status: {installment.get_status_display()}",
                status=installment.status,
            )

        installment.status = 'manual_pending'
        installment.notes = notes or installment.notes
        installment.save(update_fields=['status', 'notes', 'updated_at'])
        self.refresh_from_db()

        logger.info(f"Manual payment submitted: {self.loan.loan_number} #{self.installment_number}")
        return self


# =============================================================================
# PAYROLL DEDUCTIONS
# =============================================================================

def _validate_period(month, year):
    if isinstance(month, bool) or not isinstance(month, int) or not 1 <= month <= 12:
        raise InvalidInput(f"Month must be between 1 and 12, got {month!r}", field='month')
    if isinstance(year, bool) or not isinstance(year, int) or year < 1900:
        raise InvalidInput(f"Invalid year: {year!r}", field='year')


class SalaryDeduction(BaseModel):
    """
    Monthly payroll deduction snapshot for one member

    Loan installments due in the month are collected first; savings and
    other deductions are recorded alongside and posted to the general cash
    account.
    """

    STATUS_CHOICES = [
        ('processed', 'Processed'),
    ]

    member = models.ForeignKey(settings.AUTH_USER_MODEL, on_delete=models.PROTECT, related_name='salary_deductions')
    period_month = models.PositiveSmallIntegerField(validators=[MinValueValidator(1), MaxValueValidator(12)])
    period_year = models.PositiveSmallIntegerField()
    gross_salary = models.DecimalField(**MONEY)
    loan_deduction = models.DecimalField(default=Decimal('0.00'), **MONEY)
    savings_deduction = models.DecimalField(default=Decimal('0.00'), **MONEY)
    other_deductions = models.DecimalField(default=Decimal('0.00'), **MONEY)
    total_deductions = models.DecimalField(default=Decimal('0.00'), **MONEY)
    net_salary = models.DecimalField(default=Decimal('0.00'), **MONEY)
    deduction_date = models.DateField()
    processed_by = models.ForeignKey(
        settings.AUTH_USER_MODEL, on_delete=models.SET_NULL, null=True, blank=True,
        related_name='salary_deductions_processed'
    )
    status = models.CharField(max_length=20, choices=STATUS_CHOICES, default='processed')
    notes = models.TextField(blank=True)

    class Meta:
        verbose_name = "Salary Deduction"
        verbose_name_plural = "Salary Deductions"
        ordering = ['-period_year', '-period_month']
        constraints = [
            models.UniqueConstraint(
                fields=['member', 'period_month', 'period_year'], name='unique_salary_deduction_period'
            ),
        ]

    def __str__(self):
        return f"{self.member_display} {self.period_label}"

    @property
    def member_display(self):
        return _display_user(self.member)

    @property
    def period_label(self):
        return f"{self.period_month:02d}/{self.period_year}"

    @property
    def journal(self):
        return self.journals.first()

    @classmethod
    @db_transaction.atomic
    def process_for_member(cls, member, month, year, gross_salary, processed_by=None,
                           savings_deduction=0, other_deductions=0, notes='', deduction_date=None):
        """
        Run the monthly payroll deduction for one member

        Salary loans give up the whole outstanding installment; mixed loans
        give up ``salary_deduction_percentage``% of the installment and stay
        partial until the allowance run covers the rest.

        Returns:
            SalaryDeduction: The processed snapshot

        Raises:
            InvalidInput: Bad period, negative amounts, deductions above gross
            DuplicatePeriod: Already processed for this member and month
        """
        _validate_period(month, year)
        gross_salary = MoneyCalculator.round_money(gross_salary)
        savings_deduction = MoneyCalculator.round_money(savings_deduction)
        other_deductions = MoneyCalculator.round_money(other_deductions)

        if gross_salary < 0 or savings_deduction < 0 or other_deductions < 0:
            raise InvalidInput("Salary and deduction amounts cannot be negative")

        if cls.objects.filter(member=member, period_month=month, period_year=year).exists():
            raise DuplicatePeriod(
                f"Salary deduction for {_display_user(member)} {month:02d}/{year} already processed",
                month=month, year=year,
            )

        installments = (
            Installment.objects.due_in_month(month, year)
            .deductible()
            .on_open_loans()
            .for_member(member)
            .filter(loan__deduction_method__in=['salary', 'mixed'])
            .select_related('loan')
            .order_by('due_date', 'installment_number')
        )

        plan = []
        for installment in installments:
            outstanding = installment.outstanding_amount
            if installment.loan.deduction_method == 'mixed':
                share = MoneyCalculator.calculate_percentage(
                    installment.total_amount, installment.loan.salary_deduction_percentage
                )
                amount = min(share, outstanding)
            else:
                amount = outstanding
            if amount > 0:
                plan.append((installment, amount))

        loan_deduction = sum((amount for _, amount in plan), Decimal('0.00'))
        total_deductions = loan_deduction + savings_deduction + other_deductions
        if total_deductions > gross_salary:
            raise InvalidInput(
                f"Deductions {total_deductions:,.2f} exceed gross salary {gross_salary:,.2f}",
                field='gross_salary',
            )

        deduction_date = deduction_date or timezone.localdate()
        label = f"{month:02d}/{year}"

        for installment, amount in plan:
            installment.pay(
                'salary', confirmed_by=processed_by, amount=amount,
                notes=f"Salary deduction {label}", payment_date=deduction_date,
            )

        deduction = cls(
            member=member,
            period_month=month,
            period_year=year,
            gross_salary=gross_salary,
            loan_deduction=loan_deduction,
            savings_deduction=savings_deduction,
            other_deductions=other_deductions,
            total_deductions=total_deductions,
            net_salary=gross_salary - total_deductions,
            deduction_date=deduction_date,
            processed_by=processed_by,
            notes=notes,
        )
        try:
            with db_transaction.atomic():
                deduction.save()
        except IntegrityError:
            raise DuplicatePeriod(
                f"Salary deduction for {_display_user(member)} {label} already processed",
                month=month, year=year,
            )

        non_loan = savings_deduction + other_deductions
        if non_loan > 0:
            cash_account = CashAccount.objects.general()
            if cash_account is None:
                raise NotFound("No active general cash account for payroll deductions")
            adjust_cash_balance(cash_account, non_loan, CREDIT, reference=f"SAL {label}")
            post_salary_deduction_journal(deduction, cash_account, processed_by)

        logger.info(
            f"Salary deduction processed: Member={deduction.member_display}, Period={label}, "
            f"Gross={gross_salary}, Loan={loan_deduction}, Net={deduction.net_salary}, "
            f"Installments={len(plan)}"
        )
        signals.emit(
            signals.salary_deduction_processed,
            sender=SalaryDeduction,
            member=deduction.member_display,
            period=label,
            loan_deduction=str(loan_deduction),
            total_deductions=str(total_deductions),
            net_salary=str(deduction.net_salary),
        )
        return deduction


class ServiceAllowance(BaseModel):
    """
    Service allowance received for a member and applied to installments

    Installments due in the month are paid in due-date order until the
    allowance runs out; the last one may be left partial.
    """

    STATUS_CHOICES = [
        ('processed', 'Processed'),
    ]

    member = models.ForeignKey(settings.AUTH_USER_MODEL, on_delete=models.PROTECT, related_name='service_allowances')
    period_month = models.PositiveSmallIntegerField(validators=[MinValueValidator(1), MaxValueValidator(12)])
    period_year = models.PositiveSmallIntegerField()
    received_amount = models.DecimalField(**MONEY)
    installment_paid = models.DecimalField(default=Decimal('0.00'), **MONEY)
    remaining_amount = models.DecimalField(default=Decimal('0.00'), help_text="Left over for the member", **MONEY)
    remaining_installment_due = models.DecimalField(
        default=Decimal('0.00'), help_text="Due this month but not covered", **MONEY
    )
    installments_covered = models.PositiveIntegerField(default=0)
    payment_date = models.DateField()
    distributed_by = models.ForeignKey(
        settings.AUTH_USER_MODEL, on_delete=models.SET_NULL, null=True, blank=True,
        related_name='service_allowances_distributed'
    )
    status = models.CharField(max_length=20, choices=STATUS_CHOICES, default='processed')
    notes = models.TextField(blank=True)

    class Meta:
        verbose_name = "Service Allowance"
        verbose_name_plural = "Service Allowances"
        ordering = ['-period_year', '-period_month']
        constraints = [
            models.UniqueConstraint(
                fields=['member', 'period_month', 'period_year'], name='unique_service_allowance_period'
            ),
        ]

    def __str__(self):
        return f"{_display_user(self.member)} {self.period_month:02d}/{self.period_year}"

    @classmethod
    @db_transaction.atomic
    def process_for_member(cls, member, month, year, received_amount, processed_by=None,
                           notes='', payment_date=None):
        """
        Apply a member's service allowance to the installments due this month

        Service-allowance loans are owed the whole outstanding installment;
        mixed loans ``service_allowance_deduction_percentage``% of it.

        Returns:
            ServiceAllowance

        Raises:
            InvalidInput: Bad period or negative amount
            DuplicatePeriod: Already processed for this member and month
        """
        _validate_period(month, year)
        received_amount = MoneyCalculator.round_money(received_amount)
        if received_amount < 0:
            raise InvalidInput("Received allowance cannot be negative", field='received_amount')

        if cls.objects.filter(member=member, period_month=month, period_year=year).exists():
            raise DuplicatePeriod(
                f"Service allowance for {_display_user(member)} {month:02d}/{year} already processed",
                month=month, year=year,
            )

        payment_date = payment_date or timezone.localdate()
        label = f"{month:02d}/{year}"

        # Saved up front so each installment journal can point at the run
        allowance = cls(
            member=member,
            period_month=month,
            period_year=year,
            received_amount=received_amount,
            remaining_amount=received_amount,
            payment_date=payment_date,
            distributed_by=processed_by,
            notes=notes,
        )
        try:
            with db_transaction.atomic():
                allowance.save()
        except IntegrityError:
            raise DuplicatePeriod(
                f"Service allowance for {_display_user(member)} {label} already processed",
                month=month, year=year,
            )

        installments = (
            Installment.objects.due_in_month(month, year)
            .deductible()
            .on_open_loans()
            .for_member(member)
            .filter(loan__deduction_method__in=['service_allowance', 'mixed'])
            .select_related('loan')
            .order_by('due_date', 'installment_number')
        )

        available = received_amount
        paid_total = Decimal('0.00')
        due_total = Decimal('0.00')
        covered = 0

        for installment in installments:
            outstanding = installment.outstanding_amount
            if installment.loan.deduction_method == 'mixed':
                share = MoneyCalculator.calculate_percentage(
                    installment.total_amount, installment.loan.service_allowance_deduction_percentage
                )
                due = min(share, outstanding)
            else:
                due = outstanding
            due_total += due

            amount = min(due, available)
            if amount <= 0:
                continue

            installment.pay(
                'service_allowance', confirmed_by=processed_by, amount=amount,
                notes=f"Service allowance {label}", payment_date=payment_date,
                allowance=allowance,
            )
            available -= amount
            paid_total += amount
            if amount == due:
                covered += 1

        allowance.installment_paid = paid_total
        allowance.remaining_amount = available
        allowance.remaining_installment_due = due_total - paid_total
        allowance.installments_covered = covered
        allowance.save(update_fields=[
            'installment_paid', 'remaining_amount', 'remaining_installment_due',
            'installments_covered', 'updated_at'
        ])

        logger.info(
            f"Service allowance processed: Member={_display_user(member)}, Period={label}, "
            f"Received={received_amount}, Paid={paid_total}, Remaining={available}, "
            f"Uncovered={allowance.remaining_installment_due}"
        )
        signals.emit(
            signals.service_allowance_processed,
            sender=ServiceAllowance,
            member=_display_user(member),
            period=label,
            received_amount=str(received_amount),
            installment_paid=str(paid_total),
            remaining_amount=str(available),
        )
        return allowance


# =============================================================================
# SAVINGS
# =============================================================================

class Saving(BaseModel):
    """
    Member savings deposit

    Recorded as pending; approval puts the money in the cash account and
    posts Dr cash / Cr the member savings liability for the savings type.
    """

    TYPE_CHOICES = [
        ('principal', 'Principal Savings'),
        ('mandatory', 'Mandatory Savings'),
        ('voluntary', 'Voluntary Savings'),
        ('holiday', 'Holiday Savings'),
    ]

    STATUS_CHOICES = [
        ('pending', 'Pending Approval'),
        ('approved', 'Approved'),
        ('rejected', 'Rejected'),
    ]

    saving_number = models.CharField(max_length=50, unique=True, db_index=True)
    member = models.ForeignKey(settings.AUTH_USER_MODEL, on_delete=models.PROTECT, related_name='savings')
    cash_account = models.ForeignKey(CashAccount, on_delete=models.PROTECT, related_name='savings')
    savings_type = models.CharField(max_length=20, choices=TYPE_CHOICES, db_index=True)
    amount = models.DecimalField(validators=[MinValueValidator(Decimal('0.01'))], **MONEY)
    transaction_date = models.DateField()
    status = models.CharField(max_length=20, choices=STATUS_CHOICES, default='pending', db_index=True)
    notes = models.TextField(blank=True)

    approved_by = models.ForeignKey(
        settings.AUTH_USER_MODEL, on_delete=models.SET_NULL, null=True, blank=True,
        related_name='savings_approved'
    )
    approved_at = models.DateTimeField(null=True, blank=True)
    rejected_by = models.ForeignKey(
        settings.AUTH_USER_MODEL, on_delete=models.SET_NULL, null=True, blank=True,
        related_name='savings_rejected'
    )
    rejection_reason = models.TextField(blank=True)

    objects = SavingManager()

    class Meta:
        verbose_name = "Saving"
        verbose_name_plural = "Savings"
        ordering = ['-transaction_date', '-created_at']

    def __str__(self):
        return f"{self.saving_number} - {self.get_savings_type_display()} {self.amount:,.2f}"

    def save(self, *args, **kwargs):
        if not self.saving_number:
            self.saving_number = _generate_number(Saving, 'saving_number', 'SAV')
        super().save(*args, **kwargs)

    @property
    def member_display(self):
        return _display_user(self.member)

    @property
    def journal(self):
        return self.journals.first()

    def _locked(self):
        return Saving.objects.select_for_update().get(pk=self.pk)

    @classmethod
    def record(cls, member, cash_account, savings_type, amount, transaction_date=None, notes=''):
        """
        Register a pending deposit

        Raises:
            InvalidInput: Unknown savings type or non-positive amount
        """
        if savings_type not in dict(cls.TYPE_CHOICES):
            raise InvalidInput(f"Unknown savings type: {savings_type}", field='savings_type')
        amount = MoneyCalculator.round_money(amount)
        if amount <= 0:
            raise InvalidInput("Savings amount must be positive", field='amount')

        saving = cls.objects.create(
            member=member,
            cash_account=cash_account,
            savings_type=savings_type,
            amount=amount,
            transaction_date=transaction_date or timezone.localdate(),
            notes=notes,
        )
        logger.info(
            f"Saving recorded: {saving.saving_number}, Member={saving.member_display}, "
            f"Type={savings_type}, Amount={amount}"
        )
        return saving

    @db_transaction.atomic
    def approve(self, approved_by=None):
        """
        Credit the cash account and post the savings journal

        Returns:
            Journal

        Raises:
            InvalidTransition: Saving is not pending
            AccountInactive: From the cash account
            PeriodClosed: Transaction date inside a closed period
        """
        saving = self._locked()
        if saving.status != 'pending':
            raise InvalidTransition(
                f"Cannot approve saving with status: {saving.get_status_display()}", status=saving.status
            )

        adjust_cash_balance(saving.cash_account, saving.amount, CREDIT, reference=saving.saving_number)

        saving.status = 'approved'
        saving.approved_by = approved_by
        saving.approved_at = timezone.now()
        saving.save(update_fields=['status', 'approved_by', 'approved_at', 'updated_at'])

        journal = post_saving_journal(saving, approved_by)
        self.refresh_from_db()

        logger.info(
            f"Saving approved: {saving.saving_number}, Amount={saving.amount}, "
            f"Journal={journal.journal_number}"
        )
        signals.emit(
            signals.saving_approved,
            sender=Saving,
            saving_number=saving.saving_number,
            member=saving.member_display,
            savings_type=saving.savings_type,
            amount=str(saving.amount),
            journal_number=journal.journal_number,
        )
        return journal

    @db_transaction.atomic
    def reject(self, rejected_by=None, reason=''):
        saving = self._locked()
        if saving.status != 'pending':
            raise InvalidTransition(
                f"Cannot reject saving with status: {saving.get_status_display()}", status=saving.status
            )

        saving.status = 'rejected'
        saving.rejected_by = rejected_by
        saving.rejection_reason = reason
        saving.save(update_fields=['status', 'rejected_by', 'rejection_reason', 'updated_at'])
        self.refresh_from_db()

        logger.info(f"Saving rejected: {saving.saving_number}, Reason={reason}")
        signals.emit(signals.saving_rejected, sender=Saving, saving_number=saving.saving_number, reason=reason)
        return self
