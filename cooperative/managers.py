"""
Custom QuerySets and Managers
==============================

Provides reusable query methods for common filtering operations.
Every manager here hides soft-deleted rows, same as ``SoftDeleteManager``.
"""

import calendar
from datetime import date
from decimal import Decimal

from django.db import models
from django.db.models import Sum
from django.utils import timezone


class ActiveInactiveQuerySet(models.QuerySet):
    """QuerySet with active filtering"""

    def active(self):
        return self.filter(is_active=True)


class ChartOfAccountQuerySet(ActiveInactiveQuerySet):
    """Custom QuerySet for ChartOfAccount model"""

    def by_category(self, category):
        return self.filter(category=category)


class ChartOfAccountManager(models.Manager):
    """Custom Manager for ChartOfAccount model"""

    def get_queryset(self):
        return ChartOfAccountQuerySet(self.model, using=self._db).filter(deleted_at__isnull=True)

    def by_category(self, category):
        return self.get_queryset().by_category(category)

    def get_by_code(self, code):
        return self.get_queryset().get(code=code)


class AccountingPeriodQuerySet(models.QuerySet):
    """Custom QuerySet for AccountingPeriod model"""

    def closed(self):
        return self.filter(is_closed=True)

    def covering(self, on_date):
        """Period whose inclusive range contains the date"""
        return self.filter(start_date__lte=on_date, end_date__gte=on_date)

    def overlapping(self, start_date, end_date):
        return self.filter(start_date__lte=end_date, end_date__gte=start_date)

    def after(self, period):
        return self.filter(start_date__gt=period.end_date)


class AccountingPeriodManager(models.Manager):
    """Custom Manager for AccountingPeriod model"""

    def get_queryset(self):
        return AccountingPeriodQuerySet(self.model, using=self._db).filter(deleted_at__isnull=True)

    def closed(self):
        return self.get_queryset().closed()

    def covering(self, on_date):
        return self.get_queryset().covering(on_date)

    def overlapping(self, start_date, end_date):
        return self.get_queryset().overlapping(start_date, end_date)


class JournalQuerySet(models.QuerySet):
    """Custom QuerySet for Journal model"""

    def posted(self):
        return self.filter(posted_at__isnull=False)

    def locked(self):
        return self.filter(is_locked=True)

    def between(self, start_date, end_date):
        return self.filter(transaction_date__gte=start_date, transaction_date__lte=end_date)


class JournalManager(models.Manager):
    """Custom Manager for Journal model"""

    def get_queryset(self):
        return JournalQuerySet(self.model, using=self._db).filter(deleted_at__isnull=True)

    def posted(self):
        return self.get_queryset().posted()

    def between(self, start_date, end_date):
        return self.get_queryset().between(start_date, end_date)


class CashAccountQuerySet(ActiveInactiveQuerySet):
    """Custom QuerySet for CashAccount model"""

    def by_type(self, account_type):
        return self.filter(type=account_type)


class CashAccountManager(models.Manager):
    """Custom Manager for CashAccount model"""

    def get_queryset(self):
        return CashAccountQuerySet(self.model, using=self._db).filter(deleted_at__isnull=True)

    def general(self):
        """The active general cash account (type I)"""
        from cooperative.conf import get_setting
        return self.get_queryset().active().by_type(get_setting('GENERAL_CASH_TYPE')).order_by('code').first()


class LoanQuerySet(models.QuerySet):
    """Custom QuerySet for Loan model"""

    OPEN_STATUSES = ('approved', 'disbursed', 'active')

    def open(self):
        """Loans still carrying principal: approved, disbursed or active"""
        return self.filter(status__in=self.OPEN_STATUSES)

    def for_member(self, member):
        return self.filter(member=member)


class LoanManager(models.Manager):
    """Custom Manager for Loan model"""

    def get_queryset(self):
        return LoanQuerySet(self.model, using=self._db).filter(deleted_at__isnull=True)

    def open(self):
        return self.get_queryset().open()


class InstallmentQuerySet(models.QuerySet):
    """Custom QuerySet for Installment model"""

    OUTSTANDING_STATUSES = ('pending', 'partial', 'manual_pending', 'overdue')

    def outstanding(self):
        """Installments that still expect money"""
        return self.filter(status__in=self.OUTSTANDING_STATUSES)

    def deductible(self):
        """Installments a payroll or allowance run may collect"""
        return self.filter(status__in=['pending', 'partial'])

    def due_in_month(self, month, year):
        last_day = calendar.monthrange(year, month)[1]
        return self.filter(
            due_date__gte=date(year, month, 1),
            due_date__lte=date(year, month, last_day),
        )

    def due_before(self, as_of):
        return self.filter(due_date__lt=as_of)

    def on_open_loans(self):
        return self.filter(loan__status__in=LoanQuerySet.OPEN_STATUSES)

    def for_member(self, member):
        return self.filter(loan__member=member)

    def mark_overdue(self, as_of=None):
        """
        Flip pending installments past their due date to overdue

        Args:
            as_of: Reference date (default: today)

        Returns:
            int: Number of installments marked overdue
        """
        as_of = as_of or timezone.localdate()
        return (
            self.filter(status='pending')
            .on_open_loans()
            .due_before(as_of)
            .update(status='overdue', updated_at=timezone.now())
        )

    def totals(self):
        return self.aggregate(
            principal=Sum('principal_amount'),
            interest=Sum('interest_amount'),
            total=Sum('total_amount'),
            paid=Sum('paid_amount'),
        )


class InstallmentManager(models.Manager):
    """Custom Manager for Installment model"""

    def get_queryset(self):
        return InstallmentQuerySet(self.model, using=self._db).filter(deleted_at__isnull=True)

    def outstanding(self):
        return self.get_queryset().outstanding()

    def due_in_month(self, month, year):
        return self.get_queryset().due_in_month(month, year)

    def mark_overdue(self, as_of=None):
        return self.get_queryset().mark_overdue(as_of)


class SavingQuerySet(models.QuerySet):
    """Custom QuerySet for Saving model"""

    def approved(self):
        return self.filter(status='approved')

    def pending(self):
        return self.filter(status='pending')

    def for_member(self, member):
        return self.filter(member=member)

    def total(self):
        return self.aggregate(total=Sum('amount'))['total'] or Decimal('0.00')


class SavingManager(models.Manager):
    """Custom Manager for Saving model"""

    def get_queryset(self):
        return SavingQuerySet(self.model, using=self._db).filter(deleted_at__isnull=True)

    def pending(self):
        return self.get_queryset().pending()

    def balance_for_member(self, member, savings_type=None):
        """Approved savings held for a member, optionally of one type"""
        savings = self.get_queryset().approved().for_member(member)
        if savings_type:
            savings = savings.filter(savings_type=savings_type)
        return savings.total()
