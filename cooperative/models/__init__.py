from .base import BaseModel, SoftDeleteManager, StatusTrackingMixin
from .all_models import (
    AccountingPeriod,
    CashAccount,
    CashTransfer,
    ChartOfAccount,
    Installment,
    Journal,
    JournalLine,
    Loan,
    SalaryDeduction,
    Saving,
    ServiceAllowance,
)

__all__ = [
    'BaseModel',
    'SoftDeleteManager',
    'StatusTrackingMixin',
    'AccountingPeriod',
    'CashAccount',
    'CashTransfer',
    'ChartOfAccount',
    'Installment',
    'Journal',
    'JournalLine',
    'Loan',
    'SalaryDeduction',
    'Saving',
    'ServiceAllowance',
]
