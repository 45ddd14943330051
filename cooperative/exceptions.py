"""
Domain Exceptions
=================

Every failure the engine reports is a subclass of ``CooperativeError`` and
carries a machine-readable ``code`` so callers can map it to a response
without parsing messages.

Hierarchy:
    CooperativeError
    ├── InvalidInput            malformed input, raised before any write
    ├── BusinessRuleViolation   a rule of the books forbids the operation
    │   ├── InsufficientFunds, AccountInactive
    │   ├── UnbalancedEntry, InvalidLine, InsufficientLines
    │   ├── PeriodClosed, PeriodOpen, PeriodOverlap
    │   ├── AlreadyDisbursed, AlreadyPaid, AlreadySettled, NotActive
    │   ├── DuplicatePeriod, InvalidTransition
    │   └── ImmutableRecord
    ├── NotFound
    └── ConcurrencyConflict     lost a lock race, safe to retry
"""


class CooperativeError(Exception):
    code = 'error'
    default_message = 'Operation failed'
    retryable = False

    def __init__(self, message='', **context):
        self.message = message or self.default_message
        self.context = context
        super().__init__(self.message)

    def to_dict(self):
        data = {'code': self.code, 'message': self.message}
        data.update(self.context)
        return data


class InvalidInput(CooperativeError):
    code = 'validation_error'
    default_message = 'Invalid input'


class BusinessRuleViolation(CooperativeError):
    code = 'business_rule_violation'
    default_message = 'Business rule violated'


class InsufficientFunds(BusinessRuleViolation):
    code = 'insufficient_funds'
    default_message = 'Insufficient balance in cash account'


class AccountInactive(BusinessRuleViolation):
    code = 'account_inactive'
    default_message = 'Account is inactive'


class UnbalancedEntry(BusinessRuleViolation):
    code = 'unbalanced_entry'
    default_message = 'Total debits do not equal total credits'


class InvalidLine(BusinessRuleViolation):
    code = 'invalid_line'
    default_message = 'A journal line must carry exactly one positive side'


class InsufficientLines(BusinessRuleViolation):
    code = 'insufficient_lines'
    default_message = 'A journal needs at least two lines'


class PeriodClosed(BusinessRuleViolation):
    code = 'period_closed'
    default_message = 'Accounting period is closed'


class PeriodOpen(BusinessRuleViolation):
    code = 'period_open'
    default_message = 'Accounting period is not closed'


class PeriodOverlap(BusinessRuleViolation):
    code = 'period_overlap'
    default_message = 'Accounting period overlaps an existing period'


class AlreadyDisbursed(BusinessRuleViolation):
    code = 'already_disbursed'
    default_message = 'Loan has already been disbursed or is not approved'


class AlreadyPaid(BusinessRuleViolation):
    code = 'already_paid'
    default_message = 'Installment has already been paid'


class AlreadySettled(BusinessRuleViolation):
    code = 'already_settled'
    default_message = 'Loan has no remaining principal'


class NotActive(BusinessRuleViolation):
    code = 'not_active'
    default_message = 'Loan is not active'


class DuplicatePeriod(BusinessRuleViolation):
    code = 'duplicate_period'
    default_message = 'Deduction already processed for this period'


class InvalidTransition(BusinessRuleViolation):
    code = 'invalid_transition'
    default_message = 'Status transition not allowed'


class ImmutableRecord(BusinessRuleViolation):
    code = 'immutable_record'
    default_message = 'Record can no longer be modified'


class NotFound(CooperativeError):
    code = 'not_found'
    default_message = 'Record not found'


class ConcurrencyConflict(CooperativeError):
    code = 'concurrency_conflict'
    default_message = 'Record is locked by another operation, retry'
    retryable = True
