"""
Domain events
=============

Sent with ``send_robust`` once the surrounding transaction commits, so a
rolled-back operation never reaches the audit log and a failing receiver
never breaks the operation that emitted it.
"""

import logging

from django.db import transaction
from django.dispatch import Signal, receiver

from cooperative import audit

logger = logging.getLogger(__name__)

journal_posted = Signal()
journal_reversed = Signal()
period_closed = Signal()
period_reopened = Signal()
cash_transferred = Signal()
loan_approved = Signal()
loan_rejected = Signal()
loan_disbursed = Signal()
installment_paid = Signal()
loan_settled = Signal()
salary_deduction_processed = Signal()
service_allowance_processed = Signal()
cash_transfer_requested = Signal()
cash_transfer_cancelled = Signal()
saving_approved = Signal()
saving_rejected = Signal()

EVENT_NAMES = {
    journal_posted: 'journal.posted',
    journal_reversed: 'journal.reversed',
    period_closed: 'period.closed',
    period_reopened: 'period.reopened',
    cash_transferred: 'cash.transferred',
    loan_approved: 'loan.approved',
    loan_rejected: 'loan.rejected',
    loan_disbursed: 'loan.disbursed',
    installment_paid: 'installment.paid',
    loan_settled: 'loan.settled',
    salary_deduction_processed: 'salary_deduction.processed',
    service_allowance_processed: 'service_allowance.processed',
    cash_transfer_requested: 'cash.transfer_requested',
    cash_transfer_cancelled: 'cash.transfer_cancelled',
    saving_approved: 'saving.approved',
    saving_rejected: 'saving.rejected',
}


def emit(signal, sender, **payload):
    """Queue a domain event for delivery after commit"""
    transaction.on_commit(lambda: _deliver(signal, sender, payload))


def _deliver(signal, sender, payload):
    for handler, response in signal.send_robust(sender=sender, **payload):
        if isinstance(response, Exception):
            logger.error(
                f"Audit receiver {getattr(handler, '__name__', handler)} failed for "
                f"{EVENT_NAMES.get(signal, 'event')}: {response}"
            )


@receiver(list(EVENT_NAMES))
def audit_domain_event(sender, signal, **payload):
    audit.record(EVENT_NAMES[signal], **payload)
