"""
Audit sink
==========

Domain events end up here after their transaction commits. The sink is a
plain callable ``sink(event, **payload)`` named by the ``AUDIT_SINK``
setting, so deployments can route events to their own audit store.
"""

import logging

from django.utils.module_loading import import_string

from cooperative.conf import get_setting

logger = logging.getLogger('cooperative.audit')


def log_event(event, **payload):
    """Default sink: one log line per event"""
    details = ', '.join(f"{key}={value}" for key, value in sorted(payload.items()))
    logger.info(f"AUDIT: {event} | {details}")


def get_audit_sink():
    return import_string(get_setting('AUDIT_SINK'))


def record(event, **payload):
    sink = get_audit_sink()
    sink(event, **payload)
