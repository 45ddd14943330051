"""
App settings with defaults
==========================

Read through ``get_setting`` so tests can override a single key with
``override_settings(COOPERATIVE={...})``.
"""

from django.conf import settings

DEFAULTS = {
    'CASH_ACCOUNT_COA_MAP': {
        'I': '1-101',
        'II': '1-102',
        'III': '1-103',
        'IV': '1-104',
        'V': '1-105',
    },
    'RECEIVABLE_ACCOUNT': '1-201',
    'INTEREST_INCOME_ACCOUNT': '4-101',
    'OTHER_INCOME_ACCOUNT': '4-201',
    'MANDATORY_SAVINGS_ACCOUNT': '2-202',
    'SAVING_TYPE_COA_MAP': {
        'principal': '2-201',
        'mandatory': '2-202',
        'voluntary': '2-203',
        'holiday': '2-204',
    },
    'GENERAL_CASH_TYPE': 'I',
    'AUTO_CREATE_PERIODS': False,
    'AUDIT_SINK': 'cooperative.audit.log_event',
}


def get_setting(name):
    overrides = getattr(settings, 'COOPERATIVE', {}) or {}
    if name in overrides:
        return overrides[name]
    return DEFAULTS[name]
