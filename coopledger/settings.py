"""
Django settings for the Cooperative Ledger project
==================================================

Everything deployment-specific comes from environment variables so the same
settings module serves development, tests and production.
"""

import os
from pathlib import Path

BASE_DIR = Path(__file__).resolve().parent.parent


def env_bool(name, default=False):
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() in ('1', 'true', 'yes', 'on')


SECRET_KEY = os.environ.get('DJANGO_SECRET_KEY', 'insecure-dev-key-change-me')

DEBUG = env_bool('DJANGO_DEBUG', False)

ALLOWED_HOSTS = [h for h in os.environ.get('DJANGO_ALLOWED_HOSTS', 'localhost').split(',') if h]

INSTALLED_APPS = [
    'django.contrib.auth',
    'django.contrib.contenttypes',
    'cooperative.apps.CooperativeConfig',
]

MIDDLEWARE = []

DATABASES = {
    'default': {
        'ENGINE': os.environ.get('DATABASE_ENGINE', 'django.db.backends.sqlite3'),
        'NAME': os.environ.get('DATABASE_NAME', str(BASE_DIR / 'db.sqlite3')),
        'USER': os.environ.get('DATABASE_USER', ''),
        'PASSWORD': os.environ.get('DATABASE_PASSWORD', ''),
        'HOST': os.environ.get('DATABASE_HOST', ''),
        'PORT': os.environ.get('DATABASE_PORT', ''),
    }
}

DEFAULT_AUTO_FIELD = 'django.db.models.BigAutoField'

LANGUAGE_CODE = 'en-us'
TIME_ZONE = os.environ.get('DJANGO_TIME_ZONE', 'Asia/Jakarta')
USE_I18N = True
USE_TZ = True

# =============================================================================
# COOPERATIVE ENGINE
# =============================================================================

COOPERATIVE = {
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
    'GENERAL_CASH_TYPE': 'I',
    'AUTO_CREATE_PERIODS': env_bool('COOPERATIVE_AUTO_CREATE_PERIODS', False),
    'AUDIT_SINK': os.environ.get('COOPERATIVE_AUDIT_SINK', 'cooperative.audit.log_event'),
}

# =============================================================================
# LOGGING
# =============================================================================

LOG_LEVEL = os.environ.get('DJANGO_LOG_LEVEL', 'INFO')

LOGGING = {
    'version': 1,
    'disable_existing_loggers': False,
    'formatters': {
        'verbose': {
            'format': '{asctime} {levelname} {name} {message}',
            'style': '{',
        },
    },
    'handlers': {
        'console': {
            'class': 'logging.StreamHandler',
            'formatter': 'verbose',
        },
    },
    'loggers': {
        'cooperative': {
            'handlers': ['console'],
            'level': LOG_LEVEL,
            'propagate': False,
        },
        'cooperative.audit': {
            'handlers': ['console'],
            'level': 'INFO',
            'propagate': False,
        },
    },
}
