"""Shared builders for the cooperative test suite"""

from datetime import date
from decimal import Decimal
from io import StringIO

from django.contrib.auth import get_user_model
from django.core.management import call_command

from cooperative.models import CashAccount, Loan

DISBURSED_ON = date(2026, 1, 15)


def create_user(username='member', first_name='Siti', last_name='Rahma'):
    return get_user_model().objects.create_user(
        username=username, first_name=first_name, last_name=last_name
    )


def seed_ledger(opening_balance='100000000'):
    """Chart of accounts plus the five cash accounts, each opened with the given balance"""
    call_command('init_chart_of_accounts', opening_balance=opening_balance, stdout=StringIO())


def get_cash_account(cash_type='I'):
    return CashAccount.objects.get(type=cash_type)


def create_loan(member, cash_account, principal='12000000', rate='12', tenure=12,
                deduction_method='none', **kwargs):
    return Loan.objects.create(
        member=member,
        cash_account=cash_account,
        principal_amount=Decimal(principal),
        annual_interest_rate=Decimal(rate),
        tenure_months=tenure,
        deduction_method=deduction_method,
        **kwargs
    )


def create_disbursed_loan(member, cash_account, officer=None, disbursement_date=DISBURSED_ON, **kwargs):
    loan = create_loan(member, cash_account, **kwargs)
    loan.approve(officer)
    loan.disburse(officer, disbursement_date)
    return loan
