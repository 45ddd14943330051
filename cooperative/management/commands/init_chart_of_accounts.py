"""
Management command to initialize the Chart of Accounts and cash accounts

This command creates:
- Chart of Accounts entries for the five categories
- One cash account per cash type (I-V), each mirrored by a 1-10x account

Usage:
    python manage.py init_chart_of_accounts
    python manage.py init_chart_of_accounts --opening-balance 5000000
    python manage.py init_chart_of_accounts --reset  # Delete unused accounts and recreate
"""

from decimal import Decimal, InvalidOperation

from django.core.management.base import BaseCommand, CommandError
from django.db import transaction

from cooperative.models import CashAccount, ChartOfAccount

ACCOUNTS = [
    # Assets (1-xxx)
    ('1-101', 'General Cash', 'assets', False, 'Cash type I, day-to-day operations'),
    ('1-102', 'Social Fund Cash', 'assets', False, 'Cash type II'),
    ('1-103', 'Procurement Cash', 'assets', False, 'Cash type III'),
    ('1-104', 'Gift Fund Cash', 'assets', False, 'Cash type IV'),
    ('1-105', 'Bank', 'assets', False, 'Cash type V, bank balances'),
    ('1-201', 'Member Loan Receivable', 'assets', False, 'Principal lent to members'),
    ('1-301', 'Inventory', 'assets', False, ''),
    ('1-401', 'Land', 'assets', False, ''),
    ('1-402', 'Buildings', 'assets', False, ''),
    ('1-403', 'Vehicles', 'assets', False, ''),
    ('1-404', 'Equipment', 'assets', False, ''),
    ('1-405', 'Accumulated Depreciation', 'assets', True, 'Contra asset'),

    # Liabilities (2-xxx)
    ('2-101', 'Accounts Payable', 'liabilities', False, ''),
    ('2-201', 'Principal Savings', 'liabilities', False, 'One-off membership savings'),
    ('2-202', 'Mandatory Savings', 'liabilities', False, 'Monthly savings collected through payroll'),
    ('2-203', 'Voluntary Savings', 'liabilities', False, ''),
    ('2-204', 'Holiday Savings', 'liabilities', False, ''),

    # Equity (3-xxx)
    ('3-101', 'Members Equity', 'equity', False, ''),
    ('3-201', 'Retained Earnings', 'equity', False, ''),
    ('3-202', 'Current Year Surplus', 'equity', False, ''),

    # Revenue (4-xxx)
    ('4-101', 'Loan Interest Income', 'revenue', False, 'Interest portion of installments'),
    ('4-102', 'Administration Income', 'revenue', False, ''),
    ('4-201', 'Other Income', 'revenue', False, 'Other payroll deductions'),

    # Expenses (5-xxx)
    ('5-101', 'Salaries Expense', 'expenses', False, ''),
    ('5-102', 'Operating Expense', 'expenses', False, ''),
    ('5-103', 'Utilities Expense', 'expenses', False, ''),
    ('5-104', 'Depreciation Expense', 'expenses', False, ''),
    ('5-105', 'Gift Expense', 'expenses', False, ''),
    ('5-201', 'Other Expense', 'expenses', False, ''),
]

CASH_ACCOUNTS = [
    ('KAS-I', 'General Cash', 'I'),
    ('KAS-II', 'Social Fund', 'II'),
    ('KAS-III', 'Procurement Fund', 'III'),
    ('KAS-IV', 'Gift Fund', 'IV'),
    ('KAS-V', 'Bank', 'V'),
]


class Command(BaseCommand):
    help = 'Initialize the Chart of Accounts and the five cooperative cash accounts'

    def add_arguments(self, parser):
        parser.add_argument(
            '--reset',
            action='store_true',
            help='Delete chart entries without postings before recreating',
        )
        parser.add_argument(
            '--opening-balance',
            default='0',
            help='Opening balance for newly created cash accounts',
        )

    @transaction.atomic
    def handle(self, *args, **options):
        try:
            opening_balance = Decimal(options['opening_balance'])
        except InvalidOperation:
            raise CommandError(f"Invalid opening balance: {options['opening_balance']}")
        if opening_balance < 0:
            raise CommandError("Opening balance cannot be negative")

        if options['reset']:
            unused = ChartOfAccount.all_objects.filter(journal_lines__isnull=True)
            self.stdout.write(self.style.WARNING(f'Deleting {unused.count()} unused accounts...'))
            for account in unused:
                account.delete(hard=True)

        self.stdout.write(self.style.SUCCESS('\n=== Initializing Chart of Accounts ===\n'))

        self.create_chart_of_accounts()
        self.create_cash_accounts(opening_balance)

        self.stdout.write(self.style.SUCCESS('\n[SUCCESS] Chart of Accounts initialized successfully!\n'))

    def create_chart_of_accounts(self):
        self.stdout.write('Creating Chart of Accounts...')

        for code, name, category, is_contra, description in ACCOUNTS:
            account, created = ChartOfAccount.objects.get_or_create(
                code=code,
                defaults={
                    'name': name,
                    'category': category,
                    'is_contra': is_contra,
                    'description': description,
                }
            )
            if created:
                self.stdout.write(f'  [+] Created: {account.code} - {account.name}')
            else:
                self.stdout.write(f'  [*] Exists: {account.code} - {account.name}')

        self.stdout.write('\n--- Summary ---')
        self.stdout.write(f'Total Accounts: {ChartOfAccount.objects.count()}')
        for category, label in ChartOfAccount.CATEGORY_CHOICES:
            self.stdout.write(f'  {label}: {ChartOfAccount.objects.by_category(category).count()}')

    def create_cash_accounts(self, opening_balance):
        self.stdout.write('\nCreating Cash Accounts...')

        for code, name, cash_type in CASH_ACCOUNTS:
            account, created = CashAccount.objects.get_or_create(
                code=code,
                defaults={
                    'name': name,
                    'type': cash_type,
                    'opening_balance': opening_balance,
                }
            )
            if created:
                self.stdout.write(f'  [+] Created: {account.code} - {account.name} ({account.balance:,.2f})')
            else:
                self.stdout.write(f'  [*] Exists: {account.code} - {account.name} ({account.balance:,.2f})')
