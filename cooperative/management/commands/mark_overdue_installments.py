"""
Flag pending installments whose due date has passed

Usage:
    python manage.py mark_overdue_installments
    python manage.py mark_overdue_installments --as-of 2026-05-01
"""

from datetime import date

from django.core.management.base import BaseCommand, CommandError

from cooperative.services import LoanService


class Command(BaseCommand):
    help = 'Mark pending installments past their due date as overdue'

    def add_arguments(self, parser):
        parser.add_argument(
            '--as-of',
            help='Reference date (YYYY-MM-DD), default today',
        )

    def handle(self, *args, **options):
        as_of = None
        if options['as_of']:
            try:
                as_of = date.fromisoformat(options['as_of'])
            except ValueError:
                raise CommandError(f"Invalid date: {options['as_of']}")

        count = LoanService.mark_overdue(as_of)
        self.stdout.write(self.style.SUCCESS(f'{count} installment(s) marked overdue'))
