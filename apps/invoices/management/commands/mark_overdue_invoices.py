"""
Move sent invoices past their due date to overdue.
"""

from django.core.management.base import BaseCommand

from apps.events.context import job_context
from apps.invoices.services import mark_overdue_invoices


class Command(BaseCommand):
    help = "Mark sent invoices past their due date as overdue"

    def add_arguments(self, parser):
        parser.add_argument("--dry-run", action="store_true", help="List invoices without changing them")

    def handle(self, *args, **options):
        with job_context("mark_overdue_invoices"):
            numbers = mark_overdue_invoices(dry_run=options["dry_run"])

        for number in numbers:
            self.stdout.write(f"  {number}")
        prefix = "DRY RUN: would mark" if options["dry_run"] else "Marked"
        self.stdout.write(f"{prefix} {len(numbers)} invoices overdue")
