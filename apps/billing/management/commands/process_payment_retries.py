"""
Retry failed subscription payments whose retry date has come.

Charges run through the payment gateway one at a time, outside any database
transaction. Failures schedule the next retry from the billing policy.
"""

from django.core.management.base import BaseCommand

from apps.billing.services import process_payment_retries
from apps.events.context import job_context


class Command(BaseCommand):
    help = "Charge due payment retries through the payment gateway"

    def add_arguments(self, parser):
        parser.add_argument(
            "--dry-run",
            action="store_true",
            help="Count due retries without charging",
        )

    def handle(self, *args, **options):
        with job_context("process_payment_retries"):
            summary = process_payment_retries(dry_run=options["dry_run"])

        prefix = "DRY RUN: would attempt" if options["dry_run"] else "Attempted"
        self.stdout.write(
            f"{prefix} {summary['attempted']} retries "
            f"({summary['succeeded']} succeeded, {summary['failed']} failed)"
        )
