"""
Close ended billing periods.

Invoices each ended period (subscription fee plus unbilled usage), sends the
invoice and opens the next period. Designed to run as a scheduled job
(e.g., hourly cron). Re-running finds nothing new to close.
"""

from django.core.management.base import BaseCommand

from apps.billing.services import rollover_billing_periods
from apps.events.context import job_context


class Command(BaseCommand):
    help = "Close ended billing periods and issue their invoices"

    def add_arguments(self, parser):
        parser.add_argument(
            "--no-send",
            action="store_true",
            help="Create invoices as drafts without sending them",
        )
        parser.add_argument(
            "--dry-run",
            action="store_true",
            help="Count due subscriptions without closing anything",
        )

    def handle(self, *args, **options):
        with job_context("rollover_billing_periods"):
            numbers = rollover_billing_periods(send=not options["no_send"], dry_run=options["dry_run"])

        if options["dry_run"]:
            self.stdout.write("DRY RUN: no periods closed")
        else:
            self.stdout.write(self.style.SUCCESS(f"Issued {len(numbers)} invoices"))
