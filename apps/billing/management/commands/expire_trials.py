"""
End trials past their end date.

Trials with a payment method on file convert to active; the rest expire.
"""

from django.core.management.base import BaseCommand

from apps.billing.services import expire_trials
from apps.events.context import job_context


class Command(BaseCommand):
    help = "Convert or expire ended trials"

    def add_arguments(self, parser):
        parser.add_argument("--dry-run", action="store_true", help="Count ended trials without changing them")

    def handle(self, *args, **options):
        with job_context("expire_trials"):
            count = expire_trials(dry_run=options["dry_run"])

        if options["dry_run"]:
            self.stdout.write(f"DRY RUN: {count} trials have ended")
        else:
            self.stdout.write(self.style.SUCCESS(f"Processed {count} ended trials"))
