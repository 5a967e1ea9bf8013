"""
Send renewal reminders ahead of each subscription's renewal date.

Each (renewal date, offset) pair is reminded at most once, so the job can
run as often as needed.
"""

from django.core.management.base import BaseCommand

from apps.billing.services import send_renewal_reminders
from apps.events.context import job_context


class Command(BaseCommand):
    help = "Send due renewal reminders"

    def add_arguments(self, parser):
        parser.add_argument("--dry-run", action="store_true", help="Count reminders without sending")

    def handle(self, *args, **options):
        with job_context("send_renewal_reminders"):
            sent = send_renewal_reminders(dry_run=options["dry_run"])

        if options["dry_run"]:
            self.stdout.write(f"DRY RUN: would send {sent} reminders")
        else:
            self.stdout.write(self.style.SUCCESS(f"Sent {sent} renewal reminders"))
