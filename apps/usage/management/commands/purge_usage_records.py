"""
Delete raw usage records past retention.

Only raw records already rolled into an aggregate are deleted; the
aggregate keeps the billed totals and stats. Retention comes from each
organization's billing policy unless --retention-days is given.
"""

from django.core.management.base import BaseCommand

from apps.events.context import job_context
from apps.usage.services import purge_expired_usage


class Command(BaseCommand):
    help = "Purge aggregated raw usage records past retention"

    def add_arguments(self, parser):
        parser.add_argument(
            "--retention-days",
            type=int,
            default=None,
            help="Override the per-organization retention (days)",
        )
        parser.add_argument(
            "--dry-run",
            action="store_true",
            help="Show what would be deleted without actually deleting",
        )

    def handle(self, *args, **options):
        with job_context("purge_usage_records"):
            count = purge_expired_usage(retention_days=options["retention_days"], dry_run=options["dry_run"])

        if options["dry_run"]:
            self.stdout.write(f"DRY RUN: Would delete {count} usage records")
        else:
            self.stdout.write(self.style.SUCCESS(f"Deleted {count} usage records"))
