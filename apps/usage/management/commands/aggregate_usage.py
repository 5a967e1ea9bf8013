"""
Roll unbilled raw usage up into per-bucket aggregate records.

Runs over every (organization, metric) pair with raw records in the window.
Aggregated children are linked to their parent, so overlapping windows do
not aggregate anything twice.
"""

from datetime import timedelta

from django.core.management.base import BaseCommand
from django.utils import timezone

from apps.core.exceptions import BillingError
from apps.core.logging import get_logger
from apps.events.context import job_context
from apps.organizations.models import Organization
from apps.usage.aggregation import aggregate_usage, aggregation_targets
from apps.usage.models import UsageRecord

logger = get_logger(__name__)


class Command(BaseCommand):
    help = "Aggregate raw usage records by time bucket"

    def add_arguments(self, parser):
        parser.add_argument(
            "--granularity",
            choices=UsageRecord.Granularity.values,
            default=UsageRecord.Granularity.DAY,
            help="Bucket size (default: day)",
        )
        parser.add_argument(
            "--days",
            type=int,
            default=1,
            help="Aggregate records from the last N days (default: 1)",
        )
        parser.add_argument("--dry-run", action="store_true", help="List targets without aggregating")

    def handle(self, *args, **options):
        to_date = timezone.now()
        from_date = to_date - timedelta(days=options["days"])
        targets = aggregation_targets(from_date, to_date)

        if options["dry_run"]:
            self.stdout.write(f"DRY RUN: {len(targets)} organization/metric pairs to aggregate")
            return

        created = 0
        with job_context("aggregate_usage"):
            organizations = Organization.objects.in_bulk({organization_id for organization_id, _ in targets})
            for organization_id, metric in targets:
                try:
                    created += len(
                        aggregate_usage(
                            organizations[organization_id],
                            metric,
                            from_date,
                            to_date,
                            granularity=options["granularity"],
                        )
                    )
                except BillingError as e:
                    logger.error(
                        "usage_aggregation_failed",
                        organization_id=organization_id,
                        metric=metric,
                        error_code=e.code,
                    )

        self.stdout.write(self.style.SUCCESS(f"Created {created} aggregate records"))
