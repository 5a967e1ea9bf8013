"""
Flag statistical outliers in recent usage for review.
"""

from datetime import timedelta

from django.core.management.base import BaseCommand
from django.utils import timezone

from apps.events.context import job_context
from apps.organizations.models import Organization
from apps.usage.aggregation import aggregation_targets
from apps.usage.anomalies import detect_anomalies


class Command(BaseCommand):
    help = "Run z-score anomaly detection over unbilled usage"

    def add_arguments(self, parser):
        parser.add_argument(
            "--lookback-days",
            type=int,
            default=None,
            help="History window in days (default: billing policy)",
        )
        parser.add_argument(
            "--threshold",
            type=float,
            default=None,
            help="z-score above which a record is flagged (default: billing policy)",
        )

    def handle(self, *args, **options):
        now = timezone.now()
        window = options["lookback_days"] or 30
        targets = aggregation_targets(now - timedelta(days=window), now)

        flagged = 0
        with job_context("detect_usage_anomalies"):
            organizations = Organization.objects.in_bulk({organization_id for organization_id, _ in targets})
            for organization_id, metric in targets:
                flagged += len(
                    detect_anomalies(
                        organizations[organization_id],
                        metric,
                        lookback_days=options["lookback_days"],
                        threshold=options["threshold"],
                        now=now,
                    )
                )

        self.stdout.write(self.style.SUCCESS(f"Flagged {flagged} usage records across {len(targets)} metrics"))
