"""
Publish events management command.

Drains pending outbox events (invoice sent, renewal reminders, usage alerts)
to the notification channel. Safe to run as several concurrent workers.
"""

import random
import signal
import time

from django.core.management.base import BaseCommand

from apps.core.logging import get_logger
from apps.events.context import job_context
from apps.events.services import deliver_pending_events

logger = get_logger(__name__)


class Command(BaseCommand):
    help = "Deliver pending notification events from the outbox"

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self._shutdown_requested = False

    def add_arguments(self, parser):
        parser.add_argument("--once", action="store_true", help="Drain the outbox and exit")
        parser.add_argument("--batch-size", type=int, default=100, help="Events per batch (default: 100)")
        parser.add_argument(
            "--poll-interval",
            type=float,
            default=5.0,
            help="Seconds between polls when the outbox is empty (default: 5)",
        )

    def handle(self, *args, **options):
        self._setup_signal_handlers()
        total = 0

        with job_context("publish_events"):
            while not self._shutdown_requested:
                delivered = deliver_pending_events(batch_size=options["batch_size"])
                total += delivered
                if delivered:
                    continue
                if options["once"]:
                    break
                self._sleep_with_jitter(options["poll_interval"])

        self.stdout.write(f"Delivered {total} events")

    def _sleep_with_jitter(self, base_seconds: float) -> None:
        jitter = base_seconds * 0.2 * random.random()
        time.sleep(base_seconds + jitter)

    def _setup_signal_handlers(self) -> None:
        for sig in (signal.SIGINT, signal.SIGTERM):
            signal.signal(sig, self._handle_signal)

    def _handle_signal(self, signum, frame) -> None:
        logger.info("event_publisher_signal_received", signal=signum)
        self._shutdown_requested = True
