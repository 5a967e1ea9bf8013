"""
Billing policy - thresholds and schedules injected into lifecycle and usage
operations.

Defaults come from settings; tenants (Organization.billing_policy_overrides)
and plans (Plan.policy_overrides) may override individual keys. Plan wins
over tenant, tenant over settings.
"""

from dataclasses import dataclass, field, fields, replace
from typing import TYPE_CHECKING, Any

from apps.billing.calculations import INTERVAL_DAYS, interval_days
from apps.core.logging import get_logger
from config.settings.base import settings

if TYPE_CHECKING:
    from apps.billing.models import Plan
    from apps.organizations.models import Organization

logger = get_logger(__name__)


@dataclass(frozen=True)
class BillingPolicy:
    """Immutable set of billing thresholds."""

    past_due_after_failures: int = 3
    payment_retry_delays_days: tuple[int, ...] = (1, 3, 5, 7, 10)
    renewal_reminder_offsets_days: tuple[int, ...] = (7, 3, 1)
    anomaly_change_percent: int = 200
    anomaly_zscore: float = 2.0
    anomaly_lookback_days: int = 30
    anomaly_min_history: int = 10
    usage_retention_days: int = 395
    interval_days: dict[str, int] = field(default_factory=lambda: dict(INTERVAL_DAYS))

    def with_overrides(self, overrides: dict[str, Any] | None) -> "BillingPolicy":
        """Return a copy with known keys replaced. Unknown keys are ignored."""
        if not overrides:
            return self

        known = {f.name for f in fields(self)}
        changes: dict[str, Any] = {}
        for key, value in overrides.items():
            if key not in known:
                logger.warning("billing_policy_unknown_override", key=key)
                continue
            if isinstance(value, list):
                value = tuple(value)
            changes[key] = value
        return replace(self, **changes)

    def days_for_interval(self, interval: str) -> int:
        return interval_days(interval, self.interval_days)


def default_policy() -> BillingPolicy:
    """Policy built from environment settings."""
    return BillingPolicy(
        past_due_after_failures=settings.PAST_DUE_AFTER_FAILURES,
        payment_retry_delays_days=tuple(settings.PAYMENT_RETRY_DELAYS_DAYS),
        renewal_reminder_offsets_days=tuple(settings.RENEWAL_REMINDER_OFFSETS_DAYS),
        anomaly_change_percent=settings.USAGE_ANOMALY_CHANGE_PERCENT,
        anomaly_zscore=settings.USAGE_ANOMALY_ZSCORE,
        anomaly_lookback_days=settings.USAGE_ANOMALY_LOOKBACK_DAYS,
        anomaly_min_history=settings.USAGE_ANOMALY_MIN_HISTORY,
        usage_retention_days=settings.USAGE_RETENTION_DAYS,
    )


def get_billing_policy(
    organization: "Organization | None" = None,
    plan: "Plan | None" = None,
) -> BillingPolicy:
    """Resolve the effective policy for a tenant and plan."""
    policy = default_policy()
    if organization is not None:
        policy = policy.with_overrides(organization.billing_policy_overrides)
    if plan is not None:
        policy = policy.with_overrides(plan.policy_overrides)
    return policy
