"""
Proration and revenue calculations.

Pure functions over Decimal amounts and datetimes. No ORM access here so the
same arithmetic serves the lifecycle services, the metrics queries and tests.
"""

import math
from collections import Counter
from collections.abc import Iterable, Sequence
from datetime import datetime, timedelta
from decimal import ROUND_HALF_UP, Decimal

from apps.core.money import ZERO, money

DAY = timedelta(days=1)

INTERVAL_DAYS: dict[str, int] = {
    "monthly": 30,
    "quarterly": 90,
    "semi-annual": 180,
    "annual": 365,
    "biennial": 730,
}
DEFAULT_INTERVAL_DAYS = 30

# Churn-risk weights and caps
PAYMENT_FAILURE_WEIGHT = Decimal("0.3")
PAYMENT_FAILURE_CAP = 30
INACTIVITY_WEIGHT = Decimal("0.2")
INACTIVITY_CAP = 40
OVERAGE_WEIGHT = Decimal("0.1")
OVERAGE_SCORE = 20


def interval_days(interval: str, table: dict[str, int] | None = None) -> int:
    """Length of one billing interval in days. Unknown intervals bill monthly."""
    return (table or INTERVAL_DAYS).get(interval, DEFAULT_INTERVAL_DAYS)


def ceil_days(delta: timedelta) -> int:
    """Whole days, rounded up."""
    return math.ceil(delta / DAY)


def calculate_proration(
    old_amount: Decimal,
    new_amount: Decimal,
    period_start: datetime,
    period_end: datetime,
    now: datetime,
) -> Decimal:
    """
    Split the price difference of a mid-period plan change.

    Positive result: the customer owes the difference. Negative: a credit.
    """
    total_days = ceil_days(period_end - period_start)
    remaining_days = ceil_days(period_end - now)

    if remaining_days <= 0 or total_days <= 0:
        return ZERO

    old_daily = Decimal(old_amount) / total_days
    new_daily = Decimal(new_amount) / total_days
    return money((new_daily - old_daily) * remaining_days)


def retry_delay_days(attempt: int, delays: Sequence[int]) -> int:
    """
    Days until the retry for the given failed attempt (1-based).

    Attempts beyond the table reuse its last (longest) delay.
    """
    if not delays:
        return 0
    index = max(attempt, 1) - 1
    return delays[min(index, len(delays) - 1)]


def calculate_churn_risk(
    failed_attempts: int,
    days_since_login: int | None,
    has_overages: bool,
) -> tuple[int, list[dict]]:
    """
    Weighted churn-risk score in [0, 100] and the factors that produced it.

    Each term is capped before weighting.
    """
    factors: list[dict] = []
    total = Decimal("0")

    if failed_attempts > 0:
        value = min(failed_attempts * 10, PAYMENT_FAILURE_CAP)
        factors.append({"factor": "payment_failures", "weight": float(PAYMENT_FAILURE_WEIGHT), "value": value})
        total += value * PAYMENT_FAILURE_WEIGHT

    if days_since_login is not None:
        value = min(max(days_since_login, 0) * 2, INACTIVITY_CAP)
        factors.append({"factor": "inactive_days", "weight": float(INACTIVITY_WEIGHT), "value": value})
        total += value * INACTIVITY_WEIGHT

    if has_overages:
        factors.append({"factor": "usage_overages", "weight": float(OVERAGE_WEIGHT), "value": OVERAGE_SCORE})
        total += OVERAGE_SCORE * OVERAGE_WEIGHT

    score = int(total.quantize(Decimal("1"), rounding=ROUND_HALF_UP))
    return min(score, 100), factors


def calculate_mrr(amounts: Iterable[Decimal]) -> Decimal:
    """Monthly recurring revenue: sum of recurring billing amounts."""
    return money(sum((Decimal(a) for a in amounts), Decimal("0")))


def calculate_arr(mrr: Decimal) -> Decimal:
    return money(Decimal(mrr) * 12)


def group_churn_reasons(reasons: Iterable[str | None]) -> list[dict]:
    """Count cancellations per reason, most frequent first."""
    counts = Counter(reason or "unspecified" for reason in reasons)
    return [{"reason": reason, "count": count} for reason, count in counts.most_common()]


def percentile(sorted_values: Sequence[Decimal], fraction: float) -> Decimal | None:
    """Nearest-rank percentile by sorted-array index floor(n * fraction)."""
    if not sorted_values:
        return None
    index = min(math.floor(len(sorted_values) * fraction), len(sorted_values) - 1)
    return sorted_values[index]
