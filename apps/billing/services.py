"""
Subscription lifecycle services.

State machine:

    pending  -> active | cancelled
    trialing -> active | expired | cancelled
    active   -> past_due | paused | cancelled
    past_due -> active | cancelled
    paused   -> active | cancelled

Every mutation locks the subscription row, checks its preconditions, then
writes. Every state change appends a SubscriptionStateChange and refreshes
the churn-risk score.

Payment gateway calls (process_payment_retries) run outside any database
transaction; their outcome is fed back through record_payment and
record_failed_payment.
"""

from datetime import datetime, timedelta
from decimal import Decimal
from itertools import groupby
from typing import Any

from django.db import IntegrityError, transaction
from django.utils import timezone

from apps.billing import gateway
from apps.billing.calculations import calculate_churn_risk, calculate_proration, retry_delay_days
from apps.billing.models import (
    BillingPeriod,
    PaymentRetry,
    Plan,
    PlanChange,
    RenewalReminder,
    Subscription,
    SubscriptionAddon,
    SubscriptionStateChange,
)
from apps.billing.policy import BillingPolicy, get_billing_policy
from apps.core.exceptions import BillingError, DomainRuleViolation, NotFoundError, TransientError, ValidationError
from apps.core.logging import get_logger
from apps.core.money import ZERO, money, quantity, require_positive
from apps.events.services import dispatch_notification, record_audit
from apps.invoices import services as invoice_services
from apps.invoices.models import Invoice
from apps.organizations.models import Organization
from apps.usage import services as usage_services
from apps.usage.models import UsageRecord

logger = get_logger(__name__)

State = Subscription.State

# States that renew at the period boundary
BILLABLE_STATES = (State.ACTIVE, State.PAST_DUE)
UNLIMITED = -1

# Safety valve for subscriptions left many periods behind
MAX_ROLLOVERS_PER_RUN = 24


# =============================================================================
# Helpers
# =============================================================================


def _lock(subscription: Subscription, expected_version: int | None = None) -> Subscription:
    return Subscription.lock_for_update(subscription.pk, expected_version=expected_version)


def _policy(subscription: Subscription) -> BillingPolicy:
    return get_billing_policy(subscription.organization, subscription.plan)


def _interval_length(subscription: Subscription, policy: BillingPolicy | None = None) -> timedelta:
    policy = policy or _policy(subscription)
    days = policy.days_for_interval(subscription.billing_interval) * subscription.billing_interval_count
    return timedelta(days=days)


def _transition(subscription: Subscription, new_state: str, now: datetime, reason: str = "") -> None:
    """Move to new_state and append the history row. Caller saves."""
    subscription.previous_state = subscription.state
    subscription.state = new_state
    SubscriptionStateChange.objects.create(
        subscription=subscription,
        state=new_state,
        previous_state=subscription.previous_state,
        changed_at=now,
        reason=reason,
    )
    logger.info(
        "subscription_state_changed",
        subscription_id=subscription.subscription_id,
        from_state=subscription.previous_state,
        to_state=new_state,
        reason=reason,
    )


def _refresh_churn_risk(subscription: Subscription, now: datetime) -> None:
    days_since_login = (now - subscription.last_login_at).days if subscription.last_login_at else None
    score, factors = calculate_churn_risk(
        subscription.failed_attempts,
        days_since_login,
        check_usage_limits(subscription)["has_overages"],
    )
    subscription.churn_risk_score = score
    subscription.churn_risk_factors = factors
    subscription.churn_risk_calculated_at = now


def _start_period(subscription: Subscription, start: datetime, policy: BillingPolicy | None = None) -> None:
    """Open a paid interval period at start and point renewal at its end."""
    length = _interval_length(subscription, policy)
    subscription.current_period_start = start
    subscription.current_period_end = start + length
    subscription.current_period_billing_date = start
    subscription.current_period_amount = subscription.billing_amount
    subscription.current_period_paid = False
    subscription.current_period_payment_ref = ""
    subscription.next_period_start = subscription.current_period_end
    subscription.next_period_end = subscription.current_period_end + length
    subscription.next_renewal_date = subscription.current_period_end


def _close_current_period(subscription: Subscription, now: datetime, invoice: Invoice | None = None) -> BillingPeriod:
    return BillingPeriod.objects.create(
        subscription=subscription,
        start=subscription.current_period_start,
        end=subscription.current_period_end,
        amount=subscription.current_period_amount,
        paid=subscription.current_period_paid,
        payment_reference=subscription.current_period_payment_ref,
        invoice=invoice,
        closed_at=now,
    )


def _apply_plan(subscription: Subscription, plan: Plan) -> None:
    subscription.plan = plan
    subscription.billing_amount = plan.amount
    subscription.billing_interval = plan.interval
    subscription.billing_interval_count = plan.interval_count
    subscription.pending_plan = None
    subscription.pending_plan_effective_at = None


def _cancel_pending_retries(subscription: Subscription) -> int:
    return PaymentRetry.objects.filter(subscription=subscription, status=PaymentRetry.Status.PENDING).update(
        status=PaymentRetry.Status.CANCELLED
    )


# =============================================================================
# Queries
# =============================================================================


def get_plan(slug: str) -> Plan:
    try:
        return Plan.objects.get(slug=slug)
    except Plan.DoesNotExist as e:
        raise NotFoundError(f"Plan {slug} not found", code="PLAN_NOT_FOUND") from e


def list_available_plans(organization: Organization) -> list[Plan]:
    """Active plans offered to the organization."""
    return [plan for plan in Plan.objects.filter(status=Plan.Status.ACTIVE) if plan.is_available_for(organization)]


def get_subscription(organization: Organization, subscription_id: str) -> Subscription:
    try:
        return Subscription.objects.select_related("plan").get(
            organization=organization, subscription_id=subscription_id
        )
    except Subscription.DoesNotExist as e:
        raise NotFoundError(f"Subscription {subscription_id} not found", code="SUBSCRIPTION_NOT_FOUND") from e


def list_subscriptions(organization: Organization, state: str | None = None) -> list[Subscription]:
    qs = Subscription.objects.filter(organization=organization).select_related("plan")
    if state:
        qs = qs.filter(state=state)
    return list(qs.order_by("-created_at"))


def find_expiring_trials(days_ahead: int = 3, now: datetime | None = None) -> list[Subscription]:
    """Trials ending within days_ahead."""
    now = now or timezone.now()
    return list(
        Subscription.objects.filter(
            state=State.TRIALING,
            trial_end__gt=now,
            trial_end__lte=now + timedelta(days=days_ahead),
        )
        .select_related("organization", "plan")
        .order_by("trial_end")
    )


def find_due_for_renewal(days_ahead: int = 7, now: datetime | None = None) -> list[Subscription]:
    """Auto-renewing subscriptions whose renewal date falls within days_ahead."""
    now = now or timezone.now()
    return list(
        Subscription.objects.filter(
            state__in=BILLABLE_STATES,
            auto_renew=True,
            next_renewal_date__gt=now,
            next_renewal_date__lte=now + timedelta(days=days_ahead),
        )
        .select_related("organization", "plan")
        .order_by("next_renewal_date")
    )


def find_past_due(min_failed_attempts: int = 1) -> list[Subscription]:
    return list(
        Subscription.objects.filter(state=State.PAST_DUE, failed_attempts__gte=min_failed_attempts)
        .select_related("organization", "plan")
        .order_by("last_failure_date")
    )


# =============================================================================
# Lifecycle
# =============================================================================


def create_subscription(
    organization: Organization,
    plan: Plan,
    payment_method_id: str = "",
    trial_days: int | None = None,
    actor_id: str | None = None,
    now: datetime | None = None,
) -> Subscription:
    """
    Subscribe an organization to a plan.

    With trial days the subscription starts trialing and its first period is
    the free trial window; otherwise it starts pending an activation.

    Raises:
        DomainRuleViolation: INVALID_PLAN when the plan is not offered to
            the organization.
        ValidationError: Negative trial_days.
    """
    if not plan.is_available_for(organization):
        raise DomainRuleViolation(
            f"Plan {plan.slug} is not available",
            code="INVALID_PLAN",
            details={"plan": plan.slug, "status": plan.status},
        )

    trial_days = plan.trial_days if trial_days is None else trial_days
    if trial_days < 0:
        raise ValidationError("trial_days cannot be negative", code="INVALID_TRIAL")

    now = now or timezone.now()
    policy = get_billing_policy(organization, plan)
    subscription = Subscription(
        organization=organization,
        tenant_id=organization.tenant_id,
        plan=plan,
        billing_amount=plan.amount,
        billing_currency=plan.currency,
        billing_interval=plan.interval,
        billing_interval_count=plan.interval_count,
        payment_method_id=payment_method_id,
    )

    if trial_days:
        subscription.state = State.TRIALING
        subscription.trial_start = now
        subscription.trial_end = now + timedelta(days=trial_days)
        subscription.current_period_start = now
        subscription.current_period_end = subscription.trial_end
        subscription.current_period_billing_date = subscription.trial_end
        subscription.current_period_amount = ZERO
        subscription.next_period_start = subscription.trial_end
        subscription.next_period_end = subscription.trial_end + _interval_length(subscription, policy)
        subscription.next_renewal_date = subscription.trial_end
    else:
        subscription.state = State.PENDING
        _start_period(subscription, now, policy)

    _refresh_churn_risk(subscription, now)

    with transaction.atomic():
        subscription.save()
        SubscriptionStateChange.objects.create(
            subscription=subscription,
            state=subscription.state,
            changed_at=now,
            reason="created",
        )
        record_audit(
            "subscription.created",
            subscription,
            actor_id=actor_id,
            metadata={"plan": plan.slug, "state": subscription.state, "trial_days": trial_days},
        )

    logger.info(
        "subscription_created",
        subscription_id=subscription.subscription_id,
        organization_id=organization.pk,
        plan=plan.slug,
        state=subscription.state,
    )
    return subscription


def activate(
    subscription: Subscription,
    actor_id: str | None = None,
    expected_version: int | None = None,
    now: datetime | None = None,
) -> Subscription:
    """
    pending|trialing -> active.

    Converting a trial starts the first paid period now.

    Raises:
        DomainRuleViolation: ALREADY_ACTIVE, or INVALID_TRANSITION from any
            other state.
    """
    now = now or timezone.now()
    with transaction.atomic():
        subscription = _lock(subscription, expected_version)
        if subscription.state == State.ACTIVE:
            raise DomainRuleViolation("Subscription is already active", code="ALREADY_ACTIVE")
        if subscription.state not in (State.PENDING, State.TRIALING):
            raise DomainRuleViolation(
                f"Cannot activate a {subscription.state} subscription",
                code="INVALID_TRANSITION",
                details={"state": subscription.state},
            )

        if subscription.state == State.TRIALING:
            subscription.trial_converted = True
            _close_current_period(subscription, now)
            _start_period(subscription, now)

        _transition(subscription, State.ACTIVE, now, reason="activated")
        _refresh_churn_risk(subscription, now)
        subscription.save()
        record_audit("subscription.activated", subscription, actor_id=actor_id)

    dispatch_notification(
        "subscription.activated",
        subscription,
        {"subscription_id": subscription.subscription_id, "plan": subscription.plan.slug},
        actor_id=actor_id,
    )
    return subscription


def cancel(
    subscription: Subscription,
    reason: str = "",
    feedback: str = "",
    immediate: bool = False,
    actor_id: str | None = None,
    expected_version: int | None = None,
    now: datetime | None = None,
) -> Subscription:
    """
    Cancel from any live state.

    The state becomes cancelled right away; access ends now when immediate,
    otherwise at the end of the current period. Auto-renew is switched off.

    Raises:
        DomainRuleViolation: ALREADY_CANCELLED, or INVALID_TRANSITION for an
            expired subscription.
    """
    now = now or timezone.now()
    with transaction.atomic():
        subscription = _lock(subscription, expected_version)
        if subscription.state == State.CANCELLED:
            raise DomainRuleViolation("Subscription is already cancelled", code="ALREADY_CANCELLED")
        if subscription.state == State.EXPIRED:
            raise DomainRuleViolation("Cannot cancel an expired subscription", code="INVALID_TRANSITION")

        subscription.cancellation_requested_at = now
        subscription.cancellation_effective_at = now if immediate else subscription.current_period_end
        subscription.cancellation_reason = reason
        subscription.cancellation_feedback = feedback
        subscription.cancelled_by = actor_id or "system"
        subscription.auto_renew = False
        subscription.next_renewal_date = None
        _cancel_pending_retries(subscription)

        _transition(subscription, State.CANCELLED, now, reason=reason or "cancelled")
        _refresh_churn_risk(subscription, now)
        subscription.save()
        record_audit(
            "subscription.cancelled",
            subscription,
            actor_id=actor_id,
            metadata={"reason": reason, "immediate": immediate},
        )

    dispatch_notification(
        "subscription.cancelled",
        subscription,
        {
            "subscription_id": subscription.subscription_id,
            "effective_at": subscription.cancellation_effective_at.isoformat(),
            "reason": reason,
        },
        actor_id=actor_id,
    )
    return subscription


def pause(
    subscription: Subscription,
    resume_date: datetime | None = None,
    reason: str = "",
    actor_id: str | None = None,
    expected_version: int | None = None,
    now: datetime | None = None,
) -> Subscription:
    """
    active -> paused.

    Raises:
        DomainRuleViolation: NOT_ACTIVE.
        ValidationError: resume_date not in the future.
    """
    now = now or timezone.now()
    if resume_date is not None and resume_date <= now:
        raise ValidationError("resume_date must be in the future", code="INVALID_DATE")

    with transaction.atomic():
        subscription = _lock(subscription, expected_version)
        if subscription.state != State.ACTIVE:
            raise DomainRuleViolation(
                "Only active subscriptions can be paused",
                code="NOT_ACTIVE",
                details={"state": subscription.state},
            )

        subscription.paused_at = now
        subscription.resume_date = resume_date
        subscription.pause_reason = reason
        subscription.paused_by = actor_id or "system"
        _transition(subscription, State.PAUSED, now, reason=reason or "paused")
        _refresh_churn_risk(subscription, now)
        subscription.save()
        record_audit("subscription.paused", subscription, actor_id=actor_id, metadata={"reason": reason})

    return subscription


def resume(
    subscription: Subscription,
    actor_id: str | None = None,
    expected_version: int | None = None,
    now: datetime | None = None,
) -> Subscription:
    """
    paused -> active.

    A period that ended while paused is closed into history and a new one
    starts at its end.

    Raises:
        DomainRuleViolation: NOT_PAUSED.
    """
    now = now or timezone.now()
    with transaction.atomic():
        subscription = _lock(subscription, expected_version)
        if subscription.state != State.PAUSED:
            raise DomainRuleViolation("Subscription is not paused", code="NOT_PAUSED")

        paused_for = now - subscription.paused_at if subscription.paused_at else None
        subscription.paused_at = None
        subscription.resume_date = None
        subscription.pause_reason = ""
        subscription.paused_by = ""

        if subscription.current_period_end < now:
            _close_current_period(subscription, now)
            _start_period(subscription, subscription.current_period_end)

        _transition(subscription, State.ACTIVE, now, reason="resumed")
        _refresh_churn_risk(subscription, now)
        subscription.save()
        record_audit(
            "subscription.resumed",
            subscription,
            actor_id=actor_id,
            metadata={"paused_days": paused_for.days if paused_for else None},
        )

    return subscription


def upgrade_plan(
    subscription: Subscription,
    new_plan: Plan,
    immediate: bool = True,
    actor_id: str | None = None,
    expected_version: int | None = None,
    now: datetime | None = None,
) -> PlanChange:
    """
    Move an active subscription to another plan.

    Immediate changes apply now; otherwise the change is scheduled for the
    end of the current period. Either way the proration for the remaining
    days is recorded on the PlanChange.

    Raises:
        DomainRuleViolation: NOT_ACTIVE, or INVALID_PLAN for an unavailable
            plan, the current plan, or a plan in another currency.
    """
    now = now or timezone.now()
    with transaction.atomic():
        subscription = _lock(subscription, expected_version)
        if subscription.state != State.ACTIVE:
            raise DomainRuleViolation(
                "Only active subscriptions can change plan",
                code="NOT_ACTIVE",
                details={"state": subscription.state},
            )
        if (
            new_plan.pk == subscription.plan_id
            or new_plan.currency != subscription.billing_currency
            or not new_plan.is_available_for(subscription.organization)
        ):
            raise DomainRuleViolation(
                f"Cannot change to plan {new_plan.slug}",
                code="INVALID_PLAN",
                details={"plan": new_plan.slug},
            )

        old_plan = subscription.plan
        old_amount = subscription.billing_amount
        proration = calculate_proration(
            old_amount,
            new_plan.amount,
            subscription.current_period_start,
            subscription.current_period_end,
            now,
        )

        if immediate:
            _apply_plan(subscription, new_plan)
            effective_at = now
            status = PlanChange.Status.APPLIED
        else:
            subscription.pending_plan = new_plan
            subscription.pending_plan_effective_at = subscription.current_period_end
            effective_at = subscription.current_period_end
            status = PlanChange.Status.SCHEDULED

        change = PlanChange.objects.create(
            subscription=subscription,
            from_plan=old_plan,
            to_plan=new_plan,
            old_amount=old_amount,
            new_amount=new_plan.amount,
            proration_amount=proration,
            immediate=immediate,
            status=status,
            requested_at=now,
            effective_at=effective_at,
        )
        _refresh_churn_risk(subscription, now)
        subscription.save()
        record_audit(
            "subscription.plan_changed",
            subscription,
            actor_id=actor_id,
            diff={"old": {"plan": old_plan.slug}, "new": {"plan": new_plan.slug}},
            metadata={"proration": proration, "immediate": immediate},
        )

    logger.info(
        "subscription_plan_changed",
        subscription_id=subscription.subscription_id,
        from_plan=old_plan.slug,
        to_plan=new_plan.slug,
        proration=proration,
        immediate=immediate,
    )
    return change


def expire_trial(subscription: Subscription, now: datetime | None = None) -> Subscription:
    """
    End a finished trial: convert it when a payment method is on file,
    otherwise expire it.

    Raises:
        DomainRuleViolation: NOT_TRIALING, or TRIAL_NOT_ENDED before trial_end.
    """
    now = now or timezone.now()
    with transaction.atomic():
        locked = _lock(subscription)
        if locked.state != State.TRIALING:
            raise DomainRuleViolation("Subscription is not trialing", code="NOT_TRIALING")
        if locked.trial_end and locked.trial_end > now:
            raise DomainRuleViolation("Trial has not ended yet", code="TRIAL_NOT_ENDED")

        if locked.payment_method_id:
            return activate(locked, now=now)

        locked.auto_renew = False
        locked.next_renewal_date = None
        _transition(locked, State.EXPIRED, now, reason="trial_ended")
        _refresh_churn_risk(locked, now)
        locked.save()
        record_audit("subscription.expired", locked)

    dispatch_notification(
        "subscription.trial_expired",
        locked,
        {"subscription_id": locked.subscription_id, "trial_end": locked.trial_end.isoformat()},
    )
    return locked


# =============================================================================
# Payments
# =============================================================================


def record_payment(
    subscription: Subscription,
    amount: Decimal | str,
    payment_ref: str = "",
    expected_version: int | None = None,
    now: datetime | None = None,
) -> Subscription:
    """
    Apply a successful payment.

    Clears the failure counter, updates payment analytics, marks the current
    period paid and brings a past_due subscription back to active.

    Raises:
        ValidationError: INVALID_AMOUNT for zero or negative amounts.
    """
    amount = require_positive(amount)
    now = now or timezone.now()

    with transaction.atomic():
        subscription = _lock(subscription, expected_version)

        subscription.failed_attempts = 0
        subscription.last_failure_reason = ""
        subscription.requires_payment_update = False
        subscription.last_payment_date = now
        subscription.last_payment_amount = amount
        subscription.lifetime_value = money(subscription.lifetime_value + amount)
        subscription.total_payments = money(subscription.total_payments + amount)
        subscription.payment_count += 1
        subscription.average_payment = money(subscription.total_payments / subscription.payment_count)
        subscription.current_period_paid = True
        subscription.current_period_payment_ref = payment_ref
        _cancel_pending_retries(subscription)

        if subscription.state == State.PAST_DUE:
            _transition(subscription, State.ACTIVE, now, reason="payment_received")

        _refresh_churn_risk(subscription, now)
        subscription.save()
        record_audit(
            "subscription.payment_recorded",
            subscription,
            metadata={"amount": amount, "payment_ref": payment_ref},
        )

    logger.info(
        "subscription_payment_recorded",
        subscription_id=subscription.subscription_id,
        amount=amount,
        payment_count=subscription.payment_count,
    )
    return subscription


def record_failed_payment(
    subscription: Subscription,
    reason: str = "",
    expected_version: int | None = None,
    now: datetime | None = None,
) -> Subscription:
    """
    Count a failed payment and schedule the next retry.

    At the policy threshold an active subscription becomes past_due and is
    flagged as needing a new payment method.
    """
    now = now or timezone.now()
    became_past_due = False

    with transaction.atomic():
        subscription = _lock(subscription, expected_version)
        policy = _policy(subscription)

        subscription.failed_attempts += 1
        subscription.last_failure_date = now
        subscription.last_failure_reason = reason[:500]

        if subscription.failed_attempts >= policy.past_due_after_failures and subscription.state == State.ACTIVE:
            subscription.requires_payment_update = True
            _transition(subscription, State.PAST_DUE, now, reason="payment_failures")
            became_past_due = True

        _cancel_pending_retries(subscription)
        retry = PaymentRetry.objects.create(
            subscription=subscription,
            attempt=subscription.failed_attempts,
            scheduled_for=now
            + timedelta(days=retry_delay_days(subscription.failed_attempts, policy.payment_retry_delays_days)),
        )

        _refresh_churn_risk(subscription, now)
        subscription.save()
        record_audit(
            "subscription.payment_failed",
            subscription,
            metadata={"reason": reason, "failed_attempts": subscription.failed_attempts},
        )

    if became_past_due:
        dispatch_notification(
            "subscription.past_due",
            subscription,
            {
                "subscription_id": subscription.subscription_id,
                "failed_attempts": subscription.failed_attempts,
                "reason": reason,
            },
        )

    logger.warning(
        "subscription_payment_failed",
        subscription_id=subscription.subscription_id,
        failed_attempts=subscription.failed_attempts,
        next_retry=retry.scheduled_for,
        state=subscription.state,
    )
    return subscription


# =============================================================================
# Features and analytics
# =============================================================================


def update_feature_usage(
    subscription: Subscription,
    metric: str,
    value: int | float,
    now: datetime | None = None,
) -> Subscription:
    """
    Record the current value of a limited feature, keeping its peak.

    Raises:
        ValidationError: Negative or non-numeric value.
        DomainRuleViolation: INVALID_METRIC when the plan does not limit it.
    """
    if isinstance(value, bool) or not isinstance(value, int | float) or value < 0:
        raise ValidationError(f"Invalid usage value: {value!r}", code="INVALID_QUANTITY")

    now = now or timezone.now()
    with transaction.atomic():
        subscription = _lock(subscription)
        if metric not in subscription.feature_limits:
            raise DomainRuleViolation(
                f"{metric} is not a limited feature of this plan",
                code="INVALID_METRIC",
                details={"metric": metric},
            )

        usage = dict(subscription.feature_usage)
        previous = usage.get(metric, {})
        usage[metric] = {
            "current": value,
            "peak": max(previous.get("peak", 0), value),
            "last_updated": now.isoformat(),
        }
        subscription.feature_usage = usage
        _refresh_churn_risk(subscription, now)
        subscription.save()

    return subscription


def check_usage_limits(subscription: Subscription) -> dict[str, Any]:
    """
    Compare feature usage against limits.

    A limit of -1 means unlimited.
    """
    limits = {}
    overages = {}
    for metric, limit in subscription.feature_limits.items():
        current = subscription.feature_usage.get(metric, {}).get("current", 0)
        unlimited = limit is None or limit == UNLIMITED
        limits[metric] = {
            "limit": None if unlimited else limit,
            "current": current,
            "remaining": None if unlimited else max(limit - current, 0),
        }
        if not unlimited and current > limit:
            overages[metric] = current - limit

    return {"limits": limits, "overages": overages, "has_overages": bool(overages)}


def record_login(subscription: Subscription, at: datetime | None = None) -> Subscription:
    """Track customer activity for the churn-risk score."""
    at = at or timezone.now()
    with transaction.atomic():
        subscription = _lock(subscription)
        subscription.last_login_at = at
        _refresh_churn_risk(subscription, at)
        subscription.save()
    return subscription


# =============================================================================
# Add-ons
# =============================================================================


def _require_not_ended(subscription: Subscription) -> None:
    if subscription.state in (State.CANCELLED, State.EXPIRED):
        raise DomainRuleViolation(
            "Add-ons cannot change on an ended subscription",
            code="SUBSCRIPTION_ENDED",
            details={"state": subscription.state},
        )


def add_addon(
    subscription: Subscription,
    addon_id: str,
    unit_price: Decimal | int | float | str,
    quantity: int = 1,
    name: str = "",
    actor_id: str | None = None,
    expected_version: int | None = None,
    now: datetime | None = None,
) -> SubscriptionAddon:
    """
    Attach an add-on, or raise the quantity of one already attached.

    The unit price of an attached add-on is kept; only its quantity grows.

    Raises:
        ValidationError: INVALID_QUANTITY, INVALID_AMOUNT or a blank addon_id.
        DomainRuleViolation: SUBSCRIPTION_ENDED.
    """
    if not addon_id:
        raise ValidationError("addon_id is required", code="INVALID_ADDON")
    if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity < 1:
        raise ValidationError(f"Invalid add-on quantity: {quantity!r}", code="INVALID_QUANTITY")
    price = money(unit_price)
    if price < 0:
        raise ValidationError("unit_price cannot be negative", code="INVALID_AMOUNT")

    now = now or timezone.now()
    with transaction.atomic():
        subscription = _lock(subscription, expected_version)
        _require_not_ended(subscription)

        addon = SubscriptionAddon.objects.filter(subscription=subscription, addon_id=addon_id).first()
        if addon is not None:
            addon.quantity += quantity
            addon.save(update_fields=["quantity"])
        else:
            addon = SubscriptionAddon.objects.create(
                subscription=subscription,
                addon_id=addon_id,
                name=name or addon_id,
                unit_price=price,
                quantity=quantity,
                added_at=now,
            )
        subscription.save()
        record_audit(
            "subscription.addon_added",
            subscription,
            actor_id=actor_id,
            metadata={"addon_id": addon_id, "quantity": quantity, "total_quantity": addon.quantity},
        )

    logger.info(
        "subscription_addon_added",
        subscription_id=subscription.subscription_id,
        addon_id=addon_id,
        quantity=quantity,
    )
    return addon


def remove_addon(
    subscription: Subscription,
    addon_id: str,
    actor_id: str | None = None,
    expected_version: int | None = None,
) -> Subscription:
    """
    Detach an add-on; it is not billed at the next period close.

    Raises:
        NotFoundError: ADDON_NOT_FOUND.
        DomainRuleViolation: SUBSCRIPTION_ENDED.
    """
    with transaction.atomic():
        subscription = _lock(subscription, expected_version)
        _require_not_ended(subscription)

        deleted, _ = SubscriptionAddon.objects.filter(subscription=subscription, addon_id=addon_id).delete()
        if not deleted:
            raise NotFoundError(f"Add-on {addon_id} not found", code="ADDON_NOT_FOUND")
        subscription.save()
        record_audit("subscription.addon_removed", subscription, actor_id=actor_id, metadata={"addon_id": addon_id})

    logger.info("subscription_addon_removed", subscription_id=subscription.subscription_id, addon_id=addon_id)
    return subscription


# =============================================================================
# Period close and invoicing
# =============================================================================


def _usage_lines(records: list[UsageRecord]) -> list[tuple[dict[str, Any], list[UsageRecord]]]:
    """One invoice line per metric over its billable records."""
    lines = []
    ordered = sorted(records, key=lambda record: record.metric_name)
    for metric, group in groupby(ordered, key=lambda record: record.metric_name):
        group = list(group)
        cost = money(sum((record.cost_final for record in group if record.is_billable), Decimal("0")))
        total_quantity = quantity(sum((record.quantity for record in group), Decimal("0")))
        lines.append(
            (
                {
                    "item_type": "usage",
                    "description": f"{metric} usage ({total_quantity.normalize():f} {group[0].metric_unit})",
                    "quantity": 1,
                    "unit_price": cost,
                    "metadata": {"metric": metric, "quantity": str(total_quantity), "records": len(group)},
                },
                group,
            )
        )
    return lines


def close_billing_period(subscription: Subscription, now: datetime | None = None) -> Invoice | None:
    """
    Close an ended period and open the next one.

    Invoices the period's subscription fee, attached add-ons and unbilled
    valid usage, then bills that usage against the invoice, archives the
    period and applies a scheduled plan change. Returns the invoice, or None when the period had
    nothing to charge or has not ended yet.
    """
    now = now or timezone.now()
    invoice = None

    with transaction.atomic():
        subscription = _lock(subscription)
        if subscription.state not in BILLABLE_STATES or subscription.current_period_end > now:
            return None

        period_end = subscription.current_period_end
        unbilled = usage_services.get_unbilled_usage(subscription.organization, end_date=period_end)
        records = [r for r in unbilled["records"] if r.subscription_id in (subscription.pk, None)]
        usage_lines = _usage_lines(records)

        line_items = []
        if subscription.current_period_amount > 0:
            line_items.append(
                {
                    "item_type": "subscription",
                    "description": (
                        f"{subscription.plan.name} "
                        f"({subscription.current_period_start:%Y-%m-%d} - {period_end:%Y-%m-%d})"
                    ),
                    "quantity": 1,
                    "unit_price": subscription.current_period_amount,
                }
            )
        line_items.extend(
            {
                "item_type": "addon",
                "description": addon.name or addon.addon_id,
                "quantity": addon.quantity,
                "unit_price": addon.unit_price,
                "metadata": {"addon_id": addon.addon_id},
            }
            for addon in subscription.addons.all()
            if addon.unit_price > 0
        )
        line_items.extend(line for line, _ in usage_lines if line["unit_price"] > 0)

        if line_items:
            invoice = invoice_services.create_invoice(
                subscription.organization,
                line_items,
                subscription=subscription,
                invoice_type=Invoice.Type.SUBSCRIPTION,
                from_date=subscription.current_period_start.date(),
                to_date=period_end.date(),
                currency=subscription.billing_currency,
                now=now,
            )

        line_ids = {
            item.metadata.get("metric"): item.pk
            for item in (invoice.line_items.filter(item_type="usage") if invoice else [])
        }
        for line, group in usage_lines:
            for record in group:
                usage_services.bill(record, invoice=invoice, line_item_id=line_ids.get(line["metadata"]["metric"], ""))

        _close_current_period(subscription, now, invoice)

        if subscription.pending_plan_id and subscription.pending_plan_effective_at <= period_end:
            PlanChange.objects.filter(
                subscription=subscription,
                to_plan_id=subscription.pending_plan_id,
                status=PlanChange.Status.SCHEDULED,
            ).update(status=PlanChange.Status.APPLIED)
            _apply_plan(subscription, subscription.pending_plan)

        _start_period(subscription, period_end)
        _refresh_churn_risk(subscription, now)
        subscription.save()
        record_audit(
            "subscription.period_closed",
            subscription,
            metadata={
                "period_end": period_end,
                "invoice": invoice.number if invoice else None,
                "usage_records": len(records),
            },
        )

    logger.info(
        "billing_period_closed",
        subscription_id=subscription.subscription_id,
        period_end=period_end,
        invoice_number=invoice.number if invoice else None,
        usage_records=len(records),
    )
    return invoice


def send_invoice(invoice: Invoice, method: str = "email", now: datetime | None = None) -> Invoice:
    """Send the invoice and move its billed usage to invoiced."""
    now = now or timezone.now()
    with transaction.atomic():
        invoice = invoice_services.mark_as_sent(invoice, method=method, now=now)
        usage_services.mark_invoiced(invoice, now=now)
    return invoice


# =============================================================================
# Sweeps (management commands)
# =============================================================================


def rollover_billing_periods(now: datetime | None = None, send: bool = True, dry_run: bool = False) -> list[str]:
    """
    Close every ended period of active and past_due subscriptions.

    Returns the numbers of the invoices created. A failure on one
    subscription is logged and does not stop the sweep.
    """
    now = now or timezone.now()
    due = list(
        Subscription.objects.filter(state__in=BILLABLE_STATES, current_period_end__lte=now)
        .order_by("current_period_end")
        .values_list("pk", flat=True)
    )
    if dry_run:
        logger.info("billing_rollover_dry_run", count=len(due))
        return []

    numbers: list[str] = []
    for pk in due:
        subscription = Subscription.objects.get(pk=pk)
        try:
            for _ in range(MAX_ROLLOVERS_PER_RUN):
                invoice = close_billing_period(subscription, now=now)
                if invoice is not None:
                    if send:
                        send_invoice(invoice, now=now)
                    numbers.append(invoice.number)
                subscription.refresh_from_db()
                if subscription.state not in BILLABLE_STATES or subscription.current_period_end > now:
                    break
        except BillingError as e:
            logger.error(
                "billing_rollover_failed",
                subscription_id=subscription.subscription_id,
                error_code=e.code,
                error=e.message,
            )

    logger.info("billing_rollover_completed", subscriptions=len(due), invoices=len(numbers))
    return numbers


def expire_trials(now: datetime | None = None, dry_run: bool = False) -> int:
    """Convert or expire every trial past its end date. Returns the count."""
    now = now or timezone.now()
    ended = list(Subscription.objects.filter(state=State.TRIALING, trial_end__lte=now).order_by("trial_end"))
    if dry_run:
        return len(ended)

    processed = 0
    for subscription in ended:
        try:
            expire_trial(subscription, now=now)
            processed += 1
        except BillingError as e:
            logger.error("trial_expiry_failed", subscription_id=subscription.subscription_id, error_code=e.code)
    logger.info("trials_expired", count=processed)
    return processed


def send_renewal_reminders(now: datetime | None = None, dry_run: bool = False) -> int:
    """
    Send at most one reminder per renewal date and offset.

    Only the closest due offset is sent; offsets that were skipped because
    the sweep ran late are not sent afterwards.
    """
    now = now or timezone.now()
    candidates = Subscription.objects.filter(
        state=State.ACTIVE,
        auto_renew=True,
        reminders_enabled=True,
        next_renewal_date__gt=now,
    ).select_related("organization", "plan")

    sent = 0
    for subscription in candidates:
        offsets = subscription.reminder_offsets_days or _policy(subscription).renewal_reminder_offsets_days
        renewal = subscription.next_renewal_date
        due = [offset for offset in offsets if renewal - timedelta(days=offset) <= now]
        if not due:
            continue
        offset = min(due)

        if RenewalReminder.objects.filter(
            subscription=subscription, renewal_date=renewal, offset_days__lte=offset
        ).exists():
            continue
        if dry_run:
            sent += 1
            continue

        try:
            with transaction.atomic():
                RenewalReminder.objects.create(
                    subscription=subscription,
                    renewal_date=renewal,
                    offset_days=offset,
                    sent_at=now,
                )
        except IntegrityError:
            logger.info("renewal_reminder_already_sent", subscription_id=subscription.subscription_id, offset=offset)
            continue

        dispatch_notification(
            "subscription.renewal_reminder",
            subscription,
            {
                "subscription_id": subscription.subscription_id,
                "renewal_date": renewal.isoformat(),
                "days_until_renewal": offset,
                "amount": str(subscription.billing_amount),
            },
        )
        sent += 1

    logger.info("renewal_reminders_sent", count=sent, dry_run=dry_run)
    return sent


def _amount_owed(subscription: Subscription) -> tuple[Decimal, Invoice | None]:
    invoice = (
        subscription.invoices.exclude(
            status__in=[Invoice.Status.PAID, Invoice.Status.VOID, Invoice.Status.REFUNDED, Invoice.Status.DISPUTED]
        )
        .filter(amount_due__gt=0)
        .order_by("-issue_date", "-id")
        .first()
    )
    if invoice is not None:
        return invoice.amount_due, invoice
    return subscription.current_period_amount, None


def process_payment_retries(now: datetime | None = None, dry_run: bool = False) -> dict[str, int]:
    """
    Charge every due payment retry through the gateway.

    Each charge runs outside a transaction; the result is then applied
    under the subscription lock. Gateway timeouts count as failed attempts.
    """
    now = now or timezone.now()
    due = list(
        PaymentRetry.objects.filter(
            status=PaymentRetry.Status.PENDING,
            scheduled_for__lte=now,
            subscription__state__in=BILLABLE_STATES,
        )
        .select_related("subscription__organization")
        .order_by("scheduled_for")
    )
    summary = {"attempted": 0, "succeeded": 0, "failed": 0}
    if dry_run:
        summary["attempted"] = len(due)
        return summary

    for retry in due:
        subscription = retry.subscription
        amount, invoice = _amount_owed(subscription)
        if amount <= 0:
            PaymentRetry.objects.filter(pk=retry.pk).update(status=PaymentRetry.Status.CANCELLED)
            continue

        summary["attempted"] += 1
        try:
            result = gateway.charge(subscription, amount, idempotency_key=f"retry-{retry.pk}")
        except TransientError as e:
            logger.warning("payment_retry_gateway_error", retry_id=retry.pk, error=e.message)
            result = gateway.ChargeResult(succeeded=False, failure_reason=f"gateway_error: {e.code}")

        updated = PaymentRetry.objects.filter(pk=retry.pk, status=PaymentRetry.Status.PENDING).update(
            status=PaymentRetry.Status.SUCCEEDED if result.succeeded else PaymentRetry.Status.FAILED,
            attempted_at=now,
            failure_reason=result.failure_reason[:500],
        )
        if not updated:
            continue

        try:
            if result.succeeded:
                summary["succeeded"] += 1
                record_payment(subscription, amount, payment_ref=result.payment_ref, now=now)
                if invoice is not None:
                    invoice_services.record_payment(
                        invoice,
                        amount,
                        method="card",
                        reference=result.payment_ref,
                        payment_id=result.payment_ref,
                        now=now,
                    )
            else:
                summary["failed"] += 1
                record_failed_payment(subscription, reason=result.failure_reason, now=now)
        except BillingError as e:
            logger.error(
                "payment_retry_apply_failed",
                retry_id=retry.pk,
                subscription_id=subscription.subscription_id,
                payment_ref=result.payment_ref,
                error_code=e.code,
                error=e.message,
            )

    logger.info("payment_retries_processed", **summary)
    return summary
