"""
Tests for usage services: pricing, validation, ingestion and billing status.
"""

from datetime import timedelta
from decimal import Decimal

import pytest

from apps.billing.policy import BillingPolicy
from apps.core.exceptions import DomainRuleViolation, NotFoundError, ValidationError
from apps.events.models import AuditLog, OutboxEvent
from apps.usage import services
from apps.usage.models import UsageNote, UsageRecord
from tests.billing.factories import PlanFactory, SubscriptionFactory
from tests.invoices.factories import make_invoice
from tests.organizations.factories import OrganizationFactory

from .factories import UsageRecordFactory

Billing = UsageRecord.BillingStatus
Validation = UsageRecord.ValidationStatus


@pytest.fixture
def metered_subscription(organization):
    """Active subscription on a plan that meters api_calls."""
    plan = PlanFactory.create(
        slug="metered",
        overage_rates={
            "api_calls": {"amount": "0.50", "per": 1000, "included": 1000},
            "storage_gb": {"amount": "0.10", "minimum": "1.00"},
        },
        usage_rules={"api_calls": {"max": 1000000, "soft_limit": 5000, "hard_limit": 10000, "unit": "calls"}},
    )
    return SubscriptionFactory.create(organization=organization, plan=plan)


def priced(**kwargs) -> UsageRecord:
    defaults = {"metric_name": "api_calls", "quantity": Decimal("100"), "rate_per": Decimal("1")}
    return UsageRecord(**{**defaults, **kwargs})


class TestCalculateCost:
    """Tests for calculate_cost."""

    def test_allowance_subtracted_before_rate(self) -> None:
        """Should only charge for usage beyond the included allowance."""
        record = priced(
            quantity=Decimal("3000"),
            rate_amount=Decimal("0.50"),
            rate_per=Decimal("1000"),
            included_allowance=Decimal("1000"),
        )

        assert services.calculate_cost(record) == Decimal("1.00")
        assert record.included_remaining == Decimal("0.0000")
        assert record.is_included is False
        assert record.cost_final == Decimal("1.00")

    def test_fully_included(self) -> None:
        """Should cost nothing inside the allowance, minimum included."""
        record = priced(
            quantity=Decimal("500"),
            rate_amount=Decimal("0.50"),
            rate_minimum=Decimal("1.00"),
            included_allowance=Decimal("1000"),
        )

        assert services.calculate_cost(record) == Decimal("0.00")
        assert record.is_included is True
        assert record.included_remaining == Decimal("500.0000")

    def test_minimum_charge(self) -> None:
        """Should raise a small charge to the minimum."""
        record = priced(rate_amount=Decimal("0.50"), rate_per=Decimal("1000"), rate_minimum=Decimal("1.00"))

        assert services.calculate_cost(record) == Decimal("1.00")

    def test_percentage_discount_over_100_floors_at_zero(self) -> None:
        """Should never price a record below 0."""
        record = priced(quantity=Decimal("10"), rate_amount=Decimal("1"), discount_percentage=Decimal("150"))

        assert services.calculate_cost(record) == Decimal("0.00")
        assert record.cost_final == Decimal("0.00")

    def test_percentage_discount(self) -> None:
        """Should apply a percentage discount to the cost."""
        record = priced(
            quantity=Decimal("10000"),
            rate_amount=Decimal("0.50"),
            rate_per=Decimal("1000"),
            discount_percentage=Decimal("10"),
        )

        assert services.calculate_cost(record) == Decimal("4.50")

    def test_fixed_discount_floors_at_zero(self) -> None:
        """Should never discount below zero."""
        record = priced(
            quantity=Decimal("10000"),
            rate_amount=Decimal("0.50"),
            rate_per=Decimal("1000"),
            discount_amount=Decimal("10.00"),
        )

        assert services.calculate_cost(record) == Decimal("0.00")

    def test_adjusted_cost_wins(self) -> None:
        """Should keep a manual adjustment as the final cost."""
        record = priced(rate_amount=Decimal("1.00"), cost_adjusted=Decimal("7.00"))

        assert services.calculate_cost(record) == Decimal("100.00")
        assert record.cost_final == Decimal("7.00")

    def test_no_rate(self) -> None:
        """Should cost nothing without a rate."""
        assert services.calculate_cost(priced()) == Decimal("0.00")


class TestRunValidation:
    """Tests for run_validation."""

    def test_large_change_is_anomaly(self) -> None:
        """Should flag a jump from 100 to 400 as an anomaly."""
        record = priced(quantity=Decimal("400"), previous_quantity=Decimal("100"), delta=Decimal("300"))

        status = services.run_validation(record, policy=BillingPolicy())

        assert status == Validation.ANOMALY
        assert record.anomaly_detected is True
        assert record.anomaly_score == Decimal("30.00")
        assert record.anomaly_baseline == Decimal("100")
        assert record.anomaly_deviation == Decimal("300.0000")
        assert record.anomaly_reason == "Significant change detected"

    def test_moderate_change_is_valid(self) -> None:
        """Should accept a change within the threshold."""
        record = priced(quantity=Decimal("250"), previous_quantity=Decimal("100"), delta=Decimal("150"))

        assert services.run_validation(record, policy=BillingPolicy()) == Validation.VALID
        assert record.anomaly_detected is False

    def test_no_previous_quantity_skips_anomaly_check(self) -> None:
        """Should not flag first measurements."""
        record = priced(quantity=Decimal("1000000"), delta=Decimal("1000000"))

        assert services.run_validation(record, policy=BillingPolicy()) == Validation.VALID

    def test_out_of_range(self) -> None:
        """Should mark quantities outside the range invalid."""
        record = priced(range_max=Decimal("50"))

        assert services.run_validation(record, policy=BillingPolicy()) == Validation.INVALID
        assert record.range_passed is False

    def test_delta_too_large(self) -> None:
        """Should mark a delta above max_delta invalid."""
        record = priced(quantity=Decimal("120"), previous_quantity=Decimal("100"), delta=Decimal("20"))
        record.max_delta = Decimal("10")

        assert services.run_validation(record, policy=BillingPolicy()) == Validation.INVALID
        assert record.actual_delta == Decimal("20")
        assert record.delta_passed is False

    def test_duplicate_is_invalid(self) -> None:
        """Should mark a duplicate invalid and point at the original."""
        original = priced()
        record = priced()

        assert services.run_validation(record, duplicate=original, policy=BillingPolicy()) == Validation.INVALID
        assert record.duplicate_of is original

    def test_anomaly_beats_invalid(self) -> None:
        """Should report anomaly even when another check failed."""
        record = priced(
            quantity=Decimal("400"),
            previous_quantity=Decimal("100"),
            delta=Decimal("300"),
            range_max=Decimal("50"),
        )

        assert services.run_validation(record, policy=BillingPolicy()) == Validation.ANOMALY

    def test_policy_threshold(self) -> None:
        """Should honour a stricter change threshold."""
        record = priced(quantity=Decimal("250"), previous_quantity=Decimal("100"), delta=Decimal("150"))

        assert services.run_validation(record, policy=BillingPolicy(anomaly_change_percent=100)) == Validation.ANOMALY


class TestCheckLimits:
    """Tests for check_limits."""

    def test_soft_limit(self, now) -> None:
        """Should flag the soft limit only."""
        record = priced(quantity=Decimal("6000"), soft_limit=Decimal("5000"), hard_limit=Decimal("10000"))

        assert services.check_limits(record, now) is True
        assert record.soft_limit_exceeded is True
        assert record.hard_limit_exceeded is False
        assert record.limit_exceeded_at == now

    def test_below_limits(self, now) -> None:
        """Should not flag anything below the limits."""
        record = priced(soft_limit=Decimal("5000"))

        assert services.check_limits(record, now) is False
        assert record.limit_exceeded_at is None


@pytest.mark.django_db
class TestRecordUsage:
    """Tests for record_usage."""

    def test_priced_from_plan(self, organization, metered_subscription, now) -> None:
        """Should price and validate against the active plan."""
        resource = {"type": "project", "id": "p1"}

        record = services.record_usage(organization, "api_calls", 3000, resource=resource, now=now)

        assert record.subscription == metered_subscription
        assert record.tenant_id == organization.tenant_id
        assert record.metric_unit == "calls"
        assert record.cost_final == Decimal("1.00")
        assert record.validation_status == Validation.VALID
        assert record.billing_status == Billing.UNBILLED
        assert record.period_start == now
        assert record.resource_id == "p1"
        assert record.is_billable is True

    def test_unmetered_metric(self, organization, metered_subscription) -> None:
        """Should reject metrics the plan does not meter."""
        with pytest.raises(DomainRuleViolation) as exc_info:
            services.record_usage(organization, "bandwidth", 10)

        assert exc_info.value.code == "INVALID_METRIC"
        assert UsageRecord.objects.count() == 0

    def test_feature_limit_metric_is_metered(self, organization, metered_subscription, now) -> None:
        """Should accept metrics that only appear in the plan's feature limits."""
        record = services.record_usage(organization, "seats", 4, now=now)

        assert record.cost_final == Decimal("0.00")

    def test_without_subscription(self, organization, now) -> None:
        """Should store unpriced usage when no plan applies."""
        record = services.record_usage(organization, "anything", 5, now=now)

        assert record.subscription is None
        assert record.cost_final == Decimal("0.00")
        assert record.validation_status == Validation.VALID

    @pytest.mark.parametrize(
        ("metric", "qty", "code"),
        [("api_calls", -1, "INVALID_QUANTITY"), ("", 1, "VALIDATION_ERROR")],
    )
    def test_invalid_input(self, organization, metric: str, qty: int, code: str) -> None:
        """Should reject an empty metric or negative quantity."""
        with pytest.raises(ValidationError) as exc_info:
            services.record_usage(organization, metric, qty)

        assert exc_info.value.code == code

    def test_reversed_period(self, organization, now) -> None:
        """Should reject a period ending before it starts."""
        with pytest.raises(ValidationError) as exc_info:
            services.record_usage(organization, "api_calls", 1, period=(now, now - timedelta(hours=1)))

        assert exc_info.value.code == "INVALID_PERIOD"

    def test_duplicate_flagged(self, organization, metered_subscription, now) -> None:
        """Should mark a second record for the same period and resource invalid."""
        period = (now - timedelta(hours=1), now)
        first = services.record_usage(organization, "api_calls", 10, resource={"id": "p1"}, period=period)
        second = services.record_usage(organization, "api_calls", 10, resource={"id": "p1"}, period=period)
        other = services.record_usage(organization, "api_calls", 10, resource={"id": "p2"}, period=period)

        assert first.validation_status == Validation.VALID
        assert second.validation_status == Validation.INVALID
        assert second.duplicate_of == first
        assert other.validation_status == Validation.VALID

    def test_anomaly_not_billable(self, organization, metered_subscription, now) -> None:
        """Should store an anomalous record but keep it out of billing."""
        record = services.record_usage(organization, "api_calls", 400, previous_quantity=100, now=now)

        assert record.validation_status == Validation.ANOMALY
        assert record.delta == Decimal("300.0000")
        assert record.is_billable is False

    def test_limit_alert(self, organization, metered_subscription, now) -> None:
        """Should publish an alert when a limit is crossed."""
        record = services.record_usage(organization, "api_calls", 6000, now=now)

        assert record.soft_limit_exceeded is True
        assert record.hard_limit_exceeded is False
        event = OutboxEvent.objects.get(event_type="usage.limit_exceeded")
        assert event.aggregate_id == str(record.pk)


@pytest.mark.django_db
class TestBillingStatus:
    """Tests for bill, dispute, waive, adjust_cost and review."""

    def test_bill(self, organization) -> None:
        """Should bill a valid record once."""
        invoice = make_invoice(organization)
        record = UsageRecordFactory.create(organization=organization)

        record = services.bill(record, invoice=invoice, line_item_id=7)

        assert record.billing_status == Billing.BILLED
        assert record.invoice == invoice
        assert record.line_item_id == "7"
        with pytest.raises(DomainRuleViolation) as exc_info:
            services.bill(record)
        assert exc_info.value.code == "ALREADY_BILLED"

    def test_bill_requires_valid_record(self) -> None:
        """Should not bill records awaiting review."""
        record = UsageRecordFactory.create(validation_status=Validation.ANOMALY)

        with pytest.raises(DomainRuleViolation) as exc_info:
            services.bill(record)

        assert exc_info.value.code == "INVALID_RECORD"

    def test_dispute(self) -> None:
        """Should dispute billed usage and leave a note."""
        record = UsageRecordFactory.create(billing_status=Billing.BILLED)

        record = services.dispute(record, "double counted", actor_id="usr_1")

        assert record.billing_status == Billing.DISPUTED
        assert record.validation_status == Validation.DISPUTED
        note = record.notes.get()
        assert note.note_type == UsageNote.Type.DISPUTE
        assert note.content == "Disputed: double counted"
        assert note.added_by == "usr_1"
        assert OutboxEvent.objects.filter(event_type="usage.disputed").count() == 1

    def test_dispute_unbilled(self) -> None:
        """Should raise NOT_BILLED."""
        with pytest.raises(DomainRuleViolation) as exc_info:
            services.dispute(UsageRecordFactory.create(), "why")

        assert exc_info.value.code == "NOT_BILLED"

    def test_waive(self) -> None:
        """Should zero the cost and record the transition."""
        record = UsageRecordFactory.create(billing_status=Billing.BILLED, cost_calculated=Decimal("12.00"))

        record = services.waive(record, "goodwill")

        assert record.billing_status == Billing.WAIVED
        assert record.cost_final == Decimal("0.00")
        assert record.cost_calculated == Decimal("12.00")
        assert record.notes.get().added_by == "system"
        entry = AuditLog.objects.get(action="usage.waived")
        assert entry.diff == {"old": {"billing_status": "billed"}, "new": {"billing_status": "waived"}}

        with pytest.raises(DomainRuleViolation) as exc_info:
            services.waive(record, "again")
        assert exc_info.value.code == "INVALID_STATUS"

    def test_waive_invoiced(self) -> None:
        """Should refuse to waive invoiced usage."""
        record = UsageRecordFactory.create(billing_status=Billing.INVOICED)

        with pytest.raises(DomainRuleViolation) as exc_info:
            services.waive(record, "late")

        assert exc_info.value.code == "ALREADY_INVOICED"

    def test_adjust_cost(self) -> None:
        """Should override the final cost and audit the change."""
        record = UsageRecordFactory.create(cost_calculated=Decimal("4.00"))

        record = services.adjust_cost(record, "2.50", "negotiated")

        assert record.cost_adjusted == Decimal("2.50")
        assert record.cost_final == Decimal("2.50")
        assert record.cost_calculated == Decimal("4.00")
        entry = AuditLog.objects.get(action="usage.cost_adjusted")
        assert entry.diff == {"old": {"cost_final": "4.00"}, "new": {"cost_final": "2.50"}}

    def test_adjust_cost_rejected(self) -> None:
        """Should reject negative costs and invoiced records."""
        with pytest.raises(ValidationError) as exc_info:
            services.adjust_cost(UsageRecordFactory.create(), "-1", "oops")
        assert exc_info.value.code == "INVALID_AMOUNT"

        with pytest.raises(DomainRuleViolation) as exc_info:
            services.adjust_cost(UsageRecordFactory.create(billing_status=Billing.INVOICED), "1", "late")
        assert exc_info.value.code == "ALREADY_INVOICED"

    def test_review(self, now) -> None:
        """Should approve anomalies and reject invalid records."""
        anomaly = UsageRecordFactory.create(validation_status=Validation.ANOMALY)
        invalid = UsageRecordFactory.create(validation_status=Validation.INVALID)

        approved = services.review(anomaly, approve=True, reviewer_id="usr_ops", note="seasonal", now=now)
        rejected = services.review(invalid, approve=False, reviewer_id="usr_ops", now=now)

        assert approved.validation_status == Validation.VALID
        assert approved.reviewed_by == "usr_ops"
        assert approved.reviewed_at == now
        assert approved.notes.get().content == "Approved: seasonal"
        assert rejected.validation_status == Validation.INVALID
        assert rejected.notes.get().content == "Rejected"

    def test_review_valid_record(self) -> None:
        """Should raise NOT_UNDER_REVIEW."""
        with pytest.raises(DomainRuleViolation) as exc_info:
            services.review(UsageRecordFactory.create(), approve=True, reviewer_id="usr_ops")

        assert exc_info.value.code == "NOT_UNDER_REVIEW"

    def test_mark_invoiced(self, organization) -> None:
        """Should move billed records of the invoice to invoiced."""
        invoice = make_invoice(organization)
        billed = UsageRecordFactory.create(organization=organization, billing_status=Billing.BILLED, invoice=invoice)
        unrelated = UsageRecordFactory.create(organization=organization, billing_status=Billing.BILLED)

        assert services.mark_invoiced(invoice) == 1

        billed_version = billed.version
        billed.refresh_from_db()
        unrelated.refresh_from_db()
        assert billed.billing_status == Billing.INVOICED
        assert billed.version == billed_version + 1
        assert unrelated.billing_status == Billing.BILLED


@pytest.mark.django_db
class TestQueries:
    """Tests for get_usage_record and get_unbilled_usage."""

    def test_get_usage_record_scoped(self, organization) -> None:
        """Should not return another organization's record."""
        record = UsageRecordFactory.create(organization=organization)

        assert services.get_usage_record(organization, record.record_id) == record
        with pytest.raises(NotFoundError) as exc_info:
            services.get_usage_record(OrganizationFactory.create(), record.record_id)
        assert exc_info.value.code == "USAGE_RECORD_NOT_FOUND"

    def test_unbilled_usage(self, organization, now) -> None:
        """Should list valid unbilled records with a cost summary."""
        early = UsageRecordFactory.create(organization=organization, cost_calculated=Decimal("1.25"))
        late = UsageRecordFactory.create(
            organization=organization,
            metric_name="storage_gb",
            cost_calculated=Decimal("2.00"),
            period_start=now,
        )
        UsageRecordFactory.create(organization=organization, billing_status=Billing.BILLED)
        UsageRecordFactory.create(organization=organization, validation_status=Validation.ANOMALY)

        everything = services.get_unbilled_usage(organization)
        until_early = services.get_unbilled_usage(organization, end_date=now - timedelta(days=1))

        assert everything["records"] == [early, late]
        assert everything["summary"] == {
            "total_cost": Decimal("3.25"),
            "record_count": 2,
            "metrics": ["api_calls", "storage_gb"],
        }
        assert until_early["records"] == [early]


@pytest.mark.django_db
class TestPurgeExpiredUsage:
    """Tests for purge_expired_usage."""

    def test_purges_only_aggregated_children(self, organization, now) -> None:
        """Should delete old children and keep parents and loose records."""
        parent = UsageRecordFactory.create(organization=organization, is_aggregate=True)
        old_child = UsageRecordFactory.create(organization=organization, parent=parent)
        recent_child = UsageRecordFactory.create(organization=organization, parent=parent, period_start=now)
        loose = UsageRecordFactory.create(organization=organization)

        assert services.purge_expired_usage(retention_days=1, now=now, dry_run=True) == 1
        assert UsageRecord.objects.filter(pk=old_child.pk).exists()

        assert services.purge_expired_usage(retention_days=1, now=now) == 1

        remaining = set(UsageRecord.objects.values_list("pk", flat=True))
        assert remaining == {parent.pk, recent_child.pk, loose.pk}

    def test_policy_retention(self, organization, now) -> None:
        """Should use each organization's retention when none is given."""
        parent = UsageRecordFactory.create(organization=organization, is_aggregate=True)
        UsageRecordFactory.create(organization=organization, parent=parent)
        organization.billing_policy_overrides = {"usage_retention_days": 2}
        organization.save()

        assert services.purge_expired_usage(now=now) == 1
        assert services.purge_expired_usage(now=now) == 0
