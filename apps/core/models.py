"""
Core models - shared base classes and utilities.
"""

from typing import Self

from django.db import models

from apps.core.exceptions import ConcurrencyConflict, NotFoundError


class TimestampedModel(models.Model):
    """
    Abstract base model with created_at/updated_at timestamps.
    """

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        abstract = True


class TenantScopedModel(TimestampedModel):
    """
    Abstract base model for all organization-scoped entities.

    Provides:
    - Organization FK
    - Denormalized tenant_id (invoice numbering and metrics group by tenant)
    - Timestamps from TimestampedModel
    """

    organization = models.ForeignKey(
        "organizations.Organization",
        on_delete=models.PROTECT,
        related_name="%(class)s_set",
    )
    tenant_id = models.CharField(max_length=100, db_index=True, blank=True)

    class Meta:
        abstract = True

    def save(self, *args, **kwargs):
        if not self.tenant_id and self.organization_id:
            self.tenant_id = self.organization.tenant_id
        super().save(*args, **kwargs)


class VersionedModel(TenantScopedModel):
    """
    Aggregate root with an optimistic version counter.

    Mutations go through lock_for_update(), which takes a row lock for the
    duration of the surrounding transaction.atomic() block, so at most one
    mutation per entity id is in flight. Callers holding a stale copy can pass
    expected_version to be rejected instead of overwriting newer state.
    """

    version = models.PositiveBigIntegerField(default=0)

    class Meta:
        abstract = True

    def save(self, *args, **kwargs):
        """Increment version on save."""
        self.version += 1
        update_fields = kwargs.get("update_fields")
        if update_fields is not None:
            kwargs["update_fields"] = {*update_fields, "version", "updated_at"}
        super().save(*args, **kwargs)

    @classmethod
    def lock_for_update(cls, pk, expected_version: int | None = None) -> Self:
        """
        Re-read the row with SELECT ... FOR UPDATE.

        Must be called inside transaction.atomic().

        Raises:
            NotFoundError: Row does not exist.
            ConcurrencyConflict: Row version differs from expected_version.
        """
        try:
            instance = cls.objects.select_for_update().get(pk=pk)
        except cls.DoesNotExist as e:
            raise NotFoundError(
                f"{cls.__name__} {pk} not found", code=f"{cls.__name__.upper()}_NOT_FOUND"
            ) from e

        if expected_version is not None and instance.version != expected_version:
            raise ConcurrencyConflict(
                f"{cls.__name__} {pk} was modified concurrently",
                expected_version=expected_version,
                actual_version=instance.version,
            )
        return instance


class ProcessedWebhook(models.Model):
    """Idempotency marker for an inbound webhook event."""

    source = models.CharField(max_length=50, help_text="Webhook provider, e.g. 'stripe'")
    event_id = models.CharField(max_length=255)
    processed_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        constraints = [
            models.UniqueConstraint(fields=["source", "event_id"], name="unique_processed_webhook"),
        ]

    def __str__(self) -> str:
        return f"{self.source}:{self.event_id}"
