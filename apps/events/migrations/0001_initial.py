import uuid

from django.db import migrations, models


class Migration(migrations.Migration):
    initial = True

    dependencies = []

    operations = [
        migrations.CreateModel(
            name="AuditLog",
            fields=[
                ("id", models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                (
                    "action",
                    models.CharField(db_index=True, help_text="Action type, e.g. 'invoice.voided'", max_length=100),
                ),
                ("aggregate_type", models.CharField(max_length=50)),
                ("aggregate_id", models.CharField(max_length=100)),
                ("organization_id", models.CharField(db_index=True, max_length=100)),
                (
                    "actor_id",
                    models.CharField(
                        db_index=True, help_text="User or system ID that performed the action", max_length=100
                    ),
                ),
                ("correlation_id", models.CharField(blank=True, db_index=True, max_length=64)),
                (
                    "diff",
                    models.JSONField(
                        blank=True, default=dict, help_text="Field-level changes: {'old': {...}, 'new': {...}}"
                    ),
                ),
                ("metadata", models.JSONField(blank=True, default=dict)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
            ],
            options={
                "ordering": ["-created_at"],
                "indexes": [
                    models.Index(fields=["organization_id", "created_at"], name="events_audi_organiz_6f29d4_idx"),
                    models.Index(fields=["aggregate_type", "aggregate_id"], name="events_audi_aggrega_92f909_idx"),
                ],
            },
        ),
        migrations.CreateModel(
            name="OutboxEvent",
            fields=[
                ("id", models.BigAutoField(primary_key=True, serialize=False)),
                (
                    "event_id",
                    models.UUIDField(
                        db_index=True,
                        default=uuid.uuid4,
                        help_text="Unique event identifier for consumer idempotency",
                        unique=True,
                    ),
                ),
                (
                    "event_type",
                    models.CharField(db_index=True, help_text="Event type, e.g. 'invoice.sent'", max_length=100),
                ),
                ("aggregate_type", models.CharField(help_text="Entity type, e.g. 'invoice'", max_length=50)),
                ("aggregate_id", models.CharField(max_length=100)),
                ("organization_id", models.CharField(db_index=True, max_length=100)),
                ("schema_version", models.PositiveIntegerField(default=1)),
                ("payload", models.JSONField(help_text="Complete event envelope")),
                (
                    "status",
                    models.CharField(
                        choices=[("pending", "Pending"), ("published", "Published"), ("failed", "Failed")],
                        db_index=True,
                        default="pending",
                        max_length=20,
                    ),
                ),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("published_at", models.DateTimeField(blank=True, null=True)),
            ],
            options={
                "ordering": ["created_at"],
                "indexes": [
                    models.Index(fields=["aggregate_type", "aggregate_id"], name="events_outb_aggrega_11f4b9_idx"),
                ],
            },
        ),
    ]
