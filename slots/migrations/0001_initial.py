import decimal

import django.db.models.deletion
from django.conf import settings
from django.db import migrations, models


class Migration(migrations.Migration):

    initial = True

    dependencies = [
        ("clinics", "0001_initial"),
        migrations.swappable_dependency(settings.AUTH_USER_MODEL),
    ]

    operations = [
        migrations.CreateModel(
            name="Slot",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("date", models.DateField()),
                ("time", models.TimeField()),
                ("duration_minutes", models.PositiveIntegerField(default=30)),
                ("price", models.DecimalField(decimal_places=2, default=decimal.Decimal("0.00"), max_digits=10)),
                (
                    "payment_mode",
                    models.CharField(
                        choices=[("FREE", "Free"), ("ONLINE", "Pay online"), ("OFFLINE", "Pay at clinic")],
                        default="ONLINE",
                        max_length=10,
                    ),
                ),
                (
                    "kind",
                    models.CharField(
                        choices=[("APPOINTMENT", "Appointment"), ("BREAK", "Break")],
                        default="APPOINTMENT",
                        max_length=12,
                    ),
                ),
                (
                    "status",
                    models.CharField(
                        choices=[
                            ("AVAILABLE", "Available"),
                            ("PENDING", "Pending"),
                            ("PENDING_PAYMENT", "Pending payment"),
                            ("CONFIRMED", "Confirmed"),
                        ],
                        default="AVAILABLE",
                        max_length=20,
                    ),
                ),
                ("is_blocked", models.BooleanField(default=False)),
                ("blocked_reason", models.CharField(blank=True, max_length=255)),
                ("blocked_at", models.DateTimeField(blank=True, null=True)),
                ("deleted_at", models.DateTimeField(blank=True, null=True)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
                (
                    "blocked_by",
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.SET_NULL,
                        related_name="blocked_slots",
                        to=settings.AUTH_USER_MODEL,
                    ),
                ),
                (
                    "clinic",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="slots",
                        to="clinics.clinic",
                    ),
                ),
                (
                    "doctor",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="slots",
                        to=settings.AUTH_USER_MODEL,
                    ),
                ),
            ],
            options={
                "verbose_name": "Slot",
                "verbose_name_plural": "Slots",
                "ordering": ["date", "time"],
                "indexes": [
                    models.Index(fields=["clinic", "doctor", "date"], name="slot_clinic_doctor_date_idx"),
                ],
                "constraints": [
                    models.UniqueConstraint(
                        condition=models.Q(("deleted_at__isnull", True)),
                        fields=("doctor", "date", "time"),
                        name="unique_live_slot_per_doctor_start",
                    ),
                ],
            },
        ),
    ]
