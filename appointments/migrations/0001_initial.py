import django.db.models.deletion
from django.conf import settings
from django.db import migrations, models


APPOINTMENT_STATUS_CHOICES = [
    ("PENDING", "Pending"),
    ("PENDING_PAYMENT", "Pending Payment"),
    ("CONFIRMED", "Confirmed"),
    ("CANCEL_REQUESTED", "Cancellation Requested"),
    ("COMPLETED", "Completed"),
    ("NO_SHOW", "No Show"),
    ("CANCELLED", "Cancelled"),
]


class Migration(migrations.Migration):

    initial = True

    dependencies = [
        ("clinics", "0001_initial"),
        ("slots", "0001_initial"),
        migrations.swappable_dependency(settings.AUTH_USER_MODEL),
    ]

    operations = [
        migrations.CreateModel(
            name="Appointment",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("status", models.CharField(choices=APPOINTMENT_STATUS_CHOICES, default="PENDING", max_length=20)),
                (
                    "payment_status",
                    models.CharField(
                        choices=[
                            ("PENDING", "Pending"),
                            ("PAID", "Paid"),
                            ("FAILED", "Failed"),
                            ("REFUNDED", "Refunded"),
                        ],
                        default="PENDING",
                        max_length=20,
                    ),
                ),
                (
                    "financial_status",
                    models.CharField(
                        blank=True,
                        choices=[
                            ("NO_CHANGE", "No change"),
                            ("PAY_DIFFERENCE", "Pay difference"),
                            ("REFUND_AT_CLINIC", "Refund at clinic"),
                            ("OFFLINE_TO_ONLINE", "Offline to online"),
                        ],
                        default="",
                        max_length=20,
                    ),
                ),
                ("amount", models.DecimalField(decimal_places=2, default=0, max_digits=10)),
                ("diff_amount", models.DecimalField(decimal_places=2, default=0, max_digits=10)),
                ("reschedule_count", models.PositiveIntegerField(default=0)),
                (
                    "awaiting_reschedule_payment",
                    models.BooleanField(
                        default=False,
                        help_text="A reschedule moved this appointment and its gateway payment is outstanding.",
                    ),
                ),
                ("payment_provider", models.CharField(blank=True, max_length=20)),
                ("order_ref", models.CharField(blank=True, db_index=True, max_length=255)),
                ("payment_expires_at", models.DateTimeField(blank=True, null=True)),
                ("reason", models.TextField(blank=True, help_text="Reason for visit")),
                ("admin_note", models.TextField(blank=True)),
                ("cancel_reason", models.TextField(blank=True)),
                (
                    "cancelled_by",
                    models.CharField(
                        blank=True,
                        choices=[("USER", "Patient"), ("CLINIC", "Clinic"), ("SYSTEM", "System")],
                        max_length=10,
                    ),
                ),
                ("cancelled_at", models.DateTimeField(blank=True, null=True)),
                ("deleted_at", models.DateTimeField(blank=True, null=True)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
                (
                    "clinic",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="appointments",
                        to="clinics.clinic",
                    ),
                ),
                (
                    "created_by",
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.SET_NULL,
                        related_name="appointments_created",
                        to=settings.AUTH_USER_MODEL,
                    ),
                ),
                (
                    "doctor",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="appointments_as_doctor",
                        to=settings.AUTH_USER_MODEL,
                    ),
                ),
                (
                    "patient",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="appointments_as_patient",
                        to=settings.AUTH_USER_MODEL,
                    ),
                ),
                (
                    "slot",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="appointments",
                        to="slots.slot",
                    ),
                ),
            ],
            options={
                "verbose_name": "Appointment",
                "verbose_name_plural": "Appointments",
                "ordering": ["-created_at"],
                "constraints": [
                    models.UniqueConstraint(
                        condition=models.Q(("deleted_at__isnull", True), models.Q(("status", "CANCELLED"), _negated=True)),
                        fields=("slot",),
                        name="unique_live_appointment_per_slot",
                    ),
                ],
            },
        ),
        migrations.CreateModel(
            name="CancellationRequest",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                (
                    "status",
                    models.CharField(
                        choices=[("PENDING", "Pending"), ("APPROVED", "Approved"), ("REJECTED", "Rejected")],
                        default="PENDING",
                        max_length=10,
                    ),
                ),
                ("reason", models.TextField(blank=True)),
                ("previous_status", models.CharField(choices=APPOINTMENT_STATUS_CHOICES, max_length=20)),
                ("processed_at", models.DateTimeField(blank=True, null=True)),
                ("resolution_note", models.TextField(blank=True)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                (
                    "appointment",
                    models.OneToOneField(
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="cancellation_request",
                        to="appointments.appointment",
                    ),
                ),
                (
                    "processed_by",
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.SET_NULL,
                        related_name="processed_cancellation_requests",
                        to=settings.AUTH_USER_MODEL,
                    ),
                ),
                (
                    "requested_by",
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.SET_NULL,
                        related_name="cancellation_requests",
                        to=settings.AUTH_USER_MODEL,
                    ),
                ),
            ],
            options={
                "verbose_name": "Cancellation Request",
                "verbose_name_plural": "Cancellation Requests",
                "ordering": ["-created_at"],
            },
        ),
        migrations.CreateModel(
            name="AppointmentLog",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                (
                    "action",
                    models.CharField(
                        choices=[
                            ("RESCHEDULE", "Reschedule"),
                            ("CANCEL", "Cancel"),
                            ("CANCEL_REQUEST", "Cancellation request"),
                            ("EXPIRE", "Payment hold expired"),
                        ],
                        max_length=20,
                    ),
                ),
                ("old_date", models.DateField()),
                ("old_time", models.TimeField()),
                ("new_date", models.DateField(blank=True, null=True)),
                ("new_time", models.TimeField(blank=True, null=True)),
                ("reason", models.TextField(blank=True)),
                ("metadata", models.JSONField(blank=True, default=dict)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                (
                    "appointment",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="logs",
                        to="appointments.appointment",
                    ),
                ),
                (
                    "changed_by",
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.SET_NULL,
                        related_name="appointment_changes",
                        to=settings.AUTH_USER_MODEL,
                    ),
                ),
            ],
            options={
                "verbose_name": "Appointment Log",
                "verbose_name_plural": "Appointment Logs",
                "ordering": ["created_at"],
            },
        ),
        migrations.CreateModel(
            name="ClinicNotification",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                (
                    "notification_type",
                    models.CharField(
                        choices=[
                            ("CANCELLATION", "Cancellation"),
                            ("RESCHEDULE", "Reschedule"),
                            ("CANCEL_REQUEST", "Cancellation request"),
                        ],
                        max_length=20,
                    ),
                ),
                ("entity_id", models.PositiveBigIntegerField()),
                ("message", models.TextField()),
                (
                    "priority",
                    models.CharField(
                        choices=[("NORMAL", "Normal"), ("HIGH", "High")],
                        default="NORMAL",
                        max_length=10,
                    ),
                ),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("read_at", models.DateTimeField(blank=True, null=True)),
                (
                    "clinic",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="notifications",
                        to="clinics.clinic",
                    ),
                ),
            ],
            options={
                "verbose_name": "Clinic Notification",
                "verbose_name_plural": "Clinic Notifications",
                "ordering": ["-created_at"],
                "indexes": [
                    models.Index(
                        fields=["clinic", "notification_type", "read_at"],
                        name="notif_clinic_type_read_idx",
                    ),
                ],
            },
        ),
    ]
