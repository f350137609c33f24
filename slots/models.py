from datetime import datetime, timedelta
from decimal import Decimal

from django.conf import settings
from django.core.exceptions import ValidationError
from django.db import models

from clinics.models import Clinic


class Slot(models.Model):
    """
    A bookable time window for a doctor at a clinic.

    Slots are created by clinic staff (one at a time or in bulk) and are
    never hard-deleted: ``deleted_at`` marks a slot as gone once no live
    appointment references it.

    No two non-deleted slots of the same doctor may overlap on the same
    day. Overlap is tested on half-open intervals, so a 09:00-09:30 slot
    and a 09:30-10:00 slot can coexist.
    """

    class PaymentMode(models.TextChoices):
        FREE = "FREE", "Free"
        ONLINE = "ONLINE", "Pay online"
        OFFLINE = "OFFLINE", "Pay at clinic"

    class Kind(models.TextChoices):
        APPOINTMENT = "APPOINTMENT", "Appointment"
        BREAK = "BREAK", "Break"

    class Status(models.TextChoices):
        AVAILABLE = "AVAILABLE", "Available"
        PENDING = "PENDING", "Pending"
        PENDING_PAYMENT = "PENDING_PAYMENT", "Pending payment"
        CONFIRMED = "CONFIRMED", "Confirmed"

    clinic = models.ForeignKey(Clinic, on_delete=models.CASCADE, related_name="slots")
    doctor = models.ForeignKey(
        settings.AUTH_USER_MODEL, on_delete=models.CASCADE, related_name="slots"
    )
    date = models.DateField()
    time = models.TimeField()
    duration_minutes = models.PositiveIntegerField(default=30)
    price = models.DecimalField(max_digits=10, decimal_places=2, default=Decimal("0.00"))
    payment_mode = models.CharField(
        max_length=10, choices=PaymentMode.choices, default=PaymentMode.ONLINE
    )
    kind = models.CharField(max_length=12, choices=Kind.choices, default=Kind.APPOINTMENT)
    status = models.CharField(max_length=20, choices=Status.choices, default=Status.AVAILABLE)

    is_blocked = models.BooleanField(default=False)
    blocked_reason = models.CharField(max_length=255, blank=True)
    blocked_by = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="blocked_slots",
    )
    blocked_at = models.DateTimeField(null=True, blank=True)

    deleted_at = models.DateTimeField(null=True, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ["date", "time"]
        verbose_name = "Slot"
        verbose_name_plural = "Slots"
        constraints = [
            models.UniqueConstraint(
                fields=["doctor", "date", "time"],
                condition=models.Q(deleted_at__isnull=True),
                name="unique_live_slot_per_doctor_start",
            ),
        ]
        indexes = [
            models.Index(fields=["clinic", "doctor", "date"], name="slot_clinic_doctor_date_idx"),
        ]

    def __str__(self):
        return f"{self.doctor.name} {self.date} {self.time:%H:%M} ({self.duration_minutes}min, {self.payment_mode})"

    # ── Time helpers ─────────────────────────────────────────────────────────

    @property
    def start_datetime(self):
        """Naive local start of the slot."""
        return datetime.combine(self.date, self.time)

    @property
    def end_datetime(self):
        return self.start_datetime + timedelta(minutes=self.duration_minutes)

    @property
    def end_time(self):
        return self.end_datetime.time()

    @property
    def is_deleted(self):
        return self.deleted_at is not None

    @property
    def is_online(self):
        return self.payment_mode == self.PaymentMode.ONLINE

    def overlaps(self, other):
        """Half-open interval overlap test against another slot."""
        return (
            self.start_datetime < other.end_datetime
            and other.start_datetime < self.end_datetime
        )

    # ── Validation ───────────────────────────────────────────────────────────

    def clean(self):
        """
        Validate:
        1. Duration is positive.
        2. FREE slots carry no price; paid slots have a non-negative price.
        3. No overlap with another live slot of the same doctor that day.
        """
        super().clean()

        if not self.duration_minutes:
            raise ValidationError({"duration_minutes": "Duration must be at least one minute."})

        if self.payment_mode == self.PaymentMode.FREE:
            self.price = Decimal("0.00")
        elif self.price is not None and self.price < 0:
            raise ValidationError({"price": "Price cannot be negative."})

        if self.deleted_at is None and self.doctor_id and self.date and self.time:
            conflict = self.find_overlapping()
            if conflict is not None:
                raise ValidationError(
                    f"This time overlaps with an existing slot on {self.date}: "
                    f"{conflict.time:%H:%M}-{conflict.end_time:%H:%M}."
                )

    def find_overlapping(self):
        """Return the first live slot of this doctor on this date that overlaps, or None."""
        same_day = Slot.objects.filter(
            doctor_id=self.doctor_id,
            date=self.date,
            deleted_at__isnull=True,
        )
        if self.pk:
            same_day = same_day.exclude(pk=self.pk)

        for existing in same_day:
            if self.overlaps(existing):
                return existing
        return None

    def save(self, *args, **kwargs):
        # Status-only updates (claim/release) skip the overlap scan.
        update_fields = kwargs.get("update_fields")
        if update_fields is None or {"date", "time", "duration_minutes", "price", "payment_mode"} & set(update_fields):
            self.full_clean()
        super().save(*args, **kwargs)
