from django.conf import settings
from django.db import models
from django.utils import timezone

from clinics.models import Clinic


class AppointmentQuerySet(models.QuerySet):
    def live(self):
        """Exclude soft-deleted appointments."""
        return self.filter(deleted_at__isnull=True)

    def holding_slots(self):
        """Appointments that currently occupy their slot (everything except CANCELLED)."""
        return self.live().exclude(status=Appointment.Status.CANCELLED)

    def non_terminal(self):
        return self.live().exclude(status__in=Appointment.TERMINAL_STATUSES)


class Appointment(models.Model):
    """
    A patient's reservation against a Slot.

    Only one appointment that is not CANCELLED may reference a slot at any
    time. The rule is enforced by a partial unique constraint, so the
    losing side of a booking race gets an IntegrityError from the database
    and the services turn it into a slot-unavailable conflict.

    Appointments are never hard-deleted; ``deleted_at`` soft-deletes them.
    """

    class Status(models.TextChoices):
        PENDING = "PENDING", "Pending"
        PENDING_PAYMENT = "PENDING_PAYMENT", "Pending Payment"
        CONFIRMED = "CONFIRMED", "Confirmed"
        CANCEL_REQUESTED = "CANCEL_REQUESTED", "Cancellation Requested"
        COMPLETED = "COMPLETED", "Completed"
        NO_SHOW = "NO_SHOW", "No Show"
        CANCELLED = "CANCELLED", "Cancelled"

    class PaymentStatus(models.TextChoices):
        PENDING = "PENDING", "Pending"
        PAID = "PAID", "Paid"
        FAILED = "FAILED", "Failed"
        REFUNDED = "REFUNDED", "Refunded"

    class FinancialStatus(models.TextChoices):
        NO_CHANGE = "NO_CHANGE", "No change"
        PAY_DIFFERENCE = "PAY_DIFFERENCE", "Pay difference"
        REFUND_AT_CLINIC = "REFUND_AT_CLINIC", "Refund at clinic"
        OFFLINE_TO_ONLINE = "OFFLINE_TO_ONLINE", "Offline to online"

    class Actor(models.TextChoices):
        USER = "USER", "Patient"
        CLINIC = "CLINIC", "Clinic"
        SYSTEM = "SYSTEM", "System"

    TERMINAL_STATUSES = (Status.COMPLETED, Status.NO_SHOW, Status.CANCELLED)
    HOLD_STATUSES = (Status.PENDING, Status.PENDING_PAYMENT)

    patient = models.ForeignKey(
        settings.AUTH_USER_MODEL, on_delete=models.PROTECT, related_name="appointments_as_patient"
    )
    doctor = models.ForeignKey(
        settings.AUTH_USER_MODEL, on_delete=models.PROTECT, related_name="appointments_as_doctor"
    )
    clinic = models.ForeignKey(Clinic, on_delete=models.CASCADE, related_name="appointments")
    slot = models.ForeignKey("slots.Slot", on_delete=models.PROTECT, related_name="appointments")

    status = models.CharField(max_length=20, choices=Status.choices, default=Status.PENDING)
    payment_status = models.CharField(
        max_length=20, choices=PaymentStatus.choices, default=PaymentStatus.PENDING
    )
    financial_status = models.CharField(
        max_length=20, choices=FinancialStatus.choices, blank=True, default=""
    )
    amount = models.DecimalField(max_digits=10, decimal_places=2, default=0)
    diff_amount = models.DecimalField(max_digits=10, decimal_places=2, default=0)
    reschedule_count = models.PositiveIntegerField(default=0)
    awaiting_reschedule_payment = models.BooleanField(
        default=False,
        help_text="A reschedule moved this appointment and its gateway payment is outstanding.",
    )

    payment_provider = models.CharField(max_length=20, blank=True)
    order_ref = models.CharField(max_length=255, blank=True, db_index=True)
    payment_expires_at = models.DateTimeField(null=True, blank=True)

    reason = models.TextField(blank=True, help_text="Reason for visit")
    admin_note = models.TextField(blank=True)
    cancel_reason = models.TextField(blank=True)
    cancelled_by = models.CharField(max_length=10, choices=Actor.choices, blank=True)
    cancelled_at = models.DateTimeField(null=True, blank=True)

    created_by = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="appointments_created",
    )
    deleted_at = models.DateTimeField(null=True, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    objects = AppointmentQuerySet.as_manager()

    class Meta:
        ordering = ["-created_at"]
        verbose_name = "Appointment"
        verbose_name_plural = "Appointments"
        constraints = [
            models.UniqueConstraint(
                fields=["slot"],
                condition=models.Q(deleted_at__isnull=True) & ~models.Q(status="CANCELLED"),
                name="unique_live_appointment_per_slot",
            ),
        ]

    def __str__(self):
        return f"#{self.pk} {self.patient.name} - {self.clinic.name} ({self.status})"

    @property
    def is_terminal(self):
        return self.status in self.TERMINAL_STATUSES

    @property
    def is_paid(self):
        return self.payment_status == self.PaymentStatus.PAID

    @property
    def amount_due(self):
        """What the open payment order charges: the difference after a reschedule, else the price."""
        return self.diff_amount if self.awaiting_reschedule_payment else self.amount

    def hold_expired(self, now=None):
        """
        True when this appointment is an unpaid payment hold whose window lapsed.

        Pay-at-clinic and free bookings carry no expiry and never lapse.
        """
        if self.status not in self.HOLD_STATUSES or self.is_paid:
            return False
        if self.payment_expires_at is None:
            return False
        return self.payment_expires_at <= (now or timezone.now())


class CancellationRequest(models.Model):
    """
    Staff-approval workflow for cancelling an online-paid appointment.

    At most one request exists per appointment. A REJECTED request may be
    reopened by the patient; PENDING and APPROVED requests block new ones.
    ``previous_status`` remembers what to restore on rejection.
    """

    class Status(models.TextChoices):
        PENDING = "PENDING", "Pending"
        APPROVED = "APPROVED", "Approved"
        REJECTED = "REJECTED", "Rejected"

    appointment = models.OneToOneField(
        Appointment, on_delete=models.PROTECT, related_name="cancellation_request"
    )
    status = models.CharField(max_length=10, choices=Status.choices, default=Status.PENDING)
    reason = models.TextField(blank=True)
    previous_status = models.CharField(max_length=20, choices=Appointment.Status.choices)
    requested_by = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="cancellation_requests",
    )
    processed_by = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="processed_cancellation_requests",
    )
    processed_at = models.DateTimeField(null=True, blank=True)
    resolution_note = models.TextField(blank=True)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ["-created_at"]
        verbose_name = "Cancellation Request"
        verbose_name_plural = "Cancellation Requests"

    def __str__(self):
        return f"Cancellation of Appt #{self.appointment_id} ({self.status})"


class AppointmentLog(models.Model):
    """
    Append-only history of reschedule and cancellation events.

    Rows are written once and never updated or deleted.
    """

    class Action(models.TextChoices):
        RESCHEDULE = "RESCHEDULE", "Reschedule"
        CANCEL = "CANCEL", "Cancel"
        CANCEL_REQUEST = "CANCEL_REQUEST", "Cancellation request"
        EXPIRE = "EXPIRE", "Payment hold expired"

    appointment = models.ForeignKey(Appointment, on_delete=models.PROTECT, related_name="logs")
    action = models.CharField(max_length=20, choices=Action.choices)
    old_date = models.DateField()
    old_time = models.TimeField()
    new_date = models.DateField(null=True, blank=True)
    new_time = models.TimeField(null=True, blank=True)
    changed_by = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="appointment_changes",
    )
    reason = models.TextField(blank=True)
    metadata = models.JSONField(default=dict, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ["created_at"]
        verbose_name = "Appointment Log"
        verbose_name_plural = "Appointment Logs"

    def __str__(self):
        return f"[{self.action}] Appt #{self.appointment_id} {self.old_date} {self.old_time:%H:%M}"

    def save(self, *args, **kwargs):
        if self.pk is not None:
            raise ValueError("AppointmentLog entries are immutable.")
        super().save(*args, **kwargs)

    def delete(self, *args, **kwargs):
        raise ValueError("AppointmentLog entries are immutable.")


class ClinicNotification(models.Model):
    """
    In-app notification for clinic staff about an appointment event.

    Delivery and read-state handling belong to the dashboard; the booking
    core only writes rows, inside the same transaction as the event.
    """

    class Type(models.TextChoices):
        CANCELLATION = "CANCELLATION", "Cancellation"
        RESCHEDULE = "RESCHEDULE", "Reschedule"
        CANCEL_REQUEST = "CANCEL_REQUEST", "Cancellation request"

    class Priority(models.TextChoices):
        NORMAL = "NORMAL", "Normal"
        HIGH = "HIGH", "High"

    clinic = models.ForeignKey(Clinic, on_delete=models.CASCADE, related_name="notifications")
    notification_type = models.CharField(max_length=20, choices=Type.choices)
    entity_id = models.PositiveBigIntegerField()
    message = models.TextField()
    priority = models.CharField(max_length=10, choices=Priority.choices, default=Priority.NORMAL)
    created_at = models.DateTimeField(auto_now_add=True)
    read_at = models.DateTimeField(null=True, blank=True)

    class Meta:
        ordering = ["-created_at"]
        verbose_name = "Clinic Notification"
        verbose_name_plural = "Clinic Notifications"
        indexes = [
            models.Index(fields=["clinic", "notification_type", "read_at"], name="notif_clinic_type_read_idx"),
        ]

    def __str__(self):
        return f"[{self.notification_type}] clinic={self.clinic_id} entity={self.entity_id}"
