from django.db import models

from clinics.models import Clinic


class GatewayCredential(models.Model):
    """A clinic's own credentials for a payment provider.

    When a clinic has no active credential for a provider the platform
    credentials from settings.PAYMENT_GATEWAYS are used.
    """

    clinic = models.ForeignKey(Clinic, on_delete=models.CASCADE, related_name="gateway_credentials")
    provider = models.CharField(max_length=20)
    key_id = models.CharField(max_length=255, blank=True)
    secret = models.CharField(max_length=255)
    webhook_secret = models.CharField(max_length=255, blank=True)
    is_active = models.BooleanField(default=True)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        unique_together = ["clinic", "provider"]
        verbose_name = "Gateway Credential"
        verbose_name_plural = "Gateway Credentials"

    def __str__(self):
        return f"{self.clinic.name} - {self.provider}"


class Payment(models.Model):
    """
    The payment record of an appointment.

    One row per appointment, created or updated on confirmation and never
    duplicated. A gateway payment reference maps to at most one row.

    ``amount`` is the total captured across the row's captures;
    ``gateway_ref`` and ``order_ref`` point at the latest capture.
    """

    class Status(models.TextChoices):
        PENDING = "PENDING", "Pending"
        PAID = "PAID", "Paid"
        REFUNDED = "REFUNDED", "Refunded"

    appointment = models.OneToOneField(
        "appointments.Appointment", on_delete=models.PROTECT, related_name="payment"
    )
    provider = models.CharField(max_length=20)
    gateway_ref = models.CharField(max_length=255, unique=True, null=True, blank=True)
    order_ref = models.CharField(max_length=255, blank=True)
    amount = models.DecimalField(max_digits=10, decimal_places=2, default=0)
    currency = models.CharField(max_length=3, default="INR")
    status = models.CharField(max_length=10, choices=Status.choices, default=Status.PENDING)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ["-created_at"]

    def __str__(self):
        return f"Payment {self.gateway_ref or '-'} for Appt #{self.appointment_id} ({self.status})"


class PaymentCapture(models.Model):
    """
    One amount captured by the gateway for an appointment.

    A booking is one capture; paying a reschedule difference adds another.
    Refunds go out per capture, each for the amount it actually captured.
    """

    class Purpose(models.TextChoices):
        BOOKING = "BOOKING", "Booking"
        RESCHEDULE = "RESCHEDULE", "Reschedule difference"

    payment = models.ForeignKey(Payment, on_delete=models.CASCADE, related_name="captures")
    gateway_ref = models.CharField(max_length=255, unique=True)
    order_ref = models.CharField(max_length=255)
    amount = models.DecimalField(max_digits=10, decimal_places=2)
    purpose = models.CharField(max_length=12, choices=Purpose.choices, default=Purpose.BOOKING)
    status = models.CharField(max_length=10, choices=Payment.Status.choices, default=Payment.Status.PAID)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ["created_at", "id"]

    def __str__(self):
        return f"{self.gateway_ref} {self.amount} ({self.purpose}, {self.status})"
