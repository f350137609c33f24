from django.conf import settings
from django.db import models


class Clinic(models.Model):
    """
    The tenant. Every slot, appointment and payment belongs to exactly one
    clinic, and staff only ever see their own clinic's rows.
    """

    name = models.CharField(max_length=255)
    address = models.TextField()
    phone = models.CharField(max_length=20)
    email = models.EmailField()
    description = models.TextField(blank=True)
    main_doctor = models.ForeignKey(
        settings.AUTH_USER_MODEL, on_delete=models.PROTECT, related_name="owned_clinic"
    )
    allow_online_payments = models.BooleanField(
        default=True,
        help_text="Plan capability: patients may book and pay for ONLINE slots.",
    )
    created_at = models.DateTimeField(auto_now_add=True)
    is_active = models.BooleanField(default=True)

    def __str__(self):
        return self.name

    def has_doctor(self, user_id):
        """The main doctor, or an actively employed DOCTOR."""
        if self.main_doctor_id == user_id:
            return True
        return self.staff_members.active().filter(user_id=user_id, role=ClinicStaff.DOCTOR).exists()

    class Meta:
        ordering = ["-created_at"]


class ClinicStaffQuerySet(models.QuerySet):
    def active(self):
        return self.filter(is_active=True, clinic__is_active=True)


class ClinicStaff(models.Model):
    """Employment of a doctor or secretary at a clinic."""

    DOCTOR = "DOCTOR"
    SECRETARY = "SECRETARY"
    ROLE_CHOICES = [
        (DOCTOR, "Doctor"),
        (SECRETARY, "Secretary"),
    ]

    clinic = models.ForeignKey(Clinic, on_delete=models.CASCADE, related_name="staff_members")
    user = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.CASCADE,
        related_name="clinic_employments",
    )
    role = models.CharField(max_length=20, choices=ROLE_CHOICES)
    added_by = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.SET_NULL,
        null=True,
        related_name="staff_added",
    )
    added_at = models.DateTimeField(auto_now_add=True)
    is_active = models.BooleanField(default=True)

    objects = ClinicStaffQuerySet.as_manager()

    def __str__(self):
        return f"{self.user.name} ({self.role}) @ {self.clinic.name}"

    class Meta:
        unique_together = ["clinic", "user"]
        verbose_name = "Clinic Staff"
        verbose_name_plural = "Clinic Staff"
