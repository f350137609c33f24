"""
Shared fixtures for the app test suites.

Slot dates are a week out so booking never trips the "already started"
checks; tests that care about the clock build their own slots with
``slot_starting_in``.
"""

from datetime import date, time, timedelta
from decimal import Decimal

from django.contrib.auth import get_user_model
from django.utils import timezone

from clinics.models import Clinic, ClinicStaff
from payments.gateways import GatewayOrder, compute_signature
from payments.models import GatewayCredential
from slots.models import Slot

User = get_user_model()

GATEWAY_SECRET = "rzp_test_secret"


class BookingFixturesMixin:
    """Users, a clinic with one staff doctor, and a slot factory."""

    def setUp(self):
        # Users
        self.main_doctor = User.objects.create_user(
            phone="0591000001",
            password="testpass123",
            name="Dr. Owner",
            role="MAIN_DOCTOR",
        )
        self.doctor = User.objects.create_user(
            phone="0591000002",
            password="testpass123",
            name="Dr. Ahmad",
            role="DOCTOR",
        )
        self.secretary = User.objects.create_user(
            phone="0591000005",
            password="testpass123",
            name="Secretary Lina",
            role="SECRETARY",
        )
        self.patient = User.objects.create_user(
            phone="0591000003",
            password="testpass123",
            name="Patient Ali",
            role="PATIENT",
        )
        self.patient2 = User.objects.create_user(
            phone="0591000004",
            password="testpass123",
            name="Patient Sara",
            role="PATIENT",
        )

        # Clinic
        self.clinic = Clinic.objects.create(
            name="Test Clinic",
            address="Test Address",
            phone="0591111111",
            email="test@clinic.com",
            main_doctor=self.main_doctor,
        )
        ClinicStaff.objects.create(clinic=self.clinic, user=self.doctor, role="DOCTOR", added_by=self.main_doctor)
        ClinicStaff.objects.create(
            clinic=self.clinic, user=self.secretary, role="SECRETARY", added_by=self.main_doctor
        )
        GatewayCredential.objects.create(
            clinic=self.clinic,
            provider="RAZORPAY",
            key_id="rzp_test_key",
            secret=GATEWAY_SECRET,
        )

        self.slot_date = date.today() + timedelta(days=7)

    # ── Factories ────────────────────────────────────────────────────────────

    def make_slot(self, at=time(9, 0), price="500.00", mode=Slot.PaymentMode.ONLINE, **kwargs):
        kwargs.setdefault("clinic", self.clinic)
        kwargs.setdefault("doctor", self.doctor)
        kwargs.setdefault("date", self.slot_date)
        kwargs.setdefault("duration_minutes", 30)
        return Slot.objects.create(time=at, price=Decimal(price), payment_mode=mode, **kwargs)

    def slot_starting_in(self, hours, mode=Slot.PaymentMode.OFFLINE, price="300.00"):
        start = timezone.localtime() + timedelta(hours=hours)
        start = start.replace(second=0, microsecond=0, tzinfo=None)
        return self.make_slot(at=start.time(), date=start.date(), price=price, mode=mode)

    def make_order(self, order_ref="order_test_1", amount="500.00", provider="RAZORPAY"):
        return GatewayOrder(
            order_ref=order_ref,
            amount=Decimal(amount),
            currency="INR",
            provider=provider,
            checkout_data={"order_id": order_ref},
        )

    def sign(self, order_ref, payment_ref, secret=GATEWAY_SECRET):
        return compute_signature(secret, order_ref, payment_ref)
