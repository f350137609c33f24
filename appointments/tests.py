"""
Tests for the appointment booking feature.

Covers:
- Booking service (happy path, payment modes, validations)
- Concurrency: the per-slot unique constraint turning a lost race into a conflict
- Payment holds (start_payment, lapsed holds, expire command)
- Staff status updates
- API endpoint (POST /appointments/api/book/, /pay/, /status/)
"""

from datetime import time, timedelta
from decimal import Decimal
from io import StringIO
from unittest.mock import patch

from django.core.management import call_command
from django.db import IntegrityError, transaction
from django.test import TestCase, override_settings
from django.urls import reverse
from django.utils import timezone
from rest_framework import status
from rest_framework.test import APIClient

from appointments.exceptions import (
    BookingError,
    ConflictError,
    GatewayUnavailableError,
    InvalidStatusTransitionError,
    NotFoundError,
    OnlinePaymentsDisabledError,
    SlotUnavailableError,
)
from appointments.models import Appointment, AppointmentLog, ClinicNotification
from appointments.services import (
    ALLOWED_TRANSITIONS,
    book_appointment,
    expire_lapsed_holds,
    start_payment,
    transition,
    update_status,
)
from clinic_booking.testing import BookingFixturesMixin
from payments.gateways import GatewayError, RazorpayGateway
from slots.models import Slot


class BookingTestMixin(BookingFixturesMixin):
    def book(self, slot, patient=None, **kwargs):
        return book_appointment(
            patient=patient or self.patient,
            slot_id=slot.id,
            doctor_id=slot.doctor_id,
            clinic_id=slot.clinic_id,
            **kwargs,
        )


# ═══════════════════════════════════════════════════════════════════
#  Service Layer Tests
# ═══════════════════════════════════════════════════════════════════


class BookingServiceTests(BookingTestMixin, TestCase):
    """Tests for the book_appointment service function."""

    def test_successful_online_booking(self):
        slot = self.make_slot(price="500.00")
        before = timezone.now()
        appointment = self.book(slot, reason="Annual checkup")

        self.assertEqual(appointment.status, Appointment.Status.PENDING)
        self.assertEqual(appointment.payment_status, Appointment.PaymentStatus.PENDING)
        self.assertEqual(appointment.amount, Decimal("500.00"))
        self.assertEqual(appointment.doctor, self.doctor)
        self.assertEqual(appointment.clinic, self.clinic)
        self.assertEqual(appointment.reason, "Annual checkup")
        self.assertEqual(appointment.created_by, self.patient)
        self.assertGreaterEqual(appointment.payment_expires_at, before + timedelta(minutes=10))

        slot.refresh_from_db()
        self.assertEqual(slot.status, Slot.Status.PENDING)

    def test_free_booking_is_paid_with_zero_amount(self):
        slot = self.make_slot(mode=Slot.PaymentMode.FREE, price="0")
        appointment = self.book(slot)
        self.assertEqual(appointment.payment_status, Appointment.PaymentStatus.PAID)
        self.assertEqual(appointment.amount, Decimal("0.00"))
        self.assertIsNone(appointment.payment_expires_at)

    def test_offline_booking_has_no_hold(self):
        slot = self.make_slot(mode=Slot.PaymentMode.OFFLINE, price="300.00")
        appointment = self.book(slot)
        self.assertEqual(appointment.payment_status, Appointment.PaymentStatus.PENDING)
        self.assertIsNone(appointment.payment_expires_at)

    @override_settings(BOOKING_PAYMENT_HOLD_MINUTES=3)
    def test_hold_window_is_configurable(self):
        now = timezone.now()
        appointment = self.book(self.make_slot(), now=now)
        self.assertEqual(appointment.payment_expires_at, now + timedelta(minutes=3))

    def test_slot_already_booked_raises_error(self):
        slot = self.make_slot()
        self.book(slot)
        with self.assertRaises(SlotUnavailableError):
            self.book(slot, patient=self.patient2)

    def test_cancelled_slot_can_be_rebooked(self):
        slot = self.make_slot(mode=Slot.PaymentMode.OFFLINE)
        first = self.book(slot)
        first.status = Appointment.Status.CANCELLED
        first.save()

        second = self.book(slot, patient=self.patient2)
        self.assertEqual(second.status, Appointment.Status.PENDING)

    def test_missing_slot_raises_not_found(self):
        slot = self.make_slot()
        with self.assertRaises(NotFoundError):
            book_appointment(
                patient=self.patient, slot_id=slot.id + 100, doctor_id=self.doctor.id, clinic_id=self.clinic.id
            )

    def test_deleted_slot_raises_not_found(self):
        slot = self.make_slot()
        slot.deleted_at = timezone.now()
        slot.save(update_fields=["deleted_at"])
        with self.assertRaises(NotFoundError):
            self.book(slot)

    def test_wrong_doctor_raises_not_found(self):
        slot = self.make_slot()
        with self.assertRaises(NotFoundError):
            book_appointment(
                patient=self.patient, slot_id=slot.id, doctor_id=self.main_doctor.id, clinic_id=self.clinic.id
            )

    def test_blocked_slot_unavailable(self):
        slot = self.make_slot()
        slot.is_blocked = True
        slot.save(update_fields=["is_blocked"])
        with self.assertRaises(SlotUnavailableError):
            self.book(slot)

    def test_past_slot_rejected(self):
        slot = self.slot_starting_in(hours=-1)
        with self.assertRaises(BookingError) as ctx:
            self.book(slot)
        self.assertEqual(ctx.exception.code, "past_slot")

    def test_online_slot_needs_capability(self):
        slot = self.make_slot()
        with self.assertRaises(OnlinePaymentsDisabledError):
            self.book(slot, online_payments_enabled=False)

    def test_offline_slot_ignores_capability(self):
        slot = self.make_slot(mode=Slot.PaymentMode.OFFLINE)
        appointment = self.book(slot, online_payments_enabled=False)
        self.assertIsNotNone(appointment.pk)

    def test_lapsed_hold_is_taken_over(self):
        slot = self.make_slot()
        now = timezone.now()
        stale = self.book(slot, now=now)

        later = now + timedelta(minutes=11)
        fresh = self.book(slot, patient=self.patient2, now=later)

        stale.refresh_from_db()
        self.assertEqual(stale.status, Appointment.Status.CANCELLED)
        self.assertEqual(stale.cancelled_by, Appointment.Actor.SYSTEM)
        self.assertEqual(stale.payment_status, Appointment.PaymentStatus.FAILED)
        self.assertEqual(fresh.patient, self.patient2)
        self.assertTrue(stale.logs.filter(action=AppointmentLog.Action.EXPIRE).exists())


class ConcurrencyTests(BookingTestMixin, TestCase):
    """
    Two bookings racing for one slot.

    Threads against SQLite are not meaningful, so the race is reproduced
    deterministically: both holder checks are made to miss the winner, as
    they would for a transaction that read before the winner committed.
    """

    def test_uniqueness_enforced_by_database(self):
        slot = self.make_slot()
        self.book(slot)
        with self.assertRaises(IntegrityError):
            with transaction.atomic():
                Appointment.objects.create(
                    patient=self.patient2, doctor=self.doctor, clinic=self.clinic, slot=slot, amount=0
                )

    def test_lost_race_maps_to_slot_unavailable(self):
        slot = self.make_slot()
        winner = self.book(slot)

        with patch("appointments.services.booking_service.live_holder", return_value=None), \
                patch("appointments.services.lifecycle.live_holder", return_value=None):
            with self.assertRaises(SlotUnavailableError):
                self.book(slot, patient=self.patient2)

        self.assertEqual(
            list(Appointment.objects.holding_slots().filter(slot=slot)),
            [winner],
        )

    def test_at_most_one_holder_after_many_attempts(self):
        slot = self.make_slot()
        outcomes = []
        for patient in (self.patient, self.patient2, self.patient, self.patient2):
            try:
                self.book(slot, patient=patient)
                outcomes.append("ok")
            except SlotUnavailableError:
                outcomes.append("conflict")
        self.assertEqual(outcomes.count("ok"), 1)
        self.assertEqual(Appointment.objects.holding_slots().filter(slot=slot).count(), 1)


class StartPaymentTests(BookingTestMixin, TestCase):
    def test_start_payment_creates_order_and_moves_to_pending_payment(self):
        slot = self.make_slot(price="500.00")
        appointment = self.book(slot)

        with patch.object(RazorpayGateway, "create_order", return_value=self.make_order()) as create:
            appointment, order = start_payment(appointment.id, patient=self.patient)

        create.assert_called_once()
        amount, currency, metadata = create.call_args.args
        self.assertEqual(amount, Decimal("500.00"))
        self.assertEqual(currency, "INR")
        self.assertEqual(metadata["appointment_id"], appointment.id)
        self.assertEqual(appointment.status, Appointment.Status.PENDING_PAYMENT)
        self.assertEqual(appointment.order_ref, order.order_ref)
        self.assertEqual(appointment.payment_provider, "RAZORPAY")
        slot.refresh_from_db()
        self.assertEqual(slot.status, Slot.Status.PENDING_PAYMENT)

    def test_repeat_within_hold_keeps_window(self):
        appointment = self.book(self.make_slot())
        original_expiry = appointment.payment_expires_at

        with patch.object(RazorpayGateway, "create_order", side_effect=[
            self.make_order("order_a"), self.make_order("order_b"),
        ]):
            start_payment(appointment.id, patient=self.patient)
            appointment, order = start_payment(appointment.id, patient=self.patient)

        self.assertEqual(order.order_ref, "order_b")
        self.assertEqual(appointment.order_ref, "order_b")
        self.assertEqual(appointment.payment_expires_at, original_expiry)

    def test_gateway_failure_leaves_state_untouched(self):
        appointment = self.book(self.make_slot())
        with patch.object(RazorpayGateway, "create_order", side_effect=GatewayError("down")):
            with self.assertRaises(GatewayUnavailableError):
                start_payment(appointment.id, patient=self.patient)

        appointment.refresh_from_db()
        self.assertEqual(appointment.status, Appointment.Status.PENDING)
        self.assertEqual(appointment.order_ref, "")

    def test_offline_appointment_needs_no_payment(self):
        appointment = self.book(self.make_slot(mode=Slot.PaymentMode.OFFLINE))
        with self.assertRaises(BookingError) as ctx:
            start_payment(appointment.id, patient=self.patient)
        self.assertEqual(ctx.exception.code, "payment_not_required")

    def test_other_patient_cannot_pay(self):
        appointment = self.book(self.make_slot())
        with self.assertRaises(NotFoundError):
            start_payment(appointment.id, patient=self.patient2)

    def test_already_paid_conflict(self):
        appointment = self.book(self.make_slot())
        appointment.payment_status = Appointment.PaymentStatus.PAID
        appointment.save()
        with self.assertRaises(ConflictError):
            start_payment(appointment.id, patient=self.patient)


class ExpireLapsedHoldsTests(BookingTestMixin, TestCase):
    def test_expires_only_lapsed_holds(self):
        now = timezone.now()
        lapsed = self.book(self.make_slot(at=time(9, 0)), now=now - timedelta(minutes=30))
        running = self.book(self.make_slot(at=time(10, 0)), patient=self.patient2, now=now)
        offline = self.book(self.make_slot(at=time(11, 0), mode=Slot.PaymentMode.OFFLINE), now=now)

        self.assertEqual(expire_lapsed_holds(now=now), 1)

        for appointment in (lapsed, running, offline):
            appointment.refresh_from_db()
        self.assertEqual(lapsed.status, Appointment.Status.CANCELLED)
        self.assertEqual(lapsed.slot.status, Slot.Status.AVAILABLE)
        self.assertEqual(running.status, Appointment.Status.PENDING)
        self.assertEqual(offline.status, Appointment.Status.PENDING)

    def test_management_command(self):
        self.book(self.make_slot(), now=timezone.now() - timedelta(hours=1))
        out = StringIO()
        call_command("expire_payment_holds", stdout=out)
        self.assertIn("Expired 1", out.getvalue())


class LifecycleTransitionTests(BookingTestMixin, TestCase):
    def test_terminal_states_have_no_exits(self):
        for terminal in Appointment.TERMINAL_STATUSES:
            self.assertEqual(ALLOWED_TRANSITIONS[terminal], set())

    def test_transition_rejects_illegal_move(self):
        appointment = Appointment(status=Appointment.Status.COMPLETED)
        with self.assertRaises(InvalidStatusTransitionError):
            transition(appointment, Appointment.Status.CONFIRMED)


class UpdateStatusTests(BookingTestMixin, TestCase):
    def _confirmed(self, mode=Slot.PaymentMode.OFFLINE):
        appointment = self.book(self.make_slot(mode=mode))
        appointment.status = Appointment.Status.CONFIRMED
        appointment.save()
        return appointment

    def test_confirmed_to_completed(self):
        appointment = self._confirmed()
        updated = update_status(
            appointment.id, Appointment.Status.COMPLETED, clinic=self.clinic, actor=self.secretary
        )
        self.assertEqual(updated.status, Appointment.Status.COMPLETED)

    def test_pending_offline_can_be_confirmed(self):
        appointment = self.book(self.make_slot(mode=Slot.PaymentMode.OFFLINE))
        updated = update_status(
            appointment.id, Appointment.Status.CONFIRMED, clinic=self.clinic, actor=self.secretary
        )
        self.assertEqual(updated.status, Appointment.Status.CONFIRMED)
        self.assertEqual(updated.slot.status, Slot.Status.CONFIRMED)

    def test_unpaid_online_cannot_be_confirmed_by_staff(self):
        appointment = self.book(self.make_slot())
        with self.assertRaises(InvalidStatusTransitionError):
            update_status(appointment.id, Appointment.Status.CONFIRMED, clinic=self.clinic, actor=self.secretary)

    def test_pending_cannot_complete(self):
        appointment = self.book(self.make_slot(mode=Slot.PaymentMode.OFFLINE))
        with self.assertRaises(InvalidStatusTransitionError):
            update_status(appointment.id, Appointment.Status.COMPLETED, clinic=self.clinic, actor=self.secretary)

    def test_cancel_records_reason_and_frees_slot(self):
        appointment = self._confirmed()
        updated = update_status(
            appointment.id,
            Appointment.Status.CANCELLED,
            clinic=self.clinic,
            actor=self.secretary,
            reason="Doctor ill",
        )
        self.assertEqual(updated.status, Appointment.Status.CANCELLED)
        self.assertEqual(updated.cancel_reason, "Doctor ill")
        self.assertEqual(updated.cancelled_by, Appointment.Actor.CLINIC)
        updated.slot.refresh_from_db()
        self.assertEqual(updated.slot.status, Slot.Status.AVAILABLE)
        self.assertTrue(
            ClinicNotification.objects.filter(
                entity_id=appointment.id, notification_type=ClinicNotification.Type.CANCELLATION
            ).exists()
        )

    def test_terminal_cannot_be_cancelled(self):
        appointment = self._confirmed()
        update_status(appointment.id, Appointment.Status.NO_SHOW, clinic=self.clinic, actor=self.secretary)
        with self.assertRaises(InvalidStatusTransitionError):
            update_status(appointment.id, Appointment.Status.CANCELLED, clinic=self.clinic, actor=self.secretary)


# ═══════════════════════════════════════════════════════════════════
#  API Tests
# ═══════════════════════════════════════════════════════════════════


class BookAppointmentAPITests(BookingTestMixin, TestCase):
    """Tests for POST /appointments/api/book/"""

    def setUp(self):
        super().setUp()
        self.client = APIClient()
        self.url = reverse("appointments:api_book_appointment")
        self.slot = self.make_slot(price="500.00")

    def _payload(self, **overrides):
        data = {
            "slot_id": self.slot.id,
            "doctor_id": self.doctor.id,
            "clinic_id": self.clinic.id,
            "reason": "Checkup",
        }
        data.update(overrides)
        return data

    def test_successful_api_booking(self):
        self.client.force_authenticate(user=self.patient)
        response = self.client.post(self.url, self._payload(), format="json")

        self.assertEqual(response.status_code, status.HTTP_201_CREATED)
        self.assertEqual(response.data["status"], "PENDING")
        self.assertEqual(response.data["doctor_name"], "Dr. Ahmad")
        self.assertEqual(response.data["clinic_name"], "Test Clinic")
        self.assertEqual(response.data["payment_mode"], "ONLINE")

    def test_two_patients_same_slot(self):
        """One booking wins with 201, the other gets 409."""
        self.client.force_authenticate(user=self.patient)
        first = self.client.post(self.url, self._payload(), format="json")
        self.client.force_authenticate(user=self.patient2)
        second = self.client.post(self.url, self._payload(), format="json")

        self.assertEqual(first.status_code, status.HTTP_201_CREATED)
        self.assertEqual(second.status_code, status.HTTP_409_CONFLICT)
        self.assertEqual(second.data["code"], "slot_unavailable")

    def test_unauthenticated_rejected(self):
        response = self.client.post(self.url, self._payload(), format="json")
        self.assertIn(response.status_code, [status.HTTP_401_UNAUTHORIZED, status.HTTP_403_FORBIDDEN])

    def test_non_patient_returns_403(self):
        self.client.force_authenticate(user=self.doctor)
        response = self.client.post(self.url, self._payload(), format="json")
        self.assertEqual(response.status_code, status.HTTP_403_FORBIDDEN)

    def test_missing_fields_returns_400(self):
        self.client.force_authenticate(user=self.patient)
        response = self.client.post(self.url, {}, format="json")
        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)

    def test_unknown_slot_returns_404(self):
        self.client.force_authenticate(user=self.patient)
        response = self.client.post(self.url, self._payload(slot_id=self.slot.id + 50), format="json")
        self.assertEqual(response.status_code, status.HTTP_404_NOT_FOUND)

    def test_capability_disabled_returns_403(self):
        self.clinic.allow_online_payments = False
        self.clinic.save()
        self.client.force_authenticate(user=self.patient)
        response = self.client.post(self.url, self._payload(), format="json")
        self.assertEqual(response.status_code, status.HTTP_403_FORBIDDEN)
        self.assertEqual(response.data["code"], "online_payments_disabled")

    def test_pay_endpoint_returns_order(self):
        self.client.force_authenticate(user=self.patient)
        booked = self.client.post(self.url, self._payload(), format="json")

        with patch.object(RazorpayGateway, "create_order", return_value=self.make_order("order_api")):
            response = self.client.post(
                reverse("appointments:api_start_payment", args=[booked.data["id"]]),
                {"provider": "razorpay"},
                format="json",
            )
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data["order"]["order_ref"], "order_api")
        self.assertEqual(response.data["appointment"]["status"], "PENDING_PAYMENT")

    def test_pay_endpoint_rejects_unknown_provider(self):
        self.client.force_authenticate(user=self.patient)
        booked = self.client.post(self.url, self._payload(), format="json")
        response = self.client.post(
            reverse("appointments:api_start_payment", args=[booked.data["id"]]),
            {"provider": "PAYPAL"},
            format="json",
        )
        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)


class UpdateStatusAPITests(BookingTestMixin, TestCase):
    def setUp(self):
        super().setUp()
        self.client = APIClient()
        self.appointment = self.book(self.make_slot(mode=Slot.PaymentMode.OFFLINE))
        self.url = reverse("appointments:api_update_status", args=[self.appointment.id])

    def test_staff_confirms(self):
        self.client.force_authenticate(user=self.secretary)
        response = self.client.patch(self.url, {"status": "CONFIRMED"}, format="json")
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data["status"], "CONFIRMED")

    def test_cancel_requires_reason(self):
        self.client.force_authenticate(user=self.secretary)
        response = self.client.patch(self.url, {"status": "CANCELLED"}, format="json")
        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)

    def test_invalid_transition_returns_400(self):
        self.client.force_authenticate(user=self.secretary)
        response = self.client.patch(self.url, {"status": "COMPLETED"}, format="json")
        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)
        self.assertEqual(response.data["code"], "invalid_transition")

    def test_patient_forbidden(self):
        self.client.force_authenticate(user=self.patient)
        response = self.client.patch(self.url, {"status": "CONFIRMED"}, format="json")
        self.assertEqual(response.status_code, status.HTTP_403_FORBIDDEN)
