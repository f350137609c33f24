"""
Tests for cancellation.

Covers:
- Instant cancellation and the notice window for pay-at-clinic bookings
- Request workflow for paid online bookings (file, approve, reject, reopen)
- Refund after approval
- API endpoints (cancel + staff resolution, tenant isolation)
"""

from datetime import timedelta
from decimal import Decimal
from unittest.mock import patch

from django.test import TestCase, override_settings
from django.urls import reverse
from django.utils import timezone
from rest_framework import status
from rest_framework.test import APIClient

from appointments.exceptions import (
    CancellationAlreadyResolvedError,
    CancellationNoticeError,
    DuplicateCancellationRequestError,
    NotFoundError,
    PolicyViolationError,
)
from appointments.models import Appointment, AppointmentLog, CancellationRequest, ClinicNotification
from appointments.services import request_cancellation, resolve_cancellation
from clinic_booking.testing import BookingFixturesMixin, User
from clinics.models import Clinic
from payments.gateways import RazorpayGateway
from payments.models import Payment
from payments.services import record_payment
from slots.models import Slot


class CancellationTestMixin(BookingFixturesMixin):
    def held(self, slot, appointment_status=Appointment.Status.CONFIRMED, paid=False):
        slot.status = Slot.Status.CONFIRMED
        slot.save()
        return Appointment.objects.create(
            patient=self.patient,
            doctor=self.doctor,
            clinic=self.clinic,
            slot=slot,
            status=appointment_status,
            payment_status=Appointment.PaymentStatus.PAID if paid else Appointment.PaymentStatus.PENDING,
            amount=slot.price,
        )

    def paid_online(self):
        appointment = self.held(self.make_slot(price="500.00"), paid=True)
        record_payment(
            appointment,
            provider="RAZORPAY",
            payment_ref="pay_paid",
            order_ref="order_paid",
            amount=appointment.amount,
        )
        return appointment


@override_settings(BOOKING_CANCELLATION_NOTICE_HOURS=24)
class InstantCancellationTests(CancellationTestMixin, TestCase):
    def test_inside_notice_window_rejected(self):
        appointment = self.held(self.slot_starting_in(23))
        with self.assertRaises(CancellationNoticeError) as ctx:
            request_cancellation(appointment.id, patient=self.patient)
        self.assertEqual(ctx.exception.code, "cancellation_notice")

        appointment.refresh_from_db()
        self.assertEqual(appointment.status, Appointment.Status.CONFIRMED)

    def slot_at(self, start):
        start = start.replace(tzinfo=None)
        return self.make_slot(at=start.time(), date=start.date(), price="300.00", mode=Slot.PaymentMode.OFFLINE)

    def test_exactly_at_notice_window_cancels(self):
        now = timezone.localtime().replace(second=0, microsecond=0)
        appointment = self.held(self.slot_at(now + timedelta(hours=24)))

        outcome = request_cancellation(appointment.id, patient=self.patient, now=now)

        self.assertTrue(outcome.cancelled)

    def test_one_minute_inside_notice_window_rejected(self):
        now = timezone.localtime().replace(second=0, microsecond=0)
        appointment = self.held(self.slot_at(now + timedelta(hours=24, minutes=-1)))

        with self.assertRaises(CancellationNoticeError):
            request_cancellation(appointment.id, patient=self.patient, now=now)

    def test_outside_notice_window_cancels_and_frees_slot(self):
        appointment = self.held(self.slot_starting_in(25))

        outcome = request_cancellation(appointment.id, patient=self.patient, reason="Travelling")

        self.assertTrue(outcome.cancelled)
        self.assertIsNone(outcome.request)
        appointment.refresh_from_db()
        self.assertEqual(appointment.status, Appointment.Status.CANCELLED)
        self.assertEqual(appointment.cancelled_by, Appointment.Actor.USER)
        self.assertEqual(appointment.cancel_reason, "Travelling")
        appointment.slot.refresh_from_db()
        self.assertEqual(appointment.slot.status, Slot.Status.AVAILABLE)
        self.assertTrue(
            AppointmentLog.objects.filter(appointment=appointment, action=AppointmentLog.Action.CANCEL).exists()
        )
        self.assertTrue(
            ClinicNotification.objects.filter(
                entity_id=appointment.id, notification_type=ClinicNotification.Type.CANCELLATION
            ).exists()
        )

    def test_unpaid_online_hold_cancels_without_notice_check(self):
        slot = self.slot_starting_in(1, mode=Slot.PaymentMode.ONLINE, price="500.00")
        appointment = self.held(slot, appointment_status=Appointment.Status.PENDING_PAYMENT)

        outcome = request_cancellation(appointment.id, patient=self.patient)

        self.assertTrue(outcome.cancelled)
        self.assertFalse(CancellationRequest.objects.exists())

    def test_terminal_appointment_rejected(self):
        appointment = self.held(self.slot_starting_in(48), appointment_status=Appointment.Status.COMPLETED)
        with self.assertRaises(PolicyViolationError):
            request_cancellation(appointment.id, patient=self.patient)

    def test_other_patients_appointment_not_found(self):
        appointment = self.held(self.slot_starting_in(48))
        with self.assertRaises(NotFoundError):
            request_cancellation(appointment.id, patient=self.patient2)


class CancellationRequestTests(CancellationTestMixin, TestCase):
    def test_paid_online_files_request(self):
        appointment = self.paid_online()

        outcome = request_cancellation(appointment.id, patient=self.patient, reason="Feeling better")

        self.assertFalse(outcome.cancelled)
        self.assertEqual(outcome.request.status, CancellationRequest.Status.PENDING)
        self.assertEqual(outcome.request.previous_status, Appointment.Status.CONFIRMED)
        appointment.refresh_from_db()
        self.assertEqual(appointment.status, Appointment.Status.CANCEL_REQUESTED)
        # The slot stays held until staff decide.
        appointment.slot.refresh_from_db()
        self.assertEqual(appointment.slot.status, Slot.Status.CONFIRMED)

        notification = ClinicNotification.objects.get(
            entity_id=appointment.id, notification_type=ClinicNotification.Type.CANCEL_REQUEST
        )
        self.assertEqual(notification.priority, ClinicNotification.Priority.HIGH)

    def test_second_request_rejected(self):
        appointment = self.paid_online()
        request_cancellation(appointment.id, patient=self.patient)
        with self.assertRaises(DuplicateCancellationRequestError):
            request_cancellation(appointment.id, patient=self.patient)
        self.assertEqual(CancellationRequest.objects.count(), 1)

    def test_approval_cancels_and_refunds(self):
        appointment = self.paid_online()
        outcome = request_cancellation(appointment.id, patient=self.patient)

        with patch.object(RazorpayGateway, "refund") as refund:
            with self.captureOnCommitCallbacks(execute=True):
                resolved = resolve_cancellation(
                    outcome.request.id, approve=True, clinic=self.clinic, actor=self.secretary
                )

        self.assertEqual(resolved.status, CancellationRequest.Status.APPROVED)
        self.assertEqual(resolved.processed_by, self.secretary)
        refund.assert_called_once_with("pay_paid", Decimal("500.00"))

        appointment.refresh_from_db()
        self.assertEqual(appointment.status, Appointment.Status.CANCELLED)
        self.assertEqual(appointment.cancelled_by, Appointment.Actor.CLINIC)
        self.assertEqual(appointment.payment_status, Appointment.PaymentStatus.REFUNDED)
        appointment.slot.refresh_from_db()
        self.assertEqual(appointment.slot.status, Slot.Status.AVAILABLE)
        self.assertEqual(Payment.objects.get(appointment=appointment).status, Payment.Status.REFUNDED)

    def test_resolving_twice_rejected(self):
        appointment = self.paid_online()
        outcome = request_cancellation(appointment.id, patient=self.patient)
        with patch.object(RazorpayGateway, "refund"):
            resolve_cancellation(outcome.request.id, approve=True, clinic=self.clinic, actor=self.secretary)
            with self.assertRaises(CancellationAlreadyResolvedError):
                resolve_cancellation(outcome.request.id, approve=False, clinic=self.clinic, actor=self.secretary)

    def test_rejection_restores_previous_status(self):
        appointment = self.paid_online()
        outcome = request_cancellation(appointment.id, patient=self.patient)

        resolved = resolve_cancellation(
            outcome.request.id, approve=False, clinic=self.clinic, actor=self.secretary, reason="Too late"
        )

        self.assertEqual(resolved.status, CancellationRequest.Status.REJECTED)
        self.assertEqual(resolved.resolution_note, "Too late")
        appointment.refresh_from_db()
        self.assertEqual(appointment.status, Appointment.Status.CONFIRMED)
        self.assertEqual(appointment.payment_status, Appointment.PaymentStatus.PAID)

    def test_request_after_rejection_reopens_same_row(self):
        appointment = self.paid_online()
        first = request_cancellation(appointment.id, patient=self.patient).request
        resolve_cancellation(first.id, approve=False, clinic=self.clinic, actor=self.secretary)

        second = request_cancellation(appointment.id, patient=self.patient, reason="Again").request

        self.assertEqual(second.pk, first.pk)
        self.assertEqual(second.status, CancellationRequest.Status.PENDING)
        self.assertIsNone(second.processed_by)
        self.assertEqual(CancellationRequest.objects.count(), 1)

    def test_other_clinic_cannot_resolve(self):
        owner = User.objects.create_user(phone="0598888888", password="x", name="Dr. B", role="MAIN_DOCTOR")
        other_clinic = Clinic.objects.create(name="Other", address="x", phone="1", email="b@x.com", main_doctor=owner)
        appointment = self.paid_online()
        outcome = request_cancellation(appointment.id, patient=self.patient)

        with self.assertRaises(NotFoundError):
            resolve_cancellation(outcome.request.id, approve=True, clinic=other_clinic, actor=owner)


@override_settings(BOOKING_CANCELLATION_NOTICE_HOURS=24)
class CancellationAPITests(CancellationTestMixin, TestCase):
    def setUp(self):
        super().setUp()
        self.client = APIClient()

    def test_instant_cancel_returns_200(self):
        appointment = self.held(self.slot_starting_in(48))
        self.client.force_authenticate(user=self.patient)
        response = self.client.post(
            reverse("appointments:api_cancel_appointment", args=[appointment.id]), {}, format="json"
        )
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertTrue(response.data["cancelled"])
        self.assertIsNone(response.data["request"])

    def test_paid_online_cancel_returns_202(self):
        appointment = self.paid_online()
        self.client.force_authenticate(user=self.patient)
        response = self.client.post(
            reverse("appointments:api_cancel_appointment", args=[appointment.id]),
            {"reason": "Plans changed"},
            format="json",
        )
        self.assertEqual(response.status_code, status.HTTP_202_ACCEPTED)
        self.assertFalse(response.data["cancelled"])
        self.assertEqual(response.data["request"]["status"], "PENDING")

    def test_notice_violation_returns_400(self):
        appointment = self.held(self.slot_starting_in(2))
        self.client.force_authenticate(user=self.patient)
        response = self.client.post(
            reverse("appointments:api_cancel_appointment", args=[appointment.id]), {}, format="json"
        )
        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)
        self.assertEqual(response.data["code"], "cancellation_notice")

    def test_staff_cannot_use_patient_endpoint(self):
        appointment = self.held(self.slot_starting_in(48))
        self.client.force_authenticate(user=self.secretary)
        response = self.client.post(
            reverse("appointments:api_cancel_appointment", args=[appointment.id]), {}, format="json"
        )
        self.assertEqual(response.status_code, status.HTTP_403_FORBIDDEN)

    def test_staff_resolves_request(self):
        appointment = self.paid_online()
        cancellation = request_cancellation(appointment.id, patient=self.patient).request
        self.client.force_authenticate(user=self.secretary)
        response = self.client.post(
            reverse("appointments:api_resolve_cancellation", args=[cancellation.id]),
            {"approve": False, "reason": "Please call us"},
            format="json",
        )
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data["status"], "REJECTED")
        self.assertEqual(response.data["appointment_status"], "CONFIRMED")

    def test_foreign_staff_gets_404(self):
        owner = User.objects.create_user(phone="0596666666", password="x", name="Dr. D", role="MAIN_DOCTOR")
        Clinic.objects.create(name="Other", address="x", phone="1", email="d@x.com", main_doctor=owner)
        appointment = self.paid_online()
        cancellation = request_cancellation(appointment.id, patient=self.patient).request

        self.client.force_authenticate(user=owner)
        response = self.client.post(
            reverse("appointments:api_resolve_cancellation", args=[cancellation.id]),
            {"approve": True},
            format="json",
        )
        self.assertEqual(response.status_code, status.HTTP_404_NOT_FOUND)
        cancellation.refresh_from_db()
        self.assertEqual(cancellation.status, CancellationRequest.Status.PENDING)
