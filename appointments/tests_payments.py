"""
Tests for payment confirmation.

Covers:
- Signature verification (mismatch performs no mutation)
- Idempotent replays (one Payment row, no duplicate state changes)
- Late payments for lapsed holds (revived or rejected as stale + refund)
- API endpoint (POST /payments/api/verify/)
"""

from datetime import timedelta
from decimal import Decimal
from unittest.mock import patch

from django.test import TestCase
from django.urls import reverse
from django.utils import timezone
from rest_framework import status
from rest_framework.test import APIClient

from appointments.exceptions import NotFoundError, SignatureInvalidError, StalePaymentError
from appointments.models import Appointment
from appointments.services import book_appointment, confirm_payment, expire_lapsed_holds, start_payment
from clinic_booking.testing import BookingFixturesMixin
from payments.gateways import RazorpayGateway
from payments.models import Payment
from slots.models import Slot


class PaymentTestMixin(BookingFixturesMixin):
    def setUp(self):
        super().setUp()
        self.slot = self.make_slot(price="500.00")

    def book_and_start(self, patient=None, order_ref="order_1", now=None):
        patient = patient or self.patient
        appointment = book_appointment(
            patient=patient,
            slot_id=self.slot.id,
            doctor_id=self.slot.doctor_id,
            clinic_id=self.clinic.id,
            now=now,
        )
        with patch.object(RazorpayGateway, "create_order", return_value=self.make_order(order_ref)):
            appointment, _ = start_payment(appointment.id, patient=patient, now=now)
        return appointment

    def confirm(self, order_ref="order_1", payment_ref="pay_1", signature=None, **kwargs):
        return confirm_payment(
            payment_ref=payment_ref,
            order_ref=order_ref,
            signature=signature or self.sign(order_ref, payment_ref),
            **kwargs,
        )


class ConfirmPaymentTests(PaymentTestMixin, TestCase):
    def test_confirm_marks_appointment_and_slot(self):
        appointment = self.book_and_start()
        confirmed = self.confirm()

        self.assertEqual(confirmed.pk, appointment.pk)
        self.assertEqual(confirmed.status, Appointment.Status.CONFIRMED)
        self.assertEqual(confirmed.payment_status, Appointment.PaymentStatus.PAID)
        self.assertIsNone(confirmed.payment_expires_at)

        self.slot.refresh_from_db()
        self.assertEqual(self.slot.status, Slot.Status.CONFIRMED)

        payment = Payment.objects.get(appointment=appointment)
        self.assertEqual(payment.gateway_ref, "pay_1")
        self.assertEqual(payment.amount, Decimal("500.00"))
        self.assertEqual(payment.status, Payment.Status.PAID)

    def test_bad_signature_changes_nothing(self):
        appointment = self.book_and_start()
        with self.assertRaises(SignatureInvalidError):
            self.confirm(signature="0" * 64)

        appointment.refresh_from_db()
        self.assertEqual(appointment.status, Appointment.Status.PENDING_PAYMENT)
        self.assertFalse(Payment.objects.exists())

    def test_signature_is_logged_as_security_event(self):
        self.book_and_start()
        with self.assertLogs("payments.services", level="WARNING") as logs:
            with self.assertRaises(SignatureInvalidError):
                self.confirm(signature="deadbeef")
        self.assertIn("Signature verification failed", logs.output[0])

    def test_unknown_order_not_found(self):
        self.book_and_start()
        with self.assertRaises(NotFoundError):
            self.confirm(order_ref="order_missing")

    def test_replay_is_idempotent(self):
        self.book_and_start()
        first = self.confirm()
        first_updated = Appointment.objects.get(pk=first.pk).updated_at

        second = self.confirm()

        self.assertEqual(second.status, Appointment.Status.CONFIRMED)
        self.assertEqual(Payment.objects.filter(appointment=first).count(), 1)
        self.assertEqual(Appointment.objects.get(pk=first.pk).updated_at, first_updated)

    def test_replay_with_new_payment_ref_refreshes_row(self):
        self.book_and_start()
        self.confirm(payment_ref="pay_1")
        self.confirm(payment_ref="pay_2")

        self.assertEqual(Payment.objects.count(), 1)
        self.assertEqual(Payment.objects.get().gateway_ref, "pay_2")
        self.slot.refresh_from_db()
        self.assertEqual(self.slot.status, Slot.Status.CONFIRMED)


class LatePaymentTests(PaymentTestMixin, TestCase):
    def setUp(self):
        super().setUp()
        self.past = timezone.now() - timedelta(minutes=30)

    def test_late_payment_revives_when_slot_still_free(self):
        appointment = self.book_and_start(now=self.past)
        expire_lapsed_holds()
        appointment.refresh_from_db()
        self.assertEqual(appointment.status, Appointment.Status.CANCELLED)

        revived = self.confirm()

        self.assertEqual(revived.status, Appointment.Status.CONFIRMED)
        self.assertEqual(revived.payment_status, Appointment.PaymentStatus.PAID)
        self.assertEqual(revived.cancelled_by, "")
        self.slot.refresh_from_db()
        self.assertEqual(self.slot.status, Slot.Status.CONFIRMED)

    def test_late_payment_for_reassigned_slot_is_stale_and_refunded(self):
        appointment = self.book_and_start(now=self.past)
        # Someone else books after the hold lapsed.
        book_appointment(
            patient=self.patient2, slot_id=self.slot.id, doctor_id=self.doctor.id, clinic_id=self.clinic.id
        )

        with patch.object(RazorpayGateway, "refund") as refund:
            with self.assertRaises(StalePaymentError):
                self.confirm()

        refund.assert_called_once_with("pay_1", Decimal("500.00"))
        appointment.refresh_from_db()
        self.assertEqual(appointment.status, Appointment.Status.CANCELLED)
        self.assertEqual(appointment.payment_status, Appointment.PaymentStatus.REFUNDED)
        self.assertEqual(Payment.objects.get(appointment=appointment).status, Payment.Status.REFUNDED)

    def test_stale_replay_does_not_refund_twice(self):
        self.book_and_start(now=self.past)
        book_appointment(
            patient=self.patient2, slot_id=self.slot.id, doctor_id=self.doctor.id, clinic_id=self.clinic.id
        )
        with patch.object(RazorpayGateway, "refund") as refund:
            with self.assertRaises(StalePaymentError):
                self.confirm()
            with self.assertRaises(StalePaymentError):
                self.confirm()
        self.assertEqual(refund.call_count, 1)

    def test_payment_inside_lapsed_window_before_cleanup_is_accepted(self):
        self.book_and_start(now=self.past)
        confirmed = self.confirm()
        self.assertEqual(confirmed.status, Appointment.Status.CONFIRMED)


class VerifyPaymentAPITests(PaymentTestMixin, TestCase):
    def setUp(self):
        super().setUp()
        self.client = APIClient()
        self.url = reverse("payments:api_verify_payment")

    def test_verify_success(self):
        self.book_and_start()
        response = self.client.post(
            self.url,
            {"order_ref": "order_1", "payment_ref": "pay_1", "signature": self.sign("order_1", "pay_1")},
            format="json",
        )
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data["appointment"]["status"], "CONFIRMED")
        self.assertEqual(response.data["payment"]["gateway_ref"], "pay_1")
        self.assertEqual(response.data["payment"]["captures"][0]["amount"], "500.00")

    def test_verify_bad_signature(self):
        self.book_and_start()
        response = self.client.post(
            self.url,
            {"order_ref": "order_1", "payment_ref": "pay_1", "signature": "nope"},
            format="json",
        )
        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)
        self.assertEqual(response.data["code"], "signature_invalid")

    def test_verify_unknown_order(self):
        response = self.client.post(
            self.url,
            {"order_ref": "order_x", "payment_ref": "pay_1", "signature": "abc"},
            format="json",
        )
        self.assertEqual(response.status_code, status.HTTP_404_NOT_FOUND)
