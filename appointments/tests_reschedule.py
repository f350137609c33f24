"""
Tests for rescheduling.

Covers:
- compute_reschedule_delta classification over a grid of paid/new amounts
- Refund-at-clinic and pay-difference moves end to end
- The one-reschedule limit, including after a paid difference
- Gateway failure leaving both slots untouched
- Difference holds: captured amounts, cancellation, lapse and late payment
- API endpoint (POST /appointments/api/<id>/reschedule/)
"""

from datetime import time, timedelta
from decimal import Decimal
from unittest.mock import call, patch

from django.test import TestCase
from django.urls import reverse
from django.utils import timezone
from rest_framework import status
from rest_framework.test import APIClient

from appointments.exceptions import (
    GatewayUnavailableError,
    NotFoundError,
    OnlinePaymentsDisabledError,
    PolicyViolationError,
    RescheduleLimitError,
    SlotUnavailableError,
    StalePaymentError,
)
from appointments.models import Appointment, AppointmentLog, ClinicNotification
from appointments.services import (
    compute_reschedule_delta,
    confirm_payment,
    expire_lapsed_holds,
    request_cancellation,
    reschedule_appointment,
    resolve_cancellation,
    update_status,
)
from clinic_booking.testing import BookingFixturesMixin, User
from clinics.models import Clinic
from payments.gateways import GatewayError, RazorpayGateway
from payments.models import Payment, PaymentCapture
from payments.services import record_payment
from slots.models import Slot

FS = Appointment.FinancialStatus
PAID = Appointment.PaymentStatus.PAID
UNPAID = Appointment.PaymentStatus.PENDING


class ComputeRescheduleDeltaTests(TestCase):
    def delta(self, paid, new_price, payment_status=PAID, old_mode="ONLINE", new_mode="ONLINE"):
        return compute_reschedule_delta(
            current_amount=Decimal(paid),
            payment_status=payment_status,
            old_mode=old_mode,
            new_price=Decimal(new_price),
            new_mode=new_mode,
        )

    def test_diff_is_absolute_difference_and_status_follows_sign(self):
        amounts = ["0", "100", "300", "500", "750.50"]
        for paid in amounts:
            for new_price in amounts:
                with self.subTest(paid=paid, new_price=new_price):
                    quote = self.delta(paid, new_price)
                    p, n = Decimal(paid), Decimal(new_price)
                    self.assertEqual(quote.diff, abs(n - p))
                    if n > p:
                        self.assertEqual(quote.financial_status, FS.PAY_DIFFERENCE)
                    elif n < p:
                        self.assertEqual(quote.financial_status, FS.REFUND_AT_CLINIC)
                    else:
                        self.assertEqual(quote.financial_status, FS.NO_CHANGE)

    def test_unpaid_amount_counts_as_zero(self):
        quote = self.delta("500", "300", payment_status=UNPAID)
        self.assertEqual(quote.old_paid, Decimal("0"))
        self.assertEqual(quote.financial_status, FS.PAY_DIFFERENCE)
        self.assertEqual(quote.diff, Decimal("300"))

    def test_offline_to_online_same_price(self):
        quote = self.delta("400", "400", payment_status=UNPAID, old_mode="OFFLINE")
        self.assertEqual(quote.financial_status, FS.OFFLINE_TO_ONLINE)
        self.assertEqual(quote.diff, Decimal("400"))
        self.assertTrue(quote.requires_payment)

    def test_offline_to_online_different_price_is_pay_difference(self):
        quote = self.delta("400", "600", payment_status=UNPAID, old_mode="OFFLINE")
        self.assertEqual(quote.financial_status, FS.PAY_DIFFERENCE)
        self.assertEqual(quote.diff, Decimal("600"))

    def test_refund_and_no_change_need_no_payment(self):
        self.assertFalse(self.delta("500", "300").requires_payment)
        self.assertFalse(self.delta("500", "500").requires_payment)


class RescheduleTestMixin(BookingFixturesMixin):
    def paid_appointment(self, price="500.00", at=time(9, 0)):
        slot = self.make_slot(at=at, price=price)
        return Appointment.objects.create(
            patient=self.patient,
            doctor=self.doctor,
            clinic=self.clinic,
            slot=slot,
            status=Appointment.Status.CONFIRMED,
            payment_status=PAID,
            amount=Decimal(price),
        )


class RescheduleServiceTests(RescheduleTestMixin, TestCase):
    def test_refund_at_clinic_confirms_immediately(self):
        """Paid 500, moving to an OFFLINE slot priced 300."""
        appointment = self.paid_appointment("500.00")
        old_slot = appointment.slot
        target = self.make_slot(at=time(11, 0), price="300.00", mode=Slot.PaymentMode.OFFLINE)

        result = reschedule_appointment(appointment.id, target.id, patient=self.patient)

        self.assertIsNone(result.order)
        self.assertEqual(result.quote.financial_status, FS.REFUND_AT_CLINIC)
        self.assertEqual(result.quote.diff, Decimal("200.00"))
        appointment.refresh_from_db()
        self.assertEqual(appointment.status, Appointment.Status.CONFIRMED)
        self.assertEqual(appointment.financial_status, FS.REFUND_AT_CLINIC)
        self.assertEqual(appointment.diff_amount, Decimal("200.00"))
        self.assertEqual(appointment.slot, target)
        self.assertEqual(appointment.reschedule_count, 1)

        old_slot.refresh_from_db()
        target.refresh_from_db()
        self.assertEqual(old_slot.status, Slot.Status.AVAILABLE)
        self.assertEqual(target.status, Slot.Status.CONFIRMED)

        log = AppointmentLog.objects.get(appointment=appointment, action=AppointmentLog.Action.RESCHEDULE)
        self.assertEqual(log.old_time, time(9, 0))
        self.assertEqual(log.new_time, time(11, 0))
        self.assertEqual(log.metadata["financial_status"], FS.REFUND_AT_CLINIC)
        self.assertTrue(
            ClinicNotification.objects.filter(
                entity_id=appointment.id, notification_type=ClinicNotification.Type.RESCHEDULE
            ).exists()
        )

    def test_pay_difference_creates_order_and_waits(self):
        """Paid 300, moving to an ONLINE slot priced 500."""
        appointment = self.paid_appointment("300.00")
        target = self.make_slot(at=time(11, 0), price="500.00")

        with patch.object(
            RazorpayGateway, "create_order", return_value=self.make_order("order_diff", amount="200.00")
        ) as create:
            result = reschedule_appointment(appointment.id, target.id, patient=self.patient)

        self.assertEqual(create.call_args.args[0], Decimal("200.00"))
        self.assertEqual(result.order.order_ref, "order_diff")
        self.assertEqual(result.quote.financial_status, FS.PAY_DIFFERENCE)
        self.assertEqual(result.quote.diff, Decimal("200.00"))

        appointment.refresh_from_db()
        self.assertEqual(appointment.status, Appointment.Status.PENDING_PAYMENT)
        self.assertEqual(appointment.reschedule_count, 0)
        self.assertTrue(appointment.awaiting_reschedule_payment)
        target.refresh_from_db()
        self.assertEqual(target.status, Slot.Status.PENDING_PAYMENT)

    def test_paying_difference_counts_the_reschedule(self):
        appointment = self.paid_appointment("300.00")
        target = self.make_slot(at=time(11, 0), price="500.00")
        with patch.object(RazorpayGateway, "create_order", return_value=self.make_order("order_diff")):
            reschedule_appointment(appointment.id, target.id, patient=self.patient)

        confirmed = confirm_payment(
            payment_ref="pay_diff", order_ref="order_diff", signature=self.sign("order_diff", "pay_diff")
        )
        self.assertEqual(confirmed.status, Appointment.Status.CONFIRMED)
        self.assertEqual(confirmed.reschedule_count, 1)
        self.assertFalse(confirmed.awaiting_reschedule_payment)

        another = self.make_slot(at=time(13, 0), price="500.00")
        with self.assertRaises(RescheduleLimitError):
            reschedule_appointment(confirmed.id, another.id, patient=self.patient)

    def test_no_change_same_price(self):
        appointment = self.paid_appointment("500.00")
        target = self.make_slot(at=time(11, 0), price="500.00")
        result = reschedule_appointment(appointment.id, target.id, patient=self.patient)
        self.assertEqual(result.quote.financial_status, FS.NO_CHANGE)
        self.assertEqual(result.appointment.status, Appointment.Status.CONFIRMED)

    def test_offline_target_with_higher_price_is_paid_at_clinic(self):
        appointment = self.paid_appointment("300.00")
        target = self.make_slot(at=time(11, 0), price="500.00", mode=Slot.PaymentMode.OFFLINE)
        result = reschedule_appointment(appointment.id, target.id, patient=self.patient)
        self.assertIsNone(result.order)
        self.assertEqual(result.appointment.status, Appointment.Status.CONFIRMED)
        self.assertEqual(result.appointment.payment_status, UNPAID)
        self.assertEqual(result.appointment.reschedule_count, 1)

    def test_second_reschedule_rejected(self):
        appointment = self.paid_appointment("500.00")
        first = self.make_slot(at=time(11, 0), price="500.00")
        second = self.make_slot(at=time(13, 0), price="500.00")
        reschedule_appointment(appointment.id, first.id, patient=self.patient)

        with self.assertRaises(PolicyViolationError):
            reschedule_appointment(appointment.id, second.id, patient=self.patient)

    def test_limit_checked_before_target(self):
        appointment = self.paid_appointment("500.00")
        appointment.reschedule_count = 1
        appointment.save()
        with self.assertRaises(RescheduleLimitError):
            reschedule_appointment(appointment.id, 999999, patient=self.patient)

    def test_cancelled_appointment_rejected(self):
        appointment = self.paid_appointment("500.00")
        appointment.status = Appointment.Status.CANCELLED
        appointment.save()
        target = self.make_slot(at=time(11, 0))
        with self.assertRaises(PolicyViolationError):
            reschedule_appointment(appointment.id, target.id, patient=self.patient)

    def test_held_target_rejected(self):
        appointment = self.paid_appointment("500.00")
        target = self.make_slot(at=time(11, 0), price="500.00")
        Appointment.objects.create(
            patient=self.patient2, doctor=self.doctor, clinic=self.clinic, slot=target,
            status=Appointment.Status.CONFIRMED, amount=Decimal("500.00"),
        )
        with self.assertRaises(SlotUnavailableError):
            reschedule_appointment(appointment.id, target.id, patient=self.patient)

    def test_target_in_other_clinic_not_found(self):
        owner = User.objects.create_user(phone="0597777777", password="x", name="Dr. C", role="MAIN_DOCTOR")
        other_clinic = Clinic.objects.create(name="Other", address="x", phone="1", email="c@x.com", main_doctor=owner)
        foreign = self.make_slot(at=time(11, 0), clinic=other_clinic, doctor=owner)
        appointment = self.paid_appointment("500.00")
        with self.assertRaises(NotFoundError):
            reschedule_appointment(appointment.id, foreign.id, patient=self.patient)

    def test_online_target_needs_capability(self):
        appointment = self.paid_appointment("300.00")
        target = self.make_slot(at=time(11, 0), price="500.00")
        with self.assertRaises(OnlinePaymentsDisabledError):
            reschedule_appointment(
                appointment.id, target.id, patient=self.patient, online_payments_enabled=False
            )

    def test_gateway_failure_rolls_back(self):
        appointment = self.paid_appointment("300.00")
        old_slot = appointment.slot
        target = self.make_slot(at=time(11, 0), price="500.00")

        with patch.object(RazorpayGateway, "create_order", side_effect=GatewayError("timeout")):
            with self.assertRaises(GatewayUnavailableError):
                reschedule_appointment(appointment.id, target.id, patient=self.patient)

        appointment.refresh_from_db()
        target.refresh_from_db()
        self.assertEqual(appointment.slot, old_slot)
        self.assertEqual(appointment.status, Appointment.Status.CONFIRMED)
        self.assertEqual(target.status, Slot.Status.AVAILABLE)
        self.assertFalse(AppointmentLog.objects.exists())

    def test_lost_race_on_target_is_conflict(self):
        appointment = self.paid_appointment("500.00")
        target = self.make_slot(at=time(11, 0), price="500.00")
        Appointment.objects.create(
            patient=self.patient2, doctor=self.doctor, clinic=self.clinic, slot=target,
            status=Appointment.Status.PENDING, amount=Decimal("500.00"),
        )
        with patch("appointments.services.reschedule_service.live_holder", return_value=None), \
                patch("appointments.services.lifecycle.live_holder", return_value=None):
            with self.assertRaises(SlotUnavailableError):
                reschedule_appointment(appointment.id, target.id, patient=self.patient)

        appointment.refresh_from_db()
        self.assertEqual(appointment.reschedule_count, 0)


class DifferenceHoldTests(RescheduleTestMixin, TestCase):
    """Paid 300 online, then moved to an ONLINE slot priced 500 with 200 outstanding."""

    def setUp(self):
        super().setUp()
        self.appointment = self.paid_appointment("300.00")
        record_payment(
            self.appointment,
            provider="RAZORPAY",
            payment_ref="pay_seed",
            order_ref="order_seed",
            amount=Decimal("300.00"),
        )
        self.target = self.make_slot(at=time(11, 0), price="500.00")
        with patch.object(
            RazorpayGateway, "create_order", return_value=self.make_order("order_diff", amount="200.00")
        ):
            reschedule_appointment(self.appointment.id, self.target.id, patient=self.patient)

    def pay_difference(self, payment_ref="pay_diff"):
        return confirm_payment(
            payment_ref=payment_ref, order_ref="order_diff", signature=self.sign("order_diff", payment_ref)
        )

    def lapse(self):
        with self.captureOnCommitCallbacks(execute=True):
            return expire_lapsed_holds(now=timezone.now() + timedelta(hours=1))

    def test_difference_capture_records_only_the_difference(self):
        self.pay_difference()

        payment = Payment.objects.get(appointment=self.appointment)
        self.assertEqual(payment.amount, Decimal("500.00"))
        self.assertEqual(
            [(c.gateway_ref, c.amount, c.purpose) for c in payment.captures.all()],
            [
                ("pay_seed", Decimal("300.00"), PaymentCapture.Purpose.BOOKING),
                ("pay_diff", Decimal("200.00"), PaymentCapture.Purpose.RESCHEDULE),
            ],
        )

    def test_staff_cancel_refunds_each_capture(self):
        self.pay_difference()

        with patch.object(RazorpayGateway, "refund") as refund:
            with self.captureOnCommitCallbacks(execute=True):
                update_status(
                    self.appointment.id, Appointment.Status.CANCELLED, clinic=self.clinic, actor=self.secretary
                )

        self.assertEqual(
            refund.call_args_list,
            [call("pay_seed", Decimal("300.00")), call("pay_diff", Decimal("200.00"))],
        )
        self.assertFalse(
            PaymentCapture.objects.filter(payment__appointment=self.appointment, status=Payment.Status.PAID).exists()
        )

    def test_cancel_during_hold_files_request(self):
        outcome = request_cancellation(self.appointment.id, patient=self.patient)

        self.assertFalse(outcome.cancelled)
        self.assertEqual(outcome.request.previous_status, Appointment.Status.PENDING_PAYMENT)
        self.appointment.refresh_from_db()
        self.assertEqual(self.appointment.status, Appointment.Status.CANCEL_REQUESTED)

    def test_approved_request_refunds_earlier_payment(self):
        outcome = request_cancellation(self.appointment.id, patient=self.patient)

        with patch.object(RazorpayGateway, "refund") as refund:
            with self.captureOnCommitCallbacks(execute=True):
                resolve_cancellation(outcome.request.id, approve=True, clinic=self.clinic, actor=self.secretary)

        refund.assert_called_once_with("pay_seed", Decimal("300.00"))
        self.appointment.refresh_from_db()
        self.assertEqual(self.appointment.payment_status, Appointment.PaymentStatus.REFUNDED)
        self.target.refresh_from_db()
        self.assertEqual(self.target.status, Slot.Status.AVAILABLE)

    def test_rejected_request_returns_to_hold(self):
        outcome = request_cancellation(self.appointment.id, patient=self.patient)
        resolve_cancellation(outcome.request.id, approve=False, clinic=self.clinic, actor=self.secretary)

        self.appointment.refresh_from_db()
        self.assertEqual(self.appointment.status, Appointment.Status.PENDING_PAYMENT)
        self.assertTrue(self.appointment.awaiting_reschedule_payment)

    def test_difference_paid_while_request_pending(self):
        outcome = request_cancellation(self.appointment.id, patient=self.patient)

        settled = self.pay_difference()

        self.assertEqual(settled.status, Appointment.Status.CANCEL_REQUESTED)
        self.assertEqual(settled.payment_status, PAID)
        self.assertEqual(settled.reschedule_count, 1)
        self.assertFalse(settled.awaiting_reschedule_payment)
        outcome.request.refresh_from_db()
        self.assertEqual(outcome.request.previous_status, Appointment.Status.CONFIRMED)

        resolve_cancellation(outcome.request.id, approve=False, clinic=self.clinic, actor=self.secretary)
        self.appointment.refresh_from_db()
        self.assertEqual(self.appointment.status, Appointment.Status.CONFIRMED)

    def test_lapse_refunds_earlier_payment(self):
        with patch.object(RazorpayGateway, "refund") as refund:
            expired = self.lapse()

        self.assertEqual(expired, 1)
        refund.assert_called_once_with("pay_seed", Decimal("300.00"))
        self.appointment.refresh_from_db()
        self.assertEqual(self.appointment.status, Appointment.Status.CANCELLED)
        self.assertEqual(self.appointment.cancelled_by, Appointment.Actor.SYSTEM)
        self.assertEqual(self.appointment.payment_status, Appointment.PaymentStatus.REFUNDED)
        self.assertEqual(Payment.objects.get(appointment=self.appointment).status, Payment.Status.REFUNDED)

    def test_difference_paid_after_lapse_refunds_only_the_difference(self):
        with patch.object(RazorpayGateway, "refund"):
            self.lapse()

        with patch.object(RazorpayGateway, "refund") as refund:
            with self.assertRaises(StalePaymentError):
                self.pay_difference()
            with self.assertRaises(StalePaymentError):
                self.pay_difference()

        refund.assert_called_once_with("pay_diff", Decimal("200.00"))
        self.appointment.refresh_from_db()
        self.assertEqual(self.appointment.status, Appointment.Status.CANCELLED)


class RescheduleAPITests(RescheduleTestMixin, TestCase):
    def setUp(self):
        super().setUp()
        self.client = APIClient()
        self.client.force_authenticate(user=self.patient)

    def test_reschedule_with_payment(self):
        appointment = self.paid_appointment("300.00")
        target = self.make_slot(at=time(11, 0), price="500.00")
        with patch.object(RazorpayGateway, "create_order", return_value=self.make_order("order_api")):
            response = self.client.post(
                reverse("appointments:api_reschedule_appointment", args=[appointment.id]),
                {"target_slot_id": target.id},
                format="json",
            )
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data["financial_status"], "PAY_DIFFERENCE")
        self.assertEqual(response.data["diff"], "200.00")
        self.assertTrue(response.data["payment_required"])
        self.assertEqual(response.data["order"]["order_ref"], "order_api")

    def test_limit_returns_400(self):
        appointment = self.paid_appointment("500.00")
        appointment.reschedule_count = 1
        appointment.save()
        target = self.make_slot(at=time(11, 0))
        response = self.client.post(
            reverse("appointments:api_reschedule_appointment", args=[appointment.id]),
            {"target_slot_id": target.id},
            format="json",
        )
        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)
        self.assertEqual(response.data["code"], "reschedule_limit")

    def test_unknown_appointment_returns_404(self):
        target = self.make_slot(at=time(11, 0))
        response = self.client.post(
            reverse("appointments:api_reschedule_appointment", args=[424242]),
            {"target_slot_id": target.id},
            format="json",
        )
        self.assertEqual(response.status_code, status.HTTP_404_NOT_FOUND)
