"""
Tests for the payment gateway adapters and the payment service.

Covers:
- HMAC signature computation and constant-time verification
- Provider registry
- Credential resolution (clinic credential vs platform settings)
- Razorpay and Stripe adapters with the HTTP/SDK layer mocked
- Refund requests never raising, Payment upsert conflicts
"""

from datetime import time
from decimal import Decimal
from types import SimpleNamespace
from unittest.mock import MagicMock, patch

import requests
import stripe
from django.test import SimpleTestCase, TestCase, override_settings

from appointments.exceptions import ConflictError, GatewayUnavailableError, PolicyViolationError
from appointments.models import Appointment
from clinic_booking.testing import GATEWAY_SECRET, BookingFixturesMixin
from payments.gateways import (
    GatewayConfig,
    GatewayError,
    RazorpayGateway,
    StripeGateway,
    available_providers,
    compute_signature,
    get_gateway_class,
    to_minor_units,
)
from payments.models import GatewayCredential, Payment, PaymentCapture
from payments.services import (
    create_gateway_order,
    record_payment,
    refundable_captures,
    request_refund,
    resolve_gateway,
)

PLATFORM_GATEWAYS = {
    "RAZORPAY": {"KEY_ID": "rzp_platform", "SECRET": "platform_secret", "WEBHOOK_SECRET": "", "BASE_URL": ""},
    "STRIPE": {"KEY_ID": "", "SECRET": "", "WEBHOOK_SECRET": ""},
}


def razorpay_response(payload):
    response = MagicMock()
    response.json.return_value = payload
    response.raise_for_status.return_value = None
    return response


class SignatureTests(SimpleTestCase):
    def setUp(self):
        self.gateway = RazorpayGateway(GatewayConfig(key_id="k", secret="s3cret"))

    def test_signature_is_hex_sha256(self):
        signature = compute_signature("s3cret", "order_1", "pay_1")
        self.assertEqual(len(signature), 64)
        self.assertEqual(signature, compute_signature("s3cret", "order_1", "pay_1"))
        self.assertNotEqual(signature, compute_signature("s3cret", "order_1", "pay_2"))

    def test_verify_accepts_matching_signature(self):
        signature = compute_signature("s3cret", "order_1", "pay_1")
        self.assertTrue(self.gateway.verify("order_1", "pay_1", signature))

    def test_verify_rejects_wrong_secret_or_empty_values(self):
        self.assertFalse(self.gateway.verify("order_1", "pay_1", compute_signature("other", "order_1", "pay_1")))
        self.assertFalse(self.gateway.verify("order_1", "pay_1", ""))
        self.assertFalse(self.gateway.verify("", "pay_1", "abc"))

    def test_webhook_secret_signs_when_set(self):
        gateway = StripeGateway(GatewayConfig(secret="sk_test", webhook_secret="whsec"))
        self.assertTrue(gateway.verify("cs_1", "pi_1", compute_signature("whsec", "cs_1", "pi_1")))
        self.assertFalse(gateway.verify("cs_1", "pi_1", compute_signature("sk_test", "cs_1", "pi_1")))

    def test_minor_units(self):
        self.assertEqual(to_minor_units(Decimal("500.00")), 50000)
        self.assertEqual(to_minor_units(Decimal("12.345")), 1235)
        self.assertEqual(to_minor_units("0"), 0)


class RegistryTests(SimpleTestCase):
    def test_known_providers(self):
        self.assertIs(get_gateway_class("RAZORPAY"), RazorpayGateway)
        self.assertIs(get_gateway_class("stripe"), StripeGateway)
        self.assertIn("RAZORPAY", available_providers())
        self.assertIn("STRIPE", available_providers())

    def test_unknown_provider(self):
        self.assertIsNone(get_gateway_class("PAYPAL"))
        self.assertIsNone(get_gateway_class(None))


class RazorpayGatewayTests(SimpleTestCase):
    def setUp(self):
        self.gateway = RazorpayGateway(GatewayConfig(key_id="rzp_key", secret="rzp_secret"))

    @patch("payments.gateways.razorpay.requests.post")
    def test_create_order_sends_paise(self, mock_post):
        mock_post.return_value = razorpay_response({"id": "order_abc"})

        order = self.gateway.create_order(Decimal("499.50"), "INR", {"appointment_id": 7, "receipt": "appt-7"})

        self.assertEqual(order.order_ref, "order_abc")
        self.assertEqual(order.provider, "RAZORPAY")
        self.assertEqual(order.checkout_data["key_id"], "rzp_key")
        args, kwargs = mock_post.call_args
        self.assertTrue(args[0].endswith("/orders"))
        self.assertEqual(kwargs["json"]["amount"], 49950)
        self.assertEqual(kwargs["json"]["receipt"], "appt-7")
        self.assertEqual(kwargs["json"]["notes"]["appointment_id"], "7")
        self.assertEqual(kwargs["auth"], ("rzp_key", "rzp_secret"))

    @patch("payments.gateways.razorpay.requests.post")
    def test_network_error_becomes_gateway_error(self, mock_post):
        mock_post.side_effect = requests.ConnectionError("down")
        with self.assertRaises(GatewayError) as ctx:
            self.gateway.create_order(Decimal("100"), "INR")
        self.assertEqual(ctx.exception.provider, "RAZORPAY")

    @patch("payments.gateways.razorpay.requests.post")
    def test_missing_order_id_is_error(self, mock_post):
        mock_post.return_value = razorpay_response({"error": "bad"})
        with self.assertRaises(GatewayError):
            self.gateway.create_order(Decimal("100"), "INR")

    @patch("payments.gateways.razorpay.requests.post")
    def test_refund_partial_amount(self, mock_post):
        mock_post.return_value = razorpay_response({"id": "rfnd_1"})
        self.gateway.refund("pay_9", Decimal("200.00"))
        args, kwargs = mock_post.call_args
        self.assertTrue(args[0].endswith("/payments/pay_9/refund"))
        self.assertEqual(kwargs["json"], {"amount": 20000})


class StripeGatewayTests(SimpleTestCase):
    def setUp(self):
        self.gateway = StripeGateway(GatewayConfig(secret="sk_test_123"))

    @override_settings(FRONTEND_URL="https://clinic.example")
    @patch("payments.gateways.stripe_checkout.stripe.checkout.Session.create")
    def test_create_order_uses_checkout_session(self, mock_create):
        mock_create.return_value = SimpleNamespace(id="cs_test_1", url="https://checkout.stripe.com/cs_test_1")

        order = self.gateway.create_order(Decimal("25.00"), "USD", {"appointment_id": 3})

        self.assertEqual(order.order_ref, "cs_test_1")
        self.assertEqual(order.checkout_data["url"], "https://checkout.stripe.com/cs_test_1")
        kwargs = mock_create.call_args.kwargs
        self.assertEqual(kwargs["api_key"], "sk_test_123")
        self.assertEqual(kwargs["line_items"][0]["price_data"]["unit_amount"], 2500)
        self.assertEqual(kwargs["line_items"][0]["price_data"]["currency"], "usd")
        self.assertTrue(kwargs["success_url"].startswith("https://clinic.example/"))

    @patch("payments.gateways.stripe_checkout.stripe.checkout.Session.create")
    def test_sdk_error_becomes_gateway_error(self, mock_create):
        mock_create.side_effect = stripe.StripeError("card declined")
        with self.assertRaises(GatewayError) as ctx:
            self.gateway.create_order(Decimal("25.00"), "USD")
        self.assertEqual(ctx.exception.provider, "STRIPE")

    @patch("payments.gateways.stripe_checkout.stripe.Refund.create")
    def test_refund_by_payment_intent(self, mock_refund):
        self.gateway.refund("pi_1", Decimal("10.00"))
        mock_refund.assert_called_once_with(api_key="sk_test_123", payment_intent="pi_1", amount=1000)


@override_settings(PAYMENT_GATEWAYS=PLATFORM_GATEWAYS)
class ResolveGatewayTests(BookingFixturesMixin, TestCase):
    def test_clinic_credential_wins(self):
        gateway = resolve_gateway(self.clinic, "razorpay")
        self.assertIsInstance(gateway, RazorpayGateway)
        self.assertEqual(gateway.config.secret, GATEWAY_SECRET)

    def test_falls_back_to_platform_credentials(self):
        GatewayCredential.objects.filter(clinic=self.clinic).update(is_active=False)
        gateway = resolve_gateway(self.clinic, "RAZORPAY")
        self.assertEqual(gateway.config.secret, "platform_secret")

    def test_unsupported_provider(self):
        with self.assertRaises(PolicyViolationError) as ctx:
            resolve_gateway(self.clinic, "PAYPAL")
        self.assertEqual(ctx.exception.code, "unsupported_provider")

    def test_not_configured(self):
        with self.assertRaises(PolicyViolationError) as ctx:
            resolve_gateway(self.clinic, "STRIPE")
        self.assertEqual(ctx.exception.code, "gateway_not_configured")

    def test_order_failure_becomes_gateway_unavailable(self):
        with patch.object(RazorpayGateway, "create_order", side_effect=GatewayError("timeout")):
            with self.assertRaises(GatewayUnavailableError):
                create_gateway_order(clinic=self.clinic, provider="RAZORPAY", amount=Decimal("100"), metadata={})


class PaymentServiceTests(BookingFixturesMixin, TestCase):
    def setUp(self):
        super().setUp()
        self.appointment = self.paid_appointment(self.patient, self.make_slot())

    def paid_appointment(self, patient, slot):
        return Appointment.objects.create(
            patient=patient,
            doctor=self.doctor,
            clinic=self.clinic,
            slot=slot,
            status=Appointment.Status.CONFIRMED,
            payment_status=Appointment.PaymentStatus.PAID,
            amount=slot.price,
        )

    def test_record_payment_upserts(self):
        record_payment(self.appointment, provider="RAZORPAY", payment_ref="pay_a", order_ref="order_a")
        record_payment(self.appointment, provider="RAZORPAY", payment_ref="pay_b", order_ref="order_a")

        payment = Payment.objects.get()
        self.assertEqual(payment.gateway_ref, "pay_b")
        self.assertEqual(payment.amount, Decimal("500.00"))
        self.assertEqual(payment.currency, "INR")
        self.assertEqual(payment.captures.count(), 1)

    def test_second_order_adds_capture_with_its_own_amount(self):
        record_payment(
            self.appointment, provider="RAZORPAY", payment_ref="pay_a", order_ref="order_a", amount=Decimal("300.00")
        )
        record_payment(
            self.appointment,
            provider="RAZORPAY",
            payment_ref="pay_b",
            order_ref="order_b",
            amount=Decimal("200.00"),
            purpose=PaymentCapture.Purpose.RESCHEDULE,
        )

        payment = Payment.objects.get()
        self.assertEqual(payment.amount, Decimal("500.00"))
        self.assertEqual(payment.gateway_ref, "pay_b")
        self.assertEqual(payment.status, Payment.Status.PAID)
        self.assertEqual(
            [(c.gateway_ref, c.amount) for c in refundable_captures(self.appointment)],
            [("pay_a", Decimal("300.00")), ("pay_b", Decimal("200.00"))],
        )

    def test_refunded_capture_is_not_refundable(self):
        record_payment(self.appointment, provider="RAZORPAY", payment_ref="pay_a", order_ref="order_a")
        record_payment(
            self.appointment,
            provider="RAZORPAY",
            payment_ref="pay_b",
            order_ref="order_b",
            amount=Decimal("200.00"),
            status=Payment.Status.REFUNDED,
        )

        self.assertEqual([c.gateway_ref for c in refundable_captures(self.appointment)], ["pay_a"])
        self.assertEqual(Payment.objects.get().status, Payment.Status.PAID)

    def test_record_payment_rejects_reused_reference(self):
        other = self.paid_appointment(self.patient2, self.make_slot(at=time(10, 0)))
        record_payment(self.appointment, provider="RAZORPAY", payment_ref="pay_a", order_ref="order_a")

        with self.assertRaises(ConflictError) as ctx:
            record_payment(other, provider="RAZORPAY", payment_ref="pay_a", order_ref="order_b")
        self.assertEqual(ctx.exception.code, "payment_ref_reused")

    def test_refund_success(self):
        with patch.object(RazorpayGateway, "refund") as refund:
            ok = request_refund(clinic=self.clinic, provider="RAZORPAY", payment_ref="pay_a", amount=Decimal("5"))
        self.assertTrue(ok)
        refund.assert_called_once_with("pay_a", Decimal("5"))

    def test_refund_failure_is_logged_not_raised(self):
        with patch.object(RazorpayGateway, "refund", side_effect=GatewayError("down")):
            with self.assertLogs("payments.services", level="ERROR") as logs:
                ok = request_refund(clinic=self.clinic, provider="RAZORPAY", payment_ref="pay_a")
        self.assertFalse(ok)
        self.assertIn("Refund failed", logs.output[0])
