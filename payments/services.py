"""
Payment service.

Thin layer between the appointment services and the gateway adapters:
picks the provider and credentials for a clinic, turns provider failures
into GatewayUnavailableError, and owns writes to the Payment table.

Remote calls made here (create order, refund) must never run inside an
open database transaction; callers invoke them before their atomic block
or from ``transaction.on_commit``.
"""

import logging
from decimal import Decimal

from django.conf import settings

from appointments.exceptions import (
    ConflictError,
    GatewayUnavailableError,
    PolicyViolationError,
    SignatureInvalidError,
)

from .gateways import GatewayConfig, GatewayError, get_gateway_class
from .models import GatewayCredential, Payment, PaymentCapture

logger = logging.getLogger(__name__)


def default_provider():
    return getattr(settings, "PAYMENT_DEFAULT_PROVIDER", "RAZORPAY")


def currency():
    return getattr(settings, "PAYMENT_CURRENCY", "INR")


def resolve_gateway(clinic, provider=None):
    """
    Build the gateway for ``clinic``.

    The clinic's active GatewayCredential wins over the platform
    credentials in ``settings.PAYMENT_GATEWAYS``.

    Raises:
        PolicyViolationError: Unknown provider, or no credentials anywhere.
    """
    provider = (provider or default_provider()).upper()
    gateway_class = get_gateway_class(provider)
    if gateway_class is None:
        raise PolicyViolationError(
            f"Payment provider {provider} is not supported.", code="unsupported_provider"
        )

    credential = GatewayCredential.objects.filter(
        clinic=clinic, provider=provider, is_active=True
    ).first()
    if credential is not None:
        config = GatewayConfig(
            key_id=credential.key_id,
            secret=credential.secret,
            webhook_secret=credential.webhook_secret,
        )
    else:
        platform = getattr(settings, "PAYMENT_GATEWAYS", {}).get(provider, {})
        config = GatewayConfig(
            key_id=platform.get("KEY_ID", ""),
            secret=platform.get("SECRET", ""),
            webhook_secret=platform.get("WEBHOOK_SECRET", ""),
            base_url=platform.get("BASE_URL", ""),
        )

    gateway = gateway_class(config)
    if not gateway.is_configured:
        raise PolicyViolationError(
            f"Online payments via {provider} are not configured for this clinic.",
            code="gateway_not_configured",
        )
    return gateway


def create_gateway_order(*, clinic, provider, amount, metadata):
    """Create a remote order. Call before opening the local transaction."""
    gateway = resolve_gateway(clinic, provider)
    try:
        order = gateway.create_order(amount, currency(), metadata)
    except GatewayError as exc:
        logger.error(
            "[PAYMENT] Order creation failed provider=%s clinic=%s amount=%s: %s",
            gateway.provider, clinic.pk, amount, exc.message,
        )
        raise GatewayUnavailableError()

    logger.info(
        "[PAYMENT] Order created provider=%s order_ref=%s amount=%s metadata=%s",
        order.provider, order.order_ref, amount, metadata,
    )
    return order


def verify_signature(*, clinic, provider, order_ref, payment_ref, signature):
    """Raise SignatureInvalidError unless the gateway accepts the signature."""
    gateway = resolve_gateway(clinic, provider)
    if not gateway.verify(order_ref, payment_ref, signature):
        logger.warning(
            "[PAYMENT] Signature verification failed provider=%s order_ref=%s payment_ref=%s",
            gateway.provider, order_ref, payment_ref,
        )
        raise SignatureInvalidError()
    return gateway


def record_payment(
    appointment,
    *,
    provider,
    payment_ref,
    order_ref,
    amount=None,
    purpose=PaymentCapture.Purpose.BOOKING,
    status=Payment.Status.PAID,
):
    """
    Upsert the Payment row keyed by appointment and the capture for ``order_ref``.

    ``amount`` is what the gateway captured for this order (the reschedule
    difference, not the new price, when a difference was paid). Replays of
    an order keep the amount already recorded and refresh the reference.
    A payment reference already recorded against another appointment is a
    conflict.
    """
    if (
        PaymentCapture.objects.filter(gateway_ref=payment_ref)
        .exclude(payment__appointment=appointment)
        .exists()
    ):
        raise ConflictError(
            "This payment reference is already recorded for another appointment.",
            code="payment_ref_reused",
        )

    payment, created = Payment.objects.get_or_create(
        appointment=appointment,
        defaults={"provider": provider, "currency": currency()},
    )

    capture = payment.captures.filter(order_ref=order_ref).first()
    if capture is None:
        capture = PaymentCapture(
            payment=payment,
            order_ref=order_ref,
            purpose=purpose,
            amount=appointment.amount if amount is None else amount,
        )
    elif amount is not None:
        capture.amount = amount
    capture.gateway_ref = payment_ref
    capture.status = status
    capture.save()

    captures = list(payment.captures.all())
    payment.provider = provider
    payment.gateway_ref = payment_ref
    payment.order_ref = order_ref
    payment.amount = sum((c.amount for c in captures), Decimal("0.00"))
    payment.status = (
        Payment.Status.PAID
        if any(c.status == Payment.Status.PAID for c in captures)
        else status
    )
    payment.save()

    logger.info(
        "[PAYMENT] %s payment appointment=%s payment_ref=%s captured=%s total=%s status=%s",
        "Recorded" if created else "Updated", appointment.pk, payment_ref,
        capture.amount, payment.amount, payment.status,
    )
    return payment


def refundable_captures(appointment):
    """Captures of ``appointment`` that are paid and not yet refunded."""
    return list(
        PaymentCapture.objects.select_related("payment").filter(
            payment__appointment=appointment, status=Payment.Status.PAID
        )
    )


def request_refund(*, clinic, provider, payment_ref, amount=None):
    """
    Ask the provider to refund a payment.

    Fire-and-forget: failures are logged and reported through the return
    value, never raised, and local state does not depend on the outcome.
    """
    try:
        gateway = resolve_gateway(clinic, provider)
        gateway.refund(payment_ref, amount)
    except (GatewayError, PolicyViolationError) as exc:
        logger.error(
            "[PAYMENT] Refund failed provider=%s payment_ref=%s amount=%s: %s",
            provider, payment_ref, amount, exc,
        )
        return False

    logger.info("[PAYMENT] Refund requested provider=%s payment_ref=%s amount=%s", provider, payment_ref, amount)
    return True
