import logging

import stripe
from django.conf import settings

from .base import GatewayError, GatewayOrder, PaymentGateway, to_minor_units
from .registry import register

logger = logging.getLogger(__name__)


@register("STRIPE")
class StripeGateway(PaymentGateway):
    """
    Stripe Checkout Sessions through the official SDK.

    The session id is the order reference; the payment intent id is the
    payment reference. The per-request ``api_key`` keeps clinic credentials
    apart from each other.
    """

    def create_order(self, amount, currency, metadata=None):
        metadata = {k: str(v) for k, v in (metadata or {}).items()}
        frontend = getattr(settings, "FRONTEND_URL", "").rstrip("/")
        appointment_id = metadata.get("appointment_id", "")

        try:
            session = stripe.checkout.Session.create(
                api_key=self.config.secret,
                mode="payment",
                line_items=[
                    {
                        "price_data": {
                            "currency": currency.lower(),
                            "unit_amount": to_minor_units(amount),
                            "product_data": {"name": f"Appointment #{appointment_id}"},
                        },
                        "quantity": 1,
                    }
                ],
                metadata=metadata,
                success_url=f"{frontend}/payment-success?session_id={{CHECKOUT_SESSION_ID}}",
                cancel_url=f"{frontend}/payment-cancelled?appointment_id={appointment_id}",
            )
        except stripe.StripeError as exc:
            logger.error("[GATEWAY] Stripe checkout session failed: %s", exc)
            raise GatewayError(f"Stripe request failed: {exc}", provider=self.provider)

        return GatewayOrder(
            order_ref=session.id,
            amount=amount,
            currency=currency,
            provider=self.provider,
            checkout_data={"session_id": session.id, "url": session.url},
        )

    def refund(self, payment_ref, amount=None):
        params = {"api_key": self.config.secret, "payment_intent": payment_ref}
        if amount is not None:
            params["amount"] = to_minor_units(amount)
        try:
            stripe.Refund.create(**params)
        except stripe.StripeError as exc:
            logger.error("[GATEWAY] Stripe refund for %s failed: %s", payment_ref, exc)
            raise GatewayError(f"Stripe refund failed: {exc}", provider=self.provider)
