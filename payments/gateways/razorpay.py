import logging

import requests

from .base import GatewayError, GatewayOrder, PaymentGateway, to_minor_units
from .registry import register

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://api.razorpay.com/v1"
REQUEST_TIMEOUT = 10


@register("RAZORPAY")
class RazorpayGateway(PaymentGateway):
    """
    Razorpay Orders API over plain HTTPS.

    Amounts go out in paise. Razorpay signs checkout results with the key
    secret over ``order_id|payment_id``, which is exactly the base contract,
    so ``verify`` is inherited.
    """

    @property
    def signing_secret(self):
        return self.config.secret

    @property
    def base_url(self):
        return (self.config.base_url or DEFAULT_BASE_URL).rstrip("/")

    def _post(self, path, payload):
        try:
            response = requests.post(
                f"{self.base_url}{path}",
                json=payload,
                auth=(self.config.key_id, self.config.secret),
                timeout=REQUEST_TIMEOUT,
            )
            response.raise_for_status()
            return response.json()
        except (requests.RequestException, ValueError) as exc:
            logger.error("[GATEWAY] Razorpay POST %s failed: %s", path, exc)
            raise GatewayError(f"Razorpay request failed: {exc}", provider=self.provider)

    def create_order(self, amount, currency, metadata=None):
        metadata = {k: str(v) for k, v in (metadata or {}).items()}
        data = self._post(
            "/orders",
            {
                "amount": to_minor_units(amount),
                "currency": currency,
                "receipt": metadata.get("receipt", ""),
                "notes": metadata,
            },
        )
        order_id = data.get("id")
        if not order_id:
            raise GatewayError("Razorpay returned no order id.", provider=self.provider)

        return GatewayOrder(
            order_ref=order_id,
            amount=amount,
            currency=currency,
            provider=self.provider,
            checkout_data={"key_id": self.config.key_id, "order_id": order_id},
        )

    def refund(self, payment_ref, amount=None):
        payload = {}
        if amount is not None:
            payload["amount"] = to_minor_units(amount)
        self._post(f"/payments/{payment_ref}/refund", payload)
