"""
Payment gateway contract.

The booking core talks to payment providers only through PaymentGateway:

    create_order(amount, currency, metadata) -> GatewayOrder
    verify(order_ref, payment_ref, signature) -> bool
    refund(payment_ref, amount) -> None

Signatures are HMAC-SHA256 hex digests over ``"<order_ref>|<payment_ref>"``
keyed with the gateway's signing secret, compared in constant time.
"""

import hashlib
import hmac
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from decimal import ROUND_HALF_UP, Decimal
from typing import Optional

logger = logging.getLogger(__name__)


class GatewayError(Exception):
    """A provider call failed (network, auth, or provider-side rejection)."""

    def __init__(self, message, provider=""):
        self.message = message
        self.provider = provider
        super().__init__(message)


@dataclass(frozen=True)
class GatewayConfig:
    key_id: str = ""
    secret: str = ""
    webhook_secret: str = ""
    base_url: str = ""


@dataclass
class GatewayOrder:
    order_ref: str
    amount: Decimal
    currency: str
    provider: str
    checkout_data: dict = field(default_factory=dict)


def compute_signature(secret: str, order_ref: str, payment_ref: str) -> str:
    payload = f"{order_ref}|{payment_ref}".encode("utf-8")
    return hmac.new(secret.encode("utf-8"), payload, hashlib.sha256).hexdigest()


def to_minor_units(amount) -> int:
    """Decimal major-unit amount to integer minor units (paise, cents)."""
    return int((Decimal(amount) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


class PaymentGateway(ABC):
    """Base class for providers. Subclasses register with ``@register("NAME")``."""

    provider = ""

    def __init__(self, config: GatewayConfig):
        self.config = config

    @property
    def signing_secret(self) -> str:
        return self.config.webhook_secret or self.config.secret

    @property
    def is_configured(self) -> bool:
        return bool(self.config.secret)

    @abstractmethod
    def create_order(self, amount, currency: str, metadata: Optional[dict] = None) -> GatewayOrder:
        ...

    @abstractmethod
    def refund(self, payment_ref: str, amount=None) -> None:
        ...

    def verify(self, order_ref: str, payment_ref: str, signature: str) -> bool:
        if not (order_ref and payment_ref and signature and self.signing_secret):
            return False
        expected = compute_signature(self.signing_secret, order_ref, payment_ref)
        return hmac.compare_digest(expected, signature)
