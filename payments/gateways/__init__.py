# payments/gateways package
#
# Importing the provider modules registers them:
#
#   from payments.gateways import get_gateway_class
#   get_gateway_class("RAZORPAY")  -> RazorpayGateway

from payments.gateways.base import (  # noqa: F401
    GatewayConfig,
    GatewayError,
    GatewayOrder,
    PaymentGateway,
    compute_signature,
    to_minor_units,
)
from payments.gateways.registry import (  # noqa: F401
    available_providers,
    get_gateway_class,
    register,
)
from payments.gateways.razorpay import RazorpayGateway  # noqa: F401
from payments.gateways.stripe_checkout import StripeGateway  # noqa: F401
