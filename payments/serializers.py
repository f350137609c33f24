from rest_framework import serializers

from .models import Payment, PaymentCapture


class VerifyPaymentSerializer(serializers.Serializer):
    """Checkout result posted back by the client or a provider webhook relay."""

    order_ref = serializers.CharField(max_length=255)
    payment_ref = serializers.CharField(max_length=255)
    signature = serializers.CharField(max_length=512)


class PaymentCaptureSerializer(serializers.ModelSerializer):
    class Meta:
        model = PaymentCapture
        fields = ["gateway_ref", "amount", "purpose", "status"]
        read_only_fields = fields


class PaymentSerializer(serializers.ModelSerializer):
    captures = PaymentCaptureSerializer(many=True, read_only=True)

    class Meta:
        model = Payment
        fields = [
            "id", "appointment", "provider", "gateway_ref", "order_ref", "amount", "currency", "status", "captures",
        ]
        read_only_fields = fields
