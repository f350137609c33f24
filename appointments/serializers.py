from rest_framework import serializers

from payments.gateways import available_providers

from .models import Appointment, CancellationRequest


class ProviderField(serializers.CharField):
    """Payment provider identifier, validated against the gateway registry."""

    def __init__(self, **kwargs):
        kwargs.setdefault("required", False)
        kwargs.setdefault("allow_blank", True)
        kwargs.setdefault("default", "")
        super().__init__(**kwargs)

    def to_internal_value(self, data):
        value = super().to_internal_value(data).upper()
        if value and value not in available_providers():
            raise serializers.ValidationError(
                f"Unsupported provider. Choose one of: {', '.join(available_providers())}."
            )
        return value


class BookAppointmentSerializer(serializers.Serializer):
    """
    Request serializer for booking an appointment.

    Validates incoming data from the patient before passing
    to the booking service for business-logic validation.
    """

    slot_id = serializers.IntegerField()
    doctor_id = serializers.IntegerField()
    clinic_id = serializers.IntegerField()
    reason = serializers.CharField(
        required=False,
        allow_blank=True,
        default="",
        help_text="Optional reason for visit.",
    )


class AppointmentResponseSerializer(serializers.ModelSerializer):
    """Full appointment details returned by the booking endpoints."""

    doctor_name = serializers.CharField(source="doctor.name", read_only=True)
    clinic_name = serializers.CharField(source="clinic.name", read_only=True)
    patient_name = serializers.CharField(source="patient.name", read_only=True)
    slot_date = serializers.DateField(source="slot.date", read_only=True)
    slot_time = serializers.TimeField(source="slot.time", read_only=True)
    payment_mode = serializers.CharField(source="slot.payment_mode", read_only=True)
    status_display = serializers.CharField(source="get_status_display", read_only=True)

    class Meta:
        model = Appointment
        fields = [
            "id",
            "patient",
            "patient_name",
            "doctor",
            "doctor_name",
            "clinic",
            "clinic_name",
            "slot",
            "slot_date",
            "slot_time",
            "payment_mode",
            "status",
            "status_display",
            "payment_status",
            "financial_status",
            "amount",
            "diff_amount",
            "reschedule_count",
            "payment_expires_at",
            "reason",
            "cancel_reason",
            "cancelled_by",
            "created_at",
        ]
        read_only_fields = fields


class GatewayOrderSerializer(serializers.Serializer):
    order_ref = serializers.CharField()
    amount = serializers.DecimalField(max_digits=10, decimal_places=2)
    currency = serializers.CharField()
    provider = serializers.CharField()
    checkout_data = serializers.DictField()


class StartPaymentSerializer(serializers.Serializer):
    provider = ProviderField()


class RescheduleSerializer(serializers.Serializer):
    target_slot_id = serializers.IntegerField()
    provider = ProviderField()
    reason = serializers.CharField(required=False, allow_blank=True, default="")


class CancelAppointmentSerializer(serializers.Serializer):
    reason = serializers.CharField(required=False, allow_blank=True, default="")


class UpdateStatusSerializer(serializers.Serializer):
    status = serializers.ChoiceField(
        choices=[
            Appointment.Status.CONFIRMED,
            Appointment.Status.COMPLETED,
            Appointment.Status.NO_SHOW,
            Appointment.Status.CANCELLED,
        ]
    )
    reason = serializers.CharField(required=False, allow_blank=True, default="")

    def validate(self, attrs):
        if attrs["status"] == Appointment.Status.CANCELLED and not attrs.get("reason", "").strip():
            raise serializers.ValidationError({"reason": "A reason is required when cancelling."})
        return attrs


class ResolveCancellationSerializer(serializers.Serializer):
    approve = serializers.BooleanField()
    reason = serializers.CharField(required=False, allow_blank=True, default="")


class CancellationRequestSerializer(serializers.ModelSerializer):
    appointment_status = serializers.CharField(source="appointment.status", read_only=True)

    class Meta:
        model = CancellationRequest
        fields = [
            "id",
            "appointment",
            "appointment_status",
            "status",
            "reason",
            "previous_status",
            "processed_by",
            "processed_at",
            "resolution_note",
            "created_at",
        ]
        read_only_fields = fields
