from rest_framework import serializers

from .models import Slot


class SlotSerializer(serializers.ModelSerializer):
    doctor_name = serializers.CharField(source="doctor.name", read_only=True)
    end_time = serializers.TimeField(read_only=True)

    class Meta:
        model = Slot
        fields = [
            "id",
            "clinic",
            "doctor",
            "doctor_name",
            "date",
            "time",
            "end_time",
            "duration_minutes",
            "price",
            "payment_mode",
            "kind",
            "status",
            "is_blocked",
            "blocked_reason",
        ]
        read_only_fields = fields


class AvailableSlotsQuerySerializer(serializers.Serializer):
    clinic_id = serializers.IntegerField()
    doctor_id = serializers.IntegerField(required=False)
    date_from = serializers.DateField()
    date_to = serializers.DateField()

    def validate(self, attrs):
        if attrs["date_to"] < attrs["date_from"]:
            raise serializers.ValidationError({"date_to": "Must be on or after date_from."})
        return attrs


class CreateSlotSerializer(serializers.Serializer):
    doctor_id = serializers.IntegerField()
    date = serializers.DateField()
    time = serializers.TimeField()
    duration_minutes = serializers.IntegerField(min_value=1, default=30)
    price = serializers.DecimalField(max_digits=10, decimal_places=2, min_value=0, default=0)
    payment_mode = serializers.ChoiceField(choices=Slot.PaymentMode.choices, default=Slot.PaymentMode.ONLINE)
    kind = serializers.ChoiceField(choices=Slot.Kind.choices, default=Slot.Kind.APPOINTMENT)


class BulkCreateSlotsSerializer(serializers.Serializer):
    doctor_id = serializers.IntegerField()
    start_date = serializers.DateField()
    end_date = serializers.DateField()
    start_time = serializers.TimeField()
    end_time = serializers.TimeField()
    duration_minutes = serializers.IntegerField(min_value=1)
    weekdays = serializers.ListField(
        child=serializers.IntegerField(min_value=0, max_value=6),
        required=False,
        default=list,
        help_text="Monday=0 ... Sunday=6. Empty means every day.",
    )
    price = serializers.DecimalField(max_digits=10, decimal_places=2, min_value=0, default=0)
    payment_mode = serializers.ChoiceField(choices=Slot.PaymentMode.choices, default=Slot.PaymentMode.ONLINE)

    def validate(self, attrs):
        if attrs["end_date"] < attrs["start_date"]:
            raise serializers.ValidationError({"end_date": "Must be on or after start_date."})
        if attrs["end_time"] <= attrs["start_time"]:
            raise serializers.ValidationError({"end_time": "Must be after start_time."})
        return attrs


class BlockSlotSerializer(serializers.Serializer):
    reason = serializers.CharField(required=False, allow_blank=True, default="", max_length=255)
    force = serializers.BooleanField(required=False, default=False)
