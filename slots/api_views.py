from rest_framework import status
from rest_framework.permissions import IsAuthenticated
from rest_framework.response import Response
from rest_framework.views import APIView

from appointments.api_views import booking_error_response
from appointments.exceptions import BookingError
from clinics.permissions import IsClinicStaff

from . import services
from .serializers import (
    AvailableSlotsQuerySerializer,
    BlockSlotSerializer,
    BulkCreateSlotsSerializer,
    CreateSlotSerializer,
    SlotSerializer,
)


class AvailableSlotsAPIView(APIView):
    """
    GET /slots/api/available/?clinic_id=1&doctor_id=5&date_from=2026-03-01&date_to=2026-03-07

    Bookable slots, ordered by date and time.
    """

    permission_classes = [IsAuthenticated]

    def get(self, request):
        serializer = AvailableSlotsQuerySerializer(data=request.query_params)
        if not serializer.is_valid():
            return Response(serializer.errors, status=status.HTTP_400_BAD_REQUEST)

        data = serializer.validated_data
        slots = services.find_available_slots(
            clinic_id=data["clinic_id"],
            doctor_id=data.get("doctor_id"),
            date_from=data["date_from"],
            date_to=data["date_to"],
        )
        return Response(SlotSerializer(slots, many=True).data)


class CreateSlotAPIView(APIView):
    """POST /slots/api/ - create one slot in the staff member's clinic."""

    permission_classes = [IsAuthenticated, IsClinicStaff]

    def post(self, request):
        serializer = CreateSlotSerializer(data=request.data)
        if not serializer.is_valid():
            return Response(serializer.errors, status=status.HTTP_400_BAD_REQUEST)

        try:
            slot = services.create_slot(clinic=request.clinic, **serializer.validated_data)
        except BookingError as e:
            return booking_error_response(e)

        return Response(SlotSerializer(slot).data, status=status.HTTP_201_CREATED)


class BulkCreateSlotsAPIView(APIView):
    """POST /slots/api/bulk/ - generate slots over a date range; overlaps are skipped."""

    permission_classes = [IsAuthenticated, IsClinicStaff]

    def post(self, request):
        serializer = BulkCreateSlotsSerializer(data=request.data)
        if not serializer.is_valid():
            return Response(serializer.errors, status=status.HTTP_400_BAD_REQUEST)

        try:
            created, skipped = services.create_bulk_slots(clinic=request.clinic, **serializer.validated_data)
        except BookingError as e:
            return booking_error_response(e)

        return Response(
            {"created": len(created), "skipped": skipped, "slots": SlotSerializer(created, many=True).data},
            status=status.HTTP_201_CREATED,
        )


class BlockSlotAPIView(APIView):
    """POST /slots/api/<id>/block/ - body: {"reason": "...", "force": false}"""

    permission_classes = [IsAuthenticated, IsClinicStaff]

    def post(self, request, slot_id):
        serializer = BlockSlotSerializer(data=request.data)
        if not serializer.is_valid():
            return Response(serializer.errors, status=status.HTTP_400_BAD_REQUEST)

        try:
            slot = services.block_slot(
                slot_id,
                clinic=request.clinic,
                actor=request.user,
                reason=serializer.validated_data["reason"],
                force=serializer.validated_data["force"],
            )
        except BookingError as e:
            return booking_error_response(e)

        return Response(SlotSerializer(slot).data)


class UnblockSlotAPIView(APIView):
    permission_classes = [IsAuthenticated, IsClinicStaff]

    def post(self, request, slot_id):
        try:
            slot = services.unblock_slot(slot_id, clinic=request.clinic)
        except BookingError as e:
            return booking_error_response(e)
        return Response(SlotSerializer(slot).data)


class DeleteSlotAPIView(APIView):
    permission_classes = [IsAuthenticated, IsClinicStaff]

    def delete(self, request, slot_id):
        try:
            services.soft_delete_slot(slot_id, clinic=request.clinic)
        except BookingError as e:
            return booking_error_response(e)
        return Response(status=status.HTTP_204_NO_CONTENT)
