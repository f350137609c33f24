from rest_framework import status
from rest_framework.permissions import IsAuthenticated
from rest_framework.response import Response
from rest_framework.views import APIView

from clinics.capabilities import online_payments_enabled
from clinics.models import Clinic
from clinics.permissions import IsClinicStaff, IsPatient

from .exceptions import BookingError
from .serializers import (
    AppointmentResponseSerializer,
    BookAppointmentSerializer,
    CancelAppointmentSerializer,
    CancellationRequestSerializer,
    GatewayOrderSerializer,
    RescheduleSerializer,
    ResolveCancellationSerializer,
    StartPaymentSerializer,
    UpdateStatusSerializer,
)
from .services import (
    book_appointment,
    request_cancellation,
    reschedule_appointment,
    resolve_cancellation,
    start_payment,
    update_status,
)


def booking_error_response(exc):
    """Map a domain error to ``{"detail", "code"}`` with its HTTP status."""
    return Response({"detail": exc.message, "code": exc.code}, status=exc.http_status)


def _clinic_capability(clinic_id):
    clinic = Clinic.objects.filter(id=clinic_id).first()
    return online_payments_enabled(clinic)


class BookAppointmentAPIView(APIView):
    """
    POST /appointments/api/book/

    Book a slot as a patient.

    Request body:
        {
            "slot_id": 12,
            "doctor_id": 5,
            "clinic_id": 1,
            "reason": "Annual checkup"  (optional)
        }

    Success Response (201):
        Full appointment details via AppointmentResponseSerializer.

    Error Responses:
        400: Validation errors or booking errors.
        403: Online payments disabled for the clinic.
        404: Slot not found or deleted.
        409: Slot already booked (race condition).
    """

    permission_classes = [IsAuthenticated, IsPatient]

    def post(self, request):
        serializer = BookAppointmentSerializer(data=request.data)
        if not serializer.is_valid():
            return Response(serializer.errors, status=status.HTTP_400_BAD_REQUEST)

        data = serializer.validated_data
        try:
            appointment = book_appointment(
                patient=request.user,
                slot_id=data["slot_id"],
                doctor_id=data["doctor_id"],
                clinic_id=data["clinic_id"],
                reason=data.get("reason", ""),
                online_payments_enabled=_clinic_capability(data["clinic_id"]),
            )
        except BookingError as e:
            return booking_error_response(e)

        response_serializer = AppointmentResponseSerializer(appointment)
        return Response(response_serializer.data, status=status.HTTP_201_CREATED)


class StartPaymentAPIView(APIView):
    """
    POST /appointments/api/<id>/pay/

    Create a gateway order for an ONLINE booking. Body: {"provider": "STRIPE"} (optional).
    Returns the appointment and the order the client completes checkout with.
    """

    permission_classes = [IsAuthenticated, IsPatient]

    def post(self, request, appointment_id):
        serializer = StartPaymentSerializer(data=request.data)
        if not serializer.is_valid():
            return Response(serializer.errors, status=status.HTTP_400_BAD_REQUEST)

        try:
            appointment, order = start_payment(
                appointment_id,
                patient=request.user,
                provider=serializer.validated_data.get("provider") or None,
            )
        except BookingError as e:
            return booking_error_response(e)

        return Response(
            {
                "appointment": AppointmentResponseSerializer(appointment).data,
                "order": GatewayOrderSerializer(order).data,
            },
            status=status.HTTP_200_OK,
        )


class RescheduleAppointmentAPIView(APIView):
    """
    POST /appointments/api/<id>/reschedule/

    Request body: {"target_slot_id": 34, "provider": "RAZORPAY", "reason": "..."}

    Response carries the financial outcome and, when the difference is
    paid online, the gateway order.
    """

    permission_classes = [IsAuthenticated, IsPatient]

    def post(self, request, appointment_id):
        serializer = RescheduleSerializer(data=request.data)
        if not serializer.is_valid():
            return Response(serializer.errors, status=status.HTTP_400_BAD_REQUEST)

        data = serializer.validated_data
        try:
            appointment = (
                request.user.appointments_as_patient.filter(id=appointment_id)
                .only("clinic_id")
                .first()
            )
            result = reschedule_appointment(
                appointment_id,
                data["target_slot_id"],
                patient=request.user,
                provider=data.get("provider") or None,
                reason=data.get("reason", ""),
                online_payments_enabled=_clinic_capability(
                    appointment.clinic_id if appointment else None
                ),
            )
        except BookingError as e:
            return booking_error_response(e)

        return Response(
            {
                "appointment": AppointmentResponseSerializer(result.appointment).data,
                "financial_status": result.quote.financial_status,
                "diff": str(result.quote.diff),
                "payment_required": result.order is not None,
                "order": GatewayOrderSerializer(result.order).data if result.order else None,
            },
            status=status.HTTP_200_OK,
        )


class CancelAppointmentAPIView(APIView):
    """
    POST /appointments/api/<id>/cancel/

    Cancels immediately (200, "cancelled": true) or files a cancellation
    request for online-paid appointments (202, "cancelled": false).
    """

    permission_classes = [IsAuthenticated, IsPatient]

    def post(self, request, appointment_id):
        serializer = CancelAppointmentSerializer(data=request.data)
        if not serializer.is_valid():
            return Response(serializer.errors, status=status.HTTP_400_BAD_REQUEST)

        try:
            outcome = request_cancellation(
                appointment_id,
                patient=request.user,
                reason=serializer.validated_data.get("reason", ""),
            )
        except BookingError as e:
            return booking_error_response(e)

        body = {
            "cancelled": outcome.cancelled,
            "appointment": AppointmentResponseSerializer(outcome.appointment).data,
            "request": CancellationRequestSerializer(outcome.request).data if outcome.request else None,
        }
        return Response(
            body,
            status=status.HTTP_200_OK if outcome.cancelled else status.HTTP_202_ACCEPTED,
        )


class UpdateAppointmentStatusAPIView(APIView):
    """
    PATCH /appointments/api/<id>/status/

    Staff-only. Body: {"status": "COMPLETED"} or {"status": "CANCELLED", "reason": "..."}.
    Only appointments of the staff member's own clinic are reachable.
    """

    permission_classes = [IsAuthenticated, IsClinicStaff]

    def patch(self, request, appointment_id):
        serializer = UpdateStatusSerializer(data=request.data)
        if not serializer.is_valid():
            return Response(serializer.errors, status=status.HTTP_400_BAD_REQUEST)

        try:
            appointment = update_status(
                appointment_id,
                serializer.validated_data["status"],
                clinic=request.clinic,
                actor=request.user,
                reason=serializer.validated_data.get("reason", ""),
            )
        except BookingError as e:
            return booking_error_response(e)

        return Response(AppointmentResponseSerializer(appointment).data, status=status.HTTP_200_OK)


class ResolveCancellationAPIView(APIView):
    """
    POST /appointments/api/cancellation-requests/<id>/resolve/

    Staff-only. Body: {"approve": true, "reason": "..."}.
    """

    permission_classes = [IsAuthenticated, IsClinicStaff]

    def post(self, request, request_id):
        serializer = ResolveCancellationSerializer(data=request.data)
        if not serializer.is_valid():
            return Response(serializer.errors, status=status.HTTP_400_BAD_REQUEST)

        try:
            cancellation = resolve_cancellation(
                request_id,
                approve=serializer.validated_data["approve"],
                clinic=request.clinic,
                actor=request.user,
                reason=serializer.validated_data.get("reason", ""),
            )
        except BookingError as e:
            return booking_error_response(e)

        return Response(CancellationRequestSerializer(cancellation).data, status=status.HTTP_200_OK)
