from rest_framework import status
from rest_framework.permissions import AllowAny
from rest_framework.response import Response
from rest_framework.views import APIView

from appointments.api_views import booking_error_response
from appointments.exceptions import BookingError
from appointments.serializers import AppointmentResponseSerializer
from appointments.services import confirm_payment

from .serializers import PaymentSerializer, VerifyPaymentSerializer


class VerifyPaymentAPIView(APIView):
    """
    POST /payments/api/verify/

    Request body:
        {
            "order_ref": "order_Nx1...",
            "payment_ref": "pay_Nx2...",
            "signature": "<hex HMAC-SHA256 of order_ref|payment_ref>"
        }

    The signature is the credential, so the endpoint accepts unauthenticated
    calls (provider webhooks). Replays answer 200 with unchanged state.

    Error Responses:
        400: Bad signature or malformed body.
        404: Unknown order.
        409: Payment arrived after the slot was reassigned (refund issued).
    """

    authentication_classes = []
    permission_classes = [AllowAny]

    def post(self, request):
        serializer = VerifyPaymentSerializer(data=request.data)
        if not serializer.is_valid():
            return Response(serializer.errors, status=status.HTTP_400_BAD_REQUEST)

        try:
            appointment = confirm_payment(**serializer.validated_data)
        except BookingError as e:
            return booking_error_response(e)

        return Response(
            {
                "appointment": AppointmentResponseSerializer(appointment).data,
                "payment": PaymentSerializer(appointment.payment).data,
            },
            status=status.HTTP_200_OK,
        )
