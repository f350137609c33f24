from django.urls import path

from . import api_views

app_name = "appointments"

urlpatterns = [
    path(
        "api/book/",
        api_views.BookAppointmentAPIView.as_view(),
        name="api_book_appointment",
    ),
    path(
        "api/<int:appointment_id>/pay/",
        api_views.StartPaymentAPIView.as_view(),
        name="api_start_payment",
    ),
    path(
        "api/<int:appointment_id>/reschedule/",
        api_views.RescheduleAppointmentAPIView.as_view(),
        name="api_reschedule_appointment",
    ),
    path(
        "api/<int:appointment_id>/cancel/",
        api_views.CancelAppointmentAPIView.as_view(),
        name="api_cancel_appointment",
    ),
    path(
        "api/<int:appointment_id>/status/",
        api_views.UpdateAppointmentStatusAPIView.as_view(),
        name="api_update_status",
    ),
    path(
        "api/cancellation-requests/<int:request_id>/resolve/",
        api_views.ResolveCancellationAPIView.as_view(),
        name="api_resolve_cancellation",
    ),
]
