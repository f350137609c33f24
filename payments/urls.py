from django.urls import path

from . import api_views

app_name = "payments"

urlpatterns = [
    path("api/verify/", api_views.VerifyPaymentAPIView.as_view(), name="api_verify_payment"),
]
