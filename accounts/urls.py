from django.urls import path
from rest_framework_simplejwt.views import TokenRefreshView

from . import api_views

app_name = "accounts"

urlpatterns = [
    path("api/token/", api_views.LoginAPIView.as_view(), name="token_obtain"),
    path("api/token/refresh/", TokenRefreshView.as_view(), name="token_refresh"),
]
