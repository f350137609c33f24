"""
URL configuration for clinic_booking project.

Each app mounts its own urls module; API endpoints live under the
app prefix (e.g. /appointments/api/book/).
"""

from django.contrib import admin
from django.urls import include, path

urlpatterns = [
    path("admin/", admin.site.urls),
    path("", include("accounts.urls")),
    path("slots/", include("slots.urls")),
    path("appointments/", include("appointments.urls")),
    path("payments/", include("payments.urls")),
]
