from django.contrib import admin

from .models import Appointment, AppointmentLog, CancellationRequest, ClinicNotification


class AppointmentLogInline(admin.TabularInline):
    model = AppointmentLog
    extra = 0
    readonly_fields = ["action", "old_date", "old_time", "new_date", "new_time", "changed_by", "reason", "metadata", "created_at"]
    can_delete = False

    def has_add_permission(self, request, obj=None):
        return False


@admin.register(Appointment)
class AppointmentAdmin(admin.ModelAdmin):
    list_display = [
        "id",
        "patient",
        "doctor",
        "clinic",
        "slot",
        "status",
        "payment_status",
        "financial_status",
        "amount",
        "reschedule_count",
        "created_at",
    ]
    list_filter = ["status", "payment_status", "financial_status", "clinic"]
    search_fields = ["patient__name", "doctor__name", "clinic__name", "order_ref"]
    raw_id_fields = ["patient", "doctor", "clinic", "slot", "created_by"]
    # Status changes go through the booking services only.
    readonly_fields = [
        "status",
        "payment_status",
        "financial_status",
        "amount",
        "diff_amount",
        "reschedule_count",
        "order_ref",
        "payment_expires_at",
        "created_at",
        "updated_at",
    ]
    inlines = [AppointmentLogInline]


@admin.register(CancellationRequest)
class CancellationRequestAdmin(admin.ModelAdmin):
    list_display = ["id", "appointment", "status", "previous_status", "processed_by", "processed_at", "created_at"]
    list_filter = ["status", "appointment__clinic"]
    raw_id_fields = ["appointment", "requested_by", "processed_by"]
    readonly_fields = ["status", "previous_status", "processed_by", "processed_at", "created_at"]


@admin.register(ClinicNotification)
class ClinicNotificationAdmin(admin.ModelAdmin):
    list_display = ["id", "clinic", "notification_type", "entity_id", "priority", "created_at", "read_at"]
    list_filter = ["notification_type", "priority", "clinic"]
    search_fields = ["message"]
