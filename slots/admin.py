from django.contrib import admin

from .models import Slot


@admin.register(Slot)
class SlotAdmin(admin.ModelAdmin):
    list_display = (
        "id", "clinic", "doctor", "date", "time", "duration_minutes",
        "price", "payment_mode", "kind", "status", "is_blocked", "deleted_at",
    )
    list_filter = ("payment_mode", "kind", "status", "is_blocked", "clinic")
    search_fields = ("doctor__name", "clinic__name")
    date_hierarchy = "date"
    readonly_fields = ("created_at", "updated_at")
