from django.contrib import admin

from payments.models import GatewayCredential

from .models import Clinic, ClinicStaff


class ClinicStaffInline(admin.TabularInline):
    model = ClinicStaff
    fk_name = "clinic"
    extra = 0
    fields = ["user", "role", "is_active", "added_by", "added_at"]
    readonly_fields = ["added_at"]


class GatewayCredentialInline(admin.TabularInline):
    model = GatewayCredential
    extra = 0
    fields = ["provider", "key_id", "secret", "webhook_secret", "is_active"]


@admin.register(Clinic)
class ClinicAdmin(admin.ModelAdmin):
    list_display = ["name", "main_doctor", "allow_online_payments", "is_active", "created_at"]
    list_filter = ["is_active", "allow_online_payments"]
    search_fields = ["name", "main_doctor__name", "main_doctor__phone"]
    readonly_fields = ["created_at"]
    inlines = [ClinicStaffInline, GatewayCredentialInline]

    fieldsets = (
        ("Clinic", {"fields": ("name", "address", "phone", "email", "description")}),
        ("Plan", {"fields": ("main_doctor", "allow_online_payments", "is_active", "created_at")}),
    )


@admin.register(ClinicStaff)
class ClinicStaffAdmin(admin.ModelAdmin):
    list_display = ["user", "clinic", "role", "is_active", "added_at"]
    list_filter = ["role", "is_active", "clinic"]
    search_fields = ["user__name", "user__phone", "clinic__name"]
    readonly_fields = ["added_at"]
