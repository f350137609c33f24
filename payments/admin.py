from django.contrib import admin

from .models import GatewayCredential, Payment, PaymentCapture


@admin.register(GatewayCredential)
class GatewayCredentialAdmin(admin.ModelAdmin):
    list_display = ("clinic", "provider", "key_id", "is_active", "created_at")
    list_filter = ("provider", "is_active")
    search_fields = ("clinic__name", "key_id")


class PaymentCaptureInline(admin.TabularInline):
    model = PaymentCapture
    extra = 0
    can_delete = False
    fields = ("gateway_ref", "order_ref", "amount", "purpose", "status", "created_at")
    readonly_fields = fields


@admin.register(Payment)
class PaymentAdmin(admin.ModelAdmin):
    list_display = ("id", "appointment", "provider", "gateway_ref", "amount", "currency", "status", "updated_at")
    list_filter = ("provider", "status")
    search_fields = ("gateway_ref", "order_ref", "appointment__id", "captures__gateway_ref")
    readonly_fields = ("appointment", "provider", "gateway_ref", "order_ref", "amount", "currency", "created_at", "updated_at")
    inlines = [PaymentCaptureInline]
