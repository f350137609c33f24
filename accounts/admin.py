from django.contrib import admin
from django.contrib.auth.admin import UserAdmin

from clinics.models import ClinicStaff

from .models import CustomUser


class EmploymentInline(admin.TabularInline):
    model = ClinicStaff
    fk_name = "user"
    extra = 0
    fields = ["clinic", "role", "is_active"]
    verbose_name = "Clinic employment"
    verbose_name_plural = "Clinic employments"


@admin.register(CustomUser)
class CustomUserAdmin(UserAdmin):
    model = CustomUser
    list_display = ["phone", "name", "role", "is_active", "date_joined"]
    list_filter = ["role", "is_active"]
    search_fields = ("phone", "name", "email")
    ordering = ("-date_joined",)
    inlines = [EmploymentInline]

    fieldsets = (
        (None, {"fields": ("phone", "password")}),
        ("Profile", {"fields": ("name", "email", "role")}),
        ("Access", {"fields": ("is_active", "is_staff", "is_superuser", "groups")}),
        ("Dates", {"fields": ("last_login", "date_joined")}),
    )
    add_fieldsets = (
        (None, {"classes": ("wide",), "fields": ("phone", "name", "role", "password1", "password2")}),
    )
