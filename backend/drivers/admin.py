from django.contrib import admin
from drivers.models import Driver


@admin.register(Driver)
class DriverAdmin(admin.ModelAdmin):
    """Admin panel for managing delivery drivers"""

    list_display = [
        "name",
        "company",
        "user",
        "status",
        "is_available",
        "is_active",
        "updated_at",
    ]

    list_filter = [
        "status",
        "is_available",
        "is_active",
        "company",
    ]

    search_fields = [
        "name",
        "phone_number",
        "user__username",
    ]

    readonly_fields = [
        "created_at",
        "updated_at",
    ]

    ordering = ("name",)
