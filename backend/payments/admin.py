from django.contrib import admin

from .models import PendingPayment


@admin.register(PendingPayment)
class PendingPaymentAdmin(admin.ModelAdmin):
    list_display = ('id', 'company', 'status', 'gateway_reference_id', 'order', 'created_at', 'expires_at')
    list_filter = ('status', 'company')
    search_fields = ('id', 'gateway_reference_id', 'gateway_preference_id')
    readonly_fields = ('draft_order', 'created_at', 'completed_at')
