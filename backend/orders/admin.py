from django.contrib import admin

from .models import Coupon, Customer, EscalationEvent, Order, OrderItem, OrderOffer


class OrderItemInline(admin.TabularInline):
    model = OrderItem
    extra = 0


class OrderOfferInline(admin.TabularInline):
    model = OrderOffer
    extra = 0
    readonly_fields = ('driver', 'status', 'created_at', 'responded_at')


@admin.register(Order)
class OrderAdmin(admin.ModelAdmin):
    """Admin panel for orders and their delivery state"""

    list_display = [
        "id",
        "company",
        "customer_name",
        "status",
        "payment_status",
        "driver",
        "queue_position",
        "total",
        "created_at",
    ]

    list_filter = [
        "status",
        "payment_status",
        "order_type",
        "company",
    ]

    search_fields = [
        "id",
        "customer_name",
        "customer_phone",
        "gateway_payment_id",
    ]

    inlines = [OrderItemInline, OrderOfferInline]
    ordering = ("-created_at",)


@admin.register(OrderOffer)
class OrderOfferAdmin(admin.ModelAdmin):
    list_display = ("id", "order", "driver", "status", "created_at", "responded_at")
    list_filter = ("status",)


@admin.register(EscalationEvent)
class EscalationEventAdmin(admin.ModelAdmin):
    list_display = ("order", "kind", "minutes_waiting", "created_at")
    list_filter = ("kind",)


@admin.register(Customer)
class CustomerAdmin(admin.ModelAdmin):
    list_display = ("name", "email", "phone", "created_at")
    search_fields = ("name", "email", "phone")


@admin.register(Coupon)
class CouponAdmin(admin.ModelAdmin):
    list_display = ("code", "company", "current_uses", "max_uses", "is_active")
    list_filter = ("is_active", "company")
