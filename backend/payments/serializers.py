from decimal import Decimal

from rest_framework import serializers

from orders.models import Order
from .models import PendingPayment


class DraftOrderItemSerializer(serializers.Serializer):
    product_id = serializers.CharField(max_length=100)
    product_name = serializers.CharField(max_length=200)
    quantity = serializers.IntegerField(min_value=1)
    unit_price = serializers.DecimalField(max_digits=10, decimal_places=2, min_value=Decimal("0"))
    total_price = serializers.DecimalField(max_digits=10, decimal_places=2, min_value=Decimal("0"))
    options = serializers.JSONField(required=False, allow_null=True)
    notes = serializers.CharField(required=False, allow_blank=True, allow_null=True)


class CheckoutSerializer(serializers.Serializer):
    """Checkout draft sent by the storefront before redirecting to the gateway."""

    company_id = serializers.IntegerField()

    customer_name = serializers.CharField(max_length=200)
    customer_phone = serializers.CharField(max_length=20)
    customer_email = serializers.EmailField(required=False, allow_blank=True, allow_null=True)

    order_type = serializers.ChoiceField(choices=Order.ORDER_TYPE_CHOICES, default=Order.TYPE_DELIVERY)
    delivery_address = serializers.CharField(required=False, allow_blank=True, default="")
    payment_method = serializers.CharField(max_length=30, default="pix")

    items = DraftOrderItemSerializer(many=True)

    subtotal = serializers.DecimalField(max_digits=10, decimal_places=2, min_value=Decimal("0"))
    delivery_fee = serializers.DecimalField(max_digits=10, decimal_places=2, min_value=Decimal("0"), default=Decimal("0"))
    discount_amount = serializers.DecimalField(max_digits=10, decimal_places=2, min_value=Decimal("0"), default=Decimal("0"))
    total = serializers.DecimalField(max_digits=10, decimal_places=2, min_value=Decimal("0.01"))
    coupon_id = serializers.IntegerField(required=False, allow_null=True)
    notes = serializers.CharField(required=False, allow_blank=True, allow_null=True)

    def validate_items(self, value):
        if not value:
            raise serializers.ValidationError("At least one item is required")
        return value

    def validate(self, attrs):
        if attrs["order_type"] == Order.TYPE_DELIVERY and not attrs.get("delivery_address"):
            raise serializers.ValidationError({"delivery_address": "Required for delivery orders"})

        expected = attrs["subtotal"] + attrs["delivery_fee"] - attrs["discount_amount"]
        if expected != attrs["total"]:
            raise serializers.ValidationError({"total": "Does not match subtotal + delivery fee - discount"})
        return attrs


class PaymentCheckSerializer(serializers.Serializer):
    paymentId = serializers.CharField(required=False, allow_blank=True)


class PendingPaymentSerializer(serializers.ModelSerializer):
    class Meta:
        model = PendingPayment
        fields = [
            'id', 'company', 'status', 'gateway_reference_id', 'gateway_preference_id',
            'order', 'created_at', 'expires_at', 'completed_at',
        ]
        read_only_fields = fields
