from rest_framework import serializers

from .models import EscalationEvent, Order, OrderItem, OrderOffer


class OrderItemSerializer(serializers.ModelSerializer):
    class Meta:
        model = OrderItem
        fields = ['id', 'product_id', 'product_name', 'quantity', 'unit_price', 'total_price', 'options', 'notes']


class OrderSerializer(serializers.ModelSerializer):
    items = OrderItemSerializer(many=True, read_only=True)
    driver_name = serializers.CharField(source='driver.name', read_only=True, default=None)

    class Meta:
        model = Order
        fields = [
            'id', 'company', 'customer_name', 'customer_phone', 'customer_email',
            'order_type', 'delivery_address', 'payment_method', 'payment_status',
            'subtotal', 'delivery_fee', 'discount_amount', 'total', 'notes',
            'status', 'driver', 'driver_name', 'queue_position', 'items',
            'created_at', 'updated_at',
        ]
        read_only_fields = fields


class QueuedOrderSerializer(serializers.ModelSerializer):
    """Lite version for the driver's queue screen"""

    class Meta:
        model = Order
        fields = ['id', 'customer_name', 'delivery_address', 'total', 'queue_position', 'status']
        read_only_fields = fields


class OrderOfferSerializer(serializers.ModelSerializer):
    driver_name = serializers.CharField(source='driver.name', read_only=True)

    class Meta:
        model = OrderOffer
        fields = ['id', 'order', 'driver', 'driver_name', 'status', 'created_at', 'responded_at']
        read_only_fields = fields


class EscalationEventSerializer(serializers.ModelSerializer):
    class Meta:
        model = EscalationEvent
        fields = ['id', 'order', 'kind', 'minutes_waiting', 'created_at']
        read_only_fields = fields


class DispatchSerializer(serializers.Serializer):
    driverIds = serializers.ListField(child=serializers.IntegerField(), required=False, allow_empty=False)


class AssignDriverSerializer(serializers.Serializer):
    driverId = serializers.IntegerField()


class StatusUpdateSerializer(serializers.Serializer):
    status = serializers.ChoiceField(choices=Order.STORE_PIPELINE)


class CancelOrderSerializer(serializers.Serializer):
    reason = serializers.CharField(required=False, allow_blank=True, default="")


class OfferAcceptSerializer(serializers.Serializer):
    orderId = serializers.UUIDField(required=False)
