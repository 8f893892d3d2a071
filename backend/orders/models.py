import uuid

from django.db import models
from django.conf import settings


class Customer(models.Model):
    """Buyer record resolved by email or phone when an order is placed."""

    user = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name='customer_records'
    )
    name = models.CharField(max_length=200)
    email = models.EmailField(null=True, blank=True)
    phone = models.CharField(max_length=20, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        db_table = 'customers'

    def __str__(self):
        return self.name


class Coupon(models.Model):
    company = models.ForeignKey('accounts.Company', on_delete=models.CASCADE, related_name='coupons')
    code = models.CharField(max_length=50)
    current_uses = models.PositiveIntegerField(default=0)
    max_uses = models.PositiveIntegerField(null=True, blank=True)
    is_active = models.BooleanField(default=True)

    class Meta:
        db_table = 'coupons'
        constraints = [
            models.UniqueConstraint(fields=['company', 'code'], name='unique_company_coupon_code')
        ]

    def __str__(self):
        return self.code


class Order(models.Model):
    """A placed order moving through the store and delivery pipeline"""

    STATUS_PENDING = 'pending'
    STATUS_CONFIRMED = 'confirmed'
    STATUS_PREPARING = 'preparing'
    STATUS_READY = 'ready'
    STATUS_AWAITING_DRIVER = 'awaiting_driver'
    STATUS_QUEUED = 'queued'
    STATUS_OUT_FOR_DELIVERY = 'out_for_delivery'
    STATUS_DELIVERED = 'delivered'
    STATUS_CANCELLED = 'cancelled'

    STATUS_CHOICES = [
        (STATUS_PENDING, 'Pending'),
        (STATUS_CONFIRMED, 'Confirmed'),
        (STATUS_PREPARING, 'Preparing'),
        (STATUS_READY, 'Ready'),
        (STATUS_AWAITING_DRIVER, 'Awaiting Driver'),
        (STATUS_QUEUED, 'Queued'),
        (STATUS_OUT_FOR_DELIVERY, 'Out for Delivery'),
        (STATUS_DELIVERED, 'Delivered'),
        (STATUS_CANCELLED, 'Cancelled'),
    ]

    # Store-side progression; the delivery states are driven by the matching services
    STORE_PIPELINE = [STATUS_PENDING, STATUS_CONFIRMED, STATUS_PREPARING, STATUS_READY]

    PAYMENT_PENDING = 'pending'
    PAYMENT_PAID = 'paid'
    PAYMENT_FAILED = 'failed'
    PAYMENT_REFUNDED = 'refunded'

    PAYMENT_STATUS_CHOICES = [
        (PAYMENT_PENDING, 'Pending'),
        (PAYMENT_PAID, 'Paid'),
        (PAYMENT_FAILED, 'Failed'),
        (PAYMENT_REFUNDED, 'Refunded'),
    ]

    TYPE_DELIVERY = 'delivery'
    TYPE_PICKUP = 'pickup'

    ORDER_TYPE_CHOICES = [
        (TYPE_DELIVERY, 'Delivery'),
        (TYPE_PICKUP, 'Pickup'),
    ]

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)

    company = models.ForeignKey(
        'accounts.Company',
        on_delete=models.CASCADE,
        related_name='orders'
    )
    customer = models.ForeignKey(
        Customer,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name='orders'
    )

    # Snapshot of the customer at checkout time
    customer_name = models.CharField(max_length=200)
    customer_phone = models.CharField(max_length=20, blank=True)
    customer_email = models.EmailField(null=True, blank=True)

    order_type = models.CharField(max_length=20, choices=ORDER_TYPE_CHOICES, default=TYPE_DELIVERY)
    delivery_address = models.TextField(blank=True)

    payment_method = models.CharField(max_length=30, default='pix')
    payment_status = models.CharField(max_length=20, choices=PAYMENT_STATUS_CHOICES, default=PAYMENT_PENDING)
    gateway_payment_id = models.CharField(max_length=100, null=True, blank=True)

    subtotal = models.DecimalField(max_digits=10, decimal_places=2)
    delivery_fee = models.DecimalField(max_digits=10, decimal_places=2, default=0)
    discount_amount = models.DecimalField(max_digits=10, decimal_places=2, default=0)
    total = models.DecimalField(max_digits=10, decimal_places=2)
    coupon = models.ForeignKey(Coupon, on_delete=models.SET_NULL, null=True, blank=True, related_name='orders')
    notes = models.TextField(null=True, blank=True)

    status = models.CharField(max_length=20, choices=STATUS_CHOICES, default=STATUS_PENDING)

    driver = models.ForeignKey(
        'drivers.Driver',
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name='orders'
    )
    # 1-based position in the assigned driver's queue, only while status is queued
    queue_position = models.PositiveIntegerField(null=True, blank=True)

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = 'orders'
        ordering = ['-created_at']
        constraints = [
            models.UniqueConstraint(
                fields=['driver', 'queue_position'],
                condition=models.Q(queue_position__isnull=False),
                name='unique_driver_queue_position'
            )
        ]
        indexes = [
            models.Index(fields=['status', 'updated_at'], name='orders_status_updated_idx'),
        ]

    def __str__(self):
        return f"Order #{self.short_id} - {self.customer_name} - {self.status}"

    @property
    def short_id(self) -> str:
        return str(self.id)[:8]

    @property
    def requires_delivery(self) -> bool:
        return self.order_type == self.TYPE_DELIVERY


class OrderItem(models.Model):
    order = models.ForeignKey(Order, on_delete=models.CASCADE, related_name='items')

    # Catalog references are opaque here; names and prices are snapshots
    product_id = models.CharField(max_length=100)
    product_name = models.CharField(max_length=200)
    quantity = models.PositiveIntegerField()
    unit_price = models.DecimalField(max_digits=10, decimal_places=2)
    total_price = models.DecimalField(max_digits=10, decimal_places=2)
    options = models.JSONField(null=True, blank=True)
    notes = models.TextField(null=True, blank=True)

    class Meta:
        db_table = 'order_items'

    def __str__(self):
        return f"{self.quantity}x {self.product_name}"


class OrderOffer(models.Model):
    """Proposal of one order to one candidate driver."""

    STATUS_PENDING = 'pending'
    STATUS_ACCEPTED = 'accepted'
    STATUS_CANCELLED = 'cancelled'

    STATUS_CHOICES = [
        (STATUS_PENDING, 'Pending'),
        (STATUS_ACCEPTED, 'Accepted'),
        (STATUS_CANCELLED, 'Cancelled'),
    ]

    company = models.ForeignKey('accounts.Company', on_delete=models.CASCADE, related_name='order_offers')
    order = models.ForeignKey(Order, on_delete=models.CASCADE, related_name='offers')
    driver = models.ForeignKey('drivers.Driver', on_delete=models.CASCADE, related_name='offers')

    status = models.CharField(max_length=20, choices=STATUS_CHOICES, default=STATUS_PENDING)

    created_at = models.DateTimeField(auto_now_add=True)
    responded_at = models.DateTimeField(null=True, blank=True)

    class Meta:
        db_table = 'order_offers'
        ordering = ['created_at']
        constraints = [
            models.UniqueConstraint(
                fields=['order', 'driver'],
                name='unique_order_driver_offer'
            ),
            models.UniqueConstraint(
                fields=['order'],
                condition=models.Q(status='accepted'),
                name='single_accepted_offer_per_order'
            ),
        ]

    def __str__(self):
        return f"Offer #{self.id} - Order {self.order_id} -> Driver {self.driver_id} ({self.status})"


class EscalationEvent(models.Model):
    """Append-only log of stale-offer alerts, used to deduplicate sweeps."""

    KIND_DRIVER_ACCEPTANCE_TIMEOUT = 'driver_acceptance_timeout'

    order = models.ForeignKey(Order, on_delete=models.CASCADE, related_name='escalations')
    kind = models.CharField(max_length=50, default=KIND_DRIVER_ACCEPTANCE_TIMEOUT)
    minutes_waiting = models.PositiveIntegerField()
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        db_table = 'escalation_events'
        ordering = ['-created_at']
        indexes = [
            models.Index(fields=['order', 'kind', 'created_at'], name='escalation_order_kind_idx'),
        ]

    def __str__(self):
        return f"{self.kind} for order {self.order_id} at {self.created_at}"
