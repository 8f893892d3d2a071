import uuid

from django.db import models
from django.db.models import Q
from django.utils import timezone


class PendingPayment(models.Model):
    """
    Checkout draft waiting for the gateway to confirm payment.

    The id is the reconciliation key handed to the client and embedded in
    the gateway's external reference. Rows are kept after completion so
    duplicate gateway notifications can be answered idempotently.
    """

    STATUS_PENDING = 'pending'
    STATUS_PROCESSING = 'processing'
    STATUS_COMPLETED = 'completed'

    STATUS_CHOICES = [
        (STATUS_PENDING, 'Pending'),
        (STATUS_PROCESSING, 'Processing'),
        (STATUS_COMPLETED, 'Completed'),
    ]

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)

    company = models.ForeignKey(
        'accounts.Company',
        on_delete=models.CASCADE,
        related_name='pending_payments'
    )

    # Gateway payment id once a payment has been observed
    gateway_reference_id = models.CharField(max_length=100, null=True, blank=True, db_index=True)
    gateway_preference_id = models.CharField(max_length=100, null=True, blank=True)

    draft_order = models.JSONField()

    status = models.CharField(max_length=20, choices=STATUS_CHOICES, default=STATUS_PENDING)
    order = models.OneToOneField(
        'orders.Order',
        on_delete=models.PROTECT,
        null=True,
        blank=True,
        related_name='pending_payment'
    )

    created_at = models.DateTimeField(auto_now_add=True)
    expires_at = models.DateTimeField()
    completed_at = models.DateTimeField(null=True, blank=True)

    class Meta:
        db_table = 'pending_order_payments'
        ordering = ['-created_at']
        constraints = [
            # resulting order is set if and only if the draft was completed
            models.CheckConstraint(
                condition=(
                    Q(status='completed', order__isnull=False)
                    | (~Q(status='completed') & Q(order__isnull=True))
                ),
                name='pending_payment_order_iff_completed'
            )
        ]

    def __str__(self):
        return f"PendingPayment {self.id} ({self.status})"

    @property
    def is_expired(self) -> bool:
        return self.expires_at <= timezone.now()
