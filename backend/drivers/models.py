from django.db import models
from django.conf import settings

User = settings.AUTH_USER_MODEL


class Driver(models.Model):
    """Delivery driver registered by a store, with availability state"""
    STATUS_AVAILABLE = 'available'
    STATUS_PENDING_ACCEPTANCE = 'pending_acceptance'
    STATUS_IN_DELIVERY = 'in_delivery'

    STATUS_CHOICES = [
        (STATUS_AVAILABLE, 'Available'),
        (STATUS_PENDING_ACCEPTANCE, 'Pending Acceptance'),
        (STATUS_IN_DELIVERY, 'In Delivery'),
    ]

    company = models.ForeignKey(
        'accounts.Company',
        on_delete=models.CASCADE,
        related_name='drivers'
    )
    # Null until the driver signs in for the first time
    user = models.OneToOneField(
        User,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name='driver'
    )

    name = models.CharField(max_length=150)
    phone_number = models.CharField(max_length=20, blank=True)

    status = models.CharField(max_length=20, choices=STATUS_CHOICES, default=STATUS_AVAILABLE)
    is_available = models.BooleanField(default=True)
    is_active = models.BooleanField(default=True)

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = 'delivery_drivers'
        ordering = ['name']

    def __str__(self):
        return f"{self.name} ({self.company})"

    @property
    def is_busy(self) -> bool:
        return self.status == self.STATUS_IN_DELIVERY or not self.is_available
