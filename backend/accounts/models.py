from django.db import models
from django.contrib.auth.models import AbstractUser
from django.conf import settings


class User(AbstractUser):
    """Extended user model with role selection"""
    ROLE_CHOICES = [
        ('customer', 'Customer'),
        ('store_owner', 'Store Owner'),
        ('driver', 'Delivery Driver'),
    ]

    role = models.CharField(max_length=20, choices=ROLE_CHOICES, default='customer')
    phone_number = models.CharField(max_length=20, blank=True)

    class Meta:
        db_table = 'users'

    def __str__(self):
        return f"{self.username} ({self.get_role_display()})"


class Company(models.Model):
    """A store. Owns its orders, drivers and checkout drafts."""

    name = models.CharField(max_length=200)
    owner = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.PROTECT,
        related_name='companies'
    )
    is_active = models.BooleanField(default=True)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        db_table = 'companies'
        verbose_name_plural = 'companies'

    def __str__(self):
        return self.name

    def is_managed_by(self, user) -> bool:
        """Owners and superusers may manage a store's deliveries."""
        if not user or not user.is_authenticated:
            return False
        return user.is_superuser or self.owner_id == user.id
