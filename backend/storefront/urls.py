from django.contrib import admin
from django.urls import path, include

from .views import health_check

urlpatterns = [
    path('admin/', admin.site.urls),
    path("health/", health_check), # Health check endpoint

    # Authentication endpoints (at /api/auth/)
    path('api/auth/', include('accounts.urls')),

    # Checkout, gateway webhook and payment polling
    path('api/payments/', include('payments.urls')),

    # Store-side order actions and driver offers
    path('api/orders/', include('orders.urls')),

    # Driver APIs (assigned orders, completion, queue)
    path('api/driver/', include('drivers.urls')),
]
