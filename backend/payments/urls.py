from django.urls import path
from . import views

app_name = 'payments'

urlpatterns = [
    path('checkout/', views.create_checkout, name='checkout'),
    path('webhook/', views.payment_webhook, name='webhook'),
    path('pending/<uuid:pending_id>/check/', views.check_payment, name='check-payment'),
]
