from django.urls import path
from . import views

app_name = 'orders'

urlpatterns = [
    # Store owner actions
    path('<uuid:order_id>/dispatch/', views.dispatch_order, name='dispatch-order'),
    path('<uuid:order_id>/assign/', views.assign_order_driver, name='assign-driver'),
    path('<uuid:order_id>/status/', views.update_order_status, name='update-status'),
    path('<uuid:order_id>/cancel/', views.cancel_store_order, name='cancel-order'),

    # Driver offer responses
    path('offers/<int:offer_id>/accept/', views.accept_order_offer, name='accept-offer'),
    path('offers/<int:offer_id>/decline/', views.decline_order_offer, name='decline-offer'),

    # Operations
    path('stale-offers/sweep/', views.sweep_stale_offers, name='sweep-stale-offers'),
]
