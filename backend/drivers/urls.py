from django.urls import path
from .views import (
    DriverProfileView,
    DriverOffersView,
    AcceptAssignedOrderView,
    CompleteDeliveryView,
    DriverQueueView,
    DriverQueueAdvanceView,
)

urlpatterns = [
    path("profile/", DriverProfileView.as_view(), name="driver-profile"),
    path("offers/", DriverOffersView.as_view(), name="driver-offers"),
    path("orders/<uuid:order_id>/accept/", AcceptAssignedOrderView.as_view(), name="driver-accept-order"),
    path("orders/<uuid:order_id>/complete/", CompleteDeliveryView.as_view(), name="driver-complete-order"),
    path("queue/", DriverQueueView.as_view(), name="driver-queue"),
    path("queue/advance/", DriverQueueAdvanceView.as_view(), name="driver-queue-advance"),
]
