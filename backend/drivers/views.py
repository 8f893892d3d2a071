from rest_framework import status
from rest_framework.views import APIView
from rest_framework.response import Response
from rest_framework.permissions import IsAuthenticated

from common.responses import error_response
from drivers.models import Driver
from drivers.serializers import DriverSerializer, QueueAdvanceSerializer
from drivers.services import get_driver_for_user
from orders.models import OrderOffer
from orders.serializers import OrderOfferSerializer, OrderSerializer, QueuedOrderSerializer
from services.exceptions import NotFoundError, PermissionDeniedError, ServiceError
from services.matching import accept_assigned_order, complete_delivery, process_driver_queue
from services.matching.driver_queue import queued_orders


# Utility: Ensure request.user has an active driver record
def require_driver(user):
    try:
        return True, get_driver_for_user(user)
    except ServiceError as e:
        return False, error_response(e)


class DriverProfileView(APIView):
    permission_classes = [IsAuthenticated]

    def get(self, request):
        ok, driver = require_driver(request.user)
        if ok is False:
            return driver  # Response object

        return Response(DriverSerializer(driver).data)


class DriverOffersView(APIView):
    """Pending offers waiting for this driver's answer"""
    permission_classes = [IsAuthenticated]

    def get(self, request):
        ok, driver = require_driver(request.user)
        if ok is False:
            return driver

        offers = (
            OrderOffer.objects
            .filter(driver=driver, status=OrderOffer.STATUS_PENDING)
            .select_related("driver")
        )
        return Response(OrderOfferSerializer(offers, many=True).data)


class AcceptAssignedOrderView(APIView):
    permission_classes = [IsAuthenticated]

    def post(self, request, order_id):
        ok, driver = require_driver(request.user)
        if ok is False:
            return driver

        try:
            result = accept_assigned_order(driver, order_id)
        except ServiceError as e:
            return error_response(e)

        return Response({
            "ok": True,
            "message": result.message,
            "order": OrderSerializer(result.order).data,
        })


class CompleteDeliveryView(APIView):
    permission_classes = [IsAuthenticated]

    def post(self, request, order_id):
        ok, driver = require_driver(request.user)
        if ok is False:
            return driver

        try:
            result = complete_delivery(driver, order_id)
        except ServiceError as e:
            return error_response(e)

        return Response({
            "message": result.message,
            "order": OrderSerializer(result.order).data,
            "queue": result.queue.to_dict(),
        })


class DriverQueueView(APIView):
    """The driver's queued orders, next first"""
    permission_classes = [IsAuthenticated]

    def get(self, request):
        ok, driver = require_driver(request.user)
        if ok is False:
            return driver

        orders = queued_orders(driver.id)
        return Response({
            "driver": DriverSerializer(driver).data,
            "queue": QueuedOrderSerializer(orders, many=True).data,
        })


class DriverQueueAdvanceView(APIView):
    """
    Promote the next queued order.

    Drivers advance their own queue; store owners may pass driverId to
    advance the queue of one of their drivers.
    """
    permission_classes = [IsAuthenticated]

    def post(self, request):
        serializer = QueueAdvanceSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        driver_id = serializer.validated_data.get("driverId")

        try:
            if driver_id is None:
                driver = get_driver_for_user(request.user)
            else:
                driver = Driver.objects.select_related("company").filter(pk=driver_id).first()
                if driver is None:
                    raise NotFoundError("Driver not found")
                if not driver.company.is_managed_by(request.user):
                    raise PermissionDeniedError("Only the store owner can advance this queue")

            result = process_driver_queue(driver.id)
        except ServiceError as e:
            return error_response(e)

        return Response(result.to_dict(), status=status.HTTP_200_OK)
