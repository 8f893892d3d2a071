import logging

from rest_framework import status
from rest_framework.decorators import api_view, permission_classes
from rest_framework.permissions import IsAdminUser, IsAuthenticated
from rest_framework.response import Response

from common.responses import error_response
from drivers.services import get_driver_for_user
from services.exceptions import PermissionDeniedError, ServiceError
from services.matching import (
    accept_offer,
    advance_order_status,
    assign_driver,
    cancel_order,
    decline_offer,
    dispatch_offers,
)
from services.matching.exceptions import OrderNotFoundError

from .models import Order
from .serializers import (
    AssignDriverSerializer,
    CancelOrderSerializer,
    DispatchSerializer,
    OfferAcceptSerializer,
    OrderOfferSerializer,
    OrderSerializer,
    StatusUpdateSerializer,
)
from .services import check_stale_offers

logger = logging.getLogger(__name__)


def get_managed_order(user, order_id) -> Order:
    """Order of a store the caller manages, or raise."""
    order = Order.objects.select_related('company').filter(pk=order_id).first()
    if order is None:
        raise OrderNotFoundError("Order not found")
    if not order.company.is_managed_by(user):
        raise PermissionDeniedError("Only the store owner can manage this order")
    return order


# ==================== Store owner APIs ====================

@api_view(['POST'])
@permission_classes([IsAuthenticated])
def dispatch_order(request, order_id):
    """Offer an order to every available driver of the store"""
    serializer = DispatchSerializer(data=request.data)
    serializer.is_valid(raise_exception=True)

    try:
        order = get_managed_order(request.user, order_id)
        result = dispatch_offers(order, driver_ids=serializer.validated_data.get('driverIds'))
    except ServiceError as e:
        return error_response(e)

    return Response({
        'message': result.message,
        'dispatched': result.dispatched,
        'order': OrderSerializer(result.order).data,
        'offers': OrderOfferSerializer(result.offers, many=True).data,
    }, status=status.HTTP_200_OK)


@api_view(['POST'])
@permission_classes([IsAuthenticated])
def assign_order_driver(request, order_id):
    """Hand an order to a specific driver (queued if the driver is busy)"""
    serializer = AssignDriverSerializer(data=request.data)
    serializer.is_valid(raise_exception=True)

    try:
        order = get_managed_order(request.user, order_id)
        result = assign_driver(request.user, order, serializer.validated_data['driverId'])
    except ServiceError as e:
        return error_response(e)

    return Response({
        'message': result.message,
        'queued': result.queued,
        'queuePosition': result.order.queue_position,
        'order': OrderSerializer(result.order).data,
    }, status=status.HTTP_200_OK)


@api_view(['POST'])
@permission_classes([IsAuthenticated])
def update_order_status(request, order_id):
    """Move an order forward in the kitchen pipeline"""
    serializer = StatusUpdateSerializer(data=request.data)
    serializer.is_valid(raise_exception=True)

    try:
        order = get_managed_order(request.user, order_id)
        result = advance_order_status(request.user, order, serializer.validated_data['status'])
    except ServiceError as e:
        return error_response(e)

    body = {
        'previousStatus': result.previous_status,
        'order': OrderSerializer(result.order).data,
    }
    if result.dispatch is not None:
        body['dispatch'] = {
            'dispatched': result.dispatch.dispatched,
            'offers': len(result.dispatch.offers),
            'message': result.dispatch.message,
        }
    return Response(body, status=status.HTTP_200_OK)


@api_view(['POST'])
@permission_classes([IsAuthenticated])
def cancel_store_order(request, order_id):
    serializer = CancelOrderSerializer(data=request.data)
    serializer.is_valid(raise_exception=True)

    try:
        order = get_managed_order(request.user, order_id)
        result = cancel_order(request.user, order, serializer.validated_data['reason'])
    except ServiceError as e:
        return error_response(e)

    return Response({
        'message': 'Order cancelled',
        'previousStatus': result.previous_status,
        'order': OrderSerializer(result.order).data,
    }, status=status.HTTP_200_OK)


# ==================== Driver offer APIs ====================

@api_view(['POST'])
@permission_classes([IsAuthenticated])
def accept_order_offer(request, offer_id):
    """
    Accept an offer. Exactly one of the drivers racing for the same order
    gets 200; the others get 409 with conflict reason.
    """
    serializer = OfferAcceptSerializer(data=request.data)
    serializer.is_valid(raise_exception=True)

    try:
        driver = get_driver_for_user(request.user)
        result = accept_offer(driver, offer_id, order_id=serializer.validated_data.get('orderId'))
    except ServiceError as e:
        return error_response(e)

    return Response({
        'ok': True,
        'message': result.message,
        'offer': OrderOfferSerializer(result.offer).data,
        'order': OrderSerializer(result.order).data,
    }, status=status.HTTP_200_OK)


@api_view(['POST'])
@permission_classes([IsAuthenticated])
def decline_order_offer(request, offer_id):
    try:
        driver = get_driver_for_user(request.user)
        result = decline_offer(driver, offer_id)
    except ServiceError as e:
        return error_response(e)

    return Response({
        'ok': True,
        'message': result.message,
        'offer': OrderOfferSerializer(result.offer).data,
    }, status=status.HTTP_200_OK)


# ==================== Operations ====================

@api_view(['POST'])
@permission_classes([IsAdminUser])
def sweep_stale_offers(request):
    """Run one stale-offer sweep now (normally run by Celery beat)"""
    result = check_stale_offers()
    return Response(result.to_dict(), status=status.HTTP_200_OK)
