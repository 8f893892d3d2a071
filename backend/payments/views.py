import logging

from rest_framework import status
from rest_framework.decorators import api_view, authentication_classes, permission_classes
from rest_framework.permissions import AllowAny
from rest_framework.response import Response

from accounts.models import Company
from common.responses import error_response
from services.exceptions import ServiceError
from services.payments import check_pending_payment, create_pending_payment, handle_payment_webhook

from .serializers import CheckoutSerializer, PaymentCheckSerializer

logger = logging.getLogger(__name__)


@api_view(['POST'])
@permission_classes([AllowAny])
def create_checkout(request):
    """Store the checkout draft and return the hosted checkout URL"""
    serializer = CheckoutSerializer(data=request.data)
    if not serializer.is_valid():
        return Response(serializer.errors, status=status.HTTP_400_BAD_REQUEST)

    draft = dict(serializer.validated_data)
    company_id = draft.pop("company_id")
    company = Company.objects.filter(id=company_id, is_active=True).first()
    if company is None:
        return Response(
            {'error': 'not_found', 'message': 'Store not found'},
            status=status.HTTP_404_NOT_FOUND
        )

    try:
        checkout = create_pending_payment(company, draft)
    except ServiceError as e:
        return error_response(e)

    return Response(checkout, status=status.HTTP_201_CREATED)


@api_view(['POST'])
@authentication_classes([])
@permission_classes([AllowAny])
def payment_webhook(request):
    """
    Gateway notification endpoint.

    Signed with the shared webhook secret; unsigned or badly signed calls
    get 401. Gateway lookup failures return 5xx so the gateway retries.
    """
    body = request.data if isinstance(request.data, dict) else {}
    try:
        result = handle_payment_webhook(
            body,
            signature=request.headers.get('x-signature'),
            request_id=request.headers.get('x-request-id'),
        )
    except ServiceError as e:
        return error_response(e)

    return Response(result.to_dict(), status=status.HTTP_200_OK)


@api_view(['POST'])
@permission_classes([AllowAny])
def check_payment(request, pending_id):
    """Client polling: has this checkout turned into an order yet?"""
    serializer = PaymentCheckSerializer(data=request.data)
    serializer.is_valid(raise_exception=True)

    try:
        result = check_pending_payment(
            pending_id,
            payment_id=serializer.validated_data.get('paymentId') or None,
        )
    except ServiceError as e:
        return error_response(e)

    return Response(result.to_dict(), status=status.HTTP_200_OK)
