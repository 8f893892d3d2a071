"""
Payment gateway client.

Thin wrapper around the gateway's REST API (payments lookup and checkout
preferences) plus webhook signature verification. The gateway is the
authority on payment status; nothing here touches the database.
"""

import hashlib
import hmac
import json
import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Dict, Optional

import requests
from django.conf import settings

from .exceptions import GatewayError, GatewayUnavailableError, InvalidSignatureError

logger = logging.getLogger(__name__)


# Raw gateway statuses
APPROVED = "approved"
PENDING = "pending"
IN_PROCESS = "in_process"
REJECTED = "rejected"
CANCELLED = "cancelled"
REFUNDED = "refunded"
CHARGED_BACK = "charged_back"

PAYMENT_STATUS_MAP = {
    APPROVED: "paid",
    REJECTED: "failed",
    CANCELLED: "failed",
    REFUNDED: "refunded",
    CHARGED_BACK: "refunded",
}

STATUS_MESSAGES = {
    APPROVED: "Payment approved.",
    PENDING: "Waiting for payment.",
    IN_PROCESS: "Payment is being processed.",
    REJECTED: "Payment was rejected.",
    CANCELLED: "Payment was cancelled.",
    REFUNDED: "Payment was refunded.",
    CHARGED_BACK: "Payment was charged back.",
}


def map_payment_status(gateway_status: Optional[str]) -> str:
    """Map a raw gateway status onto Order.payment_status."""
    return PAYMENT_STATUS_MAP.get(gateway_status, "pending")


def status_message(gateway_status: Optional[str]) -> str:
    return STATUS_MESSAGES.get(gateway_status, "Waiting for payment.")


@dataclass
class GatewayPayment:
    """Subset of a gateway payment we act on."""
    id: str
    status: str
    external_reference: Dict[str, Any]
    amount: Optional[Decimal] = None

    @property
    def approved(self) -> bool:
        return self.status == APPROVED


def build_external_reference(pending_payment) -> str:
    return json.dumps({
        "type": "order_payment",
        "pending_id": str(pending_payment.id),
        "company_id": pending_payment.company_id,
    })


def parse_external_reference(raw: Any) -> Dict[str, Any]:
    """
    external_reference is a JSON string we wrote when creating the
    preference. Anything else (other integrations, manual payments)
    comes back as an empty dict.
    """
    if isinstance(raw, dict):
        return raw
    if not raw:
        return {}
    try:
        value = json.loads(raw)
    except (TypeError, ValueError):
        return {}
    return value if isinstance(value, dict) else {}


class PaymentGatewayClient:
    """
    REST client for the payment gateway.

    Network failures and 5xx responses raise GatewayUnavailableError (retry
    later); other non-2xx responses raise GatewayError.
    """

    def __init__(self, access_token: str = None, base_url: str = None, timeout: float = None):
        self.access_token = access_token if access_token is not None else settings.PAYMENT_GATEWAY_ACCESS_TOKEN
        self.base_url = (base_url or settings.PAYMENT_GATEWAY_BASE_URL).rstrip("/")
        self.timeout = timeout or settings.PAYMENT_GATEWAY_TIMEOUT_SECONDS
        self.session = requests.Session()

    def _headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self.access_token}",
            "Content-Type": "application/json",
        }

    def _request(self, method: str, path: str, **kwargs) -> Dict[str, Any]:
        if not self.access_token:
            raise GatewayError("Payment gateway is not configured")

        url = f"{self.base_url}{path}"
        try:
            response = self.session.request(
                method, url, headers=self._headers(), timeout=self.timeout, **kwargs
            )
        except requests.RequestException as e:
            logger.warning("Gateway %s %s failed: %s", method, path, e)
            raise GatewayUnavailableError("Payment gateway unreachable") from e

        if response.status_code >= 500:
            logger.warning("Gateway %s %s returned %s", method, path, response.status_code)
            raise GatewayUnavailableError(f"Payment gateway returned {response.status_code}")
        if not response.ok:
            logger.error("Gateway %s %s returned %s: %s", method, path, response.status_code, response.text[:500])
            raise GatewayError(f"Payment gateway returned {response.status_code}")

        try:
            return response.json()
        except ValueError as e:
            raise GatewayError("Payment gateway returned an invalid body") from e

    def get_payment(self, payment_id: str) -> GatewayPayment:
        """Fetch a payment by its gateway id."""
        data = self._request("GET", f"/v1/payments/{payment_id}")
        return self._to_payment(data, fallback_id=payment_id)

    def find_latest_payment(self, external_reference: str) -> Optional[GatewayPayment]:
        """Most recent payment carrying our external reference, if any."""
        data = self._request(
            "GET",
            "/v1/payments/search",
            params={
                "external_reference": external_reference,
                "sort": "date_created",
                "criteria": "desc",
            },
        )
        results = data.get("results") or []
        if not results:
            return None
        return self._to_payment(results[0])

    @staticmethod
    def _to_payment(data: Dict[str, Any], fallback_id: str = "") -> GatewayPayment:
        amount = data.get("transaction_amount")
        return GatewayPayment(
            id=str(data.get("id", fallback_id)),
            status=data.get("status") or PENDING,
            external_reference=parse_external_reference(data.get("external_reference")),
            amount=Decimal(str(amount)) if amount is not None else None,
        )

    def create_preference(self, pending_payment, notification_url: str = None) -> Dict[str, Any]:
        """
        Create a hosted checkout preference for a pending payment.

        Returns the gateway body; ``id`` and ``init_point`` are the fields
        the caller needs.
        """
        draft = pending_payment.draft_order
        currency = settings.PAYMENT_CURRENCY
        items = [
            {
                "id": str(item.get("product_id", "")),
                "title": item["product_name"],
                "quantity": int(item["quantity"]),
                "unit_price": float(item["unit_price"]),
                "currency_id": currency,
            }
            for item in draft.get("items", [])
        ]
        delivery_fee = Decimal(str(draft.get("delivery_fee") or 0))
        if delivery_fee > 0:
            items.append({
                "id": "delivery_fee",
                "title": "Delivery fee",
                "quantity": 1,
                "unit_price": float(delivery_fee),
                "currency_id": currency,
            })

        body = {
            "items": items,
            "payer": {
                "name": draft.get("customer_name"),
                "email": draft.get("customer_email") or None,
                "phone": {"number": draft.get("customer_phone", "")},
            },
            "external_reference": build_external_reference(pending_payment),
            "notification_url": notification_url or settings.PAYMENT_WEBHOOK_URL,
            "expiration_date_to": pending_payment.expires_at.isoformat(),
        }
        discount = Decimal(str(draft.get("discount_amount") or 0))
        if discount > 0:
            body["coupon_amount"] = float(discount)

        return self._request("POST", "/checkout/preferences", json=body)


# ===================== Webhook signature =====================

def parse_signature_header(header: str) -> Dict[str, str]:
    """Split ``ts=...,v1=...`` into a dict."""
    parts = {}
    for chunk in (header or "").split(","):
        key, sep, value = chunk.strip().partition("=")
        if sep:
            parts[key.strip()] = value.strip()
    return parts


def build_signature_manifest(data_id: str, request_id: str, ts: str) -> str:
    return f"id:{data_id};request-id:{request_id};ts:{ts};"


def verify_webhook_signature(
    signature_header: Optional[str],
    request_id: Optional[str],
    data_id: Optional[str],
    secret: str = None,
) -> None:
    """
    Check a webhook's HMAC-SHA256 signature.

    Raises:
        InvalidSignatureError: secret not configured, header missing or
            malformed, or digest mismatch
    """
    secret = secret if secret is not None else settings.PAYMENT_WEBHOOK_SECRET
    if not secret:
        logger.error("Webhook rejected: PAYMENT_WEBHOOK_SECRET is not configured")
        raise InvalidSignatureError("Webhook secret not configured")

    parts = parse_signature_header(signature_header)
    ts = parts.get("ts")
    received = parts.get("v1")
    if not ts or not received or not request_id or not data_id:
        raise InvalidSignatureError("Missing signature")

    manifest = build_signature_manifest(data_id, request_id, ts)
    expected = hmac.new(secret.encode(), manifest.encode(), hashlib.sha256).hexdigest()
    if not hmac.compare_digest(expected, received):
        logger.warning("Webhook signature mismatch for data.id=%s", data_id)
        raise InvalidSignatureError("Invalid signature")
