"""
Razorpay payment gateway adapter.

Amounts are kept in rupees everywhere in the app and converted to integer
paise only at this boundary.
"""
import hashlib
import hmac
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Dict, Optional, Union

import httpx
import structlog

from config import settings
from errors import PaymentGatewayError

logger = structlog.get_logger(__name__)

RAZORPAY_API = "https://api.razorpay.com/v1"


def to_minor_units(amount: Union[float, int, str, Decimal]) -> int:
    value = Decimal(str(amount)) * 100
    return int(value.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def from_minor_units(amount: int) -> float:
    return float(Decimal(int(amount)) / 100)


def _hmac_hex(secret: str, payload: bytes) -> str:
    return hmac.new(secret.encode(), payload, hashlib.sha256).hexdigest()


def sign_client_payment(secret: str, order_id: str, payment_id: str) -> str:
    return _hmac_hex(secret, f"{order_id}|{payment_id}".encode())


def sign_webhook(secret: str, raw_body: bytes) -> str:
    return _hmac_hex(secret, raw_body)


def extract_payment_details(payment: Dict[str, Any]) -> Dict[str, Any]:
    """Flatten the method-specific parts of a gateway payment for storage."""
    method = payment.get("method") or "unknown"
    details: Dict[str, Any] = {
        "payment_id": payment.get("id"),
        "method": method,
        "amount": from_minor_units(payment.get("amount", 0)),
        "currency": payment.get("currency"),
        "email": payment.get("email"),
        "contact": payment.get("contact"),
    }
    if method == "upi":
        details["upi_vpa"] = payment.get("vpa")
    elif method == "card" and payment.get("card"):
        card = payment["card"]
        details.update({"card_last4": card.get("last4"), "card_network": card.get("network"), "card_type": card.get("type")})
    elif method == "netbanking":
        details["bank"] = payment.get("bank")
    elif method == "wallet":
        details["wallet"] = payment.get("wallet")
    return details


class RazorpayGateway:
    def __init__(self, key_id: str, key_secret: str, webhook_secret: str,
                 http: Optional[httpx.Client] = None, timeout: float = 10.0):
        self.key_id = key_id
        self.key_secret = key_secret
        self.webhook_secret = webhook_secret
        self.http = http or httpx.Client(base_url=RAZORPAY_API, auth=(key_id, key_secret), timeout=timeout)

    def _request(self, method: str, path: str, **kwargs) -> Dict[str, Any]:
        try:
            response = self.http.request(method, path, **kwargs)
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            logger.error("razorpay_request_failed", path=path, status=exc.response.status_code, body=exc.response.text[:200])
            raise PaymentGatewayError("Payment gateway rejected the request")
        except httpx.HTTPError as exc:
            logger.error("razorpay_unreachable", path=path, error=str(exc))
            raise PaymentGatewayError("Payment gateway unavailable")
        return response.json()

    def create_intent(self, amount: float, currency: str, reference: str, notes: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        order = self._request("POST", "/orders", json={
            "amount": to_minor_units(amount),
            "currency": currency,
            "receipt": reference,
            "notes": notes or {},
            "payment_capture": 1,
        })
        logger.info("razorpay_order_created", gateway_order_id=order.get("id"), reference=reference)
        return {"id": order["id"], "amount": from_minor_units(order["amount"]), "currency": order.get("currency", currency)}

    def verify_client_signature(self, order_id: str, payment_id: str, signature: str) -> bool:
        if not signature:
            return False
        expected = sign_client_payment(self.key_secret, order_id, payment_id)
        return hmac.compare_digest(expected, signature)

    def verify_webhook_signature(self, raw_body: bytes, signature: str) -> bool:
        if not signature or not self.webhook_secret:
            return False
        return hmac.compare_digest(sign_webhook(self.webhook_secret, raw_body), signature)

    def initiate_refund(self, payment_id: str, amount: float, notes: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        refund = self._request("POST", f"/payments/{payment_id}/refund", json={
            "amount": to_minor_units(amount),
            "notes": {k: str(v) for k, v in (notes or {}).items() if v is not None},
        })
        logger.info("razorpay_refund_initiated", payment_id=payment_id, refund_id=refund.get("id"))
        return refund

    def fetch_payment(self, payment_id: str) -> Dict[str, Any]:
        return self._request("GET", f"/payments/{payment_id}")

    def fetch_order(self, order_id: str) -> Dict[str, Any]:
        return self._request("GET", f"/orders/{order_id}")

    def fetch_order_payments(self, order_id: str) -> Dict[str, Any]:
        return self._request("GET", f"/orders/{order_id}/payments")


_gateway: Optional[RazorpayGateway] = None


def get_payment_gateway() -> RazorpayGateway:
    global _gateway
    if _gateway is None:
        _gateway = RazorpayGateway(settings.RAZORPAY_KEY_ID, settings.RAZORPAY_KEY_SECRET,
                                   settings.RAZORPAY_WEBHOOK_SECRET, timeout=settings.HTTP_TIMEOUT_SECONDS)
    return _gateway
