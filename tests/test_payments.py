import json
from decimal import Decimal

import httpx
import pytest

from errors import PaymentGatewayError
from payments import (RazorpayGateway, extract_payment_details, from_minor_units, sign_client_payment, sign_webhook,
                      to_minor_units)


@pytest.mark.parametrize("amount,expected", [
    (0, 0),
    (1, 100),
    (19.99, 1999),
    (10.005, 1001),
    (0.1 + 0.2, 30),
    (Decimal("250.50"), 25050),
    ("99.994", 9999),
])
def test_to_minor_units(amount, expected):
    assert to_minor_units(amount) == expected


def test_from_minor_units():
    assert from_minor_units(1999) == 19.99
    assert from_minor_units(0) == 0.0


def test_client_signature(gateway):
    good = sign_client_payment("test_key_secret", "order_1", "pay_1")
    assert gateway.verify_client_signature("order_1", "pay_1", good)
    assert not gateway.verify_client_signature("order_1", "pay_2", good)
    assert not gateway.verify_client_signature("order_1", "pay_1", "")


def test_webhook_signature_is_over_raw_bytes(gateway):
    raw = b'{"event": "payment.captured",  "payload": {}}'
    signature = sign_webhook("test_webhook_secret", raw)
    assert gateway.verify_webhook_signature(raw, signature)
    # same JSON, different bytes
    reserialized = json.dumps(json.loads(raw)).encode()
    assert not gateway.verify_webhook_signature(reserialized, signature)
    assert not gateway.verify_webhook_signature(raw, None)


def test_create_intent_sends_paise(gateway):
    intent = gateway.create_intent(310.5, "INR", "SH1", {"order_number": "SH1"})
    method, path, body = gateway.calls[0]
    assert (method, path) == ("POST", "/orders")
    assert body["amount"] == 31050
    assert intent["amount"] == 310.5


def test_http_errors_become_gateway_errors():
    def handler(request):
        return httpx.Response(400, json={"error": {"description": "bad"}})

    http = httpx.Client(base_url="https://api.razorpay.com/v1", transport=httpx.MockTransport(handler))
    gateway = RazorpayGateway("k", "s", "w", http=http)
    with pytest.raises(PaymentGatewayError):
        gateway.fetch_payment("pay_1")


def test_refund_request_shape():
    seen = {}

    def handler(request):
        seen["path"] = request.url.path
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json={"id": "rfnd_1"})

    http = httpx.Client(base_url="https://api.razorpay.com/v1", transport=httpx.MockTransport(handler))
    refund = RazorpayGateway("k", "s", "w", http=http).initiate_refund("pay_9", 120.25, {"order_number": "SH1"})
    assert refund["id"] == "rfnd_1"
    assert seen["path"] == "/v1/payments/pay_9/refund"
    assert seen["body"] == {"amount": 12025, "notes": {"order_number": "SH1"}}


def test_extract_payment_details():
    details = extract_payment_details({"id": "pay_1", "method": "upi", "amount": 31050, "currency": "INR",
                                       "vpa": "asha@okbank"})
    assert details["amount"] == 310.5
    assert details["upi_vpa"] == "asha@okbank"
