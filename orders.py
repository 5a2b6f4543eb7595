"""
Checkout and the payment side of the order lifecycle.

Orders are immutable snapshots of the cart at checkout time: product names,
variant labels and prices are copied into the order and never re-read from
the catalog. Status changes all go through `order_lifecycle.transition`.
"""
import json
import re
from datetime import timedelta
from typing import Any, Dict, List, Optional

import structlog
from pymongo import ReturnDocument
from pymongo.database import Database

from cart import clear_cart, get_validated_cart
from catalog import load_products, pagination, primary_image, release_stock, reserve_stock
from config import settings
from database import as_utc, serialize_doc, to_object_id, utcnow
from errors import (AppError, ForbiddenError, InvalidTransitionError, NotFoundError, PaymentVerificationError,
                    StockUnavailableError, ValidationError)
from order_lifecycle import CANCELLABLE_STATES, history_entry, transition
from payments import extract_payment_details, to_minor_units
from pricing import distance_km, find_variant
from schemas import OrderStatus, PaymentMethod, PaymentStatus, Role

logger = structlog.get_logger(__name__)

S = OrderStatus
MAX_FAILED_PAYMENT_ATTEMPTS = 3
RETRY_WINDOW_MINUTES = 15
STAFF_QUEUE = [S.CONFIRMED.value, S.PACKED.value, S.READY_TO_DELIVER.value, S.HANDED_TO_AGENT.value]


def generate_order_number(database: Database, now=None) -> str:
    """SH + date + a per-day sequence taken from an atomic counter."""
    now = now or utcnow()
    day = f"{now:%Y%m%d}"
    counter = database["counter"].find_one_and_update(
        {"_id": f"order-{day}"}, {"$inc": {"seq": 1}}, upsert=True, return_document=ReturnDocument.AFTER,
    )
    return f"SH{day}{counter['seq']:04d}"


def present_order(order: Dict[str, Any]) -> Dict[str, Any]:
    out = serialize_doc(order)
    out.pop("pending_transition", None)
    return out


def _find_address(user: Dict[str, Any], address_id: str) -> Dict[str, Any]:
    oid = to_object_id(address_id, "addressId")
    address = next((a for a in user.get("addresses", []) if a["_id"] == oid), None)
    if not address:
        raise NotFoundError("Address")
    return address


def _check_delivery_area(address: Dict[str, Any]) -> None:
    distance = distance_km(settings.STORE_LAT, settings.STORE_LNG, address["latitude"], address["longitude"])
    if distance > settings.DELIVERY_RADIUS_KM:
        raise ValidationError(
            f"Sorry, we only deliver within {settings.DELIVERY_RADIUS_KM:g} km. This address is {distance:.1f} km away.",
            errors=[{"field": "address_id", "message": "outside delivery area"}],
        )


def _snapshot_items(database: Database, cart_items: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    products = load_products(database, [i["product_id"] for i in cart_items])
    items = []
    for line in cart_items:
        product = products[line["product_id"]]
        variant = find_variant(product, line["variant_id"])
        image = primary_image(product)
        items.append({
            "product_id": line["product_id"],
            "variant_id": line["variant_id"],
            "name": product["name"],
            "slug": product["slug"],
            "image": image["url"] if image else None,
            "category_id": product.get("category_id"),
            "variant_label": variant["quantity"],
            "price": variant["price"],
            "selling_price": variant["selling_price"],
            "discount_percent": variant.get("discount_percent", 0),
            "discount_flat": variant.get("discount_flat", 0),
            "quantity": line["quantity"],
            "line_total": line["line_total"],
            "label": f"{product['name']} ({variant['quantity']})",
        })
    return items


def create_order_from_cart(database: Database, gateway, user: Dict[str, Any], address_id: str,
                           payment_method: PaymentMethod, notes: Optional[str] = None) -> Dict[str, Any]:
    """Turn the user's cart into an order.

    Stock is reserved before the order exists and handed back if anything
    after the reservation fails. The cart is only emptied once the order is
    stored.
    """
    payment_method = PaymentMethod(payment_method)
    user_id = str(user["_id"])
    address = _find_address(user, address_id)
    _check_delivery_area(address)
    if payment_method == PaymentMethod.COD and not settings.COD_ENABLED:
        raise ValidationError("Cash on delivery is currently unavailable",
                              errors=[{"field": "payment_method", "message": "COD disabled"}])

    view = get_validated_cart(database, user_id)
    if not view["items"] and not view["invalid_items"]:
        raise ValidationError("Cart is empty")
    if view["invalid_items"]:
        raise StockUnavailableError("Some items in your cart are no longer available")
    if view["subtotal"] < settings.MIN_ORDER_VALUE:
        short = settings.MIN_ORDER_VALUE - view["subtotal"]
        raise ValidationError(f"Minimum order value is Rs.{settings.MIN_ORDER_VALUE:g}. Add Rs.{short:.2f} more.")

    items = _snapshot_items(database, view["items"])
    now = utcnow()
    # no stock is held until the order has its number
    order_number = generate_order_number(database, now)
    reserve_stock(database, items)

    order: Dict[str, Any] = {
        "order_number": order_number,
        "user_id": user_id,
        "items": items,
        "delivery_address": {k: v for k, v in address.items() if k not in ("_id", "is_default")},
        "subtotal": view["subtotal"],
        "discount": view["discount"],
        "coupon_code": view["coupon_code"],
        "delivery_charge": view["delivery_charge"],
        "total": view["total"],
        "payment_method": payment_method.value,
        "payment_status": PaymentStatus.PENDING.value,
        "gateway": {"order_id": None, "payment_id": None, "signature": None, "refund_id": None},
        "payment_attempts": [],
        "payment_expires_at": None,
        "stock_reserved": True,
        "pending_transition": None,
        "order_notes": notes,
        "created_at": now,
        "updated_at": now,
    }

    intent = None
    try:
        if payment_method == PaymentMethod.ONLINE:
            intent = gateway.create_intent(order["total"], settings.CURRENCY, order_number,
                                           {"order_number": order_number, "user_id": user_id})
            order["gateway"]["order_id"] = intent["id"]
            order["payment_expires_at"] = now + timedelta(minutes=settings.PAYMENT_WINDOW_MINUTES)
            order["status"] = S.PAYMENT_PENDING.value
        else:
            order["status"] = S.PLACED.value
        order["status_history"] = [history_entry(order["status"], user_id, "Order created")]
        order["_id"] = database["order"].insert_one(order).inserted_id
    except Exception:
        release_stock(database, items)
        logger.warning("checkout_rolled_back", user_id=user_id, order_number=order_number)
        raise

    clear_cart(database, user_id)
    logger.info("order_created", order_id=str(order["_id"]), order_number=order_number,
                payment_method=payment_method.value, total=order["total"])
    result = {"order": present_order(order)}
    if intent:
        result["payment"] = {
            "gateway_order_id": intent["id"],
            "amount": intent["amount"],
            "currency": intent["currency"],
            "key_id": settings.RAZORPAY_KEY_ID,
        }
    return result


# -------------------- Lookups --------------------

def get_order_doc(database: Database, order_id: str) -> Dict[str, Any]:
    order = database["order"].find_one({"_id": to_object_id(order_id, "orderId")})
    if not order:
        raise NotFoundError("Order")
    return order


def get_own_order(database: Database, user: Dict[str, Any], order_id: str) -> Dict[str, Any]:
    order = get_order_doc(database, order_id)
    if order["user_id"] != str(user["_id"]):
        # other users' orders look the same as missing ones
        raise NotFoundError("Order")
    return order


def list_my_orders(database: Database, user: Dict[str, Any], status: Optional[str] = None,
                   page: int = 1, limit: int = 10) -> Dict[str, Any]:
    query: Dict[str, Any] = {"user_id": str(user["_id"])}
    if status:
        query["status"] = OrderStatus(status).value
    return _paginate(database, query, page, limit)


def list_orders(database: Database, status: Optional[str] = None, search: Optional[str] = None,
                page: int = 1, limit: int = 20, statuses: Optional[List[str]] = None) -> Dict[str, Any]:
    query: Dict[str, Any] = {}
    if status:
        query["status"] = OrderStatus(status).value
    elif statuses:
        query["status"] = {"$in": statuses}
    if search:
        query["order_number"] = {"$regex": re.escape(search), "$options": "i"}
    return _paginate(database, query, page, limit)


def _paginate(database: Database, query: Dict[str, Any], page: int, limit: int) -> Dict[str, Any]:
    page, limit = max(page, 1), max(min(limit, 100), 1)
    total = database["order"].count_documents(query)
    cursor = database["order"].find(query).sort([("created_at", -1)]).skip((page - 1) * limit).limit(limit)
    return {"orders": [present_order(o) for o in cursor], "pagination": pagination(page, limit, total)}


# -------------------- Status changes --------------------

def cancel_my_order(database: Database, gateway, user: Dict[str, Any], order_id: str,
                    reason: Optional[str] = None) -> Dict[str, Any]:
    order = get_own_order(database, user, order_id)
    if order["payment_method"] != PaymentMethod.COD.value:
        raise ForbiddenError("Online orders can only be cancelled by the store")
    if order["status"] != S.PLACED.value:
        raise InvalidTransitionError("Order can no longer be cancelled")
    return transition(database, order_id, S.CANCELLED, Role.CUSTOMER, gateway, actor_id=str(user["_id"]),
                      note=reason or "Cancelled by customer", extra={"cancellation_reason": reason})


def update_status(database: Database, gateway, actor: Dict[str, Any], order_id: str, status: OrderStatus,
                  note: Optional[str] = None) -> Dict[str, Any]:
    return transition(database, order_id, status, Role(actor["role"]), gateway, actor_id=str(actor["_id"]), note=note)


def admin_cancel(database: Database, gateway, actor: Dict[str, Any], order_id: str,
                 reason: Optional[str] = None) -> Dict[str, Any]:
    order = get_order_doc(database, order_id)
    if order["status"] not in {s.value for s in CANCELLABLE_STATES}:
        raise InvalidTransitionError(f"Orders in {order['status']} cannot be cancelled")
    return transition(database, order_id, S.CANCELLED, Role(actor["role"]), gateway, actor_id=str(actor["_id"]),
                      note=reason or "Cancelled by store", extra={"cancellation_reason": reason})


# -------------------- Payments --------------------

def _window_expired(order: Dict[str, Any]) -> bool:
    expires_at = order.get("payment_expires_at")
    return expires_at is not None and utcnow() > as_utc(expires_at)


def _record_attempt(database: Database, order: Dict[str, Any], payment_id: Optional[str], status: str,
                    method: Optional[str] = None, error: Optional[Dict[str, Any]] = None) -> None:
    attempt = {"payment_id": payment_id, "status": status, "method": method, "error": error, "attempted_at": utcnow()}
    database["order"].update_one({"_id": order["_id"]}, {"$push": {"payment_attempts": attempt}})


def confirm_payment(database: Database, order: Dict[str, Any], payment_id: str,
                    details: Optional[Dict[str, Any]] = None, note: str = "Payment confirmed",
                    signature: Optional[str] = None) -> Dict[str, Any]:
    if order.get("payment_status") == PaymentStatus.PAID.value:
        return order
    extra = {
        "payment_status": PaymentStatus.PAID.value,
        "gateway.payment_id": payment_id,
        "paid_at": utcnow(),
    }
    if details:
        extra["payment_details"] = details
    if signature:
        extra["gateway.signature"] = signature
    updated = transition(database, str(order["_id"]), S.PLACED, Role.SYSTEM, note=note, extra=extra)
    _record_attempt(database, order, payment_id, "success", (details or {}).get("method"))
    logger.info("payment_confirmed", order_number=order["order_number"], payment_id=payment_id)
    return updated


def verify_payment(database: Database, gateway, user: Dict[str, Any], order_id: str, gateway_order_id: str,
                   payment_id: str, signature: str) -> Dict[str, Any]:
    order = get_own_order(database, user, order_id)
    if order["payment_method"] != PaymentMethod.ONLINE.value:
        raise ValidationError("Order is not an online payment")
    if order.get("payment_status") == PaymentStatus.PAID.value:
        return order
    if gateway_order_id != order["gateway"].get("order_id"):
        raise PaymentVerificationError("Payment does not belong to this order")
    if not gateway.verify_client_signature(gateway_order_id, payment_id, signature):
        logger.warning("payment_signature_mismatch", order_number=order["order_number"])
        raise PaymentVerificationError("Payment verification failed")
    if order["status"] != S.PAYMENT_PENDING.value:
        raise InvalidTransitionError(f"Order is {order['status']} and cannot accept payment")
    if _window_expired(order):
        raise ValidationError("Payment window has expired")

    # the signature only proves the ids match; ask the gateway what was charged
    payment = gateway.fetch_payment(payment_id)
    expected = to_minor_units(order["total"])
    if payment.get("status") not in ("captured", "authorized") or payment.get("amount") != expected:
        error = {"code": payment.get("error_code") or "PAYMENT_NOT_CAPTURED",
                 "description": f"status={payment.get('status')} amount={payment.get('amount')} expected={expected}"}
        _record_attempt(database, order, payment_id, "failed", payment.get("method"), error)
        logger.warning("payment_not_confirmed_by_gateway", order_number=order["order_number"], **error)
        raise ValidationError("Payment not confirmed by the payment gateway")
    return confirm_payment(database, order, payment_id, extract_payment_details(payment), note="Payment verified",
                           signature=signature)


def _fail_payment(database: Database, order: Dict[str, Any], note: str) -> Dict[str, Any]:
    return transition(database, str(order["_id"]), S.PAYMENT_FAILED, Role.SYSTEM, note=note,
                      extra={"payment_status": PaymentStatus.FAILED.value})


def _on_payment_captured(database: Database, payment: Dict[str, Any]) -> bool:
    order = database["order"].find_one({"gateway.order_id": payment.get("order_id")})
    if not order:
        logger.warning("webhook_order_not_found", gateway_order_id=payment.get("order_id"))
        return False
    if order.get("payment_status") == PaymentStatus.PAID.value:
        if order["gateway"].get("payment_id") != payment.get("id"):
            logger.warning("duplicate_payment_received", order_number=order["order_number"],
                           original=order["gateway"].get("payment_id"), duplicate=payment.get("id"))
        return False
    confirm_payment(database, order, payment["id"], extract_payment_details(payment), note="Payment captured via webhook")
    return True


def _on_payment_failed(database: Database, payment: Dict[str, Any]) -> bool:
    order = database["order"].find_one({"gateway.order_id": payment.get("order_id")})
    if not order or order.get("payment_status") == PaymentStatus.PAID.value:
        return False
    error = {"code": payment.get("error_code"), "description": payment.get("error_description")}
    _record_attempt(database, order, payment.get("id"), "failed", payment.get("method"), error)
    failed = sum(1 for a in order.get("payment_attempts", []) if a["status"] == "failed") + 1
    expired = _window_expired(order)
    if order["status"] == S.PAYMENT_PENDING.value and (expired or failed >= MAX_FAILED_PAYMENT_ATTEMPTS):
        note = "Payment window expired" if expired else f"Payment failed after {failed} attempts"
        _fail_payment(database, order, note)
        return True
    return False


def _on_refund_processed(database: Database, refund: Dict[str, Any]) -> bool:
    order = database["order"].find_one({"gateway.payment_id": refund.get("payment_id")})
    if not order:
        return False
    order_id = str(order["_id"])
    if order["status"] in (S.CANCELLED.value, S.DELIVERED.value):
        order = transition(database, order_id, S.REFUND_INITIATED, Role.SYSTEM, note="Refund started at gateway",
                           extra={"gateway.refund_id": refund.get("id")}, settled_refund_id=refund.get("id"))
    if order["status"] != S.REFUND_INITIATED.value:
        logger.warning("refund_for_unrefundable_order", order_number=order["order_number"], status=order["status"],
                       refund_id=refund.get("id"))
        return False
    transition(database, order_id, S.REFUNDED, Role.SYSTEM, note="Refund processed")
    return True


def handle_webhook(database: Database, gateway, raw_body: bytes, signature: Optional[str]) -> Dict[str, Any]:
    """Apply a gateway event. The signature is checked against the exact raw
    bytes before anything is parsed or changed."""
    if not gateway.verify_webhook_signature(raw_body, signature or ""):
        logger.warning("webhook_signature_invalid")
        raise PaymentVerificationError("Invalid webhook signature")
    try:
        body = json.loads(raw_body)
    except ValueError:
        raise ValidationError("Malformed webhook payload")

    event = body.get("event")
    payload = body.get("payload") or {}
    payment = (payload.get("payment") or {}).get("entity") or {}
    handled = False
    try:
        if event == "payment.captured":
            handled = _on_payment_captured(database, payment)
        elif event == "order.paid":
            gateway_order = (payload.get("order") or {}).get("entity") or {}
            payment.setdefault("order_id", gateway_order.get("id"))
            handled = _on_payment_captured(database, payment)
        elif event == "payment.failed":
            handled = _on_payment_failed(database, payment)
        elif event == "refund.processed":
            handled = _on_refund_processed(database, (payload.get("refund") or {}).get("entity") or {})
        else:
            logger.info("webhook_event_ignored", gateway_event=event)
    except AppError as exc:
        # acknowledged anyway so the gateway does not keep redelivering
        logger.error("webhook_event_failed", gateway_event=event, error=exc.message)
    logger.info("webhook_processed", gateway_event=event, handled=handled)
    return {"status": "ok", "event": event, "handled": handled}


def check_payment_status(database: Database, gateway, user: Dict[str, Any], order_id: str) -> Dict[str, Any]:
    order = get_own_order(database, user, order_id)
    if order["payment_method"] == PaymentMethod.ONLINE.value and order["status"] == S.PAYMENT_PENDING.value:
        gateway_order_id = order["gateway"]["order_id"]
        captured = None
        if gateway.fetch_order(gateway_order_id).get("status") == "paid":
            payments = gateway.fetch_order_payments(gateway_order_id).get("items", [])
            captured = next((p for p in payments if p.get("status") == "captured"), None)
        if captured:
            order = confirm_payment(database, order, captured["id"], extract_payment_details(captured),
                                    note="Payment confirmed by status check")
        elif _window_expired(order):
            order = _fail_payment(database, order, "Payment window expired")
    return {
        "order_id": str(order["_id"]),
        "order_number": order["order_number"],
        "status": order["status"],
        "payment_status": order["payment_status"],
        "is_paid": order["payment_status"] == PaymentStatus.PAID.value,
        "can_retry": order["status"] == S.PAYMENT_PENDING.value and not _window_expired(order),
    }


def retry_payment(database: Database, gateway, user: Dict[str, Any], order_id: str) -> Dict[str, Any]:
    order = get_own_order(database, user, order_id)
    if order["payment_method"] != PaymentMethod.ONLINE.value:
        raise ValidationError("Only online payment orders can be retried")
    if order.get("payment_status") == PaymentStatus.PAID.value:
        raise ValidationError("Order is already paid")
    if order["status"] != S.PAYMENT_PENDING.value:
        raise ValidationError("Order has been cancelled or expired")

    intent = gateway.create_intent(order["total"], settings.CURRENCY, order["order_number"],
                                   {"order_number": order["order_number"], "retry": "true"})
    update: Dict[str, Any] = {"gateway.order_id": intent["id"], "updated_at": utcnow()}
    if _window_expired(order):
        update["payment_expires_at"] = utcnow() + timedelta(minutes=RETRY_WINDOW_MINUTES)
    database["order"].update_one({"_id": order["_id"]}, {"$set": update})
    logger.info("payment_retry_created", order_number=order["order_number"], gateway_order_id=intent["id"])
    return {
        "order_id": str(order["_id"]),
        "order_number": order["order_number"],
        "gateway_order_id": intent["id"],
        "amount": intent["amount"],
        "currency": intent["currency"],
        "key_id": settings.RAZORPAY_KEY_ID,
    }
