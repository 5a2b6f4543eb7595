"""
Order status state machine.

The rules are data: ALLOWED_TRANSITIONS says which edges exist at all and
ROLE_PERMISSIONS says which roles may drive each edge. `check_transition`
is the single validation point; `transition` applies a checked edge to a
stored order, pairing it with a gateway refund where money has to go back.
"""
from typing import Any, Dict, FrozenSet, Optional, Tuple

import structlog
from pymongo import ReturnDocument
from pymongo.database import Database

from catalog import release_stock
from database import to_object_id, utcnow
from errors import ForbiddenError, InvalidTransitionError, NotFoundError, PaymentGatewayError
from schemas import OrderStatus, PaymentMethod, PaymentStatus, Role

logger = structlog.get_logger(__name__)

S = OrderStatus

ALLOWED_TRANSITIONS: Dict[OrderStatus, FrozenSet[OrderStatus]] = {
    S.PAYMENT_PENDING: frozenset({S.PLACED, S.PAYMENT_FAILED}),
    S.PLACED: frozenset({S.CONFIRMED, S.CANCELLED}),
    S.CONFIRMED: frozenset({S.PACKED, S.CANCELLED}),
    S.PACKED: frozenset({S.READY_TO_DELIVER, S.CANCELLED}),
    S.READY_TO_DELIVER: frozenset({S.HANDED_TO_AGENT}),
    S.HANDED_TO_AGENT: frozenset({S.DELIVERED}),
    S.DELIVERED: frozenset({S.REFUND_INITIATED}),
    S.CANCELLED: frozenset({S.REFUND_INITIATED}),
    S.REFUND_INITIATED: frozenset({S.REFUNDED}),
    S.PAYMENT_FAILED: frozenset(),
    S.REFUNDED: frozenset(),
}

Edge = Tuple[OrderStatus, OrderStatus]

ALL_EDGES: FrozenSet[Edge] = frozenset(
    (src, dst) for src, targets in ALLOWED_TRANSITIONS.items() for dst in targets
)

PAYMENT_EDGES: FrozenSet[Edge] = frozenset(
    (src, dst) for src, dst in ALL_EDGES if src == S.PAYMENT_PENDING
)

ROLE_PERMISSIONS: Dict[Role, FrozenSet[Edge]] = {
    Role.STAFF: frozenset({
        (S.CONFIRMED, S.PACKED),
        (S.PACKED, S.READY_TO_DELIVER),
        (S.READY_TO_DELIVER, S.HANDED_TO_AGENT),
    }),
    Role.ADMIN: ALL_EDGES - PAYMENT_EDGES,
    Role.SYSTEM: ALL_EDGES,
    Role.CUSTOMER: frozenset({(S.PLACED, S.CANCELLED)}),
    Role.VENDOR: frozenset(),
}

REFUND_STATES = frozenset({S.REFUND_INITIATED, S.REFUNDED})
REFUND_TRIGGER_STATES = frozenset({S.CANCELLED, S.REFUND_INITIATED, S.REFUNDED})
STOCK_RELEASE_STATES = frozenset({S.CANCELLED, S.PAYMENT_FAILED})
CANCELLABLE_STATES = frozenset(src for src, dst in ALL_EDGES if dst == S.CANCELLED)


def allowed_next(status: OrderStatus) -> FrozenSet[OrderStatus]:
    return ALLOWED_TRANSITIONS.get(OrderStatus(status), frozenset())


def can_drive(role: Role, current: OrderStatus, requested: OrderStatus) -> bool:
    return (OrderStatus(current), OrderStatus(requested)) in ROLE_PERMISSIONS.get(Role(role), frozenset())


def check_transition(order: Dict[str, Any], requested: OrderStatus, role: Role) -> None:
    current = OrderStatus(order["status"])
    requested = OrderStatus(requested)
    if requested not in allowed_next(current):
        raise InvalidTransitionError(f"Cannot transition from {current.value} to {requested.value}")
    if not can_drive(role, current, requested):
        raise ForbiddenError(f"Role '{Role(role).value}' may not move an order from {current.value} to {requested.value}")
    if requested in REFUND_STATES and order.get("payment_method") != PaymentMethod.ONLINE.value:
        raise InvalidTransitionError("Refund states apply only to online payments")


def needs_refund(order: Dict[str, Any], requested: OrderStatus) -> bool:
    return (
        OrderStatus(requested) in REFUND_TRIGGER_STATES
        and order.get("payment_method") == PaymentMethod.ONLINE.value
        and order.get("payment_status") == PaymentStatus.PAID.value
        and bool((order.get("gateway") or {}).get("payment_id"))
    )


def history_entry(status: OrderStatus, updated_by: Optional[str] = None, note: Optional[str] = None) -> Dict[str, Any]:
    return {"status": OrderStatus(status).value, "timestamp": utcnow(), "updated_by": updated_by, "note": note}


def transition(database: Database, order_id: str, requested: OrderStatus, role: Role, gateway=None,
               actor_id: Optional[str] = None, note: Optional[str] = None,
               extra: Optional[Dict[str, Any]] = None, settled_refund_id: Optional[str] = None) -> Dict[str, Any]:
    """Move an order to `requested` on behalf of `role`.

    The order is first claimed with a conditional update on its current
    status, so two concurrent transitions cannot both apply. If the edge
    requires a refund the gateway call happens while the claim is held; a
    failed refund releases the claim and leaves the order exactly as it was.
    `settled_refund_id` names a refund the gateway already holds; it is
    recorded instead of requesting a new one.
    """
    orders = database["order"]
    oid = to_object_id(order_id, "orderId")
    order = orders.find_one({"_id": oid})
    if not order:
        raise NotFoundError("Order")

    requested = OrderStatus(requested)
    check_transition(order, requested, role)
    current = order["status"]

    claimed = orders.find_one_and_update(
        {"_id": oid, "status": current, "pending_transition": None},
        {"$set": {"pending_transition": requested.value}},
        return_document=ReturnDocument.AFTER,
    )
    if not claimed:
        raise InvalidTransitionError("Order was modified concurrently, please retry")

    now = utcnow()
    updates: Dict[str, Any] = dict(extra or {})
    refunded = needs_refund(claimed, requested)

    if refunded and settled_refund_id:
        updates["payment_status"] = PaymentStatus.REFUND_INITIATED.value
        updates["gateway.refund_id"] = settled_refund_id
        updates["refund_amount"] = claimed["total"]
    elif refunded:
        if gateway is None:
            orders.update_one({"_id": oid}, {"$set": {"pending_transition": None}})
            raise PaymentGatewayError("Payment gateway unavailable for refund")
        try:
            refund = gateway.initiate_refund(
                claimed["gateway"]["payment_id"],
                claimed["total"],
                {"order_number": claimed.get("order_number"), "reason": note or requested.value},
            )
        except Exception as exc:
            orders.update_one({"_id": oid}, {"$set": {"pending_transition": None}})
            logger.error("refund_failed_transition_rolled_back", order_id=order_id, target=requested.value, error=str(exc))
            if isinstance(exc, PaymentGatewayError):
                raise
            raise PaymentGatewayError("Failed to initiate refund")
        updates["payment_status"] = PaymentStatus.REFUND_INITIATED.value
        updates["gateway.refund_id"] = refund.get("id")
        updates["refund_amount"] = claimed["total"]

    if requested == S.CANCELLED:
        updates["cancelled_at"] = now
        updates["cancelled_by"] = Role(role).value
    if requested == S.REFUNDED:
        updates["refunded_at"] = now
        updates["payment_status"] = PaymentStatus.REFUNDED.value
    if requested == S.DELIVERED:
        updates["delivered_at"] = now
        if claimed.get("payment_method") == PaymentMethod.COD.value:
            updates["payment_status"] = PaymentStatus.PAID.value

    if requested in STOCK_RELEASE_STATES and claimed.get("stock_reserved"):
        release_stock(database, claimed["items"])
        updates["stock_reserved"] = False

    updates.update({"status": requested.value, "pending_transition": None, "updated_at": now})
    updated = orders.find_one_and_update(
        {"_id": oid, "pending_transition": requested.value},
        {"$set": updates, "$push": {"status_history": history_entry(requested, actor_id, note)}},
        return_document=ReturnDocument.AFTER,
    )
    logger.info("order_transitioned", order_id=str(oid), from_status=current, to_status=requested.value,
                role=Role(role).value, refund_initiated=refunded)
    return updated
