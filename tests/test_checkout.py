import json
import threading
from datetime import timedelta

import pytest
from bson import ObjectId
from pymongo.errors import PyMongoError

import orders
from catalog import reserve_stock
from config import settings
from conftest import FAR, auth, make_product, make_user, stock_of, variant_id
from database import utcnow
from errors import InsufficientStockError
from payments import sign_client_payment, sign_webhook
from schemas import PaymentMethod


def fill_cart(client, user, product, quantity=2, index=1):
    res = client.post("/api/cart/items", headers=auth(user),
                      json={"product_id": str(product["_id"]), "variant_id": variant_id(product, index),
                            "quantity": quantity})
    assert res.status_code == 200


def checkout(client, user, method="COD"):
    address_id = str(user["addresses"][0]["_id"])
    return client.post("/api/orders", headers=auth(user), json={"address_id": address_id, "payment_method": method})


def customer_with_address(db, phone):
    address = {"_id": ObjectId(), "label": "Home", "house_number": "4", "street": "Road 2", "colony": "Jubilee Hills",
               "landmark": None, "is_default": True, "latitude": settings.STORE_LAT, "longitude": settings.STORE_LNG}
    return make_user(db, phone=phone, name="Ravi", addresses=[address])


def webhook(client, event, payload, secret="test_webhook_secret"):
    raw = json.dumps({"event": event, "payload": payload}).encode()
    return client.post("/api/webhooks/razorpay", content=raw,
                       headers={"X-Razorpay-Signature": sign_webhook(secret, raw), "Content-Type": "application/json"})


def test_cod_checkout(client, db, customer, product):
    fill_cart(client, customer, product, 2)
    res = checkout(client, customer)
    assert res.status_code == 201
    order = res.json()["data"]["order"]
    assert order["status"] == "PLACED"
    assert order["payment_status"] == "PENDING"
    assert order["subtotal"] == 360.0
    assert order["delivery_charge"] == 40.0
    assert order["total"] == 400.0
    assert order["order_number"].startswith("SH")
    assert [h["status"] for h in order["status_history"]] == ["PLACED"]
    assert stock_of(db, product, 1) == 18
    assert db["cart"].find_one({"user_id": str(customer["_id"])})["items"] == []


def test_order_is_a_snapshot(client, db, customer, product, admin):
    fill_cart(client, customer, product, 2)
    order_id = checkout(client, customer).json()["data"]["order"]["id"]
    db["product"].update_one({"_id": product["_id"]},
                             {"$set": {"name": "Renamed", "variants.1.price": 999, "variants.1.selling_price": 999}})

    order = client.get(f"/api/orders/{order_id}", headers=auth(customer)).json()["data"]
    assert order["items"][0]["name"] == "Organic Tomatoes"
    assert order["items"][0]["selling_price"] == 180.0
    assert order["total"] == 400.0


def test_minimum_order_value(client, customer, product):
    fill_cart(client, customer, product, 1, index=0)
    res = checkout(client, customer)
    assert res.status_code == 400
    assert "Minimum order value" in res.json()["message"]


def test_empty_cart(client, customer):
    assert checkout(client, customer).status_code == 400


def test_outside_delivery_radius(client, db, customer, product):
    db["user"].update_one({"_id": customer["_id"]}, {"$set": {"addresses.0.latitude": FAR["latitude"],
                                                               "addresses.0.longitude": FAR["longitude"]}})
    fill_cart(client, customer, product)
    res = checkout(client, customer)
    assert res.status_code == 400
    assert res.json()["errors"][0]["field"] == "address_id"


def test_cod_can_be_switched_off(client, customer, product, monkeypatch):
    monkeypatch.setattr(settings, "COD_ENABLED", False)
    fill_cart(client, customer, product)
    assert checkout(client, customer).status_code == 400


def test_last_unit_goes_to_one_checkout(client, db, category):
    last = make_product(db, category, name="Wild Honey", variants=[{"quantity": "250g", "price": 250, "stock": 1}])
    first, second = customer_with_address(db, "9000000011"), customer_with_address(db, "9000000012")
    fill_cart(client, first, last, 1, index=0)
    fill_cart(client, second, last, 1, index=0)

    results = [checkout(client, first).status_code, checkout(client, second).status_code]
    assert sorted(results) == [201, 409]
    assert stock_of(db, last) == 0
    assert db["order"].count_documents({}) == 1


def test_reserve_stock_never_goes_negative(db, category):
    last = make_product(db, category, name="Saffron", variants=[{"quantity": "1g", "price": 300, "stock": 1}])
    line = {"product_id": str(last["_id"]), "variant_id": variant_id(last), "quantity": 1}
    reserve_stock(db, [line])
    with pytest.raises(InsufficientStockError):
        reserve_stock(db, [line])
    assert stock_of(db, last) == 0


class SerialProducts:
    """Product collection whose updates apply one at a time, like single-document writes on the server."""

    def __init__(self, collection):
        self._collection = collection
        self._lock = threading.Lock()

    def update_one(self, *args, **kwargs):
        with self._lock:
            return self._collection.update_one(*args, **kwargs)

    def __getattr__(self, name):
        return getattr(self._collection, name)


class SharedStore:
    def __init__(self, database):
        self._database = database
        self._products = SerialProducts(database["product"])

    def __getitem__(self, name):
        return self._products if name == "product" else self._database[name]


def test_concurrent_reservations_for_the_last_unit(db, category):
    last = make_product(db, category, name="Wild Honey", variants=[{"quantity": "250g", "price": 250, "stock": 1}])
    line = {"product_id": str(last["_id"]), "variant_id": variant_id(last), "quantity": 1}
    store = SharedStore(db)
    barrier = threading.Barrier(2)
    outcomes = []

    def buy():
        barrier.wait()
        try:
            reserve_stock(store, [line])
            outcomes.append("reserved")
        except InsufficientStockError:
            outcomes.append("sold out")

    buyers = [threading.Thread(target=buy) for _ in range(2)]
    for t in buyers:
        t.start()
    for t in buyers:
        t.join(timeout=5)
    assert sorted(outcomes) == ["reserved", "sold out"]
    assert stock_of(db, last) == 0


def test_order_number_failure_reserves_nothing(client, db, customer, product, gateway, monkeypatch):
    fill_cart(client, customer, product, 2)

    def counter_down(*args, **kwargs):
        raise PyMongoError("counter unavailable")

    monkeypatch.setattr(orders, "generate_order_number", counter_down)
    with pytest.raises(PyMongoError):
        orders.create_order_from_cart(db, gateway, customer, str(customer["addresses"][0]["_id"]), PaymentMethod.COD)
    assert stock_of(db, product, 1) == 20
    assert db["order"].count_documents({}) == 0
    assert len(db["cart"].find_one({"user_id": str(customer["_id"])})["items"]) == 1


def test_failed_reservation_puts_earlier_lines_back(db, product):
    lines = [
        {"product_id": str(product["_id"]), "variant_id": variant_id(product, 1), "quantity": 3},
        {"product_id": str(product["_id"]), "variant_id": variant_id(product, 0), "quantity": 6},
    ]
    with pytest.raises(InsufficientStockError):
        reserve_stock(db, lines)
    assert stock_of(db, product, 0) == 5
    assert stock_of(db, product, 1) == 20


def test_online_checkout_and_client_verification(client, db, customer, product, gateway):
    fill_cart(client, customer, product, 2)
    data = checkout(client, customer, "ONLINE").json()["data"]
    order = data["order"]
    assert order["status"] == "PAYMENT_PENDING"
    assert data["payment"]["gateway_order_id"] == "order_test_1"
    assert gateway.calls[0][2]["amount"] == 40000

    signature = sign_client_payment("test_key_secret", "order_test_1", "pay_1")
    res = client.post(f"/api/orders/{order['id']}/verify-payment", headers=auth(customer),
                      json={"gateway_order_id": "order_test_1", "payment_id": "pay_1", "signature": signature})
    assert res.status_code == 200
    paid = res.json()["data"]
    assert paid["status"] == "PLACED"
    assert paid["payment_status"] == "PAID"
    assert paid["gateway"]["payment_id"] == "pay_1"
    assert paid["gateway"]["signature"] == signature
    assert paid["payment_details"]["upi_vpa"] == "test@upi"

    # verifying again is a no-op
    res = client.post(f"/api/orders/{order['id']}/verify-payment", headers=auth(customer),
                      json={"gateway_order_id": "order_test_1", "payment_id": "pay_1", "signature": signature})
    assert len(res.json()["data"]["status_history"]) == 2


def test_bad_client_signature_leaves_order_unchanged(client, db, customer, product):
    fill_cart(client, customer, product)
    order_id = checkout(client, customer, "ONLINE").json()["data"]["order"]["id"]
    before = db["order"].find_one({"_id": ObjectId(order_id)})
    res = client.post(f"/api/orders/{order_id}/verify-payment", headers=auth(customer),
                      json={"gateway_order_id": "order_test_1", "payment_id": "pay_1", "signature": "forged"})
    assert res.status_code == 400
    assert res.json()["code"] == "PAYMENT_VERIFICATION_FAILED"
    assert db["order"].find_one({"_id": ObjectId(order_id)}) == before


def test_verify_rejects_uncaptured_amount(client, db, customer, product, gateway):
    fill_cart(client, customer, product)
    order_id = checkout(client, customer, "ONLINE").json()["data"]["order"]["id"]
    gateway.payments["pay_x"] = {"id": "pay_x", "status": "captured", "method": "upi", "amount": 1}
    signature = sign_client_payment("test_key_secret", "order_test_1", "pay_x")
    res = client.post(f"/api/orders/{order_id}/verify-payment", headers=auth(customer),
                      json={"gateway_order_id": "order_test_1", "payment_id": "pay_x", "signature": signature})
    assert res.status_code == 400
    order = db["order"].find_one({"_id": ObjectId(order_id)})
    assert order["status"] == "PAYMENT_PENDING"
    assert [a["status"] for a in order["payment_attempts"]] == ["failed"]


def test_bad_webhook_signature_leaves_order_unchanged(client, db, customer, product):
    fill_cart(client, customer, product)
    order_id = checkout(client, customer, "ONLINE").json()["data"]["order"]["id"]
    before = db["order"].find_one({"_id": ObjectId(order_id)})
    res = webhook(client, "payment.captured", {"payment": {"entity": {"id": "pay_1", "order_id": "order_test_1"}}},
                  secret="wrong")
    assert res.status_code == 400
    assert db["order"].find_one({"_id": ObjectId(order_id)}) == before


def test_webhook_capture_confirms(client, db, customer, product):
    fill_cart(client, customer, product)
    order_id = checkout(client, customer, "ONLINE").json()["data"]["order"]["id"]
    entity = {"id": "pay_7", "order_id": "order_test_1", "method": "card", "amount": 40000, "currency": "INR",
              "card": {"last4": "1111", "network": "Visa", "type": "credit"}}
    res = webhook(client, "payment.captured", {"payment": {"entity": entity}})
    assert res.status_code == 200
    assert res.json()["data"]["handled"] is True
    order = db["order"].find_one({"_id": ObjectId(order_id)})
    assert order["status"] == "PLACED"
    assert order["payment_status"] == "PAID"
    assert order["payment_details"]["card_last4"] == "1111"

    # redelivery is acknowledged but changes nothing
    assert webhook(client, "payment.captured", {"payment": {"entity": entity}}).json()["data"]["handled"] is False


def test_repeated_payment_failures_release_stock(client, db, customer, product):
    fill_cart(client, customer, product, 2)
    order_id = checkout(client, customer, "ONLINE").json()["data"]["order"]["id"]
    assert stock_of(db, product, 1) == 18
    entity = {"order_id": "order_test_1", "error_code": "BAD_REQUEST_ERROR", "method": "upi"}
    for n in range(1, 4):
        webhook(client, "payment.failed", {"payment": {"entity": {**entity, "id": f"pay_{n}"}}})
        status = db["order"].find_one({"_id": ObjectId(order_id)})["status"]
        assert status == ("PAYMENT_FAILED" if n == 3 else "PAYMENT_PENDING")
    order = db["order"].find_one({"_id": ObjectId(order_id)})
    assert order["payment_status"] == "FAILED"
    assert len(order["payment_attempts"]) == 3
    assert stock_of(db, product, 1) == 20


def test_expired_window_fails_on_status_check(client, db, customer, product):
    fill_cart(client, customer, product, 2)
    order_id = checkout(client, customer, "ONLINE").json()["data"]["order"]["id"]
    db["order"].update_one({"_id": ObjectId(order_id)},
                           {"$set": {"payment_expires_at": utcnow() - timedelta(minutes=1)}})
    data = client.get(f"/api/orders/{order_id}/payment-status", headers=auth(customer)).json()["data"]
    assert data["status"] == "PAYMENT_FAILED"
    assert stock_of(db, product, 1) == 20


def test_status_check_confirms_captured_payment(client, db, customer, product, gateway):
    fill_cart(client, customer, product, 2)
    order_id = checkout(client, customer, "ONLINE").json()["data"]["order"]["id"]
    gateway.order_payments = {"items": [{"id": "pay_9", "status": "captured", "method": "upi", "amount": 40000}]}
    data = client.get(f"/api/orders/{order_id}/payment-status", headers=auth(customer)).json()["data"]
    # gateway order not paid yet, nothing changes
    assert data["is_paid"] is False
    assert data["can_retry"] is True

    gateway.order_status = "paid"
    data = client.get(f"/api/orders/{order_id}/payment-status", headers=auth(customer)).json()["data"]
    assert data["is_paid"] is True
    assert data["status"] == "PLACED"


def test_retry_payment_issues_new_gateway_order(client, customer, product, gateway):
    fill_cart(client, customer, product, 2)
    order_id = checkout(client, customer, "ONLINE").json()["data"]["order"]["id"]
    data = client.post(f"/api/orders/{order_id}/retry-payment", headers=auth(customer)).json()["data"]
    assert data["gateway_order_id"] == "order_test_2"


def test_retry_reopens_a_lapsed_window(client, db, customer, product, gateway):
    fill_cart(client, customer, product, 2)
    order_id = checkout(client, customer, "ONLINE").json()["data"]["order"]["id"]
    db["order"].update_one({"_id": ObjectId(order_id)},
                           {"$set": {"payment_expires_at": utcnow() - timedelta(minutes=1)}})
    assert client.post(f"/api/orders/{order_id}/retry-payment", headers=auth(customer)).status_code == 200
    order = db["order"].find_one({"_id": ObjectId(order_id)})
    assert order["gateway"]["order_id"] == "order_test_2"
    assert order["status"] == "PAYMENT_PENDING"
    polled = client.get(f"/api/orders/{order_id}/payment-status", headers=auth(customer)).json()["data"]
    assert polled["status"] == "PAYMENT_PENDING"


def test_refund_flow(client, db, customer, admin, product, gateway):
    fill_cart(client, customer, product, 2)
    order_id = checkout(client, customer, "ONLINE").json()["data"]["order"]["id"]
    signature = sign_client_payment("test_key_secret", "order_test_1", "pay_1")
    client.post(f"/api/orders/{order_id}/verify-payment", headers=auth(customer),
                json={"gateway_order_id": "order_test_1", "payment_id": "pay_1", "signature": signature})

    res = client.post(f"/api/admin/orders/{order_id}/cancel", headers=auth(admin), json={"reason": "Out of stock"})
    assert res.status_code == 200
    order = res.json()["data"]
    assert order["status"] == "CANCELLED"
    assert order["payment_status"] == "REFUND_INITIATED"
    assert len(gateway.refund_calls()) == 1
    assert stock_of(db, product, 1) == 20

    webhook(client, "refund.processed", {"refund": {"entity": {"id": "rfnd_test_1", "payment_id": "pay_1"}}})
    order = db["order"].find_one({"_id": ObjectId(order_id)})
    assert order["status"] == "REFUNDED"
    assert order["payment_status"] == "REFUNDED"
    assert [h["status"] for h in order["status_history"]][-3:] == ["CANCELLED", "REFUND_INITIATED", "REFUNDED"]
    assert len(gateway.refund_calls()) == 1


def paid_online_order(client, customer, product):
    fill_cart(client, customer, product, 2)
    order_id = checkout(client, customer, "ONLINE").json()["data"]["order"]["id"]
    signature = sign_client_payment("test_key_secret", "order_test_1", "pay_1")
    client.post(f"/api/orders/{order_id}/verify-payment", headers=auth(customer),
                json={"gateway_order_id": "order_test_1", "payment_id": "pay_1", "signature": signature})
    return order_id


def test_refund_event_for_active_order_changes_nothing(client, db, customer, product, gateway):
    order_id = paid_online_order(client, customer, product)
    before = db["order"].find_one({"_id": ObjectId(order_id)})
    res = webhook(client, "refund.processed", {"refund": {"entity": {"id": "rfnd_9", "payment_id": "pay_1"}}})
    assert res.status_code == 200
    assert res.json()["data"]["handled"] is False
    assert db["order"].find_one({"_id": ObjectId(order_id)}) == before


def test_gateway_refund_of_delivered_order(client, db, customer, product, gateway):
    order_id = paid_online_order(client, customer, product)
    db["order"].update_one({"_id": ObjectId(order_id)}, {"$set": {"status": "DELIVERED"}})
    webhook(client, "refund.processed", {"refund": {"entity": {"id": "rfnd_9", "payment_id": "pay_1"}}})
    order = db["order"].find_one({"_id": ObjectId(order_id)})
    assert order["status"] == "REFUNDED"
    assert order["payment_status"] == "REFUNDED"
    assert order["gateway"]["refund_id"] == "rfnd_9"
    assert [h["status"] for h in order["status_history"]][-2:] == ["REFUND_INITIATED", "REFUNDED"]
    # the refund already exists at the gateway
    assert gateway.refund_calls() == []


def test_failed_refund_blocks_cancel(client, db, customer, admin, product, gateway):
    fill_cart(client, customer, product, 2)
    order_id = checkout(client, customer, "ONLINE").json()["data"]["order"]["id"]
    signature = sign_client_payment("test_key_secret", "order_test_1", "pay_1")
    client.post(f"/api/orders/{order_id}/verify-payment", headers=auth(customer),
                json={"gateway_order_id": "order_test_1", "payment_id": "pay_1", "signature": signature})
    gateway.fail_refunds = True

    res = client.post(f"/api/admin/orders/{order_id}/cancel", headers=auth(admin), json={})
    assert res.status_code == 502
    order = db["order"].find_one({"_id": ObjectId(order_id)})
    assert order["status"] == "PLACED"
    assert order["payment_status"] == "PAID"


def test_customer_cancel_rules(client, db, customer, product):
    fill_cart(client, customer, product, 2)
    order_id = checkout(client, customer).json()["data"]["order"]["id"]
    res = client.post(f"/api/orders/{order_id}/cancel", headers=auth(customer), json={"reason": "Changed my mind"})
    assert res.status_code == 200
    assert res.json()["data"]["status"] == "CANCELLED"
    assert res.json()["data"]["cancellation_reason"] == "Changed my mind"
    assert res.json()["data"]["cancelled_by"] == "customer"

    fill_cart(client, customer, product, 2)
    online_id = checkout(client, customer, "ONLINE").json()["data"]["order"]["id"]
    assert client.post(f"/api/orders/{online_id}/cancel", headers=auth(customer), json={}).status_code == 403


def test_other_customers_cannot_see_order(client, db, customer, product):
    fill_cart(client, customer, product, 2)
    order_id = checkout(client, customer).json()["data"]["order"]["id"]
    stranger = make_user(db, phone="9000000099", name="Other")
    assert client.get(f"/api/orders/{order_id}", headers=auth(stranger)).status_code == 404


def test_order_numbers_follow_a_daily_sequence(client, customer, product):
    numbers = []
    for _ in range(2):
        fill_cart(client, customer, product, 2)
        numbers.append(checkout(client, customer).json()["data"]["order"]["order_number"])
    day = utcnow().strftime("%Y%m%d")
    assert numbers == [f"SH{day}0001", f"SH{day}0002"]
