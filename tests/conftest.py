import os

os.environ.setdefault("APP_ENV", "test")
os.environ.setdefault("OTP_TEST_BYPASS", "true")

import mongomock
import pytest
from bson import ObjectId
from fastapi.testclient import TestClient

from config import settings
from database import get_db, utcnow
from errors import PaymentGatewayError
from main import app
from media import get_media, validate_image
from otp import get_otp_sender
from payments import RazorpayGateway, get_payment_gateway
from pricing import apply_variant_pricing, product_aggregates
from security import create_access_token

# A point a few km from the store centre
NEAR = {"latitude": settings.STORE_LAT + 0.02, "longitude": settings.STORE_LNG + 0.02}
FAR = {"latitude": settings.STORE_LAT + 1.0, "longitude": settings.STORE_LNG + 1.0}


class FakeGateway(RazorpayGateway):
    """Real signing and request shaping, canned gateway responses."""

    def __init__(self):
        super().__init__("rzp_test_key", "test_key_secret", "test_webhook_secret")
        self.calls = []
        self.fail_refunds = False
        self.order_status = "attempted"
        self.order_payments = {"items": []}
        # payment id -> entity returned by fetch_payment; defaults to a capture of the last order amount
        self.payments = {}
        self._orders = 0
        self._last_amount = 0

    def _request(self, method, path, **kwargs):
        self.calls.append((method, path, kwargs.get("json")))
        if path == "/orders":
            self._orders += 1
            body = kwargs["json"]
            self._last_amount = body["amount"]
            return {"id": f"order_test_{self._orders}", "amount": body["amount"], "currency": body["currency"]}
        if path.endswith("/refund"):
            if self.fail_refunds:
                raise PaymentGatewayError("Payment gateway rejected the request")
            return {"id": "rfnd_test_1", "amount": kwargs["json"]["amount"]}
        if path.endswith("/payments"):
            return self.order_payments
        if path.startswith("/payments/"):
            payment_id = path.rsplit("/", 1)[-1]
            default = {"id": payment_id, "status": "captured", "method": "upi", "amount": self._last_amount,
                       "currency": "INR", "vpa": "test@upi"}
            return self.payments.get(payment_id, default)
        if path.startswith("/orders/"):
            return {"id": path.rsplit("/", 1)[-1], "status": self.order_status}
        return {}

    def refund_calls(self):
        return [c for c in self.calls if c[1].endswith("/refund")]


class FakeOTPSender:
    def __init__(self):
        self.sent = []

    def send(self, phone, code):
        self.sent.append((phone, code))


class FakeMedia:
    def __init__(self):
        self.uploaded = []
        self.deleted = []

    def upload(self, data, content_type, kind="products"):
        validate_image(content_type, len(data), kind)
        public_id = f"shaaka/{kind}/img{len(self.uploaded) + 1}"
        self.uploaded.append(public_id)
        return {"url": f"https://res.cloudinary.com/demo/image/upload/v1/{public_id}.jpg", "public_id": public_id}

    def delete(self, public_id):
        self.deleted.append(public_id)


@pytest.fixture
def db():
    return mongomock.MongoClient()["shaaka_test"]


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def otp_sender():
    return FakeOTPSender()


@pytest.fixture
def media():
    return FakeMedia()


@pytest.fixture
def client(db, gateway, otp_sender, media):
    app.dependency_overrides[get_db] = lambda: db
    app.dependency_overrides[get_payment_gateway] = lambda: gateway
    app.dependency_overrides[get_otp_sender] = lambda: otp_sender
    app.dependency_overrides[get_media] = lambda: media
    yield TestClient(app)
    app.dependency_overrides.clear()


def make_user(db, role="customer", phone="9000000001", name="Asha", addresses=None):
    now = utcnow()
    user = {
        "phone": phone,
        "name": name,
        "email": None,
        "role": role,
        "is_active": True,
        "is_profile_complete": True,
        "refresh_tokens": [],
        "addresses": addresses or [],
        "created_at": now,
        "updated_at": now,
    }
    user["_id"] = db["user"].insert_one(user).inserted_id
    return user


def auth(user):
    return {"Authorization": f"Bearer {create_access_token(user)}"}


@pytest.fixture
def customer(db):
    address = {"_id": ObjectId(), "label": "Home", "house_number": "12", "street": "MG Road",
               "colony": "Banjara Hills", "landmark": None, "is_default": True, **NEAR}
    return make_user(db, addresses=[address])


@pytest.fixture
def admin(db):
    return make_user(db, role="admin", phone="9000000002", name="Admin")


@pytest.fixture
def staff(db):
    return make_user(db, role="staff", phone="9000000003", name="Packer")


@pytest.fixture
def vendor(db):
    return make_user(db, role="vendor", phone="9000000004", name="Farm Co")


@pytest.fixture
def category(db):
    now = utcnow()
    cat = {"name": "Vegetables", "slug": "vegetables", "description": None, "image": None,
           "is_active": True, "sort_order": 0, "created_at": now, "updated_at": now}
    cat["_id"] = db["category"].insert_one(cat).inserted_id
    return cat


def make_product(db, category, name="Organic Tomatoes", variants=None, **fields):
    now = utcnow()
    variants = variants or [
        {"quantity": "500g", "price": 100, "discount_percent": 10, "discount_flat": 0, "stock": 5},
        {"quantity": "1kg", "price": 180, "discount_percent": 0, "discount_flat": 0, "stock": 20},
    ]
    variants = [apply_variant_pricing({"_id": ObjectId(), **v}) for v in variants]
    product = {
        "name": name,
        "slug": name.lower().replace(" ", "-"),
        "description": "Fresh from the farm",
        "category_id": str(category["_id"]),
        "images": [{"url": "https://res.cloudinary.com/demo/image/upload/v1/shaaka/products/t.jpg",
                    "public_id": "shaaka/products/t", "is_primary": True}],
        "variants": variants,
        "is_active": True,
        "is_featured": False,
        "is_ready_to_eat": False,
        "ready_to_eat_expiry_hours": None,
        "ready_to_eat_activated_at": None,
        "ready_to_eat_expires_at": None,
        "vendor_id": None,
        "average_rating": 0,
        "review_count": 0,
        "total_sales": 0,
        "created_at": now,
        "updated_at": now,
        **product_aggregates(variants),
    }
    product.update(fields)
    product["_id"] = db["product"].insert_one(product).inserted_id
    return product


@pytest.fixture
def product(db, category):
    return make_product(db, category)


def variant_id(product, index=0):
    return str(product["variants"][index]["_id"])


def stock_of(db, product, index=0):
    doc = db["product"].find_one({"_id": product["_id"]})
    return doc["variants"][index]["stock"]
