from contextlib import asynccontextmanager
from typing import Any, Dict, List, Literal, Optional

import structlog
import uvicorn
from fastapi import Depends, FastAPI, File, Header, Query, Request, UploadFile
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, EmailStr, Field
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError, PyMongoError
from starlette.concurrency import run_in_threadpool
from starlette.exceptions import HTTPException as StarletteHTTPException

import analytics
import cart as carts
import catalog
import orders
import reviews
import users
import wishlist
from config import configure_logging, settings
from database import db, ensure_indexes, get_db, serialize_doc
from errors import AppError, DuplicateValueError, InternalError, ValidationError
from media import get_media, public_id_from_url
from otp import OTPService, get_otp_sender
from payments import get_payment_gateway
from schemas import PHONE_PATTERN, Address, Coupon, Image, OrderStatus, PaymentMethod, Role, Variant
from security import get_current_user, require_admin, require_catalog_editor, require_roles, require_staff

configure_logging()
logger = structlog.get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    try:
        ensure_indexes(db)
    except PyMongoError as exc:
        logger.error("index_setup_failed", error=str(exc))
    yield


# FastAPI app
app = FastAPI(title="Shaaka Storefront API", version="1.0.0", lifespan=lifespan)
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def ok(data: Any = None, message: Optional[str] = None) -> Dict[str, Any]:
    body: Dict[str, Any] = {"success": True}
    if message:
        body["message"] = message
    body["data"] = data
    return body


# Error handlers
@app.exception_handler(AppError)
async def app_error_handler(request: Request, exc: AppError):
    if not exc.is_operational:
        logger.error("non_operational_error", path=request.url.path, error=exc.message)
        exc = InternalError()
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    errors = [
        {"field": ".".join(str(p) for p in err["loc"] if p not in ("body", "query", "path")), "message": err["msg"]}
        for err in exc.errors()
    ]
    return JSONResponse(status_code=400, content=ValidationError("Validation failed", errors=errors).to_dict())


@app.exception_handler(DuplicateKeyError)
async def duplicate_key_handler(request: Request, exc: DuplicateKeyError):
    field = next(iter((exc.details or {}).get("keyValue", {}) or {}), "value")
    return JSONResponse(status_code=409, content=DuplicateValueError(f"{field} already exists").to_dict())


@app.exception_handler(StarletteHTTPException)
async def http_error_handler(request: Request, exc: StarletteHTTPException):
    return JSONResponse(status_code=exc.status_code,
                        content={"success": False, "message": str(exc.detail), "code": "HTTP_ERROR"})


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    logger.exception("unhandled_error", path=request.url.path)
    return JSONResponse(status_code=500, content=InternalError().to_dict())


# Dependencies
def get_otp_service(database: Database = Depends(get_db), sender=Depends(get_otp_sender)) -> OTPService:
    return OTPService(database, sender)


# Pydantic request models
class PhoneRequest(BaseModel):
    phone: str = Field(..., pattern=PHONE_PATTERN)


class VerifyOTPRequest(BaseModel):
    phone: str = Field(..., pattern=PHONE_PATTERN)
    otp: str = Field(..., pattern=r"^\d{4,6}$")
    name: Optional[str] = Field(None, min_length=2, max_length=50)
    email: Optional[EmailStr] = None


class RefreshRequest(BaseModel):
    refresh_token: str


class LogoutRequest(BaseModel):
    refresh_token: Optional[str] = None


class ProfileUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=2, max_length=50)
    email: Optional[EmailStr] = None


class AddressUpdate(BaseModel):
    label: Optional[Literal["Home", "Office", "Other"]] = None
    house_number: Optional[str] = None
    street: Optional[str] = None
    colony: Optional[str] = None
    landmark: Optional[str] = None
    latitude: Optional[float] = Field(None, ge=-90, le=90)
    longitude: Optional[float] = Field(None, ge=-180, le=180)
    is_default: Optional[bool] = None


class CategoryCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=80)
    slug: Optional[str] = None
    description: Optional[str] = None
    image: Optional[Image] = None
    is_active: bool = True
    sort_order: int = 0


class CategoryUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=1, max_length=80)
    slug: Optional[str] = None
    description: Optional[str] = None
    image: Optional[Image] = None
    is_active: Optional[bool] = None
    sort_order: Optional[int] = None


class VariantIn(Variant):
    id: Optional[str] = None


class ProductCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=200)
    slug: Optional[str] = None
    description: str = Field(..., max_length=2000)
    category_id: str
    images: List[Image] = []
    variants: List[VariantIn] = Field(..., min_length=1)
    is_active: bool = True
    is_featured: bool = False
    is_ready_to_eat: bool = False
    ready_to_eat_expiry_hours: Optional[float] = Field(None, gt=0)


class ProductUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=1, max_length=200)
    slug: Optional[str] = None
    description: Optional[str] = Field(None, max_length=2000)
    category_id: Optional[str] = None
    images: Optional[List[Image]] = None
    variants: Optional[List[VariantIn]] = Field(None, min_length=1)
    is_active: Optional[bool] = None
    is_featured: Optional[bool] = None
    is_ready_to_eat: Optional[bool] = None
    ready_to_eat_expiry_hours: Optional[float] = Field(None, gt=0)


class StockUpdate(BaseModel):
    stock: int = Field(..., ge=0)


class CartItemIn(BaseModel):
    product_id: str
    variant_id: str
    quantity: int = Field(1, ge=1)


class CartQuantity(BaseModel):
    quantity: int = Field(..., ge=0)


class CouponApply(BaseModel):
    code: str = Field(..., min_length=1)


class OrderCreate(BaseModel):
    address_id: str
    payment_method: PaymentMethod = PaymentMethod.COD
    notes: Optional[str] = Field(None, max_length=500)


class CancelRequest(BaseModel):
    reason: Optional[str] = Field(None, max_length=500)


class PaymentVerifyRequest(BaseModel):
    gateway_order_id: str
    payment_id: str
    signature: str


class StatusUpdate(BaseModel):
    status: OrderStatus
    note: Optional[str] = Field(None, max_length=500)


class RoleUpdate(BaseModel):
    role: Role


class ReviewCreate(BaseModel):
    rating: int = Field(..., ge=1, le=5)
    title: Optional[str] = Field(None, max_length=100)
    comment: Optional[str] = Field(None, max_length=1000)


class ReviewUpdate(BaseModel):
    rating: Optional[int] = Field(None, ge=1, le=5)
    title: Optional[str] = Field(None, max_length=100)
    comment: Optional[str] = Field(None, max_length=1000)


class ImageDelete(BaseModel):
    public_id: Optional[str] = None
    url: Optional[str] = None


# Auth
@app.post("/api/auth/request-otp")
def request_otp(body: PhoneRequest, database: Database = Depends(get_db), otp_service: OTPService = Depends(get_otp_service)):
    return ok(users.request_otp(database, otp_service, body.phone), "OTP sent successfully")


@app.post("/api/auth/verify-otp")
def verify_otp(body: VerifyOTPRequest, database: Database = Depends(get_db), otp_service: OTPService = Depends(get_otp_service)):
    result = users.verify_otp_and_login(database, otp_service, body.phone, body.otp, body.name, body.email)
    return ok(result, "Login successful")


@app.post("/api/auth/refresh-token")
def refresh_token(body: RefreshRequest, database: Database = Depends(get_db)):
    return ok(users.refresh_tokens(database, body.refresh_token))


@app.post("/api/auth/logout")
def logout(body: LogoutRequest, current_user: dict = Depends(get_current_user), database: Database = Depends(get_db)):
    users.logout(database, current_user, body.refresh_token)
    return ok(message="Logged out")


@app.post("/api/auth/logout-all")
def logout_all(current_user: dict = Depends(get_current_user), database: Database = Depends(get_db)):
    users.logout_all(database, current_user)
    return ok(message="Logged out from all devices")


@app.get("/api/auth/me")
def get_me(current_user: dict = Depends(get_current_user)):
    return ok(users.public_user(current_user))


@app.put("/api/auth/profile")
def update_profile(body: ProfileUpdate, current_user: dict = Depends(get_current_user), database: Database = Depends(get_db)):
    return ok(users.update_profile(database, current_user, body.name, body.email), "Profile updated")


@app.get("/api/auth/addresses")
def list_addresses(current_user: dict = Depends(get_current_user)):
    return ok(users.list_addresses(current_user))


@app.post("/api/auth/addresses", status_code=201)
def add_address(body: Address, current_user: dict = Depends(get_current_user), database: Database = Depends(get_db)):
    return ok(users.add_address(database, current_user, body.model_dump()), "Address added")


@app.put("/api/auth/addresses/{address_id}")
def update_address(address_id: str, body: AddressUpdate, current_user: dict = Depends(get_current_user),
                   database: Database = Depends(get_db)):
    return ok(users.update_address(database, current_user, address_id, body.model_dump(exclude_none=True)))


@app.delete("/api/auth/addresses/{address_id}")
def delete_address(address_id: str, current_user: dict = Depends(get_current_user), database: Database = Depends(get_db)):
    return ok(users.delete_address(database, current_user, address_id), "Address deleted")


@app.put("/api/auth/addresses/{address_id}/default")
def set_default_address(address_id: str, current_user: dict = Depends(get_current_user), database: Database = Depends(get_db)):
    return ok(users.set_default_address(database, current_user, address_id))


# Categories
@app.get("/api/categories")
def get_categories(database: Database = Depends(get_db)):
    return ok(catalog.list_categories(database))


@app.get("/api/categories/{slug}")
def get_category(slug: str, database: Database = Depends(get_db)):
    return ok(serialize_doc(catalog.get_category(database, slug)))


@app.post("/api/admin/categories", status_code=201)
def create_category(body: CategoryCreate, current_user: dict = Depends(require_admin), database: Database = Depends(get_db)):
    return ok(serialize_doc(catalog.create_category(database, body.model_dump())), "Category created")


@app.put("/api/admin/categories/{category_id}")
def update_category(category_id: str, body: CategoryUpdate, current_user: dict = Depends(require_admin),
                    database: Database = Depends(get_db)):
    return ok(serialize_doc(catalog.update_category(database, category_id, body.model_dump(exclude_none=True))))


@app.delete("/api/admin/categories/{category_id}")
def delete_category(category_id: str, current_user: dict = Depends(require_admin), database: Database = Depends(get_db)):
    catalog.delete_category(database, category_id)
    return ok(message="Category deleted")


# Products
@app.get("/api/products")
def list_products(page: int = 1, limit: int = 12, category: Optional[str] = None, search: Optional[str] = None,
                  min_price: Optional[float] = None, max_price: Optional[float] = None, in_stock: bool = False,
                  featured: bool = False, sort: Optional[str] = Query(None, pattern="^(price-asc|price-desc|rating|newest|popular)$"),
                  database: Database = Depends(get_db)):
    return ok(catalog.list_products(database, page, limit, category, search, min_price, max_price, in_stock, featured, sort))


@app.get("/api/products/id/{product_id}")
def get_product_by_id(product_id: str, database: Database = Depends(get_db)):
    return ok(catalog.get_product_by_id(database, product_id))


@app.get("/api/products/{slug}")
def get_product(slug: str, database: Database = Depends(get_db)):
    return ok(catalog.get_product_by_slug(database, slug))


@app.get("/api/admin/products")
def admin_products(page: int = 1, limit: int = 20, search: Optional[str] = None, category: Optional[str] = None,
                   current_user: dict = Depends(require_catalog_editor), database: Database = Depends(get_db)):
    vendor_id = str(current_user["_id"]) if current_user["role"] == Role.VENDOR.value else None
    return ok(catalog.list_products(database, page, limit, category, search, include_inactive=True, vendor_id=vendor_id))


@app.post("/api/admin/products", status_code=201)
def create_product(body: ProductCreate, current_user: dict = Depends(require_catalog_editor),
                   database: Database = Depends(get_db)):
    product = catalog.create_product(database, body.model_dump(), current_user)
    return ok(catalog.present_product(product), "Product created")


@app.put("/api/admin/products/{product_id}")
def update_product(product_id: str, body: ProductUpdate, current_user: dict = Depends(require_catalog_editor),
                   database: Database = Depends(get_db)):
    product = catalog.update_product(database, product_id, body.model_dump(exclude_none=True), current_user)
    return ok(catalog.present_product(product), "Product updated")


@app.delete("/api/admin/products/{product_id}")
def delete_product(product_id: str, current_user: dict = Depends(require_catalog_editor),
                   database: Database = Depends(get_db), media=Depends(get_media)):
    catalog.delete_product(database, product_id, current_user, media)
    return ok(message="Product deleted")


@app.post("/api/admin/products/{product_id}/activate-ready-to-eat")
def activate_ready_to_eat(product_id: str, current_user: dict = Depends(require_catalog_editor),
                          database: Database = Depends(get_db)):
    return ok(catalog.present_product(catalog.activate_ready_to_eat(database, product_id, current_user)))


@app.put("/api/admin/products/{product_id}/variants/{variant_id}/stock")
def update_variant_stock(product_id: str, variant_id: str, body: StockUpdate,
                         current_user: dict = Depends(require_roles(Role.ADMIN, Role.STAFF, Role.VENDOR)),
                         database: Database = Depends(get_db)):
    product = catalog.set_variant_stock(database, product_id, variant_id, body.stock, current_user)
    return ok(catalog.present_product(product), "Stock updated")


# Reviews
@app.get("/api/products/{product_id}/reviews")
def product_reviews(product_id: str, page: int = 1, limit: int = 10, database: Database = Depends(get_db)):
    return ok(reviews.list_product_reviews(database, product_id, page, limit))


@app.post("/api/products/{product_id}/reviews", status_code=201)
def add_review(product_id: str, body: ReviewCreate, current_user: dict = Depends(get_current_user),
               database: Database = Depends(get_db)):
    review = reviews.create_review(database, current_user, product_id, body.rating, body.title, body.comment)
    return ok(review, "Review added")


@app.put("/api/reviews/{review_id}")
def update_review(review_id: str, body: ReviewUpdate, current_user: dict = Depends(get_current_user),
                  database: Database = Depends(get_db)):
    return ok(reviews.update_review(database, current_user, review_id, body.model_dump(exclude_none=True)))


@app.delete("/api/reviews/{review_id}")
def delete_review(review_id: str, current_user: dict = Depends(get_current_user), database: Database = Depends(get_db)):
    reviews.delete_review(database, current_user, review_id)
    return ok(message="Review deleted")


# Cart
@app.get("/api/cart")
def get_cart(current_user: dict = Depends(get_current_user), database: Database = Depends(get_db)):
    return ok(carts.get_validated_cart(database, str(current_user["_id"])))


@app.post("/api/cart/items")
def add_cart_item(body: CartItemIn, current_user: dict = Depends(get_current_user), database: Database = Depends(get_db)):
    view = carts.add_item(database, str(current_user["_id"]), body.product_id, body.variant_id, body.quantity)
    return ok(view, "Added to cart")


@app.put("/api/cart/items/{item_id}")
def update_cart_item(item_id: str, body: CartQuantity, current_user: dict = Depends(get_current_user),
                     database: Database = Depends(get_db)):
    return ok(carts.update_item_quantity(database, str(current_user["_id"]), item_id, body.quantity))


@app.delete("/api/cart/items/{item_id}")
def remove_cart_item(item_id: str, current_user: dict = Depends(get_current_user), database: Database = Depends(get_db)):
    return ok(carts.remove_item(database, str(current_user["_id"]), item_id))


@app.post("/api/cart/remove-invalid")
def remove_invalid_cart_items(current_user: dict = Depends(get_current_user), database: Database = Depends(get_db)):
    return ok(carts.remove_invalid_items(database, str(current_user["_id"])))


@app.delete("/api/cart")
def clear_cart(current_user: dict = Depends(get_current_user), database: Database = Depends(get_db)):
    return ok(carts.clear_cart(database, str(current_user["_id"])), "Cart cleared")


@app.post("/api/cart/coupon")
def apply_coupon(body: CouponApply, current_user: dict = Depends(get_current_user), database: Database = Depends(get_db)):
    return ok(carts.apply_coupon(database, str(current_user["_id"]), body.code), "Coupon applied")


@app.delete("/api/cart/coupon")
def remove_coupon(current_user: dict = Depends(get_current_user), database: Database = Depends(get_db)):
    return ok(carts.remove_coupon(database, str(current_user["_id"])))


@app.post("/api/admin/coupons", status_code=201)
def create_coupon(body: Coupon, current_user: dict = Depends(require_admin), database: Database = Depends(get_db)):
    return ok(carts.create_coupon(database, body.model_dump()), "Coupon created")


# Wishlist
@app.get("/api/wishlist")
def get_wishlist(current_user: dict = Depends(get_current_user), database: Database = Depends(get_db)):
    return ok(wishlist.get_wishlist(database, str(current_user["_id"])))


@app.post("/api/wishlist/{product_id}")
def add_to_wishlist(product_id: str, current_user: dict = Depends(get_current_user), database: Database = Depends(get_db)):
    return ok(wishlist.add_product(database, str(current_user["_id"]), product_id), "Added to wishlist")


@app.delete("/api/wishlist/{product_id}")
def remove_from_wishlist(product_id: str, current_user: dict = Depends(get_current_user), database: Database = Depends(get_db)):
    return ok(wishlist.remove_product(database, str(current_user["_id"]), product_id))


@app.delete("/api/wishlist")
def clear_wishlist(current_user: dict = Depends(get_current_user), database: Database = Depends(get_db)):
    return ok(wishlist.clear_wishlist(database, str(current_user["_id"])))


# Orders
@app.post("/api/orders", status_code=201)
def create_order(body: OrderCreate, current_user: dict = Depends(get_current_user), database: Database = Depends(get_db),
                 gateway=Depends(get_payment_gateway)):
    result = orders.create_order_from_cart(database, gateway, current_user, body.address_id, body.payment_method, body.notes)
    return ok(result, "Order placed successfully")


@app.get("/api/orders")
def my_orders(status: Optional[OrderStatus] = None, page: int = 1, limit: int = 10,
              current_user: dict = Depends(get_current_user), database: Database = Depends(get_db)):
    return ok(orders.list_my_orders(database, current_user, status, page, limit))


@app.get("/api/orders/{order_id}")
def order_detail(order_id: str, current_user: dict = Depends(get_current_user), database: Database = Depends(get_db)):
    return ok(orders.present_order(orders.get_own_order(database, current_user, order_id)))


@app.post("/api/orders/{order_id}/cancel")
def cancel_order(order_id: str, body: CancelRequest, current_user: dict = Depends(get_current_user),
                 database: Database = Depends(get_db), gateway=Depends(get_payment_gateway)):
    order = orders.cancel_my_order(database, gateway, current_user, order_id, body.reason)
    return ok(orders.present_order(order), "Order cancelled")


@app.post("/api/orders/{order_id}/verify-payment")
def verify_payment(order_id: str, body: PaymentVerifyRequest, current_user: dict = Depends(get_current_user),
                   database: Database = Depends(get_db), gateway=Depends(get_payment_gateway)):
    order = orders.verify_payment(database, gateway, current_user, order_id, body.gateway_order_id, body.payment_id,
                                  body.signature)
    return ok(orders.present_order(order), "Payment verified")


@app.get("/api/orders/{order_id}/payment-status")
def payment_status(order_id: str, current_user: dict = Depends(get_current_user), database: Database = Depends(get_db),
                   gateway=Depends(get_payment_gateway)):
    return ok(orders.check_payment_status(database, gateway, current_user, order_id))


@app.post("/api/orders/{order_id}/retry-payment")
def retry_payment(order_id: str, current_user: dict = Depends(get_current_user), database: Database = Depends(get_db),
                  gateway=Depends(get_payment_gateway)):
    return ok(orders.retry_payment(database, gateway, current_user, order_id), "Payment retry initiated")


# Webhooks
@app.post("/api/webhooks/razorpay")
async def razorpay_webhook(request: Request, x_razorpay_signature: Optional[str] = Header(None),
                           database: Database = Depends(get_db), gateway=Depends(get_payment_gateway)):
    raw_body = await request.body()
    result = await run_in_threadpool(orders.handle_webhook, database, gateway, raw_body, x_razorpay_signature)
    return ok(result)


# Admin
@app.get("/api/admin/dashboard")
def admin_dashboard(current_user: dict = Depends(require_admin), database: Database = Depends(get_db)):
    return ok(jsonable_encoder(analytics.dashboard(database)))


@app.get("/api/admin/orders")
def admin_orders(status: Optional[OrderStatus] = None, search: Optional[str] = None, page: int = 1, limit: int = 20,
                 current_user: dict = Depends(require_admin), database: Database = Depends(get_db)):
    return ok(orders.list_orders(database, status, search, page, limit))


@app.get("/api/admin/orders/{order_id}")
def admin_order_detail(order_id: str, current_user: dict = Depends(require_admin), database: Database = Depends(get_db)):
    return ok(orders.present_order(orders.get_order_doc(database, order_id)))


@app.put("/api/admin/orders/{order_id}/status")
def admin_update_status(order_id: str, body: StatusUpdate, current_user: dict = Depends(require_admin),
                        database: Database = Depends(get_db), gateway=Depends(get_payment_gateway)):
    order = orders.update_status(database, gateway, current_user, order_id, body.status, body.note)
    return ok(orders.present_order(order), "Order status updated")


@app.post("/api/admin/orders/{order_id}/cancel")
def admin_cancel_order(order_id: str, body: CancelRequest, current_user: dict = Depends(require_admin),
                       database: Database = Depends(get_db), gateway=Depends(get_payment_gateway)):
    order = orders.admin_cancel(database, gateway, current_user, order_id, body.reason)
    return ok(orders.present_order(order), "Order cancelled")


@app.get("/api/admin/users")
def admin_users(role: Optional[Role] = None, search: Optional[str] = None, page: int = 1, limit: int = 20,
                current_user: dict = Depends(require_admin), database: Database = Depends(get_db)):
    return ok(users.list_users(database, role.value if role else None, search, page, limit))


@app.put("/api/admin/users/{user_id}/role")
def admin_set_role(user_id: str, body: RoleUpdate, current_user: dict = Depends(require_admin),
                   database: Database = Depends(get_db)):
    return ok(users.set_role(database, current_user, user_id, body.role.value), "Role updated")


# Staff
@app.get("/api/staff/orders")
def staff_orders(status: Optional[OrderStatus] = None, page: int = 1, limit: int = 20,
                 current_user: dict = Depends(require_staff), database: Database = Depends(get_db)):
    return ok(orders.list_orders(database, status, page=page, limit=limit, statuses=orders.STAFF_QUEUE))


@app.put("/api/staff/orders/{order_id}/status")
def staff_update_status(order_id: str, body: StatusUpdate, current_user: dict = Depends(require_staff),
                        database: Database = Depends(get_db), gateway=Depends(get_payment_gateway)):
    order = orders.update_status(database, gateway, current_user, order_id, body.status, body.note)
    return ok(orders.present_order(order), "Order status updated")


# Uploads
@app.post("/api/uploads/images", status_code=201)
def upload_image(kind: Literal["products", "categories"] = "products", file: UploadFile = File(...),
                 current_user: dict = Depends(require_catalog_editor), media=Depends(get_media)):
    data = file.file.read()
    return ok(media.upload(data, file.content_type, kind), "Image uploaded")


@app.post("/api/uploads/images/delete")
def delete_image(body: ImageDelete, current_user: dict = Depends(require_catalog_editor), media=Depends(get_media)):
    public_id = body.public_id or public_id_from_url(body.url)
    if not public_id:
        raise ValidationError("public_id or url is required")
    media.delete(public_id)
    return ok(message="Image deleted")


# Health
@app.get("/")
def root():
    return {"message": "Shaaka Storefront API running"}


@app.get("/api/health")
def health(database: Database = Depends(get_db)):
    response = {"backend": "running", "environment": settings.APP_ENV, "database": "unknown"}
    try:
        database.command("ping")
        response["database"] = "connected"
    except PyMongoError as e:
        response["database"] = "unreachable"
        response["error"] = str(e)[:120]
    return ok(response)


if __name__ == "__main__":
    uvicorn.run("main:app", host="0.0.0.0", port=settings.PORT, reload=not settings.is_production)
