"""
Database Schemas for the grocery storefront

Each Pydantic model represents a MongoDB collection.
Collection name is the lowercase of the class name.
References to other documents are stored as hex id strings; embedded
documents (variants, addresses, cart/order lines) carry their own ObjectId.
"""
from datetime import datetime
from enum import Enum
from typing import List, Literal, Optional

from pydantic import BaseModel, EmailStr, Field

PHONE_PATTERN = r"^[6-9]\d{9}$"


class Role(str, Enum):
    CUSTOMER = "customer"
    STAFF = "staff"
    ADMIN = "admin"
    VENDOR = "vendor"
    SYSTEM = "system"  # webhooks and payment callbacks; never stored on a user


class OrderStatus(str, Enum):
    PAYMENT_PENDING = "PAYMENT_PENDING"
    PAYMENT_FAILED = "PAYMENT_FAILED"
    PLACED = "PLACED"
    CONFIRMED = "CONFIRMED"
    PACKED = "PACKED"
    READY_TO_DELIVER = "READY_TO_DELIVER"
    HANDED_TO_AGENT = "HANDED_TO_AGENT"
    DELIVERED = "DELIVERED"
    CANCELLED = "CANCELLED"
    REFUND_INITIATED = "REFUND_INITIATED"
    REFUNDED = "REFUNDED"


class PaymentStatus(str, Enum):
    PENDING = "PENDING"
    PAID = "PAID"
    FAILED = "FAILED"
    REFUND_INITIATED = "REFUND_INITIATED"
    REFUNDED = "REFUNDED"


class PaymentMethod(str, Enum):
    COD = "COD"
    ONLINE = "ONLINE"


class Address(BaseModel):
    label: Literal["Home", "Office", "Other"] = "Home"
    house_number: str = Field(..., min_length=1)
    street: str = Field(..., min_length=1)
    colony: str = Field(..., min_length=1)
    landmark: Optional[str] = None
    latitude: float = Field(..., ge=-90, le=90)
    longitude: float = Field(..., ge=-180, le=180)
    is_default: bool = False


class User(BaseModel):
    phone: str = Field(..., pattern=PHONE_PATTERN)
    name: Optional[str] = Field(None, min_length=2, max_length=50)
    email: Optional[EmailStr] = None
    role: Role = Role.CUSTOMER
    is_active: bool = True
    is_profile_complete: bool = False
    refresh_tokens: List[dict] = []
    addresses: List[dict] = []
    last_login: Optional[datetime] = None


class OTP(BaseModel):
    phone: str
    code: str
    attempts: int = 0
    expires_at: datetime


class Image(BaseModel):
    url: str
    public_id: str
    is_primary: bool = False


class Variant(BaseModel):
    quantity: str = Field(..., min_length=1, description='Pack label, e.g. "500g"')
    unit: Optional[str] = None
    price: float = Field(..., ge=0)
    discount_percent: float = Field(0, ge=0, le=100)
    discount_flat: float = Field(0, ge=0)
    stock: int = Field(0, ge=0)
    sku: Optional[str] = None


class Category(BaseModel):
    name: str = Field(..., min_length=1, max_length=80)
    slug: str
    description: Optional[str] = None
    image: Optional[Image] = None
    is_active: bool = True
    sort_order: int = 0


class Coupon(BaseModel):
    code: str = Field(..., min_length=3, max_length=20)
    discount_type: Literal["percent", "flat"]
    value: float = Field(..., gt=0)
    min_subtotal: float = Field(0, ge=0)
    max_discount: Optional[float] = Field(None, gt=0)
    is_active: bool = True
    expires_at: Optional[datetime] = None


class Review(BaseModel):
    user_id: str
    user_name: Optional[str] = None
    product_id: str
    order_id: str
    rating: int = Field(..., ge=1, le=5)
    title: Optional[str] = Field(None, max_length=100)
    comment: Optional[str] = Field(None, max_length=1000)
    is_approved: bool = True
