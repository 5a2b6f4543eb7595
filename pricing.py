"""
Pure pricing and availability rules.

Nothing here touches the database: callers pass documents in and get numbers
or booleans back, so totals can be recomputed on every read.
"""
import math
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, Optional

from database import as_utc


def round_money(value: float) -> float:
    return round(value + 0.0, 2)


def compute_selling_price(price: float, discount_percent: float = 0, discount_flat: float = 0) -> float:
    discount = 0.0
    if discount_percent and discount_percent > 0:
        discount = price * discount_percent / 100
    discount += discount_flat or 0
    return round_money(max(0.0, price - discount))


def apply_variant_pricing(variant: Dict[str, Any]) -> Dict[str, Any]:
    variant["selling_price"] = compute_selling_price(
        variant.get("price", 0), variant.get("discount_percent", 0), variant.get("discount_flat", 0)
    )
    return variant


def product_aggregates(variants: Iterable[Dict[str, Any]]) -> Dict[str, Any]:
    variants = list(variants)
    prices = [v["selling_price"] for v in variants]
    total_stock = sum(int(v.get("stock", 0)) for v in variants)
    return {
        "min_price": min(prices) if prices else 0,
        "max_price": max(prices) if prices else 0,
        "total_stock": total_stock,
    }


# Freshness window for ready-to-eat products

def freshness_expires_at(activated_at: Optional[datetime], expiry_hours: Optional[float]) -> Optional[datetime]:
    if activated_at is None or not expiry_hours:
        return None
    return as_utc(activated_at) + timedelta(hours=expiry_hours)


def is_freshness_expired(now: datetime, activated_at: Optional[datetime], expiry_hours: Optional[float]) -> bool:
    expires_at = freshness_expires_at(activated_at, expiry_hours)
    # never activated counts as expired
    if expires_at is None:
        return True
    return as_utc(now) >= expires_at


def product_is_fresh(product: Dict[str, Any], now: datetime) -> bool:
    if not product.get("is_ready_to_eat"):
        return True
    return not is_freshness_expired(now, product.get("ready_to_eat_activated_at"), product.get("ready_to_eat_expiry_hours"))


def variant_available(product: Dict[str, Any], variant: Dict[str, Any], now: datetime) -> bool:
    return int(variant.get("stock", 0)) > 0 and bool(product.get("is_active", True)) and product_is_fresh(product, now)


def find_variant(product: Dict[str, Any], variant_id: str) -> Optional[Dict[str, Any]]:
    for variant in product.get("variants", []):
        if str(variant.get("_id")) == str(variant_id):
            return variant
    return None


# Delivery and coupons

def delivery_charge_for(subtotal: float, threshold: float, fee: float) -> float:
    return 0.0 if subtotal >= threshold else round_money(fee)


def coupon_discount(subtotal: float, coupon: Optional[Dict[str, Any]], now: datetime) -> float:
    if not coupon or not coupon.get("is_active", True):
        return 0.0
    expires_at = coupon.get("expires_at")
    if expires_at is not None and as_utc(now) >= as_utc(expires_at):
        return 0.0
    if subtotal < coupon.get("min_subtotal", 0):
        return 0.0
    if coupon["discount_type"] == "percent":
        discount = subtotal * coupon["value"] / 100
    else:
        discount = coupon["value"]
    if coupon.get("max_discount"):
        discount = min(discount, coupon["max_discount"])
    return round_money(min(discount, subtotal))


def compute_cart_totals(line_subtotals: Iterable[float], quantities: Iterable[int], coupon: Optional[Dict[str, Any]],
                        now: datetime, free_delivery_threshold: float, delivery_fee: float) -> Dict[str, Any]:
    subtotal = round_money(math.fsum(line_subtotals))
    discount = coupon_discount(subtotal, coupon, now)
    delivery_charge = delivery_charge_for(subtotal, free_delivery_threshold, delivery_fee)
    return {
        "subtotal": subtotal,
        "discount": discount,
        "delivery_charge": delivery_charge,
        "total": round_money(subtotal - discount + delivery_charge),
        "item_count": sum(quantities),
    }


# Delivery radius

EARTH_RADIUS_KM = 6371.0


def distance_km(lat1: float, lng1: float, lat2: float, lng2: float) -> float:
    d_lat = math.radians(lat2 - lat1)
    d_lng = math.radians(lng2 - lng1)
    a = (math.sin(d_lat / 2) ** 2
         + math.cos(math.radians(lat1)) * math.cos(math.radians(lat2)) * math.sin(d_lng / 2) ** 2)
    return EARTH_RADIUS_KM * 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))
