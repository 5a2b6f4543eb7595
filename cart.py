"""
Shopping cart.

The stored cart only remembers what the customer picked (product, variant,
quantity, coupon code). Prices, availability and totals are recomputed from
the live catalog every time the cart is read.
"""
from typing import Any, Dict, List, Optional

import structlog
from bson import ObjectId
from pymongo.database import Database

from catalog import load_products, primary_image
from config import settings
from database import as_utc, serialize_doc, to_object_id, utcnow
from errors import NotFoundError, StockUnavailableError, ValidationError
from pricing import compute_cart_totals, find_variant, round_money, variant_available

logger = structlog.get_logger(__name__)


def _load_cart(database: Database, user_id: str) -> Dict[str, Any]:
    return database["cart"].find_one({"user_id": user_id}) or {"user_id": user_id, "items": [], "coupon_code": None}


def _save(database: Database, user_id: str, items: List[Dict[str, Any]], **fields) -> None:
    database["cart"].update_one(
        {"user_id": user_id},
        {"$set": {"items": items, "updated_at": utcnow(), **fields}, "$setOnInsert": {"created_at": utcnow()}},
        upsert=True,
    )


def find_coupon(database: Database, code: Optional[str]) -> Optional[Dict[str, Any]]:
    if not code:
        return None
    return database["coupon"].find_one({"code": code.upper()})


def _line_problem(product: Optional[Dict[str, Any]], variant: Optional[Dict[str, Any]], quantity: int, now) -> Optional[str]:
    if not product or not product.get("is_active", True):
        return "Product is no longer available"
    if not variant:
        return "Selected size is no longer available"
    if not variant_available(product, variant, now):
        return "Out of stock"
    if int(variant["stock"]) < quantity:
        return f"Only {variant['stock']} left in stock"
    return None


def get_validated_cart(database: Database, user_id: str) -> Dict[str, Any]:
    now = utcnow()
    cart = _load_cart(database, user_id)
    products = load_products(database, [i["product_id"] for i in cart["items"]])

    items, invalid_items = [], []
    for item in cart["items"]:
        product = products.get(item["product_id"])
        variant = find_variant(product, item["variant_id"]) if product else None
        view = {
            "id": str(item["_id"]),
            "product_id": item["product_id"],
            "variant_id": item["variant_id"],
            "quantity": item["quantity"],
        }
        if product:
            image = primary_image(product)
            view.update({"name": product["name"], "slug": product["slug"], "image": image["url"] if image else None})
        if variant:
            view.update({
                "variant_label": variant["quantity"],
                "price": variant["price"],
                "selling_price": variant["selling_price"],
                "stock": variant["stock"],
                "line_total": round_money(variant["selling_price"] * item["quantity"]),
                "price_changed": (item.get("price_snapshot") or {}).get("selling_price") != variant["selling_price"],
            })
        problem = _line_problem(product, variant, item["quantity"], now)
        if problem:
            view["reason"] = problem
            invalid_items.append(view)
        else:
            items.append(view)

    coupon = find_coupon(database, cart.get("coupon_code"))
    totals = compute_cart_totals(
        [i["line_total"] for i in items],
        [i["quantity"] for i in items],
        coupon,
        now,
        settings.FREE_DELIVERY_THRESHOLD,
        settings.DELIVERY_CHARGE,
    )
    return {
        "items": items,
        "invalid_items": invalid_items,
        "coupon_code": coupon["code"] if coupon and totals["discount"] > 0 else None,
        "free_delivery_threshold": settings.FREE_DELIVERY_THRESHOLD,
        **totals,
    }


def _live_variant(database: Database, product_id: str, variant_id: str):
    product = database["product"].find_one({"_id": to_object_id(product_id, "productId")})
    if not product or not product.get("is_active", True):
        raise NotFoundError("Product")
    variant = find_variant(product, variant_id)
    if not variant:
        raise NotFoundError("Variant")
    if not variant_available(product, variant, utcnow()):
        raise StockUnavailableError(f"{product['name']} ({variant['quantity']}) is currently unavailable")
    return product, variant


def _check_quantity(product: Dict[str, Any], variant: Dict[str, Any], quantity: int) -> None:
    if quantity > settings.MAX_QUANTITY_PER_ITEM:
        raise ValidationError(f"Maximum {settings.MAX_QUANTITY_PER_ITEM} units per item",
                              errors=[{"field": "quantity", "message": "too many units"}])
    if quantity > int(variant["stock"]):
        raise StockUnavailableError(f"Only {variant['stock']} units of {product['name']} ({variant['quantity']}) available")


def add_item(database: Database, user_id: str, product_id: str, variant_id: str, quantity: int = 1) -> Dict[str, Any]:
    if quantity < 1:
        raise ValidationError("Quantity must be at least 1")
    product, variant = _live_variant(database, product_id, variant_id)
    cart = _load_cart(database, user_id)
    items = cart["items"]
    existing = next((i for i in items if i["product_id"] == product_id and i["variant_id"] == variant_id), None)
    new_quantity = quantity + (existing["quantity"] if existing else 0)
    _check_quantity(product, variant, new_quantity)
    snapshot = {"quantity": variant["quantity"], "price": variant["price"], "selling_price": variant["selling_price"]}
    if existing:
        existing.update({"quantity": new_quantity, "price_snapshot": snapshot})
    else:
        items.append({"_id": ObjectId(), "product_id": product_id, "variant_id": variant_id,
                      "quantity": new_quantity, "price_snapshot": snapshot, "added_at": utcnow()})
    _save(database, user_id, items)
    return get_validated_cart(database, user_id)


def _find_item(items: List[Dict[str, Any]], item_id: str) -> Dict[str, Any]:
    oid = to_object_id(item_id, "itemId")
    item = next((i for i in items if i["_id"] == oid), None)
    if not item:
        raise NotFoundError("Cart item")
    return item


def update_item_quantity(database: Database, user_id: str, item_id: str, quantity: int) -> Dict[str, Any]:
    cart = _load_cart(database, user_id)
    items = cart["items"]
    item = _find_item(items, item_id)
    if quantity <= 0:
        items.remove(item)
    else:
        product, variant = _live_variant(database, item["product_id"], item["variant_id"])
        _check_quantity(product, variant, quantity)
        item["quantity"] = quantity
    _save(database, user_id, items)
    return get_validated_cart(database, user_id)


def remove_item(database: Database, user_id: str, item_id: str) -> Dict[str, Any]:
    cart = _load_cart(database, user_id)
    items = cart["items"]
    items.remove(_find_item(items, item_id))
    _save(database, user_id, items)
    return get_validated_cart(database, user_id)


def remove_invalid_items(database: Database, user_id: str) -> Dict[str, Any]:
    view = get_validated_cart(database, user_id)
    invalid = {i["id"] for i in view["invalid_items"]}
    if invalid:
        cart = _load_cart(database, user_id)
        _save(database, user_id, [i for i in cart["items"] if str(i["_id"]) not in invalid])
        logger.info("cart_invalid_items_removed", user_id=user_id, count=len(invalid))
    return get_validated_cart(database, user_id)


def clear_cart(database: Database, user_id: str) -> Dict[str, Any]:
    _save(database, user_id, [], coupon_code=None)
    return get_validated_cart(database, user_id)


def apply_coupon(database: Database, user_id: str, code: str) -> Dict[str, Any]:
    coupon = find_coupon(database, code)
    if not coupon or not coupon.get("is_active", True):
        raise ValidationError("Invalid coupon code", errors=[{"field": "code", "message": "not found"}])
    if coupon.get("expires_at") and utcnow() >= as_utc(coupon["expires_at"]):
        raise ValidationError("Coupon has expired", errors=[{"field": "code", "message": "expired"}])
    view = get_validated_cart(database, user_id)
    if view["subtotal"] < coupon.get("min_subtotal", 0):
        raise ValidationError(f"Add items worth Rs.{coupon['min_subtotal']:.0f} to use this coupon",
                              errors=[{"field": "code", "message": "minimum not met"}])
    cart = _load_cart(database, user_id)
    _save(database, user_id, cart["items"], coupon_code=coupon["code"])
    return get_validated_cart(database, user_id)


def remove_coupon(database: Database, user_id: str) -> Dict[str, Any]:
    cart = _load_cart(database, user_id)
    _save(database, user_id, cart["items"], coupon_code=None)
    return get_validated_cart(database, user_id)


def create_coupon(database: Database, data: Dict[str, Any]) -> Dict[str, Any]:
    doc = {**data, "code": data["code"].upper(), "created_at": utcnow()}
    doc["_id"] = database["coupon"].insert_one(doc).inserted_id
    return serialize_doc(doc)
