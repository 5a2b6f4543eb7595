"""
Catalog store: categories, products and their variants.

Derived fields (selling price, min/max price, total stock) are recomputed on
every write. Stock moves only through `reserve_stock` / `release_stock`,
which use conditional atomic updates so a variant can never go negative.
"""
import re
from typing import Any, Dict, List, Optional

import structlog
from bson import ObjectId
from pymongo import ReturnDocument
from pymongo.database import Database

from config import settings
from database import query_time, serialize_doc, to_object_id, utcnow
from errors import DuplicateValueError, ForbiddenError, InsufficientStockError, NotFoundError, ValidationError
from pricing import apply_variant_pricing, freshness_expires_at, product_aggregates, product_is_fresh, variant_available
from schemas import Category, Role

logger = structlog.get_logger(__name__)

PRODUCT_SORTS = {
    "price-asc": [("min_price", 1)],
    "price-desc": [("min_price", -1)],
    "rating": [("average_rating", -1)],
    "newest": [("created_at", -1)],
    "popular": [("total_sales", -1)],
}


def slugify(value: str) -> str:
    value = value.lower().strip()
    value = re.sub(r"[^\w\s-]", "", value)
    value = re.sub(r"[\s_-]+", "-", value)
    return value.strip("-")


def pagination(page: int, limit: int, total: int) -> Dict[str, Any]:
    total_pages = (total + limit - 1) // limit if limit else 0
    return {
        "current_page": page,
        "total_pages": total_pages,
        "total_items": total,
        "items_per_page": limit,
        "has_next_page": page < total_pages,
        "has_prev_page": page > 1,
    }


# -------------------- Categories --------------------

def list_categories(database: Database, include_inactive: bool = False) -> List[Dict[str, Any]]:
    query = {} if include_inactive else {"is_active": True}
    cats = database["category"].find(query).sort([("sort_order", 1), ("name", 1)])
    return [serialize_doc(c) for c in cats]


def get_category(database: Database, slug: str) -> Dict[str, Any]:
    cat = database["category"].find_one({"slug": slug, "is_active": True})
    if not cat:
        raise NotFoundError("Category")
    return cat


def create_category(database: Database, data: Dict[str, Any]) -> Dict[str, Any]:
    slug = slugify(data.get("slug") or data["name"])
    if database["category"].find_one({"slug": slug}):
        raise DuplicateValueError(f"slug '{slug}' already exists")
    now = utcnow()
    doc = {**Category(**{**data, "slug": slug}).model_dump(), "created_at": now, "updated_at": now}
    doc["_id"] = database["category"].insert_one(doc).inserted_id
    return doc


def update_category(database: Database, category_id: str, data: Dict[str, Any]) -> Dict[str, Any]:
    oid = to_object_id(category_id, "categoryId")
    update = {k: v for k, v in data.items() if v is not None}
    if "name" in update and "slug" not in update:
        update["slug"] = slugify(update["name"])
    if "slug" in update:
        update["slug"] = slugify(update["slug"])
        clash = database["category"].find_one({"slug": update["slug"], "_id": {"$ne": oid}})
        if clash:
            raise DuplicateValueError(f"slug '{update['slug']}' already exists")
    update["updated_at"] = utcnow()
    cat = database["category"].find_one_and_update({"_id": oid}, {"$set": update}, return_document=ReturnDocument.AFTER)
    if not cat:
        raise NotFoundError("Category")
    return cat


def delete_category(database: Database, category_id: str) -> Dict[str, Any]:
    oid = to_object_id(category_id, "categoryId")
    cat = database["category"].find_one({"_id": oid})
    if not cat:
        raise NotFoundError("Category")
    if database["product"].count_documents({"category_id": str(oid)}) > 0:
        raise ValidationError("Category still has products; move or delete them first")
    database["category"].delete_one({"_id": oid})
    return cat


# -------------------- Products --------------------

def _build_variants(variants: List[Dict[str, Any]], existing: Optional[List[Dict[str, Any]]] = None) -> List[Dict[str, Any]]:
    known = {str(v["_id"]) for v in (existing or [])}
    built = []
    for raw in variants:
        variant = {k: v for k, v in raw.items() if k != "id"}
        variant_id = raw.get("id")
        variant["_id"] = ObjectId(variant_id) if variant_id and variant_id in known else ObjectId()
        variant.setdefault("discount_percent", 0)
        variant.setdefault("discount_flat", 0)
        variant.setdefault("stock", 0)
        built.append(apply_variant_pricing(variant))
    return built


def _ensure_primary_image(images: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    if images and not any(img.get("is_primary") for img in images):
        images[0]["is_primary"] = True
    return images


def primary_image(product: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    images = product.get("images") or []
    for img in images:
        if img.get("is_primary"):
            return img
    return images[0] if images else None


def ensure_can_edit(product: Dict[str, Any], user: Dict[str, Any]) -> None:
    role = user.get("role")
    if role == Role.ADMIN.value:
        return
    if role == Role.VENDOR.value and product.get("vendor_id") == str(user["_id"]):
        return
    raise ForbiddenError("You cannot modify this product")


def _unique_slug(database: Database, name: str, exclude_id: Optional[ObjectId] = None) -> str:
    slug = slugify(name)
    query: Dict[str, Any] = {"slug": slug}
    if exclude_id is not None:
        query["_id"] = {"$ne": exclude_id}
    if database["product"].find_one(query):
        raise DuplicateValueError(f"slug '{slug}' already exists")
    return slug


def _require_expiry_window(is_ready_to_eat: bool, expiry_hours: Optional[float]) -> None:
    if is_ready_to_eat and not expiry_hours:
        raise ValidationError("Ready-to-eat products need an expiry window",
                              errors=[{"field": "ready_to_eat_expiry_hours", "message": "required"}])


def create_product(database: Database, data: Dict[str, Any], user: Dict[str, Any]) -> Dict[str, Any]:
    category_oid = to_object_id(data["category_id"], "categoryId")
    if not database["category"].find_one({"_id": category_oid}):
        raise NotFoundError("Category")
    variants = _build_variants(data["variants"])
    now = utcnow()
    doc = {
        "name": data["name"],
        "slug": _unique_slug(database, data.get("slug") or data["name"]),
        "description": data["description"],
        "category_id": str(category_oid),
        "images": _ensure_primary_image(list(data.get("images") or [])),
        "variants": variants,
        "is_active": data.get("is_active", True),
        "is_featured": data.get("is_featured", False),
        "is_ready_to_eat": data.get("is_ready_to_eat", False),
        "ready_to_eat_expiry_hours": data.get("ready_to_eat_expiry_hours"),
        "ready_to_eat_activated_at": None,
        "ready_to_eat_expires_at": None,
        "vendor_id": str(user["_id"]) if user.get("role") == Role.VENDOR.value else None,
        "average_rating": 0,
        "review_count": 0,
        "total_sales": 0,
        "created_at": now,
        "updated_at": now,
        **product_aggregates(variants),
    }
    _require_expiry_window(doc["is_ready_to_eat"], doc["ready_to_eat_expiry_hours"])
    doc["_id"] = database["product"].insert_one(doc).inserted_id
    logger.info("product_created", product_id=str(doc["_id"]), slug=doc["slug"])
    return doc


def get_product_doc(database: Database, product_id: str) -> Dict[str, Any]:
    product = database["product"].find_one({"_id": to_object_id(product_id, "productId")})
    if not product:
        raise NotFoundError("Product")
    return product


def update_product(database: Database, product_id: str, data: Dict[str, Any], user: Dict[str, Any]) -> Dict[str, Any]:
    product = get_product_doc(database, product_id)
    ensure_can_edit(product, user)
    update = {k: v for k, v in data.items() if v is not None}
    if "name" in update:
        update["slug"] = _unique_slug(database, update.get("slug") or update["name"], exclude_id=product["_id"])
    elif "slug" in update:
        update["slug"] = _unique_slug(database, update["slug"], exclude_id=product["_id"])
    if "category_id" in update:
        category_oid = to_object_id(update["category_id"], "categoryId")
        if not database["category"].find_one({"_id": category_oid}):
            raise NotFoundError("Category")
        update["category_id"] = str(category_oid)
    if "variants" in update:
        update["variants"] = _build_variants(update["variants"], product.get("variants"))
        update.update(product_aggregates(update["variants"]))
    if "images" in update:
        update["images"] = _ensure_primary_image(list(update["images"]))
    expiry_hours = update.get("ready_to_eat_expiry_hours", product.get("ready_to_eat_expiry_hours"))
    _require_expiry_window(update.get("is_ready_to_eat", product.get("is_ready_to_eat")), expiry_hours)
    # the listing filters on the stored expiry, keep it in step with the window
    if "ready_to_eat_expiry_hours" in update and product.get("ready_to_eat_activated_at"):
        update["ready_to_eat_expires_at"] = freshness_expires_at(product["ready_to_eat_activated_at"], expiry_hours)
    update["updated_at"] = utcnow()
    return database["product"].find_one_and_update({"_id": product["_id"]}, {"$set": update},
                                                   return_document=ReturnDocument.AFTER)


def delete_product(database: Database, product_id: str, user: Dict[str, Any], media=None) -> None:
    product = get_product_doc(database, product_id)
    ensure_can_edit(product, user)
    if media is not None:
        for img in product.get("images") or []:
            media.delete(img["public_id"])
    database["product"].delete_one({"_id": product["_id"]})
    logger.info("product_deleted", product_id=product_id)


def activate_ready_to_eat(database: Database, product_id: str, user: Dict[str, Any]) -> Dict[str, Any]:
    product = get_product_doc(database, product_id)
    ensure_can_edit(product, user)
    if not product.get("is_ready_to_eat"):
        raise ValidationError("Product is not a ready-to-eat item")
    _require_expiry_window(True, product.get("ready_to_eat_expiry_hours"))
    now = utcnow()
    expires_at = freshness_expires_at(now, product["ready_to_eat_expiry_hours"])
    return database["product"].find_one_and_update(
        {"_id": product["_id"]},
        {"$set": {"ready_to_eat_activated_at": now, "ready_to_eat_expires_at": expires_at, "updated_at": now}},
        return_document=ReturnDocument.AFTER,
    )


def set_variant_stock(database: Database, product_id: str, variant_id: str, stock: int, user: Dict[str, Any]) -> Dict[str, Any]:
    product = get_product_doc(database, product_id)
    if user.get("role") not in (Role.ADMIN.value, Role.STAFF.value):
        ensure_can_edit(product, user)
    if stock < 0:
        raise ValidationError("Stock cannot be negative")
    vid = to_object_id(variant_id, "variantId")
    result = database["product"].update_one(
        {"_id": product["_id"], "variants": {"$elemMatch": {"_id": vid}}},
        {"$set": {"variants.$.stock": stock, "updated_at": utcnow()}},
    )
    if result.matched_count == 0:
        raise NotFoundError("Variant")
    product = get_product_doc(database, product_id)
    database["product"].update_one({"_id": product["_id"]},
                                   {"$set": {"total_stock": product_aggregates(product["variants"])["total_stock"]}})
    return get_product_doc(database, product_id)


def present_product(product: Dict[str, Any], now=None) -> Dict[str, Any]:
    now = now or utcnow()
    out = serialize_doc(product)
    fresh = product_is_fresh(product, now)
    for raw, variant in zip(product.get("variants", []), out.get("variants", [])):
        variant["is_available"] = variant_available(product, raw, now)
    out["is_available"] = any(v["is_available"] for v in out.get("variants", []))
    out["is_hidden_due_to_expiry"] = bool(product.get("is_ready_to_eat")) and not fresh
    return out


def _freshness_clause(now) -> Dict[str, Any]:
    return {"$or": [{"is_ready_to_eat": {"$ne": True}}, {"ready_to_eat_expires_at": {"$gt": query_time(now)}}]}


def list_products(database: Database, page: int = 1, limit: int = 12, category: Optional[str] = None,
                  search: Optional[str] = None, min_price: Optional[float] = None, max_price: Optional[float] = None,
                  in_stock: bool = False, featured: bool = False, sort: Optional[str] = None,
                  include_inactive: bool = False, vendor_id: Optional[str] = None) -> Dict[str, Any]:
    now = utcnow()
    clauses: List[Dict[str, Any]] = []
    if not include_inactive:
        clauses.append({"is_active": True})
        clauses.append(_freshness_clause(now))
    if vendor_id:
        clauses.append({"vendor_id": vendor_id})
    if category:
        cat = database["category"].find_one({"slug": category})
        # unknown category yields an empty page rather than everything
        clauses.append({"category_id": str(cat["_id"]) if cat else None})
    if search:
        pattern = re.escape(search)
        clauses.append({"$or": [
            {"name": {"$regex": pattern, "$options": "i"}},
            {"description": {"$regex": pattern, "$options": "i"}},
        ]})
    if min_price is not None:
        clauses.append({"min_price": {"$gte": min_price}})
    if max_price is not None:
        clauses.append({"min_price": {"$lte": max_price}})
    if in_stock:
        clauses.append({"total_stock": {"$gt": 0}})
    if featured:
        clauses.append({"is_featured": True})
    query = {"$and": clauses} if clauses else {}

    page = max(page, 1)
    limit = max(min(limit, 100), 1)
    total = database["product"].count_documents(query)
    cursor = (database["product"].find(query)
              .sort(PRODUCT_SORTS.get(sort or "newest", PRODUCT_SORTS["newest"]))
              .skip((page - 1) * limit)
              .limit(limit))
    return {"products": [present_product(p, now) for p in cursor], "pagination": pagination(page, limit, total)}


def get_product_by_slug(database: Database, slug: str) -> Dict[str, Any]:
    product = database["product"].find_one({"slug": slug, "is_active": True})
    if not product:
        raise NotFoundError("Product")
    return present_product(product)


def get_product_by_id(database: Database, product_id: str) -> Dict[str, Any]:
    product = database["product"].find_one({"_id": to_object_id(product_id, "productId"), "is_active": True})
    if not product:
        raise NotFoundError("Product")
    return present_product(product)


# -------------------- Stock --------------------

def reserve_stock(database: Database, lines: List[Dict[str, Any]]) -> None:
    """Atomically take `quantity` units of each line's variant.

    Each decrement only applies while the variant still has enough stock. If
    any line cannot be served the lines already taken are put back and
    InsufficientStockError is raised, so nothing stays reserved.
    """
    taken: List[Dict[str, Any]] = []
    for line in lines:
        qty = int(line["quantity"])
        result = database["product"].update_one(
            {
                "_id": to_object_id(line["product_id"], "productId"),
                "variants": {"$elemMatch": {"_id": to_object_id(line["variant_id"], "variantId"), "stock": {"$gte": qty}}},
            },
            {"$inc": {"variants.$.stock": -qty, "total_stock": -qty, "total_sales": qty}},
        )
        if result.modified_count != 1:
            release_stock(database, taken)
            label = line.get("label") or line["product_id"]
            logger.info("stock_reservation_failed", product_id=line["product_id"], variant_id=line["variant_id"], quantity=qty)
            raise InsufficientStockError(f"{label} is out of stock or has insufficient quantity")
        taken.append(line)


def release_stock(database: Database, lines: List[Dict[str, Any]]) -> None:
    for line in lines:
        qty = int(line["quantity"])
        database["product"].update_one(
            {
                "_id": to_object_id(line["product_id"], "productId"),
                "variants": {"$elemMatch": {"_id": to_object_id(line["variant_id"], "variantId")}},
            },
            {"$inc": {"variants.$.stock": qty, "total_stock": qty, "total_sales": -qty}},
        )


def load_products(database: Database, product_ids: List[str]) -> Dict[str, Dict[str, Any]]:
    oids = list({to_object_id(pid, "productId") for pid in product_ids})
    return {str(p["_id"]): p for p in database["product"].find({"_id": {"$in": oids}})}


def low_stock_variants(database: Database, threshold: Optional[int] = None) -> List[Dict[str, Any]]:
    threshold = settings.LOW_STOCK_THRESHOLD if threshold is None else threshold
    rows = []
    for product in database["product"].find({"is_active": True}):
        for variant in product.get("variants", []):
            if int(variant.get("stock", 0)) <= threshold:
                rows.append({
                    "product_id": str(product["_id"]),
                    "name": product["name"],
                    "variant_id": str(variant["_id"]),
                    "quantity": variant["quantity"],
                    "stock": variant["stock"],
                })
    return rows
