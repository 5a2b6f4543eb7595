from typing import Any, Dict

from pymongo.database import Database

from catalog import get_product_doc, present_product
from database import serialize_doc, to_object_id, utcnow


def get_wishlist(database: Database, user_id: str) -> Dict[str, Any]:
    wishlist = database["wishlist"].find_one({"user_id": user_id}) or {"items": []}
    entries = wishlist.get("items", [])
    now = utcnow()
    ids = [to_object_id(e["product_id"], "productId") for e in entries]
    products = {str(p["_id"]): p for p in database["product"].find({"_id": {"$in": ids}})}

    items = []
    # keep insertion order, skip products deleted since they were saved
    for entry in entries:
        product = products.get(entry["product_id"])
        if not product:
            continue
        saved_price = entry.get("min_price_snapshot")
        items.append({
            "product": present_product(product, now),
            "added_at": serialize_doc(entry.get("added_at")),
            "price_changed": saved_price is not None and saved_price != product["min_price"],
            "price_dropped": saved_price is not None and product["min_price"] < saved_price,
        })
    return {"items": items, "count": len(items)}


def add_product(database: Database, user_id: str, product_id: str) -> Dict[str, Any]:
    product = get_product_doc(database, product_id)
    now = utcnow()
    database["wishlist"].update_one({"user_id": user_id},
                                    {"$setOnInsert": {"items": [], "created_at": now}}, upsert=True)
    # adding twice keeps the original entry
    database["wishlist"].update_one(
        {"user_id": user_id, "items.product_id": {"$ne": product_id}},
        {"$push": {"items": {"product_id": product_id, "added_at": now, "min_price_snapshot": product["min_price"]}},
         "$set": {"updated_at": now}},
    )
    return get_wishlist(database, user_id)


def remove_product(database: Database, user_id: str, product_id: str) -> Dict[str, Any]:
    database["wishlist"].update_one({"user_id": user_id}, {"$pull": {"items": {"product_id": product_id}}})
    return get_wishlist(database, user_id)


def clear_wishlist(database: Database, user_id: str) -> Dict[str, Any]:
    database["wishlist"].update_one({"user_id": user_id}, {"$set": {"items": [], "updated_at": utcnow()}})
    return get_wishlist(database, user_id)
