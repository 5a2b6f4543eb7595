from typing import Any, Dict, Optional

import structlog
from pymongo import ReturnDocument
from pymongo.database import Database

from catalog import get_product_doc, pagination
from database import serialize_doc, to_object_id, utcnow
from errors import DuplicateValueError, ForbiddenError, NotFoundError
from schemas import OrderStatus, Review, Role

logger = structlog.get_logger(__name__)


def refresh_product_rating(database: Database, product_id: str) -> None:
    pipeline = [
        {"$match": {"product_id": product_id, "is_approved": True}},
        {"$group": {"_id": "$product_id", "avg": {"$avg": "$rating"}, "count": {"$sum": 1}}},
    ]
    agg = list(database["review"].aggregate(pipeline))
    average, count = (round(agg[0]["avg"], 1), agg[0]["count"]) if agg else (0, 0)
    database["product"].update_one({"_id": to_object_id(product_id, "productId")},
                                   {"$set": {"average_rating": average, "review_count": count}})


def list_product_reviews(database: Database, product_id: str, page: int = 1, limit: int = 10) -> Dict[str, Any]:
    query = {"product_id": product_id, "is_approved": True}
    page, limit = max(page, 1), max(min(limit, 50), 1)
    total = database["review"].count_documents(query)
    cursor = database["review"].find(query).sort([("created_at", -1)]).skip((page - 1) * limit).limit(limit)

    distribution = {str(star): 0 for star in range(1, 6)}
    for row in database["review"].find(query, {"rating": 1}):
        distribution[str(row["rating"])] += 1
    return {
        "reviews": [serialize_doc(r) for r in cursor],
        "rating_distribution": distribution,
        "pagination": pagination(page, limit, total),
    }


def create_review(database: Database, user: Dict[str, Any], product_id: str, rating: int,
                  title: Optional[str] = None, comment: Optional[str] = None) -> Dict[str, Any]:
    product = get_product_doc(database, product_id)
    user_id = str(user["_id"])
    order = database["order"].find_one({
        "user_id": user_id,
        "status": OrderStatus.DELIVERED.value,
        "items.product_id": product_id,
    })
    if not order:
        raise ForbiddenError("You can only review products from your delivered orders")
    if database["review"].find_one({"product_id": product_id, "user_id": user_id}):
        raise DuplicateValueError("You have already reviewed this product")

    now = utcnow()
    review = Review(user_id=user_id, user_name=user.get("name"), product_id=product_id, order_id=str(order["_id"]),
                    rating=rating, title=title, comment=comment)
    doc = {**review.model_dump(), "created_at": now, "updated_at": now}
    doc["_id"] = database["review"].insert_one(doc).inserted_id
    refresh_product_rating(database, product_id)
    logger.info("review_created", product_id=product_id, slug=product["slug"], rating=rating)
    return serialize_doc(doc)


def _own_review(database: Database, user: Dict[str, Any], review_id: str) -> Dict[str, Any]:
    review = database["review"].find_one({"_id": to_object_id(review_id, "reviewId")})
    if not review:
        raise NotFoundError("Review")
    if review["user_id"] != str(user["_id"]) and user.get("role") != Role.ADMIN.value:
        raise ForbiddenError("You can only change your own reviews")
    return review


def update_review(database: Database, user: Dict[str, Any], review_id: str, data: Dict[str, Any]) -> Dict[str, Any]:
    review = _own_review(database, user, review_id)
    update = {k: v for k, v in data.items() if v is not None}
    update["updated_at"] = utcnow()
    updated = database["review"].find_one_and_update({"_id": review["_id"]}, {"$set": update},
                                                     return_document=ReturnDocument.AFTER)
    refresh_product_rating(database, review["product_id"])
    return serialize_doc(updated)


def delete_review(database: Database, user: Dict[str, Any], review_id: str) -> None:
    review = _own_review(database, user, review_id)
    database["review"].delete_one({"_id": review["_id"]})
    refresh_product_rating(database, review["product_id"])
