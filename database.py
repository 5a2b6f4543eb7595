"""
MongoDB access for the storefront.

`db` is the process-wide database handle; request handlers receive it through
the `get_db` dependency so tests can swap in an in-memory database.
"""
from datetime import datetime, timezone
from typing import Any, Optional, Union

import structlog
from bson import ObjectId
from bson.errors import InvalidId
from pymongo import ASCENDING, DESCENDING, MongoClient
from pymongo.database import Database

from config import settings
from errors import InvalidIdError

logger = structlog.get_logger(__name__)

client = MongoClient(settings.DATABASE_URL, serverSelectionTimeoutMS=5000)
db = client[settings.DATABASE_NAME]


def get_db() -> Database:
    return db


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    # pymongo hands back naive datetimes that are already UTC
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def query_time(value: datetime) -> datetime:
    # naive UTC compares the same way against stored dates on every driver
    return as_utc(value).astimezone(timezone.utc).replace(tzinfo=None)


def to_object_id(id_str: Union[str, ObjectId], field: str = "id") -> ObjectId:
    if isinstance(id_str, ObjectId):
        return id_str
    try:
        return ObjectId(id_str)
    except (InvalidId, TypeError):
        raise InvalidIdError(f"Invalid {field}", errors=[{"field": field, "message": "Invalid id format"}])


def serialize_doc(doc: Any) -> Any:
    if isinstance(doc, list):
        return [serialize_doc(x) for x in doc]
    if isinstance(doc, ObjectId):
        return str(doc)
    if isinstance(doc, datetime):
        return as_utc(doc).isoformat()
    if not isinstance(doc, dict):
        return doc
    out = {}
    for k, v in doc.items():
        if k == "_id":
            out["id"] = serialize_doc(v)
        else:
            out[k] = serialize_doc(v)
    return out


def ensure_indexes(database: Database) -> None:
    database["user"].create_index("phone", unique=True)
    database["product"].create_index("slug", unique=True)
    database["product"].create_index([("category_id", ASCENDING), ("is_active", ASCENDING)])
    database["category"].create_index("slug", unique=True)
    database["cart"].create_index("user_id", unique=True)
    database["wishlist"].create_index("user_id", unique=True)
    database["order"].create_index("order_number", unique=True)
    database["order"].create_index([("user_id", ASCENDING), ("created_at", DESCENDING)])
    database["order"].create_index("gateway.order_id")
    database["order"].create_index("gateway.payment_id")
    database["otp"].create_index("phone")
    database["coupon"].create_index("code", unique=True)
    database["review"].create_index([("product_id", ASCENDING), ("user_id", ASCENDING)], unique=True)
    logger.info("indexes_ensured", database=database.name)
