from datetime import datetime, time, timezone
from typing import Any, Dict

from pymongo.database import Database

from catalog import low_stock_variants
from database import query_time, utcnow
from orders import present_order
from pricing import round_money
from schemas import OrderStatus, PaymentStatus, Role


def dashboard(database: Database) -> Dict[str, Any]:
    orders = database["order"]
    by_status = {s.value: 0 for s in OrderStatus}
    for row in orders.aggregate([{"$group": {"_id": "$status", "count": {"$sum": 1}}}]):
        by_status[row["_id"]] = row["count"]

    revenue_rows = list(orders.aggregate([
        {"$match": {"payment_status": PaymentStatus.PAID.value}},
        {"$group": {"_id": None, "revenue": {"$sum": "$total"}, "count": {"$sum": 1}}},
    ]))
    revenue = round_money(revenue_rows[0]["revenue"]) if revenue_rows else 0.0

    start_of_day = datetime.combine(utcnow().date(), time.min, tzinfo=timezone.utc)
    recent = orders.find().sort([("created_at", -1)]).limit(5)
    top = database["product"].find({"total_sales": {"$gt": 0}}).sort([("total_sales", -1)]).limit(5)

    return {
        "orders": {
            "total": sum(by_status.values()),
            "today": orders.count_documents({"created_at": {"$gte": query_time(start_of_day)}}),
            "by_status": by_status,
        },
        "revenue": {"total": revenue, "paid_orders": revenue_rows[0]["count"] if revenue_rows else 0},
        "users": {
            "customers": database["user"].count_documents({"role": Role.CUSTOMER.value}),
            "staff": database["user"].count_documents({"role": Role.STAFF.value}),
            "vendors": database["user"].count_documents({"role": Role.VENDOR.value}),
        },
        "products": {
            "total": database["product"].count_documents({}),
            "active": database["product"].count_documents({"is_active": True}),
            "out_of_stock": database["product"].count_documents({"total_stock": {"$lte": 0}}),
        },
        "low_stock": low_stock_variants(database),
        "top_products": [{"id": str(p["_id"]), "name": p["name"], "total_sales": p["total_sales"]} for p in top],
        "recent_orders": [present_order(o) for o in recent],
    }
