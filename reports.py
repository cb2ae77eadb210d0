"""Grouped statistics and reports over whole collections. Small datasets: a full scan per request is fine."""
from datetime import datetime, timedelta, timezone
from typing import Optional

from fastapi import APIRouter, Depends, Query

import config
from crud import ok
from database import collection, utcnow
from errors import ValidationError
from ledger import NOT_CANCELLED, money
from query_features import parse_datetime
from schemas import OPEN_PAYMENT_STATUSES
from security import Principal, get_current_user, require_admin

router = APIRouter(prefix="/reports", tags=["reports"])

SALES_PERIOD_DAYS = 30
SLOW_MOVING_DAYS = 30
DATE_PARTS = {
    "year": {"$year": "$created_at"},
    "month": {"$month": "$created_at"},
    "week": {"$week": "$created_at"},
    "day": {"$dayOfMonth": "$created_at"},
}
# quarters are folded from months after grouping
GROUP_KEYS = {
    "day": ("year", "month", "day"),
    "week": ("year", "week"),
    "month": ("year", "month"),
    "quarter": ("year", "month"),
    "year": ("year",),
}
INVENTORY_SORT_FIELDS = ("name", "sku", "category", "stock", "price", "cost_price")


def product_stats() -> list:
    pipeline = [
        {"$group": {
            "_id": "$category",
            "count": {"$sum": 1},
            "total_stock": {"$sum": "$stock"},
            "avg_price": {"$avg": "$price"},
            "min_price": {"$min": "$price"},
            "max_price": {"$max": "$price"},
        }},
        {"$sort": {"avg_price": 1}},
    ]
    return list(collection("product").aggregate(pipeline))


def customer_stats(owner: Optional[str] = None) -> dict:
    match = {"owner": owner} if owner else {}
    customers = collection("customer")
    by_type = list(customers.aggregate([
        {"$match": match},
        {"$group": {
            "_id": "$customer_type",
            "count": {"$sum": 1},
            "total_outstanding": {"$sum": "$outstanding_balance"},
            "avg_outstanding": {"$avg": "$outstanding_balance"},
        }},
    ]))
    return {
        "total": customers.count_documents(match),
        "with_outstanding_balance": customers.count_documents({**match, "outstanding_balance": {"$gt": 0}}),
        "by_type": by_type,
    }


def user_stats() -> dict:
    users = collection("user")
    by_role = list(users.aggregate([
        {"$group": {"_id": "$role", "count": {"$sum": 1}}},
    ]))
    total = users.count_documents({})
    active = users.count_documents({"is_active": True})
    return {
        "total": total,
        "active": active,
        "inactive": total - active,
        "by_role": by_role,
    }


def invoice_stats(created_by: Optional[str] = None) -> dict:
    match = {"created_by": created_by} if created_by else {}
    invoices = collection("invoice")
    by_status = list(invoices.aggregate([
        {"$match": match},
        {"$group": {
            "_id": "$payment_status",
            "count": {"$sum": 1},
            "total_amount": {"$sum": "$total"},
            "paid_amount": {"$sum": "$paid_amount"},
        }},
        {"$sort": {"_id": 1}},
    ]))
    return {
        "total": invoices.count_documents(match),
        "by_payment_status": by_status,
    }


def top_products(limit: int = 10, match: Optional[dict] = None, by: str = "total_quantity") -> list:
    """Best sellers from invoice lines; cancelled invoices do not count."""
    pipeline = [
        {"$match": {**(match or {}), "status": NOT_CANCELLED}},
        {"$unwind": "$items"},
        {"$group": {
            "_id": "$items.product",
            "name": {"$first": "$items.name"},
            "total_quantity": {"$sum": "$items.quantity"},
            "total_revenue": {"$sum": "$items.total"},
        }},
        {"$sort": {by: -1, "_id": 1}},
        {"$limit": limit},
    ]
    return list(collection("invoice").aggregate(pipeline))


def top_customers(match: dict, limit: int = 5) -> list:
    pipeline = [
        {"$match": match},
        {"$group": {
            "_id": "$customer",
            "name": {"$first": "$customer_details.name"},
            "total_spent": {"$sum": "$total"},
            "invoice_count": {"$sum": 1},
        }},
        {"$sort": {"total_spent": -1, "_id": 1}},
        {"$limit": limit},
    ]
    return list(collection("invoice").aggregate(pipeline))


def _as_utc(value: datetime) -> datetime:
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


def _period_label(key: dict, group_by: str) -> str:
    year = key["year"]
    if group_by == "day":
        return f"{year:04d}-{key['month']:02d}-{key['day']:02d}"
    if group_by == "week":
        return f"{year:04d}-W{key['week']:02d}"
    if group_by == "month":
        return f"{year:04d}-{key['month']:02d}"
    if group_by == "quarter":
        return f"{year:04d}-Q{(key['month'] - 1) // 3 + 1}"
    return f"{year:04d}"


def sales_report(
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    group_by: str = "day",
    created_by: Optional[str] = None,
    customer: Optional[str] = None,
    payment_status: Optional[str] = None,
) -> dict:
    """Invoice totals bucketed by period, with the best customers and products of the range.

    The range defaults to the last 30 days. Cancelled invoices are left out.
    """
    if group_by not in GROUP_KEYS:
        raise ValidationError("Invalid group_by parameter")
    if payment_status is not None and payment_status not in (*OPEN_PAYMENT_STATUSES, "paid"):
        raise ValidationError("Invalid payment_status parameter")
    end = _as_utc(end) if end else utcnow()
    start = _as_utc(start) if start else end - timedelta(days=SALES_PERIOD_DAYS)
    if start > end:
        raise ValidationError("start_date must be before end_date")

    match = {"created_at": {"$gte": start, "$lte": end}, "status": NOT_CANCELLED}
    if created_by:
        match["created_by"] = created_by
    if customer:
        match["customer"] = customer
    if payment_status:
        match["payment_status"] = payment_status

    rows = collection("invoice").aggregate([
        {"$match": match},
        {"$group": {
            "_id": {part: DATE_PARTS[part] for part in GROUP_KEYS[group_by]},
            "invoice_count": {"$sum": 1},
            "total_sales": {"$sum": "$total"},
            "total_tax": {"$sum": "$tax_amount"},
            "total_paid": {"$sum": "$paid_amount"},
        }},
    ])
    periods = {}
    for row in rows:
        label = _period_label(row["_id"], group_by)
        bucket = periods.setdefault(label, {
            "period": label, "invoice_count": 0, "total_sales": 0, "total_tax": 0, "total_paid": 0,
        })
        for field in ("invoice_count", "total_sales", "total_tax", "total_paid"):
            bucket[field] += row[field]
    ordered = [
        {**bucket, **{f: money(bucket[f]) for f in ("total_sales", "total_tax", "total_paid")}}
        for _, bucket in sorted(periods.items())
    ]

    invoice_count = sum(p["invoice_count"] for p in ordered)
    total_sales = money(sum(p["total_sales"] for p in ordered))
    return {
        "start_date": start,
        "end_date": end,
        "group_by": group_by,
        "summary": {
            "invoice_count": invoice_count,
            "total_sales": total_sales,
            "total_tax": money(sum(p["total_tax"] for p in ordered)),
            "total_paid": money(sum(p["total_paid"] for p in ordered)),
            "average_invoice_value": money(total_sales / invoice_count) if invoice_count else 0,
        },
        "periods": ordered,
        "top_customers": top_customers(match),
        "top_products": top_products(10, match, by="total_revenue"),
    }


def stock_status(stock: int) -> str:
    if stock <= 0:
        return "out-of-stock"
    if stock <= config.LOW_STOCK_THRESHOLD:
        return "low-stock"
    return "in-stock"


def slow_moving(days: int = SLOW_MOVING_DAYS, limit: int = 10) -> list:
    """Active, stocked products that sold least over the last ``days`` days."""
    since = utcnow() - timedelta(days=days)
    sold = {
        row["_id"]: row["quantity"]
        for row in collection("invoice").aggregate([
            {"$match": {"status": NOT_CANCELLED, "created_at": {"$gte": since}}},
            {"$unwind": "$items"},
            {"$group": {"_id": "$items.product", "quantity": {"$sum": "$items.quantity"}}},
        ])
    }
    rows = [
        {
            "_id": product["_id"],
            "name": product["name"],
            "sku": product.get("sku"),
            "stock": product["stock"],
            "total_sold": sold.get(str(product["_id"]), 0),
        }
        for product in collection("product").find({"is_active": True, "stock": {"$gt": 0}})
    ]
    rows.sort(key=lambda row: (row["total_sold"], row["name"]))
    return rows[:limit]


def inventory_report(
    category: Optional[str] = None,
    min_stock: Optional[int] = None,
    max_stock: Optional[int] = None,
    sort_by: str = "name",
    sort_order: str = "asc",
) -> dict:
    if sort_by not in INVENTORY_SORT_FIELDS:
        raise ValidationError(f"Cannot sort inventory by {sort_by}")
    if sort_order not in ("asc", "desc"):
        raise ValidationError("sort_order must be asc or desc")

    query = {}
    if category:
        query["category"] = category
    stock_range = {}
    if min_stock is not None:
        stock_range["$gte"] = min_stock
    if max_stock is not None:
        stock_range["$lte"] = max_stock
    if stock_range:
        query["stock"] = stock_range

    direction = 1 if sort_order == "asc" else -1
    projection = {field: 1 for field in INVENTORY_SORT_FIELDS}
    products = []
    for product in collection("product").find(query, projection).sort([(sort_by, direction), ("_id", 1)]):
        cost = product.get("cost_price") or 0
        product["inventory_value"] = money(product["stock"] * cost)
        product["profit_margin"] = money((product["price"] - cost) / cost * 100) if cost else 0
        product["stock_status"] = stock_status(product["stock"])
        products.append(product)

    by_category = list(collection("product").aggregate([
        {"$match": query},
        {"$group": {
            "_id": "$category",
            "count": {"$sum": 1},
            "total_stock": {"$sum": "$stock"},
            "total_value": {"$sum": {"$multiply": ["$stock", {"$ifNull": ["$cost_price", 0]}]}},
        }},
        {"$sort": {"total_value": -1, "_id": 1}},
    ]))

    return {
        "summary": {
            "total_products": len(products),
            "total_items": sum(p["stock"] for p in products),
            "total_inventory_value": money(sum(p["inventory_value"] for p in products)),
            "out_of_stock": sum(1 for p in products if p["stock_status"] == "out-of-stock"),
            "low_stock": sum(1 for p in products if p["stock_status"] == "low-stock"),
            "categories": len({p["category"] for p in products}),
        },
        "by_category": by_category,
        "slow_moving": slow_moving(),
        "products": products,
    }


def _date_param(name: str, raw: Optional[str]) -> Optional[datetime]:
    if not raw:
        return None
    try:
        return parse_datetime(raw)
    except ValueError:
        raise ValidationError(f"Invalid {name}. Use YYYY-MM-DD")


@router.get("/sales")
def get_sales_report(
    start_date: Optional[str] = None,
    end_date: Optional[str] = None,
    group_by: str = "day",
    customer: Optional[str] = None,
    payment_status: Optional[str] = None,
    principal: Principal = Depends(get_current_user),
):
    return ok(sales_report(
        _date_param("start_date", start_date),
        _date_param("end_date", end_date),
        group_by,
        created_by=None if principal.is_admin else principal.id,
        customer=customer,
        payment_status=payment_status,
    ))


@router.get("/inventory")
def get_inventory_report(
    category: Optional[str] = None,
    min_stock: Optional[int] = Query(None, ge=0),
    max_stock: Optional[int] = Query(None, ge=0),
    sort_by: str = "name",
    sort_order: str = "asc",
    _: Principal = Depends(require_admin),
):
    return ok(inventory_report(category, min_stock, max_stock, sort_by, sort_order))
