from datetime import datetime, time, timedelta, timezone
from typing import Any, Dict, Optional

from pricing import money
from schemas import COMPLETED_STATUSES, FAILED_STATUSES


def _naive_utc(value: datetime) -> datetime:
    # the store keeps naive UTC datetimes
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def day_range(start: Optional[datetime] = None, end: Optional[datetime] = None):
    """Defaults to the current UTC day."""
    today = datetime.now(timezone.utc).date()
    if start is None:
        start = datetime.combine(today, time.min)
    if end is None:
        end = datetime.combine(today, time.min) + timedelta(days=1) - timedelta(milliseconds=1)
    return _naive_utc(start), _naive_utc(end)


def _current_in(slugs) -> Dict[str, Any]:
    return {"status": {"$elemMatch": {"slug": {"$in": list(slugs)}, "stage": "current"}}}


def dashboard_stats(db, start: Optional[datetime] = None, end: Optional[datetime] = None) -> Dict[str, Any]:
    start, end = day_range(start, end)
    created = {"created_at": {"$gte": start, "$lte": end}}
    touched = {"updated_at": {"$gte": start, "$lte": end}}

    orders = list(db["order"].find(created, {"grand_total": 1, "total_purchase_price": 1}))
    total_amount = sum(o.get("grand_total") or 0 for o in orders)
    purchase_amount = sum(o.get("total_purchase_price") or 0 for o in orders)

    completed = list(db["order"].find({**_current_in(COMPLETED_STATUSES), **touched}, {"grand_total": 1}))
    completed_amount = sum(o.get("grand_total") or 0 for o in completed)

    return {
        "orders": {
            "total": len(orders),
            "totalAmount": money(total_amount),
            "totalPurchaseAmount": money(purchase_amount),
            "grossProfit": money(completed_amount - purchase_amount),
            "completedAmount": money(completed_amount),
            "totalCompletedOrders": len(completed),
            "canceledCount": db["order"].count_documents({**_current_in(FAILED_STATUSES), **touched}),
            "totalPendingOrders": db["order"].count_documents({**_current_in(["pending"]), **touched}),
        },
        "products": {
            "total": db["product"].count_documents({}),
            "updatedInRange": db["product"].count_documents(touched),
        },
        "users": {
            "activeCreatedInRange": db["user"].count_documents({"status": "active", **created}),
        },
        "meta": {"startDate": start, "endDate": end},
    }
