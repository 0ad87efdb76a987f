"""
Orders: checkout from a cart, the status timeline, admin line corrections and
the customer/admin projections.

Line prices are frozen when the order is placed. Nothing here reprices an
order from the catalog afterwards; only `edit_order_item` changes them.
"""
import logging
import re
from typing import Any, Dict, List, Optional

from fastapi import Request
from pydantic import BaseModel, Field
from bson import ObjectId
from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError

from catalog import lookup_products
from database import now, oid
from errors import ConflictError, NotFoundError, ValidationError
from pagination import paginate
from pricing import PricingPolicy, money, price_line, summarize
from schemas import (
    FAILED_STATUSES,
    ORDER_STATUSES,
    Address,
    Order,
    OrderLine,
    StatusEntry,
    Unit,
    User,
)
from shop_settings import ShopSettings

logger = logging.getLogger(__name__)


class PlaceOrderRequest(BaseModel):
    name: str = Field(..., min_length=1)
    phone: str = Field(..., min_length=1)
    address: Address
    cart_id: str
    payment_method: str = "cash-on-delivery"


class EditOrderItemRequest(BaseModel):
    product_id: str
    weight: Optional[float] = Field(None, ge=0)
    unit: Optional[Unit] = None
    total_price: Optional[float] = Field(None, ge=0)
    purchase_price: Optional[float] = Field(None, ge=0)


# -----------------------------
# Helpers
# -----------------------------
def initial_status(stamp) -> List[StatusEntry]:
    return [
        StatusEntry(name=name, slug=slug, stage="current" if i == 0 else "pending", updatedAt=stamp)
        for i, (name, slug) in enumerate(ORDER_STATUSES)
    ]


def next_order_id(db) -> str:
    """Human readable, monotonically increasing order number from an atomic counter.

    The counter starts after the orders already stored, so ids numbered by
    count before the counter existed are not reissued.
    """
    counters = db["counter"]
    if counters.find_one({"_id": "order_id"}) is None:
        counters.update_one(
            {"_id": "order_id"},
            {"$setOnInsert": {"seq": db["order"].count_documents({})}},
            upsert=True,
        )
    counter = counters.find_one_and_update(
        {"_id": "order_id"},
        {"$inc": {"seq": 1}},
        upsert=True,
        return_document=ReturnDocument.AFTER,
    )
    return str(counter["seq"])


def current_status(order: dict) -> Optional[dict]:
    return next((s for s in order.get("status", []) if s.get("stage") == "current"), None)


def _get_order(db, order_id: str) -> dict:
    _id = oid(order_id)
    if not _id:
        raise ValidationError("Invalid order ID")
    order = db["order"].find_one({"_id": _id})
    if not order:
        raise NotFoundError("Order not found")
    return order


def _find_or_create_user(db, name: str, phone: str, address: Address) -> dict:
    stamp = now()
    user = User(name=name, phone=phone, address=[address], status="placeholder").model_dump()
    user["address"][0]["_id"] = ObjectId()
    return db["user"].find_one_and_update(
        {"phone": phone},
        {"$setOnInsert": {**user, "created_at": stamp, "updated_at": stamp}},
        upsert=True,
        return_document=ReturnDocument.AFTER,
    )


# Stock ledger
def _decrement_stock(db, product_id: str, quantity: int):
    db["product"].update_one({"_id": oid(product_id)}, {"$inc": {"stock": -quantity}})


def _restore_stock(db, product_id: str, quantity: int):
    db["product"].update_one({"_id": oid(product_id)}, {"$inc": {"stock": quantity}})


# -----------------------------
# Checkout
# -----------------------------
def place_order(db, payload: PlaceOrderRequest, policy: PricingPolicy, settings_store: ShopSettings) -> dict:
    cart_id = oid(payload.cart_id)
    if not cart_id:
        raise ValidationError("Invalid cart ID")
    cart = db["cart"].find_one({"_id": cart_id})
    if not cart:
        raise NotFoundError("Cart not found")
    lines = cart.get("cart_products") or []
    if not lines:
        raise ValidationError("Cart is empty")

    products = lookup_products(db, [l["product"] for l in lines])
    missing = [l["product"] for l in lines if l["product"] not in products]
    if missing:
        raise ConflictError(f"Products no longer available: {', '.join(missing)}")

    settings = settings_store.get()
    line_prices = [price_line(products[l["product"]], l["quantity"], policy, settings) for l in lines]
    items = [
        OrderLine(
            product=lp.product,
            quantity=lp.quantity,
            base_price=money(lp.base_price),
            selling_price=money(lp.selling_price),
            discounted_price=money(lp.discounted_price),
            total_price=money(lp.total_price),
            purchase_price=money(lp.purchase_price),
            weight=products[lp.product].weight,
            unit=products[lp.product].unit,
        )
        for lp in line_prices
    ]
    totals = summarize(line_prices, settings.delivery_charge, settings.platform_fee)

    stamp = now()
    order = Order(
        order_id=next_order_id(db),
        name=payload.name,
        phone=payload.phone,
        address=payload.address,
        payment_method=payload.payment_method,
        deviceId=cart.get("deviceId"),
        items=items,
        status=initial_status(stamp),
        **totals.model_dump(),
    ).model_dump()
    order["created_at"] = stamp
    order["updated_at"] = stamp

    _commit_order(db, order, cart)
    _find_or_create_user(db, payload.name, payload.phone, payload.address)
    logger.info("order %s placed by %s, grand total %s", order["order_id"], order["phone"], order["grand_total"])
    return order


def _commit_order(db, order: dict, cart: dict):
    """Decrement stock, insert the order and drop the cart, undoing applied steps on failure."""
    decremented = []
    inserted_id = None
    try:
        for item in order["items"]:
            _decrement_stock(db, item["product"], item["quantity"])
            decremented.append(item)
        try:
            inserted_id = db["order"].insert_one(order).inserted_id
            order["_id"] = inserted_id
        except DuplicateKeyError:
            raise ConflictError(f"Order {order['order_id']} already exists")
        db["cart"].delete_one({"_id": cart["_id"]})
    except Exception:
        logger.warning("order %s not placed, restoring stock for %d item(s)", order["order_id"], len(decremented))
        for item in decremented:
            _restore_stock(db, item["product"], item["quantity"])
        if inserted_id is not None:
            db["order"].delete_one({"_id": inserted_id})
        raise


# -----------------------------
# Status timeline
# -----------------------------
def update_order_status(db, order_id: str, new_status: str) -> dict:
    """Move the timeline so `new_status` is current.

    Earlier entries become completed and later ones pending. Any slug on the
    timeline is reachable from any state. updatedAt only moves on entries whose
    stage actually changed, so re-applying the same status is a no-op.
    """
    order = _get_order(db, order_id)
    statuses = order.get("status", [])
    index = next((i for i, s in enumerate(statuses) if s["slug"] == new_status), None)
    if index is None:
        raise ValidationError("Invalid order status")

    stamp = now()
    changed = False
    for i, status in enumerate(statuses):
        stage = "completed" if i < index else "current" if i == index else "pending"
        if status["stage"] != stage:
            status["stage"] = stage
            status["updatedAt"] = stamp
            changed = True

    if changed:
        order["updated_at"] = stamp
        db["order"].update_one({"_id": order["_id"]}, {"$set": {"status": statuses, "updated_at": stamp}})
        logger.info("order %s moved to %s", order.get("order_id"), new_status)
    return order


# -----------------------------
# Admin line correction
# -----------------------------
def recompute_order_totals(order: dict) -> Dict[str, float]:
    items = order.get("items", [])
    sub_total = sum(i["selling_price"] * i["quantity"] for i in items)
    discount = sum((i["selling_price"] - i["discounted_price"]) * i["quantity"] for i in items)
    total_purchase_price = sum(i.get("purchase_price") or 0 for i in items)
    items_total = sum(i.get("total_price") or 0 for i in items)
    grand_total = items_total + (order.get("delivery_charge") or 0) + (order.get("platform_fee") or 0)
    return {
        "sub_total": money(sub_total),
        "discount": money(discount),
        "total_purchase_price": money(total_purchase_price),
        "grand_total": money(grand_total),
        "profit": money(grand_total - total_purchase_price),
    }


def edit_order_item(db, order_id: str, payload: EditOrderItemRequest) -> dict:
    if not oid(order_id) or not oid(payload.product_id):
        raise ValidationError("Invalid Order or Product ID")
    order = _get_order(db, order_id)

    item = next((i for i in order.get("items", []) if i["product"] == payload.product_id), None)
    if item is None:
        raise NotFoundError("Product not found in order")

    for field in ("weight", "unit", "total_price", "purchase_price"):
        value = getattr(payload, field)
        if value is not None:
            item[field] = money(value) if field.endswith("_price") else value
    item["edited"] = True

    totals = recompute_order_totals(order)
    order.update(totals)
    order["updated_at"] = now()
    db["order"].update_one(
        {"_id": order["_id"]},
        {"$set": {"items": order["items"], "updated_at": order["updated_at"], **totals}},
    )
    logger.info("order %s line %s edited", order.get("order_id"), payload.product_id)
    return order


# -----------------------------
# Projections
# -----------------------------
def collapse_failed_statuses(statuses: List[dict]) -> List[dict]:
    """Customer timeline: failed slugs are hidden, and a current failure shows as one 'Canceled' entry."""
    failed = next((s for s in statuses if s["slug"] in FAILED_STATUSES and s["stage"] == "current"), None)
    visible = [dict(s) for s in statuses if s["slug"] not in FAILED_STATUSES]
    if failed:
        visible.append({"name": "Canceled", "slug": "canceled", "stage": "current", "updatedAt": failed.get("updatedAt") or now()})
    return visible


def _product_names(db, order: dict) -> Dict[str, Any]:
    products = lookup_products(db, [i["product"] for i in order.get("items", [])])
    return {pid: p.name for pid, p in products.items()}


def _base_projection(order: dict) -> Dict[str, Any]:
    return {
        "_id": order["_id"],
        "order_id": order["order_id"],
        "name": order["name"],
        "phone": order["phone"],
        "address": order.get("address"),
        "payment_method": order.get("payment_method"),
        "created_at": order.get("created_at"),
        "sub_total": order.get("sub_total", 0),
        "discount": order.get("discount", 0),
        "delivery_charge": order.get("delivery_charge", 0),
        "platform_fee": order.get("platform_fee", 0),
        "grand_total": order.get("grand_total", 0),
        "is_price_edited": any(i.get("edited") for i in order.get("items", [])),
    }


def get_order_details(db, order_id: str, phone: Optional[str] = None) -> dict:
    order = _get_order(db, order_id)
    if phone is not None and order.get("phone") != phone:
        raise NotFoundError("Order not found")
    names = _product_names(db, order)
    view = _base_projection(order)
    view["products"] = [
        {
            "product": i["product"],
            "name": names.get(i["product"]),
            "quantity": i["quantity"],
            "selling_price": i["selling_price"],
            "discounted_price": i["discounted_price"],
            "total_price": i["total_price"],
            "weight": i.get("weight"),
            "unit": i.get("unit"),
        }
        for i in order.get("items", [])
    ]
    view["status"] = collapse_failed_statuses(order.get("status", []))
    return view


def get_admin_order_details(db, order_id: str) -> dict:
    order = _get_order(db, order_id)
    names = _product_names(db, order)
    view = _base_projection(order)
    view.update({
        "deviceId": order.get("deviceId"),
        "total_purchase_price": order.get("total_purchase_price", 0),
        "profit": order.get("profit", 0),
        "status": order.get("status", []),
    })
    view["products"] = [
        {
            "product": i["product"],
            "name": names.get(i["product"]),
            "quantity": i["quantity"],
            "base_price": i["base_price"],
            "selling_price": i["selling_price"],
            "discounted_price": i["discounted_price"],
            "total_price": i["total_price"],
            "purchase_price": i.get("purchase_price", i["base_price"] * i["quantity"]),
            "weight": i.get("weight"),
            "unit": i.get("unit"),
            "edited": i.get("edited", False),
        }
        for i in order.get("items", [])
    ]
    return view


# -----------------------------
# Listings
# -----------------------------
def _current_status_filter(status: str) -> Dict[str, Any]:
    return {"status": {"$elemMatch": {"slug": status, "stage": "current"}}}


def _customer_summary(order: dict) -> dict:
    current = current_status(order)
    return {
        "_id": order["_id"],
        "order_id": order["order_id"],
        "created_at": order.get("created_at"),
        "status": current["name"] if current else "unknown",
        "grand_total": order.get("grand_total", 0),
    }


def list_customer_orders(db, request: Request, phone: str, status: Optional[str] = None,
                         order_id: Optional[str] = None) -> dict:
    query: Dict[str, Any] = {"phone": phone}
    if order_id:
        query["order_id"] = order_id
    if status:
        query.update(_current_status_filter(status))
    return paginate(db["order"], query, request, sort=[("created_at", -1)], transform=_customer_summary)


def list_all_orders(db, request: Request, search: Optional[str] = None, status: Optional[str] = None) -> dict:
    query: Dict[str, Any] = {}
    if search:
        pattern = re.escape(search)
        query["$or"] = [
            {"phone": {"$regex": pattern, "$options": "i"}},
            {"order_id": {"$regex": pattern, "$options": "i"}},
        ]
    if status:
        query.update(_current_status_filter(status))
    return paginate(db["order"], query, request, sort=[("created_at", -1)])


def customer_order_summary(db, request: Request, search: Optional[str] = None) -> dict:
    """Paginated customers with their order count, total spent and last order date."""
    query: Dict[str, Any] = {"role": "user"}
    if search:
        pattern = re.escape(search)
        query["$or"] = [
            {"name": {"$regex": pattern, "$options": "i"}},
            {"phone": {"$regex": pattern, "$options": "i"}},
        ]
    page = paginate(db["user"], query, request, sort=[("created_at", -1)])

    phones = [u["phone"] for u in page["results"]]
    grouped = db["order"].aggregate([
        {"$match": {"phone": {"$in": phones}}},
        {"$group": {
            "_id": "$phone",
            "total_orders": {"$sum": 1},
            "total_amount": {"$sum": "$grand_total"},
            "last_order_date": {"$max": "$created_at"},
        }},
    ])
    by_phone = {g["_id"]: g for g in grouped}

    page["results"] = [
        {
            "_id": u["_id"],
            "name": u.get("name"),
            "phone": u["phone"],
            "status": u.get("status"),
            "total_orders": by_phone.get(u["phone"], {}).get("total_orders", 0),
            "total_amount": money(by_phone.get(u["phone"], {}).get("total_amount", 0)),
            "last_order_date": by_phone.get(u["phone"], {}).get("last_order_date"),
        }
        for u in page["results"]
    ]
    return page
