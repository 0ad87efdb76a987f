"""
Per-identity shopping carts.

A cart belongs to an anonymous device id and/or an authenticated user's phone.
Line prices and cart totals are derived from the live catalog every time the
cart is read or changed; the values stored on the cart document are only a
display cache and are overwritten before every response.
"""
import logging
from typing import Any, Dict, List, Optional, Tuple

from pydantic import BaseModel

from catalog import CatalogProduct, lookup_products
from database import create_document, now, oid
from errors import NotFoundError, ValidationError
from pricing import PricingPolicy, Totals, money, price_line, summarize
from schemas import Cart, CartLine, Settings
from shop_settings import ShopSettings

logger = logging.getLogger(__name__)

EMPTY_CART_MESSAGE = "Cart is empty"


class Identity(BaseModel):
    device_id: Optional[str] = None
    phone: Optional[str] = None

    def cart_query(self) -> Dict[str, Any]:
        if self.device_id:
            return {"deviceId": self.device_id}
        if self.phone:
            return {"phone": self.phone}
        raise ValidationError("deviceId is required")

    def order_query(self) -> Dict[str, Any]:
        clauses = []
        if self.device_id:
            clauses.append({"deviceId": self.device_id})
        if self.phone:
            clauses.append({"phone": self.phone})
        if not clauses:
            raise ValidationError("deviceId is required")
        return {"$or": clauses}


class LineInput(BaseModel):
    productId: Optional[str] = None
    quantity: Optional[int] = None


def has_prior_order(db, identity: Identity) -> bool:
    return db["order"].find_one(identity.order_query()) is not None


def delivery_charge_for(db, identity: Identity, settings: Settings) -> float:
    """First-order promotion: nothing is charged for delivery until an order exists."""
    if not has_prior_order(db, identity):
        return 0.0
    return settings.delivery_charge or 0.0


def price_cart_lines(lines: List[dict], products: Dict[str, CatalogProduct], policy: PricingPolicy,
                     settings: Settings) -> Tuple[List[CartLine], list, List[str]]:
    """Reprice stored cart lines; returns (cart lines, line prices, missing product ids)."""
    priced, line_prices, missing = [], [], []
    for line in lines:
        product = products.get(line["product"])
        if product is None:
            missing.append(line["product"])
            continue
        lp = price_line(product, line["quantity"], policy, settings)
        line_prices.append(lp)
        priced.append(CartLine(
            product=product.id,
            name=product.name,
            quantity=lp.quantity,
            price=money(lp.selling_price),
            discounted_price=money(lp.discounted_price),
            final_price=money(lp.total_price),
            weight=product.weight,
            unit=product.unit,
        ))
    return priced, line_prices, missing


def _reprice(db, cart: dict, identity: Identity, policy: PricingPolicy, settings: Settings) -> Tuple[dict, List[str]]:
    products = lookup_products(db, [l["product"] for l in cart.get("cart_products", [])])
    priced, line_prices, missing = price_cart_lines(cart.get("cart_products", []), products, policy, settings)

    if priced:
        owner = Identity(device_id=cart.get("deviceId") or identity.device_id, phone=cart.get("phone") or identity.phone)
        totals = summarize(line_prices, delivery_charge_for(db, owner, settings), settings.platform_fee)
    else:
        totals = summarize([])

    cart.update(Cart(
        deviceId=cart.get("deviceId"),
        phone=cart.get("phone"),
        cart_products=priced,
        **_cart_totals(totals),
    ).model_dump())
    if missing:
        logger.warning("cart %s references missing products: %s", cart.get("_id"), ", ".join(missing))
    return cart, missing


def _cart_totals(totals: Totals) -> Dict[str, float]:
    return {
        "sub_total": totals.sub_total,
        "discount": totals.discount,
        "delivery_charge": totals.delivery_charge,
        "platform_fee": totals.platform_fee,
        "grand_total": totals.grand_total,
    }


def _save(db, cart: dict) -> dict:
    fields = {k: v for k, v in cart.items() if k != "_id"}
    fields["updated_at"] = now()
    if cart.get("_id") is None:
        cart["_id"] = oid(create_document("cart", fields, database=db))
    else:
        db["cart"].update_one({"_id": cart["_id"]}, {"$set": fields})
    return cart


def _view(cart: dict, missing: Optional[List[str]] = None) -> dict:
    view = {
        "_id": cart["_id"],
        "deviceId": cart.get("deviceId"),
        "phone": cart.get("phone"),
        "cart_products": cart.get("cart_products", []),
        "sub_total": cart.get("sub_total", 0),
        "discount": cart.get("discount", 0),
        "delivery_charge": cart.get("delivery_charge", 0),
        "platform_fee": cart.get("platform_fee", 0),
        "grand_total": cart.get("grand_total", 0),
    }
    if missing:
        view["missing_products"] = missing
    return view


def find_cart(db, identity: Identity) -> Optional[dict]:
    return db["cart"].find_one(identity.cart_query())


def upsert_lines(db, identity: Identity, lines: List[LineInput], policy: PricingPolicy,
                 settings_store: ShopSettings) -> dict:
    """Apply quantity changes to the identity's cart and return the repriced cart.

    quantity 0 removes an existing line and is a no-op for an absent one.
    All lines are validated before the cart is touched.
    """
    identity.cart_query()
    if not lines:
        raise ValidationError("Invalid productId or quantity")
    for line in lines:
        if not line.productId or line.quantity is None or line.quantity < 0:
            raise ValidationError("Invalid productId or quantity")
        if not oid(line.productId):
            raise ValidationError(f"Invalid product id: {line.productId}")
    products = lookup_products(db, [l.productId for l in lines])
    for line in lines:
        if line.productId not in products:
            raise NotFoundError(f"Product {line.productId} not found")

    cart = find_cart(db, identity)
    if cart is None:
        cart = {"_id": None, "deviceId": identity.device_id, "phone": identity.phone, "cart_products": []}
    elif identity.phone and not cart.get("phone"):
        cart["phone"] = identity.phone

    stored = cart.setdefault("cart_products", [])
    for line in lines:
        index = next((i for i, l in enumerate(stored) if l["product"] == line.productId), None)
        if index is not None:
            if line.quantity == 0:
                stored.pop(index)
            else:
                stored[index]["quantity"] = line.quantity
        elif line.quantity > 0:
            stored.append({"product": line.productId, "quantity": line.quantity})

    settings = settings_store.get()
    cart, missing = _reprice(db, cart, identity, policy, settings)
    _save(db, cart)
    return _view(cart, missing)


def get_cart(db, identity: Identity, policy: PricingPolicy, settings_store: ShopSettings) -> dict:
    """Live-priced cart, or an explicit empty marker when there is nothing in it."""
    cart = find_cart(db, identity)
    if not cart or not cart.get("cart_products"):
        return {"message": EMPTY_CART_MESSAGE, "cart": None}

    cart, missing = _reprice(db, cart, identity, policy, settings_store.get())
    _save(db, cart)
    if not cart["cart_products"]:
        return {"message": EMPTY_CART_MESSAGE, "cart": None, "missing_products": missing}
    return _view(cart, missing)


def delete_line(db, identity: Identity, product_id: str, policy: PricingPolicy,
                settings_store: ShopSettings) -> dict:
    if not product_id:
        raise ValidationError("Product ID is required")
    cart = find_cart(db, identity)
    if not cart:
        raise NotFoundError("Cart not found")

    stored = cart.get("cart_products", [])
    index = next((i for i, l in enumerate(stored) if l["product"] == product_id), None)
    if index is None:
        raise NotFoundError("Product not found in cart")
    stored.pop(index)

    cart, missing = _reprice(db, cart, identity, policy, settings_store.get())
    _save(db, cart)
    return _view(cart, missing)
