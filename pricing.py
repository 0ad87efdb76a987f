"""
Price derivation for cart and order lines.

base price -> selling price (pricing policy) -> discounted price -> line total,
then cart/order totals with delivery charge and platform fee. Nothing in here
touches the database; products come in already resolved by `catalog`.
"""
from decimal import Decimal, ROUND_HALF_UP
from typing import Iterable, List

from pydantic import BaseModel

from schemas import Settings

MRP_TAG = "mrp"

_CENT = Decimal("0.01")


def money(value) -> float:
    """Round to 2 decimal places, halves away from zero."""
    return float(Decimal(str(value or 0)).quantize(_CENT, rounding=ROUND_HALF_UP))


def display_amount(value):
    value = money(value)
    if value == int(value):
        return int(value)
    return value


def apply_margin(price: float, margin: float) -> float:
    return price + (price * (margin or 0)) / 100


def apply_discount(price: float, discount: float) -> float:
    return price - (price * (discount or 0)) / 100


# -----------------------------
# Pricing policies
# -----------------------------
class PricingPolicy:
    name = None

    def selling_price(self, product, settings: Settings) -> float:
        raise NotImplementedError


class TagMarginPolicy(PricingPolicy):
    """Markup from the product's tags.

    A tag named "mrp" (any case) together with a non-zero `mrp_price` sets the
    selling price to `mrp_price` outright. Otherwise the largest tag margin is
    applied to the base price; tag margins are never summed or averaged.
    """

    name = "tag"

    def selling_price(self, product, settings: Settings) -> float:
        has_mrp_tag = any((t.name or "").lower() == MRP_TAG for t in product.tags)
        if has_mrp_tag and product.mrp_price:
            return float(product.mrp_price)
        max_margin = max([t.margin or 0 for t in product.tags] or [0])
        return apply_margin(product.price, max_margin)


class CategoryMarginPolicy(PricingPolicy):
    """Deprecated: global `profit_margin` for products in the profit categories."""

    name = "category"

    def selling_price(self, product, settings: Settings) -> float:
        slugs = {s.lower() for s in product.category_slugs}
        profit_categories = {c.lower() for c in settings.profit_categories}
        if slugs & profit_categories:
            return apply_margin(product.price, settings.profit_margin)
        return float(product.price)


POLICIES = {
    TagMarginPolicy.name: TagMarginPolicy,
    CategoryMarginPolicy.name: CategoryMarginPolicy,
}


def get_policy(name: str) -> PricingPolicy:
    try:
        return POLICIES[(name or TagMarginPolicy.name).lower()]()
    except KeyError:
        raise ValueError(f"Unknown pricing policy: {name}")


# -----------------------------
# Lines and totals
# -----------------------------
class LinePrice(BaseModel):
    """Unit prices at full precision; callers round only what they store or show."""

    product: str
    quantity: int
    base_price: float
    selling_price: float
    discounted_price: float

    @property
    def total_price(self) -> float:
        return self.discounted_price * self.quantity

    @property
    def purchase_price(self) -> float:
        return self.base_price * self.quantity

    @property
    def discount_amount(self) -> float:
        return (self.selling_price - self.discounted_price) * self.quantity


class Totals(BaseModel):
    sub_total: float
    discount: float
    delivery_charge: float
    platform_fee: float
    grand_total: float
    total_purchase_price: float
    profit: float


def price_line(product, quantity: int, policy: PricingPolicy, settings: Settings) -> LinePrice:
    selling = policy.selling_price(product, settings)
    return LinePrice(
        product=product.id,
        quantity=quantity,
        base_price=float(product.price),
        selling_price=selling,
        discounted_price=apply_discount(selling, product.discount),
    )


def summarize(lines: Iterable[LinePrice], delivery_charge: float = 0, platform_fee: float = 0) -> Totals:
    lines: List[LinePrice] = list(lines)
    sub_total = sum(l.selling_price * l.quantity for l in lines)
    discount = sum(l.discount_amount for l in lines)
    purchase = sum(l.purchase_price for l in lines)
    grand_total = sub_total - discount + (delivery_charge or 0) + (platform_fee or 0)
    return Totals(
        sub_total=money(sub_total),
        discount=money(discount),
        delivery_charge=money(delivery_charge),
        platform_fee=money(platform_fee),
        grand_total=money(grand_total),
        total_purchase_price=money(purchase),
        profit=money(grand_total - purchase),
    )
