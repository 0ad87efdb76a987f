"""
Database Schemas for Halal Bazar (MongoDB)

Each Pydantic model represents a collection in MongoDB. Collection name is the
lowercase of the class name by convention. References to other documents are
stored as ObjectId strings.
"""
from pydantic import BaseModel, Field
from typing import Optional, List, Literal, Any
from datetime import datetime

Unit = Literal["piece", "litre", "kg", "gram"]
Stage = Literal["pending", "current", "completed"]

# Fixed order timeline, in display order
ORDER_STATUSES = [
    ("Pending", "pending"),
    ("Accepted", "accepted"),
    ("Ready to Deliver", "ready-to-deliver"),
    ("On the Way", "on-the-way"),
    ("Delivered", "delivered"),
    ("Canceled", "canceled"),
    ("Rejected", "rejected"),
    ("Failed to deliver", "failed-to-deliver"),
    ("Completed", "completed"),
]
FAILED_STATUSES = ["rejected", "canceled", "return", "failed-to-deliver"]
COMPLETED_STATUSES = ["delivered", "completed"]

LEGACY_PROFIT_CATEGORIES = ["vegetable", "meat", "beef", "mutton", "chicken", "fish"]


# Catalog
class Translated(BaseModel):
    en: str
    bn: str


class TranslatedText(BaseModel):
    en: Optional[str] = None
    bn: Optional[str] = None


class Category(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    slug: str = Field(..., min_length=1, max_length=100)


class Tag(BaseModel):
    name: str = Field(..., min_length=1)
    margin: float = Field(..., ge=0, description="Markup percent")


class Product(BaseModel):
    name: Translated
    description: TranslatedText = TranslatedText()
    price: float = Field(..., ge=0, description="Base (purchase) price")
    mrp_price: Optional[float] = Field(None, ge=0, description="Fixed retail price used with the 'mrp' tag")
    discount: float = Field(0, ge=0, le=100, description="Discount percent")
    tags: List[str] = []
    categories: List[str] = []
    weight: float = Field(0, ge=0)
    unit: Unit = "kg"
    stock: int = 0
    is_published: bool = True


class ProductChange(BaseModel):
    field: str
    old_value: Any = None
    new_value: Any = None


class ProductLog(BaseModel):
    ref_id: str
    ref_model: str = "Product"
    changed_by: Optional[str] = None
    action: Literal["create", "update", "delete"]
    changes: List[ProductChange] = []


# Cart
class CartLine(BaseModel):
    product: str
    name: dict = {}
    quantity: int = Field(..., ge=1)
    price: float = 0.0
    discounted_price: float = 0.0
    final_price: float = 0.0
    weight: float = 0.0
    unit: Unit = "kg"


class Cart(BaseModel):
    deviceId: Optional[str] = None
    phone: Optional[str] = None
    cart_products: List[CartLine] = []
    sub_total: float = 0.0
    discount: float = 0.0
    grand_total: float = 0.0
    delivery_charge: float = 0.0
    platform_fee: float = 0.0


# Orders
class Address(BaseModel):
    label: Optional[str] = None
    street: str
    area: str
    division: Optional[str] = None
    district: Optional[str] = None


class OrderLine(BaseModel):
    product: str
    quantity: int
    base_price: float
    selling_price: float
    discounted_price: float
    total_price: float
    purchase_price: float
    weight: float = 0.0
    unit: Unit = "kg"
    edited: bool = False


class StatusEntry(BaseModel):
    name: str
    slug: str
    stage: Stage
    updatedAt: datetime


class Order(BaseModel):
    order_id: str
    name: str
    phone: str
    address: Address
    payment_method: str
    deviceId: Optional[str] = None
    items: List[OrderLine]
    sub_total: float
    discount: float
    delivery_charge: float
    platform_fee: float
    grand_total: float
    total_purchase_price: float
    profit: float
    status: List[StatusEntry]


# People
class User(BaseModel):
    name: str
    phone: str
    email: Optional[str] = None
    role: Literal["user", "admin"] = "user"
    status: Literal["active", "placeholder"] = "active"
    address: List[Address] = []
    fcm_token: Optional[str] = None


# Settings (singleton)
class Settings(BaseModel):
    delivery_charge: float = 0.0
    platform_fee: float = 0.0
    profit_margin: float = 0.0
    profit_categories: List[str] = Field(default_factory=lambda: list(LEGACY_PROFIT_CATEGORIES))
