import os
import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import List, Optional, Any, Dict, Union

from fastapi import BackgroundTasks, Depends, FastAPI, Header, HTTPException, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException
from pydantic import BaseModel, Field
from bson import ObjectId

import database
import carts
import catalog
import orders
import reports
import users
from errors import AuthenticationError
from notifications import LogNotifier, Notifier, notify_admins
from pagination import paginate
from pricing import PricingPolicy, display_amount, get_policy
from schemas import Address, Category, Product, Tag, Translated, TranslatedText, Unit
from shop_settings import ShopSettings

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
PRICING_POLICY = os.getenv("PRICING_POLICY", "tag")

logging.basicConfig(level=LOG_LEVEL, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
logger = logging.getLogger("halal_bazar")

# -----------------------------
# Utilities
# -----------------------------

# Amount fields rendered through display_amount. Percentages, weights and
# margins are returned untouched.
MONEY_FIELDS = {
    "price", "mrp_price", "base_price", "selling_price", "discounted_price", "final_price",
    "total_price", "purchase_price", "sub_total", "delivery_charge", "platform_fee",
    "grand_total", "total_purchase_price", "profit", "total_amount", "discount_amount",
    "totalAmount", "totalPurchaseAmount", "completedAmount", "grossProfit",
}


def to_str_id(doc: Any, key: Optional[str] = None) -> Any:
    """JSON-ready copy: `_id` becomes `id`, ObjectIds become strings and integral amounts ints."""
    if isinstance(doc, list):
        return [to_str_id(d, key) for d in doc]
    if isinstance(doc, dict):
        d = {}
        for k, v in doc.items():
            if k == "_id":
                d["id"] = str(v)
            elif k == "discount" and "sub_total" in doc:
                # cart and order discounts are amounts; a product discount is a percent
                d[k] = to_str_id(v, "discount_amount")
            else:
                d[k] = to_str_id(v, k)
        return d
    if isinstance(doc, ObjectId):
        return str(doc)
    if isinstance(doc, float) and key in MONEY_FIELDS:
        return display_amount(doc)
    return doc


# -----------------------------
# Dependencies
# -----------------------------

def get_db():
    if database.db is None:
        raise HTTPException(status_code=500, detail="Database not available")
    return database.db


def get_pricing_policy() -> PricingPolicy:
    return get_policy(PRICING_POLICY)


def get_settings_store(db=Depends(get_db)) -> ShopSettings:
    return ShopSettings(db)


_notifier = LogNotifier()


def get_notifier() -> Notifier:
    return _notifier


def get_user_phone(x_user_phone: Optional[str] = Header(None)) -> str:
    if not x_user_phone:
        raise AuthenticationError()
    return x_user_phone


# -----------------------------
# Pydantic Schemas (API layer)
# -----------------------------
class CartRequest(BaseModel):
    deviceId: Optional[str] = None
    phone: Optional[str] = None
    cart: Union[List[carts.LineInput], carts.LineInput]


class StatusRequest(BaseModel):
    newStatus: str


class ProductPatch(BaseModel):
    name: Optional[Translated] = None
    description: Optional[TranslatedText] = None
    price: Optional[float] = Field(None, ge=0)
    mrp_price: Optional[float] = Field(None, ge=0)
    discount: Optional[float] = Field(None, ge=0, le=100)
    tags: Optional[List[str]] = None
    categories: Optional[List[str]] = None
    weight: Optional[float] = Field(None, ge=0)
    unit: Optional[Unit] = None
    stock: Optional[int] = None
    is_published: Optional[bool] = None


class PublishRequest(BaseModel):
    is_published: bool


class TagPatch(BaseModel):
    name: Optional[str] = None
    margin: Optional[float] = None


class SettingsPatch(BaseModel):
    delivery_charge: Optional[float] = Field(None, ge=0)
    platform_fee: Optional[float] = Field(None, ge=0)
    profit_margin: Optional[float] = Field(None, ge=0)
    profit_categories: Optional[List[str]] = None


class AddressRequest(Address):
    address_id: Optional[str] = None


# -----------------------------
# FastAPI App
# -----------------------------
@asynccontextmanager
async def lifespan(app: FastAPI):
    if database.db is not None:
        database.ensure_indexes(database.db)
    yield


app = FastAPI(title="Halal Bazar API", version="1.0.0", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(StarletteHTTPException)
async def http_error(request: Request, exc: StarletteHTTPException):
    return JSONResponse(status_code=exc.status_code, content={"message": exc.detail})


@app.exception_handler(RequestValidationError)
async def validation_error(request: Request, exc: RequestValidationError):
    errors = exc.errors()
    first = errors[0] if errors else {}
    field = ".".join(str(p) for p in first.get("loc", []) if p != "body")
    message = f"{field}: {first.get('msg')}" if field else "Invalid request"
    return JSONResponse(status_code=400, content={"message": message, "errors": [e.get("msg") for e in errors]})


@app.exception_handler(Exception)
async def unhandled_error(request: Request, exc: Exception):
    logger.exception("unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse(status_code=500, content={"message": str(exc)})


@app.get("/")
def root():
    return {"message": "Halal Bazar backend running", "driver": "mongodb", "db": os.getenv("DATABASE_NAME"), "pricing_policy": PRICING_POLICY}


@app.get("/health")
def health(db=Depends(get_db)):
    db.command("ping")
    return {"status": "ok"}


# -----------------------------
# Catalog (public)
# -----------------------------
@app.get("/products")
def list_products(request: Request, q: Optional[str] = Query(None, description="Search by name"),
                  category_id: Optional[str] = None, db=Depends(get_db)):
    query = catalog.product_query(q, category_id, published_only=True)
    return to_str_id(paginate(db["product"], query, request, sort=[("created_at", -1)]))


@app.get("/products/{product_id}")
def get_product(product_id: str, db=Depends(get_db)):
    return to_str_id(catalog.get_product(db, product_id, published_only=True))


@app.get("/categories")
def list_categories(db=Depends(get_db)):
    return to_str_id(list(db["category"].find({}).sort("name", 1)))


# -----------------------------
# Cart
# -----------------------------
@app.post("/cart")
def upsert_cart(payload: CartRequest, db=Depends(get_db), policy: PricingPolicy = Depends(get_pricing_policy),
                settings_store: ShopSettings = Depends(get_settings_store)):
    lines = payload.cart if isinstance(payload.cart, list) else [payload.cart]
    identity = carts.Identity(device_id=payload.deviceId, phone=payload.phone)
    cart = carts.upsert_lines(db, identity, lines, policy, settings_store)
    return {"message": "Cart updated", "cart": to_str_id(cart)}


@app.get("/cart")
def get_cart(deviceId: Optional[str] = None, phone: Optional[str] = None, db=Depends(get_db),
             policy: PricingPolicy = Depends(get_pricing_policy),
             settings_store: ShopSettings = Depends(get_settings_store)):
    identity = carts.Identity(device_id=deviceId, phone=phone)
    return to_str_id(carts.get_cart(db, identity, policy, settings_store))


@app.delete("/cart/{device_id}/product/{product_id}")
def delete_cart_item(device_id: str, product_id: str, db=Depends(get_db),
                     policy: PricingPolicy = Depends(get_pricing_policy),
                     settings_store: ShopSettings = Depends(get_settings_store)):
    identity = carts.Identity(device_id=device_id)
    cart = carts.delete_line(db, identity, product_id, policy, settings_store)
    return {"message": "Product removed from cart", "cart": to_str_id(cart)}


# -----------------------------
# Checkout
# -----------------------------
@app.post("/order", status_code=201)
def place_order(payload: orders.PlaceOrderRequest, background_tasks: BackgroundTasks, db=Depends(get_db),
                policy: PricingPolicy = Depends(get_pricing_policy),
                settings_store: ShopSettings = Depends(get_settings_store),
                notifier: Notifier = Depends(get_notifier)):
    order = orders.place_order(db, payload, policy, settings_store)
    background_tasks.add_task(notify_admins, db, notifier, order)
    return {"message": "Order placed successfully", "order": to_str_id(order)}


# -----------------------------
# Settings
# -----------------------------
@app.get("/settings")
def get_settings(settings_store: ShopSettings = Depends(get_settings_store)):
    return to_str_id(settings_store.get_document())


@app.put("/settings")
def update_settings(payload: SettingsPatch, settings_store: ShopSettings = Depends(get_settings_store)):
    return to_str_id(settings_store.update(payload.model_dump()))


# -----------------------------
# Customer (/me)
# -----------------------------
@app.get("/me/orders")
def my_orders(request: Request, status: Optional[str] = None, order_id: Optional[str] = None,
              phone: str = Depends(get_user_phone), db=Depends(get_db)):
    return to_str_id(orders.list_customer_orders(db, request, phone, status, order_id))


@app.get("/me/orders/{order_id}")
def my_order_details(order_id: str, phone: str = Depends(get_user_phone), db=Depends(get_db)):
    return to_str_id(orders.get_order_details(db, order_id, phone))


@app.get("/me/addresses")
def my_addresses(phone: str = Depends(get_user_phone), db=Depends(get_db)):
    return to_str_id(users.get_addresses(db, phone))


@app.post("/me/addresses")
def save_my_address(payload: AddressRequest, phone: str = Depends(get_user_phone), db=Depends(get_db)):
    address = Address(**payload.model_dump(exclude={"address_id"}))
    addresses = users.save_address(db, phone, address, payload.address_id)
    message = "Address updated successfully" if payload.address_id else "Address added successfully"
    return {"message": message, "address": to_str_id(addresses)}


# -----------------------------
# Admin (/we)
# -----------------------------
@app.get("/we/dashboard")
def dashboard(startDate: Optional[datetime] = None, endDate: Optional[datetime] = None, db=Depends(get_db)):
    return to_str_id(reports.dashboard_stats(db, startDate, endDate))


@app.get("/we/users")
def admin_users(request: Request, search: Optional[str] = None, role: Optional[str] = None, db=Depends(get_db)):
    return to_str_id(users.list_users(db, request, search, role))


@app.get("/we/users/{user_id}")
def admin_user_details(user_id: str, db=Depends(get_db)):
    return to_str_id(users.get_user(db, user_id))


@app.get("/we/customers-orders")
def customer_orders_summary(request: Request, search: Optional[str] = None, db=Depends(get_db)):
    return to_str_id(orders.customer_order_summary(db, request, search))


@app.get("/we/orders")
def admin_orders(request: Request, search: Optional[str] = None, status: Optional[str] = None, db=Depends(get_db)):
    return to_str_id(orders.list_all_orders(db, request, search, status))


@app.get("/we/orders/{order_id}")
def admin_order_details(order_id: str, db=Depends(get_db)):
    return to_str_id(orders.get_admin_order_details(db, order_id))


@app.patch("/we/orders/{order_id}")
def update_order_status(order_id: str, payload: StatusRequest, db=Depends(get_db)):
    order = orders.update_order_status(db, order_id, payload.newStatus)
    return {"message": "Order status updated successfully", "order": to_str_id(order)}


@app.put("/we/orders/{order_id}/edit")
def edit_order_item(order_id: str, payload: orders.EditOrderItemRequest, db=Depends(get_db)):
    order = orders.edit_order_item(db, order_id, payload)
    return {"message": "Order item updated successfully", "order": to_str_id(order)}


@app.get("/we/products")
def admin_list_products(request: Request, q: Optional[str] = None, category_id: Optional[str] = None,
                        db=Depends(get_db)):
    query = catalog.product_query(q, category_id)
    return to_str_id(paginate(db["product"], query, request, sort=[("created_at", -1)]))


@app.post("/we/products", status_code=201)
def create_product(payload: Product, x_user_id: Optional[str] = Header(None), db=Depends(get_db)):
    return to_str_id(catalog.create_product(db, payload, changed_by=x_user_id))


@app.get("/we/products/{product_id}")
def admin_get_product(product_id: str, db=Depends(get_db)):
    return to_str_id(catalog.get_product(db, product_id))


@app.patch("/we/products/{product_id}")
def update_product(product_id: str, payload: ProductPatch, x_user_id: Optional[str] = Header(None),
                   db=Depends(get_db)):
    return to_str_id(catalog.update_product(db, product_id, payload.model_dump(), changed_by=x_user_id))


@app.delete("/we/products/{product_id}")
def delete_product(product_id: str, x_user_id: Optional[str] = Header(None), db=Depends(get_db)):
    catalog.delete_product(db, product_id, changed_by=x_user_id)
    return {"message": "Product deleted successfully"}


@app.patch("/we/products/{product_id}/publish")
def publish_product(product_id: str, payload: PublishRequest, x_user_id: Optional[str] = Header(None),
                    db=Depends(get_db)):
    return to_str_id(catalog.update_product(db, product_id, {"is_published": payload.is_published}, changed_by=x_user_id))


@app.get("/we/products/{product_id}/logs")
def product_logs(product_id: str, db=Depends(get_db)):
    catalog.get_product(db, product_id)
    return to_str_id(catalog.product_logs(db, product_id))


@app.post("/we/categories", status_code=201)
def create_category(payload: Category, db=Depends(get_db)):
    return to_str_id(catalog.create_category(db, payload))


@app.get("/we/tags")
def list_tags(search: Optional[str] = None, db=Depends(get_db)):
    filt: Dict[str, Any] = {}
    if search:
        filt["name"] = {"$regex": search, "$options": "i"}
    return to_str_id(list(db["tag"].find(filt).sort("name", 1)))


@app.post("/we/tags", status_code=201)
def create_tag(payload: Tag, db=Depends(get_db)):
    return to_str_id(catalog.create_tag(db, payload))


@app.patch("/we/tags/{tag_id}")
def update_tag(tag_id: str, payload: TagPatch, db=Depends(get_db)):
    return to_str_id(catalog.update_tag(db, tag_id, payload.name, payload.margin))


if __name__ == "__main__":
    import uvicorn

    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
