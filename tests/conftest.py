import mongomock
import pytest
from fastapi.testclient import TestClient

import main
from database import create_document, ensure_indexes, oid
from notifications import Notifier
from pricing import TagMarginPolicy
from schemas import Category, Product, Tag
from shop_settings import ShopSettings


class RecordingNotifier(Notifier):
    def __init__(self, fail_for=()):
        self.sent = []
        self.fail_for = set(fail_for)

    def send(self, token, title, body, data=None):
        if token in self.fail_for:
            raise RuntimeError("push service unavailable")
        self.sent.append({"token": token, "title": title, "body": body, "data": data})


@pytest.fixture
def db():
    database = mongomock.MongoClient().db
    ensure_indexes(database)
    return database


@pytest.fixture
def policy():
    return TagMarginPolicy()


@pytest.fixture
def settings_store(db):
    return ShopSettings(db)


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def client(db, notifier):
    main.app.dependency_overrides[main.get_db] = lambda: db
    main.app.dependency_overrides[main.get_notifier] = lambda: notifier
    with TestClient(main.app) as c:
        yield c
    main.app.dependency_overrides.clear()


@pytest.fixture
def make_tag(db):
    def _make(name="fresh", margin=0):
        return create_document("tag", Tag(name=name, margin=margin), database=db)
    return _make


@pytest.fixture
def make_category(db):
    def _make(slug="grocery", name=None):
        return create_document("category", Category(name=name or slug.title(), slug=slug), database=db)
    return _make


@pytest.fixture
def make_product(db):
    def _make(price=100, discount=0, tags=(), categories=(), mrp_price=None, stock=10, weight=1, unit="kg", name="Item"):
        product = Product(
            name={"en": name, "bn": name},
            price=price,
            discount=discount,
            mrp_price=mrp_price,
            tags=list(tags),
            categories=list(categories),
            stock=stock,
            weight=weight,
            unit=unit,
        )
        return create_document("product", product, database=db)
    return _make


@pytest.fixture
def stock_of(db):
    def _stock(product_id):
        return db["product"].find_one({"_id": oid(product_id)})["stock"]
    return _stock
