import pytest

from catalog import (
    audited_write,
    create_product,
    delete_product,
    get_catalog_product,
    lookup_products,
    product_logs,
    update_product,
    update_tag,
)
from database import oid
from errors import NotFoundError, ValidationError
from schemas import Product


def test_lookup_resolves_tags_and_categories(db, make_tag, make_category, make_product):
    mrp = make_tag("MRP", 0)
    fresh = make_tag("fresh", 12.5)
    fish = make_category("fish")
    pid = make_product(price=300, mrp_price=350, tags=[mrp, fresh], categories=[fish])

    product = lookup_products(db, [pid])[pid]

    assert product.price == 300
    assert product.mrp_price == 350
    assert {(t.name, t.margin) for t in product.tags} == {("MRP", 0), ("fresh", 12.5)}
    assert product.category_slugs == ["fish"]


def test_lookup_omits_missing_and_malformed_ids(db, make_product):
    pid = make_product()
    found = lookup_products(db, [pid, "0" * 24, "not-an-id"])
    assert list(found) == [pid]
    with pytest.raises(NotFoundError):
        get_catalog_product(db, "0" * 24)


def test_lookup_sees_tag_margin_changes(db, make_tag, make_product):
    tag = make_tag("fresh", 10)
    pid = make_product(tags=[tag])
    update_tag(db, tag, margin=30)
    assert lookup_products(db, [pid])[pid].tags[0].margin == 30


def test_product_create_is_logged(db):
    doc = create_product(db, Product(name={"en": "Hilsa", "bn": "ইলিশ"}, price=900), changed_by="admin-1")

    [entry] = product_logs(db, str(doc["_id"]))
    assert entry["action"] == "create"
    assert entry["changed_by"] == "admin-1"
    assert entry["changes"] == []


def test_product_update_logs_field_diffs(db, make_tag):
    doc = create_product(db, Product(name={"en": "Hilsa", "bn": "ইলিশ"}, price=900))
    pid = str(doc["_id"])
    tag = make_tag("fresh", 10)

    updated = update_product(db, pid, {"price": 950, "name": {"en": "Padma Hilsa", "bn": "ইলিশ"}, "tags": [tag]})

    assert updated["price"] == 950
    entry = product_logs(db, pid)[-1]
    assert entry["action"] == "update"
    changes = {c["field"]: (c["old_value"], c["new_value"]) for c in entry["changes"]}
    assert changes == {
        "price": (900, 950),
        "name.en": ("Hilsa", "Padma Hilsa"),
        "tags": ([], [tag]),
    }


def test_noop_update_writes_no_log(db):
    doc = create_product(db, Product(name={"en": "Rice", "bn": "চাল"}, price=80))
    pid = str(doc["_id"])

    update_product(db, pid, {"price": 80, "discount": None})

    assert [e["action"] for e in product_logs(db, pid)] == ["create"]


def test_product_rejects_unknown_references(db):
    with pytest.raises(NotFoundError):
        create_product(db, Product(name={"en": "Rice", "bn": "চাল"}, price=80, tags=["0" * 24]))
    with pytest.raises(ValidationError):
        create_product(db, Product(name={"en": "Rice", "bn": "চাল"}, price=80, categories=["nope"]))
    assert db["product"].count_documents({}) == 0


def test_update_missing_product(db):
    with pytest.raises(NotFoundError):
        update_product(db, "0" * 24, {"price": 1})
    with pytest.raises(ValidationError):
        update_product(db, "bad", {"price": 1})


def test_update_tag_validation(db, make_tag):
    tag = make_tag("fresh", 10)
    with pytest.raises(ValidationError):
        update_tag(db, tag, margin=-1)
    with pytest.raises(NotFoundError):
        update_tag(db, "0" * 24, margin=5)
    assert db["tag"].find_one({"_id": oid(tag)})["margin"] == 10


def test_failed_write_is_not_audited(db):
    def failing_write():
        raise RuntimeError("write failed")

    with pytest.raises(RuntimeError):
        audited_write(db, "0" * 24, "update", [], "admin-1", failing_write)

    assert db["productlog"].count_documents({}) == 0


def test_delete_product_is_logged(db, make_product):
    pid = make_product()

    deleted = delete_product(db, pid, changed_by="admin-1")

    assert str(deleted["_id"]) == pid
    assert db["product"].count_documents({}) == 0
    [entry] = product_logs(db, pid)
    assert (entry["action"], entry["changed_by"]) == ("delete", "admin-1")
    with pytest.raises(NotFoundError):
        delete_product(db, pid)
    with pytest.raises(ValidationError):
        delete_product(db, "bad")
