"""
Catalog reads used by pricing, plus the admin write path for products, tags
and categories. Every product create/update appends a ProductLog entry.
"""
import logging
from typing import Any, Callable, Dict, Iterable, List, Optional

from bson import ObjectId
from pydantic import BaseModel
from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError

from database import create_document, now, oid
from errors import ConflictError, NotFoundError, ValidationError
from schemas import Category, Product, ProductChange, ProductLog, Tag

logger = logging.getLogger(__name__)

SKIP_AUDIT_FIELDS = ("created_at", "updated_at", "_id")


class TagRef(BaseModel):
    id: str
    name: str
    margin: float = 0.0


class CatalogProduct(BaseModel):
    """A product with its tags and category slugs resolved for pricing."""

    id: str
    name: Dict[str, Any] = {}
    price: float
    mrp_price: Optional[float] = None
    discount: float = 0.0
    tags: List[TagRef] = []
    category_slugs: List[str] = []
    weight: float = 0.0
    unit: str = "kg"
    stock: int = 0
    is_published: bool = True


def lookup_products(db, product_ids: Iterable[str]) -> Dict[str, CatalogProduct]:
    """Resolve the given ids against the current catalog.

    Ids that are malformed or no longer exist are simply absent from the result;
    callers decide whether that is an error.
    """
    ids = [oid(x) for x in set(product_ids)]
    ids = [x for x in ids if x]
    if not ids:
        return {}
    docs = list(db["product"].find({"_id": {"$in": ids}}))

    tag_ids = {t for d in docs for t in d.get("tags", [])}
    cat_ids = {c for d in docs for c in d.get("categories", [])}

    tag_map: Dict[str, TagRef] = {}
    if tag_ids:
        for t in db["tag"].find({"_id": {"$in": [oid(x) for x in tag_ids if oid(x)]}}):
            tag_map[str(t["_id"])] = TagRef(id=str(t["_id"]), name=t.get("name", ""), margin=float(t.get("margin") or 0))

    cat_map: Dict[str, str] = {}
    if cat_ids:
        for c in db["category"].find({"_id": {"$in": [oid(x) for x in cat_ids if oid(x)]}}):
            cat_map[str(c["_id"])] = c.get("slug", "")

    out: Dict[str, CatalogProduct] = {}
    for d in docs:
        pid = str(d["_id"])
        out[pid] = CatalogProduct(
            id=pid,
            name=d.get("name") or {},
            price=float(d.get("price") or 0),
            mrp_price=d.get("mrp_price"),
            discount=float(d.get("discount") or 0),
            tags=[tag_map[t] for t in d.get("tags", []) if t in tag_map],
            category_slugs=[cat_map[c] for c in d.get("categories", []) if c in cat_map],
            weight=float(d.get("weight") or 0),
            unit=d.get("unit") or "kg",
            stock=int(d.get("stock") or 0),
            is_published=d.get("is_published", True),
        )
    return out


def get_catalog_product(db, product_id: str) -> CatalogProduct:
    product = lookup_products(db, [product_id]).get(product_id)
    if product is None:
        raise NotFoundError(f"Product {product_id} not found")
    return product


# -----------------------------
# Products (audited write path)
# -----------------------------
def find_changes(original: Dict[str, Any], updated: Dict[str, Any], prefix: str = "") -> List[ProductChange]:
    changes: List[ProductChange] = []
    for key, new_value in updated.items():
        if key in SKIP_AUDIT_FIELDS:
            continue
        old_value = (original or {}).get(key)
        path = f"{prefix}.{key}" if prefix else key
        if isinstance(new_value, dict):
            changes.extend(find_changes(old_value or {}, new_value, path))
        elif isinstance(new_value, list):
            if list(old_value or []) != new_value:
                changes.append(ProductChange(field=path, old_value=old_value or [], new_value=new_value))
        elif old_value != new_value:
            changes.append(ProductChange(field=path, old_value=old_value, new_value=new_value))
    return changes


def audited_write(db, product_id: str, action: str, changes: List[ProductChange], changed_by: Optional[str],
                  write: Callable[[], Any]) -> Any:
    """Run a product write, then append its ProductLog entry.

    Nothing is logged when the write raises.
    """
    result = write()
    entry = ProductLog(ref_id=product_id, action=action, changes=changes, changed_by=changed_by)
    create_document("productlog", entry, database=db)
    return result


def _check_references(db, data: Dict[str, Any]):
    for field, collection in (("tags", "tag"), ("categories", "category")):
        refs = data.get(field) or []
        bad = [r for r in refs if not oid(r)]
        if bad:
            raise ValidationError(f"Invalid {field} id: {bad[0]}")
        found = db[collection].count_documents({"_id": {"$in": [oid(r) for r in refs]}}) if refs else 0
        if found != len(set(refs)):
            raise NotFoundError(f"Unknown {field} reference")


def create_product(db, payload: Product, changed_by: Optional[str] = None) -> dict:
    data = payload.model_dump()
    _check_references(db, data)
    data["_id"] = ObjectId()
    product_id = str(data["_id"])
    audited_write(db, product_id, "create", [], changed_by,
                  lambda: create_document("product", data, database=db))
    return db["product"].find_one({"_id": data["_id"]})


def update_product(db, product_id: str, patch: Dict[str, Any], changed_by: Optional[str] = None) -> dict:
    _id = oid(product_id)
    if not _id:
        raise ValidationError("Invalid product id")
    original = db["product"].find_one({"_id": _id})
    if not original:
        raise NotFoundError("Product not found")

    patch = {k: v for k, v in patch.items() if v is not None}
    merged = {**{k: v for k, v in original.items() if k not in SKIP_AUDIT_FIELDS}, **patch}
    data = Product(**merged).model_dump()
    _check_references(db, data)

    changes = find_changes(original, data)
    if not changes:
        return original

    data["updated_at"] = now()
    updated = audited_write(
        db, product_id, "update", changes, changed_by,
        lambda: db["product"].find_one_and_update({"_id": _id}, {"$set": data}, return_document=ReturnDocument.AFTER),
    )
    logger.info("product %s updated: %s", product_id, ", ".join(c.field for c in changes))
    return updated


def delete_product(db, product_id: str, changed_by: Optional[str] = None) -> dict:
    """Remove a product. Carts still holding it drop the line on their next read."""
    _id = oid(product_id)
    if not _id:
        raise ValidationError("Invalid product id")
    original = db["product"].find_one({"_id": _id})
    if not original:
        raise NotFoundError("Product not found")
    audited_write(db, product_id, "delete", [], changed_by, lambda: db["product"].delete_one({"_id": _id}))
    logger.info("product %s deleted", product_id)
    return original


def get_product(db, product_id: str, published_only: bool = False) -> dict:
    _id = oid(product_id)
    if not _id:
        raise NotFoundError("Product not found")
    query: Dict[str, Any] = {"_id": _id}
    if published_only:
        query["is_published"] = True
    doc = db["product"].find_one(query)
    if not doc:
        raise NotFoundError("Product not found")
    return doc


def product_query(q: Optional[str] = None, category_id: Optional[str] = None, published_only: bool = False) -> Dict[str, Any]:
    filt: Dict[str, Any] = {}
    if q:
        filt["$or"] = [
            {"name.en": {"$regex": q, "$options": "i"}},
            {"name.bn": {"$regex": q, "$options": "i"}},
        ]
    if category_id:
        filt["categories"] = category_id
    if published_only:
        filt["is_published"] = True
    return filt


def product_logs(db, product_id: str) -> List[dict]:
    return list(db["productlog"].find({"ref_id": product_id}).sort("created_at", 1))


# -----------------------------
# Categories & tags
# -----------------------------
def create_category(db, payload: Category) -> dict:
    if db["category"].find_one({"slug": payload.slug}):
        raise ConflictError("Category already exists")
    try:
        category_id = create_document("category", payload, database=db)
    except DuplicateKeyError:
        raise ConflictError("Category already exists")
    return db["category"].find_one({"_id": oid(category_id)})


def create_tag(db, payload: Tag) -> dict:
    doc = payload.model_dump()
    doc["name"] = doc["name"].strip()
    tag_id = create_document("tag", doc, database=db)
    return db["tag"].find_one({"_id": oid(tag_id)})


def update_tag(db, tag_id: str, name: Optional[str] = None, margin: Optional[float] = None) -> dict:
    _id = oid(tag_id)
    if not _id:
        raise ValidationError("Invalid tag ID.")
    upd: Dict[str, Any] = {"updated_at": now()}
    if name:
        upd["name"] = name.strip()
    if margin is not None:
        if margin < 0:
            raise ValidationError("Margin must be a valid non-negative number.")
        upd["margin"] = float(margin)
    doc = db["tag"].find_one_and_update({"_id": _id}, {"$set": upd}, return_document=ReturnDocument.AFTER)
    if not doc:
        raise NotFoundError("Tag not found.")
    return doc
