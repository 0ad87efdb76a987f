"""
MongoDB connection and small document helpers.

The connection is configured from DATABASE_URL / DATABASE_NAME. When no URL is
set, `db` stays None and the API reports the database as unavailable.
"""
import os
from datetime import datetime, timezone
from typing import Optional, Union

from bson import ObjectId
from pydantic import BaseModel
from pymongo import MongoClient

DATABASE_URL = os.getenv("DATABASE_URL")
DATABASE_NAME = os.getenv("DATABASE_NAME", "halal_bazar")

db = None
if DATABASE_URL:
    _client = MongoClient(DATABASE_URL)
    db = _client[DATABASE_NAME]


def now() -> datetime:
    return datetime.now(timezone.utc)


def oid(obj: Optional[str]) -> Optional[ObjectId]:
    if obj is None:
        return None
    if isinstance(obj, ObjectId):
        return obj
    if not ObjectId.is_valid(obj):
        return None
    return ObjectId(obj)


def create_document(collection_name: str, data: Union[BaseModel, dict], database=None) -> str:
    """Insert a document stamped with created_at/updated_at and return its id."""
    database = database if database is not None else db
    if database is None:
        raise Exception("Database not available. Check DATABASE_URL and DATABASE_NAME environment variables.")
    doc = data.model_dump() if isinstance(data, BaseModel) else dict(data)
    stamp = now()
    doc.setdefault("created_at", stamp)
    doc["updated_at"] = stamp
    result = database[collection_name].insert_one(doc)
    return str(result.inserted_id)


def ensure_indexes(database) -> None:
    database["order"].create_index("order_id", unique=True)
    database["user"].create_index("phone", unique=True)
    database["category"].create_index("slug", unique=True)
