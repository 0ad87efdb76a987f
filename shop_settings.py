"""
Singleton store settings: delivery charge, platform fee and legacy margin.

There is exactly one document in the `settings` collection. It is created
lazily by the first read or write, and every call reads the store again.
"""
from typing import Any, Dict

from pymongo import ReturnDocument

from database import now
from schemas import Settings


class ShopSettings:
    def __init__(self, db):
        self.db = db

    @property
    def collection(self):
        return self.db["settings"]

    def get(self) -> Settings:
        return Settings(**self._load())

    def get_document(self) -> dict:
        return self._load()

    def update(self, patch: Dict[str, Any]) -> dict:
        """Merge the non-null fields of `patch` into the singleton."""
        fields = {k: v for k, v in patch.items() if v is not None and k in Settings.model_fields}
        current = self._load()
        merged = Settings(**{**current, **fields}).model_dump()
        merged["updated_at"] = now()
        return self.collection.find_one_and_update(
            {"_id": current["_id"]},
            {"$set": merged},
            return_document=ReturnDocument.AFTER,
        )

    def _load(self) -> dict:
        doc = self.collection.find_one({})
        if doc:
            return doc
        stamp = now()
        defaults = Settings().model_dump()
        return self.collection.find_one_and_update(
            {},
            {"$setOnInsert": {**defaults, "created_at": stamp, "updated_at": stamp}},
            upsert=True,
            return_document=ReturnDocument.AFTER,
        )
