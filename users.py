"""
Customer and admin user records: admin listing/detail and a customer's saved
delivery addresses. Accounts are identified by phone; issuing credentials is
handled outside this service.
"""
import logging
import re
from typing import Any, Dict, List, Optional

from bson import ObjectId
from fastapi import Request

from database import now, oid
from errors import NotFoundError, ValidationError
from pagination import paginate
from schemas import Address

logger = logging.getLogger(__name__)

# never returned to clients
PRIVATE_FIELDS = ("password", "refresh_token")


def _public(user: dict) -> dict:
    return {k: v for k, v in user.items() if k not in PRIVATE_FIELDS}


def list_users(db, request: Request, search: Optional[str] = None, role: Optional[str] = None) -> dict:
    query: Dict[str, Any] = {}
    if role:
        query["role"] = role
    if search:
        pattern = re.escape(search)
        query["$or"] = [
            {"name": {"$regex": pattern, "$options": "i"}},
            {"phone": {"$regex": pattern, "$options": "i"}},
        ]
    return paginate(db["user"], query, request, sort=[("created_at", -1)], transform=_public)


def get_user(db, user_id: str) -> dict:
    _id = oid(user_id)
    if not _id:
        raise ValidationError("Invalid user ID")
    user = db["user"].find_one({"_id": _id})
    if not user:
        raise NotFoundError("User not found")
    return _public(user)


def _user_by_phone(db, phone: str) -> dict:
    user = db["user"].find_one({"phone": phone})
    if not user:
        raise NotFoundError("User not found")
    return user


def get_addresses(db, phone: str) -> List[dict]:
    return _user_by_phone(db, phone).get("address", [])


def save_address(db, phone: str, address: Address, address_id: Optional[str] = None) -> List[dict]:
    """Add a new address, or replace the one with `address_id`. Returns the full list."""
    user = _user_by_phone(db, phone)
    addresses = user.get("address", [])

    if address_id:
        index = next((i for i, a in enumerate(addresses) if str(a.get("_id")) == address_id), None)
        if index is None:
            raise NotFoundError("Address not found")
        addresses[index] = {**address.model_dump(), "_id": addresses[index]["_id"]}
    else:
        addresses.append({**address.model_dump(), "_id": ObjectId()})

    db["user"].update_one({"_id": user["_id"]}, {"$set": {"address": addresses, "updated_at": now()}})
    logger.info("user %s %s an address", user["_id"], "updated" if address_id else "added")
    return addresses
