"""
MongoDB access helpers.

``db`` is None when no DATABASE_URL is configured; handlers go through
``collection()`` so they fail with a clean error instead of an AttributeError.
"""
from datetime import datetime, timezone
from typing import Any, Dict, Union

from bson import ObjectId
from bson.errors import InvalidId
from pydantic import BaseModel
from pymongo import ASCENDING, DESCENDING, MongoClient

import config
from errors import AppError, ValidationError

client = None
db = None

if config.DATABASE_URL:
    client = MongoClient(config.DATABASE_URL)
    db = client[config.DATABASE_NAME]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def collection(name: str):
    if db is None:
        raise AppError("Database not configured")
    return db[name]


def object_id(value: str, label: str = "resource") -> ObjectId:
    try:
        return ObjectId(value)
    except (InvalidId, TypeError):
        raise ValidationError(f"Invalid {label} id: {value}")


def create_document(collection_name: str, data: Union[BaseModel, dict]) -> str:
    if isinstance(data, BaseModel):
        data_dict = data.model_dump(exclude_none=True)
    else:
        data_dict = {k: v for k, v in data.items() if v is not None}
    now = utcnow()
    data_dict["created_at"] = now
    data_dict["updated_at"] = now
    result = collection(collection_name).insert_one(data_dict)
    return str(result.inserted_id)


def serialize(value: Any) -> Any:
    """Make a raw Mongo document JSON friendly (ObjectId -> str)."""
    if isinstance(value, ObjectId):
        return str(value)
    if isinstance(value, dict):
        return {k: serialize(v) for k, v in value.items()}
    if isinstance(value, list):
        return [serialize(v) for v in value]
    return value


def ensure_indexes(database) -> None:
    database.user.create_index("email", unique=True)
    database.user.create_index("role")

    database.product.create_index("sku", unique=True)
    database.product.create_index("category")
    database.product.create_index("stock")

    # Phone is required, email is optional: the email index only covers documents that have one.
    database.customer.create_index([("owner", ASCENDING), ("phone", ASCENDING)], unique=True)
    database.customer.create_index(
        [("owner", ASCENDING), ("email", ASCENDING)],
        unique=True,
        partialFilterExpression={"email": {"$exists": True}},
    )
    database.customer.create_index([("outstanding_balance", DESCENDING)])

    database.invoice.create_index("invoice_number", unique=True)
    database.invoice.create_index("customer")
    database.invoice.create_index("created_by")
    database.invoice.create_index("payment_status")
    database.invoice.create_index([("created_at", DESCENDING)])


def set_fields(fields: Dict[str, Any]) -> dict:
    """Build a ``$set``/``$unset`` update stamping ``updated_at``."""
    to_set = {k: v for k, v in fields.items() if v is not None}
    to_unset = {k: "" for k, v in fields.items() if v is None}
    to_set["updated_at"] = utcnow()
    update = {"$set": to_set}
    if to_unset:
        update["$unset"] = to_unset
    return update
