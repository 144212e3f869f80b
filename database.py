"""
Database access

MongoDB client plus small helpers shared by the repositories and routes.
Each collection is named after its schema class in lowercase
(Product -> "product", Order -> "order").
"""
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from bson import ObjectId
from bson.errors import InvalidId
from pydantic import BaseModel
from pymongo import ASCENDING, DESCENDING, MongoClient, ReturnDocument
from pymongo.database import Database

import settings
from errors import StorageUnavailableError, ValidationError

logger = logging.getLogger(__name__)

client: Optional[MongoClient] = None
db: Optional[Database] = None

if settings.DATABASE_URL:
    client = MongoClient(settings.DATABASE_URL)
    db = client[settings.DATABASE_NAME]
else:
    logger.warning("DATABASE_URL not set; storage endpoints will be unavailable")


def get_db() -> Database:
    """FastAPI dependency returning the configured database."""
    if db is None:
        raise StorageUnavailableError()
    return db


def now_utc() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    # Mongo hands datetimes back naive (in UTC) unless the client is tz_aware.
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def oid(id_str: str) -> ObjectId:
    try:
        return ObjectId(id_str)
    except (InvalidId, TypeError):
        raise ValidationError(f"Invalid ID: {id_str}")


def stringify_id(doc: Dict[str, Any]) -> Dict[str, Any]:
    doc["_id"] = str(doc["_id"])
    return doc


def create_document(database: Database, collection_name: str, data: BaseModel | Dict[str, Any]) -> str:
    """Insert a document stamped with created_at/updated_at and return its id."""
    if isinstance(data, BaseModel):
        data_dict = data.model_dump(by_alias=False, exclude={"id"})
    else:
        data_dict = dict(data)
    data_dict.pop("_id", None)
    data_dict["created_at"] = now_utc()
    data_dict["updated_at"] = now_utc()
    result = database[collection_name].insert_one(data_dict)
    return str(result.inserted_id)


def get_documents(database: Database, collection_name: str, filter_dict: Optional[Dict[str, Any]] = None,
                  limit: Optional[int] = None, newest_first: bool = True) -> List[Dict[str, Any]]:
    cursor = database[collection_name].find(filter_dict or {})
    cursor = cursor.sort("created_at", DESCENDING if newest_first else ASCENDING)
    if limit:
        cursor = cursor.limit(limit)
    return [stringify_id(doc) for doc in cursor]


def next_sequence(database: Database, name: str) -> int:
    """Atomically increment and return the named counter."""
    counter = database["counter"].find_one_and_update(
        {"_id": name},
        {"$inc": {"seq": 1}},
        upsert=True,
        return_document=ReturnDocument.AFTER,
    )
    return counter["seq"]


def ensure_indexes(database: Database):
    database["user"].create_index("email", unique=True)
    database["user"].create_index("token")
    database["order"].create_index("order_number", unique=True)
    database["order"].create_index("payment_correlation_id")
    database["order"].create_index([("user_id", ASCENDING), ("created_at", DESCENDING)])
    database["coupon"].create_index("code", unique=True)
    database["wishlist"].create_index([("user_id", ASCENDING), ("product_id", ASCENDING)], unique=True)
    database["rating"].create_index([("product_id", ASCENDING), ("user_id", ASCENDING)], unique=True)
    database["notification"].create_index([("user_id", ASCENDING), ("created_at", DESCENDING)])
    database["message"].create_index([("sender_id", ASCENDING), ("receiver_id", ASCENDING)])
