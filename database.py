"""
MongoDB access

A single MongoClient is created at import time when DATABASE_URL and
DATABASE_NAME are set. Route handlers receive the database through the
`get_db` dependency so tests can swap it out.
"""
import logging
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Union

from bson import ObjectId
from pydantic import BaseModel
from pymongo import ASCENDING, MongoClient
from pymongo.database import Database

import config
from errors import UnavailableError, ValidationError

logger = logging.getLogger("storefront.database")

client: Optional[MongoClient] = None
db: Optional[Database] = None

if config.DATABASE_URL and config.DATABASE_NAME:
    client = MongoClient(config.DATABASE_URL, serverSelectionTimeoutMS=5000)
    db = client[config.DATABASE_NAME]


def get_db() -> Database:
    if db is None:
        raise UnavailableError("Database not configured")
    return db


def ensure_indexes(database: Database) -> None:
    database["user"].create_index([("email", ASCENDING)], unique=True)
    database["cart"].create_index([("user_id", ASCENDING)], unique=True)
    database["order"].create_index([("user_id", ASCENDING), ("created_at", ASCENDING)])
    database["product"].create_index([("category_id", ASCENDING)])
    database["password_reset"].create_index([("token_hash", ASCENDING)], unique=True)
    # Mongo drops reset tokens by itself once expired
    database["password_reset"].create_index([("expires_at", ASCENDING)], expireAfterSeconds=0)
    logger.info("Indexes ensured on %s", database.name)


def now() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    # pymongo hands back naive UTC datetimes unless the client is tz_aware
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def parse_object_id(value: Union[str, ObjectId], what: str = "id") -> ObjectId:
    if isinstance(value, ObjectId):
        return value
    if not isinstance(value, str) or not ObjectId.is_valid(value):
        raise ValidationError(f"Invalid {what}")
    return ObjectId(value)


def serialize_doc(doc: Any) -> Any:
    """Make a Mongo document JSON friendly: `_id` becomes `id`, ObjectIds become strings."""
    if isinstance(doc, ObjectId):
        return str(doc)
    if isinstance(doc, list):
        return [serialize_doc(v) for v in doc]
    if not isinstance(doc, dict):
        return doc
    out: Dict[str, Any] = {}
    for k, v in doc.items():
        if k == "_id":
            out["id"] = serialize_doc(v)
        else:
            out[k] = serialize_doc(v)
    return out


def create_document(database: Database, collection_name: str, data: Union[BaseModel, Dict[str, Any]], session=None) -> str:
    if isinstance(data, BaseModel):
        payload = data.model_dump(mode="json")
    else:
        payload = dict(data)
    stamp = now()
    payload.setdefault("created_at", stamp)
    payload.setdefault("updated_at", stamp)
    result = database[collection_name].insert_one(payload, session=session)
    return str(result.inserted_id)


def get_documents(database: Database, collection_name: str, filter_dict: Optional[Dict[str, Any]] = None, limit: Optional[int] = None) -> List[Dict[str, Any]]:
    cursor = database[collection_name].find(filter_dict or {})
    if limit:
        cursor = cursor.limit(limit)
    return list(cursor)


@contextmanager
def transaction(database: Database):
    """Yield a session inside a transaction, or None when transactions are off.

    Callers pass the yielded value as `session=` to every pymongo call, which
    is a no-op when it is None.
    """
    if not config.MONGO_TRANSACTIONS:
        yield None
        return
    with database.client.start_session() as session:
        with session.start_transaction():
            yield session
