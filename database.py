"""
MongoDB access for the Restroom Finder API.

Collections are named after the lowercased schema class (``restroom``,
``review``, ``user``) plus ``amenity_vote`` for individual votes.
"""
import logging
import os
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Union

from bson import ObjectId
from bson.errors import InvalidId
from pydantic import BaseModel
from pymongo import ASCENDING, DESCENDING, MongoClient

logger = logging.getLogger(__name__)

DATABASE_URL = os.getenv("DATABASE_URL")
DATABASE_NAME = os.getenv("DATABASE_NAME", "restroom_finder")

client = MongoClient(DATABASE_URL, tz_aware=True) if DATABASE_URL else None
db = client[DATABASE_NAME] if client is not None else None


def get_db():
    """FastAPI dependency returning the configured database (or None)."""
    return db


def _resolve(database):
    return db if database is None else database


def create_document(
    collection_name: str,
    data: Union[BaseModel, Dict[str, Any]],
    database=None,
    session=None,
) -> str:
    """Insert a document stamped with created_at/updated_at and return its id as a string."""
    target = _resolve(database)
    if target is None:
        raise RuntimeError("Database not configured")
    doc = data.model_dump() if isinstance(data, BaseModel) else dict(data)
    now = datetime.now(timezone.utc)
    doc.setdefault("created_at", now)
    doc["updated_at"] = now
    result = target[collection_name].insert_one(doc, session=session)
    return str(result.inserted_id)


def get_documents(
    collection_name: str,
    filter_dict: Optional[Dict[str, Any]] = None,
    limit: Optional[int] = None,
    database=None,
) -> List[Dict[str, Any]]:
    target = _resolve(database)
    if target is None:
        raise RuntimeError("Database not configured")
    cursor = target[collection_name].find(filter_dict or {})
    if limit:
        cursor = cursor.limit(limit)
    return list(cursor)


@contextmanager
def transaction(database=None):
    """
    Run a block inside a multi-document transaction and yield its session.

    Commits when the block exits normally and aborts on any exception, so a
    failed vote or review never leaves half its writes behind. Requires a
    replica set or sharded cluster, as MongoDB transactions do.
    """
    target = _resolve(database)
    if target is None:
        raise RuntimeError("Database not configured")
    with target.client.start_session() as session:
        with session.start_transaction():
            yield session


def as_object_id(value) -> Optional[ObjectId]:
    """Parse a document id taken from a path or reference, None when malformed."""
    if isinstance(value, ObjectId):
        return value
    try:
        return ObjectId(str(value))
    except (InvalidId, TypeError):
        return None


def ensure_indexes(database=None) -> None:
    target = _resolve(database)
    if target is None:
        return
    target["review"].create_index([("restroom_id", ASCENDING), ("created_at", DESCENDING)])
    target["amenity_vote"].create_index([("restroom_id", ASCENDING), ("amenity_id", ASCENDING)])
    logger.info("Indexes ensured on %s", target.name)
