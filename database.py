"""
MongoDB access

A single pymongo client is created from DATABASE_URL / DATABASE_NAME.
Route handlers receive the database through the `get_db` dependency so
tests can swap in an in-memory database.
"""
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Union

from bson import ObjectId
from bson.errors import InvalidId
from fastapi import HTTPException
from pydantic import BaseModel
from pymongo import ASCENDING, DESCENDING, GEOSPHERE, MongoClient

from errors import ValidationError
import settings

client = MongoClient(settings.DATABASE_URL) if settings.DATABASE_URL else None
db = client[settings.DATABASE_NAME] if client is not None else None


def get_db():
    if db is None:
        raise HTTPException(status_code=500, detail="Database not configured")
    return db


def now() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    # pymongo hands back naive datetimes unless the client is tz_aware
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def to_object_id(value: Union[str, ObjectId], field: str = "id") -> ObjectId:
    if isinstance(value, ObjectId):
        return value
    try:
        return ObjectId(str(value))
    except (InvalidId, TypeError):
        raise ValidationError(f"Invalid {field}: {value}.", {field: "Not a valid id"})


def create_document(db, collection_name: str, data: Union[BaseModel, Dict[str, Any]]) -> str:
    """Insert a document, stamping created_at/updated_at. Returns the new id as a string."""
    if isinstance(data, BaseModel):
        doc = data.model_dump()
    else:
        doc = dict(data)
    stamp = now()
    doc.setdefault("created_at", stamp)
    doc["updated_at"] = stamp
    result = db[collection_name].insert_one(doc)
    return str(result.inserted_id)


def get_documents(
    db,
    collection_name: str,
    filter_dict: Optional[Dict[str, Any]] = None,
    limit: Optional[int] = None,
    projection: Optional[Dict[str, int]] = None,
    sort: Optional[List] = None,
    skip: int = 0,
) -> List[Dict[str, Any]]:
    cursor = db[collection_name].find(filter_dict or {}, projection)
    if sort:
        cursor = cursor.sort(sort)
    if skip:
        cursor = cursor.skip(skip)
    if limit:
        cursor = cursor.limit(limit)
    return list(cursor)


def serialize_document(doc: Any) -> Any:
    """Make a document JSON friendly: `_id` becomes `id`, ObjectIds and datetimes become strings."""
    if isinstance(doc, list):
        return [serialize_document(item) for item in doc]
    if isinstance(doc, ObjectId):
        return str(doc)
    if isinstance(doc, datetime):
        return as_utc(doc).isoformat()
    if not isinstance(doc, dict):
        return doc
    out = {}
    for key, value in doc.items():
        if key == "_id":
            out["id"] = serialize_document(value)
        elif key == "__v":
            continue
        else:
            out[key] = serialize_document(value)
    return out


def ensure_indexes(db) -> None:
    db["tour"].create_index([("name", ASCENDING)], unique=True)
    db["tour"].create_index([("price", ASCENDING), ("ratings_average", DESCENDING)])
    db["tour"].create_index([("slug", ASCENDING)])
    db["tour"].create_index([("start_location", GEOSPHERE)])
    db["user"].create_index([("email", ASCENDING)], unique=True)
    db["review"].create_index([("tour", ASCENDING), ("user", ASCENDING)], unique=True)
    db["booking"].create_index([("user", ASCENDING)])
