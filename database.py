"""
Course Correct database access

MongoDB through pymongo. The connection is configured with DATABASE_URL and
DATABASE_NAME; when either is missing `db` stays None and every route that
needs storage answers 500 "Database not configured".
"""

import logging
import os
from datetime import date, datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Tuple, Union

from bson import ObjectId
from bson.errors import InvalidId
from pymongo import ASCENDING, MongoClient
from pymongo.database import Database
from pydantic import BaseModel

from errors import InternalError, InvalidRequest, NotFound

logger = logging.getLogger(__name__)

DATABASE_URL = os.getenv("DATABASE_URL")
DATABASE_NAME = os.getenv("DATABASE_NAME")

db: Optional[Database] = None

if DATABASE_URL and DATABASE_NAME:
    _client = MongoClient(DATABASE_URL)
    db = _client[DATABASE_NAME]


def get_db() -> Database:
    if db is None:
        raise InternalError("Database not configured", code="database_not_configured")
    return db


def ensure_indexes(database: Database) -> None:
    """Create the indexes the API relies on.

    The compound unique index on availability serializes concurrent inserts
    for the same tutor, day and start time.
    """
    database["availability"].create_index(
        [("tutor", ASCENDING), ("day", ASCENDING), ("start_time", ASCENDING)],
        unique=True,
        name="tutor_day_start_unique",
    )
    database["booking"].create_index([("tutor", ASCENDING), ("booking_time", ASCENDING)])
    database["session"].create_index("token", unique=True)
    database["user"].create_index("email", unique=True)
    logger.info("MongoDB indexes ensured on %s", database.name)


# ---------- Time helpers ----------

def utcnow() -> datetime:
    """Current instant as a naive UTC datetime, the form BSON hands back."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_storage_datetime(value: datetime) -> datetime:
    if value.tzinfo is not None:
        return value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def day_start(value: Union[date, datetime]) -> datetime:
    """Midnight of the calendar day; BSON has no date-only type."""
    return datetime(value.year, value.month, value.day)


# ---------- Document helpers ----------

def oid(id_str: str) -> ObjectId:
    try:
        return ObjectId(id_str)
    except (InvalidId, TypeError):
        raise InvalidRequest("Invalid id format", code="InvalidId")


def serialize(doc: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    if doc is None:
        return doc
    d = dict(doc)
    if "_id" in d:
        d["id"] = str(d.pop("_id"))
    d.pop("password_hash", None)
    for k, v in list(d.items()):
        if isinstance(v, datetime):
            d[k] = v.isoformat()
        elif isinstance(v, ObjectId):
            d[k] = str(v)
    return d


def create_document(database: Database, collection_name: str, data: Union[BaseModel, Dict[str, Any]]) -> str:
    doc = data.model_dump() if isinstance(data, BaseModel) else dict(data)
    now = utcnow()
    doc.setdefault("created_at", now)
    doc["updated_at"] = now
    result = database[collection_name].insert_one(doc)
    return str(result.inserted_id)


def get_documents(
    database: Database,
    collection_name: str,
    filter_dict: Optional[Dict[str, Any]] = None,
    sort: Optional[List[Tuple[str, int]]] = None,
    limit: Optional[int] = None,
) -> List[Dict[str, Any]]:
    cursor = database[collection_name].find(filter_dict or {})
    if sort:
        cursor = cursor.sort(sort)
    if limit:
        cursor = cursor.limit(limit)
    return list(cursor)


def find_by_id(database: Database, collection_name: str, id_str: str, missing: str) -> Dict[str, Any]:
    """Load one document by its string id or raise NotFound with `missing`."""
    doc = database[collection_name].find_one({"_id": oid(id_str)})
    if doc is None:
        raise NotFound(missing)
    return doc


def users_by_id(database: Database, user_ids: Iterable[str], fields: Iterable[str]) -> Dict[str, Dict[str, Any]]:
    """Populate user references: map of id -> projection of `fields`."""
    ids = []
    for user_id in set(user_ids):
        try:
            ids.append(ObjectId(user_id))
        except (InvalidId, TypeError):
            continue
    projection = {field: 1 for field in fields}
    users = database["user"].find({"_id": {"$in": ids}}, projection)
    return {str(u["_id"]): serialize(u) for u in users}
