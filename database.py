"""
MongoDB access helpers.

``Database`` wraps a pymongo database handle. It is constructed once at
process start (or handed a ``mongomock`` database in tests) and passed to the
services that need it.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Union

from bson import ObjectId
from bson.errors import InvalidId
from pydantic import BaseModel
from pymongo import ASCENDING, DESCENDING, MongoClient
from pymongo.errors import PyMongoError

from config import Settings
from errors import ValidationError

LOGGER = logging.getLogger(__name__)

DUPLICATE_KEY_CODE = 11000

# Fields never sent back to clients
_PRIVATE_FIELDS = {"hashed_password"}


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """pymongo hands back naive datetimes unless the client is tz aware."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def object_id(value: Union[str, ObjectId, None], label: str = "id") -> ObjectId:
    if isinstance(value, ObjectId):
        return value
    try:
        return ObjectId(str(value))
    except (InvalidId, TypeError) as error:
        raise ValidationError(f"Invalid {label}: {value}") from error


def is_duplicate_key(error: PyMongoError) -> bool:
    return getattr(error, "code", None) == DUPLICATE_KEY_CODE


def serialize(value: Any) -> Any:
    """Make a document JSON friendly: ``_id`` -> ``id``, ObjectIds and datetimes to strings."""
    if isinstance(value, dict):
        out: Dict[str, Any] = {}
        for key, item in value.items():
            if key in _PRIVATE_FIELDS:
                continue
            if key == "_id":
                out["id"] = str(item)
                continue
            out[key] = serialize(item)
        return out
    if isinstance(value, (list, tuple)):
        return [serialize(item) for item in value]
    if isinstance(value, ObjectId):
        return str(value)
    if isinstance(value, datetime):
        return as_utc(value).isoformat()
    return value


class Database:
    def __init__(self, db):
        self.db = db

    @classmethod
    def connect(cls, settings: Settings) -> "Database":
        client = MongoClient(settings.database_url, tz_aware=True)
        LOGGER.info("Using MongoDB database '%s'", settings.database_name)
        return cls(client[settings.database_name])

    def __getitem__(self, name: str):
        return self.db[name]

    @property
    def name(self) -> str:
        return getattr(self.db, "name", "")

    def create_document(self, collection_name: str, data: Union[BaseModel, dict]) -> str:
        """Insert a document, stamping created_at/updated_at. Returns the new id."""
        if isinstance(data, BaseModel):
            data_dict = data.model_dump()
        else:
            data_dict = dict(data)
        now = utcnow()
        data_dict.setdefault("created_at", now)
        data_dict.setdefault("updated_at", now)
        result = self.db[collection_name].insert_one(data_dict)
        return str(result.inserted_id)

    def find_by_ids(self, collection_name: str, document_ids: Iterable[str]) -> List[dict]:
        ids = [object_id(value) for value in document_ids]
        return list(self.db[collection_name].find({"_id": {"$in": ids}}))

    def ensure_indexes(self) -> None:
        self.db["user"].create_index("email", unique=True)
        self.db["user"].create_index([("role", ASCENDING), ("branch", ASCENDING), ("year", ASCENDING)])
        self.db["like"].create_index([("video_id", ASCENDING), ("user_id", ASCENDING)], unique=True)
        self.db["view"].create_index([("video_id", ASCENDING), ("user_id", ASCENDING)], unique=True)
        self.db["report"].create_index([("comment_id", ASCENDING), ("user_id", ASCENDING)], unique=True)
        self.db["comment"].create_index("parent_id")
        self.db["comment"].create_index("video_id")
        self.db["question"].create_index([("video_id", ASCENDING), ("created_at", DESCENDING)])
        self.db["notification"].create_index(
            [("recipient_id", ASCENDING), ("is_read", ASCENDING), ("created_at", DESCENDING)]
        )
        self.db["note"].create_index([("student_id", ASCENDING), ("video_id", ASCENDING)])
        self.db["video"].create_index("teacher_id")


__all__ = [
    "Database",
    "as_utc",
    "is_duplicate_key",
    "object_id",
    "serialize",
    "utcnow",
]
