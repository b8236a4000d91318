"""
Database Helper Functions

MongoDB helper functions with graceful fallback.
- Primary: real MongoDB via DATABASE_URL + DATABASE_NAME
- Fallback: mongomock (in-memory, MongoDB-compatible) so the app fully works without external DB
"""

from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional, Union
import logging
import os
import uuid

from pydantic import BaseModel
from dotenv import load_dotenv
from pymongo import ASCENDING, MongoClient
from pymongo.errors import PyMongoError

# Load environment variables from .env file (noop if not present)
load_dotenv()

logger = logging.getLogger(__name__)

database_url = os.getenv("DATABASE_URL")
database_name = os.getenv("DATABASE_NAME") or "recyclehub"


def connect(url: Optional[str] = database_url, name: str = database_name):
    """Return a database handle, falling back to an in-memory one."""
    if url:
        try:
            client = MongoClient(url, serverSelectionTimeoutMS=2000)
            client.admin.command("ping")  # ensure reachable now
            return client[name]
        except PyMongoError as e:
            logger.warning("MongoDB at DATABASE_URL not reachable (%s), using in-memory store", e)

    import mongomock

    return mongomock.MongoClient()[name]


db = connect()


# ----------------------
# Identifiers
# ----------------------

def _uuid_hex() -> str:
    return uuid.uuid4().hex


_id_factory: Callable[[], str] = _uuid_hex


def new_id() -> str:
    return _id_factory()


def set_id_factory(factory: Optional[Callable[[], str]]) -> None:
    """Swap the id generator (tests use a counter). None restores uuid4."""
    global _id_factory
    _id_factory = factory or _uuid_hex


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ----------------------
# Documents
# ----------------------

def create_document(database, collection_name: str, id_field: str, data: Union[BaseModel, dict], timestamps: bool = True) -> Dict[str, Any]:
    """Insert a single document under a fresh id and return it (without _id)"""
    if isinstance(data, BaseModel):
        data_dict = data.model_dump()
    else:
        data_dict = dict(data)

    doc_id = data_dict.get(id_field) or new_id()
    data_dict[id_field] = doc_id
    if timestamps:
        now = utcnow()
        data_dict.setdefault("createdAt", now)
        data_dict["updatedAt"] = now

    database[collection_name].insert_one({"_id": doc_id, **data_dict})
    return data_dict


def get_document(database, collection_name: str, doc_id: str) -> Optional[Dict[str, Any]]:
    return database[collection_name].find_one({"_id": doc_id}, {"_id": 0})


def get_documents(database, collection_name: str, filter_dict: Optional[dict] = None, limit: Optional[int] = None, sort: Optional[list] = None):
    """Get documents from a collection"""
    cursor = database[collection_name].find(filter_dict or {}, {"_id": 0})
    if sort:
        cursor = cursor.sort(sort)
    if limit:
        cursor = cursor.limit(limit)
    return list(cursor)


def serialize_doc(doc: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    if not doc:
        return doc
    d = doc.copy()
    d.pop("_id", None)
    d.pop("passwordHash", None)
    d.pop("token", None)
    for k, v in d.items():
        if isinstance(v, datetime):
            d[k] = v.isoformat()
    return d


def ensure_indexes(database) -> None:
    database["user"].create_index([("email", ASCENDING)], unique=True)
    database["user"].create_index([("token", ASCENDING)])
    database["material"].create_index([("type", ASCENDING)], unique=True)
    database["badge"].create_index([("badgeName", ASCENDING)], unique=True)
    database["post"].create_index([("userID", ASCENDING), ("createdAt", ASCENDING)])
    database["pickup"].create_index([("postID", ASCENDING), ("status", ASCENDING)])
    # at most one Proposed or Confirmed pickup per giver and post
    database["pickup"].create_index(
        [("postID", ASCENDING), ("giverID", ASCENDING)],
        unique=True,
        name="one_active_pickup",
        partialFilterExpression={"status": {"$in": ["Proposed", "Confirmed"]}},
    )
    database["support"].create_index([("initiativeID", ASCENDING), ("createdAt", ASCENDING)])
    database["point"].create_index([("userID", ASCENDING), ("receivedAt", ASCENDING)])
    database["like"].create_index([("postID", ASCENDING), ("userID", ASCENDING)], unique=True)
    database["notification"].create_index([("userID", ASCENDING), ("createdAt", ASCENDING)])
