"""
MongoDB access for the Vault billing API.

The client is created lazily on first use and memoized for the life of the
process. Initialization is guarded by a lock so concurrent first requests
share one client.
"""
import logging
import threading
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from bson import ObjectId
from pymongo import ASCENDING, MongoClient
from pymongo.database import Database
from pymongo.errors import PyMongoError

from config import get_settings
from errors import UpstreamError

logger = logging.getLogger(__name__)

CLIENTS = "clients"
INVOICES = "invoices"
USERS = "users"
SETTINGS = "settings"

_db: Optional[Database] = None
_lock = threading.Lock()


def _connect() -> Database:
    settings = get_settings()
    client = MongoClient(
        settings.DATABASE_URL,
        timeoutMS=settings.STORE_TIMEOUT_MS,
        serverSelectionTimeoutMS=settings.STORE_TIMEOUT_MS,
        connectTimeoutMS=settings.STORE_TIMEOUT_MS,
    )
    database = client[settings.DATABASE_NAME]
    logger.info("MongoDB client created for database %s", settings.DATABASE_NAME)
    return database


def get_db() -> Database:
    """Return the process-wide database handle, creating it on first call."""
    global _db
    if _db is not None:
        return _db
    with _lock:
        if _db is None:
            database = _connect()
            ensure_indexes(database)
            _db = database
    return _db


def ensure_indexes(database: Database) -> None:
    try:
        database[INVOICES].create_index([("invoiceId", ASCENDING)], unique=True, name="invoice_id_unique")
        database[INVOICES].create_index(
            [("projectId", ASCENDING), ("milestoneId", ASCENDING)],
            unique=True,
            partialFilterExpression={"milestoneId": {"$exists": True}},
            name="project_milestone_unique",
        )
        database[USERS].create_index([("email", ASCENDING)], name="email_lookup")
    except PyMongoError as exc:
        logger.warning("Index creation failed: %s", exc)


# ----------------------------------------------------------------------------
# Helpers
# ----------------------------------------------------------------------------

def now() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    """Generate a string id for embedded records (projects, milestones)."""
    return str(ObjectId())


def identifier_filter(identifier: Any, alt_field: str) -> Dict[str, Any]:
    """Native id when the identifier parses as one, otherwise the human-facing key."""
    if isinstance(identifier, ObjectId):
        return {"_id": identifier}
    if ObjectId.is_valid(str(identifier)):
        return {"_id": ObjectId(str(identifier))}
    return {alt_field: identifier}


def object_id_or_none(value: Any) -> Optional[ObjectId]:
    if isinstance(value, ObjectId):
        return value
    if value is not None and ObjectId.is_valid(str(value)):
        return ObjectId(str(value))
    return None


def create_document(database: Database, collection_name: str, data: Any) -> ObjectId:
    """Insert a document (dict or pydantic model) stamping createdAt/updatedAt."""
    if hasattr(data, "model_dump"):
        doc = data.model_dump(by_alias=True, exclude_none=True)
    else:
        doc = dict(data)
    stamp = now()
    doc.setdefault("createdAt", stamp)
    doc.setdefault("updatedAt", stamp)
    result = database[collection_name].insert_one(doc)
    doc["_id"] = result.inserted_id
    return result.inserted_id


def get_documents(database: Database, collection_name: str, filter_dict: Optional[Dict[str, Any]] = None,
                  limit: Optional[int] = None, sort: Optional[List] = None) -> List[Dict[str, Any]]:
    cursor = database[collection_name].find(filter_dict or {})
    if sort:
        cursor = cursor.sort(sort)
    if limit:
        cursor = cursor.limit(limit)
    return list(cursor)


def serialize(value: Any) -> Any:
    """Make a stored document JSON-safe: ObjectIds become strings, ``_id`` becomes ``id``."""
    if isinstance(value, ObjectId):
        return str(value)
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, list):
        return [serialize(v) for v in value]
    if isinstance(value, dict):
        out = {}
        for k, v in value.items():
            if k == "_id":
                out["id"] = serialize(v)
            elif k == "password":
                continue
            else:
                out[k] = serialize(v)
        return out
    return value


def upstream(action: str, exc: PyMongoError) -> UpstreamError:
    logger.error("Store call failed during %s: %s", action, exc)
    return UpstreamError(f"Document store unavailable during {action}", cause=exc, action=action)
