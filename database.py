"""
MongoDB access helpers

Every read goes through `decode` so documents come back as validated records;
every driver failure surfaces as UpstreamUnavailableError.
"""

import logging
from datetime import date, datetime, timezone
from typing import Any, Dict, List, Optional, Tuple, Type, TypeVar, Union

from bson import ObjectId
from pydantic import BaseModel, ValidationError
from pymongo import MongoClient
from pymongo.database import Database
from pymongo.errors import PyMongoError

from config import Settings
from errors import InvalidStateError, UpstreamUnavailableError
from schemas import SCHEMA_VERSION

logger = logging.getLogger(__name__)

M = TypeVar("M", bound=BaseModel)


def connect(settings: Settings) -> Optional[Database]:
    if not settings.database_url or not settings.database_name:
        logger.warning("DATABASE_URL or DATABASE_NAME not set, running without a database")
        return None
    client = MongoClient(settings.database_url, tz_aware=True)
    return client[settings.database_name]


def normalize_utc_midnight(d: Union[datetime, date]) -> datetime:
    return datetime(d.year, d.month, d.day, tzinfo=timezone.utc)


def mongo_datetime(d: Union[datetime, date]) -> datetime:
    """Naive UTC, the form MongoDB stores and compares."""
    if not isinstance(d, datetime):
        d = normalize_utc_midnight(d)
    if d.tzinfo is not None:
        d = d.astimezone(timezone.utc).replace(tzinfo=None)
    return d


def to_storage(data: Union[BaseModel, Dict[str, Any]]) -> Dict[str, Any]:
    """Plain dict ready for insertion; BSON has no calendar date type."""
    if isinstance(data, BaseModel):
        data = data.model_dump()
    doc = {}
    for k, v in data.items():
        if isinstance(v, date):
            v = mongo_datetime(v)
        doc[k] = v
    return doc


def object_id(value: str) -> ObjectId:
    if not ObjectId.is_valid(value):
        raise ValueError(f"Invalid id: {value}")
    return ObjectId(value)


def decode(model: Type[M], doc: Dict[str, Any]) -> M:
    if doc.get("schema_version", SCHEMA_VERSION) > SCHEMA_VERSION:
        raise InvalidStateError(
            f"{model.__name__} {doc.get('_id')} has schema_version {doc['schema_version']}, "
            f"newest understood is {SCHEMA_VERSION}"
        )
    fields = {k: v for k, v in doc.items() if k != "_id"}
    try:
        return model.model_validate(fields)
    except ValidationError as e:
        raise InvalidStateError(f"Stored {model.__name__} {doc.get('_id')} is malformed: {e}") from e


def decode_with_id(model: Type[M], doc: Dict[str, Any]) -> Tuple[str, M]:
    return str(doc["_id"]), decode(model, doc)


def serialize_value(v):
    if isinstance(v, ObjectId):
        return str(v)
    if isinstance(v, datetime):
        if v.tzinfo is None:
            v = v.replace(tzinfo=timezone.utc)
        return v.astimezone(timezone.utc).isoformat()
    if isinstance(v, date):
        return v.isoformat()
    if isinstance(v, dict):
        return serialize_doc(v)
    if isinstance(v, list):
        return [serialize_value(i) for i in v]
    return v


def serialize_doc(doc: Dict[str, Any]) -> Dict[str, Any]:
    out = {k: serialize_value(v) for k, v in doc.items() if k != "_id"}
    if "_id" in doc:
        out["id"] = str(doc["_id"])
    return out


def require_db(db: Optional[Database]) -> Database:
    if db is None:
        raise UpstreamUnavailableError("Database not available")
    return db


def create_document(db: Optional[Database], collection: str, data: Union[BaseModel, Dict[str, Any]]) -> str:
    doc = to_storage(data)
    now = mongo_datetime(datetime.now(timezone.utc))
    doc.setdefault("created_at", now)
    doc["updated_at"] = now
    try:
        res = require_db(db)[collection].insert_one(doc)
    except PyMongoError as e:
        logger.error("insert into %s failed: %s", collection, e)
        raise UpstreamUnavailableError(f"Could not write to {collection}") from e
    return str(res.inserted_id)


def get_documents(
    db: Optional[Database],
    collection: str,
    filter_dict: Optional[Dict[str, Any]] = None,
    sort: Optional[List[Tuple[str, int]]] = None,
    limit: int = 0,
) -> List[Dict[str, Any]]:
    try:
        cursor = require_db(db)[collection].find(filter_dict or {})
        if sort:
            cursor = cursor.sort(sort)
        if limit:
            cursor = cursor.limit(limit)
        return list(cursor)
    except PyMongoError as e:
        logger.error("query on %s failed: %s", collection, e)
        raise UpstreamUnavailableError(f"Could not read {collection}") from e


def find_document(db: Optional[Database], collection: str, filter_dict: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    try:
        return require_db(db)[collection].find_one(filter_dict)
    except PyMongoError as e:
        logger.error("lookup on %s failed: %s", collection, e)
        raise UpstreamUnavailableError(f"Could not read {collection}") from e


def update_document(db: Optional[Database], collection: str, doc_id: ObjectId, changes: Dict[str, Any]) -> None:
    changes = to_storage(changes)
    changes["updated_at"] = mongo_datetime(datetime.now(timezone.utc))
    try:
        require_db(db)[collection].update_one({"_id": doc_id}, {"$set": changes})
    except PyMongoError as e:
        logger.error("update on %s failed: %s", collection, e)
        raise UpstreamUnavailableError(f"Could not write to {collection}") from e


def delete_document(db: Optional[Database], collection: str, doc_id: ObjectId) -> None:
    try:
        require_db(db)[collection].delete_one({"_id": doc_id})
    except PyMongoError as e:
        logger.error("delete on %s failed: %s", collection, e)
        raise UpstreamUnavailableError(f"Could not write to {collection}") from e
