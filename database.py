"""
Database access

One MongoClient per process. Collections are named after the lowercased
schema class (User -> "user", Order -> "order").
"""
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Union

from bson import ObjectId
from pydantic import BaseModel
from pymongo import ASCENDING, MongoClient
from pymongo.database import Database

from config import settings
from errors import ValidationError
from logger import get_logger

log = get_logger("database")

client = MongoClient(settings.database_url)
db: Database = client[settings.database_name]


def get_db() -> Database:
    return db


def ensure_indexes(database: Database) -> None:
    database["user"].create_index([("email", ASCENDING)], unique=True)
    database["cart"].create_index([("user_id", ASCENDING)], unique=True)
    database["order"].create_index([("order_id", ASCENDING)], unique=True)
    database["order"].create_index([("gateway_order_id", ASCENDING)])
    database["order"].create_index([("user_id", ASCENDING)])
    database["category"].create_index([("name", ASCENDING)], unique=True)
    database["product"].create_index([("category_id", ASCENDING)])


def now() -> datetime:
    return datetime.now(timezone.utc)


def create_document(collection_name: str, data: Union[BaseModel, Dict[str, Any]], database: Optional[Database] = None) -> str:
    database = database if database is not None else db
    doc = data.model_dump() if isinstance(data, BaseModel) else dict(data)
    doc.setdefault("created_at", now())
    doc.setdefault("updated_at", doc["created_at"])
    result = database[collection_name].insert_one(doc)
    return str(result.inserted_id)


def get_documents(collection_name: str, filter_dict: Optional[Dict[str, Any]] = None, limit: Optional[int] = None,
                  database: Optional[Database] = None, sort: Optional[List[tuple]] = None) -> List[Dict[str, Any]]:
    database = database if database is not None else db
    cursor = database[collection_name].find(filter_dict or {})
    if sort:
        cursor = cursor.sort(sort)
    if limit:
        cursor = cursor.limit(limit)
    return list(cursor)


def to_object_id(id_str: str, label: str = "id") -> ObjectId:
    if not ObjectId.is_valid(id_str):
        raise ValidationError(f"Invalid {label}")
    return ObjectId(id_str)


def serialize_doc(doc: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    if not doc:
        return doc
    doc = dict(doc)
    _id = doc.pop("_id", None)
    if _id is not None:
        doc["id"] = str(_id)
    for k, v in list(doc.items()):
        if isinstance(v, ObjectId):
            doc[k] = str(v)
    return doc
