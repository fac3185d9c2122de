from __future__ import annotations
from typing import Any, Optional
from bson import ObjectId
from bson.errors import InvalidId
from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorDatabase
from pymongo import ReturnDocument
from datetime import datetime

from .settings import settings

_client: Optional[AsyncIOMotorClient] = None
_db: Optional[AsyncIOMotorDatabase] = None

async def get_db() -> AsyncIOMotorDatabase:
    global _client, _db
    if _db is None:
        _client = AsyncIOMotorClient(settings.DATABASE_URL)
        _db = _client[settings.DATABASE_NAME]
    return _db

def to_object_id(value: Any) -> Optional[ObjectId]:
    """Parse a client supplied id; None when it can never match a document."""
    if isinstance(value, ObjectId):
        return value
    try:
        return ObjectId(str(value))
    except (InvalidId, TypeError):
        return None

def serialize(doc: Optional[dict[str, Any]]) -> Optional[dict[str, Any]]:
    if doc is None:
        return None
    if "_id" in doc:
        doc["id"] = str(doc.pop("_id"))
    return doc

async def create_document(db: AsyncIOMotorDatabase, collection_name: str, data: dict[str, Any]) -> dict[str, Any]:
    now = datetime.utcnow()
    data_with_meta = {**data, "createdAt": now, "updatedAt": now}
    result = await db[collection_name].insert_one(data_with_meta)
    inserted = await db[collection_name].find_one({"_id": result.inserted_id})
    return serialize(inserted) or {}

async def get_document(db: AsyncIOMotorDatabase, collection_name: str, doc_id: Any) -> Optional[dict[str, Any]]:
    oid = to_object_id(doc_id)
    if oid is None:
        return None
    return serialize(await db[collection_name].find_one({"_id": oid}))

async def get_documents(
    db: AsyncIOMotorDatabase,
    collection_name: str,
    filter_dict: dict[str, Any] | None = None,
    limit: int = 100,
    skip: int = 0,
    sort: list[tuple[str, int]] | None = None,
) -> list[dict[str, Any]]:
    cursor = db[collection_name].find(filter_dict or {})
    if sort:
        cursor = cursor.sort(sort)
    cursor = cursor.skip(skip).limit(limit)
    docs = []
    async for d in cursor:
        docs.append(serialize(d))
    return docs

async def update_document(
    db: AsyncIOMotorDatabase,
    collection_name: str,
    doc_id: Any,
    changes: dict[str, Any],
    touch: bool = True,
    guard: Optional[dict[str, Any]] = None,
) -> Optional[dict[str, Any]]:
    oid = to_object_id(doc_id)
    if oid is None:
        return None
    update = dict(changes)
    if touch:
        update["updatedAt"] = datetime.utcnow()
    updated = await db[collection_name].find_one_and_update(
        {**(guard or {}), "_id": oid},
        {"$set": update},
        return_document=ReturnDocument.AFTER,
    )
    return serialize(updated)

async def delete_document(db: AsyncIOMotorDatabase, collection_name: str, doc_id: Any) -> bool:
    oid = to_object_id(doc_id)
    if oid is None:
        return False
    result = await db[collection_name].delete_one({"_id": oid})
    return result.deleted_count > 0

async def next_sequence(db: AsyncIOMotorDatabase, name: str) -> int:
    # Atomic counter so numbers are never reused after deletes
    counter = await db["counters"].find_one_and_update(
        {"_id": name},
        {"$inc": {"seq": 1}},
        upsert=True,
        return_document=ReturnDocument.AFTER,
    )
    return int(counter["seq"])
