"""
Database access

`DocumentStore` is the only way the services touch MongoDB. It speaks in
plain dicts keyed by collection name and document id so a different
pymongo-compatible backend (mongomock in the tests) can be dropped in.
`BlobStore` keeps evidence files in GridFS on the same database.
"""
import os
import re
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Union

import gridfs
from bson import ObjectId
from pymongo import ASCENDING, DESCENDING, MongoClient
from pymongo.database import Database

DATABASE_URL = os.getenv("DATABASE_URL")
DATABASE_NAME = os.getenv("DATABASE_NAME")

_client = None
db: Optional[Database] = None

if DATABASE_URL and DATABASE_NAME:
    _client = MongoClient(DATABASE_URL)
    db = _client[DATABASE_NAME]


def utcnow() -> datetime:
    # pymongo hands back naive UTC datetimes, so store them that way too
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_key(doc_id: str) -> Union[ObjectId, str]:
    if isinstance(doc_id, str) and ObjectId.is_valid(doc_id):
        return ObjectId(doc_id)
    return doc_id


def _match(doc_id: str, where: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    filters = dict(where or {})
    filters["_id"] = to_key(doc_id)
    return filters


def doc_to_dict(doc: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    if not doc:
        return doc
    doc = dict(doc)
    if "_id" in doc:
        doc["id"] = str(doc.pop("_id"))
    return doc


class DocumentStore:
    """Collection + id document access over a pymongo database"""

    def __init__(self, database: Database):
        self.database = database

    def collection(self, name: str):
        return self.database[name]

    def add(self, collection: str, data: Dict[str, Any]) -> str:
        data = dict(data)
        data.pop("id", None)
        now = utcnow()
        data.setdefault("created_at", now)
        data.setdefault("updated_at", now)
        result = self.collection(collection).insert_one(data)
        return str(result.inserted_id)

    def get(self, collection: str, doc_id: str) -> Optional[Dict[str, Any]]:
        return doc_to_dict(self.collection(collection).find_one({"_id": to_key(doc_id)}))

    def set(self, collection: str, doc_id: str, data: Dict[str, Any], merge: bool = False) -> None:
        data = dict(data)
        data.pop("id", None)
        key = to_key(doc_id)
        if merge:
            self.collection(collection).update_one({"_id": key}, {"$set": data}, upsert=True)
        else:
            self.collection(collection).replace_one({"_id": key}, data, upsert=True)

    def update(self, collection: str, doc_id: str, fields: Dict[str, Any],
               where: Optional[Dict[str, Any]] = None) -> bool:
        """$set the given fields (dotted paths allowed).

        `where` adds conditions the document must still meet, which makes the
        check and the write one atomic step. Returns False if nothing matched.
        """
        res = self.collection(collection).update_one(_match(doc_id, where), {"$set": fields})
        return res.matched_count > 0

    def update_where(self, collection: str, filters: Dict[str, Any], fields: Dict[str, Any]) -> int:
        res = self.collection(collection).update_many(filters, {"$set": fields})
        return res.modified_count

    def push(self, collection: str, doc_id: str, field: str, value: Any,
             extra: Optional[Dict[str, Any]] = None, where: Optional[Dict[str, Any]] = None) -> bool:
        """Atomically append to an array field, optionally setting other fields in the same write"""
        change: Dict[str, Any] = {"$push": {field: value}}
        if extra:
            change["$set"] = extra
        res = self.collection(collection).update_one(_match(doc_id, where), change)
        return res.matched_count > 0

    def delete(self, collection: str, doc_id: str) -> bool:
        res = self.collection(collection).delete_one({"_id": to_key(doc_id)})
        return res.deleted_count > 0

    def query(self, collection: str, filters: Optional[Dict[str, Any]] = None,
              order_by: Optional[str] = None, descending: bool = False,
              limit: Optional[int] = None) -> List[Dict[str, Any]]:
        """Equality filters as plain values, ranges as mongo operators ({"$gte": x})"""
        cursor = self.collection(collection).find(filters or {})
        if order_by:
            cursor = cursor.sort(order_by, DESCENDING if descending else ASCENDING)
        if limit:
            cursor = cursor.limit(limit)
        return [doc_to_dict(d) for d in cursor]

    def count(self, collection: str, filters: Optional[Dict[str, Any]] = None) -> int:
        return self.collection(collection).count_documents(filters or {})

    def collection_names(self) -> List[str]:
        return self.database.list_collection_names()


class BlobStore:
    """Files addressed by slash separated paths, stored in GridFS"""

    def __init__(self, database: Database, bucket: str = "evidence"):
        self.fs = gridfs.GridFS(database, collection=bucket)

    def upload(self, path: str, data: bytes, content_type: Optional[str] = None) -> str:
        # Same path overwrites, like an object store would
        self.delete(path)
        file_id = self.fs.put(data, filename=path, metadata={"content_type": content_type})
        return str(file_id)

    def list(self, prefix: str) -> List[Dict[str, Any]]:
        prefix = prefix.rstrip("/") + "/"
        files = []
        for f in self.fs.find({"filename": {"$regex": "^" + re.escape(prefix)}}):
            files.append({
                "path": f.filename,
                "name": f.filename[len(prefix):],
                "size": f.length,
                "content_type": (f.metadata or {}).get("content_type"),
                "uploaded_at": f.upload_date,
            })
        return sorted(files, key=lambda x: x["path"])

    def read(self, path: str) -> Optional[bytes]:
        for f in self.fs.find({"filename": path}):
            return f.read()
        return None

    def delete(self, path: str) -> int:
        removed = 0
        for f in self.fs.find({"filename": path}):
            self.fs.delete(f._id)
            removed += 1
        return removed

    def delete_prefix(self, prefix: str) -> int:
        removed = 0
        for item in self.list(prefix):
            removed += self.delete(item["path"])
        return removed
