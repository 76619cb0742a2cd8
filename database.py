"""
MongoDB access for the SchoolWay API.

Every principal lives in the ``user`` collection; tracking history is kept in
``trackingevent``. ``db`` stays ``None`` when ``DATABASE_URL`` is not set.
"""

import logging
from typing import Union

from pymongo import MongoClient, ASCENDING, DESCENDING
from pydantic import BaseModel

from config import DATABASE_URL, DATABASE_NAME
from errors import InternalError
from utils import to_mongo, utcnow

logger = logging.getLogger(__name__)

USERS = "user"
TRACKING_EVENTS = "trackingevent"

client = MongoClient(DATABASE_URL) if DATABASE_URL else None
db = client[DATABASE_NAME] if client is not None else None


def get_db():
    if db is None:
        raise InternalError("Database not configured")
    return db


def create_document(database, collection_name: str, data: Union[BaseModel, dict]) -> str:
    doc = data.model_dump(exclude_none=True) if isinstance(data, BaseModel) else dict(data)
    doc = to_mongo(doc)
    now = utcnow()
    doc.setdefault("created_at", now)
    doc["updated_at"] = now
    res = database[collection_name].insert_one(doc)
    return str(res.inserted_id)


def ensure_indexes(database):
    users = database[USERS]
    users.create_index("username", unique=True)
    users.create_index("email", unique=True)
    users.create_index("student_info.student_id", unique=True, sparse=True)
    users.create_index([("role", ASCENDING), ("is_active", ASCENDING)])
    users.create_index("student_info.parent_id")
    users.create_index("parent_info.children")
    users.create_index("tracking_info.status")
    users.create_index("bus_info.bus_number")
    users.create_index("admin_info.school_id")
    database[TRACKING_EVENTS].create_index([("student_id", ASCENDING), ("timestamp", DESCENDING)])
    logger.info("Indexes ensured on %s", getattr(database, "name", "database"))
