import math
import re
from datetime import date, datetime, timezone
from typing import Any, Dict, Iterable, List, Optional

from bson import ObjectId

from errors import ValidationError

SENSITIVE_FIELDS = (
    "password_hash",
    "reset_password_token",
    "reset_password_expires",
    "email_verification_token",
    "email_verification_expires",
    "login_attempts",
    "lock_until",
)

ROLE_LABELS = {
    "student": "Student",
    "parent": "Parent",
    "systemAdmin": "System Admin",
}


# ----------------------- Time -----------------------

def utcnow() -> datetime:
    # naive UTC at millisecond precision, which is what BSON stores
    now = datetime.now(timezone.utc).replace(tzinfo=None)
    return now.replace(microsecond=now.microsecond // 1000 * 1000)


def to_mongo(value: Any) -> Any:
    """Convert a dumped payload into values pymongo can store."""
    if isinstance(value, dict):
        return {k: to_mongo(v) for k, v in value.items()}
    if isinstance(value, (list, tuple, set)):
        return [to_mongo(v) for v in value]
    if isinstance(value, datetime):
        if value.tzinfo is not None:
            value = value.astimezone(timezone.utc).replace(tzinfo=None)
        return value.replace(microsecond=value.microsecond // 1000 * 1000)
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day)
    return value


# ----------------------- Ids -----------------------

def to_object_id(id_str: Any) -> ObjectId:
    if isinstance(id_str, ObjectId):
        return id_str
    if not id_str:
        raise ValidationError("Invalid ID format")
    try:
        return ObjectId(id_str)
    except Exception:
        raise ValidationError("Invalid ID format")


def is_valid_object_id(id_str: Any) -> bool:
    return isinstance(id_str, ObjectId) or ObjectId.is_valid(str(id_str))


# ----------------------- Serialization -----------------------

def serialize_doc(value: Any) -> Any:
    if isinstance(value, ObjectId):
        return str(value)
    if isinstance(value, dict):
        out = {}
        for k, v in value.items():
            if k == "_id":
                out["id"] = str(v)
            else:
                out[k] = serialize_doc(v)
        return out
    if isinstance(value, list):
        return [serialize_doc(v) for v in value]
    return value


def display_name(doc: dict) -> str:
    full_name = f"{doc.get('first_name', '')} {doc.get('last_name', '')}".strip()
    role = doc.get("role")
    if role == "schoolAdmin":
        school = (doc.get("admin_info") or {}).get("school_name") or "Unknown School"
        return f"{full_name} (School Admin - {school})"
    return f"{full_name} ({ROLE_LABELS.get(role, 'System Admin')})"


def to_public_json(doc: Optional[dict]) -> Optional[dict]:
    """User document without credentials, one-time tokens or lock metadata."""
    if not doc:
        return doc
    data = {k: v for k, v in doc.items() if k not in SENSITIVE_FIELDS}
    data = serialize_doc(data)
    data["full_name"] = f"{doc.get('first_name', '')} {doc.get('last_name', '')}".strip()
    data["display_name"] = display_name(doc)
    return data


def public_list(docs: Iterable[dict]) -> List[dict]:
    return [to_public_json(d) for d in docs]


# ----------------------- Queries -----------------------

def build_search_query(search: Optional[str], fields: Iterable[str]) -> Dict[str, Any]:
    if not search:
        return {}
    pattern = re.escape(search)
    return {"$or": [{f: {"$regex": pattern, "$options": "i"}} for f in fields]}


def flatten_update(data: Dict[str, Any], nested: Iterable[str] = ()) -> Dict[str, Any]:
    """Turn ``{"bus_info": {"bus_number": "7"}}`` into ``{"bus_info.bus_number": "7"}`` for ``$set``."""
    nested = set(nested)
    out = {}
    for key, value in data.items():
        if key in nested and isinstance(value, dict):
            for sub_key, sub_value in value.items():
                out[f"{key}.{sub_key}"] = to_mongo(sub_value)
        else:
            out[key] = to_mongo(value)
    return out


def pagination_info(page: int, limit: int, total: int) -> dict:
    page = max(int(page or 1), 1)
    limit = max(int(limit or 10), 1)
    total_pages = math.ceil(total / limit) if total else 0
    return {
        "current_page": page,
        "items_per_page": limit,
        "total_pages": total_pages,
        "total": total,
        "skip": (page - 1) * limit,
        "has_next_page": page < total_pages,
        "has_prev_page": page > 1,
    }


def group_counts(docs: Iterable[dict]) -> List[dict]:
    return [{"key": d.get("_id"), "count": d.get("count", 0)} for d in docs]


# ----------------------- Responses -----------------------

def ok(data: Any = None, message: Optional[str] = None) -> dict:
    body = {"success": True}
    if message:
        body["message"] = message
    if data is not None:
        body["data"] = data
    return body
