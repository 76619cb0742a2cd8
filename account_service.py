"""
Accounts: signup, signin with lockout, password lifecycle, role changes.

Lockout is a per-document state machine. Five consecutive failed password
checks lock the account for two hours from the fifth failure; an expired lock
is only noticed on the next check. Counter and lock changes are single atomic
document updates.
"""

import logging
from datetime import timedelta
from typing import Iterable, List, Optional

from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError

from config import (
    MAX_LOGIN_ATTEMPTS, LOCK_TIME_HOURS, ADMIN_LOCK_HOURS,
    RESET_TOKEN_EXPIRE_HOURS, VERIFY_TOKEN_EXPIRE_HOURS,
)
from database import USERS, create_document
from errors import (
    AuthenticationError, AuthorizationError, ConflictError, NotFoundError, ValidationError,
)
from permissions import ADMIN_ROLES, ROLES, can_access_school, has_permission, school_id_of, scoped_filter
from security import create_access_token, generate_token, get_password_hash, verify_password
from utils import build_search_query, public_list, to_mongo, to_object_id, to_public_json, utcnow

logger = logging.getLogger(__name__)

REQUIRED_FIELDS = ("username", "email", "password", "first_name", "last_name")
COMMON_FIELDS = ("username", "email", "first_name", "last_name", "phone", "profile_picture")
ROLE_PAYLOADS = {
    "student": ("student_info", "bus_info", "tracking_info", "admin_info"),
    "parent": ("parent_info", "admin_info"),
    "schoolAdmin": ("admin_info",),
    "systemAdmin": ("admin_info",),
}
USER_SEARCH_FIELDS = ("first_name", "last_name", "email", "username")
# Roles an anonymous caller may register; systemAdmin only while none is active
PUBLIC_SIGNUP_ROLES = ("student", "parent", "systemAdmin")


# ----------------------- Lookups -----------------------

def find_user(db, user_id, active_only: bool = True) -> Optional[dict]:
    query = {"_id": to_object_id(user_id)}
    if active_only:
        query["is_active"] = True
    return db[USERS].find_one(query)


def get_user(db, user_id, active_only: bool = True) -> dict:
    user = find_user(db, user_id, active_only)
    if not user:
        raise NotFoundError("User not found")
    return user


def find_active_parent(db, parent_id, acting_user: Optional[dict] = None) -> Optional[dict]:
    return db[USERS].find_one(scoped_filter("parent", acting_user, _id=to_object_id(parent_id)))


def active_system_admin_exists(db, exclude_id=None) -> bool:
    query = {"role": "systemAdmin", "is_active": True}
    if exclude_id is not None:
        query["_id"] = {"$ne": exclude_id}
    return db[USERS].find_one(query) is not None


def attach_parents(db, students: Iterable[dict]) -> List[dict]:
    """Public student records with a short ``parent`` summary embedded."""
    students = list(students)
    parent_ids = {(s.get("student_info") or {}).get("parent_id") for s in students}
    parent_ids.discard(None)
    parents = {}
    if parent_ids:
        cursor = db[USERS].find(
            {"_id": {"$in": list(parent_ids)}},
            {"first_name": 1, "last_name": 1, "phone": 1, "email": 1},
        )
        parents = {p["_id"]: p for p in cursor}
    items = []
    for s in students:
        data = to_public_json(s)
        parent = parents.get((s.get("student_info") or {}).get("parent_id"))
        data["parent"] = {
            "id": str(parent["_id"]),
            "first_name": parent.get("first_name"),
            "last_name": parent.get("last_name"),
            "phone": parent.get("phone"),
            "email": parent.get("email"),
        } if parent else None
        items.append(data)
    return items


# ----------------------- Signup / Signin -----------------------

def _build_user_document(data: dict, role: str) -> dict:
    now = utcnow()
    doc = {k: data[k] for k in COMMON_FIELDS if data.get(k) is not None}
    doc["email"] = doc["email"].strip().lower()
    for key in ROLE_PAYLOADS[role]:
        if data.get(key) is not None:
            doc[key] = to_mongo(data[key])
    doc.update({
        "role": role,
        "password_hash": get_password_hash(data["password"]),
        "is_active": True,
        "is_verified": False,
        "login_attempts": 0,
        "email_verification_token": generate_token(),
        "email_verification_expires": now + timedelta(hours=VERIFY_TOKEN_EXPIRE_HOURS),
    })
    if role == "student":
        doc["student_info"]["parent_id"] = to_object_id(doc["student_info"]["parent_id"])
        tracking = doc.get("tracking_info") or {}
        tracking.setdefault("status", "active")
        tracking["last_updated"] = now
        doc["tracking_info"] = tracking
    if role == "parent":
        doc["parent_info"]["children"] = [to_object_id(c) for c in doc["parent_info"].get("children", [])]
    return doc


def _check_role_requirements(db, data: dict, role: str, acting_user: Optional[dict] = None):
    if role == "student":
        parent_id = (data.get("student_info") or {}).get("parent_id")
        if not parent_id:
            raise ValidationError("Student must have parent information")
        parent = find_active_parent(db, parent_id, acting_user)
        if not parent:
            raise NotFoundError("Parent not found")
        if not school_id_of(data) and school_id_of(parent):
            # students follow their parent's school unless one was given
            data["admin_info"] = {
                "school_id": school_id_of(parent),
                "school_name": parent["admin_info"].get("school_name"),
            }
        student_id = data["student_info"].get("student_id")
        if student_id and db[USERS].find_one({"student_info.student_id": student_id}):
            raise ConflictError("Student id already exists")
    elif role == "parent":
        if not (data.get("parent_info") or {}).get("relationship"):
            raise ValidationError("Parent must have relationship information")
    elif role == "schoolAdmin":
        admin_info = data.get("admin_info") or {}
        if not admin_info.get("school_id") or not admin_info.get("school_name"):
            raise ValidationError("School admin must have school information")
    elif role == "systemAdmin":
        if active_system_admin_exists(db):
            raise ConflictError("System admin already exists")


def _create_user(db, data: dict, acting_user: Optional[dict] = None) -> dict:
    data = dict(data)
    role = data.get("role") or "student"
    if role not in ROLES:
        raise ValidationError("Invalid role")
    missing = [f for f in REQUIRED_FIELDS if not data.get(f)]
    if missing:
        raise ValidationError("Missing required fields", errors=[{"field": f, "message": "required"} for f in missing])
    email = str(data["email"]).strip().lower()
    existing = db[USERS].find_one({"$or": [{"email": email}, {"username": data.get("username")}]})
    if existing:
        raise ConflictError("User with this email or username already exists")
    _check_role_requirements(db, data, role, acting_user)

    doc = _build_user_document(data, role)
    try:
        user_id = create_document(db, USERS, doc)
    except DuplicateKeyError:
        raise ConflictError("User with this email or username already exists")

    if role == "student":
        db[USERS].update_one(
            {"_id": doc["student_info"]["parent_id"]},
            {"$addToSet": {"parent_info.children": to_object_id(user_id)}, "$set": {"updated_at": utcnow()}},
        )
    logger.info("Created %s account %s (%s)", role, doc["username"], user_id)
    return db[USERS].find_one({"_id": to_object_id(user_id)})


def signup(db, data: dict) -> dict:
    user = _create_user(db, data)
    token = create_access_token(str(user["_id"]), user["role"])
    return {"user": to_public_json(user), "token": token}


def public_signup(db, data: dict) -> dict:
    """Self-registration. School binding is never taken from the caller."""
    role = data.get("role") or "student"
    if role not in PUBLIC_SIGNUP_ROLES:
        raise AuthorizationError("This role cannot self-register")
    data = dict(data)
    if role != "systemAdmin":
        data.pop("admin_info", None)
    return signup(db, data)


def create_user_as(db, data: dict, acting_user: dict) -> dict:
    """Admin-driven account creation; school admins bind new parents and students to their school."""
    data = dict(data)
    if acting_user.get("role") == "schoolAdmin" and data.get("role") in ("parent", "student"):
        admin_info = dict(data.get("admin_info") or {})
        admin_info["school_id"] = school_id_of(acting_user)
        admin_info["school_name"] = (acting_user.get("admin_info") or {}).get("school_name")
        data["admin_info"] = admin_info
    return to_public_json(_create_user(db, data, acting_user))


def is_locked(user: dict, now=None) -> bool:
    lock_until = user.get("lock_until")
    return bool(lock_until and lock_until > (now or utcnow()))


def register_failed_login(db, user: dict):
    now = utcnow()
    users = db[USERS]
    lock_until = user.get("lock_until")
    if lock_until and lock_until <= now:
        # previous lock expired, this failure starts a new window
        users.update_one({"_id": user["_id"]}, {"$set": {"login_attempts": 1}, "$unset": {"lock_until": ""}})
        return
    updated = users.find_one_and_update(
        {"_id": user["_id"]},
        {"$inc": {"login_attempts": 1}},
        return_document=ReturnDocument.AFTER,
    )
    if updated and updated.get("login_attempts", 0) >= MAX_LOGIN_ATTEMPTS:
        res = users.update_one(
            {"_id": user["_id"], "$or": [{"lock_until": None}, {"lock_until": {"$lte": now}}]},
            {"$set": {"lock_until": now + timedelta(hours=LOCK_TIME_HOURS)}},
        )
        if res.modified_count:
            logger.warning("Account %s locked after %d failed sign-ins", user.get("username"), updated["login_attempts"])


def signin(db, username: str, password: str) -> dict:
    username = username.strip()
    users = db[USERS]
    user = users.find_one({"$or": [{"username": username}, {"email": username.lower()}]})
    if not user or not user.get("is_active"):
        raise AuthenticationError("Invalid credentials or account inactive")
    if is_locked(user):
        raise AuthenticationError("Account is temporarily locked due to multiple failed login attempts")
    if not verify_password(password, user.get("password_hash", "")):
        logger.warning("Failed sign-in for %s", user.get("username"))
        register_failed_login(db, user)
        raise AuthenticationError("Invalid credentials")

    user = users.find_one_and_update(
        {"_id": user["_id"]},
        {"$set": {"login_attempts": 0, "last_login": utcnow()}, "$unset": {"lock_until": ""}},
        return_document=ReturnDocument.AFTER,
    )
    token = create_access_token(str(user["_id"]), user["role"])
    return {"user": to_public_json(user), "token": token}


# ----------------------- Profile & passwords -----------------------

def get_user_profile(db, user_id) -> dict:
    user = get_user(db, user_id)
    data = to_public_json(user)
    if user["role"] == "student":
        parent_id = (user.get("student_info") or {}).get("parent_id")
        parent = db[USERS].find_one({"_id": parent_id}) if parent_id else None
        data["parent"] = to_public_json(parent)
    elif user["role"] == "parent":
        children = (user.get("parent_info") or {}).get("children", [])
        data["children"] = public_list(db[USERS].find({"_id": {"$in": children}, "is_active": True}))
    return {"user": data, "role": user["role"]}


def change_password(db, user: dict, current_password: str, new_password: str) -> bool:
    if not verify_password(current_password, user.get("password_hash", "")):
        raise ValidationError("Current password is incorrect")
    db[USERS].update_one(
        {"_id": user["_id"]},
        {"$set": {"password_hash": get_password_hash(new_password), "updated_at": utcnow()}},
    )
    return True


def reset_password(db, email: str) -> dict:
    email = email.strip().lower()
    token = generate_token()
    user = db[USERS].find_one_and_update(
        {"email": email, "is_active": True},
        {"$set": {
            "reset_password_token": token,
            "reset_password_expires": utcnow() + timedelta(hours=RESET_TOKEN_EXPIRE_HOURS),
        }},
    )
    if not user:
        raise NotFoundError("User not found")
    return {"reset_token": token, "email": email}


def confirm_password_reset(db, token: str, new_password: str) -> bool:
    user = db[USERS].find_one_and_update(
        {"reset_password_token": token, "reset_password_expires": {"$gt": utcnow()}},
        {
            "$set": {"password_hash": get_password_hash(new_password), "updated_at": utcnow()},
            "$unset": {"reset_password_token": "", "reset_password_expires": ""},
        },
    )
    if not user:
        raise ValidationError("Invalid or expired reset token")
    return True


def verify_email(db, token: str) -> bool:
    user = db[USERS].find_one_and_update(
        {"email_verification_token": token, "email_verification_expires": {"$gt": utcnow()}},
        {
            "$set": {"is_verified": True, "updated_at": utcnow()},
            "$unset": {"email_verification_token": "", "email_verification_expires": ""},
        },
    )
    if not user:
        raise ValidationError("Invalid or expired verification token")
    return True


# ----------------------- Administration -----------------------

def _ensure_same_school(target: dict, acting_user: Optional[dict]):
    if acting_user and acting_user.get("role") == "schoolAdmin":
        if school_id_of(target) != school_id_of(acting_user):
            raise AuthorizationError("School admins can only manage users within their school")


def toggle_user_lock(db, user_id, lock: bool = True, acting_user: Optional[dict] = None) -> dict:
    user = get_user(db, user_id, active_only=False)
    _ensure_same_school(user, acting_user)
    if lock:
        update = {"$set": {"lock_until": utcnow() + timedelta(hours=ADMIN_LOCK_HOURS)}}
    else:
        update = {"$set": {"login_attempts": 0}, "$unset": {"lock_until": ""}}
    user = db[USERS].find_one_and_update({"_id": user["_id"]}, update, return_document=ReturnDocument.AFTER)
    logger.info("Account %s %s", user.get("username"), "locked" if lock else "unlocked")
    return to_public_json(user)


def update_user_role(db, user_id, new_role: str, acting_user: dict) -> dict:
    if new_role not in ROLES:
        raise ValidationError("Invalid role")
    user = get_user(db, user_id, active_only=False)

    if acting_user.get("role") == "schoolAdmin":
        if new_role == "systemAdmin":
            raise AuthorizationError("School admins cannot create system admins")
        _ensure_same_school(user, acting_user)

    if user["role"] == "systemAdmin" and new_role != "systemAdmin":
        raise AuthorizationError("Cannot downgrade system admin role")

    if new_role == "schoolAdmin":
        admin_info = user.get("admin_info") or {}
        if not admin_info.get("school_id") or not admin_info.get("school_name"):
            raise ValidationError("School admin must have school information")

    if new_role == "systemAdmin" and user["role"] != "systemAdmin":
        if active_system_admin_exists(db, exclude_id=user["_id"]):
            raise ConflictError("System admin already exists")

    user = db[USERS].find_one_and_update(
        {"_id": user["_id"]},
        {"$set": {"role": new_role, "updated_at": utcnow()}},
        return_document=ReturnDocument.AFTER,
    )
    logger.info("Role of %s changed to %s by %s", user.get("username"), new_role, acting_user.get("username"))
    return to_public_json(user)


def get_users_by_role(db, role: str, search: Optional[str] = None, school_id: Optional[str] = None) -> List[dict]:
    query = {"role": role, "is_active": True}
    query.update(build_search_query(search, USER_SEARCH_FIELDS))
    if school_id:
        query["admin_info.school_id"] = school_id
    return public_list(db[USERS].find(query))


def get_all_admins(db, search: Optional[str] = None, school_id: Optional[str] = None) -> List[dict]:
    query = {"role": {"$in": list(ADMIN_ROLES)}, "is_active": True}
    if school_id:
        query["admin_info.school_id"] = school_id
    query.update(build_search_query(search, USER_SEARCH_FIELDS))
    return public_list(db[USERS].find(query))


def get_school_admins_by_school(db, school_id: str) -> List[dict]:
    return public_list(db[USERS].find({"role": "schoolAdmin", "admin_info.school_id": school_id, "is_active": True}))


def check_user_permission(db, user_id, permission: str) -> bool:
    return has_permission(get_user(db, user_id, active_only=False), permission)


def check_school_access(db, user_id, school_id: str) -> bool:
    return can_access_school(get_user(db, user_id, active_only=False), school_id)
