"""
School-scoped administration.

A system admin sees every school. A school admin is silently filtered to its
own ``admin_info.school_id`` and may not create, promote to, or delete a
system admin.
"""

import logging
from typing import List, Optional

from pymongo import ReturnDocument

import account_service
import tracking_service
from database import USERS
from errors import AuthorizationError, ConflictError, NotFoundError, ValidationError
from permissions import ADMIN_ROLES, can_access_school, school_id_of, school_scope, scoped_filter
from utils import (
    build_search_query, flatten_update, group_counts, pagination_info, public_list, to_object_id,
    to_public_json, utcnow,
)

logger = logging.getLogger(__name__)

ADMIN_SEARCH_FIELDS = ("first_name", "last_name", "email", "username")
# admin_info keys only a system admin may set
PRIVILEGE_FIELDS = ("permissions", "access_level")


def _admins(**extra) -> dict:
    query = {"role": {"$in": list(ADMIN_ROLES)}, "is_active": True}
    query.update(extra)
    return query


def _is_school_admin(user: dict) -> bool:
    return user.get("role") == "schoolAdmin"


def _find_admin(db, admin_id) -> dict:
    admin = db[USERS].find_one(_admins(_id=to_object_id(admin_id)))
    if not admin:
        raise NotFoundError("Admin not found")
    return admin


# ----------------------- Admin accounts -----------------------

def get_all_admins(db, acting_user: dict, school_id: Optional[str] = None, search: Optional[str] = None) -> List[dict]:
    query = _admins()
    if _is_school_admin(acting_user):
        query["admin_info.school_id"] = school_id_of(acting_user)
    elif school_id:
        query["admin_info.school_id"] = school_id
    query.update(build_search_query(search, ADMIN_SEARCH_FIELDS))
    return public_list(db[USERS].find(query))


def get_admin_by_id(db, admin_id, acting_user: dict) -> dict:
    admin = _find_admin(db, admin_id)
    if _is_school_admin(acting_user) and school_id_of(admin) != school_id_of(acting_user):
        raise AuthorizationError("Access denied to this admin")
    return to_public_json(admin)


def create_admin(db, data: dict, acting_user: dict) -> dict:
    data = dict(data)
    data["role"] = data.get("role") or "schoolAdmin"
    if data["role"] not in ADMIN_ROLES:
        raise ValidationError("Invalid admin role")

    if _is_school_admin(acting_user):
        if data["role"] == "systemAdmin":
            raise AuthorizationError("School admins cannot create system admins")
        admin_info = dict(data.get("admin_info") or {})
        if admin_info.get("school_id") and admin_info["school_id"] != school_id_of(acting_user):
            raise AuthorizationError("School admins can only create admins for their own school")
        if admin_info.get("permissions"):
            raise AuthorizationError("School admins cannot grant admin permissions")
        admin_info["school_id"] = school_id_of(acting_user)
        admin_info.setdefault("school_name", (acting_user.get("admin_info") or {}).get("school_name"))
        data["admin_info"] = admin_info

    return account_service.create_user_as(db, data, acting_user)


def update_admin(db, admin_id, data: dict, acting_user: dict) -> dict:
    admin = _find_admin(db, admin_id)
    new_role = data.get("role")
    admin_info = data.get("admin_info") or {}

    if _is_school_admin(acting_user):
        if school_id_of(admin) != school_id_of(acting_user):
            raise AuthorizationError("School admins can only update admins from their own school")
        if new_role == "systemAdmin":
            raise AuthorizationError("School admins cannot promote users to system admin")
        if admin_info.get("school_id") and admin_info["school_id"] != school_id_of(acting_user):
            raise AuthorizationError("School admins cannot move admins to another school")
        if any(key in admin_info for key in PRIVILEGE_FIELDS):
            raise AuthorizationError("School admins cannot change admin permissions")

    if new_role and new_role != admin["role"]:
        if admin["role"] == "systemAdmin":
            raise AuthorizationError("Cannot downgrade system admin role")
        if new_role == "systemAdmin" and account_service.active_system_admin_exists(db, exclude_id=admin["_id"]):
            raise ConflictError("System admin already exists")

    merged_info = {**(admin.get("admin_info") or {}), **admin_info}
    if (new_role or admin["role"]) == "schoolAdmin" and not (merged_info.get("school_id") and merged_info.get("school_name")):
        raise ValidationError("School admin must have school information")

    fields = flatten_update(data, ("admin_info",))
    if not fields:
        raise ValidationError("No fields to update")
    fields["updated_at"] = utcnow()
    updated = db[USERS].find_one_and_update(
        {"_id": admin["_id"]},
        {"$set": fields},
        return_document=ReturnDocument.AFTER,
    )
    return to_public_json(updated)


def delete_admin(db, admin_id, acting_user: dict) -> dict:
    admin = _find_admin(db, admin_id)
    if _is_school_admin(acting_user):
        if school_id_of(admin) != school_id_of(acting_user):
            raise AuthorizationError("School admins can only delete admins from their own school")
        if admin["role"] == "systemAdmin":
            raise AuthorizationError("School admins cannot delete system admins")
    if admin["_id"] == acting_user.get("_id"):
        raise ValidationError("Cannot delete your own account")

    deleted = db[USERS].find_one_and_update(
        {"_id": admin["_id"]},
        {"$set": {"is_active": False, "updated_at": utcnow()}},
        return_document=ReturnDocument.AFTER,
    )
    logger.info("Admin %s deactivated by %s", admin.get("username"), acting_user.get("username"))
    return to_public_json(deleted)


def get_admin_activity_log(db, admin_id, acting_user: dict) -> dict:
    admin = get_admin_by_id(db, admin_id, acting_user)
    return {"admin": admin, "last_login": admin.get("last_login"), "created_at": admin.get("created_at")}


def get_school_admins_by_school(db, school_id: str, acting_user: dict) -> List[dict]:
    if not can_access_school(acting_user, school_id):
        raise AuthorizationError("Access denied to this school")
    return account_service.get_school_admins_by_school(db, school_id)


# ----------------------- Dashboard -----------------------

def get_dashboard_stats(db, acting_user: dict) -> dict:
    base = {"is_active": True, **school_scope(acting_user)}
    users = db[USERS]

    def grouped(match, field):
        return group_counts(users.aggregate([
            {"$match": match},
            {"$group": {"_id": f"${field}", "count": {"$sum": 1}}},
        ]))

    students = {**base, "role": "student"}
    admins = {**base, "role": {"$in": list(ADMIN_ROLES)}}
    return {
        "total_students": users.count_documents(students),
        "total_parents": users.count_documents({**base, "role": "parent"}),
        "total_admins": users.count_documents(admins),
        "students_by_status": grouped(students, "tracking_info.status"),
        "students_by_grade": grouped(students, "student_info.grade"),
        "admins_by_role": grouped(admins, "role"),
    }


def get_system_overview(db, acting_user: dict, limit: int = 5) -> dict:
    base = {"is_active": True, **school_scope(acting_user)}
    users = db[USERS]

    def newest(match):
        return users.find(match).sort("created_at", -1).limit(limit)

    return {
        "recent_students": account_service.attach_parents(db, newest({**base, "role": "student"})),
        "recent_parents": public_list(newest({**base, "role": "parent"})),
        "recent_admins": public_list(newest({**base, "role": {"$in": list(ADMIN_ROLES)}})),
    }


def get_user_stats_by_role(db, acting_user: dict) -> List[dict]:
    return group_counts(db[USERS].aggregate([
        {"$match": school_scope(acting_user)},
        {"$group": {"_id": "$role", "count": {"$sum": 1}}},
        {"$sort": {"count": -1}},
    ]))


# ----------------------- Students -----------------------

def bulk_update_students(db, updates: List[dict], acting_user: dict) -> dict:
    """One write per student; failures are reported, earlier writes stay applied."""
    base = scoped_filter("student", acting_user)
    matched = modified = 0
    failed = []
    for item in updates:
        student_id = item.get("student_id")
        data = item.get("data") or {}
        fields = flatten_update(data, ("student_info", "bus_info", "tracking_info"))
        if not fields:
            failed.append({"student_id": student_id, "reason": "No fields to update"})
            continue
        try:
            query = {**base, "_id": to_object_id(student_id)}
        except ValidationError:
            failed.append({"student_id": student_id, "reason": "Invalid ID format"})
            continue
        now = utcnow()
        if "tracking_info" in data:
            fields["tracking_info.last_updated"] = now
        fields["updated_at"] = now
        res = db[USERS].update_one(query, {"$set": fields})
        if not res.matched_count:
            failed.append({"student_id": student_id, "reason": "Student not found"})
            continue
        if "tracking_info" in data:
            tracking_service.record_manual_event(db, query["_id"], data["tracking_info"] or {}, timestamp=now)
        matched += res.matched_count
        modified += res.modified_count
    return {"requested": len(updates), "matched": matched, "modified": modified, "failed": failed}


def export_students(db, acting_user: dict, grade: Optional[int] = None, bus_number: Optional[str] = None) -> List[dict]:
    query = scoped_filter("student", acting_user)
    if grade:
        query["student_info.grade"] = grade
    if bus_number:
        query["bus_info.bus_number"] = bus_number
    return account_service.attach_parents(db, db[USERS].find(query))


# ----------------------- Users -----------------------

def get_all_users(db, acting_user: dict, role: Optional[str] = None, search: Optional[str] = None,
                  is_active: Optional[bool] = None, school_id: Optional[str] = None,
                  page: int = 1, limit: int = 10) -> dict:
    query = {}
    if role:
        query["role"] = role
    if is_active is not None:
        query["is_active"] = is_active
    if _is_school_admin(acting_user):
        query["admin_info.school_id"] = school_id_of(acting_user)
    elif school_id:
        query["admin_info.school_id"] = school_id
    query.update(build_search_query(search, ADMIN_SEARCH_FIELDS))

    total = db[USERS].count_documents(query)
    info = pagination_info(page, limit, total)
    cursor = db[USERS].find(query).sort("created_at", -1).skip(info["skip"]).limit(info["items_per_page"])
    return {"users": public_list(cursor), "pagination": info}


def update_user_role(db, user_id, new_role: str, acting_user: dict) -> dict:
    return account_service.update_user_role(db, user_id, new_role, acting_user)


def toggle_user_status(db, user_id, is_active: bool, acting_user: dict) -> dict:
    user = account_service.get_user(db, user_id, active_only=False)
    if _is_school_admin(acting_user):
        if school_id_of(user) != school_id_of(acting_user):
            raise AuthorizationError("School admins can only manage users within their school")
        if user["role"] == "systemAdmin":
            raise AuthorizationError("School admins cannot manage system admins")
    if user["_id"] == acting_user.get("_id") and not is_active:
        raise ValidationError("Cannot deactivate your own account")
    if is_active and user["role"] == "systemAdmin" and account_service.active_system_admin_exists(db, exclude_id=user["_id"]):
        raise ConflictError("System admin already exists")

    updated = db[USERS].find_one_and_update(
        {"_id": user["_id"]},
        {"$set": {"is_active": is_active, "updated_at": utcnow()}},
        return_document=ReturnDocument.AFTER,
    )
    logger.info("User %s %s", user.get("username"), "activated" if is_active else "deactivated")
    return to_public_json(updated)
