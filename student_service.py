"""
Student records, scoped to the acting school admin's school.

Parent and child references are stored on both sides
(``student_info.parent_id`` and ``parent_info.children``). Assign and unassign
write the student first and the parent second, restoring the student if the
parent write does not land.
"""

import logging
from typing import Optional

from pymongo import ReturnDocument

import account_service
import tracking_service
from database import USERS
from errors import AuthorizationError, NotFoundError, ValidationError
from permissions import scoped_filter
from utils import build_search_query, flatten_update, group_counts, pagination_info, to_object_id, to_public_json, utcnow

logger = logging.getLogger(__name__)

NESTED_FIELDS = ("student_info", "bus_info", "tracking_info")
SEARCH_FIELDS = ("first_name", "last_name", "student_info.student_id")


def _find_student(db, student_id, acting_user: Optional[dict]) -> dict:
    student = db[USERS].find_one(scoped_filter("student", acting_user, _id=to_object_id(student_id)))
    if not student:
        raise NotFoundError("Student not found")
    return student


def _find_parent(db, parent_id, acting_user: Optional[dict] = None) -> dict:
    parent = account_service.find_active_parent(db, parent_id, acting_user)
    if not parent:
        raise NotFoundError("Parent not found")
    return parent


def get_students(db, acting_user: Optional[dict] = None, search: Optional[str] = None,
                 grade: Optional[int] = None, bus_number: Optional[str] = None,
                 status: Optional[str] = None, page: int = 1, limit: int = 10) -> dict:
    query = scoped_filter("student", acting_user)
    query.update(build_search_query(search, SEARCH_FIELDS))
    if grade:
        query["student_info.grade"] = grade
    if bus_number:
        query["bus_info.bus_number"] = bus_number
    if status:
        query["tracking_info.status"] = status

    total = db[USERS].count_documents(query)
    info = pagination_info(page, limit, total)
    cursor = db[USERS].find(query).sort("created_at", -1).skip(info["skip"]).limit(info["items_per_page"])
    return {"students": account_service.attach_parents(db, cursor), "pagination": info}


def get_student_by_id(db, student_id, acting_user: Optional[dict] = None) -> dict:
    return account_service.attach_parents(db, [_find_student(db, student_id, acting_user)])[0]


def check_parent_access(db, parent_id, student_id) -> bool:
    parent = _find_parent(db, parent_id)
    if to_object_id(student_id) not in (parent.get("parent_info") or {}).get("children", []):
        raise AuthorizationError("Access denied to this student")
    return True


def create_student(db, data: dict, acting_user: dict) -> dict:
    data = {**data, "role": "student"}
    if not (data.get("student_info") or {}).get("parent_id"):
        raise ValidationError("Student must have parent information")
    created = account_service.create_user_as(db, data, acting_user)
    return get_student_by_id(db, created["id"], acting_user)


def update_student(db, student_id, data: dict, acting_user: Optional[dict] = None) -> dict:
    fields = flatten_update(data, NESTED_FIELDS)
    if not fields:
        raise ValidationError("No fields to update")
    now = utcnow()
    if "tracking_info" in data:
        fields["tracking_info.last_updated"] = now
    fields["updated_at"] = now
    student = db[USERS].find_one_and_update(
        scoped_filter("student", acting_user, _id=to_object_id(student_id)),
        {"$set": fields},
        return_document=ReturnDocument.AFTER,
    )
    if not student:
        raise NotFoundError("Student not found")
    if "tracking_info" in data:
        tracking_service.record_manual_event(db, student["_id"], data["tracking_info"] or {}, timestamp=now)
    return account_service.attach_parents(db, [student])[0]


def delete_student(db, student_id, acting_user: Optional[dict] = None) -> dict:
    student = db[USERS].find_one_and_update(
        scoped_filter("student", acting_user, _id=to_object_id(student_id)),
        {"$set": {"is_active": False, "updated_at": utcnow()}},
        return_document=ReturnDocument.AFTER,
    )
    if not student:
        raise NotFoundError("Student not found")
    logger.info("Student %s deactivated", student["_id"])
    return to_public_json(student)


def get_students_by_parent(db, parent_id) -> list:
    parent = _find_parent(db, parent_id)
    children = (parent.get("parent_info") or {}).get("children", [])
    return account_service.attach_parents(db, db[USERS].find(scoped_filter("student", None, _id={"$in": children})))


def update_tracking_info(db, student_id, tracking: dict, acting_user: Optional[dict] = None) -> dict:
    if not tracking:
        raise ValidationError("No tracking fields to update")
    now = utcnow()
    fields = flatten_update({"tracking_info": tracking}, ("tracking_info",))
    fields["tracking_info.last_updated"] = now
    fields["updated_at"] = now
    student = db[USERS].find_one_and_update(
        scoped_filter("student", acting_user, _id=to_object_id(student_id)),
        {"$set": fields},
        return_document=ReturnDocument.AFTER,
    )
    if not student:
        raise NotFoundError("Student not found")
    tracking_service.record_manual_event(db, student["_id"], tracking, timestamp=now)
    return to_public_json(student)


def get_students_by_bus(db, bus_number: str, acting_user: Optional[dict] = None) -> list:
    return account_service.attach_parents(db, db[USERS].find(scoped_filter("student", acting_user, **{"bus_info.bus_number": bus_number})))


def get_students_by_grade(db, grade: int, acting_user: Optional[dict] = None) -> list:
    return account_service.attach_parents(db, db[USERS].find(scoped_filter("student", acting_user, **{"student_info.grade": grade})))


def get_students_by_section(db, grade: int, section: str, acting_user: Optional[dict] = None) -> list:
    query = scoped_filter("student", acting_user, **{"student_info.grade": grade, "student_info.section": section})
    return account_service.attach_parents(db, db[USERS].find(query))


def _restore_parent_ref(db, student_id, previous):
    if previous is None:
        update = {"$unset": {"student_info.parent_id": ""}}
    else:
        update = {"$set": {"student_info.parent_id": previous}}
    db[USERS].update_one({"_id": student_id}, update)


def assign_student_to_parent(db, student_id, parent_id, acting_user: Optional[dict] = None) -> dict:
    student = _find_student(db, student_id, acting_user)
    parent = _find_parent(db, parent_id, acting_user)
    previous = (student.get("student_info") or {}).get("parent_id")
    now = utcnow()

    db[USERS].update_one(
        {"_id": student["_id"]},
        {"$set": {"student_info.parent_id": parent["_id"], "updated_at": now}},
    )
    res = db[USERS].update_one(
        scoped_filter("parent", acting_user, _id=parent["_id"]),
        {"$addToSet": {"parent_info.children": student["_id"]}, "$set": {"updated_at": now}},
    )
    if not res.matched_count:
        _restore_parent_ref(db, student["_id"], previous)
        raise NotFoundError("Parent not found")

    if previous is not None and previous != parent["_id"]:
        db[USERS].update_one({"_id": previous}, {"$pull": {"parent_info.children": student["_id"]}})
    logger.info("Student %s assigned to parent %s", student["_id"], parent["_id"])
    return {
        "student": to_public_json(db[USERS].find_one({"_id": student["_id"]})),
        "parent": to_public_json(db[USERS].find_one({"_id": parent["_id"]})),
    }


def remove_student_from_parent(db, student_id, parent_id, acting_user: Optional[dict] = None) -> dict:
    student = _find_student(db, student_id, acting_user)
    parent = _find_parent(db, parent_id, acting_user)
    previous = (student.get("student_info") or {}).get("parent_id")
    children = (parent.get("parent_info") or {}).get("children", [])
    if previous != parent["_id"] and student["_id"] not in children:
        raise ValidationError("Student is not assigned to this parent")
    now = utcnow()

    if previous == parent["_id"]:
        db[USERS].update_one(
            {"_id": student["_id"]},
            {"$unset": {"student_info.parent_id": ""}, "$set": {"updated_at": now}},
        )
    res = db[USERS].update_one(
        scoped_filter("parent", acting_user, _id=parent["_id"]),
        {"$pull": {"parent_info.children": student["_id"]}, "$set": {"updated_at": now}},
    )
    if not res.matched_count:
        _restore_parent_ref(db, student["_id"], previous)
        raise NotFoundError("Parent not found")
    logger.info("Student %s removed from parent %s", student["_id"], parent["_id"])
    return {
        "student": to_public_json(db[USERS].find_one({"_id": student["_id"]})),
        "parent": to_public_json(db[USERS].find_one({"_id": parent["_id"]})),
    }


def get_student_stats(db, acting_user: Optional[dict] = None) -> dict:
    match = scoped_filter("student", acting_user)

    def grouped(field, extra=None):
        return group_counts(db[USERS].aggregate([
            {"$match": {**match, **(extra or {})}},
            {"$group": {"_id": f"${field}", "count": {"$sum": 1}}},
            {"$sort": {"_id": 1}},
        ]))

    return {
        "total_students": db[USERS].count_documents(match),
        "students_by_grade": grouped("student_info.grade"),
        "students_by_status": grouped("tracking_info.status"),
        "students_by_bus": grouped("bus_info.bus_number", {"bus_info.bus_number": {"$exists": True}}),
    }
