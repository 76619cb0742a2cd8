"""
Student tracking: status, location and emergency alerts.

The current state lives in the student's ``tracking_info`` sub-document and is
overwritten on every write. Each write also appends an event to the
``trackingevent`` collection, which backs ``get_tracking_history``.
"""

import logging
from datetime import timedelta
from typing import List, Optional

from pymongo import ReturnDocument

from account_service import attach_parents
from config import KM_PER_DEGREE, DEFAULT_RADIUS_KM, STALE_TRACKING_HOURS
from database import USERS, TRACKING_EVENTS, create_document
from errors import NotFoundError, ValidationError
from permissions import scoped_filter
from schemas import Location, TrackingEvent
from utils import group_counts, serialize_doc, to_mongo, to_object_id, to_public_json, utcnow

logger = logging.getLogger(__name__)

SNAPSHOT_FIELDS = {"first_name": 1, "last_name": 1, "role": 1, "student_info": 1, "tracking_info": 1, "bus_info": 1}


def _student_filter(student_id, acting_user: Optional[dict] = None) -> dict:
    return scoped_filter("student", acting_user, _id=to_object_id(student_id))


def record_event(db, student_id, kind: str, timestamp=None, location: Optional[dict] = None, **fields):
    event = TrackingEvent(
        student_id=str(student_id),
        kind=kind,
        location=Location(**location) if location else None,
        timestamp=timestamp or utcnow(),
        **fields,
    )
    return create_document(db, TRACKING_EVENTS, event)


def record_manual_event(db, student_id, tracking: dict, timestamp=None):
    return record_event(
        db, student_id, "manual", timestamp=timestamp,
        status=tracking.get("status"), location=tracking.get("location"), notes=tracking.get("notes"),
    )


def _write(db, student_id, fields: dict, acting_user: Optional[dict]) -> dict:
    now = fields.get("tracking_info.last_updated") or utcnow()
    fields = {**fields, "tracking_info.last_updated": now, "updated_at": now}
    student = db[USERS].find_one_and_update(
        _student_filter(student_id, acting_user),
        {"$set": fields},
        return_document=ReturnDocument.AFTER,
    )
    if not student:
        raise NotFoundError("Student not found")
    return student


# ----------------------- Writes -----------------------

def update_location(db, student_id, data: dict, acting_user: Optional[dict] = None) -> dict:
    now = utcnow()
    location = {
        "latitude": data["latitude"],
        "longitude": data["longitude"],
        "timestamp": to_mongo(data.get("timestamp")) or now,
    }
    for key in ("accuracy", "speed", "heading"):
        if data.get(key) is not None:
            location[key] = data[key]
    status = data.get("status") or "tracking"

    student = _write(db, student_id, {
        "tracking_info.location": location,
        "tracking_info.status": status,
        "tracking_info.last_updated": now,
    }, acting_user)
    record_event(db, student["_id"], "location", timestamp=now, status=status, location=location)
    return to_public_json(student)


def update_status(db, student_id, status: str, location: Optional[dict] = None,
                  notes: Optional[str] = None, acting_user: Optional[dict] = None) -> dict:
    now = utcnow()
    fields = {"tracking_info.status": status, "tracking_info.last_updated": now}
    if location:
        location = to_mongo(location)
        if not location.get("timestamp"):
            location["timestamp"] = now
        fields["tracking_info.location"] = location
    if notes:
        fields["tracking_info.notes"] = notes

    student = _write(db, student_id, fields, acting_user)
    record_event(db, student["_id"], "status", timestamp=now, status=status, location=location, notes=notes)
    return to_public_json(student)


def send_emergency_alert(db, student_id, alert_type: str, message: str,
                         location: Optional[dict] = None, acting_user: Optional[dict] = None) -> dict:
    now = utcnow()
    alert = {"type": alert_type, "message": message, "timestamp": now}
    if location:
        alert["location"] = to_mongo(location)

    student = _write(db, student_id, {
        "tracking_info.status": "emergency",
        "tracking_info.emergency_alert": alert,
        "tracking_info.last_updated": now,
    }, acting_user)
    logger.warning("Emergency alert (%s) raised for student %s: %s", alert_type, student["_id"], message)
    record_event(db, student["_id"], "emergency", timestamp=now, status="emergency",
                 location=location, alert_type=alert_type, message=message)
    return to_public_json(student)


def bulk_update_status(db, updates: List[dict], acting_user: Optional[dict] = None) -> dict:
    """Apply each status change on its own; a failed item does not undo the others."""
    matched = modified = 0
    failed = []
    for item in updates:
        student_id = item.get("student_id")
        try:
            query = _student_filter(student_id, acting_user)
        except ValidationError:
            failed.append({"student_id": student_id, "reason": "Invalid ID format"})
            continue
        now = utcnow()
        res = db[USERS].update_one(query, {"$set": {
            "tracking_info.status": item["status"],
            "tracking_info.last_updated": now,
            "updated_at": now,
        }})
        if not res.matched_count:
            failed.append({"student_id": student_id, "reason": "Student not found"})
            continue
        matched += res.matched_count
        modified += res.modified_count
        record_event(db, query["_id"], "bulk_status", timestamp=now, status=item["status"])
    if failed:
        logger.info("Bulk status update: %d applied, %d failed", matched, len(failed))
    return {"requested": len(updates), "matched": matched, "modified": modified, "failed": failed}


# ----------------------- Reads -----------------------

def get_students_by_status(db, status: str, acting_user: Optional[dict] = None) -> List[dict]:
    return attach_parents(db, db[USERS].find(scoped_filter("student", acting_user, **{"tracking_info.status": status})))


def get_students_by_location(db, latitude: float, longitude: float, radius_km: float = DEFAULT_RADIUS_KM,
                             acting_user: Optional[dict] = None) -> List[dict]:
    # bounding box with a flat km-per-degree factor, not a great-circle radius
    delta = radius_km / KM_PER_DEGREE
    query = scoped_filter("student", acting_user, **{
        "tracking_info.location.latitude": {"$gte": latitude - delta, "$lte": latitude + delta},
        "tracking_info.location.longitude": {"$gte": longitude - delta, "$lte": longitude + delta},
    })
    return attach_parents(db, db[USERS].find(query))


def get_tracking_history(db, student_id, limit: int = 100, acting_user: Optional[dict] = None) -> dict:
    student = db[USERS].find_one(_student_filter(student_id, acting_user))
    if not student:
        raise NotFoundError("Student not found")
    tracking = student.get("tracking_info") or {}
    events = db[TRACKING_EVENTS].find({"student_id": str(student["_id"])}).sort("timestamp", -1).limit(int(limit))
    return {
        "student_id": str(student["_id"]),
        "current_location": tracking.get("location"),
        "current_status": tracking.get("status"),
        "last_updated": tracking.get("last_updated"),
        "events": [serialize_doc(e) for e in events],
    }


def get_realtime_tracking_data(db, status: Optional[str] = None, bus_number: Optional[str] = None,
                               acting_user: Optional[dict] = None) -> List[dict]:
    query = scoped_filter("student", acting_user)
    if status:
        query["tracking_info.status"] = status
    if bus_number:
        query["bus_info.bus_number"] = bus_number
    return attach_parents(db, db[USERS].find(query, SNAPSHOT_FIELDS))


def get_tracking_analytics(db, acting_user: Optional[dict] = None) -> dict:
    match = scoped_filter("student", acting_user)
    status_counts = db[USERS].aggregate([
        {"$match": match},
        {"$group": {"_id": "$tracking_info.status", "count": {"$sum": 1}}},
    ])
    bus_counts = db[USERS].aggregate([
        {"$match": match},
        {"$group": {"_id": "$bus_info.bus_number", "count": {"$sum": 1}}},
    ])
    since = utcnow() - timedelta(hours=24)
    recent = db[USERS].find({**match, "tracking_info.last_updated": {"$gte": since}}, SNAPSHOT_FIELDS)
    return {
        "status_counts": group_counts(status_counts),
        "bus_counts": group_counts(bus_counts),
        "recent_updates": [to_public_json(s) for s in recent],
    }


def get_bus_tracking_summary(db, bus_number: str, acting_user: Optional[dict] = None) -> dict:
    students = list(db[USERS].find(scoped_filter("student", acting_user, **{"bus_info.bus_number": bus_number}), SNAPSHOT_FIELDS))

    def status_of(s):
        return (s.get("tracking_info") or {}).get("status")

    return {
        "bus_number": bus_number,
        "total_students": len(students),
        "on_bus": sum(1 for s in students if status_of(s) == "tracking"),
        "at_school": sum(1 for s in students if status_of(s) == "active"),
        "emergency": sum(1 for s in students if status_of(s) == "emergency"),
        "students": [
            {
                "id": str(s["_id"]),
                "name": f"{s.get('first_name', '')} {s.get('last_name', '')}".strip(),
                "status": status_of(s),
                "last_location": (s.get("tracking_info") or {}).get("location"),
                "last_updated": (s.get("tracking_info") or {}).get("last_updated"),
                "pickup_location": (s.get("bus_info") or {}).get("pickup_location"),
                "drop_location": (s.get("bus_info") or {}).get("drop_location"),
            }
            for s in students
        ],
    }


def get_tracking_stats_by_grade(db, acting_user: Optional[dict] = None) -> List[dict]:
    stats = {}
    for s in db[USERS].find(scoped_filter("student", acting_user), {"student_info.grade": 1, "tracking_info.status": 1}):
        grade = (s.get("student_info") or {}).get("grade")
        row = stats.setdefault(grade, {"grade": grade, "total_students": 0, "active_students": 0,
                                       "tracking_students": 0, "emergency_students": 0})
        row["total_students"] += 1
        status = (s.get("tracking_info") or {}).get("status")
        if status in ("active", "tracking", "emergency"):
            row[f"{status}_students"] += 1
    return sorted(stats.values(), key=lambda r: (r["grade"] is None, r["grade"] or 0))


def get_students_with_no_recent_tracking(db, hours: float = STALE_TRACKING_HOURS,
                                         acting_user: Optional[dict] = None) -> List[dict]:
    cutoff = utcnow() - timedelta(hours=hours)
    query = scoped_filter("student", acting_user, **{"$or": [
        {"tracking_info.last_updated": {"$lt": cutoff}},
        {"tracking_info.last_updated": {"$exists": False}},
    ]})
    return [to_public_json(s) for s in db[USERS].find(query)]
