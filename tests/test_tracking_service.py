from datetime import timedelta

import pytest
from bson import ObjectId

import tracking_service
from conftest import reload
from database import TRACKING_EVENTS, USERS
from errors import NotFoundError, ValidationError
from utils import utcnow


def test_update_location_sets_tracking_and_records_event(db, student, school_admin):
    data = tracking_service.update_location(
        db, str(student["_id"]), {"latitude": 12.5, "longitude": 77.6, "speed": 30.0}, school_admin,
    )
    tracking = data["tracking_info"]
    assert tracking["status"] == "tracking"
    assert tracking["location"]["latitude"] == 12.5
    assert tracking["location"]["speed"] == 30.0
    assert tracking["location"]["timestamp"] == tracking["last_updated"]

    events = list(db[TRACKING_EVENTS].find({"student_id": str(student["_id"])}))
    assert [e["kind"] for e in events] == ["location"]
    assert events[0]["location"]["longitude"] == 77.6


def test_update_location_keeps_explicit_status(db, student):
    data = tracking_service.update_location(db, student["_id"], {"latitude": 1, "longitude": 2, "status": "active"})
    assert data["tracking_info"]["status"] == "active"


def test_update_status_with_notes(db, student, school_admin):
    data = tracking_service.update_status(db, str(student["_id"]), "inactive", notes="Sick today",
                                          acting_user=school_admin)
    assert data["tracking_info"]["status"] == "inactive"
    assert data["tracking_info"]["notes"] == "Sick today"
    event = db[TRACKING_EVENTS].find_one({"student_id": str(student["_id"])})
    assert event["kind"] == "status"
    assert event["notes"] == "Sick today"


def test_writes_are_limited_to_the_admins_school(db, student, other_school_admin):
    with pytest.raises(NotFoundError):
        tracking_service.update_status(db, str(student["_id"]), "active", acting_user=other_school_admin)
    assert db[TRACKING_EVENTS].count_documents({}) == 0


def test_unknown_or_invalid_student(db):
    with pytest.raises(NotFoundError):
        tracking_service.update_status(db, str(ObjectId()), "active")
    with pytest.raises(ValidationError):
        tracking_service.update_status(db, "bogus", "active")


def test_emergency_alert(db, student, school_admin):
    before = utcnow()
    tracking_service.send_emergency_alert(
        db, str(student["_id"]), "medical", "Fainted on the bus",
        location={"latitude": 10.0, "longitude": 20.0}, acting_user=school_admin,
    )
    tracking = reload(db, student)["tracking_info"]
    assert tracking["status"] == "emergency"
    assert tracking["emergency_alert"]["type"] == "medical"
    assert tracking["emergency_alert"]["message"] == "Fainted on the bus"
    assert tracking["emergency_alert"]["location"] == {"latitude": 10.0, "longitude": 20.0}
    assert tracking["last_updated"] >= before

    event = db[TRACKING_EVENTS].find_one({"kind": "emergency"})
    assert event["alert_type"] == "medical"


def test_bulk_update_is_best_effort(db, make_student, parent, school_admin):
    first = make_student(parent)
    second = make_student(parent)
    missing = str(ObjectId())
    result = tracking_service.bulk_update_status(db, [
        {"student_id": str(first["_id"]), "status": "tracking"},
        {"student_id": "not-an-id", "status": "tracking"},
        {"student_id": missing, "status": "tracking"},
        {"student_id": str(second["_id"]), "status": "inactive"},
    ], school_admin)

    assert result["requested"] == 4
    assert result["matched"] == 2
    assert result["failed"] == [
        {"student_id": "not-an-id", "reason": "Invalid ID format"},
        {"student_id": missing, "reason": "Student not found"},
    ]
    assert reload(db, first)["tracking_info"]["status"] == "tracking"
    assert reload(db, second)["tracking_info"]["status"] == "inactive"
    assert db[TRACKING_EVENTS].count_documents({"kind": "bulk_status"}) == 2


def test_students_by_status(db, make_student, parent):
    moving = make_student(parent)
    make_student(parent)
    tracking_service.update_status(db, moving["_id"], "tracking")
    found = tracking_service.get_students_by_status(db, "tracking")
    assert [s["id"] for s in found] == [str(moving["_id"])]
    assert found[0]["parent"]["id"] == str(parent["_id"])


def test_students_by_location_uses_bounding_box(db, make_student, parent):
    near = make_student(parent)
    far = make_student(parent)
    tracking_service.update_location(db, near["_id"], {"latitude": 10.03, "longitude": 10.0})
    tracking_service.update_location(db, far["_id"], {"latitude": 10.1, "longitude": 10.0})

    found = tracking_service.get_students_by_location(db, 10.0, 10.0, radius_km=5)
    assert [s["id"] for s in found] == [str(near["_id"])]

    found = tracking_service.get_students_by_location(db, 10.0, 10.0, radius_km=20)
    assert {s["id"] for s in found} == {str(near["_id"]), str(far["_id"])}


def test_tracking_history(db, student):
    tracking_service.update_location(db, student["_id"], {"latitude": 1.0, "longitude": 1.0})
    tracking_service.update_status(db, student["_id"], "active")
    tracking_service.send_emergency_alert(db, student["_id"], "safety", "Missed stop")

    history = tracking_service.get_tracking_history(db, str(student["_id"]))
    assert history["student_id"] == str(student["_id"])
    assert history["current_status"] == "emergency"
    assert history["current_location"]["latitude"] == 1.0
    assert {e["kind"] for e in history["events"]} == {"location", "status", "emergency"}
    stamps = [e["timestamp"] for e in history["events"]]
    assert stamps == sorted(stamps, reverse=True)
    assert all(e["student_id"] == str(student["_id"]) for e in history["events"])

    assert len(tracking_service.get_tracking_history(db, str(student["_id"]), limit=2)["events"]) == 2


def test_history_is_school_scoped(db, student, other_school_admin):
    with pytest.raises(NotFoundError):
        tracking_service.get_tracking_history(db, str(student["_id"]), acting_user=other_school_admin)


def test_realtime_and_bus_summary(db, make_student, parent):
    a = make_student(parent, bus_number="B1")
    b = make_student(parent, bus_number="B1")
    make_student(parent, bus_number="B2")
    tracking_service.update_status(db, a["_id"], "tracking")
    tracking_service.send_emergency_alert(db, b["_id"], "transport", "Flat tyre")

    realtime = tracking_service.get_realtime_tracking_data(db, bus_number="B1")
    assert {s["id"] for s in realtime} == {str(a["_id"]), str(b["_id"])}
    assert "password_hash" not in realtime[0]

    summary = tracking_service.get_bus_tracking_summary(db, "B1")
    assert summary["total_students"] == 2
    assert summary["on_bus"] == 1
    assert summary["emergency"] == 1
    assert summary["at_school"] == 0


def test_analytics(db, make_student, parent, school_admin, other_school_admin):
    a = make_student(parent)
    make_student(parent)
    tracking_service.update_status(db, a["_id"], "tracking")

    analytics = tracking_service.get_tracking_analytics(db, school_admin)
    counts = {row["key"]: row["count"] for row in analytics["status_counts"]}
    assert counts == {"tracking": 1, "active": 1}
    assert len(analytics["recent_updates"]) == 2

    assert tracking_service.get_tracking_analytics(db, other_school_admin)["status_counts"] == []


def test_stats_by_grade(db, make_student, parent):
    a = make_student(parent, grade=3)
    make_student(parent, grade=3)
    make_student(parent, grade=7)
    tracking_service.send_emergency_alert(db, a["_id"], "other", "Lost bag")

    rows = tracking_service.get_tracking_stats_by_grade(db)
    assert [r["grade"] for r in rows] == [3, 7]
    assert rows[0]["total_students"] == 2
    assert rows[0]["emergency_students"] == 1
    assert rows[0]["active_students"] == 1
    assert rows[1]["active_students"] == 1


def test_students_with_no_recent_tracking(db, make_student, parent):
    stale = make_student(parent)
    fresh = make_student(parent)
    db[USERS].update_one(
        {"_id": stale["_id"]},
        {"$set": {"tracking_info.last_updated": utcnow() - timedelta(hours=30)}},
    )
    found = tracking_service.get_students_with_no_recent_tracking(db, hours=24)
    assert [s["id"] for s in found] == [str(stale["_id"])]
    assert str(fresh["_id"]) not in {s["id"] for s in found}
