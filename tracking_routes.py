from typing import Optional

from fastapi import APIRouter, Depends, Query

import student_service
import tracking_service
from auth import get_current_user, require_action, require_any_action
from config import DEFAULT_RADIUS_KM, STALE_TRACKING_HOURS
from database import get_db
from errors import AuthorizationError
from permissions import can_perform, can_perform_any
from schemas import BulkStatusUpdate, EmergencyAlertRequest, LocationUpdate, StatusUpdate, TrackingStatus
from utils import ok

router = APIRouter(prefix="/tracking", tags=["tracking"])

READ_TRACKING = ("read:tracking", "read:users")
update_tracking = require_action("update:tracking")
read_tracking = require_any_action(READ_TRACKING)
read_analytics = require_any_action(["analytics:tracking", "read:analytics:admin"])


# ----------------------- Writes -----------------------
@router.put("/bulk/status")
def bulk_status(payload: BulkStatusUpdate, db=Depends(get_db), current=Depends(update_tracking)):
    result = tracking_service.bulk_update_status(db, [u.model_dump() for u in payload.updates], current)
    return ok(result, "Bulk status update completed")


@router.put("/{student_id}/location")
def update_location(student_id: str, payload: LocationUpdate, db=Depends(get_db), current=Depends(update_tracking)):
    student = tracking_service.update_location(db, student_id, payload.model_dump(exclude_none=True), current)
    return ok(student, "Student location updated successfully")


@router.put("/{student_id}/status")
def update_status(student_id: str, payload: StatusUpdate, db=Depends(get_db), current=Depends(update_tracking)):
    location = payload.location.model_dump(exclude_none=True) if payload.location else None
    student = tracking_service.update_status(db, student_id, payload.status, location=location,
                                             notes=payload.notes, acting_user=current)
    return ok(student, "Student status updated successfully")


@router.post("/{student_id}/emergency")
def emergency_alert(student_id: str, payload: EmergencyAlertRequest, db=Depends(get_db),
                    current=Depends(update_tracking)):
    location = payload.location.model_dump() if payload.location else None
    student = tracking_service.send_emergency_alert(db, student_id, payload.type, payload.message,
                                                    location=location, acting_user=current)
    return ok(student, "Emergency alert sent successfully")


# ----------------------- Reads -----------------------
@router.get("/status/{status}")
def students_by_status(status: TrackingStatus, db=Depends(get_db), current=Depends(read_tracking)):
    return ok(tracking_service.get_students_by_status(db, status, current))


@router.get("/location")
def students_by_location(latitude: float = Query(..., ge=-90, le=90), longitude: float = Query(..., ge=-180, le=180),
                         radius: float = Query(DEFAULT_RADIUS_KM, gt=0), db=Depends(get_db),
                         current=Depends(read_tracking)):
    return ok(tracking_service.get_students_by_location(db, latitude, longitude, radius, current))


@router.get("/realtime")
def realtime(status: Optional[TrackingStatus] = None, bus_number: Optional[str] = None, db=Depends(get_db),
             current=Depends(read_tracking)):
    return ok(tracking_service.get_realtime_tracking_data(db, status=status, bus_number=bus_number, acting_user=current))


@router.get("/bus/{bus_number}")
def bus_summary(bus_number: str, db=Depends(get_db), current=Depends(read_tracking)):
    return ok(tracking_service.get_bus_tracking_summary(db, bus_number, current))


@router.get("/stale")
def stale_students(hours: float = Query(STALE_TRACKING_HOURS, gt=0), db=Depends(get_db),
                   current=Depends(read_tracking)):
    return ok(tracking_service.get_students_with_no_recent_tracking(db, hours, current))


@router.get("/analytics")
def analytics(db=Depends(get_db), current=Depends(read_analytics)):
    return ok(tracking_service.get_tracking_analytics(db, current))


@router.get("/analytics/grades")
def analytics_by_grade(db=Depends(get_db), current=Depends(read_analytics)):
    return ok(tracking_service.get_tracking_stats_by_grade(db, current))


@router.get("/{student_id}/history")
def history(student_id: str, limit: int = Query(100, ge=1, le=1000), db=Depends(get_db),
            current=Depends(get_current_user)):
    if can_perform(current, "read:tracking:own"):
        student_service.check_parent_access(db, current["_id"], student_id)
    elif not can_perform_any(current, READ_TRACKING):
        raise AuthorizationError("Forbidden")
    return ok(tracking_service.get_tracking_history(db, student_id, limit, current))
