from typing import Optional

from fastapi import APIRouter, Depends, Query

import student_service
from auth import require_action, require_any_action
from database import get_db
from schemas import AssignParentRequest, StudentSignup, StudentUpdate, TrackingInfoUpdate, TrackingStatus
from utils import ok

router = APIRouter(prefix="/students", tags=["students"])

read_students = require_any_action(["read:students", "read:users"])


@router.get("")
def list_students(search: Optional[str] = None, grade: Optional[int] = Query(None, ge=1, le=12),
                  bus_number: Optional[str] = None, status: Optional[TrackingStatus] = None,
                  page: int = Query(1, ge=1), limit: int = Query(10, ge=1, le=100),
                  db=Depends(get_db), current=Depends(read_students)):
    result = student_service.get_students(db, current, search=search, grade=grade, bus_number=bus_number,
                                          status=status, page=page, limit=limit)
    return ok(result)


@router.post("", status_code=201)
def create_student(payload: StudentSignup, db=Depends(get_db), current=Depends(require_action("create:student"))):
    student = student_service.create_student(db, payload.model_dump(exclude_none=True), current)
    return ok(student, "Student created successfully")


@router.get("/stats")
def student_stats(db=Depends(get_db), current=Depends(read_students)):
    return ok(student_service.get_student_stats(db, current))


@router.get("/parent/children")
def my_children(db=Depends(get_db), current=Depends(require_action("read:own:children"))):
    return ok(student_service.get_students_by_parent(db, current["_id"]))


@router.get("/bus/{bus_number}")
def students_by_bus(bus_number: str, db=Depends(get_db), current=Depends(read_students)):
    return ok(student_service.get_students_by_bus(db, bus_number, current))


@router.get("/grade/{grade}")
def students_by_grade(grade: int, db=Depends(get_db), current=Depends(read_students)):
    return ok(student_service.get_students_by_grade(db, grade, current))


@router.get("/grade/{grade}/section/{section}")
def students_by_section(grade: int, section: str, db=Depends(get_db), current=Depends(read_students)):
    return ok(student_service.get_students_by_section(db, grade, section, current))


@router.get("/{student_id}")
def get_student(student_id: str, db=Depends(get_db), current=Depends(read_students)):
    return ok(student_service.get_student_by_id(db, student_id, current))


@router.put("/{student_id}")
def update_student(student_id: str, payload: StudentUpdate, db=Depends(get_db),
                   current=Depends(require_action("update:student"))):
    student = student_service.update_student(db, student_id, payload.model_dump(exclude_none=True), current)
    return ok(student, "Student updated successfully")


@router.delete("/{student_id}")
def delete_student(student_id: str, db=Depends(get_db), current=Depends(require_action("delete:student"))):
    student_service.delete_student(db, student_id, current)
    return ok(message="Student deleted successfully")


@router.put("/{student_id}/tracking")
def update_tracking(student_id: str, payload: TrackingInfoUpdate, db=Depends(get_db),
                    current=Depends(require_action("update:student"))):
    student = student_service.update_tracking_info(db, student_id, payload.model_dump(exclude_none=True), current)
    return ok(student, "Tracking info updated successfully")


@router.put("/{student_id}/parent")
def assign_parent(student_id: str, payload: AssignParentRequest, db=Depends(get_db),
                  current=Depends(require_action("update:student"))):
    result = student_service.assign_student_to_parent(db, student_id, payload.parent_id, current)
    return ok(result, "Student assigned to parent successfully")


@router.delete("/{student_id}/parent/{parent_id}")
def remove_parent(student_id: str, parent_id: str, db=Depends(get_db),
                  current=Depends(require_action("update:student"))):
    result = student_service.remove_student_from_parent(db, student_id, parent_id, current)
    return ok(result, "Student removed from parent successfully")
