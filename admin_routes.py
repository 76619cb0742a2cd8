from typing import Optional

from fastapi import APIRouter, Depends, Query

import admin_service
from auth import require_permission, require_roles
from database import get_db
from permissions import ADMIN_ROLES
from schemas import AdminCreate, AdminUpdate, BulkStudentUpdate, Role, StatusToggleRequest, UpdateRoleRequest
from utils import ok

router = APIRouter(prefix="/admin", tags=["admin"])

admin_only = require_roles(*ADMIN_ROLES)


# ----------------------- Dashboard -----------------------
@router.get("/dashboard/stats")
def dashboard_stats(db=Depends(get_db), current=Depends(admin_only)):
    return ok(admin_service.get_dashboard_stats(db, current))


@router.get("/dashboard/overview")
def dashboard_overview(db=Depends(get_db), current=Depends(admin_only)):
    return ok(admin_service.get_system_overview(db, current))


# ----------------------- Students -----------------------
@router.put("/students/bulk-update")
def bulk_update_students(payload: BulkStudentUpdate, db=Depends(get_db), current=Depends(admin_only)):
    updates = [{"student_id": u.student_id, "data": u.data.model_dump(exclude_none=True)} for u in payload.updates]
    return ok(admin_service.bulk_update_students(db, updates, current), "Bulk update completed")


@router.get("/students/export")
def export_students(grade: Optional[int] = Query(None, ge=1, le=12), bus_number: Optional[str] = None,
                    db=Depends(get_db), current=Depends(admin_only)):
    students = admin_service.export_students(db, current, grade=grade, bus_number=bus_number)
    return ok({"students": students, "total": len(students)})


# ----------------------- Users -----------------------
@router.get("/users")
def list_users(role: Optional[Role] = None, search: Optional[str] = None, is_active: Optional[bool] = None,
               school_id: Optional[str] = None, page: int = Query(1, ge=1), limit: int = Query(10, ge=1, le=100),
               db=Depends(get_db), current=Depends(admin_only)):
    result = admin_service.get_all_users(db, current, role=role, search=search, is_active=is_active,
                                         school_id=school_id, page=page, limit=limit)
    return ok(result)


@router.get("/users/stats")
def user_stats(db=Depends(get_db), current=Depends(require_permission("view_reports"))):
    return ok(admin_service.get_user_stats_by_role(db, current))


@router.put("/users/{user_id}/role")
def update_user_role(user_id: str, payload: UpdateRoleRequest, db=Depends(get_db), current=Depends(admin_only)):
    return ok(admin_service.update_user_role(db, user_id, payload.new_role, current), "User role updated successfully")


@router.put("/users/{user_id}/status")
def toggle_user_status(user_id: str, payload: StatusToggleRequest, db=Depends(get_db), current=Depends(admin_only)):
    user = admin_service.toggle_user_status(db, user_id, payload.is_active, current)
    return ok(user, f"User {'activated' if payload.is_active else 'deactivated'} successfully")


@router.get("/schools/{school_id}/admins")
def school_admins(school_id: str, db=Depends(get_db), current=Depends(admin_only)):
    return ok(admin_service.get_school_admins_by_school(db, school_id, current))


# ----------------------- Admin accounts -----------------------
@router.get("")
def list_admins(school_id: Optional[str] = None, search: Optional[str] = None, db=Depends(get_db),
                current=Depends(admin_only)):
    return ok(admin_service.get_all_admins(db, current, school_id=school_id, search=search))


@router.post("", status_code=201)
def create_admin(payload: AdminCreate, db=Depends(get_db), current=Depends(admin_only)):
    admin = admin_service.create_admin(db, payload.model_dump(exclude_none=True), current)
    return ok(admin, "Admin created successfully")


@router.get("/{admin_id}")
def get_admin(admin_id: str, db=Depends(get_db), current=Depends(admin_only)):
    return ok(admin_service.get_admin_by_id(db, admin_id, current))


@router.put("/{admin_id}")
def update_admin(admin_id: str, payload: AdminUpdate, db=Depends(get_db), current=Depends(admin_only)):
    admin = admin_service.update_admin(db, admin_id, payload.model_dump(exclude_none=True), current)
    return ok(admin, "Admin updated successfully")


@router.delete("/{admin_id}")
def delete_admin(admin_id: str, db=Depends(get_db), current=Depends(admin_only)):
    admin_service.delete_admin(db, admin_id, current)
    return ok(message="Admin deleted successfully")


@router.get("/{admin_id}/activity-log")
def admin_activity_log(admin_id: str, db=Depends(get_db), current=Depends(admin_only)):
    return ok(admin_service.get_admin_activity_log(db, admin_id, current))
