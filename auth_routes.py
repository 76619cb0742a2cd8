from typing import Optional

from fastapi import APIRouter, Depends

import account_service
import admin_service
from auth import get_current_user, require_action, require_roles
from database import get_db
from permissions import ADMIN_ROLES, ROLES, school_id_of
from schemas import (
    ChangePasswordRequest, ConfirmResetRequest, LockRequest, ParentSignup, ResetPasswordRequest,
    SchoolAdminSignup, SigninRequest, SignupRequest, StudentSignup, UpdateRoleRequest,
)
from errors import ValidationError
from utils import ok

router = APIRouter(prefix="/auth", tags=["auth"])


def _scoped_school(current: dict, school_id: Optional[str]) -> Optional[str]:
    if current.get("role") == "schoolAdmin":
        return school_id_of(current)
    return school_id


# ----------------------- Sign up / Sign in -----------------------
@router.post("/signup", status_code=201)
def signup(payload: SignupRequest, db=Depends(get_db)):
    result = account_service.public_signup(db, payload.root.model_dump(exclude_none=True))
    return ok(result, f"{result['user']['role']} registered successfully")


@router.post("/signin")
def signin(payload: SigninRequest, db=Depends(get_db)):
    result = account_service.signin(db, payload.username, payload.password)
    return ok(result, f"{result['user']['role']} signed in successfully")


@router.post("/create-school-admin", status_code=201)
def create_school_admin(payload: SchoolAdminSignup, db=Depends(get_db),
                        current=Depends(require_action("create:schoolAdmin"))):
    user = account_service.create_user_as(db, payload.model_dump(exclude_none=True), current)
    return ok(user, "School admin created successfully")


@router.post("/create-parent", status_code=201)
def create_parent(payload: ParentSignup, db=Depends(get_db), current=Depends(require_action("create:parent"))):
    user = account_service.create_user_as(db, payload.model_dump(exclude_none=True), current)
    return ok(user, "Parent created successfully")


@router.post("/create-student", status_code=201)
def create_student(payload: StudentSignup, db=Depends(get_db), current=Depends(require_action("create:student"))):
    user = account_service.create_user_as(db, payload.model_dump(exclude_none=True), current)
    return ok(user, "Student created successfully")


# ----------------------- Profile & passwords -----------------------
@router.get("/profile")
def profile(db=Depends(get_db), current=Depends(get_current_user)):
    return ok(account_service.get_user_profile(db, current["_id"]))


@router.put("/change-password")
def change_password(payload: ChangePasswordRequest, db=Depends(get_db), current=Depends(get_current_user)):
    account_service.change_password(db, current, payload.current_password, payload.new_password)
    return ok(message="Password changed successfully")


@router.post("/reset-password")
def reset_password(payload: ResetPasswordRequest, db=Depends(get_db)):
    result = account_service.reset_password(db, str(payload.email))
    return ok(result, "Password reset token generated")


@router.post("/confirm-reset")
def confirm_reset(payload: ConfirmResetRequest, db=Depends(get_db)):
    account_service.confirm_password_reset(db, payload.token, payload.new_password)
    return ok(message="Password reset successfully")


@router.get("/verify-email/{token}")
def verify_email(token: str, db=Depends(get_db)):
    account_service.verify_email(db, token)
    return ok(message="Email verified successfully")


# ----------------------- Admin-only -----------------------
@router.get("/admins")
def list_admins(search: Optional[str] = None, school_id: Optional[str] = None, db=Depends(get_db),
                current=Depends(require_roles(*ADMIN_ROLES))):
    return ok(account_service.get_all_admins(db, search=search, school_id=_scoped_school(current, school_id)))


@router.get("/schools/{school_id}/admins")
def school_admins(school_id: str, db=Depends(get_db), current=Depends(require_roles(*ADMIN_ROLES))):
    return ok(admin_service.get_school_admins_by_school(db, school_id, current))


@router.get("/users/{role}")
def users_by_role(role: str, search: Optional[str] = None, school_id: Optional[str] = None,
                  db=Depends(get_db), current=Depends(require_roles(*ADMIN_ROLES))):
    if role not in ROLES:
        raise ValidationError("Invalid role")
    users = account_service.get_users_by_role(db, role, search=search, school_id=_scoped_school(current, school_id))
    return ok(users)


@router.put("/users/{user_id}/role")
def update_role(user_id: str, payload: UpdateRoleRequest, db=Depends(get_db),
                current=Depends(require_roles(*ADMIN_ROLES))):
    user = account_service.update_user_role(db, user_id, payload.new_role, current)
    return ok(user, "User role updated successfully")


@router.put("/users/{user_id}/lock")
def toggle_lock(user_id: str, payload: LockRequest, db=Depends(get_db),
                current=Depends(require_roles(*ADMIN_ROLES))):
    user = account_service.toggle_user_lock(db, user_id, payload.lock, acting_user=current)
    return ok(user, f"User {'locked' if payload.lock else 'unlocked'} successfully")


@router.get("/users/{user_id}/permissions")
def user_permission(user_id: str, permission: str, db=Depends(get_db),
                    current=Depends(require_roles(*ADMIN_ROLES))):
    allowed = account_service.check_user_permission(db, user_id, permission)
    return ok({"user_id": user_id, "permission": permission, "has_permission": allowed})


@router.get("/users/{user_id}/school-access")
def user_school_access(user_id: str, school_id: str, db=Depends(get_db),
                       current=Depends(require_roles(*ADMIN_ROLES))):
    allowed = account_service.check_school_access(db, user_id, school_id)
    return ok({"user_id": user_id, "school_id": school_id, "can_access": allowed})
