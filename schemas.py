"""
Database Schemas for SchoolWay (MongoDB via Pydantic models)

All principals are stored in the "user" collection. The role payload is a
tagged union keyed by ``role``: students carry ``student_info``, parents
``parent_info`` and admins ``admin_info``. Tracking history events go to the
"trackingevent" collection.
"""

from datetime import date, datetime
from typing import Annotated, List, Literal, Optional, Union

from pydantic import BaseModel, EmailStr, Field, RootModel, field_validator

Role = Literal["systemAdmin", "schoolAdmin", "student", "parent"]
AdminRole = Literal["systemAdmin", "schoolAdmin"]
TrackingStatus = Literal["active", "inactive", "tracking", "emergency"]
AlertType = Literal["medical", "safety", "transport", "other"]
Gender = Literal["male", "female", "other"]
Relationship = Literal["father", "mother", "guardian", "other"]
AccessLevel = Literal["full", "limited", "readonly"]
StoredPermission = Literal[
    "manage_system", "manage_schools", "manage_all_users", "view_all_data",
    "manage_school_users", "manage_students", "manage_tracking", "view_reports",
    "manage_buses", "manage_schedules", "manage_notifications",
]


# ----------------------- Embedded documents -----------------------

class Location(BaseModel):
    latitude: float = Field(..., ge=-90, le=90)
    longitude: float = Field(..., ge=-180, le=180)
    timestamp: Optional[datetime] = None
    accuracy: Optional[float] = None
    speed: Optional[float] = None
    heading: Optional[float] = None


class AlertLocation(BaseModel):
    latitude: float = Field(..., ge=-90, le=90)
    longitude: float = Field(..., ge=-180, le=180)


class Address(BaseModel):
    street: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    zip_code: Optional[str] = None
    country: Optional[str] = None


class EmergencyContact(BaseModel):
    name: str
    relationship: Optional[str] = None
    phone: Optional[str] = None
    email: Optional[EmailStr] = None


class StudentInfo(BaseModel):
    student_id: Optional[str] = Field(None, description="External student id (unique)")
    grade: Optional[int] = Field(None, ge=1, le=12)
    section: Optional[str] = None
    date_of_birth: Optional[date] = None
    gender: Optional[Gender] = None
    parent_id: str = Field(..., description="Owning parent user id")


class ParentInfo(BaseModel):
    relationship: Relationship
    children: List[str] = Field(default_factory=list)
    address: Optional[Address] = None
    emergency_contacts: List[EmergencyContact] = Field(default_factory=list)


class AdminInfo(BaseModel):
    permissions: List[StoredPermission] = Field(default_factory=list)
    school_id: Optional[str] = None
    school_name: Optional[str] = None
    department: Optional[str] = None
    employee_id: Optional[str] = None
    access_level: AccessLevel = "full"


class SchoolAdminInfo(AdminInfo):
    school_id: str = Field(..., min_length=1)
    school_name: str = Field(..., min_length=1)


class BusInfo(BaseModel):
    bus_number: Optional[str] = None
    pickup_location: Optional[str] = None
    drop_location: Optional[str] = None
    pickup_time: Optional[str] = None
    drop_time: Optional[str] = None


class TrackingInfo(BaseModel):
    status: TrackingStatus = "active"
    location: Optional[Location] = None
    notes: Optional[str] = None


# ----------------------- Accounts -----------------------

class UserBase(BaseModel):
    username: str = Field(..., min_length=3)
    email: EmailStr
    password: str = Field(..., min_length=6)
    first_name: str = Field(..., min_length=1)
    last_name: str = Field(..., min_length=1)
    phone: Optional[str] = None
    profile_picture: Optional[str] = None

    @field_validator("username", "first_name", "last_name")
    @classmethod
    def strip_text(cls, v: str) -> str:
        return v.strip()


class StudentSignup(UserBase):
    role: Literal["student"] = "student"
    student_info: StudentInfo
    bus_info: Optional[BusInfo] = None
    tracking_info: Optional[TrackingInfo] = None
    admin_info: Optional[AdminInfo] = Field(None, description="School binding")


class ParentSignup(UserBase):
    role: Literal["parent"] = "parent"
    parent_info: ParentInfo
    admin_info: Optional[AdminInfo] = Field(None, description="School binding")


class SchoolAdminSignup(UserBase):
    role: Literal["schoolAdmin"] = "schoolAdmin"
    admin_info: SchoolAdminInfo


class SystemAdminSignup(UserBase):
    role: Literal["systemAdmin"] = "systemAdmin"
    admin_info: AdminInfo = Field(default_factory=AdminInfo)


class SignupRequest(RootModel[Annotated[
    Union[StudentSignup, ParentSignup, SystemAdminSignup],
    Field(discriminator="role"),
]]):
    """Public signup body; the `role` tag selects the payload variant.

    School admins are not self-registering, they come from `/auth/create-school-admin`.
    """


class SigninRequest(BaseModel):
    username: str = Field(..., min_length=1, description="Username or email")
    password: str = Field(..., min_length=1)


class ChangePasswordRequest(BaseModel):
    current_password: str = Field(..., min_length=1)
    new_password: str = Field(..., min_length=6)


class ResetPasswordRequest(BaseModel):
    email: EmailStr


class ConfirmResetRequest(BaseModel):
    token: str = Field(..., min_length=1)
    new_password: str = Field(..., min_length=6)


class UpdateRoleRequest(BaseModel):
    new_role: Role


class LockRequest(BaseModel):
    lock: bool


class StatusToggleRequest(BaseModel):
    is_active: bool


# ----------------------- Students -----------------------

class StudentInfoUpdate(BaseModel):
    student_id: Optional[str] = None
    grade: Optional[int] = Field(None, ge=1, le=12)
    section: Optional[str] = None
    date_of_birth: Optional[date] = None
    gender: Optional[Gender] = None


class TrackingInfoUpdate(BaseModel):
    status: Optional[TrackingStatus] = None
    location: Optional[Location] = None
    notes: Optional[str] = None


class StudentUpdate(BaseModel):
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    phone: Optional[str] = None
    profile_picture: Optional[str] = None
    student_info: Optional[StudentInfoUpdate] = None
    bus_info: Optional[BusInfo] = None
    tracking_info: Optional[TrackingInfoUpdate] = None


class AssignParentRequest(BaseModel):
    parent_id: str


class BulkStudentItem(BaseModel):
    student_id: str
    data: StudentUpdate


class BulkStudentUpdate(BaseModel):
    updates: List[BulkStudentItem] = Field(..., min_length=1)


# ----------------------- Tracking -----------------------

class LocationUpdate(BaseModel):
    latitude: float = Field(..., ge=-90, le=90)
    longitude: float = Field(..., ge=-180, le=180)
    timestamp: Optional[datetime] = None
    status: Optional[TrackingStatus] = None
    accuracy: Optional[float] = None
    speed: Optional[float] = None
    heading: Optional[float] = None


class StatusUpdate(BaseModel):
    status: TrackingStatus
    location: Optional[Location] = None
    notes: Optional[str] = None

    @field_validator("notes")
    @classmethod
    def strip_notes(cls, v: Optional[str]) -> Optional[str]:
        return v.strip() if v is not None else v


class EmergencyAlertRequest(BaseModel):
    type: AlertType
    message: str = Field(..., min_length=1)
    location: Optional[AlertLocation] = None

    @field_validator("message")
    @classmethod
    def message_not_blank(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("message must not be empty")
        return v


class BulkStatusItem(BaseModel):
    student_id: str
    status: TrackingStatus


class BulkStatusUpdate(BaseModel):
    updates: List[BulkStatusItem] = Field(..., min_length=1)


class TrackingEvent(BaseModel):
    """
    Append-only tracking history entry
    Collection: "trackingevent"
    """
    student_id: str
    kind: Literal["location", "status", "emergency", "bulk_status", "manual"]
    status: Optional[TrackingStatus] = None
    location: Optional[Location] = None
    notes: Optional[str] = None
    alert_type: Optional[AlertType] = None
    message: Optional[str] = None
    timestamp: datetime


# ----------------------- Admins -----------------------

class AdminCreate(UserBase):
    role: AdminRole = "schoolAdmin"
    admin_info: AdminInfo = Field(default_factory=AdminInfo)


class AdminInfoUpdate(BaseModel):
    permissions: Optional[List[StoredPermission]] = None
    school_id: Optional[str] = None
    school_name: Optional[str] = None
    department: Optional[str] = None
    employee_id: Optional[str] = None
    access_level: Optional[AccessLevel] = None


class AdminUpdate(BaseModel):
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    phone: Optional[str] = None
    role: Optional[AdminRole] = None
    admin_info: Optional[AdminInfoUpdate] = None
