"""
Role-based access control.

Two independent mechanisms live here and are intentionally not merged:

- the static action table (``PERMISSIONS``), checked by ``can_perform``;
- the per-admin stored permission list (``admin_info.permissions``), checked
  by ``has_permission``.

A school admin can pass one and fail the other.
"""

from typing import Dict, FrozenSet, Iterable, Optional

ROLES = ("systemAdmin", "schoolAdmin", "student", "parent")
ADMIN_ROLES = ("systemAdmin", "schoolAdmin")

PERMISSIONS: Dict[str, FrozenSet[str]] = {
    "systemAdmin": frozenset({
        "create:schoolAdmin",
        "read:schoolAdmin",
        "update:schoolAdmin",
        "delete:schoolAdmin",
        "read:users",
        "update:userRole",
        "lock:user",
        "read:analytics:admin",
    }),
    "schoolAdmin": frozenset({
        "create:parent",
        "create:student",
        "read:students",
        "update:student",
        "delete:student",
        "read:tracking",
        "update:tracking",
        "analytics:tracking",
        "export:students",
    }),
    "parent": frozenset({
        "read:own:children",
        "read:tracking:own",
    }),
    "student": frozenset(),
}

# Vocabulary of admin_info.permissions
STORED_PERMISSIONS = (
    "manage_system",
    "manage_schools",
    "manage_all_users",
    "view_all_data",
    "manage_school_users",
    "manage_students",
    "manage_tracking",
    "view_reports",
    "manage_buses",
    "manage_schedules",
    "manage_notifications",
)


def permissions_of(role: Optional[str]) -> FrozenSet[str]:
    return PERMISSIONS.get(role, frozenset())


def can_perform(user: dict, action: str) -> bool:
    return action in permissions_of(user.get("role"))


def can_perform_any(user: dict, actions: Iterable[str]) -> bool:
    return any(can_perform(user, a) for a in actions)


def has_permission(user: dict, permission: str) -> bool:
    role = user.get("role")
    if role == "systemAdmin":
        return True
    if role == "schoolAdmin":
        return permission in ((user.get("admin_info") or {}).get("permissions") or [])
    return False


def school_id_of(user: dict) -> Optional[str]:
    return (user.get("admin_info") or {}).get("school_id")


def can_access_school(user: dict, school_id: Optional[str]) -> bool:
    role = user.get("role")
    if role == "systemAdmin":
        return True
    if role == "schoolAdmin":
        return school_id is not None and school_id_of(user) == school_id
    return False


def school_scope(user: Optional[dict]) -> dict:
    """Mongo filter fragment restricting a school admin to its own school."""
    if user and user.get("role") == "schoolAdmin":
        return {"admin_info.school_id": school_id_of(user)}
    return {}


def scoped_filter(role: str, user: Optional[dict] = None, **extra) -> dict:
    """Active accounts of ``role`` visible to ``user``, plus any extra conditions."""
    query = {"role": role, "is_active": True}
    query.update(school_scope(user))
    query.update(extra)
    return query
