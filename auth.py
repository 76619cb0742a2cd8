from typing import Iterable, Optional

from fastapi import Depends
from fastapi.security import OAuth2PasswordBearer

from database import USERS, get_db
from errors import AuthenticationError, AuthorizationError
from permissions import can_perform, can_perform_any, has_permission
from security import decode_access_token
from utils import is_valid_object_id, to_object_id

oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/auth/signin", auto_error=False)


# ----------------------- Auth Helpers -----------------------
def get_current_user(token: Optional[str] = Depends(oauth2_scheme), db=Depends(get_db)) -> dict:
    if not token:
        raise AuthenticationError("Access token required")
    payload = decode_access_token(token)
    user_id = payload["sub"]
    if not is_valid_object_id(user_id):
        raise AuthenticationError("Invalid token")
    user = db[USERS].find_one({"_id": to_object_id(user_id)})
    if not user or not user.get("is_active"):
        raise AuthenticationError("User not found or inactive")
    return user


def require_roles(*roles: str):
    def dependency(current=Depends(get_current_user)):
        if current.get("role") not in roles:
            raise AuthorizationError("Insufficient permissions")
        return current
    return dependency


def require_action(action: str):
    def dependency(current=Depends(get_current_user)):
        if not can_perform(current, action):
            raise AuthorizationError("Forbidden")
        return current
    return dependency


def require_any_action(actions: Iterable[str]):
    actions = tuple(actions)

    def dependency(current=Depends(get_current_user)):
        if not can_perform_any(current, actions):
            raise AuthorizationError("Forbidden")
        return current
    return dependency


def require_permission(permission: str):
    def dependency(current=Depends(get_current_user)):
        if not has_permission(current, permission):
            raise AuthorizationError("Insufficient permissions")
        return current
    return dependency
