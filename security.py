"""
JWT access/refresh tokens and the request auth dependencies.
"""
import uuid
from datetime import timedelta
from typing import Any, Callable, Dict, Optional

import jwt
from fastapi import Depends
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from pymongo.database import Database

from config import settings
from database import get_db, to_object_id, utcnow
from errors import AuthenticationError, ForbiddenError
from schemas import Role

JWT_ALGO = "HS256"

bearer = HTTPBearer(auto_error=False)


def create_access_token(user: Dict[str, Any]) -> str:
    now = utcnow()
    payload = {
        "sub": str(user["_id"]),
        "role": user.get("role", Role.CUSTOMER.value),
        "type": "access",
        "iat": now,
        "exp": now + timedelta(minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES),
    }
    return jwt.encode(payload, settings.JWT_ACCESS_SECRET, algorithm=JWT_ALGO)


def create_refresh_token(user: Dict[str, Any]) -> str:
    now = utcnow()
    payload = {
        "sub": str(user["_id"]),
        "type": "refresh",
        "jti": uuid.uuid4().hex,
        "iat": now,
        "exp": now + timedelta(days=settings.REFRESH_TOKEN_EXPIRE_DAYS),
    }
    return jwt.encode(payload, settings.JWT_REFRESH_SECRET, algorithm=JWT_ALGO)


def _decode(token: str, secret: str, expected_type: str) -> Dict[str, Any]:
    try:
        payload = jwt.decode(token, secret, algorithms=[JWT_ALGO])
    except jwt.ExpiredSignatureError:
        raise AuthenticationError("Token expired")
    except jwt.InvalidTokenError:
        raise AuthenticationError("Invalid token")
    if payload.get("type") != expected_type or not payload.get("sub"):
        raise AuthenticationError("Invalid token")
    return payload


def verify_access_token(token: str) -> Dict[str, Any]:
    return _decode(token, settings.JWT_ACCESS_SECRET, "access")


def verify_refresh_token(token: str) -> Dict[str, Any]:
    return _decode(token, settings.JWT_REFRESH_SECRET, "refresh")


def get_current_user(credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer),
                     database: Database = Depends(get_db)) -> Dict[str, Any]:
    if credentials is None or not credentials.credentials:
        raise AuthenticationError("Not authenticated")
    payload = verify_access_token(credentials.credentials)
    user = database["user"].find_one({"_id": to_object_id(payload["sub"], "sub")})
    if not user:
        raise AuthenticationError("User not found")
    if not user.get("is_active", True):
        raise AuthenticationError("Account is deactivated")
    return user


def require_roles(*roles: Role) -> Callable[..., Dict[str, Any]]:
    allowed = {Role(r).value for r in roles}

    def dependency(user: Dict[str, Any] = Depends(get_current_user)) -> Dict[str, Any]:
        if user.get("role") not in allowed:
            raise ForbiddenError("You do not have permission to perform this action")
        return user

    return dependency


require_admin = require_roles(Role.ADMIN)
require_staff = require_roles(Role.STAFF, Role.ADMIN)
require_catalog_editor = require_roles(Role.ADMIN, Role.VENDOR)
