"""
Accounts: OTP login, refresh-token rotation, profile and saved addresses.
"""
import re
from typing import Any, Dict, List, Optional

import structlog
from bson import ObjectId
from pymongo import ReturnDocument
from pymongo.database import Database

from catalog import pagination
from config import settings
from database import serialize_doc, to_object_id, utcnow
from errors import AuthenticationError, ForbiddenError, NotFoundError, ValidationError
from otp import OTPService
from schemas import Role, User
from security import create_access_token, create_refresh_token, verify_refresh_token

logger = structlog.get_logger(__name__)

ASSIGNABLE_ROLES = {Role.CUSTOMER.value, Role.STAFF.value, Role.ADMIN.value, Role.VENDOR.value}


def public_user(user: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "id": str(user["_id"]),
        "phone": user["phone"],
        "name": user.get("name"),
        "email": user.get("email"),
        "role": user.get("role", Role.CUSTOMER.value),
        "is_profile_complete": user.get("is_profile_complete", False),
        "is_active": user.get("is_active", True),
    }


def request_otp(database: Database, otp_service: OTPService, phone: str) -> Dict[str, Any]:
    result = otp_service.request_code(phone)
    existing = database["user"].find_one({"phone": phone}, {"_id": 1})
    return {"phone": phone, "is_new_user": existing is None, "test_mode": result["test_mode"]}


def _store_refresh_token(database: Database, user: Dict[str, Any], token: str, replaces: Optional[str] = None) -> None:
    tokens = [t for t in user.get("refresh_tokens", []) if t.get("token") != replaces]
    tokens.append({"token": token, "created_at": utcnow()})
    # only the newest few sessions survive
    tokens = tokens[-settings.MAX_REFRESH_TOKENS:]
    database["user"].update_one({"_id": user["_id"]}, {"$set": {"refresh_tokens": tokens}})


def issue_tokens(database: Database, user: Dict[str, Any], replaces: Optional[str] = None) -> Dict[str, str]:
    access_token = create_access_token(user)
    refresh_token = create_refresh_token(user)
    _store_refresh_token(database, user, refresh_token, replaces)
    return {"access_token": access_token, "refresh_token": refresh_token}


def verify_otp_and_login(database: Database, otp_service: OTPService, phone: str, code: str,
                         name: Optional[str] = None, email: Optional[str] = None) -> Dict[str, Any]:
    result = otp_service.verify_code(phone, code)
    if not result["success"]:
        raise AuthenticationError(result.get("reason") or "Invalid OTP")

    now = utcnow()
    user = database["user"].find_one({"phone": phone})
    is_new_user = user is None
    if is_new_user:
        if not name:
            raise ValidationError("Name is required for new users", errors=[{"field": "name", "message": "required"}])
        profile = User(phone=phone, name=name, email=email.lower() if email else None, is_profile_complete=True)
        user = {**profile.model_dump(mode="json"), "created_at": now, "updated_at": now}
        user["_id"] = database["user"].insert_one(user).inserted_id
        logger.info("user_registered", user_id=str(user["_id"]))
    else:
        if not user.get("is_active", True):
            raise AuthenticationError("Account is deactivated")
        update: Dict[str, Any] = {"last_login": now}
        if name and not user.get("name"):
            update.update({"name": name, "is_profile_complete": True})
        database["user"].update_one({"_id": user["_id"]}, {"$set": update})
        user.update(update)

    tokens = issue_tokens(database, user)
    logger.info("user_logged_in", user_id=str(user["_id"]), test_mode=bool(result.get("test_mode")))
    return {"user": public_user(user), "is_new_user": is_new_user, "test_mode": bool(result.get("test_mode")), **tokens}


def refresh_tokens(database: Database, refresh_token: str) -> Dict[str, str]:
    payload = verify_refresh_token(refresh_token)
    user = database["user"].find_one({"_id": to_object_id(payload["sub"], "sub"), "refresh_tokens.token": refresh_token})
    if not user:
        raise AuthenticationError("Invalid refresh token")
    if not user.get("is_active", True):
        raise AuthenticationError("Account is deactivated")
    return issue_tokens(database, user, replaces=refresh_token)


def logout(database: Database, user: Dict[str, Any], refresh_token: Optional[str]) -> None:
    if refresh_token:
        database["user"].update_one({"_id": user["_id"]}, {"$pull": {"refresh_tokens": {"token": refresh_token}}})


def logout_all(database: Database, user: Dict[str, Any]) -> None:
    database["user"].update_one({"_id": user["_id"]}, {"$set": {"refresh_tokens": []}})


def update_profile(database: Database, user: Dict[str, Any], name: Optional[str] = None,
                   email: Optional[str] = None) -> Dict[str, Any]:
    update: Dict[str, Any] = {"updated_at": utcnow()}
    if name:
        update["name"] = name
        update["is_profile_complete"] = True
    if email is not None:
        update["email"] = email.lower()
    updated = database["user"].find_one_and_update({"_id": user["_id"]}, {"$set": update},
                                                   return_document=ReturnDocument.AFTER)
    return public_user(updated)


# -------------------- Addresses --------------------

def _save_addresses(database: Database, user: Dict[str, Any], addresses: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    database["user"].update_one({"_id": user["_id"]}, {"$set": {"addresses": addresses, "updated_at": utcnow()}})
    return serialize_doc(addresses)


def _find_address(addresses: List[Dict[str, Any]], address_id: str) -> Dict[str, Any]:
    oid = to_object_id(address_id, "addressId")
    for addr in addresses:
        if addr["_id"] == oid:
            return addr
    raise NotFoundError("Address")


def list_addresses(user: Dict[str, Any]) -> List[Dict[str, Any]]:
    return serialize_doc(user.get("addresses", []))


def add_address(database: Database, user: Dict[str, Any], data: Dict[str, Any]) -> List[Dict[str, Any]]:
    addresses = list(user.get("addresses", []))
    address = {"_id": ObjectId(), **data}
    if not addresses or address.get("is_default"):
        for addr in addresses:
            addr["is_default"] = False
        address["is_default"] = True
    addresses.append(address)
    return _save_addresses(database, user, addresses)


def update_address(database: Database, user: Dict[str, Any], address_id: str, data: Dict[str, Any]) -> List[Dict[str, Any]]:
    addresses = list(user.get("addresses", []))
    address = _find_address(addresses, address_id)
    if data.get("is_default"):
        for addr in addresses:
            addr["is_default"] = False
    address.update({k: v for k, v in data.items() if v is not None})
    return _save_addresses(database, user, addresses)


def delete_address(database: Database, user: Dict[str, Any], address_id: str) -> List[Dict[str, Any]]:
    addresses = list(user.get("addresses", []))
    address = _find_address(addresses, address_id)
    addresses.remove(address)
    if address.get("is_default") and addresses:
        addresses[0]["is_default"] = True
    return _save_addresses(database, user, addresses)


def set_default_address(database: Database, user: Dict[str, Any], address_id: str) -> List[Dict[str, Any]]:
    addresses = list(user.get("addresses", []))
    target = _find_address(addresses, address_id)
    for addr in addresses:
        addr["is_default"] = addr is target
    return _save_addresses(database, user, addresses)


# -------------------- Admin --------------------

def list_users(database: Database, role: Optional[str] = None, search: Optional[str] = None,
               page: int = 1, limit: int = 20) -> Dict[str, Any]:
    query: Dict[str, Any] = {}
    if role:
        query["role"] = role
    if search:
        pattern = re.escape(search)
        query["$or"] = [{"name": {"$regex": pattern, "$options": "i"}}, {"phone": {"$regex": pattern}}]
    page, limit = max(page, 1), max(min(limit, 100), 1)
    total = database["user"].count_documents(query)
    cursor = database["user"].find(query).sort([("created_at", -1)]).skip((page - 1) * limit).limit(limit)
    return {"users": [public_user(u) for u in cursor], "pagination": pagination(page, limit, total)}


def set_role(database: Database, actor: Dict[str, Any], user_id: str, role: str) -> Dict[str, Any]:
    if role not in ASSIGNABLE_ROLES:
        raise ValidationError(f"Invalid role '{role}'", errors=[{"field": "role", "message": "unknown role"}])
    oid = to_object_id(user_id, "userId")
    if oid == actor["_id"]:
        raise ForbiddenError("You cannot change your own role")
    user = database["user"].find_one_and_update(
        {"_id": oid},
        # a role change invalidates existing sessions
        {"$set": {"role": role, "refresh_tokens": [], "updated_at": utcnow()}},
        return_document=ReturnDocument.AFTER,
    )
    if not user:
        raise NotFoundError("User")
    logger.info("user_role_changed", user_id=user_id, role=role, by=str(actor["_id"]))
    return public_user(user)
