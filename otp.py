"""
One-time passcodes over SMS (MSG91).

Codes live in the `otp` collection, one per phone. Configured test phones
skip both the store and the SMS provider while the bypass is enabled, which
it never is in production.
"""
import secrets
from datetime import timedelta
from typing import Any, Dict, Optional

import httpx
import structlog
from pymongo.database import Database

from config import Settings, settings
from database import as_utc, utcnow
from errors import OTPDeliveryError
from schemas import OTP

logger = structlog.get_logger(__name__)

MSG91_OTP_URL = "https://api.msg91.com/api/v5/otp"
CODE_LENGTH = 6


def generate_code(length: int = CODE_LENGTH) -> str:
    return "".join(str(secrets.randbelow(10)) for _ in range(length))


class Msg91Sender:
    def __init__(self, auth_key: str, template_id: str, http: Optional[httpx.Client] = None, timeout: float = 10.0):
        self.auth_key = auth_key
        self.template_id = template_id
        self.http = http or httpx.Client(timeout=timeout)

    def send(self, phone: str, code: str) -> None:
        try:
            response = self.http.post(
                MSG91_OTP_URL,
                json={"template_id": self.template_id, "mobile": f"91{phone}", "otp": code},
                headers={"authkey": self.auth_key},
            )
            response.raise_for_status()
            body = response.json()
        except (httpx.HTTPError, ValueError) as exc:
            logger.error("msg91_send_failed", phone=phone[-4:], error=str(exc))
            raise OTPDeliveryError("Failed to send OTP. Please try again.")
        if body.get("type") != "success":
            logger.error("msg91_rejected", phone=phone[-4:], message=body.get("message"))
            raise OTPDeliveryError("Failed to send OTP. Please try again.")


class ConsoleSender:
    """Development sender: the code goes to the log instead of a phone."""

    def send(self, phone: str, code: str) -> None:
        logger.info("otp_dev_delivery", phone=phone, code=code)


class OTPService:
    def __init__(self, database: Database, sender, config: Settings = settings):
        self.db = database
        self.sender = sender
        self.config = config

    def is_test_phone(self, phone: str) -> bool:
        return self.config.otp_bypass_enabled and phone in self.config.OTP_TEST_PHONES

    def request_code(self, phone: str) -> Dict[str, Any]:
        if self.is_test_phone(phone):
            logger.info("otp_test_phone_requested", phone=phone)
            return {"test_mode": True}

        code = generate_code()
        now = utcnow()
        self.db["otp"].delete_many({"phone": phone})
        record = OTP(phone=phone, code=code, expires_at=now + timedelta(minutes=self.config.OTP_EXPIRE_MINUTES))
        self.db["otp"].insert_one({**record.model_dump(), "created_at": now})
        self.sender.send(phone, code)
        logger.info("otp_sent", phone=phone[-4:])
        return {"test_mode": False}

    def verify_code(self, phone: str, code: str) -> Dict[str, Any]:
        if self.is_test_phone(phone):
            if code == self.config.OTP_TEST_CODE:
                return {"success": True, "test_mode": True}
            return {"success": False, "reason": "Invalid OTP", "test_mode": True}

        record = self.db["otp"].find_one({"phone": phone})
        if not record:
            return {"success": False, "reason": "OTP not found or expired"}
        if utcnow() >= as_utc(record["expires_at"]):
            self.db["otp"].delete_one({"_id": record["_id"]})
            return {"success": False, "reason": "OTP expired"}
        if record.get("attempts", 0) >= self.config.OTP_MAX_ATTEMPTS:
            self.db["otp"].delete_one({"_id": record["_id"]})
            return {"success": False, "reason": "Too many attempts. Please request a new OTP"}
        if not secrets.compare_digest(record["code"].encode(), code.encode()):
            self.db["otp"].update_one({"_id": record["_id"]}, {"$inc": {"attempts": 1}})
            remaining = self.config.OTP_MAX_ATTEMPTS - record.get("attempts", 0) - 1
            return {"success": False, "reason": f"Invalid OTP. {remaining} attempts remaining"}

        self.db["otp"].delete_one({"_id": record["_id"]})
        return {"success": True}


_sender = None


def get_otp_sender():
    global _sender
    if _sender is None:
        if settings.APP_ENV == "development":
            _sender = ConsoleSender()
        else:
            _sender = Msg91Sender(settings.MSG91_AUTH_KEY, settings.MSG91_OTP_TEMPLATE_ID,
                                  timeout=settings.HTTP_TIMEOUT_SECONDS)
    return _sender
