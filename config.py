import logging
import os
from typing import List

import structlog
from dotenv import load_dotenv

load_dotenv()


def _bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


class Settings:
    """Environment-backed settings. Read once at import, patched in tests."""

    def __init__(self):
        self.APP_ENV = os.getenv("APP_ENV", "development")
        self.PORT = int(os.getenv("PORT", 8000))
        self.CORS_ORIGINS: List[str] = [o.strip() for o in os.getenv("CORS_ORIGINS", "*").split(",") if o.strip()]

        self.DATABASE_URL = os.getenv("DATABASE_URL", "mongodb://localhost:27017")
        self.DATABASE_NAME = os.getenv("DATABASE_NAME", "shaaka")

        self.JWT_ACCESS_SECRET = os.getenv("JWT_ACCESS_SECRET", "dev-access-secret")
        self.JWT_REFRESH_SECRET = os.getenv("JWT_REFRESH_SECRET", "dev-refresh-secret")
        self.ACCESS_TOKEN_EXPIRE_MINUTES = int(os.getenv("ACCESS_TOKEN_EXPIRE_MINUTES", 15))
        self.REFRESH_TOKEN_EXPIRE_DAYS = int(os.getenv("REFRESH_TOKEN_EXPIRE_DAYS", 7))
        self.MAX_REFRESH_TOKENS = 5

        self.MSG91_AUTH_KEY = os.getenv("MSG91_AUTH_KEY", "")
        self.MSG91_OTP_TEMPLATE_ID = os.getenv("MSG91_OTP_TEMPLATE_ID", "")
        self.OTP_EXPIRE_MINUTES = 10
        self.OTP_MAX_ATTEMPTS = 5
        # Development/QA escape hatch. Never honoured in production.
        self.OTP_TEST_BYPASS = _bool("OTP_TEST_BYPASS", True)
        self.OTP_TEST_PHONES = ["9999999999", "9999999998", "9999999997", "9876543210", "9876543211"]
        self.OTP_TEST_CODE = "1234"

        self.RAZORPAY_KEY_ID = os.getenv("RAZORPAY_KEY_ID", "")
        self.RAZORPAY_KEY_SECRET = os.getenv("RAZORPAY_KEY_SECRET", "")
        self.RAZORPAY_WEBHOOK_SECRET = os.getenv("RAZORPAY_WEBHOOK_SECRET", "")
        self.PAYMENT_WINDOW_MINUTES = 30
        self.CURRENCY = "INR"

        self.CLOUDINARY_CLOUD_NAME = os.getenv("CLOUDINARY_CLOUD_NAME", "")
        self.CLOUDINARY_API_KEY = os.getenv("CLOUDINARY_API_KEY", "")
        self.CLOUDINARY_API_SECRET = os.getenv("CLOUDINARY_API_SECRET", "")

        self.FREE_DELIVERY_THRESHOLD = float(os.getenv("FREE_DELIVERY_THRESHOLD", 500))
        self.DELIVERY_CHARGE = float(os.getenv("DELIVERY_CHARGE", 40))
        self.MIN_ORDER_VALUE = float(os.getenv("MIN_ORDER_VALUE", 200))
        self.DELIVERY_RADIUS_KM = float(os.getenv("DELIVERY_RADIUS_KM", 25))
        self.STORE_LAT = float(os.getenv("STORE_LAT", 17.385044))
        self.STORE_LNG = float(os.getenv("STORE_LNG", 78.486671))
        self.COD_ENABLED = _bool("COD_ENABLED", True)
        self.MAX_QUANTITY_PER_ITEM = 10
        self.LOW_STOCK_THRESHOLD = 5

        self.HTTP_TIMEOUT_SECONDS = 10.0

    @property
    def is_production(self) -> bool:
        return self.APP_ENV == "production"

    @property
    def otp_bypass_enabled(self) -> bool:
        return self.OTP_TEST_BYPASS and not self.is_production


settings = Settings()


def configure_logging() -> None:
    logging.basicConfig(format="%(message)s", level=logging.INFO)
    renderer = structlog.processors.JSONRenderer() if settings.is_production else structlog.dev.ConsoleRenderer()
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(logging.INFO),
        cache_logger_on_first_use=True,
    )
