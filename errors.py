"""
Error taxonomy for the storefront API.

Operational errors are anticipated failures whose message is safe to show to
the caller. Anything else is logged and collapsed to a generic message by the
handlers registered in main.py.
"""
from typing import Any, Dict, List, Optional


class AppError(Exception):
    status_code = 500
    code = "APP_ERROR"
    is_operational = True

    def __init__(self, message: str, status_code: Optional[int] = None, code: Optional[str] = None):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if code is not None:
            self.code = code

    def to_dict(self) -> Dict[str, Any]:
        return {"success": False, "message": self.message, "code": self.code}


class ValidationError(AppError):
    status_code = 400
    code = "VALIDATION_ERROR"

    def __init__(self, message: str, errors: Optional[List[Dict[str, Any]]] = None):
        super().__init__(message)
        self.errors = errors or []

    def to_dict(self) -> Dict[str, Any]:
        body = super().to_dict()
        if self.errors:
            body["errors"] = self.errors
        return body


class AuthenticationError(AppError):
    status_code = 401
    code = "AUTHENTICATION_ERROR"


class ForbiddenError(AppError):
    status_code = 403
    code = "FORBIDDEN"


class NotFoundError(AppError):
    status_code = 404
    code = "NOT_FOUND"

    def __init__(self, resource: str = "Resource"):
        super().__init__(f"{resource} not found")


class InvalidTransitionError(AppError):
    status_code = 409
    code = "INVALID_TRANSITION"


class InsufficientStockError(AppError):
    status_code = 409
    code = "INSUFFICIENT_STOCK"


class StockUnavailableError(AppError):
    status_code = 409
    code = "STOCK_UNAVAILABLE"


class DuplicateValueError(AppError):
    status_code = 409
    code = "DUPLICATE_VALUE"


class PaymentVerificationError(AppError):
    status_code = 400
    code = "PAYMENT_VERIFICATION_FAILED"


class PaymentGatewayError(AppError):
    status_code = 502
    code = "PAYMENT_GATEWAY_ERROR"


class OTPDeliveryError(AppError):
    status_code = 502
    code = "OTP_DELIVERY_FAILED"


class MediaUploadError(AppError):
    status_code = 502
    code = "MEDIA_UPLOAD_FAILED"


class InternalError(AppError):
    status_code = 500
    code = "INTERNAL_ERROR"
    is_operational = False

    def __init__(self, message: str = "Something went wrong"):
        super().__init__(message)


class InvalidIdError(ValidationError):
    code = "INVALID_ID"
