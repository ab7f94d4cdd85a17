"""
Service-layer failures.

Every error carries a stable ``code`` (what clients switch on) and the HTTP
status the API layer renders it with. Guard checks that are allowed to be
no-ops (release, confirm) return structured results instead of raising.
"""


class ServiceError(Exception):
    status_code = 400
    code = "BAD_REQUEST"

    def __init__(self, message=None, code=None, details=None):
        super().__init__(message or self.code)
        self.message = message or self.code
        if code:
            self.code = code
        self.details = details

    def to_dict(self) -> dict:
        out = {"ok": False, "error": self.code, "message": self.message}
        if self.details:
            out["details"] = self.details
        return out


class ValidationFailed(ServiceError):
    status_code = 400
    code = "VALIDATION_ERROR"


class Unauthorized(ServiceError):
    status_code = 401
    code = "UNAUTHORIZED"


class Forbidden(ServiceError):
    status_code = 403
    code = "FORBIDDEN"


class NotFound(ServiceError):
    status_code = 404
    code = "NOT_FOUND"


class Conflict(ServiceError):
    status_code = 409
    code = "CONFLICT"


class SlotUnavailable(Conflict):
    code = "SLOT_UNAVAILABLE"


class BookingNotEditable(Conflict):
    code = "BOOKING_NOT_EDITABLE"


class PartnerUnavailable(NotFound):
    code = "PARTNER_NOT_FOUND_OR_INACTIVE"


class InvalidPricing(ServiceError):
    status_code = 400
    code = "INVALID_PARTNER_PRICING"


class PaymentGatewayError(ServiceError):
    status_code = 502
    code = "PAYMENT_PROVIDER_ERROR"
