from fastapi import status


class BookingServiceError(Exception):
    status_code = 500
    code = "internal_error"
    detail = "Unexpected booking service error."

    def __init__(self, detail: str | None = None, **extra):
        self.detail = detail or self.detail
        self.extra = extra
        super().__init__(self.detail)

    def to_payload(self) -> dict:
        return {"code": self.code, "detail": self.detail, **self.extra}


class ValidationError(BookingServiceError):
    status_code = status.HTTP_400_BAD_REQUEST
    code = "validation_error"
    detail = "Requested ranges are invalid."


class ConflictError(BookingServiceError):
    status_code = status.HTTP_409_CONFLICT
    code = "conflict"
    detail = "Requested time is no longer available."

    def __init__(self, detail: str | None = None, conflicts=(), suggested_alternatives=()):
        self.conflicts = list(conflicts)
        self.suggested_alternatives = list(suggested_alternatives)
        super().__init__(detail)

    def to_payload(self) -> dict:
        return {
            "code": self.code,
            "detail": self.detail,
            "conflicts": [conflict.to_dict() for conflict in self.conflicts],
            "suggested_alternatives": [r.to_dict() for r in self.suggested_alternatives],
        }


class HoldConflict(ConflictError):
    code = "hold_conflict"
    detail = "Selected dates overlap an existing hold or booking."


class PromotionConflict(ConflictError):
    code = "promotion_conflict"
    detail = "Hold could not be converted into a booking because the time was taken."


class ExpiredError(BookingServiceError):
    status_code = status.HTTP_410_GONE
    code = "expired"
    detail = "Hold is no longer active, please reselect dates."


class HoldExpired(ExpiredError):
    code = "hold_expired"


class PromotionExpired(ExpiredError):
    code = "promotion_expired"


class NotFoundError(BookingServiceError):
    status_code = status.HTTP_404_NOT_FOUND
    code = "not_found"
    detail = "Requested record was not found."


class HoldNotFound(NotFoundError):
    code = "hold_not_found"
    detail = "Hold was not found."


class PromotionNotFound(NotFoundError):
    code = "promotion_hold_not_found"
    detail = "Hold to promote was not found."


class BookingNotFound(NotFoundError):
    code = "booking_not_found"
    detail = "Booking was not found."


class InvalidTransition(BookingServiceError):
    status_code = status.HTTP_409_CONFLICT
    code = "invalid_transition"
    detail = "Booking cannot move to the requested status."


class StoreUnavailable(BookingServiceError):
    status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    code = "store_unavailable"
    detail = "Booking storage is temporarily unavailable, retry later."


class StoreConflict(Exception):
    """The storage layer rejected a write because it overlaps an active claim."""
