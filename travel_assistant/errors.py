class AssistantError(Exception):
    """Base class for errors raised inside the assistant."""


class CatalogError(AssistantError, ValueError):
    code = "CATALOG_ERROR"

    def __init__(self, message: str, field: str | None = None):
        super().__init__(message)
        self.message = message
        self.field = field


class CatalogValidationError(CatalogError):
    code = "VALIDATION"


class CatalogNotFoundError(CatalogError):
    code = "NOT_FOUND"


class BookingError(AssistantError):
    code = "BOOKING_ERROR"


class OwnershipError(BookingError):
    code = "OWNERSHIP_MISMATCH"

    def __init__(self, booking_id: str, owner: str | None, active_user_id: str):
        super().__init__(
            f"Booking {booking_id} belongs to {owner or 'another user'}, not {active_user_id}"
        )
        self.booking_id = booking_id
        self.owner = owner
        self.active_user_id = active_user_id


class ToolCallingUnsupported(AssistantError):
    """The chat model cannot bind or call tools."""
