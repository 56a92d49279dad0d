from enum import Enum


class AppError(Exception):
    """Base class for all application exceptions."""
    def __init__(self, message: str, status_code: int = 500, details: dict = None):
        self.message = message
        self.status_code = status_code
        self.details = details or {}
        super().__init__(self.message)


class ErrorKind(str, Enum):
    permission_denied = "permission_denied"
    slot_blocked = "slot_blocked"
    not_found = "not_found"
    conflict = "conflict"
    invariant_violation = "invariant_violation"


class ScheduleError(AppError):
    """Raised when a schedule mutation is rejected. Nothing has been committed."""
    kind: ErrorKind = ErrorKind.invariant_violation

    def __init__(self, message: str, status_code: int, details: dict = None):
        super().__init__(message, status_code=status_code, details=details)


class PermissionDeniedError(ScheduleError):
    """Caller role is insufficient. Retrying without re-authenticating will not help."""
    kind = ErrorKind.permission_denied

    def __init__(self, message: str = "Insufficient permissions", details: dict = None):
        super().__init__(message, status_code=403, details=details)


class SlotBlockedError(ScheduleError):
    """Target timeslot is blocked and can never hold a session."""
    kind = ErrorKind.slot_blocked

    def __init__(self, timeslot_id: int, reason: str | None = None):
        super().__init__(
            f"Timeslot {timeslot_id} is blocked" + (f": {reason}" if reason else ""),
            status_code=422,
            details={"timeslot_id": timeslot_id, "reason": reason},
        )


class NotFoundError(ScheduleError):
    """A referenced session, room, timeslot or slot no longer exists. Refresh and retry."""
    kind = ErrorKind.not_found

    def __init__(self, resource_type: str, resource_id, message: str | None = None):
        super().__init__(
            message or f"{resource_type} with id {resource_id} not found",
            status_code=404,
            details={"resource_type": resource_type, "resource_id": resource_id},
        )


class ConflictError(ScheduleError):
    """A concurrent mutation invalidated this request. Refresh and retry."""
    kind = ErrorKind.conflict

    def __init__(self, message: str, reason: str = "stale", details: dict = None):
        super().__init__(message, status_code=409, details={"reason": reason, **(details or {})})


class InvariantViolationError(ScheduleError):
    """Validation failed for a reason the mutation API should have prevented."""
    kind = ErrorKind.invariant_violation

    def __init__(self, message: str, details: dict = None):
        super().__init__(message, status_code=500, details=details)


class ConfigurationError(AppError):
    """Raised when system configuration is invalid."""
    def __init__(self, message: str):
        super().__init__(message, status_code=500)


class CatalogValidationError(AppError):
    """Raised when a catalog edit would leave a room or timeslot unusable."""
    def __init__(self, message: str, details: dict = None):
        super().__init__(message, status_code=422, details=details)
