from __future__ import annotations


class ReservationError(RuntimeError):
    status_code = 400
    code = "reservation_error"


class ValidationError(ReservationError):
    code = "validation_error"


class NotFoundError(ReservationError):
    status_code = 404
    code = "not_found"


class InvalidStateError(ReservationError):
    status_code = 409
    code = "invalid_state"


class InvalidTransitionError(InvalidStateError):
    code = "invalid_transition"

    def __init__(self, current: str, target: str):
        super().__init__(f"Invalid state transition: {current} -> {target}")
        self.current = current
        self.target = target


class SlotUnavailableError(ReservationError):
    status_code = 409
    code = "slot_unavailable"


class InsufficientAvailabilityError(ReservationError):
    status_code = 409
    code = "insufficient_availability"


class ResourceBusyError(ReservationError):
    status_code = 409
    code = "resource_busy"


class DuplicateCodeError(ReservationError):
    status_code = 409
    code = "duplicate_code"


class ConcurrentModificationError(ReservationError):
    status_code = 409
    code = "concurrent_modification"


class ExternalServiceError(ReservationError):
    status_code = 502
    code = "external_service_error"
