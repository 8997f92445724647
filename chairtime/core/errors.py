"""Error taxonomy shared by the scheduling services and mapped to HTTP in main.py."""


class SchedulingError(Exception):
    status_code = 500

    def __init__(self, message: str, details: dict | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}


class ValidationError(SchedulingError):
    """Malformed or out-of-policy input. Never retried automatically."""

    status_code = 422


class InvalidTransitionError(ValidationError):
    pass


class ConflictError(SchedulingError):
    """The requested interval is no longer free; the caller should re-query availability."""

    status_code = 409


class NotFoundError(SchedulingError):
    status_code = 404


class TransientStoreError(SchedulingError):
    """Store connectivity or timeout. No partial write happened, so retrying with backoff is safe."""

    status_code = 503


class NotificationFailure(SchedulingError):
    """A single notification could not be delivered. Recorded, never escalated."""

    def __init__(self, appointment_id: str, reason: str) -> None:
        super().__init__(f"{appointment_id}: {reason}", {"appointment_id": appointment_id})
        self.appointment_id = appointment_id
        self.reason = reason
