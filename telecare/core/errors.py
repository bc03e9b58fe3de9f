"""Domain error taxonomy.

Every error the core reports to a caller is a ``DomainError``. The HTTP layer
maps ``status_code`` onto the response; services never import FastAPI.
"""


class DomainError(Exception):
    status_code: int = 400
    retryable: bool = False

    def __init__(self, message: str | None = None):
        self.message = message or self.default_message()
        super().__init__(self.message)

    @classmethod
    def default_message(cls) -> str:
        return cls.__name__

    @property
    def code(self) -> str:
        return type(self).__name__


class ValidationError(DomainError):
    status_code = 400


class PastDateError(DomainError):
    status_code = 400

    @classmethod
    def default_message(cls) -> str:
        return "Appointment time must be in the future"


class SchedulingConflict(DomainError):
    status_code = 409

    @classmethod
    def default_message(cls) -> str:
        return "This time slot is already booked"


class SubscriptionRequired(DomainError):
    status_code = 402

    @classmethod
    def default_message(cls) -> str:
        return "An active subscription is required"


class DoctorUnavailable(DomainError):
    status_code = 409

    @classmethod
    def default_message(cls) -> str:
        return "Doctor is not currently accepting appointments"


class InvalidTransition(DomainError):
    status_code = 409


class NotFound(DomainError):
    status_code = 404


class Forbidden(DomainError):
    status_code = 403

    @classmethod
    def default_message(cls) -> str:
        return "Permission denied"


class ProviderUnavailable(DomainError):
    """Transient failure of an external provider. Safe to retry."""

    status_code = 503
    retryable = True
