"""
Scheduling error taxonomy

Services raise these; main.py maps them onto HTTP responses so callers can
tell a lost booking race (409) apart from a malformed request (422).
"""

from typing import Optional


class SchedulingError(Exception):
    """Base class for every error the scheduling core raises on purpose"""

    status_code = 400
    code = "scheduling_error"

    def __init__(self, message: str, code: Optional[str] = None):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code

    def to_dict(self) -> dict:
        return {"detail": self.message, "code": self.code}


class ValidationError(SchedulingError):
    status_code = 422
    code = "validation_error"


class NotFoundError(SchedulingError):
    status_code = 404
    code = "not_found"


class ConflictError(SchedulingError):
    """Raised when a conditional update loses; the caller decides whether to retry"""

    status_code = 409
    code = "conflict"


class CredentialError(SchedulingError):
    """Stored calendar credential is missing, unreadable or revoked - reconnect required"""

    status_code = 401
    code = "calendar_reconnect_required"


class ExternalServiceError(SchedulingError):
    """External calendar call failed after its single retry"""

    status_code = 502
    code = "external_service_error"
