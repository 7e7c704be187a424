"""Error taxonomy for intake and review-link disclosure.

Every error raised across the pipeline boundary is an ``IntakeError``
subclass carrying the HTTP status, a stable machine-readable ``code`` and
a short, user-safe ``message``.  The exception handler registered in
:mod:`grant_intake.security` turns them into JSON responses; nothing here
ever carries internal details.
"""

from typing import Optional


class IntakeError(Exception):
    """Base class for user-facing, recoverable errors."""

    status_code: int = 400
    code: str = "INVALID_REQUEST"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class MalformedRequest(IntakeError):
    status_code = 400
    code = "MALFORMED_REQUEST"


class ValidationFailure(IntakeError):
    """A submission field failed an eligibility or format rule."""

    status_code = 400
    code = "VALIDATION_FAILED"

    def __init__(self, message: str, field: Optional[str] = None) -> None:
        super().__init__(message)
        self.field = field


class SizeViolation(IntakeError):
    status_code = 413
    code = "UPLOAD_TOO_LARGE"


class PolicyRejection(IntakeError):
    """Rejected by upload or request policy (field allow-list, MIME, origin)."""

    status_code = 415
    code = "REJECTED_BY_POLICY"

    def __init__(self, message: str, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        if status_code is not None:
            self.status_code = status_code


class ExternalCheckFailure(IntakeError):
    status_code = 403
    code = "VERIFICATION_FAILED"


class RateLimited(IntakeError):
    status_code = 429
    code = "RATE_LIMIT_EXCEEDED"


class PersistenceFailure(IntakeError):
    status_code = 503
    code = "TEMPORARILY_UNAVAILABLE"


class ConfigurationError(IntakeError):
    status_code = 503
    code = "NOT_CONFIGURED"


class DisclosureDenied(IntakeError):
    """Review link unknown, expired or ambiguous.

    Always carries the same message so callers cannot tell which.
    """

    status_code = 404
    code = "REVIEW_LINK_INVALID"

    def __init__(self) -> None:
        super().__init__("This review link is invalid or has expired.")


class RecordNotFound(IntakeError):
    status_code = 404
    code = "NOT_FOUND"

    def __init__(self, message: str = "Not found.") -> None:
        super().__init__(message)


class InvalidRecipients(IntakeError):
    status_code = 400
    code = "INVALID_RECIPIENTS"
