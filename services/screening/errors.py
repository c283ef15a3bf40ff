"""Exception hierarchy for the screening service.

Every error raised by the service layer derives from ``ScreeningError`` and
carries an HTTP status so the API can render it without a lookup table.
"""

from typing import Any


class ScreeningError(Exception):
    """Base exception for screening errors.

    Attributes:
        message: A human-readable error message
        detail: Additional information about the error
        code: An error code for machine processing
    """

    status_code = 400
    default_code = "SCREENING_ERROR"

    def __init__(
        self,
        message: str,
        detail: str | list[str] | dict[str, Any] | None = None,
        code: str | None = None,
    ) -> None:
        self.message = message
        self.detail = detail
        self.code = code or self.default_code
        super().__init__(self.message)

    def __str__(self) -> str:
        if self.detail:
            return f"{self.message} - {self.detail}"
        return self.message


class NotFoundError(ScreeningError):
    status_code = 404
    default_code = "NOT_FOUND"


class ValidationError(ScreeningError):
    """Submission does not match the questionnaire (missing, unknown or duplicate ids)."""

    status_code = 422
    default_code = "VALIDATION_ERROR"


class ConflictError(ScreeningError):
    status_code = 409
    default_code = "CONFLICT"


class ExpiredError(ScreeningError):
    status_code = 410
    default_code = "EXPIRED"


class AccessDeniedError(ScreeningError):
    status_code = 403
    default_code = "FORBIDDEN"


class InvariantViolation(ScreeningError):
    """Data-integrity or programming error. Never caused by caller input."""

    status_code = 500
    default_code = "INVARIANT_VIOLATION"


class CatalogError(ScreeningError):
    """A questionnaire definition failed load-time validation."""

    status_code = 500
    default_code = "CATALOG_ERROR"
