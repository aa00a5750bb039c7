"""
Domain error types.

Placed in a separate module so services, the API layer and tests share the
same exception classes.
"""


class ChapterCaseError(Exception):
    """Base class for failures surfaced to callers."""

    code = "ERROR"
    status_code = 400

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class NotFoundError(ChapterCaseError):
    """Case, person, police station, form or case file is absent."""

    code = "NOT_FOUND"
    status_code = 404


class ValidationError(ChapterCaseError):
    """Missing required fields or unusable input."""

    code = "VALIDATION_ERROR"
    status_code = 400


class InvalidStateError(ChapterCaseError):
    """Wrong form/case status for the requested transition."""

    code = "INVALID_STATE"
    status_code = 409


class ConflictError(ChapterCaseError):
    """Duplicate case file number or concurrent write on a unique record."""

    code = "CONFLICT"
    status_code = 409


class AccessDeniedError(ChapterCaseError):
    """Missing, expired or mismatched signed link token."""

    code = "ACCESS_DENIED"
    status_code = 403
