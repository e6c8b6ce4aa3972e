"""Exception types shared across the feed worker and the update endpoint."""

from typing import Optional


class ParseError(ValueError):
    """Raised when text does not fit an expected structure (address, phone, URL, name)."""


class ApiError(RuntimeError):
    """Raised when an outbound call returns a non-2xx status or an error envelope."""

    def __init__(self, message: str, *, status_code: Optional[int] = None, url: Optional[str] = None, body: str = ""):
        super().__init__(message)
        self.status_code = status_code
        self.url = url
        self.body = body


class ValidationError(ValueError):
    """Raised when an update payload fails validation. Nothing is written."""

    http_status = 422

    def __init__(self, message: str, code: str = "validation_error"):
        super().__init__(message)
        self.code = code


class IdentityConflictError(ValidationError):
    """Raised when a record's external ids point at more than one known location."""

    http_status = 409

    def __init__(self, message: str, location_ids=()):
        super().__init__(message, code="conflicting_external_ids")
        self.location_ids = list(location_ids)
