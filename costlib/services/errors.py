"""Service-layer error taxonomy.

Services raise these; request handlers translate them into JSON responses
using ``status_code`` and ``error``. Nothing here performs recovery.
"""


class ServiceError(RuntimeError):
    """Recoverable service error (validation/uniqueness/etc.)."""

    status_code = 400
    error = "service_error"

    def __init__(self, message: str, *, details: dict | None = None):
        super().__init__(message)
        self.details = details or {}

    def to_dict(self) -> dict:
        payload = {"error": self.error, "message": str(self)}
        payload.update(self.details)
        return payload


class ValidationError(ServiceError):
    status_code = 400
    error = "validation_error"


class InvalidFormat(ServiceError):
    status_code = 400
    error = "invalid_format"


class InvalidParentFormat(InvalidFormat):
    error = "invalid_parent_format"


class UnsupportedLevel(ServiceError):
    status_code = 400
    error = "unsupported_level"


class NotFound(ServiceError):
    status_code = 404
    error = "not_found"


class DuplicateCode(ServiceError):
    status_code = 409
    error = "duplicate_code"


class CodeOverflow(ServiceError):
    """No two-digit segment left under the parent."""

    status_code = 409
    error = "code_overflow"


class DeleteBlocked(ServiceError):
    """Delete refused; ``details['impact']`` says what would be removed."""

    error = "delete_blocked"

    def __init__(self, message: str, *, status_code: int = 400, error: str | None = None,
                 details: dict | None = None):
        super().__init__(message, details=details)
        self.status_code = status_code
        if error:
            self.error = error


class StorageUnavailable(ServiceError):
    status_code = 500
    error = "storage_unavailable"
