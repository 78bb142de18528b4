"""
Error taxonomy for bundle import, export and restore.

Every error carries a stable machine-readable code (e.g. "MISSING_FIELD"),
a human-readable message, optional details (entity index, field name, ...)
and the HTTP status a controller should answer with.

Hierarchy:
    InterchangeError
        FileFormatError        - no file, undecodable content, wrong container
        SchemaError            - missing top-level field, unsupported version
        ContentValidationError - per-entity field violations
        SecurityError          - bad confirmation password, malicious markup
        TransactionError       - failure while writing; nothing was kept
        ProviderError          - cloud provider call failed
        SchedulingError        - one account's automatic backup failed
"""

from __future__ import annotations

from typing import Any

# HTTP status for each error code
ERROR_STATUS_CODES: dict[str, int] = {
    # 400 - request/file problems
    "NO_FILE": 400,
    "INVALID_FILE_TYPE": 400,
    "INVALID_JSON": 400,
    "EMPTY_FILE": 400,
    "MISSING_FIELD": 400,
    "INCOMPATIBLE_VERSION": 400,
    "INVALID_VERSION": 400,
    "INVALID_STRUCTURE": 400,
    "INVALID_PASSWORD": 400,
    "MALICIOUS_CONTENT": 400,
    "INVALID_MODE": 400,
    "INVALID_SCHEDULE": 400,
    "NOT_CONNECTED": 400,
    "INVALID_STATE": 400,
    "UNSUPPORTED_PROVIDER": 400,
    "BACKUP_NOT_FOUND": 404,
    # 401 - credential mismatch on remote restore
    "UNAUTHORIZED": 401,
    # 413 - upload too large
    "FILE_TOO_LARGE": 413,
    # 422 - content validation
    "INVALID_RECIPE": 422,
    "INVALID_COLLECTION": 422,
    "INVALID_MEAL_PLAN": 422,
    "INVALID_SHOPPING_LIST": 422,
    "INVALID_INGREDIENT": 422,
    "INVALID_INSTRUCTION": 422,
    "INVALID_MEAL": 422,
    "FIELD_TOO_LONG": 422,
    # 409 - conflicting write
    "DUPLICATE_KEY": 409,
    # 5xx - server side
    "IMPORT_ERROR": 500,
    "EXPORT_ERROR": 500,
    "SCHEDULED_BACKUP_FAILED": 500,
    "PROVIDER_ERROR": 502,
    "TOKEN_REFRESH_FAILED": 502,
}


class InterchangeError(Exception):
    """
    Base exception for bundle interchange errors.

    Attributes:
        code: Stable error code.
        message: Human-readable description.
        details: Extra context such as the entity index or field name.
    """

    default_code = "IMPORT_ERROR"

    def __init__(
        self,
        message: str,
        code: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        self.code = code or self.default_code
        self.message = message
        self.details = details or {}
        super().__init__(f"[{self.code}] {message}")

    @property
    def status_code(self) -> int:
        """HTTP status matching the error code."""
        return ERROR_STATUS_CODES.get(self.code, 500)

    def to_dict(self) -> dict[str, Any]:
        """Convert to a response payload."""
        return {"code": self.code, "message": self.message, **self.details}


class FileFormatError(InterchangeError):
    """Raised when the upload is missing, undecodable or of the wrong container type."""

    default_code = "INVALID_FILE_TYPE"


class SchemaError(InterchangeError):
    """Raised when a required top-level field is missing or the version is unsupported."""

    default_code = "INVALID_STRUCTURE"


class ContentValidationError(InterchangeError):
    """Raised when an entity inside the bundle violates a field rule."""

    default_code = "INVALID_STRUCTURE"


class SecurityError(InterchangeError):
    """Raised for a wrong confirmation password or rejected markup."""

    default_code = "INVALID_PASSWORD"


class TransactionError(InterchangeError):
    """
    Raised when writing an import fails.

    With transactions the whole import was rolled back. When degraded is
    True the store had no transaction support and earlier writes of the
    same import may remain.
    """

    default_code = "IMPORT_ERROR"

    def __init__(
        self,
        message: str,
        code: str | None = None,
        details: dict[str, Any] | None = None,
        degraded: bool = False,
    ) -> None:
        super().__init__(message, code, details)
        self.degraded = degraded


class ProviderError(InterchangeError):
    """
    Raised when a cloud provider call fails.

    Attributes:
        provider: Provider kind value, e.g. "dropbox".
    """

    default_code = "PROVIDER_ERROR"

    def __init__(
        self,
        message: str,
        provider: str | None = None,
        code: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        self.provider = provider
        super().__init__(f"[{provider}] {message}" if provider else message, code, details)


class SchedulingError(InterchangeError):
    """
    Raised when one account's scheduled backup fails.

    Collected by the scheduler per account; never propagated to sibling jobs.
    """

    default_code = "SCHEDULED_BACKUP_FAILED"

    def __init__(
        self,
        message: str,
        account_id: str,
        code: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        self.account_id = account_id
        super().__init__(message, code, details)
