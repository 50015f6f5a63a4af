"""
SiteSurvey Backend — Custom Exception Hierarchy
=================================================

What:  Application-specific exceptions for the different failure classes.
Why:   Targeted handling with the right HTTP status, and no internal detail
       leaking to API consumers.
How:   Each exception carries a user-facing message and an optional context
       dict. Global handlers (registered in main.py) turn them into JSON.

Exception Hierarchy:
    SiteSurveyError (base)
    ├── ValidationError          → 400 Bad Request (client can fix)
    ├── NotFoundError            → 404 Not Found
    ├── ConflictError            → 409 Conflict (duplicate business key)
    ├── UploadFailedError        → 502 Bad Gateway (remote storage gave up)
    │   ├── FolderCreationError
    │   └── BatchUploadError
    ├── StorageError             → 500 Internal Server Error
    ├── UnsupportedOperationError → 501 Not Implemented (backend lacks a capability)
    ├── ImageProcessingError     → 500 Internal Server Error
    └── DatabaseError            → 500 Internal Server Error

Classification:
    Client errors (ValidationError, NotFoundError, ConflictError) are never
    retried. Remote storage failures are retried inside the storage client
    and only surface as UploadFailedError once retries are exhausted; the
    original exception is kept on `cause`. Internal errors are logged with a
    stack trace and answered with a generic message.
"""

from typing import Any, Dict, List, Optional, Tuple


class SiteSurveyError(Exception):
    """
    Base exception for all application errors.

    Attributes:
        message:  User-facing error description (safe to return in API response)
        context:  Additional debug info (logged but NOT returned for 5xx errors)
    """

    def __init__(
        self,
        message: str = "An unexpected error occurred",
        context: Optional[Dict[str, Any]] = None,
    ):
        self.message = message
        self.context = context or {}
        super().__init__(self.message)


class ValidationError(SiteSurveyError):
    """
    Raised when client input fails validation.

    When:    Missing business fields, file type/size rejected, image data that
             cannot be decoded, malformed response_data JSON.
    HTTP:    400 Bad Request
    """

    def __init__(
        self,
        message: str = "Validation failed",
        field: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
    ):
        ctx = context or {}
        if field:
            ctx["field"] = field
        super().__init__(message=message, context=ctx)
        self.field = field


class NotFoundError(SiteSurveyError):
    """
    Raised when a requested resource does not exist.

    Kept distinct from ValidationError so a missing dealer or survey is
    never reported as a malformed request.
    HTTP:    404 Not Found
    """

    def __init__(
        self,
        resource: str = "resource",
        resource_id: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
    ):
        message = f"The requested {resource} was not found"
        if resource_id:
            message = f"{resource} with ID '{resource_id}' was not found"
        ctx = context or {}
        ctx["resource"] = resource
        if resource_id:
            ctx["resource_id"] = resource_id
        super().__init__(message=message, context=ctx)


class ConflictError(SiteSurveyError):
    """Raised when a unique business key (e.g. dealer_id) is already taken. HTTP 409."""

    def __init__(
        self,
        message: str = "Resource already exists",
        context: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message=message, context=context)


class UploadFailedError(SiteSurveyError):
    """
    Raised when remote storage could not accept an upload after all retries.

    What:    Wraps the last error seen by the retry executor.
    HTTP:    502 Bad Gateway, or 400 when `cause` is a ValidationError
             (a batch that failed because one file was invalid).

    Attributes:
        cause:   The underlying exception, kept unmodified for inspection.
        service: Which backend rejected the upload ("s3", "drive", "local").
    """

    def __init__(
        self,
        message: str = "Failed to upload file to remote storage",
        cause: Optional[BaseException] = None,
        service: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
    ):
        ctx = context or {}
        if service:
            ctx["service"] = service
        if cause is not None:
            ctx["cause_type"] = type(cause).__name__
        super().__init__(message=message, context=ctx)
        self.cause = cause
        self.service = service


class FolderCreationError(UploadFailedError):
    """Raised when the per-entity folder could not be located or created."""

    def __init__(
        self,
        message: str = "Failed to find or create storage folder",
        cause: Optional[BaseException] = None,
        service: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message=message, cause=cause, service=service, context=context)


class BatchUploadError(UploadFailedError):
    """
    Raised when at least one file of a multi-file upload failed.

    `cause` is the first failure encountered; `failures` lists every
    (index, filename, exception) that failed before the call stopped.
    Files uploaded before the failure may remain in storage.
    """

    def __init__(
        self,
        failures: List[Tuple[int, str, BaseException]],
        total: int,
    ):
        first_index, first_name, first_error = failures[0]
        first_message = getattr(first_error, "message", None) or str(first_error)
        message = (
            f"Failed to upload {len(failures)} of {total} files. "
            f"File #{first_index + 1} ({first_name}): {first_message}"
        )
        super().__init__(
            message=message,
            cause=first_error,
            context={
                "failed_count": len(failures),
                "total": total,
                "first_failed_index": first_index,
            },
        )
        self.failures = failures
        self.total = total


class StorageError(SiteSurveyError):
    """
    Raised when a storage operation other than upload fails (delete, list).

    HTTP:    500 Internal Server Error
    Deletion callers usually catch this and log a warning instead.
    """

    def __init__(
        self,
        message: str = "Storage operation failed",
        context: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message=message, context=context)


class UnsupportedOperationError(SiteSurveyError):
    """
    Raised when the configured storage backend cannot do what was asked,
    e.g. hand out a direct upload URL from local disk.

    HTTP:    501 Not Implemented
    """

    def __init__(
        self,
        message: str = "Operation not supported by the storage backend",
        context: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message=message, context=context)


class ImageProcessingError(SiteSurveyError):
    """
    Raised when a decodable image could not be transformed or re-encoded.

    Distinct from ValidationError: the client sent a real image, the
    failure is ours. HTTP 500 with a generic message.
    """

    def __init__(
        self,
        message: str = "Failed to process image",
        context: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message=message, context=context)


class DatabaseError(SiteSurveyError):
    """
    Raised when database operations fail unexpectedly.

    Security Note:
        The message returned to the client is always generic.
        Detailed error info is logged server-side only.
    """

    def __init__(
        self,
        message: str = "A database error occurred. Please try again later.",
        context: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message=message, context=context)
