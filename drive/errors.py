from enum import Enum
from typing import Any


class ErrorCode(str, Enum):
    NOT_FOUND = "NOT_FOUND"
    NAME_CONFLICT = "NAME_CONFLICT"
    TOO_LARGE = "TOO_LARGE"
    INVALID_METHOD = "INVALID_METHOD"
    MISMATCHED_RESOURCE = "MISMATCHED_RESOURCE"
    ACCESS_DENIED = "ACCESS_DENIED"
    UNAVAILABLE = "UNAVAILABLE"
    INVALID_INPUT = "INVALID_INPUT"


class DriveError(Exception):
    """Base for every error kind the orchestration core hands back to its caller."""

    code: ErrorCode
    status_code: int = 500

    def __init__(self, message: str, *, details: Any | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details


class NotFound(DriveError):
    """Bucket or file is absent, or is not owned by the caller."""

    code = ErrorCode.NOT_FOUND
    status_code = 404


class NameConflict(DriveError):
    code = ErrorCode.NAME_CONFLICT
    status_code = 409


class TooLarge(DriveError):
    code = ErrorCode.TOO_LARGE
    status_code = 413


class InvalidMethod(DriveError):
    code = ErrorCode.INVALID_METHOD
    status_code = 400


class MismatchedResource(DriveError):
    code = ErrorCode.MISMATCHED_RESOURCE
    status_code = 400


class AccessDenied(DriveError):
    code = ErrorCode.ACCESS_DENIED
    status_code = 403


class Unavailable(DriveError):
    """A backing store was unreachable or timed out."""

    code = ErrorCode.UNAVAILABLE
    status_code = 503


class InvalidInput(DriveError):
    code = ErrorCode.INVALID_INPUT
    status_code = 422


def bucket_not_found(bucket_id: Any) -> NotFound:
    return NotFound("bucket not found", details={"resource": "bucket", "resource_id": str(bucket_id)})


def file_not_found(file_id: Any) -> NotFound:
    return NotFound("file not found", details={"resource": "file", "resource_id": str(file_id)})
