"""
Error types for the review sync core.

This module defines every exception raised by the sync core:
- ReviewSyncError: Base exception
- TransportError: Remote query/mutation failure
- TransportUnavailableError: Network or subscription failure
- ConflictError: Uniqueness violation reported by the remote store
- ValidationPreconditionError: Rejected before any transport call
- PartialFailureError: Status transition applied, audit write failed
- StaleReadError: Referenced record is no longer resolvable

Invariants:
    - All errors inherit from ReviewSyncError
    - Errors carry a stable code for programmatic handling
    - Error messages never include credentials
"""

from __future__ import annotations

from typing import Any, Dict, Optional


class ReviewSyncError(Exception):
    """Base exception for all review sync errors.

    Attributes:
        message: Error message
        code: Error code for programmatic handling
        details: Additional error context
    """

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code or "REVIEW_SYNC_ERROR"
        self.details = details or {}


class TransportError(ReviewSyncError):
    """A query or mutation was rejected by the remote store.

    Attributes:
        status: HTTP status code, if any
        pg_code: Database error code reported by the store (e.g. "23505")
        hint: Optional remediation hint from the store
    """

    def __init__(
        self,
        message: str,
        status: Optional[int] = None,
        pg_code: Optional[str] = None,
        hint: Optional[str] = None,
        detail: Optional[str] = None,
        code: str = "TRANSPORT_ERROR",
    ) -> None:
        super().__init__(
            message,
            code=code,
            details={
                "status": status,
                "pg_code": pg_code,
                "hint": hint,
                "detail": detail,
            },
        )
        self.status = status
        self.pg_code = pg_code
        self.hint = hint
        self.detail = detail


class TransportUnavailableError(TransportError):
    """The remote store or change feed could not be reached.

    Raised when:
    - The connection is refused or times out
    - The change feed subscription fails

    Triggers fallback reconciliation; never surfaced per event.
    """

    def __init__(self, message: str, status: Optional[int] = None) -> None:
        super().__init__(message, status=status, code="TRANSPORT_UNAVAILABLE")


class ConflictError(TransportError):
    """A uniqueness constraint rejected an insert.

    The coordinator turns this into an update of the existing record;
    it is never reported to the user as a failure.
    """

    def __init__(
        self,
        message: str,
        status: Optional[int] = 409,
        pg_code: Optional[str] = "23505",
        detail: Optional[str] = None,
    ) -> None:
        super().__init__(
            message,
            status=status,
            pg_code=pg_code,
            detail=detail,
            code="CONFLICT",
        )


class ValidationPreconditionError(ReviewSyncError):
    """A submit was rejected before any transport call.

    Raised when:
    - No identity is signed in
    - The scan is not present in the local store
    - A correction has no corrected value
    """

    def __init__(self, message: str, field_name: Optional[str] = None) -> None:
        super().__init__(
            message,
            code="VALIDATION_PRECONDITION",
            details={"field": field_name},
        )
        self.field_name = field_name


class PartialFailureError(ReviewSyncError):
    """The status transition succeeded but the audit write failed.

    Attributes:
        scan_id: Scan whose status was transitioned
        original_status: Status before the transition
        rolled_back: Whether the compensating write succeeded
    """

    def __init__(
        self,
        message: str,
        scan_id: int,
        original_status: str,
        rolled_back: bool,
    ) -> None:
        super().__init__(
            message,
            code="PARTIAL_FAILURE",
            details={
                "scan_id": scan_id,
                "original_status": original_status,
                "rolled_back": rolled_back,
            },
        )
        self.scan_id = scan_id
        self.original_status = original_status
        self.rolled_back = rolled_back


class StaleReadError(ReviewSyncError):
    """A change event referenced a record that can no longer be fetched."""

    def __init__(self, collection: str, record_id: Any) -> None:
        super().__init__(
            f"{collection} record {record_id} is no longer resolvable",
            code="STALE_READ",
            details={"collection": collection, "record_id": record_id},
        )
        self.collection = collection
        self.record_id = record_id


def describe_error(error: BaseException | None) -> str:
    """Build a single log line from an error and its transport context."""
    if error is None:
        return "Unknown error"
    if isinstance(error, TransportError):
        parts = [error.message, error.detail, error.hint]
        return " • ".join(p for p in parts if p)
    return str(error) or error.__class__.__name__
