"""
Error Tracker for CRM Sync Operations.

Collects per-record and per-batch failures of one run with enough
context to debug them, and renders the capped error list returned to
callers.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from .error_classifier import ErrorType

logger = logging.getLogger(__name__)

MAX_ERROR_MESSAGES = 10


@dataclass
class RecordError:
    """Details about a single record failure."""
    record_id: str
    record_type: str
    error: str
    error_type: ErrorType = ErrorType.UNKNOWN
    batch_number: Optional[int] = None
    context: Dict[str, Any] = field(default_factory=dict)


@dataclass
class BatchError:
    """Details about a batch that failed or timed out as a whole."""
    batch_number: int
    batch_size: int
    error: str
    timed_out: bool = False
    context: Dict[str, Any] = field(default_factory=dict)


@dataclass
class ErrorSummary:
    """Summary of all errors during a run."""
    record_errors: List[RecordError]
    batch_errors: List[BatchError]
    total_record_errors: int
    total_batch_errors: int

    def get_error_messages(self, limit: int = MAX_ERROR_MESSAGES) -> List[str]:
        """
        Get formatted error messages for the run result.

        Beyond `limit` messages, the remainder is replaced by a single
        "...and N more errors" line.

        Args:
            limit: Maximum number of individual messages

        Returns:
            List of formatted error messages
        """
        messages = [f"{err.record_type} {err.record_id}: {err.error}" for err in self.record_errors]
        messages.extend(
            f"Batch {err.batch_number} ({err.batch_size} records): {err.error}"
            for err in self.batch_errors
        )

        if len(messages) <= limit:
            return messages

        hidden = len(messages) - limit
        return messages[:limit] + [f"...and {hidden} more errors"]


class ErrorTracker:
    """
    Tracks errors during a single sync run.

    Features:
    - Record-level error tracking with classification
    - Batch-level error tracking (timeouts, whole-batch failures)
    - Capped message list for API responses
    """

    def __init__(self):
        """Initialize error tracker."""
        self.record_errors: List[RecordError] = []
        self.batch_errors: List[BatchError] = []

    def track_record_error(
        self,
        record_id: str,
        record_type: str,
        error: str,
        error_type: ErrorType = ErrorType.UNKNOWN,
        batch_number: Optional[int] = None,
        context: Dict[str, Any] = None
    ):
        """
        Track an individual record failure.

        Args:
            record_id: Remote id of the record (or a local identifier)
            record_type: Record type (e.g., "Person", "Organization")
            error: Error message
            error_type: Classified error category
            batch_number: Batch the record belonged to
            context: Additional context
        """
        self.record_errors.append(
            RecordError(
                record_id=record_id,
                record_type=record_type,
                error=error,
                error_type=error_type,
                batch_number=batch_number,
                context=context or {}
            )
        )

        logger.error(
            f"❌ Record error: {record_type} {record_id} [{error_type.value}]: {error}",
            extra={"record_id": record_id, "record_type": record_type, "batch_number": batch_number}
        )

    def track_batch_error(
        self,
        batch_number: int,
        batch_size: int,
        error: str,
        timed_out: bool = False,
        context: Dict[str, Any] = None
    ):
        """
        Track a batch-level failure.

        Args:
            batch_number: 1-based batch number
            batch_size: Number of records in the batch
            error: Error message
            timed_out: Whether the batch hit its deadline
            context: Additional context
        """
        self.batch_errors.append(
            BatchError(
                batch_number=batch_number,
                batch_size=batch_size,
                error=error,
                timed_out=timed_out,
                context=context or {}
            )
        )

        logger.error(
            f"❌ Batch error: batch {batch_number} ({batch_size} records): {error}",
            extra={"batch_number": batch_number, "batch_size": batch_size, "timed_out": timed_out}
        )

    def get_summary(self) -> ErrorSummary:
        return ErrorSummary(
            record_errors=self.record_errors,
            batch_errors=self.batch_errors,
            total_record_errors=len(self.record_errors),
            total_batch_errors=len(self.batch_errors)
        )

    def has_errors(self) -> bool:
        """Check if any errors were tracked."""
        return len(self.record_errors) > 0 or len(self.batch_errors) > 0
