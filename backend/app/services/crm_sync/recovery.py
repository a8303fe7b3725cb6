"""
Recovery for CRM Sync.

Chooses what to do after a classified failure and runs operations
through a bounded retry harness. Also derives resume parameters and
batch recovery plans from persisted run history.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional

from .error_classifier import ClassifiedError, ErrorType, classify_error, classify_exception
from .timeout_guard import execute_with_timeout

logger = logging.getLogger(__name__)

ESTIMATED_MS_PER_RECORD = 2000


class RecoveryStrategy(str, Enum):
    RETRY_WITH_BACKOFF = "RETRY_WITH_BACKOFF"
    RESUME_FROM_LAST_SUCCESS = "RESUME_FROM_LAST_SUCCESS"
    FULL_RETRY = "FULL_RETRY"
    NO_RECOVERY = "NO_RECOVERY"


STRATEGY_BY_ERROR_TYPE = {
    ErrorType.RATE_LIMIT: RecoveryStrategy.RETRY_WITH_BACKOFF,
    ErrorType.NETWORK: RecoveryStrategy.RESUME_FROM_LAST_SUCCESS,
    ErrorType.DATABASE: RecoveryStrategy.FULL_RETRY,
    ErrorType.AUTHENTICATION: RecoveryStrategy.NO_RECOVERY,
    ErrorType.VALIDATION: RecoveryStrategy.NO_RECOVERY,
    ErrorType.UNKNOWN: RecoveryStrategy.RETRY_WITH_BACKOFF,
}


def select_recovery_strategy(classified: ClassifiedError) -> RecoveryStrategy:
    """
    Maps an error category to a recovery action.

    Example:
        >>> select_recovery_strategy(classify_error("Rate limit exceeded"))
        <RecoveryStrategy.RETRY_WITH_BACKOFF: 'RETRY_WITH_BACKOFF'>
    """
    return STRATEGY_BY_ERROR_TYPE.get(classified.type, RecoveryStrategy.RETRY_WITH_BACKOFF)


@dataclass
class RecoveryResult:
    """Outcome of execute_with_recovery."""
    success: bool
    attempts: int
    strategy: RecoveryStrategy
    data: Any = None
    error: Optional[str] = None
    exception: Optional[BaseException] = None


async def execute_with_recovery(
    operation: Callable[[], Awaitable[Any]],
    strategy: RecoveryStrategy,
    max_retries: int = 3,
    base_delay: float = 1.0,
    timeout_ms: int = 30000,
) -> RecoveryResult:
    """
    Run an operation with retries according to a strategy.

    Every attempt is raced against timeout_ms. NO_RECOVERY stops after the
    first failure; RETRY_WITH_BACKOFF waits base_delay * 2^(attempt-1)
    between attempts; the other strategies wait base_delay. At most
    max_retries + 1 attempts are made, and the last error is returned
    verbatim.

    Args:
        operation: Zero-argument callable returning an awaitable
        strategy: Strategy selected for the failure that led here
        max_retries: Retries after the first attempt
        base_delay: Delay in seconds
        timeout_ms: Per-attempt deadline
    """
    attempts = 0
    last_error: Optional[str] = None
    last_exception: Optional[BaseException] = None

    while attempts <= max_retries:
        attempts += 1
        result = await execute_with_timeout(operation, timeout_ms)

        if result.success:
            if attempts > 1:
                logger.info(f"✅ Recovered after {attempts} attempts ({strategy.value})")
            return RecoveryResult(
                success=True,
                attempts=attempts,
                strategy=strategy,
                data=result.data,
            )

        last_error = result.error
        last_exception = result.exception
        logger.warning(f"⚠️ Attempt {attempts} failed ({strategy.value}): {last_error}")

        if strategy == RecoveryStrategy.NO_RECOVERY or attempts > max_retries:
            break

        if strategy == RecoveryStrategy.RETRY_WITH_BACKOFF:
            delay = base_delay * (2 ** (attempts - 1))
        else:
            delay = base_delay
        await asyncio.sleep(delay)

    return RecoveryResult(
        success=False,
        attempts=attempts,
        strategy=strategy,
        error=last_error,
        exception=last_exception,
    )


# =========================================================================
# Resume points
# =========================================================================

@dataclass
class RecoveryPoint:
    """Progress of the most recent successful run."""
    sync_run_id: str
    records_processed: int
    records_updated: int
    records_created: int
    records_failed: int
    last_successful_time: Optional[datetime]


@dataclass
class ResumeParameters:
    start_from_record: int
    skip_records: int
    estimated_remaining: int
    batch_size: int


async def find_last_successful_sync_point(repository, account_id: str) -> Optional[RecoveryPoint]:
    """
    Builds a RecoveryPoint from the account's latest SUCCESS run.

    Returns:
        RecoveryPoint, or None if the account never completed a run
    """
    run = await repository.get_last_successful_run(account_id)
    if run is None:
        return None

    return RecoveryPoint(
        sync_run_id=str(run.id),
        records_processed=run.records_processed,
        records_updated=run.records_updated,
        records_created=run.records_created,
        records_failed=run.records_failed,
        last_successful_time=run.end_time,
    )


def calculate_resume_parameters(
    point: RecoveryPoint,
    batch_size: int,
    estimated_total: int = 500,
) -> ResumeParameters:
    processed = point.records_processed
    return ResumeParameters(
        start_from_record=processed,
        skip_records=processed,
        estimated_remaining=max(0, estimated_total - processed),
        batch_size=batch_size,
    )


# =========================================================================
# Batch recovery plans
# =========================================================================

@dataclass
class FailedBatch:
    batch_number: int
    start_index: int
    end_index: int
    error: str
    failed_record_ids: List[str] = field(default_factory=list)


@dataclass
class BatchRecoveryPlan:
    retry_batch_number: int
    start_index: int
    end_index: int
    skip_record_ids: List[str]
    strategy: RecoveryStrategy
    estimated_duration_ms: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "retry_batch_number": self.retry_batch_number,
            "start_index": self.start_index,
            "end_index": self.end_index,
            "skip_record_ids": self.skip_record_ids,
            "strategy": self.strategy.value,
            "estimated_duration_ms": self.estimated_duration_ms,
        }


@dataclass
class MultiBatchRecoveryPlan:
    batches_to_retry: List[BatchRecoveryPlan]
    total_estimated_duration_ms: int
    strategy: RecoveryStrategy = RecoveryStrategy.RESUME_FROM_LAST_SUCCESS

    def to_dict(self) -> Dict[str, Any]:
        return {
            "batches_to_retry": [plan.to_dict() for plan in self.batches_to_retry],
            "total_estimated_duration_ms": self.total_estimated_duration_ms,
            "strategy": self.strategy.value,
        }


def create_batch_recovery_plan(
    failed_batch: FailedBatch,
    classified: Optional[ClassifiedError] = None,
) -> BatchRecoveryPlan:
    """Plan for retrying one failed batch; the strategy comes from the batch error."""
    classified = classified or classify_error(failed_batch.error)
    return BatchRecoveryPlan(
        retry_batch_number=failed_batch.batch_number,
        start_index=failed_batch.start_index,
        end_index=failed_batch.end_index,
        skip_record_ids=list(failed_batch.failed_record_ids),
        strategy=select_recovery_strategy(classified),
        estimated_duration_ms=(failed_batch.end_index - failed_batch.start_index) * ESTIMATED_MS_PER_RECORD,
    )


def create_multi_batch_recovery_plan(failed_batches: List[FailedBatch]) -> MultiBatchRecoveryPlan:
    """Aggregates several failed batches into a single resume plan."""
    plans = [
        create_batch_recovery_plan(
            FailedBatch(
                batch_number=batch.batch_number,
                start_index=batch.start_index,
                end_index=batch.end_index,
                error=batch.error,
            )
        )
        for batch in failed_batches
    ]
    return MultiBatchRecoveryPlan(
        batches_to_retry=plans,
        total_estimated_duration_ms=sum(plan.estimated_duration_ms for plan in plans),
    )


def classify_for_recovery(exc: BaseException) -> tuple[ClassifiedError, RecoveryStrategy]:
    """Classify an exception and pick its strategy in one step."""
    classified = classify_exception(exc)
    return classified, select_recovery_strategy(classified)
