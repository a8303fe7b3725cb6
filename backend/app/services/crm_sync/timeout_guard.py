"""
Timeout Guard for CRM Sync.

Wraps the whole run and each batch in a deadline. Timed-out work is
cancelled cooperatively through asyncio.wait_for, so the wrapped
coroutine sees CancelledError at its next await instead of running on
in the background.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional

logger = logging.getLogger(__name__)


@dataclass
class TimeoutConfig:
    """Timeout settings in milliseconds."""
    sync_timeout_ms: int = 300000
    batch_timeout_ms: int = 30000
    max_batch_timeout_ms: int = 120000
    progressive_timeout_enabled: bool = True


@dataclass
class TimeoutResult:
    """Outcome of an operation raced against a deadline."""
    success: bool
    duration_ms: int
    data: Any = None
    error: Optional[str] = None
    timed_out: bool = False
    exception: Optional[BaseException] = None


class Deadline:
    """
    Absolute deadline passed through remote calls.

    The client caps each request timeout at remaining() and refuses to
    start a request once the deadline has passed.
    """

    def __init__(self, timeout_ms: float):
        self.timeout_ms = timeout_ms
        self._expires_at = time.monotonic() + timeout_ms / 1000

    def remaining(self) -> float:
        """Seconds left, never negative."""
        return max(0.0, self._expires_at - time.monotonic())

    @property
    def expired(self) -> bool:
        return self.remaining() <= 0

    def cap(self, timeout_s: float) -> float:
        """Shrink a per-call timeout so it does not outlive the deadline."""
        return min(timeout_s, self.remaining())


async def execute_with_timeout(
    operation: Callable[[], Awaitable[Any]],
    timeout_ms: int,
    label: str = "Operation",
) -> TimeoutResult:
    """
    Race an operation against a deadline.

    Args:
        operation: Zero-argument callable returning an awaitable
        timeout_ms: Deadline in milliseconds
        label: Prefix for the timeout message (e.g. "Batch 2")

    Returns:
        TimeoutResult; on deadline the error reads "<label> timed out after <n>ms".
        Exceptions raised by the operation are captured, not propagated.
    """
    start = time.monotonic()

    try:
        data = await asyncio.wait_for(operation(), timeout=timeout_ms / 1000)
        return TimeoutResult(
            success=True,
            data=data,
            duration_ms=_elapsed_ms(start),
        )

    except asyncio.TimeoutError:
        message = f"{label} timed out after {timeout_ms}ms"
        logger.warning(f"⏱️ {message}")
        return TimeoutResult(
            success=False,
            error=message,
            duration_ms=_elapsed_ms(start),
            timed_out=True,
        )

    except Exception as e:
        return TimeoutResult(
            success=False,
            error=str(e),
            duration_ms=_elapsed_ms(start),
            exception=e,
        )


def _elapsed_ms(start: float) -> int:
    return int((time.monotonic() - start) * 1000)


def calculate_progressive_timeout(
    total_records: int,
    batch_size: int,
    config: Optional[TimeoutConfig] = None,
) -> int:
    """
    Per-batch timeout that grows as the batch approaches the whole workload.

    - one effective batch (batch >= total, or batch >= 1000): max timeout
    - small batches (<= 10 records or <= 5% of total): base timeout
    - otherwise linear in batch_size / total_records between base and max

    Returns:
        Timeout in milliseconds, always within [batch_timeout_ms, max_batch_timeout_ms]

    Example:
        >>> calculate_progressive_timeout(1000, 50)
        30000
        >>> calculate_progressive_timeout(40, 50)
        120000
    """
    config = config or TimeoutConfig()
    base = config.batch_timeout_ms
    maximum = config.max_batch_timeout_ms

    if not config.progressive_timeout_enabled:
        return base

    if total_records <= 0 or batch_size >= total_records or batch_size >= 1000:
        return maximum

    if batch_size <= 10 or batch_size <= total_records * 0.05:
        return base

    ratio = batch_size / total_records
    timeout = base + ratio * (maximum - base)
    return round(min(maximum, max(base, timeout)))


def validate_timeout_config(config: TimeoutConfig) -> List[str]:
    """
    Returns a list of configuration problems (empty if valid).
    """
    errors = []

    if config.sync_timeout_ms <= 0:
        errors.append("sync_timeout_ms must be positive")
    if config.batch_timeout_ms <= 0:
        errors.append("batch_timeout_ms must be positive")
    if config.max_batch_timeout_ms <= 0:
        errors.append("max_batch_timeout_ms must be positive")

    if config.batch_timeout_ms > config.sync_timeout_ms:
        errors.append("batch_timeout_ms cannot exceed sync_timeout_ms")
    if config.max_batch_timeout_ms > config.sync_timeout_ms:
        errors.append("max_batch_timeout_ms cannot exceed sync_timeout_ms")
    if config.batch_timeout_ms > config.max_batch_timeout_ms:
        errors.append("batch_timeout_ms cannot exceed max_batch_timeout_ms")

    return errors


@dataclass
class BatchTimeoutMetric:
    batch_number: int
    batch_size: int
    duration_ms: int
    timeout_ms: int
    timed_out: bool


@dataclass
class TimeoutMetricsTracker:
    """
    Batch timing for a single run.

    Created per run and discarded with it; nothing here is shared
    between accounts.
    """
    metrics: List[BatchTimeoutMetric] = field(default_factory=list)

    def track(
        self,
        batch_number: int,
        batch_size: int,
        duration_ms: int,
        timeout_ms: int,
        timed_out: bool,
    ) -> None:
        self.metrics.append(
            BatchTimeoutMetric(batch_number, batch_size, duration_ms, timeout_ms, timed_out)
        )

    def analyze(self) -> Dict[str, Any]:
        """Summary of timeouts and batch durations for the run."""
        total = len(self.metrics)
        if total == 0:
            return {
                "total_batches": 0,
                "timeouts": 0,
                "timeout_rate": 0.0,
                "average_duration_ms": 0,
                "max_duration_ms": 0,
            }

        timeouts = sum(1 for m in self.metrics if m.timed_out)
        durations = [m.duration_ms for m in self.metrics]
        return {
            "total_batches": total,
            "timeouts": timeouts,
            "timeout_rate": timeouts / total,
            "average_duration_ms": round(sum(durations) / total),
            "max_duration_ms": max(durations),
        }

    def suggest_adjustment(self, current_timeout_ms: int, config: TimeoutConfig) -> Dict[str, Any]:
        """
        Suggest a larger batch timeout when batches run close to it or keep timing out.

        Never suggests more than max_batch_timeout_ms.
        """
        analysis = self.analyze()
        suggested = current_timeout_ms
        reason = "Current timeout is adequate"

        if analysis["average_duration_ms"] > current_timeout_ms * 0.8:
            suggested = min(round(analysis["average_duration_ms"] * 1.5), config.max_batch_timeout_ms)
            reason = "Average batch duration is close to the timeout"
        elif analysis["timeout_rate"] > 0.2 and analysis["total_batches"] > 5:
            suggested = min(round(current_timeout_ms * 1.5), config.max_batch_timeout_ms)
            reason = "High batch timeout rate"

        return {
            "current_timeout_ms": current_timeout_ms,
            "suggested_timeout_ms": max(suggested, current_timeout_ms),
            "reason": reason,
        }
