"""
Tests for the timeout guard.
"""

import asyncio

import pytest

from app.services.crm_sync import (
    Deadline,
    TimeoutConfig,
    TimeoutMetricsTracker,
    calculate_progressive_timeout,
    execute_with_timeout,
    validate_timeout_config,
)


class TestProgressiveTimeout:
    """Tests for calculate_progressive_timeout."""

    def test_small_batch_gets_base_timeout(self):
        assert calculate_progressive_timeout(1000, 10) == 30000
        assert calculate_progressive_timeout(1000, 50) == 30000

    def test_single_batch_gets_max_timeout(self):
        assert calculate_progressive_timeout(40, 50) == 120000
        assert calculate_progressive_timeout(50, 50) == 120000

    def test_huge_batch_gets_max_timeout(self):
        assert calculate_progressive_timeout(5000, 1000) == 120000

    def test_empty_workload(self):
        assert calculate_progressive_timeout(0, 50) == 120000

    def test_disabled_returns_base(self):
        config = TimeoutConfig(progressive_timeout_enabled=False)

        assert calculate_progressive_timeout(40, 50, config) == 30000

    def test_linear_between_bounds(self):
        """120 records in batches of 50: 30000 + 50/120 * 90000."""
        assert calculate_progressive_timeout(120, 50) == 67500

    def test_monotonic_and_bounded(self):
        """Non-decreasing in batch size and always within [base, max]."""
        config = TimeoutConfig()
        for total in (15, 100, 500, 2000):
            previous = 0
            for batch_size in range(1, total + 50, 7):
                timeout = calculate_progressive_timeout(total, batch_size, config)
                assert config.batch_timeout_ms <= timeout <= config.max_batch_timeout_ms
                assert timeout >= previous
                previous = timeout


class TestValidateTimeoutConfig:
    """Tests for validate_timeout_config."""

    def test_defaults_are_valid(self):
        assert validate_timeout_config(TimeoutConfig()) == []

    def test_batch_exceeds_sync(self):
        errors = validate_timeout_config(TimeoutConfig(sync_timeout_ms=10000, batch_timeout_ms=20000, max_batch_timeout_ms=5000))

        assert "batch_timeout_ms cannot exceed sync_timeout_ms" in errors
        assert "batch_timeout_ms cannot exceed max_batch_timeout_ms" in errors

    def test_non_positive_values(self):
        errors = validate_timeout_config(TimeoutConfig(sync_timeout_ms=0))

        assert "sync_timeout_ms must be positive" in errors


@pytest.mark.asyncio
class TestExecuteWithTimeout:
    """Tests for execute_with_timeout."""

    async def test_success(self):
        async def operation():
            return 42

        result = await execute_with_timeout(operation, 1000)

        assert result.success is True
        assert result.data == 42
        assert result.timed_out is False

    async def test_timeout_message_and_cancellation(self):
        """The slow operation is cancelled, not left running."""
        cancelled = asyncio.Event()

        async def operation():
            try:
                await asyncio.sleep(10)
            except asyncio.CancelledError:
                cancelled.set()
                raise

        result = await execute_with_timeout(operation, 20, label="Batch 2")

        assert result.success is False
        assert result.timed_out is True
        assert result.error == "Batch 2 timed out after 20ms"
        assert cancelled.is_set()

    async def test_exception_is_captured(self):
        async def operation():
            raise RuntimeError("boom")

        result = await execute_with_timeout(operation, 1000)

        assert result.success is False
        assert result.timed_out is False
        assert result.error == "boom"
        assert isinstance(result.exception, RuntimeError)


class TestDeadline:
    """Tests for Deadline."""

    def test_cap(self):
        deadline = Deadline(60000)

        assert deadline.cap(30) == 30
        assert deadline.cap(120) <= 60

    def test_expired(self):
        deadline = Deadline(0)

        assert deadline.expired
        assert deadline.remaining() == 0


class TestTimeoutMetricsTracker:
    """Tests for TimeoutMetricsTracker."""

    def test_analyze_empty(self):
        assert TimeoutMetricsTracker().analyze()["total_batches"] == 0

    def test_analyze(self):
        tracker = TimeoutMetricsTracker()
        tracker.track(1, 50, 1000, 30000, False)
        tracker.track(2, 50, 3000, 30000, True)

        analysis = tracker.analyze()

        assert analysis["total_batches"] == 2
        assert analysis["timeouts"] == 1
        assert analysis["timeout_rate"] == 0.5
        assert analysis["average_duration_ms"] == 2000
        assert analysis["max_duration_ms"] == 3000

    def test_suggestion_never_exceeds_max(self):
        tracker = TimeoutMetricsTracker()
        for i in range(3):
            tracker.track(i + 1, 50, 110000, 100000, True)

        suggestion = tracker.suggest_adjustment(100000, TimeoutConfig())

        assert suggestion["suggested_timeout_ms"] == 120000

    def test_adequate_timeout_kept(self):
        tracker = TimeoutMetricsTracker()
        tracker.track(1, 50, 1000, 30000, False)

        suggestion = tracker.suggest_adjustment(30000, TimeoutConfig())

        assert suggestion["suggested_timeout_ms"] == 30000
