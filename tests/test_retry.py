"""
Unit Tests for Retry Logic
==========================
"""

import pytest


class TestRetry:
    """Tests for retry logic."""

    @pytest.mark.asyncio
    async def test_retry_success_first_attempt(self):
        """Should succeed without retry if first attempt works."""
        from casework_core.retry import retry_with_backoff

        call_count = 0

        async def succeed():
            nonlocal call_count
            call_count += 1
            return "success"

        result = await retry_with_backoff(succeed, max_attempts=3)

        assert result == "success"
        assert call_count == 1

    @pytest.mark.asyncio
    async def test_retry_success_after_failure(self):
        """Should retry on failure and eventually succeed."""
        from casework_core.retry import retry_with_backoff

        call_count = 0

        async def fail_then_succeed():
            nonlocal call_count
            call_count += 1
            if call_count < 3:
                raise ValueError("Temporary failure")
            return "success"

        result = await retry_with_backoff(fail_then_succeed, max_attempts=5, base_delay=0.01)

        assert result == "success"
        assert call_count == 3

    @pytest.mark.asyncio
    async def test_retry_exhausted(self):
        """Should raise after max attempts, keeping the last error."""
        from casework_core.retry import retry_with_backoff, RetryExhausted

        async def always_fail():
            raise ValueError("Always fails")

        with pytest.raises(RetryExhausted) as exc_info:
            await retry_with_backoff(always_fail, max_attempts=3, base_delay=0.01)

        assert isinstance(exc_info.value.last_exception, ValueError)

    @pytest.mark.asyncio
    async def test_non_retryable_propagates(self):
        """Should not retry exceptions outside the retryable set."""
        from casework_core.audit.exceptions import AuditStoreError
        from casework_core.retry import retry_with_backoff

        call_count = 0

        async def bad_input():
            nonlocal call_count
            call_count += 1
            raise KeyError("missing")

        with pytest.raises(KeyError):
            await retry_with_backoff(
                bad_input, max_attempts=3, base_delay=0.01, retryable_exceptions={AuditStoreError}
            )
        assert call_count == 1

    def test_backoff_delay_capped(self):
        """Should grow exponentially up to the cap."""
        from casework_core.retry import compute_backoff_delay

        assert compute_backoff_delay(1, base_delay=0.1, jitter=False) == pytest.approx(0.1)
        assert compute_backoff_delay(3, base_delay=0.1, jitter=False) == pytest.approx(0.4)
        assert compute_backoff_delay(20, base_delay=0.1, max_delay=2.0, jitter=False) == 2.0
