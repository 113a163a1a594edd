"""Tests for async helpers and structured logging."""

import asyncio
import json
import logging

import pytest

from unimodel_core.utils import (
    LogContext,
    LoggingConfig,
    async_retry,
    backoff_delay,
    log_duration,
    retry_with_backoff,
    run_with_timeout,
    setup_logging,
)
from unimodel_core.utils.logging_config import StructuredFormatter


class TestRetry:
    """Test retry_with_backoff and async_retry."""

    def test_backoff_delay(self):
        """Test exponential growth capped at max_delay."""
        assert backoff_delay(0, 0.1) == pytest.approx(0.1)
        assert backoff_delay(2, 0.1) == pytest.approx(0.4)
        assert backoff_delay(5, 0.1, max_delay=1.0) == 1.0

    @pytest.mark.asyncio
    async def test_retries_until_success(self):
        """Test listed exceptions are retried and on_retry is told."""
        attempts = []
        retries = []

        async def flaky():
            attempts.append(1)
            if len(attempts) < 3:
                raise ConnectionError("down")
            return "up"

        result = await retry_with_backoff(
            flaky, attempts=3, delay=0.001,
            exceptions=(ConnectionError,),
            on_retry=lambda attempt, e: retries.append(attempt),
        )
        assert result == "up"
        assert retries == [1, 2]

    @pytest.mark.asyncio
    async def test_last_exception_reraised(self):
        """Test the final failure propagates after all attempts."""
        calls = []

        async def broken():
            calls.append(1)
            raise ConnectionError(f"attempt {len(calls)}")

        with pytest.raises(ConnectionError, match="attempt 2"):
            await retry_with_backoff(broken, attempts=2, delay=0.001, exceptions=(ConnectionError,))

    @pytest.mark.asyncio
    async def test_unlisted_exception_not_retried(self):
        """Test exceptions outside the list propagate at once."""
        calls = []

        async def broken():
            calls.append(1)
            raise KeyError("bad")

        with pytest.raises(KeyError):
            await retry_with_backoff(broken, attempts=5, delay=0.001, exceptions=(ConnectionError,))
        assert len(calls) == 1

    @pytest.mark.asyncio
    async def test_decorator(self):
        """Test the decorator form."""
        calls = []

        @async_retry(attempts=2, delay=0.001)
        async def flaky(value):
            calls.append(value)
            if len(calls) == 1:
                raise RuntimeError("once")
            return value * 2

        assert await flaky(21) == 42
        assert calls == [21, 21]


class TestTimeout:
    """Test run_with_timeout."""

    @pytest.mark.asyncio
    async def test_default_on_timeout(self):
        """Test the default is returned when the coroutine is too slow."""
        result = await run_with_timeout(asyncio.sleep(1, result="late"), timeout=0.01, default="fallback")
        assert result == "fallback"

    @pytest.mark.asyncio
    async def test_raise_on_timeout(self):
        """Test the timeout can propagate instead."""
        with pytest.raises(asyncio.TimeoutError):
            await run_with_timeout(asyncio.sleep(1), timeout=0.01, raise_on_timeout=True)

    @pytest.mark.asyncio
    async def test_fast_result(self):
        """Test results within the timeout are returned unchanged."""
        assert await run_with_timeout(asyncio.sleep(0, result=7), timeout=1.0) == 7


class TestLogging:
    """Test structured logging and context propagation."""

    def _record(self, message="hello", **extra):
        record = logging.LogRecord("unimodel_core.test", logging.INFO, __file__, 1, message, None, None)
        for key, value in extra.items():
            setattr(record, key, value)
        return record

    def test_json_includes_context(self):
        """Test model, request id and extra fields appear in JSON output."""
        formatter = StructuredFormatter()
        with LogContext(model="sentiment", request_id="req-1", batch_id="b-7"):
            data = json.loads(formatter.format(self._record(duration_ms=1.5)))

        assert data["message"] == "hello"
        assert data["model"] == "sentiment"
        assert data["request_id"] == "req-1"
        assert data["context"] == {"batch_id": "b-7"}
        assert data["extra"] == {"duration_ms": 1.5}

    def test_context_reset_on_exit(self):
        """Test LogContext leaves no residue."""
        formatter = StructuredFormatter()
        with LogContext(model="sentiment"):
            pass
        data = json.loads(formatter.format(self._record()))
        assert "model" not in data
        assert "context" not in data

    def test_setup_logging_json(self):
        """Test json format installs the structured formatter."""
        root = logging.getLogger()
        saved_handlers, saved_level = root.handlers[:], root.level
        try:
            setup_logging(LoggingConfig(level="DEBUG", format="json", log_file=None))
            assert isinstance(root.handlers[0].formatter, StructuredFormatter)
            assert logging.getLogger("unimodel_core").level == logging.DEBUG
        finally:
            root.handlers[:] = saved_handlers
            root.setLevel(saved_level)

    def test_log_duration_rejects_sync_functions(self):
        """Test only coroutine functions can be wrapped."""
        with pytest.raises(TypeError):
            @log_duration(logging.getLogger(__name__))
            def not_async():
                pass

    @pytest.mark.asyncio
    async def test_log_duration_logs(self, caplog):
        """Test the wrapped coroutine's duration is logged."""
        logger = logging.getLogger("unimodel_core.test")

        @log_duration(logger, message="Test op")
        async def op():
            return 5

        with caplog.at_level(logging.INFO, logger="unimodel_core.test"):
            assert await op() == 5
        assert any("Test op" in r.getMessage() for r in caplog.records)
