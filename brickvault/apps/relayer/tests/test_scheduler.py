"""Ticker / SystemClock / RetryPolicy 测试"""

import asyncio
from datetime import UTC, datetime, timedelta

import pytest
from brickvault.core.config import MonitoringConfig
from brickvault.relayer.services.retry import RetryPolicy
from brickvault.relayer.services.scheduler import SystemClock, Ticker


class TestTicker:
    """固定间隔回调"""

    async def test_runs_until_stopped(self, manual_clock):
        stop_event = asyncio.Event()
        calls = []

        async def callback():
            calls.append(manual_clock.now())
            if len(calls) == 3:
                stop_event.set()

        ticker = Ticker("test", 2.0, callback, manual_clock, stop_event)
        await ticker.run()

        assert ticker.ticks == 3
        assert calls[1] - calls[0] == timedelta(seconds=2)

    async def test_callback_error_does_not_stop_loop(self, manual_clock):
        stop_event = asyncio.Event()
        attempts = []

        async def callback():
            attempts.append(1)
            if len(attempts) == 1:
                raise RuntimeError("transient")
            stop_event.set()

        ticker = Ticker("flaky", 1.0, callback, manual_clock, stop_event)
        await ticker.run()

        assert len(attempts) == 2

    async def test_tick_reports_failure(self, manual_clock):
        async def boom():
            raise ValueError("bad")

        ticker = Ticker("boom", 1.0, boom, manual_clock, asyncio.Event())
        assert await ticker.tick() is False

    async def test_stopped_before_start(self, manual_clock):
        stop_event = asyncio.Event()
        stop_event.set()

        async def callback():
            raise AssertionError("should not run")

        ticker = Ticker("idle", 1.0, callback, manual_clock, stop_event)
        await ticker.run()
        assert ticker.ticks == 0


class TestSystemClock:
    async def test_sleep_times_out(self):
        clock = SystemClock()
        assert await clock.sleep(0.01, asyncio.Event()) is False

    async def test_sleep_interrupted_by_stop(self):
        clock = SystemClock()
        stop_event = asyncio.Event()
        asyncio.get_running_loop().call_later(0.01, stop_event.set)
        assert await clock.sleep(10, stop_event) is True

    def test_now_is_utc(self):
        assert SystemClock().now().tzinfo == UTC


class TestRetryPolicy:
    """指数退避"""

    def test_exponential_with_cap(self):
        policy = RetryPolicy(
            retry_delay_s=1.0, backoff_multiplier=2.0, max_delay_s=5.0, max_retries=3
        )
        assert [policy.delay_for(n) for n in range(5)] == [1.0, 2.0, 4.0, 5.0, 5.0]

    @pytest.mark.parametrize(("retry_count", "exhausted"), [(0, False), (2, False), (3, True)])
    def test_exhausted(self, retry_count, exhausted):
        policy = RetryPolicy(1.0, 2.0, 60.0, max_retries=3)
        assert policy.exhausted(retry_count) is exhausted

    def test_next_attempt_at(self):
        policy = RetryPolicy(0.5, 3.0, 60.0, max_retries=3)
        now = datetime(2026, 3, 1, tzinfo=UTC)
        assert policy.next_attempt_at(now, 2) == now + timedelta(seconds=4.5)

    def test_from_config(self):
        policy = RetryPolicy.from_config(
            MonitoringConfig(max_retries=10, retry_delay_s=1.0, max_retry_delay_s=30.0)
        )
        assert policy.max_retries == 10
        assert policy.backoff_multiplier == 2.0
        assert policy.delay_for(10) == 30.0
