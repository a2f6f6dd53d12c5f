"""
Tests for the runtime tick loops.
"""
import asyncio
from dataclasses import replace

import pytest

from mmcore.bot_runtime.loop import next_delay, run_bot_loop, run_range_loop
from mmcore.bot_runtime.settings import AppSettings
from mmcore.trading.scheduler import TickReport
from mmcore.trading.types import PriceObservation, RuntimeConfig

DEFAULTS = RuntimeConfig(config_schema_version=1, trade_enabled=False, range_monitor_enabled=True)


class FixedLoop:
    def __init__(self, now):
        self.now = now

    def time(self):
        return self.now


class RecordingStorage:
    run_id = "run-test"

    def __init__(self):
        self.config = {"trade_enabled": "1"}
        self.events = []
        self.prices = []
        self.heartbeats = 0

    async def get_runtime_config(self):
        return self.config

    async def publish_event(self, *, level, event, message, details=None, event_id=None):
        self.events.append(event)

    async def record_price(self, *, symbol, price, timestamp):
        self.prices.append((symbol, price, timestamp))

    async def update_heartbeat(self):
        self.heartbeats += 1


@pytest.fixture
def fast_settings():
    return replace(AppSettings.from_env(), bot_tick_interval_seconds=0.01, range_tick_interval_seconds=0.01, error_backoff_seconds=0.01)


class TestNextDelay:
    def test_regular_cadence(self):
        next_tick, delay = next_delay(loop=FixedLoop(10.2), next_tick=10.0, interval_seconds=1.0)

        assert next_tick == 11.0
        assert delay == pytest.approx(0.8)

    def test_missed_cycles_are_skipped(self):
        next_tick, delay = next_delay(loop=FixedLoop(13.5), next_tick=10.0, interval_seconds=1.0)

        assert next_tick == 14.0
        assert delay == pytest.approx(0.5)


class TestBotLoop:
    """Failures pause intake until the health checks pass again."""

    async def test_pause_then_resume(self, logger, fast_settings):
        storage = RecordingStorage()
        stop_event = asyncio.Event()
        configs = []

        class ScriptedScheduler:
            calls = 0

            async def tick(self, runtime_config):
                self.calls += 1
                configs.append(runtime_config)
                if self.calls == 1:
                    raise ConnectionError("firestore unavailable")
                stop_event.set()
                return TickReport(observations=[PriceObservation(symbol="SOL/USDC", price=101.0, timestamp=5.0)])

        checks = []

        async def health():
            checks.append("ok")

        await asyncio.wait_for(
            run_bot_loop(
                logger=logger,
                stop_event=stop_event,
                app_settings=fast_settings,
                storage=storage,
                scheduler=ScriptedScheduler(),
                runtime_defaults=DEFAULTS,
                health_checks=[health],
            ),
            timeout=5,
        )

        assert storage.events == ["intake_paused", "intake_resumed"]
        assert checks == ["ok"]
        assert storage.prices == [("SOL/USDC", 101.0, 5.0)]
        assert storage.heartbeats == 1
        assert configs[-1].trade_enabled is True

    async def test_runtime_config_failure_uses_defaults(self, logger, fast_settings):
        storage = RecordingStorage()
        stop_event = asyncio.Event()
        seen = []

        async def broken_config():
            raise ConnectionError("redis down")

        storage.get_runtime_config = broken_config

        class OneShotScheduler:
            async def tick(self, runtime_config):
                seen.append(runtime_config)
                stop_event.set()
                return TickReport()

        await asyncio.wait_for(
            run_bot_loop(
                logger=logger,
                stop_event=stop_event,
                app_settings=fast_settings,
                storage=storage,
                scheduler=OneShotScheduler(),
                runtime_defaults=DEFAULTS,
                health_checks=[],
            ),
            timeout=5,
        )

        assert seen == [DEFAULTS]
        assert storage.events == []


class TestRangeLoop:
    async def test_disabled_monitor_is_skipped(self, logger, fast_settings):
        storage = RecordingStorage()
        storage.config = {"range_monitor_enabled": "0"}
        stop_event = asyncio.Event()
        calls = []

        class Monitor:
            async def check_positions(self):
                calls.append("checked")
                return []

        async def stop_soon():
            await asyncio.sleep(0.05)
            stop_event.set()

        await asyncio.gather(
            run_range_loop(
                logger=logger,
                stop_event=stop_event,
                app_settings=fast_settings,
                storage=storage,
                range_monitor=Monitor(),
                runtime_defaults=DEFAULTS,
            ),
            stop_soon(),
        )

        assert calls == []

    async def test_monitor_error_keeps_loop_alive(self, logger, fast_settings):
        storage = RecordingStorage()
        stop_event = asyncio.Event()
        calls = []

        class Monitor:
            async def check_positions(self):
                calls.append("checked")
                if len(calls) == 1:
                    raise ConnectionError("rpc down")
                stop_event.set()
                return []

        await asyncio.wait_for(
            run_range_loop(
                logger=logger,
                stop_event=stop_event,
                app_settings=fast_settings,
                storage=storage,
                range_monitor=Monitor(),
                runtime_defaults=DEFAULTS,
            ),
            timeout=5,
        )

        assert calls == ["checked", "checked"]
