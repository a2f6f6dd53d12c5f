from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable

from mmcore.common import guarded_call, log_event, wait_with_stop
from mmcore.storage import ConfigUpdateHandler, StorageGateway
from mmcore.trading import RangeMonitor, RuntimeConfig, Scheduler

from .settings import AppSettings

HealthCheck = Callable[[], Awaitable[None]]


def next_delay(
    *,
    loop: asyncio.AbstractEventLoop,
    next_tick: float,
    interval_seconds: float,
) -> tuple[float, float]:
    """Advances ``next_tick`` by one interval, skipping cycles that were missed."""
    next_tick += interval_seconds
    now = loop.time()
    if next_tick <= now:
        missed_cycles = int((now - next_tick) / interval_seconds) + 1
        next_tick += missed_cycles * interval_seconds
    return next_tick, max(0.0, next_tick - now)


async def bootstrap_dependencies(
    *,
    logger: logging.Logger,
    stop_event: asyncio.Event,
    app_settings: AppSettings,
    storage: StorageGateway,
    clients: list[Any],
    config_listener_loop: asyncio.AbstractEventLoop,
    on_config_update: ConfigUpdateHandler,
) -> None:
    while not stop_event.is_set():
        try:
            await storage.connect()
            storage.start_config_listener(config_listener_loop, on_update=on_config_update)
            for client in clients:
                await client.connect()
            return
        except Exception as error:
            log_event(
                logger,
                level="exception",
                event="bootstrap_error",
                message="Dependency bootstrap failed",
                error=str(error),
            )
            await guarded_call(
                lambda: storage.publish_event(
                    level="ERROR",
                    event="bootstrap_error",
                    message="Failed to initialize dependencies",
                    details={"error": str(error)},
                ),
                logger=logger,
                event="bootstrap_publish_error_failed",
                message="Failed to publish bootstrap error",
            )
            for client in clients:
                await guarded_call(
                    client.close,
                    logger=logger,
                    event="bootstrap_client_close_failed",
                    message="Failed to close client during bootstrap retry",
                    client=type(client).__name__,
                )
            await guarded_call(
                storage.close,
                logger=logger,
                event="bootstrap_storage_close_failed",
                message="Failed to close storage during bootstrap retry",
            )

            await wait_with_stop(stop_event, app_settings.error_backoff_seconds)

    raise RuntimeError("Shutdown requested before dependencies were initialized.")


async def load_runtime_config(
    *,
    logger: logging.Logger,
    storage: StorageGateway,
    runtime_defaults: RuntimeConfig,
) -> RuntimeConfig:
    redis_config = await guarded_call(
        storage.get_runtime_config,
        logger=logger,
        event="runtime_config_read_failed",
        message="Failed to read runtime config; using defaults",
        default={},
    )
    return RuntimeConfig.from_redis(redis_config or {}, runtime_defaults)


async def try_resume_intake(
    *,
    logger: logging.Logger,
    checks: list[HealthCheck],
    pause_reason: str,
    loop_name: str,
) -> bool:
    try:
        for check in checks:
            await check()
    except Exception as error:
        log_event(
            logger,
            level="warning",
            event="intake_still_paused",
            message="Intake remains paused",
            loop_name=loop_name,
            reason=pause_reason,
            error=str(error),
        )
        return False

    log_event(
        logger,
        level="info",
        event="intake_recovered",
        message="Intake resumed after dependency recovery",
        loop_name=loop_name,
        reason=pause_reason,
    )
    return True


async def run_bot_loop(
    *,
    logger: logging.Logger,
    stop_event: asyncio.Event,
    app_settings: AppSettings,
    storage: StorageGateway,
    scheduler: Scheduler,
    runtime_defaults: RuntimeConfig,
    health_checks: list[HealthCheck],
) -> None:
    loop = asyncio.get_running_loop()
    next_tick = loop.time()
    interval = app_settings.bot_tick_interval_seconds

    intake_paused = False
    pause_reason = ""

    while not stop_event.is_set():
        try:
            if intake_paused:
                recovered = await try_resume_intake(
                    logger=logger,
                    checks=health_checks,
                    pause_reason=pause_reason,
                    loop_name="bot",
                )
                if not recovered:
                    await guarded_call(
                        storage.update_heartbeat,
                        logger=logger,
                        event="intake_paused_heartbeat_failed",
                        message="Failed to update heartbeat while intake is paused",
                    )
                    continue

                intake_paused = False
                pause_reason = ""
                await guarded_call(
                    lambda: storage.publish_event(
                        level="INFO",
                        event="intake_resumed",
                        message="Bot intake resumed after successful recovery",
                        event_id=f"intake_resumed:{storage.run_id}",
                    ),
                    logger=logger,
                    event="intake_resumed_publish_failed",
                    message="Failed to publish intake_resumed event",
                )

            runtime_config = await load_runtime_config(
                logger=logger,
                storage=storage,
                runtime_defaults=runtime_defaults,
            )
            report = await scheduler.tick(runtime_config)

            for observation in report.observations:
                await guarded_call(
                    lambda observation=observation: storage.record_price(
                        symbol=observation.symbol,
                        price=observation.price,
                        timestamp=observation.timestamp,
                    ),
                    logger=logger,
                    event="price_record_failed",
                    message="Failed to record price in Redis",
                    symbol=observation.symbol,
                )
            await storage.update_heartbeat()

        except Exception as error:
            pause_reason = str(error)
            intake_paused = True

            log_event(
                logger,
                level="exception",
                event="bot_loop_error",
                message="Bot loop failed and intake has been paused",
                error=str(error),
            )
            await guarded_call(
                lambda: storage.publish_event(
                    level="ERROR",
                    event="intake_paused",
                    message="Bot intake paused due to dependency or runtime error",
                    details={"error": str(error)},
                ),
                logger=logger,
                event="bot_loop_pause_publish_failed",
                message="Failed to publish intake_paused event",
            )
        finally:
            next_tick, delay_seconds = next_delay(loop=loop, next_tick=next_tick, interval_seconds=interval)
            if intake_paused:
                delay_seconds = max(delay_seconds, app_settings.error_backoff_seconds)

            await wait_with_stop(stop_event, delay_seconds)


async def run_range_loop(
    *,
    logger: logging.Logger,
    stop_event: asyncio.Event,
    app_settings: AppSettings,
    storage: StorageGateway,
    range_monitor: RangeMonitor,
    runtime_defaults: RuntimeConfig,
) -> None:
    loop = asyncio.get_running_loop()
    next_tick = loop.time()
    interval = app_settings.range_tick_interval_seconds

    while not stop_event.is_set():
        failed = False
        try:
            runtime_config = await load_runtime_config(
                logger=logger,
                storage=storage,
                runtime_defaults=runtime_defaults,
            )
            if runtime_config.range_monitor_enabled:
                await range_monitor.check_positions()
            else:
                log_event(
                    logger,
                    level="debug",
                    event="range_monitor_disabled",
                    message="Range check skipped because it is disabled in runtime config",
                )
        except Exception as error:
            failed = True
            log_event(
                logger,
                level="exception",
                event="range_loop_error",
                message="Range monitor pass failed",
                error=str(error),
            )
        finally:
            next_tick, delay_seconds = next_delay(loop=loop, next_tick=next_tick, interval_seconds=interval)
            if failed:
                delay_seconds = max(delay_seconds, app_settings.error_backoff_seconds)

            await wait_with_stop(stop_event, delay_seconds)
