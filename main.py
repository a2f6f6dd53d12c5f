from __future__ import annotations

import asyncio
import contextlib
import signal
from typing import Any

from dotenv import load_dotenv

from mmcore.bot_runtime import (
    AppSettings,
    bootstrap_dependencies,
    build_runtime,
    run_bot_loop,
    run_range_loop,
    setup_logger,
)
from mmcore.common import guarded_call, log_event
from mmcore.storage import StorageSettings


async def main() -> None:
    load_dotenv()
    logger = setup_logger()

    app_settings = AppSettings.from_env()
    storage_settings = StorageSettings.from_env()
    runtime = build_runtime(logger=logger, app_settings=app_settings, storage_settings=storage_settings)
    storage = runtime.storage

    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()

    def request_shutdown(sig: signal.Signals) -> None:
        log_event(
            logger,
            level="info",
            event="shutdown_signal_received",
            message="Shutdown signal received",
            signal=sig.name,
        )
        stop_event.set()

    for sig in (signal.SIGTERM, signal.SIGINT):
        with contextlib.suppress(NotImplementedError):
            loop.add_signal_handler(sig, request_shutdown, sig)

    async def on_config_update(config: dict[str, Any]) -> None:
        log_event(
            logger,
            level="info",
            event="runtime_config_updated",
            message="Runtime config updated",
            items=len(config),
        )

    await bootstrap_dependencies(
        logger=logger,
        stop_event=stop_event,
        app_settings=app_settings,
        storage=storage,
        clients=runtime.clients,
        config_listener_loop=loop,
        on_config_update=on_config_update,
    )

    await storage.publish_event(
        level="INFO",
        event="bot_started",
        message="Market-making core started",
        details={
            "dry_run": app_settings.dry_run,
            "bot_tick_interval_seconds": app_settings.bot_tick_interval_seconds,
            "range_monitor": runtime.range_monitor is not None,
            "retry_delays_seconds": list(app_settings.retry_delays_seconds),
        },
    )

    loops = [
        run_bot_loop(
            logger=logger,
            stop_event=stop_event,
            app_settings=app_settings,
            storage=storage,
            scheduler=runtime.scheduler,
            runtime_defaults=runtime.runtime_defaults,
            health_checks=[storage.healthcheck, runtime.ledger.healthcheck],
        )
    ]
    if runtime.range_monitor is not None:
        loops.append(
            run_range_loop(
                logger=logger,
                stop_event=stop_event,
                app_settings=app_settings,
                storage=storage,
                range_monitor=runtime.range_monitor,
                runtime_defaults=runtime.runtime_defaults,
            )
        )

    try:
        await asyncio.gather(*loops)
    finally:
        await guarded_call(
            runtime.supervisor.shutdown,
            logger=logger,
            event="shutdown_supervisor_failed",
            message="Failed to stop wallet workers",
        )
        await guarded_call(
            runtime.notifier.flush,
            logger=logger,
            event="shutdown_alert_flush_failed",
            message="Failed to deliver outstanding alerts",
        )
        await guarded_call(
            lambda: storage.publish_event(
                level="INFO",
                event="bot_stopped",
                message="Market-making core stopped gracefully",
            ),
            logger=logger,
            event="shutdown_publish_failed",
            message="Failed to publish bot_stopped event",
        )
        await guarded_call(
            lambda: storage.mark_run_stopped(reason="shutdown"),
            logger=logger,
            event="shutdown_mark_run_failed",
            message="Failed to mark run stopped",
        )
        for client in runtime.clients:
            await guarded_call(
                client.close,
                logger=logger,
                event="shutdown_client_close_failed",
                message="Failed to close client",
                client=type(client).__name__,
            )
        await guarded_call(
            storage.close,
            logger=logger,
            event="shutdown_storage_close_failed",
            message="Failed to close storage",
        )

        log_event(logger, level="info", event="shutdown_completed", message="Shutdown completed")


if __name__ == "__main__":
    asyncio.run(main())
