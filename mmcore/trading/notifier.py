from __future__ import annotations

import asyncio
import logging
from typing import Any, Protocol

import aiohttp

from mmcore.common import guarded_call, log_event, now_iso


class EventPublisher(Protocol):
    async def publish_event(
        self,
        *,
        level: str,
        event: str,
        message: str,
        details: dict[str, Any] | None = None,
        event_id: str | None = None,
    ) -> None:
        ...


class StorageEventNotifier:
    """Operator alerts written to the run's Firestore event stream."""

    def __init__(self, *, logger: logging.Logger, publisher: EventPublisher) -> None:
        self._logger = logger
        self._publisher = publisher

    async def alert(self, message: str, *, level: str = "warning", **details: Any) -> None:
        await self._publisher.publish_event(
            level=level.upper(),
            event="operator_alert",
            message=message,
            details=details or None,
        )


class WebhookNotifier:
    def __init__(
        self,
        *,
        logger: logging.Logger,
        webhook_url: str,
        service_id: str,
        timeout_seconds: float = 5.0,
    ) -> None:
        self._logger = logger
        self._webhook_url = webhook_url
        self._service_id = service_id
        self._timeout = aiohttp.ClientTimeout(total=timeout_seconds)
        self._session: aiohttp.ClientSession | None = None

    async def connect(self) -> None:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self._timeout)

    async def close(self) -> None:
        if self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None

    async def alert(self, message: str, *, level: str = "warning", **details: Any) -> None:
        if self._session is None or self._session.closed:
            await self.connect()
        assert self._session is not None

        payload = {
            "service_id": self._service_id,
            "level": level,
            "text": message,
            "details": details,
            "sent_at": now_iso(),
        }
        async with self._session.post(self._webhook_url, json=payload) as response:
            if response.status >= 400:
                body = await response.text()
                raise RuntimeError(f"Webhook responded with HTTP {response.status}: {body[:200]}")


class FanoutNotifier:
    """Delivers each alert to every channel in the background.

    ``alert`` returns once delivery is scheduled; a failing or slow channel
    never delays the caller or the other channels. ``flush`` waits for
    outstanding deliveries before shutdown.
    """

    def __init__(self, *, logger: logging.Logger, channels: list[Any]) -> None:
        self._logger = logger
        self._channels = list(channels)
        self._deliveries: set[asyncio.Task[None]] = set()

    @property
    def pending_deliveries(self) -> int:
        return len(self._deliveries)

    async def alert(self, message: str, *, level: str = "warning", **details: Any) -> None:
        log_event(
            self._logger,
            level="critical" if level == "critical" else "warning",
            event="operator_alert",
            message=message,
            channels=len(self._channels),
            job_id=details.get("job_id"),
        )
        for channel in self._channels:
            task = asyncio.create_task(self._deliver(channel, message, level, details))
            self._deliveries.add(task)
            task.add_done_callback(self._deliveries.discard)

    async def _deliver(self, channel: Any, message: str, level: str, details: dict[str, Any]) -> None:
        await guarded_call(
            lambda: channel.alert(message, level=level, **details),
            logger=self._logger,
            event="alert_delivery_failed",
            message="Failed to deliver operator alert",
            channel=type(channel).__name__,
        )

    async def flush(self, timeout_seconds: float = 10.0) -> None:
        if not self._deliveries:
            return
        pending = list(self._deliveries)
        _done, not_done = await asyncio.wait(pending, timeout=timeout_seconds)
        for task in not_done:
            task.cancel()
        if not_done:
            await asyncio.gather(*not_done, return_exceptions=True)
            log_event(
                self._logger,
                level="warning",
                event="alert_flush_timeout",
                message="Dropped operator alerts that did not deliver before shutdown",
                dropped=len(not_done),
            )
