from __future__ import annotations

import asyncio
import logging
import uuid
from collections import deque
from typing import Any, Iterable

from mmcore.common import guarded_call, log_event

from .types import JOB_PENDING, SwapJob, WalletGuardStore


async def _guard_refresh_loop(
    *,
    logger: logging.Logger,
    guard_store: WalletGuardStore,
    wallet_id: str,
    owner_token: str,
    ttl_seconds: int,
) -> None:
    interval = max(0.5, ttl_seconds / 3)
    while True:
        await asyncio.sleep(interval)
        refreshed = await guarded_call(
            lambda: guard_store.refresh_wallet_guard(
                wallet_id=wallet_id,
                owner_token=owner_token,
                ttl_seconds=ttl_seconds,
            ),
            logger=logger,
            event="wallet_guard_refresh_failed",
            message="Failed to refresh distributed wallet guard",
            default=False,
            wallet_id=wallet_id,
        )
        if not refreshed:
            log_event(
                logger,
                level="warning",
                event="wallet_guard_lost",
                message="Distributed wallet guard could not be refreshed",
                wallet_id=wallet_id,
            )


class WalletLease:
    """Exclusive executor rights for one wallet; release is idempotent."""

    def __init__(self, queue: "SwapQueue", wallet_id: str, owner_token: str) -> None:
        self._queue = queue
        self.wallet_id = wallet_id
        self.owner_token = owner_token
        self._refresh_task: asyncio.Task[None] | None = None
        self._released = False

    @property
    def released(self) -> bool:
        return self._released

    async def release(self) -> None:
        if self._released:
            return
        self._released = True
        await self._queue._release(self)

    async def __aenter__(self) -> "WalletLease":
        return self

    async def __aexit__(self, *_exc: Any) -> None:
        await self.release()


class SwapQueue:
    def __init__(
        self,
        *,
        logger: logging.Logger,
        max_pending_per_wallet: int = 16,
        guard_store: WalletGuardStore | None = None,
        guard_ttl_seconds: int = 120,
    ) -> None:
        self._logger = logger
        self._max_pending_per_wallet = max(1, max_pending_per_wallet)
        self._guard_store = guard_store
        self._guard_ttl_seconds = max(1, guard_ttl_seconds)
        self._queues: dict[str, deque[SwapJob]] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        self._in_flight: dict[str, SwapJob] = {}

    def enqueue(self, wallet_id: str, job: SwapJob) -> bool:
        if job.wallet_id != wallet_id:
            raise ValueError(f"Job {job.job_id} belongs to wallet {job.wallet_id}, not {wallet_id}.")
        if job.state != JOB_PENDING:
            raise ValueError(f"Only pending jobs can be enqueued (job {job.job_id} is {job.state}).")

        queue = self._queues.setdefault(wallet_id, deque())
        if len(queue) >= self._max_pending_per_wallet:
            log_event(
                self._logger,
                level="warning",
                event="swap_queue_full",
                message="Wallet queue is full; job rejected",
                wallet_id=wallet_id,
                job_id=job.job_id,
                pending=len(queue),
            )
            return False

        queue.append(job)
        log_event(
            self._logger,
            level="info",
            event="swap_job_enqueued",
            message="Swap job enqueued",
            wallet_id=wallet_id,
            job_id=job.job_id,
            kind=job.kind,
            bot_id=job.bot_id,
            direction=job.direction,
            pending=len(queue),
        )
        return True

    async def try_lock(self, wallet_id: str) -> WalletLease | None:
        lock = self._locks.setdefault(wallet_id, asyncio.Lock())
        if lock.locked():
            return None
        # An uncontended asyncio.Lock is acquired without yielding.
        await lock.acquire()

        lease = WalletLease(self, wallet_id, owner_token=uuid.uuid4().hex)
        if self._guard_store is None:
            return lease

        try:
            acquired = await self._guard_store.acquire_wallet_guard(
                wallet_id=wallet_id,
                owner_token=lease.owner_token,
                ttl_seconds=self._guard_ttl_seconds,
            )
        except BaseException:
            lock.release()
            raise
        if not acquired:
            lock.release()
            log_event(
                self._logger,
                level="info",
                event="wallet_guard_busy",
                message="Wallet is locked by another process",
                wallet_id=wallet_id,
            )
            return None

        lease._refresh_task = asyncio.create_task(
            _guard_refresh_loop(
                logger=self._logger,
                guard_store=self._guard_store,
                wallet_id=wallet_id,
                owner_token=lease.owner_token,
                ttl_seconds=self._guard_ttl_seconds,
            )
        )
        return lease

    async def _release(self, lease: WalletLease) -> None:
        self._in_flight.pop(lease.wallet_id, None)
        try:
            if lease._refresh_task is not None:
                lease._refresh_task.cancel()
                await asyncio.gather(lease._refresh_task, return_exceptions=True)
            if self._guard_store is not None:
                await guarded_call(
                    lambda: self._guard_store.release_wallet_guard(
                        wallet_id=lease.wallet_id,
                        owner_token=lease.owner_token,
                    ),
                    logger=self._logger,
                    event="wallet_guard_release_failed",
                    message="Failed to release distributed wallet guard",
                    wallet_id=lease.wallet_id,
                )
        finally:
            lock = self._locks.get(lease.wallet_id)
            if lock is not None and lock.locked():
                lock.release()

    def is_locked(self, wallet_id: str) -> bool:
        lock = self._locks.get(wallet_id)
        return lock is not None and lock.locked()

    def pop_next(self, lease: WalletLease) -> SwapJob | None:
        if lease.released:
            raise RuntimeError(f"Lease for wallet {lease.wallet_id} has been released.")
        if lease.wallet_id in self._in_flight:
            raise RuntimeError(f"Wallet {lease.wallet_id} already has an in-flight job.")

        queue = self._queues.get(lease.wallet_id)
        if not queue:
            return None
        job = queue.popleft()
        self._in_flight[lease.wallet_id] = job
        return job

    def finish(self, lease: WalletLease, job: SwapJob) -> None:
        current = self._in_flight.get(lease.wallet_id)
        if current is job:
            del self._in_flight[lease.wallet_id]

    def in_flight(self, wallet_id: str) -> SwapJob | None:
        return self._in_flight.get(wallet_id)

    def pending(self, wallet_id: str) -> list[SwapJob]:
        return list(self._queues.get(wallet_id, ()))

    def wallets_with_pending(self) -> list[str]:
        return [wallet_id for wallet_id, queue in self._queues.items() if queue]

    def has_pending_for_position(self, position_id: str) -> bool:
        for queue in self._queues.values():
            if any(job.position_id == position_id for job in queue):
                return True
        return any(job.position_id == position_id for job in self._in_flight.values())

    def bots_with_pending_trades(self) -> set[str]:
        return {
            job.bot_id
            for queue in self._queues.values()
            for job in queue
            if job.kind == "trade" and job.bot_id is not None
        }

    def cancel_bot(self, bot_id: str, *, kinds: Iterable[str] | None = None) -> list[SwapJob]:
        """Drops the bot's not-yet-started jobs, optionally only those of ``kinds``."""
        allowed = set(kinds) if kinds is not None else None

        def matches(job: SwapJob) -> bool:
            return job.bot_id == bot_id and (allowed is None or job.kind in allowed)

        dropped: list[SwapJob] = []
        for wallet_id, queue in self._queues.items():
            removed = [job for job in queue if matches(job)]
            if not removed:
                continue
            dropped.extend(removed)
            self._queues[wallet_id] = deque(job for job in queue if not matches(job))

        if dropped:
            log_event(
                self._logger,
                level="info",
                event="swap_jobs_dropped",
                message="Dropped pending jobs of a stopped bot",
                bot_id=bot_id,
                job_ids=[job.job_id for job in dropped],
            )
        return dropped
