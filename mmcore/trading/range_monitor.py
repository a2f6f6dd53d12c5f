from __future__ import annotations

import asyncio
import logging

from mmcore.common import guarded_call, log_event

from .errors import PreconditionError
from .supervisor import ExecutionSupervisor
from .swap_queue import SwapQueue
from .types import ClmmClient, ClmmPosition, Notifier, Persistence, PositionStatus, SwapJob


class RangeMonitor:
    def __init__(
        self,
        *,
        logger: logging.Logger,
        persistence: Persistence,
        clmm: ClmmClient,
        queue: SwapQueue,
        supervisor: ExecutionSupervisor,
        notifier: Notifier,
        max_concurrent_positions: int = 4,
        slippage_bps: int = 100,
    ) -> None:
        self._logger = logger
        self._persistence = persistence
        self._clmm = clmm
        self._queue = queue
        self._supervisor = supervisor
        self._notifier = notifier
        self._semaphore = asyncio.Semaphore(max(1, max_concurrent_positions))
        self._slippage_bps = max(1, slippage_bps)

    async def check_positions(self) -> list[SwapJob]:
        positions = await self._persistence.load_positions()
        candidates: list[ClmmPosition] = []
        for position in positions:
            if position.requires_operator or position.status in {"withdrawn", "closed"}:
                log_event(
                    self._logger,
                    level="debug",
                    event="position_skipped",
                    message="Position is not eligible for automatic rebalance",
                    position_id=position.position_id,
                    status=position.status,
                    requires_operator=position.requires_operator,
                )
                continue
            candidates.append(position)

        results = await asyncio.gather(*(self._check_guarded(position) for position in candidates))
        jobs = [job for job in results if job is not None]
        wallets = [job.wallet_id for job in jobs] + self._queue.wallets_with_pending()
        if wallets:
            self._supervisor.dispatch(wallets)
        return jobs

    async def _check_guarded(self, position: ClmmPosition) -> SwapJob | None:
        async with self._semaphore:
            try:
                return await self.check_position(position)
            except Exception as error:
                log_event(
                    self._logger,
                    level="exception",
                    event="position_check_failed",
                    message="Range check failed for position",
                    position_id=position.position_id,
                    wallet_id=position.wallet_id,
                    error=str(error),
                )
                return None

    async def check_position(self, position: ClmmPosition) -> SwapJob | None:
        if self._queue.has_pending_for_position(position.position_id):
            return None

        tick = await self._clmm.current_tick(pool=position.pool)
        if position.in_range(tick):
            return None

        lower_tick, upper_tick = position.recentred(tick)
        log_event(
            self._logger,
            level="warning",
            event="position_out_of_range",
            message="CLMM position is out of range",
            position_id=position.position_id,
            wallet_id=position.wallet_id,
            pool=position.pool.symbol,
            tick=tick,
            price=position.pool.price_at_tick(tick),
            lower_tick=position.lower_tick,
            upper_tick=position.upper_tick,
            target_lower_tick=lower_tick,
            target_upper_tick=upper_tick,
        )
        await guarded_call(
            lambda: self._notifier.alert(
                "CLMM position out of range; rebalancing",
                level="warning",
                position_id=position.position_id,
                wallet_id=position.wallet_id,
                tick=tick,
                lower_tick=position.lower_tick,
                upper_tick=position.upper_tick,
            ),
            logger=self._logger,
            event="alert_failed",
            message="Failed to deliver out-of-range alert",
            position_id=position.position_id,
        )

        job = SwapJob.new(
            wallet_id=position.wallet_id,
            kind="rebalance",
            position_id=position.position_id,
            pool=position.pool,
            slippage_bps=self._slippage_bps,
        )
        if not self._queue.enqueue(position.wallet_id, job):
            return None
        return job

    async def resolve_position(
        self,
        position_id: str,
        *,
        status: PositionStatus,
        lower_tick: int | None = None,
        upper_tick: int | None = None,
    ) -> ClmmPosition:
        """Operator acknowledgement that clears ``requires_operator`` on a position."""
        position = await self._persistence.load_position(position_id)
        if position is None:
            raise PreconditionError(f"Position {position_id} was not found.")
        if status not in {"open", "closed"}:
            raise ValueError(f"Positions can only be resolved to open or closed, not {status!r}.")
        if status == "open":
            lower = position.lower_tick if lower_tick is None else lower_tick
            upper = position.upper_tick if upper_tick is None else upper_tick
            if lower >= upper:
                raise ValueError(f"Invalid tick range [{lower}, {upper}].")
            position.lower_tick, position.upper_tick = lower, upper

        previous_status = position.status
        position.status = status
        position.requires_operator = False
        await self._persistence.update_position(position)
        log_event(
            self._logger,
            level="info",
            event="position_resolved",
            message="Operator resolved CLMM position",
            position_id=position_id,
            from_status=previous_status,
            to_status=status,
            lower_tick=position.lower_tick,
            upper_tick=position.upper_tick,
        )
        return position
