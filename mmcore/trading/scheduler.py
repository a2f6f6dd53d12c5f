from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field

from mmcore.common import guarded_call, log_event

from .price_cache import PriceCache
from .signals import SignalEngine
from .supervisor import ExecutionSupervisor
from .swap_queue import SwapQueue
from .types import (
    Bot,
    Persistence,
    PoolConfig,
    PriceFeed,
    PriceObservation,
    RuntimeConfig,
    SwapJob,
    TradeDecision,
)


@dataclass(slots=True)
class TickReport:
    evaluated: int = 0
    decisions: dict[str, TradeDecision] = field(default_factory=dict)
    enqueued: list[SwapJob] = field(default_factory=list)
    failed_bots: list[str] = field(default_factory=list)
    stale_symbols: list[str] = field(default_factory=list)
    observations: list[PriceObservation] = field(default_factory=list)


class Scheduler:
    def __init__(
        self,
        *,
        logger: logging.Logger,
        persistence: Persistence,
        price_feed: PriceFeed,
        price_cache: PriceCache,
        signal_engine: SignalEngine,
        queue: SwapQueue,
        supervisor: ExecutionSupervisor,
        runtime_defaults: RuntimeConfig,
        max_concurrent_bots: int = 16,
    ) -> None:
        self._logger = logger
        self._persistence = persistence
        self._price_feed = price_feed
        self._price_cache = price_cache
        self._signal_engine = signal_engine
        self._queue = queue
        self._supervisor = supervisor
        self._runtime_defaults = runtime_defaults
        self._semaphore = asyncio.Semaphore(max(1, max_concurrent_bots))

    async def tick(self, runtime_config: RuntimeConfig | None = None) -> TickReport:
        runtime_config = runtime_config or self._runtime_defaults
        report = TickReport()
        bots = await self._persistence.load_active_bots()
        self._drop_inactive_trades({bot.bot_id for bot in bots})
        if not bots:
            return report

        pools: dict[str, PoolConfig] = {}
        for bot in bots:
            pools.setdefault(bot.pool.symbol, bot.pool)
        refreshed = await asyncio.gather(*(self._refresh_price(pool) for pool in pools.values()))
        fresh_symbols = {symbol for symbol, ok in zip(pools, refreshed) if ok}
        report.stale_symbols = sorted(set(pools) - fresh_symbols)
        for symbol in sorted(fresh_symbols):
            latest = self._price_cache.latest(symbol)
            if latest is not None:
                report.observations.append(latest)

        await asyncio.gather(
            *(self._evaluate_guarded(bot, fresh_symbols, runtime_config, report) for bot in bots)
        )

        # Wallets that were busy on an earlier tick still hold pending jobs.
        wallets = [job.wallet_id for job in report.enqueued] + self._queue.wallets_with_pending()
        if wallets:
            self._supervisor.dispatch(wallets)

        log_event(
            self._logger,
            level="info",
            event="scheduler_tick",
            message="Scheduler tick completed",
            bots=len(bots),
            evaluated=report.evaluated,
            enqueued=len(report.enqueued),
            failed_bots=report.failed_bots,
            stale_symbols=report.stale_symbols,
            trade_enabled=runtime_config.trade_enabled,
        )
        return report

    def _drop_inactive_trades(self, active_bot_ids: set[str]) -> None:
        for bot_id in sorted(self._queue.bots_with_pending_trades() - active_bot_ids):
            self._queue.cancel_bot(bot_id, kinds=("trade",))

    async def _refresh_price(self, pool: PoolConfig) -> bool:
        async with self._semaphore:
            try:
                observation = await self._price_feed.latest_price(pool)
            except Exception as error:
                log_event(
                    self._logger,
                    level="warning",
                    event="price_fetch_failed",
                    message="Price fetch failed; bots on this pool hold this tick",
                    pool=pool.symbol,
                    error=str(error),
                )
                return False
        return self._price_cache.observe(pool.symbol, observation.price, observation.timestamp)

    async def _evaluate_guarded(
        self,
        bot: Bot,
        fresh_symbols: set[str],
        runtime_config: RuntimeConfig,
        report: TickReport,
    ) -> None:
        async with self._semaphore:
            try:
                await self._evaluate(bot, fresh_symbols, runtime_config, report)
            except Exception as error:
                report.failed_bots.append(bot.bot_id)
                log_event(
                    self._logger,
                    level="exception",
                    event="bot_evaluation_failed",
                    message="Bot evaluation failed",
                    bot_id=bot.bot_id,
                    wallet_id=bot.wallet_id,
                    error=str(error),
                )

    async def _evaluate(
        self,
        bot: Bot,
        fresh_symbols: set[str],
        runtime_config: RuntimeConfig,
        report: TickReport,
    ) -> None:
        if bot.pool.symbol not in fresh_symbols:
            return

        report.evaluated += 1
        decision, intent = self._signal_engine.decide(bot, self._price_cache)
        report.decisions[bot.bot_id] = decision

        if intent is not None:
            if runtime_config.trade_enabled:
                job = intent.to_job()
                if runtime_config.slippage_bps_override:
                    job.slippage_bps = runtime_config.slippage_bps_override
                if self._queue.enqueue(bot.wallet_id, job):
                    report.enqueued.append(job)
            else:
                log_event(
                    self._logger,
                    level="info",
                    event="trade_signal_ignored",
                    message="Trade signal ignored because trading is disabled",
                    bot_id=bot.bot_id,
                    signal=decision.signal,
                    change=decision.change,
                )

        latest = self._price_cache.latest(bot.pool.symbol)
        await guarded_call(
            lambda: self._persistence.update_bot(
                bot.bot_id,
                {
                    "last_price": latest.price if latest else None,
                    "last_signal": decision.signal,
                },
            ),
            logger=self._logger,
            event="bot_bookkeeping_failed",
            message="Failed to persist bot bookkeeping",
            bot_id=bot.bot_id,
        )

    async def stop_bot(self, bot_id: str) -> list[SwapJob]:
        await self._persistence.update_bot(bot_id, {"status": "stopped"})
        dropped = self._queue.cancel_bot(bot_id)
        log_event(
            self._logger,
            level="info",
            event="bot_stopped",
            message="Bot stopped",
            bot_id=bot_id,
            dropped_jobs=len(dropped),
        )
        return dropped
