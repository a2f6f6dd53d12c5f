from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from typing import Awaitable, Callable

from solders.instruction import Instruction
from solders.pubkey import Pubkey

from mmcore.common import log_event

from .errors import ExecutionError, InsufficientBalanceError, PreconditionError
from .transactions import build_sol_transfer
from .types import (
    SOL_MINT,
    AmmClient,
    ClmmClient,
    ClmmPosition,
    LedgerClient,
    Persistence,
    PoolConfig,
    SwapJob,
    WalletRecord,
)


@dataclass(slots=True)
class BuiltStep:
    instructions: list[Instruction]
    amount_in: int = 0
    amount_out: int = 0

    @property
    def is_noop(self) -> bool:
        return not self.instructions


@dataclass(slots=True)
class JobStep:
    name: str
    build: Callable[[Pubkey], Awaitable[BuiltStep]]
    # Once confirmed the job cannot be rolled back (CLMM withdraw).
    commits: bool = False
    on_confirmed: Callable[[], Awaitable[None]] | None = None


@dataclass(slots=True)
class JobPlan:
    steps: list[JobStep]
    position: ClmmPosition | None = None


@dataclass(slots=True, frozen=True)
class PlannerSettings:
    gas_reserve_lamports: int = 10_000_000
    split_ratio: float = 0.5
    min_swap_amount: int = 1_000


@dataclass(slots=True)
class _SplitBudget:
    total: int | None = None
    shares: dict[str, int] = field(default_factory=dict)


class StepPlanner:
    """Expands a swap job into ordered, individually retried transaction steps.

    Each ``build`` call re-reads balances and re-quotes, so a retried step is
    always built against fresh on-chain state.
    """

    def __init__(
        self,
        *,
        logger: logging.Logger,
        amm: AmmClient,
        ledger: LedgerClient,
        persistence: Persistence,
        clmm: ClmmClient | None = None,
        settings: PlannerSettings | None = None,
    ) -> None:
        self._logger = logger
        self._amm = amm
        self._ledger = ledger
        self._persistence = persistence
        self._clmm = clmm
        self._settings = settings or PlannerSettings()

    async def plan(self, job: SwapJob, wallet: WalletRecord) -> JobPlan:
        if job.kind == "trade":
            return JobPlan(steps=[self._trade_step(job)])
        if job.kind == "split":
            return JobPlan(steps=self._split_steps(job))
        if job.kind == "sweep":
            return JobPlan(steps=await self._sweep_steps(job, wallet))
        if job.kind == "rebalance":
            return await self._rebalance_plan(job)
        raise ExecutionError(f"Unsupported job kind: {job.kind}")

    async def _require_balance(self, *, owner: Pubkey, mint: str, required: int) -> int:
        available = await self._ledger.get_balance(owner=owner, mint=mint)
        if available < required:
            raise InsufficientBalanceError(
                f"Insufficient balance for {mint}: required={required} available={available}",
                required=required,
                available=available,
            )
        return available

    async def _swap(
        self,
        *,
        pool: PoolConfig | None,
        input_mint: str,
        output_mint: str,
        amount_in: int,
        slippage_bps: int,
        owner: Pubkey,
    ) -> BuiltStep:
        quote = await self._amm.quote(
            pool=pool,
            input_mint=input_mint,
            output_mint=output_mint,
            amount_in=amount_in,
            slippage_bps=slippage_bps,
        )
        instructions = await self._amm.build_swap(quote=quote, owner=owner)
        return BuiltStep(instructions=instructions, amount_in=quote.amount_in, amount_out=quote.amount_out)

    def _trade_step(self, job: SwapJob) -> JobStep:
        if job.pool is None or job.direction is None or not job.amount_in:
            raise ExecutionError(f"Trade job {job.job_id} is missing pool, direction or amount.")
        pool = job.pool
        direction = job.direction
        amount_in = int(job.amount_in)

        async def build(owner: Pubkey) -> BuiltStep:
            input_mint, output_mint = pool.mints_for(direction)
            required = amount_in
            if input_mint == SOL_MINT:
                required += self._settings.gas_reserve_lamports
            await self._require_balance(owner=owner, mint=input_mint, required=required)
            return await self._swap(
                pool=pool,
                input_mint=input_mint,
                output_mint=output_mint,
                amount_in=amount_in,
                slippage_bps=job.slippage_bps,
                owner=owner,
            )

        return JobStep(name=f"swap:{direction}", build=build)

    def _split_steps(self, job: SwapJob) -> list[JobStep]:
        if job.pool is None:
            raise ExecutionError(f"Split job {job.job_id} has no pool.")
        pool = job.pool
        targets = [mint for mint in (pool.base_mint, pool.quote_mint) if mint != SOL_MINT]
        if not targets:
            return []

        ratio = min(1.0, max(0.0, self._settings.split_ratio))
        # When SOL is one side it keeps its share, otherwise both sides are bought.
        weights = [ratio] if len(targets) == 1 else [ratio, 1.0 - ratio]
        budget = _SplitBudget(total=int(job.amount_in) if job.amount_in else None)

        async def resolve_budget(owner: Pubkey) -> None:
            if budget.shares:
                return
            if budget.total is None:
                balance = await self._ledger.get_balance(owner=owner, mint=SOL_MINT)
                budget.total = balance - self._settings.gas_reserve_lamports
            if budget.total <= 0:
                raise InsufficientBalanceError(
                    "Nothing left to split after the gas reserve.",
                    required=self._settings.gas_reserve_lamports + 1,
                    available=max(0, budget.total + self._settings.gas_reserve_lamports),
                )
            for mint, weight in zip(targets, weights):
                budget.shares[mint] = int(math.floor(budget.total * weight))
            log_event(
                self._logger,
                level="info",
                event="split_budget_resolved",
                message="Resolved fund split amounts",
                job_id=job.job_id,
                wallet_id=job.wallet_id,
                total_lamports=budget.total,
                shares=dict(budget.shares),
            )

        def make_step(mint: str) -> JobStep:
            async def build(owner: Pubkey) -> BuiltStep:
                await resolve_budget(owner)
                amount_in = budget.shares.get(mint, 0)
                if amount_in < self._settings.min_swap_amount:
                    return BuiltStep(instructions=[])
                await self._require_balance(
                    owner=owner,
                    mint=SOL_MINT,
                    required=amount_in + self._settings.gas_reserve_lamports,
                )
                return await self._swap(
                    pool=pool,
                    input_mint=SOL_MINT,
                    output_mint=mint,
                    amount_in=amount_in,
                    slippage_bps=job.slippage_bps,
                    owner=owner,
                )

            return JobStep(name=f"split:{mint}", build=build)

        return [make_step(mint) for mint in targets]

    async def _sweep_steps(self, job: SwapJob, wallet: WalletRecord) -> list[JobStep]:
        if not wallet.main_wallet_id:
            raise PreconditionError(f"Wallet {wallet.wallet_id} has no main wallet to sweep to.")
        main_wallet = await self._persistence.load_wallet(wallet.main_wallet_id)
        if main_wallet is None:
            raise PreconditionError(f"Main wallet {wallet.main_wallet_id} was not found.")
        destination = main_wallet.pubkey

        steps: list[JobStep] = []
        pool = job.pool
        if pool is not None:
            for mint in (pool.base_mint, pool.quote_mint):
                if mint == SOL_MINT:
                    continue
                steps.append(self._sweep_token_step(job, pool, mint))

        async def transfer_sol(owner: Pubkey) -> BuiltStep:
            balance = await self._ledger.get_balance(owner=owner, mint=SOL_MINT)
            lamports = balance - self._settings.gas_reserve_lamports
            if lamports <= 0:
                return BuiltStep(instructions=[])
            return BuiltStep(
                instructions=build_sol_transfer(owner=owner, destination=destination, lamports=lamports),
                amount_in=lamports,
                amount_out=lamports,
            )

        steps.append(JobStep(name="sweep:transfer", build=transfer_sol))
        return steps

    def _sweep_token_step(self, job: SwapJob, pool: PoolConfig, mint: str) -> JobStep:
        async def build(owner: Pubkey) -> BuiltStep:
            balance = await self._ledger.get_balance(owner=owner, mint=mint)
            if balance < self._settings.min_swap_amount:
                return BuiltStep(instructions=[])
            return await self._swap(
                pool=pool,
                input_mint=mint,
                output_mint=SOL_MINT,
                amount_in=balance,
                slippage_bps=job.slippage_bps,
                owner=owner,
            )

        return JobStep(name=f"sweep:{mint}", build=build)

    async def _rebalance_plan(self, job: SwapJob) -> JobPlan:
        if self._clmm is None:
            raise ExecutionError("Rebalance requested but no CLMM client is configured.")
        if not job.position_id:
            raise ExecutionError(f"Rebalance job {job.job_id} has no position id.")
        position = await self._persistence.load_position(job.position_id)
        if position is None:
            raise PreconditionError(f"Position {job.position_id} was not found.")
        if position.requires_operator:
            raise PreconditionError(f"Position {position.position_id} is waiting for an operator.")

        clmm = self._clmm
        pool = position.pool
        new_range: dict[str, int] = {}

        async def withdraw(owner: Pubkey) -> BuiltStep:
            instructions = await clmm.build_close_position(position=position, owner=owner)
            return BuiltStep(instructions=instructions)

        async def on_withdrawn() -> None:
            position.status = "withdrawn"
            await self._persistence.update_position(position)

        async def rebalance_swap(owner: Pubkey) -> BuiltStep:
            tick = await clmm.current_tick(pool=pool)
            base_balance, quote_balance = await self._usable_balances(owner=owner, pool=pool)
            # Raw quote units per raw base unit.
            raw_price = math.pow(1.0001, tick)
            base_value = base_balance * raw_price
            target_value = (base_value + quote_balance) / 2
            if base_value > target_value:
                input_mint, output_mint = pool.base_mint, pool.quote_mint
                amount_in = int((base_value - target_value) / raw_price)
            else:
                input_mint, output_mint = pool.quote_mint, pool.base_mint
                amount_in = int(target_value - base_value)
            if amount_in < self._settings.min_swap_amount:
                return BuiltStep(instructions=[])
            return await self._swap(
                pool=pool,
                input_mint=input_mint,
                output_mint=output_mint,
                amount_in=amount_in,
                slippage_bps=job.slippage_bps,
                owner=owner,
            )

        async def reopen(owner: Pubkey) -> BuiltStep:
            tick = await clmm.current_tick(pool=pool)
            lower_tick, upper_tick = position.recentred(tick)
            new_range["lower_tick"] = lower_tick
            new_range["upper_tick"] = upper_tick
            base_amount, quote_amount = await self._usable_balances(owner=owner, pool=pool)
            if base_amount <= 0 and quote_amount <= 0:
                raise InsufficientBalanceError(
                    f"No liquidity left to reopen position {position.position_id}.",
                    required=1,
                    available=0,
                )
            instructions = await clmm.build_open_position(
                pool=pool,
                lower_tick=lower_tick,
                upper_tick=upper_tick,
                base_amount=base_amount,
                quote_amount=quote_amount,
                owner=owner,
            )
            return BuiltStep(instructions=instructions, amount_in=base_amount + quote_amount)

        async def on_reopened() -> None:
            position.lower_tick = new_range["lower_tick"]
            position.upper_tick = new_range["upper_tick"]
            position.status = "open"
            position.requires_operator = False
            await self._persistence.update_position(position)
            log_event(
                self._logger,
                level="info",
                event="position_reopened",
                message="CLMM position reopened around the current tick",
                position_id=position.position_id,
                lower_tick=position.lower_tick,
                upper_tick=position.upper_tick,
            )

        steps = [
            JobStep(name="withdraw", build=withdraw, commits=True, on_confirmed=on_withdrawn),
            JobStep(name="swap", build=rebalance_swap),
            JobStep(name="reopen", build=reopen, on_confirmed=on_reopened),
        ]
        return JobPlan(steps=steps, position=position)

    async def _usable_balances(self, *, owner: Pubkey, pool: PoolConfig) -> tuple[int, int]:
        base = await self._ledger.get_balance(owner=owner, mint=pool.base_mint)
        quote = await self._ledger.get_balance(owner=owner, mint=pool.quote_mint)
        if pool.base_mint == SOL_MINT:
            base = max(0, base - self._settings.gas_reserve_lamports)
        if pool.quote_mint == SOL_MINT:
            quote = max(0, quote - self._settings.gas_reserve_lamports)
        return base, quote
