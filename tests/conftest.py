"""
Shared fixtures: in-memory collaborators for the execution core.

Every fake keeps just enough state for assertions; nothing touches the
network, Redis or Firestore.
"""
from __future__ import annotations

import logging
from dataclasses import replace
from typing import Any

import pytest
from solders.hash import Hash
from solders.keypair import Keypair
from solders.pubkey import Pubkey

from mmcore.trading.planner import BuiltStep, JobPlan, JobStep, PlannerSettings, StepPlanner
from mmcore.trading.supervisor import ExecutionSupervisor
from mmcore.trading.swap_queue import SwapQueue
from mmcore.trading.transactions import build_sol_transfer, transaction_reference
from mmcore.trading.types import (
    SOL_MINT,
    USDC_MINT,
    Bot,
    ClmmPosition,
    ConfirmationResult,
    LedgerContext,
    PoolConfig,
    PriceObservation,
    Quote,
    WalletRecord,
    WalletStatus,
)

GAS_RESERVE = 10_000_000


# =============================================================================
# Builders
# =============================================================================

def make_pool(symbol: str = "SOL/USDC", **overrides: Any) -> PoolConfig:
    fields: dict[str, Any] = {
        "pool_id": f"pool-{symbol}",
        "symbol": symbol,
        "base_mint": SOL_MINT,
        "quote_mint": USDC_MINT,
        "base_decimals": 9,
        "quote_decimals": 6,
        "tick_spacing": 10,
    }
    fields.update(overrides)
    return PoolConfig(**fields)


def make_bot(bot_id: str = "bot-1", *, wallet_id: str = "wallet-1", **overrides: Any) -> Bot:
    fields: dict[str, Any] = {
        "bot_id": bot_id,
        "pool": make_pool(),
        "mode": "inverse",
        "threshold": 0.02,
        "wallet_id": wallet_id,
        "buy_amount": 5_000_000,
        "sell_amount": 50_000_000,
        "slippage_bps": 50,
    }
    fields.update(overrides)
    return Bot(**fields)


def make_wallet(keypair: Keypair, wallet_id: str = "wallet-1", **overrides: Any) -> WalletRecord:
    fields: dict[str, Any] = {
        "wallet_id": wallet_id,
        "public_key": str(keypair.pubkey()),
        "encrypted_key_ref": wallet_id,
        "status": WalletStatus.ACTIVE,
    }
    fields.update(overrides)
    return WalletRecord(**fields)


# =============================================================================
# Fakes
# =============================================================================

class FakePersistence:
    def __init__(self) -> None:
        self.bots: dict[str, Bot] = {}
        self.wallets: dict[str, WalletRecord] = {}
        self.positions: dict[str, ClmmPosition] = {}
        self.audits: list[Any] = []
        self.bot_updates: list[tuple[str, dict[str, Any]]] = []
        self.fail_active_bots = False

    def add_bot(self, bot: Bot) -> Bot:
        self.bots[bot.bot_id] = bot
        return bot

    def add_wallet(self, wallet: WalletRecord) -> WalletRecord:
        self.wallets[wallet.wallet_id] = wallet
        return wallet

    def add_position(self, position: ClmmPosition) -> ClmmPosition:
        self.positions[position.position_id] = position
        return position

    async def load_active_bots(self) -> list[Bot]:
        if self.fail_active_bots:
            raise ConnectionError("firestore unavailable")
        return [replace(bot) for bot in self.bots.values() if bot.status == "active"]

    async def load_bot(self, bot_id: str) -> Bot | None:
        bot = self.bots.get(bot_id)
        return replace(bot) if bot else None

    async def load_wallet(self, wallet_id: str) -> WalletRecord | None:
        wallet = self.wallets.get(wallet_id)
        return replace(wallet) if wallet else None

    async def load_positions(self) -> list[ClmmPosition]:
        return [replace(position) for position in self.positions.values()]

    async def load_position(self, position_id: str) -> ClmmPosition | None:
        position = self.positions.get(position_id)
        return replace(position) if position else None

    async def append_audit(self, record: Any) -> None:
        self.audits.append(record)

    async def update_wallet(self, wallet: WalletRecord) -> None:
        self.wallets[wallet.wallet_id] = replace(wallet)

    async def update_bot(self, bot_id: str, fields: dict[str, Any]) -> None:
        self.bot_updates.append((bot_id, dict(fields)))
        bot = self.bots.get(bot_id)
        if bot is not None:
            for key, value in fields.items():
                setattr(bot, key, value)

    async def update_position(self, position: ClmmPosition) -> None:
        self.positions[position.position_id] = replace(position)


class FakeLedger:
    """Scripted ledger; unscripted confirmations succeed."""

    def __init__(self, balances: dict[str, int] | None = None) -> None:
        self.balances: dict[str, int] = dict(balances or {})
        self.context_calls = 0
        self.submitted: list[str] = []
        self.submit_errors: list[BaseException] = []
        self.confirm_script: list[ConfirmationResult] = []
        self.status_script: list[ConfirmationResult] = []
        self.default_status = ConfirmationResult(status="expired")
        self.status_checks: list[str] = []

    async def get_latest_context(self) -> LedgerContext:
        self.context_calls += 1
        return LedgerContext(blockhash=str(Hash.default()), last_valid_block_height=1_000)

    async def submit(self, transaction: Any) -> str:
        if self.submit_errors:
            raise self.submit_errors.pop(0)
        reference = transaction_reference(transaction)
        self.submitted.append(reference)
        return reference

    async def confirm(self, reference: str, *, context: LedgerContext, timeout_seconds: float) -> ConfirmationResult:
        if self.confirm_script:
            return self.confirm_script.pop(0)
        return ConfirmationResult(status="confirmed")

    async def signature_status(self, reference: str, *, context: LedgerContext) -> ConfirmationResult:
        self.status_checks.append(reference)
        if self.status_script:
            return self.status_script.pop(0)
        return self.default_status

    async def get_balance(self, *, owner: Pubkey, mint: str) -> int:
        return self.balances.get(mint, 0)


class FakeAmm:
    def __init__(self) -> None:
        self.quotes: list[Quote] = []

    async def quote(
        self,
        *,
        pool: PoolConfig | None,
        input_mint: str,
        output_mint: str,
        amount_in: int,
        slippage_bps: int,
    ) -> Quote:
        quote = Quote(
            input_mint=input_mint,
            output_mint=output_mint,
            amount_in=amount_in,
            amount_out=amount_in * 2,
            min_amount_out=amount_in,
        )
        self.quotes.append(quote)
        return quote

    async def build_swap(self, *, quote: Quote, owner: Pubkey) -> list[Any]:
        return build_sol_transfer(owner=owner, destination=Pubkey.new_unique(), lamports=1)


class FakeClmm:
    def __init__(self, tick: int = 0) -> None:
        self.tick = tick
        self.tick_reads: list[str] = []
        self.opened: list[tuple[int, int]] = []

    async def current_tick(self, *, pool: PoolConfig) -> int:
        self.tick_reads.append(pool.pool_id)
        return self.tick

    async def build_close_position(self, *, position: ClmmPosition, owner: Pubkey) -> list[Any]:
        return build_sol_transfer(owner=owner, destination=Pubkey.new_unique(), lamports=1)

    async def build_open_position(
        self,
        *,
        pool: PoolConfig,
        lower_tick: int,
        upper_tick: int,
        base_amount: int,
        quote_amount: int,
        owner: Pubkey,
    ) -> list[Any]:
        self.opened.append((lower_tick, upper_tick))
        return build_sol_transfer(owner=owner, destination=Pubkey.new_unique(), lamports=1)


class FakeNotifier:
    def __init__(self) -> None:
        self.alerts: list[tuple[str, str, dict[str, Any]]] = []

    async def alert(self, message: str, *, level: str = "warning", **details: Any) -> None:
        self.alerts.append((message, level, details))


class FakePriceFeed:
    def __init__(self, prices: dict[str, list[float]] | None = None) -> None:
        self.prices: dict[str, list[float]] = {symbol: list(values) for symbol, values in (prices or {}).items()}
        self.failing: set[str] = set()
        self.clock = 1_000.0

    async def latest_price(self, pool: PoolConfig) -> PriceObservation:
        if pool.symbol in self.failing:
            raise TimeoutError(f"price feed timed out for {pool.symbol}")
        self.clock += 1.0
        return PriceObservation(symbol=pool.symbol, price=self.prices[pool.symbol].pop(0), timestamp=self.clock)


class FakeGuardStore:
    def __init__(self) -> None:
        self.owners: dict[str, str] = {}
        self.released: list[str] = []

    async def acquire_wallet_guard(self, *, wallet_id: str, owner_token: str, ttl_seconds: int) -> bool:
        if wallet_id in self.owners:
            return False
        self.owners[wallet_id] = owner_token
        return True

    async def refresh_wallet_guard(self, *, wallet_id: str, owner_token: str, ttl_seconds: int) -> bool:
        return self.owners.get(wallet_id) == owner_token

    async def release_wallet_guard(self, *, wallet_id: str, owner_token: str) -> bool:
        if self.owners.get(wallet_id) != owner_token:
            return False
        del self.owners[wallet_id]
        self.released.append(wallet_id)
        return True


class FakeClock:
    """Virtual monotonic clock advanced only by the injected sleep."""

    def __init__(self) -> None:
        self.now = 0.0
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


class CredentialSource:
    def __init__(self, keypair: Keypair) -> None:
        self.keypair = keypair
        self.calls = 0
        self.error: Exception | None = None

    async def __call__(self, wallet_id: str) -> Keypair:
        self.calls += 1
        if self.error is not None:
            raise self.error
        return Keypair.from_bytes(bytes(self.keypair))


class TransferPlanner:
    """One-step plan per job that transfers a lamport; records execution order."""

    def __init__(self) -> None:
        self.started: list[str] = []

    async def plan(self, job: Any, wallet: WalletRecord) -> JobPlan:
        self.started.append(job.job_id)

        async def build(owner: Pubkey) -> BuiltStep:
            return BuiltStep(
                instructions=build_sol_transfer(owner=owner, destination=Pubkey.new_unique(), lamports=1),
                amount_in=job.amount_in or 1,
                amount_out=job.amount_in or 1,
            )

        return JobPlan(steps=[JobStep(name="swap", build=build)])


# =============================================================================
# Fixtures
# =============================================================================

@pytest.fixture
def logger() -> logging.Logger:
    return logging.getLogger("mmcore.tests")


@pytest.fixture
def keypair() -> Keypair:
    return Keypair()


@pytest.fixture
def persistence() -> FakePersistence:
    return FakePersistence()


@pytest.fixture
def ledger() -> FakeLedger:
    return FakeLedger(balances={SOL_MINT: 100_000_000, USDC_MINT: 1_000_000})


@pytest.fixture
def notifier() -> FakeNotifier:
    return FakeNotifier()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def credentials(keypair: Keypair) -> CredentialSource:
    return CredentialSource(keypair)


@pytest.fixture
def queue(logger: logging.Logger) -> SwapQueue:
    return SwapQueue(logger=logger, max_pending_per_wallet=64)


@pytest.fixture
def wallet(persistence: FakePersistence, keypair: Keypair) -> WalletRecord:
    return persistence.add_wallet(make_wallet(keypair))


@pytest.fixture
def make_supervisor(logger, queue, ledger, persistence, notifier, credentials, clock):
    def factory(planner: Any = None, **overrides: Any) -> ExecutionSupervisor:
        options: dict[str, Any] = {
            "logger": logger,
            "queue": queue,
            "planner": planner or TransferPlanner(),
            "ledger": ledger,
            "persistence": persistence,
            "notifier": notifier,
            "credentials": credentials,
            "sleep": clock.sleep,
            "clock": clock,
        }
        options.update(overrides)
        return ExecutionSupervisor(**options)

    return factory


@pytest.fixture
def step_planner(logger, ledger, persistence) -> StepPlanner:
    return StepPlanner(
        logger=logger,
        amm=FakeAmm(),
        ledger=ledger,
        persistence=persistence,
        clmm=FakeClmm(),
        settings=PlannerSettings(gas_reserve_lamports=GAS_RESERVE, split_ratio=0.5, min_swap_amount=1_000),
    )
