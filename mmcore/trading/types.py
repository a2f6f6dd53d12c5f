from __future__ import annotations

import math
import os
import uuid
from dataclasses import asdict, dataclass, field
from enum import IntEnum
from typing import Any, Literal, Protocol

from solders.instruction import Instruction
from solders.keypair import Keypair
from solders.pubkey import Pubkey
from solders.transaction import VersionedTransaction

from mmcore.common import now_iso, to_bool, to_float, to_int

SOL_MINT = "So11111111111111111111111111111111111111112"
USDC_MINT = "EPjFWdd5AufqSSqeM2qN1xzybapC8G4wEGGkZwyTDt1v"

TradeMode = Literal["inverse", "reverse"]
BotStatus = Literal["active", "stopped"]
Signal = Literal["buy", "sell", "hold"]
SwapDirection = Literal["buy", "sell"]
JobKind = Literal["trade", "split", "sweep", "rebalance"]
JobState = Literal["pending", "in_flight", "succeeded", "failed_permanently", "partial_rebalance"]
PositionStatus = Literal["open", "rebalancing", "withdrawn", "closed"]
ConfirmationStatus = Literal["confirmed", "failed", "timeout", "pending", "expired"]

JOB_PENDING: JobState = "pending"
JOB_IN_FLIGHT: JobState = "in_flight"
JOB_SUCCEEDED: JobState = "succeeded"
JOB_FAILED_PERMANENTLY: JobState = "failed_permanently"
JOB_PARTIAL_REBALANCE: JobState = "partial_rebalance"
TERMINAL_JOB_STATES = frozenset({JOB_SUCCEEDED, JOB_FAILED_PERMANENTLY, JOB_PARTIAL_REBALANCE})


def normalize_trade_mode(value: Any) -> TradeMode:
    mode = str(value or "").strip().lower()
    if mode in {"inverse", "reverse"}:
        return mode  # type: ignore[return-value]
    raise ValueError(f"Unsupported trade mode: {value!r}")


class WalletStatus(IntEnum):
    CREATED = 0
    READY = 1
    ACTIVE = 2


@dataclass(slots=True, frozen=True)
class PoolConfig:
    pool_id: str
    symbol: str
    base_mint: str
    quote_mint: str
    base_decimals: int
    quote_decimals: int
    tick_spacing: int = 1

    def mints_for(self, direction: SwapDirection) -> tuple[str, str]:
        if direction == "buy":
            return self.quote_mint, self.base_mint
        return self.base_mint, self.quote_mint

    def price_at_tick(self, tick: int) -> float:
        """Quote units per one base unit at ``tick`` (Uniswap-style 1.0001^tick)."""
        return math.pow(1.0001, tick) * (10 ** (self.base_decimals - self.quote_decimals))

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> "PoolConfig":
        return cls(
            pool_id=str(payload.get("pool_id") or ""),
            symbol=str(payload.get("symbol") or ""),
            base_mint=str(payload.get("base_mint") or SOL_MINT),
            quote_mint=str(payload.get("quote_mint") or USDC_MINT),
            base_decimals=to_int(payload.get("base_decimals"), 9),
            quote_decimals=to_int(payload.get("quote_decimals"), 6),
            tick_spacing=max(1, to_int(payload.get("tick_spacing"), 1)),
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(slots=True, frozen=True)
class RuntimeConfig:
    config_schema_version: int
    trade_enabled: bool
    range_monitor_enabled: bool
    slippage_bps_override: int | None = None

    @classmethod
    def from_env_defaults(cls) -> "RuntimeConfig":
        override = to_int(os.getenv("SLIPPAGE_BPS_OVERRIDE"), 0)
        return cls(
            config_schema_version=max(1, to_int(os.getenv("CONFIG_SCHEMA_VERSION"), 1)),
            trade_enabled=to_bool(os.getenv("TRADE_ENABLED"), False),
            range_monitor_enabled=to_bool(os.getenv("RANGE_MONITOR_ENABLED"), True),
            slippage_bps_override=override if override > 0 else None,
        )

    @classmethod
    def from_redis(cls, redis_config: dict[str, str], defaults: "RuntimeConfig") -> "RuntimeConfig":
        schema_raw = redis_config.get("schema_version") or redis_config.get("config_schema_version")
        override = to_int(redis_config.get("slippage_bps_override"), defaults.slippage_bps_override or 0)
        return cls(
            config_schema_version=max(1, to_int(schema_raw, defaults.config_schema_version)),
            trade_enabled=to_bool(redis_config.get("trade_enabled"), defaults.trade_enabled),
            range_monitor_enabled=to_bool(
                redis_config.get("range_monitor_enabled"),
                defaults.range_monitor_enabled,
            ),
            slippage_bps_override=override if override > 0 else None,
        )


@dataclass(slots=True)
class Bot:
    bot_id: str
    pool: PoolConfig
    mode: TradeMode
    threshold: float
    wallet_id: str
    status: BotStatus = "active"
    buy_amount: int = 0
    sell_amount: int = 0
    slippage_bps: int = 50
    last_price: float | None = None
    last_signal: Signal | None = None

    @property
    def is_active(self) -> bool:
        return self.status == "active"

    def amount_for(self, direction: SwapDirection) -> int:
        return self.buy_amount if direction == "buy" else self.sell_amount

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> "Bot":
        last_price = payload.get("last_price")
        return cls(
            bot_id=str(payload["bot_id"]),
            pool=PoolConfig.from_dict(payload.get("pool") or {}),
            mode=normalize_trade_mode(payload.get("mode")),
            threshold=abs(to_float(payload.get("threshold"), 0.0)),
            wallet_id=str(payload["wallet_id"]),
            status="stopped" if str(payload.get("status") or "active") == "stopped" else "active",
            buy_amount=max(0, to_int(payload.get("buy_amount"), 0)),
            sell_amount=max(0, to_int(payload.get("sell_amount"), 0)),
            slippage_bps=max(1, to_int(payload.get("slippage_bps"), 50)),
            last_price=to_float(last_price, 0.0) if last_price is not None else None,
            last_signal=payload.get("last_signal"),
        )

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["pool"] = self.pool.to_dict()
        return payload


@dataclass(slots=True)
class WalletRecord:
    wallet_id: str
    public_key: str
    encrypted_key_ref: str
    status: WalletStatus = WalletStatus.CREATED
    main_wallet_id: str | None = None
    bot_id: str | None = None
    archived: bool = False

    @property
    def pubkey(self) -> Pubkey:
        return Pubkey.from_string(self.public_key)

    def snapshot(self) -> dict[str, Any]:
        return {
            "wallet_id": self.wallet_id,
            "public_key": self.public_key,
            "status": int(self.status),
            "bot_id": self.bot_id,
            "archived": self.archived,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> "WalletRecord":
        return cls(
            wallet_id=str(payload["wallet_id"]),
            public_key=str(payload["public_key"]),
            encrypted_key_ref=str(payload.get("encrypted_key_ref") or payload["wallet_id"]),
            status=WalletStatus(to_int(payload.get("status"), 0)),
            main_wallet_id=payload.get("main_wallet_id") or None,
            bot_id=payload.get("bot_id") or None,
            archived=bool(payload.get("archived", False)),
        )

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["status"] = int(self.status)
        return payload


@dataclass(slots=True)
class SwapJob:
    job_id: str
    wallet_id: str
    kind: JobKind
    bot_id: str | None = None
    direction: SwapDirection | None = None
    amount_in: int | None = None
    pool: PoolConfig | None = None
    position_id: str | None = None
    slippage_bps: int = 50
    state: JobState = JOB_PENDING
    attempts: int = 0
    created_at: str = field(default_factory=now_iso)
    started_at: str | None = None
    finished_at: str | None = None
    last_error: str | None = None
    completed_steps: list[str] = field(default_factory=list)
    signatures: list[str] = field(default_factory=list)

    @classmethod
    def new(cls, *, wallet_id: str, kind: JobKind, **fields: Any) -> "SwapJob":
        return cls(job_id=f"job-{uuid.uuid4().hex[:20]}", wallet_id=wallet_id, kind=kind, **fields)

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_JOB_STATES

    def transition(self, state: JobState, *, error: str | None = None) -> None:
        if self.is_terminal:
            raise RuntimeError(f"Job {self.job_id} is already terminal ({self.state}).")
        self.state = state
        if state == JOB_IN_FLIGHT and self.started_at is None:
            self.started_at = now_iso()
        if state in TERMINAL_JOB_STATES:
            self.finished_at = now_iso()
        if error is not None:
            self.last_error = error

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["pool"] = self.pool.to_dict() if self.pool else None
        return payload


@dataclass(slots=True, frozen=True)
class PriceObservation:
    symbol: str
    price: float
    timestamp: float


@dataclass(slots=True, frozen=True)
class TradeDecision:
    signal: Signal
    change: float | None
    threshold: float
    reason: str


@dataclass(slots=True, frozen=True)
class TradeIntent:
    bot_id: str
    wallet_id: str
    direction: SwapDirection
    pool: PoolConfig
    amount_in: int
    slippage_bps: int
    price: float
    change: float

    def to_job(self) -> SwapJob:
        return SwapJob.new(
            wallet_id=self.wallet_id,
            kind="trade",
            bot_id=self.bot_id,
            direction=self.direction,
            amount_in=self.amount_in,
            pool=self.pool,
            slippage_bps=self.slippage_bps,
        )


@dataclass(slots=True, frozen=True)
class AuditRecord:
    job_id: str
    wallet_id: str
    bot_id: str | None
    kind: JobKind
    state: JobState
    signatures: tuple[str, ...]
    amount_in: int
    amount_out: int
    attempts: int
    wallet_snapshot: dict[str, Any]
    error: str | None = None
    recorded_at: str = field(default_factory=now_iso)

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["signatures"] = list(self.signatures)
        return payload


@dataclass(slots=True)
class ClmmPosition:
    position_id: str
    wallet_id: str
    pool: PoolConfig
    lower_tick: int
    upper_tick: int
    status: PositionStatus = "open"
    requires_operator: bool = False

    @property
    def width(self) -> int:
        return self.upper_tick - self.lower_tick

    def in_range(self, tick: int) -> bool:
        return self.lower_tick <= tick <= self.upper_tick

    def recentred(self, tick: int) -> tuple[int, int]:
        """Range of the same width around ``tick``, aligned to the pool tick spacing."""
        spacing = max(1, self.pool.tick_spacing)
        width = max(spacing, self.width)
        lower = ((tick - width // 2) // spacing) * spacing
        return lower, lower + width

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> "ClmmPosition":
        return cls(
            position_id=str(payload["position_id"]),
            wallet_id=str(payload["wallet_id"]),
            pool=PoolConfig.from_dict(payload.get("pool") or {}),
            lower_tick=to_int(payload.get("lower_tick"), 0),
            upper_tick=to_int(payload.get("upper_tick"), 0),
            status=payload.get("status") or "open",
            requires_operator=bool(payload.get("requires_operator", False)),
        )

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["pool"] = self.pool.to_dict()
        return payload


@dataclass(slots=True, frozen=True)
class Quote:
    input_mint: str
    output_mint: str
    amount_in: int
    amount_out: int
    min_amount_out: int
    raw: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True, frozen=True)
class LedgerContext:
    blockhash: str
    last_valid_block_height: int | None = None


@dataclass(slots=True, frozen=True)
class ConfirmationResult:
    status: ConfirmationStatus
    error: str | None = None
    slot: int | None = None


class AmmClient(Protocol):
    async def quote(
        self,
        *,
        pool: PoolConfig | None,
        input_mint: str,
        output_mint: str,
        amount_in: int,
        slippage_bps: int,
    ) -> Quote:
        ...

    async def build_swap(self, *, quote: Quote, owner: Pubkey) -> list[Instruction]:
        ...


class ClmmClient(Protocol):
    async def current_tick(self, *, pool: PoolConfig) -> int:
        ...

    async def build_close_position(self, *, position: ClmmPosition, owner: Pubkey) -> list[Instruction]:
        ...

    async def build_open_position(
        self,
        *,
        pool: PoolConfig,
        lower_tick: int,
        upper_tick: int,
        base_amount: int,
        quote_amount: int,
        owner: Pubkey,
    ) -> list[Instruction]:
        ...


class LedgerClient(Protocol):
    async def get_latest_context(self) -> LedgerContext:
        ...

    async def submit(self, transaction: VersionedTransaction) -> str:
        ...

    async def confirm(
        self,
        reference: str,
        *,
        context: LedgerContext,
        timeout_seconds: float,
    ) -> ConfirmationResult:
        ...

    async def signature_status(self, reference: str, *, context: LedgerContext) -> ConfirmationResult:
        ...

    async def get_balance(self, *, owner: Pubkey, mint: str) -> int:
        ...


class KeyVault(Protocol):
    async def decrypt(self, wallet: WalletRecord) -> Keypair:
        ...


class Persistence(Protocol):
    async def load_active_bots(self) -> list[Bot]:
        ...

    async def load_bot(self, bot_id: str) -> Bot | None:
        ...

    async def load_wallet(self, wallet_id: str) -> WalletRecord | None:
        ...

    async def load_positions(self) -> list[ClmmPosition]:
        ...

    async def load_position(self, position_id: str) -> ClmmPosition | None:
        ...

    async def append_audit(self, record: AuditRecord) -> None:
        ...

    async def update_wallet(self, wallet: WalletRecord) -> None:
        ...

    async def update_bot(self, bot_id: str, fields: dict[str, Any]) -> None:
        ...

    async def update_position(self, position: ClmmPosition) -> None:
        ...


class Notifier(Protocol):
    async def alert(self, message: str, *, level: str = "warning", **details: Any) -> None:
        ...


class PriceFeed(Protocol):
    async def latest_price(self, pool: PoolConfig) -> PriceObservation:
        ...


class WalletGuardStore(Protocol):
    async def acquire_wallet_guard(self, *, wallet_id: str, owner_token: str, ttl_seconds: int) -> bool:
        ...

    async def refresh_wallet_guard(self, *, wallet_id: str, owner_token: str, ttl_seconds: int) -> bool:
        ...

    async def release_wallet_guard(self, *, wallet_id: str, owner_token: str) -> bool:
        ...
