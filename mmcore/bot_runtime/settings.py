from __future__ import annotations

import os
from dataclasses import dataclass

from mmcore.common import to_bool, to_float, to_float_tuple, to_int


def normalize_commitment(value: str) -> str:
    commitment = (value or "").strip().lower()
    if commitment in {"processed", "confirmed", "finalized"}:
        return commitment
    return "confirmed"


@dataclass(slots=True)
class AppSettings:
    bot_tick_interval_seconds: float
    range_tick_interval_seconds: float
    error_backoff_seconds: float
    max_concurrent_wallets: int
    max_concurrent_bots: int
    max_concurrent_positions: int
    max_pending_per_wallet: int
    retry_delays_seconds: tuple[float, ...]
    confirm_timeout_seconds: float
    confirm_poll_interval_seconds: float
    gas_reserve_lamports: int
    min_balance_lamports: int
    split_ratio: float
    min_swap_amount: int
    rebalance_slippage_bps: int
    wallet_guard_enabled: bool
    wallet_guard_ttl_seconds: int
    solana_rpc_url: str
    rpc_commitment: str
    jupiter_api_url: str
    jupiter_api_key: str
    price_quote_slippage_bps: int
    dry_run: bool
    dry_run_balance_lamports: int
    vault_key: str
    vault_salt: str
    clmm_client_factory: str
    alert_webhook_url: str

    @classmethod
    def from_env(cls) -> "AppSettings":
        return cls(
            bot_tick_interval_seconds=max(0.5, to_float(os.getenv("BOT_TICK_INTERVAL_SECONDS"), 5.0)),
            range_tick_interval_seconds=max(1.0, to_float(os.getenv("RANGE_TICK_INTERVAL_SECONDS"), 30.0)),
            error_backoff_seconds=max(0.2, to_float(os.getenv("ERROR_BACKOFF_SECONDS"), 2.0)),
            max_concurrent_wallets=max(1, to_int(os.getenv("MAX_CONCURRENT_WALLETS"), 8)),
            max_concurrent_bots=max(1, to_int(os.getenv("MAX_CONCURRENT_BOTS"), 16)),
            max_concurrent_positions=max(1, to_int(os.getenv("MAX_CONCURRENT_POSITIONS"), 4)),
            max_pending_per_wallet=max(1, to_int(os.getenv("MAX_PENDING_PER_WALLET"), 16)),
            retry_delays_seconds=to_float_tuple(os.getenv("RETRY_DELAYS_SECONDS"), (2.0, 4.0, 8.0)),
            confirm_timeout_seconds=max(1.0, to_float(os.getenv("CONFIRM_TIMEOUT_SECONDS"), 30.0)),
            confirm_poll_interval_seconds=max(
                0.25,
                to_float(os.getenv("CONFIRM_POLL_INTERVAL_SECONDS"), 1.0),
            ),
            gas_reserve_lamports=max(0, to_int(os.getenv("GAS_RESERVE_LAMPORTS"), 10_000_000)),
            min_balance_lamports=max(0, to_int(os.getenv("MIN_BALANCE_LAMPORTS"), 50_000_000)),
            split_ratio=min(1.0, max(0.0, to_float(os.getenv("SPLIT_RATIO"), 0.5))),
            min_swap_amount=max(1, to_int(os.getenv("MIN_SWAP_AMOUNT"), 1_000)),
            rebalance_slippage_bps=max(1, to_int(os.getenv("REBALANCE_SLIPPAGE_BPS"), 100)),
            wallet_guard_enabled=to_bool(os.getenv("WALLET_GUARD_ENABLED"), True),
            wallet_guard_ttl_seconds=max(10, to_int(os.getenv("WALLET_GUARD_TTL_SECONDS"), 120)),
            solana_rpc_url=os.getenv("SOLANA_RPC_URL", "").strip(),
            rpc_commitment=normalize_commitment(os.getenv("RPC_COMMITMENT", "confirmed")),
            jupiter_api_url=os.getenv("JUPITER_API_URL", "https://api.jup.ag/swap/v1").strip(),
            jupiter_api_key=os.getenv("JUPITER_API_KEY", "").strip(),
            price_quote_slippage_bps=max(1, to_int(os.getenv("PRICE_QUOTE_SLIPPAGE_BPS"), 50)),
            dry_run=to_bool(os.getenv("DRY_RUN"), True),
            dry_run_balance_lamports=max(0, to_int(os.getenv("DRY_RUN_BALANCE_LAMPORTS"), 0)),
            vault_key=os.getenv("VAULT_KEY", ""),
            vault_salt=os.getenv("VAULT_SALT", ""),
            clmm_client_factory=os.getenv("CLMM_CLIENT_FACTORY", "").strip(),
            alert_webhook_url=os.getenv("ALERT_WEBHOOK_URL", "").strip(),
        )
