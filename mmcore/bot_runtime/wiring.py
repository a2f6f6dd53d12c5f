from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

from solders.keypair import Keypair

from mmcore.storage import StorageGateway, StorageSettings
from mmcore.trading import (
    DryRunLedgerClient,
    ExecutionSupervisor,
    FanoutNotifier,
    FernetKeyVault,
    JupiterPriceFeed,
    JupiterSwapClient,
    PlannerSettings,
    PriceCache,
    RangeMonitor,
    RuntimeConfig,
    Scheduler,
    SignalEngine,
    SolanaLedgerClient,
    StepPlanner,
    StorageEventNotifier,
    SwapQueue,
    WalletLedger,
    WebhookNotifier,
    load_clmm_client,
)

from .settings import AppSettings


@dataclass(slots=True)
class Runtime:
    storage: StorageGateway
    ledger: SolanaLedgerClient | DryRunLedgerClient
    swap_client: JupiterSwapClient
    notifier: FanoutNotifier
    queue: SwapQueue
    supervisor: ExecutionSupervisor
    wallet_ledger: WalletLedger
    scheduler: Scheduler
    range_monitor: RangeMonitor | None
    vault: FernetKeyVault
    runtime_defaults: RuntimeConfig
    clients: list[Any] = field(default_factory=list)


def build_ledger(
    *,
    logger: logging.Logger,
    app_settings: AppSettings,
) -> SolanaLedgerClient | DryRunLedgerClient:
    rpc_ledger = None
    if app_settings.solana_rpc_url:
        rpc_ledger = SolanaLedgerClient(
            logger=logger,
            rpc_url=app_settings.solana_rpc_url,
            commitment=app_settings.rpc_commitment,
            poll_interval_seconds=app_settings.confirm_poll_interval_seconds,
        )

    if app_settings.dry_run:
        return DryRunLedgerClient(
            logger=logger,
            inner=rpc_ledger,
            simulated_balance=app_settings.dry_run_balance_lamports,
        )
    if rpc_ledger is None:
        raise ValueError("SOLANA_RPC_URL is required when DRY_RUN is disabled.")
    return rpc_ledger


def build_runtime(
    *,
    logger: logging.Logger,
    app_settings: AppSettings,
    storage_settings: StorageSettings,
) -> Runtime:
    storage = StorageGateway(storage_settings, logger)
    ledger = build_ledger(logger=logger, app_settings=app_settings)
    swap_client = JupiterSwapClient(
        logger=logger,
        api_base_url=app_settings.jupiter_api_url,
        api_key=app_settings.jupiter_api_key,
    )
    price_feed = JupiterPriceFeed(swap_client=swap_client, slippage_bps=app_settings.price_quote_slippage_bps)
    clmm = load_clmm_client(
        app_settings.clmm_client_factory,
        logger=logger,
        rpc_url=app_settings.solana_rpc_url,
    )

    channels: list[Any] = [StorageEventNotifier(logger=logger, publisher=storage)]
    clients: list[Any] = [ledger, swap_client]
    if app_settings.alert_webhook_url:
        webhook = WebhookNotifier(
            logger=logger,
            webhook_url=app_settings.alert_webhook_url,
            service_id=storage_settings.service_id,
        )
        channels.append(webhook)
        clients.append(webhook)
    if clmm is not None and callable(getattr(clmm, "connect", None)):
        clients.append(clmm)
    notifier = FanoutNotifier(logger=logger, channels=channels)

    queue = SwapQueue(
        logger=logger,
        max_pending_per_wallet=app_settings.max_pending_per_wallet,
        guard_store=storage if app_settings.wallet_guard_enabled else None,
        guard_ttl_seconds=app_settings.wallet_guard_ttl_seconds,
    )
    planner = StepPlanner(
        logger=logger,
        amm=swap_client,
        ledger=ledger,
        persistence=storage,
        clmm=clmm,
        settings=PlannerSettings(
            gas_reserve_lamports=app_settings.gas_reserve_lamports,
            split_ratio=app_settings.split_ratio,
            min_swap_amount=app_settings.min_swap_amount,
        ),
    )
    vault = FernetKeyVault(
        master_key=app_settings.vault_key,
        blob_source=storage.load_encrypted_key,
        salt=app_settings.vault_salt,
    )

    wallet_ledger: WalletLedger | None = None

    async def signing_credential(wallet_id: str) -> Keypair:
        if wallet_ledger is None:
            raise RuntimeError("Wallet ledger is not initialized.")
        return await wallet_ledger.signing_credential(wallet_id)

    supervisor = ExecutionSupervisor(
        logger=logger,
        queue=queue,
        planner=planner,
        ledger=ledger,
        persistence=storage,
        notifier=notifier,
        credentials=signing_credential,
        retry_delays=app_settings.retry_delays_seconds,
        confirm_timeout_seconds=app_settings.confirm_timeout_seconds,
        max_concurrent_wallets=app_settings.max_concurrent_wallets,
    )
    wallet_ledger = WalletLedger(
        logger=logger,
        persistence=storage,
        vault=vault,
        ledger=ledger,
        queue=queue,
        supervisor=supervisor,
        min_balance_lamports=app_settings.min_balance_lamports,
    )

    runtime_defaults = RuntimeConfig.from_env_defaults()
    scheduler = Scheduler(
        logger=logger,
        persistence=storage,
        price_feed=price_feed,
        price_cache=PriceCache(logger=logger),
        signal_engine=SignalEngine(logger=logger),
        queue=queue,
        supervisor=supervisor,
        runtime_defaults=runtime_defaults,
        max_concurrent_bots=app_settings.max_concurrent_bots,
    )
    range_monitor = None
    if clmm is not None:
        range_monitor = RangeMonitor(
            logger=logger,
            persistence=storage,
            clmm=clmm,
            queue=queue,
            supervisor=supervisor,
            notifier=notifier,
            max_concurrent_positions=app_settings.max_concurrent_positions,
            slippage_bps=app_settings.rebalance_slippage_bps,
        )

    return Runtime(
        storage=storage,
        ledger=ledger,
        swap_client=swap_client,
        notifier=notifier,
        queue=queue,
        supervisor=supervisor,
        wallet_ledger=wallet_ledger,
        scheduler=scheduler,
        range_monitor=range_monitor,
        vault=vault,
        runtime_defaults=runtime_defaults,
        clients=clients,
    )
