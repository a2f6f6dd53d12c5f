from __future__ import annotations

import asyncio
import logging

from solders.keypair import Keypair

from mmcore.common import log_event

from .errors import (
    CredentialDecryptionError,
    ExecutionError,
    InsufficientBalanceError,
    InvalidWalletTransitionError,
    PreconditionError,
    WalletLockedError,
)
from .supervisor import ExecutionSupervisor
from .swap_queue import SwapQueue
from .types import (
    JOB_SUCCEEDED,
    SOL_MINT,
    Bot,
    KeyVault,
    LedgerClient,
    Persistence,
    SwapJob,
    WalletRecord,
    WalletStatus,
)

# (from, event) -> to. Anything not listed is rejected.
WALLET_TRANSITIONS: dict[tuple[WalletStatus, str], WalletStatus] = {
    (WalletStatus.CREATED, "confirm_funding"): WalletStatus.READY,
    (WalletStatus.READY, "assign_bot"): WalletStatus.ACTIVE,
    (WalletStatus.ACTIVE, "decommission"): WalletStatus.CREATED,
}


class WalletLedger:
    """Drives funding wallets through Created -> Ready -> Active -> Created."""

    def __init__(
        self,
        *,
        logger: logging.Logger,
        persistence: Persistence,
        vault: KeyVault,
        ledger: LedgerClient,
        queue: SwapQueue,
        supervisor: ExecutionSupervisor,
        min_balance_lamports: int = 50_000_000,
    ) -> None:
        self._logger = logger
        self._persistence = persistence
        self._vault = vault
        self._ledger = ledger
        self._queue = queue
        self._supervisor = supervisor
        self._min_balance_lamports = max(0, min_balance_lamports)
        self._transition_locks: dict[str, asyncio.Lock] = {}

    def _transition_lock(self, wallet_id: str) -> asyncio.Lock:
        return self._transition_locks.setdefault(wallet_id, asyncio.Lock())

    async def _load(self, wallet_id: str) -> WalletRecord:
        wallet = await self._persistence.load_wallet(wallet_id)
        if wallet is None:
            raise PreconditionError(f"Wallet {wallet_id} was not found.")
        return wallet

    def _target(self, wallet: WalletRecord, event: str) -> WalletStatus:
        target = WALLET_TRANSITIONS.get((wallet.status, event))
        if target is None or wallet.archived:
            raise InvalidWalletTransitionError(
                f"Wallet {wallet.wallet_id} cannot {event} from {wallet.status.name}"
                + (" (archived)" if wallet.archived else "")
            )
        return target

    def _ensure_unlocked(self, wallet_id: str) -> None:
        if self._queue.is_locked(wallet_id) or self._queue.in_flight(wallet_id) is not None:
            raise WalletLockedError(f"Wallet {wallet_id} has a job in flight.")

    async def _sol_balance(self, wallet: WalletRecord) -> int:
        return await self._ledger.get_balance(owner=wallet.pubkey, mint=SOL_MINT)

    async def _commit(self, wallet: WalletRecord, *, event: str, previous: WalletStatus) -> None:
        await self._persistence.update_wallet(wallet)
        log_event(
            self._logger,
            level="info",
            event="wallet_status_changed",
            message="Wallet status changed",
            wallet_id=wallet.wallet_id,
            transition=event,
            from_status=previous.name,
            to_status=wallet.status.name,
            bot_id=wallet.bot_id,
            archived=wallet.archived,
        )

    async def confirm_funding(self, wallet_id: str) -> WalletRecord:
        async with self._transition_lock(wallet_id):
            self._ensure_unlocked(wallet_id)
            wallet = await self._load(wallet_id)
            target = self._target(wallet, "confirm_funding")

            balance = await self._sol_balance(wallet)
            if balance < self._min_balance_lamports:
                raise InsufficientBalanceError(
                    f"Wallet {wallet_id} holds {balance} lamports; {self._min_balance_lamports} required.",
                    required=self._min_balance_lamports,
                    available=balance,
                )

            previous = wallet.status
            wallet.status = target
            await self._commit(wallet, event="confirm_funding", previous=previous)
            return wallet

    async def assign_bot(self, wallet_id: str, bot: Bot) -> SwapJob:
        async with self._transition_lock(wallet_id):
            self._ensure_unlocked(wallet_id)
            wallet = await self._load(wallet_id)
            target = self._target(wallet, "assign_bot")
            if bot.wallet_id != wallet_id:
                raise PreconditionError(f"Bot {bot.bot_id} is bound to wallet {bot.wallet_id}, not {wallet_id}.")

            balance = await self._sol_balance(wallet)
            if balance <= self._min_balance_lamports:
                raise InsufficientBalanceError(
                    f"Wallet {wallet_id} holds {balance} lamports; more than {self._min_balance_lamports} required.",
                    required=self._min_balance_lamports + 1,
                    available=balance,
                )

            job = SwapJob.new(
                wallet_id=wallet_id,
                kind="split",
                bot_id=bot.bot_id,
                pool=bot.pool,
                slippage_bps=bot.slippage_bps,
            )
            await self._supervisor.run_exclusive(job)
            if job.state != JOB_SUCCEEDED:
                raise ExecutionError(f"Fund split for wallet {wallet_id} failed: {job.last_error}")

            previous = wallet.status
            wallet.status = target
            wallet.bot_id = bot.bot_id
            await self._commit(wallet, event="assign_bot", previous=previous)
            await self._persistence.update_bot(bot.bot_id, {"status": "active", "wallet_id": wallet_id})
            return job

    async def decommission(self, wallet_id: str, *, archive: bool = False) -> SwapJob:
        async with self._transition_lock(wallet_id):
            self._ensure_unlocked(wallet_id)
            wallet = await self._load(wallet_id)
            target = self._target(wallet, "decommission")

            pool = None
            if wallet.bot_id:
                bot = await self._persistence.load_bot(wallet.bot_id)
                pool = bot.pool if bot else None
                await self._persistence.update_bot(wallet.bot_id, {"status": "stopped"})
                self._queue.cancel_bot(wallet.bot_id)

            job = SwapJob.new(wallet_id=wallet_id, kind="sweep", bot_id=wallet.bot_id, pool=pool)
            await self._supervisor.run_exclusive(job)
            if job.state != JOB_SUCCEEDED:
                raise ExecutionError(f"Sweep of wallet {wallet_id} failed: {job.last_error}")

            previous = wallet.status
            wallet.status = target
            wallet.bot_id = None
            wallet.archived = archive
            await self._commit(wallet, event="decommission", previous=previous)
            return job

    async def signing_credential(self, wallet_id: str) -> Keypair:
        wallet = await self._load(wallet_id)
        try:
            return await self._vault.decrypt(wallet)
        except CredentialDecryptionError:
            raise
        except Exception as error:
            raise CredentialDecryptionError(f"Failed to decrypt key for wallet {wallet_id}: {error}") from error
