from __future__ import annotations

import argparse
import asyncio
import json
import sys
from typing import Any

from dotenv import load_dotenv
from solders.keypair import Keypair

from mmcore.common import guarded_call
from mmcore.storage import StorageSettings
from mmcore.trading import WalletRecord, WalletStatus

from .logging import setup_logger
from .settings import AppSettings
from .wiring import Runtime, build_runtime


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Operator commands for funding wallets, bots and CLMM positions.",
    )
    commands = parser.add_subparsers(dest="command", required=True)

    register = commands.add_parser("register-wallet", help="Generate a funding wallet and store its encrypted key.")
    register.add_argument("wallet_id")
    register.add_argument("--main-wallet-id", default=None, help="Wallet that receives swept funds.")

    funding = commands.add_parser("confirm-funding", help="Created -> Ready once the balance reaches the minimum.")
    funding.add_argument("wallet_id")

    assign = commands.add_parser("assign-bot", help="Ready -> Active; splits funds for the bot's pair.")
    assign.add_argument("wallet_id")
    assign.add_argument("bot_id")

    decommission = commands.add_parser("decommission", help="Active -> Created; stops the bot and sweeps funds.")
    decommission.add_argument("wallet_id")
    decommission.add_argument("--archive", action="store_true")

    stop = commands.add_parser("stop-bot", help="Mark a bot stopped.")
    stop.add_argument("bot_id")

    resolve = commands.add_parser("resolve-position", help="Clear the operator flag on a CLMM position.")
    resolve.add_argument("position_id")
    resolve.add_argument("--status", choices=("open", "closed"), required=True)
    resolve.add_argument("--lower-tick", type=int, default=None)
    resolve.add_argument("--upper-tick", type=int, default=None)

    return parser.parse_args(argv)


async def register_wallet(runtime: Runtime, *, wallet_id: str, main_wallet_id: str | None) -> dict[str, Any]:
    existing = await runtime.storage.load_wallet(wallet_id)
    if existing is not None:
        raise ValueError(f"Wallet {wallet_id} already exists.")

    keypair = Keypair()
    await runtime.storage.store_encrypted_key(wallet_id, runtime.vault.encrypt(keypair))
    wallet = WalletRecord(
        wallet_id=wallet_id,
        public_key=str(keypair.pubkey()),
        encrypted_key_ref=wallet_id,
        status=WalletStatus.CREATED,
        main_wallet_id=main_wallet_id,
    )
    await runtime.storage.update_wallet(wallet)
    return wallet.snapshot()


async def run_command(runtime: Runtime, args: argparse.Namespace) -> dict[str, Any]:
    if args.command == "register-wallet":
        return await register_wallet(runtime, wallet_id=args.wallet_id, main_wallet_id=args.main_wallet_id)

    if args.command == "confirm-funding":
        wallet = await runtime.wallet_ledger.confirm_funding(args.wallet_id)
        return wallet.snapshot()

    if args.command == "assign-bot":
        bot = await runtime.storage.load_bot(args.bot_id)
        if bot is None:
            raise ValueError(f"Bot {args.bot_id} was not found.")
        job = await runtime.wallet_ledger.assign_bot(args.wallet_id, bot)
        return job.to_dict()

    if args.command == "decommission":
        job = await runtime.wallet_ledger.decommission(args.wallet_id, archive=args.archive)
        return job.to_dict()

    if args.command == "stop-bot":
        dropped = await runtime.scheduler.stop_bot(args.bot_id)
        return {"bot_id": args.bot_id, "dropped_jobs": [job.job_id for job in dropped]}

    if args.command == "resolve-position":
        if runtime.range_monitor is None:
            raise ValueError("CLMM_CLIENT_FACTORY is not configured.")
        position = await runtime.range_monitor.resolve_position(
            args.position_id,
            status=args.status,
            lower_tick=args.lower_tick,
            upper_tick=args.upper_tick,
        )
        return position.to_dict()

    raise ValueError(f"Unknown command: {args.command}")


async def amain(argv: list[str] | None = None) -> int:
    load_dotenv()
    args = parse_args(argv)
    logger = setup_logger("mmcore.admin")
    runtime = build_runtime(
        logger=logger,
        app_settings=AppSettings.from_env(),
        storage_settings=StorageSettings.from_env(),
    )

    await runtime.storage.connect()
    try:
        for client in runtime.clients:
            await client.connect()
        result = await run_command(runtime, args)
    finally:
        await guarded_call(
            runtime.notifier.flush,
            logger=logger,
            event="admin_alert_flush_failed",
            message="Failed to deliver outstanding alerts",
        )
        for client in runtime.clients:
            await guarded_call(
                client.close,
                logger=logger,
                event="admin_client_close_failed",
                message="Failed to close client",
                client=type(client).__name__,
            )
        await guarded_call(
            runtime.storage.close,
            logger=logger,
            event="admin_storage_close_failed",
            message="Failed to close storage",
        )

    print(json.dumps(result, ensure_ascii=False, indent=2, default=str))
    return 0


def main() -> None:
    sys.exit(asyncio.run(amain()))


if __name__ == "__main__":
    main()
