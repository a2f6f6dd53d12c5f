from __future__ import annotations

import asyncio
import logging
from typing import Any

import aiohttp
from solana.rpc.async_api import AsyncClient
from solana.rpc.commitment import Commitment
from solders.hash import Hash
from solders.pubkey import Pubkey
from solders.transaction import VersionedTransaction

from mmcore.common import log_event, to_int

from .errors import RpcMethodError, error_payload_to_message
from .transactions import encode_transaction, transaction_reference
from .types import SOL_MINT, ConfirmationResult, LedgerClient, LedgerContext

FINAL_CONFIRMATION_STATUSES = {"confirmed", "finalized"}


class SolanaLedgerClient:
    def __init__(
        self,
        *,
        logger: logging.Logger,
        rpc_url: str,
        commitment: str = "confirmed",
        poll_interval_seconds: float = 1.0,
        http_timeout_seconds: float = 8.0,
    ) -> None:
        self._logger = logger
        self._rpc_url = rpc_url
        self._commitment = commitment
        self._poll_interval_seconds = max(0.05, poll_interval_seconds)
        self._http_timeout_seconds = http_timeout_seconds
        self._rpc_client: AsyncClient | None = None
        self._http_session: aiohttp.ClientSession | None = None

    async def connect(self) -> None:
        if not self._rpc_url:
            raise ValueError("RPC_URL is required.")
        if self._rpc_client is None:
            self._rpc_client = AsyncClient(self._rpc_url, commitment=Commitment(self._commitment))
        if self._http_session is None:
            timeout = aiohttp.ClientTimeout(total=self._http_timeout_seconds)
            self._http_session = aiohttp.ClientSession(timeout=timeout)

    async def close(self) -> None:
        if self._rpc_client is not None:
            await self._rpc_client.close()
            self._rpc_client = None

        if self._http_session is not None:
            await self._http_session.close()
            self._http_session = None

    async def healthcheck(self) -> None:
        await self.get_latest_context()

    async def _rpc_call(self, method: str, params: list[Any] | None = None) -> Any:
        if self._http_session is None:
            await self.connect()
        if self._http_session is None:
            raise RuntimeError("RPC HTTP session is not initialized.")

        payload: dict[str, Any] = {
            "jsonrpc": "2.0",
            "id": 1,
            "method": method,
            "params": params or [],
        }

        async with self._http_session.post(self._rpc_url, json=payload) as response:
            body = await response.json(content_type=None)
            if response.status >= 400:
                raise RpcMethodError(
                    method=method,
                    status=response.status,
                    data=body,
                    message=f"RPC call failed: method={method} status={response.status} body={body}",
                )

        if not isinstance(body, dict):
            raise RpcMethodError(method=method, message=f"Invalid RPC response for {method}: {body}")

        error_payload = body.get("error")
        if error_payload:
            code = to_int(error_payload.get("code"), 0) if isinstance(error_payload, dict) else None
            raise RpcMethodError(
                method=method,
                code=code or None,
                data=error_payload,
                message=f"RPC error for {method}: {error_payload_to_message(error_payload)}",
            )

        return body.get("result")

    async def get_latest_context(self) -> LedgerContext:
        result = await self._rpc_call("getLatestBlockhash", [{"commitment": self._commitment}])
        if not isinstance(result, dict):
            raise RuntimeError(f"Unexpected getLatestBlockhash response: {result}")

        value = result.get("value")
        if not isinstance(value, dict):
            raise RuntimeError(f"Unexpected getLatestBlockhash payload: {result}")

        blockhash = str(value.get("blockhash") or "").strip()
        if not blockhash:
            raise RuntimeError(f"Missing blockhash in RPC response: {result}")
        last_valid_block_height_raw = to_int(value.get("lastValidBlockHeight"), -1)
        return LedgerContext(
            blockhash=blockhash,
            last_valid_block_height=last_valid_block_height_raw if last_valid_block_height_raw >= 0 else None,
        )

    async def submit(self, transaction: VersionedTransaction) -> str:
        result = await self._rpc_call(
            "sendTransaction",
            [
                encode_transaction(transaction),
                {
                    "encoding": "base64",
                    "skipPreflight": False,
                    "preflightCommitment": self._commitment,
                    "maxRetries": 0,
                },
            ],
        )
        if not isinstance(result, str) or not result:
            raise RuntimeError(f"Unexpected sendTransaction response: {result}")
        return result

    async def _block_height(self) -> int:
        if self._rpc_client is None:
            await self.connect()
        if self._rpc_client is None:
            raise RuntimeError("RPC client is not initialized.")
        response = await self._rpc_client.get_block_height()
        return int(response.value)

    async def signature_status(self, reference: str, *, context: LedgerContext) -> ConfirmationResult:
        result = await self._rpc_call(
            "getSignatureStatuses",
            [[reference], {"searchTransactionHistory": True}],
        )
        values = result.get("value") if isinstance(result, dict) else None
        status = values[0] if isinstance(values, list) and values else None

        if isinstance(status, dict):
            if status.get("err") is not None:
                return ConfirmationResult(
                    status="failed",
                    error=str(status.get("err")),
                    slot=to_int(status.get("slot"), 0) or None,
                )
            if str(status.get("confirmationStatus") or "") in FINAL_CONFIRMATION_STATUSES:
                return ConfirmationResult(status="confirmed", slot=to_int(status.get("slot"), 0) or None)
            return ConfirmationResult(status="pending")

        if context.last_valid_block_height is not None:
            if await self._block_height() > context.last_valid_block_height:
                return ConfirmationResult(status="expired")
        return ConfirmationResult(status="pending")

    async def confirm(
        self,
        reference: str,
        *,
        context: LedgerContext,
        timeout_seconds: float,
    ) -> ConfirmationResult:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + max(0.0, timeout_seconds)
        while True:
            result = await self.signature_status(reference, context=context)
            if result.status != "pending":
                return result
            remaining = deadline - loop.time()
            if remaining <= 0:
                return ConfirmationResult(status="timeout")
            await asyncio.sleep(min(self._poll_interval_seconds, remaining))

    async def get_balance(self, *, owner: Pubkey, mint: str) -> int:
        if mint == SOL_MINT:
            if self._rpc_client is None:
                await self.connect()
            if self._rpc_client is None:
                raise RuntimeError("RPC client is not initialized.")
            response = await self._rpc_client.get_balance(owner)
            return int(response.value)

        result = await self._rpc_call(
            "getTokenAccountsByOwner",
            [str(owner), {"mint": mint}, {"encoding": "jsonParsed", "commitment": self._commitment}],
        )
        accounts = result.get("value") if isinstance(result, dict) else None
        if not isinstance(accounts, list):
            raise RuntimeError(f"Unexpected getTokenAccountsByOwner response: {result}")

        total = 0
        for account in accounts:
            try:
                token_amount = account["account"]["data"]["parsed"]["info"]["tokenAmount"]
            except (KeyError, TypeError):
                continue
            total += to_int(token_amount.get("amount"), 0)
        return total


class DryRunLedgerClient:
    """Simulates submission and confirmation; reads go to ``inner`` when given."""

    def __init__(
        self,
        *,
        logger: logging.Logger,
        inner: LedgerClient | None = None,
        simulated_balance: int = 0,
    ) -> None:
        self._logger = logger
        self._inner = inner
        self._simulated_balance = max(0, simulated_balance)
        self._submitted: set[str] = set()

    async def connect(self) -> None:
        connect = getattr(self._inner, "connect", None)
        if connect is not None:
            await connect()

    async def close(self) -> None:
        close = getattr(self._inner, "close", None)
        if close is not None:
            await close()

    async def healthcheck(self) -> None:
        await self.get_latest_context()

    async def get_latest_context(self) -> LedgerContext:
        if self._inner is not None:
            return await self._inner.get_latest_context()
        return LedgerContext(blockhash=str(Hash.default()))

    async def submit(self, transaction: VersionedTransaction) -> str:
        reference = transaction_reference(transaction)
        self._submitted.add(reference)
        log_event(
            self._logger,
            level="info",
            event="dry_run_submit",
            message="Dry-run transaction was not broadcast",
            reference=reference,
            instructions=len(transaction.message.instructions),
        )
        return reference

    async def confirm(
        self,
        reference: str,
        *,
        context: LedgerContext,
        timeout_seconds: float,
    ) -> ConfirmationResult:
        return await self.signature_status(reference, context=context)

    async def signature_status(self, reference: str, *, context: LedgerContext) -> ConfirmationResult:
        if reference in self._submitted:
            return ConfirmationResult(status="confirmed")
        return ConfirmationResult(status="expired")

    async def get_balance(self, *, owner: Pubkey, mint: str) -> int:
        if self._inner is not None:
            return await self._inner.get_balance(owner=owner, mint=mint)
        return self._simulated_balance
