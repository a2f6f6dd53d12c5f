from __future__ import annotations

import json
import logging
import time
from typing import Any

import aiohttp
from solders.instruction import Instruction
from solders.pubkey import Pubkey

from mmcore.common import to_int

from .errors import RpcMethodError, error_payload_to_message, rejection_from_message
from .transactions import decode_instruction, decode_instruction_list
from .types import PoolConfig, PriceObservation, Quote


class JupiterSwapClient:
    def __init__(
        self,
        *,
        logger: logging.Logger,
        api_base_url: str,
        api_key: str = "",
        timeout_seconds: float = 8.0,
        max_accounts: int = 40,
    ) -> None:
        self._logger = logger
        self._api_base_url = api_base_url.rstrip("/")
        self._api_key = api_key
        self._timeout_seconds = timeout_seconds
        self._max_accounts = max(8, max_accounts)
        self._session: aiohttp.ClientSession | None = None

    async def connect(self) -> None:
        if self._session is None:
            timeout = aiohttp.ClientTimeout(total=self._timeout_seconds)
            self._session = aiohttp.ClientSession(timeout=timeout)

    async def close(self) -> None:
        if self._session is not None:
            await self._session.close()
            self._session = None

    def _headers(self) -> dict[str, str]:
        if self._api_key:
            return {"x-api-key": self._api_key}
        return {}

    async def _request(self, method: str, path: str, **kwargs: Any) -> dict[str, Any]:
        if self._session is None:
            await self.connect()
        if self._session is None:
            raise RuntimeError("Jupiter HTTP session is not initialized.")

        endpoint = f"{self._api_base_url}/{path}"
        async with self._session.request(method, endpoint, headers=self._headers(), **kwargs) as response:
            status_code = response.status
            raw_text = await response.text()

        try:
            parsed: Any = json.loads(raw_text) if raw_text else {}
        except json.JSONDecodeError:
            parsed = {"raw_text": raw_text}
        if not isinstance(parsed, dict):
            raise RpcMethodError(method=path, status=status_code, message=f"Unexpected {path} response: {parsed}")

        error_payload = parsed.get("error")
        if status_code >= 400 or error_payload:
            error_message = error_payload_to_message(error_payload) if error_payload else str(parsed)
            rejection = rejection_from_message(error_message)
            if rejection is not None:
                raise rejection
            error_code = None
            if isinstance(error_payload, dict):
                error_code = to_int(error_payload.get("code"), 0) or None
            raise RpcMethodError(
                method=path,
                status=status_code,
                code=error_code,
                data=parsed,
                message=f"Jupiter {path} request failed: status={status_code} error={error_message}",
            )
        return parsed

    async def quote(
        self,
        *,
        pool: PoolConfig | None,
        input_mint: str,
        output_mint: str,
        amount_in: int,
        slippage_bps: int,
    ) -> Quote:
        params = {
            "inputMint": input_mint,
            "outputMint": output_mint,
            "amount": str(int(amount_in)),
            "slippageBps": str(int(slippage_bps)),
            "restrictIntermediateTokens": "true",
            "maxAccounts": str(self._max_accounts),
        }
        data = await self._request("GET", "quote", params=params)
        if "outAmount" not in data:
            raise RuntimeError(f"Unexpected Jupiter response: {data}")

        return Quote(
            input_mint=input_mint,
            output_mint=output_mint,
            amount_in=to_int(data.get("inAmount"), amount_in),
            amount_out=to_int(data.get("outAmount"), 0),
            min_amount_out=to_int(data.get("otherAmountThreshold"), 0),
            raw=data,
        )

    async def build_swap(self, *, quote: Quote, owner: Pubkey) -> list[Instruction]:
        payload = {
            "quoteResponse": quote.raw,
            "userPublicKey": str(owner),
            "wrapAndUnwrapSol": True,
            "dynamicComputeUnitLimit": True,
        }
        data = await self._request("POST", "swap-instructions", json=payload)
        return self._extract_instructions(data)

    @staticmethod
    def _extract_instructions(payload: dict[str, Any]) -> list[Instruction]:
        instructions: list[Instruction] = []
        instructions.extend(
            decode_instruction_list(payload.get("computeBudgetInstructions"), section="computeBudgetInstructions")
        )
        instructions.extend(decode_instruction_list(payload.get("setupInstructions"), section="setupInstructions"))

        swap_instruction = payload.get("swapInstruction")
        if not isinstance(swap_instruction, dict):
            raise RuntimeError(f"swapInstruction is missing in swap-instructions response: {payload}")
        instructions.append(decode_instruction(swap_instruction, section="swapInstruction"))

        cleanup_instruction = payload.get("cleanupInstruction")
        if cleanup_instruction:
            instructions.append(decode_instruction(cleanup_instruction, section="cleanupInstruction"))
        instructions.extend(decode_instruction_list(payload.get("otherInstructions"), section="otherInstructions"))
        return instructions


class JupiterPriceFeed:
    """Mid price from a one-unit base -> quote Jupiter quote."""

    def __init__(self, *, swap_client: JupiterSwapClient, slippage_bps: int = 50) -> None:
        self._swap_client = swap_client
        self._slippage_bps = slippage_bps

    async def latest_price(self, pool: PoolConfig) -> PriceObservation:
        one_base = 10**pool.base_decimals
        quote = await self._swap_client.quote(
            pool=pool,
            input_mint=pool.base_mint,
            output_mint=pool.quote_mint,
            amount_in=one_base,
            slippage_bps=self._slippage_bps,
        )
        if quote.amount_in <= 0 or quote.amount_out <= 0:
            raise RuntimeError(f"Empty quote for {pool.symbol}: {quote.raw}")
        price = (quote.amount_out / 10**pool.quote_decimals) / (quote.amount_in / one_base)
        return PriceObservation(symbol=pool.symbol, price=price, timestamp=time.time())
