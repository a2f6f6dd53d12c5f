from __future__ import annotations

import asyncio
import re
from typing import Any

import aiohttp

RETRYABLE_RPC_CODES = {-32004, -32005, -32007, -32014, -32016}
RETRYABLE_HTTP_STATUSES = {408, 425, 429, 500, 502, 503, 504}
TRANSIENT_MARKERS = (
    "timed out",
    "timeout",
    "too many requests",
    "rate limit",
    "congested",
    "node is behind",
    "blockhash not found",
    "connection reset",
    "temporarily unavailable",
)
SLIPPAGE_MARKERS = (
    "slippage",
    "exceedsdesiredslippagelimit",
    "amount out below minimum",
)
STALE_POOL_MARKERS = ("stale", "invalid pool state")
# Anchor program error codes; RPC logs print them in hex, signature statuses in decimal.
SLIPPAGE_ERROR_CODES = {6001}
STALE_POOL_ERROR_CODES = {6022}
CUSTOM_ERROR_PATTERN = re.compile(r"""custom program error: (0x[0-9a-f]+)|['"]custom['"]\s*:\s*(\d+)""")
INSUFFICIENT_FUNDS_MARKERS = ("insufficient funds", "insufficient lamports", "0x1")


class ExecutionError(RuntimeError):
    retryable = False
    reason = "execution_error"
    step: str | None = None


class TransientExecutionError(ExecutionError):
    retryable = True
    reason = "transient"


class ConfirmationTimeoutError(TransientExecutionError):
    reason = "confirmation_timeout"

    def __init__(self, message: str, *, reference: str, pending: Any = None) -> None:
        super().__init__(message)
        self.reference = reference
        # Submission details needed to query the signature before resubmitting.
        self.pending = pending


class OnChainRejectionError(ExecutionError):
    reason = "on_chain_rejection"


class SlippageExceededError(OnChainRejectionError):
    reason = "slippage_exceeded"


class StalePoolStateError(OnChainRejectionError):
    reason = "stale_pool_state"


class PreconditionError(ExecutionError):
    reason = "precondition"


class InsufficientBalanceError(PreconditionError):
    reason = "insufficient_balance"

    def __init__(self, message: str, *, required: int, available: int) -> None:
        super().__init__(message)
        self.required = required
        self.available = available


class WalletLockedError(PreconditionError):
    reason = "wallet_locked"


class InvalidWalletTransitionError(PreconditionError):
    reason = "invalid_wallet_transition"


class CredentialDecryptionError(ExecutionError):
    reason = "credential_decryption_failed"


class RetriesExhaustedError(ExecutionError):
    reason = "retries_exhausted"

    def __init__(self, message: str, *, attempts: int, last_error: ExecutionError, reference: str | None = None) -> None:
        super().__init__(message)
        self.attempts = attempts
        self.last_error = last_error
        self.reference = reference


class PartialRebalanceError(ExecutionError):
    reason = "partial_rebalance"

    def __init__(self, message: str, *, completed_steps: list[str], failed_step: str) -> None:
        super().__init__(message)
        self.completed_steps = list(completed_steps)
        self.failed_step = failed_step


class RpcMethodError(RuntimeError):
    def __init__(
        self,
        *,
        method: str,
        message: str,
        status: int | None = None,
        code: int | None = None,
        data: Any = None,
    ) -> None:
        super().__init__(message)
        self.method = method
        self.status = status
        self.code = code
        self.data = data


def error_payload_to_message(payload: Any) -> str:
    if isinstance(payload, dict):
        message = payload.get("message")
        if message:
            return str(message)
        details = payload.get("details") or payload.get("data")
        if details:
            return str(details)
    return str(payload)


def custom_error_codes(message: str) -> set[int]:
    codes: set[int] = set()
    for hex_code, decimal_code in CUSTOM_ERROR_PATTERN.findall(message.lower()):
        codes.add(int(hex_code, 16) if hex_code else int(decimal_code))
    return codes


def rejection_from_message(message: str) -> OnChainRejectionError | None:
    lowered = message.lower()
    codes = custom_error_codes(message)
    if codes & SLIPPAGE_ERROR_CODES or any(marker in lowered for marker in SLIPPAGE_MARKERS):
        return SlippageExceededError(message)
    if codes & STALE_POOL_ERROR_CODES or any(marker in lowered for marker in STALE_POOL_MARKERS):
        return StalePoolStateError(message)
    return None


def classify_error(error: BaseException) -> ExecutionError:
    """Maps a raw collaborator failure onto the execution error taxonomy."""
    if isinstance(error, ExecutionError):
        return error
    if isinstance(error, (asyncio.TimeoutError, aiohttp.ClientError, ConnectionError)):
        return TransientExecutionError(str(error) or type(error).__name__)

    message = str(error)
    lowered = message.lower()
    if isinstance(error, RpcMethodError):
        if error.status in RETRYABLE_HTTP_STATUSES or error.code in RETRYABLE_RPC_CODES:
            return TransientExecutionError(message)

    rejection = rejection_from_message(message)
    if rejection is not None:
        return rejection
    if "insufficient" in lowered and any(marker in lowered for marker in INSUFFICIENT_FUNDS_MARKERS):
        return InsufficientBalanceError(message, required=0, available=0)
    if any(marker in lowered for marker in TRANSIENT_MARKERS):
        return TransientExecutionError(message)

    return ExecutionError(message)
