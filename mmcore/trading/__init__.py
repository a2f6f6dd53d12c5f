from .amm import JupiterPriceFeed, JupiterSwapClient
from .clmm import load_clmm_client
from .errors import (
    ConfirmationTimeoutError,
    CredentialDecryptionError,
    ExecutionError,
    InsufficientBalanceError,
    InvalidWalletTransitionError,
    OnChainRejectionError,
    PartialRebalanceError,
    PreconditionError,
    RetriesExhaustedError,
    RpcMethodError,
    SlippageExceededError,
    StalePoolStateError,
    TransientExecutionError,
    WalletLockedError,
)
from .ledger import DryRunLedgerClient, SolanaLedgerClient
from .notifier import FanoutNotifier, StorageEventNotifier, WebhookNotifier
from .planner import PlannerSettings, StepPlanner
from .price_cache import PriceCache
from .range_monitor import RangeMonitor
from .scheduler import Scheduler, TickReport
from .signals import SignalEngine
from .supervisor import ExecutionSupervisor
from .swap_queue import SwapQueue, WalletLease
from .types import (
    AuditRecord,
    Bot,
    ClmmPosition,
    PoolConfig,
    PriceObservation,
    RuntimeConfig,
    SwapJob,
    TradeDecision,
    TradeIntent,
    WalletRecord,
    WalletStatus,
)
from .vault import FernetKeyVault
from .wallet_ledger import WalletLedger

__all__ = [
    "AuditRecord",
    "Bot",
    "ClmmPosition",
    "ConfirmationTimeoutError",
    "CredentialDecryptionError",
    "DryRunLedgerClient",
    "ExecutionError",
    "ExecutionSupervisor",
    "FanoutNotifier",
    "FernetKeyVault",
    "InsufficientBalanceError",
    "InvalidWalletTransitionError",
    "JupiterPriceFeed",
    "JupiterSwapClient",
    "OnChainRejectionError",
    "PartialRebalanceError",
    "PlannerSettings",
    "PoolConfig",
    "PreconditionError",
    "PriceCache",
    "PriceObservation",
    "RangeMonitor",
    "RetriesExhaustedError",
    "RpcMethodError",
    "RuntimeConfig",
    "Scheduler",
    "SignalEngine",
    "SlippageExceededError",
    "SolanaLedgerClient",
    "StalePoolStateError",
    "StepPlanner",
    "StorageEventNotifier",
    "SwapJob",
    "SwapQueue",
    "TickReport",
    "TradeDecision",
    "TradeIntent",
    "TransientExecutionError",
    "WalletLease",
    "WalletLedger",
    "WalletRecord",
    "WalletStatus",
    "WebhookNotifier",
    "load_clmm_client",
]
