from .balance import BalanceMonitor
from .discovery import DepositCreditScanner, OrderDiscovery, filter_missed_orders
from .errors import (
    FailureCategory,
    FeeCeilingExceededError,
    IndexerError,
    LedgerExecutionError,
    OrderNotFoundError,
    PreconditionSkip,
    RpcMethodError,
    TransactionExpiredError,
    TransactionFailedOnChainError,
    TransactionSimulationError,
    classify_failure,
)
from .executor import FillExecutor
from .indexer import IndexerApi
from .ledger import LedgerRpc
from .listener import LedgerEventListener
from .scheduler import InFlightSet, Scheduler
from .transactions import BuiltTransaction, TransactionBuilder
from .types import (
    DepositBalances,
    ExecutionOutcome,
    FillerConfig,
    InstructionBundle,
    Order,
    OrderKind,
    OrderStatus,
    ProtocolClient,
    ScheduledTask,
    SpendLimitPayload,
    TimeLock,
    WalletState,
    WithdrawPayload,
)

__all__ = [
    "BalanceMonitor",
    "BuiltTransaction",
    "DepositBalances",
    "DepositCreditScanner",
    "ExecutionOutcome",
    "FailureCategory",
    "FeeCeilingExceededError",
    "FillExecutor",
    "FillerConfig",
    "InFlightSet",
    "IndexerApi",
    "IndexerError",
    "InstructionBundle",
    "LedgerEventListener",
    "LedgerExecutionError",
    "LedgerRpc",
    "Order",
    "OrderDiscovery",
    "OrderKind",
    "OrderNotFoundError",
    "OrderStatus",
    "PreconditionSkip",
    "ProtocolClient",
    "RpcMethodError",
    "ScheduledTask",
    "Scheduler",
    "SpendLimitPayload",
    "TimeLock",
    "TransactionBuilder",
    "TransactionExpiredError",
    "TransactionFailedOnChainError",
    "TransactionSimulationError",
    "WalletState",
    "WithdrawPayload",
    "classify_failure",
    "filter_missed_orders",
]
