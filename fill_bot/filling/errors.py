from __future__ import annotations

import enum
from typing import Any, Iterable


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


class IndexerError(RuntimeError):
    pass


class OrderNotFoundError(RuntimeError):
    def __init__(self, address: str) -> None:
        super().__init__(f"Account does not exist or has no data {address}")
        self.address = address


class LedgerExecutionError(RuntimeError):
    def __init__(self, message: str, *, logs: list[str] | None = None, signature: str | None = None) -> None:
        super().__init__(message)
        self.logs = list(logs or [])
        self.signature = signature

    @property
    def logs_text(self) -> str:
        return "\n".join([str(self), *self.logs])


class TransactionSimulationError(LedgerExecutionError):
    pass


class TransactionFailedOnChainError(LedgerExecutionError):
    pass


class TransactionExpiredError(RuntimeError):
    pass


class PreconditionSkip(Exception):
    def __init__(self, reason: str, **details: Any) -> None:
        super().__init__(reason)
        self.reason = reason
        self.details = details


class FeeCeilingExceededError(PreconditionSkip):
    pass


class FailureCategory(str, enum.Enum):
    ORDER_GONE = "order_gone"
    BUSINESS_REJECTION = "business_rejection"
    UNCLASSIFIED = "unclassified"


# Substrings of program logs emitted when the ledger program rejects a fill
# for a user-side reason. Keys are the reason names reported in logs/events.
BUSINESS_REJECTION_MARKERS: dict[str, str] = {
    "insufficient_collateral": "Error Insufficient collateral thrown at",
    "insufficient_deposit": "Error Code: InsufficientDeposit.",
    "daily_withdraw_limit": "Error Code: DailyWithdrawLimit.",
    "no_spot_position_available": "Error Code: NoSpotPositionAvailable.",
}

ORDER_GONE_MARKER = "Account does not exist or has no data"


def classify_failure(
    logs: Iterable[str] | str,
    *,
    order_id: str | None = None,
) -> tuple[FailureCategory, str]:
    text = logs if isinstance(logs, str) else "\n".join(str(line) for line in logs)

    gone_marker = f"{ORDER_GONE_MARKER} {order_id}" if order_id else ORDER_GONE_MARKER
    if gone_marker in text:
        return FailureCategory.ORDER_GONE, "order_gone"

    for reason, marker in BUSINESS_REJECTION_MARKERS.items():
        if marker in text:
            return FailureCategory.BUSINESS_REJECTION, reason

    return FailureCategory.UNCLASSIFIED, "unclassified"
