from __future__ import annotations

import enum
import os
from dataclasses import asdict, dataclass, field
from typing import Any, Protocol, Sequence

from solders.address_lookup_table_account import AddressLookupTableAccount
from solders.instruction import Instruction
from solders.keypair import Keypair
from solders.pubkey import Pubkey

LAMPORTS_PER_SOL = 1_000_000_000


def to_bool(value: Any, default: bool) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in {"1", "true", "yes", "on"}


def to_int(value: Any, default: int) -> int:
    try:
        if value is None:
            return default
        text = str(value).strip()
        if not text:
            return default
        try:
            return int(text)
        except ValueError:
            return int(float(text))
    except (TypeError, ValueError, OverflowError):
        return default


def to_float(value: Any, default: float) -> float:
    try:
        if value is None or str(value).strip() == "":
            return default
        return float(str(value).strip())
    except (TypeError, ValueError):
        return default


class OrderKind(str, enum.Enum):
    WITHDRAW = "withdraw"
    SPEND_LIMIT_UPDATE = "spend_limit_update"
    DEPOSIT_CREDIT = "deposit_credit"

    @property
    def is_time_locked(self) -> bool:
        return self is not OrderKind.DEPOSIT_CREDIT


class OrderStatus(str, enum.Enum):
    DISCOVERED = "discovered"
    SCHEDULED = "scheduled"
    WAITING = "waiting"
    EXECUTING = "executing"
    EXECUTED = "executed"
    GONE = "gone"
    FAILED_TERMINAL = "failed_terminal"
    SKIPPED = "skipped"
    ABANDONED = "abandoned"


@dataclass(slots=True, frozen=True)
class TimeLock:
    owner: Pubkey
    release_slot: int
    is_owner_payer: bool = False


@dataclass(slots=True, frozen=True)
class WithdrawPayload:
    amount_base_units: int
    asset_index: int
    reduce_only: bool
    destination: Pubkey


@dataclass(slots=True, frozen=True)
class SpendLimitPayload:
    spend_limit_per_transaction: int = 0
    spend_limit_per_timeframe: int = 0
    timeframe_in_seconds: int = 0
    next_timeframe_reset_timestamp: int = 0


@dataclass(slots=True, frozen=True)
class DepositCreditPayload:
    asset_index: int
    amount_base_units: int


OrderPayload = WithdrawPayload | SpendLimitPayload | DepositCreditPayload


@dataclass(slots=True, frozen=True)
class Order:
    id: str
    kind: OrderKind
    owner: Pubkey
    release_slot: int
    payload: OrderPayload
    time_lock: TimeLock | None = None

    @property
    def address(self) -> Pubkey | None:
        if self.kind is OrderKind.DEPOSIT_CREDIT:
            return None
        return Pubkey.from_string(self.id)

    @classmethod
    def withdraw(cls, *, address: Pubkey, time_lock: TimeLock, payload: WithdrawPayload) -> "Order":
        return cls(
            id=str(address),
            kind=OrderKind.WITHDRAW,
            owner=time_lock.owner,
            release_slot=time_lock.release_slot,
            payload=payload,
            time_lock=time_lock,
        )

    @classmethod
    def spend_limit_update(
        cls,
        *,
        address: Pubkey,
        time_lock: TimeLock,
        payload: SpendLimitPayload | None = None,
    ) -> "Order":
        return cls(
            id=str(address),
            kind=OrderKind.SPEND_LIMIT_UPDATE,
            owner=time_lock.owner,
            release_slot=time_lock.release_slot,
            payload=payload or SpendLimitPayload(),
            time_lock=time_lock,
        )

    @classmethod
    def deposit_credit(cls, *, owner: Pubkey, asset_index: int, amount_base_units: int) -> "Order":
        return cls(
            id=f"deposit:{owner}:{asset_index}",
            kind=OrderKind.DEPOSIT_CREDIT,
            owner=owner,
            release_slot=0,
            payload=DepositCreditPayload(asset_index=asset_index, amount_base_units=amount_base_units),
        )


@dataclass(slots=True)
class ScheduledTask:
    order_id: str
    kind: OrderKind
    wake_at: float
    attempt_count: int = 0
    status: OrderStatus = OrderStatus.SCHEDULED


@dataclass(slots=True, frozen=True)
class WalletState:
    address: Pubkey
    native_balance: int
    min_balance_floor: int

    @property
    def below_floor(self) -> bool:
        return self.native_balance < self.min_balance_floor


@dataclass(slots=True, frozen=True)
class DepositBalances:
    owner: Pubkey
    balances: dict[int, int]


@dataclass(slots=True)
class InstructionBundle:
    instructions: list[Instruction]
    lookup_tables: list[AddressLookupTableAccount] = field(default_factory=list)
    signers: list[Keypair] = field(default_factory=list)


@dataclass(slots=True, frozen=True)
class ExecutionOutcome:
    order_id: str
    kind: OrderKind
    status: OrderStatus
    reason: str = ""
    tx_signature: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["kind"] = self.kind.value
        payload["status"] = self.status.value
        return payload


@dataclass(slots=True, frozen=True)
class FillerConfig:
    slot_duration_ms: int
    release_safety_slots: int
    max_jitter_seconds: float
    missed_order_slots: int
    withdraw_safety_ratio: float
    fill_retries: int
    submit_retries: int
    send_retries: int
    confirm_retries: int
    parse_retries: int
    discovery_rpc_retries: int
    retry_initial_delay_seconds: float
    retry_max_delay_seconds: float
    discovery_interval_seconds: float
    deposit_scan_interval_seconds: float
    default_compute_unit_limit: int
    compute_unit_buffer: float
    simulation_compute_unit_limit: int
    priority_fee_micro_lamports: int
    priority_fee_percentile: float
    priority_fee_multiplier: float
    max_fee_lamports: int
    base_fee_lamports_per_signature: int
    min_balance_lamports: int
    deposit_rent_lamports: int
    confirm_poll_interval_seconds: float
    order_record_ttl_seconds: int

    @classmethod
    def from_env(cls) -> "FillerConfig":
        return cls(
            slot_duration_ms=max(1, to_int(os.getenv("SLOT_DURATION_MS"), 400)),
            release_safety_slots=max(0, to_int(os.getenv("RELEASE_SAFETY_SLOTS"), 1)),
            max_jitter_seconds=max(0.0, to_float(os.getenv("MAX_JITTER_SECONDS"), 10.0)),
            missed_order_slots=max(0, to_int(os.getenv("MISSED_ORDER_SLOTS"), 150)),
            withdraw_safety_ratio=min(1.0, max(0.0, to_float(os.getenv("WITHDRAW_SAFETY_RATIO"), 0.85))),
            fill_retries=max(0, to_int(os.getenv("FILL_RETRIES"), 3)),
            submit_retries=max(0, to_int(os.getenv("SUBMIT_RETRIES"), 3)),
            send_retries=max(0, to_int(os.getenv("SEND_RETRIES"), 0)),
            confirm_retries=max(0, to_int(os.getenv("CONFIRM_RETRIES"), 1)),
            parse_retries=max(0, to_int(os.getenv("PARSE_RETRIES"), 10)),
            discovery_rpc_retries=max(0, to_int(os.getenv("DISCOVERY_RPC_RETRIES"), 10)),
            retry_initial_delay_seconds=max(0.0, to_float(os.getenv("RETRY_INITIAL_DELAY_SECONDS"), 1.0)),
            retry_max_delay_seconds=max(0.0, to_float(os.getenv("RETRY_MAX_DELAY_SECONDS"), 30.0)),
            discovery_interval_seconds=max(5.0, to_float(os.getenv("DISCOVERY_INTERVAL_SECONDS"), 180.0)),
            deposit_scan_interval_seconds=max(5.0, to_float(os.getenv("DEPOSIT_SCAN_INTERVAL_SECONDS"), 180.0)),
            default_compute_unit_limit=max(1, to_int(os.getenv("DEFAULT_COMPUTE_UNIT_LIMIT"), 200_000)),
            compute_unit_buffer=max(1.0, to_float(os.getenv("COMPUTE_UNIT_BUFFER"), 1.5)),
            simulation_compute_unit_limit=max(1, to_int(os.getenv("SIMULATION_COMPUTE_UNIT_LIMIT"), 1_400_000)),
            priority_fee_micro_lamports=max(0, to_int(os.getenv("PRIORITY_FEE_MICRO_LAMPORTS"), 10_000)),
            priority_fee_percentile=min(1.0, max(0.0, to_float(os.getenv("PRIORITY_FEE_PERCENTILE"), 0.75))),
            priority_fee_multiplier=max(0.0, to_float(os.getenv("PRIORITY_FEE_MULTIPLIER"), 1.15)),
            max_fee_lamports=max(0, to_int(os.getenv("MAX_FEE_LAMPORTS"), 2_000_000)),
            base_fee_lamports_per_signature=max(0, to_int(os.getenv("BASE_FEE_LAMPORTS_PER_SIGNATURE"), 5_000)),
            min_balance_lamports=max(0, to_int(os.getenv("MIN_BALANCE_LAMPORTS"), 300_000_000)),
            deposit_rent_lamports=max(0, to_int(os.getenv("DEPOSIT_RENT_LAMPORTS"), 890_880)),
            confirm_poll_interval_seconds=max(0.1, to_float(os.getenv("CONFIRM_POLL_INTERVAL_SECONDS"), 1.0)),
            order_record_ttl_seconds=max(60, to_int(os.getenv("ORDER_RECORD_TTL_SECONDS"), 7 * 86_400)),
        )


class ProtocolClient(Protocol):
    native_asset_index: int
    supported_asset_indices: Sequence[int]

    async def parse_order(self, kind: OrderKind, address: Pubkey) -> Order:
        ...

    async def get_open_orders(self, kind: OrderKind) -> list[Order]:
        ...

    async def list_vault_owners(self) -> list[Pubkey]:
        ...

    async def get_deposit_balances(self, owners: list[Pubkey]) -> list[DepositBalances]:
        ...

    async def get_withdrawal_limit(self, owner: Pubkey, asset_index: int, reduce_only: bool) -> int:
        ...

    def asset_mint(self, asset_index: int) -> Pubkey:
        ...

    def asset_index_for_mint(self, mint: Pubkey) -> int | None:
        ...

    async def make_fulfil_withdraw_ixs(
        self,
        order: Order,
        caller: Pubkey,
        amount_base_units: int | None = None,
    ) -> InstructionBundle:
        ...

    async def make_fulfil_spend_limit_ixs(self, order: Order, caller: Pubkey) -> InstructionBundle:
        ...

    async def make_fulfil_deposit_ixs(self, owner: Pubkey, asset_index: int, caller: Pubkey) -> InstructionBundle:
        ...


class AlertSink(Protocol):
    async def send_alert(self, *, subject: str, message: str, dedupe_key: str | None = None) -> bool:
        ...


class FillRecordStore(Protocol):
    async def get_order_record(self, *, order_id: str) -> dict[str, Any] | None:
        ...

    async def mark_order_executed(
        self,
        *,
        order_id: str,
        tx_signature: str,
        ttl_seconds: int,
        payload: dict[str, Any] | None = None,
    ) -> bool:
        ...
