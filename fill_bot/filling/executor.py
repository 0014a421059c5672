from __future__ import annotations

import asyncio
import logging
from typing import Any, Protocol

from solders.pubkey import Pubkey
from spl.token.constants import ASSOCIATED_TOKEN_PROGRAM_ID

from fill_bot.common import RetryPolicy, guarded_call, log_event

from .balance import BalanceMonitor
from .errors import (
    FailureCategory,
    LedgerExecutionError,
    OrderNotFoundError,
    PreconditionSkip,
    TransactionExpiredError,
    TransactionFailedOnChainError,
    classify_failure,
)
from .indexer import IndexerApi
from .ledger import LedgerRpc
from .transactions import TransactionBuilder
from .types import (
    ExecutionOutcome,
    FillerConfig,
    FillRecordStore,
    InstructionBundle,
    Order,
    OrderKind,
    OrderStatus,
    ProtocolClient,
    WithdrawPayload,
)

CONFIRMED_STATUSES = {"confirmed", "finalized"}


class FillJournal(Protocol):
    async def record_fill(self, *, fill: dict[str, Any], fill_id: str) -> None:
        ...


def associated_token_address(owner: Pubkey, mint: Pubkey, token_program: Pubkey) -> Pubkey:
    address, _bump = Pubkey.find_program_address(
        [bytes(owner), bytes(token_program), bytes(mint)],
        ASSOCIATED_TOKEN_PROGRAM_ID,
    )
    return address


class FillExecutor:
    """Performs one fill attempt for an order and reports how it resolved.

    Expected outcomes (gone, skipped, business rejection) are returned as an
    ``ExecutionOutcome``. Transient and unclassified failures are raised so the
    scheduler can retry the attempt.
    """

    def __init__(
        self,
        *,
        ledger: LedgerRpc,
        protocol: ProtocolClient,
        builder: TransactionBuilder,
        balance_monitor: BalanceMonitor,
        operator: Pubkey,
        config: FillerConfig,
        logger: logging.Logger,
        indexer: IndexerApi | None = None,
        records: FillRecordStore | None = None,
        journal: FillJournal | None = None,
        retry_policy: RetryPolicy | None = None,
    ) -> None:
        self._ledger = ledger
        self._protocol = protocol
        self._builder = builder
        self._balance_monitor = balance_monitor
        self._operator = operator
        self._config = config
        self._logger = logger
        self._indexer = indexer
        self._records = records
        self._journal = journal
        self._retry = retry_policy or RetryPolicy(
            initial_delay_seconds=config.retry_initial_delay_seconds,
            max_delay_seconds=config.retry_max_delay_seconds,
            logger=logger,
        )

    async def execute(self, order: Order) -> ExecutionOutcome:
        try:
            if order.kind.is_time_locked:
                if await self._already_executed(order):
                    return self._outcome(order, OrderStatus.EXECUTED, reason="already_recorded")
                if not await self._order_exists(order):
                    return self._gone(order, source="pre_check")

            if order.kind is OrderKind.WITHDRAW:
                bundle, metadata = await self._prepare_withdraw(order)
            elif order.kind is OrderKind.SPEND_LIMIT_UPDATE:
                bundle = await self._protocol.make_fulfil_spend_limit_ixs(order, self._operator)
                metadata = {}
            else:
                bundle = await self._protocol.make_fulfil_deposit_ixs(
                    order.owner,
                    order.payload.asset_index,
                    self._operator,
                )
                metadata = {"asset_index": order.payload.asset_index}

            signature = await self.submit_and_confirm(bundle, order)
        except OrderNotFoundError:
            return self._gone(order, source="not_found")
        except PreconditionSkip as skip:
            log_event(
                self._logger,
                level="info",
                event="order_fill_skipped",
                message="Order not fillable this cycle",
                order_id=order.id,
                kind=order.kind.value,
                reason=skip.reason,
                **skip.details,
            )
            return self._outcome(order, OrderStatus.SKIPPED, reason=skip.reason, metadata=dict(skip.details))
        except LedgerExecutionError as error:
            return await self._handle_execution_error(order, error)
        except Exception as error:
            category, _reason = classify_failure(str(error), order_id=order.id)
            if category is FailureCategory.ORDER_GONE:
                return self._gone(order, source="error_message")
            raise

        return await self._on_filled(order, signature, metadata)

    async def _already_executed(self, order: Order) -> bool:
        if self._records is None:
            return False
        record = await guarded_call(
            lambda: self._records.get_order_record(order_id=order.id),
            logger=self._logger,
            event="order_record_lookup_failed",
            message="Failed to read fill record; continuing",
            order_id=order.id,
        )
        if record and record.get("status") == "executed":
            log_event(
                self._logger,
                level="info",
                event="order_already_executed",
                message="Order already recorded as executed; not resubmitting",
                order_id=order.id,
                tx_signature=record.get("tx_signature"),
            )
            return True
        return False

    async def _order_exists(self, order: Order) -> bool:
        address = order.address
        if address is None:
            return True
        try:
            if self._indexer is not None and self._indexer.enabled:
                return await self._indexer.order_exists(address, order.kind)
            return await self._ledger.account_exists(address)
        except asyncio.CancelledError:
            raise
        except Exception as error:
            log_event(
                self._logger,
                level="warning",
                event="order_existence_check_failed",
                message="Order existence check failed; assuming it exists",
                order_id=order.id,
                error=str(error),
            )
            return True

    async def _prepare_withdraw(self, order: Order) -> tuple[InstructionBundle, dict[str, Any]]:
        payload = order.payload
        if not isinstance(payload, WithdrawPayload):
            raise TypeError(f"Withdraw order {order.id} carries {type(payload).__name__}")

        is_native = payload.asset_index == self._protocol.native_asset_index
        if not is_native:
            mint = self._protocol.asset_mint(payload.asset_index)
            token_program = await self._ledger.get_account_owner(mint)
            if token_program is None:
                raise PreconditionSkip("asset_mint_missing", mint=str(mint))
            ata = associated_token_address(payload.destination, mint, token_program)
            if not await self._ledger.account_exists(ata):
                raise PreconditionSkip(
                    "destination_token_account_missing",
                    destination=str(payload.destination),
                    token_account=str(ata),
                )

        limit = await self._protocol.get_withdrawal_limit(order.owner, payload.asset_index, payload.reduce_only)
        if limit < payload.amount_base_units * self._config.withdraw_safety_ratio:
            raise PreconditionSkip(
                "insufficient_withdrawal_limit",
                withdrawal_limit=limit,
                amount=payload.amount_base_units,
                safety_ratio=self._config.withdraw_safety_ratio,
            )
        fillable = min(limit, payload.amount_base_units)

        if is_native:
            # the destination must end rent exempt after receiving what is actually withdrawn
            rent_minimum = await self._ledger.get_minimum_balance_for_rent_exemption(0)
            destination_balance = await self._ledger.get_balance(payload.destination)
            if destination_balance + fillable < rent_minimum:
                raise PreconditionSkip(
                    "destination_below_rent_exemption",
                    destination=str(payload.destination),
                    destination_balance=destination_balance,
                    fillable_amount=fillable,
                    rent_minimum=rent_minimum,
                )

        bundle = await self._protocol.make_fulfil_withdraw_ixs(order, self._operator, fillable)
        return bundle, {
            "asset_index": payload.asset_index,
            "requested_amount": payload.amount_base_units,
            "fillable_amount": fillable,
        }

    async def submit_and_confirm(self, bundle: InstructionBundle, order: Order) -> str:
        async def cycle() -> str:
            address = order.address
            if address is not None and not await self._ledger.account_exists(address):
                raise OrderNotFoundError(order.id)

            built = await self._builder.build(bundle)
            signature = await self._retry.run(
                lambda: self._ledger.send_transaction(built.transaction),
                retries=self._config.send_retries,
                event="fill_send_retry",
                give_up_on=(LedgerExecutionError,),
                order_id=order.id,
            )
            status = await self._retry.run(
                lambda: self._confirm(signature, built.last_valid_block_height),
                retries=self._config.confirm_retries,
                event="fill_confirm_retry",
                order_id=order.id,
                signature=signature,
            )

            await guarded_call(
                self._balance_monitor.check,
                logger=self._logger,
                event="balance_check_failed",
                message="Operator balance check failed",
            )

            if status.get("err") is not None:
                logs = await guarded_call(
                    lambda: self._ledger.get_transaction_logs(signature),
                    logger=self._logger,
                    event="transaction_logs_fetch_failed",
                    message="Failed to fetch logs of failed transaction",
                    default=[],
                    signature=signature,
                )
                raise TransactionFailedOnChainError(
                    f"Transaction passed preflight but failed on-chain: {signature} err={status.get('err')}",
                    logs=logs or [],
                    signature=signature,
                )
            return signature

        return await self._retry.run(
            cycle,
            retries=self._config.submit_retries,
            event="fill_submit_retry",
            give_up_on=(LedgerExecutionError, PreconditionSkip, OrderNotFoundError),
            order_id=order.id,
        )

    async def _confirm(self, signature: str, last_valid_block_height: int) -> dict[str, Any]:
        while True:
            status = await self._ledger.get_signature_status(signature)
            if status is not None:
                if status.get("err") is not None:
                    return status
                if status.get("confirmationStatus") in CONFIRMED_STATUSES:
                    return status

            block_height = await self._ledger.get_block_height()
            if block_height > last_valid_block_height:
                raise TransactionExpiredError(
                    f"Transaction {signature} not confirmed before block height {last_valid_block_height}"
                )
            await asyncio.sleep(self._config.confirm_poll_interval_seconds)

    async def _handle_execution_error(self, order: Order, error: LedgerExecutionError) -> ExecutionOutcome:
        category, reason = classify_failure(error.logs_text, order_id=order.id)
        if category is FailureCategory.ORDER_GONE:
            return self._gone(order, source="execution_logs")

        if category is FailureCategory.BUSINESS_REJECTION:
            log_event(
                self._logger,
                level="warning" if reason == "daily_withdraw_limit" else "info",
                event="order_fill_rejected",
                message="Ledger rejected the fill for a user-side reason",
                order_id=order.id,
                kind=order.kind.value,
                reason=reason,
                signature=error.signature,
            )
            outcome = self._outcome(
                order,
                OrderStatus.FAILED_TERMINAL,
                reason=reason,
                tx_signature=error.signature,
            )
            await self._journal_outcome(outcome, fill_id=error.signature or f"rejected:{order.id}")
            return outcome

        log_event(
            self._logger,
            level="error",
            event="order_fill_failed",
            message="Fill failed with an unclassified ledger error",
            order_id=order.id,
            kind=order.kind.value,
            signature=error.signature,
            error=str(error),
            logs=error.logs,
        )
        raise error

    async def _on_filled(self, order: Order, signature: str, metadata: dict[str, Any]) -> ExecutionOutcome:
        outcome = self._outcome(order, OrderStatus.EXECUTED, tx_signature=signature, metadata=metadata)
        if order.kind.is_time_locked and self._records is not None:
            await guarded_call(
                lambda: self._records.mark_order_executed(
                    order_id=order.id,
                    tx_signature=signature,
                    ttl_seconds=self._config.order_record_ttl_seconds,
                    payload=outcome.to_dict(),
                ),
                logger=self._logger,
                event="order_record_write_failed",
                message="Failed to record executed fill",
                order_id=order.id,
            )

        log_event(
            self._logger,
            level="info",
            event="order_filled",
            message="Order fill confirmed",
            order_id=order.id,
            kind=order.kind.value,
            owner=str(order.owner),
            signature=signature,
            **metadata,
        )
        await self._journal_outcome(outcome, fill_id=signature)
        return outcome

    async def _journal_outcome(self, outcome: ExecutionOutcome, *, fill_id: str) -> None:
        if self._journal is None:
            return
        await guarded_call(
            lambda: self._journal.record_fill(fill=outcome.to_dict(), fill_id=fill_id),
            logger=self._logger,
            event="fill_journal_write_failed",
            message="Failed to journal fill outcome",
            order_id=outcome.order_id,
        )

    def _gone(self, order: Order, *, source: str) -> ExecutionOutcome:
        log_event(
            self._logger,
            level="info",
            event="order_gone",
            message="Order no longer exists; already filled or cancelled",
            order_id=order.id,
            kind=order.kind.value,
            source=source,
        )
        return self._outcome(order, OrderStatus.GONE, reason="order_gone")

    @staticmethod
    def _outcome(
        order: Order,
        status: OrderStatus,
        *,
        reason: str = "",
        tx_signature: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> ExecutionOutcome:
        return ExecutionOutcome(
            order_id=order.id,
            kind=order.kind,
            status=status,
            reason=reason,
            tx_signature=tx_signature,
            metadata=metadata or {},
        )
