from __future__ import annotations

import dataclasses
import logging
import unittest
from unittest.mock import AsyncMock, MagicMock

from solders.pubkey import Pubkey

from fill_bot.common import RetryPolicy
from fill_bot.filling.errors import (
    FeeCeilingExceededError,
    LedgerExecutionError,
    TransactionSimulationError,
)
from fill_bot.filling.executor import FillExecutor, associated_token_address
from fill_bot.filling.types import (
    FillerConfig,
    InstructionBundle,
    Order,
    OrderStatus,
    TimeLock,
    WithdrawPayload,
)

NATIVE_ASSET = 1
USDC_ASSET = 0
TOKEN_PROGRAM = Pubkey.from_string("TokenkegQfeZyiNwAJbNbGKPFXCWuBvf9Ss623VQ5DA")
SIGNATURE = "5VERv8NMvzbJMEkV8xnrLkEaWRtSz9CosKDYjCJjBRnbJLgp8uirBgmQpjKhoR4tjF3ZpRzrFmBV6UjKdiSZkQUW"


def _make_config(**overrides: object) -> FillerConfig:
    defaults = {
        "withdraw_safety_ratio": 0.85,
        "submit_retries": 3,
        "send_retries": 0,
        "confirm_retries": 1,
        "confirm_poll_interval_seconds": 0.1,
    }
    defaults.update(overrides)
    return dataclasses.replace(FillerConfig.from_env(), **defaults)


def _make_withdraw(*, amount: int = 100, asset_index: int = NATIVE_ASSET) -> Order:
    owner = Pubkey.new_unique()
    return Order.withdraw(
        address=Pubkey.new_unique(),
        time_lock=TimeLock(owner=owner, release_slot=10),
        payload=WithdrawPayload(
            amount_base_units=amount,
            asset_index=asset_index,
            reduce_only=False,
            destination=owner,
        ),
    )


def _program_logs(*lines: str) -> list[str]:
    return [
        "Program vAuLTsyrvSfZRuRB3XgvkPwNGgYSs9YRYymVebLKoxR invoke [1]",
        *lines,
        "Program vAuLTsyrvSfZRuRB3XgvkPwNGgYSs9YRYymVebLKoxR failed: custom program error: 0x1772",
    ]


class FillExecutorTests(unittest.IsolatedAsyncioTestCase):
    def setUp(self) -> None:
        self.operator = Pubkey.new_unique()
        self.usdc_mint = Pubkey.new_unique()

        self.ledger = MagicMock()
        self.ledger.account_exists = AsyncMock(return_value=True)
        self.ledger.get_account_owner = AsyncMock(return_value=TOKEN_PROGRAM)
        self.ledger.get_minimum_balance_for_rent_exemption = AsyncMock(return_value=890_880)
        self.ledger.get_balance = AsyncMock(return_value=5_000_000)
        self.ledger.send_transaction = AsyncMock(return_value=SIGNATURE)
        self.ledger.get_signature_status = AsyncMock(
            return_value={"confirmationStatus": "confirmed", "err": None}
        )
        self.ledger.get_block_height = AsyncMock(return_value=100)
        self.ledger.get_transaction_logs = AsyncMock(return_value=[])

        self.protocol = MagicMock()
        self.protocol.native_asset_index = NATIVE_ASSET
        self.protocol.asset_mint = MagicMock(return_value=self.usdc_mint)
        self.protocol.get_withdrawal_limit = AsyncMock(return_value=1_000)
        self.bundle = InstructionBundle(instructions=[])
        self.protocol.make_fulfil_withdraw_ixs = AsyncMock(return_value=self.bundle)
        self.protocol.make_fulfil_spend_limit_ixs = AsyncMock(return_value=self.bundle)
        self.protocol.make_fulfil_deposit_ixs = AsyncMock(return_value=self.bundle)

        self.built = MagicMock()
        self.built.transaction = object()
        self.built.last_valid_block_height = 200
        self.builder = MagicMock()
        self.builder.build = AsyncMock(return_value=self.built)

        self.balance_monitor = MagicMock()
        self.balance_monitor.check = AsyncMock()

        self.records = MagicMock()
        self.records.get_order_record = AsyncMock(return_value=None)
        self.records.mark_order_executed = AsyncMock(return_value=True)

        self.journal = MagicMock()
        self.journal.record_fill = AsyncMock()

        self.executor = self._make_executor(_make_config())

    def _make_executor(self, config: FillerConfig) -> FillExecutor:
        return FillExecutor(
            ledger=self.ledger,
            protocol=self.protocol,
            builder=self.builder,
            balance_monitor=self.balance_monitor,
            operator=self.operator,
            config=config,
            logger=logging.getLogger("test.executor"),
            records=self.records,
            journal=self.journal,
            retry_policy=RetryPolicy(initial_delay_seconds=0.0, max_delay_seconds=0.0),
        )

    async def test_successful_fill_records_and_checks_balance(self) -> None:
        order = _make_withdraw(amount=100)

        outcome = await self.executor.execute(order)

        self.assertIs(outcome.status, OrderStatus.EXECUTED)
        self.assertEqual(outcome.tx_signature, SIGNATURE)
        self.ledger.send_transaction.assert_awaited_once_with(self.built.transaction)
        self.balance_monitor.check.assert_awaited_once()
        self.records.mark_order_executed.assert_awaited_once()
        self.assertEqual(self.records.mark_order_executed.await_args.kwargs["order_id"], order.id)
        self.assertEqual(self.records.mark_order_executed.await_args.kwargs["tx_signature"], SIGNATURE)
        self.journal.record_fill.assert_awaited_once()
        self.assertEqual(self.journal.record_fill.await_args.kwargs["fill_id"], SIGNATURE)

    async def test_withdrawal_limit_below_safety_ratio_skips(self) -> None:
        self.protocol.get_withdrawal_limit = AsyncMock(return_value=50)
        order = _make_withdraw(amount=100)

        outcome = await self.executor.execute(order)

        self.assertIs(outcome.status, OrderStatus.SKIPPED)
        self.assertEqual(outcome.reason, "insufficient_withdrawal_limit")
        self.protocol.make_fulfil_withdraw_ixs.assert_not_awaited()
        self.ledger.send_transaction.assert_not_awaited()

    async def test_partial_limit_fills_the_smaller_amount(self) -> None:
        self.protocol.get_withdrawal_limit = AsyncMock(return_value=90)
        order = _make_withdraw(amount=100)

        outcome = await self.executor.execute(order)

        self.assertIs(outcome.status, OrderStatus.EXECUTED)
        self.protocol.make_fulfil_withdraw_ixs.assert_awaited_once_with(order, self.operator, 90)
        self.assertEqual(outcome.metadata["fillable_amount"], 90)

    async def test_large_limit_fills_the_requested_amount(self) -> None:
        order = _make_withdraw(amount=100)

        await self.executor.execute(order)

        self.protocol.make_fulfil_withdraw_ixs.assert_awaited_once_with(order, self.operator, 100)

    async def test_missing_order_is_gone_before_building(self) -> None:
        self.ledger.account_exists = AsyncMock(return_value=False)

        outcome = await self.executor.execute(_make_withdraw())

        self.assertIs(outcome.status, OrderStatus.GONE)
        self.builder.build.assert_not_awaited()

    async def test_failed_existence_check_assumes_order_exists(self) -> None:
        self.ledger.account_exists = AsyncMock(side_effect=[RuntimeError("rpc timeout"), True])

        outcome = await self.executor.execute(_make_withdraw())

        self.assertIs(outcome.status, OrderStatus.EXECUTED)
        self.ledger.send_transaction.assert_awaited_once()

    async def test_order_closed_between_cycles_is_gone(self) -> None:
        self.ledger.account_exists = AsyncMock(side_effect=[True, False])

        outcome = await self.executor.execute(_make_withdraw())

        self.assertIs(outcome.status, OrderStatus.GONE)
        self.ledger.send_transaction.assert_not_awaited()

    async def test_preflight_business_rejection_is_terminal(self) -> None:
        self.ledger.send_transaction = AsyncMock(
            side_effect=TransactionSimulationError(
                "Transaction simulation failed",
                logs=_program_logs(
                    "Program log: AnchorError occurred. Error Code: InsufficientDeposit. Error Number: 6002."
                ),
            )
        )

        outcome = await self.executor.execute(_make_withdraw())

        self.assertIs(outcome.status, OrderStatus.FAILED_TERMINAL)
        self.assertEqual(outcome.reason, "insufficient_deposit")
        self.ledger.send_transaction.assert_awaited_once()
        self.balance_monitor.check.assert_not_awaited()
        self.records.mark_order_executed.assert_not_awaited()
        self.assertEqual(
            self.journal.record_fill.await_args.kwargs["fill"]["status"],
            OrderStatus.FAILED_TERMINAL.value,
        )

    async def test_on_chain_daily_limit_is_terminal(self) -> None:
        self.ledger.get_signature_status = AsyncMock(
            return_value={"confirmationStatus": "confirmed", "err": {"InstructionError": [2, {"Custom": 6128}]}}
        )
        self.ledger.get_transaction_logs = AsyncMock(
            return_value=_program_logs("Program log: AnchorError occurred. Error Code: DailyWithdrawLimit.")
        )

        outcome = await self.executor.execute(_make_withdraw())

        self.assertIs(outcome.status, OrderStatus.FAILED_TERMINAL)
        self.assertEqual(outcome.reason, "daily_withdraw_limit")
        self.assertEqual(outcome.tx_signature, SIGNATURE)
        self.ledger.send_transaction.assert_awaited_once()
        self.balance_monitor.check.assert_awaited_once()

    async def test_order_account_gone_in_logs(self) -> None:
        order = _make_withdraw()
        self.ledger.send_transaction = AsyncMock(
            side_effect=TransactionSimulationError(
                "Transaction simulation failed",
                logs=[f"Program log: Account does not exist or has no data {order.id}"],
            )
        )

        outcome = await self.executor.execute(order)

        self.assertIs(outcome.status, OrderStatus.GONE)

    async def test_unclassified_ledger_error_is_raised(self) -> None:
        self.ledger.send_transaction = AsyncMock(
            side_effect=TransactionSimulationError(
                "Transaction simulation failed",
                logs=_program_logs("Program log: something unexpected"),
            )
        )

        with self.assertRaises(LedgerExecutionError):
            await self.executor.execute(_make_withdraw())
        self.ledger.send_transaction.assert_awaited_once()

    async def test_fee_ceiling_skips_without_sending(self) -> None:
        self.builder.build = AsyncMock(
            side_effect=FeeCeilingExceededError(
                "fee_ceiling_exceeded",
                projected_fee_lamports=5_000_000,
                max_fee_lamports=2_000_000,
            )
        )

        outcome = await self.executor.execute(_make_withdraw())

        self.assertIs(outcome.status, OrderStatus.SKIPPED)
        self.assertEqual(outcome.reason, "fee_ceiling_exceeded")
        self.builder.build.assert_awaited_once()
        self.ledger.send_transaction.assert_not_awaited()

    async def test_transient_send_failures_cycle_then_raise(self) -> None:
        self.ledger.send_transaction = AsyncMock(side_effect=RuntimeError("connection reset"))
        executor = self._make_executor(_make_config(submit_retries=2))

        with self.assertRaises(RuntimeError):
            await executor.execute(_make_withdraw())
        self.assertEqual(self.ledger.send_transaction.await_count, 3)
        self.assertEqual(self.builder.build.await_count, 3)

    async def test_expired_blockhash_is_resubmitted(self) -> None:
        self.ledger.get_signature_status = AsyncMock(
            side_effect=[None, {"confirmationStatus": "confirmed", "err": None}]
        )
        self.ledger.get_block_height = AsyncMock(return_value=500)
        executor = self._make_executor(_make_config(confirm_retries=0))

        outcome = await executor.execute(_make_withdraw())

        self.assertIs(outcome.status, OrderStatus.EXECUTED)
        self.assertEqual(self.ledger.send_transaction.await_count, 2)
        self.assertEqual(self.builder.build.await_count, 2)

    async def test_already_recorded_order_is_not_resubmitted(self) -> None:
        self.records.get_order_record = AsyncMock(return_value={"status": "executed", "tx_signature": SIGNATURE})

        outcome = await self.executor.execute(_make_withdraw())

        self.assertIs(outcome.status, OrderStatus.EXECUTED)
        self.assertEqual(outcome.reason, "already_recorded")
        self.builder.build.assert_not_awaited()

    async def test_missing_destination_token_account_skips(self) -> None:
        self.ledger.account_exists = AsyncMock(side_effect=lambda address: address != expected_ata)
        order = _make_withdraw(asset_index=USDC_ASSET)
        expected_ata = associated_token_address(order.payload.destination, self.usdc_mint, TOKEN_PROGRAM)

        outcome = await self.executor.execute(order)

        self.assertIs(outcome.status, OrderStatus.SKIPPED)
        self.assertEqual(outcome.reason, "destination_token_account_missing")
        self.assertEqual(outcome.metadata["token_account"], str(expected_ata))

    async def test_native_destination_below_rent_skips(self) -> None:
        self.ledger.get_balance = AsyncMock(return_value=0)

        outcome = await self.executor.execute(_make_withdraw(amount=100))

        self.assertIs(outcome.status, OrderStatus.SKIPPED)
        self.assertEqual(outcome.reason, "destination_below_rent_exemption")

    async def test_rent_check_uses_the_fillable_amount(self) -> None:
        self.ledger.get_balance = AsyncMock(return_value=0)
        self.protocol.get_withdrawal_limit = AsyncMock(return_value=880_000)

        outcome = await self.executor.execute(_make_withdraw(amount=1_000_000))

        self.assertIs(outcome.status, OrderStatus.SKIPPED)
        self.assertEqual(outcome.reason, "destination_below_rent_exemption")
        self.assertEqual(outcome.metadata["fillable_amount"], 880_000)
        self.protocol.make_fulfil_withdraw_ixs.assert_not_awaited()

    async def test_fillable_amount_covering_rent_is_filled(self) -> None:
        self.ledger.get_balance = AsyncMock(return_value=0)
        self.protocol.get_withdrawal_limit = AsyncMock(return_value=900_000)
        order = _make_withdraw(amount=1_000_000)

        outcome = await self.executor.execute(order)

        self.assertIs(outcome.status, OrderStatus.EXECUTED)
        self.protocol.make_fulfil_withdraw_ixs.assert_awaited_once_with(order, self.operator, 900_000)

    async def test_deposit_credit_skips_existence_and_records(self) -> None:
        order = Order.deposit_credit(owner=Pubkey.new_unique(), asset_index=USDC_ASSET, amount_base_units=42)

        outcome = await self.executor.execute(order)

        self.assertIs(outcome.status, OrderStatus.EXECUTED)
        self.ledger.account_exists.assert_not_awaited()
        self.records.get_order_record.assert_not_awaited()
        self.records.mark_order_executed.assert_not_awaited()
        self.protocol.make_fulfil_deposit_ixs.assert_awaited_once_with(order.owner, USDC_ASSET, self.operator)

    async def test_spend_limit_update_uses_its_builder(self) -> None:
        order = Order.spend_limit_update(
            address=Pubkey.new_unique(),
            time_lock=TimeLock(owner=Pubkey.new_unique(), release_slot=10, is_owner_payer=True),
        )

        outcome = await self.executor.execute(order)

        self.assertIs(outcome.status, OrderStatus.EXECUTED)
        self.protocol.make_fulfil_spend_limit_ixs.assert_awaited_once_with(order, self.operator)
        self.protocol.get_withdrawal_limit.assert_not_awaited()


if __name__ == "__main__":
    unittest.main()
