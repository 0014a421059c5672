from __future__ import annotations

import asyncio
import dataclasses
import logging
import unittest
from unittest.mock import AsyncMock, MagicMock

from solders.pubkey import Pubkey

from fill_bot.common import RetryPolicy
from fill_bot.filling.scheduler import InFlightSet, Scheduler
from fill_bot.filling.types import (
    ExecutionOutcome,
    FillerConfig,
    Order,
    OrderStatus,
    TimeLock,
    WithdrawPayload,
)


def _make_config(**overrides: object) -> FillerConfig:
    defaults = {
        "slot_duration_ms": 400,
        "release_safety_slots": 1,
        "max_jitter_seconds": 10.0,
        "fill_retries": 3,
    }
    defaults.update(overrides)
    return dataclasses.replace(FillerConfig.from_env(), **defaults)


def _make_withdraw(*, release_slot: int) -> Order:
    owner = Pubkey.new_unique()
    return Order.withdraw(
        address=Pubkey.new_unique(),
        time_lock=TimeLock(owner=owner, release_slot=release_slot),
        payload=WithdrawPayload(
            amount_base_units=1_000,
            asset_index=1,
            reduce_only=False,
            destination=owner,
        ),
    )


def _outcome(order: Order, status: OrderStatus) -> ExecutionOutcome:
    return ExecutionOutcome(order_id=order.id, kind=order.kind, status=status)


class InFlightSetTests(unittest.TestCase):
    def test_claim_is_exclusive_until_release(self) -> None:
        in_flight = InFlightSet()

        self.assertTrue(in_flight.claim("a"))
        self.assertFalse(in_flight.claim("a"))
        self.assertIn("a", in_flight)
        in_flight.release("a")
        self.assertTrue(in_flight.claim("a"))

    def test_settled_ids_cannot_be_claimed(self) -> None:
        in_flight = InFlightSet()
        in_flight.settle("a")

        self.assertFalse(in_flight.claim("a"))
        self.assertEqual(len(in_flight), 0)

    def test_settled_ids_are_bounded_to_the_most_recent(self) -> None:
        in_flight = InFlightSet(max_settled=2)
        for order_id in ("a", "b", "c"):
            in_flight.settle(order_id)

        self.assertFalse(in_flight.is_settled("a"))
        self.assertTrue(in_flight.is_settled("b"))
        self.assertTrue(in_flight.is_settled("c"))
        self.assertTrue(in_flight.claim("a"))

    def test_resettling_refreshes_an_id(self) -> None:
        in_flight = InFlightSet(max_settled=2)
        in_flight.settle("a")
        in_flight.settle("b")
        in_flight.settle("a")
        in_flight.settle("c")

        self.assertTrue(in_flight.is_settled("a"))
        self.assertFalse(in_flight.is_settled("b"))


class SchedulerTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self.stop_event = asyncio.Event()
        self.slots = MagicMock()
        self.slots.get_slot = AsyncMock(return_value=10_000)
        self.executor = MagicMock()
        self.executor.execute = AsyncMock(
            side_effect=lambda order: _outcome(order, OrderStatus.EXECUTED)
        )
        self.scheduler = self._make_scheduler(_make_config())

    def _make_scheduler(self, config: FillerConfig) -> Scheduler:
        return Scheduler(
            slots=self.slots,
            executor=self.executor,
            config=config,
            logger=logging.getLogger("test.scheduler"),
            stop_event=self.stop_event,
            retry_policy=RetryPolicy(initial_delay_seconds=0.0, max_delay_seconds=0.0),
            jitter=lambda _low, _high: 0.0,
        )

    async def asyncTearDown(self) -> None:
        await self.scheduler.cancel_all()

    def test_wait_is_remaining_slots_times_tick(self) -> None:
        order = _make_withdraw(release_slot=1000)

        self.assertAlmostEqual(self.scheduler.wait_seconds(order, 990), 4.4)

    def test_released_order_runs_immediately(self) -> None:
        order = _make_withdraw(release_slot=1000)

        self.assertEqual(self.scheduler.wait_seconds(order, 1001), 0.0)
        self.assertEqual(self.scheduler.wait_seconds(order, 5000), 0.0)

    def test_deposit_credit_never_waits(self) -> None:
        order = Order.deposit_credit(owner=Pubkey.new_unique(), asset_index=1, amount_base_units=5)

        self.assertEqual(self.scheduler.wait_seconds(order, 0), 0.0)

    def test_jitter_is_added_to_future_wake(self) -> None:
        scheduler = Scheduler(
            slots=self.slots,
            executor=self.executor,
            config=_make_config(max_jitter_seconds=10.0),
            logger=logging.getLogger("test.scheduler"),
            stop_event=self.stop_event,
            jitter=lambda low, high: high,
        )
        order = _make_withdraw(release_slot=1000)

        self.assertAlmostEqual(scheduler.wait_seconds(order, 990), 14.4)

    async def test_duplicate_schedule_runs_one_fill(self) -> None:
        order = _make_withdraw(release_slot=100)

        results = [self.scheduler.schedule(order) for _ in range(5)]
        await self.scheduler.wait_for_idle()

        self.assertEqual(results, [True, False, False, False, False])
        self.executor.execute.assert_awaited_once_with(order)

    async def test_executed_order_is_never_rescheduled(self) -> None:
        order = _make_withdraw(release_slot=100)

        self.assertTrue(self.scheduler.schedule(order))
        await self.scheduler.wait_for_idle()

        self.assertTrue(self.scheduler.in_flight.is_settled(order.id))
        self.assertFalse(self.scheduler.schedule(order))
        self.assertEqual(self.executor.execute.await_count, 1)

    async def test_gone_order_is_settled(self) -> None:
        self.executor.execute = AsyncMock(side_effect=lambda order: _outcome(order, OrderStatus.GONE))
        self.scheduler = self._make_scheduler(_make_config())
        order = _make_withdraw(release_slot=100)

        self.scheduler.schedule(order)
        await self.scheduler.wait_for_idle()

        self.assertTrue(self.scheduler.in_flight.is_settled(order.id))

    async def test_skipped_order_can_be_rediscovered(self) -> None:
        self.executor.execute = AsyncMock(side_effect=lambda order: _outcome(order, OrderStatus.SKIPPED))
        self.scheduler = self._make_scheduler(_make_config())
        order = _make_withdraw(release_slot=100)

        self.scheduler.schedule(order)
        await self.scheduler.wait_for_idle()

        self.assertNotIn(order.id, self.scheduler.in_flight)
        self.assertTrue(self.scheduler.schedule(order))
        await self.scheduler.wait_for_idle()
        self.assertEqual(self.executor.execute.await_count, 2)

    async def test_exhausted_retries_drop_the_order(self) -> None:
        self.executor.execute = AsyncMock(side_effect=RuntimeError("rpc unavailable"))
        self.scheduler = self._make_scheduler(_make_config(fill_retries=2))
        order = _make_withdraw(release_slot=100)

        self.scheduler.schedule(order)
        await self.scheduler.wait_for_idle()

        self.assertEqual(self.executor.execute.await_count, 3)
        self.assertNotIn(order.id, self.scheduler.in_flight)
        self.assertFalse(self.scheduler.in_flight.is_settled(order.id))
        self.assertEqual(self.scheduler.scheduled, {})

    async def test_deposit_credit_ids_are_not_settled(self) -> None:
        order = Order.deposit_credit(owner=Pubkey.new_unique(), asset_index=1, amount_base_units=5)

        self.scheduler.schedule(order)
        await self.scheduler.wait_for_idle()

        self.assertFalse(self.scheduler.in_flight.is_settled(order.id))
        self.slots.get_slot.assert_not_awaited()
        self.assertTrue(self.scheduler.schedule(order))

    async def test_stop_abandons_waiting_orders(self) -> None:
        order = _make_withdraw(release_slot=10_000 + 1_000)

        self.assertTrue(self.scheduler.schedule(order))
        await asyncio.sleep(0.01)
        self.stop_event.set()
        await self.scheduler.wait_for_idle()

        self.executor.execute.assert_not_awaited()
        self.assertNotIn(order.id, self.scheduler.in_flight)
        self.assertFalse(self.scheduler.schedule(order))


if __name__ == "__main__":
    unittest.main()
