from __future__ import annotations

import asyncio
import logging
import random
import time
from collections import OrderedDict
from typing import Any, Callable, Protocol

from fill_bot.common import RetryPolicy, log_event, spawn_tracked, wait_with_stop

from .types import ExecutionOutcome, FillerConfig, Order, OrderStatus, ScheduledTask


class SlotSource(Protocol):
    async def get_slot(self) -> int:
        ...


class OrderExecutor(Protocol):
    async def execute(self, order: Order) -> ExecutionOutcome:
        ...


class InFlightSet:
    """Order ids currently owned by a scheduled task, plus ids already resolved.

    All methods are synchronous and the service runs on a single event loop,
    so ``claim`` is an atomic check-and-insert with respect to other tasks.
    Only the most recent ``max_settled`` resolved ids are remembered; older
    ones fall back on the persisted execution record.
    """

    def __init__(self, *, max_settled: int = 50_000) -> None:
        self._in_flight: set[str] = set()
        self._settled: OrderedDict[str, None] = OrderedDict()
        self._max_settled = max(1, max_settled)

    def claim(self, order_id: str) -> bool:
        if order_id in self._in_flight or order_id in self._settled:
            return False
        self._in_flight.add(order_id)
        return True

    def release(self, order_id: str) -> None:
        self._in_flight.discard(order_id)

    def settle(self, order_id: str) -> None:
        self._settled[order_id] = None
        self._settled.move_to_end(order_id)
        while len(self._settled) > self._max_settled:
            self._settled.popitem(last=False)

    def is_settled(self, order_id: str) -> bool:
        return order_id in self._settled

    def __contains__(self, order_id: object) -> bool:
        return order_id in self._in_flight

    def __len__(self) -> int:
        return len(self._in_flight)


class Scheduler:
    def __init__(
        self,
        *,
        slots: SlotSource,
        executor: OrderExecutor,
        config: FillerConfig,
        logger: logging.Logger,
        stop_event: asyncio.Event,
        retry_policy: RetryPolicy | None = None,
        jitter: Callable[[float, float], float] = random.uniform,
    ) -> None:
        self._slots = slots
        self._executor = executor
        self._config = config
        self._logger = logger
        self._stop_event = stop_event
        self._retry = retry_policy or RetryPolicy(
            initial_delay_seconds=config.retry_initial_delay_seconds,
            max_delay_seconds=config.retry_max_delay_seconds,
            logger=logger,
        )
        self._jitter = jitter
        self._in_flight = InFlightSet()
        self._tasks: set[asyncio.Task[Any]] = set()
        self._scheduled: dict[str, ScheduledTask] = {}

    @property
    def in_flight(self) -> InFlightSet:
        return self._in_flight

    @property
    def scheduled(self) -> dict[str, ScheduledTask]:
        return dict(self._scheduled)

    def schedule(self, order: Order) -> bool:
        """Claim the order id and start its fill task; False when already owned or resolved."""
        if self._stop_event.is_set():
            return False
        if not self._in_flight.claim(order.id):
            return False

        task = ScheduledTask(order_id=order.id, kind=order.kind, wake_at=time.monotonic())
        self._scheduled[order.id] = task
        spawn_tracked(
            self._run(order, task),
            registry=self._tasks,
            logger=self._logger,
            event="order_task_failed",
            name=f"fill:{order.id}",
        )
        log_event(
            self._logger,
            level="debug",
            event="order_scheduled",
            message="Order scheduled",
            order_id=order.id,
            kind=order.kind.value,
            release_slot=order.release_slot,
        )
        return True

    def wait_seconds(self, order: Order, current_slot: int) -> float:
        if not order.kind.is_time_locked:
            return 0.0

        remaining_slots = order.release_slot + self._config.release_safety_slots - current_slot
        if remaining_slots <= 0:
            return 0.0

        base_seconds = remaining_slots * self._config.slot_duration_ms / 1000.0
        return base_seconds + self._jitter(0.0, self._config.max_jitter_seconds)

    async def _compute_wait(self, order: Order) -> float:
        if not order.kind.is_time_locked:
            return 0.0
        current_slot = await self._retry.run(
            self._slots.get_slot,
            retries=self._config.fill_retries,
            event="slot_fetch_retry",
            order_id=order.id,
        )
        return self.wait_seconds(order, current_slot)

    async def _run(self, order: Order, task: ScheduledTask) -> None:
        try:
            delay_seconds = await self._compute_wait(order)
            task.wake_at = time.monotonic() + delay_seconds
            if delay_seconds > 0:
                task.status = OrderStatus.WAITING
                log_event(
                    self._logger,
                    level="debug",
                    event="order_waiting_for_release",
                    message="Waiting for order release",
                    order_id=order.id,
                    wait_seconds=round(delay_seconds, 3),
                )
                if await wait_with_stop(self._stop_event, delay_seconds):
                    task.status = OrderStatus.ABANDONED
                    return
            elif self._stop_event.is_set():
                task.status = OrderStatus.ABANDONED
                return

            task.status = OrderStatus.EXECUTING

            async def attempt() -> ExecutionOutcome:
                task.attempt_count += 1
                return await self._executor.execute(order)

            outcome = await self._retry.run(
                attempt,
                retries=self._config.fill_retries,
                event="order_fill_retry",
                order_id=order.id,
                kind=order.kind.value,
            )
            task.status = outcome.status
            if outcome.status in (OrderStatus.EXECUTED, OrderStatus.GONE) and order.kind.is_time_locked:
                self._in_flight.settle(order.id)
        except asyncio.CancelledError:
            task.status = OrderStatus.ABANDONED
            raise
        except Exception as error:
            task.status = OrderStatus.ABANDONED
            log_event(
                self._logger,
                level="error",
                event="order_fill_abandoned",
                message="Order fill abandoned after exhausting retries",
                order_id=order.id,
                kind=order.kind.value,
                attempts=task.attempt_count,
                error=str(error),
            )
        finally:
            self._in_flight.release(order.id)
            self._scheduled.pop(order.id, None)

    async def wait_for_idle(self) -> None:
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def cancel_all(self) -> None:
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
