from __future__ import annotations

import logging
from typing import Iterable, Protocol

from fill_bot.common import RetryPolicy, log_event

from .errors import IndexerError
from .indexer import IndexerApi
from .types import DepositBalances, FillerConfig, Order, OrderKind, ProtocolClient


class OrderSink(Protocol):
    def schedule(self, order: Order) -> bool:
        ...


class SlotSource(Protocol):
    async def get_slot(self) -> int:
        ...


def filter_missed_orders(orders: Iterable[Order], current_slot: int, threshold_slots: int) -> list[Order]:
    """Orders whose release passed more than ``threshold_slots`` ago.

    Orders released more recently are assumed to be handled by the event
    listener already.
    """
    cutoff = current_slot - threshold_slots
    return [order for order in orders if order.release_slot < cutoff]


def _default_retry_policy(config: FillerConfig, logger: logging.Logger) -> RetryPolicy:
    return RetryPolicy(
        initial_delay_seconds=config.retry_initial_delay_seconds,
        max_delay_seconds=config.retry_max_delay_seconds,
        logger=logger,
    )


class OrderDiscovery:
    def __init__(
        self,
        *,
        protocol: ProtocolClient,
        slots: SlotSource,
        scheduler: OrderSink,
        config: FillerConfig,
        logger: logging.Logger,
        indexer: IndexerApi | None = None,
        retry_policy: RetryPolicy | None = None,
    ) -> None:
        self._protocol = protocol
        self._slots = slots
        self._scheduler = scheduler
        self._config = config
        self._logger = logger
        self._indexer = indexer
        self._retry = retry_policy or _default_retry_policy(config, logger)

    async def _fetch_from_indexer(self) -> list[Order] | None:
        if self._indexer is None or not self._indexer.enabled:
            return None
        try:
            withdraw_orders, spend_limit_orders = await self._indexer.fetch_open_orders()
        except IndexerError as error:
            log_event(
                self._logger,
                level="warning",
                event="discovery_indexer_fallback",
                message="Indexed API unavailable; falling back to direct ledger discovery",
                error=str(error),
            )
            return None
        return [*withdraw_orders, *spend_limit_orders]

    async def _fetch_from_ledger(self) -> list[Order]:
        orders: list[Order] = []
        for kind in (OrderKind.WITHDRAW, OrderKind.SPEND_LIMIT_UPDATE):
            orders.extend(
                await self._retry.run(
                    lambda kind=kind: self._protocol.get_open_orders(kind),
                    retries=self._config.discovery_rpc_retries,
                    event="discovery_ledger_retry",
                    kind=kind.value,
                )
            )
        return orders

    async def run_pass(self, *, only_missed: bool = True) -> int:
        try:
            orders = await self._fetch_from_indexer()
            source = "indexer"
            if orders is None:
                orders = await self._fetch_from_ledger()
                source = "ledger"

            discovered = len(orders)
            if only_missed:
                current_slot = await self._slots.get_slot()
                orders = filter_missed_orders(orders, current_slot, self._config.missed_order_slots)

            scheduled = sum(1 for order in orders if self._scheduler.schedule(order))
        except Exception as error:
            log_event(
                self._logger,
                level="error",
                event="discovery_pass_failed",
                message="Open order discovery pass failed",
                only_missed=only_missed,
                error=str(error),
            )
            return 0

        log_event(
            self._logger,
            level="info",
            event="discovery_pass_completed",
            message="Open order discovery pass completed",
            source=source,
            only_missed=only_missed,
            discovered=discovered,
            candidates=len(orders),
            scheduled=scheduled,
        )
        return scheduled


class DepositCreditScanner:
    def __init__(
        self,
        *,
        protocol: ProtocolClient,
        scheduler: OrderSink,
        config: FillerConfig,
        logger: logging.Logger,
        indexer: IndexerApi | None = None,
        retry_policy: RetryPolicy | None = None,
    ) -> None:
        self._protocol = protocol
        self._scheduler = scheduler
        self._config = config
        self._logger = logger
        self._indexer = indexer
        self._retry = retry_policy or _default_retry_policy(config, logger)

    async def _fetch_balances(self) -> tuple[list[DepositBalances], str]:
        if self._indexer is not None and self._indexer.enabled:
            try:
                return await self._indexer.fetch_deposit_balances(self._protocol), "indexer"
            except IndexerError as error:
                log_event(
                    self._logger,
                    level="warning",
                    event="deposit_scan_indexer_fallback",
                    message="Indexed API unavailable; falling back to direct ledger deposit scan",
                    error=str(error),
                )

        owners = await self._retry.run(
            self._protocol.list_vault_owners,
            retries=self._config.discovery_rpc_retries,
            event="deposit_scan_owners_retry",
        )
        balances = await self._retry.run(
            lambda: self._protocol.get_deposit_balances(owners),
            retries=self._config.discovery_rpc_retries,
            event="deposit_scan_balances_retry",
            owners=len(owners),
        )
        return balances, "ledger"

    async def run_pass(self) -> int:
        try:
            deposit_balances, source = await self._fetch_balances()
            supported = list(self._protocol.supported_asset_indices)

            scheduled = 0
            for entry in deposit_balances:
                for asset_index in supported:
                    amount = entry.balances.get(asset_index, 0)
                    if amount <= 0:
                        continue
                    order = Order.deposit_credit(
                        owner=entry.owner,
                        asset_index=asset_index,
                        amount_base_units=amount,
                    )
                    if self._scheduler.schedule(order):
                        scheduled += 1
        except Exception as error:
            log_event(
                self._logger,
                level="error",
                event="deposit_scan_failed",
                message="Deposit address scan failed",
                error=str(error),
            )
            return 0

        log_event(
            self._logger,
            level="info",
            event="deposit_scan_completed",
            message="Deposit address scan completed",
            source=source,
            users=len(deposit_balances),
            scheduled=scheduled,
        )
        return scheduled
