from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable

from solders.keypair import Keypair

from fill_bot.common import RetryPolicy, guarded_call, log_event, spawn_tracked, wait_with_stop
from fill_bot.filling import (
    BalanceMonitor,
    DepositCreditScanner,
    FillerConfig,
    FillExecutor,
    IndexerApi,
    LedgerEventListener,
    LedgerRpc,
    OrderDiscovery,
    ProtocolClient,
    Scheduler,
    TransactionBuilder,
)
from fill_bot.filling.types import LAMPORTS_PER_SOL
from fill_bot.storage import StorageGateway

from .settings import AppSettings


async def _maybe_call(target: Any, method_name: str) -> None:
    method = getattr(target, method_name, None)
    if method is None:
        return
    result = method()
    if asyncio.iscoroutine(result) or isinstance(result, asyncio.Future):
        await result


async def bootstrap_dependencies(
    *,
    logger: logging.Logger,
    stop_event: asyncio.Event,
    app_settings: AppSettings,
    storage: StorageGateway,
    ledger: LedgerRpc,
    indexer: IndexerApi | None,
    protocol: ProtocolClient,
) -> None:
    while not stop_event.is_set():
        try:
            await storage.connect()
            await ledger.connect()
            await ledger.healthcheck()
            if indexer is not None:
                await indexer.connect()
            await _maybe_call(protocol, "connect")
            return
        except Exception as error:
            log_event(
                logger,
                level="exception",
                event="bootstrap_error",
                message="Dependency bootstrap failed",
                error=str(error),
            )
            await guarded_call(
                lambda: storage.publish_event(
                    level="ERROR",
                    event="bootstrap_error",
                    message="Failed to initialize dependencies",
                    details={"error": str(error)},
                ),
                logger=logger,
                event="bootstrap_publish_error_failed",
                message="Failed to publish bootstrap error",
            )
            await guarded_call(
                ledger.close,
                logger=logger,
                event="bootstrap_ledger_close_failed",
                message="Failed to close ledger client during bootstrap retry",
            )
            if indexer is not None:
                await guarded_call(
                    indexer.close,
                    logger=logger,
                    event="bootstrap_indexer_close_failed",
                    message="Failed to close indexer client during bootstrap retry",
                )
            await guarded_call(
                storage.close,
                logger=logger,
                event="bootstrap_storage_close_failed",
                message="Failed to close storage during bootstrap retry",
            )

            await wait_with_stop(stop_event, app_settings.error_backoff_seconds)

    raise RuntimeError("Shutdown requested before dependencies were initialized.")


class FillBotService:
    def __init__(
        self,
        *,
        app_settings: AppSettings,
        filler_config: FillerConfig,
        storage: StorageGateway,
        keypair: Keypair,
        protocol: ProtocolClient,
        logger: logging.Logger,
        stop_event: asyncio.Event,
    ) -> None:
        self._settings = app_settings
        self._config = filler_config
        self._storage = storage
        self._keypair = keypair
        self._protocol = protocol
        self._logger = logger
        self._stop_event = stop_event
        self._periodic_tasks: set[asyncio.Task[Any]] = set()

        retry_policy = RetryPolicy(
            initial_delay_seconds=filler_config.retry_initial_delay_seconds,
            max_delay_seconds=filler_config.retry_max_delay_seconds,
            logger=logger,
        )
        self.ledger = LedgerRpc(
            rpc_url=app_settings.rpc_url,
            logger=logger,
            timeout_seconds=app_settings.http_timeout_seconds,
        )
        self.indexer = (
            IndexerApi(
                base_url=app_settings.internal_api_url,
                logger=logger,
                timeout_seconds=app_settings.http_timeout_seconds,
                deposit_rent_lamports=filler_config.deposit_rent_lamports,
            )
            if app_settings.internal_api_url
            else None
        )
        self.balance_monitor = BalanceMonitor(
            ledger=self.ledger,
            address=keypair.pubkey(),
            alerts=storage,
            min_balance_lamports=filler_config.min_balance_lamports,
            logger=logger,
        )
        self.executor = FillExecutor(
            ledger=self.ledger,
            protocol=protocol,
            builder=TransactionBuilder(
                ledger=self.ledger,
                payer=keypair,
                config=filler_config,
                logger=logger,
            ),
            balance_monitor=self.balance_monitor,
            operator=keypair.pubkey(),
            config=filler_config,
            logger=logger,
            indexer=self.indexer,
            records=storage,
            journal=storage,
            retry_policy=retry_policy,
        )
        self.scheduler = Scheduler(
            slots=self.ledger,
            executor=self.executor,
            config=filler_config,
            logger=logger,
            stop_event=stop_event,
            retry_policy=retry_policy,
        )
        self.listener = LedgerEventListener(
            ws_url=app_settings.ws_url,
            program_id=app_settings.vault_program_id,
            ledger=self.ledger,
            protocol=protocol,
            scheduler=self.scheduler,
            config=filler_config,
            logger=logger,
            stop_event=stop_event,
            retry_policy=retry_policy,
            commitment=self.ledger.commitment,
        )
        self.discovery = OrderDiscovery(
            protocol=protocol,
            slots=self.ledger,
            scheduler=self.scheduler,
            config=filler_config,
            logger=logger,
            indexer=self.indexer,
            retry_policy=retry_policy,
        )
        self.deposit_scanner = DepositCreditScanner(
            protocol=protocol,
            scheduler=self.scheduler,
            config=filler_config,
            logger=logger,
            indexer=self.indexer,
            retry_policy=retry_policy,
        )

    @property
    def address(self) -> str:
        return str(self._keypair.pubkey())

    async def start(self) -> None:
        await bootstrap_dependencies(
            logger=self._logger,
            stop_event=self._stop_event,
            app_settings=self._settings,
            storage=self._storage,
            ledger=self.ledger,
            indexer=self.indexer,
            protocol=self._protocol,
        )

        balance = await self.ledger.get_balance(self._keypair.pubkey())
        log_event(
            self._logger,
            level="info",
            event="filler_initialized",
            message="Fill bot initialized",
            address=self.address,
            balance_sol=balance / LAMPORTS_PER_SOL,
            indexer_enabled=self.indexer is not None,
        )

        await self.listener.start()
        await self.discovery.run_pass(only_missed=False)

        self._spawn_periodic(
            name="missed_order_discovery",
            interval_seconds=self._config.discovery_interval_seconds,
            action=lambda: self.discovery.run_pass(only_missed=True),
        )
        self._spawn_periodic(
            name="deposit_scan",
            interval_seconds=self._config.deposit_scan_interval_seconds,
            action=self.deposit_scanner.run_pass,
            run_immediately=True,
        )
        self._spawn_periodic(
            name="heartbeat",
            interval_seconds=self._settings.heartbeat_interval_seconds,
            action=self.heartbeat,
            run_immediately=True,
        )

        await guarded_call(
            lambda: self._storage.publish_event(
                level="INFO",
                event="bot_started",
                message="Fill bot started",
                details={
                    "address": self.address,
                    "balance_lamports": balance,
                    "discovery_interval_seconds": self._config.discovery_interval_seconds,
                    "deposit_scan_interval_seconds": self._config.deposit_scan_interval_seconds,
                },
            ),
            logger=self._logger,
            event="bot_started_publish_failed",
            message="Failed to publish bot_started event",
        )

    async def heartbeat(self) -> None:
        log_event(
            self._logger,
            level="info",
            event="heartbeat",
            message="Heartbeat",
            address=self.address,
            in_flight=len(self.scheduler.in_flight),
        )
        await guarded_call(
            self._storage.update_heartbeat,
            logger=self._logger,
            event="heartbeat_update_failed",
            message="Failed to update Redis heartbeat",
        )
        await guarded_call(
            lambda: self._storage.update_run_heartbeat(
                details={"address": self.address, "in_flight": len(self.scheduler.in_flight)}
            ),
            logger=self._logger,
            event="run_heartbeat_update_failed",
            message="Failed to update run heartbeat",
        )

    def _spawn_periodic(
        self,
        *,
        name: str,
        interval_seconds: float,
        action: Callable[[], Awaitable[Any]],
        run_immediately: bool = False,
    ) -> None:
        async def loop() -> None:
            if run_immediately:
                await guarded_call(
                    action,
                    logger=self._logger,
                    event=f"{name}_failed",
                    message=f"Periodic {name} run failed",
                    level="error",
                )
            while not await wait_with_stop(self._stop_event, interval_seconds):
                await guarded_call(
                    action,
                    logger=self._logger,
                    event=f"{name}_failed",
                    message=f"Periodic {name} run failed",
                    level="error",
                )

        spawn_tracked(
            loop(),
            registry=self._periodic_tasks,
            logger=self._logger,
            event="periodic_task_failed",
            name=name,
        )

    async def run_until_stopped(self) -> None:
        await self._stop_event.wait()

    async def shutdown(self, *, reason: str) -> None:
        self._stop_event.set()

        await guarded_call(
            lambda: self._storage.publish_event(
                level="INFO",
                event="bot_stopped",
                message="Fill bot stopped",
                details={"reason": reason, "in_flight": len(self.scheduler.in_flight)},
            ),
            logger=self._logger,
            event="bot_stopped_publish_failed",
            message="Failed to publish bot_stopped event",
        )
        await guarded_call(
            lambda: self._storage.send_alert(
                subject="Fill bot stopped",
                message=f"Fill bot at {self.address} stopped: {reason}",
                dedupe_key="service_stopped",
            ),
            logger=self._logger,
            event="shutdown_alert_failed",
            message="Failed to send shutdown alert",
        )
        await guarded_call(
            lambda: self._storage.mark_run_stopped(reason=reason),
            logger=self._logger,
            event="run_stop_mark_failed",
            message="Failed to mark run as stopped",
        )

        tasks = list(self._periodic_tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

        await guarded_call(
            self.listener.stop,
            logger=self._logger,
            event="listener_stop_failed",
            message="Failed to stop ledger listener",
        )
        await self.scheduler.cancel_all()

        await guarded_call(
            lambda: _maybe_call(self._protocol, "close"),
            logger=self._logger,
            event="protocol_close_failed",
            message="Failed to close protocol client",
        )
        if self.indexer is not None:
            await guarded_call(
                self.indexer.close,
                logger=self._logger,
                event="indexer_close_failed",
                message="Failed to close indexer client",
            )
        await guarded_call(
            self.ledger.close,
            logger=self._logger,
            event="ledger_close_failed",
            message="Failed to close ledger client",
        )
        await guarded_call(
            self._storage.close,
            logger=self._logger,
            event="storage_close_failed",
            message="Failed to close storage",
        )
        log_event(
            self._logger,
            level="info",
            event="shutdown_completed",
            message="Shutdown completed",
            reason=reason,
        )
