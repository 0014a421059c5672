from __future__ import annotations

import asyncio
import logging
import unittest
from unittest.mock import AsyncMock, MagicMock

from solders.keypair import Keypair
from solders.pubkey import Pubkey

from fill_bot.bot_runtime.service import FillBotService, bootstrap_dependencies
from fill_bot.bot_runtime.settings import AppSettings
from fill_bot.filling.types import FillerConfig


def _make_storage() -> MagicMock:
    storage = MagicMock()
    storage.connect = AsyncMock()
    storage.close = AsyncMock()
    storage.publish_event = AsyncMock()
    storage.send_alert = AsyncMock(return_value=True)
    storage.mark_run_stopped = AsyncMock()
    return storage


def _make_ledger() -> MagicMock:
    ledger = MagicMock()
    ledger.connect = AsyncMock()
    ledger.healthcheck = AsyncMock()
    ledger.close = AsyncMock()
    return ledger


class BootstrapDependenciesTests(unittest.IsolatedAsyncioTestCase):
    def setUp(self) -> None:
        self.logger = logging.getLogger("test.bootstrap")
        self.stop_event = asyncio.Event()
        self.app_settings = MagicMock()
        self.app_settings.error_backoff_seconds = 0.0
        self.protocol = MagicMock()
        self.protocol.connect = AsyncMock()

    async def test_retries_until_dependencies_are_ready(self) -> None:
        storage = _make_storage()
        storage.connect = AsyncMock(side_effect=[RuntimeError("redis refused"), None])
        ledger = _make_ledger()

        await bootstrap_dependencies(
            logger=self.logger,
            stop_event=self.stop_event,
            app_settings=self.app_settings,
            storage=storage,
            ledger=ledger,
            indexer=None,
            protocol=self.protocol,
        )

        self.assertEqual(storage.connect.await_count, 2)
        storage.close.assert_awaited_once()
        ledger.close.assert_awaited_once()
        ledger.healthcheck.assert_awaited_once()
        self.protocol.connect.assert_awaited_once()

    async def test_stop_during_bootstrap_raises(self) -> None:
        storage = _make_storage()
        ledger = _make_ledger()

        async def fail_and_stop() -> None:
            self.stop_event.set()
            raise RuntimeError("rpc down")

        ledger.healthcheck = AsyncMock(side_effect=fail_and_stop)

        with self.assertRaises(RuntimeError):
            await bootstrap_dependencies(
                logger=self.logger,
                stop_event=self.stop_event,
                app_settings=self.app_settings,
                storage=storage,
                ledger=ledger,
                indexer=None,
                protocol=self.protocol,
            )
        ledger.healthcheck.assert_awaited_once()

    async def test_protocol_without_connect_is_accepted(self) -> None:
        protocol = object()
        indexer = MagicMock()
        indexer.connect = AsyncMock()

        await bootstrap_dependencies(
            logger=self.logger,
            stop_event=self.stop_event,
            app_settings=self.app_settings,
            storage=_make_storage(),
            ledger=_make_ledger(),
            indexer=indexer,
            protocol=protocol,
        )

        indexer.connect.assert_awaited_once()


def _make_app_settings() -> AppSettings:
    return AppSettings(
        rpc_url="http://rpc.local",
        ws_url="ws://rpc.local",
        internal_api_url="",
        private_key="",
        vault_program_id=Pubkey.new_unique(),
        protocol_client_factory="",
        error_backoff_seconds=0.0,
        heartbeat_interval_seconds=60.0,
        http_timeout_seconds=5.0,
    )


class FillBotServiceShutdownTests(unittest.IsolatedAsyncioTestCase):
    def setUp(self) -> None:
        self.storage = _make_storage()
        self.keypair = Keypair()
        self.service = FillBotService(
            app_settings=_make_app_settings(),
            filler_config=FillerConfig.from_env(),
            storage=self.storage,
            keypair=self.keypair,
            protocol=MagicMock(),
            logger=logging.getLogger("test.shutdown"),
            stop_event=asyncio.Event(),
        )

    async def test_graceful_shutdown_sends_final_alert(self) -> None:
        await self.service.shutdown(reason="signal")

        self.storage.send_alert.assert_awaited_once()
        kwargs = self.storage.send_alert.await_args.kwargs
        self.assertEqual(kwargs["subject"], "Fill bot stopped")
        self.assertEqual(kwargs["dedupe_key"], "service_stopped")
        self.assertIn("signal", kwargs["message"])
        self.assertIn(str(self.keypair.pubkey()), kwargs["message"])
        self.storage.mark_run_stopped.assert_awaited_once_with(reason="signal")
        self.storage.close.assert_awaited_once()

    async def test_failed_alert_does_not_block_shutdown(self) -> None:
        self.storage.send_alert = AsyncMock(side_effect=RuntimeError("firestore down"))

        await self.service.shutdown(reason="fatal: boom")

        self.storage.mark_run_stopped.assert_awaited_once_with(reason="fatal: boom")
        self.storage.close.assert_awaited_once()


if __name__ == "__main__":
    unittest.main()
