from __future__ import annotations

import asyncio
import contextlib
import inspect
import signal

from dotenv import load_dotenv

from fill_bot.bot_runtime import (
    AppSettings,
    FillBotService,
    load_factory,
    parse_keypair,
    setup_logger,
)
from fill_bot.common import log_event
from fill_bot.filling import FillerConfig
from fill_bot.storage import StorageGateway, StorageSettings


async def main() -> None:
    load_dotenv()
    logger = setup_logger()

    app_settings = AppSettings.from_env()
    filler_config = FillerConfig.from_env()
    storage_settings = StorageSettings.from_env()
    keypair = parse_keypair(app_settings.private_key)

    if not app_settings.protocol_client_factory:
        raise ValueError("PROTOCOL_CLIENT_FACTORY is required.")
    factory = load_factory(app_settings.protocol_client_factory)
    protocol = factory(
        rpc_url=app_settings.rpc_url,
        program_id=app_settings.vault_program_id,
        keypair=keypair,
        logger=logger,
    )
    if inspect.isawaitable(protocol):
        protocol = await protocol

    storage = StorageGateway(storage_settings, logger)
    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()

    def request_shutdown(sig: signal.Signals) -> None:
        log_event(
            logger,
            level="info",
            event="shutdown_signal_received",
            message="Shutdown signal received",
            signal=sig.name,
        )
        stop_event.set()

    for sig in (signal.SIGTERM, signal.SIGINT):
        with contextlib.suppress(NotImplementedError):
            loop.add_signal_handler(sig, request_shutdown, sig)

    service = FillBotService(
        app_settings=app_settings,
        filler_config=filler_config,
        storage=storage,
        keypair=keypair,
        protocol=protocol,
        logger=logger,
        stop_event=stop_event,
    )

    reason = "signal"
    try:
        await service.start()
        await service.run_until_stopped()
    except Exception as error:
        reason = f"fatal: {error}"
        log_event(
            logger,
            level="exception",
            event="service_fatal_error",
            message="Fill bot stopped on a fatal error",
            error=str(error),
        )
        raise
    finally:
        await service.shutdown(reason=reason)


if __name__ == "__main__":
    asyncio.run(main())
