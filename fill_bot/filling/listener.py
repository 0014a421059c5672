from __future__ import annotations

import asyncio
import base64
import hashlib
import json
import logging
import re
from typing import Any, Protocol

import aiohttp
from solders.pubkey import Pubkey
from solders.transaction import VersionedTransaction

from fill_bot.common import RetryPolicy, log_event, spawn_tracked, wait_with_stop

from .errors import FailureCategory, OrderNotFoundError, classify_failure
from .types import FillerConfig, Order, OrderKind, ProtocolClient

# Instruction name -> (order kind, position of the order account in the instruction accounts).
WATCHED_INSTRUCTIONS: dict[str, tuple[OrderKind, int]] = {
    "InitiateWithdraw": (OrderKind.WITHDRAW, 2),
    "InitiateSpendLimit": (OrderKind.SPEND_LIMIT_UPDATE, 2),
}

_CAMEL_BOUNDARY_RE = re.compile(r"(?<!^)(?=[A-Z])")


class OrderSink(Protocol):
    def schedule(self, order: Order) -> bool:
        ...


class TransactionSource(Protocol):
    async def get_transaction(self, signature: str) -> dict[str, Any] | None:
        ...


def anchor_discriminator(instruction_name: str) -> bytes:
    snake_name = _CAMEL_BOUNDARY_RE.sub("_", instruction_name).lower()
    return hashlib.sha256(f"global:{snake_name}".encode("utf-8")).digest()[:8]


def resolve_account_keys(transaction: VersionedTransaction, meta: dict[str, Any] | None) -> list[Pubkey]:
    keys = list(transaction.message.account_keys)
    loaded = (meta or {}).get("loadedAddresses") or {}
    keys.extend(Pubkey.from_string(str(address)) for address in loaded.get("writable") or [])
    keys.extend(Pubkey.from_string(str(address)) for address in loaded.get("readonly") or [])
    return keys


def extract_order_addresses(
    transaction: VersionedTransaction,
    account_keys: list[Pubkey],
    program_id: Pubkey,
    instruction_name: str,
) -> list[Pubkey]:
    """Order accounts referenced by ``instruction_name`` calls to ``program_id``.

    Raises ``ValueError`` when a matching instruction does not carry an account
    at the expected position.
    """
    _kind, position = WATCHED_INSTRUCTIONS[instruction_name]
    discriminator = anchor_discriminator(instruction_name)

    addresses: list[Pubkey] = []
    for instruction in transaction.message.instructions:
        if instruction.program_id_index >= len(account_keys):
            continue
        if account_keys[instruction.program_id_index] != program_id:
            continue
        if bytes(instruction.data)[:8] != discriminator:
            continue

        account_indexes = bytes(instruction.accounts)
        if position >= len(account_indexes):
            raise ValueError(f"{instruction_name} instruction has no account at position {position}")
        key_index = account_indexes[position]
        if key_index >= len(account_keys):
            raise ValueError(f"{instruction_name} order account index {key_index} is out of range")
        addresses.append(account_keys[key_index])
    return addresses


def decode_transaction(raw: dict[str, Any]) -> VersionedTransaction:
    encoded = raw.get("transaction")
    if not isinstance(encoded, list) or not encoded:
        raise ValueError("Transaction payload is not base64 encoded.")
    return VersionedTransaction.from_bytes(base64.b64decode(str(encoded[0])))


class LedgerEventListener:
    def __init__(
        self,
        *,
        ws_url: str,
        program_id: Pubkey,
        ledger: TransactionSource,
        protocol: ProtocolClient,
        scheduler: OrderSink,
        config: FillerConfig,
        logger: logging.Logger,
        stop_event: asyncio.Event,
        retry_policy: RetryPolicy | None = None,
        commitment: str = "confirmed",
    ) -> None:
        self._ws_url = ws_url
        self._program_id = program_id
        self._ledger = ledger
        self._protocol = protocol
        self._scheduler = scheduler
        self._config = config
        self._logger = logger
        self._stop_event = stop_event
        self._retry = retry_policy or RetryPolicy(
            initial_delay_seconds=config.retry_initial_delay_seconds,
            max_delay_seconds=config.retry_max_delay_seconds,
            logger=logger,
        )
        self._commitment = commitment
        self._session: aiohttp.ClientSession | None = None
        self._ws: aiohttp.ClientWebSocketResponse | None = None
        self._receive_task: asyncio.Task[Any] | None = None
        self._tasks: set[asyncio.Task[Any]] = set()

    async def start(self) -> None:
        await self._subscribe()
        self._receive_task = spawn_tracked(
            self._receive_loop(),
            registry=self._tasks,
            logger=self._logger,
            event="listener_loop_failed",
            name="ledger-listener",
        )

    async def stop(self) -> None:
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        await self._close_socket()
        if self._session is not None:
            await self._session.close()
            self._session = None

    async def _subscribe(self) -> None:
        if self._session is None:
            self._session = aiohttp.ClientSession()
        self._ws = await self._session.ws_connect(self._ws_url, heartbeat=30.0)
        await self._ws.send_json(
            {
                "jsonrpc": "2.0",
                "id": 1,
                "method": "logsSubscribe",
                "params": [
                    {"mentions": [str(self._program_id)]},
                    {"commitment": self._commitment},
                ],
            }
        )
        ack = await self._ws.receive_json(timeout=10.0)
        if not isinstance(ack, dict) or ack.get("error") or ack.get("result") is None:
            raise RuntimeError(f"logsSubscribe was rejected: {ack}")

        log_event(
            self._logger,
            level="info",
            event="listener_subscribed",
            message="Subscribed to vault program logs",
            program_id=str(self._program_id),
            subscription_id=ack.get("result"),
            instructions=list(WATCHED_INSTRUCTIONS),
        )

    async def _close_socket(self) -> None:
        if self._ws is not None and not self._ws.closed:
            await self._ws.close()
        self._ws = None

    async def _receive_loop(self) -> None:
        attempt = 0
        while not self._stop_event.is_set():
            if self._ws is None or self._ws.closed:
                try:
                    await self._subscribe()
                    attempt = 0
                except asyncio.CancelledError:
                    raise
                except Exception as error:
                    delay_seconds = self._retry.backoff_seconds(attempt)
                    attempt += 1
                    log_event(
                        self._logger,
                        level="warning",
                        event="listener_reconnect_failed",
                        message="Listener reconnect failed; backing off",
                        attempt=attempt,
                        backoff_seconds=delay_seconds,
                        error=str(error),
                    )
                    await self._close_socket()
                    if await wait_with_stop(self._stop_event, delay_seconds):
                        return
                    continue

            message = await self._ws.receive()
            if message.type == aiohttp.WSMsgType.TEXT:
                try:
                    payload = json.loads(message.data)
                except json.JSONDecodeError:
                    log_event(
                        self._logger,
                        level="warning",
                        event="listener_message_malformed",
                        message="Ignoring malformed websocket message",
                    )
                    continue
                self.handle_message(payload)
            elif message.type in (aiohttp.WSMsgType.CLOSE, aiohttp.WSMsgType.CLOSED, aiohttp.WSMsgType.ERROR):
                log_event(
                    self._logger,
                    level="warning",
                    event="listener_disconnected",
                    message="Listener websocket disconnected; reconnecting",
                    ws_message_type=str(message.type),
                )
                await self._close_socket()

    def handle_message(self, payload: Any) -> int:
        """Spawn a handler task per watched instruction found in a logs notification."""
        if not isinstance(payload, dict) or payload.get("method") != "logsNotification":
            return 0

        value = ((payload.get("params") or {}).get("result") or {}).get("value") or {}
        if value.get("err") is not None:
            return 0
        signature = str(value.get("signature") or "")
        logs = [str(line) for line in value.get("logs") or []]
        if not signature or not logs:
            return 0

        spawned = 0
        for instruction_name in WATCHED_INSTRUCTIONS:
            if f"Program log: Instruction: {instruction_name}" not in logs:
                continue
            spawn_tracked(
                self.process_notification(signature, instruction_name),
                registry=self._tasks,
                logger=self._logger,
                event="listener_notification_failed",
            )
            spawned += 1
        return spawned

    async def _fetch_transaction(self, signature: str) -> dict[str, Any]:
        transaction = await self._ledger.get_transaction(signature)
        if transaction is None:
            raise RuntimeError(f"Transaction {signature} is not available yet")
        return transaction

    async def process_notification(self, signature: str, instruction_name: str) -> int:
        kind, _position = WATCHED_INSTRUCTIONS[instruction_name]
        try:
            raw = await self._retry.run(
                lambda: self._fetch_transaction(signature),
                retries=self._config.parse_retries,
                event="listener_transaction_fetch_retry",
                signature=signature,
            )
            transaction = decode_transaction(raw)
            account_keys = resolve_account_keys(transaction, raw.get("meta"))
            addresses = extract_order_addresses(transaction, account_keys, self._program_id, instruction_name)
        except asyncio.CancelledError:
            raise
        except Exception as error:
            log_event(
                self._logger,
                level="error",
                event="listener_order_extraction_failed",
                message="Failed to locate order account in instruction",
                signature=signature,
                instruction=instruction_name,
                error=str(error),
            )
            return 0

        scheduled = 0
        for address in addresses:
            if await self._process_order(kind, address):
                scheduled += 1
        return scheduled

    async def _process_order(self, kind: OrderKind, address: Pubkey) -> bool:
        try:
            order = await self._retry.run(
                lambda: self._protocol.parse_order(kind, address),
                retries=self._config.parse_retries,
                event="listener_order_parse_retry",
                give_up_on=(OrderNotFoundError,),
                order_id=str(address),
            )
        except OrderNotFoundError:
            return False
        except asyncio.CancelledError:
            raise
        except Exception as error:
            category, _reason = classify_failure(str(error), order_id=str(address))
            if category is FailureCategory.ORDER_GONE:
                return False
            log_event(
                self._logger,
                level="error",
                event="listener_order_parse_failed",
                message="Failed to parse order from instruction",
                order_id=str(address),
                kind=kind.value,
                error=str(error),
            )
            return False

        return self._scheduler.schedule(order)
