from __future__ import annotations

import json
import logging
from typing import Any

import aiohttp
from solders.pubkey import Pubkey

from fill_bot.common import log_event

from .errors import IndexerError
from .types import (
    DepositBalances,
    Order,
    OrderKind,
    ProtocolClient,
    SpendLimitPayload,
    TimeLock,
    WithdrawPayload,
    to_int,
)

OPEN_ORDERS_PATH = "/data/all-open-orders"
ORDER_PATHS = {
    OrderKind.WITHDRAW: "/data/order/withdraw",
    OrderKind.SPEND_LIMIT_UPDATE: "/data/order/spend-limits",
}


def _parse_time_lock(raw: Any) -> TimeLock:
    if not isinstance(raw, dict):
        raise ValueError(f"time_lock must be an object: {raw}")
    release_slot = to_int(raw.get("release_slot"), -1)
    if release_slot < 0:
        raise ValueError(f"time_lock.release_slot is missing: {raw}")
    return TimeLock(
        owner=Pubkey.from_string(str(raw["owner"])),
        release_slot=release_slot,
        is_owner_payer=bool(raw.get("is_owner_payer", False)),
    )


def parse_withdraw_order(raw: dict[str, Any]) -> Order:
    account = raw["account"]
    return Order.withdraw(
        address=Pubkey.from_string(str(raw["publicKey"])),
        time_lock=_parse_time_lock(account.get("time_lock")),
        payload=WithdrawPayload(
            amount_base_units=to_int(account.get("amount_base_units"), 0),
            asset_index=to_int(account.get("drift_market_index"), 0),
            reduce_only=bool(account.get("reduce_only", False)),
            destination=Pubkey.from_string(str(account["destination"])),
        ),
    )


def parse_spend_limit_order(raw: dict[str, Any]) -> Order:
    account = raw["account"]
    return Order.spend_limit_update(
        address=Pubkey.from_string(str(raw["publicKey"])),
        time_lock=_parse_time_lock(account.get("time_lock")),
        payload=SpendLimitPayload(
            spend_limit_per_transaction=to_int(account.get("spend_limit_per_transaction"), 0),
            spend_limit_per_timeframe=to_int(account.get("spend_limit_per_timeframe"), 0),
            timeframe_in_seconds=to_int(account.get("timeframe_in_seconds"), 0),
            next_timeframe_reset_timestamp=to_int(account.get("next_timeframe_reset_timestamp"), 0),
        ),
    )


class IndexerApi:
    """Read-only client for the internal indexed API.

    Every failure surfaces as ``IndexerError`` so callers can fall back to the
    direct-ledger path without inspecting transport details.
    """

    def __init__(
        self,
        *,
        base_url: str,
        logger: logging.Logger,
        timeout_seconds: float = 10.0,
        deposit_rent_lamports: int = 890_880,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._logger = logger
        self._timeout_seconds = timeout_seconds
        self._deposit_rent_lamports = max(0, deposit_rent_lamports)
        self._http_session: aiohttp.ClientSession | None = None

    @property
    def enabled(self) -> bool:
        return bool(self._base_url)

    async def connect(self) -> None:
        if self._http_session is None:
            timeout = aiohttp.ClientTimeout(total=self._timeout_seconds)
            self._http_session = aiohttp.ClientSession(timeout=timeout)

    async def close(self) -> None:
        if self._http_session is not None:
            await self._http_session.close()
            self._http_session = None

    async def _get_json(self, path: str, params: dict[str, str] | None = None) -> dict[str, Any]:
        if not self.enabled:
            raise IndexerError("Indexer API URL is not configured.")
        if self._http_session is None:
            await self.connect()
        if self._http_session is None:
            raise IndexerError("Indexer HTTP session is not initialized.")

        url = f"{self._base_url}{path}"
        try:
            async with self._http_session.get(url, params=params) as response:
                status_code = response.status
                raw_body = await response.read()
        except (aiohttp.ClientError, TimeoutError) as error:
            raise IndexerError(f"Indexer request failed: path={path} error={error}") from error

        if status_code < 200 or status_code >= 300:
            body_preview = raw_body[:256].decode("utf-8", errors="replace")
            raise IndexerError(f"Indexer request failed: path={path} status={status_code} body={body_preview}")

        try:
            parsed = json.loads(raw_body.decode("utf-8")) if raw_body else None
        except (UnicodeDecodeError, json.JSONDecodeError) as error:
            raise IndexerError(f"Indexer returned malformed JSON: path={path}") from error

        if not isinstance(parsed, dict):
            raise IndexerError(f"Indexer returned unexpected body: path={path} body={str(parsed)[:256]}")
        return parsed

    async def fetch_open_orders(self) -> tuple[list[Order], list[Order]]:
        body = await self._get_json(OPEN_ORDERS_PATH)
        raw_withdraws = body.get("withdrawOrders")
        raw_spend_limits = body.get("spendLimitsOrders")
        if not isinstance(raw_withdraws, list) or not isinstance(raw_spend_limits, list):
            raise IndexerError("Indexer open-orders body is missing order lists.")

        try:
            withdraw_orders = [parse_withdraw_order(item) for item in raw_withdraws]
            spend_limit_orders = [parse_spend_limit_order(item) for item in raw_spend_limits]
        except (KeyError, TypeError, ValueError, AttributeError) as error:
            raise IndexerError(f"Indexer open-orders body is malformed: {error}") from error

        return withdraw_orders, spend_limit_orders

    async def fetch_deposit_balances(self, protocol: ProtocolClient) -> list[DepositBalances]:
        body = await self._get_json(OPEN_ORDERS_PATH)
        raw_users = body.get("users")
        if not isinstance(raw_users, list):
            raise IndexerError("Indexer open-orders body is missing users.")

        results: list[DepositBalances] = []
        try:
            for user in raw_users:
                owner = Pubkey.from_string(str(user["vault"]["owner"]))
                deposit_address = user["depositAddress"]
                balances: dict[int, int] = {
                    protocol.native_asset_index: max(
                        0,
                        to_int(deposit_address.get("lamports"), 0) - self._deposit_rent_lamports,
                    )
                }
                for spl_account in deposit_address.get("splAccounts") or []:
                    asset_index = protocol.asset_index_for_mint(Pubkey.from_string(str(spl_account["mint"])))
                    if asset_index is None:
                        continue
                    balances[asset_index] = max(0, to_int(spl_account.get("amount"), 0))
                results.append(DepositBalances(owner=owner, balances=balances))
        except (KeyError, TypeError, ValueError, AttributeError) as error:
            raise IndexerError(f"Indexer users body is malformed: {error}") from error

        log_event(
            self._logger,
            level="debug",
            event="indexer_deposit_balances_fetched",
            message="Fetched deposit balances from indexer",
            users=len(results),
        )
        return results

    async def order_exists(self, address: Pubkey, kind: OrderKind) -> bool:
        path = ORDER_PATHS.get(kind)
        if path is None:
            raise IndexerError(f"Indexer has no order endpoint for kind={kind.value}")
        body = await self._get_json(path, params={"publicKey": str(address)})
        if "order" not in body:
            raise IndexerError(f"Indexer order body is missing 'order': path={path}")
        return body["order"] is not None
