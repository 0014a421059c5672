from __future__ import annotations

import base64
import json
import logging
from typing import Any, Sequence

import aiohttp
from solders.hash import Hash
from solders.pubkey import Pubkey
from solders.transaction import VersionedTransaction

from fill_bot.common import log_event

from .errors import RpcMethodError, TransactionSimulationError
from .types import to_int

# JSON-RPC error code returned by sendTransaction when preflight simulation fails.
PREFLIGHT_FAILURE_CODE = -32002


def _error_payload_to_message(error_payload: Any) -> str:
    if isinstance(error_payload, dict):
        message = error_payload.get("message")
        if message:
            return str(message)
    return json.dumps(error_payload, ensure_ascii=False, default=str)


def _encode_transaction(transaction: VersionedTransaction) -> str:
    return base64.b64encode(bytes(transaction)).decode("ascii")


class LedgerRpc:
    """Thin JSON-RPC client over aiohttp for the calls the filler needs."""

    def __init__(
        self,
        *,
        rpc_url: str,
        logger: logging.Logger,
        timeout_seconds: float = 10.0,
        commitment: str = "confirmed",
    ) -> None:
        self._rpc_url = rpc_url
        self._logger = logger
        self._timeout_seconds = timeout_seconds
        self._commitment = commitment
        self._http_session: aiohttp.ClientSession | None = None

    @property
    def commitment(self) -> str:
        return self._commitment

    async def connect(self) -> None:
        if not self._rpc_url:
            raise ValueError("RPC_URL is required.")
        if self._http_session is None:
            timeout = aiohttp.ClientTimeout(total=self._timeout_seconds)
            self._http_session = aiohttp.ClientSession(timeout=timeout)

    async def close(self) -> None:
        if self._http_session is not None:
            await self._http_session.close()
            self._http_session = None

    async def healthcheck(self) -> None:
        await self.get_slot()

    async def _rpc_call(self, method: str, params: list[Any] | None = None) -> Any:
        if self._http_session is None:
            await self.connect()
        if self._http_session is None:
            raise RuntimeError("RPC HTTP session is not initialized.")

        payload: dict[str, Any] = {
            "jsonrpc": "2.0",
            "id": 1,
            "method": method,
            "params": params or [],
        }

        try:
            async with self._http_session.post(self._rpc_url, json=payload) as response:
                status_code = response.status
                body = await response.json(content_type=None)
        except (aiohttp.ClientError, TimeoutError, ValueError) as error:
            raise RpcMethodError(method=method, message=f"RPC transport error for {method}: {error}") from error

        if status_code >= 400:
            raise RpcMethodError(
                method=method,
                status=status_code,
                data=body,
                message=f"RPC call failed: method={method} status={status_code} body={body}",
            )

        if not isinstance(body, dict):
            raise RpcMethodError(method=method, data=body, message=f"Invalid RPC response for {method}: {body}")

        error_payload = body.get("error")
        if error_payload:
            error_code = to_int(error_payload.get("code"), 0) if isinstance(error_payload, dict) else None
            error_data = error_payload.get("data") if isinstance(error_payload, dict) else None
            raise RpcMethodError(
                method=method,
                code=error_code,
                data=error_data,
                message=f"RPC error for {method}: {_error_payload_to_message(error_payload)}",
            )

        return body.get("result")

    async def get_slot(self) -> int:
        result = await self._rpc_call("getSlot", [{"commitment": self._commitment}])
        slot = to_int(result, -1)
        if slot < 0:
            raise RuntimeError(f"Unexpected getSlot response: {result}")
        return slot

    async def get_block_height(self) -> int:
        result = await self._rpc_call("getBlockHeight", [{"commitment": self._commitment}])
        height = to_int(result, -1)
        if height < 0:
            raise RuntimeError(f"Unexpected getBlockHeight response: {result}")
        return height

    async def get_latest_blockhash(self) -> tuple[Hash, int]:
        result = await self._rpc_call("getLatestBlockhash", [{"commitment": self._commitment}])
        if not isinstance(result, dict):
            raise RuntimeError(f"Unexpected getLatestBlockhash response: {result}")

        value = result.get("value")
        if not isinstance(value, dict):
            raise RuntimeError(f"Unexpected getLatestBlockhash payload: {result}")

        blockhash = str(value.get("blockhash") or "").strip()
        if not blockhash:
            raise RuntimeError(f"Missing blockhash in RPC response: {result}")
        last_valid_block_height = to_int(value.get("lastValidBlockHeight"), -1)
        if last_valid_block_height < 0:
            raise RuntimeError(f"Missing lastValidBlockHeight in RPC response: {result}")
        return Hash.from_string(blockhash), last_valid_block_height

    async def get_account_info(self, address: Pubkey) -> dict[str, Any] | None:
        result = await self._rpc_call(
            "getAccountInfo",
            [str(address), {"encoding": "base64", "commitment": self._commitment}],
        )
        if not isinstance(result, dict):
            raise RuntimeError(f"Unexpected getAccountInfo response: {result}")
        value = result.get("value")
        if value is None:
            return None
        if not isinstance(value, dict):
            raise RuntimeError(f"Unexpected getAccountInfo payload: {result}")
        return value

    async def account_exists(self, address: Pubkey) -> bool:
        return await self.get_account_info(address) is not None

    async def get_account_owner(self, address: Pubkey) -> Pubkey | None:
        info = await self.get_account_info(address)
        if info is None:
            return None
        return Pubkey.from_string(str(info.get("owner")))

    async def get_balance(self, address: Pubkey) -> int:
        result = await self._rpc_call("getBalance", [str(address), {"commitment": self._commitment}])
        if not isinstance(result, dict):
            raise RuntimeError(f"Unexpected getBalance response: {result}")
        balance = to_int(result.get("value"), -1)
        if balance < 0:
            raise RuntimeError(f"Unexpected getBalance payload: {result}")
        return balance

    async def get_minimum_balance_for_rent_exemption(self, data_size: int = 0) -> int:
        result = await self._rpc_call("getMinimumBalanceForRentExemption", [max(0, int(data_size))])
        minimum = to_int(result, -1)
        if minimum < 0:
            raise RuntimeError(f"Unexpected getMinimumBalanceForRentExemption response: {result}")
        return minimum

    async def get_recent_prioritization_fees(self, accounts: Sequence[Pubkey] = ()) -> list[int]:
        result = await self._rpc_call("getRecentPrioritizationFees", [[str(account) for account in accounts]])
        if not isinstance(result, list):
            raise RuntimeError(f"Unexpected getRecentPrioritizationFees response: {result}")

        fees: list[int] = []
        for item in result:
            if not isinstance(item, dict):
                continue
            fee = to_int(item.get("prioritizationFee"), -1)
            if fee >= 0:
                fees.append(fee)
        return fees

    async def simulate_transaction(self, transaction: VersionedTransaction) -> dict[str, Any]:
        result = await self._rpc_call(
            "simulateTransaction",
            [
                _encode_transaction(transaction),
                {
                    "encoding": "base64",
                    "commitment": self._commitment,
                    "sigVerify": False,
                    "replaceRecentBlockhash": True,
                },
            ],
        )
        if not isinstance(result, dict) or not isinstance(result.get("value"), dict):
            raise RuntimeError(f"Unexpected simulateTransaction response: {result}")
        return result["value"]

    async def send_transaction(self, transaction: VersionedTransaction, *, skip_preflight: bool = False) -> str:
        try:
            result = await self._rpc_call(
                "sendTransaction",
                [
                    _encode_transaction(transaction),
                    {
                        "encoding": "base64",
                        "skipPreflight": skip_preflight,
                        "preflightCommitment": self._commitment,
                        "maxRetries": 0,
                    },
                ],
            )
        except RpcMethodError as error:
            if error.code == PREFLIGHT_FAILURE_CODE and isinstance(error.data, dict):
                logs = [str(line) for line in error.data.get("logs") or []]
                raise TransactionSimulationError(str(error), logs=logs) from error
            raise

        signature = str(result or "").strip()
        if not signature:
            raise RuntimeError(f"Unexpected sendTransaction response: {result}")
        log_event(
            self._logger,
            level="debug",
            event="transaction_sent",
            message="Transaction submitted",
            signature=signature,
        )
        return signature

    async def get_signature_status(self, signature: str) -> dict[str, Any] | None:
        result = await self._rpc_call(
            "getSignatureStatuses",
            [[signature], {"searchTransactionHistory": False}],
        )
        if not isinstance(result, dict) or not isinstance(result.get("value"), list):
            raise RuntimeError(f"Unexpected getSignatureStatuses response: {result}")
        values = result["value"]
        if not values or values[0] is None:
            return None
        if not isinstance(values[0], dict):
            raise RuntimeError(f"Unexpected getSignatureStatuses payload: {result}")
        return values[0]

    async def get_transaction(self, signature: str) -> dict[str, Any] | None:
        result = await self._rpc_call(
            "getTransaction",
            [
                signature,
                {
                    "encoding": "base64",
                    "commitment": self._commitment,
                    "maxSupportedTransactionVersion": 0,
                },
            ],
        )
        if result is None:
            return None
        if not isinstance(result, dict):
            raise RuntimeError(f"Unexpected getTransaction response: {result}")
        return result

    async def get_transaction_logs(self, signature: str) -> list[str]:
        transaction = await self.get_transaction(signature)
        if transaction is None:
            return []
        meta = transaction.get("meta") or {}
        return [str(line) for line in meta.get("logMessages") or []]
