from __future__ import annotations

import contextlib
import importlib
import json
import os
import re
from dataclasses import dataclass
from typing import Any, Callable

from solders.keypair import Keypair
from solders.pubkey import Pubkey

BASE58_RE = re.compile(r"[1-9A-HJ-NP-Za-km-z]+")


def to_float(value: Any, default: float) -> float:
    try:
        if value is None or str(value).strip() == "":
            return default
        return float(str(value).strip())
    except (TypeError, ValueError):
        return default


def derive_ws_url(rpc_url: str) -> str:
    if rpc_url.startswith("https://"):
        return "wss://" + rpc_url[len("https://"):]
    if rpc_url.startswith("http://"):
        return "ws://" + rpc_url[len("http://"):]
    return rpc_url


def parse_keypair(raw: str) -> Keypair:
    """Load a 64-byte secret key given as a JSON byte array or a base58 string."""
    value = raw.strip()
    if not value:
        raise ValueError("PRIVATE_KEY is required.")

    if value.startswith("["):
        try:
            arr = json.loads(value)
        except json.JSONDecodeError as error:
            raise ValueError("PRIVATE_KEY JSON must be an integer array.") from error
        if not isinstance(arr, list) or not all(isinstance(item, int) and 0 <= item <= 255 for item in arr):
            raise ValueError("PRIVATE_KEY JSON must be an integer array.")
        if len(arr) != 64:
            raise ValueError("PRIVATE_KEY must be 64 bytes long.")
        return Keypair.from_bytes(bytes(arr))

    # 64 bytes encode to 86-88 base58 characters.
    if BASE58_RE.fullmatch(value) and 86 <= len(value) <= 88:
        with contextlib.suppress(ValueError):
            return Keypair.from_base58_string(value)

    raise ValueError("Unsupported PRIVATE_KEY format.")


def load_factory(path: str) -> Callable[..., Any]:
    module_name, sep, attribute = path.strip().partition(":")
    if not sep or not module_name or not attribute:
        raise ValueError(f"PROTOCOL_CLIENT_FACTORY must look like 'package.module:callable', got {path!r}")
    try:
        module = importlib.import_module(module_name)
    except ImportError as error:
        raise ValueError(f"Cannot import protocol client module {module_name!r}") from error

    factory = getattr(module, attribute, None)
    if not callable(factory):
        raise ValueError(f"Protocol client factory {path!r} is not callable")
    return factory


@dataclass(slots=True)
class AppSettings:
    rpc_url: str
    ws_url: str
    internal_api_url: str
    private_key: str
    vault_program_id: Pubkey
    protocol_client_factory: str
    error_backoff_seconds: float
    heartbeat_interval_seconds: float
    http_timeout_seconds: float

    @classmethod
    def from_env(cls) -> "AppSettings":
        rpc_url = os.getenv("RPC_URL", "").strip()
        if not rpc_url:
            raise ValueError("RPC_URL is required.")

        program_id_raw = os.getenv("VAULT_PROGRAM_ID", "").strip()
        if not program_id_raw:
            raise ValueError("VAULT_PROGRAM_ID is required.")
        try:
            vault_program_id = Pubkey.from_string(program_id_raw)
        except ValueError as error:
            raise ValueError(f"VAULT_PROGRAM_ID is not a valid address: {program_id_raw}") from error

        return cls(
            rpc_url=rpc_url,
            ws_url=os.getenv("WS_URL", "").strip() or derive_ws_url(rpc_url),
            internal_api_url=os.getenv("INTERNAL_API_URL", "").strip().rstrip("/"),
            private_key=os.getenv("PRIVATE_KEY") or os.getenv("WALLET_KEYPAIR", ""),
            vault_program_id=vault_program_id,
            protocol_client_factory=os.getenv("PROTOCOL_CLIENT_FACTORY", "").strip(),
            error_backoff_seconds=max(0.2, to_float(os.getenv("ERROR_BACKOFF_SECONDS"), 5.0)),
            heartbeat_interval_seconds=max(
                1.0,
                to_float(os.getenv("HEARTBEAT_INTERVAL_SECONDS"), 86_400.0),
            ),
            http_timeout_seconds=max(1.0, to_float(os.getenv("HTTP_TIMEOUT_SECONDS"), 10.0)),
        )
