from __future__ import annotations

import logging
from typing import Protocol

from solders.pubkey import Pubkey

from fill_bot.common import log_event

from .types import LAMPORTS_PER_SOL, AlertSink, WalletState

LOW_BALANCE_ALERT_KEY = "operator_low_balance"


class BalanceSource(Protocol):
    async def get_balance(self, address: Pubkey) -> int:
        ...


class BalanceMonitor:
    def __init__(
        self,
        *,
        ledger: BalanceSource,
        address: Pubkey,
        alerts: AlertSink,
        min_balance_lamports: int,
        logger: logging.Logger,
    ) -> None:
        self._ledger = ledger
        self._address = address
        self._alerts = alerts
        self._min_balance_lamports = max(0, min_balance_lamports)
        self._logger = logger

    async def check(self) -> WalletState:
        balance = await self._ledger.get_balance(self._address)
        state = WalletState(
            address=self._address,
            native_balance=balance,
            min_balance_floor=self._min_balance_lamports,
        )
        if not state.below_floor:
            return state

        balance_sol = balance / LAMPORTS_PER_SOL
        floor_sol = self._min_balance_lamports / LAMPORTS_PER_SOL
        log_event(
            self._logger,
            level="warning",
            event="operator_balance_low",
            message="Operator wallet balance below floor",
            address=str(self._address),
            balance_lamports=balance,
            floor_lamports=self._min_balance_lamports,
        )
        await self._alerts.send_alert(
            subject="Filler wallet balance low",
            message=(
                f"Filler wallet {self._address} balance is {balance_sol:.4f} SOL, "
                f"below the {floor_sol:.4f} SOL floor. Top it up to keep fills landing."
            ),
            dedupe_key=LOW_BALANCE_ALERT_KEY,
        )
        return state
