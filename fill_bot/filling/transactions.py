from __future__ import annotations

import base64
import logging
import math
from dataclasses import dataclass
from typing import Sequence

from solders.address_lookup_table_account import AddressLookupTableAccount
from solders.compute_budget import set_compute_unit_limit, set_compute_unit_price
from solders.hash import Hash
from solders.instruction import Instruction
from solders.keypair import Keypair
from solders.message import MessageV0
from solders.pubkey import Pubkey
from solders.signature import Signature
from solders.transaction import VersionedTransaction

from fill_bot.common import log_event

from .errors import FeeCeilingExceededError
from .ledger import LedgerRpc
from .types import FillerConfig, InstructionBundle, to_int

MICRO_LAMPORTS_PER_LAMPORT = 1_000_000
MAX_TRANSACTION_SIZE_BYTES = 1232


def percentile_value(values: list[int], percentile: float) -> int:
    if not values:
        return 0

    sorted_values = sorted(values)
    if len(sorted_values) == 1:
        return sorted_values[0]

    p = max(0.0, min(1.0, percentile))
    index = max(0, min(len(sorted_values) - 1, math.ceil(len(sorted_values) * p) - 1))
    return sorted_values[index]


def projected_fee_lamports(
    *,
    signature_count: int,
    compute_unit_limit: int,
    priority_fee_micro_lamports: int,
    base_fee_lamports_per_signature: int,
) -> int:
    priority_lamports = math.ceil(compute_unit_limit * priority_fee_micro_lamports / MICRO_LAMPORTS_PER_LAMPORT)
    return signature_count * base_fee_lamports_per_signature + priority_lamports


def writable_accounts(instructions: Sequence[Instruction]) -> list[Pubkey]:
    accounts: list[Pubkey] = []
    seen: set[Pubkey] = set()
    for instruction in instructions:
        for meta in instruction.accounts:
            if meta.is_writable and meta.pubkey not in seen:
                seen.add(meta.pubkey)
                accounts.append(meta.pubkey)
    return accounts


@dataclass(slots=True, frozen=True)
class BuiltTransaction:
    transaction: VersionedTransaction
    signature: str
    blockhash: str
    last_valid_block_height: int
    compute_unit_limit: int
    priority_fee_micro_lamports: int
    projected_fee_lamports: int

    @property
    def size_bytes(self) -> int:
        return len(bytes(self.transaction))

    def to_base64(self) -> str:
        return base64.b64encode(bytes(self.transaction)).decode("ascii")


class TransactionBuilder:
    def __init__(
        self,
        *,
        ledger: LedgerRpc,
        payer: Keypair,
        config: FillerConfig,
        logger: logging.Logger,
    ) -> None:
        self._ledger = ledger
        self._payer = payer
        self._config = config
        self._logger = logger

    async def resolve_priority_fee(self, instructions: Sequence[Instruction]) -> int:
        floor = max(0, self._config.priority_fee_micro_lamports)
        try:
            recent_fees = await self._ledger.get_recent_prioritization_fees(writable_accounts(instructions))
        except Exception as error:
            log_event(
                self._logger,
                level="warning",
                event="priority_fee_fallback",
                message="Falling back to static priority fee",
                error=str(error),
            )
            return floor

        if not recent_fees:
            return floor

        percentile_fee = percentile_value(recent_fees, self._config.priority_fee_percentile)
        return max(floor, int(percentile_fee * self._config.priority_fee_multiplier))

    async def estimate_compute_unit_limit(
        self,
        instructions: Sequence[Instruction],
        lookup_tables: Sequence[AddressLookupTableAccount],
        blockhash: Hash,
    ) -> int:
        default_limit = self._config.default_compute_unit_limit
        message = MessageV0.try_compile(
            self._payer.pubkey(),
            [set_compute_unit_limit(self._config.simulation_compute_unit_limit), *instructions],
            list(lookup_tables),
            blockhash,
        )
        placeholder_signatures = [Signature.default()] * message.header.num_required_signatures
        unsigned_tx = VersionedTransaction.populate(message, placeholder_signatures)

        try:
            simulation = await self._ledger.simulate_transaction(unsigned_tx)
        except Exception as error:
            log_event(
                self._logger,
                level="warning",
                event="compute_unit_simulation_failed",
                message="Compute unit simulation failed; using default limit",
                error=str(error),
                default_limit=default_limit,
            )
            return default_limit

        if simulation.get("err") is not None:
            log_event(
                self._logger,
                level="debug",
                event="compute_unit_simulation_error",
                message="Simulation reported an error; using default limit",
                simulation_error=simulation.get("err"),
                default_limit=default_limit,
            )
            return default_limit

        consumed = to_int(simulation.get("unitsConsumed"), 0)
        if consumed <= 0 or consumed < default_limit:
            return default_limit
        return math.ceil(consumed * self._config.compute_unit_buffer)

    async def build(self, bundle: InstructionBundle) -> BuiltTransaction:
        if not bundle.instructions:
            raise ValueError("Cannot build a transaction without instructions.")

        blockhash, last_valid_block_height = await self._ledger.get_latest_blockhash()
        compute_unit_limit = await self.estimate_compute_unit_limit(
            bundle.instructions,
            bundle.lookup_tables,
            blockhash,
        )
        priority_fee = await self.resolve_priority_fee(bundle.instructions)

        message = MessageV0.try_compile(
            self._payer.pubkey(),
            [
                set_compute_unit_limit(compute_unit_limit),
                set_compute_unit_price(priority_fee),
                *bundle.instructions,
            ],
            list(bundle.lookup_tables),
            blockhash,
        )

        projected_fee = projected_fee_lamports(
            signature_count=message.header.num_required_signatures,
            compute_unit_limit=compute_unit_limit,
            priority_fee_micro_lamports=priority_fee,
            base_fee_lamports_per_signature=self._config.base_fee_lamports_per_signature,
        )
        if projected_fee > self._config.max_fee_lamports:
            raise FeeCeilingExceededError(
                "fee_ceiling_exceeded",
                projected_fee_lamports=projected_fee,
                max_fee_lamports=self._config.max_fee_lamports,
                compute_unit_limit=compute_unit_limit,
                priority_fee_micro_lamports=priority_fee,
            )

        signers: list[Keypair] = [self._payer]
        for signer in bundle.signers:
            if all(signer.pubkey() != existing.pubkey() for existing in signers):
                signers.append(signer)
        signed_tx = VersionedTransaction(message, signers)

        size_bytes = len(bytes(signed_tx))
        if size_bytes > MAX_TRANSACTION_SIZE_BYTES:
            raise RuntimeError(f"Fill transaction is oversized: size={size_bytes} bytes")

        built = BuiltTransaction(
            transaction=signed_tx,
            signature=str(signed_tx.signatures[0]),
            blockhash=str(blockhash),
            last_valid_block_height=last_valid_block_height,
            compute_unit_limit=compute_unit_limit,
            priority_fee_micro_lamports=priority_fee,
            projected_fee_lamports=projected_fee,
        )
        log_event(
            self._logger,
            level="debug",
            event="fill_transaction_built",
            message="Fill transaction built",
            signature=built.signature,
            compute_unit_limit=compute_unit_limit,
            priority_fee_micro_lamports=priority_fee,
            projected_fee_lamports=projected_fee,
            lookup_table_count=len(bundle.lookup_tables),
            tx_size_bytes=size_bytes,
        )
        return built
