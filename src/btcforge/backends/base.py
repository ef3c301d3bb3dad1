"""
Blockchain oracle interfaces.

The transaction builder never talks to a node directly: it consumes these
ports, which have one network-backed implementation and one deterministic
in-memory implementation.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass

from btcforge.models import Utxo
from btcforge.tx.serialization import parse_transaction


@dataclass(frozen=True)
class PreviousOutput:
    value_sats: int
    script: bytes


@dataclass(frozen=True)
class PreviousTransaction:
    txid: str
    raw: bytes
    outputs: tuple[PreviousOutput, ...]

    @classmethod
    def from_raw(cls, raw: bytes) -> PreviousTransaction:
        tx = parse_transaction(raw)
        return cls(
            txid=tx.txid,
            raw=raw,
            outputs=tuple(PreviousOutput(out.value, out.script) for out in tx.outputs),
        )


@dataclass(frozen=True)
class ScannedOutput:
    """UTXO found by a UTXO-set scan (fallback path, no wallet metadata)."""

    txid: str
    vout: int
    amount_sats: int
    height: int | None = None


class UtxoOracle(ABC):
    @abstractmethod
    async def list_unspent(self, addresses: list[str], min_confirmations: int = 0) -> list[Utxo]:
        """UTXOs paying to any of addresses, from the node's watch list"""

    @abstractmethod
    async def scan_unspent(self, address: str) -> list[ScannedOutput]:
        """UTXOs paying to address, found by scanning the UTXO set"""

    @abstractmethod
    async def get_block_count(self) -> int:
        """Current chain tip height"""

    @abstractmethod
    async def ping(self) -> bool:
        """True when the oracle answers. Never raises."""


class TransactionOracle(ABC):
    @abstractmethod
    async def get_raw_transaction(self, txid: str) -> PreviousTransaction | None:
        """Previous transaction by txid, None if unknown"""


class BroadcastOracle(ABC):
    @abstractmethod
    async def submit_raw_transaction(self, raw_hex: str) -> str:
        """Broadcast transaction, returns txid"""


class FeeOracle(ABC):
    @abstractmethod
    async def estimate_fee_rate(self, target_blocks: int = 6) -> float | None:
        """Fee rate in sat/vB for target confirmation blocks, None when unavailable"""


class BlockchainBackend(UtxoOracle, TransactionOracle, BroadcastOracle, FeeOracle):
    """All oracles served by one data source."""

    async def close(self) -> None:
        """Close backend connection"""
        pass
