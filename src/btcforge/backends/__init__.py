"""
Blockchain backend implementations.

Available backends:
- BitcoinCoreBackend: Full node via Bitcoin Core RPC (listunspent, scantxoutset fallback)
- InMemoryBackend: Deterministic in-process double for tests and dry runs
"""

from btcforge.backends.base import (
    BlockchainBackend,
    BroadcastOracle,
    FeeOracle,
    PreviousOutput,
    PreviousTransaction,
    ScannedOutput,
    TransactionOracle,
    UtxoOracle,
)
from btcforge.backends.bitcoin_core import BitcoinCoreBackend, RpcError
from btcforge.backends.memory import InMemoryBackend

__all__ = [
    "BitcoinCoreBackend",
    "BlockchainBackend",
    "BroadcastOracle",
    "FeeOracle",
    "InMemoryBackend",
    "PreviousOutput",
    "PreviousTransaction",
    "RpcError",
    "ScannedOutput",
    "TransactionOracle",
    "UtxoOracle",
]
