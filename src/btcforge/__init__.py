"""
btcforge - single-key Bitcoin transaction builder

Selects UTXOs, assembles PSBTs, signs and finalizes P2PKH, P2SH-P2WPKH and
P2WPKH spends.
"""

__version__ = "0.1.0"

from btcforge.constants import DUST_THRESHOLD, RBF_SEQUENCE, STANDARD_DUST_LIMIT
from btcforge.errors import (
    BroadcastError,
    ErrorKind,
    InsufficientFundsError,
    InvalidInputError,
    MalformedPreviousTransactionError,
    OracleUnreachableError,
    SignatureValidationError,
    TransactionBuildError,
)
from btcforge.models import (
    CollectionResult,
    NetworkType,
    ScriptType,
    SelectionResult,
    SignedTransactionRecord,
    TxInputSpec,
    TxOutputSpec,
    Utxo,
)
from btcforge.pipeline import TransactionPipeline
from btcforge.wallet.coinselect import select_utxos
from btcforge.wallet.collector import UtxoCollector, select_optimal_utxos
from btcforge.wallet.keys import KeyMaterial

__all__ = [
    "BroadcastError",
    "CollectionResult",
    "DUST_THRESHOLD",
    "ErrorKind",
    "InsufficientFundsError",
    "InvalidInputError",
    "KeyMaterial",
    "MalformedPreviousTransactionError",
    "NetworkType",
    "OracleUnreachableError",
    "RBF_SEQUENCE",
    "STANDARD_DUST_LIMIT",
    "ScriptType",
    "SelectionResult",
    "SignatureValidationError",
    "SignedTransactionRecord",
    "TransactionBuildError",
    "TransactionPipeline",
    "TxInputSpec",
    "TxOutputSpec",
    "Utxo",
    "UtxoCollector",
    "select_optimal_utxos",
    "select_utxos",
]
