"""
Core data models for transaction building.

Records flowing between pipeline stages are frozen dataclasses: each stage
produces a new record instead of mutating the previous one.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import ROUND_HALF_UP, Decimal
from enum import Enum
from typing import Literal

from btcforge.constants import (
    P2PKH_INPUT_VBYTES,
    P2PKH_OUTPUT_VBYTES,
    P2SH_OUTPUT_VBYTES,
    P2SH_P2WPKH_INPUT_VBYTES,
    P2WPKH_INPUT_VBYTES,
    P2WPKH_OUTPUT_VBYTES,
    RBF_SEQUENCE,
    SATS_PER_BTC,
)
from btcforge.errors import InvalidInputError


class NetworkType(str, Enum):
    MAINNET = "mainnet"
    TESTNET = "testnet"
    SIGNET = "signet"
    REGTEST = "regtest"


@dataclass(frozen=True)
class NetworkParams:
    bech32_hrp: str
    p2pkh_version: int
    p2sh_version: int


NETWORK_PARAMS: dict[NetworkType, NetworkParams] = {
    NetworkType.MAINNET: NetworkParams("bc", 0x00, 0x05),
    NetworkType.TESTNET: NetworkParams("tb", 0x6F, 0xC4),
    NetworkType.SIGNET: NetworkParams("tb", 0x6F, 0xC4),
    NetworkType.REGTEST: NetworkParams("bcrt", 0x6F, 0xC4),
}


class ScriptType(str, Enum):
    P2PKH = "p2pkh"
    P2SH_P2WPKH = "p2sh-p2wpkh"
    P2WPKH = "p2wpkh"


@dataclass(frozen=True)
class ScriptTypeParams:
    """Per-script-type behaviour used by selection, assembly and signing."""

    input_vsize: int
    output_vsize: int
    # Legacy signing hashes the referenced output script out of the full previous tx
    needs_previous_tx: bool
    needs_redeem_script: bool
    is_segwit: bool


SCRIPT_TYPE_PARAMS: dict[ScriptType, ScriptTypeParams] = {
    ScriptType.P2WPKH: ScriptTypeParams(
        input_vsize=P2WPKH_INPUT_VBYTES,
        output_vsize=P2WPKH_OUTPUT_VBYTES,
        needs_previous_tx=False,
        needs_redeem_script=False,
        is_segwit=True,
    ),
    ScriptType.P2SH_P2WPKH: ScriptTypeParams(
        input_vsize=P2SH_P2WPKH_INPUT_VBYTES,
        output_vsize=P2SH_OUTPUT_VBYTES,
        needs_previous_tx=False,
        needs_redeem_script=True,
        is_segwit=True,
    ),
    ScriptType.P2PKH: ScriptTypeParams(
        input_vsize=P2PKH_INPUT_VBYTES,
        output_vsize=P2PKH_OUTPUT_VBYTES,
        needs_previous_tx=True,
        needs_redeem_script=False,
        is_segwit=False,
    ),
}

# Cheapest first: SegWit inputs carry discounted witness data
PREFERRED_SCRIPT_TYPES: tuple[ScriptType, ...] = (
    ScriptType.P2WPKH,
    ScriptType.P2SH_P2WPKH,
    ScriptType.P2PKH,
)

MIXED = "mixed"


def btc_to_sats(amount: float | str | Decimal) -> int:
    """Convert a BTC amount to satoshis, rounding half up."""
    sats = Decimal(str(amount)) * SATS_PER_BTC
    return int(sats.quantize(Decimal(1), rounding=ROUND_HALF_UP))


def sats_to_btc(sats: int) -> Decimal:
    return Decimal(sats) / SATS_PER_BTC


@dataclass(frozen=True)
class Utxo:
    """An unspent output owned by the wallet."""

    txid: str
    vout: int
    address: str
    amount_sats: int
    confirmations: int = 0
    script_type: ScriptType = ScriptType.P2WPKH
    spendable: bool = True

    @property
    def outpoint(self) -> str:
        return f"{self.txid}:{self.vout}"


@dataclass(frozen=True)
class SelectionResult:
    """
    Outcome of coin selection.

    When error is None: total_input_sats == target + fee_sats + change_sats.
    fee_sats includes any change folded in as dust; dropped_dust_sats reports
    that folded part on its own.
    """

    selected: tuple[Utxo, ...] = ()
    total_input_sats: int = 0
    fee_sats: int = 0
    change_sats: int = 0
    script_type: ScriptType | Literal["mixed"] | None = None
    error: str | None = None
    dropped_dust_sats: int = 0

    @property
    def ok(self) -> bool:
        return self.error is None and len(self.selected) > 0

    @property
    def input_count(self) -> int:
        return len(self.selected)

    @classmethod
    def insufficient(cls, error: str = "INSUFFICIENT_FUNDS") -> SelectionResult:
        return cls(error=error)


@dataclass(frozen=True)
class TxInputSpec:
    """A resolved input ready to be placed in a transaction skeleton."""

    txid: str
    vout: int
    address: str
    script_type: ScriptType
    previous_output_script: bytes
    previous_output_value_sats: int
    previous_raw_tx: bytes | None = None
    redeem_script: bytes | None = None
    sequence: int = RBF_SEQUENCE


@dataclass(frozen=True)
class TxOutputSpec:
    """A requested output: either an address or a raw scriptPubKey."""

    value_sats: int
    address: str | None = None
    script: bytes | None = None

    def __post_init__(self) -> None:
        if (self.address is None) == (self.script is None):
            raise InvalidInputError("Output needs exactly one of address or script")
        if self.value_sats < 0:
            raise InvalidInputError(
                f"Output value must not be negative: {self.value_sats}", value=self.value_sats
            )


@dataclass(frozen=True)
class SignedTransactionRecord:
    """Broadcast-ready transaction with its size accounting."""

    raw_hex: str
    psbt_base64: str
    txid: str
    size_bytes: int
    vsize_vbytes: int
    weight_units: int


@dataclass(frozen=True)
class CollectionResult:
    """UTXOs found for every address type a key controls."""

    addresses: dict[ScriptType, str]
    utxos_by_type: dict[ScriptType, list[Utxo]] = field(default_factory=dict)
    total_utxos: list[Utxo] = field(default_factory=list)
    total_balance_sats: int = 0
    degraded: bool = False

    def balance_by_type(self) -> dict[ScriptType, int]:
        return {
            script_type: sum(u.amount_sats for u in utxos)
            for script_type, utxos in self.utxos_by_type.items()
        }
