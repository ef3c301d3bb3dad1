"""
Sighash computation for P2PKH, P2SH-P2WPKH and P2WPKH inputs.

Legacy inputs use the original sighash algorithm over the referenced output
script; both SegWit flavours use BIP143 with the P2PKH-form script code.
"""

from __future__ import annotations

import struct

from btcforge.constants import SIGHASH_ALL
from btcforge.errors import MalformedPreviousTransactionError
from btcforge.models import ScriptType, TxInputSpec
from btcforge.tx.serialization import (
    Transaction,
    TransactionParseError,
    encode_varint,
    hash256,
    parse_transaction,
)
from btcforge.wallet.address import (
    hash160,
    p2pkh_script,
    p2sh_p2wpkh_redeem_script,
    script_for_pubkey,
)


class TransactionSigningError(Exception):
    pass


def create_p2wpkh_script_code(pubkey_bytes: bytes) -> bytes:
    """BIP143 scriptCode for P2WPKH: the equivalent P2PKH script (25 bytes, no length prefix)."""
    return p2pkh_script(hash160(pubkey_bytes))


def compute_sighash_legacy(
    tx: Transaction,
    input_index: int,
    script_code: bytes,
    sighash_type: int = SIGHASH_ALL,
) -> bytes:
    if input_index >= len(tx.inputs):
        raise TransactionSigningError("Input index out of range")

    stripped = tx.copy()
    for index, inp in enumerate(stripped.inputs):
        inp.script_sig = script_code if index == input_index else b""
        inp.witness = []

    preimage = stripped.serialize(include_witness=False) + struct.pack("<I", sighash_type)
    return hash256(preimage)


def compute_sighash_segwit(
    tx: Transaction,
    input_index: int,
    script_code: bytes,
    value: int,
    sighash_type: int = SIGHASH_ALL,
) -> bytes:
    if input_index >= len(tx.inputs):
        raise TransactionSigningError("Input index out of range")

    hash_prevouts = hash256(b"".join(inp.serialize_outpoint() for inp in tx.inputs))
    hash_sequence = hash256(b"".join(struct.pack("<I", inp.sequence) for inp in tx.inputs))
    hash_outputs = hash256(b"".join(out.serialize() for out in tx.outputs))

    target_input = tx.inputs[input_index]

    preimage = (
        struct.pack("<I", tx.version)
        + hash_prevouts
        + hash_sequence
        + target_input.serialize_outpoint()
        + encode_varint(len(script_code))
        + script_code
        + struct.pack("<Q", value)
        + struct.pack("<I", target_input.sequence)
        + hash_outputs
        + struct.pack("<I", tx.locktime)
        + struct.pack("<I", sighash_type)
    )

    return hash256(preimage)


def legacy_previous_output_script(spec: TxInputSpec) -> bytes:
    """
    Referenced output script taken from the full previous transaction.

    The previous transaction must hash to the input's txid, otherwise the
    signature would commit to data the network never sees.
    """
    if spec.previous_raw_tx is None:
        raise MalformedPreviousTransactionError(
            f"Legacy input {spec.txid}:{spec.vout} has no previous transaction",
            txid=spec.txid,
            vout=spec.vout,
        )
    try:
        previous = parse_transaction(spec.previous_raw_tx)
    except TransactionParseError as e:
        raise MalformedPreviousTransactionError(
            f"Cannot parse previous transaction {spec.txid}: {e}", txid=spec.txid
        ) from e

    if previous.txid != spec.txid:
        raise MalformedPreviousTransactionError(
            f"Previous transaction hashes to {previous.txid}, expected {spec.txid}",
            txid=spec.txid,
        )
    if spec.vout >= len(previous.outputs):
        raise MalformedPreviousTransactionError(
            f"Output {spec.vout} not found in transaction {spec.txid}",
            txid=spec.txid,
            vout=spec.vout,
        )
    return previous.outputs[spec.vout].script


def compute_input_sighash(
    tx: Transaction,
    input_index: int,
    spec: TxInputSpec,
    pubkey: bytes,
    sighash_type: int = SIGHASH_ALL,
) -> bytes:
    """Digest that the signature for input_index must commit to."""
    if spec.script_type == ScriptType.P2PKH:
        return compute_sighash_legacy(
            tx, input_index, legacy_previous_output_script(spec), sighash_type
        )

    return compute_sighash_segwit(
        tx,
        input_index,
        create_p2wpkh_script_code(pubkey),
        spec.previous_output_value_sats,
        sighash_type,
    )


def pubkey_matches_input(spec: TxInputSpec, pubkey: bytes) -> bool:
    """Check that the spent output actually pays to pubkey."""
    if spec.script_type == ScriptType.P2SH_P2WPKH:
        if spec.redeem_script != p2sh_p2wpkh_redeem_script(pubkey):
            return False
    return spec.previous_output_script == script_for_pubkey(pubkey, spec.script_type)


def create_witness_stack(signature: bytes, pubkey_bytes: bytes) -> list[bytes]:
    return [signature, pubkey_bytes]
