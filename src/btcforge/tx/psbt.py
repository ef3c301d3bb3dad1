"""
PSBT (BIP174, version 0) helpers on top of embit.

embit owns the key-value codec. The helpers here move data between embit's
objects and the wire-format Transaction that sighash, txid and weight code
works on, and expose partial signatures keyed by SEC public key bytes.
"""

from __future__ import annotations

from embit.ec import PublicKey
from embit.psbt import PSBT, InputScope
from embit.script import Script, Witness
from embit.transaction import Transaction as EmbitTransaction
from embit.transaction import TransactionOutput

from btcforge.tx.serialization import Transaction, TxOut, parse_transaction

PSBT_MAGIC = b"psbt\xff"


class PSBTError(ValueError):
    pass


def new_psbt(tx: Transaction) -> PSBT:
    """Empty PSBT around an unsigned transaction."""
    if any(inp.script_sig or inp.witness for inp in tx.inputs):
        raise PSBTError("PSBT unsigned transaction must have empty scriptSigs and witnesses")
    return PSBT(EmbitTransaction.parse(tx.serialize(include_witness=False)))


def psbt_from_base64(encoded: str) -> PSBT:
    try:
        return PSBT.from_base64(encoded)
    except Exception as e:
        raise PSBTError(f"Malformed PSBT: {e}") from e


def unsigned_transaction(psbt: PSBT) -> Transaction:
    """The PSBT's unsigned transaction as a wire-format Transaction."""
    return parse_transaction(psbt.tx.serialize())


def get_witness_utxo(psbt_input: InputScope) -> TxOut | None:
    utxo = psbt_input.witness_utxo
    if utxo is None:
        return None
    return TxOut(utxo.value, utxo.script_pubkey.data)


def set_witness_utxo(psbt_input: InputScope, output: TxOut) -> None:
    psbt_input.witness_utxo = TransactionOutput(output.value, Script(output.script))


def get_non_witness_utxo(psbt_input: InputScope) -> bytes | None:
    if psbt_input.non_witness_utxo is None:
        return None
    return psbt_input.non_witness_utxo.serialize()


def set_non_witness_utxo(psbt_input: InputScope, raw_tx: bytes) -> None:
    try:
        psbt_input.non_witness_utxo = EmbitTransaction.parse(raw_tx)
    except Exception as e:
        raise PSBTError(f"Cannot parse previous transaction: {e}") from e


def get_redeem_script(psbt_input: InputScope) -> bytes | None:
    if psbt_input.redeem_script is None:
        return None
    return psbt_input.redeem_script.data


def set_redeem_script(psbt_input: InputScope, redeem_script: bytes) -> None:
    psbt_input.redeem_script = Script(redeem_script)


def partial_signatures(psbt_input: InputScope) -> dict[bytes, bytes]:
    """{SEC pubkey: DER signature + sighash byte}"""
    return {pubkey.sec(): signature for pubkey, signature in psbt_input.partial_sigs.items()}


def set_partial_signature(psbt_input: InputScope, pubkey: bytes, signature: bytes) -> None:
    psbt_input.partial_sigs[PublicKey.parse(pubkey)] = signature


def set_final_fields(
    psbt_input: InputScope, script_sig: bytes | None, witness: list[bytes] | None
) -> None:
    """Store final scriptSig/witness and drop what finalized inputs no longer need."""
    psbt_input.final_scriptsig = Script(script_sig) if script_sig is not None else None
    psbt_input.final_scriptwitness = Witness(witness) if witness is not None else None
    psbt_input.partial_sigs.clear()
    psbt_input.sighash_type = None
    psbt_input.redeem_script = None


def input_is_finalized(psbt_input: InputScope) -> bool:
    return psbt_input.final_scriptsig is not None or psbt_input.final_scriptwitness is not None


def is_finalized(psbt: PSBT) -> bool:
    return all(input_is_finalized(inp) for inp in psbt.inputs)


def extract_transaction(psbt: PSBT) -> Transaction:
    """Fill in final scriptSigs and witnesses. All inputs must be finalized."""
    if not is_finalized(psbt):
        raise PSBTError("Cannot extract transaction: not all inputs are finalized")

    tx = unsigned_transaction(psbt)
    for inp, psbt_input in zip(tx.inputs, psbt.inputs, strict=True):
        if psbt_input.final_scriptsig is not None:
            inp.script_sig = psbt_input.final_scriptsig.data
        if psbt_input.final_scriptwitness is not None:
            inp.witness = list(psbt_input.final_scriptwitness.items)
    return tx
