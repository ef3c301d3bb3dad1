"""
Finalizer: turns validated partial signatures into final scriptSigs and
witnesses and extracts the network transaction.
"""

from __future__ import annotations

from embit import compact
from embit.script import Script
from loguru import logger

from btcforge.errors import SignatureValidationError
from btcforge.models import ScriptType, SignedTransactionRecord
from btcforge.tx.psbt import (
    PSBT,
    extract_transaction,
    partial_signatures,
    set_final_fields,
)
from btcforge.tx.signer import SignedTransaction, SigningEngine
from btcforge.wallet.signing import create_witness_stack


def final_fields(
    script_type: ScriptType, signature: bytes, pubkey: bytes, redeem_script: bytes | None
) -> tuple[bytes | None, list[bytes] | None]:
    """(final scriptSig, final witness) spending one key-path input."""
    if script_type == ScriptType.P2PKH:
        script_sig = (
            compact.to_bytes(len(signature)) + signature + compact.to_bytes(len(pubkey)) + pubkey
        )
        return script_sig, None

    witness = create_witness_stack(signature, pubkey)
    if script_type == ScriptType.P2SH_P2WPKH:
        # scriptSig is a single push of the redeem script
        return Script(redeem_script or b"").serialize(), witness
    return None, witness


class Finalizer:
    def finalize(self, signed: SignedTransaction) -> SignedTransactionRecord:
        unsigned = signed.unsigned
        missing = sorted(set(range(len(unsigned.inputs))) - signed.validated_inputs)
        if missing:
            raise SignatureValidationError(
                missing[0], f"Input {missing[0]} has no validated signature"
            )

        psbt = PSBT.parse(signed.psbt.serialize())
        # Re-check the signatures about to be finalized, not the flag
        SigningEngine.validate(unsigned, psbt)

        for index, spec in enumerate(unsigned.inputs):
            sigs = partial_signatures(psbt.inputs[index])
            if len(sigs) != 1:
                raise SignatureValidationError(
                    index, f"Input {index} needs exactly one signature to finalize"
                )
            [(pubkey, signature)] = sigs.items()
            script_sig, witness = final_fields(
                spec.script_type, signature, pubkey, spec.redeem_script
            )
            set_final_fields(psbt.inputs[index], script_sig, witness)

        tx = extract_transaction(psbt)
        record = SignedTransactionRecord(
            raw_hex=tx.hex(),
            psbt_base64=psbt.to_base64(),
            txid=tx.txid,
            size_bytes=tx.total_size,
            vsize_vbytes=tx.vsize,
            weight_units=tx.weight,
        )
        logger.info(
            f"Finalized transaction {record.txid}: {record.size_bytes} bytes, "
            f"{record.vsize_vbytes} vbytes, {record.weight_units} WU"
        )
        return record


def finalize_transaction(signed: SignedTransaction) -> SignedTransactionRecord:
    return Finalizer().finalize(signed)
