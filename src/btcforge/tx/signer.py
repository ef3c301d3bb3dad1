"""
Signing engine.

Signs every input of an unsigned transaction with one key, then verifies
every partial signature independently before handing the result on. A
transaction that is only partly signed is never returned as a success.
"""

from __future__ import annotations

from dataclasses import dataclass

from loguru import logger

from btcforge.constants import SIGHASH_ALL
from btcforge.errors import InvalidInputError, SignatureValidationError
from btcforge.tx.assembler import UnsignedTransaction
from btcforge.tx.psbt import (
    PSBT,
    partial_signatures,
    set_partial_signature,
    unsigned_transaction,
)
from btcforge.wallet.keys import KeyMaterial, verify_signature
from btcforge.wallet.signing import compute_input_sighash, pubkey_matches_input


@dataclass(frozen=True)
class SignedTransaction:
    unsigned: UnsignedTransaction
    psbt: PSBT
    validated_inputs: frozenset[int]

    @property
    def fully_validated(self) -> bool:
        return self.validated_inputs == frozenset(range(len(self.unsigned.inputs)))


class SigningEngine:
    def __init__(self, key_material: KeyMaterial):
        self.key_material = key_material

    def sign(self, unsigned: UnsignedTransaction) -> SignedTransaction:
        pubkey = self.key_material.public_key
        psbt = unsigned.to_psbt()
        tx = unsigned_transaction(psbt)

        for index, spec in enumerate(unsigned.inputs):
            if not pubkey_matches_input(spec, pubkey):
                raise SignatureValidationError(
                    index,
                    f"Input {index} ({spec.txid}:{spec.vout}) is not controlled by the signing key",
                )
            sighash = compute_input_sighash(tx, index, spec, pubkey, SIGHASH_ALL)
            signature = self.key_material.sign(sighash) + bytes([SIGHASH_ALL])
            set_partial_signature(psbt.inputs[index], pubkey, signature)
            logger.debug(f"Signed input {index} ({spec.script_type.value})")

        validated = self.validate(unsigned, psbt)
        logger.info(f"Signed and verified {len(validated)} input(s)")
        return SignedTransaction(unsigned=unsigned, psbt=psbt, validated_inputs=validated)

    @staticmethod
    def validate(unsigned: UnsignedTransaction, psbt: PSBT) -> frozenset[int]:
        """
        Verify every partial signature against its declared public key.

        The PSBT must carry the same unsigned transaction the signatures are
        checked for.

        Raises:
            InvalidInputError: when the PSBT describes a different transaction
            SignatureValidationError: naming the first input that fails
        """
        tx = unsigned_transaction(psbt)
        expected = unsigned.to_transaction()
        if tx.serialize(include_witness=False) != expected.serialize(include_witness=False):
            raise InvalidInputError(
                "PSBT does not match the unsigned transaction", expected_txid=expected.txid
            )

        for index, spec in enumerate(unsigned.inputs):
            sigs = partial_signatures(psbt.inputs[index])
            if not sigs:
                raise SignatureValidationError(index, f"Input {index} is not signed")

            for pubkey, signature in sigs.items():
                if not signature or signature[-1] != SIGHASH_ALL:
                    raise SignatureValidationError(
                        index, f"Input {index} signature does not commit with SIGHASH_ALL"
                    )
                if not pubkey_matches_input(spec, pubkey):
                    raise SignatureValidationError(
                        index, f"Input {index} signature key does not match the spent output"
                    )
                sighash = compute_input_sighash(tx, index, spec, pubkey, SIGHASH_ALL)
                if not verify_signature(pubkey, sighash, signature[:-1]):
                    logger.error(f"Signature verification failed for input {index}")
                    raise SignatureValidationError(index)

        return frozenset(range(len(unsigned.inputs)))


def sign_transaction(unsigned: UnsignedTransaction, key_material: KeyMaterial) -> SignedTransaction:
    return SigningEngine(key_material).sign(unsigned)


def validate_signatures(signed: SignedTransaction) -> frozenset[int]:
    return SigningEngine.validate(signed.unsigned, signed.psbt)
