"""
Tests for the PSBT helpers.
"""

from __future__ import annotations

import base64

import pytest

from btcforge.tx.psbt import (
    PSBT_MAGIC,
    PSBTError,
    extract_transaction,
    get_non_witness_utxo,
    get_redeem_script,
    get_witness_utxo,
    input_is_finalized,
    is_finalized,
    new_psbt,
    partial_signatures,
    psbt_from_base64,
    set_final_fields,
    set_non_witness_utxo,
    set_partial_signature,
    set_redeem_script,
    set_witness_utxo,
    unsigned_transaction,
)
from btcforge.tx.serialization import Transaction, TxIn, TxOut

P2WPKH_SCRIPT = bytes.fromhex("0014") + bytes(range(20))
REDEEM_SCRIPT = bytes.fromhex("0014") + b"\x22" * 20
# secp256k1 generator point
PUBKEY = bytes.fromhex("0279be667ef9dcbbac55a06295ce870b07029bfcdb2dce28d959f2815b16f81798")
SIGNATURE = b"\x30\x44" + b"\x01" * 68 + b"\x01"


def unsigned_tx() -> Transaction:
    return Transaction(
        inputs=[TxIn("aa" * 32, 0), TxIn("bb" * 32, 1)],
        outputs=[TxOut(9_000, P2WPKH_SCRIPT)],
    )


class TestNewPsbt:
    """Wrapping an unsigned transaction."""

    def test_magic(self) -> None:
        encoded = new_psbt(unsigned_tx()).to_base64()
        assert encoded.startswith("cHNidP8")
        assert base64.b64decode(encoded).startswith(PSBT_MAGIC)

    def test_one_map_per_input_and_output(self) -> None:
        psbt = new_psbt(unsigned_tx())
        assert len(psbt.inputs) == 2
        assert len(psbt.outputs) == 1

    def test_carries_the_unsigned_transaction(self) -> None:
        tx = unsigned_transaction(new_psbt(unsigned_tx()))
        assert tx.txid == unsigned_tx().txid
        assert [inp.sequence for inp in tx.inputs] == [0xFFFFFFFD, 0xFFFFFFFD]

    def test_rejects_signed_transaction(self) -> None:
        tx = unsigned_tx()
        tx.inputs[0].script_sig = b"\x00"
        with pytest.raises(PSBTError):
            new_psbt(tx)


class TestInputFields:
    """Per-input signing data survives a base64 round trip."""

    def test_round_trip(self) -> None:
        previous_raw = unsigned_tx().serialize()
        psbt = new_psbt(unsigned_tx())
        set_witness_utxo(psbt.inputs[0], TxOut(10_000, P2WPKH_SCRIPT))
        set_partial_signature(psbt.inputs[0], PUBKEY, SIGNATURE)
        psbt.inputs[0].sighash_type = 1
        set_non_witness_utxo(psbt.inputs[1], previous_raw)
        set_redeem_script(psbt.inputs[1], REDEEM_SCRIPT)

        parsed = psbt_from_base64(psbt.to_base64())

        assert parsed.serialize() == psbt.serialize()
        assert get_witness_utxo(parsed.inputs[0]) == TxOut(10_000, P2WPKH_SCRIPT)
        assert partial_signatures(parsed.inputs[0]) == {PUBKEY: SIGNATURE}
        assert parsed.inputs[0].sighash_type == 1
        assert get_non_witness_utxo(parsed.inputs[1]) == previous_raw
        assert get_redeem_script(parsed.inputs[1]) == REDEEM_SCRIPT
        assert get_witness_utxo(parsed.inputs[1]) is None
        assert get_redeem_script(parsed.inputs[0]) is None

    def test_unparseable_previous_transaction(self) -> None:
        psbt = new_psbt(unsigned_tx())
        with pytest.raises(PSBTError):
            set_non_witness_utxo(psbt.inputs[0], b"\x02\x00")

    def test_final_fields(self) -> None:
        psbt = new_psbt(unsigned_tx())
        set_partial_signature(psbt.inputs[0], PUBKEY, SIGNATURE)
        set_redeem_script(psbt.inputs[1], REDEEM_SCRIPT)
        psbt.inputs[1].sighash_type = 1

        set_final_fields(psbt.inputs[0], None, [SIGNATURE, PUBKEY])
        set_final_fields(psbt.inputs[1], b"\x16" + REDEEM_SCRIPT, [SIGNATURE, PUBKEY])
        parsed = psbt_from_base64(psbt.to_base64())

        assert is_finalized(parsed)
        assert partial_signatures(parsed.inputs[0]) == {}
        assert get_redeem_script(parsed.inputs[1]) is None
        assert parsed.inputs[1].sighash_type is None
        assert parsed.inputs[0].final_scriptsig is None
        assert parsed.inputs[1].final_scriptsig.data == b"\x16" + REDEEM_SCRIPT

    def test_partly_finalized(self) -> None:
        psbt = new_psbt(unsigned_tx())
        set_final_fields(psbt.inputs[0], None, [SIGNATURE, PUBKEY])

        assert input_is_finalized(psbt.inputs[0])
        assert not input_is_finalized(psbt.inputs[1])
        assert not is_finalized(psbt)


class TestDecodeErrors:
    """Anything that is not a PSBT raises PSBTError."""

    @pytest.mark.parametrize(
        "encoded",
        [
            "!!!not base64!!!",
            base64.b64encode(b"notpsbt").decode(),
            # Non-ASCII text fails inside the base64 decoder itself
            "cHNidP8é",
        ],
    )
    def test_rejected(self, encoded) -> None:
        with pytest.raises(PSBTError):
            psbt_from_base64(encoded)


class TestExtract:
    """Building the network transaction from final fields."""

    def test_requires_every_input_finalized(self) -> None:
        with pytest.raises(PSBTError, match="finalized"):
            extract_transaction(new_psbt(unsigned_tx()))

    def test_fills_script_sigs_and_witnesses(self) -> None:
        psbt = new_psbt(unsigned_tx())
        set_final_fields(psbt.inputs[0], None, [b"sig", PUBKEY])
        set_final_fields(psbt.inputs[1], b"\x01\x02", None)

        tx = extract_transaction(psbt)

        assert tx.inputs[0].witness == [b"sig", PUBKEY]
        assert tx.inputs[0].script_sig == b""
        assert tx.inputs[1].script_sig == b"\x01\x02"
        assert tx.inputs[1].witness == []
        assert tx.txid == unsigned_tx().txid
        assert unsigned_transaction(psbt).inputs[1].script_sig == b""
