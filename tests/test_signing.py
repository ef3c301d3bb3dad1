"""
Tests for sighash computation.
"""

from __future__ import annotations

import pytest

from btcforge.errors import MalformedPreviousTransactionError
from btcforge.models import ScriptType, TxInputSpec
from btcforge.tx.serialization import Transaction, TxIn, TxOut
from btcforge.wallet.address import hash160, p2pkh_script, script_for_pubkey
from btcforge.wallet.signing import (
    TransactionSigningError,
    compute_input_sighash,
    compute_sighash_legacy,
    compute_sighash_segwit,
    create_p2wpkh_script_code,
    create_witness_stack,
    legacy_previous_output_script,
    pubkey_matches_input,
)


def funding_tx(script: bytes, value: int = 50_000) -> Transaction:
    return Transaction(
        inputs=[TxIn("cc" * 32, 0, script_sig=b"\x51", sequence=0xFFFFFFFF)],
        outputs=[TxOut(value, script)],
    )


def spending_tx(txid: str) -> Transaction:
    return Transaction(
        inputs=[TxIn(txid, 0), TxIn("dd" * 32, 2)],
        outputs=[TxOut(40_000, b"\x00\x14" + b"\x01" * 20)],
    )


def input_spec(key, script_type: ScriptType, previous: Transaction, **overrides) -> TxInputSpec:
    fields = dict(
        txid=previous.txid,
        vout=0,
        address=key.address_for(script_type),
        script_type=script_type,
        previous_output_script=previous.outputs[0].script,
        previous_output_value_sats=previous.outputs[0].value,
        previous_raw_tx=previous.serialize() if script_type == ScriptType.P2PKH else None,
        redeem_script=key.redeem_script if script_type == ScriptType.P2SH_P2WPKH else None,
    )
    fields.update(overrides)
    return TxInputSpec(**fields)


class TestSighash:
    """Legacy and BIP143 digests."""

    def test_script_code_is_p2pkh_form(self, key) -> None:
        assert create_p2wpkh_script_code(key.public_key) == p2pkh_script(hash160(key.public_key))

    def test_segwit_sighash_commits_to_value(self) -> None:
        tx = spending_tx("ee" * 32)
        code = b"\x76\xa9\x14" + b"\x00" * 20 + b"\x88\xac"
        assert compute_sighash_segwit(tx, 0, code, 1_000) != compute_sighash_segwit(
            tx, 0, code, 1_001
        )

    def test_sighash_differs_per_input(self) -> None:
        tx = spending_tx("ee" * 32)
        code = b"\x51"
        assert compute_sighash_legacy(tx, 0, code) != compute_sighash_legacy(tx, 1, code)
        assert compute_sighash_segwit(tx, 0, code, 5) != compute_sighash_segwit(tx, 1, code, 5)

    def test_legacy_sighash_ignores_existing_script_sigs(self) -> None:
        tx = spending_tx("ee" * 32)
        before = compute_sighash_legacy(tx, 0, b"\x51")
        tx.inputs[1].script_sig = b"\x01\x02\x03"
        assert compute_sighash_legacy(tx, 0, b"\x51") == before

    def test_index_out_of_range(self) -> None:
        tx = spending_tx("ee" * 32)
        with pytest.raises(TransactionSigningError):
            compute_sighash_legacy(tx, 5, b"")
        with pytest.raises(TransactionSigningError):
            compute_sighash_segwit(tx, 5, b"", 0)

    def test_sighash_commits_to_sequence(self) -> None:
        tx = spending_tx("ee" * 32)
        before = compute_sighash_segwit(tx, 0, b"\x51", 10)
        tx.inputs[1].sequence = 0xFFFFFFFF
        assert compute_sighash_segwit(tx, 0, b"\x51", 10) != before


class TestInputSighash:
    """Dispatch by script type."""

    def test_p2pkh_uses_previous_output_script(self, key) -> None:
        previous = funding_tx(script_for_pubkey(key.public_key, ScriptType.P2PKH))
        tx = spending_tx(previous.txid)
        spec = input_spec(key, ScriptType.P2PKH, previous)

        digest = compute_input_sighash(tx, 0, spec, key.public_key)

        assert digest == compute_sighash_legacy(tx, 0, previous.outputs[0].script)

    @pytest.mark.parametrize("script_type", [ScriptType.P2WPKH, ScriptType.P2SH_P2WPKH])
    def test_segwit_types_use_bip143(self, key, script_type) -> None:
        previous = funding_tx(script_for_pubkey(key.public_key, script_type), 70_000)
        tx = spending_tx(previous.txid)
        spec = input_spec(key, script_type, previous)

        digest = compute_input_sighash(tx, 0, spec, key.public_key)

        assert digest == compute_sighash_segwit(
            tx, 0, create_p2wpkh_script_code(key.public_key), 70_000
        )

    def test_missing_previous_transaction(self, key) -> None:
        previous = funding_tx(script_for_pubkey(key.public_key, ScriptType.P2PKH))
        spec = input_spec(key, ScriptType.P2PKH, previous, previous_raw_tx=None)
        with pytest.raises(MalformedPreviousTransactionError):
            legacy_previous_output_script(spec)

    def test_previous_transaction_must_match_txid(self, key) -> None:
        previous = funding_tx(script_for_pubkey(key.public_key, ScriptType.P2PKH))
        other = funding_tx(script_for_pubkey(key.public_key, ScriptType.P2PKH), 1)
        spec = input_spec(key, ScriptType.P2PKH, previous, previous_raw_tx=other.serialize())
        with pytest.raises(MalformedPreviousTransactionError, match="hashes to"):
            legacy_previous_output_script(spec)

    def test_previous_output_index_out_of_range(self, key) -> None:
        previous = funding_tx(script_for_pubkey(key.public_key, ScriptType.P2PKH))
        spec = input_spec(key, ScriptType.P2PKH, previous, vout=3)
        with pytest.raises(MalformedPreviousTransactionError) as exc_info:
            legacy_previous_output_script(spec)
        assert exc_info.value.context["vout"] == 3

    def test_unparseable_previous_transaction(self, key) -> None:
        previous = funding_tx(script_for_pubkey(key.public_key, ScriptType.P2PKH))
        spec = input_spec(key, ScriptType.P2PKH, previous, previous_raw_tx=b"\x01\x02")
        with pytest.raises(MalformedPreviousTransactionError):
            legacy_previous_output_script(spec)


class TestOwnership:
    """Matching a public key against the spent output."""

    @pytest.mark.parametrize("script_type", list(ScriptType))
    def test_own_outputs_match(self, key, other_key, script_type) -> None:
        previous = funding_tx(script_for_pubkey(key.public_key, script_type))
        spec = input_spec(key, script_type, previous)

        assert pubkey_matches_input(spec, key.public_key)
        assert not pubkey_matches_input(spec, other_key.public_key)

    def test_wrong_redeem_script(self, key, other_key) -> None:
        previous = funding_tx(script_for_pubkey(key.public_key, ScriptType.P2SH_P2WPKH))
        spec = input_spec(
            key, ScriptType.P2SH_P2WPKH, previous, redeem_script=other_key.redeem_script
        )
        assert not pubkey_matches_input(spec, key.public_key)

    def test_witness_stack(self) -> None:
        assert create_witness_stack(b"sig", b"pub") == [b"sig", b"pub"]
