"""
Test configuration for btcforge tests.
"""

from __future__ import annotations

import pytest

from btcforge.backends.memory import InMemoryBackend
from btcforge.models import NetworkType, ScriptType, Utxo
from btcforge.wallet.keys import KeyMaterial

# Well-known example key (not for production use!)
TEST_PRIVATE_KEY = "0c28fca386c7a227600b2fe50b7cae11ec86d3bf1fbe471be89827e19d72aa1d"
OTHER_PRIVATE_KEY = "1111111111111111111111111111111111111111111111111111111111111111"

# Private key 1: its public key is the secp256k1 generator point
GENERATOR_PRIVATE_KEY = "00" * 31 + "01"


def _make_utxo(
    amount: int,
    index: int = 0,
    script_type: ScriptType = ScriptType.P2WPKH,
    confirmations: int = 1,
) -> Utxo:
    """UTXO with a synthetic, unique outpoint."""
    return Utxo(
        txid=f"{index:064x}",
        vout=0,
        address=f"addr{index}",
        amount_sats=amount,
        confirmations=confirmations,
        script_type=script_type,
    )


@pytest.fixture
def make_utxo():
    return _make_utxo


@pytest.fixture
def key() -> KeyMaterial:
    return KeyMaterial.from_private_key_hex(TEST_PRIVATE_KEY, NetworkType.REGTEST)


@pytest.fixture
def other_key() -> KeyMaterial:
    return KeyMaterial.from_private_key_hex(OTHER_PRIVATE_KEY, NetworkType.REGTEST)


@pytest.fixture
def backend() -> InMemoryBackend:
    return InMemoryBackend(network=NetworkType.REGTEST, fee_rate=1.0, block_count=200)


@pytest.fixture
def sample_mnemonic() -> str:
    """Test mnemonic (not for production use!)."""
    return (
        "abandon abandon abandon abandon abandon abandon "
        "abandon abandon abandon abandon abandon about"
    )


@pytest.fixture
def generator_key() -> KeyMaterial:
    """Mainnet key whose public key is the generator point."""
    return KeyMaterial.from_private_key_hex(GENERATOR_PRIVATE_KEY, NetworkType.MAINNET)
