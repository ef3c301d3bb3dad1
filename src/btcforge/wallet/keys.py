"""
Key material provider.

Wraps a secp256k1 private key and exposes only what transaction building
needs: the compressed public key, one address per script type, and a
sign/verify capability over 32-byte digests. The private scalar never leaves
this module.
"""

from __future__ import annotations

import hashlib
import hmac

from coincurve import PrivateKey, PublicKey

from btcforge.errors import InvalidInputError
from btcforge.models import PREFERRED_SCRIPT_TYPES, NetworkType, ScriptType
from btcforge.wallet.address import p2sh_p2wpkh_redeem_script, pubkey_to_address

# secp256k1 curve order
SECP256K1_N = int("FFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFEBAAEDCE6AF48A03BBFD25E8CD0364141", 16)

# BIP44 first receive key, the path the wallet derives its single key from
DEFAULT_DERIVATION_PATH = "m/44'/0'/0'/0/0"

HARDENED = 0x80000000


def _parse_path(path: str) -> list[int]:
    if not path.startswith("m"):
        raise InvalidInputError("Path must start with 'm'", path=path)

    indexes = []
    for part in path.split("/")[1:]:
        if not part:
            continue
        hardened = part.endswith(("'", "h"))
        try:
            index = int(part.rstrip("'h"))
        except ValueError as e:
            raise InvalidInputError(f"Invalid path component: {part}", path=path) from e
        indexes.append(index + HARDENED if hardened else index)
    return indexes


def derive_private_key(seed: bytes, path: str = DEFAULT_DERIVATION_PATH) -> bytes:
    """BIP32 private derivation from a seed down to path."""
    digest = hmac.new(b"Bitcoin seed", seed, hashlib.sha512).digest()
    key, chain_code = digest[:32], digest[32:]

    for index in _parse_path(path):
        if index >= HARDENED:
            data = b"\x00" + key + index.to_bytes(4, "big")
        else:
            data = PrivateKey(key).public_key.format(compressed=True) + index.to_bytes(4, "big")

        digest = hmac.new(chain_code, data, hashlib.sha512).digest()
        child = (int.from_bytes(key, "big") + int.from_bytes(digest[:32], "big")) % SECP256K1_N
        if child == 0:
            raise ValueError("Invalid child key")
        key, chain_code = child.to_bytes(32, "big"), digest[32:]

    return key


def mnemonic_to_seed(mnemonic: str, passphrase: str = "") -> bytes:
    """BIP39 seed stretching. The wordlist checksum is not validated here."""
    normalized = " ".join(mnemonic.split())
    salt = ("mnemonic" + passphrase).encode("utf-8")
    return hashlib.pbkdf2_hmac("sha512", normalized.encode("utf-8"), salt, 2048, dklen=64)


def verify_signature(pubkey: bytes, digest: bytes, signature: bytes) -> bool:
    """Verify a DER signature over a 32-byte digest."""
    try:
        return PublicKey(pubkey).verify(signature, digest, hasher=None)
    except (ValueError, TypeError):
        return False


class KeyMaterial:
    """A single signing key and the addresses it controls."""

    def __init__(self, private_key: PrivateKey, network: NetworkType = NetworkType.REGTEST):
        self._private_key = private_key
        self.network = NetworkType(network)
        self._public_key = private_key.public_key.format(compressed=True)
        self._addresses = {
            script_type: pubkey_to_address(self._public_key, script_type, self.network)
            for script_type in PREFERRED_SCRIPT_TYPES
        }

    @classmethod
    def from_private_key_hex(
        cls, private_key_hex: str, network: NetworkType = NetworkType.REGTEST
    ) -> KeyMaterial:
        try:
            secret = bytes.fromhex(private_key_hex)
        except (ValueError, TypeError) as e:
            raise InvalidInputError("Private key must be hexadecimal") from e

        if len(secret) != 32:
            raise InvalidInputError(f"Private key must be 32 bytes, got {len(secret)}")
        if not 0 < int.from_bytes(secret, "big") < SECP256K1_N:
            raise InvalidInputError("Private key out of range")

        return cls(PrivateKey(secret), network)

    @classmethod
    def from_seed(
        cls,
        seed: bytes,
        network: NetworkType = NetworkType.REGTEST,
        path: str = DEFAULT_DERIVATION_PATH,
    ) -> KeyMaterial:
        return cls(PrivateKey(derive_private_key(seed, path)), network)

    @classmethod
    def from_mnemonic(
        cls,
        mnemonic: str,
        passphrase: str = "",
        network: NetworkType = NetworkType.REGTEST,
        path: str = DEFAULT_DERIVATION_PATH,
    ) -> KeyMaterial:
        return cls.from_seed(mnemonic_to_seed(mnemonic, passphrase), network, path)

    @property
    def public_key(self) -> bytes:
        return self._public_key

    @property
    def public_key_hex(self) -> str:
        return self._public_key.hex()

    @property
    def addresses(self) -> dict[ScriptType, str]:
        return dict(self._addresses)

    def address_for(self, script_type: ScriptType) -> str:
        return self._addresses[ScriptType(script_type)]

    def owns_address(self, address: str) -> bool:
        return address in self._addresses.values()

    @property
    def redeem_script(self) -> bytes:
        """Redeem script for the P2SH-P2WPKH address."""
        return p2sh_p2wpkh_redeem_script(self._public_key)

    def sign(self, digest: bytes) -> bytes:
        """DER signature (low-S, RFC6979 nonce) over a precomputed 32-byte digest."""
        if len(digest) != 32:
            raise ValueError(f"Digest must be 32 bytes, got {len(digest)}")
        return self._private_key.sign(digest, hasher=None)

    def verify(self, digest: bytes, signature: bytes) -> bool:
        return verify_signature(self._public_key, digest, signature)

    def __repr__(self) -> str:
        return f"KeyMaterial(pubkey={self.public_key_hex}, network={self.network.value})"
