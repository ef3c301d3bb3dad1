"""
Bitcoin address and script utilities for the three key-path script types.
"""

from __future__ import annotations

import hashlib

import base58
import bech32
from embit import bech32 as bech32m

from btcforge.errors import InvalidInputError
from btcforge.models import NETWORK_PARAMS, NetworkType, ScriptType

OP_0 = 0x00
OP_1 = 0x51
OP_DUP = 0x76
OP_HASH160 = 0xA9
OP_EQUAL = 0x87
OP_EQUALVERIFY = 0x88
OP_CHECKSIG = 0xAC

_BECH32_PREFIXES = ("bc1", "tb1", "bcrt1")


def hash160(data: bytes) -> bytes:
    """RIPEMD160(SHA256(data))"""
    return hashlib.new("ripemd160", hashlib.sha256(data).digest()).digest()


def p2pkh_script(pubkey_hash: bytes) -> bytes:
    """OP_DUP OP_HASH160 <20-byte-hash> OP_EQUALVERIFY OP_CHECKSIG"""
    return bytes([OP_DUP, OP_HASH160, 0x14]) + pubkey_hash + bytes([OP_EQUALVERIFY, OP_CHECKSIG])


def p2wpkh_script(pubkey_hash: bytes) -> bytes:
    """OP_0 <20-byte-hash>"""
    return bytes([OP_0, 0x14]) + pubkey_hash


def p2sh_script(redeem_script: bytes) -> bytes:
    """OP_HASH160 <20-byte-scripthash> OP_EQUAL"""
    return bytes([OP_HASH160, 0x14]) + hash160(redeem_script) + bytes([OP_EQUAL])


def p2sh_p2wpkh_redeem_script(pubkey: bytes) -> bytes:
    """The witness program a nested SegWit output commits to."""
    return p2wpkh_script(hash160(pubkey))


def script_for_pubkey(pubkey: bytes, script_type: ScriptType) -> bytes:
    """scriptPubKey paying to pubkey under the given script type."""
    if script_type == ScriptType.P2WPKH:
        return p2wpkh_script(hash160(pubkey))
    if script_type == ScriptType.P2SH_P2WPKH:
        return p2sh_script(p2sh_p2wpkh_redeem_script(pubkey))
    return p2pkh_script(hash160(pubkey))


def _base58_address(version: int, payload: bytes) -> str:
    return base58.b58encode_check(bytes([version]) + payload).decode("ascii")


def pubkey_to_address(
    pubkey: bytes, script_type: ScriptType, network: NetworkType = NetworkType.MAINNET
) -> str:
    if len(pubkey) != 33:
        raise InvalidInputError(f"Invalid compressed pubkey length: {len(pubkey)}")

    params = NETWORK_PARAMS[NetworkType(network)]
    if script_type == ScriptType.P2WPKH:
        address = bech32.encode(params.bech32_hrp, 0, hash160(pubkey))
        if address is None:
            raise InvalidInputError(f"Failed to encode P2WPKH address for {pubkey.hex()}")
        return address
    if script_type == ScriptType.P2SH_P2WPKH:
        return _base58_address(params.p2sh_version, hash160(p2sh_p2wpkh_redeem_script(pubkey)))
    return _base58_address(params.p2pkh_version, hash160(pubkey))


def _bech32_hrp(address: str) -> str:
    return address[: address.rfind("1")].lower()


def address_to_scriptpubkey(address: str, network: NetworkType | None = None) -> bytes:
    """
    Convert a Bitcoin address to its scriptPubKey.

    Supports P2WPKH, P2WSH, P2TR (as payment destinations), P2PKH and P2SH.
    When network is given, the address must belong to it.
    """
    if not address:
        raise InvalidInputError("Empty address")

    if address.lower().startswith(_BECH32_PREFIXES):
        hrp = _bech32_hrp(address)
        if network is not None and hrp != NETWORK_PARAMS[NetworkType(network)].bech32_hrp:
            raise InvalidInputError(f"Address {address} is not valid for {network}")

        # BIP350: bech32 checksum for v0, bech32m for v1 and up
        witver, witprog = bech32m.decode(hrp, address)
        if witver is None or witprog is None:
            raise InvalidInputError(f"Invalid bech32 address: {address}")

        program = bytes(witprog)
        if witver == 0 and len(program) in (20, 32):
            return bytes([OP_0, len(program)]) + program
        if witver == 1 and len(program) == 32:
            return bytes([OP_1, len(program)]) + program
        raise InvalidInputError(f"Unsupported witness program: v{witver} len {len(program)}")

    try:
        decoded = base58.b58decode_check(address)
    except ValueError as e:
        raise InvalidInputError(f"Invalid base58 address {address}: {e}") from e

    if len(decoded) != 21:
        raise InvalidInputError(f"Invalid base58 payload length for {address}")

    version, payload = decoded[0], decoded[1:]
    candidates = [NETWORK_PARAMS[NetworkType(network)]] if network else NETWORK_PARAMS.values()
    if any(version == p.p2pkh_version for p in candidates):
        return p2pkh_script(payload)
    if any(version == p.p2sh_version for p in candidates):
        return bytes([OP_HASH160, 0x14]) + payload + bytes([OP_EQUAL])

    raise InvalidInputError(f"Unknown address version {version} for {address}")


def script_type_from_script(script: bytes) -> ScriptType | None:
    """Classify a scriptPubKey; None for anything outside the three key-path types."""
    if len(script) == 22 and script[0] == OP_0 and script[1] == 0x14:
        return ScriptType.P2WPKH
    if (
        len(script) == 23
        and script[0] == OP_HASH160
        and script[1] == 0x14
        and script[22] == OP_EQUAL
    ):
        # Only the nested P2WPKH flavour of P2SH is spendable here
        return ScriptType.P2SH_P2WPKH
    if (
        len(script) == 25
        and script[:3] == bytes([OP_DUP, OP_HASH160, 0x14])
        and script[23:] == bytes([OP_EQUALVERIFY, OP_CHECKSIG])
    ):
        return ScriptType.P2PKH
    return None


def script_type_from_address(address: str) -> ScriptType:
    """Classify an address by decoding it (not by prefix matching)."""
    script_type = script_type_from_script(address_to_scriptpubkey(address))
    if script_type is None:
        raise InvalidInputError(f"Address {address} is not a supported key-path type")
    return script_type


def scriptpubkey_to_address(script: bytes, network: NetworkType = NetworkType.MAINNET) -> str:
    params = NETWORK_PARAMS[NetworkType(network)]

    if len(script) in (22, 34) and script[0] == OP_0 and script[1] == len(script) - 2:
        result = bech32.encode(params.bech32_hrp, 0, script[2:])
        if result is None:
            raise InvalidInputError(f"Failed to encode witness address: {script.hex()}")
        return result

    if len(script) == 34 and script[0] == OP_1 and script[1] == 0x20:
        result = bech32m.encode(params.bech32_hrp, 1, script[2:])
        if result is None:
            raise InvalidInputError(f"Failed to encode taproot address: {script.hex()}")
        return result

    script_type = script_type_from_script(script)
    if script_type == ScriptType.P2SH_P2WPKH:
        return _base58_address(params.p2sh_version, script[2:22])
    if script_type == ScriptType.P2PKH:
        return _base58_address(params.p2pkh_version, script[3:23])

    raise InvalidInputError(f"Unsupported scriptPubKey: {script.hex()}")


def validate_address(address: str, network: NetworkType) -> str:
    """Raise InvalidInputError unless address is valid for network."""
    address_to_scriptpubkey(address, network)
    return address
