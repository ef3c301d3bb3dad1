"""
Bitcoin transaction wire format.

Serialization, parsing, txid and BIP141 weight accounting for legacy and
SegWit transactions.
"""

from __future__ import annotations

import hashlib
import struct
from dataclasses import dataclass, field

from btcforge.constants import RBF_SEQUENCE, TX_VERSION


class TransactionParseError(ValueError):
    pass


def hash256(data: bytes) -> bytes:
    return hashlib.sha256(hashlib.sha256(data).digest()).digest()


def read_varint(data: bytes, offset: int) -> tuple[int, int]:
    """Read a varint, returning (value, new_offset)."""
    first = data[offset]
    offset += 1

    if first < 0xFD:
        return first, offset
    if first == 0xFD:
        return int.from_bytes(data[offset : offset + 2], "little"), offset + 2
    if first == 0xFE:
        return int.from_bytes(data[offset : offset + 4], "little"), offset + 4
    return int.from_bytes(data[offset : offset + 8], "little"), offset + 8


def encode_varint(value: int) -> bytes:
    if value < 0xFD:
        return bytes([value])
    if value <= 0xFFFF:
        return b"\xfd" + value.to_bytes(2, "little")
    if value <= 0xFFFFFFFF:
        return b"\xfe" + value.to_bytes(4, "little")
    return b"\xff" + value.to_bytes(8, "little")


def encode_bytes(data: bytes) -> bytes:
    """Length-prefixed byte string."""
    return encode_varint(len(data)) + data


@dataclass
class TxIn:
    txid: str  # RPC (big-endian) hex
    vout: int
    script_sig: bytes = b""
    sequence: int = RBF_SEQUENCE
    witness: list[bytes] = field(default_factory=list)

    def serialize_outpoint(self) -> bytes:
        return bytes.fromhex(self.txid)[::-1] + struct.pack("<I", self.vout)


@dataclass
class TxOut:
    value: int
    script: bytes

    def serialize(self) -> bytes:
        return struct.pack("<Q", self.value) + encode_bytes(self.script)


@dataclass
class Transaction:
    inputs: list[TxIn] = field(default_factory=list)
    outputs: list[TxOut] = field(default_factory=list)
    version: int = TX_VERSION
    locktime: int = 0

    @property
    def has_witness(self) -> bool:
        return any(inp.witness for inp in self.inputs)

    def serialize(self, include_witness: bool = True) -> bytes:
        segwit = include_witness and self.has_witness

        result = struct.pack("<I", self.version)
        if segwit:
            result += b"\x00\x01"

        result += encode_varint(len(self.inputs))
        for inp in self.inputs:
            result += inp.serialize_outpoint()
            result += encode_bytes(inp.script_sig)
            result += struct.pack("<I", inp.sequence)

        result += encode_varint(len(self.outputs))
        for out in self.outputs:
            result += out.serialize()

        if segwit:
            for inp in self.inputs:
                result += encode_varint(len(inp.witness))
                for item in inp.witness:
                    result += encode_bytes(item)

        result += struct.pack("<I", self.locktime)
        return result

    @property
    def txid(self) -> str:
        """Double SHA256 of the non-witness serialization, in RPC byte order."""
        return hash256(self.serialize(include_witness=False))[::-1].hex()

    @property
    def wtxid(self) -> str:
        return hash256(self.serialize())[::-1].hex()

    @property
    def base_size(self) -> int:
        return len(self.serialize(include_witness=False))

    @property
    def total_size(self) -> int:
        return len(self.serialize())

    @property
    def weight(self) -> int:
        """BIP141 weight: 3 * base size + total size."""
        return 3 * self.base_size + self.total_size

    @property
    def vsize(self) -> int:
        return (self.weight + 3) // 4

    def hex(self) -> str:
        return self.serialize().hex()

    def copy(self) -> Transaction:
        return Transaction(
            inputs=[
                TxIn(inp.txid, inp.vout, inp.script_sig, inp.sequence, list(inp.witness))
                for inp in self.inputs
            ],
            outputs=[TxOut(out.value, out.script) for out in self.outputs],
            version=self.version,
            locktime=self.locktime,
        )


def parse_transaction(tx_bytes: bytes) -> Transaction:
    """Parse a serialized transaction (with or without witness data)."""
    try:
        offset = 0
        version = struct.unpack("<I", tx_bytes[offset : offset + 4])[0]
        offset += 4

        segwit = False
        if tx_bytes[offset] == 0x00 and tx_bytes[offset + 1] == 0x01:
            segwit = True
            offset += 2

        input_count, offset = read_varint(tx_bytes, offset)
        inputs: list[TxIn] = []
        for _ in range(input_count):
            txid = tx_bytes[offset : offset + 32][::-1].hex()
            offset += 32
            vout = struct.unpack("<I", tx_bytes[offset : offset + 4])[0]
            offset += 4
            script_len, offset = read_varint(tx_bytes, offset)
            script_sig = tx_bytes[offset : offset + script_len]
            offset += script_len
            sequence = struct.unpack("<I", tx_bytes[offset : offset + 4])[0]
            offset += 4
            inputs.append(TxIn(txid, vout, script_sig, sequence))

        output_count, offset = read_varint(tx_bytes, offset)
        outputs: list[TxOut] = []
        for _ in range(output_count):
            value = struct.unpack("<Q", tx_bytes[offset : offset + 8])[0]
            offset += 8
            script_len, offset = read_varint(tx_bytes, offset)
            script = tx_bytes[offset : offset + script_len]
            offset += script_len
            outputs.append(TxOut(value, script))

        if segwit:
            for inp in inputs:
                item_count, offset = read_varint(tx_bytes, offset)
                for _ in range(item_count):
                    item_len, offset = read_varint(tx_bytes, offset)
                    inp.witness.append(tx_bytes[offset : offset + item_len])
                    offset += item_len

        locktime = struct.unpack("<I", tx_bytes[offset : offset + 4])[0]
        offset += 4
        if offset != len(tx_bytes):
            raise TransactionParseError(f"{len(tx_bytes) - offset} trailing bytes")

        return Transaction(inputs=inputs, outputs=outputs, version=version, locktime=locktime)

    except TransactionParseError:
        raise
    except (IndexError, struct.error, ValueError) as e:
        raise TransactionParseError(f"Failed to parse transaction: {e}") from e
