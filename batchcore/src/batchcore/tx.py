"""
Raw Bitcoin transaction model and codec.

Transactions are held as plain dataclasses and serialized in network format,
with or without segwit witness data. Txids are exposed in RPC (big-endian)
hex order; the wire format stores them reversed.
"""

from __future__ import annotations

import hashlib
import math
import struct
from dataclasses import dataclass, field

from batchcore.constants import INPUT_BASE_SIZE, SEQUENCE_FINAL, TX_VERSION
from batchcore.errors import DeserializationError


def hash256(data: bytes) -> bytes:
    return hashlib.sha256(hashlib.sha256(data).digest()).digest()


def encode_varint(n: int) -> bytes:
    """Encode integer as Bitcoin varint (CompactSize)."""
    if n < 0xFD:
        return bytes([n])
    elif n <= 0xFFFF:
        return bytes([0xFD]) + struct.pack("<H", n)
    elif n <= 0xFFFFFFFF:
        return bytes([0xFE]) + struct.pack("<I", n)
    else:
        return bytes([0xFF]) + struct.pack("<Q", n)


def read_bytes(data: bytes, offset: int, size: int) -> tuple[bytes, int]:
    """Read exactly ``size`` bytes, returning (chunk, new_offset)."""
    end = offset + size
    if size < 0 or end > len(data):
        raise DeserializationError(
            f"Unexpected end of data: need {size} bytes at offset {offset}, have {len(data)}"
        )
    return data[offset:end], end


def read_varint(data: bytes, offset: int) -> tuple[int, int]:
    """Read varint and return (value, new_offset)."""
    first, offset = read_bytes(data, offset, 1)
    if first[0] < 0xFD:
        return first[0], offset
    width = {0xFD: 2, 0xFE: 4, 0xFF: 8}[first[0]]
    raw, offset = read_bytes(data, offset, width)
    return int.from_bytes(raw, "little"), offset


def read_var_bytes(data: bytes, offset: int) -> tuple[bytes, int]:
    length, offset = read_varint(data, offset)
    return read_bytes(data, offset, length)


def encode_var_bytes(data: bytes) -> bytes:
    return encode_varint(len(data)) + data


@dataclass(frozen=True, order=True)
class OutPoint:
    """Global identity of a spendable coin."""

    txid: str
    vout: int

    def __str__(self) -> str:
        return f"{self.txid}:{self.vout}"

    def serialize(self) -> bytes:
        # txid is in RPC format (big-endian), reversed for raw tx
        return bytes.fromhex(self.txid)[::-1] + struct.pack("<I", self.vout)

    @classmethod
    def parse(cls, value: str) -> OutPoint:
        """Parse ``txid:vout`` notation."""
        txid, sep, vout = value.rpartition(":")
        if not sep or len(txid) != 64:
            raise ValueError(f"Invalid outpoint: {value}")
        bytes.fromhex(txid)
        return cls(txid=txid.lower(), vout=int(vout))


@dataclass
class TxInput:
    """Transaction input."""

    txid: str
    vout: int
    script_sig: bytes = b""
    sequence: int = SEQUENCE_FINAL
    witness: list[bytes] = field(default_factory=list)

    @property
    def outpoint(self) -> OutPoint:
        return OutPoint(self.txid, self.vout)

    def serialize(self) -> bytes:
        return (
            self.outpoint.serialize()
            + encode_var_bytes(self.script_sig)
            + struct.pack("<I", self.sequence)
        )


@dataclass
class TxOutput:
    """Transaction output."""

    value: int
    scriptpubkey: bytes

    def serialize(self) -> bytes:
        return struct.pack("<Q", self.value) + encode_var_bytes(self.scriptpubkey)

    @classmethod
    def deserialize(cls, data: bytes) -> TxOutput:
        """Parse a standalone serialized output (PSBT witness_utxo value)."""
        out, offset = _read_output(data, 0)
        if offset != len(data):
            raise DeserializationError("Trailing bytes after transaction output")
        return out


def _read_output(data: bytes, offset: int) -> tuple[TxOutput, int]:
    raw_value, offset = read_bytes(data, offset, 8)
    scriptpubkey, offset = read_var_bytes(data, offset)
    return TxOutput(value=struct.unpack("<Q", raw_value)[0], scriptpubkey=scriptpubkey), offset


@dataclass
class Transaction:
    """A Bitcoin transaction (signed or unsigned)."""

    inputs: list[TxInput] = field(default_factory=list)
    outputs: list[TxOutput] = field(default_factory=list)
    version: int = TX_VERSION
    locktime: int = 0

    @property
    def has_witness(self) -> bool:
        return any(inp.witness for inp in self.inputs)

    def serialize(self, include_witness: bool = True) -> bytes:
        """Serialize transaction to bytes."""
        segwit = include_witness and self.has_witness

        result = struct.pack("<I", self.version)
        if segwit:
            # Marker and flag for SegWit
            result += bytes([0x00, 0x01])

        result += encode_varint(len(self.inputs))
        for inp in self.inputs:
            result += inp.serialize()

        result += encode_varint(len(self.outputs))
        for out in self.outputs:
            result += out.serialize()

        if segwit:
            for inp in self.inputs:
                result += encode_varint(len(inp.witness))
                for item in inp.witness:
                    result += encode_var_bytes(item)

        result += struct.pack("<I", self.locktime)
        return result

    def hex(self) -> str:
        return self.serialize().hex()

    @property
    def txid(self) -> str:
        """Double SHA256 of the non-witness serialization, RPC byte order."""
        return hash256(self.serialize(include_witness=False))[::-1].hex()

    @property
    def weight(self) -> int:
        base = len(self.serialize(include_witness=False))
        total = len(self.serialize(include_witness=True))
        return base * 3 + total

    @property
    def vsize(self) -> int:
        return math.ceil(self.weight / 4)

    def total_output_value(self) -> int:
        return sum(out.value for out in self.outputs)

    @classmethod
    def deserialize(cls, data: bytes, allow_witness: bool = True) -> Transaction:
        """
        Parse a transaction from bytes.

        ``allow_witness=False`` forces the legacy layout, which is required for
        PSBT unsigned transactions: a zero-input transaction would otherwise be
        mistaken for a segwit marker.
        """
        try:
            return cls._parse(data, allow_witness)
        except DeserializationError:
            raise
        except (KeyError, IndexError, struct.error, ValueError) as e:
            raise DeserializationError(f"Failed to parse transaction: {e}") from e

    @classmethod
    def _parse(cls, data: bytes, allow_witness: bool) -> Transaction:
        raw_version, offset = read_bytes(data, 0, 4)
        version = struct.unpack("<I", raw_version)[0]

        segwit = False
        if allow_witness and len(data) > offset + 1 and data[offset] == 0x00:
            if data[offset + 1] != 0x01:
                raise DeserializationError("Invalid segwit flag")
            segwit = True
            offset += 2

        input_count, offset = read_varint(data, offset)
        inputs: list[TxInput] = []
        for _ in range(input_count):
            txid_le, offset = read_bytes(data, offset, 32)
            raw_vout, offset = read_bytes(data, offset, 4)
            script_sig, offset = read_var_bytes(data, offset)
            raw_sequence, offset = read_bytes(data, offset, 4)
            inputs.append(
                TxInput(
                    txid=txid_le[::-1].hex(),
                    vout=struct.unpack("<I", raw_vout)[0],
                    script_sig=script_sig,
                    sequence=struct.unpack("<I", raw_sequence)[0],
                )
            )

        output_count, offset = read_varint(data, offset)
        outputs: list[TxOutput] = []
        for _ in range(output_count):
            out, offset = _read_output(data, offset)
            outputs.append(out)

        if segwit:
            for inp in inputs:
                item_count, offset = read_varint(data, offset)
                for _ in range(item_count):
                    item, offset = read_var_bytes(data, offset)
                    inp.witness.append(item)

        raw_locktime, offset = read_bytes(data, offset, 4)
        if offset != len(data):
            raise DeserializationError(f"Trailing bytes after transaction: {len(data) - offset}")

        return cls(
            inputs=inputs,
            outputs=outputs,
            version=version,
            locktime=struct.unpack("<I", raw_locktime)[0],
        )

    @classmethod
    def from_hex(cls, tx_hex: str, allow_witness: bool = True) -> Transaction:
        try:
            data = bytes.fromhex(tx_hex.strip())
        except ValueError as e:
            raise DeserializationError(f"Invalid transaction hex: {e}") from e
        return cls.deserialize(data, allow_witness=allow_witness)

    def without_witness(self) -> Transaction:
        return Transaction(
            inputs=[
                TxInput(inp.txid, inp.vout, inp.script_sig, inp.sequence) for inp in self.inputs
            ],
            outputs=[TxOutput(out.value, out.scriptpubkey) for out in self.outputs],
            version=self.version,
            locktime=self.locktime,
        )


def estimate_vsize(input_weights: list[int], output_scripts: list[bytes]) -> int:
    """
    Estimate virtual size of a segwit transaction before signing.

    Args:
        input_weights: Declared satisfaction weight (witness WU) per input
        output_scripts: scriptPubKey of every output
    """
    base = 4 + 4  # version + locktime
    base += len(encode_varint(len(input_weights)))
    base += len(encode_varint(len(output_scripts)))
    base += INPUT_BASE_SIZE * len(input_weights)
    base += sum(8 + len(encode_var_bytes(script)) for script in output_scripts)

    witness = sum(input_weights)
    weight = base * 4
    if witness:
        weight += 2 + witness  # marker + flag

    return math.ceil(weight / 4)
