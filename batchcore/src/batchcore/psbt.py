"""
Batch PSBT: the accumulator threaded through every coordination strategy.

Wire format is BIP174 version 0:

    magic "psbt\\xff"
    global map   { 0x00: unsigned tx (legacy serialization) }
    input maps   { 0x00: non_witness_utxo, 0x01: witness_utxo, 0x02<pubkey>: sig,
                   0x03: sighash type, 0x08: final script witness }
    output maps  { 0xFC "batch" 0x00: owner label, 0xFC "batch" 0x01: output kind }

Every map is terminated by a zero-length key. Unrecognised keys are kept
verbatim so a PSBT that passed through other software round-trips losslessly.

A BatchPsbt is treated as a value: ``extended`` returns a new accumulator and
leaves the receiver untouched.
"""

from __future__ import annotations

import base64
import binascii
import copy
import struct
from collections.abc import Iterable
from dataclasses import dataclass, field

from batchcore.address import try_scriptpubkey_to_address
from batchcore.errors import BatchError, DeserializationError, DuplicateInput, SigningError
from batchcore.models import (
    InputSummary,
    NetworkType,
    OutputKind,
    OutputSummary,
    PsbtSummary,
)
from batchcore.tx import (
    OutPoint,
    Transaction,
    TxInput,
    TxOutput,
    encode_var_bytes,
    encode_varint,
    read_bytes,
    read_var_bytes,
    read_varint,
)

PSBT_MAGIC = b"psbt\xff"

PSBT_GLOBAL_UNSIGNED_TX = 0x00

PSBT_IN_NON_WITNESS_UTXO = 0x00
PSBT_IN_WITNESS_UTXO = 0x01
PSBT_IN_PARTIAL_SIG = 0x02
PSBT_IN_SIGHASH_TYPE = 0x03
PSBT_IN_FINAL_SCRIPTWITNESS = 0x08

PSBT_PROPRIETARY = 0xFC
PROPRIETARY_IDENTIFIER = b"batch"
BATCH_OUT_OWNER = 0x00
BATCH_OUT_KIND = 0x01


def _proprietary_key(subtype: int) -> bytes:
    return (
        bytes([PSBT_PROPRIETARY])
        + encode_var_bytes(PROPRIETARY_IDENTIFIER)
        + encode_varint(subtype)
    )


def _parse_proprietary_key(key: bytes) -> tuple[bytes, int, bytes]:
    """Split a proprietary key into (identifier, subtype, keydata)."""
    identifier, offset = read_var_bytes(key, 1)
    subtype, offset = read_varint(key, offset)
    return identifier, subtype, key[offset:]


def _serialize_witness(stack: list[bytes]) -> bytes:
    result = encode_varint(len(stack))
    for item in stack:
        result += encode_var_bytes(item)
    return result


def _parse_witness(data: bytes) -> list[bytes]:
    count, offset = read_varint(data, 0)
    stack = []
    for _ in range(count):
        item, offset = read_var_bytes(data, offset)
        stack.append(item)
    if offset != len(data):
        raise DeserializationError("Trailing bytes in final script witness")
    return stack


def _write_pair(key: bytes, value: bytes) -> bytes:
    return encode_var_bytes(key) + encode_var_bytes(value)


def _read_map(data: bytes, offset: int) -> tuple[list[tuple[bytes, bytes]], int]:
    """Read one key/value map up to its separator, rejecting duplicate keys."""
    pairs: list[tuple[bytes, bytes]] = []
    seen: set[bytes] = set()
    while True:
        key, offset = read_var_bytes(data, offset)
        if not key:
            return pairs, offset
        if key in seen:
            raise DeserializationError(f"Duplicate PSBT key: {key.hex()}")
        seen.add(key)
        value, offset = read_var_bytes(data, offset)
        pairs.append((key, value))


@dataclass
class PsbtInput:
    """Per-input metadata: proof-of-funds, signatures and finalization state."""

    non_witness_utxo: Transaction | None = None
    witness_utxo: TxOutput | None = None
    partial_sigs: dict[bytes, bytes] = field(default_factory=dict)
    sighash_type: int | None = None
    final_script_witness: list[bytes] | None = None
    unknown: dict[bytes, bytes] = field(default_factory=dict)

    @property
    def is_finalized(self) -> bool:
        return self.final_script_witness is not None

    @property
    def proof(self) -> str:
        if self.non_witness_utxo is not None:
            return "full-tx"
        if self.witness_utxo is not None:
            return "witness-utxo"
        return "none"

    def funding_output(self, vout: int) -> TxOutput | None:
        """The output being spent, taken from the best proof-of-funds available."""
        if self.non_witness_utxo is not None and vout < len(self.non_witness_utxo.outputs):
            return self.non_witness_utxo.outputs[vout]
        return self.witness_utxo

    def serialize(self) -> bytes:
        result = b""
        if self.non_witness_utxo is not None:
            result += _write_pair(
                bytes([PSBT_IN_NON_WITNESS_UTXO]), self.non_witness_utxo.serialize()
            )
        if self.witness_utxo is not None:
            result += _write_pair(bytes([PSBT_IN_WITNESS_UTXO]), self.witness_utxo.serialize())
        for pubkey, sig in self.partial_sigs.items():
            result += _write_pair(bytes([PSBT_IN_PARTIAL_SIG]) + pubkey, sig)
        if self.sighash_type is not None:
            result += _write_pair(
                bytes([PSBT_IN_SIGHASH_TYPE]), struct.pack("<I", self.sighash_type)
            )
        if self.final_script_witness is not None:
            result += _write_pair(
                bytes([PSBT_IN_FINAL_SCRIPTWITNESS]),
                _serialize_witness(self.final_script_witness),
            )
        for key, value in self.unknown.items():
            result += _write_pair(key, value)
        return result + b"\x00"

    @classmethod
    def from_pairs(cls, pairs: list[tuple[bytes, bytes]]) -> PsbtInput:
        inp = cls()
        for key, value in pairs:
            key_type, _ = read_varint(key, 0)
            if key_type == PSBT_IN_NON_WITNESS_UTXO and len(key) == 1:
                inp.non_witness_utxo = Transaction.deserialize(value)
            elif key_type == PSBT_IN_WITNESS_UTXO and len(key) == 1:
                inp.witness_utxo = TxOutput.deserialize(value)
            elif key_type == PSBT_IN_PARTIAL_SIG:
                pubkey = key[1:]
                if len(pubkey) not in (33, 65):
                    raise DeserializationError(f"Invalid partial sig pubkey length: {len(pubkey)}")
                inp.partial_sigs[pubkey] = value
            elif key_type == PSBT_IN_SIGHASH_TYPE and len(key) == 1:
                if len(value) != 4:
                    raise DeserializationError("Sighash type must be 4 bytes")
                inp.sighash_type = struct.unpack("<I", value)[0]
            elif key_type == PSBT_IN_FINAL_SCRIPTWITNESS and len(key) == 1:
                inp.final_script_witness = _parse_witness(value)
            else:
                inp.unknown[key] = value
        return inp


@dataclass
class PsbtOutput:
    """Per-output metadata: which participant owns it and why it exists."""

    owner: str | None = None
    kind: OutputKind | None = None
    unknown: dict[bytes, bytes] = field(default_factory=dict)

    def serialize(self) -> bytes:
        result = b""
        if self.owner is not None:
            result += _write_pair(_proprietary_key(BATCH_OUT_OWNER), self.owner.encode())
        if self.kind is not None:
            result += _write_pair(_proprietary_key(BATCH_OUT_KIND), self.kind.value.encode())
        for key, value in self.unknown.items():
            result += _write_pair(key, value)
        return result + b"\x00"

    @classmethod
    def from_pairs(cls, pairs: list[tuple[bytes, bytes]]) -> PsbtOutput:
        out = cls()
        for key, value in pairs:
            key_type, _ = read_varint(key, 0)
            if key_type == PSBT_PROPRIETARY:
                identifier, subtype, keydata = _parse_proprietary_key(key)
                if identifier == PROPRIETARY_IDENTIFIER and not keydata:
                    try:
                        if subtype == BATCH_OUT_OWNER:
                            out.owner = value.decode()
                            continue
                        if subtype == BATCH_OUT_KIND:
                            out.kind = OutputKind(value.decode())
                            continue
                    except (UnicodeDecodeError, ValueError) as e:
                        raise DeserializationError(f"Invalid batch output label: {e}") from e
            out.unknown[key] = value
        return out


@dataclass
class BatchPsbt:
    """
    Unsigned transaction plus per-input/per-output metadata.

    Inputs are only ever appended; an outpoint can appear at most once.
    """

    tx: Transaction = field(default_factory=Transaction)
    inputs: list[PsbtInput] = field(default_factory=list)
    outputs: list[PsbtOutput] = field(default_factory=list)
    unknown: dict[bytes, bytes] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if len(self.inputs) != len(self.tx.inputs):
            raise ValueError(
                f"Input metadata count {len(self.inputs)} != tx inputs {len(self.tx.inputs)}"
            )
        if len(self.outputs) != len(self.tx.outputs):
            raise ValueError(
                f"Output metadata count {len(self.outputs)} != tx outputs {len(self.tx.outputs)}"
            )

    @classmethod
    def empty(cls, locktime: int = 0) -> BatchPsbt:
        return cls(tx=Transaction(locktime=locktime))

    # ------------------------------------------------------------------
    # Accessors
    # ------------------------------------------------------------------

    @property
    def outpoints(self) -> list[OutPoint]:
        return [inp.outpoint for inp in self.tx.inputs]

    def contains(self, outpoint: OutPoint) -> bool:
        return outpoint in self.outpoints

    def input_value(self, index: int) -> int | None:
        txin = self.tx.inputs[index]
        funding = self.inputs[index].funding_output(txin.vout)
        return funding.value if funding is not None else None

    def total_input_value(self) -> int:
        total = 0
        for index, txin in enumerate(self.tx.inputs):
            value = self.input_value(index)
            if value is None:
                raise BatchError(f"Input {txin.outpoint} carries no proof-of-funds")
            total += value
        return total

    def total_output_value(self) -> int:
        return self.tx.total_output_value()

    def fee(self) -> int:
        return self.total_input_value() - self.total_output_value()

    def outputs_owned_by(self, owner: str) -> list[TxOutput]:
        return [
            txout
            for txout, meta in zip(self.tx.outputs, self.outputs)
            if meta.owner == owner
        ]

    @property
    def is_finalized(self) -> bool:
        return all(inp.is_finalized for inp in self.inputs)

    # ------------------------------------------------------------------
    # Value-style updates
    # ------------------------------------------------------------------

    def copy(self) -> BatchPsbt:
        return copy.deepcopy(self)

    def extended(
        self,
        inputs: Iterable[tuple[TxInput, PsbtInput]] = (),
        outputs: Iterable[tuple[TxOutput, PsbtOutput]] = (),
    ) -> BatchPsbt:
        """
        Return a new accumulator with the given inputs and outputs appended.

        Raises:
            DuplicateInput: an outpoint is already spent by this accumulator
        """
        result = self.copy()
        present = set(result.outpoints)
        for txin, meta in inputs:
            if txin.outpoint in present:
                raise DuplicateInput(txin.outpoint)
            present.add(txin.outpoint)
            result.tx.inputs.append(
                TxInput(txid=txin.txid, vout=txin.vout, sequence=txin.sequence)
            )
            result.inputs.append(copy.deepcopy(meta))
        for txout, out_meta in outputs:
            result.tx.outputs.append(TxOutput(value=txout.value, scriptpubkey=txout.scriptpubkey))
            result.outputs.append(copy.deepcopy(out_meta))
        return result

    def extract_tx(self) -> Transaction:
        """
        Build the network transaction from finalized inputs.

        Raises:
            SigningError: an input has no final script witness yet
        """
        tx = self.tx.without_witness()
        for index, (txin, meta) in enumerate(zip(tx.inputs, self.inputs)):
            if meta.final_script_witness is None:
                raise SigningError(f"Input {index} ({txin.outpoint}) is not finalized")
            txin.witness = list(meta.final_script_witness)
        return tx

    # ------------------------------------------------------------------
    # Wire format
    # ------------------------------------------------------------------

    def serialize(self) -> bytes:
        result = PSBT_MAGIC
        result += _write_pair(
            bytes([PSBT_GLOBAL_UNSIGNED_TX]), self.tx.serialize(include_witness=False)
        )
        for key, value in self.unknown.items():
            result += _write_pair(key, value)
        result += b"\x00"
        for inp in self.inputs:
            result += inp.serialize()
        for out in self.outputs:
            result += out.serialize()
        return result

    def to_hex(self) -> str:
        return self.serialize().hex()

    def to_base64(self) -> str:
        return base64.b64encode(self.serialize()).decode("ascii")

    @classmethod
    def deserialize(cls, data: bytes) -> BatchPsbt:
        try:
            return cls._parse(data)
        except DeserializationError:
            raise
        except (KeyError, IndexError, struct.error, ValueError) as e:
            raise DeserializationError(f"Failed to parse PSBT: {e}") from e

    @classmethod
    def _parse(cls, data: bytes) -> BatchPsbt:
        magic, offset = read_bytes(data, 0, len(PSBT_MAGIC))
        if magic != PSBT_MAGIC:
            raise DeserializationError("Invalid PSBT magic bytes")

        global_pairs, offset = _read_map(data, offset)
        tx: Transaction | None = None
        unknown: dict[bytes, bytes] = {}
        for key, value in global_pairs:
            if key == bytes([PSBT_GLOBAL_UNSIGNED_TX]):
                tx = Transaction.deserialize(value, allow_witness=False)
            else:
                unknown[key] = value
        if tx is None:
            raise DeserializationError("PSBT is missing the unsigned transaction")
        for txin in tx.inputs:
            if txin.script_sig:
                raise DeserializationError("Unsigned transaction has a non-empty scriptSig")

        inputs = []
        for txin in tx.inputs:
            pairs, offset = _read_map(data, offset)
            meta = PsbtInput.from_pairs(pairs)
            if meta.non_witness_utxo is not None and meta.non_witness_utxo.txid != txin.txid:
                raise DeserializationError(
                    f"non_witness_utxo txid {meta.non_witness_utxo.txid} does not match "
                    f"input {txin.outpoint}"
                )
            inputs.append(meta)

        outputs = []
        for _ in tx.outputs:
            pairs, offset = _read_map(data, offset)
            outputs.append(PsbtOutput.from_pairs(pairs))

        if offset != len(data):
            raise DeserializationError(f"Trailing bytes after PSBT: {len(data) - offset}")

        return cls(tx=tx, inputs=inputs, outputs=outputs, unknown=unknown)

    @classmethod
    def from_hex(cls, psbt_hex: str) -> BatchPsbt:
        try:
            data = bytes.fromhex(psbt_hex.strip())
        except ValueError as e:
            raise DeserializationError(f"Invalid PSBT hex: {e}") from e
        return cls.deserialize(data)

    @classmethod
    def from_base64(cls, psbt_b64: str) -> BatchPsbt:
        try:
            data = base64.b64decode(psbt_b64.strip(), validate=True)
        except (binascii.Error, ValueError) as e:
            raise DeserializationError(f"Invalid PSBT base64: {e}") from e
        return cls.deserialize(data)

    # ------------------------------------------------------------------
    # Inspection
    # ------------------------------------------------------------------

    def summary(self, network: NetworkType | str = NetworkType.MAINNET) -> PsbtSummary:
        input_summaries = []
        for index, (txin, meta) in enumerate(zip(self.tx.inputs, self.inputs)):
            input_summaries.append(
                InputSummary(
                    outpoint=str(txin.outpoint),
                    value=self.input_value(index),
                    proof=meta.proof,
                    finalized=meta.is_finalized,
                )
            )

        output_summaries = [
            OutputSummary(
                value=txout.value,
                scriptpubkey=txout.scriptpubkey.hex(),
                address=try_scriptpubkey_to_address(txout.scriptpubkey, network),
                owner=meta.owner,
                kind=meta.kind,
            )
            for txout, meta in zip(self.tx.outputs, self.outputs)
        ]

        total_input: int | None = None
        fee: int | None = None
        if all(s.value is not None for s in input_summaries):
            total_input = sum(s.value or 0 for s in input_summaries)
            fee = total_input - self.total_output_value()

        return PsbtSummary(
            txid=self.tx.txid,
            locktime=self.tx.locktime,
            inputs=input_summaries,
            outputs=output_summaries,
            total_input=total_input,
            total_output=self.total_output_value(),
            fee=fee,
        )
