"""
Bitcoin transaction signing utilities for P2WPKH inputs.
"""

from __future__ import annotations

import struct

from coincurve import PrivateKey, PublicKey

from batchcore.address import hash160
from batchcore.errors import SigningError
from batchcore.tx import Transaction, encode_var_bytes, hash256

SIGHASH_ALL = 1


def compute_sighash_segwit(
    tx: Transaction,
    input_index: int,
    script_code: bytes,
    value: int,
    sighash_type: int = SIGHASH_ALL,
) -> bytes:
    """BIP143 signature hash for a segwit v0 input (SIGHASH_ALL only)."""
    if input_index >= len(tx.inputs):
        raise SigningError("Input index out of range")
    if sighash_type != SIGHASH_ALL:
        raise SigningError(f"Unsupported sighash type: {sighash_type}")

    hash_prevouts = hash256(b"".join(inp.outpoint.serialize() for inp in tx.inputs))
    hash_sequence = hash256(b"".join(struct.pack("<I", inp.sequence) for inp in tx.inputs))
    hash_outputs = hash256(b"".join(out.serialize() for out in tx.outputs))

    target_input = tx.inputs[input_index]

    preimage = (
        struct.pack("<I", tx.version)
        + hash_prevouts
        + hash_sequence
        + target_input.outpoint.serialize()
        + encode_var_bytes(script_code)
        + struct.pack("<Q", value)
        + struct.pack("<I", target_input.sequence)
        + hash_outputs
        + struct.pack("<I", tx.locktime)
        + struct.pack("<I", sighash_type)
    )

    return hash256(preimage)


def sign_p2wpkh_input(
    tx: Transaction,
    input_index: int,
    script_code: bytes,
    value: int,
    private_key: PrivateKey,
    sighash_type: int = SIGHASH_ALL,
) -> bytes:
    """Sign a P2WPKH input using coincurve.

    Args:
        tx: The transaction to sign
        input_index: Index of the input to sign
        script_code: The scriptCode for signing (P2PKH script for P2WPKH)
        value: The value of the input being spent (in satoshis)
        private_key: coincurve PrivateKey instance
        sighash_type: Sighash type (default SIGHASH_ALL = 1)

    Returns:
        DER-encoded signature with sighash type byte appended
    """
    sighash = compute_sighash_segwit(tx, input_index, script_code, value, sighash_type)

    # sighash is already SHA256d, hasher=None skips hashing
    signature = private_key.sign(sighash, hasher=None)

    return signature + bytes([sighash_type])


def verify_p2wpkh_input(
    tx: Transaction,
    input_index: int,
    scriptpubkey: bytes,
    value: int,
) -> bool:
    """Check the witness of a P2WPKH input against the output it spends."""
    witness = tx.inputs[input_index].witness
    if len(witness) != 2:
        return False
    signature, pubkey = witness
    if not signature or len(pubkey) != 33:
        return False
    if scriptpubkey != b"\x00\x14" + hash160(pubkey):
        return False

    sighash_type = signature[-1]
    try:
        sighash = compute_sighash_segwit(
            tx, input_index, create_p2wpkh_script_code(pubkey), value, sighash_type
        )
        return PublicKey(pubkey).verify(signature[:-1], sighash, hasher=None)
    except (SigningError, ValueError):
        return False


def create_p2wpkh_script_code(pubkey_bytes: bytes) -> bytes:
    """Create the scriptCode for P2WPKH signing (BIP 143).

    For P2WPKH, the scriptCode is the P2PKH script:
    OP_DUP OP_HASH160 <20-byte-pubkeyhash> OP_EQUALVERIFY OP_CHECKSIG
    """
    return b"\x76\xa9\x14" + hash160(pubkey_bytes) + b"\x88\xac"


def create_witness_stack(signature: bytes, pubkey_bytes: bytes) -> list[bytes]:
    return [signature, pubkey_bytes]
