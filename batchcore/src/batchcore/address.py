"""
Address and scriptPubKey conversion.

Only P2WPKH is ever produced by the batch wallets, but any standard address
can be used as the batch recipient.
"""

from __future__ import annotations

import hashlib

import base58
import bech32

from batchcore.models import NetworkType, get_bech32_hrp


def hash160(data: bytes) -> bytes:
    """RIPEMD160(SHA256(data))"""
    h = hashlib.new("ripemd160")
    h.update(hashlib.sha256(data).digest())
    return h.digest()


def pubkey_to_p2wpkh_script(pubkey: bytes) -> bytes:
    """OP_0 <20-byte-pubkeyhash>"""
    if len(pubkey) != 33:
        raise ValueError(f"Invalid compressed pubkey length: {len(pubkey)}")
    return bytes([0x00, 0x14]) + hash160(pubkey)


def pubkey_to_p2wpkh_address(pubkey: bytes, network: NetworkType | str = "mainnet") -> str:
    return scriptpubkey_to_address(pubkey_to_p2wpkh_script(pubkey), network)


def is_p2wpkh(scriptpubkey: bytes) -> bool:
    return len(scriptpubkey) == 22 and scriptpubkey[0] == 0x00 and scriptpubkey[1] == 0x14


def address_to_scriptpubkey(address: str) -> bytes:
    """
    Convert a Bitcoin address to scriptPubKey.

    Supports:
    - P2WPKH / P2WSH (bc1q..., tb1q..., bcrt1q...)
    - P2TR (bc1p...)
    - P2PKH (1..., m..., n...)
    - P2SH (3..., 2...)
    """
    lowered = address.lower()
    if lowered.startswith(("bc1", "tb1", "bcrt1")):
        hrp = lowered[:4] if lowered.startswith("bcrt1") else lowered[:2]
        witver, witprog = bech32.decode(hrp, lowered)
        if witver is None or witprog is None:
            raise ValueError(f"Invalid bech32 address: {address}")

        program = bytes(witprog)
        if witver == 0:
            if len(program) == 20:
                return bytes([0x00, 0x14]) + program
            elif len(program) == 32:
                return bytes([0x00, 0x20]) + program
        elif witver == 1 and len(program) == 32:
            return bytes([0x51, 0x20]) + program

        raise ValueError(f"Unsupported witness program: version {witver}, {len(program)} bytes")

    try:
        decoded = base58.b58decode_check(address)
    except ValueError as e:
        raise ValueError(f"Invalid address: {address}") from e
    version = decoded[0]
    payload = decoded[1:]

    if version in (0x00, 0x6F):  # Mainnet/Testnet P2PKH
        return bytes([0x76, 0xA9, 0x14]) + payload + bytes([0x88, 0xAC])
    elif version in (0x05, 0xC4):  # Mainnet/Testnet P2SH
        return bytes([0xA9, 0x14]) + payload + bytes([0x87])

    raise ValueError(f"Unknown address version: {version}")


def scriptpubkey_to_address(scriptpubkey: bytes, network: NetworkType | str = "mainnet") -> str:
    """Convert a segwit scriptPubKey to its bech32 address."""
    hrp = get_bech32_hrp(network)

    if is_p2wpkh(scriptpubkey) or (
        len(scriptpubkey) == 34 and scriptpubkey[0] == 0x00 and scriptpubkey[1] == 0x20
    ):
        result = bech32.encode(hrp, 0, scriptpubkey[2:])
        if result is None:
            raise ValueError(f"Failed to encode address: {scriptpubkey.hex()}")
        return result

    raise ValueError(f"Unsupported scriptPubKey: {scriptpubkey.hex()}")


def try_scriptpubkey_to_address(
    scriptpubkey: bytes, network: NetworkType | str = "mainnet"
) -> str | None:
    try:
        return scriptpubkey_to_address(scriptpubkey, network)
    except ValueError:
        return None
