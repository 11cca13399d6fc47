"""
BIP32 HD key derivation for batch wallets.
Implements BIP84 (Native SegWit) derivation paths.
"""

from __future__ import annotations

import hashlib
import hmac

from coincurve import PrivateKey, PublicKey
from mnemonic import Mnemonic

from batchcore.address import pubkey_to_p2wpkh_address, pubkey_to_p2wpkh_script

HARDENED = 0x80000000


class HDKey:
    """
    Hierarchical Deterministic Key for Bitcoin.
    Implements BIP32 private derivation.
    """

    def __init__(self, private_key: PrivateKey, chain_code: bytes, depth: int = 0):
        self._private_key = private_key
        self._public_key = private_key.public_key
        self.chain_code = chain_code
        self.depth = depth

    @property
    def private_key(self) -> PrivateKey:
        return self._private_key

    @property
    def public_key(self) -> PublicKey:
        return self._public_key

    @classmethod
    def from_seed(cls, seed: bytes) -> HDKey:
        """Create master HD key from seed"""
        hmac_result = hmac.new(b"Bitcoin seed", seed, hashlib.sha512).digest()
        return cls(PrivateKey(hmac_result[:32]), hmac_result[32:], depth=0)

    def derive(self, path: str) -> HDKey:
        """
        Derive child key from path notation (e.g., "m/84'/0'/0'/0/0")
        ' or h indicates hardened derivation
        """
        if not path.startswith("m"):
            raise ValueError("Path must start with 'm'")

        key = self
        for part in path.split("/")[1:]:
            if not part:
                continue
            hardened = part.endswith(("'", "h"))
            index = int(part.rstrip("'h"))
            key = key.derive_child(index + HARDENED if hardened else index)

        return key

    def derive_child(self, index: int) -> HDKey:
        """Derive a child key at the given index"""
        if index >= HARDENED:
            data = b"\x00" + self._private_key.secret + index.to_bytes(4, "big")
        else:
            data = self._public_key.format(compressed=True) + index.to_bytes(4, "big")

        digest = hmac.new(self.chain_code, data, hashlib.sha512).digest()
        # Raises ValueError when the tweak is out of range or yields a zero key
        child = self._private_key.add(digest[:32])
        return HDKey(child, digest[32:], depth=self.depth + 1)

    def get_public_key_bytes(self) -> bytes:
        return self._public_key.format(compressed=True)

    def get_scriptpubkey(self) -> bytes:
        return pubkey_to_p2wpkh_script(self.get_public_key_bytes())

    def get_address(self, network: str = "mainnet") -> str:
        """Get P2WPKH (Native SegWit) address for this key"""
        return pubkey_to_p2wpkh_address(self.get_public_key_bytes(), network)


def mnemonic_to_seed(mnemonic: str, passphrase: str = "") -> bytes:
    """Convert BIP39 mnemonic to seed."""
    return Mnemonic.to_seed(mnemonic, passphrase)


def mnemonic_from_entropy(entropy: bytes) -> str:
    """Deterministic English mnemonic for the given 16-32 bytes of entropy."""
    return Mnemonic("english").to_mnemonic(entropy)

