"""
BIP84 wallet: key derivation, UTXO tracking and P2WPKH signing.
"""

from batchwallet.wallet.models import CoinSelection, UTXOInfo
from batchwallet.wallet.service import WalletService

__all__ = ["CoinSelection", "UTXOInfo", "WalletService"]
