"""
coordinator - Collaborative batch transaction coordinator.

Assembles one transaction out of UTXOs from several wallets using one of six
coordination strategies, checks the fee ledger and drives signing and
broadcast.
"""

__version__ = "0.3.0"
