"""
batchwallet - Wallet and chain backends for batch participants.
"""

__version__ = "0.3.0"
