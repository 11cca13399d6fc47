"""
Error taxonomy shared by every batch component.

Accounting and structural errors are raised at the point of contribution and
abort the whole batch. Only RejectedByNetwork leaves a caller-visible signed
transaction behind, which the caller may resubmit.
"""

from __future__ import annotations


class BatchError(Exception):
    """Base class for all batch assembly errors."""


class InsufficientFunds(BatchError):
    """A contribution or draft cannot cover its amount plus fee."""

    def __init__(self, needed: int, available: int, context: str = ""):
        self.needed = needed
        self.available = available
        self.context = context
        message = f"Insufficient funds: need {needed:,} sats, have {available:,} sats"
        if context:
            message = f"{context}: {message}"
        super().__init__(message)


class DuplicateInput(BatchError):
    """An outpoint would be spent twice within one accumulator."""

    def __init__(self, outpoint: object):
        self.outpoint = outpoint
        super().__init__(f"Duplicate input: {outpoint}")


class DeserializationError(BatchError, ValueError):
    """Raised when a transaction or PSBT payload does not parse."""


class SigningError(BatchError):
    """Raised when an owned input cannot be signed or the PSBT cannot be finalized."""


class RejectedByNetwork(BatchError):
    """The broadcast collaborator refused the transaction."""

    def __init__(self, reason: str, txid: str | None = None):
        self.reason = reason
        self.txid = txid
        super().__init__(f"Transaction rejected: {reason}")


class FeeImbalance(BatchError):
    """The fee ledger does not balance against the accumulator."""
