"""
batchcore - Core library for collaborative batch transactions

Provides the shared transaction codec, the batch PSBT accumulator and the
error taxonomy used by the wallet and coordinator components.
"""

__version__ = "0.3.0"

from batchcore.constants import (
    DEFAULT_FEE_PER_PARTICIPANT,
    DEFAULT_SEED_FEE_RATE,
    MIN_RELAY_FEE_RATE,
    P2WPKH_SATISFACTION_WEIGHT,
    STANDARD_DUST_LIMIT,
)
from batchcore.errors import (
    BatchError,
    DeserializationError,
    DuplicateInput,
    FeeImbalance,
    InsufficientFunds,
    RejectedByNetwork,
    SigningError,
)
from batchcore.models import NetworkType, OutputKind, PsbtSummary
from batchcore.psbt import BatchPsbt, PsbtInput, PsbtOutput
from batchcore.tx import OutPoint, Transaction, TxInput, TxOutput

__all__ = [
    "BatchError",
    "BatchPsbt",
    "DEFAULT_FEE_PER_PARTICIPANT",
    "DEFAULT_SEED_FEE_RATE",
    "DeserializationError",
    "DuplicateInput",
    "FeeImbalance",
    "InsufficientFunds",
    "MIN_RELAY_FEE_RATE",
    "NetworkType",
    "OutPoint",
    "OutputKind",
    "P2WPKH_SATISFACTION_WEIGHT",
    "PsbtInput",
    "PsbtOutput",
    "PsbtSummary",
    "RejectedByNetwork",
    "STANDARD_DUST_LIMIT",
    "SigningError",
    "Transaction",
    "TxInput",
    "TxOutput",
]
