"""
Configuration for the batch coordinator.
"""

from __future__ import annotations

from enum import Enum

from pydantic import BaseModel, Field, model_validator

from batchcore.constants import (
    DEFAULT_FEE_PER_PARTICIPANT,
    DEFAULT_SEED_FEE_RATE,
    MIN_RELAY_FEE_RATE,
    STANDARD_DUST_LIMIT,
)
from batchcore.models import NetworkType


class StrategyKind(str, Enum):
    """How the accumulator travels between participants."""

    SEQUENTIAL = "sequential"
    MERGE = "merge"
    FOREIGN_INPUT = "foreign-input"
    HEX_RELAY = "hex-relay"
    POOL = "pool"
    UNIFORM_OUTPUT = "uniform-output"


class OrderingPolicy(str, Enum):
    """Order in which a participant's candidate UTXOs are considered."""

    WALLET = "wallet"
    LARGEST_FIRST = "largest-first"
    SMALLEST_FIRST = "smallest-first"
    OUTPOINT = "outpoint"


class BatchConfig(BaseModel):
    """Configuration for one batch run."""

    strategy: StrategyKind = StrategyKind.SEQUENTIAL
    network: NetworkType = NetworkType.SIGNET

    # Seed draft
    recipient_amount: int = Field(default=777_777, gt=0, description="Recipient output in sats")
    seed_utxo_count: int = Field(default=2, ge=1, description="Initiator UTXOs spent by the seed")
    seed_fee_rate: float = Field(default=DEFAULT_SEED_FEE_RATE, gt=0, description="sat/vB")

    # Contributions
    fee_per_participant: int = Field(default=DEFAULT_FEE_PER_PARTICIPANT, ge=0)
    max_utxos_per_participant: int = Field(default=2, ge=1)
    topup_max_utxos: int = Field(default=2, ge=1)
    rounds: int = Field(default=1, ge=1, description="Visits per participant when circulating")
    ordering: OrderingPolicy = OrderingPolicy.WALLET

    # Strategy specific
    merge_amount: int = Field(default=500_000, gt=0, description="Fragment payment when merging")
    uniform_amount: int | None = Field(default=None, gt=0)

    # Policy
    min_relay_fee_rate: float = Field(default=MIN_RELAY_FEE_RATE, ge=0, description="sat/vB")
    dust_threshold: int = Field(default=STANDARD_DUST_LIMIT, ge=0)

    @model_validator(mode="after")
    def set_uniform_amount_default(self) -> BatchConfig:
        """Uniform outputs default to the recipient amount."""
        if self.uniform_amount is None:
            object.__setattr__(self, "uniform_amount", self.recipient_amount)
        return self

    @property
    def target_amount(self) -> int:
        return self.uniform_amount or self.recipient_amount
