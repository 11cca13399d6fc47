"""
Core data models using Pydantic for validation and serialization.
"""

from __future__ import annotations

from enum import Enum

from pydantic import BaseModel, Field


class NetworkType(str, Enum):
    MAINNET = "mainnet"
    TESTNET = "testnet"
    SIGNET = "signet"
    REGTEST = "regtest"


def get_bech32_hrp(network: NetworkType | str) -> str:
    """Get bech32 human-readable part for network."""
    return {
        NetworkType.MAINNET: "bc",
        NetworkType.TESTNET: "tb",
        NetworkType.SIGNET: "tb",
        NetworkType.REGTEST: "bcrt",
    }[NetworkType(network)]


class OutputKind(str, Enum):
    """Role of an output inside a batch, stored as PSBT output metadata."""

    RECIPIENT = "recipient"
    CHANGE = "change"
    CONTRIBUTION = "contribution"
    UNIFORM = "uniform"


class InputSummary(BaseModel):
    outpoint: str
    value: int | None = Field(default=None, ge=0)
    proof: str = Field(..., description="full-tx | witness-utxo | none")
    finalized: bool = False


class OutputSummary(BaseModel):
    value: int = Field(..., ge=0)
    scriptpubkey: str
    address: str | None = None
    owner: str | None = None
    kind: OutputKind | None = None


class PsbtSummary(BaseModel):
    """Human/JSON friendly view of a batch PSBT."""

    txid: str
    locktime: int = Field(..., ge=0)
    inputs: list[InputSummary] = Field(default_factory=list)
    outputs: list[OutputSummary] = Field(default_factory=list)
    total_input: int | None = None
    total_output: int = 0
    fee: int | None = None

    def owners(self) -> dict[str, int]:
        """Number of outputs labelled per owner."""
        result: dict[str, int] = {}
        for out in self.outputs:
            if out.owner is None:
                continue
            result[out.owner] = result.get(out.owner, 0) + 1
        return result
