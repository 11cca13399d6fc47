"""
Bitcoin policy and batch protocol constants.
"""

from __future__ import annotations

# Standard P2PKH dust limit in Bitcoin Core
STANDARD_DUST_LIMIT = 546  # satoshis

# Minimum relay fee rate in sat/vB (Bitcoin Core's DEFAULT_MIN_RELAY_TX_FEE is 1000 sat/kvB)
MIN_RELAY_FEE_RATE = 1

# Fee rate used by the initiator's seed draft, in sat/vB.
# The seed fee is the only network fee of a circulated batch, so it is set well above
# the relay minimum to still clear it once every participant has appended inputs.
DEFAULT_SEED_FEE_RATE = 20

# Sequence values
SEQUENCE_FINAL = 0xFFFFFFFF
SEQUENCE_RBF = 0xFFFFFFFD  # opt-in RBF, no relative locktime

TX_VERSION = 2

# Weight units spent by a P2WPKH input's witness:
# item count (1) + DER signature with sighash byte (1 + 72) + compressed pubkey (1 + 33)
P2WPKH_SATISFACTION_WEIGHT = 108

# Non-witness bytes of an input with empty scriptSig:
# outpoint (36) + script length (1) + sequence (4)
INPUT_BASE_SIZE = 41

# Fixed per-participant fee used by the reference batches
DEFAULT_FEE_PER_PARTICIPANT = 77_777

SATS_PER_BTC = 100_000_000
