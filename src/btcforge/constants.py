"""
Bitcoin protocol and fee-model constants.

Virtual sizes are conservative per-input/per-output estimates used before a
transaction exists. Exact sizes are computed from the serialized transaction
after finalization.
"""

from __future__ import annotations

SATS_PER_BTC = 100_000_000

# Standard P2PKH dust limit in Bitcoin Core
STANDARD_DUST_LIMIT = 546  # satoshis

# Change below this is folded into the fee instead of creating an output
DUST_THRESHOLD = STANDARD_DUST_LIMIT

# Fixed transaction overhead: version, locktime, counts, segwit marker/flag
TX_OVERHEAD_VBYTES = 10

# Estimated input sizes (vbytes) with a 72-byte signature and compressed pubkey
P2WPKH_INPUT_VBYTES = 68
P2SH_P2WPKH_INPUT_VBYTES = 91
P2PKH_INPUT_VBYTES = 148

# Output sizes (vbytes)
P2WPKH_OUTPUT_VBYTES = 31  # 8 value + 1 script length + 22 script
P2SH_OUTPUT_VBYTES = 34  # 32 serialized, costed like P2PKH
P2PKH_OUTPUT_VBYTES = 34  # 8 value + 1 script length + 25 script

# Coin selection search bounds
MAX_TRIPLE_CANDIDATES = 12

# Opt-in replace-by-fee (BIP125): any sequence below 0xFFFFFFFE signals
RBF_SEQUENCE = 0xFFFFFFFD

# Output indexes are serialized as uint32
MAX_OUTPUT_INDEX = 0xFFFFFFFF

SIGHASH_ALL = 0x01

TX_VERSION = 2

# Fallback fee rate when the node cannot estimate (sat/vB)
DEFAULT_FEE_RATE = 2.0
