"""Shared constants and interfaces for the staked oracle protocol.

All modules import from here to avoid circular dependencies.
"""

import os
from enum import Enum

# --- Protocol Constants ---

PROTOCOL_VERSION = 1

BPS_DENOMINATOR = 10_000
UNITS_PER_TOKEN = 10**18  # base units per whole token, both lanes
MAX_SLOTS = 256  # per-request cap, enforced by the HTTP API only
MAX_ANSWER_BYTES = 16_384
COMMITMENT_HEX_LEN = 64  # sha256 hex digest
NONCE_BYTES = 32

# Lane identifiers
LANE_NATIVE = "native"
LANE_TOKEN = "token"

# Pseudo-account that holds custody inside a transfer backend
CUSTODY_ACCOUNT = "custody"

# Failure reasons recorded on a request entering the failed phase
FAIL_NO_QUORUM = "no_quorum"
FAIL_NO_WINNERS = "no_winners"
FAIL_NO_JUDGE = "no_judge"
FAIL_JUDGE_TIMEOUT = "judge_timeout"

# Transfer legs, used to tell callers which payee/asset failed
LEG_REWARD = "reward"
LEG_AGENT_BOND = "agent_bond"
LEG_JUDGE = "judge"

# --- Environment configuration ---

DB_PATH = os.environ.get("ORACLE_DB", ":memory:")
CUSTODY_DB_PATH = os.environ.get("ORACLE_CUSTODY_DB", ":memory:")
PORT = int(os.environ.get("ORACLE_PORT", "8000"))
SERVER_KEY_PATH = os.environ.get("ORACLE_SERVER_KEY", "")
BLOCK_INTERVAL = int(os.environ.get("ORACLE_BLOCK_INTERVAL", "12"))  # seconds per simulated block
LOG_LEVEL = os.environ.get("ORACLE_LOG_LEVEL", "INFO")
# Split reward and slashed bonds as one pool when both lanes hold the same asset
COMBINE_SAME_LANE = os.environ.get("ORACLE_COMBINE_SAME_LANE", "false").lower() in ("1", "true", "yes")

# LLM aggregator defaults
OPENROUTER_BASE_URL = "https://openrouter.ai/api/v1/chat/completions"
DEFAULT_AGGREGATOR_MODEL = os.environ.get("ORACLE_AGGREGATOR_MODEL", "anthropic/claude-sonnet-4")


# --- State Machine ---

class Phase(Enum):
    COMMIT = "commit"
    REVEAL = "reveal"
    AWAITING_JUDGE = "awaiting_judge"
    JUDGING = "judging"
    FINALIZED = "finalized"
    DISTRIBUTED = "distributed"
    FAILED = "failed"


# Valid phase transitions: current phase -> set of valid next phases
PHASE_TRANSITIONS = {
    Phase.COMMIT: {Phase.REVEAL},
    Phase.REVEAL: {Phase.AWAITING_JUDGE},
    Phase.AWAITING_JUDGE: {Phase.JUDGING, Phase.FAILED},
    Phase.JUDGING: {Phase.FINALIZED, Phase.FAILED},
    Phase.FINALIZED: {Phase.DISTRIBUTED, Phase.FAILED},
    Phase.DISTRIBUTED: set(),
    Phase.FAILED: set(),
}

# Forward order of the non-failure phases
PHASE_ORDER = [
    Phase.COMMIT,
    Phase.REVEAL,
    Phase.AWAITING_JUDGE,
    Phase.JUDGING,
    Phase.FINALIZED,
    Phase.DISTRIBUTED,
]


# --- Lifecycle event types (consumed by an external indexer) ---

EVENT_TYPES = {
    "request_created", "committed", "revealed", "reveals_closed",
    "judge_registered", "judge_unregistered", "judge_selected",
    "judge_bond_posted", "finalized", "failed", "distributed",
    "dispute_opened",
}
