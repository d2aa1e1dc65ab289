"""
Guardian Account Configuration

Supports testnet and mainnet with separate chain identifiers.

Protocol constants (escape throttling ceilings, transaction versions, sentinel
values) live next to the environment-driven settings so every component reads
them from one place.
"""

from __future__ import annotations

import logging
import os
from enum import Enum

logger = logging.getLogger(__name__)


class NetworkType(Enum):
    TESTNET = "testnet"
    MAINNET = "mainnet"


class ConfigurationError(Exception):
    """Raised when required configuration is missing or invalid."""
    pass


def short_string_to_int(value: str) -> int:
    """Encode an ASCII short string (at most 31 chars) as a big-endian felt."""
    raw = value.encode("ascii")
    if len(raw) > 31:
        raise ValueError(f"Short string too long ({len(raw)} > 31): {value!r}")
    return int.from_bytes(raw, "big")


def _get_int(env_var: str, default: int, minimum: int = 0) -> int:
    raw = os.getenv(env_var, "").strip()
    if not raw:
        return default
    try:
        value = int(raw, 0)
    except ValueError as e:
        raise ConfigurationError(f"{env_var} must be an integer, got {raw!r}") from e
    if value < minimum:
        raise ConfigurationError(f"{env_var} must be >= {minimum}, got {value}")
    return value


# Get network type from environment variable
NETWORK = os.getenv("GUARDIAN_ACCOUNT_NETWORK", "testnet").strip().lower()
if NETWORK not in {n.value for n in NetworkType}:
    raise ConfigurationError(f"Unknown network {NETWORK!r}; expected testnet or mainnet")

DEFAULT_CHAIN_IDS = {
    NetworkType.TESTNET: "SN_SEPOLIA",
    NetworkType.MAINNET: "SN_MAIN",
}

CHAIN_ID_NAME = os.getenv(
    "GUARDIAN_ACCOUNT_CHAIN_ID", DEFAULT_CHAIN_IDS[NetworkType(NETWORK)]
).strip()
CHAIN_ID = short_string_to_int(CHAIN_ID_NAME)

LOG_LEVEL = os.getenv("GUARDIAN_ACCOUNT_LOG_LEVEL", "INFO").strip().upper()
LOG_FILE = os.getenv("GUARDIAN_ACCOUNT_LOG_FILE", "").strip() or None

# ==================== Escape ====================

SECONDS_PER_DAY = 24 * 60 * 60

# Lower bound accepted by set_escape_security_period
MIN_ESCAPE_SECURITY_PERIOD = 10 * 60

DEFAULT_ESCAPE_SECURITY_PERIOD = _get_int(
    "GUARDIAN_ACCOUNT_ESCAPE_SECURITY_PERIOD",
    7 * SECONDS_PER_DAY,
    minimum=MIN_ESCAPE_SECURITY_PERIOD,
)

MAX_ESCAPE_ATTEMPTS = 5

# Fee ceilings applied to throttled escape transactions
MAX_ESCAPE_MAX_FEE_ETH = 5 * 10**16  # 0.05 ETH
MAX_ESCAPE_MAX_FEE_STRK = 50 * 10**18  # 50 STRK
MAX_ESCAPE_TIP_STRK = 1 * 10**18  # 1 STRK

# ==================== Transactions ====================

TX_V1 = 1
TX_V3 = 3
QUERY_VERSION_OFFSET = 2**128
QUERY_TX_V1 = QUERY_VERSION_OFFSET + TX_V1
QUERY_TX_V3 = QUERY_VERSION_OFFSET + TX_V3

# ==================== Sentinels ====================

# Caller value meaning "any submitter" in an outside execution
ANY_CALLER = short_string_to_int("ANY_CALLER")

# Returned by validate entry points and is_valid_signature on success
VALIDATED = short_string_to_int("VALID")

# Address of the native transaction-validation caller
PROTOCOL_CALLER = 0

ACCOUNT_NAME = "GuardianAccount"
ACCOUNT_VERSION = (0, 4, 0)
MULTISIG_NAME = "GuardianMultisig"
MULTISIG_VERSION = (0, 2, 0)

logger.debug(
    "Configuration loaded",
    extra={
        "event": "config.loaded",
        "network": NETWORK,
        "chain_id": CHAIN_ID_NAME,
        "escape_security_period": DEFAULT_ESCAPE_SECURITY_PERIOD,
    },
)
