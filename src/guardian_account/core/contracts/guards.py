"""
Invocation-context guards shared by every account entry point.

Each guard is a plain predicate over values read from the host environment;
none of them touches account state.
"""

from __future__ import annotations

import logging
from typing import Collection, Sequence

from guardian_account.core import config
from guardian_account.core.account_exceptions import (
    InvalidTxVersionError,
    NoMulticallToSelfError,
    OnlyProtocolError,
    OnlySelfError,
)
from guardian_account.core.execution import Call
from guardian_account.core.logging_config import short_id

logger = logging.getLogger(__name__)

INVOKE_VERSIONS = frozenset({config.TX_V1, config.TX_V3, config.QUERY_TX_V1, config.QUERY_TX_V3})
DEPLOY_VERSIONS = INVOKE_VERSIONS


def assert_only_self(caller_address: int, account_address: int) -> None:
    """Privileged mutators may only be reached through the account's own multicall."""
    if caller_address != account_address:
        logger.warning(
            "Rejected non-self call to privileged entry point",
            extra={
                "event": "guard.only_self",
                "caller": short_id(caller_address),
                "account": short_id(account_address),
            },
        )
        raise OnlySelfError()


def assert_only_protocol(caller_address: int) -> None:
    """Transaction phases may only be entered by the protocol (caller address zero)."""
    if caller_address != config.PROTOCOL_CALLER:
        logger.warning(
            "Rejected contract call to protocol entry point",
            extra={"event": "guard.only_protocol", "caller": short_id(caller_address)},
        )
        raise OnlyProtocolError()


def assert_no_self_call(calls: Sequence[Call], account_address: int) -> None:
    """A multicall may not target the account itself."""
    for index, call in enumerate(calls):
        if call.to == account_address:
            logger.warning(
                "Rejected multicall targeting the account",
                extra={"event": "guard.multicall_to_self", "index": index},
            )
            raise NoMulticallToSelfError(f"call {index} targets the account")


def assert_correct_tx_version(version: int, allowed: Collection[int] = INVOKE_VERSIONS) -> None:
    """Accept the supported versions and their query (simulation) counterparts only."""
    if version not in allowed:
        raise InvalidTxVersionError(f"unsupported transaction version {version}")
