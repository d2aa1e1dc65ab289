"""
Outside execution.

Lets a third party (relayer, dapp, another account) submit a call bundle that
the account's signers approved off-chain. The bundle is bound to:

- a submitter (``caller``) unless it is ``ANY_CALLER``
- a time window ``[execute_after, execute_before)``
- a single-use nonce
- the account and chain, through the typed message hash

Every check is redone on each entry. A bundle may call into another account's
``execute_from_outside``, or back into this one with a different bundle; no
validation carries over between levels.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import List, Protocol, Sequence, Tuple

from guardian_account.core import config
from guardian_account.core.account_exceptions import (
    InvalidCalldataError,
    InvalidCallerError,
    InvalidTimestampError,
)
from guardian_account.core.execution import Call, flatten_calls
from guardian_account.core.logging_config import short_id
from guardian_account.core.nonce_tracker import OutsideNonceStore
from guardian_account.core.signers import CalldataReader
from guardian_account.core.typed_signing import (
    FELT_BOUND,
    TypedDataDomain,
    compute_hash_on_elements,
    get_type_hash,
    hash_typed_message,
)

logger = logging.getLogger(__name__)

OUTSIDE_CALL_TYPE = "OutsideCall(to:felt,selector:felt,calldata_len:felt,calldata:felt*)"
OUTSIDE_CALL_TYPE_HASH = get_type_hash(OUTSIDE_CALL_TYPE)
OUTSIDE_EXECUTION_TYPE_HASH = get_type_hash(
    "OutsideExecution(caller:felt,nonce:felt,execute_after:felt,execute_before:felt,"
    "calls_len:felt,calls:OutsideCall*)" + OUTSIDE_CALL_TYPE
)

DOMAIN_NAME = config.short_string_to_int("Account.execute_from_outside")
DOMAIN_VERSION = 1


@dataclass(frozen=True)
class OutsideExecution:
    caller: int
    nonce: int
    execute_after: int
    execute_before: int
    calls: Tuple[Call, ...] = ()

    def __post_init__(self) -> None:
        for name in ("caller", "nonce", "execute_after", "execute_before"):
            value = getattr(self, name)
            if not isinstance(value, int) or isinstance(value, bool) or not 0 <= value < FELT_BOUND:
                raise InvalidCalldataError(f"{name} out of felt range")
        object.__setattr__(self, "calls", tuple(self.calls))

    def to_calldata(self) -> List[int]:
        return [self.caller, self.nonce, self.execute_after, self.execute_before, *flatten_calls(self.calls)]


def read_calls(reader: CalldataReader) -> Tuple[Call, ...]:
    count = reader.read()
    if count > reader.remaining():
        raise reader.error("call count exceeds data")
    calls = []
    for _ in range(count):
        to = reader.read()
        selector = reader.read()
        length = reader.read()
        if length > reader.remaining():
            raise reader.error("calldata length exceeds data")
        calls.append(Call(to, selector, tuple(reader.read() for _ in range(length))))
    return tuple(calls)


def read_outside_execution(reader: CalldataReader) -> OutsideExecution:
    caller = reader.read()
    nonce = reader.read()
    execute_after = reader.read()
    execute_before = reader.read()
    return OutsideExecution(caller, nonce, execute_after, execute_before, read_calls(reader))


# ==================== Hashing ====================


def hash_outside_call(call: Call) -> int:
    return compute_hash_on_elements(
        [
            OUTSIDE_CALL_TYPE_HASH,
            call.to,
            call.selector,
            len(call.calldata),
            compute_hash_on_elements(call.calldata),
        ]
    )


def hash_outside_execution(outside_execution: OutsideExecution) -> int:
    calls_hash = compute_hash_on_elements(hash_outside_call(call) for call in outside_execution.calls)
    return compute_hash_on_elements(
        [
            OUTSIDE_EXECUTION_TYPE_HASH,
            outside_execution.caller,
            outside_execution.nonce,
            outside_execution.execute_after,
            outside_execution.execute_before,
            len(outside_execution.calls),
            calls_hash,
        ]
    )


def get_outside_execution_message_hash(
    outside_execution: OutsideExecution, chain_id: int, account_address: int
) -> int:
    """
    Message hash the account's signers sign to approve ``outside_execution``.

    Args:
        outside_execution: Bundle to approve
        chain_id: Chain the bundle may run on
        account_address: Account the bundle runs as

    Returns:
        Felt message hash
    """
    domain = TypedDataDomain(DOMAIN_NAME, DOMAIN_VERSION, chain_id)
    return hash_typed_message(domain, account_address, hash_outside_execution(outside_execution))


# ==================== Protocol ====================


class SignatureGate(Protocol):
    """What outside execution needs from the account embedding it."""

    address: int

    def get_outside_nonces(self) -> OutsideNonceStore: ...

    def get_block_timestamp(self) -> int: ...

    def get_caller_address(self) -> int: ...

    def get_chain_id(self) -> int: ...

    def assert_valid_calls_and_signature(
        self, calls: Sequence[Call], message_hash: int, signature: Sequence[int], is_from_outside: bool
    ) -> None: ...

    def execute_calls(self, calls: Sequence[Call]) -> List[List[int]]: ...


class OutsideExecutionProtocol:
    """Verifies and runs outside execution bundles for its host account."""

    def __init__(self, host: SignatureGate) -> None:
        self.host = host

    def get_outside_execution_message_hash(self, outside_execution: OutsideExecution) -> int:
        return get_outside_execution_message_hash(outside_execution, self.host.get_chain_id(), self.host.address)

    def is_valid_outside_execution_nonce(self, nonce: int) -> bool:
        return self.host.get_outside_nonces().is_valid_nonce(nonce)

    def execute_from_outside(
        self, outside_execution: OutsideExecution, signature: Sequence[int]
    ) -> Tuple[int, List[List[int]]]:
        """
        Verify and run ``outside_execution``.

        Returns:
            The message hash and the per-call responses

        Raises:
            InvalidCallerError: Submitter is not the bundle's caller
            InvalidTimestampError: Outside the execution window
            DuplicatedOutsideNonceError: Nonce already consumed
            AccountError: Signature gate or call failures
        """
        caller = self.host.get_caller_address()
        if outside_execution.caller != config.ANY_CALLER and outside_execution.caller != caller:
            logger.warning(
                "Outside execution submitted by wrong caller",
                extra={
                    "event": "outside_execution.invalid_caller",
                    "account": short_id(self.host.address),
                    "caller": short_id(caller),
                },
            )
            raise InvalidCallerError()

        now = self.host.get_block_timestamp()
        if not outside_execution.execute_after <= now < outside_execution.execute_before:
            logger.warning(
                "Outside execution outside its time window",
                extra={
                    "event": "outside_execution.invalid_timestamp",
                    "account": short_id(self.host.address),
                    "now": now,
                    "execute_after": outside_execution.execute_after,
                    "execute_before": outside_execution.execute_before,
                },
            )
            raise InvalidTimestampError(
                f"now {now} outside [{outside_execution.execute_after}, {outside_execution.execute_before})"
            )

        message_hash = self.get_outside_execution_message_hash(outside_execution)
        self.host.get_outside_nonces().consume(outside_execution.nonce)

        calls = list(outside_execution.calls)
        self.host.assert_valid_calls_and_signature(calls, message_hash, signature, True)
        responses = self.host.execute_calls(calls)

        logger.info(
            "Outside execution completed",
            extra={
                "event": "outside_execution.executed",
                "account": short_id(self.host.address),
                "nonce": short_id(outside_execution.nonce),
                "calls": len(calls),
            },
        )
        return message_hash, responses
