"""
External recovery.

A generic, embeddable escape driven by a single external guardian address.
Instead of swapping a fixed key, the guardian schedules one *action* on the
host account (an ``EscapeCall``: selector plus calldata). After the security
period anyone may execute it, as long as the resubmitted action hashes to the
scheduled ``call_hash``; the host applies it through its
``apply_recovered_action`` callback.

Recovery is parameterized per account with ``toggle_escape``. Enabling needs
every parameter non-zero, disabling needs every parameter zero, so a
half-configured recovery cannot exist.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import List, Protocol, Sequence, Tuple

from guardian_account.core.account_exceptions import (
    EscapeDisabledError,
    InvalidCallHashError,
    InvalidEscapeError,
    InvalidEscapeParamsError,
    InvalidSelectorError,
    OngoingEscapeError,
    OnlyGuardianError,
)
from guardian_account.core.contracts.escape import EscapeStatus, get_escape_status
from guardian_account.core.contracts.guards import assert_only_self
from guardian_account.core.events import (
    EscapeCanceled,
    EscapeEnabledChanged,
    EscapeExecuted,
    EscapeTriggered,
    Event,
)
from guardian_account.core.logging_config import short_id
from guardian_account.core.typed_signing import (
    compute_hash_on_elements,
    felt_sequence,
    get_selector_from_name,
)

logger = logging.getLogger(__name__)

# Actions a guardian may schedule; all of them only touch the signer list
ALLOWED_RECOVERY_SELECTORS = frozenset(
    get_selector_from_name(name)
    for name in ("replace_signer", "add_signers", "remove_signers", "change_threshold")
)


@dataclass(frozen=True)
class EscapeCall:
    selector: int
    calldata: Tuple[int, ...] = ()

    def __post_init__(self) -> None:
        object.__setattr__(self, "calldata", felt_sequence(self.calldata))

    @classmethod
    def from_name(cls, entrypoint: str, calldata: Sequence[int] = ()) -> "EscapeCall":
        return cls(get_selector_from_name(entrypoint), tuple(calldata))

    def hash(self) -> int:
        return compute_hash_on_elements([self.selector, *self.calldata])

    def to_calldata(self) -> List[int]:
        return [self.selector, len(self.calldata), *self.calldata]


@dataclass(frozen=True)
class RecoveryEscape:
    ready_at: int = 0
    call_hash: int = 0


@dataclass(frozen=True)
class EscapeConfig:
    is_enabled: bool = False
    security_period: int = 0
    expiry_period: int = 0


@dataclass
class ExternalRecoveryState:
    escape: RecoveryEscape = field(default_factory=RecoveryEscape)
    escape_config: EscapeConfig = field(default_factory=EscapeConfig)
    guardian: int = 0


class RecoveryHost(Protocol):
    """Callbacks an account implements to embed external recovery."""

    address: int

    def get_recovery_state(self) -> ExternalRecoveryState: ...

    def get_block_timestamp(self) -> int: ...

    def get_caller_address(self) -> int: ...

    def emit(self, event: Event) -> None: ...

    def apply_recovered_action(self, selector: int, calldata: Tuple[int, ...]) -> None: ...


class ExternalRecovery:
    """Guardian-scheduled, time-locked action on the host account."""

    def __init__(self, host: RecoveryHost) -> None:
        self.host = host

    @property
    def state(self) -> ExternalRecoveryState:
        return self.host.get_recovery_state()

    # ==================== Queries ====================

    def get_escape(self) -> RecoveryEscape:
        return self.state.escape

    def get_escape_enabled(self) -> EscapeConfig:
        return self.state.escape_config

    def get_guardian(self) -> int:
        return self.state.guardian

    def get_escape_and_status(self) -> Tuple[RecoveryEscape, EscapeStatus]:
        escape = self.state.escape
        status = get_escape_status(
            escape.ready_at,
            self.host.get_block_timestamp(),
            self.state.escape_config.expiry_period,
        )
        return escape, status

    # ==================== Mutators ====================

    def toggle_escape(self, is_enabled: bool, security_period: int, expiry_period: int, guardian: int) -> None:
        """
        Enable or disable recovery.

        Raises:
            OnlySelfError: Caller is not the host account
            InvalidEscapeParamsError: Enabling with a zero parameter or
                disabling with a non-zero one
            OngoingEscapeError: An escape is not ready or ready
        """
        assert_only_self(self.host.get_caller_address(), self.host.address)

        _, status = self.get_escape_and_status()
        if status in (EscapeStatus.NOT_READY, EscapeStatus.READY):
            raise OngoingEscapeError()

        if is_enabled:
            if security_period == 0 or expiry_period == 0 or guardian == 0:
                raise InvalidEscapeParamsError("enabling requires non-zero periods and guardian")
        elif security_period != 0 or expiry_period != 0 or guardian != 0:
            raise InvalidEscapeParamsError("disabling requires zero periods and guardian")

        state = self.state
        state.escape_config = EscapeConfig(is_enabled, security_period, expiry_period)
        state.guardian = guardian
        # An expired escape would otherwise come back to life under new periods
        state.escape = RecoveryEscape()
        self.host.emit(EscapeEnabledChanged(is_enabled, security_period, expiry_period, guardian))
        logger.info(
            "External recovery toggled",
            extra={
                "event": "recovery.toggled",
                "account": short_id(self.host.address),
                "enabled": is_enabled,
                "guardian": short_id(guardian),
            },
        )

    def trigger_escape(self, call: EscapeCall) -> RecoveryEscape:
        """Schedule ``call``, replacing any escape that is still live."""
        state = self.state
        caller = self.host.get_caller_address()
        if caller != state.guardian or state.guardian == 0:
            logger.warning(
                "Rejected recovery trigger from non-guardian",
                extra={"event": "recovery.only_guardian", "caller": short_id(caller)},
            )
            raise OnlyGuardianError()
        if not state.escape_config.is_enabled:
            raise EscapeDisabledError()
        if call.selector not in ALLOWED_RECOVERY_SELECTORS:
            raise InvalidSelectorError(f"selector {hex(call.selector)} is not recoverable")

        current, status = self.get_escape_and_status()
        if status in (EscapeStatus.NOT_READY, EscapeStatus.READY):
            self.host.emit(EscapeCanceled(current.call_hash))

        ready_at = self.host.get_block_timestamp() + state.escape_config.security_period
        call_hash = call.hash()
        state.escape = RecoveryEscape(ready_at, call_hash)
        self.host.emit(EscapeTriggered(ready_at, call_hash, call.selector, call.calldata))
        logger.info(
            "Recovery escape triggered",
            extra={
                "event": "recovery.triggered",
                "account": short_id(self.host.address),
                "ready_at": ready_at,
                "call_hash": short_id(call_hash),
            },
        )
        return state.escape

    def execute_escape(self, call: EscapeCall) -> None:
        """Apply a ready escape; open to any caller."""
        escape, status = self.get_escape_and_status()
        if status != EscapeStatus.READY:
            raise InvalidEscapeError(f"escape is {status.value}")
        call_hash = call.hash()
        if call_hash != escape.call_hash:
            raise InvalidCallHashError()

        self.state.escape = RecoveryEscape()
        self.host.apply_recovered_action(call.selector, call.calldata)
        self.host.emit(EscapeExecuted(call_hash))
        logger.info(
            "Recovery escape executed",
            extra={"event": "recovery.executed", "account": short_id(self.host.address), "call_hash": short_id(call_hash)},
        )

    def cancel_escape(self) -> None:
        assert_only_self(self.host.get_caller_address(), self.host.address)
        escape, status = self.get_escape_and_status()
        if status == EscapeStatus.NONE:
            raise InvalidEscapeError("no escape to cancel")
        self.state.escape = RecoveryEscape()
        if status != EscapeStatus.EXPIRED:
            self.host.emit(EscapeCanceled(escape.call_hash))
