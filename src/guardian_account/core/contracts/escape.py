"""
Owner/guardian escape (social recovery).

An escape replaces a lost or compromised key after a mandatory waiting
period:

- the guardian triggers an *owner* escape to replace the owner
- the owner triggers a *guardian* escape to replace or remove the guardian

Lifecycle::

    NONE -> NOT_READY -> READY -> (completed | expired) -> NONE
                 \\________\\____ canceled -> NONE

Only one escape exists at a time. The owner has precedence: a guardian escape
(triggered by the owner) always replaces a pending owner escape, while an
owner escape may only replace a guardian escape once it has expired.

Griefing is bounded by ``register_escape_attempt``: each role may drive at most
``MAX_ESCAPE_ATTEMPTS`` throttled escape transactions per reset cycle, each
with a capped fee. Counters reset when an escape completes or is canceled.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum, IntEnum
from typing import Protocol, Tuple

from guardian_account.core import config
from guardian_account.core.account_exceptions import (
    BackupShouldBeNullError,
    CannotOverrideEscapeError,
    GuardianRequiredError,
    InvalidEscapeError,
    InvalidEscapeTypeError,
    InvalidSecurityPeriodError,
    InvalidTxVersionError,
    MaxEscapeAttemptsError,
    MaxFeeTooHighError,
    OngoingEscapeError,
    TipTooHighError,
)
from guardian_account.core.contracts.signature_validator import AccountSignerState
from guardian_account.core.events import (
    EscapeCanceled,
    EscapeGuardianTriggered,
    EscapeOwnerTriggered,
    EscapeSecurityPeriodChanged,
    Event,
    GuardianEscaped,
    OwnerEscaped,
)
from guardian_account.core.execution import TxInfo
from guardian_account.core.logging_config import short_id

logger = logging.getLogger(__name__)


class EscapeType(IntEnum):
    NONE = 0
    OWNER = 1
    GUARDIAN = 2


class EscapeStatus(Enum):
    NONE = "none"
    NOT_READY = "not_ready"
    READY = "ready"
    EXPIRED = "expired"


# Felt encoding of a status in query responses
ESCAPE_STATUS_CODES = {status: code for code, status in enumerate(EscapeStatus)}


@dataclass(frozen=True)
class Escape:
    ready_at: int = 0
    escape_type: EscapeType = EscapeType.NONE
    new_signer: int = 0


def get_escape_status(ready_at: int, now: int, expiry_period: int) -> EscapeStatus:
    """Derive the status of an escape; never stored."""
    if ready_at == 0:
        return EscapeStatus.NONE
    if now < ready_at:
        return EscapeStatus.NOT_READY
    if now < ready_at + expiry_period:
        return EscapeStatus.READY
    return EscapeStatus.EXPIRED


@dataclass
class EscapeState:
    escape: Escape = field(default_factory=Escape)
    security_period: int = config.DEFAULT_ESCAPE_SECURITY_PERIOD


class EscapeHost(Protocol):
    """What the escape machine needs from the account embedding it."""

    def get_signer_state(self) -> AccountSignerState: ...

    def get_escape_state(self) -> EscapeState: ...

    def get_block_timestamp(self) -> int: ...

    def emit(self, event: Event) -> None: ...


def assert_valid_escape_fee(tx_info: TxInfo) -> None:
    """
    Cap the fee a throttled escape transaction may commit to.

    Raises:
        MaxFeeTooHighError: Declared maximum fee above the ceiling
        TipTooHighError: v3 tip above the ceiling
        InvalidTxVersionError: Version without a known fee model
    """
    version = tx_info.version % config.QUERY_VERSION_OFFSET
    if version == config.TX_V3:
        if tx_info.max_resource_fee > config.MAX_ESCAPE_MAX_FEE_STRK:
            raise MaxFeeTooHighError(f"max fee {tx_info.max_resource_fee} above ceiling")
        if tx_info.tip > config.MAX_ESCAPE_TIP_STRK:
            raise TipTooHighError(f"tip {tx_info.tip} above ceiling")
    elif version == config.TX_V1:
        if tx_info.max_fee > config.MAX_ESCAPE_MAX_FEE_ETH:
            raise MaxFeeTooHighError(f"max fee {tx_info.max_fee} above ceiling")
    else:
        raise InvalidTxVersionError(f"unsupported transaction version {tx_info.version}")


class EscapeStateMachine:
    """Native two-role escape protocol over the host's signer and escape state."""

    def __init__(self, host: EscapeHost) -> None:
        self.host = host

    # ==================== Queries ====================

    @property
    def expiry_period(self) -> int:
        return self.host.get_escape_state().security_period

    def get_escape(self) -> Escape:
        return self.host.get_escape_state().escape

    def get_escape_status(self, ready_at: int) -> EscapeStatus:
        return get_escape_status(ready_at, self.host.get_block_timestamp(), self.expiry_period)

    def get_escape_and_status(self) -> Tuple[Escape, EscapeStatus]:
        escape = self.get_escape()
        return escape, self.get_escape_status(escape.ready_at)

    # ==================== Throttling ====================

    def register_escape_attempt(self, escape_type: EscapeType, tx_info: TxInfo) -> int:
        """
        Count one throttled transaction driving an escape of ``escape_type``.

        Owner escapes are driven by the guardian and charged to the guardian's
        counter; guardian escapes are driven by the owner and charged to the
        owner's counter.

        Returns:
            The attempt count after this attempt

        Raises:
            MaxEscapeAttemptsError: The driving signer has no attempts left
            MaxFeeTooHighError: Fee ceiling exceeded
            TipTooHighError: Tip ceiling exceeded
        """
        state = self.host.get_signer_state()
        by_guardian = escape_type == EscapeType.OWNER
        attempts = state.guardian_escape_attempts if by_guardian else state.owner_escape_attempts
        role = "guardian" if by_guardian else "owner"

        if attempts >= config.MAX_ESCAPE_ATTEMPTS:
            logger.warning(
                "Escape attempt ceiling reached",
                extra={"event": "escape.max_attempts", "role": role, "attempts": attempts},
            )
            raise MaxEscapeAttemptsError(f"{role} used {attempts} escape attempts")
        assert_valid_escape_fee(tx_info)

        if by_guardian:
            state.guardian_escape_attempts = attempts + 1
        else:
            state.owner_escape_attempts = attempts + 1
        return attempts + 1

    def reset_escape_attempts(self) -> None:
        state = self.host.get_signer_state()
        state.owner_escape_attempts = 0
        state.guardian_escape_attempts = 0

    # ==================== Transitions ====================

    def reset_escape(self) -> None:
        """Clear any escape; an expired one lapses without an ``EscapeCanceled`` event."""
        escape, status = self.get_escape_and_status()
        if status == EscapeStatus.NONE:
            return
        self.host.get_escape_state().escape = Escape()
        if status != EscapeStatus.EXPIRED:
            self.host.emit(EscapeCanceled())

    def trigger_escape_owner(self, new_owner_guid: int) -> Escape:
        signer_state = self.host.get_signer_state()
        if signer_state.guardian_guid == 0:
            raise GuardianRequiredError()

        escape, status = self.get_escape_and_status()
        if escape.escape_type == EscapeType.GUARDIAN and status in (EscapeStatus.NOT_READY, EscapeStatus.READY):
            logger.warning(
                "Owner escape cannot override pending guardian escape",
                extra={"event": "escape.override_rejected", "status": status.value},
            )
            raise CannotOverrideEscapeError()

        self.reset_escape()
        ready_at = self.host.get_block_timestamp() + self.host.get_escape_state().security_period
        new_escape = Escape(ready_at, EscapeType.OWNER, new_owner_guid)
        self.host.get_escape_state().escape = new_escape
        self.host.emit(EscapeOwnerTriggered(ready_at, new_owner_guid))
        logger.info(
            "Owner escape triggered",
            extra={"event": "escape.owner_triggered", "ready_at": ready_at, "new_owner": short_id(new_owner_guid)},
        )
        return new_escape

    def trigger_escape_guardian(self, new_guardian_guid: int) -> Escape:
        signer_state = self.host.get_signer_state()
        if signer_state.guardian_guid == 0:
            raise GuardianRequiredError()
        if new_guardian_guid == 0 and signer_state.guardian_backup_guid != 0:
            raise BackupShouldBeNullError()

        self.reset_escape()
        ready_at = self.host.get_block_timestamp() + self.host.get_escape_state().security_period
        new_escape = Escape(ready_at, EscapeType.GUARDIAN, new_guardian_guid)
        self.host.get_escape_state().escape = new_escape
        self.host.emit(EscapeGuardianTriggered(ready_at, new_guardian_guid))
        logger.info(
            "Guardian escape triggered",
            extra={
                "event": "escape.guardian_triggered",
                "ready_at": ready_at,
                "new_guardian": short_id(new_guardian_guid),
            },
        )
        return new_escape

    def _assert_ready(self, escape_type: EscapeType) -> Escape:
        escape, status = self.get_escape_and_status()
        if status != EscapeStatus.READY:
            raise InvalidEscapeError(f"escape is {status.value}")
        if escape.escape_type != escape_type:
            raise InvalidEscapeTypeError(f"pending escape is {escape.escape_type.name.lower()}")
        return escape

    def escape_owner(self) -> int:
        escape = self._assert_ready(EscapeType.OWNER)
        # An owner escape without a target (written by an older account format) is unusable
        if escape.new_signer == 0:
            raise InvalidEscapeError("owner escape has no new signer")

        self.reset_escape_attempts()
        self.host.get_signer_state().owner_guid = escape.new_signer
        self.host.emit(OwnerEscaped(escape.new_signer))
        self.host.get_escape_state().escape = Escape()
        logger.info(
            "Owner escaped",
            extra={"event": "escape.owner_escaped", "new_owner": short_id(escape.new_signer)},
        )
        return escape.new_signer

    def escape_guardian(self) -> int:
        escape = self._assert_ready(EscapeType.GUARDIAN)
        signer_state = self.host.get_signer_state()
        if escape.new_signer == 0 and signer_state.guardian_backup_guid != 0:
            raise BackupShouldBeNullError()

        self.reset_escape_attempts()
        signer_state.guardian_guid = escape.new_signer
        self.host.emit(GuardianEscaped(escape.new_signer))
        self.host.get_escape_state().escape = Escape()
        logger.info(
            "Guardian escaped",
            extra={"event": "escape.guardian_escaped", "new_guardian": short_id(escape.new_signer)},
        )
        return escape.new_signer

    def cancel_escape(self) -> None:
        _, status = self.get_escape_and_status()
        if status == EscapeStatus.NONE:
            raise InvalidEscapeError("no escape to cancel")
        self.reset_escape()
        self.reset_escape_attempts()

    def set_security_period(self, new_security_period: int) -> None:
        if new_security_period < config.MIN_ESCAPE_SECURITY_PERIOD:
            raise InvalidSecurityPeriodError(
                f"security period must be at least {config.MIN_ESCAPE_SECURITY_PERIOD}s"
            )
        _, status = self.get_escape_and_status()
        if status in (EscapeStatus.NOT_READY, EscapeStatus.READY):
            raise OngoingEscapeError()
        self.reset_escape()
        self.host.get_escape_state().security_period = new_security_period
        self.host.emit(EscapeSecurityPeriodChanged(new_security_period))
