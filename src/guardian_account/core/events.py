"""
Domain events emitted by accounts.

Events are appended to the emitting contract's state, so a reverted phase
drops the events it emitted along with its other changes.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import List, Optional, Tuple


@dataclass(frozen=True)
class Event:
    @property
    def name(self) -> str:
        return type(self).__name__


# ==================== Account lifecycle ====================


@dataclass(frozen=True)
class AccountCreated(Event):
    owner_guid: int
    guardian_guid: int


@dataclass(frozen=True)
class TransactionExecuted(Event):
    hash: int
    response: Tuple[Tuple[int, ...], ...]


@dataclass(frozen=True)
class SignerLinked(Event):
    signer_guid: int
    signer_type: int


# ==================== Signer changes ====================


@dataclass(frozen=True)
class OwnerChanged(Event):
    new_owner_guid: int


@dataclass(frozen=True)
class GuardianChanged(Event):
    new_guardian_guid: int


@dataclass(frozen=True)
class GuardianBackupChanged(Event):
    new_guardian_backup_guid: int


@dataclass(frozen=True)
class EscapeSecurityPeriodChanged(Event):
    escape_security_period: int


# ==================== Native escape ====================


@dataclass(frozen=True)
class EscapeOwnerTriggered(Event):
    ready_at: int
    new_owner_guid: int


@dataclass(frozen=True)
class EscapeGuardianTriggered(Event):
    ready_at: int
    new_guardian_guid: int


@dataclass(frozen=True)
class OwnerEscaped(Event):
    new_owner_guid: int


@dataclass(frozen=True)
class GuardianEscaped(Event):
    new_guardian_guid: int


@dataclass(frozen=True)
class EscapeCanceled(Event):
    """Native escape canceled. ``call_hash`` is set when emitted by external recovery."""

    call_hash: Optional[int] = None


# ==================== External recovery ====================


@dataclass(frozen=True)
class EscapeTriggered(Event):
    ready_at: int
    call_hash: int
    selector: int
    calldata: Tuple[int, ...]


@dataclass(frozen=True)
class EscapeExecuted(Event):
    call_hash: int


@dataclass(frozen=True)
class EscapeEnabledChanged(Event):
    is_enabled: bool
    security_period: int
    expiry_period: int
    guardian: int


# ==================== Sessions ====================


@dataclass(frozen=True)
class SessionRevoked(Event):
    session_hash: int


# ==================== Multisig ====================


@dataclass(frozen=True)
class ThresholdUpdated(Event):
    new_threshold: int


@dataclass(frozen=True)
class SignerListChanged(Event):
    added: Tuple[int, ...]
    removed: Tuple[int, ...]


def events_of(events: List[Event], event_type: type) -> List[Event]:
    return [event for event in events if isinstance(event, event_type)]
