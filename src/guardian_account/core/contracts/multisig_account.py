"""
Threshold multisig account with external recovery.

Any ``threshold`` of the account's signers authorize a transaction. The
signature set must contain exactly ``threshold`` signatures, sorted by signer
GUID in strictly increasing order, which also rules out counting one signer
twice.

The signer list is the recovery target: an external guardian may schedule
``replace_signer``, ``add_signers``, ``remove_signers`` or
``change_threshold`` through ``ExternalRecovery``, and the account applies the
action in ``apply_recovered_action`` once the escape is ready.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from guardian_account.core import config
from guardian_account.core.account_exceptions import (
    DuplicateSignerError,
    InvalidSelectorError,
    InvalidSignatureFormatError,
    InvalidSignatureLengthError,
    InvalidSignerError,
    InvalidThresholdError,
    NotASignerError,
    SignatureError,
)
from guardian_account.core.contracts.base_account import BaseAccount, Handler, assert_consumed
from guardian_account.core.contracts.escape import ESCAPE_STATUS_CODES
from guardian_account.core.contracts.external_recovery import (
    EscapeCall,
    ExternalRecovery,
    ExternalRecoveryState,
)
from guardian_account.core.events import Event, SignerListChanged, ThresholdUpdated
from guardian_account.core.execution import Call, ExecutionContext
from guardian_account.core.logging_config import short_id
from guardian_account.core.nonce_tracker import OutsideNonceStore
from guardian_account.core.signers import (
    CalldataReader,
    Signer,
    SignerRegistry,
    SignerSignature,
    parse_signature_array,
    read_signer,
)
from guardian_account.core.typed_signing import get_selector_from_name

logger = logging.getLogger(__name__)


@dataclass
class MultisigState:
    signers: List[int] = field(default_factory=list)
    threshold: int = 0
    recovery: ExternalRecoveryState = field(default_factory=ExternalRecoveryState)
    outside_nonces: OutsideNonceStore = field(default_factory=OutsideNonceStore)
    registry: SignerRegistry = field(default_factory=SignerRegistry)
    events: List[Event] = field(default_factory=list)


def read_signer_list(reader: CalldataReader) -> List[Signer]:
    count = reader.read()
    if count > reader.remaining():
        raise reader.error("signer count exceeds data")
    return [read_signer(reader) for _ in range(count)]


def signer_list_to_calldata(signers: Sequence[Signer]) -> List[int]:
    result = [len(signers)]
    for signer in signers:
        result.extend(signer.to_calldata())
    return result


class MultisigAccount(BaseAccount):
    """
    ``threshold``-of-n account.

    Args:
        context: Host environment
        threshold: Number of signatures a transaction needs
        signers: Initial signers
        address: Fixed address, derived by the host when omitted

    Raises:
        InvalidThresholdError: Threshold is zero or above the signer count
        DuplicateSignerError: The same signer is listed twice
    """

    name = config.MULTISIG_NAME
    version = config.MULTISIG_VERSION

    def __init__(
        self,
        context: ExecutionContext,
        threshold: int,
        signers: Sequence[Signer],
        address: Optional[int] = None,
    ) -> None:
        guids = {signer.guid() for signer in signers}
        if len(guids) != len(signers):
            raise DuplicateSignerError("initial signers contain duplicates")
        if threshold == 0 or threshold > len(guids):
            raise InvalidThresholdError(f"threshold {threshold} invalid for {len(guids)} signers")
        super().__init__(context, address)
        self.state = MultisigState()
        self._init_components()
        self.recovery = ExternalRecovery(self)
        self._add_signers(threshold, signers)
        logger.info(
            "Multisig created",
            extra={
                "event": "multisig.created",
                "account": short_id(self.address),
                "threshold": threshold,
                "signers": len(signers),
            },
        )

    # ==================== Host callbacks ====================

    def get_recovery_state(self) -> ExternalRecoveryState:
        return self.state.recovery

    def apply_recovered_action(self, selector: int, calldata: Tuple[int, ...]) -> None:
        """Apply a signer-list action scheduled through external recovery."""
        decoders: Dict[int, Callable[[Tuple[int, ...]], None]] = {
            get_selector_from_name("replace_signer"): self._apply_replace_signer,
            get_selector_from_name("add_signers"): self._apply_add_signers,
            get_selector_from_name("remove_signers"): self._apply_remove_signers,
            get_selector_from_name("change_threshold"): self._apply_change_threshold,
        }
        decoder = decoders.get(selector)
        if decoder is None:
            raise InvalidSelectorError(f"selector {hex(selector)} is not recoverable")
        decoder(calldata)

    # ==================== Signer list ====================

    def _assert_valid_threshold(self, threshold: int, signers_len: int) -> None:
        if threshold == 0 or threshold > signers_len:
            raise InvalidThresholdError(f"threshold {threshold} invalid for {signers_len} signers")

    def _add_signers(self, new_threshold: int, signers_to_add: Sequence[Signer]) -> None:
        current = self.state.signers
        added = []
        for signer in signers_to_add:
            guid = signer.guid()
            if guid in current or guid in added:
                raise DuplicateSignerError(f"signer {short_id(guid)} already present")
            added.append(guid)
        self._assert_valid_threshold(new_threshold, len(current) + len(added))

        for signer in signers_to_add:
            current.append(self._link_signer(signer))
        if added:
            self.emit(SignerListChanged(tuple(added), ()))
        self._set_threshold(new_threshold)

    def _remove_signers(self, new_threshold: int, signers_to_remove: Sequence[Signer]) -> None:
        current = self.state.signers
        removed = []
        for signer in signers_to_remove:
            guid = signer.guid()
            if guid not in current or guid in removed:
                raise NotASignerError(f"signer {short_id(guid)} not present")
            removed.append(guid)
        self._assert_valid_threshold(new_threshold, len(current) - len(removed))

        self.state.signers = [guid for guid in current if guid not in removed]
        if removed:
            self.emit(SignerListChanged((), tuple(removed)))
        self._set_threshold(new_threshold)

    def _replace_signer(self, signer_to_remove: Signer, signer_to_add: Signer) -> None:
        current = self.state.signers
        old_guid = signer_to_remove.guid()
        new_guid = signer_to_add.guid()
        if old_guid not in current:
            raise NotASignerError(f"signer {short_id(old_guid)} not present")
        if new_guid in current:
            raise DuplicateSignerError(f"signer {short_id(new_guid)} already present")

        current[current.index(old_guid)] = self._link_signer(signer_to_add)
        self.emit(SignerListChanged((new_guid,), (old_guid,)))

    def _set_threshold(self, new_threshold: int) -> None:
        self._assert_valid_threshold(new_threshold, len(self.state.signers))
        if new_threshold != self.state.threshold:
            self.state.threshold = new_threshold
            self.emit(ThresholdUpdated(new_threshold))

    def add_signers(self, new_threshold: int, signers_to_add: Sequence[Signer]) -> None:
        self._assert_only_self()
        self._add_signers(new_threshold, signers_to_add)

    def remove_signers(self, new_threshold: int, signers_to_remove: Sequence[Signer]) -> None:
        self._assert_only_self()
        self._remove_signers(new_threshold, signers_to_remove)

    def replace_signer(self, signer_to_remove: Signer, signer_to_add: Signer) -> None:
        self._assert_only_self()
        self._replace_signer(signer_to_remove, signer_to_add)

    def change_threshold(self, new_threshold: int) -> None:
        self._assert_only_self()
        self._set_threshold(new_threshold)

    # ==================== Authorization ====================

    def assert_valid_signatures(self, message_hash: int, signatures: Sequence[SignerSignature]) -> None:
        """
        Exactly ``threshold`` valid signatures from distinct signers, sorted by GUID.

        Raises:
            InvalidSignatureLengthError: Wrong number of signatures
            InvalidSignerError: Unknown or out-of-order signer
            SignatureError: Cryptographically invalid signature
        """
        if len(signatures) != self.state.threshold:
            raise InvalidSignatureLengthError(
                f"expected {self.state.threshold} signatures, got {len(signatures)}"
            )
        last_guid = 0
        for signer_signature in signatures:
            guid = signer_signature.signer.guid()
            if guid <= last_guid:
                raise InvalidSignerError("signatures not sorted by signer")
            if guid not in self.state.signers:
                raise InvalidSignerError(f"signer {short_id(guid)} not in account")
            if not signer_signature.is_valid_signature(message_hash):
                logger.warning(
                    "Signature validation failed",
                    extra={
                        "event": "multisig.signature_validation_failed",
                        "account": short_id(self.address),
                        "signer": short_id(guid),
                    },
                )
                raise SignatureError(f"invalid signature from {short_id(guid)}")
            last_guid = guid

    def assert_valid_calls_and_signature(
        self, calls: Sequence[Call], message_hash: int, signature: Sequence[int], is_from_outside: bool
    ) -> None:
        signatures = parse_signature_array(signature)
        self.assert_allowed_self_calls(calls)
        self.assert_valid_signatures(message_hash, signatures)

    def is_valid_signature(self, message_hash: int, signature: Sequence[int]) -> int:
        try:
            self.assert_valid_signatures(message_hash, parse_signature_array(signature))
        except (SignatureError, InvalidSignatureFormatError):
            return 0
        return config.VALIDATED

    # ==================== Recovery ====================

    def toggle_escape(self, is_enabled: bool, security_period: int, expiry_period: int, guardian: int) -> None:
        self.recovery.toggle_escape(is_enabled, security_period, expiry_period, guardian)

    def trigger_escape(self, call: EscapeCall) -> None:
        self.recovery.trigger_escape(call)

    def execute_escape(self, call: EscapeCall) -> None:
        self.recovery.execute_escape(call)

    def cancel_escape(self) -> None:
        self.recovery.cancel_escape()

    # ==================== Queries ====================

    def get_threshold(self) -> int:
        return self.state.threshold

    def get_signer_guids(self) -> List[int]:
        return list(self.state.signers)

    def is_signer(self, signer: Signer) -> bool:
        return signer.guid() in self.state.signers

    # ==================== Entry points ====================

    def entrypoints(self) -> Dict[str, Handler]:
        return {
            **super().entrypoints(),
            "add_signers": self._self_only(self._apply_add_signers),
            "remove_signers": self._self_only(self._apply_remove_signers),
            "replace_signer": self._self_only(self._apply_replace_signer),
            "change_threshold": self._self_only(self._apply_change_threshold),
            "toggle_escape": self._ep_toggle_escape,
            "trigger_escape": self._ep_trigger_escape,
            "execute_escape": self._ep_execute_escape,
            "cancel_escape": self._no_args(self.cancel_escape),
            "get_escape": self._ep_get_escape,
            "get_escape_enabled": self._ep_get_escape_enabled,
            "get_guardian": self._getter(self.recovery.get_guardian),
            "get_threshold": self._getter(self.get_threshold),
            "get_signer_guids": self._ep_get_signer_guids,
        }

    def _apply_add_signers(self, calldata: Tuple[int, ...]) -> None:
        reader = CalldataReader(calldata)
        new_threshold = reader.read()
        signers = read_signer_list(reader)
        reader.assert_consumed()
        self._add_signers(new_threshold, signers)

    def _apply_remove_signers(self, calldata: Tuple[int, ...]) -> None:
        reader = CalldataReader(calldata)
        new_threshold = reader.read()
        signers = read_signer_list(reader)
        reader.assert_consumed()
        self._remove_signers(new_threshold, signers)

    def _apply_replace_signer(self, calldata: Tuple[int, ...]) -> None:
        reader = CalldataReader(calldata)
        signer_to_remove = read_signer(reader)
        signer_to_add = read_signer(reader)
        reader.assert_consumed()
        self._replace_signer(signer_to_remove, signer_to_add)

    def _apply_change_threshold(self, calldata: Tuple[int, ...]) -> None:
        reader = CalldataReader(calldata)
        new_threshold = reader.read()
        reader.assert_consumed()
        self._set_threshold(new_threshold)

    def _self_only(self, apply: Callable[[Tuple[int, ...]], None]) -> Handler:
        def handler(calldata: Tuple[int, ...]) -> List[int]:
            self._assert_only_self()
            apply(calldata)
            return []

        return handler

    def _ep_toggle_escape(self, calldata: Tuple[int, ...]) -> List[int]:
        reader = CalldataReader(calldata)
        is_enabled = reader.read_bool()
        security_period = reader.read()
        expiry_period = reader.read()
        guardian = reader.read()
        reader.assert_consumed()
        self.toggle_escape(is_enabled, security_period, expiry_period, guardian)
        return []

    def _read_escape_call(self, calldata: Tuple[int, ...]) -> EscapeCall:
        reader = CalldataReader(calldata)
        selector = reader.read()
        call_data = reader.read_span()
        reader.assert_consumed()
        return EscapeCall(selector, call_data)

    def _ep_trigger_escape(self, calldata: Tuple[int, ...]) -> List[int]:
        self.trigger_escape(self._read_escape_call(calldata))
        return []

    def _ep_execute_escape(self, calldata: Tuple[int, ...]) -> List[int]:
        self.execute_escape(self._read_escape_call(calldata))
        return []

    def _ep_get_escape(self, calldata: Tuple[int, ...]) -> List[int]:
        assert_consumed(calldata)
        escape, status = self.recovery.get_escape_and_status()
        return [escape.ready_at, escape.call_hash, ESCAPE_STATUS_CODES[status]]

    def _ep_get_escape_enabled(self, calldata: Tuple[int, ...]) -> List[int]:
        assert_consumed(calldata)
        escape_config = self.recovery.get_escape_enabled()
        return [int(escape_config.is_enabled), escape_config.security_period, escape_config.expiry_period]

    def _ep_get_signer_guids(self, calldata: Tuple[int, ...]) -> List[int]:
        assert_consumed(calldata)
        return [len(self.state.signers), *self.state.signers]
