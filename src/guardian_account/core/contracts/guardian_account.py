"""
Owner/guardian smart-contract account.

Ties the components together:

- ``SignatureValidator`` for the owner[+guardian] signature policy
- ``EscapeStateMachine`` for time-locked key replacement
- ``OutsideExecutionProtocol`` for delegated, pre-signed call bundles
- ``SessionComponent`` for dapp keys acting under an approved session

Transactions arrive in two phases. ``validate_transaction`` decides whether the
signature set authorizes the calls (and charges escape attempts);
``execute_transaction`` runs them. Escape entry points are special-cased in
validation: each may only be submitted as the single call of a transaction and
is authorized by one signer, the guardian for owner escapes and the owner for
guardian escapes. Every privileged mutator is only reachable through a
self-call.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from guardian_account.core import config
from guardian_account.core.account_exceptions import (
    BackupShouldBeNullError,
    GuardianRequiredError,
    InvalidEscapeError,
    InvalidOwnerSignatureError,
    InvalidSignatureFormatError,
    InvalidSignerError,
    NullOwnerError,
)
from guardian_account.core.contracts.base_account import BaseAccount, Handler, assert_consumed
from guardian_account.core.contracts.escape import (
    ESCAPE_STATUS_CODES,
    Escape,
    EscapeState,
    EscapeStateMachine,
    EscapeStatus,
    EscapeType,
)
from guardian_account.core.contracts.guards import DEPLOY_VERSIONS, assert_correct_tx_version, assert_only_protocol
from guardian_account.core.contracts.session import SessionComponent, SessionState, is_session_signature
from guardian_account.core.contracts.signature_validator import AccountSignerState, SignatureValidator
from guardian_account.core.events import (
    AccountCreated,
    Event,
    GuardianBackupChanged,
    GuardianChanged,
    OwnerChanged,
)
from guardian_account.core.execution import Call, ExecutionContext
from guardian_account.core.logging_config import short_id
from guardian_account.core.nonce_tracker import OutsideNonceStore
from guardian_account.core.signers import (
    CalldataReader,
    Signer,
    SignerRegistry,
    SignerSignature,
    optional_signer_to_calldata,
    parse_signature_array,
    read_optional_signer,
    read_signer,
    read_signer_signature,
)
from guardian_account.core.typed_signing import compute_hash_on_elements, get_selector_from_name

logger = logging.getLogger(__name__)

TRIGGER_ESCAPE_OWNER_SELECTOR = get_selector_from_name("trigger_escape_owner")
TRIGGER_ESCAPE_GUARDIAN_SELECTOR = get_selector_from_name("trigger_escape_guardian")
ESCAPE_OWNER_SELECTOR = get_selector_from_name("escape_owner")
ESCAPE_GUARDIAN_SELECTOR = get_selector_from_name("escape_guardian")
CHANGE_OWNER_SELECTOR = get_selector_from_name("change_owner")


def change_owner_message_hash(chain_id: int, account_address: int, old_owner_guid: int) -> int:
    """Message the new owner signs to prove control of its key during ``change_owner``."""
    return compute_hash_on_elements([CHANGE_OWNER_SELECTOR, chain_id, account_address, old_owner_guid])


@dataclass
class GuardianAccountState:
    signers: AccountSignerState = field(default_factory=AccountSignerState)
    escape: EscapeState = field(default_factory=EscapeState)
    outside_nonces: OutsideNonceStore = field(default_factory=OutsideNonceStore)
    sessions: SessionState = field(default_factory=SessionState)
    registry: SignerRegistry = field(default_factory=SignerRegistry)
    events: List[Event] = field(default_factory=list)


class GuardianAccount(BaseAccount):
    """
    Account controlled by an owner and an optional guardian.

    Args:
        context: Host environment
        owner: Owner signer (required)
        guardian: Optional guardian signer
        address: Fixed address, derived by the host when omitted

    Raises:
        NullOwnerError: If no owner is given
    """

    name = config.ACCOUNT_NAME
    version = config.ACCOUNT_VERSION

    def __init__(
        self,
        context: ExecutionContext,
        owner: Signer,
        guardian: Optional[Signer] = None,
        address: Optional[int] = None,
    ) -> None:
        if owner is None:
            raise NullOwnerError()
        super().__init__(context, address)
        self.state = GuardianAccountState()
        self._init_components()
        self.signature_validator = SignatureValidator(self.get_signer_state, self.address)
        self.escape_machine = EscapeStateMachine(self)
        self.session = SessionComponent(self, self.signature_validator)

        signers = self.state.signers
        signers.owner_guid = self._link_signer(owner)
        if guardian is not None:
            signers.guardian_guid = self._link_signer(guardian)
        self.emit(AccountCreated(signers.owner_guid, signers.guardian_guid))
        logger.info(
            "Account created",
            extra={
                "event": "account.created",
                "account": short_id(self.address),
                "owner": short_id(signers.owner_guid),
                "guardian": short_id(signers.guardian_guid),
            },
        )

    # ==================== Host callbacks ====================

    def get_signer_state(self) -> AccountSignerState:
        return self.state.signers

    def get_escape_state(self) -> EscapeState:
        return self.state.escape

    def get_session_state(self) -> SessionState:
        return self.state.sessions

    # ==================== Authorization ====================

    def assert_valid_calls_and_signature(
        self, calls: Sequence[Call], message_hash: int, signature: Sequence[int], is_from_outside: bool
    ) -> None:
        """
        Check that ``signature`` authorizes ``calls``.

        Session tokens go to the session component. A single self-call to an
        escape entry point is authorized by one signer and, unless it arrives
        through outside execution, charged as an escape attempt. Anything else
        needs the full owner[+guardian] policy.
        """
        if is_session_signature(signature):
            self.session.assert_valid_session(calls, message_hash, signature)
            return
        signatures = parse_signature_array(signature)
        if len(calls) == 1 and calls[0].to == self.address:
            if self._assert_valid_escape_call(calls[0], message_hash, signatures, is_from_outside):
                return
        self.assert_allowed_self_calls(calls)
        self.signature_validator.assert_valid(message_hash, signatures)

    def _assert_valid_escape_call(
        self, call: Call, message_hash: int, signatures: List[SignerSignature], is_from_outside: bool
    ) -> bool:
        selector = call.selector
        if selector in (TRIGGER_ESCAPE_OWNER_SELECTOR, ESCAPE_OWNER_SELECTOR):
            escape_type = EscapeType.OWNER
        elif selector in (TRIGGER_ESCAPE_GUARDIAN_SELECTOR, ESCAPE_GUARDIAN_SELECTOR):
            escape_type = EscapeType.GUARDIAN
        else:
            return False

        if self.state.signers.guardian_guid == 0:
            raise GuardianRequiredError()
        if not is_from_outside:
            self.escape_machine.register_escape_attempt(escape_type, self.context.get_tx_info())

        reader = CalldataReader(call.calldata)
        if selector == TRIGGER_ESCAPE_OWNER_SELECTOR:
            read_signer(reader)
        elif selector == TRIGGER_ESCAPE_GUARDIAN_SELECTOR:
            read_optional_signer(reader)
        elif self.escape_machine.get_escape().escape_type != escape_type:
            raise InvalidEscapeError("no escape of the requested type")
        reader.assert_consumed()

        if escape_type == EscapeType.OWNER:
            self.signature_validator.assert_valid_guardian_signature(message_hash, signatures)
        else:
            self.signature_validator.assert_valid_owner_signature(message_hash, signatures)
        return True

    def validate_deploy(
        self, class_hash: int, salt: int, owner: Optional[Signer] = None, guardian: Optional[Signer] = None
    ) -> int:
        """
        Deploy-phase validation: the deploy transaction must satisfy the full
        signature policy of the freshly constructed account.
        """
        assert_only_protocol(self.get_caller_address())
        tx_info = self.context.get_tx_info()
        assert_correct_tx_version(tx_info.version, DEPLOY_VERSIONS)
        signers = self.state.signers
        if owner is not None and owner.guid() != signers.owner_guid:
            raise InvalidSignerError("deploy owner does not match constructor owner")
        if guardian is not None and guardian.guid() != signers.guardian_guid:
            raise InvalidSignerError("deploy guardian does not match constructor guardian")
        self.signature_validator.assert_valid(tx_info.transaction_hash, parse_signature_array(tx_info.signature))
        return config.VALIDATED

    def is_valid_signature(self, message_hash: int, signature: Sequence[int]) -> int:
        """
        Off-chain pre-check of a signature over ``message_hash``.

        Returns:
            ``VALIDATED`` when the full policy holds, otherwise 0
        """
        try:
            signatures = parse_signature_array(signature)
        except InvalidSignatureFormatError:
            return 0
        return config.VALIDATED if self.signature_validator.is_valid(message_hash, signatures) else 0

    # ==================== Signer management ====================

    def change_owner(self, signer_signature: SignerSignature) -> None:
        """
        Replace the owner.

        The new owner signs ``change_owner_message_hash`` for the current
        owner, proving control of its key. Any live escape is canceled.
        """
        self._assert_only_self()
        signers = self.state.signers
        message_hash = change_owner_message_hash(self.get_chain_id(), self.address, signers.owner_guid)
        if not signer_signature.is_valid_signature(message_hash):
            logger.warning(
                "Owner change rejected: new owner signature invalid",
                extra={"event": "account.change_owner_rejected", "account": short_id(self.address)},
            )
            raise InvalidOwnerSignatureError("new owner signature invalid")

        self.escape_machine.reset_escape()
        self.escape_machine.reset_escape_attempts()
        signers.owner_guid = self._link_signer(signer_signature.signer)
        self.emit(OwnerChanged(signers.owner_guid))
        logger.info(
            "Owner changed",
            extra={
                "event": "account.owner_changed",
                "account": short_id(self.address),
                "owner": short_id(signers.owner_guid),
            },
        )

    def change_guardian(self, new_guardian: Optional[Signer]) -> None:
        self._assert_only_self()
        signers = self.state.signers
        if new_guardian is None and signers.guardian_backup_guid != 0:
            raise BackupShouldBeNullError()

        self.escape_machine.reset_escape()
        self.escape_machine.reset_escape_attempts()
        signers.guardian_guid = self._link_signer(new_guardian) if new_guardian is not None else 0
        self.emit(GuardianChanged(signers.guardian_guid))
        logger.info(
            "Guardian changed",
            extra={
                "event": "account.guardian_changed",
                "account": short_id(self.address),
                "guardian": short_id(signers.guardian_guid),
            },
        )

    def change_guardian_backup(self, new_guardian_backup: Optional[Signer]) -> None:
        self._assert_only_self()
        signers = self.state.signers
        if signers.guardian_guid == 0:
            raise GuardianRequiredError()

        self.escape_machine.reset_escape()
        self.escape_machine.reset_escape_attempts()
        signers.guardian_backup_guid = (
            self._link_signer(new_guardian_backup) if new_guardian_backup is not None else 0
        )
        self.emit(GuardianBackupChanged(signers.guardian_backup_guid))

    # ==================== Escape ====================

    def trigger_escape_owner(self, new_owner: Signer) -> Escape:
        self._assert_only_self()
        return self.escape_machine.trigger_escape_owner(self._link_signer(new_owner))

    def trigger_escape_guardian(self, new_guardian: Optional[Signer]) -> Escape:
        self._assert_only_self()
        guid = self._link_signer(new_guardian) if new_guardian is not None else 0
        return self.escape_machine.trigger_escape_guardian(guid)

    def escape_owner(self) -> int:
        self._assert_only_self()
        return self.escape_machine.escape_owner()

    def escape_guardian(self) -> int:
        self._assert_only_self()
        return self.escape_machine.escape_guardian()

    def cancel_escape(self) -> None:
        self._assert_only_self()
        self.escape_machine.cancel_escape()

    def set_escape_security_period(self, new_security_period: int) -> None:
        self._assert_only_self()
        self.escape_machine.set_security_period(new_security_period)

    # ==================== Sessions ====================

    def revoke_session(self, session_hash: int) -> None:
        self._assert_only_self()
        self.session.revoke_session(session_hash)

    def is_session_revoked(self, session_hash: int) -> bool:
        return self.session.is_session_revoked(session_hash)

    def is_session_authorization_cached(self, session_hash: int) -> bool:
        return self.session.is_session_authorization_cached(session_hash)

    # ==================== Queries ====================

    def get_owner_guid(self) -> int:
        return self.state.signers.owner_guid

    def get_guardian_guid(self) -> int:
        return self.state.signers.guardian_guid

    def get_guardian_backup_guid(self) -> int:
        return self.state.signers.guardian_backup_guid

    def get_owner(self) -> Signer:
        return self.state.registry.get(self.state.signers.owner_guid)

    def get_guardian(self) -> Optional[Signer]:
        return self.state.registry.get(self.state.signers.guardian_guid)

    def get_guardian_backup(self) -> Optional[Signer]:
        return self.state.registry.get(self.state.signers.guardian_backup_guid)

    def get_escape(self) -> Escape:
        return self.escape_machine.get_escape()

    def get_escape_and_status(self) -> Tuple[Escape, EscapeStatus]:
        return self.escape_machine.get_escape_and_status()

    def get_escape_security_period(self) -> int:
        return self.state.escape.security_period

    def get_owner_escape_attempts(self) -> int:
        return self.state.signers.owner_escape_attempts

    def get_guardian_escape_attempts(self) -> int:
        return self.state.signers.guardian_escape_attempts

    # ==================== Entry points ====================

    def entrypoints(self) -> Dict[str, Handler]:
        return {
            **super().entrypoints(),
            "__validate_deploy__": self._ep_validate_deploy,
            "change_owner": self._ep_change_owner,
            "change_guardian": self._ep_change_guardian,
            "change_guardian_backup": self._ep_change_guardian_backup,
            "trigger_escape_owner": self._ep_trigger_escape_owner,
            "trigger_escape_guardian": self._ep_trigger_escape_guardian,
            "escape_owner": self._no_args(self.escape_owner),
            "escape_guardian": self._no_args(self.escape_guardian),
            "cancel_escape": self._no_args(self.cancel_escape),
            "set_escape_security_period": self._ep_set_escape_security_period,
            "get_owner_guid": self._getter(self.get_owner_guid),
            "get_guardian_guid": self._getter(self.get_guardian_guid),
            "get_guardian_backup_guid": self._getter(self.get_guardian_backup_guid),
            "get_owner": self._ep_get_owner,
            "get_guardian": self._ep_get_guardian,
            "get_guardian_backup": self._ep_get_guardian_backup,
            "get_escape": self._ep_get_escape,
            "get_escape_and_status": self._ep_get_escape_and_status,
            "get_escape_security_period": self._getter(self.get_escape_security_period),
            "get_owner_escape_attempts": self._getter(self.get_owner_escape_attempts),
            "get_guardian_escape_attempts": self._getter(self.get_guardian_escape_attempts),
            "revoke_session": self._ep_revoke_session,
            "is_session_revoked": self._session_query(self.is_session_revoked),
            "is_session_authorization_cached": self._session_query(self.is_session_authorization_cached),
        }

    def _ep_validate_deploy(self, calldata: Tuple[int, ...]) -> List[int]:
        reader = CalldataReader(calldata)
        class_hash = reader.read()
        salt = reader.read()
        owner = read_signer(reader)
        guardian = read_optional_signer(reader)
        reader.assert_consumed()
        return [self.validate_deploy(class_hash, salt, owner, guardian)]

    def _ep_change_owner(self, calldata: Tuple[int, ...]) -> List[int]:
        reader = CalldataReader(calldata)
        signer_signature = read_signer_signature(reader)
        reader.assert_consumed()
        self.change_owner(signer_signature)
        return []

    def _ep_change_guardian(self, calldata: Tuple[int, ...]) -> List[int]:
        reader = CalldataReader(calldata)
        new_guardian = read_optional_signer(reader)
        reader.assert_consumed()
        self.change_guardian(new_guardian)
        return []

    def _ep_change_guardian_backup(self, calldata: Tuple[int, ...]) -> List[int]:
        reader = CalldataReader(calldata)
        new_guardian_backup = read_optional_signer(reader)
        reader.assert_consumed()
        self.change_guardian_backup(new_guardian_backup)
        return []

    def _ep_trigger_escape_owner(self, calldata: Tuple[int, ...]) -> List[int]:
        reader = CalldataReader(calldata)
        new_owner = read_signer(reader)
        reader.assert_consumed()
        self.trigger_escape_owner(new_owner)
        return []

    def _ep_trigger_escape_guardian(self, calldata: Tuple[int, ...]) -> List[int]:
        reader = CalldataReader(calldata)
        new_guardian = read_optional_signer(reader)
        reader.assert_consumed()
        self.trigger_escape_guardian(new_guardian)
        return []

    def _ep_set_escape_security_period(self, calldata: Tuple[int, ...]) -> List[int]:
        reader = CalldataReader(calldata)
        period = reader.read()
        reader.assert_consumed()
        self.set_escape_security_period(period)
        return []

    def _ep_get_owner(self, calldata: Tuple[int, ...]) -> List[int]:
        assert_consumed(calldata)
        return self.get_owner().to_calldata()

    def _ep_get_guardian(self, calldata: Tuple[int, ...]) -> List[int]:
        assert_consumed(calldata)
        return optional_signer_to_calldata(self.get_guardian())

    def _ep_get_guardian_backup(self, calldata: Tuple[int, ...]) -> List[int]:
        assert_consumed(calldata)
        return optional_signer_to_calldata(self.get_guardian_backup())

    def _ep_get_escape(self, calldata: Tuple[int, ...]) -> List[int]:
        assert_consumed(calldata)
        escape = self.get_escape()
        return [escape.ready_at, int(escape.escape_type), escape.new_signer]

    def _ep_get_escape_and_status(self, calldata: Tuple[int, ...]) -> List[int]:
        assert_consumed(calldata)
        escape, status = self.get_escape_and_status()
        return [escape.ready_at, int(escape.escape_type), escape.new_signer, ESCAPE_STATUS_CODES[status]]

    def _ep_revoke_session(self, calldata: Tuple[int, ...]) -> List[int]:
        reader = CalldataReader(calldata)
        session_hash = reader.read()
        reader.assert_consumed()
        self.revoke_session(session_hash)
        return []

    @staticmethod
    def _session_query(method: Callable[[int], bool]) -> Handler:
        def handler(calldata: Tuple[int, ...]) -> List[int]:
            reader = CalldataReader(calldata)
            session_hash = reader.read()
            reader.assert_consumed()
            return [int(method(session_hash))]

        return handler
