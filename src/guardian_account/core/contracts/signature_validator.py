"""
Owner/guardian signature policy.

Policy:
- no guardian configured: exactly one signature, from the owner
- guardian configured: exactly two signatures, owner first, then the guardian
  or the guardian backup

Order is part of the policy; an owner and guardian signature submitted in
swapped positions is rejected even though each one is individually valid.
Every signer is matched by recomputing its GUID before any curve math runs.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable, Sequence

from guardian_account.core.account_exceptions import (
    InvalidGuardianSignatureError,
    InvalidOwnerSignatureError,
    InvalidSignatureLengthError,
    SignatureError,
)
from guardian_account.core.logging_config import short_id
from guardian_account.core.signers import SignerSignature

logger = logging.getLogger(__name__)


@dataclass
class AccountSignerState:
    """Authorization state of an owner/guardian account."""

    owner_guid: int = 0
    guardian_guid: int = 0
    guardian_backup_guid: int = 0
    owner_escape_attempts: int = 0
    guardian_escape_attempts: int = 0


class SignatureValidator:
    """
    Checks signer signatures against the account's current signer state.

    The state is read through ``get_state`` on every check, so the validator
    always sees the latest owner and guardian even after a state rollback.
    """

    def __init__(self, get_state: Callable[[], AccountSignerState], account_address: int = 0) -> None:
        self._get_state = get_state
        self._account_address = account_address

    # ==================== Role checks ====================

    def is_valid_owner_signature(self, message_hash: int, signer_signature: SignerSignature) -> bool:
        if signer_signature.signer.guid() != self._get_state().owner_guid:
            return False
        return signer_signature.is_valid_signature(message_hash)

    def is_valid_guardian_signature(self, message_hash: int, signer_signature: SignerSignature) -> bool:
        state = self._get_state()
        guid = signer_signature.signer.guid()
        if state.guardian_guid == 0 or guid not in (state.guardian_guid, state.guardian_backup_guid):
            return False
        return signer_signature.is_valid_signature(message_hash)

    def assert_valid_owner_signature(self, message_hash: int, signatures: Sequence[SignerSignature]) -> None:
        """Exactly one signature, from the owner."""
        self._assert_length(signatures, 1)
        if not self.is_valid_owner_signature(message_hash, signatures[0]):
            self._log_rejection("invalid_owner_signature")
            raise InvalidOwnerSignatureError()

    def assert_valid_guardian_signature(self, message_hash: int, signatures: Sequence[SignerSignature]) -> None:
        """Exactly one signature, from the guardian or the guardian backup."""
        self._assert_length(signatures, 1)
        if not self.is_valid_guardian_signature(message_hash, signatures[0]):
            self._log_rejection("invalid_guardian_signature")
            raise InvalidGuardianSignatureError()

    # ==================== Full policy ====================

    def assert_valid(self, message_hash: int, signatures: Sequence[SignerSignature]) -> None:
        """
        Enforce the full policy.

        Raises:
            InvalidSignatureLengthError: Wrong number of signatures for the policy
            InvalidOwnerSignatureError: First signature is not a valid owner signature
            InvalidGuardianSignatureError: Second signature is not a valid guardian
                or guardian backup signature
        """
        if self._get_state().guardian_guid == 0:
            self._assert_length(signatures, 1)
        else:
            self._assert_length(signatures, 2)

        if not self.is_valid_owner_signature(message_hash, signatures[0]):
            self._log_rejection("invalid_owner_signature")
            raise InvalidOwnerSignatureError()

        if len(signatures) == 2 and not self.is_valid_guardian_signature(message_hash, signatures[1]):
            self._log_rejection("invalid_guardian_signature")
            raise InvalidGuardianSignatureError()

    def is_valid(self, message_hash: int, signatures: Sequence[SignerSignature]) -> bool:
        """Boolean form of ``assert_valid`` for read-only queries."""
        try:
            self.assert_valid(message_hash, signatures)
        except SignatureError:
            return False
        return True

    # ==================== Internal ====================

    def _assert_length(self, signatures: Sequence[SignerSignature], expected: int) -> None:
        if len(signatures) != expected:
            logger.warning(
                "Signature validation failed: wrong number of signatures",
                extra={
                    "event": "account.signature_validation_failed",
                    "account": short_id(self._account_address),
                    "reason": "invalid_signature_length",
                    "expected": expected,
                    "actual": len(signatures),
                },
            )
            raise InvalidSignatureLengthError(f"expected {expected} signatures, got {len(signatures)}")

    def _log_rejection(self, reason: str) -> None:
        logger.warning(
            "Signature validation failed",
            extra={
                "event": "account.signature_validation_failed",
                "account": short_id(self._account_address),
                "reason": reason,
            },
        )
