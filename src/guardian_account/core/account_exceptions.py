"""
Account exception hierarchy.

Every assertion of the account maps to a typed exception carrying a stable
``code`` string, so a submitter can tell rejection causes apart. Raising any
``AccountError`` inside a transaction phase reverts the state changes of that
phase (see ``ExecutionContext``).
"""

from __future__ import annotations

from typing import Any, Dict, Optional


class AccountError(Exception):
    """Base exception for all account errors.

    Attributes:
        message: Human-readable error description
        code: Stable machine-readable identifier (``account/...``)
        details: Additional context about the error
    """

    code = "account/error"

    def __init__(
        self,
        message: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        code: Optional[str] = None,
    ) -> None:
        if code is not None:
            self.code = code
        self.message = message or self.code
        super().__init__(self.message)
        self.details = details or {}

    def __str__(self) -> str:
        if self.message == self.code:
            return self.code
        return f"{self.code}: {self.message}"


# ==================== Authorization Errors ====================


class AuthorizationError(AccountError):
    """Raised when the requester lacks the required authority."""
    code = "account/unauthorized"


class OnlySelfError(AuthorizationError):
    code = "account/only-self"


class OnlyProtocolError(AuthorizationError):
    code = "account/only-protocol"


class OnlyGuardianError(AuthorizationError):
    code = "account/only-guardian"


class InvalidCallerError(AuthorizationError):
    """Raised when a scoped outside execution is submitted by someone else."""
    code = "account/invalid-caller"


class SignatureError(AuthorizationError):
    """Base exception for signature verification failures."""
    code = "account/invalid-signature"


class InvalidSignatureLengthError(SignatureError):
    """Raised when the number of signatures does not match the policy."""
    code = "account/invalid-signature-length"


class InvalidOwnerSignatureError(SignatureError):
    code = "account/invalid-owner-sig"


class InvalidGuardianSignatureError(SignatureError):
    code = "account/invalid-guardian-sig"


class InvalidSignerError(SignatureError):
    """Raised when a signature comes from a signer the account does not know."""
    code = "account/invalid-signer"


# ==================== Session Errors ====================


class SessionError(AuthorizationError):
    """Base exception for transactions signed under a session key."""
    code = "session/error"


class SessionExpiredError(SessionError):
    code = "session/expired"


class SessionRevokedError(SessionError):
    code = "session/revoked"


class SessionAlreadyRevokedError(SessionError):
    code = "session/already-revoked"


class InvalidSessionAuthorizationError(SessionError):
    """Raised when the owner and guardian did not approve the session."""
    code = "session/invalid-account-sig"


class SessionSignerNotGuardianError(SessionError):
    """Raised when a session was approved by the guardian backup instead of the guardian."""
    code = "session/signer-is-not-guardian"


class SessionKeyMismatchError(SessionError):
    code = "session/session-key-mismatch"


class SessionGuardianKeyMismatchError(SessionError):
    code = "session/guardian-key-mismatch"


class InvalidSessionSignatureError(SessionError):
    code = "session/invalid-session-sig"


class InvalidSessionGuardianSignatureError(SessionError):
    code = "session/invalid-guardian-sig"


class UnalignedProofsError(SessionError):
    code = "session/unaligned-proofs"


class SessionCallNotAllowedError(SessionError):
    """Raised when a call is not covered by the session's allowed methods."""
    code = "session/invalid-call"


# ==================== State Policy Errors ====================


class StatePolicyError(AccountError):
    """Raised when an operation would violate the account's state rules."""
    code = "account/state-policy"


class NullOwnerError(StatePolicyError):
    code = "account/null-owner"


class BackupShouldBeNullError(StatePolicyError):
    code = "account/backup-should-be-null"


class GuardianRequiredError(StatePolicyError):
    code = "account/guardian-required"


class EscapeDisabledError(StatePolicyError):
    code = "account/escape-disabled"


class InvalidEscapeError(StatePolicyError):
    """Raised when no escape in the required status exists."""
    code = "account/invalid-escape"


class InvalidEscapeTypeError(StatePolicyError):
    code = "account/invalid-escape-type"


class InvalidCallHashError(StatePolicyError):
    code = "account/invalid-call-hash"


class InvalidSelectorError(StatePolicyError):
    code = "account/invalid-selector"


class InvalidEscapeParamsError(StatePolicyError):
    code = "account/invalid-escape-params"


class OngoingEscapeError(StatePolicyError):
    code = "account/ongoing-escape"


class CannotOverrideEscapeError(StatePolicyError):
    code = "account/cannot-override-escape"


class InvalidSecurityPeriodError(StatePolicyError):
    code = "account/invalid-security-period"


class InvalidThresholdError(StatePolicyError):
    code = "account/invalid-threshold"


class DuplicateSignerError(StatePolicyError):
    code = "account/duplicate-signer"


class NotASignerError(StatePolicyError):
    code = "account/not-a-signer"


# ==================== Throttling Errors ====================


class ThrottlingError(AccountError):
    """Raised when an escape attempt exceeds the griefing bounds."""
    code = "account/throttled"


class MaxEscapeAttemptsError(ThrottlingError):
    code = "account/max-escape-attempts"


class MaxFeeTooHighError(ThrottlingError):
    code = "account/max-fee-too-high"


class TipTooHighError(ThrottlingError):
    code = "account/tip-too-high"


# ==================== Structural Errors ====================


class StructuralError(AccountError):
    """Raised when a transaction or payload is malformed."""
    code = "account/structural"


class InvalidCalldataError(StructuralError):
    code = "account/invalid-calldata"


class InvalidSignatureFormatError(StructuralError):
    code = "account/invalid-signature-format"


class NoMulticallToSelfError(StructuralError):
    code = "account/no-multicall-to-self"


class ForbiddenCallError(StructuralError):
    code = "account/forbidden-call"


class InvalidTxVersionError(StructuralError):
    code = "account/invalid-tx-version"


class DuplicatedOutsideNonceError(StructuralError):
    code = "account/duplicated-outside-nonce"


class InvalidTimestampError(StructuralError):
    code = "account/invalid-timestamp"


class UnknownSelectorError(StructuralError):
    code = "account/unknown-selector"


class MulticallFailedError(StructuralError):
    """Raised when one call of a multicall fails.

    The failing call's index and the original error are kept so the submitter
    can still see the specific cause.
    """

    code = "account/multicall-failed"

    def __init__(self, index: int, cause: AccountError) -> None:
        super().__init__(
            f"call {index} failed with {cause.code}",
            details={"index": index, "cause": cause.code},
        )
        self.index = index
        self.cause = cause


class InvalidTransactionNonceError(StructuralError):
    code = "account/invalid-tx-nonce"


class ContractNotFoundError(StructuralError):
    code = "account/contract-not-found"
