"""
Session keys.

A session lets a dapp key sign transactions for the account without the
owner, within limits the owner and guardian approved off-chain:

- ``expires_at``: last timestamp at which the session can be used
- ``allowed_methods_root``: Merkle root over the (contract, selector) pairs
  the session may call
- ``session_key_guid``: the only key that may sign under the session

Every session transaction is also co-signed by the guardian; the guardian
backup can neither approve a session nor co-sign under one. With
``cache_authorization`` set, the owner+guardian approval is checked once and
remembered for the current owner and guardian pair, so later transactions
may leave it out.

Signature layout:
    [SESSION_MAGIC, expires_at, allowed_methods_root, metadata_hash,
     session_key_guid, cache_authorization, len(authorization),
     *authorization, session_signature, guardian_signature,
     len(proofs), (len(proof), *proof)...]
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import List, Protocol, Sequence, Set, Tuple

from guardian_account.core import config
from guardian_account.core.account_exceptions import (
    GuardianRequiredError,
    InvalidSessionAuthorizationError,
    InvalidSessionGuardianSignatureError,
    InvalidSessionSignatureError,
    InvalidSignatureFormatError,
    SessionAlreadyRevokedError,
    SessionCallNotAllowedError,
    SessionExpiredError,
    SessionGuardianKeyMismatchError,
    SessionKeyMismatchError,
    SessionRevokedError,
    SessionSignerNotGuardianError,
    UnalignedProofsError,
)
from guardian_account.core.contracts.guards import assert_no_self_call
from guardian_account.core.contracts.signature_validator import AccountSignerState, SignatureValidator
from guardian_account.core.events import Event, SessionRevoked
from guardian_account.core.execution import Call
from guardian_account.core.logging_config import short_id
from guardian_account.core.signers import (
    CalldataReader,
    SignerSignature,
    parse_signature_array,
    read_signer_signature,
)
from guardian_account.core.typed_signing import (
    FELT_BOUND,
    TypedDataDomain,
    compute_hash_on_elements,
    get_type_hash,
    hash_elements,
    hash_typed_message,
)

logger = logging.getLogger(__name__)

SESSION_MAGIC = config.short_string_to_int("session-token")

ALLOWED_METHOD_TYPE_HASH = get_type_hash(
    '"Allowed Method"("Contract Address":"ContractAddress","selector":"selector")'
)
SESSION_TYPE_HASH = get_type_hash(
    '"Session"("Expires At":"timestamp","Allowed Methods":"merkletree","Metadata":"string",'
    '"Session Key":"felt")'
)

DOMAIN_NAME = config.short_string_to_int("SessionAccount.session")
DOMAIN_VERSION = 1


@dataclass(frozen=True)
class Session:
    expires_at: int
    allowed_methods_root: int
    metadata_hash: int
    session_key_guid: int

    def __post_init__(self) -> None:
        for value in self.to_calldata():
            if not isinstance(value, int) or isinstance(value, bool) or not 0 <= value < FELT_BOUND:
                raise InvalidSignatureFormatError("session field out of felt range")

    def hash(self) -> int:
        return compute_hash_on_elements([SESSION_TYPE_HASH, *self.to_calldata()])

    def to_calldata(self) -> List[int]:
        return [self.expires_at, self.allowed_methods_root, self.metadata_hash, self.session_key_guid]


@dataclass(frozen=True)
class SessionToken:
    """Everything a session-signed transaction carries in its signature."""

    session: Session
    cache_authorization: bool
    session_authorization: Tuple[int, ...]
    session_signature: SignerSignature
    guardian_signature: SignerSignature
    proofs: Tuple[Tuple[int, ...], ...]

    def to_signature(self) -> List[int]:
        result = [
            SESSION_MAGIC,
            *self.session.to_calldata(),
            int(self.cache_authorization),
            len(self.session_authorization),
            *self.session_authorization,
            *self.session_signature.to_calldata(),
            *self.guardian_signature.to_calldata(),
            len(self.proofs),
        ]
        for proof in self.proofs:
            result.extend([len(proof), *proof])
        return result


def is_session_signature(signature: Sequence[int]) -> bool:
    return len(signature) > 0 and signature[0] == SESSION_MAGIC


def parse_session_token(signature: Sequence[int]) -> SessionToken:
    """
    Decode a session signature.

    Raises:
        InvalidSignatureFormatError: Missing magic, truncated data, trailing
            elements or out-of-range values
    """
    reader = CalldataReader(signature, InvalidSignatureFormatError)
    if reader.read() != SESSION_MAGIC:
        raise reader.error("not a session token")
    session = Session(reader.read(), reader.read(), reader.read(), reader.read())
    cache_authorization = reader.read_bool()
    session_authorization = reader.read_span()
    session_signature = read_signer_signature(reader)
    guardian_signature = read_signer_signature(reader)
    count = reader.read()
    if count > reader.remaining():
        raise reader.error("proof count exceeds data")
    proofs = tuple(reader.read_span() for _ in range(count))
    reader.assert_consumed()
    return SessionToken(
        session, cache_authorization, session_authorization, session_signature, guardian_signature, proofs
    )


# ==================== Hashing ====================


def get_session_message_hash(session: Session, chain_id: int, account_address: int) -> int:
    """Message hash the owner and guardian sign to approve ``session``."""
    domain = TypedDataDomain(DOMAIN_NAME, DOMAIN_VERSION, chain_id)
    return hash_typed_message(domain, account_address, session.hash())


def session_transaction_hash(message_hash: int, session_hash: int, cache_authorization: bool) -> int:
    """What the session key and the guardian sign for one transaction under a session."""
    return compute_hash_on_elements([message_hash, session_hash, int(cache_authorization)])


def allowed_method_leaf(contract_address: int, selector: int) -> int:
    return hash_elements(ALLOWED_METHOD_TYPE_HASH, contract_address, selector)


def hash_merkle_pair(left: int, right: int) -> int:
    """Nodes are hashed in sorted order, so proofs carry no left/right flags."""
    return hash_elements(min(left, right), max(left, right))


def verify_merkle_proof(root: int, leaf: int, proof: Sequence[int]) -> bool:
    node = leaf
    for sibling in proof:
        node = hash_merkle_pair(node, sibling)
    return node == root


# ==================== Component ====================


@dataclass
class SessionState:
    revoked: Set[int] = field(default_factory=set)
    # (owner_guid, guardian_guid, session_hash)
    cached_authorizations: Set[Tuple[int, int, int]] = field(default_factory=set)


class SessionHost(Protocol):
    """What the session component needs from the account embedding it."""

    address: int

    def get_session_state(self) -> SessionState: ...

    def get_signer_state(self) -> AccountSignerState: ...

    def get_block_timestamp(self) -> int: ...

    def get_chain_id(self) -> int: ...

    def emit(self, event: Event) -> None: ...


class SessionComponent:
    """Authorizes transactions signed under a session key."""

    def __init__(self, host: SessionHost, signature_validator: SignatureValidator) -> None:
        self.host = host
        self.signature_validator = signature_validator

    @property
    def state(self) -> SessionState:
        return self.host.get_session_state()

    def get_session_message_hash(self, session: Session) -> int:
        return get_session_message_hash(session, self.host.get_chain_id(), self.host.address)

    def is_session_revoked(self, session_hash: int) -> bool:
        return session_hash in self.state.revoked

    def is_session_authorization_cached(self, session_hash: int) -> bool:
        return self._cache_key(session_hash) in self.state.cached_authorizations

    def revoke_session(self, session_hash: int) -> None:
        """
        Permanently disable a session. The caller check is the account's.

        Raises:
            SessionAlreadyRevokedError: The session was revoked before
        """
        if session_hash in self.state.revoked:
            raise SessionAlreadyRevokedError()
        self.state.revoked.add(session_hash)
        self.host.emit(SessionRevoked(session_hash))
        logger.info(
            "Session revoked",
            extra={
                "event": "session.revoked",
                "account": short_id(self.host.address),
                "session": short_id(session_hash),
            },
        )

    def assert_valid_session(self, calls: Sequence[Call], message_hash: int, signature: Sequence[int]) -> None:
        """
        Check that a session token authorizes ``calls`` for ``message_hash``.

        Raises:
            InvalidSignatureFormatError: Malformed token
            NoMulticallToSelfError: A call targets the account
            GuardianRequiredError: The account has no guardian
            SessionError: Revoked, expired, unapproved or out-of-policy session,
                or a bad session key or guardian signature
        """
        token = parse_session_token(signature)
        session = token.session
        assert_no_self_call(calls, self.host.address)

        signers = self.host.get_signer_state()
        if signers.guardian_guid == 0:
            raise GuardianRequiredError("sessions need a guardian co-signer")

        session_hash = self.get_session_message_hash(session)
        if self.is_session_revoked(session_hash):
            self._reject("revoked", session_hash)
            raise SessionRevokedError()

        now = self.host.get_block_timestamp()
        if session.expires_at < now:
            self._reject("expired", session_hash)
            raise SessionExpiredError(f"session expired at {session.expires_at}, now {now}")

        if not (token.cache_authorization and self.is_session_authorization_cached(session_hash)):
            self._assert_valid_authorization(session_hash, token.session_authorization)
            if token.cache_authorization:
                self.state.cached_authorizations.add(self._cache_key(session_hash))

        if token.session_signature.signer.guid() != session.session_key_guid:
            self._reject("session_key_mismatch", session_hash)
            raise SessionKeyMismatchError()
        if token.guardian_signature.signer.guid() != signers.guardian_guid:
            self._reject("guardian_key_mismatch", session_hash)
            raise SessionGuardianKeyMismatchError()

        transaction_hash = session_transaction_hash(message_hash, session_hash, token.cache_authorization)
        if not token.session_signature.is_valid_signature(transaction_hash):
            self._reject("invalid_session_signature", session_hash)
            raise InvalidSessionSignatureError()
        if not token.guardian_signature.is_valid_signature(transaction_hash):
            self._reject("invalid_guardian_signature", session_hash)
            raise InvalidSessionGuardianSignatureError()

        if len(token.proofs) != len(calls):
            raise UnalignedProofsError(f"{len(token.proofs)} proofs for {len(calls)} calls")
        for index, (call, proof) in enumerate(zip(calls, token.proofs)):
            leaf = allowed_method_leaf(call.to, call.selector)
            if not verify_merkle_proof(session.allowed_methods_root, leaf, proof):
                self._reject("call_not_allowed", session_hash)
                raise SessionCallNotAllowedError(f"call {index} is not an allowed method")

    # ==================== Internal ====================

    def _assert_valid_authorization(self, session_hash: int, authorization: Sequence[int]) -> None:
        signatures = parse_signature_array(authorization)
        if len(signatures) == 2 and signatures[1].signer.guid() != self.host.get_signer_state().guardian_guid:
            self._reject("signer_is_not_guardian", session_hash)
            raise SessionSignerNotGuardianError()
        if not self.signature_validator.is_valid(session_hash, signatures):
            self._reject("invalid_authorization", session_hash)
            raise InvalidSessionAuthorizationError()

    def _cache_key(self, session_hash: int) -> Tuple[int, int, int]:
        signers = self.host.get_signer_state()
        return signers.owner_guid, signers.guardian_guid, session_hash

    def _reject(self, reason: str, session_hash: int) -> None:
        logger.warning(
            "Session transaction rejected",
            extra={
                "event": "session.rejected",
                "account": short_id(self.host.address),
                "session": short_id(session_hash),
                "reason": reason,
            },
        )
