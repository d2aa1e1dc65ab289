"""
Tests for session-key transactions on GuardianAccount.
"""

import pytest

from guardian_account.core import config
from guardian_account.core.account_exceptions import (
    GuardianRequiredError,
    InvalidSessionAuthorizationError,
    InvalidSessionSignatureError,
    InvalidSignatureFormatError,
    NoMulticallToSelfError,
    OnlySelfError,
    SessionAlreadyRevokedError,
    SessionCallNotAllowedError,
    SessionExpiredError,
    SessionGuardianKeyMismatchError,
    SessionKeyMismatchError,
    SessionRevokedError,
    SessionSignerNotGuardianError,
    UnalignedProofsError,
)
from guardian_account.core.contracts.outside_execution import OutsideExecution
from guardian_account.core.contracts.session import (
    SESSION_MAGIC,
    allowed_method_leaf,
    is_session_signature,
    parse_session_token,
    verify_merkle_proof,
)
from guardian_account.core.events import SessionRevoked
from guardian_account.core.execution import Call, TransactionStatus
from guardian_account.core.signers import optional_signer_to_calldata
from guardian_account.core.typed_signing import get_selector_from_name

from mocks import T0, MockDapp, self_call, submit
from signing import NativeKeyPair, SessionDapp, build_merkle_tree

RELAYER = 0x5E1A7
EXPIRES_AT = T0 + 150
SET_NUMBER = get_selector_from_name("set_number")


def set_number(dapp, value):
    return Call.to_entrypoint(dapp.address, "set_number", [value])


def submit_session(context, account, calls, session_dapp, authorization, guardian_key, **kwargs):
    """Invoke ``calls`` from ``account`` with a session token signed by ``session_dapp``."""
    transaction = context.build_invoke(account.address, calls)
    signature = session_dapp.sign_transaction(
        account, transaction.transaction_hash, calls, authorization, guardian_key, **kwargs
    )
    return context.invoke(transaction, signature)


@pytest.fixture(scope="session")
def session_key():
    return NativeKeyPair(b"dapp-session")


@pytest.fixture
def session_dapp(dapp, session_key):
    return SessionDapp(session_key, [(dapp.address, SET_NUMBER)], EXPIRES_AT)


@pytest.fixture
def authorization(account, session_dapp, owner_key, guardian_key):
    return session_dapp.authorize(account, owner_key, guardian_key)


@pytest.fixture
def account_with_backup(context, account, owner_key, guardian_key, backup_key):
    calldata = optional_signer_to_calldata(backup_key.signer)
    submit(context, account, [self_call(account, "change_guardian_backup", calldata)], owner_key, guardian_key)
    return account


class TestSessionTransactions:
    def test_call_with_session(self, context, account, dapp, session_dapp, authorization, guardian_key):
        receipt = submit_session(context, account, [set_number(dapp, 2)], session_dapp, authorization, guardian_key)

        assert receipt.succeeded
        assert dapp.number_of(account.address) == 2

    def test_usable_until_expiry(self, context, account, dapp, session_dapp, authorization, guardian_key):
        context.set_block_timestamp(EXPIRES_AT)
        assert submit_session(context, account, [set_number(dapp, 4)], session_dapp, authorization, guardian_key).succeeded

        context.set_block_timestamp(EXPIRES_AT + 1)
        with pytest.raises(SessionExpiredError):
            submit_session(context, account, [set_number(dapp, 8)], session_dapp, authorization, guardian_key)
        assert dapp.number_of(account.address) == 4

    def test_method_outside_policy(self, context, account, dapp, session_dapp, authorization, guardian_key):
        calls = [set_number(dapp, 2), Call.to_entrypoint(dapp.address, "fail")]
        with pytest.raises(SessionCallNotAllowedError):
            submit_session(context, account, calls, session_dapp, authorization, guardian_key)

    def test_contract_outside_policy(self, context, account, session_dapp, authorization, guardian_key):
        other_dapp = MockDapp(context)
        with pytest.raises(SessionCallNotAllowedError):
            submit_session(context, account, [set_number(other_dapp, 2)], session_dapp, authorization, guardian_key)
        assert other_dapp.number_of(account.address) == 0

    def test_several_allowed_methods(self, context, account, dapp, session_key, owner_key, guardian_key):
        other_dapp = MockDapp(context)
        allowed = [
            (dapp.address, SET_NUMBER),
            (dapp.address, get_selector_from_name("get_number")),
            (other_dapp.address, SET_NUMBER),
        ]
        session_dapp = SessionDapp(session_key, allowed, EXPIRES_AT)
        authorization = session_dapp.authorize(account, owner_key, guardian_key)

        calls = [set_number(dapp, 3), set_number(other_dapp, 5)]
        assert submit_session(context, account, calls, session_dapp, authorization, guardian_key).succeeded
        assert other_dapp.number_of(account.address) == 5

    def test_unaligned_proofs(self, context, account, dapp, session_dapp, authorization, guardian_key):
        with pytest.raises(UnalignedProofsError):
            submit_session(
                context, account, [set_number(dapp, 2)], session_dapp, authorization, guardian_key, proofs=[]
            )

    def test_self_call_rejected(self, context, account, session_dapp, authorization, guardian_key):
        calls = [self_call(account, "change_guardian", [1])]
        with pytest.raises(NoMulticallToSelfError):
            submit_session(context, account, calls, session_dapp, authorization, guardian_key)
        assert account.get_guardian() is not None

    def test_other_key_cannot_use_session(
        self, context, account, dapp, session_dapp, authorization, guardian_key, stranger_key
    ):
        with pytest.raises(SessionKeyMismatchError):
            submit_session(
                context, account, [set_number(dapp, 2)], session_dapp, authorization, guardian_key, session_key=stranger_key
            )

    def test_session_signature_bound_to_transaction(
        self, context, account, dapp, session_dapp, authorization, guardian_key
    ):
        calls = [set_number(dapp, 2)]
        transaction = context.build_invoke(account.address, calls)
        signature = session_dapp.sign_transaction(
            account, transaction.transaction_hash + 1, calls, authorization, guardian_key
        )
        with pytest.raises(InvalidSessionSignatureError):
            context.invoke(transaction, signature)

    def test_guardian_must_cosign(self, context, account, dapp, session_dapp, authorization, stranger_key):
        with pytest.raises(SessionGuardianKeyMismatchError):
            submit_session(context, account, [set_number(dapp, 2)], session_dapp, authorization, stranger_key)

    def test_backup_cannot_cosign(self, context, account_with_backup, dapp, session_dapp, owner_key, guardian_key, backup_key):
        authorization = session_dapp.authorize(account_with_backup, owner_key, guardian_key)
        with pytest.raises(SessionGuardianKeyMismatchError):
            submit_session(
                context, account_with_backup, [set_number(dapp, 2)], session_dapp, authorization, backup_key
            )

    def test_session_not_approved_by_owner(self, context, account, dapp, session_dapp, guardian_key, stranger_key):
        authorization = session_dapp.authorize(account, stranger_key, guardian_key)
        with pytest.raises(InvalidSessionAuthorizationError):
            submit_session(context, account, [set_number(dapp, 2)], session_dapp, authorization, guardian_key)

    @pytest.mark.parametrize("cache", [False, True])
    def test_session_approved_by_backup(
        self, context, account_with_backup, dapp, session_dapp, owner_key, guardian_key, backup_key, cache
    ):
        authorization = session_dapp.authorize(account_with_backup, owner_key, backup_key)
        with pytest.raises(SessionSignerNotGuardianError):
            submit_session(
                context, account_with_backup, [set_number(dapp, 2)], session_dapp, authorization, guardian_key, cache=cache
            )
        assert not account_with_backup.is_session_authorization_cached(session_dapp.session_hash(account_with_backup))

    def test_account_without_guardian(self, context, owner_only_account, dapp, session_dapp, owner_key, guardian_key):
        authorization = session_dapp.authorize(owner_only_account, owner_key)
        with pytest.raises(GuardianRequiredError):
            submit_session(context, owner_only_account, [set_number(dapp, 2)], session_dapp, authorization, guardian_key)

    def test_session_bound_to_account(self, context, account, owner_key, guardian_key, dapp, session_dapp):
        other_account = type(account)(context, owner_key.signer, guardian_key.signer)
        authorization = session_dapp.authorize(other_account, owner_key, guardian_key)
        with pytest.raises(InvalidSessionAuthorizationError):
            submit_session(context, account, [set_number(dapp, 2)], session_dapp, authorization, guardian_key)


class TestAuthorizationCache:
    def test_cached_session_needs_no_authorization(
        self, context, account, dapp, session_dapp, authorization, guardian_key
    ):
        calls = [set_number(dapp, 2)]
        assert submit_session(context, account, calls, session_dapp, authorization, guardian_key, cache=True).succeeded
        assert account.is_session_authorization_cached(session_dapp.session_hash(account))

        calls = [set_number(dapp, 4)]
        assert submit_session(context, account, calls, session_dapp, [], guardian_key, cache=True).succeeded
        assert dapp.number_of(account.address) == 4

    def test_uncached_session_needs_authorization(self, context, account, dapp, session_dapp, guardian_key):
        with pytest.raises(InvalidSignatureFormatError):
            submit_session(context, account, [set_number(dapp, 2)], session_dapp, [], guardian_key, cache=True)

    def test_cache_only_written_on_request(self, context, account, dapp, session_dapp, authorization, guardian_key):
        submit_session(context, account, [set_number(dapp, 2)], session_dapp, authorization, guardian_key)
        assert not account.is_session_authorization_cached(session_dapp.session_hash(account))

    def test_rejected_transaction_caches_nothing(
        self, context, account, dapp, session_dapp, authorization, stranger_key
    ):
        with pytest.raises(SessionGuardianKeyMismatchError):
            submit_session(context, account, [set_number(dapp, 2)], session_dapp, authorization, stranger_key, cache=True)
        assert not account.is_session_authorization_cached(session_dapp.session_hash(account))

    def test_guardian_change_drops_cache(
        self, context, account, dapp, session_dapp, authorization, owner_key, guardian_key, stranger_key
    ):
        session_hash = session_dapp.session_hash(account)
        submit_session(context, account, [set_number(dapp, 2)], session_dapp, authorization, guardian_key, cache=True)

        calldata = optional_signer_to_calldata(stranger_key.signer)
        submit(context, account, [self_call(account, "change_guardian", calldata)], owner_key, guardian_key)

        assert not account.is_session_authorization_cached(session_hash)
        assert context.call_as(RELAYER, account.address, "is_session_authorization_cached", [session_hash]) == [0]


class TestRevocation:
    def test_revoked_session_rejected(self, context, account, dapp, session_dapp, authorization, owner_key, guardian_key):
        session_hash = session_dapp.session_hash(account)
        receipt = submit(context, account, [self_call(account, "revoke_session", [session_hash])], owner_key, guardian_key)

        assert receipt.succeeded
        assert account.is_session_revoked(session_hash)
        assert SessionRevoked(session_hash) in account.events
        with pytest.raises(SessionRevokedError):
            submit_session(context, account, [set_number(dapp, 2)], session_dapp, authorization, guardian_key)

    def test_revoke_twice(self, context, account, owner_key, guardian_key):
        calls = [self_call(account, "revoke_session", [0x5E55])]
        submit(context, account, calls, owner_key, guardian_key)
        receipt = submit(context, account, calls, owner_key, guardian_key)

        assert receipt.status == TransactionStatus.REVERTED
        assert isinstance(receipt.revert_error.cause, SessionAlreadyRevokedError)

    def test_only_self(self, context, account):
        with pytest.raises(OnlySelfError):
            context.call_as(RELAYER, account.address, "revoke_session", [0x5E55])
        assert context.call_as(RELAYER, account.address, "is_session_revoked", [0x5E55]) == [0]


class TestSessionFromOutside:
    def test_relayed_session_bundle(self, context, account, dapp, session_dapp, authorization, guardian_key):
        calls = [set_number(dapp, 6)]
        outside_execution = OutsideExecution(config.ANY_CALLER, 1, 0, EXPIRES_AT, tuple(calls))
        message_hash = account.get_outside_execution_message_hash(outside_execution)
        signature = session_dapp.sign_transaction(account, message_hash, calls, authorization, guardian_key)

        calldata = [*outside_execution.to_calldata(), len(signature), *signature]
        context.call_as(RELAYER, account.address, "execute_from_outside", calldata)

        assert dapp.number_of(account.address) == 6
        assert not account.is_valid_outside_execution_nonce(1)


class TestSessionToken:
    def test_round_trip(self, account, dapp, session_dapp, authorization, guardian_key):
        calls = [set_number(dapp, 2)]
        signature = session_dapp.sign_transaction(account, 0x77, calls, authorization, guardian_key)
        token = parse_session_token(signature)

        assert is_session_signature(signature)
        assert token.session == session_dapp.session
        assert token.session_authorization == tuple(authorization)
        assert token.to_signature() == signature

    @pytest.mark.parametrize("signature", [[SESSION_MAGIC], [SESSION_MAGIC, 1, 2], [1]])
    def test_malformed(self, signature):
        with pytest.raises(InvalidSignatureFormatError):
            parse_session_token(signature)

    def test_not_accepted_as_account_signature(self, account, dapp, session_dapp, authorization, guardian_key):
        signature = session_dapp.sign_transaction(account, 0x77, [set_number(dapp, 2)], authorization, guardian_key)
        assert account.is_valid_signature(0x77, signature) == 0


class TestAllowedMethodsTree:
    @pytest.mark.parametrize("size", [1, 2, 3, 5, 8])
    def test_every_leaf_proves(self, size):
        leaves = [allowed_method_leaf(0xDA99 + i, SET_NUMBER) for i in range(size)]
        root, proofs = build_merkle_tree(leaves)
        for leaf, proof in zip(leaves, proofs):
            assert verify_merkle_proof(root, leaf, proof)

    def test_foreign_leaf_rejected(self):
        leaves = [allowed_method_leaf(0xDA99 + i, SET_NUMBER) for i in range(4)]
        root, proofs = build_merkle_tree(leaves)
        assert not verify_merkle_proof(root, allowed_method_leaf(0xBAD, SET_NUMBER), proofs[0])
