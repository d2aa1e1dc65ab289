"""
Tests for the external recovery component, standalone and embedded in a multisig.
"""

import pytest

from guardian_account.core.account_exceptions import (
    EscapeDisabledError,
    InvalidCallHashError,
    InvalidEscapeError,
    InvalidEscapeParamsError,
    InvalidSelectorError,
    InvalidThresholdError,
    OngoingEscapeError,
    OnlyGuardianError,
    OnlySelfError,
)
from guardian_account.core.contracts.escape import EscapeStatus
from guardian_account.core.contracts.external_recovery import (
    EscapeCall,
    EscapeConfig,
    ExternalRecovery,
    ExternalRecoveryState,
    RecoveryEscape,
)
from guardian_account.core.contracts.multisig_account import signer_list_to_calldata
from guardian_account.core.events import (
    EscapeCanceled,
    EscapeEnabledChanged,
    EscapeExecuted,
    EscapeTriggered,
    events_of,
)
from guardian_account.core.execution import Call

from mocks import T0, self_call, submit
from signing import NativeKeyPair, sorted_by_guid

ACCOUNT = 0xACC
GUARDIAN = 0x6A2D
SECURITY = 3600
EXPIRY = 7200


class FakeRecoveryHost:
    address = ACCOUNT

    def __init__(self):
        self.recovery_state = ExternalRecoveryState()
        self.now = T0
        self.caller = ACCOUNT
        self.events = []
        self.applied = []

    def get_recovery_state(self):
        return self.recovery_state

    def get_block_timestamp(self):
        return self.now

    def get_caller_address(self):
        return self.caller

    def emit(self, event):
        self.events.append(event)

    def apply_recovered_action(self, selector, calldata):
        self.applied.append((selector, calldata))


@pytest.fixture
def host():
    return FakeRecoveryHost()


@pytest.fixture
def recovery(host):
    return ExternalRecovery(host)


@pytest.fixture
def enabled(recovery, host):
    recovery.toggle_escape(True, SECURITY, EXPIRY, GUARDIAN)
    host.caller = GUARDIAN
    return recovery


def change_threshold(value):
    return EscapeCall.from_name("change_threshold", [value])


class TestToggle:
    def test_enable(self, recovery, host):
        recovery.toggle_escape(True, SECURITY, EXPIRY, GUARDIAN)

        assert recovery.get_escape_enabled() == EscapeConfig(True, SECURITY, EXPIRY)
        assert recovery.get_guardian() == GUARDIAN
        assert host.events == [EscapeEnabledChanged(True, SECURITY, EXPIRY, GUARDIAN)]

    def test_disable(self, recovery):
        recovery.toggle_escape(True, SECURITY, EXPIRY, GUARDIAN)
        recovery.toggle_escape(False, 0, 0, 0)
        assert recovery.get_escape_enabled() == EscapeConfig()
        assert recovery.get_guardian() == 0

    @pytest.mark.parametrize(
        "params", [(True, 0, EXPIRY, GUARDIAN), (True, SECURITY, 0, GUARDIAN), (True, SECURITY, EXPIRY, 0)]
    )
    def test_enable_needs_every_parameter(self, recovery, params):
        with pytest.raises(InvalidEscapeParamsError):
            recovery.toggle_escape(*params)

    def test_disable_needs_zero_parameters(self, recovery):
        with pytest.raises(InvalidEscapeParamsError):
            recovery.toggle_escape(False, SECURITY, 0, 0)

    def test_only_self(self, recovery, host):
        host.caller = GUARDIAN
        with pytest.raises(OnlySelfError):
            recovery.toggle_escape(True, SECURITY, EXPIRY, GUARDIAN)

    def test_not_during_live_escape(self, enabled, host):
        enabled.trigger_escape(change_threshold(1))
        host.caller = ACCOUNT
        with pytest.raises(OngoingEscapeError):
            enabled.toggle_escape(False, 0, 0, 0)

    def test_clears_expired_escape(self, enabled, host):
        enabled.trigger_escape(change_threshold(1))
        host.now = T0 + SECURITY + EXPIRY
        host.caller = ACCOUNT
        enabled.toggle_escape(True, SECURITY * 2, EXPIRY * 2, GUARDIAN)

        # Longer periods must not revive the old escape
        assert enabled.get_escape() == RecoveryEscape()


class TestTrigger:
    def test_trigger(self, enabled, host):
        call = change_threshold(1)
        escape = enabled.trigger_escape(call)

        assert escape == RecoveryEscape(T0 + SECURITY, call.hash())
        assert enabled.get_escape_and_status() == (escape, EscapeStatus.NOT_READY)
        assert host.events[-1] == EscapeTriggered(T0 + SECURITY, call.hash(), call.selector, (1,))

    def test_only_guardian(self, enabled, host):
        host.caller = 0xBAD
        with pytest.raises(OnlyGuardianError):
            enabled.trigger_escape(change_threshold(1))

    def test_no_guardian_configured(self, recovery, host):
        host.caller = 0
        with pytest.raises(OnlyGuardianError):
            recovery.trigger_escape(change_threshold(1))

    def test_disabled(self, recovery, host):
        host.recovery_state.guardian = GUARDIAN
        host.caller = GUARDIAN
        with pytest.raises(EscapeDisabledError):
            recovery.trigger_escape(change_threshold(1))

    def test_selector_not_allowed(self, enabled):
        with pytest.raises(InvalidSelectorError):
            enabled.trigger_escape(EscapeCall.from_name("upgrade", [1]))

    def test_retrigger_cancels_previous(self, enabled, host):
        first = change_threshold(1)
        enabled.trigger_escape(first)
        host.now = T0 + 10
        enabled.trigger_escape(change_threshold(2))

        assert events_of(host.events, EscapeCanceled) == [EscapeCanceled(first.hash())]
        assert enabled.get_escape().ready_at == T0 + 10 + SECURITY


class TestExecute:
    def test_execute_when_ready(self, enabled, host):
        call = change_threshold(1)
        enabled.trigger_escape(call)
        host.now = T0 + SECURITY
        host.caller = 0xF00

        enabled.execute_escape(call)

        assert host.applied == [(call.selector, (1,))]
        assert enabled.get_escape() == RecoveryEscape()
        assert host.events[-1] == EscapeExecuted(call.hash())

    def test_not_ready(self, enabled, host):
        call = change_threshold(1)
        enabled.trigger_escape(call)
        host.now = T0 + SECURITY - 1
        with pytest.raises(InvalidEscapeError):
            enabled.execute_escape(call)

    def test_expired(self, enabled, host):
        call = change_threshold(1)
        enabled.trigger_escape(call)
        host.now = T0 + SECURITY + EXPIRY
        with pytest.raises(InvalidEscapeError):
            enabled.execute_escape(call)

    def test_different_call(self, enabled, host):
        enabled.trigger_escape(change_threshold(1))
        host.now = T0 + SECURITY
        with pytest.raises(InvalidCallHashError):
            enabled.execute_escape(change_threshold(2))
        assert host.applied == []


class TestCancel:
    def test_cancel(self, enabled, host):
        call = change_threshold(1)
        enabled.trigger_escape(call)
        host.caller = ACCOUNT
        enabled.cancel_escape()

        assert enabled.get_escape() == RecoveryEscape()
        assert host.events[-1] == EscapeCanceled(call.hash())

    def test_cancel_only_self(self, enabled):
        enabled.trigger_escape(change_threshold(1))
        with pytest.raises(OnlySelfError):
            enabled.cancel_escape()

    def test_nothing_to_cancel(self, recovery):
        with pytest.raises(InvalidEscapeError):
            recovery.cancel_escape()

    def test_cancel_expired_is_silent(self, enabled, host):
        enabled.trigger_escape(change_threshold(1))
        host.now = T0 + SECURITY + EXPIRY
        host.caller = ACCOUNT
        enabled.cancel_escape()
        assert events_of(host.events, EscapeCanceled) == []


class TestMultisigRecovery:
    """End-to-end: a guardian address replaces a lost multisig signer."""

    @pytest.fixture
    def recoverable(self, context, multisig, multisig_keys):
        calldata = [1, SECURITY, EXPIRY, GUARDIAN]
        receipt = submit(
            context, multisig, [self_call(multisig, "toggle_escape", calldata)], *sorted_by_guid(multisig_keys[:2])
        )
        assert receipt.succeeded
        return multisig

    def test_replace_lost_signer(self, context, recoverable, multisig_keys, dapp):
        lost, kept = multisig_keys[0], multisig_keys[1]
        replacement = NativeKeyPair(b"replacement")
        call = EscapeCall.from_name("replace_signer", [*lost.signer.to_calldata(), *replacement.signer.to_calldata()])

        context.call_as(GUARDIAN, recoverable.address, "trigger_escape", call.to_calldata())
        assert context.call_as(0xF00, recoverable.address, "get_escape") == [T0 + SECURITY, call.hash(), 1]

        context.advance_time(SECURITY)
        context.call_as(0xF00, recoverable.address, "execute_escape", call.to_calldata())

        assert not recoverable.is_signer(lost.signer)
        assert recoverable.is_signer(replacement.signer)
        receipt = submit(
            context,
            recoverable,
            [Call.to_entrypoint(dapp.address, "set_number", [1])],
            *sorted_by_guid([kept, replacement]),
        )
        assert receipt.succeeded

    def test_recovery_can_lower_threshold(self, context, recoverable):
        call = EscapeCall.from_name("change_threshold", [1])
        context.call_as(GUARDIAN, recoverable.address, "trigger_escape", call.to_calldata())
        context.advance_time(SECURITY)
        context.call_as(0xF00, recoverable.address, "execute_escape", call.to_calldata())
        assert recoverable.get_threshold() == 1

    def test_invalid_action_reverts_execution(self, context, recoverable, multisig_keys):
        call = EscapeCall.from_name("remove_signers", [1, *signer_list_to_calldata([k.signer for k in multisig_keys])])
        context.call_as(GUARDIAN, recoverable.address, "trigger_escape", call.to_calldata())
        context.advance_time(SECURITY)

        with pytest.raises(InvalidThresholdError):
            context.call_as(0xF00, recoverable.address, "execute_escape", call.to_calldata())
        # The escape survives the failed attempt
        assert recoverable.recovery.get_escape_and_status()[1] == EscapeStatus.READY

    def test_stranger_cannot_trigger(self, context, recoverable):
        with pytest.raises(OnlyGuardianError):
            context.call_as(0xBAD, recoverable.address, "trigger_escape", change_threshold(1).to_calldata())

    def test_signers_cancel_escape(self, context, recoverable, multisig_keys):
        context.call_as(GUARDIAN, recoverable.address, "trigger_escape", change_threshold(1).to_calldata())
        receipt = submit(
            context, recoverable, [self_call(recoverable, "cancel_escape")], *sorted_by_guid(multisig_keys[1:])
        )
        assert receipt.succeeded
        assert recoverable.recovery.get_escape() == RecoveryEscape()

    def test_config_queries(self, context, recoverable):
        assert context.call_as(0xF00, recoverable.address, "get_escape_enabled") == [1, SECURITY, EXPIRY]
        assert context.call_as(0xF00, recoverable.address, "get_guardian") == [GUARDIAN]
