"""
Property-based tests for the escape protocol.

The state machine drives EscapeStateMachine with arbitrary interleavings of
triggers, completions, cancellations, guardian backup changes and clock
advances, and checks after every step that:

1. At most one escape exists, and its type is set exactly when ready_at is
2. A guardian backup never outlives the guardian
3. Attempt counters stay within the ceiling
4. The reported status agrees with the lifecycle windows

Usage:
    pytest tests/account_tests/property -v
"""

import pytest
from hypothesis import given, settings, strategies as st
from hypothesis.stateful import RuleBasedStateMachine, invariant, precondition, rule

from guardian_account.core import config
from guardian_account.core.account_exceptions import AccountError
from guardian_account.core.contracts.escape import (
    EscapeState,
    EscapeStateMachine,
    EscapeStatus,
    EscapeType,
    get_escape_status,
)
from guardian_account.core.contracts.signature_validator import AccountSignerState
from guardian_account.core.execution import TxInfo

from mocks import T0

SECURITY = config.MIN_ESCAPE_SECURITY_PERIOD

# Non-zero signer GUIDs
guids = st.integers(min_value=1, max_value=2**64)

ESCAPE_TX = TxInfo(
    version=config.TX_V3,
    account_contract_address=1,
    transaction_hash=1,
    signature=(),
    chain_id=config.CHAIN_ID,
)


class Host:
    def __init__(self):
        self.signers = AccountSignerState(owner_guid=1, guardian_guid=2)
        self.escape_state = EscapeState(security_period=SECURITY)
        self.now = T0
        self.events = []

    def get_signer_state(self):
        return self.signers

    def get_escape_state(self):
        return self.escape_state

    def get_block_timestamp(self):
        return self.now

    def emit(self, event):
        self.events.append(event)


# ============================================================================
# LIFECYCLE WINDOWS
# ============================================================================


class TestStatusLattice:
    @given(
        trigger_time=st.integers(min_value=1, max_value=2**40),
        security_period=st.integers(min_value=1, max_value=2**30),
        expiry_period=st.integers(min_value=1, max_value=2**30),
        offset=st.integers(min_value=0, max_value=2**32),
    )
    def test_status_follows_windows(self, trigger_time, security_period, expiry_period, offset):
        ready_at = trigger_time + security_period
        now = trigger_time + offset
        status = get_escape_status(ready_at, now, expiry_period)

        if now < ready_at:
            assert status == EscapeStatus.NOT_READY
        elif now < ready_at + expiry_period:
            assert status == EscapeStatus.READY
        else:
            assert status == EscapeStatus.EXPIRED

    @given(now=st.integers(min_value=0, max_value=2**64), expiry_period=st.integers(min_value=0, max_value=2**32))
    def test_unset_escape_has_no_status(self, now, expiry_period):
        assert get_escape_status(0, now, expiry_period) == EscapeStatus.NONE

    @given(offsets=st.lists(st.integers(min_value=0, max_value=4 * SECURITY), min_size=2, max_size=20))
    def test_status_never_moves_backward(self, offsets):
        order = [EscapeStatus.NOT_READY, EscapeStatus.READY, EscapeStatus.EXPIRED]
        ready_at = T0 + SECURITY
        statuses = [get_escape_status(ready_at, T0 + offset, SECURITY) for offset in sorted(offsets)]
        positions = [order.index(status) for status in statuses]
        assert positions == sorted(positions)


# ============================================================================
# STATEFUL ESCAPE PROTOCOL
# ============================================================================


class EscapeProtocolMachine(RuleBasedStateMachine):
    def __init__(self):
        super().__init__()
        self.host = Host()
        self.machine = EscapeStateMachine(self.host)

    def _attempt(self, action):
        try:
            action()
        except AccountError:
            pass

    @rule(new_owner=guids)
    def trigger_owner_escape(self, new_owner):
        def action():
            self.machine.register_escape_attempt(EscapeType.OWNER, ESCAPE_TX)
            self.machine.trigger_escape_owner(new_owner)

        self._attempt(action)

    @rule(new_guardian=st.one_of(st.just(0), guids))
    def trigger_guardian_escape(self, new_guardian):
        def action():
            self.machine.register_escape_attempt(EscapeType.GUARDIAN, ESCAPE_TX)
            self.machine.trigger_escape_guardian(new_guardian)

        self._attempt(action)

    @rule()
    def escape_owner(self):
        self._attempt(self.machine.escape_owner)

    @rule()
    def escape_guardian(self):
        self._attempt(self.machine.escape_guardian)

    @rule()
    def cancel(self):
        self._attempt(self.machine.cancel_escape)

    @precondition(lambda self: self.host.signers.guardian_guid != 0)
    @rule(backup=st.one_of(st.just(0), guids))
    def change_guardian_backup(self, backup):
        # Mirrors the account: a backup change also clears any escape
        self.machine.reset_escape()
        self.machine.reset_escape_attempts()
        self.host.signers.guardian_backup_guid = backup

    @rule(seconds=st.integers(min_value=0, max_value=3 * SECURITY))
    def advance_time(self, seconds):
        self.host.now += seconds

    @invariant()
    def single_escape(self):
        escape = self.machine.get_escape()
        assert (escape.ready_at == 0) == (escape.escape_type == EscapeType.NONE)

    @invariant()
    def backup_requires_guardian(self):
        signers = self.host.signers
        assert signers.guardian_backup_guid == 0 or signers.guardian_guid != 0

    @invariant()
    def attempts_bounded(self):
        signers = self.host.signers
        assert signers.owner_escape_attempts <= config.MAX_ESCAPE_ATTEMPTS
        assert signers.guardian_escape_attempts <= config.MAX_ESCAPE_ATTEMPTS

    @invariant()
    def owner_never_null(self):
        assert self.host.signers.owner_guid != 0

    @invariant()
    def status_matches_escape(self):
        escape, status = self.machine.get_escape_and_status()
        assert status == get_escape_status(escape.ready_at, self.host.now, self.machine.expiry_period)


EscapeProtocolMachine.TestCase.settings = settings(max_examples=60, stateful_step_count=40, deadline=None)
TestEscapeProtocol = EscapeProtocolMachine.TestCase


@pytest.mark.parametrize("escape_type", [EscapeType.OWNER, EscapeType.GUARDIAN])
def test_attempt_ceiling_holds_for_any_burst(escape_type):
    host = Host()
    machine = EscapeStateMachine(host)
    accepted = 0
    for _ in range(3 * config.MAX_ESCAPE_ATTEMPTS):
        try:
            machine.register_escape_attempt(escape_type, ESCAPE_TX)
            accepted += 1
        except AccountError:
            pass
    assert accepted == config.MAX_ESCAPE_ATTEMPTS
