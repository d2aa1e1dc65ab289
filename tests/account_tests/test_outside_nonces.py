"""
Tests for OutsideNonceStore.
"""

import pytest

from guardian_account.core.account_exceptions import DuplicatedOutsideNonceError
from guardian_account.core.nonce_tracker import OutsideNonceStore


class TestOutsideNonceStore:
    def test_fresh_nonce_is_valid(self):
        assert OutsideNonceStore().is_valid_nonce(42)

    def test_consume_marks_used(self):
        store = OutsideNonceStore()
        store.consume(42)
        assert not store.is_valid_nonce(42)
        assert store.is_valid_nonce(43)

    def test_nonces_need_not_be_sequential(self):
        store = OutsideNonceStore()
        for nonce in (900, 3, 2**200):
            store.consume(nonce)
        assert len(store) == 3

    def test_duplicate_rejected(self):
        store = OutsideNonceStore()
        store.consume(7)
        with pytest.raises(DuplicatedOutsideNonceError):
            store.consume(7)
        assert len(store) == 1

