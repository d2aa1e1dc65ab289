"""
Tests for typed message hashing and selectors.
"""

import pytest

from guardian_account.core import config
from guardian_account.core.typed_signing import (
    FELT_BOUND,
    TypedDataDomain,
    compute_hash_on_elements,
    felt_sequence,
    get_selector_from_name,
    hash_elements,
    hash_typed_message,
)


class TestComputeHashOnElements:
    def test_empty_list_differs_from_single_zero(self):
        assert compute_hash_on_elements([]) != compute_hash_on_elements([0])

    def test_length_is_folded_in(self):
        """A prefix never hashes like the full list."""
        assert compute_hash_on_elements([1, 2]) != compute_hash_on_elements([1, 2, 0])

    def test_order_matters(self):
        assert compute_hash_on_elements([1, 2]) != compute_hash_on_elements([2, 1])

    def test_accepts_generators(self):
        assert compute_hash_on_elements(x for x in (4, 5)) == compute_hash_on_elements([4, 5])

    def test_result_is_a_felt(self):
        assert 0 <= compute_hash_on_elements([1, 2, 3]) < FELT_BOUND

    @pytest.mark.parametrize("bad", [-1, FELT_BOUND, True, "1"])
    def test_rejects_values_outside_felt_range(self, bad):
        with pytest.raises(ValueError):
            hash_elements(0, bad)


class TestSelectors:
    def test_selector_is_250_bits(self):
        assert get_selector_from_name("__execute__") < 2**250

    def test_selectors_are_distinct(self):
        names = ["__validate__", "__execute__", "escape_owner", "escape_guardian", "change_owner"]
        assert len({get_selector_from_name(name) for name in names}) == len(names)

    def test_selector_is_stable(self):
        assert get_selector_from_name("escape_owner") == get_selector_from_name("escape_owner")


class TestTypedMessage:
    def test_domain_hash_depends_on_chain(self):
        mainnet = TypedDataDomain(1, 1, config.short_string_to_int("SN_MAIN"))
        sepolia = TypedDataDomain(1, 1, config.short_string_to_int("SN_SEPOLIA"))
        assert mainnet.hash() != sepolia.hash()

    def test_message_bound_to_account(self):
        domain = TypedDataDomain(1, 1, config.CHAIN_ID)
        assert hash_typed_message(domain, 100, 7) != hash_typed_message(domain, 101, 7)

    def test_message_bound_to_domain_version(self):
        assert hash_typed_message(TypedDataDomain(1, 1, 5), 100, 7) != hash_typed_message(
            TypedDataDomain(1, 2, 5), 100, 7
        )


class TestFeltSequence:
    def test_freezes_to_tuple(self):
        assert felt_sequence([1, 2, 3]) == (1, 2, 3)

    def test_rejects_negative(self):
        with pytest.raises(ValueError):
            felt_sequence([1, -2])
