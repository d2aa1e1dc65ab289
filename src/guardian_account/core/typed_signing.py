"""
Typed Data Hashing - Domain-Separated Off-Chain Messages

Provides the structured hashing used for everything an account signs
off-chain (outside executions, owner rotation proofs).

Every hash over a list uses ``compute_hash_on_elements``: a left fold over the
elements starting from zero, with the element count folded in *last*. Putting
the length at the end means a truncated list never hashes like a complete
shorter one, and an empty list still has a well-defined, distinct hash.

Message layout:
    message = H("StarkNet Message", H(domain), account_address, H(struct))
"""

import hashlib
from dataclasses import dataclass
from typing import Iterable, Sequence

from guardian_account.core.config import short_string_to_int

FELT_BOUND = 2**256
_MASK_250 = 2**250 - 1

MESSAGE_PREFIX = short_string_to_int("StarkNet Message")


def _to_word(value: int) -> bytes:
    if not isinstance(value, int) or isinstance(value, bool) or not 0 <= value < FELT_BOUND:
        raise ValueError(f"Value out of felt range: {value!r}")
    return value.to_bytes(32, "big")


def hash_elements(*values: int) -> int:
    """Hash a fixed number of felts into one."""
    digest = hashlib.sha3_256(b"".join(_to_word(v) for v in values)).digest()
    return int.from_bytes(digest, "big")


def compute_hash_on_elements(elements: Iterable[int]) -> int:
    """Left-fold hash of ``elements`` with the count appended as the final element."""
    result = 0
    count = 0
    for element in elements:
        result = hash_elements(result, element)
        count += 1
    return hash_elements(result, count)


def get_selector_from_name(name: str) -> int:
    """Entry-point selector: 250-bit SHA3 of the ASCII function name."""
    return int.from_bytes(hashlib.sha3_256(name.encode("ascii")).digest(), "big") & _MASK_250


def get_type_hash(type_definition: str) -> int:
    """Type hash of a struct definition string."""
    return get_selector_from_name(type_definition)


DOMAIN_TYPE_HASH = get_type_hash("StarkNetDomain(name:felt,version:felt,chainId:felt)")


@dataclass(frozen=True)
class TypedDataDomain:
    """
    Domain separator.

    Prevents signature replay across different applications (name),
    versions of the message format (version) and chains (chain_id).
    """

    name: int
    version: int
    chain_id: int

    def hash(self) -> int:
        return compute_hash_on_elements([DOMAIN_TYPE_HASH, self.name, self.version, self.chain_id])


def hash_typed_message(domain: TypedDataDomain, account_address: int, struct_hash: int) -> int:
    """
    Wrap a struct hash into the final message hash an account signs.

    Args:
        domain: Domain separator
        account_address: Account the signature is meant for
        struct_hash: Hash of the typed struct being signed

    Returns:
        Felt message hash
    """
    return compute_hash_on_elements([MESSAGE_PREFIX, domain.hash(), account_address, struct_hash])


def felt_sequence(values: Sequence[int]) -> tuple:
    """Validate and freeze a sequence of felts."""
    for value in values:
        _to_word(value)
    return tuple(values)
