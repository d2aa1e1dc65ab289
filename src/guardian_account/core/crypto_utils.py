"""Utility helpers for the curves the account accepts signatures on.

- secp256k1: the account's native curve, low-S canonical signatures only
- secp256r1 (P-256): hardware keys and WebAuthn credentials
- Ed25519: Sign-In-With-Solana envelopes

Verification helpers return ``False`` for any signature that does not verify,
including malformed points and out-of-range components.
"""

from __future__ import annotations

from typing import Tuple

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import ec, ed25519
from cryptography.hazmat.primitives.asymmetric.utils import (
    decode_dss_signature,
    encode_dss_signature,
)

_SECP256K1 = ec.SECP256K1()
_SECP256R1 = ec.SECP256R1()
_SECP256K1_ORDER = int("FFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFEBAAEDCE6AF48A03BBFD25E8CD0364141", 16)
_SECP256R1_ORDER = int("FFFFFFFF00000000FFFFFFFFFFFFFFFFBCE6FAADA7179E84F3B9CAC2FC632551", 16)

_ORDERS = {
    "secp256k1": _SECP256K1_ORDER,
    "secp256r1": _SECP256R1_ORDER,
}
_CURVES = {
    "secp256k1": _SECP256K1,
    "secp256r1": _SECP256R1,
}


def felt_to_bytes(value: int, length: int = 32) -> bytes:
    return value.to_bytes(length, "big")


def _public_numbers(public_key: ec.EllipticCurvePublicKey) -> Tuple[int, int]:
    numbers = public_key.public_numbers()
    return numbers.x, numbers.y


def load_public_key(curve_name: str, x: int, y: int) -> ec.EllipticCurvePublicKey:
    """Load an uncompressed public key; raises ValueError if the point is not on the curve."""
    return ec.EllipticCurvePublicNumbers(x, y, _CURVES[curve_name]).public_key()


def _validate_signature_range(curve_name: str, r: int, s: int) -> None:
    """
    Ensure signature components fall within the curve order.

    Raises:
        ValueError: If either component is out of range.
    """
    order = _ORDERS[curve_name]
    if not (1 <= r < order):
        raise ValueError("Signature r component out of range.")
    if not (1 <= s < order):
        raise ValueError("Signature s component out of range.")


def canonicalize_signature_components(r: int, s: int, curve_name: str = "secp256k1") -> Tuple[int, int]:
    """
    Normalize signature components to canonical low-S form.

    Args:
        r: Signature r component
        s: Signature s component
        curve_name: Curve the signature was produced on

    Returns:
        Tuple of canonical (r, s)
    """
    _validate_signature_range(curve_name, r, s)
    order = _ORDERS[curve_name]
    if s > order // 2:
        s = order - s
    return r, s


def is_canonical_signature(r: int, s: int, curve_name: str = "secp256k1") -> bool:
    """
    Check whether signature components are already canonical.

    Returns:
        True if components fall within range and have low-S form.
    """
    try:
        _validate_signature_range(curve_name, r, s)
    except ValueError:
        return False
    return s <= _ORDERS[curve_name] // 2


# ==================== ECDSA ====================


def generate_ecdsa_keypair(curve_name: str = "secp256k1") -> Tuple[ec.EllipticCurvePrivateKey, int, int]:
    """Generate a keypair, returning the private key and the public (x, y)."""
    private_key = ec.generate_private_key(_CURVES[curve_name])
    x, y = _public_numbers(private_key.public_key())
    return private_key, x, y


def deterministic_ecdsa_keypair(seed: bytes, curve_name: str = "secp256k1") -> Tuple[ec.EllipticCurvePrivateKey, int, int]:
    if len(seed) < 32:
        seed = seed.ljust(32, b"\x00")
    order = _ORDERS[curve_name]
    private_value = int.from_bytes(seed[:32], "big") % order or 1
    private_key = ec.derive_private_key(private_value, _CURVES[curve_name])
    x, y = _public_numbers(private_key.public_key())
    return private_key, x, y


def sign_ecdsa(private_key: ec.EllipticCurvePrivateKey, message: bytes) -> Tuple[int, int]:
    """Sign ``message`` (SHA-256 digest) and return canonical (r, s)."""
    der_signature = private_key.sign(message, ec.ECDSA(hashes.SHA256()))
    r, s = decode_dss_signature(der_signature)
    return canonicalize_signature_components(r, s, private_key.curve.name)


def verify_ecdsa(curve_name: str, x: int, y: int, message: bytes, r: int, s: int) -> bool:
    """
    Verify an ECDSA/SHA-256 signature over ``message``.

    Only low-S signatures are accepted, so a valid signature cannot be
    malleated into a second valid one.
    """
    if not is_canonical_signature(r, s, curve_name):
        return False
    try:
        public_key = load_public_key(curve_name, x, y)
        public_key.verify(encode_dss_signature(r, s), message, ec.ECDSA(hashes.SHA256()))
        return True
    except (InvalidSignature, ValueError):
        return False


def verify_secp256k1(x: int, y: int, message_hash: int, r: int, s: int) -> bool:
    return verify_ecdsa("secp256k1", x, y, felt_to_bytes(message_hash), r, s)


def verify_secp256r1(x: int, y: int, message: bytes, r: int, s: int) -> bool:
    return verify_ecdsa("secp256r1", x, y, message, r, s)


# ==================== Ed25519 ====================


def generate_ed25519_keypair() -> Tuple[ed25519.Ed25519PrivateKey, int]:
    sk = ed25519.Ed25519PrivateKey.generate()
    return sk, int.from_bytes(sk.public_key().public_bytes_raw(), "big")


def sign_ed25519(private_key: ed25519.Ed25519PrivateKey, message: bytes) -> bytes:
    return private_key.sign(message)


def verify_ed25519(public_key: int, message: bytes, signature: bytes) -> bool:
    if len(signature) != 64:
        return False
    try:
        ed25519.Ed25519PublicKey.from_public_bytes(felt_to_bytes(public_key)).verify(signature, message)
        return True
    except (InvalidSignature, ValueError):
        return False
