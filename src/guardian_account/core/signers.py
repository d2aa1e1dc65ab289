"""
Signers and signer signatures.

A signer is one of a closed set of key kinds:

- ``NativeSigner``: secp256k1 public key, the account's native curve
- ``Secp256r1Signer``: P-256 public key (hardware keys, passkeys without WebAuthn framing)
- ``WebauthnSigner``: P-256 credential bound to an origin and relying party
- ``SiwsSigner``: Ed25519 key signing a Sign-In-With-Solana style envelope

Accounts never store keys directly. Each signer is reduced to a *GUID*, a hash
over the kind's tag and its key material, and only the GUID is compared and
persisted. ``SignerRegistry`` keeps the key material of linked signers so the
full ``Signer`` can be reconstructed from a GUID.

All types here round-trip through a flat felt encoding (calldata and
transaction signatures), decoded by ``signer_from_calldata`` and
``parse_signature_array``.
"""

from __future__ import annotations

import base64
import hashlib
import logging
from dataclasses import dataclass
from enum import IntEnum
from typing import Dict, Iterator, List, Optional, Sequence, Tuple, Type, Union

from guardian_account.core import crypto_utils
from guardian_account.core.account_exceptions import (
    InvalidCalldataError,
    InvalidSignatureFormatError,
    StructuralError,
)
from guardian_account.core.config import short_string_to_int
from guardian_account.core.typed_signing import FELT_BOUND, compute_hash_on_elements

logger = logging.getLogger(__name__)


class SignerType(IntEnum):
    NATIVE = 0
    SECP256R1 = 1
    WEBAUTHN = 2
    SIWS = 3


SIGNER_TAGS = {
    SignerType.NATIVE: short_string_to_int("Native Signer"),
    SignerType.SECP256R1: short_string_to_int("Secp256r1 Signer"),
    SignerType.WEBAUTHN: short_string_to_int("Webauthn Signer"),
    SignerType.SIWS: short_string_to_int("SIWS Signer"),
}

# WebAuthn authenticator flags
FLAG_USER_PRESENT = 0x01
FLAG_USER_VERIFIED = 0x04


# ==================== Felt reader ====================


class CalldataReader:
    """Sequential reader over a felt list that raises ``error_cls`` on malformed input."""

    def __init__(self, data: Sequence[int], error_cls: Type[StructuralError] = InvalidCalldataError) -> None:
        self._data = list(data)
        self._pos = 0
        self._error_cls = error_cls

    def read(self, bound: int = FELT_BOUND) -> int:
        if self._pos >= len(self._data):
            raise self._error_cls("unexpected end of data")
        value = self._data[self._pos]
        if not isinstance(value, int) or isinstance(value, bool) or not 0 <= value < bound:
            raise self._error_cls(f"value out of range at position {self._pos}")
        self._pos += 1
        return value

    def read_bool(self) -> bool:
        return bool(self.read(bound=2))

    def read_bytes(self) -> bytes:
        length = self.read()
        if length > len(self._data) - self._pos:
            raise self._error_cls("byte string longer than remaining data")
        return bytes(self.read(bound=256) for _ in range(length))

    def read_span(self) -> Tuple[int, ...]:
        """Length-prefixed felt array."""
        length = self.read()
        if length > len(self._data) - self._pos:
            raise self._error_cls("array longer than remaining data")
        return tuple(self.read() for _ in range(length))

    def error(self, message: str) -> StructuralError:
        return self._error_cls(message)

    def remaining(self) -> int:
        return len(self._data) - self._pos

    def assert_consumed(self) -> None:
        if self._pos != len(self._data):
            raise self._error_cls(f"{len(self._data) - self._pos} trailing elements")


def _encode_bytes(value: bytes) -> List[int]:
    return [len(value), *value]


# ==================== Signers ====================


@dataclass(frozen=True)
class NativeSigner:
    x: int
    y: int

    signer_type = SignerType.NATIVE

    def key_elements(self) -> Tuple[int, ...]:
        return (self.x, self.y)

    def guid(self) -> int:
        return signer_guid(self)

    def to_calldata(self) -> List[int]:
        return [int(self.signer_type), self.x, self.y]


@dataclass(frozen=True)
class Secp256r1Signer:
    x: int
    y: int

    signer_type = SignerType.SECP256R1

    def key_elements(self) -> Tuple[int, ...]:
        return (self.x, self.y)

    def guid(self) -> int:
        return signer_guid(self)

    def to_calldata(self) -> List[int]:
        return [int(self.signer_type), self.x, self.y]


@dataclass(frozen=True)
class WebauthnSigner:
    origin: bytes
    rp_id_hash: int
    x: int
    y: int

    signer_type = SignerType.WEBAUTHN

    def key_elements(self) -> Tuple[int, ...]:
        return (compute_hash_on_elements(self.origin), self.rp_id_hash, self.x, self.y)

    def guid(self) -> int:
        return signer_guid(self)

    def to_calldata(self) -> List[int]:
        return [int(self.signer_type), *_encode_bytes(self.origin), self.rp_id_hash, self.x, self.y]


@dataclass(frozen=True)
class SiwsSigner:
    pubkey: int

    signer_type = SignerType.SIWS

    def key_elements(self) -> Tuple[int, ...]:
        return (self.pubkey,)

    def guid(self) -> int:
        return signer_guid(self)

    def to_calldata(self) -> List[int]:
        return [int(self.signer_type), self.pubkey]


Signer = Union[NativeSigner, Secp256r1Signer, WebauthnSigner, SiwsSigner]


def signer_guid(signer: Signer) -> int:
    """GUID of a signer: hash over its kind tag followed by its key material."""
    return compute_hash_on_elements([SIGNER_TAGS[signer.signer_type], *signer.key_elements()])


def read_signer(reader: CalldataReader) -> Signer:
    tag = reader.read()
    if tag == SignerType.NATIVE:
        return NativeSigner(reader.read(), reader.read())
    if tag == SignerType.SECP256R1:
        return Secp256r1Signer(reader.read(), reader.read())
    if tag == SignerType.WEBAUTHN:
        origin = reader.read_bytes()
        return WebauthnSigner(origin, reader.read(), reader.read(), reader.read())
    if tag == SignerType.SIWS:
        return SiwsSigner(reader.read())
    raise reader.error(f"unknown signer type {tag}")


def signer_from_calldata(calldata: Sequence[int]) -> Signer:
    """Decode exactly one signer from ``calldata``."""
    reader = CalldataReader(calldata)
    signer = read_signer(reader)
    reader.assert_consumed()
    return signer


def read_optional_signer(reader: CalldataReader) -> Optional[Signer]:
    """Optional signer: ``[0, signer...]`` for a value, ``[1]`` for none."""
    variant = reader.read(bound=2)
    if variant == 1:
        return None
    return read_signer(reader)


def optional_signer_to_calldata(signer: Optional[Signer]) -> List[int]:
    if signer is None:
        return [1]
    return [0, *signer.to_calldata()]


# ==================== Signature payloads ====================


@dataclass(frozen=True)
class EcdsaSignature:
    r: int
    s: int

    def to_calldata(self) -> List[int]:
        return [self.r, self.s]


@dataclass(frozen=True)
class WebauthnAssertion:
    """
    WebAuthn assertion.

    The client data JSON is rebuilt from the message hash (the challenge) and
    the signer's origin; only the part after ``crossOrigin`` travels with the
    signature.
    """

    cross_origin: bool
    client_data_json_outro: bytes
    flags: int
    sign_count: int
    r: int
    s: int

    def to_calldata(self) -> List[int]:
        return [
            int(self.cross_origin),
            *_encode_bytes(self.client_data_json_outro),
            self.flags,
            self.sign_count,
            self.r,
            self.s,
        ]


@dataclass(frozen=True)
class SiwsEnvelope:
    domain: bytes
    signature: bytes

    def to_calldata(self) -> List[int]:
        if len(self.signature) != 64:
            raise InvalidSignatureFormatError("ed25519 signature must be 64 bytes")
        return [
            *_encode_bytes(self.domain),
            int.from_bytes(self.signature[:32], "big"),
            int.from_bytes(self.signature[32:], "big"),
        ]


SignaturePayload = Union[EcdsaSignature, WebauthnAssertion, SiwsEnvelope]


@dataclass(frozen=True)
class SignerSignature:
    """A signer paired with its signature payload. Built per verification, never stored."""

    signer: Signer
    payload: SignaturePayload

    def to_calldata(self) -> List[int]:
        return [*self.signer.to_calldata(), *self.payload.to_calldata()]

    def is_valid_signature(self, message_hash: int) -> bool:
        return verify_signer_signature(self, message_hash)


def _read_payload(reader: CalldataReader, signer_type: SignerType) -> SignaturePayload:
    if signer_type in (SignerType.NATIVE, SignerType.SECP256R1):
        return EcdsaSignature(reader.read(), reader.read())
    if signer_type == SignerType.WEBAUTHN:
        cross_origin = reader.read_bool()
        outro = reader.read_bytes()
        flags = reader.read(bound=256)
        sign_count = reader.read(bound=2**32)
        return WebauthnAssertion(cross_origin, outro, flags, sign_count, reader.read(), reader.read())
    domain = reader.read_bytes()
    high = reader.read()
    low = reader.read()
    return SiwsEnvelope(domain, high.to_bytes(32, "big") + low.to_bytes(32, "big"))


def read_signer_signature(reader: CalldataReader) -> SignerSignature:
    signer = read_signer(reader)
    return SignerSignature(signer, _read_payload(reader, signer.signer_type))


def serialize_signatures(signatures: Sequence[SignerSignature]) -> List[int]:
    """Encode a signature list as ``[count, signer_signature...]``."""
    result = [len(signatures)]
    for signer_signature in signatures:
        result.extend(signer_signature.to_calldata())
    return result


def parse_signature_array(signature: Sequence[int]) -> List[SignerSignature]:
    """
    Decode a transaction signature into signer signatures.

    Raises:
        InvalidSignatureFormatError: If the data is truncated, has trailing
            elements or contains out-of-range values.
    """
    reader = CalldataReader(signature, InvalidSignatureFormatError)
    count = reader.read()
    if count > reader.remaining():
        raise InvalidSignatureFormatError("signature count exceeds data")
    result = [read_signer_signature(reader) for _ in range(count)]
    reader.assert_consumed()
    return result


# ==================== Verification ====================


def _b64url(data: bytes) -> bytes:
    return base64.urlsafe_b64encode(data).rstrip(b"=")


def webauthn_client_data_json(message_hash: int, origin: bytes, cross_origin: bool, outro: bytes) -> bytes:
    return (
        b'{"type":"webauthn.get","challenge":"'
        + _b64url(crypto_utils.felt_to_bytes(message_hash))
        + b'","origin":"'
        + origin
        + b'","crossOrigin":'
        + (b"true" if cross_origin else b"false")
        + outro
        + b"}"
    )


def webauthn_signed_data(signer: WebauthnSigner, assertion: WebauthnAssertion, message_hash: int) -> bytes:
    """authenticatorData || SHA-256(clientDataJSON), the bytes a WebAuthn authenticator signs."""
    authenticator_data = (
        crypto_utils.felt_to_bytes(signer.rp_id_hash)
        + bytes([assertion.flags])
        + assertion.sign_count.to_bytes(4, "big")
    )
    client_data = webauthn_client_data_json(
        message_hash, signer.origin, assertion.cross_origin, assertion.client_data_json_outro
    )
    return authenticator_data + hashlib.sha256(client_data).digest()


def siws_message(domain: bytes, pubkey: int, message_hash: int) -> bytes:
    return (
        domain
        + b" wants you to sign in with your Solana account:\n"
        + crypto_utils.felt_to_bytes(pubkey).hex().encode("ascii")
        + b"\n\nAuthorize transaction with hash: 0x"
        + crypto_utils.felt_to_bytes(message_hash).hex().encode("ascii")
    )


def _verify_webauthn(signer: WebauthnSigner, assertion: WebauthnAssertion, message_hash: int) -> bool:
    if assertion.flags & FLAG_USER_PRESENT == 0 or assertion.flags & FLAG_USER_VERIFIED == 0:
        logger.warning(
            "WebAuthn assertion rejected: user not present or not verified",
            extra={"event": "signer.webauthn_flags_rejected", "flags": assertion.flags},
        )
        return False
    if assertion.client_data_json_outro and not assertion.client_data_json_outro.startswith(b","):
        return False
    signed = webauthn_signed_data(signer, assertion, message_hash)
    return crypto_utils.verify_secp256r1(signer.x, signer.y, signed, assertion.r, assertion.s)


def verify_signer_signature(signer_signature: SignerSignature, message_hash: int) -> bool:
    """
    Verify one signer's signature over ``message_hash``.

    Dispatches on the signer kind; a payload that does not match the kind is
    rejected rather than coerced.
    """
    signer = signer_signature.signer
    payload = signer_signature.payload
    signer_type = signer.signer_type

    if signer_type == SignerType.NATIVE:
        if not isinstance(payload, EcdsaSignature):
            return False
        return crypto_utils.verify_secp256k1(signer.x, signer.y, message_hash, payload.r, payload.s)
    if signer_type == SignerType.SECP256R1:
        if not isinstance(payload, EcdsaSignature):
            return False
        message = crypto_utils.felt_to_bytes(message_hash)
        return crypto_utils.verify_secp256r1(signer.x, signer.y, message, payload.r, payload.s)
    if signer_type == SignerType.WEBAUTHN:
        if not isinstance(payload, WebauthnAssertion):
            return False
        return _verify_webauthn(signer, payload, message_hash)
    if signer_type == SignerType.SIWS:
        if not isinstance(payload, SiwsEnvelope):
            return False
        return crypto_utils.verify_ed25519(
            signer.pubkey, siws_message(payload.domain, signer.pubkey, message_hash), payload.signature
        )
    raise InvalidSignatureFormatError(f"unknown signer type {signer_type}")


# ==================== Registry ====================


class SignerRegistry:
    """Maps signer GUIDs to the key material needed to rebuild the signer."""

    def __init__(self) -> None:
        self._signers: Dict[int, Signer] = {}

    def link(self, signer: Signer) -> int:
        guid = signer.guid()
        self._signers[guid] = signer
        return guid

    def get(self, guid: int) -> Optional[Signer]:
        return self._signers.get(guid)

    def __contains__(self, guid: int) -> bool:
        return guid in self._signers

    def __iter__(self) -> Iterator[int]:
        return iter(self._signers)

    def __len__(self) -> int:
        return len(self._signers)
