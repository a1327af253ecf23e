"""Message signing and verification with peer keys."""

from __future__ import annotations

import hashlib
from typing import Optional, Tuple, Union

from cryptography.exceptions import InvalidSignature, UnsupportedAlgorithm
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec, ed25519, padding, rsa

from meshpub.message import Message, _encode_varint, _iter_fields, _read_varint

SIGN_PREFIX = b"libp2p-pubsub:"

_KEY_RSA = 0
_KEY_ED25519 = 1
_KEY_SECP256K1 = 2
_KEY_ECDSA = 3

_MULTIHASH_IDENTITY = 0x00
_MULTIHASH_SHA256 = 0x12
# marshalled keys up to this length are inlined in the peer ID
_MAX_INLINE_KEY_LENGTH = 42

PublicKey = Union[rsa.RSAPublicKey, ed25519.Ed25519PublicKey, ec.EllipticCurvePublicKey]
PrivateKey = Union[rsa.RSAPrivateKey, ed25519.Ed25519PrivateKey, ec.EllipticCurvePrivateKey]


class SignatureError(ValueError):
    """Raised when a message signature or signing key is missing or invalid."""


def with_sign_prefix(data: bytes) -> bytes:
    """Prepend the pubsub signing prefix."""
    return SIGN_PREFIX + data


def marshal_public_key(key: PublicKey) -> bytes:
    """Encode a public key in the peer key protobuf format."""
    if isinstance(key, ed25519.Ed25519PublicKey):
        key_type = _KEY_ED25519
        raw = key.public_bytes(serialization.Encoding.Raw, serialization.PublicFormat.Raw)
    elif isinstance(key, rsa.RSAPublicKey):
        key_type = _KEY_RSA
        raw = key.public_bytes(
            serialization.Encoding.DER, serialization.PublicFormat.SubjectPublicKeyInfo
        )
    elif isinstance(key, ec.EllipticCurvePublicKey):
        if isinstance(key.curve, ec.SECP256K1):
            key_type = _KEY_SECP256K1
            raw = key.public_bytes(
                serialization.Encoding.X962, serialization.PublicFormat.CompressedPoint
            )
        else:
            key_type = _KEY_ECDSA
            raw = key.public_bytes(
                serialization.Encoding.DER, serialization.PublicFormat.SubjectPublicKeyInfo
            )
    else:
        raise SignatureError(f"unsupported key type: {type(key).__name__}")
    return b"\x08" + _encode_varint(key_type) + b"\x12" + _encode_varint(len(raw)) + raw


def unmarshal_public_key(data: bytes) -> PublicKey:
    """Decode a public key from the peer key protobuf format."""
    key_type: Optional[int] = None
    raw: Optional[bytes] = None
    try:
        for number, wire_type, value in _iter_fields(data):
            if number == 1 and wire_type == 0:
                key_type = value
            elif number == 2 and wire_type == 2:
                raw = bytes(value)
    except ValueError as exc:
        raise SignatureError(f"malformed public key: {exc}") from exc
    if key_type is None or raw is None:
        raise SignatureError("malformed public key: missing type or data")

    try:
        if key_type == _KEY_ED25519:
            return ed25519.Ed25519PublicKey.from_public_bytes(raw)
        if key_type == _KEY_SECP256K1:
            return ec.EllipticCurvePublicKey.from_encoded_point(ec.SECP256K1(), raw)
        if key_type in (_KEY_RSA, _KEY_ECDSA):
            key = serialization.load_der_public_key(raw)
            expected = rsa.RSAPublicKey if key_type == _KEY_RSA else ec.EllipticCurvePublicKey
            if not isinstance(key, expected):
                raise SignatureError("public key data does not match its declared type")
            return key
    except (ValueError, UnsupportedAlgorithm) as exc:
        if isinstance(exc, SignatureError):
            raise
        raise SignatureError(f"malformed public key: {exc}") from exc
    raise SignatureError(f"unknown key type {key_type}")


def peer_id_from_public_key(key: PublicKey) -> bytes:
    """Derive the peer ID (a multihash of the marshalled key) from a public key."""
    encoded = marshal_public_key(key)
    if len(encoded) <= _MAX_INLINE_KEY_LENGTH:
        return bytes([_MULTIHASH_IDENTITY]) + _encode_varint(len(encoded)) + encoded
    digest = hashlib.sha256(encoded).digest()
    return bytes([_MULTIHASH_SHA256]) + _encode_varint(len(digest)) + digest


def _decode_multihash(pid: bytes) -> Tuple[int, bytes]:
    try:
        code, pos = _read_varint(pid, 0)
        length, pos = _read_varint(pid, pos)
    except ValueError as exc:
        raise SignatureError(f"invalid peer ID: {exc}") from exc
    digest = pid[pos:]
    if len(digest) != length:
        raise SignatureError("invalid peer ID: digest length mismatch")
    return code, digest


def extract_public_key(pid: bytes) -> Optional[PublicKey]:
    """The public key inlined in a peer ID, or None if the ID only holds a hash."""
    code, digest = _decode_multihash(pid)
    if code != _MULTIHASH_IDENTITY:
        return None
    return unmarshal_public_key(digest)


def message_pub_key(msg: Message) -> PublicKey:
    """The key that must have signed ``msg``, checked against its author."""
    pid = msg.from_peer or b""
    _decode_multihash(pid)

    if msg.key is None:
        try:
            key = extract_public_key(pid)
        except SignatureError as exc:
            raise SignatureError(f"cannot extract signing key: {exc}") from exc
        if key is None:
            raise SignatureError("cannot extract signing key")
        return key

    try:
        key = unmarshal_public_key(msg.key)
    except SignatureError as exc:
        raise SignatureError(f"cannot unmarshal signing key: {exc}") from exc
    if peer_id_from_public_key(key) != pid:
        raise SignatureError(f"bad signing key; source ID {pid.hex()} doesn't match key")
    return key


def _sign(key: PrivateKey, data: bytes) -> bytes:
    if isinstance(key, ed25519.Ed25519PrivateKey):
        return key.sign(data)
    if isinstance(key, rsa.RSAPrivateKey):
        return key.sign(data, padding.PKCS1v15(), hashes.SHA256())
    if isinstance(key, ec.EllipticCurvePrivateKey):
        return key.sign(data, ec.ECDSA(hashes.SHA256()))
    raise SignatureError(f"unsupported key type: {type(key).__name__}")


def _verify(key: PublicKey, data: bytes, signature: bytes) -> bool:
    try:
        if isinstance(key, ed25519.Ed25519PublicKey):
            key.verify(signature, data)
        elif isinstance(key, rsa.RSAPublicKey):
            key.verify(signature, data, padding.PKCS1v15(), hashes.SHA256())
        elif isinstance(key, ec.EllipticCurvePublicKey):
            key.verify(signature, data, ec.ECDSA(hashes.SHA256()))
        else:
            raise SignatureError(f"unsupported key type: {type(key).__name__}")
    except InvalidSignature:
        return False
    return True


def verify_message_signature(msg: Message) -> None:
    """Check the signature of ``msg``; raise SignatureError if it does not hold."""
    key = message_pub_key(msg)
    if msg.signature is None:
        raise SignatureError("invalid signature")
    payload = with_sign_prefix(msg.unsigned().marshal())
    if not _verify(key, payload, msg.signature):
        raise SignatureError("invalid signature")


def sign_message(pid: bytes, key: PrivateKey, msg: Message) -> None:
    """Sign ``msg`` in place, attaching the public key if ``pid`` does not inline it."""
    payload = with_sign_prefix(msg.marshal())
    msg.signature = _sign(key, payload)

    try:
        inlined = extract_public_key(pid)
    except SignatureError:
        inlined = None
    if inlined is None:
        msg.key = marshal_public_key(key.public_key())