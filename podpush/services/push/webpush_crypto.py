"""
Web Push cryptography built from primitives.

Implements the pieces of RFC 8291 (Message Encryption for Web Push),
RFC 8188 (aes128gcm content encoding) and RFC 8292 (VAPID) that the
WebPushProvider needs. Only low-level primitives come from the
cryptography package (P-256 ECDH/ECDSA, HMAC-SHA256, AES-GCM); the
HKDF construction, key schedule, record framing, JWT assembly and
DER-to-JOSE signature conversion live here so they can be tested
independently of any HTTP code.
"""

import json
import os
import struct
import time
from base64 import urlsafe_b64decode, urlsafe_b64encode
from binascii import Error as BinasciiError
from typing import Optional, Tuple, Union
from urllib.parse import urlparse

from cryptography.exceptions import InvalidKey
from cryptography.hazmat.primitives import hashes, hmac
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.serialization import Encoding, PublicFormat

from podpush.services.push.constants import (
    P256_COORDINATE_LENGTH,
    P256_PRIVATE_KEY_LENGTH,
    P256_PUBLIC_KEY_LENGTH,
    VAPID_JWT_ALGORITHM,
    WEBPUSH_AUTH_SECRET_LENGTH,
    WEBPUSH_CONTENT_ENCODING,
    WEBPUSH_KEY_LENGTH,
    WEBPUSH_NONCE_LENGTH,
    WEBPUSH_RECORD_DELIMITER,
    WEBPUSH_RECORD_SIZE,
    WEBPUSH_SALT_LENGTH,
    WEBPUSH_TAG_LENGTH,
)
from podpush.services.push.exceptions import EncryptionError
from podpush.services.push.models import VapidKeyPair, WebPushSubscription

HASH_LENGTH = 32  # SHA-256 output size

KEY_INFO_PREFIX = b"WebPush: info\x00"
CEK_INFO = b"Content-Encoding: " + WEBPUSH_CONTENT_ENCODING.encode("ascii") + b"\x00"
NONCE_INFO = b"Content-Encoding: nonce\x00"

BytesOrB64 = Union[bytes, str]


# =============================================================================
# Encoding helpers
# =============================================================================


def b64url_encode(data: bytes) -> str:
    """Base64url encode without padding."""
    return urlsafe_b64encode(data).rstrip(b"=").decode("ascii")


def b64url_decode(value: str) -> bytes:
    """Base64url decode, tolerating missing padding.

    Raises:
        EncryptionError: If the value is not valid base64url
    """
    if not isinstance(value, str):
        raise EncryptionError("Expected a base64url string")
    padded = value + "=" * (-len(value) % 4)
    try:
        return urlsafe_b64decode(padded.encode("ascii"))
    except (BinasciiError, UnicodeEncodeError, ValueError) as e:
        raise EncryptionError(f"Invalid base64url value: {e}") from e


def _as_bytes(value: BytesOrB64) -> bytes:
    if isinstance(value, bytes):
        return value
    return b64url_decode(value)


# =============================================================================
# HKDF (RFC 5869, SHA-256)
# =============================================================================


def hkdf_extract(salt: bytes, ikm: bytes) -> bytes:
    """HKDF-Extract: PRK = HMAC-SHA256(salt, IKM)."""
    h = hmac.HMAC(salt or b"\x00" * HASH_LENGTH, hashes.SHA256())
    h.update(ikm)
    return h.finalize()


def hkdf_expand(prk: bytes, info: bytes, length: int) -> bytes:
    """HKDF-Expand: T(1) || T(2) || ... truncated to length bytes."""
    if length <= 0 or length > 255 * HASH_LENGTH:
        raise EncryptionError(f"Invalid HKDF output length: {length}")

    output = b""
    block = b""
    counter = 1
    while len(output) < length:
        h = hmac.HMAC(prk, hashes.SHA256())
        h.update(block + info + bytes([counter]))
        block = h.finalize()
        output += block
        counter += 1
    return output[:length]


def hkdf(salt: bytes, ikm: bytes, info: bytes, length: int) -> bytes:
    """One-shot HKDF (extract then expand)."""
    return hkdf_expand(hkdf_extract(salt, ikm), info, length)


# =============================================================================
# ECDSA signature conversion
# =============================================================================


def _read_der_length(data: bytes, offset: int) -> Tuple[int, int]:
    if offset >= len(data):
        raise EncryptionError("Truncated DER length")
    first = data[offset]
    offset += 1
    if first < 0x80:
        return first, offset

    num_bytes = first & 0x7F
    if num_bytes == 0 or num_bytes > 2 or offset + num_bytes > len(data):
        raise EncryptionError("Unsupported DER length encoding")
    return int.from_bytes(data[offset:offset + num_bytes], "big"), offset + num_bytes


def _read_der_integer(data: bytes, offset: int) -> Tuple[bytes, int]:
    if offset >= len(data) or data[offset] != 0x02:
        raise EncryptionError("Expected DER INTEGER")
    length, offset = _read_der_length(data, offset + 1)
    if length == 0 or offset + length > len(data):
        raise EncryptionError("Truncated DER INTEGER")
    return data[offset:offset + length], offset + length


def _fit_component(value: bytes, size: int) -> bytes:
    # DER prepends 0x00 when the high bit is set; strip it before padding
    stripped = value.lstrip(b"\x00")
    if len(stripped) > size:
        raise EncryptionError(f"Signature component longer than {size} bytes")
    return stripped.rjust(size, b"\x00")


def der_to_raw(signature: bytes, size: int = P256_COORDINATE_LENGTH) -> bytes:
    """Convert a DER ECDSA signature to the fixed-width R || S form used by JWS.

    Handles the sign-padding zero DER adds to integers whose high bit is
    set, short components (left-padded with zeros) and long-form lengths.

    Args:
        signature: DER SEQUENCE { INTEGER r, INTEGER s }
        size: Byte length of each component (32 for P-256)

    Returns:
        2 * size bytes

    Raises:
        EncryptionError: If the signature is not a well-formed DER signature
    """
    if len(signature) < 8 or signature[0] != 0x30:
        raise EncryptionError("Signature is not a DER SEQUENCE")

    seq_length, offset = _read_der_length(signature, 1)
    if offset + seq_length != len(signature):
        raise EncryptionError("DER SEQUENCE length mismatch")

    r, offset = _read_der_integer(signature, offset)
    s, offset = _read_der_integer(signature, offset)
    if offset != len(signature):
        raise EncryptionError("Trailing bytes after DER signature")

    return _fit_component(r, size) + _fit_component(s, size)


# =============================================================================
# Keys
# =============================================================================


def encode_public_key(public_key: ec.EllipticCurvePublicKey) -> bytes:
    """Uncompressed X9.62 point (0x04 || X || Y)."""
    return public_key.public_bytes(Encoding.X962, PublicFormat.UncompressedPoint)


def load_public_key(raw: BytesOrB64) -> ec.EllipticCurvePublicKey:
    """Load an uncompressed P-256 public key.

    Raises:
        EncryptionError: If the bytes are not a valid point on P-256
    """
    data = _as_bytes(raw)
    if len(data) != P256_PUBLIC_KEY_LENGTH or data[0] != 0x04:
        raise EncryptionError(
            f"Public key must be a {P256_PUBLIC_KEY_LENGTH}-byte uncompressed P-256 point"
        )
    try:
        return ec.EllipticCurvePublicKey.from_encoded_point(ec.SECP256R1(), data)
    except ValueError as e:
        raise EncryptionError(f"Invalid P-256 public key: {e}") from e


def load_vapid_private_key(private_key: BytesOrB64) -> ec.EllipticCurvePrivateKey:
    """Load a raw 32-byte P-256 private scalar.

    Raises:
        EncryptionError: If the value is not a usable P-256 private key
    """
    data = _as_bytes(private_key)
    if len(data) != P256_PRIVATE_KEY_LENGTH:
        raise EncryptionError(
            f"VAPID private key must be {P256_PRIVATE_KEY_LENGTH} bytes, got {len(data)}"
        )
    try:
        return ec.derive_private_key(int.from_bytes(data, "big"), ec.SECP256R1())
    except ValueError as e:
        raise EncryptionError(f"Invalid VAPID private key: {e}") from e


def generate_vapid_keys() -> VapidKeyPair:
    """Generate a fresh P-256 VAPID key pair for tenant setup."""
    private_key = ec.generate_private_key(ec.SECP256R1())
    private_value = private_key.private_numbers().private_value

    return VapidKeyPair(
        public_key=b64url_encode(encode_public_key(private_key.public_key())),
        private_key=b64url_encode(private_value.to_bytes(P256_PRIVATE_KEY_LENGTH, "big")),
    )


def validate_subscription_keys(subscription: WebPushSubscription) -> Tuple[bytes, bytes]:
    """Decode and check a subscription's p256dh and auth keys.

    Returns:
        Tuple of (user agent public key bytes, auth secret bytes)

    Raises:
        EncryptionError: If either key has the wrong size or is not on the curve
    """
    ua_public = b64url_decode(subscription.keys.p256dh)
    load_public_key(ua_public)

    auth_secret = b64url_decode(subscription.keys.auth)
    if len(auth_secret) != WEBPUSH_AUTH_SECRET_LENGTH:
        raise EncryptionError(
            f"Auth secret must be {WEBPUSH_AUTH_SECRET_LENGTH} bytes, got {len(auth_secret)}"
        )
    return ua_public, auth_secret


# =============================================================================
# VAPID (RFC 8292)
# =============================================================================


def _json_segment(value: dict) -> str:
    return b64url_encode(json.dumps(value, separators=(",", ":")).encode("utf-8"))


def sign_es256(private_key: ec.EllipticCurvePrivateKey, data: bytes) -> bytes:
    """Sign with ECDSA P-256/SHA-256 and return the 64-byte JOSE signature."""
    der_signature = private_key.sign(data, ec.ECDSA(hashes.SHA256()))
    return der_to_raw(der_signature)


def create_vapid_jwt(
    audience: str,
    subject: str,
    private_key: ec.EllipticCurvePrivateKey,
    expiration_seconds: int = 12 * 60 * 60,
    now: Optional[int] = None,
) -> str:
    """Build the signed VAPID JWT for one push service origin.

    Args:
        audience: Push service origin (scheme://host[:port]); a full
            endpoint URL is reduced to its origin
        subject: mailto: or https: contact URI
        private_key: VAPID signing key
        expiration_seconds: Token lifetime (RFC 8292 caps this at 24h)
        now: Override for the current UNIX time

    Returns:
        Compact JWS string
    """
    parsed = urlparse(audience)
    if parsed.scheme and parsed.netloc:
        audience = f"{parsed.scheme}://{parsed.netloc}"

    issued_at = int(now if now is not None else time.time())
    header = {"typ": "JWT", "alg": VAPID_JWT_ALGORITHM}
    claims = {
        "aud": audience,
        "exp": issued_at + expiration_seconds,
        "sub": subject,
    }

    signing_input = f"{_json_segment(header)}.{_json_segment(claims)}"
    signature = sign_es256(private_key, signing_input.encode("ascii"))
    return f"{signing_input}.{b64url_encode(signature)}"


def vapid_authorization_header(
    audience: str,
    subject: str,
    private_key: ec.EllipticCurvePrivateKey,
    public_key: str,
    expiration_seconds: int = 12 * 60 * 60,
) -> str:
    """Authorization header value: vapid t=<jwt>, k=<public key>."""
    token = create_vapid_jwt(audience, subject, private_key, expiration_seconds)
    return f"vapid t={token}, k={public_key}"


# =============================================================================
# Message encryption (RFC 8291 + RFC 8188)
# =============================================================================


def derive_key_and_nonce(
    ecdh_secret: bytes,
    auth_secret: bytes,
    ua_public: bytes,
    as_public: bytes,
    salt: bytes,
) -> Tuple[bytes, bytes]:
    """RFC 8291 key schedule.

    PRK_key = HKDF-Extract(auth_secret, ecdh_secret)
    IKM     = HKDF-Expand(PRK_key, "WebPush: info\\0" || ua_public || as_public, 32)
    PRK     = HKDF-Extract(salt, IKM)
    CEK     = HKDF-Expand(PRK, "Content-Encoding: aes128gcm\\0", 16)
    NONCE   = HKDF-Expand(PRK, "Content-Encoding: nonce\\0", 12)
    """
    prk_key = hkdf_extract(auth_secret, ecdh_secret)
    ikm = hkdf_expand(prk_key, KEY_INFO_PREFIX + ua_public + as_public, HASH_LENGTH)
    prk = hkdf_extract(salt, ikm)
    cek = hkdf_expand(prk, CEK_INFO, WEBPUSH_KEY_LENGTH)
    nonce = hkdf_expand(prk, NONCE_INFO, WEBPUSH_NONCE_LENGTH)
    return cek, nonce


def encrypt_payload(
    payload: Union[bytes, str],
    p256dh: BytesOrB64,
    auth: BytesOrB64,
    salt: Optional[bytes] = None,
    ephemeral_key: Optional[ec.EllipticCurvePrivateKey] = None,
    record_size: int = WEBPUSH_RECORD_SIZE,
) -> bytes:
    """Encrypt a push message body with the aes128gcm content encoding.

    The body is a single record framed as:
    salt(16) || rs(4, big-endian) || idlen(1) || keyid(65) || ciphertext || tag(16)

    Args:
        payload: Plaintext (str is UTF-8 encoded)
        p256dh: Subscription public key (bytes or base64url)
        auth: Subscription auth secret (bytes or base64url)
        salt: Fixed salt for deterministic output (random when None)
        ephemeral_key: Fixed application server key (random when None)
        record_size: rs header value

    Returns:
        Encrypted HTTP body

    Raises:
        EncryptionError: If key material is malformed or the payload does
            not fit in one record
    """
    plaintext = payload.encode("utf-8") if isinstance(payload, str) else payload
    ua_public = _as_bytes(p256dh)
    auth_secret = _as_bytes(auth)

    ua_key = load_public_key(ua_public)
    if len(auth_secret) != WEBPUSH_AUTH_SECRET_LENGTH:
        raise EncryptionError(
            f"Auth secret must be {WEBPUSH_AUTH_SECRET_LENGTH} bytes, got {len(auth_secret)}"
        )

    if salt is None:
        salt = os.urandom(WEBPUSH_SALT_LENGTH)
    elif len(salt) != WEBPUSH_SALT_LENGTH:
        raise EncryptionError(f"Salt must be {WEBPUSH_SALT_LENGTH} bytes")

    padded = plaintext + WEBPUSH_RECORD_DELIMITER
    if len(padded) + WEBPUSH_TAG_LENGTH > record_size:
        raise EncryptionError(
            f"Payload of {len(plaintext)} bytes does not fit in a {record_size}-byte record"
        )

    if ephemeral_key is None:
        ephemeral_key = ec.generate_private_key(ec.SECP256R1())
    as_public = encode_public_key(ephemeral_key.public_key())

    try:
        ecdh_secret = ephemeral_key.exchange(ec.ECDH(), ua_key)
    except (ValueError, InvalidKey) as e:
        raise EncryptionError(f"ECDH key agreement failed: {e}") from e

    cek, nonce = derive_key_and_nonce(ecdh_secret, auth_secret, ua_public, as_public, salt)

    # AESGCM appends the 16-byte tag to the ciphertext
    ciphertext = AESGCM(cek).encrypt(nonce, padded, None)

    header = salt + struct.pack("!IB", record_size, len(as_public)) + as_public
    return header + ciphertext
