"""
Tests for Web Push cryptography helpers.

Encryption is checked against the RFC 8291 Appendix A vector and by
decrypting with an independent user agent implementation
(tests.mocks.webpush_mocks); VAPID tokens are checked by verifying them
with PyJWT.
"""

import json
import os

import jwt
import pytest
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.hazmat.primitives.asymmetric.utils import (
    decode_dss_signature,
    encode_dss_signature,
)
from cryptography.hazmat.primitives.kdf.hkdf import HKDF

from podpush.services.push.exceptions import EncryptionError
from podpush.services.push.models import WebPushSubscription
from podpush.services.push.webpush_crypto import (
    b64url_decode,
    b64url_encode,
    create_vapid_jwt,
    der_to_raw,
    derive_key_and_nonce,
    encode_public_key,
    encrypt_payload,
    generate_vapid_keys,
    hkdf,
    hkdf_expand,
    hkdf_extract,
    load_public_key,
    load_vapid_private_key,
    sign_es256,
    validate_subscription_keys,
    vapid_authorization_header,
)
from tests.conftest import make_subscription
from tests.mocks.webpush_mocks import decrypt_push_body, parse_push_body


# =============================================================================
# base64url
# =============================================================================

class TestBase64Url:

    def test_encode_strips_padding(self):
        assert b64url_encode(b"\xfb\xff") == "-_8"

    def test_decode_tolerates_missing_padding(self):
        assert b64url_decode("-_8") == b"\xfb\xff"
        assert b64url_decode("-_8=") == b"\xfb\xff"

    def test_decode_rejects_impossible_length(self):
        with pytest.raises(EncryptionError):
            b64url_decode("abcde")

    def test_decode_rejects_non_string(self):
        with pytest.raises(EncryptionError):
            b64url_decode(b"abcd")


# =============================================================================
# HKDF
# =============================================================================

class TestHKDF:

    def test_rfc5869_test_case_1(self):
        ikm = bytes.fromhex("0b" * 22)
        salt = bytes.fromhex("000102030405060708090a0b0c")
        info = bytes.fromhex("f0f1f2f3f4f5f6f7f8f9")

        prk = hkdf_extract(salt, ikm)
        okm = hkdf_expand(prk, info, 42)

        assert prk.hex() == "077709362c2e32df0ddc3f0dc47bba6390b6c73bb50f9c3122ec844ad7c2b3e5"
        assert okm.hex() == (
            "3cb25f25faacd57a90434f64d0362f2a2d2d0a90cf1a5a4c5db0"
            "2d56ecc4c5bf34007208d5b887185865"
        )

    @pytest.mark.parametrize("length", [12, 16, 32, 64])
    def test_matches_cryptography_hkdf(self, length):
        salt, ikm, info = os.urandom(16), os.urandom(32), b"Content-Encoding: nonce\x00"

        expected = HKDF(algorithm=hashes.SHA256(), length=length, salt=salt, info=info).derive(ikm)

        assert hkdf(salt, ikm, info, length) == expected

    def test_expand_rejects_oversized_output(self):
        with pytest.raises(EncryptionError):
            hkdf_expand(b"\x00" * 32, b"", 255 * 32 + 1)


# =============================================================================
# DER -> raw signature
# =============================================================================

class TestDerToRaw:

    def test_real_signature_is_64_bytes(self):
        key = ec.generate_private_key(ec.SECP256R1())
        der = key.sign(b"payload", ec.ECDSA(hashes.SHA256()))
        r, s = decode_dss_signature(der)

        raw = der_to_raw(der)

        assert len(raw) == 64
        assert raw == r.to_bytes(32, "big") + s.to_bytes(32, "big")

    def test_short_components_are_left_padded(self):
        raw = der_to_raw(encode_dss_signature(1, 2))

        assert raw[:32] == b"\x00" * 31 + b"\x01"
        assert raw[32:] == b"\x00" * 31 + b"\x02"

    def test_sign_padding_zero_is_stripped(self):
        r = (1 << 255) + 5  # high bit set, DER adds a leading 0x00
        der = encode_dss_signature(r, 7)

        raw = der_to_raw(der)

        assert len(raw) == 64
        assert raw[:32] == r.to_bytes(32, "big")

    def test_long_form_sequence_length(self):
        r_bytes, s_bytes = b"\x11" * 32, b"\x22" * 32
        body = b"\x02\x20" + r_bytes + b"\x02\x20" + s_bytes
        der = b"\x30\x81" + bytes([len(body)]) + body

        assert der_to_raw(der) == r_bytes + s_bytes

    def test_oversize_component_rejected(self):
        with pytest.raises(EncryptionError):
            der_to_raw(encode_dss_signature((1 << 256) + 1, 1))

    @pytest.mark.parametrize("der", [
        b"",
        b"\x31\x06\x02\x01\x01\x02\x01\x01",  # SET instead of SEQUENCE
        b"\x30\x07\x02\x01\x01\x02\x01\x01",  # length mismatch
        b"\x30\x06\x04\x01\x01\x02\x01\x01",  # OCTET STRING instead of INTEGER
    ])
    def test_malformed_der_rejected(self, der):
        with pytest.raises(EncryptionError):
            der_to_raw(der)

    def test_trailing_bytes_rejected(self):
        der = encode_dss_signature(1, 2)
        tampered = b"\x30" + bytes([der[1] + 1]) + der[2:] + b"\x00"

        with pytest.raises(EncryptionError):
            der_to_raw(tampered)

    def test_sign_es256_verifies(self):
        key = ec.generate_private_key(ec.SECP256R1())

        raw = sign_es256(key, b"data")

        r = int.from_bytes(raw[:32], "big")
        s = int.from_bytes(raw[32:], "big")
        key.public_key().verify(encode_dss_signature(r, s), b"data", ec.ECDSA(hashes.SHA256()))


# =============================================================================
# Keys
# =============================================================================

class TestKeys:

    def test_generate_vapid_keys(self):
        keys = generate_vapid_keys()

        public = b64url_decode(keys.public_key)
        private = b64url_decode(keys.private_key)
        assert len(public) == 65 and public[0] == 0x04
        assert len(private) == 32
        assert "=" not in keys.public_key

    def test_private_key_matches_public_key(self):
        keys = generate_vapid_keys()

        private_key = load_vapid_private_key(keys.private_key)

        assert b64url_encode(encode_public_key(private_key.public_key())) == keys.public_key

    def test_load_vapid_private_key_wrong_length(self):
        with pytest.raises(EncryptionError):
            load_vapid_private_key(b64url_encode(b"\x01" * 31))

    def test_load_vapid_private_key_zero_scalar(self):
        with pytest.raises(EncryptionError):
            load_vapid_private_key(b"\x00" * 32)

    def test_load_public_key_rejects_compressed_point(self):
        key = ec.generate_private_key(ec.SECP256R1())
        compressed = b"\x02" + key.public_key().public_numbers().x.to_bytes(32, "big")

        with pytest.raises(EncryptionError):
            load_public_key(compressed)

    def test_load_public_key_rejects_point_off_curve(self):
        with pytest.raises(EncryptionError):
            load_public_key(b"\x04" + b"\x01" * 64)

    def test_validate_subscription_keys(self):
        token, ua_key, auth = make_subscription()

        ua_public, auth_secret = validate_subscription_keys(WebPushSubscription.from_token(token))

        assert ua_public == encode_public_key(ua_key.public_key())
        assert auth_secret == auth

    def test_validate_subscription_keys_short_auth(self):
        token, _, _ = make_subscription()
        data = json.loads(token)
        data["keys"]["auth"] = b64url_encode(b"\x00" * 8)

        with pytest.raises(EncryptionError):
            validate_subscription_keys(WebPushSubscription.model_validate(data))


# =============================================================================
# VAPID
# =============================================================================

class TestVapid:

    def test_jwt_verifies_with_pyjwt(self):
        keys = generate_vapid_keys()
        private_key = load_vapid_private_key(keys.private_key)

        token = create_vapid_jwt(
            "https://fcm.googleapis.com", "mailto:push@podcast.example.com", private_key
        )

        header = jwt.get_unverified_header(token)
        claims = jwt.decode(
            token,
            private_key.public_key(),
            algorithms=["ES256"],
            audience="https://fcm.googleapis.com",
        )
        assert header == {"typ": "JWT", "alg": "ES256"}
        assert claims["sub"] == "mailto:push@podcast.example.com"

    def test_jwt_expiration(self):
        private_key = load_vapid_private_key(generate_vapid_keys().private_key)

        token = create_vapid_jwt(
            "https://push.example.net", "mailto:a@b.c", private_key, now=1_700_000_000
        )

        claims = jwt.decode(token, options={"verify_signature": False})
        assert claims["exp"] == 1_700_000_000 + 12 * 60 * 60

    def test_endpoint_is_reduced_to_origin(self):
        private_key = load_vapid_private_key(generate_vapid_keys().private_key)

        token = create_vapid_jwt(
            "https://updates.push.services.mozilla.com/wpush/v2/abc", "mailto:a@b.c", private_key
        )

        claims = jwt.decode(token, options={"verify_signature": False})
        assert claims["aud"] == "https://updates.push.services.mozilla.com"

    def test_authorization_header_format(self):
        keys = generate_vapid_keys()
        private_key = load_vapid_private_key(keys.private_key)

        header = vapid_authorization_header(
            "https://push.example.net", "mailto:a@b.c", private_key, keys.public_key
        )

        assert header.startswith("vapid t=")
        assert header.endswith(f", k={keys.public_key}")
        token = header[len("vapid t="):header.index(", k=")]
        jwt.decode(
            token,
            private_key.public_key(),
            algorithms=["ES256"],
            audience="https://push.example.net",
        )


# =============================================================================
# Payload encryption
# =============================================================================

class TestEncryptPayload:

    def test_header_layout(self):
        _, ua_key, auth = make_subscription()
        salt = os.urandom(16)
        ephemeral = ec.generate_private_key(ec.SECP256R1())
        plaintext = b'{"title":"Hello"}'

        body = encrypt_payload(
            plaintext, encode_public_key(ua_key.public_key()), auth,
            salt=salt, ephemeral_key=ephemeral,
        )

        header = parse_push_body(body)
        assert header.salt == salt
        assert header.record_size == 4096
        assert len(header.key_id) == 65
        assert header.key_id == encode_public_key(ephemeral.public_key())
        assert len(body) == 16 + 4 + 1 + 65 + len(plaintext) + 1 + 16

    def test_user_agent_can_decrypt(self):
        token, ua_key, auth = make_subscription()
        subscription = WebPushSubscription.from_token(token)

        body = encrypt_payload(
            "Yeni Bölüm: Deep Dive", subscription.keys.p256dh, subscription.keys.auth
        )

        assert decrypt_push_body(body, ua_key, auth).decode("utf-8") == "Yeni Bölüm: Deep Dive"

    def test_deterministic_with_injected_salt_and_key(self):
        _, ua_key, auth = make_subscription()
        ua_public = encode_public_key(ua_key.public_key())
        salt = os.urandom(16)
        ephemeral = ec.generate_private_key(ec.SECP256R1())

        first = encrypt_payload(b"x", ua_public, auth, salt=salt, ephemeral_key=ephemeral)
        second = encrypt_payload(b"x", ua_public, auth, salt=salt, ephemeral_key=ephemeral)

        assert first == second

    def test_random_salt_differs_per_call(self):
        _, ua_key, auth = make_subscription()
        ua_public = encode_public_key(ua_key.public_key())

        assert encrypt_payload(b"x", ua_public, auth)[:16] != encrypt_payload(b"x", ua_public, auth)[:16]

    def test_derive_key_and_nonce_sizes(self):
        cek, nonce = derive_key_and_nonce(
            os.urandom(32), os.urandom(16), b"\x04" * 65, b"\x04" * 65, os.urandom(16)
        )

        assert len(cek) == 16
        assert len(nonce) == 12

    def test_payload_must_fit_one_record(self):
        _, ua_key, auth = make_subscription()

        with pytest.raises(EncryptionError):
            encrypt_payload(b"a" * 4096, encode_public_key(ua_key.public_key()), auth)

    def test_largest_payload_that_fits(self):
        _, ua_key, auth = make_subscription()
        plaintext = b"a" * (4096 - 16 - 1)

        body = encrypt_payload(plaintext, encode_public_key(ua_key.public_key()), auth)

        assert decrypt_push_body(body, ua_key, auth) == plaintext

    def test_wrong_auth_length(self):
        _, ua_key, _ = make_subscription()

        with pytest.raises(EncryptionError):
            encrypt_payload(b"x", encode_public_key(ua_key.public_key()), b"\x00" * 15)

    def test_wrong_salt_length(self):
        _, ua_key, auth = make_subscription()

        with pytest.raises(EncryptionError):
            encrypt_payload(b"x", encode_public_key(ua_key.public_key()), auth, salt=b"\x00" * 8)

    def test_wrong_public_key_length(self):
        with pytest.raises(EncryptionError):
            encrypt_payload(b"x", b"\x04" * 64, os.urandom(16))


# =============================================================================
# RFC 8291 Appendix A
# =============================================================================

class TestRFC8291Vector:
    """Fixed inputs and outputs from RFC 8291 Appendix A."""

    PLAINTEXT = b"When I grow up, I want to be a watermelon"
    AS_PRIVATE = "yfWPiYE-n46HLnH0KqZOF1fJJU3MYrct3AELtAQ-oRw"
    AS_PUBLIC = (
        "BP4z9KsN6nGRTbVYI_c7VJSPQTBtkgcy27mlmlMoZIIgDll6e3vCYLocInmYWAmS6TlzAC8wEqKK6PBru3jl7A8"
    )
    UA_PUBLIC = (
        "BCVxsr7N_eNgVRqvHtD0zTZsEc6-VV-JvLexhqUzORcxaOzi6-AYWXvTBHm4bjyPjs7Vd8pZGH6SRpkNtoIAiw4"
    )
    AUTH = "BTBZMqHH6r4Tts7J_aSIgg"
    SALT = "DGv6ra1nlYgDCS1FRnbzlw"
    ECDH_SECRET = "kyrL1jIIOHEzg3sM2ZWRHDRB62YACZhhSlknJ672kSs"
    PRK_KEY = "Snr3JMxaHVDXHWJn5wdC52WjpCtd2EIEGBykDcZW32k"
    IKM = "S4lYMb_L0FxCeq0WhDx813KgSYqU26kOyzWUdsXYyrg"
    PRK = "09_eUZGrsvxChDCGRCdkLiDXrReGOEVeSCdCcPBSJSc"
    CEK = "oIhVW04MRdy2XN9CiKLxTg"
    NONCE = "4h_95klXJ5E_qnoN"
    BODY = (
        "DGv6ra1nlYgDCS1FRnbzlwAAEABBBP4z9KsN6nGRTbVYI_c7VJSPQTBtkgcy27mlmlMoZIIgDll6e3vC"
        "YLocInmYWAmS6TlzAC8wEqKK6PBru3jl7A_yl95bQpu6cVPTpK4Mqgkf1CXztLVBSt2Ks3oZwbuwXPXL"
        "WyouBWLVWGNWQexSgSxsj_Qulcy4a-fN"
    )

    def test_application_server_key_pair(self):
        as_key = load_vapid_private_key(self.AS_PRIVATE)

        assert b64url_encode(encode_public_key(as_key.public_key())) == self.AS_PUBLIC

    def test_ecdh_secret(self):
        as_key = load_vapid_private_key(self.AS_PRIVATE)

        secret = as_key.exchange(ec.ECDH(), load_public_key(self.UA_PUBLIC))

        assert b64url_encode(secret) == self.ECDH_SECRET

    def test_key_schedule_intermediates(self):
        ecdh_secret = b64url_decode(self.ECDH_SECRET)
        ua_public = b64url_decode(self.UA_PUBLIC)
        as_public = b64url_decode(self.AS_PUBLIC)

        prk_key = hkdf_extract(b64url_decode(self.AUTH), ecdh_secret)
        ikm = hkdf_expand(prk_key, b"WebPush: info\x00" + ua_public + as_public, 32)
        prk = hkdf_extract(b64url_decode(self.SALT), ikm)

        assert b64url_encode(prk_key) == self.PRK_KEY
        assert b64url_encode(ikm) == self.IKM
        assert b64url_encode(prk) == self.PRK

    def test_derive_key_and_nonce(self):
        cek, nonce = derive_key_and_nonce(
            b64url_decode(self.ECDH_SECRET),
            b64url_decode(self.AUTH),
            b64url_decode(self.UA_PUBLIC),
            b64url_decode(self.AS_PUBLIC),
            b64url_decode(self.SALT),
        )

        assert b64url_encode(cek) == self.CEK
        assert b64url_encode(nonce) == self.NONCE

    def test_encrypted_body(self):
        body = encrypt_payload(
            self.PLAINTEXT,
            self.UA_PUBLIC,
            self.AUTH,
            salt=b64url_decode(self.SALT),
            ephemeral_key=load_vapid_private_key(self.AS_PRIVATE),
        )

        assert b64url_encode(body) == self.BODY
