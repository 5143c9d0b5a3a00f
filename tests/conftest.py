"""Pytest fixtures shared by the push test suite

This module provides:
1. Real key material generated with cryptography (service account RSA key,
   VAPID key pair, browser subscription keys)
2. Provider configuration dictionaries in the camelCase form stored in
   tenant settings
3. A mock httpx.AsyncClient for patching provider HTTP calls

Factory Functions:
    - make_subscription(endpoint=...) -> (token, ua_private_key, auth_secret)
"""
import json
import os
from typing import Tuple
from unittest.mock import AsyncMock

import httpx
import pytest
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ec, rsa

from podpush.services.push.models import PushMessage, VapidKeyPair
from podpush.services.push.webpush_crypto import (
    b64url_encode,
    encode_public_key,
    generate_vapid_keys,
)


# =============================================================================
# Factory Functions for Test Objects
# =============================================================================

def make_subscription(
    endpoint: str = "https://fcm.googleapis.com/fcm/send/abc:def123",
) -> Tuple[str, ec.EllipticCurvePrivateKey, bytes]:
    """
    Factory function to create a browser PushSubscription token.

    Args:
        endpoint: Push service endpoint URL

    Returns:
        Tuple of (JSON token, user agent private key, auth secret) so tests
        can decrypt what the provider sent.

    Example:
        token, ua_key, auth = make_subscription()
        token, _, _ = make_subscription("https://updates.push.services.mozilla.com/wpush/v2/x")
    """
    ua_private_key = ec.generate_private_key(ec.SECP256R1())
    auth_secret = os.urandom(16)
    token = json.dumps({
        "endpoint": endpoint,
        "keys": {
            "p256dh": b64url_encode(encode_public_key(ua_private_key.public_key())),
            "auth": b64url_encode(auth_secret),
        },
    })
    return token, ua_private_key, auth_secret


# =============================================================================
# Key material
# =============================================================================

@pytest.fixture(scope="session")
def rsa_private_key() -> rsa.RSAPrivateKey:
    """RSA key standing in for a Google service account key."""
    return rsa.generate_private_key(public_exponent=65537, key_size=2048)


@pytest.fixture(scope="session")
def service_account_info(rsa_private_key) -> dict:
    """Service account JSON document as downloaded from the Google console."""
    pem = rsa_private_key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    ).decode()
    return {
        "type": "service_account",
        "project_id": "podcast-test",
        "private_key_id": "key-id-123",
        "private_key": pem,
        "client_email": "push-sender@podcast-test.iam.gserviceaccount.com",
        "client_id": "1234567890",
        "token_uri": "https://oauth2.googleapis.com/token",
    }


@pytest.fixture(scope="session")
def vapid_keys() -> VapidKeyPair:
    """Fresh VAPID key pair."""
    return generate_vapid_keys()


# =============================================================================
# Provider configs
# =============================================================================

@pytest.fixture
def onesignal_config() -> dict:
    return {"appId": "onesignal-app-123", "apiKey": "onesignal-rest-key"}


@pytest.fixture
def firebase_config(service_account_info) -> dict:
    return {
        "projectId": "podcast-test",
        "credentials": json.dumps(service_account_info),
    }


@pytest.fixture
def webpush_config(vapid_keys) -> dict:
    return {
        "vapidPublicKey": vapid_keys.public_key,
        "vapidPrivateKey": vapid_keys.private_key,
        "vapidSubject": "mailto:push@podcast.example.com",
    }


# =============================================================================
# Messages and HTTP
# =============================================================================

@pytest.fixture
def sample_message() -> PushMessage:
    """Create a sample notification."""
    return PushMessage(
        title="New Episode: Deep Dive",
        body="Episode 42 is out now",
        data={"type": "NEW_EPISODE", "episodeId": "ep-42"},
        image_url="https://cdn.example.com/covers/42.jpg",
        badge=3,
        sound="default",
        channel_id="episodes",
        category="EPISODE",
    )


@pytest.fixture
def minimal_message() -> PushMessage:
    return PushMessage(title="Hello", body="World")


@pytest.fixture
def mock_httpx_client():
    """Create a mock httpx AsyncClient."""
    mock_client = AsyncMock(spec=httpx.AsyncClient)
    mock_client.is_closed = False
    return mock_client
