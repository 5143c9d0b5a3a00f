"""
Push notification providers for a multi-tenant podcast platform.

This package contains providers for:
- OneSignal - aggregator REST API
- Firebase Cloud Messaging - HTTP v1 API with service account OAuth2
- Web Push - VAPID authenticated, aes128gcm encrypted browser push
- PushDispatchService - per-tenant provider registry and target routing
"""

from podpush.services.push.base import PushProvider
from podpush.services.push.dispatch_service import (
    DeviceTokenSource,
    PushDispatchService,
    PushTarget,
    PushTargetType,
    TenantPushConfig,
    create_provider,
)
from podpush.services.push.exceptions import (
    ConfigurationError,
    EncryptionError,
    PushError,
    TransportError,
)
from podpush.services.push.firebase_provider import FirebaseProvider
from podpush.services.push.models import (
    FirebaseConfig,
    OneSignalConfig,
    PushMessage,
    PushProviderType,
    SendResult,
    VapidKeyPair,
    WebPushConfig,
    WebPushSubscription,
)
from podpush.services.push.onesignal_provider import OneSignalProvider
from podpush.services.push.webpush_provider import WebPushProvider

__all__ = [
    # Dispatch Service
    "PushDispatchService",
    "TenantPushConfig",
    "PushTarget",
    "PushTargetType",
    "DeviceTokenSource",
    "create_provider",
    # Providers
    "PushProvider",
    "OneSignalProvider",
    "FirebaseProvider",
    "WebPushProvider",
    # Models
    "PushMessage",
    "PushProviderType",
    "SendResult",
    "OneSignalConfig",
    "FirebaseConfig",
    "WebPushConfig",
    "WebPushSubscription",
    "VapidKeyPair",
    # Errors
    "PushError",
    "ConfigurationError",
    "TransportError",
    "EncryptionError",
]
