"""
Web Push Provider.

Delivers notifications straight to browser push services (RFC 8030).
Requests are authenticated with VAPID (RFC 8292) and payloads are
encrypted with the aes128gcm content encoding (RFC 8188 / RFC 8291).

Each device token is a JSON-serialized PushSubscription:
    {"endpoint": "https://...", "keys": {"p256dh": "...", "auth": "..."}}
"""

import asyncio
import json
import logging
import time
from typing import Dict, List, Optional, Tuple

import httpx
from cryptography.hazmat.primitives.asymmetric import ec

from podpush.core.config import settings
from podpush.core.logging_config import mask_token, sanitize_log_value
from podpush.core.metrics import record_push_notification_sent
from podpush.services.push.base import (
    ProviderConfigInput,
    PushProvider,
    parse_provider_config,
)
from podpush.services.push.constants import (
    WEBPUSH_CONTENT_ENCODING,
    WEBPUSH_EXPIRED_STATUS_CODES,
    WEBPUSH_URGENCY,
)
from podpush.services.push.exceptions import (
    ConfigurationError,
    EncryptionError,
    TransportError,
)
from podpush.services.push.models import (
    PushMessage,
    PushProviderType,
    SendResult,
    TokenOutcome,
    VapidKeyPair,
    WebPushConfig,
    WebPushSubscription,
)
from podpush.services.push import webpush_crypto

logger = logging.getLogger(__name__)

# Re-sign a cached VAPID JWT once it is this close to expiry
VAPID_REFRESH_MARGIN_SECONDS = 60


class WebPushProvider(PushProvider):
    """
    Web Push provider for browser subscriptions.

    Usage:
        provider = WebPushProvider()
        await provider.initialize({
            "vapidPublicKey": "...",
            "vapidPrivateKey": "...",
            "vapidSubject": "mailto:ops@example.com",
        })
        result = await provider.send_to_devices([subscription_json], message)

    Attributes:
        config: Validated VAPID config (None until initialized)
        concurrency: Maximum in-flight push service requests
        _private_key: Loaded VAPID signing key
        _vapid_cache: Authorization header per push service origin
    """

    provider_type = PushProviderType.WEBPUSH
    display_name = "Web Push"

    def __init__(
        self,
        client: Optional[httpx.AsyncClient] = None,
        concurrency: Optional[int] = None,
    ):
        """
        Args:
            client: Optional shared HTTP client
            concurrency: Override for settings.WEBPUSH_CONCURRENCY
        """
        super().__init__(client)
        self.config: Optional[WebPushConfig] = None
        self.concurrency = concurrency or settings.WEBPUSH_CONCURRENCY
        self._private_key: Optional[ec.EllipticCurvePrivateKey] = None
        self._vapid_cache: Dict[str, Tuple[str, float]] = {}

    async def initialize(self, config: ProviderConfigInput) -> None:
        """
        Load the VAPID key pair.

        Raises:
            ConfigurationError: Missing fields, a bad subject URI, an
                unusable private key or a public key that does not match it
        """
        parsed = parse_provider_config(WebPushConfig, config, self.display_name)

        try:
            private_key = webpush_crypto.load_vapid_private_key(parsed.vapid_private_key)
            configured_public = webpush_crypto.b64url_decode(parsed.vapid_public_key)
        except EncryptionError as e:
            raise ConfigurationError(f"Invalid VAPID keys: {e}") from e

        derived_public = webpush_crypto.encode_public_key(private_key.public_key())
        if derived_public != configured_public:
            raise ConfigurationError(
                "Invalid VAPID keys: public key does not match private key"
            )

        self.config = parsed
        self._private_key = private_key
        self._vapid_cache.clear()

        logger.info(
            "Web Push provider initialized",
            extra={"vapid_subject": parsed.vapid_subject}
        )

    def is_ready(self) -> bool:
        return self.config is not None and self._private_key is not None

    def get_vapid_public_key(self) -> Optional[str]:
        """Application server key browsers pass to pushManager.subscribe()."""
        return self.config.vapid_public_key if self.config else None

    @staticmethod
    def generate_vapid_keys() -> VapidKeyPair:
        """Generate a fresh VAPID key pair for a new tenant."""
        return webpush_crypto.generate_vapid_keys()

    def _vapid_header(self, audience: str) -> str:
        """
        Authorization header for one push service origin.

        Cached per origin and re-signed shortly before the JWT expires.
        """
        now = time.time()
        cached = self._vapid_cache.get(audience)
        if cached and cached[1] > now + VAPID_REFRESH_MARGIN_SECONDS:
            return cached[0]

        expiration = settings.VAPID_JWT_EXPIRATION_SECONDS
        header = webpush_crypto.vapid_authorization_header(
            audience,
            self.config.vapid_subject,
            self._private_key,
            self.config.vapid_public_key,
            expiration,
        )
        self._vapid_cache[audience] = (header, now + expiration)
        return header

    @staticmethod
    def _build_payload(message: PushMessage) -> str:
        """Notification JSON the service worker receives in the push event."""
        return json.dumps({
            "title": message.title,
            "body": message.body,
            "icon": message.image_url,
            "badge": message.badge,
            "data": dict(message.data),
        })

    async def _send_notification(
        self,
        subscription: WebPushSubscription,
        payload: str,
    ) -> Optional[str]:
        """
        Encrypt and POST one notification.

        Returns:
            Location header of the created push message, if any

        Raises:
            EncryptionError: If the subscription keys are unusable
            TransportError: On network errors or a non-2xx response
        """
        ua_public, auth_secret = webpush_crypto.validate_subscription_keys(subscription)
        body = webpush_crypto.encrypt_payload(payload, ua_public, auth_secret)

        headers = {
            "Authorization": self._vapid_header(subscription.audience),
            "Content-Encoding": WEBPUSH_CONTENT_ENCODING,
            "Content-Type": "application/octet-stream",
            "TTL": str(settings.WEBPUSH_TTL_SECONDS),
            "Urgency": WEBPUSH_URGENCY,
        }

        client = await self._get_client()
        try:
            response = await client.post(subscription.endpoint, content=body, headers=headers)
        except httpx.HTTPError as e:
            raise TransportError(f"Web Push request failed: {e}") from e

        if not 200 <= response.status_code < 300:
            raise TransportError(
                f"Web Push endpoint returned {response.status_code}: {response.text}",
                status_code=response.status_code,
            )

        return response.headers.get("location")

    async def _send_to_token(self, token: str, payload: str) -> TokenOutcome:
        """Deliver to one subscription token; failures stay with that token."""
        try:
            subscription = WebPushSubscription.from_token(token)
            message_id = await self._send_notification(subscription, payload)
        except TransportError as e:
            if e.status_code in WEBPUSH_EXPIRED_STATUS_CODES:
                logger.info(
                    "Web Push subscription expired",
                    extra={"device_token": mask_token(token), "status_code": e.status_code}
                )
            else:
                logger.warning(
                    "Web Push delivery failed",
                    extra={
                        "device_token": mask_token(token),
                        "status_code": e.status_code,
                        "error": sanitize_log_value(str(e)),
                    }
                )
            return TokenOutcome(
                token=token, success=False, error=str(e), status_code=e.status_code
            )
        except EncryptionError as e:
            logger.warning(
                "Web Push subscription unusable",
                extra={"device_token": mask_token(token), "error": str(e)}
            )
            return TokenOutcome(token=token, success=False, error=str(e))

        return TokenOutcome(token=token, success=True, message_id=message_id)

    async def send_to_devices(self, tokens: List[str], message: PushMessage) -> SendResult:
        """
        Send to browser subscriptions with bounded concurrency.

        One bad subscription never affects the others.
        """
        if not self.is_ready():
            return self._not_ready_result()
        if not tokens:
            return SendResult(success=True)

        start_time = time.time()
        payload = self._build_payload(message)
        semaphore = asyncio.Semaphore(self.concurrency)

        async def send_with_semaphore(token: str) -> TokenOutcome:
            async with semaphore:
                return await self._send_to_token(token, payload)

        results = await asyncio.gather(
            *[send_with_semaphore(token) for token in tokens],
            return_exceptions=True,
        )

        # Convert exceptions to failed outcomes
        outcomes = []
        for token, outcome in zip(tokens, results):
            if isinstance(outcome, Exception):
                logger.error(
                    f"Web Push send exception: {outcome}",
                    exc_info=outcome,
                    extra={"device_token": mask_token(token)}
                )
                outcomes.append(TokenOutcome(token=token, success=False, error=str(outcome)))
            else:
                outcomes.append(outcome)

        result = SendResult.from_outcomes(outcomes)
        duration = time.time() - start_time

        record_push_notification_sent(
            self.provider_type.value, "success", result.success_count, duration
        )
        record_push_notification_sent(self.provider_type.value, "failure", result.failure_count)

        expired = sum(1 for o in outcomes if o.status_code in WEBPUSH_EXPIRED_STATUS_CODES)
        logger.info(
            "Web Push batch send complete",
            extra={
                "total": len(tokens),
                "success": result.success_count,
                "failed": result.failure_count,
                "expired": expired,
                "duration_ms": int(duration * 1000),
            }
        )

        return result

    async def send_to_topic(self, topic: str, message: PushMessage) -> SendResult:
        """Browser push services have no topics; callers fan out by subscription."""
        return SendResult.failure("Web Push does not support topic messaging directly")

    async def validate_token(self, token: str) -> bool:
        """True when the token parses as a subscription with usable keys."""
        try:
            subscription = WebPushSubscription.from_token(token)
            webpush_crypto.validate_subscription_keys(subscription)
        except EncryptionError:
            return False
        return True
