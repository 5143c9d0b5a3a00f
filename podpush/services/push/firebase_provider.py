"""
Firebase Cloud Messaging Provider.

Talks to the FCM HTTP v1 API directly with httpx. Authentication uses a
Google service account: a short-lived RS256 JWT assertion is exchanged
for an OAuth2 access token, which is cached and refreshed shortly
before it expires.

Features:
- Single-flight access token refresh (concurrent senders share one fetch)
- Device sends in batches of FCM_BATCH_SIZE, tokens within a batch in parallel
- Per-token outcomes so callers can prune failed registrations
- Topic send and Instance ID topic subscription management
"""

import asyncio
import logging
import time
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

import httpx
import jwt
from cryptography.exceptions import UnsupportedAlgorithm
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from pydantic import ValidationError

from podpush.core.config import settings
from podpush.core.logging_config import mask_token, sanitize_log_value
from podpush.core.metrics import record_push_notification_sent, record_token_refresh
from podpush.services.push.base import (
    ProviderConfigInput,
    PushProvider,
    parse_provider_config,
)
from podpush.services.push.constants import (
    ACCESS_TOKEN_EXPIRY_BUFFER_SECONDS,
    FCM_ANDROID_PRIORITY,
    FCM_OAUTH_SCOPE,
    FCM_TOPIC_PREFIX,
    IID_BATCH_LIMIT,
    JWT_BEARER_GRANT_TYPE,
    SERVICE_ACCOUNT_JWT_ALGORITHM,
    SERVICE_ACCOUNT_JWT_LIFETIME_SECONDS,
)
from podpush.services.push.exceptions import ConfigurationError, TransportError
from podpush.services.push.models import (
    AccessToken,
    FirebaseConfig,
    PushMessage,
    PushProviderType,
    SendResult,
    ServiceAccountInfo,
    TokenOutcome,
)

logger = logging.getLogger(__name__)


def chunk_tokens(tokens: List[str], size: int) -> List[List[str]]:
    """Split tokens into consecutive batches of at most size elements."""
    if size < 1:
        raise ValueError("batch size must be positive")
    return [tokens[i:i + size] for i in range(0, len(tokens), size)]


def normalize_topic(topic: str) -> str:
    """Strip a leading /topics/ prefix; the v1 API wants the bare name."""
    if topic.startswith(FCM_TOPIC_PREFIX):
        return topic[len(FCM_TOPIC_PREFIX):]
    return topic


class FirebaseProvider(PushProvider):
    """
    FCM provider for Android and iOS devices registered with Firebase.

    Usage:
        provider = FirebaseProvider()
        await provider.initialize({"projectId": "...", "credentials": sa_json})
        result = await provider.send_to_devices(tokens, message)

    Attributes:
        config: Validated Firebase config (None until initialized)
        batch_size: Tokens per sequential batch
        _service_account: Parsed service account JSON
        _signing_key: RSA private key used for JWT assertions
        _access_token: Cached OAuth2 access token
        _token_lock: Serializes access token refreshes
    """

    provider_type = PushProviderType.FIREBASE
    display_name = "Firebase"

    def __init__(
        self,
        client: Optional[httpx.AsyncClient] = None,
        batch_size: Optional[int] = None,
    ):
        """
        Args:
            client: Optional shared HTTP client
            batch_size: Override for settings.FCM_BATCH_SIZE
        """
        super().__init__(client)
        self.config: Optional[FirebaseConfig] = None
        self.batch_size = batch_size or settings.FCM_BATCH_SIZE
        self._service_account: Optional[ServiceAccountInfo] = None
        self._signing_key: Optional[rsa.RSAPrivateKey] = None
        self._access_token: Optional[AccessToken] = None
        # Created on first refresh so the provider can be built outside a loop
        self._token_lock: Optional[asyncio.Lock] = None

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def initialize(self, config: ProviderConfigInput) -> None:
        """
        Parse the service account and fetch the first access token.

        The provider only becomes ready once a token has been obtained, so
        bad credentials surface here rather than on the first send.

        Raises:
            ConfigurationError: Missing fields, malformed service account
                JSON, unusable private key or a rejected token request
        """
        parsed = parse_provider_config(FirebaseConfig, config, self.display_name)

        try:
            service_account = ServiceAccountInfo.model_validate_json(parsed.credentials)
        except ValidationError as e:
            raise ConfigurationError(
                f"Invalid Firebase credentials: service account JSON is malformed ({e.error_count()} errors)"
            ) from e

        signing_key = self._load_private_key(service_account)

        try:
            access_token = await self._fetch_access_token(service_account, signing_key)
        except TransportError as e:
            raise ConfigurationError(f"Invalid Firebase credentials: {e}") from e

        self.config = parsed
        self._service_account = service_account
        self._signing_key = signing_key
        self._access_token = access_token

        logger.info(
            "Firebase provider initialized",
            extra={
                "project_id": parsed.project_id,
                "client_email": service_account.client_email,
            }
        )

    def is_ready(self) -> bool:
        return (
            self.config is not None
            and self._service_account is not None
            and self._access_token is not None
        )

    @staticmethod
    def _load_private_key(service_account: ServiceAccountInfo) -> rsa.RSAPrivateKey:
        """Load the PEM private key from the service account."""
        try:
            key = serialization.load_pem_private_key(
                service_account.private_key.encode(),
                password=None,
            )
        except (ValueError, TypeError, UnsupportedAlgorithm) as e:
            raise ConfigurationError(
                f"Invalid Firebase credentials: cannot load private key ({e})"
            ) from e

        if not isinstance(key, rsa.RSAPrivateKey):
            raise ConfigurationError(
                "Invalid Firebase credentials: service account key must be RSA (RS256)"
            )
        return key

    # -------------------------------------------------------------------------
    # OAuth2 access token
    # -------------------------------------------------------------------------

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    def _token_endpoint(self, service_account: ServiceAccountInfo) -> str:
        return service_account.token_uri or settings.GOOGLE_TOKEN_URL

    def _create_assertion(
        self,
        service_account: ServiceAccountInfo,
        signing_key: rsa.RSAPrivateKey,
    ) -> str:
        """
        Build the signed JWT used in the jwt-bearer grant.

        Returns:
            Compact RS256 JWT with iss/sub/scope/aud/iat/exp claims
        """
        issued_at = int(self._now().timestamp())
        payload = {
            "iss": service_account.client_email,
            "sub": service_account.client_email,
            "scope": FCM_OAUTH_SCOPE,
            "aud": self._token_endpoint(service_account),
            "iat": issued_at,
            "exp": issued_at + SERVICE_ACCOUNT_JWT_LIFETIME_SECONDS,
        }
        headers = {}
        if service_account.private_key_id:
            headers["kid"] = service_account.private_key_id

        return jwt.encode(
            payload,
            signing_key,
            algorithm=SERVICE_ACCOUNT_JWT_ALGORITHM,
            headers=headers or None,
        )

    async def _fetch_access_token(
        self,
        service_account: ServiceAccountInfo,
        signing_key: rsa.RSAPrivateKey,
    ) -> AccessToken:
        """
        Exchange a JWT assertion for an OAuth2 access token.

        Raises:
            TransportError: If the token endpoint is unreachable or rejects
                the assertion
        """
        assertion = self._create_assertion(service_account, signing_key)
        client = await self._get_client()

        try:
            response = await client.post(
                self._token_endpoint(service_account),
                data={"grant_type": JWT_BEARER_GRANT_TYPE, "assertion": assertion},
            )
        except httpx.HTTPError as e:
            record_token_refresh(self.provider_type.value, "failure")
            raise TransportError(f"Failed to get access token: {e}") from e

        if not 200 <= response.status_code < 300:
            record_token_refresh(self.provider_type.value, "failure")
            raise TransportError(
                f"Failed to get access token: {response.status_code} - {response.text}",
                status_code=response.status_code,
            )

        try:
            data = response.json()
            token = data["access_token"]
            expires_in = int(data.get("expires_in", SERVICE_ACCOUNT_JWT_LIFETIME_SECONDS))
        except (ValueError, KeyError, TypeError) as e:
            record_token_refresh(self.provider_type.value, "failure")
            raise TransportError(f"Failed to get access token: unexpected response ({e})") from e

        record_token_refresh(self.provider_type.value, "success")
        expires_at = self._now() + timedelta(
            seconds=expires_in - ACCESS_TOKEN_EXPIRY_BUFFER_SECONDS
        )

        logger.debug(
            "Obtained Firebase access token",
            extra={"client_email": service_account.client_email, "expires_in": expires_in}
        )

        return AccessToken(token=token, expires_at=expires_at)

    async def _ensure_valid_token(self) -> str:
        """
        Return a usable access token, refreshing it at most once even when
        many sends race on an expired token.

        Raises:
            TransportError: If a refresh was needed and failed
        """
        cached = self._access_token
        if cached is not None and not cached.is_expired(self._now()):
            return cached.token

        if self._token_lock is None:
            self._token_lock = asyncio.Lock()

        async with self._token_lock:
            # Another task may have refreshed while we waited
            cached = self._access_token
            if cached is None or cached.is_expired(self._now()):
                logger.info("Refreshing Firebase access token")
                self._access_token = await self._fetch_access_token(
                    self._service_account, self._signing_key
                )
            return self._access_token.token

    # -------------------------------------------------------------------------
    # Message building and sending
    # -------------------------------------------------------------------------

    def _send_url(self) -> str:
        return settings.fcm_send_url_template.format(project_id=self.config.project_id)

    def _build_message(
        self,
        message: PushMessage,
        token: Optional[str] = None,
        topic: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Build an FCM v1 message body targeting a token or a topic.

        Returns:
            {"message": {...}} ready to POST to messages:send
        """
        notification: Dict[str, Any] = {"title": message.title, "body": message.body}
        if message.image_url:
            notification["image"] = message.image_url

        android_notification: Dict[str, Any] = {}
        if message.channel_id:
            android_notification["channel_id"] = message.channel_id
        if message.sound:
            android_notification["sound"] = message.sound

        aps: Dict[str, Any] = {"alert": {"title": message.title, "body": message.body}}
        if message.badge is not None:
            aps["badge"] = message.badge
        if message.sound:
            aps["sound"] = message.sound
        if message.category:
            aps["category"] = message.category

        body: Dict[str, Any] = {
            "notification": notification,
            "data": dict(message.data),
            "android": {
                "priority": FCM_ANDROID_PRIORITY,
                "notification": android_notification,
            },
            "apns": {"payload": {"aps": aps}},
        }
        if token is not None:
            body["token"] = token
        if topic is not None:
            body["topic"] = normalize_topic(topic)

        return {"message": body}

    async def _post_message(self, payload: Dict[str, Any], access_token: str) -> Optional[str]:
        """
        POST one message to messages:send.

        Returns:
            FCM message name (projects/<id>/messages/<n>)

        Raises:
            TransportError: On network errors, non-2xx responses or an error body
        """
        client = await self._get_client()

        try:
            response = await client.post(
                self._send_url(),
                json=payload,
                headers={
                    "Authorization": f"Bearer {access_token}",
                    "Content-Type": "application/json",
                },
            )
        except httpx.HTTPError as e:
            raise TransportError(f"FCM request failed: {e}") from e

        try:
            data = response.json()
        except ValueError:
            data = {}
        if not isinstance(data, dict):
            data = {}

        error = data.get("error")
        if not 200 <= response.status_code < 300 or error:
            vendor_message = error.get("message") if isinstance(error, dict) else None
            raise TransportError(
                vendor_message or "FCM send failed",
                status_code=response.status_code,
            )

        return data.get("name")

    async def _send_to_token(
        self,
        token: str,
        message: PushMessage,
        access_token: str,
    ) -> TokenOutcome:
        """Send to one registration token, folding errors into the outcome."""
        try:
            message_id = await self._post_message(
                self._build_message(message, token=token), access_token
            )
        except TransportError as e:
            logger.warning(
                "FCM send to token failed",
                extra={
                    "device_token": mask_token(token),
                    "status_code": e.status_code,
                    "error": sanitize_log_value(str(e)),
                }
            )
            return TokenOutcome(
                token=token, success=False, error=str(e), status_code=e.status_code
            )

        return TokenOutcome(token=token, success=True, message_id=message_id)

    async def _send_batch(
        self,
        tokens: List[str],
        message: PushMessage,
        access_token: str,
    ) -> List[TokenOutcome]:
        """Send to every token in one batch concurrently."""
        results = await asyncio.gather(
            *[self._send_to_token(token, message, access_token) for token in tokens],
            return_exceptions=True,
        )

        # Convert exceptions to failed outcomes
        outcomes = []
        for token, result in zip(tokens, results):
            if isinstance(result, Exception):
                logger.error(
                    f"FCM batch send exception: {result}",
                    extra={"device_token": mask_token(token)}
                )
                outcomes.append(TokenOutcome(token=token, success=False, error=str(result)))
            else:
                outcomes.append(result)
        return outcomes

    async def send_to_devices(self, tokens: List[str], message: PushMessage) -> SendResult:
        """
        Send to FCM registration tokens.

        Batches run one after another; tokens inside a batch are sent in
        parallel. failed_tokens lists every token that did not succeed,
        in input order.
        """
        if not self.is_ready():
            return self._not_ready_result()
        if not tokens:
            return SendResult(success=True)

        start_time = time.time()
        outcomes: List[TokenOutcome] = []

        for batch in chunk_tokens(list(tokens), self.batch_size):
            try:
                access_token = await self._ensure_valid_token()
            except TransportError as e:
                logger.error(
                    "Firebase access token refresh failed",
                    extra={"error": sanitize_log_value(str(e)), "pending": len(batch)}
                )
                if not outcomes:
                    record_push_notification_sent(
                        self.provider_type.value, "failure", len(tokens), time.time() - start_time
                    )
                    return SendResult.failure(str(e))
                outcomes.extend(
                    TokenOutcome(token=token, success=False, error=str(e)) for token in batch
                )
                continue

            outcomes.extend(await self._send_batch(batch, message, access_token))

        result = SendResult.from_outcomes(outcomes)
        duration = time.time() - start_time

        record_push_notification_sent(
            self.provider_type.value, "success", result.success_count, duration
        )
        record_push_notification_sent(self.provider_type.value, "failure", result.failure_count)

        logger.info(
            "FCM batch send complete",
            extra={
                "total": len(tokens),
                "success": result.success_count,
                "failed": result.failure_count,
                "duration_ms": int(duration * 1000),
            }
        )

        return result

    async def send_to_topic(self, topic: str, message: PushMessage) -> SendResult:
        """Send one message to an FCM topic."""
        if not self.is_ready():
            return self._not_ready_result()

        start_time = time.time()
        try:
            access_token = await self._ensure_valid_token()
            message_id = await self._post_message(
                self._build_message(message, topic=topic), access_token
            )
        except TransportError as e:
            logger.error(
                "FCM topic send failed",
                extra={"topic": topic, "error": sanitize_log_value(str(e))}
            )
            record_push_notification_sent(
                self.provider_type.value, "failure", 1, time.time() - start_time
            )
            return SendResult.failure(str(e))

        record_push_notification_sent(
            self.provider_type.value, "success", 1, time.time() - start_time
        )
        logger.info(
            "FCM topic notification sent",
            extra={"topic": normalize_topic(topic), "message_id": message_id}
        )

        return SendResult(success=True, message_id=message_id, success_count=1)

    async def validate_token(self, token: str) -> bool:
        """
        Check a registration token with a validate_only (dry run) send.

        Falls back to the local check when the provider is not initialized.
        """
        if not await super().validate_token(token):
            return False
        if not self.is_ready():
            return True

        payload = self._build_message(
            PushMessage(title="validate", body="validate"), token=token
        )
        payload["validate_only"] = True

        try:
            access_token = await self._ensure_valid_token()
            await self._post_message(payload, access_token)
        except TransportError as e:
            logger.debug(
                "FCM token failed validation",
                extra={"device_token": mask_token(token), "error": sanitize_log_value(str(e))}
            )
            return False
        return True

    # -------------------------------------------------------------------------
    # Topic subscriptions (Instance ID API)
    # -------------------------------------------------------------------------

    async def _iid_batch(self, action: str, tokens: List[str], topic: str) -> None:
        """
        Call iid batchAdd / batchRemove in chunks of IID_BATCH_LIMIT tokens.

        Raises:
            PushError: If the provider is not initialized
            TransportError: If the Instance ID API rejects a request
        """
        self._require_ready()
        if not tokens:
            return

        client = await self._get_client()
        url = f"{settings.FCM_IID_URL}:{action}"
        target = FCM_TOPIC_PREFIX + normalize_topic(topic)

        for batch in chunk_tokens(list(tokens), IID_BATCH_LIMIT):
            access_token = await self._ensure_valid_token()
            try:
                response = await client.post(
                    url,
                    json={"to": target, "registration_tokens": batch},
                    headers={
                        "Authorization": f"Bearer {access_token}",
                        "Content-Type": "application/json",
                        "access_token_auth": "true",
                    },
                )
            except httpx.HTTPError as e:
                raise TransportError(f"FCM {action} request failed: {e}") from e

            if not 200 <= response.status_code < 300:
                raise TransportError(
                    f"FCM {action} failed: {response.status_code} - {response.text}",
                    status_code=response.status_code,
                )

            try:
                results = response.json().get("results", [])
            except (ValueError, AttributeError):
                results = []
            errors = [r.get("error") for r in results if isinstance(r, dict) and r.get("error")]
            if errors:
                logger.warning(
                    f"FCM {action} reported {len(errors)} token errors",
                    extra={"topic": target, "first_error": errors[0]}
                )

        logger.info(
            f"FCM {action} complete",
            extra={"topic": target, "total": len(tokens)}
        )

    async def subscribe_to_topic(self, tokens: List[str], topic: str) -> None:
        """Subscribe registration tokens to an FCM topic."""
        await self._iid_batch("batchAdd", tokens, topic)

    async def unsubscribe_from_topic(self, tokens: List[str], topic: str) -> None:
        """Unsubscribe registration tokens from an FCM topic."""
        await self._iid_batch("batchRemove", tokens, topic)
