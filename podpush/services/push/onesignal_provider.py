"""
OneSignal Push Provider.

Thin wrapper around the OneSignal REST API. Authentication is a static
REST API key sent on every request; there is no token lifecycle.

Delivery accounting is coarse: OneSignal reports only how many recipients
a notification was queued for, so failure_count is estimated as
len(tokens) - recipients and failed_tokens is never populated.
"""

import logging
import time
from typing import Any, Dict, List, Optional

import httpx

from podpush.core.config import settings
from podpush.core.logging_config import sanitize_log_value
from podpush.core.metrics import record_push_notification_sent
from podpush.services.push.base import (
    ProviderConfigInput,
    PushProvider,
    parse_provider_config,
)
from podpush.services.push.constants import (
    ONESIGNAL_DEFAULT_LANGUAGE,
    ONESIGNAL_NOTIFICATIONS_PATH,
)
from podpush.services.push.exceptions import TransportError
from podpush.services.push.models import (
    OneSignalConfig,
    PushMessage,
    PushProviderType,
    SendResult,
)

logger = logging.getLogger(__name__)


class OneSignalProvider(PushProvider):
    """
    OneSignal provider for sending push notifications via the aggregator.

    Usage:
        provider = OneSignalProvider()
        await provider.initialize({"appId": "...", "apiKey": "..."})
        result = await provider.send_to_devices(player_ids, message)

    Attributes:
        config: Validated OneSignal credentials (None until initialized)
    """

    provider_type = PushProviderType.ONESIGNAL
    display_name = "OneSignal"

    def __init__(self, client: Optional[httpx.AsyncClient] = None):
        super().__init__(client)
        self.config: Optional[OneSignalConfig] = None
        self._base_url = settings.ONESIGNAL_API_URL.rstrip("/")

    async def initialize(self, config: ProviderConfigInput) -> None:
        """Validate app_id/api_key. No network call is made."""
        self.config = parse_provider_config(OneSignalConfig, config, self.display_name)
        logger.info(
            "OneSignal provider initialized",
            extra={"app_id": self.config.app_id}
        )

    def is_ready(self) -> bool:
        return self.config is not None

    def _build_payload(self, message: PushMessage, include_channel: bool = True) -> Dict[str, Any]:
        """Map PushMessage fields onto the OneSignal notification schema."""
        payload: Dict[str, Any] = {
            "app_id": self.config.app_id,
            "headings": {ONESIGNAL_DEFAULT_LANGUAGE: message.title},
            "contents": {ONESIGNAL_DEFAULT_LANGUAGE: message.body},
            "data": dict(message.data),
        }
        if message.image_url:
            payload["big_picture"] = message.image_url
        if message.sound:
            payload["ios_sound"] = message.sound
            payload["android_sound"] = message.sound
        if message.badge is not None:
            payload["ios_badgeType"] = "SetTo"
            payload["ios_badgeCount"] = message.badge
        if include_channel:
            if message.channel_id:
                payload["android_channel_id"] = message.channel_id
            if message.category:
                payload["ios_category"] = message.category
        return payload

    async def _post(self, path: str, body: Dict[str, Any]) -> Dict[str, Any]:
        """
        Issue an authenticated OneSignal API call.

        Raises:
            TransportError: On network errors, non-2xx responses or bodies that are not a JSON object
        """
        client = await self._get_client()
        headers = {
            "Content-Type": "application/json",
            "Authorization": f"Basic {self.config.api_key}",
        }

        try:
            response = await client.post(
                f"{self._base_url}{path}",
                json=body,
                headers=headers,
            )
        except httpx.HTTPError as e:
            raise TransportError(f"OneSignal request failed: {e}") from e

        if not 200 <= response.status_code < 300:
            raise TransportError(
                f"OneSignal API error: {response.status_code} - {response.text}",
                status_code=response.status_code,
            )

        try:
            data = response.json()
        except ValueError as e:
            raise TransportError(f"OneSignal returned invalid JSON: {e}") from e

        if not isinstance(data, dict):
            raise TransportError("OneSignal returned an unexpected body")
        return data

    @staticmethod
    def _recipient_count(response: Dict[str, Any]) -> int:
        """Vendor recipient count; a missing value counts as 0."""
        try:
            return int(response.get("recipients") or 0)
        except (TypeError, ValueError) as e:
            raise TransportError(
                f"OneSignal returned an invalid recipients value: {response.get('recipients')!r}"
            ) from e

    async def send_to_devices(self, tokens: List[str], message: PushMessage) -> SendResult:
        """
        Send to explicit OneSignal player IDs in one request.

        Returns:
            SendResult with success_count = vendor recipients and an
            estimated failure_count (failed_tokens stays empty)
        """
        if not self.is_ready():
            return self._not_ready_result()
        if not tokens:
            return SendResult(success=True)

        start_time = time.time()
        payload = self._build_payload(message)
        payload["include_player_ids"] = list(tokens)

        try:
            response = await self._post(ONESIGNAL_NOTIFICATIONS_PATH, payload)
            recipients = self._recipient_count(response)
        except TransportError as e:
            logger.error(
                "OneSignal send_to_devices failed",
                extra={
                    "error": sanitize_log_value(str(e)),
                    "status_code": e.status_code,
                    "total": len(tokens),
                }
            )
            record_push_notification_sent(
                self.provider_type.value, "failure", len(tokens), time.time() - start_time
            )
            return SendResult.failure(str(e))

        if response.get("errors"):
            logger.warning(
                "OneSignal reported errors",
                extra={"errors": sanitize_log_value(str(response["errors"]))}
            )
        failure_count = max(0, len(tokens) - recipients)
        duration = time.time() - start_time

        record_push_notification_sent(self.provider_type.value, "success", recipients, duration)
        record_push_notification_sent(self.provider_type.value, "failure", failure_count)

        logger.info(
            "OneSignal notification sent",
            extra={
                "message_id": response.get("id"),
                "recipients": recipients,
                "total": len(tokens),
                "duration_ms": int(duration * 1000),
            }
        )

        return SendResult(
            success=True,
            message_id=response.get("id"),
            success_count=recipients,
            failure_count=failure_count,
        )

    async def send_to_topic(self, topic: str, message: PushMessage) -> SendResult:
        """Broadcast to a OneSignal segment (OneSignal's notion of a topic)."""
        if not self.is_ready():
            return self._not_ready_result()

        start_time = time.time()
        payload = self._build_payload(message, include_channel=False)
        payload["included_segments"] = [topic]

        try:
            response = await self._post(ONESIGNAL_NOTIFICATIONS_PATH, payload)
            recipients = self._recipient_count(response)
        except TransportError as e:
            logger.error(
                "OneSignal send_to_topic failed",
                extra={"segment": topic, "error": sanitize_log_value(str(e))}
            )
            return SendResult.failure(str(e))
        record_push_notification_sent(
            self.provider_type.value, "success", recipients, time.time() - start_time
        )
        logger.info(
            "OneSignal segment notification sent",
            extra={"segment": topic, "message_id": response.get("id"), "recipients": recipients}
        )

        return SendResult(
            success=True,
            message_id=response.get("id"),
            success_count=recipients,
        )

    async def subscribe_to_topic(self, tokens: List[str], topic: str) -> None:
        """OneSignal segments are built from player tags; nothing to call here."""
        self._require_ready()
        logger.info(
            f"OneSignal segment membership is tag based; skipping subscribe of {len(tokens)} devices",
            extra={"segment": topic}
        )

    async def unsubscribe_from_topic(self, tokens: List[str], topic: str) -> None:
        self._require_ready()
        logger.info(
            f"OneSignal segment membership is tag based; skipping unsubscribe of {len(tokens)} devices",
            extra={"segment": topic}
        )
