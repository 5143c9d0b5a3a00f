"""
Tenant Push Dispatch Service.

Routes notifications for each tenant to that tenant's configured provider.

Features:
- One provider instance per tenant and provider type ("<tenant>:<provider>")
- Web Push provider alongside the primary provider when VAPID keys exist
- Target routing: all devices, specific users, topic or segment
- Device token lookup delegated to an external registry
"""

import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Dict, List, Optional, Protocol

from pydantic import AliasChoices, BaseModel, ConfigDict, Field

from podpush.core.logging_config import clear_tenant_id, set_tenant_id
from podpush.core.metrics import record_dispatch
from podpush.services.push.base import PushProvider
from podpush.services.push.exceptions import ConfigurationError
from podpush.services.push.firebase_provider import FirebaseProvider
from podpush.services.push.models import (
    PushMessage,
    PushProviderType,
    SendResult,
    VapidKeyPair,
)
from podpush.services.push.onesignal_provider import OneSignalProvider
from podpush.services.push.webpush_provider import WebPushProvider

logger = logging.getLogger(__name__)


class TenantPushConfig(BaseModel):
    """Push settings stored for one tenant.

    Credential fields arrive already decrypted. Field names follow the
    stored tenant settings (camelCase) or snake_case.
    """

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    tenant_id: str = Field(..., validation_alias=AliasChoices("tenant_id", "tenantId"))
    provider: PushProviderType
    is_enabled: bool = Field(True, validation_alias=AliasChoices("is_enabled", "isEnabled"))

    onesignal_app_id: Optional[str] = Field(
        None, validation_alias=AliasChoices("onesignal_app_id", "oneSignalAppId")
    )
    onesignal_api_key: Optional[str] = Field(
        None, validation_alias=AliasChoices("onesignal_api_key", "oneSignalApiKey")
    )
    firebase_project_id: Optional[str] = Field(
        None, validation_alias=AliasChoices("firebase_project_id", "firebaseProjectId")
    )
    firebase_credentials: Optional[str] = Field(
        None, validation_alias=AliasChoices("firebase_credentials", "firebaseCredentials")
    )
    vapid_public_key: Optional[str] = Field(
        None, validation_alias=AliasChoices("vapid_public_key", "vapidPublicKey")
    )
    vapid_private_key: Optional[str] = Field(
        None, validation_alias=AliasChoices("vapid_private_key", "vapidPrivateKey")
    )
    vapid_subject: Optional[str] = Field(
        None, validation_alias=AliasChoices("vapid_subject", "vapidSubject")
    )

    @property
    def has_vapid_keys(self) -> bool:
        return bool(self.vapid_public_key and self.vapid_private_key and self.vapid_subject)

    def provider_config(self, provider_type: PushProviderType) -> Optional[Dict[str, str]]:
        """Credentials for provider_type, or None when they are incomplete."""
        if provider_type == PushProviderType.ONESIGNAL:
            if self.onesignal_app_id and self.onesignal_api_key:
                return {"app_id": self.onesignal_app_id, "api_key": self.onesignal_api_key}
        elif provider_type == PushProviderType.FIREBASE:
            if self.firebase_project_id and self.firebase_credentials:
                return {
                    "project_id": self.firebase_project_id,
                    "credentials": self.firebase_credentials,
                }
        elif provider_type == PushProviderType.WEBPUSH:
            if self.has_vapid_keys:
                return {
                    "vapid_public_key": self.vapid_public_key,
                    "vapid_private_key": self.vapid_private_key,
                    "vapid_subject": self.vapid_subject,
                }
        return None


class PushTargetType(str, Enum):
    """Who a dispatch is addressed to."""

    ALL = "all"
    USER_IDS = "user_ids"
    TOPIC = "topic"
    SEGMENT = "segment"


@dataclass
class PushTarget:
    """Dispatch target.

    Attributes:
        target_type: Routing mode
        user_ids: Users to notify (USER_IDS)
        topic: Provider topic name (TOPIC)
        segment: Provider segment name (SEGMENT)
    """

    target_type: PushTargetType
    user_ids: List[str] = field(default_factory=list)
    topic: Optional[str] = None
    segment: Optional[str] = None


class DeviceTokenSource(Protocol):
    """Registry of device tokens for users who have push enabled."""

    async def get_active_tokens(self, tenant_id: str) -> List[str]:
        ...

    async def get_tokens_for_users(self, tenant_id: str, user_ids: List[str]) -> List[str]:
        ...


ProviderFactory = Callable[[PushProviderType], PushProvider]

_PROVIDER_CLASSES = {
    PushProviderType.ONESIGNAL: OneSignalProvider,
    PushProviderType.FIREBASE: FirebaseProvider,
    PushProviderType.WEBPUSH: WebPushProvider,
}


def create_provider(provider_type: PushProviderType) -> PushProvider:
    """Build an uninitialized provider for provider_type."""
    try:
        provider_cls = _PROVIDER_CLASSES[PushProviderType(provider_type)]
    except (KeyError, ValueError) as e:
        raise ConfigurationError(f"Unknown push provider: {provider_type}") from e
    return provider_cls()


def _provider_key(tenant_id: str, provider_type: PushProviderType) -> str:
    return f"{tenant_id}:{PushProviderType(provider_type).value}"


class PushDispatchService:
    """
    Tenant-aware push dispatch service.

    Usage:
        service = PushDispatchService(token_source)
        await service.configure_tenant(TenantPushConfig(
            tenant_id="t1",
            provider="firebase",
            firebase_project_id="...",
            firebase_credentials=sa_json,
        ))
        result = await service.send(
            "t1",
            PushMessage(title="New episode", body="..."),
            PushTarget(PushTargetType.USER_IDS, user_ids=["u1"]),
        )
    """

    def __init__(
        self,
        token_source: DeviceTokenSource,
        provider_factory: ProviderFactory = create_provider,
    ):
        """
        Args:
            token_source: Device token registry
            provider_factory: Builds a provider for a provider type
        """
        self._token_source = token_source
        self._provider_factory = provider_factory
        self._providers: Dict[str, PushProvider] = {}
        self._configs: Dict[str, TenantPushConfig] = {}

    async def configure_tenant(self, config: TenantPushConfig) -> None:
        """
        (Re)build the providers for one tenant.

        The primary provider is initialized when its credentials are
        complete; a Web Push provider is added when VAPID keys exist.

        Raises:
            ConfigurationError: If a provider rejects its credentials
        """
        await self.remove_tenant(config.tenant_id)

        provider_types = [config.provider]
        if config.has_vapid_keys and config.provider != PushProviderType.WEBPUSH:
            provider_types.append(PushProviderType.WEBPUSH)

        for provider_type in provider_types:
            credentials = config.provider_config(provider_type)
            if credentials is None:
                logger.warning(
                    f"Incomplete {provider_type.value} credentials, provider not initialized",
                    extra={"tenant_id": config.tenant_id}
                )
                continue

            provider = self._provider_factory(provider_type)
            try:
                await provider.initialize(credentials)
            except ConfigurationError:
                await provider.close()
                await self.remove_tenant(config.tenant_id)
                raise
            self._providers[_provider_key(config.tenant_id, provider_type)] = provider

        self._configs[config.tenant_id] = config
        logger.info(
            f"Push provider initialized for tenant {config.tenant_id}: {config.provider.value}",
            extra={
                "tenant_id": config.tenant_id,
                "providers": [t.value for t in provider_types],
            }
        )

    def get_provider(
        self,
        tenant_id: str,
        provider_type: PushProviderType,
    ) -> Optional[PushProvider]:
        """Provider for a tenant, or None when not configured."""
        return self._providers.get(_provider_key(tenant_id, provider_type))

    async def send(
        self,
        tenant_id: str,
        message: PushMessage,
        target: PushTarget,
    ) -> SendResult:
        """
        Send a notification through the tenant's primary provider.

        Returns:
            SendResult from the provider, or a failure result when the
            tenant is not configured or the target is incomplete
        """
        context = set_tenant_id(tenant_id)
        try:
            return await self._send(tenant_id, message, target)
        finally:
            clear_tenant_id(context)

    async def _send(
        self,
        tenant_id: str,
        message: PushMessage,
        target: PushTarget,
    ) -> SendResult:
        target_type = PushTargetType(target.target_type)
        config = self._configs.get(tenant_id)
        provider = self.get_provider(tenant_id, config.provider) if config else None
        provider_name = config.provider.value if config else "none"

        if config is None or not config.is_enabled or provider is None or not provider.is_ready():
            logger.warning(
                "Push provider not configured",
                extra={"tenant_id": tenant_id, "enabled": bool(config and config.is_enabled)}
            )
            record_dispatch(provider_name, target_type.value, "not_configured")
            return SendResult.failure("Push provider not configured")

        start_time = time.time()

        if target_type in (PushTargetType.ALL, PushTargetType.USER_IDS):
            if target_type == PushTargetType.ALL:
                tokens = await self._token_source.get_active_tokens(tenant_id)
            else:
                if not target.user_ids:
                    record_dispatch(provider_name, target_type.value, "failed")
                    return SendResult.failure("No user IDs specified")
                tokens = await self._token_source.get_tokens_for_users(
                    tenant_id, list(target.user_ids)
                )

            if not tokens:
                logger.debug(
                    "No device tokens for dispatch",
                    extra={"tenant_id": tenant_id, "target_type": target_type.value}
                )
                record_dispatch(provider_name, target_type.value, "no_recipients")
                return SendResult(success=True)

            result = await provider.send_to_devices(tokens, message)

        else:
            name = target.topic if target_type == PushTargetType.TOPIC else target.segment
            if not name:
                record_dispatch(provider_name, target_type.value, "failed")
                return SendResult.failure(f"No {target_type.value} specified")
            result = await provider.send_to_topic(name, message)

        record_dispatch(provider_name, target_type.value, "sent" if result.success else "failed")
        logger.info(
            "Dispatch complete",
            extra={
                "tenant_id": tenant_id,
                "provider": provider_name,
                "target_type": target_type.value,
                "success": result.success_count,
                "failed": result.failure_count,
                "duration_ms": round((time.time() - start_time) * 1000, 2),
            }
        )
        return result

    async def send_web_push(
        self,
        tenant_id: str,
        subscriptions: List[str],
        message: PushMessage,
    ) -> SendResult:
        """Send to browser subscriptions through the tenant's Web Push provider."""
        provider = self.get_provider(tenant_id, PushProviderType.WEBPUSH)
        if provider is None or not provider.is_ready():
            return SendResult.failure("Web Push not configured")

        context = set_tenant_id(tenant_id)
        try:
            return await provider.send_to_devices(subscriptions, message)
        finally:
            clear_tenant_id(context)

    @staticmethod
    def generate_vapid_keys() -> VapidKeyPair:
        """New VAPID key pair for tenant setup."""
        return WebPushProvider.generate_vapid_keys()

    def get_vapid_public_key(self, tenant_id: str) -> Optional[str]:
        config = self._configs.get(tenant_id)
        return config.vapid_public_key if config and config.vapid_public_key else None

    def configured_tenants(self) -> List[str]:
        return sorted(self._configs)

    async def remove_tenant(self, tenant_id: str) -> None:
        """Close and forget every provider belonging to tenant_id."""
        prefix = f"{tenant_id}:"
        for key in [k for k in self._providers if k.startswith(prefix)]:
            provider = self._providers.pop(key)
            await provider.close()
        self._configs.pop(tenant_id, None)

    async def close(self) -> None:
        """Close providers and release resources."""
        for provider in self._providers.values():
            await provider.close()
        self._providers.clear()
        logger.debug("PushDispatchService closed")

    async def __aenter__(self) -> "PushDispatchService":
        """Context manager entry."""
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        """Context manager exit."""
        await self.close()
