"""Push Provider Interface

Defines the contract every push backend satisfies. Callers select a
provider by tenant configuration, call initialize() once, then send
through send_to_devices() / send_to_topic() without branching on the
concrete type.

Contract:
- initialize() raises ConfigurationError on missing or invalid credentials
- is_ready() is False until initialize() succeeds
- send_to_devices() / send_to_topic() never raise for network or
  per-recipient failures; those are folded into SendResult
"""

import logging
from abc import ABC, abstractmethod
from collections.abc import Mapping
from typing import ClassVar, List, Optional, Type, TypeVar, Union

import httpx
from pydantic import BaseModel, ValidationError

from podpush.core.config import settings
from podpush.services.push.exceptions import ConfigurationError, PushError
from podpush.services.push.models import PushMessage, PushProviderType, SendResult

logger = logging.getLogger(__name__)

ConfigT = TypeVar("ConfigT", bound=BaseModel)

ProviderConfigInput = Union[BaseModel, Mapping]


def parse_provider_config(
    config_cls: Type[ConfigT],
    config: Optional[ProviderConfigInput],
    provider_name: str,
) -> ConfigT:
    """
    Coerce a config model or mapping into config_cls.

    Args:
        config_cls: Target pydantic model
        config: Model instance or mapping (snake_case or camelCase keys)
        provider_name: Name used in error messages

    Returns:
        Validated config model

    Raises:
        ConfigurationError: If required fields are missing or invalid
    """
    if isinstance(config, config_cls):
        return config
    if isinstance(config, BaseModel):
        config = config.model_dump()
    if not isinstance(config, Mapping):
        raise ConfigurationError(f"{provider_name} configuration must be a mapping")

    try:
        return config_cls.model_validate(dict(config))
    except ValidationError as e:
        fields = ", ".join(
            ".".join(str(part) for part in err["loc"]) or "config" for err in e.errors()
        )
        raise ConfigurationError(
            f"{provider_name} configuration invalid ({fields})"
        ) from e


class PushProvider(ABC):
    """
    Abstract base class for push notification providers.

    Subclasses implement initialize/is_ready/send_to_devices/send_to_topic.
    Topic subscription management and token validation are optional and
    have conservative defaults here.

    Each provider owns one pooled httpx.AsyncClient, created lazily and
    released by close() or the async context manager.
    """

    provider_type: ClassVar[PushProviderType]
    display_name: ClassVar[str] = "Push provider"

    def __init__(self, client: Optional[httpx.AsyncClient] = None):
        """
        Args:
            client: Optional shared HTTP client (the provider will not close it)
        """
        self._client: Optional[httpx.AsyncClient] = client
        self._owns_client = client is None

    @abstractmethod
    async def initialize(self, config: ProviderConfigInput) -> None:
        """
        Validate credentials and prepare the provider for sending.

        Raises:
            ConfigurationError: If configuration is missing or invalid
        """

    @abstractmethod
    def is_ready(self) -> bool:
        """True once initialize() has succeeded."""

    @abstractmethod
    async def send_to_devices(self, tokens: List[str], message: PushMessage) -> SendResult:
        """Send a notification to explicit device tokens."""

    @abstractmethod
    async def send_to_topic(self, topic: str, message: PushMessage) -> SendResult:
        """Send a notification to a vendor-side topic or segment."""

    async def subscribe_to_topic(self, tokens: List[str], topic: str) -> None:
        """Subscribe device tokens to a topic (optional capability)."""
        raise PushError(f"{self.display_name} does not support topic subscriptions")

    async def unsubscribe_from_topic(self, tokens: List[str], topic: str) -> None:
        """Unsubscribe device tokens from a topic (optional capability)."""
        raise PushError(f"{self.display_name} does not support topic subscriptions")

    async def validate_token(self, token: str) -> bool:
        """Cheap local check that a token looks usable by this provider."""
        return bool(token and token.strip())

    def _not_ready_result(self) -> SendResult:
        return SendResult.failure(f"{self.display_name} not initialized")

    def _require_ready(self) -> None:
        if not self.is_ready():
            raise PushError(f"{self.display_name} not initialized")

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create the pooled HTTP client."""
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(
                    settings.PUSH_HTTP_TIMEOUT_SECONDS,
                    connect=settings.PUSH_HTTP_CONNECT_TIMEOUT_SECONDS,
                ),
                limits=httpx.Limits(max_connections=100, max_keepalive_connections=20),
            )
            self._owns_client = True
        return self._client

    async def close(self) -> None:
        """Close the HTTP client and release resources."""
        if self._client and self._owns_client and not self._client.is_closed:
            await self._client.aclose()
            logger.debug(f"{self.display_name} provider closed")
        if self._owns_client:
            self._client = None

    async def __aenter__(self) -> "PushProvider":
        """Context manager entry."""
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        """Context manager exit."""
        await self.close()

