"""
Pydantic models and result types for push notification providers.

Configuration models accept both snake_case field names and the camelCase
names stored in tenant settings (appId, apiKey, projectId, ...).
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional
from urllib.parse import urlparse

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator


class PushProviderType(str, Enum):
    """Supported push delivery backends."""

    ONESIGNAL = "onesignal"
    FIREBASE = "firebase"
    WEBPUSH = "webpush"

    @classmethod
    def from_string(cls, value: str) -> Optional["PushProviderType"]:
        """Convert string to PushProviderType, returns None if invalid"""
        try:
            return cls(value.lower())
        except ValueError:
            return None


# =============================================================================
# Message and result
# =============================================================================


class PushMessage(BaseModel):
    """Vendor-neutral notification content.

    Attributes:
        title: Notification title
        body: Notification body text
        data: Custom key/value data delivered to the app (string values)
        image_url: Large image / web notification icon URL
        badge: App icon badge number
        sound: Sound name or "default"
        channel_id: Android notification channel
        category: iOS notification category
    """

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    title: str = Field(..., description="Notification title")
    body: str = Field(..., description="Notification body text")
    data: Dict[str, str] = Field(default_factory=dict, description="Custom data payload")
    image_url: Optional[str] = Field(
        None,
        validation_alias=AliasChoices("image_url", "imageUrl"),
        description="Image URL",
    )
    badge: Optional[int] = Field(None, ge=0, description="Badge number")
    sound: Optional[str] = Field(None, description="Sound name")
    channel_id: Optional[str] = Field(
        None,
        validation_alias=AliasChoices("channel_id", "channelId"),
        description="Android channel ID",
    )
    category: Optional[str] = Field(None, description="iOS notification category")

    @field_validator("data", mode="before")
    @classmethod
    def stringify_data(cls, v: Any) -> Any:
        """Push vendors only accept string data values."""
        if v is None:
            return {}
        if isinstance(v, dict):
            return {str(k): str(val) for k, val in v.items()}
        return v


@dataclass
class SendResult:
    """Aggregated result of a provider send call.

    failed_tokens is only populated by providers that can attribute
    failures to individual tokens (Firebase, Web Push).
    """

    success: bool
    message_id: Optional[str] = None
    success_count: int = 0
    failure_count: int = 0
    failed_tokens: List[str] = field(default_factory=list)
    error: Optional[str] = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def total(self) -> int:
        """Number of recipients accounted for."""
        return self.success_count + self.failure_count

    @classmethod
    def failure(cls, error: str) -> "SendResult":
        """Build a failed result carrying a human-readable error."""
        return cls(success=False, error=error)

    @classmethod
    def from_outcomes(cls, outcomes: List["TokenOutcome"]) -> "SendResult":
        """Fold per-token outcomes into one result (input order preserved)."""
        success_count = sum(1 for o in outcomes if o.success)
        failed = [o for o in outcomes if not o.success]

        result = cls(
            success=success_count > 0,
            success_count=success_count,
            failure_count=len(failed),
            failed_tokens=[o.token for o in failed],
        )
        if len(outcomes) == 1 and success_count == 1:
            result.message_id = outcomes[0].message_id
        if not result.success and failed:
            result.error = f"All {len(failed)} deliveries failed: {failed[0].error or 'unknown error'}"
        return result


@dataclass
class TokenOutcome:
    """Delivery outcome for a single device token."""

    token: str
    success: bool
    message_id: Optional[str] = None
    error: Optional[str] = None
    status_code: Optional[int] = None


# =============================================================================
# Provider configuration
# =============================================================================


class _ProviderConfig(BaseModel):
    """Shared settings for provider credential models."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore", frozen=True)

    @field_validator("*", mode="after")
    @classmethod
    def validate_not_blank(cls, v: Any) -> Any:
        """Reject empty or whitespace-only credential values."""
        if isinstance(v, str) and not v.strip():
            raise ValueError("must not be empty")
        return v


class OneSignalConfig(_ProviderConfig):
    """OneSignal credentials.

    Attributes:
        app_id: OneSignal application ID
        api_key: REST API key (sent as Basic authorization)
    """

    app_id: str = Field(..., validation_alias=AliasChoices("app_id", "appId"))
    api_key: str = Field(..., validation_alias=AliasChoices("api_key", "apiKey"))


class FirebaseConfig(_ProviderConfig):
    """Firebase Cloud Messaging credentials.

    Attributes:
        project_id: Firebase project ID
        credentials: Service account JSON document (as a string)
    """

    project_id: str = Field(..., validation_alias=AliasChoices("project_id", "projectId"))
    credentials: str = Field(..., description="Service account JSON")


class WebPushConfig(_ProviderConfig):
    """VAPID credentials for Web Push.

    Attributes:
        vapid_public_key: Uncompressed P-256 public key, base64url
        vapid_private_key: P-256 private scalar, base64url
        vapid_subject: Contact URI (mailto: or https:)
    """

    vapid_public_key: str = Field(
        ..., validation_alias=AliasChoices("vapid_public_key", "vapidPublicKey")
    )
    vapid_private_key: str = Field(
        ..., validation_alias=AliasChoices("vapid_private_key", "vapidPrivateKey")
    )
    vapid_subject: str = Field(
        ..., validation_alias=AliasChoices("vapid_subject", "vapidSubject")
    )

    @field_validator("vapid_subject")
    @classmethod
    def validate_subject(cls, v: str) -> str:
        """RFC 8292 requires a mailto: or https: contact URI."""
        if not (v.startswith("mailto:") or v.startswith("https:")):
            raise ValueError("vapid_subject must be a mailto: or https: URI")
        return v


class ServiceAccountInfo(BaseModel):
    """Parsed Google service account JSON (only the fields we use)."""

    model_config = ConfigDict(extra="ignore", frozen=True)

    client_email: str
    private_key: str
    private_key_id: Optional[str] = None
    project_id: Optional[str] = None
    token_uri: Optional[str] = None  # Falls back to settings.GOOGLE_TOKEN_URL


# =============================================================================
# Web Push subscription
# =============================================================================


class WebPushKeys(BaseModel):
    """Client keys from PushSubscription.toJSON()."""

    p256dh: str
    auth: str


class WebPushSubscription(BaseModel):
    """Browser push subscription, serialized as the device token string."""

    endpoint: str
    keys: WebPushKeys

    @field_validator("endpoint")
    @classmethod
    def validate_endpoint(cls, v: str) -> str:
        parsed = urlparse(v)
        if parsed.scheme not in ("https", "http") or not parsed.netloc:
            raise ValueError("endpoint must be an absolute http(s) URL")
        return v

    @property
    def audience(self) -> str:
        """Origin of the push service, used as the VAPID aud claim."""
        parsed = urlparse(self.endpoint)
        return f"{parsed.scheme}://{parsed.netloc}"

    @classmethod
    def from_token(cls, token: str) -> "WebPushSubscription":
        """Parse a JSON-serialized subscription token.

        Raises:
            EncryptionError: If the token is not a valid subscription
        """
        # Imported here to keep models free of provider dependencies
        from podpush.services.push.exceptions import EncryptionError

        try:
            return cls.model_validate_json(token)
        except ValueError as e:
            raise EncryptionError(f"Malformed Web Push subscription: {e}") from e

    def to_token(self) -> str:
        """Serialize back to the JSON token form."""
        return self.model_dump_json()


# =============================================================================
# Credentials state
# =============================================================================


@dataclass
class AccessToken:
    """Cached OAuth2 bearer token."""

    token: str
    expires_at: datetime

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        """True once now has reached the (buffered) expiry instant."""
        now = now or datetime.now(timezone.utc)
        return now >= self.expires_at


@dataclass(frozen=True)
class VapidKeyPair:
    """VAPID application server key pair (base64url, unpadded)."""

    public_key: str
    private_key: str
