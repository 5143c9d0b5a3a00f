"""
Constants for push notification providers.
"""

# OneSignal
ONESIGNAL_NOTIFICATIONS_PATH = "/notifications"
ONESIGNAL_DEFAULT_LANGUAGE = "en"

# Firebase / Google OAuth2
FCM_OAUTH_SCOPE = "https://www.googleapis.com/auth/firebase.messaging"
JWT_BEARER_GRANT_TYPE = "urn:ietf:params:oauth:grant-type:jwt-bearer"
SERVICE_ACCOUNT_JWT_ALGORITHM = "RS256"
SERVICE_ACCOUNT_JWT_LIFETIME_SECONDS = 3600  # 1 hour
ACCESS_TOKEN_EXPIRY_BUFFER_SECONDS = 60  # Refresh 1 min before vendor expiry
FCM_TOPIC_PREFIX = "/topics/"
FCM_ANDROID_PRIORITY = "high"
IID_BATCH_LIMIT = 1000  # Max registration tokens per batchAdd/batchRemove call

# Web Push (RFC 8188 / 8291 / 8292)
VAPID_JWT_ALGORITHM = "ES256"
WEBPUSH_CONTENT_ENCODING = "aes128gcm"
WEBPUSH_RECORD_SIZE = 4096
WEBPUSH_SALT_LENGTH = 16
WEBPUSH_AUTH_SECRET_LENGTH = 16
WEBPUSH_KEY_LENGTH = 16  # AES-128 content encryption key
WEBPUSH_NONCE_LENGTH = 12
WEBPUSH_TAG_LENGTH = 16
WEBPUSH_RECORD_DELIMITER = b"\x02"  # Last-record padding delimiter
WEBPUSH_URGENCY = "normal"

# P-256 key material sizes
P256_PUBLIC_KEY_LENGTH = 65  # Uncompressed point: 0x04 || X || Y
P256_PRIVATE_KEY_LENGTH = 32
P256_COORDINATE_LENGTH = 32

# HTTP status codes meaning a Web Push subscription is gone
WEBPUSH_EXPIRED_STATUS_CODES = {404, 410}
