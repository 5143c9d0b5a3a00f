"""
Exceptions raised by push notification providers.

Only ConfigurationError escapes a provider's send path: transport and
encryption failures are folded into SendResult by the providers.
"""

from typing import Optional


class PushError(Exception):
    """Base class for push delivery errors."""


class ConfigurationError(PushError):
    """Provider credentials are missing or invalid."""


class TransportError(PushError):
    """A vendor endpoint returned a non-2xx response or an unusable body."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class EncryptionError(PushError):
    """Web Push subscription, key or signature material could not be used."""
