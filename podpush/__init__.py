"""podpush: multi-tenant push notification delivery."""

__version__ = "1.0.0"
