"""
Mock Factories Package

Provides factory functions for creating realistic mock objects
that match push vendor API response structures.
"""
from tests.mocks.http_mocks import (
    create_http_response,
    create_json_response,
    create_onesignal_response,
    create_google_token_response,
    create_google_token_error_response,
    create_fcm_success_response,
    create_fcm_error_response,
    create_iid_batch_response,
    create_webpush_response,
)

__all__ = [
    "create_http_response",
    "create_json_response",
    "create_onesignal_response",
    "create_google_token_response",
    "create_google_token_error_response",
    "create_fcm_success_response",
    "create_fcm_error_response",
    "create_iid_batch_response",
    "create_webpush_response",
]
