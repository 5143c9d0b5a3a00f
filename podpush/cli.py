"""
Podpush command line tool

Helps set up and debug tenant push delivery by:
- Generating VAPID key pairs for new tenants
- Checking that a tenant push config initializes
- Sending a test notification to device tokens or a topic

Tenant configs are JSON files in the stored camelCase form, e.g.
    {"tenantId": "t1", "provider": "firebase",
     "firebaseProjectId": "...", "firebaseCredentials": "..."}
"""

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

from pydantic import ValidationError

from podpush.core.logging_config import setup_logging
from podpush.services.push import (
    ConfigurationError,
    PushDispatchService,
    PushMessage,
    PushTarget,
    PushTargetType,
    TenantPushConfig,
)

logger = logging.getLogger(__name__)


class StaticTokenSource:
    """Token source that returns the tokens given on the command line."""

    def __init__(self, tokens: List[str]):
        self.tokens = tokens

    async def get_active_tokens(self, tenant_id: str) -> List[str]:
        return list(self.tokens)

    async def get_tokens_for_users(self, tenant_id: str, user_ids: List[str]) -> List[str]:
        return list(self.tokens)


def load_tenant_config(path: str) -> TenantPushConfig:
    """Read a tenant push config from a JSON file."""
    try:
        return TenantPushConfig.model_validate_json(Path(path).read_text())
    except OSError as e:
        raise ConfigurationError(f"Cannot read tenant config {path}: {e}") from e
    except ValidationError as e:
        raise ConfigurationError(f"Invalid tenant config {path}: {e}") from e


def parse_data(raw: Optional[str]) -> Dict[str, Any]:
    """Parse the --data option, which must be a JSON object."""
    if not raw:
        return {}
    try:
        data = json.loads(raw)
    except json.JSONDecodeError as e:
        raise ConfigurationError(f"--data is not valid JSON: {e}") from e
    if not isinstance(data, dict):
        raise ConfigurationError(f"--data must be a JSON object, got {type(data).__name__}")
    return data


def cmd_generate_vapid(args: argparse.Namespace) -> int:
    keys = PushDispatchService.generate_vapid_keys()
    print(json.dumps({"vapidPublicKey": keys.public_key, "vapidPrivateKey": keys.private_key}, indent=2))
    return 0


async def cmd_check(args: argparse.Namespace) -> int:
    config = load_tenant_config(args.config)
    async with PushDispatchService(StaticTokenSource([])) as service:
        await service.configure_tenant(config)
        provider = service.get_provider(config.tenant_id, config.provider)
        ready = provider is not None and provider.is_ready()

    print(f"{config.tenant_id}: {config.provider.value} {'ready' if ready else 'not configured'}")
    return 0 if ready else 1


async def cmd_send(args: argparse.Namespace) -> int:
    config = load_tenant_config(args.config)
    message = PushMessage(
        title=args.title,
        body=args.body,
        data=parse_data(args.data),
    )
    if args.topic:
        target = PushTarget(PushTargetType.TOPIC, topic=args.topic)
    else:
        target = PushTarget(PushTargetType.ALL)

    async with PushDispatchService(StaticTokenSource(args.token)) as service:
        await service.configure_tenant(config)
        result = await service.send(config.tenant_id, message, target)

    print(json.dumps({
        "success": result.success,
        "successCount": result.success_count,
        "failureCount": result.failure_count,
        "failedTokens": result.failed_tokens,
        "messageId": result.message_id,
        "error": result.error,
    }, indent=2))
    return 0 if result.success else 1


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Podcast push delivery tool")
    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("generate-vapid", help="Generate a VAPID key pair")

    check_parser = subparsers.add_parser("check", help="Initialize a tenant push config")
    check_parser.add_argument("config", help="Tenant push config JSON file")

    send_parser = subparsers.add_parser("send", help="Send a test notification")
    send_parser.add_argument("config", help="Tenant push config JSON file")
    send_parser.add_argument("--title", default="Test notification")
    send_parser.add_argument("--body", default="Push delivery is working")
    send_parser.add_argument("--data", help="JSON object of string data fields")
    send_parser.add_argument(
        "--token",
        action="append",
        default=[],
        help="Device token or subscription JSON (repeatable)"
    )
    send_parser.add_argument("--topic", help="Send to a topic or segment instead of tokens")

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    setup_logging(log_level="WARNING", log_to_file=False)

    try:
        if args.command == "generate-vapid":
            return cmd_generate_vapid(args)
        if args.command == "check":
            return asyncio.run(cmd_check(args))
        return asyncio.run(cmd_send(args))
    except ConfigurationError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return 2


if __name__ == "__main__":
    sys.exit(main())
