"""
Structured JSON Logging Configuration

Every log line carries the tenant being dispatched for, so delivery
problems can be traced per tenant across providers:
- JSON formatted output (python-json-logger)
- Tenant ID tracking via contextvars
- CR/LF stripping for vendor error bodies echoed into logs
- Optional rotating push.log / error.log files
"""
import contextvars
import logging
import logging.handlers
import os
import re
from datetime import datetime, timezone
from typing import Optional

from pythonjsonlogger import jsonlogger

from podpush.core.config import settings

# Context variable for tenant ID propagation
tenant_id_var: contextvars.ContextVar[Optional[str]] = contextvars.ContextVar(
    'tenant_id', default=None
)

# Used when neither log_dir nor settings.LOG_DIR is set
LOG_DIR = os.path.join(os.getcwd(), 'data', 'logs')

# (file name, max bytes, backups, minimum level or None for the root level)
LOG_FILES = (
    ('push.log', 100 * 1024 * 1024, 7, None),
    ('error.log', 50 * 1024 * 1024, 5, logging.ERROR),
)

MAX_LOG_VALUE_LENGTH = 10000

_LINE_BREAKS = re.compile(r'\r\n|[\r\n]')


def _strip_line_breaks(value: str) -> str:
    return _LINE_BREAKS.sub(' ', value)


class TenantIdFilter(logging.Filter):
    """Adds tenant_id to every record from the dispatch context."""

    def filter(self, record: logging.LogRecord) -> bool:
        # An explicit extra={"tenant_id": ...} wins over the context
        if not getattr(record, "tenant_id", None):
            record.tenant_id = tenant_id_var.get() or "-"
        return True


class SanitizingFilter(logging.Filter):
    """
    Replaces CR/LF in messages and string args.

    Vendor error bodies and push endpoints end up in log lines and must
    not be able to forge extra entries.
    """

    def filter(self, record: logging.LogRecord) -> bool:
        if isinstance(record.msg, str):
            record.msg = _strip_line_breaks(record.msg)

        if record.args and isinstance(record.args, tuple):
            record.args = tuple(
                _strip_line_breaks(arg) if isinstance(arg, str) else arg
                for arg in record.args
            )

        return True


class CustomJsonFormatter(jsonlogger.JsonFormatter):
    """
    JSON formatter adding timestamp, level, source and tenant fields.

    Output format:
    {
        "timestamp": "2025-11-23T10:30:00.000Z",
        "level": "INFO",
        "message": "FCM batch send complete",
        "module": "firebase_provider",
        "tenant_id": "tenant-uuid",
        "logger": "podpush.services.push.firebase_provider",
        ...extra fields...
    }
    """

    def add_fields(
        self,
        log_record: dict,
        record: logging.LogRecord,
        message_dict: dict
    ) -> None:
        super().add_fields(log_record, record, message_dict)

        # Fields named in the format string arrive as None
        if not log_record.get('timestamp'):
            log_record['timestamp'] = datetime.now(timezone.utc).isoformat()
        log_record.update(
            level=record.levelname,
            module=record.module,
            logger=record.name,
            tenant_id=getattr(record, 'tenant_id', '-'),
        )
        if record.funcName:
            log_record['function'] = record.funcName
        if record.lineno:
            log_record['line'] = record.lineno
        if not log_record.get('message'):
            log_record['message'] = record.getMessage()


def _attach(
    root_logger: logging.Logger,
    handler: logging.Handler,
    level: int,
    formatter: logging.Formatter,
) -> None:
    handler.setLevel(level)
    handler.setFormatter(formatter)
    handler.addFilter(TenantIdFilter())
    handler.addFilter(SanitizingFilter())
    root_logger.addHandler(handler)


def setup_logging(
    log_level: Optional[str] = None,
    log_dir: Optional[str] = None,
    log_to_file: bool = True,
) -> logging.Logger:
    """
    Configure the root logger for JSON output.

    Args:
        log_level: Override log level (default from settings.LOG_LEVEL)
        log_dir: Override log directory (default: settings.LOG_DIR or ./data/logs)
        log_to_file: Also write rotating push.log and error.log files

    Returns:
        Root logger configured for the application
    """
    level = getattr(logging, (log_level or settings.LOG_LEVEL).upper(), logging.INFO)
    formatter = CustomJsonFormatter('%(timestamp)s %(level)s %(name)s %(message)s')

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.handlers.clear()

    _attach(root_logger, logging.StreamHandler(), level, formatter)

    if log_to_file:
        directory = log_dir or settings.LOG_DIR or LOG_DIR
        os.makedirs(directory, exist_ok=True)
        for name, max_bytes, backups, min_level in LOG_FILES:
            handler = logging.handlers.RotatingFileHandler(
                os.path.join(directory, name),
                maxBytes=max_bytes,
                backupCount=backups,
                encoding='utf-8'
            )
            _attach(root_logger, handler, min_level or level, formatter)

    # Suppress noisy third-party loggers
    logging.getLogger('httpx').setLevel(logging.WARNING)
    logging.getLogger('httpcore').setLevel(logging.WARNING)

    return root_logger


def set_tenant_id(tenant_id: Optional[str]) -> contextvars.Token:
    """Set the tenant for the current context; reset with clear_tenant_id."""
    return tenant_id_var.set(tenant_id)


def get_tenant_id() -> Optional[str]:
    return tenant_id_var.get()


def clear_tenant_id(token: contextvars.Token) -> None:
    """Restore the tenant context saved by set_tenant_id."""
    tenant_id_var.reset(token)


def sanitize_log_value(value: str) -> str:
    """
    Flatten a value for logging in extra fields.

    Line breaks become spaces and values over MAX_LOG_VALUE_LENGTH are
    cut with a '...[truncated]' marker.
    """
    if not isinstance(value, str):
        return str(value)

    sanitized = _strip_line_breaks(value)
    if len(sanitized) > MAX_LOG_VALUE_LENGTH:
        sanitized = sanitized[:MAX_LOG_VALUE_LENGTH] + '...[truncated]'
    return sanitized


def mask_token(token: str, visible: int = 20) -> str:
    """Shorten a device token or push endpoint for log output."""
    if not token:
        return "N/A"
    if len(token) <= visible:
        return token
    return token[:visible] + "..."
