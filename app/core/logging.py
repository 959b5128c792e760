"""
Structured JSON logging for the workflow service.

Every line is one JSON object. Workflow context passed through ``extra``
(actor, step, entity) is lifted into top-level keys so log search can filter
on it, and secrets or payment references are redacted before output.
"""
import json
import logging
import re
import sys
from datetime import datetime, timezone
from typing import Optional

from app.core.config import settings

REDACTED = "***REDACTED***"

_SENSITIVE_KEYS = frozenset({
    "password", "secret", "secret_key", "api_key", "apikey", "token",
    "access_token", "authorization", "credential", "transaction_id",
})

# key=value / "key": "value" fragments inside free-text messages
_SENSITIVE_PATTERN = re.compile(
    r'(' + '|'.join(sorted(_SENSITIVE_KEYS, key=len, reverse=True)) + r')'
    r'[\"\']?\s*[:=]\s*[\"\']?[^\s,;\"\'}{]+',
    re.IGNORECASE,
)

# Workflow context lifted from ``extra`` into the JSON entry
CONTEXT_FIELDS = (
    "user_id", "role", "action", "step", "entity_type", "entity_id", "quote_id",
)


def scrub(obj):
    """Redact sensitive keys in nested dicts and lists."""
    if isinstance(obj, dict):
        return {
            k: REDACTED if str(k).lower() in _SENSITIVE_KEYS else scrub(v)
            for k, v in obj.items()
        }
    if isinstance(obj, (list, tuple)):
        return [scrub(i) for i in obj]
    return obj


def scrub_message(message: str) -> str:
    return _SENSITIVE_PATTERN.sub(lambda m: f"{m.group(1)}={REDACTED}", message)


class StructuredFormatter(logging.Formatter):
    """One JSON object per record."""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": scrub_message(record.getMessage()),
        }
        entry.update(
            (field, getattr(record, field))
            for field in CONTEXT_FIELDS
            if getattr(record, field, None) is not None
        )
        if record.exc_info:
            entry["exception"] = scrub_message(self.formatException(record.exc_info))
        return json.dumps(entry, default=str)


def setup_logging():
    """Install the JSON handler on the root logger once."""
    root_logger = logging.getLogger()
    if root_logger.handlers:
        return

    root_logger.setLevel(logging.DEBUG if settings.DEBUG else logging.INFO)
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(StructuredFormatter())
    root_logger.addHandler(handler)

    for noisy, level in (
        ("uvicorn.access", logging.WARNING),
        ("sqlalchemy.engine", logging.WARNING),
        ("rq.worker", logging.INFO),
    ):
        logging.getLogger(noisy).setLevel(level)


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)


class AuditLogger:
    """
    Log line for each committed workflow action.

    This is the operational trail; the authoritative per-quote history lives
    in the workflow_events table.
    """

    def __init__(self, name: str = "audit"):
        self.logger = get_logger(name)

    def log(
        self,
        action: str,
        user_id: Optional[int] = None,
        role: Optional[str] = None,
        entity_type: Optional[str] = None,
        entity_id: Optional[int] = None,
        step: Optional[str] = None,
        details: Optional[dict] = None,
    ):
        parts = [f"AUDIT: {action}"]
        if entity_type and entity_id:
            parts.append(f"on {entity_type}:{entity_id}")
        if step:
            parts.append(f"at {step}")
        message = " ".join(parts)
        if details:
            message += f" - {json.dumps(scrub(details), default=str)}"

        self.logger.info(message, extra={
            "user_id": user_id,
            "role": role,
            "action": action,
            "step": step,
            "entity_type": entity_type,
            "entity_id": entity_id,
        })


audit_logger = AuditLogger()
