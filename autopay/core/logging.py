"""
Structured logging for the autopay service.

Features:
- One stdout handler on the "autopay" logger: JSON in production, pretty otherwise.
- request_id bound per request through a ContextVar and stamped on every record.
- Wallet addresses shortened in pretty output; raw private keys never reach a handler.
- log_event helper for service-level events (subscription, plan, payment).
"""

import json
import logging
import os
import re
import sys
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Dict, Optional

LOGGER_NAME = "autopay"

request_id_ctx_var: ContextVar[Optional[str]] = ContextVar("request_id", default=None)

# Record attributes copied into JSON output when set
_STRUCTURED_FIELDS = (
    "address",
    "subscription_id",
    "plan_id",
    "stage",
    "event_type",
    "error_code",
    "status",
    "path",
    "method",
    "latency_bucket",
)

# 32-byte hex blobs are private keys or raw signatures; tx hashes are logged via extra fields only
_SECRET_RE = re.compile(r"\b(0x)?[0-9a-fA-F]{64}\b")
_ADDRESS_RE = re.compile(r"0x[0-9a-fA-F]{40}\b")

_LATENCY_BUCKETS = ((10, "<10ms"), (100, "10-100ms"), (500, "100-500ms"), (1000, "500-1000ms"))


def get_request_id(default: Optional[str] = None) -> Optional[str]:
    rid = request_id_ctx_var.get()
    return rid if rid is not None else default


def latency_bucket_ms(latency_ms: Optional[float]) -> str:
    """Coarse latency label, so log cardinality stays bounded."""
    if latency_ms is None:
        return "unknown"
    for upper, label in _LATENCY_BUCKETS:
        if latency_ms < upper:
            return label
    return ">=1000ms"


def short_address(address: Optional[str]) -> str:
    if not address:
        return "unknown"
    return f"{address[:6]}...{address[-4:]}" if len(address) > 12 else address


def redact(text: str) -> str:
    return _SECRET_RE.sub("<redacted>", text)


def _timestamp(record: logging.LogRecord) -> str:
    return datetime.fromtimestamp(record.created, timezone.utc).isoformat().replace("+00:00", "Z")


class RequestIdFilter(logging.Filter):
    """Stamp the current request_id on records that did not bring one."""

    def filter(self, record: logging.LogRecord) -> bool:
        if getattr(record, "request_id", None) is None:
            record.request_id = get_request_id()
        return True


class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "timestamp": _timestamp(record),
            "level": record.levelname,
            "logger": record.name,
            "message": redact(record.getMessage()),
            "request_id": getattr(record, "request_id", None),
        }
        for name in _STRUCTURED_FIELDS:
            value = getattr(record, name, None)
            if value is not None:
                payload[name] = value
        if record.exc_info:
            payload["exc"] = redact(self.formatException(record.exc_info))
        return json.dumps(payload, default=str)


class PrettyFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        parts = [_timestamp(record), record.levelname, f"[{LOGGER_NAME}]"]
        rid = getattr(record, "request_id", None)
        if rid:
            parts.append(f"[rid={rid}]")
        stage = getattr(record, "stage", None)
        if stage:
            parts.append(f"[stage={stage}]")
        address = getattr(record, "address", None)
        if address:
            parts.append(f"[addr={short_address(address)}]")
        message = _ADDRESS_RE.sub(lambda m: short_address(m.group(0)), redact(record.getMessage()))
        parts.append(message)
        line = " ".join(parts)
        if record.exc_info:
            line += "\n" + redact(self.formatException(record.exc_info))
        return line


def configure_logging(env: str = "development") -> None:
    """Install the autopay handler. Safe to call more than once."""
    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(logging.INFO)

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JsonFormatter() if env.lower() == "production" else PrettyFormatter())
    handler.addFilter(RequestIdFilter())

    logger.handlers = [handler]
    logger.propagate = True

    logging.getLogger("uvicorn").propagate = False
    logging.getLogger("uvicorn.error").propagate = False
    # web3 logs every RPC at DEBUG/INFO
    logging.getLogger("web3").setLevel(logging.WARNING)


def _truncate(value, limit: int = 500) -> str:
    try:
        text = str(value)
    except Exception:
        return "<unserializable>"
    return text if len(text) <= limit else text[:limit] + "...<truncated>"


def log_event(
    level: str,
    msg: str,
    *,
    request_id: Optional[str] = None,
    address: Optional[str] = None,
    subscription_id: Optional[str] = None,
    event_type: Optional[str] = None,
    error_code: Optional[str] = None,
    extra: Optional[Dict[str, object]] = None,
):
    """Emit one structured service event on the autopay logger."""
    logger = logging.getLogger(LOGGER_NAME)
    if not logger.handlers:
        configure_logging(os.getenv("ENV", "development"))

    fields: Dict[str, object] = {"request_id": request_id or get_request_id()}
    if address:
        fields["address"] = address
    if subscription_id:
        fields["subscription_id"] = subscription_id
    if event_type:
        fields["event_type"] = event_type
    if error_code:
        fields["error_code"] = error_code
    for key, value in (extra or {}).items():
        fields[key] = _truncate(value)

    getattr(logger, level, logger.info)(msg, extra=fields)
