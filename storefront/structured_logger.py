"""
Structured JSON audit logger for order and payment lifecycle events.

Each entry is one JSON object per line:
- timestamp (ISO 8601, UTC)
- level
- logger
- event_type (order_created, payment_transition, webhook_received, ...)
- message
- context (redacted: client secrets, tokens, emails and addresses never reach the log)
"""

import json
import logging
import sys
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

SENSITIVE_KEYS = (
    "client_secret", "secret", "token", "api_key", "password", "card",
    "cvv", "email", "phone", "address",
)

REDACTED = "[REDACTED]"


def redact_sensitive_data(data: Dict[str, Any]) -> Dict[str, Any]:
    """Return a copy of ``data`` with sensitive keys replaced, recursively."""
    redacted: Dict[str, Any] = {}
    for key, value in data.items():
        key_lower = key.lower()
        if any(sensitive in key_lower for sensitive in SENSITIVE_KEYS):
            redacted[key] = REDACTED
        elif isinstance(value, dict):
            redacted[key] = redact_sensitive_data(value)
        elif isinstance(value, list):
            redacted[key] = [
                redact_sensitive_data(item) if isinstance(item, dict) else item
                for item in value
            ]
        else:
            redacted[key] = value
    return redacted


class LogLevel(str, Enum):
    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"


class StructuredLogger:
    """
    JSON structured logger for audit events.

    Writes through its own stdout handler and does not propagate, so the
    plain-text package logger never duplicates an audit line.
    """

    def __init__(self, name: str = "storefront.audit", log_level: str = "INFO"):
        self.name = name
        self.logger = logging.getLogger(name)
        self.logger.setLevel(getattr(logging, log_level.upper(), logging.INFO))
        self.logger.propagate = False

        if not self.logger.handlers:
            handler = logging.StreamHandler(sys.stdout)
            handler.setFormatter(logging.Formatter("%(message)s"))
            self.logger.addHandler(handler)

    def _log(
        self,
        level: LogLevel,
        event_type: str,
        message: str,
        context: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        log_entry: Dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
            "level": level.value,
            "logger": self.name,
            "event_type": event_type,
            "message": message,
        }
        if context:
            log_entry["context"] = redact_sensitive_data(context)

        log_line = json.dumps(log_entry, default=str)
        self.logger.log(getattr(logging, level.value), log_line)
        return log_entry

    def debug(self, event_type: str, message: str, context: Optional[Dict[str, Any]] = None):
        return self._log(LogLevel.DEBUG, event_type, message, context)

    def info(self, event_type: str, message: str, context: Optional[Dict[str, Any]] = None):
        return self._log(LogLevel.INFO, event_type, message, context)

    def warning(self, event_type: str, message: str, context: Optional[Dict[str, Any]] = None):
        return self._log(LogLevel.WARNING, event_type, message, context)

    def error(self, event_type: str, message: str, context: Optional[Dict[str, Any]] = None):
        return self._log(LogLevel.ERROR, event_type, message, context)

    # Lifecycle helpers

    def log_order_created(self, order_id: str, order_number: str, user_id: str, total_cents: int, item_count: int):
        return self.info(
            "order_created",
            f"Order {order_number} created",
            {
                "order_id": order_id,
                "order_number": order_number,
                "user_id": user_id,
                "total_cents": total_cents,
                "item_count": item_count,
            },
        )

    def log_payment_transition(
        self,
        payment_id: str,
        source: str,
        provider_status: str,
        applied: bool,
        payment_status: Optional[str] = None,
        order_status: Optional[str] = None,
    ):
        return self.info(
            "payment_transition",
            f"Payment {payment_id} {provider_status} via {source}"
            + ("" if applied else " (no-op)"),
            {
                "payment_id": payment_id,
                "source": source,
                "provider_status": provider_status,
                "applied": applied,
                "payment_status": payment_status,
                "order_status": order_status,
            },
        )

    def log_webhook(self, event_id: str, event_type: str, outcome: str):
        return self.info(
            "webhook",
            f"Webhook {event_type} {outcome}",
            {"event_id": event_id, "type": event_type, "outcome": outcome},
        )

    def log_inventory_guard(self, action: str, order_id: str, product_id: str, variant_id: Optional[str], quantity: int):
        return self.warning(
            "inventory_guard_failed",
            f"Inventory {action} skipped: guard not satisfied",
            {
                "action": action,
                "order_id": order_id,
                "product_id": product_id,
                "variant_id": variant_id,
                "quantity": quantity,
            },
        )

    def log_error(self, error_type: str, error_message: str, context: Optional[Dict[str, Any]] = None):
        merged = {"error_type": error_type, "error_message": error_message}
        if context:
            merged.update(context)
        return self.error("error", f"{error_type}: {error_message}", merged)


# Global audit logger instance
audit_logger = StructuredLogger()
