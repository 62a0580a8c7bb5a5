"""JSON-line loggers for hint decisions, generator calls and integrity sessions."""

import json
import logging
from typing import Any, Dict

AUDIT_LOGGER_NAME = "studyguard.audit"
LLM_LOGGER_NAME = "studyguard.llm"


def channel_logger(name: str) -> logging.Logger:
    """Return a logger that writes bare JSON lines to stderr exactly once."""
    channel = logging.getLogger(name)
    if not channel.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter("%(message)s"))
        channel.addHandler(handler)
    channel.setLevel(logging.INFO)
    channel.propagate = False
    return channel


def json_log(channel: logging.Logger, event: str, payload: Dict[str, Any]) -> None:
    record = {"event": event, **payload}
    try:
        message = json.dumps(record, ensure_ascii=False, sort_keys=True, default=str)
    except (TypeError, ValueError):
        fallback = {
            "event": event,
            "error": "serialization_failed",
            "payload_repr": repr(payload),
        }
        message = json.dumps(fallback, ensure_ascii=False, sort_keys=True)
    channel.info(message)
