"""
Structured Logging — JSON log output with subsystem tags and request correlation.

Module loggers live under the ``relaydesk`` namespace and prefix their
messages with a subsystem tag (``[RESOLVER] ...``). When structured
logging is enabled, every record is emitted as one JSON object carrying
the subsystem, the request id and the message id being orchestrated.
"""

import json
import logging
import re
import sys
import uuid
from contextvars import ContextVar
from enum import Enum
from typing import Optional

# Context variables for request correlation
request_id_var: ContextVar[str] = ContextVar("request_id", default="")
message_id_var: ContextVar[str] = ContextVar("message_id", default="")
tenant_var: ContextVar[str] = ContextVar("tenant", default="")

_TAG = re.compile(r"^\[([A-Z_-]+)\]\s*")


class Subsystem(str, Enum):
    RESOLVER = "resolver"
    REGISTRY = "registry"
    TENANT = "tenant"
    DEDUPE = "dedupe"
    STATUS = "status"
    SELECTOR = "selector"
    MEMORY = "memory"
    LLM = "llm"
    RETRY = "retry"
    STORE = "store"
    DELIVERY = "delivery"
    ORCHESTRATOR = "orchestrator"
    WEBHOOK = "webhook"
    SCHEDULER = "scheduler"
    API = "api"


def subsystem_for(message: str) -> str:
    """Subsystem named by a message's leading ``[TAG]``, else "general"."""
    match = _TAG.match(message)
    if not match:
        return "general"
    tag = match.group(1).lower()
    return tag if tag in Subsystem._value2member_map_ else "general"


class StructuredFormatter(logging.Formatter):
    """JSON structured log formatter."""

    def format(self, record: logging.LogRecord) -> str:
        message = record.getMessage()
        log_entry = {
            "timestamp": self.formatTime(record),
            "level": record.levelname,
            "subsystem": getattr(record, "subsystem", None) or subsystem_for(message),
            "message": _TAG.sub("", message),
            "logger": record.name,
        }

        # Add context vars if set
        req_id = request_id_var.get("")
        if req_id:
            log_entry["request_id"] = req_id
        msg_id = message_id_var.get("")
        if msg_id:
            log_entry["message_id"] = msg_id
        tenant = tenant_var.get("")
        if tenant:
            log_entry["tenant"] = tenant

        # Add exception info
        if record.exc_info and record.exc_info[0]:
            log_entry["exception"] = {
                "type": record.exc_info[0].__name__,
                "message": str(record.exc_info[1]),
            }

        return json.dumps(log_entry)


_structured_enabled = False


def enable_structured_logging(level: int = logging.INFO):
    """Enable JSON structured logging on the relaydesk logger tree."""
    global _structured_enabled
    if _structured_enabled:
        return

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(StructuredFormatter())

    root = logging.getLogger("relaydesk")
    root.addHandler(handler)
    root.setLevel(level)
    root.propagate = False
    _structured_enabled = True


def set_request_context(request_id: str = "", message_id: str = "", tenant: str = ""):
    """Set context variables for the current request or run."""
    if request_id:
        request_id_var.set(request_id)
    if message_id:
        message_id_var.set(message_id)
    if tenant:
        tenant_var.set(tenant)


def generate_request_id(existing: Optional[str] = None) -> str:
    """Reuse an incoming request id or generate a new one."""
    return existing or str(uuid.uuid4())[:12]
