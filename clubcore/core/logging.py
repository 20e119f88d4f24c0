from __future__ import annotations

from datetime import datetime, timezone
import json
import logging
from typing import Any, MutableMapping

from clubcore.core.config import get_settings
from clubcore.services.correlation import RequestContext, format_context, get_current_context


CONTEXT_FIELDS = ("correlation_id", "causation_id", "user_id", "parent_causation_id")

# Attributes every LogRecord carries; anything else arrived through `extra`.
_RESERVED_ATTRS = frozenset(
    vars(logging.LogRecord("", logging.INFO, "", 0, "", None, None)).keys()
) | {"message", "asctime"}

_HANDLER_NAME = "clubcore"


class RequestContextFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        # Fill context fields from the bound request unless the call site passed its own.
        context = get_current_context()
        if context is None:
            return True
        for key, value in format_context(context).items():
            if key == "timestamp":
                continue
            if getattr(record, key, None) is None:
                setattr(record, key, value)
        return True


class JsonLogFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname.lower(),
            "logger": record.name,
            "message": record.getMessage(),
        }
        for key in CONTEXT_FIELDS:
            value = getattr(record, key, None)
            if value is not None:
                payload[key] = value
        for key, value in record.__dict__.items():
            if key in _RESERVED_ATTRS or key in CONTEXT_FIELDS or key.startswith("_"):
                continue
            payload[key] = value
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str, ensure_ascii=False)


class ContextLoggerAdapter(logging.LoggerAdapter):
    def process(self, msg: Any, kwargs: MutableMapping[str, Any]) -> tuple[Any, MutableMapping[str, Any]]:
        # Merge the adapter's context with call-site extras; call-site keys win.
        extra = dict(self.extra or {})
        extra.update(kwargs.get("extra") or {})
        kwargs["extra"] = extra
        return msg, kwargs


def get_context_logger(name: str, context: RequestContext) -> ContextLoggerAdapter:
    fields = format_context(context)
    # Keep the context's creation time apart from the log line's own timestamp.
    fields["context_timestamp"] = fields.pop("timestamp")
    return ContextLoggerAdapter(logging.getLogger(name), fields)


def configure_logging(level: str | None = None) -> None:
    settings = get_settings()
    root = logging.getLogger()
    root.setLevel((level or settings.log_level).upper())
    # Reconfiguring replaces our handler instead of stacking duplicates.
    for handler in list(root.handlers):
        if handler.get_name() == _HANDLER_NAME:
            root.removeHandler(handler)
    handler = logging.StreamHandler()
    handler.set_name(_HANDLER_NAME)
    if settings.log_json:
        handler.setFormatter(JsonLogFormatter())
    else:
        handler.setFormatter(
            logging.Formatter(
                "%(asctime)s %(levelname)s %(name)s [%(correlation_id)s/%(causation_id)s] %(message)s",
                defaults={"correlation_id": "-", "causation_id": "-"},
            )
        )
    handler.addFilter(RequestContextFilter())
    root.addHandler(handler)
