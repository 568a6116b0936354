import json
import logging
from collections.abc import Mapping, MutableMapping
from datetime import UTC, datetime
from typing import Any

_EXTRA_SKIP = frozenset(
    {
        "name",
        "msg",
        "args",
        "levelname",
        "levelno",
        "pathname",
        "filename",
        "module",
        "exc_info",
        "exc_text",
        "stack_info",
        "lineno",
        "funcName",
        "created",
        "msecs",
        "relativeCreated",
        "thread",
        "threadName",
        "processName",
        "process",
        "message",
        "taskName",
    }
)


class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        record.message = record.getMessage()
        payload: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.message,
        }
        for key, value in record.__dict__.items():
            if key not in _EXTRA_SKIP:
                payload[key] = value
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)
        # Decimal amounts and other non-JSON values end up as strings.
        return json.dumps(payload, default=str)


LoggerLike = logging.Logger | logging.LoggerAdapter  # type: ignore[type-arg]


class ContextLoggerAdapter(logging.LoggerAdapter):  # type: ignore[type-arg]
    """Logger adapter whose bound fields are merged with call-site ``extra``.

    The stock ``LoggerAdapter`` replaces ``extra`` wholesale, which drops the
    per-call fields the pipeline attaches (stage, attempt, handle name).
    """

    def process(
        self, msg: Any, kwargs: MutableMapping[str, Any]
    ) -> tuple[Any, MutableMapping[str, Any]]:
        kwargs["extra"] = {**(self.extra or {}), **kwargs.get("extra", {})}
        return msg, kwargs


def bind_logger(
    logger: LoggerLike,
    context: Mapping[str, Any],
) -> ContextLoggerAdapter:
    if isinstance(logger, ContextLoggerAdapter):
        return ContextLoggerAdapter(logger.logger, {**(logger.extra or {}), **context})
    if isinstance(logger, logging.LoggerAdapter):
        return ContextLoggerAdapter(logger.logger, dict(context))
    return ContextLoggerAdapter(logger, dict(context))


def configure_logging(log_level: str = "INFO") -> None:
    root = logging.getLogger()
    if not any(isinstance(h.formatter, JsonFormatter) for h in root.handlers):
        handler = logging.StreamHandler()
        handler.setFormatter(JsonFormatter())
        root.addHandler(handler)
    root.setLevel(getattr(logging, log_level.upper(), logging.INFO))
