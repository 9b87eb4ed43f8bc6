import inspect
import json
import logging
import sys
from typing import Any

import httpx
from fastapi import status
from loguru import logger

from src.config.settings import settings

# Keys whose values must never reach a sink
SENSITIVE_KEYS = frozenset({"password", "confirm_password", "current_password", "password_hash", "token", "session_token"})
REDACTED = "***"


def _sanitize_value(val: Any) -> Any:
    """Recursively sanitizes objects to remove secrets, raw memory addresses and ugly reprs."""
    if isinstance(val, dict):
        return {k: REDACTED if str(k).lower() in SENSITIVE_KEYS else _sanitize_value(v) for k, v in val.items()}
    if isinstance(val, list | tuple | set):
        return type(val)(_sanitize_value(v) for v in val)

    # Callables and coroutines (e.g. bound dependency functions)
    if callable(val) or inspect.iscoroutinefunction(val):
        module = getattr(val, "__module__", "")
        qualname = getattr(val, "__qualname__", type(val).__name__)
        return f"{module}.{qualname}()" if module else f"{qualname}()"

    # Objects falling back to the default object.__repr__ (e.g. <AsyncSession object at 0x...>)
    val_repr = repr(val)
    if "<" in val_repr and " at 0x" in val_repr:
        clean_name = val.__class__.__name__
        module = val.__class__.__module__
        return f"[{module}.{clean_name}]"

    return val


def log_patcher(record: dict[str, Any]) -> None:
    """Intercepts the Loguru record before it hits sinks to redact and beautify payloads."""
    if "extra" in record:
        record["extra"] = _sanitize_value(record["extra"])

    if "args" in record:
        record["args"] = tuple(_sanitize_value(arg) for arg in record["args"])


class InterceptHandler(logging.Handler):
    """Intercepts standard logging messages and routes them to Loguru."""

    def emit(self, record: logging.LogRecord) -> None:
        try:
            level = logger.level(record.levelname).name
        except ValueError:
            level = record.levelno

        frame, depth = logging.currentframe(), 2
        while frame and frame.f_code.co_filename == logging.__file__:
            frame = frame.f_back
            depth += 1

        logger.opt(depth=depth, exception=record.exc_info).log(level, record.getMessage())


class SeqSink:
    """Synchronous sink for sending logs to Seq via HTTP."""

    def __init__(self, server_url: str, api_key: str | None = None, application: str = settings.APP_NAME):
        self.server_url = f"{server_url.rstrip('/')}/api/events/raw"
        self.api_key = api_key
        self.application = application
        self.client = httpx.Client(timeout=4.0)

    def write(self, message: str) -> None:
        """Writes a log record to Seq."""
        try:
            data = json.loads(message)
            record = data["record"]

            payload = {
                "Timestamp": record["time"]["repr"],
                "Level": record["level"]["name"],
                "MessageTemplate": record["message"],
                "Properties": {
                    **record["extra"],
                    "Application": self.application,
                    "Function": record["function"],
                    "Module": record["module"],
                    "Line": record["line"],
                },
            }

            if record.get("exception"):
                payload["Exception"] = record["exception"]["text"]

            headers = {"Content-Type": "application/json"}
            if self.api_key:
                headers["X-Seq-ApiKey"] = self.api_key

            resp = self.client.post(self.server_url, json={"Events": [payload]}, headers=headers)

            if resp.status_code >= status.HTTP_400_BAD_REQUEST:
                sys.stderr.write(f"Seq API Error {resp.status_code}: {resp.text}\n")

        except Exception as e:
            sys.stderr.write(f"Failed to send log to Seq: {e}\nPayload: {message}\n")


def configure_logging() -> None:
    """Configures Loguru to capture system logs and output to the console and, optionally, Seq."""
    logger.remove()
    logger.configure(patcher=log_patcher, extra={"request_id": "-", "user_id": "-"})

    # 1. Console Sink
    logger.add(
        sys.stderr,
        level="DEBUG" if settings.DEBUG else "INFO",
        format="<green>{time:YYYY-MM-DD HH:mm:ss}</green> | <level>{level: <8}</level> | "
        "<magenta>{extra[request_id]}</magenta> | <cyan>{name}</cyan>:<cyan>{function}</cyan>:"
        "<cyan>{line}</cyan> - <level>{message}</level>",
    )

    # 2. Seq Sink
    if settings.SEQ_URL:
        logger.add(
            SeqSink(settings.SEQ_URL, api_key=settings.SEQ_API_KEY),
            level="INFO",
            format="{message}",
            serialize=True,
            enqueue=True,
            backtrace=True,
            diagnose=False,
        )

    # 3. Intercept Standard Library Logs at the root
    logging.basicConfig(handlers=[InterceptHandler()], level=0, force=True)

    for _log in ["uvicorn", "uvicorn.error", "uvicorn.access", "fastapi"]:
        _logger = logging.getLogger(_log)
        _logger.handlers = [InterceptHandler()]
        _logger.propagate = False

    # SQL echo is only useful while debugging
    logging.getLogger("sqlalchemy.engine").setLevel(logging.INFO if settings.DEBUG else logging.WARNING)

    # 4. Suppress noisy HTTP libraries used by the Seq sink
    for _lib in ["httpx", "httpcore"]:
        _log = logging.getLogger(_lib)
        _log.setLevel(logging.WARNING)
        _log.propagate = False
        _log.handlers = []

    logger.info("Logging configured. Forwarding to Seq: {}", settings.SEQ_URL)
