"""
Structured logging for the dialogue bot.

JSON logs for production, readable lines for development.
Every line carries the conversation_id when one is set.

Usage:
    from dialogue_bot.logger import logger

    logger.set_conversation("conv_123")
    logger.info("User message received", intent="greeting")
    logger.metric("response_time", 0.5, persona="customer_service")
"""

import json
import logging
import os
import traceback
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from dialogue_bot.settings import settings


# Context-local storage so parallel sessions do not share the id
_conversation_id_var: ContextVar[Optional[str]] = ContextVar('conversation_id', default=None)


class StructuredLogger:
    """
    Structured logger with JSON output and conversation tracing.

    - JSON format when LOG_FORMAT=json
    - Readable format otherwise (default)
    - conversation_id attached to every record
    - metric() and event() helpers for analytics
    """

    def __init__(self, name: str):
        self.name = name
        self.logger = logging.getLogger(name)

        if not self.logger.handlers:
            self._setup_logger()

    def _setup_logger(self) -> None:
        level_name = settings.get_nested("logging.level", "INFO")
        level = getattr(logging, level_name.upper(), logging.INFO)
        self.logger.setLevel(level)

        handler = logging.StreamHandler()
        handler.setLevel(level)

        if os.environ.get("LOG_FORMAT", "readable") == "json":
            formatter = logging.Formatter("%(message)s")
        else:
            formatter = logging.Formatter(
                "[%(asctime)s] %(levelname)s - %(message)s",
                datefmt="%H:%M:%S"
            )

        handler.setFormatter(formatter)
        self.logger.addHandler(handler)
        self.logger.propagate = False

    @property
    def conversation_id(self) -> Optional[str]:
        return _conversation_id_var.get()

    def set_conversation(self, conv_id: str) -> None:
        _conversation_id_var.set(conv_id)

    def clear_conversation(self) -> None:
        _conversation_id_var.set(None)

    def _format_structured(self, level: str, message: str, **kwargs: Any) -> Dict[str, Any]:
        log_entry = {
            "timestamp": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
            "level": level,
            "logger": self.name,
            "message": message,
        }

        if self.conversation_id:
            log_entry["conversation_id"] = self.conversation_id

        if kwargs:
            log_entry.update(kwargs)

        return log_entry

    def _should_use_json(self) -> bool:
        return os.environ.get("LOG_FORMAT", "readable") == "json"

    def _readable(self, message: str, **kwargs: Any) -> str:
        if kwargs:
            extras = ", ".join(f"{k}={v}" for k, v in kwargs.items())
            message = f"{message} [{extras}]"
        if self.conversation_id:
            message = f"[{self.conversation_id}] {message}"
        return message

    def _log(self, level: str, message: str, log_method, **kwargs: Any) -> None:
        if self._should_use_json():
            structured = self._format_structured(level, message, **kwargs)
            log_method(json.dumps(structured, ensure_ascii=False, default=str))
        else:
            log_method(self._readable(message, **kwargs))

    def debug(self, message: str, **kwargs: Any) -> None:
        self._log("DEBUG", message, self.logger.debug, **kwargs)

    def info(self, message: str, **kwargs: Any) -> None:
        self._log("INFO", message, self.logger.info, **kwargs)

    def warning(self, message: str, **kwargs: Any) -> None:
        self._log("WARNING", message, self.logger.warning, **kwargs)

    def error(self, message: str, **kwargs: Any) -> None:
        self._log("ERROR", message, self.logger.error, **kwargs)

    def exception(self, message: str, **kwargs: Any) -> None:
        """Log an error with the current traceback"""
        if self._should_use_json():
            kwargs["traceback"] = traceback.format_exc()
            structured = self._format_structured("ERROR", message, **kwargs)
            self.logger.error(json.dumps(structured, ensure_ascii=False, default=str))
        else:
            self.logger.exception(self._readable(message, **kwargs))

    def metric(self, name: str, value: Any, **kwargs: Any) -> None:
        """
        Structured metric for analytics.

        Example:
            logger.metric("response_time_ms", 12.5, intent="greeting")
        """
        self._log("METRIC", name, self.logger.info, value=value, **kwargs)

    def event(self, event_type: str, **kwargs: Any) -> None:
        """
        Business event for analytics.

        Example:
            logger.event("stage_transition", from_stage="initial", to_stage="discussing")
        """
        self._log("EVENT", event_type, self.logger.info, **kwargs)


logger = StructuredLogger("dialogue_bot")


def create_test_logger(name: str = "test") -> StructuredLogger:
    """Isolated logger for tests"""
    return StructuredLogger(f"dialogue_bot.{name}")
