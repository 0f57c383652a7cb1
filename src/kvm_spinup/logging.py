import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any, Dict, Optional

# Attributes every LogRecord carries; anything else arrived through extra=.
_RECORD_ATTRS = set(vars(logging.LogRecord("", 0, "", 0, "", None, None))) | {
    "message",
    "asctime",
    "taskName",
}


class StructuredLogger:
    """
    A logger that writes one JSON object per line to stderr.

    Keyword arguments passed to the level methods become top-level keys of
    the entry, so a line can be filtered by ``vm_name`` or ``phase`` with jq.
    Stdout is left to the batch report.
    """

    def __init__(
        self,
        name: str,
        level: int = logging.INFO,
        fields: Optional[Dict[str, Any]] = None,
    ):
        self.logger = logging.getLogger(name)
        self.fields: Dict[str, Any] = dict(fields or {})
        if fields is not None:
            return

        self.logger.setLevel(level)
        self.logger.propagate = False
        self.logger.handlers.clear()
        handler = logging.StreamHandler(sys.stderr)
        handler.setFormatter(self.JsonFormatter())
        self.logger.addHandler(handler)

    class JsonFormatter(logging.Formatter):
        def format(self, record: logging.LogRecord) -> str:
            entry: Dict[str, Any] = {
                "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
                "level": record.levelname,
                "logger": record.name,
                "message": record.getMessage(),
            }
            if record.exc_info:
                entry["exception"] = self.formatException(record.exc_info)

            entry.update(
                (key, value)
                for key, value in vars(record).items()
                if key not in _RECORD_ATTRS
            )
            return json.dumps(entry, default=str)

    def bind(self, **fields: Any) -> "StructuredLogger":
        """Return a logger sharing this one's handler that adds ``fields`` to every entry."""
        return StructuredLogger(self.logger.name, fields={**self.fields, **fields})

    def set_level(self, level: str) -> None:
        """Change the level by name (e.g. "DEBUG"); unknown names fall back to INFO."""
        self.logger.setLevel(getattr(logging, level.upper(), logging.INFO))

    def _log(self, level: int, message: str, exc_info: bool, fields: Dict[str, Any]) -> None:
        self.logger.log(level, message, exc_info=exc_info, extra={**self.fields, **fields})

    def info(self, message: str, **kwargs: Any) -> None:
        self._log(logging.INFO, message, False, kwargs)

    def error(self, message: str, exc_info: bool = False, **kwargs: Any) -> None:
        self._log(logging.ERROR, message, exc_info, kwargs)

    def warning(self, message: str, **kwargs: Any) -> None:
        self._log(logging.WARNING, message, False, kwargs)

    def debug(self, message: str, **kwargs: Any) -> None:
        self._log(logging.DEBUG, message, False, kwargs)


# Global logger instance
logger = StructuredLogger("kvm_spinup")
