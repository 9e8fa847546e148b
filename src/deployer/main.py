"""Entry point for the capzctl deployment tool.

Logging goes to stderr so command output on stdout stays machine-readable.
JSON output is for CI runs, and text output is for interactive use.
"""

from __future__ import annotations

import logging
import sys
from datetime import UTC

# LogRecord attributes that are not user-supplied ``extra`` fields
_RESERVED_RECORD_KEYS = frozenset(
    (
        "name",
        "msg",
        "args",
        "created",
        "filename",
        "funcName",
        "levelname",
        "levelno",
        "lineno",
        "module",
        "msecs",
        "pathname",
        "process",
        "processName",
        "relativeCreated",
        "stack_info",
        "exc_info",
        "exc_text",
        "thread",
        "threadName",
        "taskName",
        "message",
    )
)

_HANDLER_NAME = "capzctl"


def _extra_fields(record: logging.LogRecord) -> dict[str, object]:
    return {
        key: value for key, value in record.__dict__.items() if key not in _RESERVED_RECORD_KEYS
    }


def setup_logging(json_output: bool = False, verbose: bool = False) -> None:
    """Configure root logging with JSON or text output.

    Calling it again replaces the handler installed by a previous call.
    """
    import json
    from datetime import datetime

    class JsonFormatter(logging.Formatter):
        """Format logs as JSON for structured logging."""

        def format(self, record: logging.LogRecord) -> str:
            log_data = {
                "timestamp": datetime.now(UTC).isoformat().replace("+00:00", "Z"),
                "level": record.levelname,
                "message": record.getMessage(),
                "logger": record.name,
            }
            log_data.update(_extra_fields(record))

            # Add exception info if present
            if record.exc_info:
                log_data["exception"] = self.formatException(record.exc_info)

            return json.dumps(log_data, default=str)

    class TextFormatter(logging.Formatter):
        """Human-readable lines with extra fields appended as key=value."""

        def format(self, record: logging.LogRecord) -> str:
            line = super().format(record)
            extras = _extra_fields(record)
            if extras:
                line += " " + " ".join(f"{key}={value}" for key, value in extras.items())
            return line

    handler = logging.StreamHandler(sys.stderr)
    handler.set_name(_HANDLER_NAME)
    if json_output:
        handler.setFormatter(JsonFormatter())
    else:
        handler.setFormatter(TextFormatter("%(asctime)s %(levelname)-7s %(name)s: %(message)s"))

    root_logger = logging.getLogger()
    for existing in list(root_logger.handlers):
        if existing.get_name() == _HANDLER_NAME:
            root_logger.removeHandler(existing)
    root_logger.addHandler(handler)
    root_logger.setLevel(logging.DEBUG if verbose else logging.INFO)

    # Reduce noise from Azure SDK
    logging.getLogger("azure").setLevel(logging.WARNING)
    logging.getLogger("urllib3").setLevel(logging.WARNING)


def run() -> None:
    """Console script entry point."""
    from .cli import cli

    cli()


if __name__ == "__main__":
    run()
