"""
Structured logging with automatic trace context propagation.

The wizard sets correlation fields once and every ``logger.info()`` below it
picks them up:

    Wizard.run()            -> run_id, wizard_id
        Wizard.execute_step()   -> step_id
            BungeeExecutor      -> plan_id, worker_id

ContextVar values are copied into each asyncio task when it is created, so
concurrent bungee workers each log their own ``worker_id`` without
stepping on one another.
"""

import json
import logging
import os
import re
from contextvars import ContextVar
from datetime import UTC, datetime
from typing import Any

trace_context: ContextVar[dict[str, Any] | None] = ContextVar("trace_context", default=None)

# \x1b[...m colour sequences
ANSI_ESCAPE_PATTERN = re.compile(r"\x1b\[[0-9;]*m")

# Record attributes copied into JSON output when a caller passes them via extra=
_EXTRA_FIELDS = ("event", "step_id", "plan_id", "worker_id", "model", "tokens_used", "latency_ms")


def strip_ansi_codes(text: str) -> str:
    """Remove ANSI escape codes from text for clean JSON logging."""
    return ANSI_ESCAPE_PATTERN.sub("", text)


class StructuredFormatter(logging.Formatter):
    """
    JSON formatter for production logs.

    Each line carries timestamp, level, logger and message, the current trace
    context (run_id, wizard_id, step_id, ...) and any known ``extra`` fields.
    """

    def format(self, record: logging.LogRecord) -> str:
        context = trace_context.get() or {}

        log_entry: dict[str, Any] = {
            "timestamp": datetime.now(UTC).isoformat(),
            "level": record.levelname.lower(),
            "logger": record.name,
            "message": strip_ansi_codes(record.getMessage()),
        }
        log_entry.update(context)

        for name in _EXTRA_FIELDS:
            value = getattr(record, name, None)
            if value is None:
                continue
            log_entry[name] = strip_ansi_codes(value) if isinstance(value, str) else value

        if record.exc_info:
            log_entry["exception"] = strip_ansi_codes(self.formatException(record.exc_info))

        return json.dumps(log_entry, default=str)


class HumanReadableFormatter(logging.Formatter):
    """
    Colourised formatter for local development.

    Prefixes each line with the short run id, wizard id and the step or
    worker currently executing.
    """

    COLORS = {
        "DEBUG": "\033[36m",  # Cyan
        "INFO": "\033[32m",  # Green
        "WARNING": "\033[33m",  # Yellow
        "ERROR": "\033[31m",  # Red
        "CRITICAL": "\033[35m",  # Magenta
    }
    RESET = "\033[0m"

    def format(self, record: logging.LogRecord) -> str:
        context = trace_context.get() or {}

        prefix_parts = []
        run_id = context.get("run_id", "")
        if run_id:
            prefix_parts.append(f"run:{run_id[:8]}")
        if context.get("wizard_id"):
            prefix_parts.append(f"wizard:{context['wizard_id']}")
        if context.get("worker_id"):
            prefix_parts.append(f"worker:{context['worker_id']}")
        elif context.get("step_id"):
            prefix_parts.append(f"step:{context['step_id']}")

        context_prefix = f"[{' | '.join(prefix_parts)}] " if prefix_parts else ""

        color = self.COLORS.get(record.levelname, "")
        level = f"{record.levelname:<8}"

        event = ""
        record_event = getattr(record, "event", None)
        if record_event is not None:
            event = f" [{record_event}]"

        message = f"{color}[{level}]{self.RESET} {context_prefix}{record.getMessage()}{event}"
        if record.exc_info:
            message = f"{message}\n{self.formatException(record.exc_info)}"
        return message


def configure_logging(
    level: str = "INFO",
    format: str = "auto",  # "json", "human", or "auto"
) -> None:
    """
    Configure logging for the application.

    Call once at startup (the CLI does this for you).

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        format: "json" for machine-parseable output, "human" for coloured
            output, "auto" to pick JSON when LOG_FORMAT=json or
            ENV=production.
    """
    if format == "auto":
        log_format_env = os.getenv("LOG_FORMAT", "").lower()
        env = os.getenv("ENV", "development").lower()
        format = "json" if log_format_env == "json" or env == "production" else "human"

    if format == "json":
        formatter: logging.Formatter = StructuredFormatter()
        _disable_third_party_colors()
    else:
        formatter = HumanReadableFormatter()

    handler = logging.StreamHandler()
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.addHandler(handler)
    root_logger.setLevel(level.upper())

    if format == "json":
        # Route chatty HTTP/LLM client loggers through the root JSON handler
        for logger_name in ("LiteLLM", "httpcore", "httpx"):
            third_party = logging.getLogger(logger_name)
            third_party.handlers.clear()
            third_party.propagate = True


def _disable_third_party_colors() -> None:
    """Disable color output in third-party libraries for clean JSON logging."""
    os.environ["NO_COLOR"] = "1"
    os.environ["FORCE_COLOR"] = "0"

    try:
        import litellm

        if hasattr(litellm, "suppress_debug_info"):
            litellm.suppress_debug_info = True  # type: ignore[attr-defined]
    except (ImportError, AttributeError):
        pass


def set_trace_context(**kwargs: Any) -> None:
    """
    Merge fields into the trace context of the current execution.

    Framework-managed: the wizard sets ``run_id``/``wizard_id`` at run start,
    ``step_id`` per step, and the bungee executor sets ``plan_id`` and
    ``worker_id`` inside each worker task.
    """
    current = trace_context.get() or {}
    trace_context.set({**current, **kwargs})


def get_trace_context() -> dict:
    """Return a copy of the current trace context (empty dict if unset)."""
    context = trace_context.get() or {}
    return context.copy()


def clear_trace_context() -> None:
    """Reset the trace context, e.g. between test runs."""
    trace_context.set(None)
