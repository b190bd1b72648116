"""RunLogger: append-only text log of a wizard's step lifecycle.

Each wizard writes ``<log_dir>/<wizard_id>.log``, one line per entry::

    2026-10-17T09:14:03.512+00:00: Starting step plan_outline

Messages may be passed as zero-argument callables so expensive formatting
(context dumps, full prompts) only happens when file logging is enabled.

Safety: logging must never kill a run. If the directory cannot be created
or a write fails, the entry goes to the Python logger instead.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from datetime import UTC, datetime
from pathlib import Path

logger = logging.getLogger(__name__)

LogMessage = str | Callable[[], str]


class RunLogger:
    """Best-effort file log for one wizard. Thread-safe appends."""

    def __init__(self, wizard_id: str, log_dir: str | Path = ".wizardflow", enabled: bool = True):
        self.wizard_id = wizard_id
        self.enabled = enabled
        self._lock = threading.Lock()
        self._path: Path | None = None

        if not enabled:
            return
        try:
            directory = Path(log_dir)
            directory.mkdir(parents=True, exist_ok=True)
            self._path = directory / f"{wizard_id}.log"
        except OSError as e:
            logger.warning(f"Run log directory unavailable ({e}); falling back to console")

    @property
    def path(self) -> Path | None:
        return self._path

    def log(self, message: LogMessage) -> None:
        """Append one entry. Callables are evaluated only when enabled."""
        if not self.enabled:
            return
        text = message() if callable(message) else message
        line = f"{datetime.now(UTC).isoformat()}: {text}\n"

        if self._path is None:
            logger.info(f"Wizard log: {line.strip()}")
            return
        with self._lock:
            try:
                with open(self._path, "a", encoding="utf-8") as f:
                    f.write(line)
            except OSError:
                logger.info(f"Wizard log: {line.strip()}")

    def read(self) -> str:
        """Return the full log text, or '' if nothing was written."""
        if self._path is None or not self._path.exists():
            return ""
        try:
            return self._path.read_text(encoding="utf-8")
        except OSError:
            return ""
