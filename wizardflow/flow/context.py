"""
Shared Context - the one mutable mapping a wizard run reads and writes.

The wizard owns the authoritative copy. Bungee workers read from a
telescoped copy (``context | overrides``) and only their explicit
``update_context`` calls write back, through ``merge_async``.

Side-channel keys ``<step_id>_error`` and ``<step_id>_retryCount`` record a
step's failure state and are removed on that step's next success.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any

logger = logging.getLogger(__name__)


def error_key(step_id: str) -> str:
    return f"{step_id}_error"


def retry_key(step_id: str) -> str:
    return f"{step_id}_retryCount"


@dataclass
class ContextChange:
    """Record of one merge."""

    keys: list[str]
    source: str
    timestamp: float = field(default_factory=time.time)


class SharedContext:
    """
    Shallow-merge key/value store with last-write-wins semantics.

    Example:
        ctx = SharedContext({"topic": "tides"})
        ctx.merge({"outline": ["intro", "body"]})
        ctx["outline"]          # ['intro', 'body']
        ctx.telescope({"i": 2}) # {'topic': 'tides', 'outline': [...], 'i': 2}
    """

    def __init__(self, initial: dict[str, Any] | None = None, max_history: int = 1000):
        self._data: dict[str, Any] = dict(initial or {})
        self._lock = asyncio.Lock()
        self._history: list[ContextChange] = []
        self._max_history = max_history
        self._version = 0

    # === READS ===

    def snapshot(self) -> dict[str, Any]:
        """Shallow copy of the current context."""
        return dict(self._data)

    def get(self, key: str, default: Any = None) -> Any:
        return self._data.get(key, default)

    def __getitem__(self, key: str) -> Any:
        return self._data[key]

    def __contains__(self, key: object) -> bool:
        return key in self._data

    def __len__(self) -> int:
        return len(self._data)

    @property
    def version(self) -> int:
        """Incremented once per merge or delete."""
        return self._version

    def telescope(self, overrides: dict[str, Any] | None = None) -> dict[str, Any]:
        """A worker's view: the context with ``overrides`` layered on top (shallow)."""
        return self._data | (overrides or {})

    # === WRITES ===

    def merge(self, updates: dict[str, Any], source: str = "") -> None:
        """Shallow-merge ``updates``. Later writes win."""
        if not updates:
            return
        self._data.update(updates)
        self._version += 1
        self._record(list(updates), source)
        logger.debug(f"Context merge from {source or 'wizard'}: {sorted(updates)}")

    async def merge_async(self, updates: dict[str, Any], source: str = "") -> None:
        """``merge`` serialized against other concurrent writers."""
        async with self._lock:
            self.merge(updates, source)

    def delete(self, *keys: str) -> None:
        removed = [k for k in keys if k in self._data]
        for key in removed:
            del self._data[key]
        if removed:
            self._version += 1

    def _record(self, keys: list[str], source: str) -> None:
        self._history.append(ContextChange(keys=keys, source=source))
        if len(self._history) > self._max_history:
            self._history = self._history[-self._max_history :]

    # === STEP FAILURE BOOKKEEPING ===

    def record_error(self, step_id: str, message: str) -> int:
        """Store ``<step_id>_error`` and bump ``<step_id>_retryCount``. Returns the new count."""
        count = int(self._data.get(retry_key(step_id), 0)) + 1
        self.merge({error_key(step_id): message, retry_key(step_id): count}, source=step_id)
        return count

    def clear_error(self, step_id: str) -> None:
        self.delete(error_key(step_id), retry_key(step_id))

    def retry_count(self, step_id: str) -> int:
        return int(self._data.get(retry_key(step_id), 0))

    def get_history(self, limit: int = 100) -> list[ContextChange]:
        """Most recent changes first."""
        return self._history[::-1][:limit]
