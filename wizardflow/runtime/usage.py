"""Token usage accounting across a wizard run."""

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Usage:
    """Token counts for one completion."""

    prompt_tokens: int = 0
    completion_tokens: int = 0

    @property
    def total_tokens(self) -> int:
        return self.prompt_tokens + self.completion_tokens


UsageCallback = Callable[[Usage, str], None]


class UsageTracker:
    """
    Accumulates token usage and a running tokens-per-second rate.

    ``on_usage`` is called with each completion's usage and the provider
    name. A failing callback is logged and otherwise ignored.
    """

    def __init__(self, on_usage: UsageCallback | None = None):
        self.on_usage = on_usage
        self.total_tokens = 0
        self.prompt_tokens = 0
        self.completion_tokens = 0
        self.step_tokens = 0
        self.calls = 0
        self._start_time: float | None = None

    def start(self) -> None:
        """Reset counters and start the rate clock."""
        self.total_tokens = 0
        self.prompt_tokens = 0
        self.completion_tokens = 0
        self.step_tokens = 0
        self.calls = 0
        self._start_time = time.monotonic()

    @property
    def rate(self) -> float:
        """Tokens per second since start(), 0.0 before any time has elapsed."""
        if self._start_time is None:
            return 0.0
        elapsed = time.monotonic() - self._start_time
        return self.total_tokens / elapsed if elapsed > 0 else 0.0

    def record(self, usage: Usage, provider: str) -> None:
        self.total_tokens += usage.total_tokens
        self.prompt_tokens += usage.prompt_tokens
        self.completion_tokens += usage.completion_tokens
        self.step_tokens = usage.total_tokens
        self.calls += 1

        if self.on_usage:
            try:
                self.on_usage(usage, provider)
            except Exception as e:
                logger.warning(f"on_usage callback failed: {e}")

    def summary(self) -> dict[str, float]:
        return {
            "total_tokens": self.total_tokens,
            "prompt_tokens": self.prompt_tokens,
            "completion_tokens": self.completion_tokens,
            "step_tokens": self.step_tokens,
            "calls": self.calls,
            "tokens_per_second": round(self.rate, 2),
        }
