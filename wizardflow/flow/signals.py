"""
Flow-control signals.

A step's ``update`` function returns one of these to tell the run loop what
to do next. The executor also synthesizes ``Retry`` and ``Stop(fatal=True)``
from its own error handling.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from wizardflow.flow.bungee import BungeePlan


@dataclass(frozen=True)
class Next:
    """Advance to the next slot."""


@dataclass(frozen=True)
class Stop:
    """End the run. ``fatal`` marks an unrecoverable failure."""

    reason: str = ""
    fatal: bool = False


@dataclass(frozen=True)
class Retry:
    """Re-execute the current slot."""


@dataclass(frozen=True)
class Wait:
    """Sleep, then advance. ``seconds=None`` uses the wizard's configured wait."""

    seconds: float | None = None


@dataclass(frozen=True)
class Goto:
    """Jump to the slot holding ``step_id``."""

    step_id: str


@dataclass(frozen=True)
class BungeeJump:
    """Hand a fan-out plan to the bungee executor."""

    plan: BungeePlan


FlowControlSignal = Next | Stop | Retry | Wait | Goto | BungeeJump

NEXT = Next()
RETRY = Retry()


def describe(signal: FlowControlSignal | None) -> str:
    """Short human-readable form, for logs."""
    match signal:
        case None:
            return "reentry-pending"
        case Next():
            return "next"
        case Stop(reason=reason, fatal=fatal):
            label = "fatal-stop" if fatal else "stop"
            return f"{label}({reason})" if reason else label
        case Retry():
            return "retry"
        case Wait(seconds=seconds):
            return f"wait({seconds}s)" if seconds is not None else "wait"
        case Goto(step_id=step_id):
            return f"goto({step_id})"
        case BungeeJump(plan=plan):
            return f"bungee({plan.id})"
    return repr(signal)
