"""Actions handed to a step's ``update`` function."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from wizardflow.flow.bungee import BungeeBuilder
from wizardflow.flow.signals import NEXT, RETRY, Goto, Next, Retry, Stop, Wait

if TYPE_CHECKING:
    from wizardflow.flow.executor import Wizard
    from wizardflow.llm.provider import LLMProvider


class StepActions:
    """
    Context writes, flow-control constructors and bungee entry for one step.

    Example:
        def update(result, context, actions):
            actions.update_context({"draft": result})
            if len(result) < 200:
                return actions.retry()
            return actions.goto("review")
    """

    def __init__(self, host: Wizard, step_id: str):
        self._host = host
        self.step_id = step_id

    @property
    def llm(self) -> LLMProvider | None:
        """The wizard's provider, for steps that want to make their own calls."""
        return self._host.llm

    def update_context(self, updates: dict[str, Any]) -> None:
        """Shallow-merge ``updates`` into the shared context. Later writes win."""
        self._host.context.merge(updates, source=self.step_id)

    def next(self) -> Next:
        return NEXT

    def stop(self, reason: str = "") -> Stop:
        return Stop(reason=reason)

    def retry(self) -> Retry:
        return RETRY

    def wait(self, seconds: float | None = None) -> Wait:
        return Wait(seconds)

    def goto(self, step_id: str) -> Goto:
        return Goto(step_id)

    def bungee(self) -> BungeeBuilder:
        """Start a fan-out plan anchored at this step."""
        return BungeeBuilder(self.step_id)
