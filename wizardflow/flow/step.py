"""
Step definitions.

A wizard is an ordered list of steps. Each step has a unique id, an
instruction (a template string), and an ``update`` reducer that receives the
step's result and returns a flow-control signal::

    def update(result, context, actions):
        actions.update_context({"outline": result.sections})
        return actions.next()

``update``, ``before_run`` and ``after_run`` may be plain functions or
coroutines.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from enum import StrEnum
from typing import TYPE_CHECKING, Any

from pydantic import BaseModel

from wizardflow.flow import schema as schema_utils

if TYPE_CHECKING:
    from wizardflow.flow.signals import FlowControlSignal


class ContextMode(StrEnum):
    """How a step's context reaches the model."""

    TAGGED = "tagged"  # serialized as typed tags in a STEP CONTEXT section
    TEMPLATE = "template"  # substituted into {{placeholders}} in the instruction
    BOTH = "both"

    @property
    def uses_template(self) -> bool:
        return self in (ContextMode.TEMPLATE, ContextMode.BOTH)

    @property
    def uses_tags(self) -> bool:
        return self in (ContextMode.TAGGED, ContextMode.BOTH)


UpdateFn = Callable[[Any, dict[str, Any], Any], "FlowControlSignal | None | Awaitable[Any]"]
ContextFn = Callable[[dict[str, Any]], Any]


async def maybe_await(result: Any) -> Any:
    """Await ``result`` if it is awaitable, else return it as is."""
    if asyncio.iscoroutine(result) or asyncio.isfuture(result):
        return await result
    return result


@dataclass(kw_only=True)
class Step:
    """Base step. Use one of the subclasses below."""

    id: str
    instruction: str = ""
    update: UpdateFn | None = None
    context: ContextFn | None = None
    context_mode: ContextMode = ContextMode.TAGGED
    before_run: Callable[[], Any] | None = None
    after_run: Callable[[Any], Any] | None = None

    kind = "step"

    @property
    def generative(self) -> bool:
        """Whether executing this step calls a model."""
        return True

    def project_context(self, workflow_context: dict[str, Any]) -> Any:
        """The slice of context this step sees (the whole context by default)."""
        if self.context is None:
            return workflow_context
        return self.context(workflow_context)

    def validate(self, data: Any) -> Any:
        return data


@dataclass(kw_only=True)
class StructuredStep(Step):
    """Model call whose tagged response is parsed and validated against ``schema``."""

    schema: type[BaseModel]
    model: str | None = None

    kind = "structured"

    def validate(self, data: Any) -> BaseModel:
        if isinstance(data, self.schema):
            return data
        return schema_utils.validate(data, self.schema)

    def fields(self) -> list[schema_utils.SchemaField]:
        return schema_utils.extract_schema_fields(self.schema)


@dataclass(kw_only=True)
class TextStep(Step):
    """Model call whose raw text is the result."""

    model: str | None = None

    kind = "text"

    def validate(self, data: Any) -> str:
        return data if isinstance(data, str) else str(data)


@dataclass(kw_only=True)
class ComputeStep(Step):
    """Local computation only. The result handed to ``update`` is None."""

    kind = "compute"

    @property
    def generative(self) -> bool:
        return False


@dataclass
class ParallelGroup:
    """Steps that share one slot in the run loop and execute concurrently."""

    steps: list[Step] = field(default_factory=list)

    @property
    def id(self) -> str:
        return "parallel(" + ",".join(s.id for s in self.steps) + ")"


Slot = Step | ParallelGroup
