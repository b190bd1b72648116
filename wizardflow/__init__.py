"""
wizardflow - an asyncio workflow engine for model-driven step wizards.

Steps run in order against a shared context. Each step may call a model
(structured output parsed from a streamed tagged-field response, or raw
text), run local computation, or fan out into bounded-concurrency workers.

Quick start:
    from pydantic import BaseModel
    from wizardflow import Wizard
    from wizardflow.llm import LiteLLMProvider

    class Idea(BaseModel):
        title: str
        tags: list[str]

    wizard = Wizard("ideas", llm=LiteLLMProvider())
    wizard.add_structured_step(
        "idea",
        "Suggest a blog post idea",
        Idea,
        update=lambda idea, ctx, actions: actions.update_context({"idea": idea.title}),
    )
    result = await wizard.run()
"""

from wizardflow.config import WizardConfig
from wizardflow.errors import (
    BungeeNotAllowedError,
    BungeeWorkerError,
    FieldCoercionError,
    LLMProviderError,
    SchemaError,
    TaggedParseError,
    UnknownStepError,
    WizardError,
)
from wizardflow.flow import (
    BungeeBuilder,
    BungeeJump,
    BungeePlan,
    ComputeStep,
    ContextMode,
    FlowControlSignal,
    Goto,
    Next,
    Retry,
    SharedContext,
    StepActions,
    Stop,
    StructuredStep,
    TaggedFieldParser,
    TextStep,
    ValidationFailure,
    Wait,
    Wizard,
    WizardResult,
    WorkerActions,
    parse_fields,
    parse_tagged_text,
)
from wizardflow.runtime import EventBus, EventType, RunLogger, WizardEvent

__version__ = "0.1.0"

__all__ = [
    # Run loop
    "Wizard",
    "WizardResult",
    "WizardConfig",
    "SharedContext",
    "StepActions",
    "WorkerActions",
    # Steps
    "StructuredStep",
    "TextStep",
    "ComputeStep",
    "ContextMode",
    # Signals
    "FlowControlSignal",
    "Next",
    "Stop",
    "Retry",
    "Wait",
    "Goto",
    "BungeeJump",
    "BungeeBuilder",
    "BungeePlan",
    # Parsing
    "TaggedFieldParser",
    "parse_tagged_text",
    "parse_fields",
    "ValidationFailure",
    # Runtime
    "EventBus",
    "EventType",
    "WizardEvent",
    "RunLogger",
    # Errors
    "WizardError",
    "LLMProviderError",
    "TaggedParseError",
    "FieldCoercionError",
    "SchemaError",
    "UnknownStepError",
    "BungeeWorkerError",
    "BungeeNotAllowedError",
]
