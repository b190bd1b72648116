"""Step flow control: steps, signals, the run loop, bungee fan-out and the tagged parser."""

from wizardflow.flow.actions import StepActions
from wizardflow.flow.bungee import (
    BungeeBuilder,
    BungeeDestination,
    BungeeExecutor,
    BungeePlan,
    WorkerActions,
)
from wizardflow.flow.context import SharedContext
from wizardflow.flow.executor import Wizard, WizardResult
from wizardflow.flow.parser import (
    ParseResult,
    ParserPhase,
    TaggedFieldParser,
    parse_fields,
    parse_tagged_text,
)
from wizardflow.flow.repair import RepairConfig, SchemaRepairPipeline, ValidationFailure
from wizardflow.flow.signals import (
    BungeeJump,
    FlowControlSignal,
    Goto,
    Next,
    Retry,
    Stop,
    Wait,
)
from wizardflow.flow.step import (
    ComputeStep,
    ContextMode,
    ParallelGroup,
    Step,
    StructuredStep,
    TextStep,
)

__all__ = [
    # Run loop
    "Wizard",
    "WizardResult",
    "StepActions",
    "SharedContext",
    # Steps
    "Step",
    "StructuredStep",
    "TextStep",
    "ComputeStep",
    "ParallelGroup",
    "ContextMode",
    # Signals
    "FlowControlSignal",
    "Next",
    "Stop",
    "Retry",
    "Wait",
    "Goto",
    "BungeeJump",
    # Bungee
    "BungeeBuilder",
    "BungeeDestination",
    "BungeeExecutor",
    "BungeePlan",
    "WorkerActions",
    # Parsing and repair
    "TaggedFieldParser",
    "ParseResult",
    "ParserPhase",
    "parse_tagged_text",
    "parse_fields",
    "SchemaRepairPipeline",
    "RepairConfig",
    "ValidationFailure",
]
