"""Exception types raised by the workflow engine.

Grouped by where they surface:

- Provider errors come out of an LLM call and are counted against a step's
  retry budget.
- Parse and validation errors are recovered internally by the parser and the
  repair pipeline.
- Bungee and control-flow errors end the run.
"""


class WizardError(Exception):
    """Base class for all wizardflow errors."""


class LLMProviderError(WizardError):
    """A model-completion call failed (network, non-2xx, unsupported model)."""

    def __init__(self, message: str, provider: str = "", status_code: int | None = None):
        super().__init__(message)
        self.provider = provider
        self.status_code = status_code


class TaggedParseError(WizardError):
    """A complete tagged response could not be parsed at all."""


class FieldCoercionError(TaggedParseError):
    """A single field's content does not match its declared type."""

    def __init__(self, message: str, field_name: str = "", field_type: str = ""):
        super().__init__(message)
        self.field_name = field_name
        self.field_type = field_type


class SchemaError(WizardError):
    """Parsed data failed schema validation."""

    def __init__(self, message: str, errors: list[dict] | None = None):
        super().__init__(message)
        self.errors = errors or []


class UnknownStepError(WizardError):
    """A Goto or bungee destination names a step that is not registered."""

    def __init__(self, step_id: str):
        super().__init__(f"Unknown step ID: {step_id}")
        self.step_id = step_id


class BungeeWorkerError(WizardError):
    """One or more bungee workers failed and the plan escalates failures."""

    def __init__(self, plan_id: str, failures: dict[str, str]):
        names = ", ".join(sorted(failures))
        super().__init__(f"Bungee plan {plan_id} failed: workers [{names}] raised errors")
        self.plan_id = plan_id
        self.failures = failures


class BungeeNotAllowedError(WizardError):
    """A bungee worker tried to launch a nested bungee plan."""
