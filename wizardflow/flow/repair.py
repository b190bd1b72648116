"""
Schema Repair - validate parsed step output, and ask the model to fix it once.

Structured step output flows: parser -> validate -> (repair -> validate).
A failed repair does not raise. It returns a ValidationFailure sentinel that
the executor maps onto the step's retry budget.
"""

import logging
from dataclasses import dataclass, field
from typing import Any

from pydantic import BaseModel

from wizardflow.config import DEFAULT_REPAIR_MAX_TOKENS, DEFAULT_TEMPERATURE
from wizardflow.errors import LLMProviderError, SchemaError, TaggedParseError
from wizardflow.flow.parser import parse_tagged_text
from wizardflow.flow.prompts import build_repair_prompt
from wizardflow.flow.schema import validate
from wizardflow.llm.provider import LLMProvider, LLMResponse

logger = logging.getLogger(__name__)


@dataclass
class RepairConfig:
    """Configuration for schema repair."""

    enabled: bool = True
    max_tokens: int = DEFAULT_REPAIR_MAX_TOKENS
    temperature: float = DEFAULT_TEMPERATURE
    model: str | None = None  # None -> the step's own model
    log_repairs: bool = True


@dataclass(frozen=True)
class ValidationFailure:
    """Sentinel: the data could not be validated, even after repair."""

    error: str
    data: Any = None


@dataclass
class RepairStats:
    attempts: int = 0
    successes: int = 0
    failures_by_step: dict[str, int] = field(default_factory=dict)


class SchemaRepairPipeline:
    """
    Validates structured step output and repairs it with one model call.

    Example:
        pipeline = SchemaRepairPipeline(llm)
        outcome = await pipeline.validate_or_repair(data, Outline, "outline", model)
        if isinstance(outcome, ValidationFailure):
            ...
    """

    def __init__(
        self,
        llm: LLMProvider | None,
        config: RepairConfig | None = None,
        on_response: Any = None,
    ):
        """
        Args:
            llm: Provider used for repair calls. None disables repair.
            config: Repair settings
            on_response: Optional callback ``(response, step_id)`` for usage accounting
        """
        self.llm = llm
        self.config = config or RepairConfig()
        self.on_response = on_response
        self.stats = RepairStats()

    async def validate_or_repair(
        self,
        data: Any,
        schema: type[BaseModel],
        step_id: str,
        model: str,
    ) -> BaseModel | ValidationFailure:
        try:
            return validate(data, schema)
        except SchemaError as e:
            validation_error = str(e)

        if self.config.log_repairs:
            logger.warning(f"⚠ Validation failed for step {step_id}: {validation_error}")

        if not self.config.enabled or self.llm is None:
            return self._fail(step_id, validation_error, data)

        self.stats.attempts += 1
        prompt = build_repair_prompt(data, validation_error, schema)
        try:
            response = await self.llm.complete(
                prompt=prompt,
                model=self.config.model or model,
                max_tokens=self.config.max_tokens,
                temperature=self.config.temperature,
            )
            self._report(response, step_id)
            repaired = parse_tagged_text(response.content)
            result = validate(repaired, schema)
        except (LLMProviderError, TaggedParseError, SchemaError) as e:
            logger.error(f"✗ Repair failed for step {step_id}: {e}")
            return self._fail(step_id, validation_error, data)

        self.stats.successes += 1
        if self.config.log_repairs:
            logger.info(
                f"✓ Repaired output for step {step_id} "
                f"(total repairs: {self.stats.successes})"
            )
        return result

    def _report(self, response: LLMResponse, step_id: str) -> None:
        if self.on_response is not None:
            self.on_response(response, step_id)

    def _fail(self, step_id: str, error: str, data: Any) -> ValidationFailure:
        self.stats.failures_by_step[step_id] = self.stats.failures_by_step.get(step_id, 0) + 1
        return ValidationFailure(error=error, data=data)

    def get_stats(self) -> dict[str, Any]:
        return {
            "attempts": self.stats.attempts,
            "successes": self.stats.successes,
            "failures_by_step": dict(self.stats.failures_by_step),
        }
