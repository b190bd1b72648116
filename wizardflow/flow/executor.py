"""
Wizard - the step run loop.

A Wizard holds an ordered list of slots (a single step or a parallel group)
and walks them, interpreting the flow-control signal each step's ``update``
returns:

    Next        -> next slot
    Stop        -> end the run (fatal=True marks a failure)
    Retry       -> same slot again
    Wait        -> sleep, then next slot
    Goto(id)    -> the slot holding ``id``
    BungeeJump  -> hand the plan to the BungeeExecutor

Step failures (provider errors, unparseable or invalid output) are recorded
in the shared context as ``<step_id>_error`` and ``<step_id>_retryCount`` and
turned into Retry until the step's budget is spent, then a fatal Stop.
"""

import asyncio
import json
import logging
import time
import uuid
from collections.abc import Coroutine
from dataclasses import dataclass, field
from typing import Any

from pydantic import BaseModel

from wizardflow.config import WizardConfig
from wizardflow.errors import SchemaError, UnknownStepError, WizardError
from wizardflow.flow.actions import StepActions
from wizardflow.flow.bungee import BungeeExecutor
from wizardflow.flow.context import SharedContext
from wizardflow.flow.parser import TaggedFieldParser, parse_tagged_text
from wizardflow.flow.prompts import (
    apply_template,
    build_structured_prompt,
    build_text_prompt,
    context_section,
    error_section,
)
from wizardflow.flow.repair import RepairConfig, SchemaRepairPipeline, ValidationFailure
from wizardflow.flow.signals import (
    NEXT,
    RETRY,
    BungeeJump,
    FlowControlSignal,
    Goto,
    Next,
    Retry,
    Stop,
    Wait,
    describe,
)
from wizardflow.flow.step import (
    ComputeStep,
    ParallelGroup,
    Slot,
    Step,
    StructuredStep,
    TextStep,
    UpdateFn,
    maybe_await,
)
from wizardflow.llm.provider import LLMProvider, LLMResponse
from wizardflow.observability import set_trace_context
from wizardflow.runtime.event_bus import EventBus, EventType
from wizardflow.runtime.run_logger import RunLogger
from wizardflow.runtime.usage import Usage, UsageCallback, UsageTracker

logger = logging.getLogger(__name__)

_NO_OVERRIDE = object()


@dataclass
class WizardResult:
    """Result of a wizard run."""

    success: bool
    stopped: bool = False  # a step returned a graceful Stop
    error: str | None = None
    steps_executed: int = 0
    path: list[str] = field(default_factory=list)  # step ids in execution order
    context: dict[str, Any] = field(default_factory=dict)
    retry_details: dict[str, int] = field(default_factory=dict)  # {step_id: failures}
    total_tokens: int = 0
    duration_ms: int = 0

    @property
    def total_retries(self) -> int:
        return sum(self.retry_details.values())


class Wizard:
    """
    Drives a sequence of steps against a shared context.

    Example:
        wizard = Wizard("essay", llm=LiteLLMProvider())

        wizard.add_structured_step(
            "outline",
            "Outline an essay about {{topic}}",
            Outline,
            update=lambda result, ctx, actions: actions.update_context(
                {"sections": result.sections}
            ),
            context_mode=ContextMode.TEMPLATE,
        )
        wizard.add_text_step("draft", "Write the essay from the outline")

        result = await wizard.run({"topic": "tide pools"})
    """

    def __init__(
        self,
        wizard_id: str,
        llm: LLMProvider | None = None,
        *,
        system_prompt: str | None = None,
        config: WizardConfig | None = None,
        event_bus: EventBus | None = None,
        run_logger: RunLogger | None = None,
        on_usage: UsageCallback | None = None,
        repair_config: RepairConfig | None = None,
    ):
        """
        Args:
            wizard_id: Name of this wizard; used for the run log file and events
            llm: Provider for model calls. Only compute-only wizards may omit it.
            system_prompt: Text placed at the top of every step prompt
            config: Runtime settings (defaults read from the configuration file)
            event_bus: Optional bus for lifecycle events
            run_logger: Optional run log; by default one is created from config
            on_usage: Optional callback ``(usage, provider_name)`` per model call
            repair_config: Schema repair settings
        """
        self.wizard_id = wizard_id
        self.llm = llm
        self.system_prompt = system_prompt
        self.config = config or WizardConfig()
        self.context = SharedContext()

        self._slots: list[Slot] = []
        self._steps: dict[str, Step] = {}
        self._slot_of: dict[str, int] = {}

        self._event_bus = event_bus
        self._event_tasks: set[asyncio.Task] = set()
        self.run_logger = run_logger or RunLogger(
            wizard_id, self.config.log_dir, enabled=self.config.log_to_file
        )
        self.usage = UsageTracker(on_usage=on_usage)
        self.repair = SchemaRepairPipeline(
            llm,
            repair_config
            or RepairConfig(
                max_tokens=self.config.repair_max_tokens,
                temperature=self.config.temperature,
            ),
            on_response=self._record_usage,
        )
        self.bungee_executor = BungeeExecutor(self)

        # Pause/resume control
        self._pause_requested = asyncio.Event()
        self._resume_event = asyncio.Event()
        self._step_mode = False
        self._paused = False
        self._override: Any = _NO_OVERRIDE

        # Per-run state
        self._running = False
        self._run_id: str | None = None
        self._stop_signal: Stop | None = None
        self._path: list[str] = []
        self._retry_details: dict[str, int] = {}

    # === REGISTRATION ===

    def add_step(self, step: Step) -> "Wizard":
        """Append a step as its own slot."""
        self._register(step, len(self._slots))
        self._slots.append(step)
        return self

    def add_parallel_steps(self, steps: list[Step]) -> "Wizard":
        """Append a group of steps that execute concurrently in one slot."""
        if not steps:
            raise ValueError("A parallel group needs at least one step")
        ids = [s.id for s in steps]
        if len(set(ids)) != len(ids) or any(i in self._steps for i in ids):
            raise ValueError(f"Duplicate step id in parallel group: {ids}")
        index = len(self._slots)
        for step in steps:
            self._register(step, index)
        self._slots.append(ParallelGroup(list(steps)))
        return self

    def add_structured_step(
        self,
        step_id: str,
        instruction: str,
        schema: type[BaseModel],
        update: UpdateFn | None = None,
        *,
        model: str | None = None,
        **options: Any,
    ) -> "Wizard":
        return self.add_step(
            StructuredStep(
                id=step_id,
                instruction=instruction,
                schema=schema,
                update=update,
                model=model,
                **options,
            )
        )

    def add_text_step(
        self,
        step_id: str,
        instruction: str,
        update: UpdateFn | None = None,
        *,
        model: str | None = None,
        **options: Any,
    ) -> "Wizard":
        return self.add_step(
            TextStep(id=step_id, instruction=instruction, update=update, model=model, **options)
        )

    def add_compute_step(
        self,
        step_id: str,
        update: UpdateFn,
        instruction: str = "",
        **options: Any,
    ) -> "Wizard":
        return self.add_step(
            ComputeStep(id=step_id, instruction=instruction, update=update, **options)
        )

    def _register(self, step: Step, slot_index: int) -> None:
        if step.id in self._steps:
            raise ValueError(f"Duplicate step id: {step.id}")
        self._steps[step.id] = step
        self._slot_of[step.id] = slot_index

    @property
    def steps(self) -> list[Step]:
        return list(self._steps.values())

    def find_step(self, step_id: str) -> Step:
        """
        Raises:
            UnknownStepError: no step has this id
        """
        step = self._steps.get(step_id)
        if step is None:
            raise UnknownStepError(step_id)
        return step

    def step_index(self, step_id: str) -> int:
        """Slot index holding ``step_id``."""
        if step_id not in self._slot_of:
            raise UnknownStepError(step_id)
        return self._slot_of[step_id]

    # === CONTEXT ===

    def set_context(self, context: dict[str, Any]) -> "Wizard":
        self.context.merge(context, source="user")
        return self

    def get_context(self) -> dict[str, Any]:
        return self.context.snapshot()

    def update_context(self, updates: dict[str, Any]) -> "Wizard":
        self.context.merge(updates, source="user")
        return self

    def step_actions(self, step_id: str) -> StepActions:
        return StepActions(self, step_id)

    # === PAUSE / STEP MODE ===

    def request_pause(self) -> None:
        """Pause before the next slot. Safe to call while a step is running."""
        self._pause_requested.set()
        logger.info("⏸ Pause requested - will pause before the next step")

    def resume(self, override: Any = None) -> None:
        """
        Continue a paused run.

        Args:
            override: Data to use in place of model output for the next
                executed step. Validated against that step's schema; an
                invalid override is logged and ignored.
        """
        if override is not None:
            self._override = override
        self._pause_requested.clear()
        self._resume_event.set()

    def set_step_mode(self, enabled: bool) -> None:
        """In step mode the run suspends after every slot until resume()."""
        self._step_mode = enabled

    @property
    def is_paused(self) -> bool:
        return self._paused

    @property
    def is_running(self) -> bool:
        return self._running

    async def _suspend(self, reason: str, step_id: str | None) -> None:
        self._paused = True
        self._resume_event.clear()
        logger.info(f"⏸ Execution paused ({reason})")
        await self._emit(EventType.EXECUTION_PAUSED, step_id=step_id, reason=reason)
        await self._resume_event.wait()
        self._paused = False
        logger.info("▶ Execution resumed")
        await self._emit(EventType.EXECUTION_RESUMED, step_id=step_id)

    def _take_override(self, step: Step) -> Any:
        if self._override is _NO_OVERRIDE:
            return _NO_OVERRIDE
        data, self._override = self._override, _NO_OVERRIDE
        try:
            validated = step.validate(data)
        except SchemaError as e:
            logger.warning(f"Override for step {step.id} failed validation, ignoring: {e}")
            return _NO_OVERRIDE
        logger.info(f"📝 Using override data for step {step.id}")
        return validated

    # === ENTRY POINTS ===

    async def run(self, context: dict[str, Any] | None = None) -> WizardResult:
        """Run from the first slot. ``context`` is merged into the shared context first."""
        if context:
            self.context.merge(context, source="user")
        return await self._execute_from(0)

    async def start_from(self, step_id: str) -> WizardResult:
        """Run starting at the slot holding ``step_id``."""
        try:
            index = self.step_index(step_id)
        except UnknownStepError as e:
            return WizardResult(success=False, error=str(e), context=self.context.snapshot())
        self._step_mode = False
        return await self._execute_from(index)

    async def _execute_from(self, index: int) -> WizardResult:
        self._run_id = uuid.uuid4().hex
        self._running = True
        self._stop_signal = None
        self._path = []
        self._retry_details = {}
        self.usage.start()
        started = time.monotonic()
        set_trace_context(run_id=self._run_id, wizard_id=self.wizard_id)

        logger.info(f"🧙 Starting wizard {self.wizard_id} ({len(self._slots)} slots)")
        self.run_logger.log(f"Starting wizard {self.wizard_id}")
        await self._emit(
            EventType.WIZARD_STARTED,
            steps=[{"id": s.id, "kind": s.kind, "instruction": s.instruction} for s in self.steps],
        )

        error: str | None = None
        try:
            await self._loop(index)
        except WizardError as e:
            error = str(e)
            logger.error(f"✗ Wizard {self.wizard_id} failed: {error}")
        except Exception as e:
            error = f"{type(e).__name__}: {e}"
            logger.error(f"✗ Wizard {self.wizard_id} crashed: {error}", exc_info=True)
        finally:
            self._running = False

        stop = self._stop_signal
        if error is None and stop is not None and stop.fatal:
            error = stop.reason or "Fatal stop"

        result = WizardResult(
            success=error is None,
            stopped=stop is not None and not stop.fatal,
            error=error,
            steps_executed=len(self._path),
            path=list(self._path),
            context=self.context.snapshot(),
            retry_details=dict(self._retry_details),
            total_tokens=self.usage.total_tokens,
            duration_ms=int((time.monotonic() - started) * 1000),
        )

        self.run_logger.log(
            f"Wizard {self.wizard_id} finished: success={result.success} "
            f"steps={result.steps_executed} tokens={result.total_tokens}"
        )
        if result.success:
            logger.info(
                f"✓ Wizard {self.wizard_id} completed in {result.duration_ms}ms "
                f"({result.steps_executed} steps, {result.total_tokens} tokens)"
            )
            await self._emit(
                EventType.WIZARD_COMPLETED,
                steps_executed=result.steps_executed,
                stopped=result.stopped,
                usage=self.usage.summary(),
            )
        else:
            await self._emit(EventType.WIZARD_FAILED, error=result.error)
        await self._flush_events()
        return result

    # === RUN LOOP ===

    async def _loop(self, index: int) -> None:
        while True:
            while index < len(self._slots) and self._running:
                slot = self._slots[index]
                if self._pause_requested.is_set():
                    await self._suspend("pause requested", slot.id)

                index = await self._run_slot(slot, index)

                if self._step_mode and self._running:
                    await self._suspend("step mode", slot.id)

                index = await self._drain_reentries(index)

            if not self._running or not self.bungee_executor.has_pending():
                return
            # Past the last slot with optimistic plans still in flight
            logger.info("Waiting for background bungee plans before finishing")
            await self.bungee_executor.wait_pending()
            index = await self._drain_reentries(index)

    async def _run_slot(self, slot: Slot, index: int) -> int:
        match slot:
            case ParallelGroup():
                signal = await self._run_group(slot)
            case _:
                signal = await self.execute_step(slot)
        return await self._apply_signal(signal, index, slot.id)

    async def _run_group(self, group: ParallelGroup) -> FlowControlSignal:
        signals = await asyncio.gather(*(self.execute_step(step) for step in group.steps))

        stops = [s for s in signals if isinstance(s, Stop)]
        if stops:
            return next((s for s in stops if s.fatal), stops[0])
        for signal in signals:
            if isinstance(signal, Goto):
                return signal
        if any(isinstance(s, Retry) for s in signals):
            return RETRY
        for step, signal in zip(group.steps, signals, strict=True):
            if isinstance(signal, Wait | BungeeJump):
                logger.warning(
                    f"Step {step.id} returned {describe(signal)} inside a parallel group; "
                    f"treating as next"
                )
        return NEXT

    async def _apply_signal(
        self,
        signal: FlowControlSignal | None,
        index: int,
        slot_id: str,
        advance: int | None = None,
    ) -> int:
        """
        Return the next slot index; a Stop ends the run.

        ``advance`` is where Next and Wait lead, ``index + 1`` unless given.
        """
        logger.debug(f"Slot {slot_id} -> {describe(signal)}")
        if advance is None:
            advance = index + 1
        match signal:
            case Next():
                return advance
            case Stop():
                self._halt(signal)
                return index
            case Retry():
                return index
            case Wait(seconds=seconds):
                delay = self.config.wait_seconds if seconds is None else seconds
                logger.info(f"⏳ Waiting {delay}s after {slot_id}")
                await asyncio.sleep(delay)
                return advance
            case Goto(step_id=target):
                return self.step_index(target)
            case BungeeJump(plan=plan):
                outcome = await self.bungee_executor.execute_plan(plan)
                if outcome is None:
                    # Anchor reentry queued; the drain decides where to go
                    return index
                return await self._apply_signal(outcome, index, slot_id, advance)
        raise WizardError(f"Step {slot_id} returned an unknown signal: {signal!r}")

    async def _drain_reentries(self, index: int) -> int:
        while self._running:
            reentries = self.bungee_executor.take_reentries()
            if not reentries:
                break
            for anchor_id, background in reentries:
                if not self._running:
                    break
                logger.info(f"↩ Re-entering anchor step {anchor_id}")
                anchor_index = self.step_index(anchor_id)
                signal = await self.execute_step(self.find_step(anchor_id))
                # Background plans finish after the loop moved on; Next resumes there
                advance = index if background else None
                index = await self._apply_signal(signal, anchor_index, anchor_id, advance)
        return index

    def _halt(self, stop: Stop) -> None:
        self._running = False
        self._stop_signal = stop
        label = "Fatal stop" if stop.fatal else "Stop"
        logger.info(f"⏹ {label}{': ' + stop.reason if stop.reason else ''}")

    # === STEP EXECUTION ===

    async def execute_step(self, step: Step) -> FlowControlSignal:
        """
        Run one step and return its signal.

        Never raises: failures become Retry, or a fatal Stop once the step's
        retry budget is spent.
        """
        set_trace_context(step_id=step.id)
        started = time.monotonic()
        self._path.append(step.id)
        logger.info(f"▶ Step {step.id}")
        self.run_logger.log(f"Starting step {step.id}")
        await self._emit(EventType.STEP_STARTED, step_id=step.id, instruction=step.instruction)

        try:
            if step.before_run is not None:
                await maybe_await(step.before_run())

            workflow_context = self.context.snapshot()
            step_context = step.project_context(workflow_context)
            self.run_logger.log(
                lambda: f"Context for step {step.id}: {json.dumps(step_context, default=str)}"
            )

            result = self._take_override(step)
            if result is _NO_OVERRIDE:
                result = await self.generate_step_data(step, step_context, workflow_context)
            if isinstance(result, ValidationFailure):
                return await self._fail_step(step, result.error)

            signal: FlowControlSignal | None = NEXT
            if step.update is not None:
                signal = await maybe_await(
                    step.update(result, self.context.snapshot(), self.step_actions(step.id))
                )
            if signal is None:
                signal = NEXT

            self.context.clear_error(step.id)
            if step.after_run is not None:
                await maybe_await(step.after_run(result))
        except Exception as e:
            return await self._fail_step(step, str(e) or type(e).__name__)

        duration_ms = int((time.monotonic() - started) * 1000)
        self.run_logger.log(lambda: f"Step {step.id} completed with data: {_dump(result)}")
        logger.info(f"✓ Step {step.id} -> {describe(signal)} ({duration_ms}ms)")
        await self._emit(
            EventType.STEP_COMPLETED,
            step_id=step.id,
            result=_jsonable(result),
            duration_ms=duration_ms,
            signal=describe(signal),
        )
        await self._emit(EventType.CONTEXT_UPDATED, context=self.context.snapshot())
        return signal

    async def _fail_step(self, step: Step, message: str) -> FlowControlSignal:
        count = self.context.record_error(step.id, message)
        self._retry_details[step.id] = count
        self.run_logger.log(f"Step {step.id} failed (attempt {count}): {message}")

        if count > self.config.max_retries:
            logger.error(f"✗ Step {step.id} failed after {count} attempts: {message}")
            await self._emit(EventType.STEP_FAILED, step_id=step.id, error=message, attempts=count)
            return Stop(reason=f"Step {step.id} failed after {count} attempts: {message}", fatal=True)

        logger.warning(f"🔄 Step {step.id} failed (attempt {count}), retrying: {message}")
        await self._emit(EventType.STEP_RETRY, step_id=step.id, attempt=count, error=message)
        return RETRY

    async def generate_step_data(
        self,
        step: Step,
        step_context: Any,
        workflow_context: dict[str, Any],
    ) -> Any:
        """
        Produce a step's result: None for compute steps, text for text steps,
        a validated model instance (or ValidationFailure) for structured steps.
        """
        if not step.generative:
            return None
        if self.llm is None:
            raise WizardError(f"Step {step.id} calls a model but the wizard has no LLM provider")

        instruction = step.instruction
        if step.context_mode.uses_template:
            instruction = apply_template(step.instruction, step_context)
        context_text = context_section(step_context) if step.context_mode.uses_tags else ""
        errors = error_section(workflow_context, step.id)
        model = getattr(step, "model", None) or self.config.model

        match step:
            case TextStep():
                prompt = build_text_prompt(
                    step.id,
                    instruction,
                    system_prompt=self.system_prompt,
                    errors=errors,
                    context=context_text,
                )
                self.run_logger.log(lambda: f"Full prompt for step {step.id}: {prompt}")
                response = await self.llm.complete(
                    prompt=prompt,
                    model=model,
                    max_tokens=self.config.max_tokens,
                    temperature=self.config.temperature,
                )
                self._record_usage(response, step.id)
                self.run_logger.log(lambda: f"LLM response for step {step.id}: {response.content}")
                return response.content

            case StructuredStep():
                prompt = build_structured_prompt(
                    step.id,
                    instruction,
                    step.schema,
                    system_prompt=self.system_prompt,
                    errors=errors,
                    context=context_text,
                )
                self.run_logger.log(lambda: f"Full prompt for step {step.id}: {prompt}")
                data = await self._generate_structured(step, prompt, model)
                self.run_logger.log(lambda: f"Parsed data for step {step.id}: {_dump(data)}")
                return await self.repair.validate_or_repair(data, step.schema, step.id, model)

        raise WizardError(f"Step {step.id} has unsupported kind {step.kind!r}")

    async def _generate_structured(
        self, step: StructuredStep, prompt: str, model: str
    ) -> dict[str, Any]:
        if not self.config.stream_structured:
            response = await self.llm.complete(
                prompt=prompt,
                model=model,
                max_tokens=self.config.max_tokens,
                temperature=self.config.temperature,
            )
            self._record_usage(response, step.id)
            self.run_logger.log(lambda: f"LLM response for step {step.id}: {response.content}")
            return parse_tagged_text(response.content)

        parser = TaggedFieldParser()
        last_partial: dict[str, Any] = {}

        def on_chunk(chunk: str) -> None:
            nonlocal last_partial
            update = parser.push(chunk)
            if update is not None and update.result and update.result != last_partial:
                last_partial = update.result
                self._spawn(
                    self._emit(
                        EventType.STEP_STREAMING,
                        step_id=step.id,
                        partial=_jsonable(update.result),
                        done=update.done,
                    )
                )

        response = await self.llm.complete_streaming(
            prompt=prompt,
            model=model,
            on_chunk=on_chunk,
            max_tokens=self.config.max_tokens,
            temperature=self.config.temperature,
        )
        self._record_usage(response, step.id)
        self.run_logger.log(lambda: f"LLM response for step {step.id}: {response.content}")

        outcome = parser.finish()
        if parser.errors:
            logger.warning(
                f"Step {step.id}: parser recovered from {parser.error_count} error(s) "
                f"({parser.resync_count} resyncs): {parser.errors[-1]}"
            )
        if outcome is None:
            # Container never opened; raises TaggedParseError
            return parse_tagged_text(response.content)
        return outcome.result

    # === USAGE AND EVENTS ===

    def _record_usage(self, response: LLMResponse, step_id: str) -> None:
        provider = self.llm.name if self.llm is not None else "unknown"
        self.usage.record(Usage(response.input_tokens, response.output_tokens), provider)
        if response.has_usage:
            self._spawn(
                self._emit(
                    EventType.USAGE_UPDATED,
                    step_id=step_id,
                    total_tokens=self.usage.total_tokens,
                    step_tokens=self.usage.step_tokens,
                    rate=round(self.usage.rate, 2),
                )
            )

    def _spawn(self, coro: Coroutine[Any, Any, None]) -> None:
        if self._event_bus is None:
            coro.close()
            return
        task = asyncio.create_task(coro)
        self._event_tasks.add(task)
        task.add_done_callback(self._event_tasks.discard)

    async def _flush_events(self) -> None:
        if self._event_tasks:
            await asyncio.gather(*list(self._event_tasks), return_exceptions=True)

    async def _emit(self, event_type: EventType, step_id: str | None = None, **data: Any) -> None:
        """Publish to the event bus, if any. Bus failures never affect the run."""
        if self._event_bus is None:
            return
        try:
            await self._event_bus.emit(event_type, self.wizard_id, step_id, self._run_id, **data)
        except Exception as e:
            logger.warning(f"Event bus emit failed for {event_type}: {e}")


def _jsonable(value: Any) -> Any:
    if isinstance(value, BaseModel):
        return value.model_dump(mode="json")
    return value


def _dump(value: Any) -> str:
    return json.dumps(_jsonable(value), default=str)

