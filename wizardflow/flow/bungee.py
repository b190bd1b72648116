"""
Bungee - bounded-concurrency fan-out and fan-in.

An anchor step's ``update`` builds a plan and jumps::

    def update(result, context, actions):
        if "summary_0" in context:          # re-entered after the workers
            return actions.next()
        return (
            actions.bungee()
            .batch("summarize", len(result.chapters), lambda i: {"chapter": i})
            .config(concurrency=3)
            .jump()
        )

Each destination runs as a worker on a telescoped copy of the shared
context (``context | overrides``). Workers write back only through
``actions.update_context``. When every worker has settled the anchor step
is re-entered, unless the plan says otherwise.
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from wizardflow.errors import BungeeNotAllowedError, BungeeWorkerError, SchemaError
from wizardflow.flow.repair import ValidationFailure
from wizardflow.flow.signals import NEXT, BungeeJump, FlowControlSignal, Next
from wizardflow.flow.step import maybe_await
from wizardflow.observability import set_trace_context
from wizardflow.runtime.event_bus import EventType

if TYPE_CHECKING:
    from wizardflow.flow.executor import Wizard

logger = logging.getLogger(__name__)

DEFAULT_CONCURRENCY = 5


def new_plan_id() -> str:
    return f"bungee_{int(time.time() * 1000)}_{uuid.uuid4().hex[:9]}"


@dataclass
class BungeeDestination:
    """One worker: a target step plus the context keys it overrides."""

    target_id: str
    overrides: dict[str, Any] = field(default_factory=dict)


@dataclass
class BungeePlan:
    id: str
    anchor_id: str
    destinations: list[BungeeDestination] = field(default_factory=list)
    concurrency: int = DEFAULT_CONCURRENCY
    optimistic: bool = False
    return_to_anchor: bool = True
    fail_wizard_on_failure: bool = True
    on_complete: Callable[[Any], Any] | None = None


class BungeeBuilder:
    """Fluent builder for a BungeePlan anchored at the current step."""

    def __init__(self, anchor_id: str):
        self._plan = BungeePlan(id=new_plan_id(), anchor_id=anchor_id)

    @property
    def plan(self) -> BungeePlan:
        return self._plan

    def add(self, step_id: str, overrides: dict[str, Any] | None = None) -> BungeeBuilder:
        """Add a single worker for ``step_id``."""
        self._plan.destinations.append(BungeeDestination(step_id, dict(overrides or {})))
        return self

    def batch(
        self,
        step_id: str,
        count: int,
        config_fn: Callable[[int], dict[str, Any]] | None = None,
    ) -> BungeeBuilder:
        """Add ``count`` workers for ``step_id``; ``config_fn(i)`` gives worker i its overrides."""
        for i in range(count):
            self.add(step_id, config_fn(i) if config_fn else None)
        return self

    def config(
        self,
        *,
        concurrency: int | None = None,
        optimistic: bool | None = None,
        return_to_anchor: bool | None = None,
        fail_wizard_on_failure: bool | None = None,
    ) -> BungeeBuilder:
        if concurrency is not None:
            if concurrency < 1:
                raise ValueError(f"concurrency must be at least 1, got {concurrency}")
            self._plan.concurrency = concurrency
        if optimistic is not None:
            self._plan.optimistic = optimistic
        if return_to_anchor is not None:
            self._plan.return_to_anchor = return_to_anchor
        if fail_wizard_on_failure is not None:
            self._plan.fail_wizard_on_failure = fail_wizard_on_failure
        return self

    def on_complete(self, fn: Callable[[Any], Any]) -> BungeeBuilder:
        """``fn(actions)`` runs after all workers settle; its return value is the plan's signal."""
        self._plan.on_complete = fn
        return self

    def jump(self) -> BungeeJump:
        return BungeeJump(self._plan)


class WorkerActions:
    """
    Actions handed to a worker's ``update``.

    Context writes are collected and merged into the shared context when the
    worker settles. Flow control is the plan's business, so the flow
    constructors are no-ops, and nested plans are refused.
    """

    def __init__(self, host: Wizard, worker_id: str, overrides: dict[str, Any]):
        self._host = host
        self.worker_id = worker_id
        self.telescope = overrides
        self.writes: list[dict[str, Any]] = []

    @property
    def llm(self):
        return self._host.llm

    def update_context(self, updates: dict[str, Any]) -> None:
        self.writes.append(dict(updates))

    def _ignored(self, name: str) -> Next:
        logger.debug(f"Worker {self.worker_id}: {name}() has no effect inside a bungee worker")
        return NEXT

    def next(self) -> Next:
        return self._ignored("next")

    def stop(self, reason: str = "") -> Next:
        return self._ignored("stop")

    def retry(self) -> Next:
        return self._ignored("retry")

    def wait(self, seconds: float | None = None) -> Next:
        return self._ignored("wait")

    def goto(self, step_id: str) -> Next:
        return self._ignored("goto")

    def bungee(self) -> BungeeBuilder:
        raise BungeeNotAllowedError(
            f"Worker {self.worker_id} cannot start a nested bungee plan"
        )


class BungeeExecutor:
    """
    Runs bungee plans for one wizard.

    Keeps the queue of anchors waiting to be re-entered and the set of
    optimistic plans still running in the background.
    """

    def __init__(self, host: Wizard):
        self._host = host
        self._reentries: list[tuple[str, bool]] = []
        self._background: set[asyncio.Task] = set()
        self._background_errors: list[BaseException] = []

    # === PLAN EXECUTION ===

    async def execute_plan(self, plan: BungeePlan) -> FlowControlSignal | None:
        """
        Run a plan.

        Returns the plan's signal, or None when an anchor reentry has been
        queued instead.

        Raises:
            UnknownStepError: a destination names an unregistered step
            BungeeWorkerError: a worker failed and the plan escalates failures
        """
        for destination in plan.destinations:
            self._host.find_step(destination.target_id)

        logger.info(
            f"🪂 Executing bungee plan {plan.id} with {len(plan.destinations)} destinations "
            f"(concurrency {plan.concurrency})"
        )
        await self._host._emit(
            EventType.BUNGEE_STARTED,
            step_id=plan.anchor_id,
            plan_id=plan.id,
            destinations=[d.target_id for d in plan.destinations],
            concurrency=plan.concurrency,
            optimistic=plan.optimistic,
        )

        if plan.optimistic:
            task = asyncio.create_task(self._run_plan(plan, background=True))
            self._background.add(task)
            task.add_done_callback(self._settle_background)
            return NEXT

        return await self._run_plan(plan, background=False)

    async def _run_plan(self, plan: BungeePlan, background: bool) -> FlowControlSignal | None:
        failures = await self._launch_workers(plan)

        await self._host._emit(
            EventType.BUNGEE_COMPLETED,
            step_id=plan.anchor_id,
            plan_id=plan.id,
            failures=failures,
        )
        if failures and plan.fail_wizard_on_failure:
            raise BungeeWorkerError(plan.id, failures)

        logger.info(f"✅ Bungee plan {plan.id} completed")
        return await self._complete(plan, background)

    async def _launch_workers(self, plan: BungeePlan) -> dict[str, str]:
        failures: dict[str, str] = {}
        in_flight: set[asyncio.Task] = set()
        cap = max(1, plan.concurrency)

        for index, destination in enumerate(plan.destinations):
            while len(in_flight) >= cap:
                _, in_flight = await asyncio.wait(in_flight, return_when=asyncio.FIRST_COMPLETED)
            if failures and plan.fail_wizard_on_failure:
                logger.warning(
                    f"Bungee plan {plan.id}: not launching remaining workers after failure"
                )
                break
            in_flight.add(
                asyncio.create_task(self._run_worker(plan, index, destination, failures))
            )

        # In-flight workers are allowed to finish
        if in_flight:
            await asyncio.wait(in_flight)
        return failures

    async def _run_worker(
        self,
        plan: BungeePlan,
        index: int,
        destination: BungeeDestination,
        failures: dict[str, str],
    ) -> None:
        worker_id = f"{plan.id}_{destination.target_id}_{index}"
        set_trace_context(plan_id=plan.id, worker_id=worker_id, step_id=destination.target_id)
        actions = WorkerActions(self._host, worker_id, destination.overrides)
        context = self._host.context

        try:
            step = self._host.find_step(destination.target_id)
            view = context.telescope(destination.overrides)
            view["_telescope"] = dict(destination.overrides)
            step_context = step.project_context(view)

            result = await self._host.generate_step_data(step, step_context, view)
            if isinstance(result, ValidationFailure):
                raise SchemaError(result.error)

            if step.update is not None:
                await maybe_await(step.update(result, view, actions))
        except Exception as e:
            logger.error(f"Bungee worker {worker_id} failed: {e}")
            failures[worker_id] = str(e)
            await context.merge_async({f"{worker_id}_error": str(e)}, source=worker_id)
            await self._host._emit(
                EventType.WORKER_FAILED,
                step_id=destination.target_id,
                plan_id=plan.id,
                worker_id=worker_id,
                error=str(e),
            )
        finally:
            for updates in actions.writes:
                await context.merge_async(updates, source=worker_id)

    async def _complete(self, plan: BungeePlan, background: bool) -> FlowControlSignal | None:
        if plan.on_complete is not None:
            signal = await maybe_await(plan.on_complete(self._host.step_actions(plan.anchor_id)))
            if not background:
                return signal if signal is not None else NEXT
            logger.info(f"Optimistic plan {plan.id} completion signal discarded: {signal!r}")

        if plan.return_to_anchor:
            self.queue_reentry(plan.anchor_id, background=background)
            return None
        return NEXT

    # === REENTRY AND BACKGROUND PLANS ===

    def queue_reentry(self, anchor_id: str, background: bool = False) -> None:
        """
        Queue ``anchor_id`` to run again.

        ``background`` marks reentries from optimistic plans. The run loop
        has moved past their anchor, so advancing from them must not rewind it.
        """
        entry = (anchor_id, background)
        if entry not in self._reentries:
            self._reentries.append(entry)

    def take_reentries(self) -> list[tuple[str, bool]]:
        reentries, self._reentries = self._reentries, []
        return reentries

    def has_pending(self) -> bool:
        """True while optimistic plans are still running."""
        return bool(self._background)

    def _settle_background(self, task: asyncio.Task) -> None:
        self._background.discard(task)
        if not task.cancelled() and task.exception() is not None:
            self._background_errors.append(task.exception())

    async def wait_pending(self) -> None:
        """
        Wait for every optimistic plan to finish.

        Raises:
            BungeeWorkerError: the first failure escalated by a background plan
        """
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)
        if self._background_errors:
            error, self._background_errors = self._background_errors[0], []
            raise error
