"""
Tests for bungee fan-out/fan-in.

Worker steps are registered like any other step. The anchor re-entry and
the worker-only guard (``"_telescope" in context``) keep them from doing
work when the run loop reaches them as ordinary slots.
"""

import asyncio
import re

import pytest
from pydantic import BaseModel

from wizardflow.errors import BungeeNotAllowedError
from wizardflow.flow.bungee import BungeeBuilder, BungeeExecutor, WorkerActions
from wizardflow.flow.executor import Wizard
from wizardflow.llm.mock import MockLLMProvider
from wizardflow.runtime.event_bus import EventBus, EventType


class Summary(BaseModel):
    summary: str


def is_worker(context) -> bool:
    return "_telescope" in context


def fan_out(count: int, concurrency: int = 5, target: str = "work", **config):
    """Anchor update: fan out once, stop when re-entered."""

    def update(result, context, actions):
        if "result_0" in context or context.get("fanned_out"):
            return actions.stop()
        actions.update_context({"fanned_out": True})
        return (
            actions.bungee()
            .batch(target, count, lambda i: {"i": i})
            .config(concurrency=concurrency, **config)
            .jump()
        )

    return update


# ---- Worker that tracks how many run at once ----
class ConcurrencyProbe:
    def __init__(self, delay: float = 0.01, fail_on: set[int] | None = None):
        self.delay = delay
        self.fail_on = fail_on or set()
        self.in_flight = 0
        self.peak = 0
        self.started: list[int] = []

    async def __call__(self, result, context, actions):
        if not is_worker(context):
            return actions.next()
        i = context["i"]
        self.started.append(i)
        self.in_flight += 1
        self.peak = max(self.peak, self.in_flight)
        try:
            await asyncio.sleep(self.delay)
            if i in self.fail_on:
                raise RuntimeError(f"worker {i} exploded")
            actions.update_context({f"result_{i}": i * 10})
        finally:
            self.in_flight -= 1


# ---------------------------------------------------------------------------
# Builder
# ---------------------------------------------------------------------------


class TestBungeeBuilder:
    def test_batch_and_config(self):
        builder = BungeeBuilder("anchor")
        jump = (
            builder.add("single", {"x": 1})
            .batch("many", 3, lambda i: {"i": i})
            .config(concurrency=2, optimistic=True, return_to_anchor=False)
            .jump()
        )
        plan = jump.plan

        assert plan.anchor_id == "anchor"
        assert [d.target_id for d in plan.destinations] == ["single", "many", "many", "many"]
        assert [d.overrides for d in plan.destinations[1:]] == [{"i": 0}, {"i": 1}, {"i": 2}]
        assert plan.concurrency == 2
        assert plan.optimistic is True
        assert plan.return_to_anchor is False
        assert plan.fail_wizard_on_failure is True
        assert re.fullmatch(r"bungee_\d+_[0-9a-f]{9}", plan.id)

    def test_concurrency_must_be_positive(self):
        with pytest.raises(ValueError):
            BungeeBuilder("anchor").config(concurrency=0)


# ---------------------------------------------------------------------------
# Execution
# ---------------------------------------------------------------------------


class TestBungeeExecution:
    @pytest.mark.asyncio
    async def test_bounded_concurrency_and_fan_in(self, config):
        probe = ConcurrencyProbe()
        anchor_runs = 0

        def anchor(result, context, actions):
            nonlocal anchor_runs
            anchor_runs += 1
            return fan_out(5, concurrency=2)(result, context, actions)

        wizard = Wizard("demo", config=config)
        wizard.add_compute_step("anchor", anchor)
        wizard.add_compute_step("work", probe)

        result = await wizard.run()

        assert result.success is True
        assert result.stopped is True
        assert probe.peak == 2
        assert sorted(probe.started) == [0, 1, 2, 3, 4]
        assert sorted(k for k in result.context if k.startswith("result_")) == [
            f"result_{i}" for i in range(5)
        ]
        assert result.context["result_3"] == 30
        # Anchor runs once to fan out and once on re-entry
        assert anchor_runs == 2
        assert result.path == ["anchor", "anchor"]

    @pytest.mark.asyncio
    async def test_workers_see_telescoped_context_only(self, config):
        seen: list[dict] = []

        def worker(result, context, actions):
            if is_worker(context):
                seen.append(dict(context))
                actions.update_context({f"result_{context['i']}": True})

        wizard = Wizard("demo", config=config)
        wizard.add_compute_step("anchor", fan_out(2))
        wizard.add_compute_step("work", worker)

        result = await wizard.run({"topic": "tides", "i": "shared"})

        assert sorted(s["i"] for s in seen) == [0, 1]
        assert all(s["topic"] == "tides" for s in seen)
        assert all(s["_telescope"] == {"i": s["i"]} for s in seen)
        # Overrides never leak back into the shared context
        assert result.context["i"] == "shared"
        assert "_telescope" not in result.context

    @pytest.mark.asyncio
    async def test_concurrent_writes_last_write_wins(self, config):
        def worker(result, context, actions):
            if is_worker(context):
                actions.update_context({"winner": context["i"], f"result_{context['i']}": 1})

        wizard = Wizard("demo", config=config)
        wizard.add_compute_step("anchor", fan_out(4, concurrency=4))
        wizard.add_compute_step("work", worker)

        result = await wizard.run()

        assert result.context["winner"] in {0, 1, 2, 3}

    @pytest.mark.asyncio
    async def test_worker_failure_fails_the_run(self, config):
        probe = ConcurrencyProbe(fail_on={1})
        bus = EventBus()
        wizard = Wizard("demo", config=config, event_bus=bus)
        wizard.add_compute_step("anchor", fan_out(3))
        wizard.add_compute_step("work", probe)

        result = await wizard.run()

        assert result.success is False
        assert "failed" in result.error
        error_keys = [k for k in result.context if k.endswith("_work_1_error")]
        assert len(error_keys) == 1
        assert result.context[error_keys[0]] == "worker 1 exploded"
        # Surviving workers still wrote their results
        assert result.context["result_0"] == 0
        assert result.path == ["anchor"]
        failed = bus.get_history(EventType.WORKER_FAILED)
        assert len(failed) == 1
        assert failed[0].data["worker_id"].endswith("_work_1")

    @pytest.mark.asyncio
    async def test_no_new_workers_after_failure(self, config):
        probe = ConcurrencyProbe(fail_on={0})
        wizard = Wizard("demo", config=config)
        wizard.add_compute_step("anchor", fan_out(5, concurrency=1))
        wizard.add_compute_step("work", probe)

        result = await wizard.run()

        assert result.success is False
        assert probe.started == [0]

    @pytest.mark.asyncio
    async def test_tolerated_failures_continue(self, config):
        probe = ConcurrencyProbe(fail_on={1})
        anchor_runs = 0

        def anchor(result, context, actions):
            nonlocal anchor_runs
            anchor_runs += 1
            return fan_out(3, fail_wizard_on_failure=False)(result, context, actions)

        wizard = Wizard("demo", config=config)
        wizard.add_compute_step("anchor", anchor)
        wizard.add_compute_step("work", probe)

        result = await wizard.run()

        assert result.success is True
        assert anchor_runs == 2
        assert sorted(probe.started) == [0, 1, 2]
        assert "result_1" not in result.context
        assert any(k.endswith("_work_1_error") for k in result.context)

    @pytest.mark.asyncio
    async def test_on_complete_signal_replaces_reentry(self, config):
        order: list[str] = []

        def anchor(result, context, actions):
            order.append("anchor")
            return (
                actions.bungee()
                .batch("work", 2, lambda i: {"i": i})
                .on_complete(lambda anchor_actions: anchor_actions.goto("finish"))
                .jump()
            )

        def worker(result, context, actions):
            order.append("work" if is_worker(context) else "work-slot")

        wizard = Wizard("demo", config=config)
        wizard.add_compute_step("anchor", anchor)
        wizard.add_compute_step("work", worker)
        wizard.add_compute_step("finish", lambda r, c, a: order.append("finish"))

        result = await wizard.run()

        assert result.success is True
        assert order == ["anchor", "work", "work", "finish"]
        assert result.path == ["anchor", "finish"]

    @pytest.mark.asyncio
    async def test_no_return_to_anchor_advances(self, config):
        order: list[str] = []

        def anchor(result, context, actions):
            order.append("anchor")
            return (
                actions.bungee()
                .add("work", {"i": 0})
                .config(return_to_anchor=False)
                .jump()
            )

        wizard = Wizard("demo", config=config)
        wizard.add_compute_step("anchor", anchor)
        wizard.add_compute_step("done", lambda r, c, actions: actions.stop())
        wizard.add_compute_step("work", lambda r, c, a: order.append("work"))

        result = await wizard.run()

        assert order == ["anchor", "work"]
        assert result.path == ["anchor", "done"]

    @pytest.mark.asyncio
    async def test_optimistic_plan_runs_in_background(self, config):
        probe = ConcurrencyProbe()
        seen_by_middle: list[bool] = []

        def anchor(result, context, actions):
            if "result_0" in context:
                return actions.stop()
            return (
                actions.bungee()
                .batch("work", 3, lambda i: {"i": i})
                .config(optimistic=True)
                .jump()
            )

        wizard = Wizard("demo", config=config)
        wizard.add_compute_step("anchor", anchor)
        wizard.add_compute_step(
            "middle", lambda r, context, a: seen_by_middle.append("result_0" in context)
        )
        wizard.add_compute_step("work", probe)

        result = await wizard.run()

        assert result.success is True
        assert seen_by_middle == [False]
        assert all(f"result_{i}" in result.context for i in range(3))
        assert result.path == ["anchor", "middle", "work", "anchor"]
        assert not wizard.bungee_executor.has_pending()

    @pytest.mark.asyncio
    async def test_optimistic_reentry_next_does_not_rewind(self, config):
        order: list[str] = []

        def anchor(result, context, actions):
            order.append("anchor")
            if "done_0" in context:
                return actions.next()
            return actions.bungee().add("work", {"i": 0}).config(optimistic=True).jump()

        async def middle(result, context, actions):
            order.append("middle")
            await asyncio.sleep(0.05)

        def work(result, context, actions):
            if is_worker(context):
                actions.update_context({f"done_{context['i']}": True})
            else:
                order.append("work-slot")

        wizard = Wizard("demo", config=config)
        wizard.add_compute_step("anchor", anchor)
        wizard.add_compute_step("middle", middle)
        wizard.add_compute_step("work", work)

        result = await wizard.run()

        assert result.success is True
        assert order == ["anchor", "middle", "anchor", "work-slot"]
        assert order.count("middle") == 1

    @pytest.mark.asyncio
    async def test_optimistic_reentry_goto_still_jumps(self, config):
        order: list[str] = []

        def anchor(result, context, actions):
            order.append("anchor")
            if "done_0" in context:
                if not context.get("revisited"):
                    actions.update_context({"revisited": True})
                    return actions.goto("middle")
                return actions.next()
            return actions.bungee().add("work", {"i": 0}).config(optimistic=True).jump()

        async def middle(result, context, actions):
            order.append("middle")
            await asyncio.sleep(0.05)

        def work(result, context, actions):
            if is_worker(context):
                actions.update_context({f"done_{context['i']}": True})

        wizard = Wizard("demo", config=config)
        wizard.add_compute_step("anchor", anchor)
        wizard.add_compute_step("middle", middle)
        wizard.add_compute_step("work", work)

        result = await wizard.run()

        assert result.success is True
        assert order == ["anchor", "middle", "anchor", "middle"]

    @pytest.mark.asyncio
    async def test_optimistic_failure_surfaces_at_the_end(self, config):
        probe = ConcurrencyProbe(fail_on={0})
        wizard = Wizard("demo", config=config)
        wizard.add_compute_step("anchor", fan_out(2, optimistic=True))
        wizard.add_compute_step("work", probe)

        result = await wizard.run()

        assert result.success is False
        assert "failed" in result.error

    @pytest.mark.asyncio
    async def test_nested_bungee_is_a_worker_error(self, config):
        def worker(result, context, actions):
            if is_worker(context):
                actions.bungee()

        wizard = Wizard("demo", config=config)
        wizard.add_compute_step("anchor", fan_out(1))
        wizard.add_compute_step("work", worker)

        result = await wizard.run()

        assert result.success is False
        error_keys = [k for k in result.context if k.endswith("_work_0_error")]
        assert "nested bungee" in result.context[error_keys[0]]

    @pytest.mark.asyncio
    async def test_worker_flow_signals_are_ignored(self, config):
        def worker(result, context, actions):
            if is_worker(context):
                actions.update_context({f"result_{context['i']}": 1})
                return actions.goto("nowhere")

        wizard = Wizard("demo", config=config)
        wizard.add_compute_step("anchor", fan_out(2))
        wizard.add_compute_step("work", worker)

        result = await wizard.run()

        assert result.success is True
        assert result.context["result_1"] == 1

    @pytest.mark.asyncio
    async def test_unknown_destination_is_fatal(self, config):
        wizard = Wizard("demo", config=config)
        wizard.add_compute_step(
            "anchor", lambda r, c, actions: actions.bungee().add("ghost").jump()
        )

        result = await wizard.run()

        assert result.success is False
        assert result.error == "Unknown step ID: ghost"

    @pytest.mark.asyncio
    async def test_structured_workers_call_the_model(self, config):
        def reply(prompt: str) -> str:
            chapter = re.search(r'<chapter type="number">(\d+)</chapter>', prompt).group(1)
            return f'<response><summary type="string">Summary of chapter {chapter}</response>'

        llm = MockLLMProvider(default=reply, chunk_size=6)

        def anchor(result, context, actions):
            if "summary_0" in context:
                return actions.stop()
            return (
                actions.bungee()
                .batch("summarize", 3, lambda i: {"chapter": i})
                .config(concurrency=2)
                .jump()
            )

        def store(summary, context, actions):
            if is_worker(context):
                actions.update_context({f"summary_{context['chapter']}": summary.summary})

        wizard = Wizard("demo", llm=llm, config=config)
        wizard.add_compute_step("anchor", anchor)
        wizard.add_structured_step("summarize", "Summarize the chapter", Summary, store)

        result = await wizard.run()

        assert result.success is True
        assert result.context["summary_2"] == "Summary of chapter 2"
        assert len(llm.calls) == 3


class TestBungeeExecutorQueue:
    def test_reentries_are_deduplicated_in_order(self, config):
        executor = BungeeExecutor(Wizard("demo", config=config))
        executor.queue_reentry("a")
        executor.queue_reentry("b")
        executor.queue_reentry("a")
        executor.queue_reentry("b", background=True)

        assert executor.take_reentries() == [("a", False), ("b", False), ("b", True)]
        assert executor.take_reentries() == []

    def test_worker_actions_refuse_nested_plans(self, config):
        actions = WorkerActions(Wizard("demo", config=config), "w1", {})
        with pytest.raises(BungeeNotAllowedError):
            actions.bungee()
        actions.update_context({"a": 1})
        assert actions.writes == [{"a": 1}]
