"""
Event Bus - Pub/sub channel for wizard lifecycle observability.

The wizard publishes step lifecycle events, streaming partials and context
snapshots here. Subscribers (a UI, a metrics exporter, a test) receive them
asynchronously. Delivery is best-effort: handler failures are logged and
never propagate back into the run.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum
from typing import Any

logger = logging.getLogger(__name__)


class EventType(StrEnum):
    """Types of events the wizard publishes."""

    # Run lifecycle
    WIZARD_STARTED = "wizard_started"
    WIZARD_COMPLETED = "wizard_completed"
    WIZARD_FAILED = "wizard_failed"

    # Step lifecycle
    STEP_STARTED = "step_started"
    STEP_STREAMING = "step_streaming"
    STEP_COMPLETED = "step_completed"
    STEP_RETRY = "step_retry"
    STEP_FAILED = "step_failed"

    # Shared context
    CONTEXT_UPDATED = "context_updated"

    # Bungee fan-out
    BUNGEE_STARTED = "bungee_started"
    BUNGEE_COMPLETED = "bungee_completed"
    WORKER_FAILED = "worker_failed"

    # Pause / step mode
    EXECUTION_PAUSED = "execution_paused"
    EXECUTION_RESUMED = "execution_resumed"

    # Token accounting
    USAGE_UPDATED = "usage_updated"


@dataclass
class WizardEvent:
    """An event published by a wizard run."""

    type: EventType
    wizard_id: str
    step_id: str | None = None
    run_id: str | None = None
    data: dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=datetime.now)

    def to_dict(self) -> dict:
        """Convert to dictionary for serialization."""
        return {
            "type": self.type.value,
            "wizard_id": self.wizard_id,
            "step_id": self.step_id,
            "run_id": self.run_id,
            "data": self.data,
            "timestamp": self.timestamp.isoformat(),
        }


EventHandler = Callable[[WizardEvent], Awaitable[None]]


@dataclass
class Subscription:
    """A subscription to events."""

    id: str
    event_types: set[EventType]
    handler: EventHandler
    filter_step: str | None = None  # Only receive events from this step


class EventBus:
    """
    Async pub/sub bus.

    Example:
        bus = EventBus()

        async def on_step_done(event: WizardEvent):
            print(f"{event.step_id} finished with {event.data['result']}")

        bus.subscribe([EventType.STEP_COMPLETED], on_step_done)
        wizard = Wizard("demo", llm=llm, event_bus=bus)
    """

    def __init__(
        self,
        max_history: int = 1000,
        max_concurrent_handlers: int = 10,
    ):
        """
        Args:
            max_history: Maximum events to keep in history
            max_concurrent_handlers: Maximum concurrent handler executions
        """
        self._subscriptions: dict[str, Subscription] = {}
        self._event_history: list[WizardEvent] = []
        self._max_history = max_history
        self._semaphore = asyncio.Semaphore(max_concurrent_handlers)
        self._subscription_counter = 0

    def subscribe(
        self,
        event_types: list[EventType],
        handler: EventHandler,
        filter_step: str | None = None,
    ) -> str:
        """
        Subscribe to events.

        Returns:
            Subscription ID (use to unsubscribe)
        """
        self._subscription_counter += 1
        sub_id = f"sub_{self._subscription_counter}"
        self._subscriptions[sub_id] = Subscription(
            id=sub_id,
            event_types=set(event_types),
            handler=handler,
            filter_step=filter_step,
        )
        logger.debug(f"Subscription {sub_id} registered for {event_types}")
        return sub_id

    def unsubscribe(self, subscription_id: str) -> bool:
        """Remove a subscription. Returns True if it existed."""
        if subscription_id in self._subscriptions:
            del self._subscriptions[subscription_id]
            logger.debug(f"Subscription {subscription_id} removed")
            return True
        return False

    async def publish(self, event: WizardEvent) -> None:
        """Publish an event to all matching subscribers."""
        self._event_history.append(event)
        if len(self._event_history) > self._max_history:
            self._event_history = self._event_history[-self._max_history :]

        handlers = [s.handler for s in self._subscriptions.values() if self._matches(s, event)]
        if handlers:
            await self._execute_handlers(event, handlers)

    def _matches(self, subscription: Subscription, event: WizardEvent) -> bool:
        if event.type not in subscription.event_types:
            return False
        if subscription.filter_step and subscription.filter_step != event.step_id:
            return False
        return True

    async def _execute_handlers(self, event: WizardEvent, handlers: list[EventHandler]) -> None:
        """Execute handlers concurrently with rate limiting."""

        async def run_handler(handler: EventHandler) -> None:
            async with self._semaphore:
                try:
                    await handler(event)
                except Exception as e:
                    logger.error(f"Handler error for {event.type}: {e}")

        await asyncio.gather(*[run_handler(h) for h in handlers], return_exceptions=True)

    # === CONVENIENCE PUBLISHERS ===

    async def emit(
        self,
        event_type: EventType,
        wizard_id: str,
        step_id: str | None = None,
        run_id: str | None = None,
        **data: Any,
    ) -> None:
        """Build and publish a WizardEvent in one call."""
        await self.publish(
            WizardEvent(
                type=event_type,
                wizard_id=wizard_id,
                step_id=step_id,
                run_id=run_id,
                data=data,
            )
        )

    async def emit_step_started(
        self, wizard_id: str, step_id: str, instruction: str, run_id: str | None = None
    ) -> None:
        await self.emit(
            EventType.STEP_STARTED, wizard_id, step_id, run_id, instruction=instruction
        )

    async def emit_step_streaming(
        self, wizard_id: str, step_id: str, partial: dict[str, Any], run_id: str | None = None
    ) -> None:
        await self.emit(EventType.STEP_STREAMING, wizard_id, step_id, run_id, partial=partial)

    async def emit_step_completed(
        self,
        wizard_id: str,
        step_id: str,
        result: Any,
        duration_ms: int,
        run_id: str | None = None,
    ) -> None:
        await self.emit(
            EventType.STEP_COMPLETED,
            wizard_id,
            step_id,
            run_id,
            result=result,
            duration_ms=duration_ms,
        )

    async def emit_step_retry(
        self,
        wizard_id: str,
        step_id: str,
        attempt: int,
        error: str,
        run_id: str | None = None,
    ) -> None:
        await self.emit(
            EventType.STEP_RETRY, wizard_id, step_id, run_id, attempt=attempt, error=error
        )

    async def emit_step_failed(
        self, wizard_id: str, step_id: str, error: str, run_id: str | None = None
    ) -> None:
        await self.emit(EventType.STEP_FAILED, wizard_id, step_id, run_id, error=error)

    async def emit_context_updated(
        self, wizard_id: str, context: dict[str, Any], run_id: str | None = None
    ) -> None:
        await self.emit(EventType.CONTEXT_UPDATED, wizard_id, None, run_id, context=context)

    # === QUERY METHODS ===

    def get_history(
        self,
        event_type: EventType | None = None,
        step_id: str | None = None,
        limit: int = 100,
    ) -> list[WizardEvent]:
        """Return recent events, most recent first, optionally filtered."""
        events = self._event_history[::-1]
        if event_type:
            events = [e for e in events if e.type == event_type]
        if step_id:
            events = [e for e in events if e.step_id == step_id]
        return events[:limit]

    def get_stats(self) -> dict:
        """Get event bus statistics."""
        type_counts: dict[str, int] = {}
        for event in self._event_history:
            type_counts[event.type.value] = type_counts.get(event.type.value, 0) + 1
        return {
            "total_events": len(self._event_history),
            "subscriptions": len(self._subscriptions),
            "events_by_type": type_counts,
        }

    async def wait_for(
        self,
        event_type: EventType,
        step_id: str | None = None,
        timeout: float | None = None,
    ) -> WizardEvent | None:
        """
        Wait for the next event of a given type.

        Returns:
            The event, or None if the timeout elapsed first
        """
        result: WizardEvent | None = None
        event_received = asyncio.Event()

        async def handler(event: WizardEvent) -> None:
            nonlocal result
            result = event
            event_received.set()

        sub_id = self.subscribe([event_type], handler, filter_step=step_id)
        try:
            await asyncio.wait_for(event_received.wait(), timeout=timeout)
            return result
        except TimeoutError:
            return None
        finally:
            self.unsubscribe(sub_id)
