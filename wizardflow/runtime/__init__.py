"""Runtime support: observability events, run logs, usage accounting."""

from wizardflow.runtime.event_bus import EventBus, EventType, WizardEvent
from wizardflow.runtime.run_logger import RunLogger
from wizardflow.runtime.usage import Usage, UsageTracker

__all__ = [
    "EventBus",
    "EventType",
    "WizardEvent",
    "RunLogger",
    "Usage",
    "UsageTracker",
]
