from __future__ import annotations

import logging
import threading
from collections import defaultdict
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from tms.services.storage import utcnow

LOGGER = logging.getLogger("tms.events")

WILDCARD = "*"


class EventType(str, Enum):
    execution_queued = "executionQueued"
    execution_assigned = "executionAssigned"
    execution_started = "executionStarted"
    execution_completed = "executionCompleted"
    execution_failed = "executionFailed"
    execution_cancelled = "executionCancelled"
    parallel_execution_started = "parallelExecutionStarted"
    shard_updated = "shardUpdated"
    parallel_execution_completed = "parallelExecutionCompleted"
    runner_health_changed = "runnerHealthChanged"


@dataclass(frozen=True)
class DomainEvent:
    type: EventType
    subject_id: str
    payload: Dict[str, Any] = field(default_factory=dict)
    occurred_at: str = field(default_factory=utcnow)


Handler = Callable[[DomainEvent], None]


class EventBus:
    """In-process publish/subscribe channel for orchestration state changes.

    Handlers run synchronously on the publishing thread, after the state change
    they describe has been committed. A failing handler is logged and does not
    stop delivery to the remaining subscribers.
    """

    def __init__(self) -> None:
        self._handlers: Dict[str, List[Handler]] = defaultdict(list)
        self._lock = threading.Lock()

    def subscribe(self, event_type: Optional[EventType], handler: Handler) -> Callable[[], None]:
        key = event_type.value if event_type is not None else WILDCARD
        with self._lock:
            self._handlers[key].append(handler)

        def _unsubscribe() -> None:
            with self._lock:
                if handler in self._handlers[key]:
                    self._handlers[key].remove(handler)

        return _unsubscribe

    def publish(self, event: DomainEvent) -> None:
        with self._lock:
            handlers = list(self._handlers[event.type.value]) + list(self._handlers[WILDCARD])
        LOGGER.debug("Publishing %s for %s", event.type.value, event.subject_id)
        for handler in handlers:
            try:
                handler(event)
            except Exception:
                LOGGER.exception(
                    "Event handler %r failed for %s (%s)",
                    handler,
                    event.type.value,
                    event.subject_id,
                )
