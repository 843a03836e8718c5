from __future__ import annotations

import urllib.error
from typing import Any, Callable, Dict, List, Optional, Tuple

import pytest

from tms.config import Settings
from tms.services.events import DomainEvent, EventBus, EventType
from tms.services.orchestrator import OrchestrationContext
from tms.services.storage import LocalDynamoStorage, OrchestrationRepository


class EventRecorder:
    """Collects every published event for later assertions."""

    def __init__(self, bus: EventBus) -> None:
        self.events: List[DomainEvent] = []
        bus.subscribe(None, self.events.append)

    def of_type(self, event_type: EventType) -> List[DomainEvent]:
        return [event for event in self.events if event.type is event_type]

    def subjects(self, event_type: EventType) -> List[str]:
        return [event.subject_id for event in self.of_type(event_type)]


class StubProbe:
    """Health probe answering from a per-URL script instead of the network."""

    def __init__(self) -> None:
        self.failing: set = set()
        self.errors: Dict[str, Exception] = {}
        self.calls: List[str] = []

    def __call__(self, url: str, timeout: float) -> float:
        self.calls.append(url)
        if url in self.errors:
            raise self.errors[url]
        if url in self.failing:
            raise urllib.error.URLError("connection refused")
        return 12.5


class StubSender:
    def __init__(self) -> None:
        self.calls: List[Tuple[str, Dict[str, Any], Dict[str, str]]] = []
        self.error: Optional[Exception] = None

    def __call__(self, url: str, payload: Dict[str, Any], headers: Dict[str, str], timeout: float) -> None:
        if self.error is not None:
            raise self.error
        self.calls.append((url, payload, headers))


@pytest.fixture
def repo(tmp_path) -> OrchestrationRepository:
    return OrchestrationRepository(LocalDynamoStorage(tmp_path / "db.json", retry_backoff=0))


@pytest.fixture
def probe() -> StubProbe:
    return StubProbe()


@pytest.fixture
def sender() -> StubSender:
    return StubSender()


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(state_path=tmp_path / "db.json", auto_start=False)


@pytest.fixture
def context(repo, settings, probe, sender) -> OrchestrationContext:
    return OrchestrationContext(repo, settings, probe=probe, sender=sender, auto_start=False)


@pytest.fixture
def recorder(context) -> EventRecorder:
    return EventRecorder(context.events)


@pytest.fixture
def register_runner(context) -> Callable[..., str]:
    """Factory registering an active runner; keyword arguments override the defaults."""
    counter = {"n": 0}

    def _register(**overrides: Any) -> str:
        counter["n"] += 1
        spec: Dict[str, Any] = {
            "name": f"runner-{counter['n']}",
            "type": "docker",
            "max_concurrent_jobs": 2,
        }
        spec.update(overrides)
        return context.registry.register(spec)

    return _register


@pytest.fixture
def submit(context) -> Callable[..., str]:
    def _submit(**overrides: Any) -> str:
        request: Dict[str, Any] = {"test_suite": "smoke", "environment": "staging"}
        request.update(overrides)
        return context.executions.enqueue(request)

    return _submit
