"""
Pytest configuration and shared fixtures for key-routing-graph tests.
"""

from pathlib import Path

import pytest

from key_routing_graph.events import Event, EventBus
from key_routing_graph.graph import RoutingGraph
from key_routing_graph.models import NodeType
from key_routing_graph.providers import InMemoryKeyStore, RecordingIntegrationUpdater


@pytest.fixture
def events() -> EventBus:
    """Provide a fresh event bus."""
    return EventBus()


@pytest.fixture
def recorded(events: EventBus) -> list[Event]:
    """Collect every event published on the shared bus."""
    seen: list[Event] = []
    events.subscribe(None, seen.append)
    return seen


@pytest.fixture
def key_store() -> InMemoryKeyStore:
    """Key store with two keys for openrouter and one for anthropic."""
    return InMemoryKeyStore(
        {
            "openrouter": [
                {"key": "sk-or-1", "key_id": "or-1"},
                {"key": "sk-or-2", "key_id": "or-2"},
            ],
            "anthropic": [{"key": "sk-ant-1", "key_id": "ant-1"}],
        }
    )


@pytest.fixture
def updater() -> RecordingIntegrationUpdater:
    """Integration updater that records its calls."""
    return RecordingIntegrationUpdater()


@pytest.fixture
async def chain_graph(events: EventBus) -> RoutingGraph:
    """service -> key -> integration -> session chain."""
    graph = RoutingGraph(name="chain", events=events)
    await graph.add_node("openrouter", NodeType.SERVICE, {"service": "openrouter"})
    await graph.add_node("key:openrouter", NodeType.KEY, {"service": "openrouter"})
    await graph.add_node("openclaw", NodeType.INTEGRATION, {"integration": "openclaw"})
    await graph.add_node("out", NodeType.SESSION)
    await graph.connect("openrouter", "key:openrouter", label="auth")
    await graph.connect("key:openrouter", "openclaw", label="api")
    await graph.connect("openclaw", "out", label="out")
    return graph


@pytest.fixture
def storage_dir(tmp_path: Path) -> Path:
    """Provide a temporary session storage directory."""
    path = tmp_path / "sessions"
    path.mkdir(parents=True, exist_ok=True)
    return path
