"""
Tests for SessionManager: session lifecycle, persistence and dispatch.
"""

import asyncio
from pathlib import Path

import pytest

from key_routing_graph.backends import InMemorySessionStore
from key_routing_graph.events import EventBus, EventType
from key_routing_graph.exceptions import (
    NodeNotFoundError,
    ServiceUnavailableError,
    SessionNotFoundError,
    TemplateNotFoundError,
)
from key_routing_graph.models import ActivationState, NodeType, SessionOptions, SessionState
from key_routing_graph.providers import InMemoryKeyStore
from key_routing_graph.session_manager import SessionManager


@pytest.fixture
def manager(storage_dir: Path, events: EventBus, key_store, updater) -> SessionManager:
    """Manager persisting to a temporary directory."""
    return SessionManager(
        storage_path=storage_dir,
        events=events,
        key_store=key_store,
        integration_updater=updater,
        connect_delay=0,
    )


def _states(session, node_type: NodeType) -> dict:
    return {node.id: node.state for node in session.nodes_of_type(node_type)}


def _three_services() -> dict:
    return {
        "nodes": [
            {"id": "s1", "type": "service"},
            {"id": "s2", "type": "service"},
            {"id": "s3", "type": "service"},
        ],
        "connections": [],
    }


class TestSessionStoreSelection:
    """Tests for choosing the session store."""

    def test_memory_string(self):
        """Test selecting the in-memory store by name."""
        manager = SessionManager(storage_backend="memory")
        assert isinstance(manager.store, InMemorySessionStore)

    def test_invalid_string(self):
        """Test that unknown store names are rejected."""
        with pytest.raises(ValueError, match="Invalid storage backend"):
            SessionManager(storage_backend="redis")

    def test_instance_with_path(self, tmp_path: Path):
        """Test that a store instance cannot be combined with a path."""
        with pytest.raises(ValueError, match="storage_path cannot be specified"):
            SessionManager(storage_backend=InMemorySessionStore(), storage_path=tmp_path)

    def test_invalid_type(self):
        """Test that other store values are rejected."""
        with pytest.raises(ValueError, match="must be a SessionStore instance"):
            SessionManager(storage_backend=42)


class TestCreateSession:
    """Tests for create_session."""

    async def test_defaults(self, manager, storage_dir: Path):
        """Test a session created without a template."""
        session = await manager.create_session()

        assert session.name.startswith("Session-")
        assert session.state == SessionState.CREATED
        assert session.options == SessionOptions()
        assert session.nodes == []
        assert (storage_dir / f"{session.id}.json").exists()

    async def test_not_persistent(self, manager, storage_dir: Path):
        """Test that non-persistent sessions never reach the store."""
        session = await manager.create_session("temp", options={"persistent": False})

        assert not (storage_dir / f"{session.id}.json").exists()
        assert manager.get_session(session.id) is session

    async def test_from_template(self, manager, recorded):
        """Test that a template's topology is copied into the session."""
        session = await manager.create_session("work", template_id="fallback-chain")
        template = manager.templates.get("fallback-chain")

        assert session.template == "fallback-chain"
        assert len(session.nodes) == len(template.nodes)
        assert session.template_config == template.config
        assert [e.type for e in recorded] == [
            EventType.TEMPLATE_APPLIED,
            EventType.SESSION_CREATED,
        ]

    async def test_template_copy_is_isolated(self, manager):
        """Test that mutating a session leaves the template untouched."""
        session = await manager.create_session("work", template_id="round-robin")
        session.nodes[0].data["service"] = "changed"
        session.template_config["mode"] = "changed"

        template = manager.templates.get("round-robin")
        assert template.nodes[0].data["service"] == "openrouter"
        assert template.config["mode"] == "round-robin"

    async def test_unknown_template(self, manager):
        """Test that an unknown template creates nothing."""
        with pytest.raises(TemplateNotFoundError):
            await manager.create_session("work", template_id="missing")
        assert manager.list_sessions() == []
        assert manager.list_stored_sessions() == []

    async def test_auto_start_camel_case(self, manager):
        """Test that camelCase option names are accepted."""
        session = await manager.create_session(
            "work", template_id="fallback-chain", options={"autoStart": True}
        )
        assert session.options.auto_start is True
        assert session.state == SessionState.ACTIVE

    async def test_extra_options_kept(self, manager):
        """Test that unrecognized options are carried along."""
        session = await manager.create_session("work", options={"region": "eu"})
        assert session.options.model_extra == {"region": "eu"}


class TestLoadSession:
    """Tests for load_session."""

    async def test_load_in_new_manager(self, manager, storage_dir: Path):
        """Test loading a session persisted by another manager."""
        created = await manager.create_session("work", template_id="all-glm5")

        other = SessionManager(storage_path=storage_dir, connect_delay=0)
        loaded = await other.load_session(created.id)

        assert loaded.state == SessionState.LOADED
        assert loaded.name == "work"
        assert [n.id for n in loaded.nodes] == [n.id for n in created.nodes]
        assert other.get_session(created.id) is loaded

    async def test_load_unknown(self, manager):
        """Test that missing records raise SessionNotFoundError."""
        with pytest.raises(SessionNotFoundError) as exc_info:
            await manager.load_session("session-missing")
        assert exc_info.value.session_id == "session-missing"


class TestStartSession:
    """Tests for start_session."""

    async def test_start_activates_topology(self, manager, recorded, updater):
        """Test the full start sequence on a template session."""
        session = await manager.create_session("work", template_id="fallback-chain")
        recorded.clear()

        await manager.start_session(session.id)

        assert session.state == SessionState.ACTIVE
        assert set(_states(session, NodeType.SERVICE).values()) == {ActivationState.CONNECTED}
        assert _states(session, NodeType.KEY) == {
            "key:anthropic": ActivationState.ACTIVE,
            "key:openrouter": ActivationState.ACTIVE,
            "key:groq": ActivationState.INACTIVE,
        }
        assert _states(session, NodeType.INTEGRATION) == {"claude-code": ActivationState.ACTIVE}
        assert sorted(call[1] for call in updater.calls) == ["anthropic", "openrouter"]
        assert [e.type for e in recorded] == [
            EventType.SESSION_STARTING,
            EventType.SERVICE_CONNECTED,
            EventType.SERVICE_CONNECTED,
            EventType.SERVICE_CONNECTED,
            EventType.INTEGRATION_ACTIVATED,
            EventType.SESSION_STARTED,
        ]

    async def test_start_unknown(self, manager):
        """Test starting a session the manager does not hold."""
        with pytest.raises(SessionNotFoundError):
            await manager.start_session("session-missing")

    async def test_partial_failure(self, storage_dir: Path, events, recorded):
        """Test that the first failing service stops the sequence."""

        async def connector(session_id, node):
            if node.id == "s2":
                raise RuntimeError("connection refused")

        manager = SessionManager(
            storage_path=storage_dir, events=events, service_connector=connector
        )
        session = await manager.create_session("work")
        await manager.import_from_graph(session.id, _three_services())

        with pytest.raises(RuntimeError, match="connection refused"):
            await manager.start_session(session.id)

        assert _states(session, NodeType.SERVICE) == {
            "s1": ActivationState.CONNECTED,
            "s2": ActivationState.ERROR,
            "s3": None,
        }
        assert session.state == SessionState.ERROR
        assert session.error == "connection refused"
        assert session.stats.errors == 1

        stored = await manager.store.load(session.id)
        assert stored.state == SessionState.ERROR
        assert stored.error == "connection refused"

        error_events = [e for e in recorded if e.type == EventType.SESSION_ERROR]
        assert len(error_events) == 1
        assert isinstance(error_events[0].payload["error"], RuntimeError)

    async def test_unhealthy_service(self, storage_dir: Path):
        """Test that a failed health probe fails the start."""

        async def health_check(service_id):
            return service_id != "groq"

        manager = SessionManager(
            storage_path=storage_dir, health_check=health_check, connect_delay=0
        )
        session = await manager.create_session("work", template_id="fallback-chain")

        with pytest.raises(ServiceUnavailableError) as exc_info:
            await manager.start_session(session.id)

        assert exc_info.value.service_id == "groq"
        assert _states(session, NodeType.SERVICE)["groq"] == ActivationState.ERROR

    async def test_monitor_health_disabled(self, storage_dir: Path):
        """Test that health probes are skipped when monitoring is off."""
        probed = []

        async def health_check(service_id):
            probed.append(service_id)
            return False

        manager = SessionManager(
            storage_path=storage_dir, health_check=health_check, connect_delay=0
        )
        session = await manager.create_session(
            "work", template_id="fallback-chain", options={"monitor_health": False}
        )

        await manager.start_session(session.id)

        assert probed == []
        assert session.state == SessionState.ACTIVE

    async def test_key_rotation(self, storage_dir: Path, updater):
        """Test that rotations are counted and cursors persisted."""

        async def key_health(service_id, entry):
            return entry.key != "sk-or-1"

        key_store = InMemoryKeyStore(
            {"openrouter": [{"key": "sk-or-1"}, {"key": "sk-or-2"}]}, key_health=key_health
        )
        manager = SessionManager(
            storage_path=storage_dir,
            key_store=key_store,
            integration_updater=updater,
            connect_delay=0,
        )
        session = await manager.create_session("work", template_id="all-glm5")

        await manager.start_session(session.id)

        assert session.stats.rotations == 1
        assert session.rotation_cursors == {"openrouter": 1}
        assert [(c[0], c[1], c[2].key) for c in updater.calls] == [
            ("openclaw", "openrouter", "sk-or-2")
        ]

        fresh_store = InMemoryKeyStore({"openrouter": [{"key": "sk-or-1"}, {"key": "sk-or-2"}]})
        other = SessionManager(storage_path=storage_dir, key_store=fresh_store)
        await other.load_session(session.id)
        assert fresh_store.get_cursor("openrouter") == 1

    async def test_cancelled(self, events):
        """Test that cancelling a start records the cancellation."""
        entered = asyncio.Event()

        async def connector(session_id, node):
            entered.set()
            await asyncio.Event().wait()

        manager = SessionManager(
            storage_backend="memory", events=events, service_connector=connector
        )
        session = await manager.create_session("work", template_id="fallback-chain")

        task = asyncio.create_task(manager.start_session(session.id))
        await entered.wait()
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert session.state == SessionState.ERROR
        assert session.error == "cancelled"
        stored = await manager.store.load(session.id)
        assert stored.error == "cancelled"


class TestStopAndResume:
    """Tests for stop_session and resume_session."""

    async def test_stop_leaves_services_connected(self, manager, recorded):
        """Test that stopping only deactivates integrations."""
        session = await manager.create_session("work", template_id="fallback-chain")
        await manager.start_session(session.id)
        recorded.clear()

        stopped = await manager.stop_session(session.id)

        assert stopped is session
        assert session.state == SessionState.STOPPED
        assert set(_states(session, NodeType.SERVICE).values()) == {ActivationState.CONNECTED}
        assert _states(session, NodeType.INTEGRATION) == {"claude-code": ActivationState.INACTIVE}
        assert [e.type for e in recorded] == [
            EventType.SESSION_STOPPING,
            EventType.INTEGRATION_DEACTIVATED,
            EventType.SESSION_STOPPED,
        ]

    async def test_stop_unknown(self, manager):
        """Test that stopping an unknown session returns None."""
        assert await manager.stop_session("session-missing") is None

    async def test_resume_stopped(self, manager):
        """Test that a stopped session is started again."""
        session = await manager.create_session("work", template_id="fallback-chain")
        await manager.start_session(session.id)
        await manager.stop_session(session.id)

        await manager.resume_session(session.id)

        assert session.state == SessionState.ACTIVE
        assert _states(session, NodeType.INTEGRATION) == {"claude-code": ActivationState.ACTIVE}

    async def test_resume_not_stopped(self, manager, recorded):
        """Test that resuming a session that is not stopped does nothing."""
        session = await manager.create_session("work")
        recorded.clear()

        result = await manager.resume_session(session.id)

        assert result is session
        assert session.state == SessionState.CREATED
        assert recorded == []

    async def test_resume_unknown(self, manager):
        """Test resuming a session the manager does not hold."""
        with pytest.raises(SessionNotFoundError):
            await manager.resume_session("session-missing")


class TestDeleteSession:
    """Tests for delete_session."""

    async def test_delete_active(self, manager, storage_dir: Path, recorded):
        """Test that an active session is stopped before deletion."""
        session = await manager.create_session("work", template_id="fallback-chain")
        await manager.start_session(session.id)
        recorded.clear()

        await manager.delete_session(session.id)

        types = [e.type for e in recorded]
        assert EventType.SESSION_STOPPED in types
        assert types[-1] == EventType.SESSION_DELETED
        assert recorded[-1].payload is session
        assert not (storage_dir / f"{session.id}.json").exists()
        with pytest.raises(SessionNotFoundError):
            manager.get_session(session.id)

    async def test_delete_unknown(self, manager, recorded):
        """Test that deleting an unknown session is a no-op."""
        await manager.delete_session("session-missing")
        assert recorded == []

    async def test_delete_stored_only(self, manager, storage_dir: Path):
        """Test deleting a record that was never loaded."""
        session = await manager.create_session("work")
        other = SessionManager(storage_path=storage_dir)
        deleted = []
        other.events.subscribe(EventType.SESSION_DELETED, deleted.append)

        await other.delete_session(session.id)

        assert not (storage_dir / f"{session.id}.json").exists()
        assert deleted[0].payload == {"session_id": session.id}


class TestApplyTemplate:
    """Tests for apply_template_to_session."""

    async def test_apply(self, manager):
        """Test replacing a session's topology."""
        session = await manager.create_session("work", template_id="fallback-chain")
        await manager.apply_template_to_session(session.id, "round-robin")

        assert session.template == "round-robin"
        assert {n.id for n in session.nodes} == {
            n.id for n in manager.templates.get("round-robin").nodes
        }
        graph = await manager.get_graph(session.id)
        assert graph.node_exists("rr-router")

    async def test_unknown_template(self, manager):
        """Test applying an unregistered template."""
        session = await manager.create_session("work")
        with pytest.raises(TemplateNotFoundError):
            await manager.apply_template_to_session(session.id, "missing")

    async def test_unknown_session(self, manager):
        """Test applying a template to an unknown session."""
        with pytest.raises(SessionNotFoundError):
            await manager.apply_template_to_session("session-missing", "round-robin")


class TestQueries:
    """Tests for status and listing queries."""

    async def test_status(self, manager):
        """Test the status summary of an active session."""
        session = await manager.create_session("work", template_id="fallback-chain")
        await manager.start_session(session.id)

        status = manager.get_session_status(session.id)

        assert status["state"] == "active"
        assert status["template"] == "fallback-chain"
        assert status["connections"] == len(session.connections)
        assert status["uptime"] >= 0
        assert status["error"] is None
        claude_code = next(n for n in status["nodes"] if n["id"] == "claude-code")
        assert claude_code == {
            "id": "claude-code",
            "type": "integration",
            "state": "active",
            "label": None,
        }

    async def test_status_unknown(self, manager):
        """Test that unknown sessions have no status."""
        assert manager.get_session_status("session-missing") is None

    async def test_list_sessions(self, manager):
        """Test listing held and stored sessions."""
        first = await manager.create_session("first")
        second = await manager.create_session("second")

        assert [s["name"] for s in manager.list_sessions()] == ["first", "second"]
        assert manager.list_stored_sessions() == sorted([first.id, second.id])

    async def test_active_connections(self, manager):
        """Test that only active sessions contribute connections."""
        active = await manager.create_session("active", template_id="fallback-chain")
        await manager.create_session("idle", template_id="round-robin")
        await manager.start_session(active.id)

        connections = manager.get_active_connections()

        assert len(connections) == len(active.connections)
        assert {c["session_id"] for c in connections} == {active.id}
        assert {
            "session": "active",
            "session_id": active.id,
            "source": "anthropic",
            "target": "key:anthropic",
            "type": "data",
            "active": True,
        } in connections


class TestGraphExchange:
    """Tests for exporting and importing session graphs."""

    async def test_export(self, manager):
        """Test exporting a session's topology."""
        session = await manager.create_session("work", template_id="fallback-chain")
        blob = manager.export_to_graph(session.id)

        assert blob["template"] == "fallback-chain"
        assert len(blob["nodes"]) == len(session.nodes)
        assert "state" not in blob["nodes"][0]
        assert manager.export_to_graph("session-missing") is None

    async def test_import_routing_graph(self, manager, recorded):
        """Test replacing a session's topology with an edited graph."""
        session = await manager.create_session("work", template_id="fallback-chain")
        graph = await manager.get_graph(session.id)
        await graph.add_node("openai", NodeType.SERVICE, {"service": "openai"})
        await graph.connect("openai", "key:openrouter")
        recorded.clear()

        await manager.import_from_graph(session.id, graph)

        assert "openai" in {n.id for n in session.nodes}
        assert ("openai", "key:openrouter") in {(c.source, c.target) for c in session.connections}
        assert recorded[-1].type == EventType.SESSION_UPDATED
        rebuilt = await manager.get_graph(session.id)
        assert rebuilt is not graph
        assert rebuilt.node_exists("openai")

    async def test_import_unknown(self, manager):
        """Test importing into an unknown session."""
        with pytest.raises(SessionNotFoundError):
            await manager.import_from_graph("session-missing", _three_services())


class TestDispatch:
    """Tests for routing requests through a session."""

    async def test_dispatch(self, manager, updater):
        """Test a request routed through the fallback chain."""
        session = await manager.create_session("work", template_id="fallback-chain")

        result = await manager.dispatch(session.id, "anthropic", {"prompt": "hi"})

        assert result["service"] == "anthropic"
        assert [(c[0], c[1]) for c in updater.calls] == [("claude-code", "anthropic")]
        assert session.stats.requests == 1
        assert session.stats.errors == 0
        assert session.stats.last_activity is not None
        graph = await manager.get_graph(session.id)
        assert graph.session_entries["Fallback-Session"].data["prompt"] == "hi"

        stored = await manager.store.load(session.id)
        assert stored.stats.requests == 1

    async def test_dispatch_unknown_node(self, manager):
        """Test that a failed request is counted as an error."""
        session = await manager.create_session("work", template_id="fallback-chain")

        with pytest.raises(NodeNotFoundError):
            await manager.dispatch(session.id, "missing")

        assert session.stats.requests == 1
        assert session.stats.errors == 1

    async def test_dispatch_unknown_session(self, manager):
        """Test dispatching to an unknown session."""
        with pytest.raises(SessionNotFoundError):
            await manager.dispatch("session-missing", "anthropic")

    async def test_rotation_during_dispatch_is_counted(self, storage_dir: Path):
        """Test that a key rotated while routing moves the cursor and the counter together."""
        unhealthy: set[str] = set()

        async def key_health(service_id, entry):
            return entry.key not in unhealthy

        key_store = InMemoryKeyStore(
            {"openrouter": [{"key": "sk-or-1"}, {"key": "sk-or-2"}]}, key_health=key_health
        )
        manager = SessionManager(storage_path=storage_dir, key_store=key_store, connect_delay=0)
        session = await manager.create_session("work", template_id="all-glm5")

        await manager.dispatch(session.id, "openrouter", {})
        assert session.stats.rotations == 0

        unhealthy.add("sk-or-1")
        await manager.dispatch(session.id, "openrouter", {})

        assert session.rotation_cursors == {"openrouter": 1}
        assert session.stats.rotations == 1
        stored = await manager.store.load(session.id)
        assert stored.rotation_cursors == {"openrouter": 1}
        assert stored.stats.rotations == 1

    async def test_round_robin_cursor_survives_reload(self, storage_dir: Path):
        """Test that a reloaded session continues the round-robin rotation."""
        manager = SessionManager(storage_path=storage_dir)
        session = await manager.create_session("work")
        await manager.import_from_graph(
            session.id,
            {
                "nodes": [
                    {"id": "rr", "type": "router", "data": {"mode": "round-robin"}},
                    {"id": "a", "type": "session"},
                    {"id": "b", "type": "session"},
                ],
                "connections": [
                    {"id": "rr->a", "source": "rr", "target": "a"},
                    {"id": "rr->b", "source": "rr", "target": "b"},
                ],
            },
        )

        first = await manager.dispatch(session.id, "rr", {})

        other = SessionManager(storage_path=storage_dir)
        await other.load_session(session.id)
        second = await other.dispatch(session.id, "rr", {})

        assert (first["target"], second["target"]) == ("a", "b")
        assert other.get_session(session.id).nodes[0].data["rr_index"] == 2
