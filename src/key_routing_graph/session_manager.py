"""
Session lifecycle management.

SessionManager instantiates named copies of routing topologies and drives
them through their lifecycle:

    created -> (loaded) -> starting -> active -> stopping -> stopped
                              |
                              +-> error

Starting brings services up one at a time, resolves keys, then activates
integrations. The first failure stops the sequence; nodes that were already
brought up stay up.
"""

import asyncio
import copy
import logging
import random
from datetime import datetime
from pathlib import Path
from typing import Any, Optional

from .backends import FilesystemSessionStore, InMemorySessionStore, SessionStore
from .engine import ExecutionEngine
from .events import EventBus, EventType
from .exceptions import ServiceUnavailableError, SessionNotFoundError
from .graph import RoutingGraph
from .models import (
    ActivationState,
    Connection,
    Credential,
    NodeRecord,
    NodeType,
    Session,
    SessionOptions,
    SessionState,
    utc_now,
)
from .providers import (
    DEFAULT_HEALTH_CHECK_TIMEOUT,
    HealthCheck,
    IntegrationUpdater,
    KeyStore,
    ServiceConnector,
    noop_integration_updater,
    probe_health,
)
from .templates import Template, TemplateRegistry

logger = logging.getLogger(__name__)

DEFAULT_STORAGE_PATH = Path.home() / ".key_routing_graph" / "sessions"


class SessionManager:
    """
    Creates, persists, starts, stops and deletes sessions.

    Each session is persisted as one record in the session store whenever
    ``options.persistent`` is set. The manager also keeps one lazily built
    RoutingGraph and ExecutionEngine per session for dispatching requests.

    Example:
        >>> manager = SessionManager(storage_backend="memory", key_store=store)
        >>> session = await manager.create_session("work", template_id="fallback-chain")
        >>> await manager.start_session(session.id)
    """

    def __init__(
        self,
        storage_backend: SessionStore | str | None = None,
        storage_path: Optional[Path | str] = None,
        templates: TemplateRegistry | None = None,
        events: EventBus | None = None,
        health_check: HealthCheck | None = None,
        key_store: KeyStore | None = None,
        integration_updater: IntegrationUpdater | None = None,
        service_connector: ServiceConnector | None = None,
        connect_delay: float = 0.1,
        health_check_timeout: float = DEFAULT_HEALTH_CHECK_TIMEOUT,
        rng: random.Random | None = None,
    ):
        """
        Initialize a SessionManager.

        Args:
            storage_backend: Session store. Can be:
                - A SessionStore instance
                - A string: "filesystem" or "memory"
                - None: uses FilesystemSessionStore
            storage_path: Directory for the filesystem store
                (default: ~/.key_routing_graph/sessions)
            templates: Template registry (built-in templates if None)
            events: Event bus shared with the session graphs
            health_check: Service health provider; services are not probed if None
            key_store: Credential source; key nodes are not resolved if None
            integration_updater: Side effect applying credentials to integrations
            service_connector: Establishes a service's connectivity; if None the
                manager waits ``connect_delay`` seconds instead
            connect_delay: Simulated connection time without a connector
            health_check_timeout: Seconds before a health probe counts as unhealthy
            rng: Random source for load-balancing routers

        Raises:
            ValueError: If storage_backend string is invalid or if storage_path is
                provided with a SessionStore instance
        """
        self.store = self._init_session_store(storage_backend, storage_path)
        self.templates = templates or TemplateRegistry()
        self.events = events or EventBus()
        self.health_check = health_check
        self.key_store = key_store
        self.integration_updater = integration_updater or noop_integration_updater
        self.service_connector = service_connector
        self.connect_delay = connect_delay
        self.health_check_timeout = health_check_timeout
        self.rng = rng or random.Random()

        self._sessions: dict[str, Session] = {}
        self._runtimes: dict[str, tuple[RoutingGraph, ExecutionEngine]] = {}
        # Resolved credentials are held in memory only, keyed by session then key node
        self._credentials: dict[str, dict[str, Credential]] = {}
        self._started_at: dict[str, datetime] = {}

        logger.debug(f"Created SessionManager with session store {type(self.store).__name__}")

    def _init_session_store(
        self,
        storage_backend: SessionStore | str | None,
        storage_path: Optional[Path | str],
    ) -> SessionStore:
        """
        Initialize the session store from various input formats.

        Raises:
            ValueError: If invalid store type or conflicting parameters
        """
        if isinstance(storage_backend, SessionStore):
            if storage_path is not None:
                raise ValueError(
                    "storage_path cannot be specified when storage_backend is a "
                    "SessionStore instance. Use the store's constructor instead."
                )
            return storage_backend

        if isinstance(storage_backend, str):
            backend_type = storage_backend.lower()

            valid_backends = ["filesystem", "memory"]
            if backend_type not in valid_backends:
                raise ValueError(
                    f"Invalid storage backend: '{backend_type}'. "
                    f"Valid options: {', '.join(valid_backends)}"
                )

            if backend_type == "memory":
                return InMemorySessionStore()
            return FilesystemSessionStore(base_dir=storage_path or DEFAULT_STORAGE_PATH)

        if storage_backend is None:
            return FilesystemSessionStore(base_dir=storage_path or DEFAULT_STORAGE_PATH)

        raise ValueError(
            f"storage_backend must be a SessionStore instance, string, or None. "
            f"Got: {type(storage_backend)}"
        )

    def __repr__(self) -> str:
        return f"SessionManager(sessions={len(self._sessions)}, store={type(self.store).__name__})"

    # ==================== Internal helpers ====================

    def _require(self, session_id: str) -> Session:
        session = self._sessions.get(session_id)
        if session is None:
            raise SessionNotFoundError(session_id)
        return session

    async def _save(self, session: Session) -> None:
        if session.options.persistent:
            await self.store.save(session)

    def _apply_template(self, session: Session, template: Template) -> None:
        nodes, connections = template.copy_topology()
        session.nodes = nodes
        session.connections = connections
        session.template = template.id
        session.template_config = copy.deepcopy(template.config)
        session.touch()
        self._runtimes.pop(session.id, None)

    @staticmethod
    def _snapshot(session: Session) -> dict[str, Any]:
        return {
            "nodes": [node.model_dump(mode="json", exclude={"state"}) for node in session.nodes],
            "connections": [conn.model_dump(mode="json") for conn in session.connections],
            "template": session.template,
        }

    def _sync_cursors(self, session: Session) -> None:
        """Copy key store cursors into the session, counting every move as a rotation."""
        if self.key_store is None:
            return
        services = {node.data.get("service") for node in session.nodes_of_type(NodeType.KEY)}
        for service_id in sorted(s for s in services if s):
            cursor = self.key_store.get_cursor(service_id)
            if cursor is None:
                continue
            if cursor != session.rotation_cursors.get(service_id, 0):
                session.stats.rotations += 1
            session.rotation_cursors[service_id] = cursor

    @staticmethod
    def _sync_node_data(session: Session, graph: RoutingGraph) -> None:
        # Router cursors live in node data and must survive a reload
        for record in session.nodes:
            if graph.node_exists(record.id):
                record.data = dict(graph.get_node(record.id).data)

    # ==================== Lifecycle ====================

    async def create_session(
        self,
        name: str | None = None,
        template_id: str | None = None,
        options: dict[str, Any] | SessionOptions | None = None,
    ) -> Session:
        """
        Create a new session.

        Args:
            name: Display name (generated if None)
            template_id: Template whose topology is copied into the session
            options: Options merged over the defaults
                (auto_start=False, persistent=True, monitor_health=True)

        Returns:
            The created session (already started if ``auto_start`` is set)

        Raises:
            TemplateNotFoundError: If template_id is not registered
        """
        template = self.templates.get(template_id) if template_id else None
        if isinstance(options, SessionOptions):
            session_options = options.model_copy(deep=True)
        else:
            session_options = SessionOptions.model_validate(options or {})

        session = Session(
            name=name or f"Session-{utc_now():%Y%m%d-%H%M%S}",
            options=session_options,
        )
        self._sessions[session.id] = session
        if template is not None:
            self._apply_template(session, template)

        await self._save(session)
        if template is not None:
            self.events.emit(
                EventType.TEMPLATE_APPLIED,
                {"session_id": session.id, "template_id": template.id},
            )
        self.events.emit(EventType.SESSION_CREATED, session)
        logger.info(f"Created session '{session.id}' ({session.name})")

        if session.options.auto_start:
            await self.start_session(session.id)
        return session

    async def load_session(self, session_id: str) -> Session:
        """
        Load a persisted session into the manager.

        Rotation cursors saved with the session are restored into the key store.

        Raises:
            SessionNotFoundError: If no record exists
            PersistenceError: If the record cannot be read
        """
        session = await self.store.load(session_id)
        if session is None:
            raise SessionNotFoundError(session_id)

        session.state = SessionState.LOADED
        session.touch()
        self._sessions[session_id] = session
        self._runtimes.pop(session_id, None)

        if self.key_store is not None:
            for service_id, index in session.rotation_cursors.items():
                self.key_store.restore_cursor(service_id, index)

        self.events.emit(EventType.SESSION_LOADED, session)
        logger.info(f"Loaded session '{session_id}'")
        return session

    async def start_session(self, session_id: str) -> Session:
        """
        Start a session.

        Services are brought up in topology order, then key nodes are
        resolved (when a key store is configured), then integrations are
        activated. The first error marks the failing node and the session as
        errored, persists the session and is re-raised; nodes that were
        already brought up are left as they are.

        Raises:
            SessionNotFoundError: If the session is unknown
            ServiceUnavailableError: If a service fails its health probe
        """
        session = self._require(session_id)
        session.state = SessionState.STARTING
        session.error = None
        session.touch()
        self.events.emit(EventType.SESSION_STARTING, session)
        logger.info(f"Starting session '{session_id}'")

        current: NodeRecord | None = None
        try:
            for node in session.nodes_of_type(NodeType.SERVICE):
                current = node
                await self._start_service(session, node)

            if self.key_store is not None:
                for node in session.nodes_of_type(NodeType.KEY):
                    current = node
                    await self._resolve_key(session, node)

            for node in session.nodes_of_type(NodeType.INTEGRATION):
                current = node
                await self._activate_integration(session, node)
        except (Exception, asyncio.CancelledError) as e:
            if isinstance(e, asyncio.CancelledError):
                message = "cancelled"
            else:
                message = str(e) or type(e).__name__
            if current is not None:
                current.state = ActivationState.ERROR
            session.state = SessionState.ERROR
            session.error = message
            session.stats.errors += 1
            session.touch()
            logger.error(f"Session '{session_id}' failed to start: {message}")
            await self._save(session)
            self.events.emit(EventType.SESSION_ERROR, {"session": session, "error": e})
            raise

        session.state = SessionState.ACTIVE
        session.touch()
        self._started_at[session_id] = session.updated_at
        await self._save(session)
        self.events.emit(EventType.SESSION_STARTED, session)
        logger.info(f"Session '{session_id}' is active")
        return session

    async def _start_service(self, session: Session, node: NodeRecord) -> None:
        service_id = node.data.get("service", node.id)
        node.state = ActivationState.CONNECTING
        logger.debug(f"Starting service '{service_id}' in session '{session.id}'")

        if self.service_connector is not None:
            await self.service_connector(session.id, node)
        else:
            await asyncio.sleep(self.connect_delay)

        if session.options.monitor_health and self.health_check is not None:
            healthy = await probe_health(self.health_check, service_id, self.health_check_timeout)
            if not healthy:
                raise ServiceUnavailableError(service_id, session.id)

        node.state = ActivationState.CONNECTED
        self.events.emit(
            EventType.SERVICE_CONNECTED,
            {"session_id": session.id, "node_id": node.id, "service": service_id},
        )

    async def _resolve_key(self, session: Session, node: NodeRecord) -> None:
        service_id = node.data.get("service")
        credential = None
        if service_id:
            credential = await self.key_store.resolve(service_id, node.data.get("key_id"))

        if credential is None:
            node.state = ActivationState.INACTIVE
            logger.warning(f"No key resolved for '{node.id}' in session '{session.id}'")
            return

        self._credentials.setdefault(session.id, {})[node.id] = credential
        cursor = self.key_store.get_cursor(service_id)
        if cursor is not None:
            session.rotation_cursors[service_id] = cursor
        if credential.rotated:
            session.stats.rotations += 1
        node.state = ActivationState.ACTIVE

    async def _activate_integration(self, session: Session, node: NodeRecord) -> None:
        integration_id = node.data.get("integration", node.id)
        credentials = self._credentials.get(session.id, {})
        logger.debug(f"Activating integration '{integration_id}' in session '{session.id}'")

        for key_node in session.nodes_of_type(NodeType.KEY):
            if key_node.state != ActivationState.ACTIVE:
                continue
            credential = credentials.get(key_node.id, key_node.data.get("key"))
            await self.integration_updater(integration_id, key_node.data.get("service"), credential)

        node.state = ActivationState.ACTIVE
        self.events.emit(
            EventType.INTEGRATION_ACTIVATED,
            {"session_id": session.id, "node_id": node.id, "integration": integration_id},
        )

    async def stop_session(self, session_id: str) -> Session | None:
        """
        Stop a session by deactivating its integrations.

        Service nodes keep their state.

        Returns:
            The stopped session, or None if the session is unknown
        """
        session = self._sessions.get(session_id)
        if session is None:
            return None

        session.state = SessionState.STOPPING
        self.events.emit(EventType.SESSION_STOPPING, session)

        for node in session.nodes_of_type(NodeType.INTEGRATION):
            node.state = ActivationState.INACTIVE
            self.events.emit(
                EventType.INTEGRATION_DEACTIVATED,
                {
                    "session_id": session.id,
                    "node_id": node.id,
                    "integration": node.data.get("integration", node.id),
                },
            )

        session.state = SessionState.STOPPED
        session.touch()
        self._credentials.pop(session_id, None)
        self._started_at.pop(session_id, None)
        await self._save(session)
        self.events.emit(EventType.SESSION_STOPPED, session)
        logger.info(f"Stopped session '{session_id}'")
        return session

    async def resume_session(self, session_id: str) -> Session:
        """
        Start a stopped session; sessions in any other state are returned as is.

        Raises:
            SessionNotFoundError: If the session is unknown
        """
        session = self._require(session_id)
        if session.state == SessionState.STOPPED:
            return await self.start_session(session_id)
        return session

    async def delete_session(self, session_id: str) -> None:
        """
        Delete a session from memory and from the store.

        Active sessions are stopped first. Unknown IDs are ignored.
        ``sessionDeleted`` carries the Session when it was held in memory.
        """
        session = self._sessions.get(session_id)
        if session is None and not self.store.exists(session_id):
            return

        if session is not None and session.state == SessionState.ACTIVE:
            await self.stop_session(session_id)

        self._sessions.pop(session_id, None)
        self._runtimes.pop(session_id, None)
        self._credentials.pop(session_id, None)
        self._started_at.pop(session_id, None)
        await self.store.delete(session_id)

        # A record that was never loaded is announced by its ID only
        payload = session if session is not None else {"session_id": session_id}
        self.events.emit(EventType.SESSION_DELETED, payload)
        logger.info(f"Deleted session '{session_id}'")

    async def apply_template_to_session(self, session_id: str, template_id: str) -> Session:
        """
        Replace a session's topology with a copy of a template's.

        Raises:
            TemplateNotFoundError: If the template is unknown
            SessionNotFoundError: If the session is unknown
        """
        template = self.templates.get(template_id)
        session = self._require(session_id)

        self._apply_template(session, template)
        await self._save(session)
        self.events.emit(
            EventType.TEMPLATE_APPLIED,
            {"session_id": session_id, "template_id": template_id},
        )
        return session

    # ==================== Queries ====================

    def get_session(self, session_id: str) -> Session:
        """
        Get a session held by the manager.

        Raises:
            SessionNotFoundError: If the session is unknown
        """
        return self._require(session_id)

    def get_session_status(self, session_id: str) -> dict[str, Any] | None:
        """Summary of a session, or None if the session is unknown."""
        session = self._sessions.get(session_id)
        if session is None:
            return None

        started_at = self._started_at.get(session_id)
        uptime = 0.0
        if session.state == SessionState.ACTIVE and started_at is not None:
            uptime = (utc_now() - started_at).total_seconds()

        return {
            "id": session.id,
            "name": session.name,
            "state": session.state.value,
            "template": session.template,
            "error": session.error,
            "nodes": [
                {
                    "id": node.id,
                    "type": node.type.value,
                    "state": node.state.value if node.state else None,
                    "label": node.label,
                }
                for node in session.nodes
            ],
            "connections": len(session.connections),
            "stats": session.stats.model_dump(mode="json"),
            "uptime": uptime,
        }

    def list_sessions(self) -> list[dict[str, Any]]:
        """Status of every session held by the manager."""
        return [self.get_session_status(session_id) for session_id in self._sessions]

    def list_stored_sessions(self) -> list[str]:
        """IDs of every session in the store, loaded or not."""
        return self.store.list_ids()

    def get_active_connections(self) -> list[dict[str, Any]]:
        """Connections of every active session."""
        connections = []
        for session in self._sessions.values():
            if session.state != SessionState.ACTIVE:
                continue
            for conn in session.connections:
                connections.append(
                    {
                        "session": session.name,
                        "session_id": session.id,
                        "source": conn.source,
                        "target": conn.target,
                        "type": conn.type,
                        "active": conn.active,
                    }
                )
        return connections

    # ==================== Graph exchange ====================

    def export_to_graph(self, session_id: str) -> dict[str, Any] | None:
        """Graph snapshot of a session's topology, or None if unknown."""
        session = self._sessions.get(session_id)
        if session is None:
            return None
        return self._snapshot(session)

    async def import_from_graph(
        self,
        session_id: str,
        graph: dict[str, Any] | RoutingGraph,
    ) -> Session:
        """
        Replace a session's topology with a graph or graph snapshot.

        Raises:
            SessionNotFoundError: If the session is unknown
            ValidationError: If the snapshot is malformed
        """
        session = self._require(session_id)
        blob = graph.serialize() if isinstance(graph, RoutingGraph) else graph

        session.nodes = [NodeRecord.model_validate(item) for item in blob.get("nodes", [])]
        session.connections = [
            Connection.model_validate(item) for item in blob.get("connections", [])
        ]
        if blob.get("template") is not None:
            session.template = blob["template"]
        session.touch()
        self._runtimes.pop(session_id, None)

        await self._save(session)
        self.events.emit(EventType.SESSION_UPDATED, session)
        return session

    async def _runtime(self, session: Session) -> tuple[RoutingGraph, ExecutionEngine]:
        runtime = self._runtimes.get(session.id)
        if runtime is None:
            graph = await RoutingGraph.from_snapshot(
                self._snapshot(session),
                name=session.name,
                events=self.events,
            )
            engine = ExecutionEngine(
                graph,
                health_check=self.health_check,
                key_store=self.key_store,
                integration_updater=self.integration_updater,
                rng=self.rng,
                health_check_timeout=self.health_check_timeout,
            )
            runtime = (graph, engine)
            self._runtimes[session.id] = runtime
        return runtime

    async def get_graph(self, session_id: str) -> RoutingGraph:
        """
        Routing graph built from a session's topology.

        The graph is built on first use and rebuilt after the session's
        topology is replaced.

        Raises:
            SessionNotFoundError: If the session is unknown
        """
        graph, _ = await self._runtime(self._require(session_id))
        return graph

    async def dispatch(
        self,
        session_id: str,
        node_id: str,
        data: dict[str, Any] | None = None,
        context: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        """
        Process a request through a session's graph.

        Updates the session's request, error and rotation counters, its
        rotation cursors and the node data changed while routing (such as
        round-robin cursors), then persists it.

        Raises:
            SessionNotFoundError: If the session is unknown
            NodeNotFoundError: If node_id is not in the session's graph
        """
        session = self._require(session_id)
        graph, engine = await self._runtime(session)
        request_context = {"session_id": session_id, **(context or {})}

        try:
            return await engine.process(node_id, data, request_context)
        except Exception:
            session.stats.errors += 1
            raise
        finally:
            session.stats.requests += 1
            session.stats.last_activity = utc_now()
            self._sync_cursors(session)
            self._sync_node_data(session, graph)
            session.touch()
            await self._save(session)
