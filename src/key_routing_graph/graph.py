"""
Routing graph registry.

The RoutingGraph class owns the nodes and connections of one topology. It
provides the mutation primitives, path queries, topology analysis and the
serialized snapshot form shared with editors and sessions.
"""

import asyncio
import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

import aiofiles
import networkx as nx
from pydantic import ValidationError

from .checkpoint import Checkpoint
from .events import EventBus, EventType
from .exceptions import (
    ConnectionNotFoundError,
    DuplicateNodeError,
    NodeNotFoundError,
    PersistenceError,
    TopologyViolationError,
)
from .models import Connection, Node, NodeRecord, NodeState, NodeType, SessionEntry
from .topology import (
    GraphTopology,
    detect_topology,
    find_cycles,
    get_entry_nodes,
    get_isolated_nodes,
    get_sink_nodes,
    has_cycles,
    would_create_cycle,
)

logger = logging.getLogger(__name__)


class RoutingGraph:
    """
    Registry of typed nodes and directed connections.

    This class handles:
    - Graph construction (adding/removing nodes and connections)
    - Path queries (shortest path, simple path enumeration)
    - Snapshot serialization, JSON files and msgpack checkpoints
    - Topology analysis

    Mutations are serialized through an asyncio lock. Node and connection
    changes are published on the graph's EventBus.
    """

    def __init__(
        self,
        name: str = "graph",
        events: EventBus | None = None,
        reject_cycles: bool = False,
        checkpoint_dir: Optional[Path | str] = None,
    ):
        """
        Initialize a RoutingGraph.

        Args:
            name: Name of the graph
            events: Event bus to publish on (a private bus is created if None)
            reject_cycles: If True, connections that would close a cycle raise
                TopologyViolationError
            checkpoint_dir: Directory for checkpoint files (default: ./checkpoints/{name})
        """
        self.name = name
        self.events = events or EventBus()
        self.reject_cycles = reject_cycles
        self.template: str | None = None

        if checkpoint_dir is None:
            self.checkpoint_dir = Path(f"./checkpoints/{name}")
        else:
            self.checkpoint_dir = Path(checkpoint_dir)

        # Internal data structures
        self._nodes: dict[str, Node] = {}
        self._connections: dict[str, Connection] = {}
        self._session_entries: dict[str, SessionEntry] = {}

        # NetworkX mirror for topology operations
        self._nx_graph = nx.DiGraph()

        self._modification_lock = asyncio.Lock()

        logger.debug(f"Created RoutingGraph '{name}'")

    def __repr__(self) -> str:
        """Return string representation of the graph."""
        return (
            f"RoutingGraph(name='{self.name}', "
            f"nodes={len(self._nodes)}, "
            f"connections={len(self._connections)})"
        )

    # ==================== Properties ====================

    @property
    def node_count(self) -> int:
        """Get the total number of nodes in the graph."""
        return len(self._nodes)

    @property
    def connection_count(self) -> int:
        """Get the total number of connections in the graph."""
        return len(self._connections)

    @property
    def session_entries(self) -> dict[str, SessionEntry]:
        """Entries recorded by session nodes, keyed by node ID."""
        return self._session_entries

    # ==================== Node Operations ====================

    async def add_node(
        self,
        node_id: str,
        node_type: NodeType | str,
        data: dict[str, Any] | None = None,
        label: str | None = None,
        x: float = 0,
        y: float = 0,
    ) -> str:
        """
        Add a node to the graph.

        Args:
            node_id: Unique identifier for the node
            node_type: One of the NodeType values
            data: Type-specific parameters (service, integration, mode, ...)
            label: Display label
            x: Horizontal position
            y: Vertical position

        Returns:
            The node ID

        Raises:
            DuplicateNodeError: If a node with this ID already exists
            ValueError: If validation fails
        """
        async with self._modification_lock:
            try:
                node = Node(
                    id=node_id,
                    type=node_type,
                    label=label,
                    x=x,
                    y=y,
                    data=dict(data or {}),
                )
            except ValidationError as e:
                raise ValueError(f"Node validation failed: {e}") from e
            self._add_node_unlocked(node)
            return node_id

    def _add_node_unlocked(self, node: Node) -> None:
        if node.id in self._nodes:
            raise DuplicateNodeError(f"Node with ID '{node.id}' already exists")

        self._nodes[node.id] = node
        self._nx_graph.add_node(node.id)

        logger.debug(f"Added {node.type.value} node '{node.id}' to graph '{self.name}'")
        self.events.emit(EventType.NODE_ADDED, node)

    async def remove_node(self, node_id: str) -> None:
        """
        Remove a node and every connection incident to it.

        Does nothing if the node does not exist.

        Args:
            node_id: ID of the node to remove
        """
        async with self._modification_lock:
            node = self._nodes.get(node_id)
            if node is None:
                return

            incident = [
                conn.id
                for conn in list(self._connections.values())
                if conn.source == node_id or conn.target == node_id
            ]
            for connection_id in incident:
                self._remove_connection_unlocked(connection_id)

            del self._nodes[node_id]
            self._session_entries.pop(node_id, None)
            if self._nx_graph.has_node(node_id):
                self._nx_graph.remove_node(node_id)

            logger.debug(
                f"Removed node '{node_id}' from graph '{self.name}' "
                f"(removed {len(incident)} connections)"
            )
            self.events.emit(EventType.NODE_REMOVED, node_id)

    def get_node(self, node_id: str) -> Node:
        """
        Get a node by ID.

        Raises:
            NodeNotFoundError: If node doesn't exist
        """
        if node_id not in self._nodes:
            raise NodeNotFoundError(node_id)
        return self._nodes[node_id]

    def get_nodes(self) -> list[Node]:
        """Get all nodes in insertion order."""
        return list(self._nodes.values())

    def node_exists(self, node_id: str) -> bool:
        """Check if a node exists."""
        return node_id in self._nodes

    def reset_states(self) -> None:
        """Put every node back into the idle state."""
        for node in self._nodes.values():
            node.mark(NodeState.IDLE)

    # ==================== Connection Operations ====================

    async def connect(
        self,
        source_id: str,
        target_id: str,
        type: str = "data",
        priority: int = 0,
        label: str = "",
        metadata: dict[str, Any] | None = None,
        active: bool = True,
    ) -> str | None:
        """
        Connect two nodes.

        Connecting a pair that is already connected replaces the previous
        connection. If either endpoint is missing nothing happens and None is
        returned; callers are expected to validate endpoints beforehand.

        Args:
            source_id: Source node ID
            target_id: Target node ID
            type: Connection type label (e.g. "data", "control")
            priority: Failover priority, higher first
            label: Display label
            metadata: Free-form metadata
            active: Whether data may be routed over the connection

        Returns:
            The connection ID, or None if an endpoint is missing

        Raises:
            TopologyViolationError: If reject_cycles is set and the connection
                would close a cycle
        """
        async with self._modification_lock:
            if source_id not in self._nodes or target_id not in self._nodes:
                missing = source_id if source_id not in self._nodes else target_id
                logger.warning(
                    f"Ignoring connection '{source_id}' -> '{target_id}': "
                    f"node '{missing}' not found in graph '{self.name}'"
                )
                return None

            connection = Connection(
                id=Connection.generate_connection_id(source_id, target_id),
                source=source_id,
                target=target_id,
                type=type,
                priority=priority,
                label=label,
                metadata=dict(metadata or {}),
                active=active,
            )
            self._link_unlocked(connection)
            return connection.id

    def _link_unlocked(self, connection: Connection) -> None:
        source_id, target_id = connection.source, connection.target
        is_new_pair = connection.id not in self._connections

        if (
            self.reject_cycles
            and is_new_pair
            and would_create_cycle(self._nx_graph, source_id, target_id)
        ):
            raise TopologyViolationError(
                f"Connecting '{source_id}' -> '{target_id}' would create a cycle"
            )

        self._connections[connection.id] = connection
        self._nodes[source_id].outputs[target_id] = connection
        self._nodes[target_id].inputs[source_id] = connection
        self._nx_graph.add_edge(source_id, target_id)

        logger.debug(
            f"{'Added' if is_new_pair else 'Replaced'} connection '{connection.id}' "
            f"(priority={connection.priority}) in graph '{self.name}'"
        )
        self.events.emit(EventType.CONNECTION_CREATED, connection)

    async def remove_connection(self, connection_id: str) -> None:
        """
        Remove a connection from both endpoints and the registry.

        Does nothing if the connection does not exist.
        """
        async with self._modification_lock:
            self._remove_connection_unlocked(connection_id)

    def _remove_connection_unlocked(self, connection_id: str) -> None:
        connection = self._connections.pop(connection_id, None)
        if connection is None:
            return

        source = self._nodes.get(connection.source)
        target = self._nodes.get(connection.target)
        if source is not None:
            source.outputs.pop(connection.target, None)
        if target is not None:
            target.inputs.pop(connection.source, None)
        if self._nx_graph.has_edge(connection.source, connection.target):
            self._nx_graph.remove_edge(connection.source, connection.target)

        logger.debug(f"Removed connection '{connection_id}' from graph '{self.name}'")
        self.events.emit(EventType.CONNECTION_REMOVED, connection_id)

    def get_connection(self, connection_id: str) -> Connection:
        """
        Get a connection by ID.

        Raises:
            ConnectionNotFoundError: If connection doesn't exist
        """
        if connection_id not in self._connections:
            raise ConnectionNotFoundError(connection_id)
        return self._connections[connection_id]

    def get_connections(self) -> list[Connection]:
        """Get all connections in insertion order."""
        return list(self._connections.values())

    def find_connection(self, source_id: str, target_id: str) -> Connection | None:
        """Get the connection for an ordered pair, if any."""
        return self._connections.get(Connection.generate_connection_id(source_id, target_id))

    def set_connection_active(self, connection_id: str, active: bool) -> None:
        """
        Enable or disable routing over a connection.

        Raises:
            ConnectionNotFoundError: If connection doesn't exist
        """
        self.get_connection(connection_id).active = active
        logger.debug(f"Connection '{connection_id}' active={active}")

    # ==================== Path Queries ====================

    def find_path(self, source_id: str, target_id: str) -> list[str] | None:
        """
        Find a shortest path by breadth-first search over outputs.

        Outputs are explored in insertion order, so among equally short paths
        the first one discovered is returned.

        Args:
            source_id: Start node ID
            target_id: Destination node ID

        Returns:
            List of node IDs from source to target, or None if unreachable
        """
        visited: set[str] = set()
        queue: list[list[str]] = [[source_id]]

        while queue:
            path = queue.pop(0)
            node_id = path[-1]

            if node_id == target_id:
                return path

            if node_id in visited:
                continue
            visited.add(node_id)

            node = self._nodes.get(node_id)
            if node is None:
                continue
            for output_id in node.outputs:
                queue.append(path + [output_id])

        return None

    def get_all_paths(self, source_id: str, max_depth: int | None = None) -> list[list[str]]:
        """
        Enumerate every simple path that starts at a node.

        Each route to a node yields one path, so a node reachable along two
        different routes appears on two paths. A node never appears twice on
        the same path, which bounds the enumeration on cyclic graphs.

        Args:
            source_id: Start node ID
            max_depth: Optional maximum number of hops per path

        Returns:
            Paths in depth-first order, starting with ``[source_id]``; empty
            if the source does not exist
        """
        paths: list[list[str]] = []
        if source_id not in self._nodes:
            return paths

        def walk(node_id: str, path: list[str]) -> None:
            paths.append(path)
            if max_depth is not None and len(path) - 1 >= max_depth:
                return
            for output_id in self._nodes[node_id].outputs:
                if output_id in path or output_id not in self._nodes:
                    continue
                walk(output_id, path + [output_id])

        walk(source_id, [source_id])
        return paths

    # ==================== Topology ====================

    def get_topology(self) -> GraphTopology:
        """Detect the current graph topology type."""
        return detect_topology(self._nx_graph)

    def has_cycles(self) -> bool:
        """Check whether any cycle exists in the graph."""
        return has_cycles(self._nx_graph)

    def find_cycles(self) -> list[list[str]]:
        """List every elementary cycle of the graph."""
        return find_cycles(self._nx_graph)

    def get_entry_nodes(self) -> list[str]:
        """IDs of nodes without inputs, where requests enter the graph."""
        return get_entry_nodes(self._nx_graph)

    def get_sink_nodes(self) -> list[str]:
        """IDs of nodes without outputs."""
        return get_sink_nodes(self._nx_graph)

    def get_isolated_nodes(self) -> list[str]:
        return get_isolated_nodes(self._nx_graph)

    # ==================== State & Serialization ====================

    def get_graph_state(self) -> dict[str, Any]:
        """
        Read-only projection of the graph for observers.

        Returns:
            Dictionary with node summaries, connections and session entries
        """
        return {
            "nodes": [
                {
                    "id": node.id,
                    "type": node.type.value,
                    "state": node.state.value,
                    "inputs": list(node.inputs.keys()),
                    "outputs": list(node.outputs.keys()),
                    "last_update": node.last_update.isoformat(),
                }
                for node in self._nodes.values()
            ],
            "connections": [conn.model_dump(mode="json") for conn in self._connections.values()],
            "sessions": [
                {
                    "id": entry.id,
                    "active": entry.active,
                    "created_at": entry.created_at.isoformat(),
                }
                for entry in self._session_entries.values()
            ],
        }

    def serialize(self) -> dict[str, Any]:
        """
        Serialize the graph to a JSON-safe snapshot.

        Returns:
            ``{"nodes": [...], "connections": [...], "template": ...}``
        """
        return {
            "nodes": [
                NodeRecord.from_node(node).model_dump(mode="json", exclude={"state"})
                for node in self._nodes.values()
            ],
            "connections": [conn.model_dump(mode="json") for conn in self._connections.values()],
            "template": self.template,
        }

    async def deserialize(self, blob: dict[str, Any]) -> None:
        """
        Replace the graph's contents with a snapshot.

        The snapshot is validated, and checked against the cycle policy,
        before anything is cleared, so a rejected snapshot leaves the graph
        untouched.

        Args:
            blob: Snapshot as produced by serialize()

        Raises:
            ValueError: If the snapshot is malformed
            DuplicateNodeError: If two nodes share an ID
            TopologyViolationError: If the snapshot has a cycle and the graph
                rejects cycles
        """
        try:
            records = [NodeRecord.model_validate(item) for item in blob.get("nodes", [])]
            connections = [Connection.model_validate(item) for item in blob.get("connections", [])]
        except ValidationError as e:
            raise ValueError(f"Invalid graph snapshot: {e}") from e
        self._check_snapshot(records, connections)

        async with self._modification_lock:
            self._nodes.clear()
            self._connections.clear()
            self._session_entries.clear()
            self._nx_graph = nx.DiGraph()
            self.template = blob.get("template")

            for record in records:
                self._add_node_unlocked(
                    Node(
                        id=record.id,
                        type=record.type,
                        x=record.x,
                        y=record.y,
                        label=record.label,
                        data=dict(record.data),
                    )
                )

            for connection in connections:
                if connection.source not in self._nodes or connection.target not in self._nodes:
                    logger.warning(
                        f"Skipping connection '{connection.id}' with a missing endpoint"
                    )
                    continue
                # Identity is always derived from the endpoints
                connection.id = Connection.generate_connection_id(
                    connection.source, connection.target
                )
                self._link_unlocked(connection)

        logger.debug(
            f"Deserialized graph '{self.name}': {len(self._nodes)} nodes, "
            f"{len(self._connections)} connections"
        )

    def _check_snapshot(self, records: list[NodeRecord], connections: list[Connection]) -> None:
        """
        Reject a snapshot that could not be rebuilt in full.

        Raises:
            DuplicateNodeError: If two nodes share an ID
            TopologyViolationError: If a connection would close a cycle while
                the graph rejects cycles
        """
        scratch = nx.DiGraph()
        for record in records:
            if scratch.has_node(record.id):
                raise DuplicateNodeError(f"Node with ID '{record.id}' already exists")
            scratch.add_node(record.id)

        if not self.reject_cycles:
            return
        for connection in connections:
            source_id, target_id = connection.source, connection.target
            if source_id not in scratch or target_id not in scratch:
                continue
            if scratch.has_edge(source_id, target_id):
                continue
            if would_create_cycle(scratch, source_id, target_id):
                raise TopologyViolationError(
                    f"Snapshot connection '{source_id}' -> '{target_id}' would create a cycle"
                )
            scratch.add_edge(source_id, target_id)

    @classmethod
    async def from_snapshot(cls, blob: dict[str, Any], **kwargs: Any) -> "RoutingGraph":
        """Create a graph and fill it from a snapshot."""
        graph = cls(**kwargs)
        await graph.deserialize(blob)
        return graph

    async def save(self, path: Path | str) -> Path:
        """
        Write the graph snapshot to a JSON file.

        Raises:
            PersistenceError: If the file cannot be written
        """
        path = Path(path)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            async with aiofiles.open(path, mode="w", encoding="utf-8") as f:
                await f.write(json.dumps(self.serialize(), indent=2, ensure_ascii=False))
        except OSError as e:
            logger.error(f"Failed to save graph '{self.name}' to {path}: {e}")
            raise PersistenceError(f"Failed to save graph '{self.name}' to {path}: {e}") from e

        logger.info(f"Saved graph '{self.name}' to {path}")
        return path

    async def load(self, path: Path | str) -> None:
        """
        Replace the graph's contents with a JSON snapshot file.

        Raises:
            PersistenceError: If the file cannot be read or parsed
        """
        path = Path(path)
        try:
            async with aiofiles.open(path, mode="r", encoding="utf-8") as f:
                blob = json.loads(await f.read())
            await self.deserialize(blob)
        except (OSError, ValueError) as e:
            raise PersistenceError(f"Failed to load graph from {path}: {e}") from e

        logger.info(f"Loaded graph '{self.name}' from {path}")

    # ==================== Checkpoint Operations ====================

    def save_checkpoint(self, filepath: Optional[Path | str] = None) -> Path:
        """
        Save graph state to a checkpoint file.

        Args:
            filepath: Path where checkpoint should be saved. If None, uses
                     checkpoint_dir/checkpoint_{timestamp}.msgpack

        Returns:
            Path to saved checkpoint file

        Raises:
            CheckpointError: If save fails
        """
        if filepath is None:
            timestamp = datetime.now(timezone.utc).strftime("%Y%m%d_%H%M%S_%f")
            filepath = self.checkpoint_dir / f"checkpoint_{timestamp}.msgpack"
        else:
            filepath = Path(filepath)

        checkpoint = Checkpoint(
            name=self.name,
            snapshot=self.serialize(),
            metadata={"reject_cycles": self.reject_cycles},
        )
        checkpoint.save(filepath)
        logger.info(f"Saved checkpoint to {filepath}")
        return filepath

    @classmethod
    async def load_checkpoint(
        cls,
        filepath: Path | str,
        events: EventBus | None = None,
    ) -> "RoutingGraph":
        """
        Load a graph from a checkpoint file.

        Args:
            filepath: Path to checkpoint file
            events: Event bus for the restored graph

        Returns:
            Reconstructed RoutingGraph

        Raises:
            CheckpointError: If load or validation fails
        """
        filepath = Path(filepath)
        checkpoint = Checkpoint.load(filepath)

        graph = cls(
            name=checkpoint.name,
            events=events,
            reject_cycles=checkpoint.metadata.get("reject_cycles", False),
        )
        await graph.deserialize(checkpoint.snapshot)

        logger.info(
            f"Loaded checkpoint from {filepath} - restored {graph.node_count} nodes "
            f"and {graph.connection_count} connections"
        )
        return graph
