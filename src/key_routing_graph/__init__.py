"""
key-routing-graph: A Python package for routing requests through graphs of
credential and service endpoints.

This package models services, keys, routers, integrations and sessions as a
directed graph, executes data flow through it with failover, round-robin,
parallel and load-balanced routing, and manages named, persistable sessions
built from reusable topology templates.
"""

from key_routing_graph.backends import FilesystemSessionStore, InMemorySessionStore, SessionStore
from key_routing_graph.checkpoint import (
    Checkpoint,
    CheckpointCorruptedError,
    CheckpointError,
    CheckpointVersionError,
)
from key_routing_graph.engine import ExecutionEngine
from key_routing_graph.events import Event, EventBus, EventType
from key_routing_graph.exceptions import (
    ConnectionInactiveError,
    ConnectionNotFoundError,
    DuplicateNodeError,
    ExhaustedFailoverError,
    KeyRoutingGraphError,
    NodeNotFoundError,
    NoHealthyTargetError,
    NotFoundError,
    PersistenceError,
    RoutingError,
    ServiceUnavailableError,
    SessionNotFoundError,
    TemplateNotFoundError,
    TopologyViolationError,
)
from key_routing_graph.graph import RoutingGraph
from key_routing_graph.models import (
    ActivationState,
    Connection,
    Credential,
    Node,
    NodeRecord,
    NodeState,
    NodeType,
    RouterMode,
    Session,
    SessionEntry,
    SessionOptions,
    SessionState,
    SessionStats,
)
from key_routing_graph.processors import NodeProcessor, get_processor
from key_routing_graph.providers import (
    InMemoryKeyStore,
    KeyEntry,
    KeyStore,
    RecordingIntegrationUpdater,
    probe_health,
)
from key_routing_graph.routing import (
    FailoverStrategy,
    LoadBalanceStrategy,
    ParallelStrategy,
    RoundRobinStrategy,
    RoutingStrategy,
    get_strategy,
)
from key_routing_graph.session_manager import SessionManager
from key_routing_graph.templates import BUILTIN_TEMPLATES, Template, TemplateRegistry
from key_routing_graph.topology import GraphTopology

__version__ = "0.1.0"

__all__ = [
    "__version__",
    # Core classes
    "RoutingGraph",
    "ExecutionEngine",
    "SessionManager",
    "EventBus",
    "Event",
    "EventType",
    # Processing and routing
    "NodeProcessor",
    "get_processor",
    "RoutingStrategy",
    "FailoverStrategy",
    "RoundRobinStrategy",
    "ParallelStrategy",
    "LoadBalanceStrategy",
    "get_strategy",
    "GraphTopology",
    # Templates
    "Template",
    "TemplateRegistry",
    "BUILTIN_TEMPLATES",
    # Collaborators
    "KeyStore",
    "KeyEntry",
    "InMemoryKeyStore",
    "RecordingIntegrationUpdater",
    "probe_health",
    # Session stores
    "SessionStore",
    "FilesystemSessionStore",
    "InMemorySessionStore",
    # Checkpointing
    "Checkpoint",
    "CheckpointError",
    "CheckpointVersionError",
    "CheckpointCorruptedError",
    # Data models
    "Node",
    "NodeType",
    "NodeState",
    "NodeRecord",
    "ActivationState",
    "Connection",
    "Credential",
    "RouterMode",
    "Session",
    "SessionEntry",
    "SessionOptions",
    "SessionState",
    "SessionStats",
    # Exceptions
    "KeyRoutingGraphError",
    "NotFoundError",
    "NodeNotFoundError",
    "ConnectionNotFoundError",
    "SessionNotFoundError",
    "TemplateNotFoundError",
    "DuplicateNodeError",
    "TopologyViolationError",
    "RoutingError",
    "ConnectionInactiveError",
    "ExhaustedFailoverError",
    "NoHealthyTargetError",
    "ServiceUnavailableError",
    "PersistenceError",
]
