"""
Data models for key-routing-graph package.

This module defines the core data structures:
- Node: Typed vertex of a routing graph (runtime form)
- Connection: Directed, prioritizable edge between two nodes
- NodeRecord: Serialized node as it appears in snapshots and sessions
- Session: Named, persistable instance of a topology
- Credential: Key resolved from a key store
- SessionEntry: Payload recorded by a session node during processing
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel


def utc_now() -> datetime:
    """Return the current time as a timezone-aware UTC datetime."""
    return datetime.now(timezone.utc)


def _ensure_utc(v: datetime | None) -> datetime | None:
    if v is None:
        return v
    if v.tzinfo is None:
        # Assume naive datetime is UTC
        return v.replace(tzinfo=timezone.utc)
    return v.astimezone(timezone.utc)


class NodeType(str, Enum):
    """Kind of a node; selects the processor applied to it."""

    SERVICE = "service"
    KEY = "key"
    ROUTER = "router"
    INTEGRATION = "integration"
    SESSION = "session"


class NodeState(str, Enum):
    """Processing state of a node inside a routing graph."""

    IDLE = "idle"
    PROCESSING = "processing"
    COMPLETED = "completed"
    ERROR = "error"


class ActivationState(str, Enum):
    """State of a node inside a session's topology during start/stop."""

    CONNECTING = "connecting"
    CONNECTED = "connected"
    ACTIVE = "active"
    INACTIVE = "inactive"
    ERROR = "error"


class RouterMode(str, Enum):
    """Selection strategy of a router node."""

    FAILOVER = "failover"
    ROUND_ROBIN = "round-robin"
    PARALLEL = "parallel"
    LOAD_BALANCE = "load-balance"


class Connection(BaseModel):
    """
    Represents a directed connection between two nodes.

    The same Connection object is referenced from the source node's outputs
    and the target node's inputs.
    """

    id: str = Field(
        ...,
        description="Connection identifier (derived from source and target)",
        min_length=1,
    )
    source: str = Field(..., description="ID of the source node", min_length=1)
    target: str = Field(..., description="ID of the target node", min_length=1)
    type: str = Field(default="data", description="Connection label, e.g. data or control")
    active: bool = Field(default=True, description="Whether data may be routed over it")
    priority: int = Field(default=0, description="Failover priority (higher wins)")
    label: str = Field(default="", description="Display label")
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utc_now)
    last_used: datetime | None = Field(default=None)

    @field_validator("created_at", "last_used")
    @classmethod
    def ensure_utc(cls, v: datetime | None) -> datetime | None:
        """Ensure timestamps are timezone-aware and in UTC."""
        return _ensure_utc(v)

    @classmethod
    def generate_connection_id(cls, source: str, target: str) -> str:
        """
        Generate the connection ID for an ordered pair of nodes.

        Args:
            source: Source node ID
            target: Target node ID

        Returns:
            Connection ID, unique per ordered pair
        """
        return f"{source}->{target}"


class Node(BaseModel):
    """
    Represents a node in a routing graph.

    ``inputs`` and ``outputs`` map peer node IDs to the shared Connection
    objects and are never serialized.
    """

    id: str = Field(..., description="Unique identifier for the node", min_length=1)
    type: NodeType = Field(..., description="Node type")
    x: float = Field(default=0, description="Horizontal position in the editor")
    y: float = Field(default=0, description="Vertical position in the editor")
    label: str | None = Field(default=None)
    data: dict[str, Any] = Field(
        default_factory=dict,
        description="Type-specific parameters (service, integration, mode, ...)",
    )
    state: NodeState = Field(default=NodeState.IDLE)
    last_update: datetime = Field(default_factory=utc_now)
    inputs: dict[str, Connection] = Field(default_factory=dict, exclude=True)
    outputs: dict[str, Connection] = Field(default_factory=dict, exclude=True)

    def mark(self, state: NodeState) -> None:
        """Set the processing state and stamp the update time."""
        self.state = state
        self.last_update = utc_now()


class NodeRecord(BaseModel):
    """Serialized form of a node."""

    id: str = Field(..., min_length=1)
    type: NodeType
    x: float = 0
    y: float = 0
    label: str | None = None
    data: dict[str, Any] = Field(default_factory=dict)
    state: ActivationState | None = Field(
        default=None,
        description="Activation state; only meaningful inside a session",
    )

    @classmethod
    def from_node(cls, node: Node) -> "NodeRecord":
        """Build a record from a runtime node."""
        return cls(
            id=node.id,
            type=node.type,
            x=node.x,
            y=node.y,
            label=node.label,
            data=dict(node.data),
        )


class Credential(BaseModel):
    """A key resolved for a service by a key store."""

    service: str
    key_id: str | None = None
    name: str | None = None
    key: str | None = Field(default=None, repr=False)
    index: int = Field(default=0, description="Position in the service's key ring")
    rotated: bool = Field(
        default=False,
        description="Whether resolving this key moved the service's rotation cursor",
    )


class SessionEntry(BaseModel):
    """Payload recorded against a session node by the execution engine."""

    id: str
    data: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utc_now)
    last_activity: datetime = Field(default_factory=utc_now)
    active: bool = True


class SessionState(str, Enum):
    """Lifecycle state of a session."""

    CREATED = "created"
    LOADED = "loaded"
    STARTING = "starting"
    ACTIVE = "active"
    STOPPING = "stopping"
    STOPPED = "stopped"
    ERROR = "error"


class SessionOptions(BaseModel):
    """
    Recognized session options; unknown options are kept as extras.

    camelCase names (``autoStart``) are accepted as well as snake_case.
    """

    auto_start: bool = False
    persistent: bool = True
    monitor_health: bool = True

    model_config = ConfigDict(extra="allow", populate_by_name=True, alias_generator=to_camel)


class SessionStats(BaseModel):
    """Activity counters of a session."""

    requests: int = 0
    errors: int = 0
    rotations: int = 0
    last_activity: datetime | None = None


class Session(BaseModel):
    """
    A named, lifecycle-managed instance of a node/connection topology.

    Sessions embed a snapshot of their topology and are persisted as one
    JSON document per session when ``options.persistent`` is set.
    """

    id: str = Field(
        default_factory=lambda: f"session-{uuid4().hex[:16]}",
        min_length=1,
    )
    name: str = Field(..., min_length=1)
    template: str | None = None
    template_config: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)
    state: SessionState = SessionState.CREATED
    error: str | None = None
    options: SessionOptions = Field(default_factory=SessionOptions)
    stats: SessionStats = Field(default_factory=SessionStats)
    rotation_cursors: dict[str, int] = Field(
        default_factory=dict,
        description="Per-service index of the last key that resolved healthy",
    )
    nodes: list[NodeRecord] = Field(default_factory=list)
    connections: list[Connection] = Field(default_factory=list)

    @field_validator("created_at", "updated_at")
    @classmethod
    def ensure_utc(cls, v: datetime) -> datetime:
        """Ensure timestamps are timezone-aware and in UTC."""
        return _ensure_utc(v)

    def touch(self) -> None:
        """Stamp ``updated_at`` with the current time."""
        self.updated_at = utc_now()

    def nodes_of_type(self, node_type: NodeType) -> list[NodeRecord]:
        """Return the session's nodes of one type, in topology order."""
        return [node for node in self.nodes if node.type == node_type]
