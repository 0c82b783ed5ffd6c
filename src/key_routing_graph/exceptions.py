"""
Exceptions for key-routing-graph package.

Defines all custom exceptions used throughout the package. Every error
names the node, connection or session it originated from.
"""


class KeyRoutingGraphError(Exception):
    """Base exception for key-routing-graph errors."""

    pass


class NotFoundError(KeyRoutingGraphError):
    """Raised when an id does not resolve to a known object."""

    pass


class NodeNotFoundError(NotFoundError):
    """Raised when a node is not found in the graph."""

    def __init__(self, node_id: str, message: str | None = None) -> None:
        self.node_id = node_id
        super().__init__(message or f"Node '{node_id}' not found in graph")


class ConnectionNotFoundError(NotFoundError):
    """Raised when a connection is not found in the graph."""

    def __init__(self, connection_id: str) -> None:
        self.connection_id = connection_id
        super().__init__(f"Connection '{connection_id}' not found in graph")


class SessionNotFoundError(NotFoundError):
    """Raised when a session is unknown to the manager and its store."""

    def __init__(self, session_id: str) -> None:
        self.session_id = session_id
        super().__init__(f"Session '{session_id}' not found")


class TemplateNotFoundError(NotFoundError):
    """Raised when a template id is not registered."""

    def __init__(self, template_id: str) -> None:
        self.template_id = template_id
        super().__init__(f"Template '{template_id}' not found")


class DuplicateNodeError(KeyRoutingGraphError):
    """Raised when attempting to add a node with an existing ID."""

    pass


class TopologyViolationError(KeyRoutingGraphError):
    """Raised when a graph operation violates topology constraints."""

    pass


class RoutingError(KeyRoutingGraphError):
    """Base class for failures while moving data between nodes."""

    def __init__(self, router_id: str, message: str) -> None:
        self.router_id = router_id
        super().__init__(message)


class ConnectionInactiveError(RoutingError):
    """Raised when routing over a missing or deactivated connection."""

    def __init__(self, source_id: str, target_id: str) -> None:
        self.source_id = source_id
        self.target_id = target_id
        super().__init__(
            source_id,
            f"Connection '{source_id}' -> '{target_id}' not found or inactive",
        )


class ExhaustedFailoverError(RoutingError):
    """Raised when every prioritized failover target failed or was skipped."""

    def __init__(self, router_id: str, attempts: dict[str, str]) -> None:
        self.attempts = attempts
        if attempts:
            detail = "; ".join(f"{target}: {reason}" for target, reason in attempts.items())
        else:
            detail = "no outputs"
        super().__init__(router_id, f"All failover targets of router '{router_id}' failed ({detail})")


class NoHealthyTargetError(RoutingError):
    """Raised when a router has no eligible output to select."""

    def __init__(self, router_id: str) -> None:
        super().__init__(router_id, f"No healthy targets available for router '{router_id}'")


class ServiceUnavailableError(KeyRoutingGraphError):
    """Raised when a service fails its health probe during session start."""

    def __init__(self, service_id: str, session_id: str | None = None) -> None:
        self.service_id = service_id
        self.session_id = session_id
        where = f" in session '{session_id}'" if session_id else ""
        super().__init__(f"Service '{service_id}' is unavailable{where}")


class PersistenceError(KeyRoutingGraphError):
    """Raised when reading or writing a session or graph file fails."""

    pass
