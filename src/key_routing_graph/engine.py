"""
Execution engine for routing graphs.

The engine pushes a payload through a RoutingGraph: it applies the node's
processor, publishes state transitions and forwards results over active
outgoing connections.
"""

import logging
import random
from contextvars import ContextVar
from typing import Any

from .exceptions import ConnectionInactiveError, TopologyViolationError
from .events import EventType
from .graph import RoutingGraph
from .models import Node, NodeState, utc_now
from .processors import get_processor
from .providers import (
    DEFAULT_HEALTH_CHECK_TIMEOUT,
    HealthCheck,
    IntegrationUpdater,
    KeyStore,
    always_healthy,
    noop_integration_updater,
)

logger = logging.getLogger(__name__)

# Nodes on the route currently being processed. Tasks started by parallel
# routing copy the context, so each branch sees only its own route.
_route: ContextVar[tuple[str, ...]] = ContextVar("route", default=())


class ExecutionEngine:
    """
    Processes payloads through the nodes of a RoutingGraph.

    Processing is fail-fast: the first error marks the failing node, is
    published as ``nodeError`` and propagates to the caller. Nothing is
    retried at this layer. A route that arrives back at a node it already
    passed through raises TopologyViolationError instead of looping.

    Example:
        >>> engine = ExecutionEngine(graph, key_store=store)
        >>> result = await engine.process("openrouter", {"prompt": "hi"})
    """

    def __init__(
        self,
        graph: RoutingGraph,
        health_check: HealthCheck | None = None,
        key_store: KeyStore | None = None,
        integration_updater: IntegrationUpdater | None = None,
        rng: random.Random | None = None,
        health_check_timeout: float = DEFAULT_HEALTH_CHECK_TIMEOUT,
    ):
        """
        Initialize the engine.

        Args:
            graph: Graph to execute
            health_check: Service health provider (every service healthy if None)
            key_store: Credential source for key nodes (keys resolve to None if None)
            integration_updater: Side effect applied by integration nodes
            rng: Random source for load balancing
            health_check_timeout: Seconds before a health probe counts as unhealthy
        """
        self.graph = graph
        self.events = graph.events
        self.health_check = health_check or always_healthy
        self.key_store = key_store
        self.integration_updater = integration_updater or noop_integration_updater
        self.rng = rng or random.Random()
        self.health_check_timeout = health_check_timeout

    async def process(
        self,
        node_id: str,
        data: dict[str, Any] | None = None,
        context: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        """
        Process a payload at a node and forward the result downstream.

        ``nodeProcessing`` is published before the node's logic runs and
        before any downstream routing begins.

        Args:
            node_id: Node to process
            data: Incoming payload
            context: Request context passed to every downstream node

        Returns:
            The node's result

        Raises:
            NodeNotFoundError: If the node doesn't exist
            TopologyViolationError: If the node is already on the current route
        """
        node = self.graph.get_node(node_id)
        route = _route.get()
        if node_id in route:
            raise TopologyViolationError(
                f"Route {' -> '.join(route)} -> {node_id} loops back to '{node_id}'"
            )
        token = _route.set(route + (node_id,))
        try:
            return await self._process(node, data, context)
        finally:
            _route.reset(token)

    async def _process(
        self,
        node: Node,
        data: dict[str, Any] | None,
        context: dict[str, Any] | None,
    ) -> dict[str, Any]:
        node_id = node.id
        data = dict(data or {})
        context = context if context is not None else {}

        node.mark(NodeState.PROCESSING)
        self.events.emit(EventType.NODE_PROCESSING, {"node_id": node_id, "data": data})

        processor = get_processor(node.type)
        try:
            result = await processor.process(self, node, data, context)

            if not processor.dispatches_downstream:
                for connection in [c for c in node.outputs.values() if c.active]:
                    await self.route_data(node_id, connection.target, result, context)
        except Exception as e:
            node.mark(NodeState.ERROR)
            logger.error(f"Error processing node '{node_id}': {e}")
            self.events.emit(EventType.NODE_ERROR, {"node_id": node_id, "error": e})
            raise

        node.mark(NodeState.COMPLETED)
        self.events.emit(EventType.NODE_COMPLETED, {"node_id": node_id, "result": result})
        return result

    async def route_data(
        self,
        source_id: str,
        target_id: str,
        data: dict[str, Any],
        context: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        """
        Forward a payload over the connection between two nodes.

        Raises:
            ConnectionInactiveError: If no active connection joins the pair
        """
        connection = self.graph.find_connection(source_id, target_id)
        if connection is None or not connection.active:
            raise ConnectionInactiveError(source_id, target_id)

        connection.last_used = utc_now()
        logger.debug(f"Routing data '{source_id}' -> '{target_id}'")
        return await self.process(target_id, data, context)
