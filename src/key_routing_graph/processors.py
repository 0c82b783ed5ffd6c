"""
Per-type node processors.

Each NodeType has exactly one NodeProcessor. A processor transforms the
incoming payload for one node; the engine takes care of state transitions,
events and (unless the processor dispatches downstream itself) fan-out.
"""

import logging
from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Any

from .events import EventType
from .models import Node, NodeType, RouterMode, SessionEntry, utc_now
from .providers import probe_health
from .routing import get_strategy

if TYPE_CHECKING:
    from .engine import ExecutionEngine

logger = logging.getLogger(__name__)


class NodeProcessor(ABC):
    """Type-specific processing logic for one kind of node."""

    node_type: NodeType
    dispatches_downstream: bool = False

    @abstractmethod
    async def process(
        self,
        engine: "ExecutionEngine",
        node: Node,
        data: dict[str, Any],
        context: dict[str, Any],
    ) -> dict[str, Any]:
        """
        Process a payload arriving at a node.

        Args:
            engine: The engine running the request
            node: Node being processed
            data: Incoming payload
            context: Request context

        Returns:
            The payload passed downstream
        """
        pass


class ServiceProcessor(NodeProcessor):
    """Attach the service's availability to the payload."""

    node_type = NodeType.SERVICE

    async def process(self, engine, node, data, context):
        service_id = node.data.get("service", node.id)
        available = await probe_health(engine.health_check, service_id, engine.health_check_timeout)
        return {
            **data,
            "service": service_id,
            "available": available,
            "timestamp": utc_now().isoformat(),
        }


class KeyProcessor(NodeProcessor):
    """Resolve a credential for the service named by the node or the payload."""

    node_type = NodeType.KEY

    async def process(self, engine, node, data, context):
        service_id = node.data.get("service") or data.get("service")
        key_id = node.data.get("key_id")

        credential = None
        if engine.key_store is not None and service_id:
            credential = await engine.key_store.resolve(service_id, key_id)

        result = {**data, "key": credential, "authenticated": credential is not None}
        if service_id:
            result["service"] = service_id
        return result


class IntegrationProcessor(NodeProcessor):
    """Apply an incoming credential to an external integration."""

    node_type = NodeType.INTEGRATION

    async def process(self, engine, node, data, context):
        integration_id = node.data.get("integration", node.id)
        credential = data.get("key")
        service_id = data.get("service")

        if credential is not None and service_id:
            await engine.integration_updater(integration_id, service_id, credential)
            engine.events.emit(
                EventType.INTEGRATION_UPDATED,
                {"node_id": node.id, "integration": integration_id, "service": service_id},
            )
            logger.debug(f"Updated integration '{integration_id}' for service '{service_id}'")

        return {**data, "integration": integration_id, "configured": True}


class SessionProcessor(NodeProcessor):
    """Record the payload against the node's session entry."""

    node_type = NodeType.SESSION

    async def process(self, engine, node, data, context):
        entries = engine.graph.session_entries
        now = utc_now()

        entry = entries.get(node.id)
        if entry is None:
            entry = SessionEntry(id=node.id, data=dict(data), created_at=now, last_activity=now)
            entries[node.id] = entry
        else:
            entry.data = dict(data)
            entry.last_activity = now
            entry.active = True

        engine.events.emit(EventType.SESSION_RECORDED, entry)
        return {**data, "session": node.id, "active": True}


class RouterProcessor(NodeProcessor):
    """Hand the payload to the routing strategy named by the node's mode."""

    node_type = NodeType.ROUTER
    dispatches_downstream = True

    async def process(self, engine, node, data, context):
        raw_mode = node.data.get("mode", RouterMode.FAILOVER.value)
        try:
            mode = RouterMode(raw_mode)
        except ValueError:
            logger.warning(f"Router '{node.id}' has unknown mode '{raw_mode}', using failover")
            mode = RouterMode.FAILOVER

        outputs = [connection for connection in node.outputs.values() if connection.active]
        return await get_strategy(mode).route(engine, node, data, outputs, context)


_PROCESSORS: dict[NodeType, NodeProcessor] = {
    processor.node_type: processor
    for processor in (
        ServiceProcessor(),
        KeyProcessor(),
        IntegrationProcessor(),
        SessionProcessor(),
        RouterProcessor(),
    )
}


def get_processor(node_type: NodeType) -> NodeProcessor:
    """Look up the processor for a node type."""
    return _PROCESSORS[NodeType(node_type)]
