#!/usr/bin/env python3
"""
Example: Fallback Chain - Failover Across Providers

This example builds a routing graph by hand: three providers feed a failover
router that hands the first working credential to an integration. The first
integration update fails, so the router falls back to the next provider.
"""

import asyncio

from key_routing_graph import (
    EventType,
    ExecutionEngine,
    InMemoryKeyStore,
    NodeType,
    RoutingGraph,
)


class FlakyUpdater:
    """Integration updater that rejects one service."""

    def __init__(self, broken_service: str):
        self.broken_service = broken_service

    async def __call__(self, integration_id, service_id, credential):
        if service_id == self.broken_service:
            raise RuntimeError(f"{service_id} rejected the key")
        print(f"  {integration_id} configured with {service_id} key {credential.key_id}")


async def main():
    """Create and demonstrate a failover chain."""
    graph = RoutingGraph(name="fallback_chain")
    graph.events.subscribe(
        EventType.NODE_ERROR,
        lambda event: print(f"  ✗ {event.payload['node_id']}: {event.payload['error']}"),
    )

    print("Building fallback chain...")
    await graph.add_node("router", NodeType.ROUTER, {"mode": "failover"})
    await graph.add_node("claude-code", NodeType.INTEGRATION, {"integration": "claude-code"})
    await graph.add_node("anthropic", NodeType.KEY, {"service": "anthropic"})
    await graph.add_node("openrouter", NodeType.KEY, {"service": "openrouter"})
    await graph.add_node("groq", NodeType.KEY, {"service": "groq"})

    # The router tries higher-priority targets first
    await graph.connect("router", "anthropic", priority=3, label="primary")
    await graph.connect("router", "openrouter", priority=2, label="fallback")
    await graph.connect("router", "groq", priority=1, label="backup")
    for key_node in ("anthropic", "openrouter", "groq"):
        await graph.connect(key_node, "claude-code")

    print(f"✓ Graph topology: {graph.get_topology().value}")
    print(f"  Nodes: {graph.node_count}")
    print(f"  Connections: {graph.connection_count}")

    key_store = InMemoryKeyStore(
        {
            "anthropic": [{"key": "sk-ant-demo", "key_id": "ant-1"}],
            "openrouter": [{"key": "sk-or-demo", "key_id": "or-1"}],
            "groq": [{"key": "gsk-demo", "key_id": "groq-1"}],
        }
    )
    engine = ExecutionEngine(
        graph,
        key_store=key_store,
        integration_updater=FlakyUpdater(broken_service="anthropic"),
    )

    print("\nRouting request:")
    result = await engine.process("router", {"prompt": "Summarize the release notes"})

    print(f"\n✓ Served by: {result['target']} (strategy: {result['strategy']})")
    for node in graph.get_nodes():
        print(f"  {node.id}: {node.state.value}")


if __name__ == "__main__":
    asyncio.run(main())
