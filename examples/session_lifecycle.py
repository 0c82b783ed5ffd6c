#!/usr/bin/env python3
"""
Example: Session Lifecycle - Templates, Start/Stop and Persistence

This example creates a session from the kiro-proxy-4.5 template, starts it,
routes a request through it, stops it and reloads it from disk with a
second manager.
"""

import asyncio
import logging

from key_routing_graph import EventType, InMemoryKeyStore, SessionManager


async def main():
    """Walk a session through its lifecycle."""
    logging.basicConfig(level=logging.INFO, format="%(name)s: %(message)s")

    key_store = InMemoryKeyStore(
        {
            "kiro": [{"key": "kiro-demo", "key_id": "kiro-1"}],
            "anthropic": [{"key": "sk-ant-demo", "key_id": "ant-1"}],
            "openrouter": [
                {"key": "sk-or-demo-1", "key_id": "or-1"},
                {"key": "sk-or-demo-2", "key_id": "or-2"},
            ],
        }
    )
    manager = SessionManager(
        storage_path="./sessions/lifecycle_demo",
        key_store=key_store,
        connect_delay=0.05,
    )
    manager.events.subscribe(
        None, lambda event: print(f"  [event] {event.type.value}")
    )

    print("Available templates:")
    for template in manager.templates.list():
        print(f"  {template.icon} {template.id}: {template.description}")

    print("\nCreating session...")
    session = await manager.create_session("kiro-demo", template_id="kiro-proxy-4.5")

    print("\nStarting session...")
    await manager.start_session(session.id)
    status = manager.get_session_status(session.id)
    print(f"✓ State: {status['state']}")
    for node in status["nodes"]:
        print(f"  {node['id']:<16} {node['type']:<12} {node['state']}")

    print("\nDispatching request...")
    result = await manager.dispatch(session.id, "kiro", {"prompt": "hello"})
    print(f"✓ Service {result['service']} available: {result['available']}")
    graph = await manager.get_graph(session.id)
    for entry in graph.session_entries.values():
        print(f"  Recorded in {entry.id}: integration={entry.data.get('integration')}")

    print("\nActive connections:")
    for conn in manager.get_active_connections():
        print(f"  {conn['source']} → {conn['target']}")

    print("\nStopping session...")
    await manager.stop_session(session.id)

    print("\nReloading with a new manager...")
    other = SessionManager(storage_path="./sessions/lifecycle_demo")
    other.events.subscribe(
        EventType.SESSION_LOADED, lambda event: print(f"✓ Loaded '{event.payload.name}'")
    )
    loaded = await other.load_session(session.id)
    print(f"  Requests so far: {loaded.stats.requests}")
    print(f"  Stored sessions: {len(other.list_stored_sessions())}")

    await other.delete_session(session.id)
    print("✓ Session deleted")


if __name__ == "__main__":
    asyncio.run(main())
