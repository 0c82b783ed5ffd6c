"""
Collaborator contracts consumed by the engine and the session manager.

The graph core never talks to the network or to a credential vault itself.
It consumes:
- a health check provider: ``async (service_id) -> bool``
- a key store: resolves credentials and keeps its own rotation cursor
- an integration updater: ``async (integration_id, service_id, credential)``
- a service connector: ``async (session_id, node_record)``

Reference in-memory implementations are provided for wiring and testing.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable

from pydantic import BaseModel, Field

from .models import Credential, NodeRecord

logger = logging.getLogger(__name__)

DEFAULT_HEALTH_CHECK_TIMEOUT = 15.0

HealthCheck = Callable[[str], Awaitable[bool]]
KeyHealthCheck = Callable[[str, "KeyEntry"], Awaitable[bool]]
IntegrationUpdater = Callable[[str, str, Any], Awaitable[None]]
ServiceConnector = Callable[[str, NodeRecord], Awaitable[None]]


async def always_healthy(service_id: str) -> bool:
    """Health check that reports every service as available."""
    return True


async def probe_health(
    check: HealthCheck,
    service_id: str,
    timeout: float = DEFAULT_HEALTH_CHECK_TIMEOUT,
) -> bool:
    """
    Run a health check bounded by a timeout.

    Args:
        check: Health check provider
        service_id: Service to probe
        timeout: Seconds to wait before treating the service as unhealthy

    Returns:
        The provider's verdict, or False if it timed out
    """
    try:
        return bool(await asyncio.wait_for(check(service_id), timeout=timeout))
    except asyncio.TimeoutError:
        logger.warning(f"Health check for '{service_id}' timed out after {timeout}s")
        return False


async def noop_integration_updater(integration_id: str, service_id: str, credential: Any) -> None:
    """Integration updater that only logs the update."""
    logger.debug(f"Integration '{integration_id}' would be configured for '{service_id}'")


class RecordingIntegrationUpdater:
    """Integration updater that keeps every applied update in memory."""

    def __init__(self) -> None:
        self.calls: list[tuple[str, str, Any]] = []

    async def __call__(self, integration_id: str, service_id: str, credential: Any) -> None:
        self.calls.append((integration_id, service_id, credential))
        logger.debug(f"Recorded update of integration '{integration_id}' for '{service_id}'")


class KeyEntry(BaseModel):
    """One key in a service's key ring."""

    key: str = Field(..., repr=False)
    key_id: str | None = None
    name: str | None = None


class KeyStore(ABC):
    """
    Abstract credential lookup service.

    Implementations own their rotation bookkeeping: ``resolve`` may move a
    per-service cursor, and ``get_cursor``/``restore_cursor`` let a session
    manager persist and restore it.
    """

    @abstractmethod
    async def resolve(self, service_id: str, key_id: str | None = None) -> Credential | None:
        """
        Resolve the credential to use for a service.

        Args:
            service_id: Service identifier
            key_id: Specific key to use, or None to pick by rotation

        Returns:
            The resolved Credential, or None if no usable key exists
        """
        pass

    def get_cursor(self, service_id: str) -> int | None:
        """Current rotation cursor of a service, if any."""
        return None

    def restore_cursor(self, service_id: str, index: int) -> None:
        """Seed the rotation cursor of a service (e.g. after a restart)."""
        pass


class InMemoryKeyStore(KeyStore):
    """
    Key store holding key rings in memory.

    Rotation starts from the service's cursor and walks the ring until a key
    passes the key health check; the cursor then points at that key. The
    read-modify-write of a cursor holds a per-service lock, so two concurrent
    resolutions cannot both settle on a key the other has just rejected.

    Example:
        >>> store = InMemoryKeyStore({"openrouter": [{"key": "sk-1"}, {"key": "sk-2"}]})
        >>> credential = await store.resolve("openrouter")
    """

    def __init__(
        self,
        keys: dict[str, list[KeyEntry | dict[str, Any]]] | None = None,
        key_health: KeyHealthCheck | None = None,
        health_check_timeout: float = DEFAULT_HEALTH_CHECK_TIMEOUT,
    ) -> None:
        """
        Initialize the key store.

        Args:
            keys: Mapping of service ID to its ordered key ring
            key_health: Optional ``async (service_id, entry) -> bool`` probe;
                every key is considered healthy when omitted
            health_check_timeout: Seconds before a key probe counts as unhealthy
        """
        self._keys: dict[str, list[KeyEntry]] = {}
        for service_id, entries in (keys or {}).items():
            self._keys[service_id] = [
                entry if isinstance(entry, KeyEntry) else KeyEntry(**entry) for entry in entries
            ]
        self._key_health = key_health
        self._timeout = health_check_timeout
        self._cursors: dict[str, int] = {}
        self._locks: dict[str, asyncio.Lock] = {}

    def add_key(
        self,
        service_id: str,
        key: str,
        key_id: str | None = None,
        name: str | None = None,
    ) -> KeyEntry:
        """Append a key to a service's ring."""
        entry = KeyEntry(key=key, key_id=key_id, name=name)
        self._keys.setdefault(service_id, []).append(entry)
        return entry

    def get_cursor(self, service_id: str) -> int | None:
        return self._cursors.get(service_id)

    def restore_cursor(self, service_id: str, index: int) -> None:
        self._cursors[service_id] = index

    def _lock_for(self, service_id: str) -> asyncio.Lock:
        if service_id not in self._locks:
            self._locks[service_id] = asyncio.Lock()
        return self._locks[service_id]

    async def _is_healthy(self, service_id: str, entry: KeyEntry) -> bool:
        if self._key_health is None:
            return True
        check = self._key_health
        return await probe_health(lambda sid: check(sid, entry), service_id, self._timeout)

    def _credential(self, service_id: str, entry: KeyEntry, index: int, rotated: bool) -> Credential:
        return Credential(
            service=service_id,
            key_id=entry.key_id,
            name=entry.name,
            key=entry.key,
            index=index,
            rotated=rotated,
        )

    async def resolve(self, service_id: str, key_id: str | None = None) -> Credential | None:
        entries = self._keys.get(service_id) or []
        if not entries:
            logger.debug(f"No keys registered for service '{service_id}'")
            return None

        if key_id is not None:
            for index, entry in enumerate(entries):
                if entry.key_id == key_id:
                    return self._credential(service_id, entry, index, rotated=False)
            logger.debug(f"Key '{key_id}' not registered for service '{service_id}'")
            return None

        async with self._lock_for(service_id):
            previous = self._cursors.get(service_id, 0)
            start = previous % len(entries)
            for offset in range(len(entries)):
                index = (start + offset) % len(entries)
                entry = entries[index]
                if not entry.key:
                    continue
                if await self._is_healthy(service_id, entry):
                    self._cursors[service_id] = index
                    rotated = index != previous
                    if rotated:
                        logger.info(f"Rotated key for '{service_id}': index {previous} -> {index}")
                    return self._credential(service_id, entry, index, rotated)

        logger.warning(f"No healthy keys available for service '{service_id}'")
        return None
