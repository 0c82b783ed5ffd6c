"""
In-memory session store.

Records are kept as JSON-mode dumps so a loaded session never shares
objects with the caller's copy.
"""

from typing import Any

from ..models import Session
from .base import SessionStore


class InMemorySessionStore(SessionStore):
    """Session store backed by a dict; contents are lost with the process."""

    def __init__(self) -> None:
        self._records: dict[str, dict[str, Any]] = {}

    async def save(self, session: Session) -> None:
        self._records[session.id] = session.model_dump(mode="json")

    async def load(self, session_id: str) -> Session | None:
        record = self._records.get(session_id)
        if record is None:
            return None
        return Session.model_validate(record)

    async def delete(self, session_id: str) -> bool:
        return self._records.pop(session_id, None) is not None

    def exists(self, session_id: str) -> bool:
        return session_id in self._records

    def list_ids(self) -> list[str]:
        return sorted(self._records)
