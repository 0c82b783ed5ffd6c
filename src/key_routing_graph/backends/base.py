"""
Abstract base class for session stores.

Defines the interface that all session stores must implement.
"""

from abc import ABC, abstractmethod

from ..models import Session


class SessionStore(ABC):
    """
    Abstract base class for session stores.

    A store keeps at most one record per session ID; saving a session
    replaces its previous record.
    """

    @abstractmethod
    async def save(self, session: Session) -> None:
        """
        Write a session record, replacing any previous one.

        Args:
            session: Session to persist

        Raises:
            PersistenceError: If the write fails
        """
        pass

    @abstractmethod
    async def load(self, session_id: str) -> Session | None:
        """
        Read a session record.

        Args:
            session_id: The session identifier

        Returns:
            The stored Session, or None if no record exists

        Raises:
            PersistenceError: If the record exists but cannot be read
        """
        pass

    @abstractmethod
    async def delete(self, session_id: str) -> bool:
        """
        Remove a session record.

        Returns:
            True if a record was removed, False if none existed
        """
        pass

    @abstractmethod
    def exists(self, session_id: str) -> bool:
        """Check if a record exists for a session."""
        pass

    @abstractmethod
    def list_ids(self) -> list[str]:
        """IDs of every stored session, sorted."""
        pass
