"""
Filesystem-based session store implementation.

Stores one ``<session_id>.json`` document per session.
"""

import asyncio
import json
import logging
import os
from pathlib import Path

import aiofiles
from pydantic import ValidationError

from ..exceptions import PersistenceError
from ..models import Session
from .base import SessionStore

logger = logging.getLogger(__name__)


class FilesystemSessionStore(SessionStore):
    """
    Filesystem session store using one JSON file per session.

    Writes for the same session ID are serialized with an asyncio.Lock and
    go to a temporary file that is renamed over the record, so a reader
    never sees a partially written document.
    """

    def __init__(self, base_dir: str | Path = "./sessions"):
        """
        Initialize filesystem store.

        Args:
            base_dir: Directory holding the session files
        """
        self.base_dir = Path(base_dir)
        self._locks: dict[str, asyncio.Lock] = {}

    def _path_for(self, session_id: str) -> Path:
        if not session_id or "/" in session_id or "\\" in session_id or session_id.startswith("."):
            raise ValueError(f"Invalid session ID for a file name: '{session_id}'")
        return self.base_dir / f"{session_id}.json"

    def _lock_for(self, session_id: str) -> asyncio.Lock:
        if session_id not in self._locks:
            self._locks[session_id] = asyncio.Lock()
        return self._locks[session_id]

    async def save(self, session: Session) -> None:
        """Write the session record atomically."""
        path = self._path_for(session.id)
        tmp_path = path.with_suffix(".json.tmp")

        async with self._lock_for(session.id):
            try:
                self.base_dir.mkdir(parents=True, exist_ok=True)
                async with aiofiles.open(tmp_path, mode="w", encoding="utf-8") as f:
                    await f.write(session.model_dump_json(indent=2))
                os.replace(tmp_path, path)
            except OSError as e:
                logger.error(f"Failed to save session '{session.id}' to {path}: {e}")
                raise PersistenceError(f"Failed to save session '{session.id}': {e}") from e

        logger.debug(f"Saved session '{session.id}' to {path}")

    async def load(self, session_id: str) -> Session | None:
        """Read a session record, or None if the file does not exist."""
        path = self._path_for(session_id)
        if not path.exists():
            return None

        try:
            async with aiofiles.open(path, mode="r", encoding="utf-8") as f:
                content = await f.read()
            return Session.model_validate(json.loads(content))
        except OSError as e:
            raise PersistenceError(f"Failed to read session '{session_id}': {e}") from e
        except (json.JSONDecodeError, ValidationError) as e:
            raise PersistenceError(f"Corrupted session record '{session_id}': {e}") from e

    async def delete(self, session_id: str) -> bool:
        """Remove the session file if present."""
        path = self._path_for(session_id)
        async with self._lock_for(session_id):
            try:
                path.unlink()
            except FileNotFoundError:
                return False
            except OSError as e:
                raise PersistenceError(f"Failed to delete session '{session_id}': {e}") from e

        self._locks.pop(session_id, None)
        logger.debug(f"Deleted session file {path}")
        return True

    def exists(self, session_id: str) -> bool:
        """Check if a session file exists."""
        return self._path_for(session_id).exists()

    def list_ids(self) -> list[str]:
        """IDs of every session file in the directory."""
        if not self.base_dir.exists():
            return []
        return sorted(path.stem for path in self.base_dir.glob("*.json"))
