"""
Binary checkpoints of routing graphs.

A checkpoint file is one msgpack map::

    {version, timestamp, name, metadata, snapshot, checksum}

``snapshot`` is exactly what ``RoutingGraph.serialize`` returns and
``checksum`` is the SHA-256 of the packed map without the checksum entry.
"""

import hashlib
import logging
from datetime import datetime
from pathlib import Path
from typing import Any

import msgpack

from .exceptions import PersistenceError
from .models import utc_now

logger = logging.getLogger(__name__)

CHECKPOINT_VERSION = 1


class CheckpointError(PersistenceError):
    """Raised when a checkpoint cannot be written or read."""

    pass


class CheckpointCorruptedError(CheckpointError):
    """Raised when a checkpoint's checksum is missing or does not match."""

    pass


class CheckpointVersionError(CheckpointError):
    """Raised when a checkpoint was written by an unknown format version."""

    pass


def _pack(data: dict[str, Any]) -> bytes:
    return msgpack.packb(data, use_bin_type=True)


class Checkpoint:
    """
    A graph snapshot together with the settings needed to rebuild the graph.

    Example:
        >>> Checkpoint("prod", graph.serialize(), {"reject_cycles": True}).save(path)
        >>> restored = Checkpoint.load(path)
    """

    def __init__(
        self,
        name: str,
        snapshot: dict[str, Any],
        metadata: dict[str, Any],
        timestamp: datetime | None = None,
    ):
        self.name = name
        self.snapshot = snapshot
        self.metadata = metadata
        self.timestamp = timestamp or utc_now()
        self.version = CHECKPOINT_VERSION

    def __repr__(self) -> str:
        return (
            f"Checkpoint(name={self.name!r}, nodes={len(self.snapshot.get('nodes', []))}, "
            f"timestamp={self.timestamp.isoformat()})"
        )

    def to_dict(self) -> dict[str, Any]:
        """The checkpoint's fields, without the checksum."""
        return {
            "version": self.version,
            "timestamp": self.timestamp.isoformat(),
            "name": self.name,
            "metadata": self.metadata,
            "snapshot": self.snapshot,
        }

    @staticmethod
    def compute_checksum(data: dict[str, Any]) -> str:
        """SHA-256 hex digest of a packed checkpoint map."""
        return hashlib.sha256(_pack(data)).hexdigest()

    @classmethod
    def from_bytes(cls, payload: bytes) -> "Checkpoint":
        """
        Decode and verify a packed checkpoint.

        Raises:
            CheckpointVersionError: If the version is missing or unsupported
            CheckpointCorruptedError: If the checksum is missing or wrong
            CheckpointError: If the payload is not a checkpoint map
        """
        try:
            data = msgpack.unpackb(payload, raw=False)
        except (ValueError, msgpack.UnpackException) as e:
            raise CheckpointError(f"Unreadable checkpoint: {e}") from e
        if not isinstance(data, dict):
            raise CheckpointError("Unreadable checkpoint: expected a map")

        version = data.get("version")
        if version != CHECKPOINT_VERSION:
            raise CheckpointVersionError(
                f"Unsupported checkpoint version {version!r}, expected {CHECKPOINT_VERSION}"
            )

        stored = data.pop("checksum", None)
        if stored is None:
            raise CheckpointCorruptedError("Checkpoint has no checksum")
        if stored != cls.compute_checksum(data):
            raise CheckpointCorruptedError("Checkpoint checksum mismatch")

        try:
            return cls(
                name=data["name"],
                snapshot=data.get("snapshot") or {},
                metadata=data.get("metadata") or {},
                timestamp=datetime.fromisoformat(data["timestamp"]),
            )
        except (KeyError, TypeError, ValueError) as e:
            raise CheckpointError(f"Incomplete checkpoint: {e}") from e

    def to_bytes(self) -> bytes:
        """Pack the checkpoint with its checksum."""
        data = self.to_dict()
        data["checksum"] = self.compute_checksum(data)
        return _pack(data)

    def save(self, filepath: Path) -> None:
        """
        Write the checkpoint to a file, creating parent directories.

        Raises:
            CheckpointError: If the file cannot be written
        """
        try:
            filepath.parent.mkdir(parents=True, exist_ok=True)
            filepath.write_bytes(self.to_bytes())
        except OSError as e:
            raise CheckpointError(f"Failed to write checkpoint {filepath}: {e}") from e
        logger.debug(f"Wrote checkpoint {filepath}")

    @staticmethod
    def load(filepath: Path) -> "Checkpoint":
        """
        Read and verify a checkpoint file.

        Raises:
            CheckpointError: If the file is missing or unreadable
            CheckpointVersionError: If the version is unsupported
            CheckpointCorruptedError: If the checksum does not match
        """
        try:
            payload = filepath.read_bytes()
        except FileNotFoundError as e:
            raise CheckpointError(f"Checkpoint file not found: {filepath}") from e
        except OSError as e:
            raise CheckpointError(f"Failed to read checkpoint {filepath}: {e}") from e

        checkpoint = Checkpoint.from_bytes(payload)
        logger.debug(f"Read checkpoint {filepath}")
        return checkpoint
