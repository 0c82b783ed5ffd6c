"""
Session store interfaces and implementations for key-routing-graph.

This module provides an abstraction layer for session persistence,
allowing users to choose between filesystem or in-memory storage.
"""

from .base import SessionStore
from .filesystem import FilesystemSessionStore
from .memory import InMemorySessionStore

__all__ = ["SessionStore", "FilesystemSessionStore", "InMemorySessionStore"]
