"""Persistence backends for circuit state and idempotency records."""

from .base import PersistenceStore
from .memory import InMemoryStore
from .postgres import PostgresStore

__all__ = ["PersistenceStore", "InMemoryStore", "PostgresStore"]
