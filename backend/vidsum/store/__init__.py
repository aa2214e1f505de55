"""Job record stores.

SqlJobStore is imported lazily by callers so that the in-memory store can
be used without configuring a database engine.
"""

from vidsum.store.base import JobStore
from vidsum.store.memory import InMemoryJobStore

__all__ = ["JobStore", "InMemoryJobStore"]
