"""
Server I/O layer.

- ServerConnection / QueryStream: the contract a database connection fulfils
- ConnectionPool: bounded, thread-safe pool of connections
- MemoryServer: in-process reference server for development and tests
"""

from .base import PullBatch, QueryStream, ServerConnection, TxHandle, TxRequest
from .pool import ConnectionPool
from .memory import (
    BEGIN,
    COMMIT,
    JournalEntry,
    MemoryConnection,
    MemoryQueryStream,
    MemoryServer,
    QueryContext,
)

__all__ = [
    "TxRequest",
    "TxHandle",
    "PullBatch",
    "QueryStream",
    "ServerConnection",
    "ConnectionPool",
    "BEGIN",
    "COMMIT",
    "JournalEntry",
    "QueryContext",
    "MemoryQueryStream",
    "MemoryServer",
    "MemoryConnection",
]
