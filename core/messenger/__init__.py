"""
Database-backed message transport for DbMessenger - leased, deduplicated,
dead-lettered delivery of messages between producers and workers.
"""

from core.messenger.envelope import Envelope
from core.messenger.errors import ErrorKind, TransportError, LockError, SerializationError
from core.messenger.serializer import Serializer, JsonSerializer
from core.messenger.deduplication import (
    Deduplicator,
    InMemoryDeduplicator,
    DatabaseDeduplicator,
    RedisDeduplicator,
)
from core.messenger.transport import Transport
from core.messenger.database_transport import DatabaseTransport
from core.messenger.transport_manager import TransportManager, messenger, dispatch
from core.messenger.worker import MessageWorker

__all__ = [
    "Envelope",
    "ErrorKind",
    "TransportError",
    "LockError",
    "SerializationError",
    "Serializer",
    "JsonSerializer",
    "Deduplicator",
    "InMemoryDeduplicator",
    "DatabaseDeduplicator",
    "RedisDeduplicator",
    "Transport",
    "DatabaseTransport",
    "TransportManager",
    "messenger",
    "dispatch",
    "MessageWorker",
]
