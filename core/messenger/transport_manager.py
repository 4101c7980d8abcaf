import logging
import os
import socket
import uuid
from datetime import timedelta
from typing import Any, Dict, Optional

from core.messenger.database_transport import DatabaseTransport, DEFAULT_LOCK_DURATION
from core.messenger.deduplication import (
    DEFAULT_WINDOW_SECONDS,
    DatabaseDeduplicator,
    Deduplicator,
    InMemoryDeduplicator,
    RedisDeduplicator,
)
from core.messenger.envelope import Envelope
from core.model import Model, utcnow
from core.redis_manager import RedisManager

logger = logging.getLogger("DbMessenger.TransportManager")


def default_worker_id() -> str:
    return f"{socket.gethostname()}-{uuid.uuid4().hex[:8]}"


class TransportManager:
    """
    Builds and caches transports from environment configuration.
    Producers use it (or the ``dispatch`` helper) to enqueue messages.
    """

    _instance: Optional["TransportManager"] = None

    def __new__(cls) -> "TransportManager":
        """Singleton pattern to ensure one transport manager instance."""
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __init__(self):
        """Initialize the transport manager."""
        if hasattr(self, "_initialized"):
            return

        self._initialized = True
        self._transports: Dict[str, DatabaseTransport] = {}
        self.configure()

    def configure(self, worker_id: Optional[str] = None) -> None:
        """
        (Re)read configuration from the environment and drop cached transports.

        Args:
            worker_id: Explicit worker identity; overrides MESSENGER_WORKER_ID
        """
        self._transports.clear()
        self.default_transport = os.getenv("MESSENGER_TRANSPORT", "database")
        self.default_queue = os.getenv("MESSENGER_DEFAULT_QUEUE", "default")
        self.lock_duration = float(os.getenv("MESSENGER_LOCK_DURATION", str(DEFAULT_LOCK_DURATION)))
        self.max_retries = int(os.getenv("MESSENGER_MAX_RETRIES", "3"))
        self.deduplication = os.getenv("MESSENGER_DEDUPLICATION", "database").lower()
        self.deduplication_window = int(
            os.getenv("MESSENGER_DEDUPLICATION_WINDOW", str(DEFAULT_WINDOW_SECONDS))
        )
        self.worker_id = worker_id or os.getenv("MESSENGER_WORKER_ID") or default_worker_id()
        logger.info(
            f"TransportManager configured: transport '{self.default_transport}', "
            f"worker '{self.worker_id}', lock {self.lock_duration:g}s, "
            f"deduplication '{self.deduplication}'"
        )

    def _make_deduplicator(self) -> Optional[Deduplicator]:
        if self.deduplication == "none":
            return None
        if self.deduplication == "memory":
            return InMemoryDeduplicator(self.deduplication_window)
        if self.deduplication == "redis":
            redis_manager = RedisManager()
            if redis_manager.is_enabled():
                return RedisDeduplicator(redis_manager, self.deduplication_window)
            logger.warning("Redis is not available, falling back to database deduplication")
        elif self.deduplication != "database":
            raise RuntimeError(f"Unknown deduplication backend: {self.deduplication}")
        return DatabaseDeduplicator(self.deduplication_window)

    def get_transport(self, name: Optional[str] = None) -> DatabaseTransport:
        """
        Get the transport with the given name, creating it on first use.

        Raises:
            RuntimeError: If the database is not configured
        """
        name = name or self.default_transport

        if name not in self._transports:
            if not Model._is_enabled:
                raise RuntimeError(
                    "Cannot create a database transport - the database is disabled."
                )
            self._transports[name] = DatabaseTransport(
                name=name,
                worker_id=self.worker_id,
                lock_duration=self.lock_duration,
                deduplicator=self._make_deduplicator(),
            )
        return self._transports[name]

    async def dispatch(
        self,
        message: Any,
        queue: Optional[str] = None,
        priority: int = 0,
        delay: int = 0,
        idempotency_key: Optional[str] = None,
        headers: Optional[Dict[str, Any]] = None,
        metadata: Optional[Dict[str, Any]] = None,
        max_retries: Optional[int] = None,
        transport: Optional[str] = None,
    ) -> Envelope:
        """
        Wrap a message in an envelope and send it.

        Args:
            message: Application payload
            queue: Queue name (default queue if not specified)
            priority: Higher values are received first
            delay: Seconds before the message becomes available
            idempotency_key: Token that makes repeated dispatches a no-op
            headers: Extra headers
            metadata: Tracing/diagnostic context
            max_retries: Attempts before the worker rejects the message
            transport: Transport name (default transport if not specified)

        Returns:
            The sent envelope, with its id
        """
        target = self.get_transport(transport)
        envelope = Envelope(
            message=message,
            transport_name=target.name,
            queue_name=queue or self.default_queue,
            headers=dict(headers or {}),
            priority=priority,
            available_at=utcnow() + timedelta(seconds=delay) if delay > 0 else None,
            idempotency_key=idempotency_key,
            metadata=dict(metadata or {}),
            max_retries=self.max_retries if max_retries is None else max_retries,
        )
        await target.send(envelope)

        logger.info(
            f"Message {envelope.message_type} dispatched to queue '{envelope.queue_name}' "
            f"as {envelope.id}"
        )
        return envelope


# Global transport manager instance, created on first use
def messenger() -> TransportManager:
    return TransportManager()


# Helper function for dispatching messages
async def dispatch(message: Any, **options) -> Envelope:
    """
    Dispatch a message to its queue.

    Example:
        await dispatch(SendWelcomeEmail(to="user@example.com"), queue="emails", priority=5)
    """
    return await messenger().dispatch(message, **options)
