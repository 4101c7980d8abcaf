import logging
from abc import ABC, abstractmethod
from datetime import datetime, timedelta
from typing import Dict, Optional, Tuple

from sqlalchemy import select

from app.models.messenger_message import MessengerMessage
from core.messenger.envelope import Envelope
from core.model import Model, utcnow
from core.redis_manager import RedisManager

logger = logging.getLogger("DbMessenger.Deduplication")

DEFAULT_WINDOW_SECONDS = 24 * 60 * 60


class Deduplicator(ABC):
    """
    Idempotency-key index consulted by ``send``.

    Lookups must be safe to call speculatively. The transport treats any
    exception raised here as non-fatal and falls back to a plain insert.
    """

    def __init__(self, window_seconds: int = DEFAULT_WINDOW_SECONDS):
        self.window = timedelta(seconds=window_seconds)

    @abstractmethod
    async def check_duplicate(self, envelope: Envelope) -> Optional[int]:
        """
        Look up a previously accepted message with the same idempotency key.

        Args:
            envelope: Envelope about to be sent

        Returns:
            Id of the earlier message, or None
        """
        pass

    async def remember(self, envelope: Envelope) -> None:
        """Record the id assigned to a freshly inserted keyed envelope."""
        return None


class InMemoryDeduplicator(Deduplicator):
    """Process-local index. Suitable for tests and single-process deployments."""

    def __init__(self, window_seconds: int = DEFAULT_WINDOW_SECONDS):
        super().__init__(window_seconds)
        self._entries: Dict[Tuple[str, str], Tuple[int, datetime]] = {}

    async def check_duplicate(self, envelope: Envelope) -> Optional[int]:
        if not envelope.idempotency_key:
            return None

        entry = self._entries.get((envelope.transport_name, envelope.idempotency_key))
        if entry is None:
            return None

        message_id, recorded_at = entry
        if recorded_at < utcnow() - self.window:
            del self._entries[(envelope.transport_name, envelope.idempotency_key)]
            return None
        return message_id

    async def remember(self, envelope: Envelope) -> None:
        if envelope.idempotency_key and envelope.id is not None:
            self._entries.setdefault(
                (envelope.transport_name, envelope.idempotency_key),
                (envelope.id, utcnow()),
            )

    def clear(self) -> None:
        self._entries.clear()


class DatabaseDeduplicator(Deduplicator):
    """Finds the newest row on the same transport carrying the key inside the window."""

    async def check_duplicate(self, envelope: Envelope) -> Optional[int]:
        if not envelope.idempotency_key:
            return None

        session = await Model.get_session()
        if session is None:
            return None

        try:
            stmt = (
                select(MessengerMessage.id)
                .where(
                    MessengerMessage.idempotency_key == envelope.idempotency_key,
                    MessengerMessage.transport_name == envelope.transport_name,
                    MessengerMessage.created_at >= utcnow() - self.window,
                )
                .order_by(MessengerMessage.created_at.desc(), MessengerMessage.id.desc())
                .limit(1)
            )
            result = await session.execute(stmt)
            return result.scalars().first()
        finally:
            await session.close()


class RedisDeduplicator(Deduplicator):
    """Key/value index in Redis; entries expire with the window."""

    def __init__(
        self,
        redis_manager: Optional[RedisManager] = None,
        window_seconds: int = DEFAULT_WINDOW_SECONDS,
        prefix: str = "dbmessenger:idempotency",
    ):
        super().__init__(window_seconds)
        self.redis = redis_manager or RedisManager()
        self.prefix = prefix

    def _get_key(self, envelope: Envelope) -> str:
        return f"{self.prefix}:{envelope.transport_name}:{envelope.idempotency_key}"

    async def check_duplicate(self, envelope: Envelope) -> Optional[int]:
        if not envelope.idempotency_key:
            return None
        if not self.redis.is_enabled():
            raise RuntimeError("Redis is disabled. Enable it to use RedisDeduplicator.")

        value = await self.redis.get(self._get_key(envelope))
        return int(value) if value is not None else None

    async def remember(self, envelope: Envelope) -> None:
        if not envelope.idempotency_key or envelope.id is None:
            return

        written = await self.redis.set(
            self._get_key(envelope),
            envelope.id,
            ex=int(self.window.total_seconds()),
            nx=True,
        )
        if not written:
            logger.debug(
                f"Idempotency key '{envelope.idempotency_key}' already indexed, "
                f"keeping earlier message id"
            )
