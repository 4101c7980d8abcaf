from abc import ABC, abstractmethod
from typing import List, Optional

from core.messenger.envelope import Envelope


class Transport(ABC):
    """
    Abstract base class for message transports.
    A transport instance is bound to one transport name and may serve many queues.
    """

    name: str

    @abstractmethod
    async def send(self, envelope: Envelope) -> Envelope:
        """
        Enqueue an envelope.

        Args:
            envelope: Envelope to store; its ``id`` is set on return

        Returns:
            The same envelope
        """
        pass

    @abstractmethod
    async def receive(self, batch_size: int = 1) -> List[Envelope]:
        """
        Claim up to ``batch_size`` eligible messages for this worker.

        Args:
            batch_size: Maximum number of messages to claim

        Returns:
            Claimed envelopes, highest priority first; empty when nothing is eligible
        """
        pass

    @abstractmethod
    async def acknowledge(self, envelope: Envelope) -> bool:
        """
        Mark a received message as completed.

        Args:
            envelope: Envelope returned by ``receive``

        Returns:
            False when the lease was no longer held and nothing changed
        """
        pass

    @abstractmethod
    async def reject(self, envelope: Envelope, error: BaseException) -> bool:
        """
        Archive a permanently failed message and mark it failed.

        Args:
            envelope: Envelope returned by ``receive``
            error: The exception that caused the failure

        Returns:
            False when the lease was no longer held and nothing was archived
        """
        pass

    @abstractmethod
    async def get_queue_depth(self, queue_name: Optional[str] = None) -> int:
        """
        Count pending messages.

        Args:
            queue_name: Restrict the count to one queue

        Returns:
            Number of pending messages
        """
        pass

    @abstractmethod
    async def unlock_expired_messages(self) -> int:
        """
        Return messages whose lease expired to the pending state.

        Returns:
            Number of messages unlocked
        """
        pass
