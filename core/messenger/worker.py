import asyncio
import logging
import signal
import traceback
from typing import Any, Awaitable, Callable, Dict, Optional

from core.messenger.database_transport import DatabaseTransport
from core.messenger.envelope import Envelope
from core.model import utcnow

logger = logging.getLogger("DbMessenger.MessageWorker")

Handler = Callable[[Envelope], Awaitable[Any]]


class MessageWorker:
    """
    Polls a transport and hands each claimed envelope to a handler.

    Success acknowledges the message. A failure releases it for another
    attempt while ``retry_count < max_retries`` and rejects it to the
    failed-messages archive once retries are exhausted.
    """

    def __init__(
        self,
        transport: DatabaseTransport,
        handler: Handler,
        batch_size: int = 10,
        sleep: float = 3,
        max_messages: Optional[int] = None,
        max_time: Optional[int] = None,
        timeout: Optional[float] = 60,
        retry_delay: int = 0,
        unlock_interval: Optional[float] = 60,
        install_signal_handlers: bool = True,
    ):
        """
        Initialize the message worker.

        Args:
            transport: Transport to receive from
            handler: Coroutine function called with each envelope
            batch_size: Number of messages claimed per poll
            sleep: Seconds to sleep when no message is available
            max_messages: Stop after processing this many messages
            max_time: Stop after running this many seconds
            timeout: Seconds a handler may run before it counts as failed
            retry_delay: Seconds a released message waits before it is eligible again
            unlock_interval: Seconds between stale-lock sweeps (None disables)
            install_signal_handlers: Stop gracefully on SIGTERM/SIGINT
        """
        self.transport = transport
        self.handler = handler
        self.batch_size = batch_size
        self.sleep = sleep
        self.max_messages = max_messages
        self.max_time = max_time
        self.timeout = timeout
        self.retry_delay = retry_delay
        self.unlock_interval = unlock_interval

        self.should_quit = False
        self.paused = False
        self.messages_processed = 0
        self.messages_succeeded = 0
        self.messages_released = 0
        self.messages_failed = 0
        self.messages_skipped = 0
        self.start_time = None
        self.last_unlock = None

        if install_signal_handlers:
            signal.signal(signal.SIGTERM, self._handle_signal)
            signal.signal(signal.SIGINT, self._handle_signal)

    def _handle_signal(self, signum, frame):
        """Handle shutdown signals."""
        logger.info(f"Received signal {signum}, initiating graceful shutdown...")
        self.should_quit = True

    async def work(self) -> None:
        """
        Start processing messages.
        This is the main worker loop.
        """
        logger.info(
            f"Message worker '{self.transport.worker_id}' started on transport "
            f"'{self.transport.name}' (batch size {self.batch_size})"
        )

        loop = asyncio.get_running_loop()
        self.start_time = loop.time()

        while not self.should_quit:
            if self._should_stop():
                logger.info("Worker stopping due to limits")
                break

            if self.paused:
                await asyncio.sleep(self.sleep)
                continue

            try:
                await self._maybe_unlock_expired(loop.time())

                envelopes = await self.transport.receive(self._next_batch_size())

                if envelopes:
                    # Finish the claimed batch even when a stop was requested
                    for envelope in envelopes:
                        await self._process_message(envelope)
                else:
                    logger.debug(f"No messages available, sleeping for {self.sleep}s")
                    await asyncio.sleep(self.sleep)

            except Exception as e:
                logger.error(f"Error in worker loop: {str(e)}")
                logger.debug(traceback.format_exc())
                await asyncio.sleep(self.sleep)

        logger.info(
            f"Message worker stopped. Processed {self.messages_processed} messages "
            f"({self.messages_succeeded} succeeded, {self.messages_released} released, "
            f"{self.messages_failed} failed, {self.messages_skipped} skipped)."
        )

    def _next_batch_size(self) -> int:
        if self.max_messages is None:
            return self.batch_size
        return max(0, min(self.batch_size, self.max_messages - self.messages_processed))

    async def _maybe_unlock_expired(self, now: float) -> None:
        if self.unlock_interval is None:
            return
        if self.last_unlock is not None and now - self.last_unlock < self.unlock_interval:
            return

        self.last_unlock = now
        await self.transport.unlock_expired_messages()

    def _lease_expired(self, envelope: Envelope) -> bool:
        if envelope.locked_at is None:
            return False
        return envelope.locked_at + self.transport.lock_duration <= utcnow()

    async def _process_message(self, envelope: Envelope) -> bool:
        """
        Process a single message.

        Envelopes whose lease ran out while earlier ones in the batch were
        handled are skipped; another worker may already own them.

        Args:
            envelope: Envelope claimed by this worker

        Returns:
            True if the handler succeeded
        """
        if self._lease_expired(envelope):
            self.messages_skipped += 1
            logger.warning(
                f"Skipping message {envelope.id} on queue '{envelope.queue_name}': "
                f"lease expired before it could be handled"
            )
            return False

        logger.info(
            f"Processing message {envelope.id} ({envelope.message_type}) "
            f"attempt {envelope.retry_count + 1}/{envelope.max_retries + 1}"
        )
        self.messages_processed += 1

        try:
            if self.timeout:
                await asyncio.wait_for(self.handler(envelope), timeout=self.timeout)
            else:
                await self.handler(envelope)

        except asyncio.TimeoutError as e:
            logger.error(f"Message {envelope.id} timed out after {self.timeout}s")
            await self._handle_failure(envelope, e)
            return False

        except Exception as e:
            logger.error(f"Message {envelope.id} failed: {str(e)}")
            logger.debug(traceback.format_exc())
            await self._handle_failure(envelope, e)
            return False

        if not await self.transport.acknowledge(envelope):
            return False

        self.messages_succeeded += 1
        logger.info(f"Message {envelope.id} completed successfully")
        return True

    async def _handle_failure(self, envelope: Envelope, exception: BaseException) -> None:
        """
        Retry or dead-letter a failed message.

        Args:
            envelope: The message that failed
            exception: The exception raised by the handler
        """
        if envelope.retry_count < envelope.max_retries:
            if await self.transport.release(envelope, self.retry_delay, exception):
                self.messages_released += 1
                logger.info(
                    f"Message {envelope.id} released back to queue '{envelope.queue_name}' "
                    f"(retry {envelope.retry_count}/{envelope.max_retries}, delay: {self.retry_delay}s)"
                )
        elif await self.transport.reject(envelope, exception):
            self.messages_failed += 1

    def _should_stop(self) -> bool:
        """Check if the worker should stop based on limits."""
        if self.max_messages and self.messages_processed >= self.max_messages:
            return True

        if self.max_time and self.start_time is not None:
            elapsed = asyncio.get_running_loop().time() - self.start_time
            if elapsed >= self.max_time:
                return True

        return False

    async def stats(self) -> Dict[str, Any]:
        """Counters plus the current pending depth of the transport."""
        try:
            queue_depth = await self.transport.get_queue_depth()
        except Exception as e:
            logger.warning(f"Failed to get queue depth: {e}")
            queue_depth = None

        return {
            "worker_id": self.transport.worker_id,
            "processed": self.messages_processed,
            "succeeded": self.messages_succeeded,
            "released": self.messages_released,
            "failed": self.messages_failed,
            "skipped": self.messages_skipped,
            "stale_acknowledgements": self.transport.stale_acknowledgements,
            "queue_depth": queue_depth,
        }

    def pause(self) -> None:
        """Pause the worker."""
        self.paused = True
        logger.info("Worker paused")

    def resume(self) -> None:
        """Resume the worker."""
        self.paused = False
        logger.info("Worker resumed")

    def stop(self) -> None:
        """Stop the worker gracefully."""
        self.should_quit = True
        logger.info("Worker stop requested")
