import logging
import traceback
from datetime import datetime, timedelta
from typing import List, Optional, Union

from sqlalchemy import and_, func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.messenger_failed_message import MessengerFailedMessage
from app.models.messenger_message import MessengerMessage, MessageStatus
from core.messenger.deduplication import Deduplicator
from core.messenger.envelope import Envelope
from core.messenger.errors import ErrorKind, LockError, SerializationError, TransportError
from core.messenger.serializer import JsonSerializer, Serializer
from core.messenger.transport import Transport
from core.model import Model, utcnow

logger = logging.getLogger("DbMessenger.DatabaseTransport")

DEFAULT_LOCK_DURATION = 300


class DatabaseTransport(Transport):
    """
    Database-backed transport using SQLAlchemy.

    Rows are leased to a worker by a single conditional UPDATE that re-checks
    eligibility at write time, so concurrent workers polling the same table
    never claim the same row. No broker, row lock or advisory lock is needed.
    """

    def __init__(
        self,
        name: str,
        worker_id: str,
        lock_duration: Union[int, float, timedelta] = DEFAULT_LOCK_DURATION,
        serializer: Optional[Serializer] = None,
        deduplicator: Optional[Deduplicator] = None,
    ):
        """
        Initialize the database transport.

        Args:
            name: Transport name stored on every row this instance sends or receives
            worker_id: Identity written to ``locked_by`` when this instance claims rows
            lock_duration: Lease length in seconds (or a timedelta)
            serializer: Codec for message bodies (JSON by default)
            deduplicator: Idempotency index; None disables deduplication
        """
        if not name:
            raise ValueError("Transport name must not be empty")
        if not worker_id:
            raise ValueError("Worker id must not be empty")

        self.name = name
        self.worker_id = worker_id
        if not isinstance(lock_duration, timedelta):
            lock_duration = timedelta(seconds=lock_duration)
        self.lock_duration = lock_duration
        self.serializer = serializer or JsonSerializer()
        self.deduplicator = deduplicator

        self.stale_acknowledgements = 0

    async def _get_session(self, kind: str, **context) -> AsyncSession:
        if not Model._is_enabled:
            logger.error("Cannot use database transport - database is disabled")
            raise TransportError(
                "Database is disabled. Enable it to use DatabaseTransport.",
                kind,
                transport=self.name,
                **context,
            )
        return await Model.get_session()

    def _validate(self, envelope: Envelope) -> None:
        problem = None
        if not envelope.transport_name:
            problem = "transport name is empty"
        elif envelope.transport_name != self.name:
            problem = f"transport name '{envelope.transport_name}' does not match '{self.name}'"
        elif not envelope.queue_name:
            problem = "queue name is empty"
        elif envelope.message is None:
            problem = "message is missing"

        if problem:
            raise TransportError(
                f"Invalid envelope: {problem}",
                ErrorKind.INVALID_ENVELOPE,
                transport=envelope.transport_name or self.name,
                queue=envelope.queue_name,
                message_id=envelope.id,
            )

    def _eligible(self, now: datetime):
        """Rows a worker may claim: unleased pending rows, or rows whose lease has run out."""
        return or_(
            and_(
                MessengerMessage.status == MessageStatus.PENDING,
                or_(
                    MessengerMessage.locked_at.is_(None),
                    MessengerMessage.lock_expires_at < now,
                ),
            ),
            and_(
                MessengerMessage.status == MessageStatus.PROCESSING,
                MessengerMessage.lock_expires_at < now,
            ),
        )

    def _holds_lease(self, row: MessengerMessage, envelope: Envelope) -> bool:
        """Python-side twin of ``_lease_holder`` for a row already loaded."""
        return (
            row.status == MessageStatus.PROCESSING
            and row.locked_by == (envelope.locked_by or self.worker_id)
            and (envelope.locked_at is None or row.locked_at == envelope.locked_at)
        )

    def _lease_holder(self, envelope: Envelope):
        conditions = [
            MessengerMessage.id == envelope.id,
            MessengerMessage.status == MessageStatus.PROCESSING,
            MessengerMessage.locked_by == (envelope.locked_by or self.worker_id),
        ]
        if envelope.locked_at is not None:
            conditions.append(MessengerMessage.locked_at == envelope.locked_at)
        return and_(*conditions)

    async def send(self, envelope: Envelope) -> Envelope:
        """Insert the envelope as a pending row, unless its idempotency key was already accepted."""
        self._validate(envelope)

        if envelope.idempotency_key and self.deduplicator is not None:
            try:
                existing_id = await self.deduplicator.check_duplicate(envelope)
            except Exception as e:
                logger.warning(
                    f"Deduplication check failed for key '{envelope.idempotency_key}' "
                    f"on queue '{envelope.queue_name}', continuing with send: {e}"
                )
                existing_id = None

            if existing_id is not None:
                envelope.id = existing_id
                logger.debug(
                    f"Duplicate send for key '{envelope.idempotency_key}' "
                    f"resolved to message {existing_id}"
                )
                return envelope

        try:
            body = self.serializer.serialize(envelope.message)
        except SerializationError as e:
            raise TransportError(
                f"Failed to serialize message for queue '{envelope.queue_name}': {e}",
                ErrorKind.SEND_FAILED,
                transport=self.name,
                queue=envelope.queue_name,
                cause=e,
            ) from e

        headers = dict(envelope.headers)
        headers.setdefault("type", self.serializer.message_type(envelope.message))

        now = utcnow()
        available_at = envelope.available_at or now
        if envelope.scheduled_at is not None and envelope.scheduled_at > available_at:
            available_at = envelope.scheduled_at

        session = await self._get_session(ErrorKind.SEND_FAILED, queue=envelope.queue_name)
        try:
            row = MessengerMessage(
                transport_name=envelope.transport_name,
                queue_name=envelope.queue_name,
                body=body,
                headers=headers,
                priority=envelope.priority,
                status=MessageStatus.PENDING,
                scheduled_at=envelope.scheduled_at,
                available_at=available_at,
                idempotency_key=envelope.idempotency_key,
                metadata_=dict(envelope.metadata),
                max_retries=envelope.max_retries,
                retry_count=envelope.retry_count,
                created_at=now,
            )

            session.add(row)
            await session.commit()
            envelope.id = row.id

        except Exception as e:
            await session.rollback()
            logger.error(f"Failed to send message to queue '{envelope.queue_name}': {str(e)}")
            raise TransportError(
                f"Failed to insert message into queue '{envelope.queue_name}': {e}",
                ErrorKind.SEND_FAILED,
                transport=self.name,
                queue=envelope.queue_name,
                cause=e,
            ) from e
        finally:
            await session.close()

        envelope.headers = headers
        envelope.available_at = available_at

        if envelope.idempotency_key and self.deduplicator is not None:
            try:
                await self.deduplicator.remember(envelope)
            except Exception as e:
                logger.warning(
                    f"Could not index idempotency key '{envelope.idempotency_key}' "
                    f"for message {envelope.id}: {e}"
                )

        logger.debug(
            f"Message {envelope.id} sent to queue '{envelope.queue_name}' "
            f"(priority {envelope.priority})"
        )
        return envelope

    async def receive(self, batch_size: int = 1) -> List[Envelope]:
        """Claim up to ``batch_size`` eligible rows for this worker."""
        if batch_size <= 0:
            return []

        now = utcnow()
        lock_expires_at = now + self.lock_duration

        session = await self._get_session(ErrorKind.RECEIVE_FAILED, batch_size=batch_size)
        try:
            candidate_ids = await self._select_candidates(session, now, batch_size)
            if not candidate_ids:
                return []

            claimed = await self._claim(session, candidate_ids, now, lock_expires_at)
            if claimed == 0:
                logger.debug(
                    f"Lost the claim on {len(candidate_ids)} candidate(s) to another worker"
                )
                return []

            rows = await self._load_claimed(session, candidate_ids, now)

        except TransportError:
            raise
        except Exception as e:
            await session.rollback()
            logger.error(f"Failed to receive messages from transport '{self.name}': {str(e)}")
            raise TransportError(
                f"Failed to receive messages from transport '{self.name}': {e}",
                ErrorKind.RECEIVE_FAILED,
                transport=self.name,
                cause=e,
                batch_size=batch_size,
            ) from e
        finally:
            await session.close()

        envelopes = []
        for row in rows:
            try:
                envelopes.append(self._row_to_envelope(row))
            except Exception as e:
                # The row keeps its lease and comes back once the lease expires
                logger.error(
                    f"Skipping message {row.id} on queue '{row.queue_name}': "
                    f"cannot convert row to envelope: {e}"
                )

        logger.debug(f"Received {len(envelopes)} message(s) from transport '{self.name}'")
        return envelopes

    async def _select_candidates(
        self, session: AsyncSession, now: datetime, batch_size: int
    ) -> List[int]:
        stmt = (
            select(MessengerMessage.id)
            .where(
                MessengerMessage.transport_name == self.name,
                MessengerMessage.available_at <= now,
                self._eligible(now),
            )
            .order_by(
                MessengerMessage.priority.desc(),
                MessengerMessage.available_at.asc(),
                MessengerMessage.id.asc(),
            )
            .limit(batch_size)
        )
        result = await session.execute(stmt)
        return list(result.scalars().all())

    async def _claim(
        self,
        session: AsyncSession,
        candidate_ids: List[int],
        now: datetime,
        lock_expires_at: datetime,
    ) -> int:
        # Eligibility is re-checked inside the UPDATE; rows taken meanwhile are skipped
        stmt = (
            update(MessengerMessage)
            .where(
                MessengerMessage.id.in_(candidate_ids),
                MessengerMessage.transport_name == self.name,
                self._eligible(now),
            )
            .values(
                status=MessageStatus.PROCESSING,
                locked_at=now,
                locked_by=self.worker_id,
                lock_expires_at=lock_expires_at,
            )
            .execution_options(synchronize_session=False)
        )

        try:
            result = await session.execute(stmt)
            await session.commit()
        except Exception as e:
            await session.rollback()
            logger.error(f"Failed to lock messages {candidate_ids}: {str(e)}")
            raise LockError(
                f"Failed to lock messages: {e}",
                transport=self.name,
                cause=e,
                message_ids=candidate_ids,
            ) from e

        return result.rowcount

    async def _load_claimed(
        self, session: AsyncSession, candidate_ids: List[int], now: datetime
    ) -> List[MessengerMessage]:
        # (locked_by, locked_at) identifies the rows this call won
        stmt = (
            select(MessengerMessage)
            .where(
                MessengerMessage.id.in_(candidate_ids),
                MessengerMessage.status == MessageStatus.PROCESSING,
                MessengerMessage.locked_by == self.worker_id,
                MessengerMessage.locked_at == now,
            )
            .order_by(
                MessengerMessage.priority.desc(),
                MessengerMessage.available_at.asc(),
                MessengerMessage.id.asc(),
            )
        )
        result = await session.execute(stmt)
        return list(result.scalars().all())

    def _row_to_envelope(self, row: MessengerMessage) -> Envelope:
        return Envelope(
            message=self.serializer.deserialize(row.body),
            transport_name=row.transport_name,
            queue_name=row.queue_name,
            id=row.id,
            headers=dict(row.headers or {}),
            priority=row.priority,
            scheduled_at=row.scheduled_at,
            available_at=row.available_at,
            idempotency_key=row.idempotency_key,
            metadata=dict(row.metadata_ or {}),
            retry_count=row.retry_count,
            max_retries=row.max_retries,
            locked_by=row.locked_by,
            locked_at=row.locked_at,
        )

    async def acknowledge(self, envelope: Envelope) -> bool:
        """Mark the message completed if this worker still holds its lease."""
        session = await self._get_session(
            ErrorKind.ACKNOWLEDGE_FAILED, queue=envelope.queue_name, message_id=envelope.id
        )
        try:
            stmt = (
                update(MessengerMessage)
                .where(self._lease_holder(envelope))
                .values(
                    status=MessageStatus.COMPLETED,
                    processed_at=utcnow(),
                    locked_at=None,
                    locked_by=None,
                    lock_expires_at=None,
                )
                .execution_options(synchronize_session=False)
            )

            result = await session.execute(stmt)
            await session.commit()

        except Exception as e:
            await session.rollback()
            logger.error(f"Failed to acknowledge message {envelope.id}: {str(e)}")
            raise TransportError(
                f"Failed to acknowledge message {envelope.id}: {e}",
                ErrorKind.ACKNOWLEDGE_FAILED,
                transport=self.name,
                queue=envelope.queue_name,
                message_id=envelope.id,
                cause=e,
            ) from e
        finally:
            await session.close()

        if result.rowcount == 0:
            self.stale_acknowledgements += 1
            logger.warning(
                f"Stale acknowledge for message {envelope.id} on queue '{envelope.queue_name}': "
                f"lease no longer held by '{envelope.locked_by or self.worker_id}'"
            )
            return False

        logger.debug(f"Message {envelope.id} acknowledged")
        return True

    async def release(
        self,
        envelope: Envelope,
        delay: int = 0,
        error: Optional[BaseException] = None,
    ) -> bool:
        """
        Put a received message back to pending for another attempt.

        Args:
            envelope: Envelope returned by ``receive``
            delay: Seconds before the message becomes eligible again
            error: Failure that triggered the retry, recorded on the row

        Returns:
            False when the lease was no longer held and nothing changed
        """
        session = await self._get_session(
            ErrorKind.RELEASE_FAILED, queue=envelope.queue_name, message_id=envelope.id
        )
        try:
            values = dict(
                status=MessageStatus.PENDING,
                retry_count=MessengerMessage.retry_count + 1,
                available_at=utcnow() + timedelta(seconds=delay),
                locked_at=None,
                locked_by=None,
                lock_expires_at=None,
            )
            if error is not None:
                values.update(last_error=str(error), error_class=error.__class__.__name__)

            stmt = (
                update(MessengerMessage)
                .where(self._lease_holder(envelope))
                .values(**values)
                .execution_options(synchronize_session=False)
            )

            result = await session.execute(stmt)
            await session.commit()

        except Exception as e:
            await session.rollback()
            logger.error(f"Failed to release message {envelope.id}: {str(e)}")
            raise TransportError(
                f"Failed to release message {envelope.id}: {e}",
                ErrorKind.RELEASE_FAILED,
                transport=self.name,
                queue=envelope.queue_name,
                message_id=envelope.id,
                cause=e,
            ) from e
        finally:
            await session.close()

        if result.rowcount == 0:
            logger.warning(
                f"Stale release for message {envelope.id} on queue '{envelope.queue_name}': "
                f"lease no longer held"
            )
            return False

        envelope.retry_count += 1
        envelope.locked_at = None
        envelope.locked_by = None
        logger.debug(
            f"Message {envelope.id} released back to queue '{envelope.queue_name}' "
            f"with delay {delay}s (retry {envelope.retry_count}/{envelope.max_retries})"
        )
        return True

    async def reject(self, envelope: Envelope, error: BaseException) -> bool:
        """
        Archive the message in messenger_failed_messages, then mark its row failed.

        Returns:
            False when the lease was no longer held; nothing is archived then
        """
        session = await self._get_session(
            ErrorKind.REJECT_FAILED, queue=envelope.queue_name, message_id=envelope.id
        )
        try:
            result = await session.execute(
                select(MessengerMessage).where(MessengerMessage.id == envelope.id)
            )
            row = result.scalars().first()
            if row is None:
                raise TransportError(
                    f"Failed to fetch message {envelope.id} for rejection: not found",
                    ErrorKind.REJECT_FAILED,
                    transport=self.name,
                    queue=envelope.queue_name,
                    message_id=envelope.id,
                )

            if not self._holds_lease(row, envelope):
                logger.warning(
                    f"Stale reject for message {envelope.id} on queue '{envelope.queue_name}': "
                    f"row is {row.status} and leased to '{row.locked_by}', not archiving"
                )
                return False

            error_trace = None
            if error.__traceback__ is not None:
                error_trace = "".join(
                    traceback.format_exception(type(error), error, error.__traceback__)
                )

            now = utcnow()
            session.add(
                MessengerFailedMessage(
                    message_id=row.id,
                    transport_name=row.transport_name,
                    queue_name=row.queue_name,
                    body=row.body,
                    headers=row.headers,
                    error=str(error),
                    error_class=error.__class__.__name__,
                    error_trace=error_trace,
                    retry_count=row.retry_count,
                    max_retries=row.max_retries,
                    metadata_=row.metadata_,
                    idempotency_key=row.idempotency_key,
                    failed_at=now,
                    created_at=now,
                )
            )
            await session.commit()

            # A crash here leaves the row processing; the sweep returns it to pending
            result = await session.execute(
                update(MessengerMessage)
                .where(self._lease_holder(envelope))
                .values(
                    status=MessageStatus.FAILED,
                    processed_at=now,
                    last_error=str(error),
                    error_class=error.__class__.__name__,
                    locked_at=None,
                    locked_by=None,
                    lock_expires_at=None,
                )
                .execution_options(synchronize_session=False)
            )
            await session.commit()

        except TransportError:
            raise
        except Exception as e:
            await session.rollback()
            logger.error(f"Failed to reject message {envelope.id}: {str(e)}")
            raise TransportError(
                f"Failed to reject message {envelope.id}: {e}",
                ErrorKind.REJECT_FAILED,
                transport=self.name,
                queue=envelope.queue_name,
                message_id=envelope.id,
                cause=e,
            ) from e
        finally:
            await session.close()

        if result.rowcount == 0:
            # Lease lost between the fetch and the update; the archive row stays
            logger.warning(
                f"Message {envelope.id} archived but its lease was lost before it "
                f"could be marked failed"
            )
            return False

        logger.info(
            f"Message {envelope.id} moved to failed messages for queue "
            f"'{envelope.queue_name}' ({error.__class__.__name__}: {error})"
        )
        return True

    async def get_queue_depth(self, queue_name: Optional[str] = None) -> int:
        """Number of pending messages on this transport, optionally for one queue."""
        session = await self._get_session(ErrorKind.MAINTENANCE_FAILED, queue=queue_name)
        try:
            stmt = select(func.count(MessengerMessage.id)).where(
                MessengerMessage.transport_name == self.name,
                MessengerMessage.status == MessageStatus.PENDING,
            )
            if queue_name:
                stmt = stmt.where(MessengerMessage.queue_name == queue_name)

            result = await session.execute(stmt)
            return result.scalar_one()

        except Exception as e:
            logger.error(f"Failed to get queue depth: {str(e)}")
            raise TransportError(
                f"Failed to get queue depth: {e}",
                ErrorKind.MAINTENANCE_FAILED,
                transport=self.name,
                queue=queue_name,
                cause=e,
            ) from e
        finally:
            await session.close()

    async def unlock_expired_messages(self) -> int:
        """Return processing rows whose lease has expired to pending."""
        session = await self._get_session(ErrorKind.MAINTENANCE_FAILED)
        try:
            stmt = (
                update(MessengerMessage)
                .where(
                    MessengerMessage.transport_name == self.name,
                    MessengerMessage.status == MessageStatus.PROCESSING,
                    MessengerMessage.lock_expires_at < utcnow(),
                )
                .values(
                    status=MessageStatus.PENDING,
                    locked_at=None,
                    locked_by=None,
                    lock_expires_at=None,
                )
                .execution_options(synchronize_session=False)
            )

            result = await session.execute(stmt)
            await session.commit()

        except Exception as e:
            await session.rollback()
            logger.error(f"Failed to unlock expired messages: {str(e)}")
            raise TransportError(
                f"Failed to unlock expired messages: {e}",
                ErrorKind.MAINTENANCE_FAILED,
                transport=self.name,
                cause=e,
            ) from e
        finally:
            await session.close()

        if result.rowcount:
            logger.info(
                f"Unlocked {result.rowcount} expired message(s) on transport '{self.name}'"
            )
        return result.rowcount

    async def find(self, message_id: int) -> Optional[MessengerMessage]:
        """Current row for a message id, for inspection."""
        session = await self._get_session(ErrorKind.MAINTENANCE_FAILED, message_id=message_id)
        try:
            result = await session.execute(
                select(MessengerMessage).where(MessengerMessage.id == message_id)
            )
            return result.scalars().first()

        except Exception as e:
            logger.error(f"Failed to find message {message_id}: {str(e)}")
            raise TransportError(
                f"Failed to find message {message_id}: {e}",
                ErrorKind.MAINTENANCE_FAILED,
                transport=self.name,
                message_id=message_id,
                cause=e,
            ) from e
        finally:
            await session.close()

    async def get_failed_messages(
        self, queue_name: Optional[str] = None, limit: int = 50
    ) -> List[MessengerFailedMessage]:
        """Dead-letter rows of this transport, newest first."""
        session = await self._get_session(ErrorKind.MAINTENANCE_FAILED, queue=queue_name)
        try:
            stmt = select(MessengerFailedMessage).where(
                MessengerFailedMessage.transport_name == self.name
            )
            if queue_name:
                stmt = stmt.where(MessengerFailedMessage.queue_name == queue_name)
            stmt = stmt.order_by(MessengerFailedMessage.id.desc()).limit(limit)

            result = await session.execute(stmt)
            return list(result.scalars().all())

        except Exception as e:
            logger.error(f"Failed to list failed messages: {str(e)}")
            raise TransportError(
                f"Failed to list failed messages: {e}",
                ErrorKind.MAINTENANCE_FAILED,
                transport=self.name,
                queue=queue_name,
                cause=e,
            ) from e
        finally:
            await session.close()

    def __repr__(self):
        return (
            f"<DatabaseTransport(name='{self.name}', worker_id='{self.worker_id}', "
            f"lock_duration={self.lock_duration.total_seconds():g}s)>"
        )
