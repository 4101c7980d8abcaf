import unittest
from datetime import timedelta
from unittest.mock import AsyncMock, MagicMock, patch

from sqlalchemy.exc import OperationalError
from sqlalchemy.ext.asyncio import AsyncSession

from app.handlers.example_handler import SendWelcomeEmail
from app.models.messenger_failed_message import MessengerFailedMessage
from app.models.messenger_message import MessengerMessage, MessageStatus
from core.messenger.deduplication import DatabaseDeduplicator, InMemoryDeduplicator
from core.messenger.envelope import Envelope
from core.messenger.errors import ErrorKind, LockError, TransportError
from core.messenger.transport import Transport
from core.model import Model, utcnow
from tests.unit.database_test_case import DatabaseTestCase


def make_envelope(message, queue="q", **kwargs):
    return Envelope(message=message, transport_name="database", queue_name=queue, **kwargs)


class TestDatabaseTransportSend(DatabaseTestCase):
    async def test_send_stores_pending_row(self):
        """Test that send inserts a pending, unlocked row and writes the id back."""
        transport = self.make_transport()
        envelope = make_envelope({"order": 42}, priority=3, metadata={"trace": "abc"})

        result = await transport.send(envelope)

        self.assertIs(result, envelope)
        self.assertIsNotNone(envelope.id)

        row = await self.get_row(envelope.id)
        self.assertEqual(row.status, MessageStatus.PENDING)
        self.assertEqual(row.queue_name, "q")
        self.assertEqual(row.priority, 3)
        self.assertEqual(row.headers["type"], "dict")
        self.assertEqual(row.metadata_, {"trace": "abc"})
        self.assertIsNone(row.locked_at)
        self.assertIsNone(row.locked_by)
        self.assertIsNone(row.lock_expires_at)
        self.assertEqual(row.retry_count, 0)

    async def test_send_keeps_message_type(self):
        """Test that Message payloads come back as the same class with the class path as type."""
        transport = self.make_transport()
        message = SendWelcomeEmail(to="ada@example.com", name="Ada")
        sent = await transport.send(make_envelope(message))

        [received] = await transport.receive()

        self.assertEqual(received.id, sent.id)
        self.assertEqual(received.message, message)
        self.assertEqual(
            received.message_type, "app.handlers.example_handler.SendWelcomeEmail"
        )

    async def test_invalid_envelope_fails_before_io(self):
        """Test that an invalid envelope is rejected without touching storage or the index."""
        deduplicator = MagicMock()
        deduplicator.check_duplicate = AsyncMock(return_value=None)
        transport = self.make_transport(deduplicator=deduplicator)

        invalid = [
            Envelope(message={"a": 1}, transport_name="", queue_name="q"),
            Envelope(message={"a": 1}, transport_name="database", queue_name=""),
            Envelope(message=None, transport_name="database", queue_name="q", idempotency_key="k"),
            Envelope(message={"a": 1}, transport_name="other", queue_name="q"),
        ]

        with patch.object(Model, "get_session", new=AsyncMock()) as get_session:
            for envelope in invalid:
                with self.assertRaises(TransportError) as ctx:
                    await transport.send(envelope)
                self.assertEqual(ctx.exception.kind, ErrorKind.INVALID_ENVELOPE)

            get_session.assert_not_called()
        deduplicator.check_duplicate.assert_not_called()

    async def test_idempotent_send_with_different_bodies(self):
        """Test that two sends with the same key store one row and share an id."""
        transport = self.make_transport(deduplicator=DatabaseDeduplicator())

        first = await transport.send(make_envelope({"body": 1}, idempotency_key="order-1"))
        second = await transport.send(make_envelope({"body": 2}, idempotency_key="order-1"))

        self.assertEqual(first.id, second.id)
        rows = await Model.all(MessengerMessage)
        self.assertEqual(len(rows), 1)
        self.assertIn('"body": 1', rows[0].body)

    async def test_idempotency_key_scoped_to_transport(self):
        """Test that the same key on another transport is a separate message."""
        deduplicator = DatabaseDeduplicator()
        first = await self.make_transport(deduplicator=deduplicator).send(
            make_envelope({"n": 1}, idempotency_key="k")
        )
        other = self.make_transport(name="other", deduplicator=deduplicator)
        second = await other.send(
            Envelope(message={"n": 2}, transport_name="other", queue_name="q", idempotency_key="k")
        )

        self.assertNotEqual(first.id, second.id)

    async def test_send_for_another_transport_is_refused(self):
        """Test that an envelope addressed to another transport is not stored where nobody reads it."""
        transport = self.make_transport()

        with self.assertRaises(TransportError) as ctx:
            await transport.send(
                Envelope(message={"n": 1}, transport_name="other", queue_name="q")
            )

        self.assertEqual(ctx.exception.kind, ErrorKind.INVALID_ENVELOPE)
        self.assertEqual(ctx.exception.transport, "other")
        self.assertEqual(await Model.all(MessengerMessage), [])

    async def test_send_without_deduplicator_inserts_every_time(self):
        """Test that keys are ignored when deduplication is disabled."""
        transport = self.make_transport()

        first = await transport.send(make_envelope({"n": 1}, idempotency_key="k"))
        second = await transport.send(make_envelope({"n": 2}, idempotency_key="k"))

        self.assertNotEqual(first.id, second.id)

    async def test_deduplication_failure_falls_through_to_insert(self):
        """Test that a failing idempotency lookup is logged and the message is still stored."""
        deduplicator = MagicMock()
        deduplicator.check_duplicate = AsyncMock(side_effect=RuntimeError("index down"))
        deduplicator.remember = AsyncMock(side_effect=RuntimeError("index down"))
        transport = self.make_transport(deduplicator=deduplicator)

        with self.assertLogs("DbMessenger.DatabaseTransport", level="WARNING") as logs:
            envelope = await transport.send(make_envelope({"n": 1}, idempotency_key="k"))

        self.assertIsNotNone(envelope.id)
        self.assertIsNotNone(await self.get_row(envelope.id))
        self.assertTrue(any("index down" in line for line in logs.output))

    async def test_in_memory_deduplicator_resolves_duplicate(self):
        """Test that a remembered key short-circuits the second send."""
        transport = self.make_transport(deduplicator=InMemoryDeduplicator())

        first = await transport.send(make_envelope({"n": 1}, idempotency_key="k"))
        second = await transport.send(make_envelope({"n": 2}, idempotency_key="k"))

        self.assertEqual(first.id, second.id)
        self.assertEqual(len(await Model.all(MessengerMessage)), 1)

    async def test_unserializable_message_raises_send_failed(self):
        """Test that a body the serializer cannot encode fails with send-failed."""
        transport = self.make_transport()

        with self.assertRaises(TransportError) as ctx:
            await transport.send(make_envelope({"when": object()}))

        self.assertEqual(ctx.exception.kind, ErrorKind.SEND_FAILED)
        self.assertEqual(await Model.all(MessengerMessage), [])

    async def test_storage_failure_raises_send_failed_with_cause(self):
        """Test that an insert failure is wrapped with the queue and the underlying cause."""
        transport = self.make_transport()
        failure = OperationalError("INSERT", {}, Exception("disk I/O error"))

        with patch.object(AsyncSession, "commit", new=AsyncMock(side_effect=failure)):
            with self.assertRaises(TransportError) as ctx:
                await transport.send(make_envelope({"n": 1}))

        self.assertEqual(ctx.exception.kind, ErrorKind.SEND_FAILED)
        self.assertEqual(ctx.exception.queue, "q")
        self.assertIs(ctx.exception.cause, failure)

    async def test_send_with_database_disabled(self):
        """Test that send fails with send-failed when no database is configured."""
        transport = self.make_transport()
        await Model.cleanup()

        with self.assertRaises(TransportError) as ctx:
            await transport.send(make_envelope({"n": 1}))

        self.assertEqual(ctx.exception.kind, ErrorKind.SEND_FAILED)

    async def test_scheduled_message_not_received_early(self):
        """Test that a message scheduled in the future is stored but not yet received."""
        transport = self.make_transport()
        scheduled_at = utcnow() + timedelta(hours=1)

        envelope = await transport.send(make_envelope({"n": 1}, scheduled_at=scheduled_at))

        self.assertEqual(envelope.available_at, scheduled_at)
        self.assertEqual(await transport.receive(), [])
        self.assertEqual(await transport.get_queue_depth("q"), 1)


class TestDatabaseTransportReceive(DatabaseTestCase):
    async def test_receive_empty_queue(self):
        """Test that receive on an empty table returns an empty list."""
        transport = self.make_transport()
        self.assertEqual(await transport.receive(5), [])
        self.assertEqual(await transport.receive(0), [])

    async def test_receive_leases_row(self):
        """Test that a received row is marked processing and leased to this worker."""
        transport = self.make_transport(lock_duration=120)
        sent = await transport.send(make_envelope({"n": 1}))

        [envelope] = await transport.receive()

        row = await self.get_row(sent.id)
        self.assertEqual(row.status, MessageStatus.PROCESSING)
        self.assertEqual(row.locked_by, "worker-a")
        self.assertEqual(row.lock_expires_at - row.locked_at, timedelta(seconds=120))
        self.assertEqual(envelope.locked_by, "worker-a")
        self.assertEqual(envelope.locked_at, row.locked_at)
        self.assertEqual(envelope.message, {"n": 1})

    async def test_priority_ordering(self):
        """Test that one receive returns rows by descending priority."""
        transport = self.make_transport()
        for priority in [1, 5, 3]:
            await transport.send(make_envelope({"priority": priority}, priority=priority))

        envelopes = await transport.receive(3)

        self.assertEqual([e.priority for e in envelopes], [5, 3, 1])

    async def test_same_priority_delivered_oldest_first(self):
        """Test that equal-priority rows come back in available_at order."""
        transport = self.make_transport()
        now = utcnow()
        await transport.send(make_envelope({"n": "late"}, available_at=now - timedelta(seconds=1)))
        await transport.send(make_envelope({"n": "early"}, available_at=now - timedelta(seconds=5)))

        envelopes = await transport.receive(2)

        self.assertEqual([e.message["n"] for e in envelopes], ["early", "late"])

    async def test_end_to_end_scenario(self):
        """Test send, receive, acknowledge and receive again across three priorities."""
        transport = self.make_transport()
        for priority in [10, 5, 1]:
            await transport.send(make_envelope({"priority": priority}, priority=priority))

        first = await transport.receive(2)
        self.assertEqual([e.priority for e in first], [10, 5])

        self.assertTrue(await transport.acknowledge(first[0]))
        self.assertEqual(await transport.get_queue_depth("q"), 1)

        second = await transport.receive(2)
        self.assertEqual([e.priority for e in second], [1])

        row = await self.get_row(first[0].id)
        self.assertEqual(row.status, MessageStatus.COMPLETED)
        self.assertIsNotNone(row.processed_at)
        self.assertIsNone(row.locked_by)

    async def test_receive_only_own_transport(self):
        """Test that a transport never claims rows written for another transport."""
        await self.make_transport(name="other").send(
            Envelope(message={"n": 1}, transport_name="other", queue_name="q")
        )

        self.assertEqual(await self.make_transport().receive(5), [])

    async def test_lease_expiry_reclaim_before_sweep(self):
        """Test that a row whose lease ran out can be received by another worker without a sweep."""
        worker_a = self.make_transport("worker-a")
        worker_b = self.make_transport("worker-b")
        sent = await worker_a.send(make_envelope({"n": 1}))

        [claimed] = await worker_a.receive()
        self.assertEqual(await worker_b.receive(), [])

        await self.expire_lease(sent.id)
        [reclaimed] = await worker_b.receive()

        self.assertEqual(reclaimed.id, claimed.id)
        row = await self.get_row(sent.id)
        self.assertEqual(row.status, MessageStatus.PROCESSING)
        self.assertEqual(row.locked_by, "worker-b")

    async def test_poison_row_is_skipped(self):
        """Test that a row whose body cannot be decoded is logged and left out of the batch."""
        transport = self.make_transport()
        bad = await transport.send(make_envelope({"n": "bad"}, priority=10))
        good = await transport.send(make_envelope({"n": "good"}))
        await self.update_row(bad.id, body="not json")

        with self.assertLogs("DbMessenger.DatabaseTransport", level="ERROR") as logs:
            envelopes = await transport.receive(2)

        self.assertEqual([e.id for e in envelopes], [good.id])
        self.assertTrue(any(f"Skipping message {bad.id}" in line for line in logs.output))
        row = await self.get_row(bad.id)
        self.assertEqual(row.status, MessageStatus.PROCESSING)

    async def test_failed_claim_raises_lock_error(self):
        """Test that an error in the claim statement surfaces as a LockError and leaves rows pending."""
        transport = self.make_transport()
        sent = await transport.send(make_envelope({"n": 1}))

        original_execute = AsyncSession.execute
        statements = []

        async def failing_execute(session, statement, *args, **kwargs):
            statements.append(statement)
            if len(statements) == 2:
                raise OperationalError("UPDATE", {}, Exception("database is locked"))
            return await original_execute(session, statement, *args, **kwargs)

        with patch.object(AsyncSession, "execute", new=failing_execute):
            with self.assertRaises(LockError) as ctx:
                await transport.receive()

        self.assertEqual(ctx.exception.kind, ErrorKind.LOCK_ERROR)
        self.assertEqual(ctx.exception.context["message_ids"], [sent.id])
        row = await self.get_row(sent.id)
        self.assertEqual(row.status, MessageStatus.PENDING)

    async def test_failed_select_raises_receive_failed(self):
        """Test that a storage error while selecting candidates is a receive-failed error."""
        transport = self.make_transport()
        failure = OperationalError("SELECT", {}, Exception("no such table"))

        with patch.object(AsyncSession, "execute", new=AsyncMock(side_effect=failure)):
            with self.assertRaises(TransportError) as ctx:
                await transport.receive()

        self.assertEqual(ctx.exception.kind, ErrorKind.RECEIVE_FAILED)
        self.assertNotIsInstance(ctx.exception, LockError)


class TestDatabaseTransportAcknowledge(DatabaseTestCase):
    async def test_fenced_acknowledge_after_reclaim(self):
        """Test that the original worker cannot complete a row another worker reclaimed."""
        worker_a = self.make_transport("worker-a")
        worker_b = self.make_transport("worker-b")
        sent = await worker_a.send(make_envelope({"n": 1}))

        [stale] = await worker_a.receive()
        await self.expire_lease(sent.id)
        [current] = await worker_b.receive()

        with self.assertLogs("DbMessenger.DatabaseTransport", level="WARNING"):
            self.assertFalse(await worker_a.acknowledge(stale))

        self.assertEqual(worker_a.stale_acknowledgements, 1)
        row = await self.get_row(sent.id)
        self.assertEqual(row.status, MessageStatus.PROCESSING)
        self.assertEqual(row.locked_by, "worker-b")

        self.assertTrue(await worker_b.acknowledge(current))
        row = await self.get_row(sent.id)
        self.assertEqual(row.status, MessageStatus.COMPLETED)
        self.assertIsNone(row.locked_at)
        self.assertIsNone(row.lock_expires_at)

    async def test_fenced_acknowledge_same_worker_reclaim(self):
        """Test that a worker's own earlier lease is fenced by its lock timestamp."""
        transport = self.make_transport()
        sent = await transport.send(make_envelope({"n": 1}))

        [first] = await transport.receive()
        await self.expire_lease(sent.id)
        [second] = await transport.receive()

        self.assertNotEqual(first.locked_at, second.locked_at)
        with self.assertLogs("DbMessenger.DatabaseTransport", level="WARNING"):
            self.assertFalse(await transport.acknowledge(first))
        self.assertTrue(await transport.acknowledge(second))

    async def test_acknowledge_twice(self):
        """Test that a second acknowledge of the same envelope changes nothing."""
        transport = self.make_transport()
        await transport.send(make_envelope({"n": 1}))
        [envelope] = await transport.receive()

        self.assertTrue(await transport.acknowledge(envelope))
        with self.assertLogs("DbMessenger.DatabaseTransport", level="WARNING"):
            self.assertFalse(await transport.acknowledge(envelope))


class TestDatabaseTransportRelease(DatabaseTestCase):
    async def test_release_returns_row_for_retry(self):
        """Test that release bumps retry_count, records the error and makes the row eligible."""
        transport = self.make_transport()
        sent = await transport.send(make_envelope({"n": 1}))
        [envelope] = await transport.receive()

        released = await transport.release(envelope, error=ValueError("boom"))

        self.assertTrue(released)
        self.assertEqual(envelope.retry_count, 1)
        row = await self.get_row(sent.id)
        self.assertEqual(row.status, MessageStatus.PENDING)
        self.assertEqual(row.retry_count, 1)
        self.assertEqual(row.last_error, "boom")
        self.assertEqual(row.error_class, "ValueError")
        self.assertIsNone(row.locked_by)

        [again] = await transport.receive()
        self.assertEqual(again.id, sent.id)
        self.assertEqual(again.retry_count, 1)

    async def test_release_with_delay(self):
        """Test that a delayed release keeps the row out of receive until the delay passes."""
        transport = self.make_transport()
        await transport.send(make_envelope({"n": 1}))
        [envelope] = await transport.receive()

        await transport.release(envelope, delay=3600)

        self.assertEqual(await transport.receive(), [])
        self.assertEqual(await transport.get_queue_depth(), 1)

    async def test_stale_release(self):
        """Test that a release without the lease changes nothing."""
        worker_a = self.make_transport("worker-a")
        worker_b = self.make_transport("worker-b")
        sent = await worker_a.send(make_envelope({"n": 1}))
        [stale] = await worker_a.receive()
        await self.expire_lease(sent.id)
        await worker_b.receive()

        with self.assertLogs("DbMessenger.DatabaseTransport", level="WARNING"):
            self.assertFalse(await worker_a.release(stale))

        row = await self.get_row(sent.id)
        self.assertEqual(row.retry_count, 0)
        self.assertEqual(row.locked_by, "worker-b")


class TestDatabaseTransportReject(DatabaseTestCase):
    async def test_reject_archives_message(self):
        """Test that reject writes one archive row matching the original and marks it failed."""
        transport = self.make_transport()
        sent = await transport.send(
            make_envelope({"n": 1}, headers={"source": "test"}, idempotency_key="k")
        )
        [envelope] = await transport.receive()

        try:
            raise ValueError("handler exploded")
        except ValueError as e:
            self.assertTrue(await transport.reject(envelope, e))

        original = await self.get_row(sent.id)
        archive = [
            row for row in await Model.all(MessengerFailedMessage)
            if row.message_id == sent.id
        ]

        self.assertEqual(len(archive), 1)
        failed = archive[0]
        self.assertEqual(failed.body, original.body)
        self.assertEqual(failed.headers, original.headers)
        self.assertEqual(failed.headers["source"], "test")
        self.assertEqual(failed.idempotency_key, "k")
        self.assertEqual(failed.error, "handler exploded")
        self.assertEqual(failed.error_class, "ValueError")
        self.assertIn("ValueError: handler exploded", failed.error_trace)

        self.assertEqual(original.status, MessageStatus.FAILED)
        self.assertEqual(original.last_error, "handler exploded")
        self.assertIsNone(original.locked_by)
        self.assertIsNone(original.lock_expires_at)

    async def test_reject_error_without_traceback(self):
        """Test that an error that was never raised is archived without a trace."""
        transport = self.make_transport()
        await transport.send(make_envelope({"n": 1}))
        [envelope] = await transport.receive()

        await transport.reject(envelope, RuntimeError("gave up"))

        [failed] = await transport.get_failed_messages()
        self.assertEqual(failed.error_class, "RuntimeError")
        self.assertIsNone(failed.error_trace)

    async def test_reject_missing_message(self):
        """Test that rejecting an unknown id raises reject-failed and archives nothing."""
        transport = self.make_transport()

        with self.assertRaises(TransportError) as ctx:
            await transport.reject(make_envelope({"n": 1}, id=999), ValueError("x"))

        self.assertEqual(ctx.exception.kind, ErrorKind.REJECT_FAILED)
        self.assertEqual(ctx.exception.message_id, 999)
        self.assertEqual(await Model.all(MessengerFailedMessage), [])

    async def test_late_reject_after_reclaim_and_acknowledge(self):
        """Test that a worker whose lease was reclaimed cannot fail a row another worker completed."""
        worker_a = self.make_transport("worker-a")
        worker_b = self.make_transport("worker-b")
        sent = await worker_a.send(make_envelope({"n": 1}))

        [stale] = await worker_a.receive()
        await self.expire_lease(sent.id)
        [current] = await worker_b.receive()
        self.assertTrue(await worker_b.acknowledge(current))

        with self.assertLogs("DbMessenger.DatabaseTransport", level="WARNING"):
            self.assertFalse(await worker_a.reject(stale, RuntimeError("too late")))

        row = await self.get_row(sent.id)
        self.assertEqual(row.status, MessageStatus.COMPLETED)
        self.assertIsNone(row.last_error)
        self.assertEqual(await Model.all(MessengerFailedMessage), [])

    async def test_late_reject_while_other_worker_processes(self):
        """Test that a stale reject leaves the row with the worker that now holds the lease."""
        worker_a = self.make_transport("worker-a")
        worker_b = self.make_transport("worker-b")
        sent = await worker_a.send(make_envelope({"n": 1}))

        [stale] = await worker_a.receive()
        await self.expire_lease(sent.id)
        [current] = await worker_b.receive()

        with self.assertLogs("DbMessenger.DatabaseTransport", level="WARNING"):
            self.assertFalse(await worker_a.reject(stale, RuntimeError("too late")))

        row = await self.get_row(sent.id)
        self.assertEqual(row.status, MessageStatus.PROCESSING)
        self.assertEqual(row.locked_by, "worker-b")
        self.assertEqual(row.locked_at, current.locked_at)
        self.assertEqual(await worker_b.get_failed_messages(), [])

    async def test_reject_of_pending_row(self):
        """Test that a row that was never received cannot be rejected."""
        transport = self.make_transport()
        sent = await transport.send(make_envelope({"n": 1}))

        with self.assertLogs("DbMessenger.DatabaseTransport", level="WARNING"):
            self.assertFalse(await transport.reject(sent, ValueError("x")))

        self.assertEqual((await self.get_row(sent.id)).status, MessageStatus.PENDING)
        self.assertEqual(await transport.get_failed_messages(), [])

    async def test_get_failed_messages_filters_by_queue(self):
        """Test that dead-letter rows are listed newest first and filtered by queue."""
        transport = self.make_transport()
        for queue in ["emails", "reports", "emails"]:
            await transport.send(make_envelope({"queue": queue}, queue=queue))
        for envelope in await transport.receive(3):
            await transport.reject(envelope, ValueError(envelope.queue_name))

        emails = await transport.get_failed_messages("emails")
        everything = await transport.get_failed_messages(limit=2)

        self.assertEqual(len(emails), 2)
        self.assertTrue(all(row.queue_name == "emails" for row in emails))
        self.assertEqual(len(everything), 2)
        self.assertGreater(everything[0].id, everything[1].id)


class TestDatabaseTransportMaintenance(DatabaseTestCase):
    async def test_queue_depth_counts_pending_per_queue(self):
        """Test that queue depth counts only pending rows and honours the queue filter."""
        transport = self.make_transport()
        for queue in ["a", "a", "b"]:
            await transport.send(make_envelope({"queue": queue}, queue=queue))

        self.assertEqual(await transport.get_queue_depth(), 3)
        self.assertEqual(await transport.get_queue_depth("a"), 2)
        self.assertEqual(await transport.get_queue_depth("missing"), 0)

        await transport.receive()
        self.assertEqual(await transport.get_queue_depth(), 2)

    async def test_sweep_only_touches_expired_processing_rows(self):
        """Test that the sweep reverts expired leases and leaves every other row alone."""
        transport = self.make_transport()
        for n in range(4):
            await transport.send(make_envelope({"n": n}, priority=10 - n))
        completed, failed, expired, fresh = await transport.receive(4)
        pending = await transport.send(make_envelope({"n": 4}))

        await transport.acknowledge(completed)
        await transport.reject(failed, ValueError("x"))
        await self.expire_lease(expired.id)

        self.assertEqual(await transport.unlock_expired_messages(), 1)

        self.assertEqual((await self.get_row(completed.id)).status, MessageStatus.COMPLETED)
        self.assertEqual((await self.get_row(failed.id)).status, MessageStatus.FAILED)
        self.assertEqual((await self.get_row(pending.id)).status, MessageStatus.PENDING)

        fresh_row = await self.get_row(fresh.id)
        self.assertEqual(fresh_row.status, MessageStatus.PROCESSING)
        self.assertEqual(fresh_row.locked_by, "worker-a")

        expired_row = await self.get_row(expired.id)
        self.assertEqual(expired_row.status, MessageStatus.PENDING)
        self.assertIsNone(expired_row.locked_at)
        self.assertIsNone(expired_row.locked_by)
        self.assertIsNone(expired_row.lock_expires_at)

        self.assertEqual(await transport.unlock_expired_messages(), 0)

    async def test_find(self):
        """Test that find returns the current row or None."""
        transport = self.make_transport()
        sent = await transport.send(make_envelope({"n": 1}))

        self.assertEqual((await transport.find(sent.id)).id, sent.id)
        self.assertIsNone(await transport.find(12345))

    async def test_inspection_failures_raise_maintenance_failed(self):
        """Test that storage errors from find and get_failed_messages are maintenance failures."""
        transport = self.make_transport()
        failure = OperationalError("SELECT", {}, Exception("no such table"))

        with patch.object(AsyncSession, "execute", new=AsyncMock(side_effect=failure)):
            with self.assertRaises(TransportError) as find_error:
                await transport.find(1)
            with self.assertRaises(TransportError) as list_error:
                await transport.get_failed_messages("emails")

        self.assertEqual(find_error.exception.kind, ErrorKind.MAINTENANCE_FAILED)
        self.assertEqual(find_error.exception.message_id, 1)
        self.assertIs(find_error.exception.cause, failure)
        self.assertEqual(list_error.exception.kind, ErrorKind.MAINTENANCE_FAILED)
        self.assertEqual(list_error.exception.queue, "emails")

    def test_transport_contract_requires_sweep(self):
        """Test that a transport must implement the stale-lock sweep."""
        class NoSweepTransport(Transport):
            async def send(self, envelope):
                return envelope

            async def receive(self, batch_size=1):
                return []

            async def acknowledge(self, envelope):
                return True

            async def reject(self, envelope, error):
                return True

            async def get_queue_depth(self, queue_name=None):
                return 0

        with self.assertRaises(TypeError):
            NoSweepTransport()

    def test_constructor_validation(self):
        """Test that a transport needs a name and a worker id."""
        with self.assertRaises(ValueError):
            self.make_transport(worker_id="")
        with self.assertRaises(ValueError):
            self.make_transport(name="")

    def test_lock_duration_accepts_timedelta(self):
        """Test that lock duration may be given in seconds or as a timedelta."""
        self.assertEqual(self.make_transport(lock_duration=30).lock_duration, timedelta(seconds=30))
        self.assertEqual(
            self.make_transport(lock_duration=timedelta(minutes=2)).lock_duration,
            timedelta(minutes=2),
        )


if __name__ == "__main__":
    unittest.main()
