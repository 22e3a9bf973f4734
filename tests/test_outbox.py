"""
Tests for MoneyTracker.core.outbox
(covers coalescing, persistence, ordered flushing, retries and the snapshot overlay).

Run:
    python -m unittest tests.test_outbox
"""
import asyncio
import datetime
import unittest
from decimal import Decimal

from MoneyTracker.core.outbox import Outbox, OutboxKind
from MoneyTracker.data import models
from MoneyTracker.signals import signals
from tests.base import BaseTestCase, FakeRemoteStore, NOW, make_record, no_sleep, wait_for_call

DAY = datetime.timedelta(days=1)
TEMP_ID = 'temp_1741996800000_abcdef12'


class OutboxTestCase(BaseTestCase):

    def setUp(self) -> None:
        super().setUp()
        self.sleeps = []
        self.remote = FakeRemoteStore(models.TRANSACTIONS, [
            make_record('a', NOW, 1),
            make_record('b', NOW - DAY, 2),
        ])
        self.outbox = self.make_outbox()

    def make_outbox(self, max_attempts: int = 3) -> Outbox:
        async def sleep(seconds):
            self.sleeps.append(seconds)
            await no_sleep(seconds)

        return Outbox(self.storage, 'transactions', namespace='user/test', max_attempts=max_attempts,
                      wait_seconds=2.0, backoff=2.0, sleep=sleep)


class CoalescingTests(OutboxTestCase):

    async def test_update_folds_into_create(self):
        await self.outbox.enqueue(OutboxKind.Create, TEMP_ID, make_record(TEMP_ID, NOW, 5))
        await self.outbox.enqueue(OutboxKind.Update, TEMP_ID, make_record(TEMP_ID, NOW, 6))
        entries = self.outbox.entries
        self.assertEqual(len(entries), 1)
        self.assertEqual(entries[0].kind, OutboxKind.Create)
        self.assertEqual(entries[0].record.fields['amount'], Decimal(6))

    async def test_updates_collapse(self):
        await self.outbox.enqueue(OutboxKind.Update, 'a', make_record('a', NOW, 5))
        await self.outbox.enqueue(OutboxKind.Update, 'a', make_record('a', NOW, 7))
        entries = self.outbox.entries
        self.assertEqual([e.kind for e in entries], [OutboxKind.Update])
        self.assertEqual(entries[0].record.fields['amount'], Decimal(7))

    async def test_delete_cancels_create(self):
        await self.outbox.enqueue(OutboxKind.Create, TEMP_ID, make_record(TEMP_ID, NOW, 5))
        await self.outbox.enqueue(OutboxKind.Delete, TEMP_ID)
        self.assertEqual(self.outbox.pending_count, 0)
        self.assertFalse(await self.storage.exists(self.outbox.key))

    async def test_delete_replaces_update(self):
        await self.outbox.enqueue(OutboxKind.Update, 'a', make_record('a', NOW, 5))
        await self.outbox.enqueue(OutboxKind.Delete, 'a')
        self.assertEqual([e.kind for e in self.outbox.entries], [OutboxKind.Delete])

    async def test_discard_drops_updates_only(self):
        await self.outbox.enqueue(OutboxKind.Update, 'a', make_record('a', NOW, 5))
        await self.outbox.enqueue(OutboxKind.Delete, 'b')
        await self.outbox.discard('a')
        await self.outbox.discard('b')
        self.assertEqual([(e.kind, e.record_id) for e in self.outbox.entries], [(OutboxKind.Delete, 'b')])

    async def test_pending_lookups(self):
        await self.outbox.enqueue(OutboxKind.Create, TEMP_ID, make_record(TEMP_ID, NOW, 5))
        self.assertTrue(self.outbox.has_pending_create(TEMP_ID))
        self.assertTrue(self.outbox.is_pending(TEMP_ID))
        self.assertFalse(self.outbox.is_pending('a'))

    async def test_pending_signal(self):
        emitted = []
        slot = lambda family, count: emitted.append((family, count))
        signals.syncPendingChanged.connect(slot)
        self.addCleanup(signals.syncPendingChanged.disconnect, slot)

        await self.outbox.enqueue(OutboxKind.Update, 'a', make_record('a', NOW, 5))
        await self.outbox.clear()
        self.assertEqual(emitted, [('transactions', 1), ('transactions', 0)])


class PersistenceTests(OutboxTestCase):

    async def test_survives_restart(self):
        await self.outbox.enqueue(OutboxKind.Create, TEMP_ID, make_record(TEMP_ID, NOW, 5, tags=['x']))
        await self.outbox.enqueue(OutboxKind.Delete, 'b')

        restarted = self.make_outbox()
        self.assertEqual(await restarted.load(), 2)
        self.assertEqual(
            [(e.kind, e.record_id) for e in restarted.entries],
            [(OutboxKind.Create, TEMP_ID), (OutboxKind.Delete, 'b')],
        )
        self.assertEqual(restarted.entries[0].record, self.outbox.entries[0].record)

    async def test_stored_encrypted_under_namespace(self):
        await self.outbox.enqueue(OutboxKind.Delete, 'b')
        self.assertEqual(self.outbox.key, 'user/test/transactions/outbox')
        self.assertNotIn(b'"b"', self.storage.path_for(self.outbox.key).read_bytes())

    async def test_corrupt_queue_loads_empty(self):
        await self.outbox.enqueue(OutboxKind.Delete, 'b')
        self.storage.path_for(self.outbox.key).write_bytes(b'garbage' * 8)
        restarted = self.make_outbox()
        with self.assertLogs(level='ERROR'):
            self.assertEqual(await restarted.load(), 0)

    async def test_save_after_wipe(self):
        await self.outbox.enqueue(OutboxKind.Delete, 'b')
        await self.storage.clear()
        await self.outbox.save()
        restarted = self.make_outbox()
        self.assertEqual(await restarted.load(), 1)


class FlushTests(OutboxTestCase):

    async def test_flush_in_order(self):
        await self.outbox.enqueue(OutboxKind.Create, TEMP_ID, make_record(TEMP_ID, NOW, 5))
        await self.outbox.enqueue(OutboxKind.Update, 'a', make_record('a', NOW, 9))
        await self.outbox.enqueue(OutboxKind.Delete, 'b')

        self.assertEqual(await self.outbox.flush(self.remote), 3)
        self.assertEqual([c[0] for c in self.remote.calls], ['create', 'update', 'delete'])
        self.assertEqual(self.outbox.pending_count, 0)
        self.assertFalse(await self.storage.exists(self.outbox.key))
        self.assertEqual(self.remote.records['a'].fields['amount'], Decimal(9))
        self.assertNotIn('b', self.remote.records)

    async def test_retry_with_backoff(self):
        await self.outbox.enqueue(OutboxKind.Update, 'a', make_record('a', NOW, 9))
        self.remote.fail.add('update')

        self.assertEqual(await self.outbox.flush(self.remote), 0)
        self.assertEqual(self.remote.count('update'), 3)
        self.assertEqual(self.sleeps, [2.0, 4.0])

        entry = self.outbox.entries[0]
        self.assertEqual(entry.attempts, 3)
        self.assertIn('update failed', entry.last_error)

        restarted = self.make_outbox()
        await restarted.load()
        self.assertEqual(restarted.entries[0].attempts, 3)

    async def test_transient_failure_recovers(self):
        async def sleep(seconds):
            self.sleeps.append(seconds)
            self.remote.fail.clear()

        outbox = Outbox(self.storage, 'transactions', namespace='user/test', max_attempts=3, sleep=sleep)
        await outbox.enqueue(OutboxKind.Delete, 'b')
        self.remote.fail.add('delete')

        self.assertEqual(await outbox.flush(self.remote), 1)
        self.assertEqual(len(self.sleeps), 1)
        self.assertEqual(outbox.pending_count, 0)

    async def test_stops_at_first_failure(self):
        await self.outbox.enqueue(OutboxKind.Update, 'a', make_record('a', NOW, 9))
        await self.outbox.enqueue(OutboxKind.Create, TEMP_ID, make_record(TEMP_ID, NOW, 5))
        self.remote.fail.add('update')

        self.assertEqual(await self.outbox.flush(self.remote), 0)
        self.assertEqual(self.remote.count('create'), 0)
        self.assertEqual(self.outbox.pending_count, 2)

    async def test_missing_remote_record_is_dropped(self):
        await self.outbox.enqueue(OutboxKind.Update, 'gone', make_record('gone', NOW, 9))
        await self.outbox.enqueue(OutboxKind.Delete, 'b')

        with self.assertLogs(level='WARNING'):
            self.assertEqual(await self.outbox.flush(self.remote), 1)
        # No retries for a record that does not exist
        self.assertEqual(self.remote.count('update'), 1)
        self.assertEqual(self.outbox.pending_count, 0)

    async def test_queue_stays_writable_during_a_remote_call(self):
        await self.outbox.enqueue(OutboxKind.Update, 'a', make_record('a', NOW, 9))
        await self.outbox.enqueue(OutboxKind.Update, 'b', make_record('b', NOW - DAY, 8))
        self.remote.gates['update'] = asyncio.Event()
        flushing = asyncio.create_task(self.outbox.flush(self.remote))
        await wait_for_call(self.remote, 'update')

        await asyncio.wait_for(self.outbox.discard('b'), 1)
        await asyncio.wait_for(self.outbox.discard('missing'), 1)
        await asyncio.wait_for(self.outbox.enqueue(OutboxKind.Delete, 'c'), 1)
        # The entry being committed is left alone
        await asyncio.wait_for(self.outbox.discard('a'), 1)
        self.assertEqual([(e.kind, e.record_id) for e in self.outbox.entries],
                         [(OutboxKind.Update, 'a'), (OutboxKind.Delete, 'c')])

        self.remote.gates['update'].set()
        self.assertEqual(await flushing, 1)
        self.assertEqual(self.remote.records['a'].fields['amount'], Decimal(9))
        self.assertEqual(self.remote.records['b'].fields['amount'], Decimal(2))
        self.assertEqual(self.remote.count('delete'), 1)
        self.assertEqual(self.outbox.pending_count, 0)

    async def test_changes_queued_behind_a_committing_create_follow_its_remote_id(self):
        await self.outbox.enqueue(OutboxKind.Create, TEMP_ID, make_record(TEMP_ID, NOW, 5))
        self.remote.gates['create'] = asyncio.Event()
        flushing = asyncio.create_task(self.outbox.flush(self.remote))
        await wait_for_call(self.remote, 'create')

        await self.outbox.enqueue(OutboxKind.Update, TEMP_ID, make_record(TEMP_ID, NOW, 6))
        self.assertEqual(self.outbox.pending_count, 2)

        self.remote.gates['create'].set()
        self.assertEqual(await flushing, 2)
        self.assertEqual(self.remote.calls[-1][:2], ('update', 'r0001'))
        self.assertEqual(self.remote.records['r0001'].fields['amount'], Decimal(6))
        self.assertEqual(self.outbox.pending_count, 0)

    async def test_flush_empty(self):
        self.assertEqual(await self.outbox.flush(self.remote), 0)
        self.assertEqual(self.remote.calls, [])


class OverlayTests(OutboxTestCase):

    async def test_overlay(self):
        snapshot = list(self.remote.records.values())
        await self.outbox.enqueue(OutboxKind.Update, 'a', make_record('a', NOW, 50))
        await self.outbox.enqueue(OutboxKind.Delete, 'b')
        await self.outbox.enqueue(OutboxKind.Create, TEMP_ID, make_record(TEMP_ID, NOW, 5))

        result = {r.id: r for r in self.outbox.overlay(snapshot)}
        self.assertEqual(set(result), {'a', TEMP_ID})
        self.assertEqual(result['a'].fields['amount'], Decimal(50))

    async def test_overlay_without_entries(self):
        snapshot = list(self.remote.records.values())
        self.assertEqual(self.outbox.overlay(snapshot), snapshot)


if __name__ == '__main__':
    unittest.main()
