"""
Tests for MoneyTracker.core.client
(covers session activation, per-user isolation, outbox sync, goal contributions and budget checks).

Run:
    python -m unittest tests.test_client
"""
import dataclasses
import datetime
import unittest
from decimal import Decimal

from MoneyTracker.core.cache import CacheState
from MoneyTracker.core.client import FinanceClient, LoadingLevel
from MoneyTracker.core.state import LoadResult
from MoneyTracker.data import models
from MoneyTracker.signals import signals
from MoneyTracker.status import status
from tests.base import BaseTestCase, FakeRemoteStore, NOW, UTC, make_record, no_sleep

DAY = datetime.timedelta(days=1)


class ClientTestCase(BaseTestCase):

    def setUp(self) -> None:
        super().setUp()
        self.remotes = {}
        self.remote('alice', models.TRANSACTIONS).records.update({
            't1': make_record('t1', NOW, 60),
            't2': make_record('t2', NOW - DAY, 30),
            't3': make_record('t3', datetime.datetime(2025, 2, 10, tzinfo=UTC), 500),
        })
        self.remote('alice', models.BUDGETS).records['b1'] = dataclasses.replace(
            models.new_budget('Food', 100, 3, 2025, created_at=NOW), id='b1')
        self.remote('alice', models.GOALS).records['g1'] = dataclasses.replace(
            models.new_goal('Car', 1000, NOW + 90 * DAY, current_amount=100, created_at=NOW), id='g1')
        self.client = self.make_client()

    async def asyncTearDown(self) -> None:
        await self.client.wait_idle()
        self.client.deactivate()

    def remote(self, user_id, family) -> FakeRemoteStore:
        key = (user_id, family.name)
        if key not in self.remotes:
            self.remotes[key] = FakeRemoteStore(family)
        return self.remotes[key]

    def make_client(self) -> FinanceClient:
        return FinanceClient(self.storage, lambda spec, user_id: self.remote(user_id, spec),
                             settings=self.settings, clock=self.clock, sleep=no_sleep)


class SessionTests(ClientTestCase):

    async def test_activate(self):
        activated = []
        slot = lambda user_id: activated.append(user_id)
        signals.sessionActivated.connect(slot)
        self.addCleanup(signals.sessionActivated.disconnect, slot)

        results = await self.client.activate('alice')
        self.assertEqual(set(results), {'transactions', 'budgets', 'goals', 'notifications'})
        self.assertTrue(all(r == LoadResult.Remote for r in results.values()))
        self.assertEqual(activated, ['alice'])
        self.assertTrue(self.client.is_active)

        # Only the current month of transactions is loaded
        self.assertEqual([r.id for r in self.client['transactions'].items], ['t1', 't2'])
        self.assertEqual([r.id for r in self.client['budgets'].items], ['b1'])
        self.assertEqual(self.client['notifications'].items, [])

    async def test_load_all_transactions(self):
        self.settings['transaction_load'] = 'all'
        await self.client.activate('alice')
        self.assertEqual(len(self.client['transactions'].items), 3)

    async def test_invalid_user(self):
        with self.assertRaises(ValueError):
            await self.client.activate('')

    async def test_users_are_isolated(self):
        await self.client.activate('alice')
        await self.client.activate('bob')
        for handle in self.client:
            self.assertEqual(handle.items, [])

        written = self.storage.keys_for('write')
        self.assertIn('user/alice/transactions/meta', written)
        self.assertIn('user/bob/transactions/meta', written)

        # Alice's caches are still there
        results = await self.client.activate('alice')
        self.assertTrue(all(r == LoadResult.Cache for r in results.values()))
        self.assertEqual([r.id for r in self.client['transactions'].items], ['t1', 't2'])

    async def test_deactivate(self):
        ended = []
        slot = lambda: ended.append(True)
        signals.sessionEnded.connect(slot)
        self.addCleanup(signals.sessionEnded.disconnect, slot)

        await self.client.activate('alice')
        self.client.deactivate()
        self.assertFalse(self.client.is_active)
        self.assertEqual(ended, [True])
        for handle in self.client:
            self.assertEqual(handle.items, [])
            self.assertFalse(handle.container.is_active)

        with self.assertRaises(status.SessionInactiveException):
            await self.client['transactions'].coordinator.create(make_record(None, NOW, 1))
        with self.assertRaises(status.SessionInactiveException):
            await self.client.sync()
        with self.assertRaises(status.SessionInactiveException):
            await self.client.cache_status()

    async def test_metadata_is_applied(self):
        self.settings['currency'] = 'EUR'
        self.settings['alert_threshold'] = 95
        await self.client.activate('alice')
        self.assertEqual(self.client.notifications.currency, 'EUR')
        self.assertEqual(self.client.notifications.default_threshold, 95)


class LoadingLevelTests(ClientTestCase):

    async def test_full_history_on_demand(self):
        await self.client.activate('alice')
        transactions = self.remote('alice', models.TRANSACTIONS)
        self.assertEqual(self.client.transaction_level, LoadingLevel.CurrentMonth)

        self.assertEqual(await self.client.load_full_history(), LoadResult.Remote)
        self.assertEqual(self.client.transaction_level, LoadingLevel.FullHistory)
        self.assertEqual([r.id for r in self.client['transactions'].items], ['t1', 't2', 't3'])
        self.assertEqual(transactions.calls[-1], ('fetch_all', None))
        self.assertEqual(self.client['transactions'].container.aggregate.count, 3)

        cache = self.client['transactions'].container.cache
        self.assertEqual(sorted(r.id for r in await cache.get_all()), ['t1', 't2', 't3'])
        self.assertIn('user/alice/transactions/partition/2025-02-10', self.storage.keys_for('write'))

        # Already loaded, lower levels included
        calls = transactions.count('fetch_all')
        self.assertIsNone(await self.client.load_full_history())
        self.assertIsNone(await self.client.ensure_transactions_loaded(LoadingLevel.CurrentMonth))
        self.assertEqual(transactions.count('fetch_all'), calls)

    async def test_current_month_is_loaded_once(self):
        await self.client.activate('alice')
        calls = self.remote('alice', models.TRANSACTIONS).count('fetch_all')
        self.assertIsNone(await self.client.load_current_month())
        self.assertEqual(self.remote('alice', models.TRANSACTIONS).count('fetch_all'), calls)

    async def test_failed_activation_can_be_retried(self):
        transactions = self.remote('alice', models.TRANSACTIONS)
        transactions.fail.add('fetch_all')
        results = await self.client.activate('alice')
        self.assertEqual(results['transactions'], LoadResult.Failed)
        self.assertEqual(self.client.transaction_level, LoadingLevel.Nothing)

        transactions.fail.clear()
        self.assertEqual(await self.client.load_current_month(), LoadResult.Remote)
        self.assertEqual(self.client.transaction_level, LoadingLevel.CurrentMonth)
        self.assertEqual([r.id for r in self.client['transactions'].items], ['t1', 't2'])

    async def test_full_history_failure_keeps_the_month(self):
        await self.client.activate('alice')
        self.remote('alice', models.TRANSACTIONS).fail.add('fetch_all')
        self.assertEqual(await self.client.load_full_history(), LoadResult.Failed)
        self.assertEqual(self.client.transaction_level, LoadingLevel.CurrentMonth)
        self.assertEqual([r.id for r in self.client['transactions'].items], ['t1', 't2'])
        self.assertTrue(self.client['transactions'].container.error)

    async def test_full_history_setting(self):
        self.settings['transaction_load'] = 'all'
        await self.client.activate('alice')
        self.assertEqual(self.client.transaction_level, LoadingLevel.FullHistory)
        self.assertIsNone(await self.client.load_full_history())

    async def test_level_is_reset(self):
        await self.client.activate('alice')
        await self.client.load_full_history()
        self.client.deactivate()
        self.assertEqual(self.client.transaction_level, LoadingLevel.Nothing)
        with self.assertRaises(status.SessionInactiveException):
            await self.client.load_full_history()

        await self.client.activate('alice')
        self.assertEqual(self.client.transaction_level, LoadingLevel.CurrentMonth)


class SyncTests(ClientTestCase):

    async def asyncSetUp(self) -> None:
        await self.client.activate('alice')
        self.transactions = self.remote('alice', models.TRANSACTIONS)

    async def create_offline(self):
        self.transactions.fail.add('create')
        with self.assertRaises(status.MutationFailedException) as cm:
            await self.client['transactions'].coordinator.create(make_record(None, NOW, 7))
        self.transactions.fail.clear()
        return cm.exception.mutation

    async def test_sync_commits_queued_changes(self):
        mutation = await self.create_offline()
        self.assertEqual(self.client.pending_sync_count(), 1)

        result = await self.client.sync()
        self.assertEqual(result['transactions'], 1)
        self.assertEqual(self.client.pending_sync_count(), 0)

        ids = [r.id for r in self.client['transactions'].items]
        self.assertNotIn(mutation.record_id, ids)
        self.assertIn('r0001', ids)

    async def test_flush_outboxes(self):
        await self.create_offline()
        self.assertEqual(await self.client.flush_outboxes(), {
            'transactions': 1, 'budgets': 0, 'goals': 0, 'notifications': 0})

    async def test_queued_changes_survive_restart(self):
        mutation = await self.create_offline()
        self.client.deactivate()

        client = self.make_client()
        await client.activate('alice')
        self.assertEqual(client.pending_sync_count(), 1)
        self.assertIn(mutation.record_id, [r.id for r in client['transactions'].items])
        await client.wait_idle()
        client.deactivate()

    async def test_clear_cache_keeps_queued_changes(self):
        await self.create_offline()
        await self.client.clear_cache(all_users=True)
        self.client.deactivate()

        client = self.make_client()
        results = await client.activate('alice')
        self.assertEqual(results['transactions'], LoadResult.Remote)
        self.assertEqual(client.pending_sync_count(), 1)
        client.deactivate()

    async def test_clear_cache(self):
        await self.client.clear_cache()
        result = await self.client.cache_status()
        self.assertTrue(all(s['state'] == CacheState.Uninitialized for s in result.values()))

    async def test_cache_status(self):
        result = await self.client.cache_status()
        self.assertEqual(result['transactions']['state'], CacheState.Valid)
        self.assertIn('2025-03-15', result['transactions']['partitions'])


class DomainTests(ClientTestCase):

    async def asyncSetUp(self) -> None:
        await self.client.activate('alice')

    async def test_add_goal_contribution(self):
        mutation = await self.client.add_goal_contribution('g1', '50.25')
        self.assertEqual(mutation.record.fields['current_amount'], Decimal('150.25'))
        self.assertEqual(
            self.remote('alice', models.GOALS).records['g1'].fields['current_amount'], Decimal('150.25'))
        self.assertEqual(self.client['goals'].container.aggregate.sum_a, Decimal('150.25'))

    async def test_add_goal_contribution_unknown(self):
        with self.assertRaises(status.RecordNotFoundException):
            await self.client.add_goal_contribution('nope', 10)

    async def test_current_spending(self):
        self.assertEqual(self.client.current_spending(), {'Food': 90.0})

    async def test_check_budgets(self):
        self.assertEqual(await self.client.check_budgets(), 1)
        self.assertEqual(self.client.notifications.unread_count(), 1)
        self.assertEqual(await self.client.check_budgets(), 0)
        self.assertIsNone(await self.client.check_budget('b1'))

    async def test_check_budgets_after_reactivation(self):
        await self.client.check_budgets()
        await self.client.wait_idle()
        await self.client.activate('alice')
        self.assertEqual(await self.client.check_budgets(), 0)
        self.assertEqual(len(self.remote('alice', models.NOTIFICATIONS).records), 1)

    async def test_check_budget(self):
        mutation = await self.client.check_budget('b1')
        self.assertEqual(mutation.record.get('related_id'), 'b1')
        with self.assertRaises(status.RecordNotFoundException):
            await self.client.check_budget('nope')


if __name__ == '__main__':
    unittest.main()
