"""Per-user composition of the sync engine.

:class:`FinanceClient` owns one :class:`~MoneyTracker.core.state.StateContainer` and one
:class:`~MoneyTracker.core.mutation.MutationCoordinator` per entity family for the lifetime of
the application. Activating a user attaches caches, outboxes and remote stores scoped to that
user and loads every family concurrently. Deactivating cancels everything still in flight.

Example:

    .. code-block:: python

        client = FinanceClient(storage, lambda spec, user_id: SheetsRemoteStore.from_settings(service, spec))
        await client.activate('alice')
        await client['transactions'].coordinator.create(models.new_transaction(12.5, 'Food'))

"""
import asyncio
import enum
import logging
from typing import Any, Callable, Dict, Optional

from .cache import AggregateCache, PartitionedCacheStore
from .mutation import Mutation, MutationCoordinator
from .outbox import Outbox
from .records import FamilySpec, now_utc, to_decimal
from .remote import RecordFilter, RemoteStore
from .session import SessionGuard
from .state import LoadResult, StateContainer
from .storage import EncryptedStorage
from ..data import data, models
from ..data.notifications import NotificationService
from ..status import status

RemoteFactory = Callable[[FamilySpec, str], RemoteStore]


class LoadingLevel(enum.IntEnum):
    """How much of the transaction history is loaded. Higher levels include the lower ones."""
    Nothing = 0
    CurrentMonth = 1
    FullHistory = 2

    @classmethod
    def from_setting(cls, value: str) -> 'LoadingLevel':
        return cls.CurrentMonth if value == 'month' else cls.FullHistory


class FamilyHandle:
    """The state container and mutation coordinator of one entity family."""

    def __init__(self, spec: FamilySpec, container: StateContainer, coordinator: MutationCoordinator) -> None:
        self.spec = spec
        self.container = container
        self.coordinator = coordinator

    @property
    def items(self):
        return self.container.items

    @property
    def outbox(self) -> Optional[Outbox]:
        return self.container.outbox

    async def sync(self) -> int:
        """Flush the outbox and refresh from the remote store.

        Returns:
            int: The number of queued changes committed.
        """
        self.container.require_active()
        committed = 0
        if self.outbox is not None and self.outbox.pending_count:
            committed = await self.outbox.flush(self.container.remote)
        await self.container.refresh()
        return committed


class FinanceClient:
    """Composes the entity families, the session guard and the notification service.

    Args:
        storage: The encrypted storage shared by every user.
        remote_factory: Returns the remote store of a family for a user id.
        settings: A :class:`~MoneyTracker.settings.lib.SettingsAPI`, defaults to the global one.
        clock: Returns the current time.
        sleep: Coroutine the outboxes wait with between retries.
    """

    def __init__(
            self,
            storage: EncryptedStorage,
            remote_factory: RemoteFactory,
            settings=None,
            clock: Callable = now_utc,
            sleep: Callable = asyncio.sleep,
    ) -> None:
        if settings is None:
            from ..settings import lib
            settings = lib.settings

        self.storage = storage
        self.remote_factory = remote_factory
        self.settings = settings
        self.clock = clock
        self.sleep = sleep

        self.user_id: Optional[str] = None
        self.transaction_level = LoadingLevel.Nothing
        self.guard = SessionGuard()
        self.families: Dict[str, FamilySpec] = models.families(settings)

        self._handles: Dict[str, FamilyHandle] = {}
        for name, spec in self.families.items():
            container = StateContainer(spec, cache=None, remote=None)
            self._handles[name] = FamilyHandle(spec, container, MutationCoordinator(container))

        handle = self._handles[models.NOTIFICATIONS.name]
        self.notifications = NotificationService(
            handle.container,
            handle.coordinator,
            self.guard,
            clock=clock,
        )

    def __getitem__(self, name: str) -> FamilyHandle:
        return self._handles[name]

    def __iter__(self):
        return iter(self._handles.values())

    @property
    def is_active(self) -> bool:
        return self.user_id is not None

    @staticmethod
    def namespace(user_id: str) -> str:
        return f'user/{user_id}'

    def _transaction_filter(self, level: LoadingLevel) -> Optional[RecordFilter]:
        if level != LoadingLevel.CurrentMonth:
            return None
        now = self.clock()
        return RecordFilter(since=now.replace(day=1, hour=0, minute=0, second=0, microsecond=0))

    def _apply_metadata(self) -> None:
        self.notifications.locale = self.settings['locale'] or 'en_US'
        self.notifications.currency = self.settings['currency'] or None
        threshold = self.settings['alert_threshold']
        if threshold is not None:
            self.notifications.default_threshold = threshold

    async def activate(self, user_id: str) -> Dict[str, LoadResult]:
        """Start the session of ``user_id`` and load every family cache-first.

        Any previous session is ended first.

        Returns:
            dict: The load result of every family.
        """
        if not user_id:
            raise ValueError('A user id is required.')

        from ..signals import signals
        signals.sessionAboutToChange.emit()

        if self.is_active:
            self._end_sessions()

        namespace = self.namespace(user_id)
        sync = self.settings.get_section('sync')
        self._apply_metadata()

        for handle in self:
            spec = handle.spec
            cache = PartitionedCacheStore(
                self.storage, spec.name, spec.partition_key, spec.ttl, namespace=namespace, clock=self.clock)
            aggregate_cache = None
            if spec.aggregate is not None:
                aggregate_cache = AggregateCache(self.storage, spec.name, spec.ttl, namespace=namespace, clock=self.clock)
            outbox = Outbox(
                self.storage,
                spec.name,
                namespace=namespace,
                max_attempts=int(sync['max_attempts']),
                wait_seconds=float(sync['wait_seconds']),
                backoff=float(sync['backoff']),
                sleep=self.sleep,
            )
            await outbox.load()
            remote = self.remote_factory(spec, user_id)
            handle.container.begin_session(
                cache=cache, remote=remote, aggregate_cache=aggregate_cache, outbox=outbox)

        self.guard.reset()
        self.user_id = user_id
        self.transaction_level = LoadingLevel.Nothing
        logging.info(f'Session of "{user_id}" activated.')

        level = LoadingLevel.from_setting(self.settings['transaction_load'])
        names = list(self._handles)
        results = await asyncio.gather(*(
            self._handles[name].container.load_cache_first(
                self._transaction_filter(level) if name == models.TRANSACTIONS.name else None)
            for name in names
        ))
        if results[names.index(models.TRANSACTIONS.name)] in (LoadResult.Cache, LoadResult.Remote):
            self.transaction_level = level
        signals.sessionActivated.emit(user_id)
        return dict(zip(names, results))

    def _end_sessions(self) -> None:
        for handle in self:
            handle.container.end_session()
        self.guard.reset()

    def deactivate(self) -> None:
        """End the session: cancel background work and drop every published collection."""
        if not self.is_active:
            return
        from ..signals import signals
        signals.sessionAboutToChange.emit()
        self._end_sessions()
        logging.info(f'Session of "{self.user_id}" ended.')
        self.user_id = None
        self.transaction_level = LoadingLevel.Nothing
        signals.sessionEnded.emit()

    async def ensure_transactions_loaded(self, level: LoadingLevel) -> Optional[LoadResult]:
        """Load at least ``level`` of the transaction history.

        Nothing is read when the level, or a higher one, is already loaded. Moving up to the
        full history reads straight from the remote store, as the cache may only hold the
        current month.

        Returns:
            The load result, or None when nothing had to be loaded.
        """
        if not self.is_active:
            raise status.SessionInactiveException('Loading transactions needs an active session.')
        level = LoadingLevel(level)
        if self.transaction_level >= level:
            logging.debug(f'Transactions already loaded at level {self.transaction_level.name}.')
            return None

        container = self[models.TRANSACTIONS.name].container
        if level == LoadingLevel.FullHistory:
            logging.info('Loading the full transaction history.')
            result = await container.load_remote(None)
        else:
            result = await container.load_cache_first(self._transaction_filter(level))

        if result in (LoadResult.Cache, LoadResult.Remote):
            self.transaction_level = level
        return result

    async def load_current_month(self) -> Optional[LoadResult]:
        return await self.ensure_transactions_loaded(LoadingLevel.CurrentMonth)

    async def load_full_history(self) -> Optional[LoadResult]:
        return await self.ensure_transactions_loaded(LoadingLevel.FullHistory)

    async def wait_idle(self) -> None:
        await asyncio.gather(*(h.container.wait_idle() for h in self))

    async def clear_cache(self, all_users: bool = False) -> None:
        """Invalidate the cache of the active user, or wipe the storage of every user.

        Queued outbox entries of the active user are kept.
        """
        if all_users:
            outboxes = [h.outbox for h in self if h.outbox is not None]
            count = await self.storage.clear()
            logging.info(f'Cleared {count} cache entr{"y" if count == 1 else "ies"}.')
            # Unsynced changes of the active user must survive a cache wipe
            for outbox in outboxes:
                if outbox.pending_count:
                    await outbox.save()
            return
        for handle in self:
            if handle.container.cache is not None:
                await handle.container.invalidate_cache()

    async def cache_status(self) -> Dict[str, Any]:
        if not self.is_active:
            raise status.SessionInactiveException('Cache status needs an active session.')
        return {h.spec.name: await h.container.cache_status() for h in self}

    def pending_sync_count(self) -> int:
        return sum(h.outbox.pending_count for h in self if h.outbox is not None)

    async def flush_outboxes(self) -> Dict[str, int]:
        """Replay every queued change. Returns the number committed per family."""
        if not self.is_active:
            raise status.SessionInactiveException('Flushing needs an active session.')
        result = {}
        for handle in self:
            if handle.outbox is None:
                result[handle.spec.name] = 0
                continue
            result[handle.spec.name] = await handle.outbox.flush(handle.container.remote)
        return result

    async def sync(self) -> Dict[str, int]:
        """Flush and refresh every family."""
        if not self.is_active:
            raise status.SessionInactiveException('Syncing needs an active session.')
        return {h.spec.name: await h.sync() for h in self}

    async def add_goal_contribution(self, goal_id: str, amount) -> Mutation:
        """Add ``amount`` to the current amount of a goal."""
        handle = self[models.GOALS.name]
        goal = handle.container.find(goal_id)
        if goal is None:
            raise status.RecordNotFoundException(f'"{goal_id}" is not a goal.')
        current = to_decimal(goal.get('current_amount')) + to_decimal(amount)
        return await handle.coordinator.update(goal_id, {'current_amount': current}, expected_version=goal.version)

    def current_spending(self) -> Dict[str, float]:
        """Return the expenses of the current month keyed by category."""
        now = self.clock()
        df = data.transactions_frame(self[models.TRANSACTIONS.name].items)
        return data.spending_for_month(df, now.year, now.month).to_dict()

    async def check_budgets(self) -> int:
        """Run the once-per-session budget alert check over the current month."""
        if not self.is_active:
            raise status.SessionInactiveException('Budget checks need an active session.')
        return await self.notifications.check_all(self[models.BUDGETS.name].items, self.current_spending())

    async def check_budget(self, budget_id: str) -> Optional[Mutation]:
        """Check a single budget against the spending of the current month."""
        budget = self[models.BUDGETS.name].container.find(budget_id)
        if budget is None:
            raise status.RecordNotFoundException(f'"{budget_id}" is not a budget.')
        spent = self.current_spending().get(budget.get('category'), 0)
        return await self.notifications.check_and_maybe_create(budget, spent)
