"""Observable state containers.

A :class:`StateContainer` holds the published collection of one entity family together with
its loading flag, error message and dashboard aggregate, and notifies subscribers through Qt
signals whenever any of them change.

Loading is cache-first: a cache hit is published immediately and reconciled with the remote
store in the background, a cache miss waits for the remote store and primes the cache.

Every user session gets a new generation number. Background work started in an older
generation is cancelled when the session ends, and any result it still delivers is dropped.
"""
import asyncio
import enum
import logging
from typing import AsyncIterator, Dict, List, Optional, Set, Tuple

from PySide6 import QtCore

from . import reconcile
from .cache import AggregateCache, PartitionedCacheStore
from .outbox import Outbox
from .records import Aggregate, FamilySpec, Record
from .remote import RecordFilter, RemoteStore
from ..status import status


class LoadResult(enum.StrEnum):
    """Where the published collection came from."""
    Cache = 'cache'
    Remote = 'remote'
    Failed = 'failed'
    Stale = 'stale'


class StateContainer(QtCore.QObject):
    """The in-memory collection of one entity family.

    Signals:
        itemsChanged (list): The published records, in the family's order.
        loadingChanged (bool): The loading flag.
        errorChanged (str): The error message, empty when cleared.
        aggregateChanged (object): The new :class:`~MoneyTracker.core.records.Aggregate`, or None.
    """
    itemsChanged = QtCore.Signal(object)
    loadingChanged = QtCore.Signal(bool)
    errorChanged = QtCore.Signal(str)
    aggregateChanged = QtCore.Signal(object)

    def __init__(
            self,
            family: FamilySpec,
            cache: PartitionedCacheStore,
            remote: RemoteStore,
            aggregate_cache: Optional[AggregateCache] = None,
            outbox: Optional[Outbox] = None,
            parent: Optional[QtCore.QObject] = None,
    ) -> None:
        super().__init__(parent=parent)
        self.family = family
        self.cache = cache
        self.remote = remote
        self.aggregate_cache = aggregate_cache
        self.outbox = outbox

        self._items: List[Record] = []
        self._loading: bool = False
        self._error: str = ''
        self._aggregate: Optional[Aggregate] = None

        self._generation: int = 0
        self._active: bool = False
        self._filter: Optional[RecordFilter] = None
        self._tasks: Set[asyncio.Task] = set()
        self._subscription: Optional[asyncio.Task] = None
        # Local changes whose remote write has not returned yet, keyed by mutation token
        self._in_flight: Dict[int, Tuple[str, Optional[Record]]] = {}

    @property
    def items(self) -> List[Record]:
        return list(self._items)

    @property
    def is_loading(self) -> bool:
        return self._loading

    @property
    def error(self) -> str:
        return self._error

    @property
    def aggregate(self) -> Optional[Aggregate]:
        return self._aggregate

    @property
    def generation(self) -> int:
        return self._generation

    @property
    def is_active(self) -> bool:
        return self._active

    @property
    def record_filter(self) -> Optional[RecordFilter]:
        return self._filter

    def require_active(self) -> None:
        if not self._active:
            raise status.SessionInactiveException(f'Cannot use {self.family.name} without an active session.')

    def _set_loading(self, value: bool) -> None:
        if self._loading == value:
            return
        self._loading = value
        self.loadingChanged.emit(value)

    def _set_error(self, message: str) -> None:
        if self._error == message:
            return
        self._error = message
        self.errorChanged.emit(message)

    def _set_aggregate(self, aggregate: Optional[Aggregate]) -> None:
        self._aggregate = aggregate
        self.aggregateChanged.emit(aggregate)

    def publish(self, records: List[Record]) -> None:
        """Replace the published collection."""
        self._items = self.family.sort(records)
        self.itemsChanged.emit(self.items)

    def find(self, record_id: str) -> Optional[Record]:
        return next((r for r in self._items if r.id == record_id), None)

    def insert(self, record: Record) -> None:
        self.publish(self._items + [record])

    def replace(self, record: Record) -> None:
        self.publish([record if r.id == record.id else r for r in self._items])

    def remove(self, record_id: str) -> None:
        self.publish([r for r in self._items if r.id != record_id])

    def track(self, token: int, record_id: str, record: Optional[Record]) -> None:
        """Keep a local change visible through reconciliation until its remote write returns.

        Args:
            token: Identifies the mutation, used to :meth:`untrack` it.
            record_id: Id of the changed record.
            record: The record as written locally, None for a delete.
        """
        self._in_flight[token] = (record_id, record)

    def untrack(self, token: int) -> None:
        self._in_flight.pop(token, None)

    def overlay(self, records: List[Record]) -> List[Record]:
        """Lay the pending outbox entries and the in-flight mutations over ``records``."""
        records = list(records) if self.outbox is None else self.outbox.overlay(records)
        if not self._in_flight:
            return records
        by_id = {r.id: r for r in records}
        for record_id, record in self._in_flight.values():
            if record is None:
                by_id.pop(record_id, None)
            else:
                by_id[record_id] = record
        return list(by_id.values())

    def begin_session(
            self,
            cache: Optional[PartitionedCacheStore] = None,
            remote: Optional[RemoteStore] = None,
            aggregate_cache: Optional[AggregateCache] = None,
            outbox: Optional[Outbox] = None,
    ) -> int:
        """Start a new session generation with an empty collection.

        The cache, remote store, aggregate cache and outbox of the new session replace the
        current ones when given.
        """
        self._cancel_background()
        if cache is not None:
            self.cache = cache
        if remote is not None:
            self.remote = remote
        if aggregate_cache is not None:
            self.aggregate_cache = aggregate_cache
        if outbox is not None:
            self.outbox = outbox
        self._generation += 1
        self._active = True
        self._filter = None
        self._reset_state()
        logging.debug(f'{self.family.name}: session generation {self._generation} started.')
        return self._generation

    def end_session(self) -> None:
        """Cancel background work, drop the collection and ignore results still in flight."""
        self._cancel_background()
        self._generation += 1
        self._active = False
        self._filter = None
        self._reset_state()
        logging.debug(f'{self.family.name}: session ended.')

    def _reset_state(self) -> None:
        if self._items:
            self.publish([])
        self._set_loading(False)
        self._set_error('')
        if self._aggregate is not None:
            self._set_aggregate(None)

    def _cancel_background(self) -> None:
        self._in_flight.clear()
        for task in list(self._tasks):
            task.cancel()
        self._tasks.clear()
        if self._subscription is not None:
            self._subscription.cancel()
            self._subscription = None

    def _track(self, coro) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def load_cache_first(self, record_filter: Optional[RecordFilter] = None, live: bool = False) -> LoadResult:
        """Publish the cached collection if there is one, otherwise wait for the remote store.

        A cache hit clears the loading flag right away and reconciles in the background.
        A cache miss fetches from the remote store, or waits for the first emission of its
        stream when ``live``, then publishes and primes the cache.

        Args:
            record_filter: Bounds the remote read, and the cached records published.
            live: Keep following the remote stream after loading.

        Returns:
            LoadResult: Where the published collection came from.
        """
        self.require_active()
        if record_filter is None and self._filter is not None:
            # The cache may only hold the range of the narrower load
            return await self.load_remote(None, live=live)

        generation = self._generation
        self._filter = record_filter

        self._set_loading(True)
        self._set_error('')

        cached = await self.cache.get_all()
        if generation != self._generation:
            return LoadResult.Stale

        if cached is not None:
            if record_filter is not None:
                cached = [r for r in cached if record_filter.matches(r)]
            self.publish(self.overlay(cached))
            await self._load_aggregate()
            if generation != self._generation:
                return LoadResult.Stale
            self._set_loading(False)
            logging.debug(f'{self.family.name}: published {len(self._items)} cached record(s).')

            if live:
                self._follow(self.remote.subscribe(record_filter), generation, record_filter)
            else:
                self.schedule_reconcile()
            return LoadResult.Cache

        stream = None
        try:
            if live:
                stream = self.remote.subscribe(record_filter)
                fresh = await anext(stream)
            else:
                fresh = await self.remote.fetch_all(record_filter)
        except asyncio.CancelledError:
            if stream is not None:
                await stream.aclose()
            raise
        except Exception as ex:
            if stream is not None:
                await stream.aclose()
            if generation != self._generation:
                return LoadResult.Stale
            logging.error(f'{self.family.name}: failed to load from the remote store: {ex}')
            self._set_error(str(ex))
            self._set_loading(False)
            return LoadResult.Failed

        if generation != self._generation:
            if stream is not None:
                await stream.aclose()
            return LoadResult.Stale

        self.publish(self.overlay(fresh))
        self._set_loading(False)
        logging.debug(f'{self.family.name}: published {len(self._items)} remote record(s).')

        since = record_filter.since if record_filter is not None else None
        await self.cache.put(self._items, replace=since is None, replace_since=since)
        if generation != self._generation:
            if stream is not None:
                await stream.aclose()
            return LoadResult.Stale
        await self.recompute_aggregate()

        if stream is not None:
            self._follow(stream, generation, record_filter)
        return LoadResult.Remote

    def _follow(self, stream: AsyncIterator[List[Record]], generation: int,
                record_filter: Optional[RecordFilter]) -> None:
        if self._subscription is not None:
            self._subscription.cancel()
        self._subscription = asyncio.get_running_loop().create_task(
            self._consume(stream, generation, record_filter))

    async def _consume(self, stream, generation: int, record_filter: Optional[RecordFilter]) -> None:
        try:
            async for snapshot in stream:
                if generation != self._generation:
                    break
                await reconcile.reconcile(self, snapshot, generation, record_filter)
        except asyncio.CancelledError:
            raise
        except Exception as ex:
            logging.warning(f'{self.family.name}: remote stream stopped: {ex}')
        finally:
            await stream.aclose()

    def schedule_reconcile(self) -> asyncio.Task:
        """Fetch and reconcile in the background. Failures are logged, never surfaced."""
        return self._track(self._background_reconcile(self._generation))

    async def _background_reconcile(self, generation: int) -> reconcile.ReconcileResult:
        try:
            fresh = await self.remote.fetch_all(self._filter)
        except asyncio.CancelledError:
            raise
        except Exception as ex:
            logging.warning(f'{self.family.name}: background reconciliation failed: {ex}')
            return reconcile.ReconcileResult.Failed
        return await reconcile.reconcile(self, fresh, generation, self._filter)

    async def refresh(self) -> reconcile.ReconcileResult:
        """Fetch and reconcile in the foreground, reporting failures on the error flag."""
        self.require_active()
        generation = self._generation
        self._set_loading(True)
        try:
            fresh = await self.remote.fetch_all(self._filter)
        except asyncio.CancelledError:
            raise
        except Exception as ex:
            if generation == self._generation:
                logging.error(f'{self.family.name}: refresh failed: {ex}')
                self._set_error(str(ex))
                self._set_loading(False)
            return reconcile.ReconcileResult.Failed

        result = await reconcile.reconcile(self, fresh, generation, self._filter)
        if generation == self._generation:
            self._set_error('')
            self._set_loading(False)
        return result

    async def load_remote(self, record_filter: Optional[RecordFilter] = None, live: bool = False) -> LoadResult:
        """Load straight from the remote store, bypassing the cache on the way in.

        Used to change the loaded range. The cache may only hold the range of an earlier,
        narrower filter, so it is replaced for the new range once the remote store answered.
        A live stream already followed is switched to the new filter.

        Args:
            record_filter: Bounds the remote read, None loads everything.
            live: Follow the remote stream after loading.

        Returns:
            LoadResult: :attr:`LoadResult.Remote`, or how the load ended early.
        """
        self.require_active()
        generation = self._generation
        previous = self._filter
        live = live or self._subscription is not None
        if self._subscription is not None:
            self._subscription.cancel()
            self._subscription = None

        self._filter = record_filter
        self._set_loading(True)
        self._set_error('')

        try:
            fresh = await self.remote.fetch_all(record_filter)
        except asyncio.CancelledError:
            raise
        except Exception as ex:
            if generation != self._generation:
                return LoadResult.Stale
            self._filter = previous
            logging.error(f'{self.family.name}: failed to load from the remote store: {ex}')
            self._set_error(str(ex))
            self._set_loading(False)
            return LoadResult.Failed

        if generation != self._generation:
            return LoadResult.Stale

        self.publish(self.overlay(fresh))
        self._set_loading(False)
        logging.debug(f'{self.family.name}: published {len(self._items)} remote record(s).')

        since = record_filter.since if record_filter is not None else None
        await self.cache.put(self._items, replace=since is None, replace_since=since)
        if generation != self._generation:
            return LoadResult.Stale
        await self.recompute_aggregate()

        if live:
            self._follow(self.remote.subscribe(record_filter), generation, record_filter)
        return LoadResult.Remote

    async def wait_idle(self) -> None:
        """Wait for the background reconciliations scheduled so far."""
        while True:
            pending = [t for t in self._tasks if not t.done()]
            if not pending:
                return
            await asyncio.gather(*pending, return_exceptions=True)

    async def _load_aggregate(self) -> None:
        if self.family.aggregate is None:
            return
        aggregate = await self.aggregate_cache.get() if self.aggregate_cache else None
        if aggregate is None or aggregate.count != len(self._items):
            await self.recompute_aggregate()
            return
        self._set_aggregate(aggregate)

    async def recompute_aggregate(self) -> None:
        """Reduce the published collection into a new aggregate and cache it."""
        if self.family.aggregate is None:
            return
        aggregate = self.family.aggregate.reduce(self._items)
        self._set_aggregate(aggregate)
        if self.aggregate_cache is not None:
            await self.aggregate_cache.put(aggregate)

    async def apply_aggregate_delta(self, old: Optional[Record], new: Optional[Record]) -> None:
        """Move the aggregate by the difference between ``old`` and ``new``."""
        spec = self.family.aggregate
        if spec is None:
            return
        if self._aggregate is None:
            await self.recompute_aggregate()
            return

        count, sum_a, sum_b = spec.delta(old, new)
        if not count and not sum_a and not sum_b:
            return
        self._set_aggregate(self._aggregate.apply(count, sum_a, sum_b))
        if self.aggregate_cache is not None:
            await self.aggregate_cache.put(self._aggregate)

    async def invalidate_cache(self) -> None:
        await self.cache.invalidate()
        if self.aggregate_cache is not None:
            await self.aggregate_cache.invalidate()

    async def cache_status(self) -> dict:
        return await self.cache.status()
