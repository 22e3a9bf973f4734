"""Optimistic create, update and delete.

Every mutation moves through ``Requested -> LocalApplied -> RemoteCommitted -> Settled``, or
ends in ``Failed``. The steps run strictly one after the other: the state container first,
then the cache and the aggregate, and the remote store last. A reader never sees local or
cached state that is behind what the remote store was asked to do.

Remote failures are not rolled back. The local change stays in place, the mutation is queued
in the family's outbox and a :class:`~MoneyTracker.status.status.MutationFailedException` is
raised to the caller.
"""
import asyncio
import dataclasses
import enum
import functools
import logging
from typing import Any, Dict, Iterable, List, Optional

from .outbox import OutboxKind
from .reconcile import ReconcileResult
from .records import Record, is_temporary, new_temp_id
from ..status import status


class MutationKind(enum.StrEnum):
    Create = 'create'
    Update = 'update'
    Delete = 'delete'


class MutationState(enum.StrEnum):
    Requested = 'requested'
    LocalApplied = 'local_applied'
    RemoteCommitted = 'remote_committed'
    Settled = 'settled'
    Failed = 'failed'


@dataclasses.dataclass
class Mutation:
    """The progress of one optimistic mutation.

    Attributes:
        kind: Create, update or delete.
        record_id: Id of the affected record. A temporary id for creates.
        record: The record as written, None for deletes.
        previous: The record before an update or delete.
        state: The current state.
        remote_id: Id assigned by the remote store to a created record.
        error: The remote failure of a failed mutation.
        history: Every state the mutation went through.
        settle_task: The reconciliation that settles a create.
    """
    kind: MutationKind
    record_id: str
    record: Optional[Record] = None
    previous: Optional[Record] = None
    state: MutationState = MutationState.Requested
    remote_id: Optional[str] = None
    error: Optional[BaseException] = None
    history: List[MutationState] = dataclasses.field(default_factory=lambda: [MutationState.Requested])
    settle_task: Optional[asyncio.Task] = dataclasses.field(default=None, repr=False)

    def advance(self, state: MutationState) -> None:
        self.state = state
        self.history.append(state)
        logging.debug(f'{self.kind} of "{self.record_id}": {state}')


class MutationCoordinator:
    """Applies mutations to one family's state container, cache and remote store.

    The cache, remote store and outbox are taken from the container when a mutation starts,
    so a mutation in flight keeps writing to the session it started in.
    """

    def __init__(self, container) -> None:
        self.container = container

    def _partition(self, record: Record) -> str:
        return self.container.family.partition_key(record)

    def _find(self, record_id: str, expected_version: Optional[int]) -> Record:
        current = self.container.find(record_id)
        if current is None:
            raise status.RecordNotFoundException(f'"{record_id}" is not a {self.container.family.name} record.')
        if expected_version is not None and current.version != expected_version:
            raise status.VersionConflictException(
                f'"{record_id}" is at version {current.version}, expected {expected_version}.')
        return current

    def _check_pending(self, record_id: str, outbox) -> bool:
        """Return True if the record only exists as a queued create."""
        if not is_temporary(record_id):
            return False
        if outbox is not None and outbox.has_pending_create(record_id):
            return True
        raise status.RecordPendingException(f'"{record_id}" is waiting for its remote id.')

    async def _fail(self, mutation: Mutation, ex: Exception, outbox) -> None:
        mutation.error = ex
        mutation.advance(MutationState.Failed)
        if outbox is not None:
            await outbox.enqueue(OutboxKind(mutation.kind.value), mutation.record_id, mutation.record)
        raise status.MutationFailedException(
            f'{mutation.kind} of "{mutation.record_id}" failed: {ex}', mutation=mutation) from ex

    def _settle(self, mutation: Mutation, task: asyncio.Task) -> None:
        if task.cancelled() or task.exception() is not None:
            return
        if task.result() in (ReconcileResult.Updated, ReconcileResult.Unchanged):
            if self.container.find(mutation.record_id) is None:
                mutation.advance(MutationState.Settled)

    async def create(self, record: Record) -> Mutation:
        """Create a record under a temporary id.

        After the remote create succeeds, the shared background reconciliation replaces the
        temporary record with the authoritative one and settles the mutation.

        Raises:
            status.MutationFailedException: If the remote create fails.
        """
        container = self.container
        container.require_active()
        generation = container.generation
        cache, remote, outbox = container.cache, container.remote, container.outbox

        record = dataclasses.replace(record, id=new_temp_id(), fields=dict(record.fields), version=record.version + 1)
        mutation = Mutation(MutationKind.Create, record.id, record)

        container.track(id(mutation), record.id, record)
        try:
            container.insert(record)
            await cache.upsert_one(record)
            if generation == container.generation:
                await container.apply_aggregate_delta(None, record)
            mutation.advance(MutationState.LocalApplied)

            try:
                mutation.remote_id = await remote.create(record)
            except asyncio.CancelledError:
                raise
            except Exception as ex:
                await self._fail(mutation, ex, outbox)
        finally:
            container.untrack(id(mutation))
        mutation.advance(MutationState.RemoteCommitted)

        if generation == container.generation:
            mutation.settle_task = container.schedule_reconcile()
            mutation.settle_task.add_done_callback(functools.partial(self._settle, mutation))
        return mutation

    async def update(self, record_id: str, changes: Dict[str, Any], expected_version: Optional[int] = None) -> Mutation:
        """Apply field changes to a record.

        Args:
            record_id: Id of the record.
            changes: Field values to set. A ``timestamp`` key moves the record in time.
            expected_version: Reject the update if the record changed since it was read.

        Raises:
            status.RecordNotFoundException: If the record is not published.
            status.VersionConflictException: If ``expected_version`` is stale.
            status.RecordPendingException: If the record is still waiting for its remote id.
            status.MutationFailedException: If the remote update fails.
        """
        container = self.container
        container.require_active()
        generation = container.generation
        cache, remote, outbox = container.cache, container.remote, container.outbox

        current = self._find(record_id, expected_version)
        queued = self._check_pending(record_id, outbox)

        updated = current.updated(changes)
        mutation = Mutation(MutationKind.Update, record_id, updated, previous=current)

        container.track(id(mutation), record_id, updated)
        try:
            container.replace(updated)
            old_key, new_key = self._partition(current), self._partition(updated)
            if old_key != new_key:
                await cache.delete_one(record_id, old_key)
            await cache.upsert_one(updated)
            if generation == container.generation:
                await container.apply_aggregate_delta(current, updated)
            mutation.advance(MutationState.LocalApplied)

            if queued:
                # Folded into the queued create
                await outbox.enqueue(OutboxKind.Update, record_id, updated)
                return mutation

            try:
                await remote.update(record_id, updated)
            except asyncio.CancelledError:
                raise
            except Exception as ex:
                await self._fail(mutation, ex, outbox)
        finally:
            container.untrack(id(mutation))
        mutation.advance(MutationState.RemoteCommitted)

        if outbox is not None:
            await outbox.discard(record_id)
        mutation.advance(MutationState.Settled)
        return mutation

    async def delete(self, record_id: str, expected_version: Optional[int] = None) -> Mutation:
        """Delete a record.

        Raises:
            status.RecordNotFoundException: If the record is not published.
            status.VersionConflictException: If ``expected_version`` is stale.
            status.RecordPendingException: If the record is still waiting for its remote id.
            status.MutationFailedException: If the remote delete fails.
        """
        container = self.container
        container.require_active()
        generation = container.generation
        cache, remote, outbox = container.cache, container.remote, container.outbox

        current = self._find(record_id, expected_version)
        queued = self._check_pending(record_id, outbox)

        mutation = Mutation(MutationKind.Delete, record_id, previous=current)

        container.track(id(mutation), record_id, None)
        try:
            container.remove(record_id)
            await cache.delete_one(record_id, self._partition(current))
            if generation == container.generation:
                await container.apply_aggregate_delta(current, None)
            mutation.advance(MutationState.LocalApplied)

            if queued:
                # Cancels the queued create, nothing reaches the remote store
                await outbox.enqueue(OutboxKind.Delete, record_id)
                mutation.advance(MutationState.Settled)
                return mutation

            try:
                await remote.delete(record_id)
            except asyncio.CancelledError:
                raise
            except Exception as ex:
                await self._fail(mutation, ex, outbox)
        finally:
            container.untrack(id(mutation))
        mutation.advance(MutationState.RemoteCommitted)

        if outbox is not None:
            await outbox.discard(record_id)
        mutation.advance(MutationState.Settled)
        return mutation

    async def update_many(self, record_ids: Iterable[str], changes: Dict[str, Any]) -> List[Mutation]:
        """Apply the same changes to several records, one after the other.

        Every record is attempted. Records still waiting for their remote id are skipped, and
        the first remote failure is raised once all are done.
        """
        mutations: List[Mutation] = []
        failures: List[status.MutationFailedException] = []
        for record_id in list(record_ids):
            try:
                mutations.append(await self.update(record_id, changes))
            except status.RecordPendingException:
                logging.debug(f'Skipping "{record_id}", it is waiting for its remote id.')
            except status.MutationFailedException as ex:
                failures.append(ex)
                mutations.append(ex.mutation)
        if failures:
            raise failures[0]
        return mutations

    async def delete_many(self, record_ids: Iterable[str]) -> List[Mutation]:
        """Delete several records, one after the other.

        Every record is attempted. Records still waiting for their remote id are skipped, and
        the first remote failure is raised once all are done.
        """
        mutations: List[Mutation] = []
        failures: List[status.MutationFailedException] = []
        for record_id in list(record_ids):
            try:
                mutations.append(await self.delete(record_id))
            except status.RecordPendingException:
                logging.debug(f'Skipping "{record_id}", it is waiting for its remote id.')
            except status.MutationFailedException as ex:
                failures.append(ex)
                mutations.append(ex.mutation)
        if failures:
            raise failures[0]
        return mutations
