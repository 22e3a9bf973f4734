"""Persisted queue of mutations waiting to be committed to the remote store.

A mutation whose remote call failed stays applied locally and is queued here, so the user's
data survives restarts while offline. Entries for the same record are coalesced:

    - an update of a record with a pending create is folded into the create
    - repeated updates of a record collapse into the latest one
    - deleting a record with a pending create cancels both, nothing ever reaches the remote

:meth:`Outbox.flush` replays the queue in order, retrying every entry with exponential backoff.
"""
import asyncio
import dataclasses
import datetime
import enum
import logging
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional

from . import codec
from .cache import family_prefix
from .records import Record, now_utc
from ..status import status

MAX_RETRIES: int = 6


class OutboxKind(enum.StrEnum):
    Create = 'create'
    Update = 'update'
    Delete = 'delete'


@dataclasses.dataclass
class OutboxEntry:
    """One pending remote write."""
    kind: OutboxKind
    record_id: str
    record: Optional[Record] = None
    queued_at: datetime.datetime = dataclasses.field(default_factory=now_utc)
    attempts: int = 0
    last_error: str = ''

    def to_dict(self) -> Dict[str, Any]:
        return {
            'kind': str(self.kind),
            'record_id': self.record_id,
            'record': codec.encode_record(self.record) if self.record else None,
            'queued_at': self.queued_at.isoformat(),
            'attempts': self.attempts,
            'last_error': self.last_error,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'OutboxEntry':
        try:
            return cls(
                kind=OutboxKind(data['kind']),
                record_id=data['record_id'],
                record=codec.decode_record(data['record']) if data.get('record') else None,
                queued_at=datetime.datetime.fromisoformat(data['queued_at']),
                attempts=int(data.get('attempts', 0)),
                last_error=data.get('last_error', ''),
            )
        except (KeyError, TypeError, ValueError) as ex:
            raise status.CacheCorruptException(f'Invalid outbox entry: {ex}') from ex


class Outbox:
    """Retry queue of one entity family.

    Args:
        storage: The encrypted storage the queue is persisted to.
        family: Entity family name.
        namespace: Key namespace of the active session.
        max_attempts: Attempts per entry and flush.
        wait_seconds: Wait after the first failed attempt.
        backoff: Multiplier applied to the wait after every further failure.
        sleep: Coroutine used to wait between attempts.
    """

    def __init__(
            self,
            storage,
            family: str,
            namespace: str = '',
            max_attempts: int = MAX_RETRIES,
            wait_seconds: float = 2.0,
            backoff: float = 2.0,
            sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.storage = storage
        self.family = family
        self.namespace = namespace
        self.max_attempts = max_attempts
        self.wait_seconds = wait_seconds
        self.backoff = backoff
        self._sleep = sleep
        self._entries: List[OutboxEntry] = []
        self._lock = asyncio.Lock()
        # Serializes flushes. The remote calls of a flush run outside `_lock`
        self._flushing = asyncio.Lock()
        # The entry a flush is committing, never coalesced with or removed by other writers
        self._in_flight: Optional[OutboxEntry] = None

    @property
    def key(self) -> str:
        return f'{family_prefix(self.namespace, self.family)}/outbox'

    @property
    def entries(self) -> List[OutboxEntry]:
        return list(self._entries)

    @property
    def pending_count(self) -> int:
        return len(self._entries)

    def has_pending_create(self, record_id: str) -> bool:
        return any(e.kind == OutboxKind.Create and e.record_id == record_id for e in self._entries)

    def is_pending(self, record_id: str) -> bool:
        return any(e.record_id == record_id for e in self._entries)

    def _emit(self) -> None:
        from ..signals import signals
        signals.syncPendingChanged.emit(self.family, self.pending_count)

    async def load(self) -> int:
        """Load the persisted queue. Returns the number of pending entries."""
        async with self._lock:
            try:
                data = await self.storage.read_json(self.key)
                entries = [OutboxEntry.from_dict(e) for e in (data or {}).get('entries', [])]
            except status.BaseStatusException as ex:
                logging.error(f'Failed to load the {self.family} outbox: {ex}')
                entries = []
            self._entries = entries
        if self._entries:
            logging.info(f'{self.family}: {len(self._entries)} change(s) waiting to sync.')
        self._emit()
        return self.pending_count

    async def _save(self) -> None:
        try:
            if self._entries:
                await self.storage.write_json(self.key, {
                    'schema': codec.SCHEMA_VERSION,
                    'entries': [e.to_dict() for e in self._entries],
                })
            else:
                await self.storage.delete(self.key)
        except status.BaseStatusException as ex:
            logging.error(f'Failed to persist the {self.family} outbox: {ex}')

    async def save(self) -> None:
        """Write the queue to storage again, e.g. after the storage was wiped."""
        async with self._lock:
            await self._save()

    async def enqueue(self, kind: OutboxKind, record_id: str, record: Optional[Record] = None) -> None:
        """Queue a remote write, coalescing it with the entries already queued for the record."""
        kind = OutboxKind(kind)
        async with self._lock:
            pending = [e for e in self._entries if e.record_id == record_id and e is not self._in_flight]
            create = next((e for e in pending if e.kind == OutboxKind.Create), None)

            if kind == OutboxKind.Create:
                self._entries.append(OutboxEntry(kind, record_id, record))
            elif kind == OutboxKind.Update:
                target = create or next((e for e in pending if e.kind == OutboxKind.Update), None)
                if target is not None:
                    target.record = record
                else:
                    self._entries.append(OutboxEntry(kind, record_id, record))
            else:
                self._entries = [e for e in self._entries if e.record_id != record_id or e is self._in_flight]
                if create is None:
                    self._entries.append(OutboxEntry(kind, record_id, record))

            logging.debug(f'{self.family}: queued {kind} of "{record_id}", {self.pending_count} pending.')
            await self._save()
        self._emit()

    async def discard(self, record_id: str) -> None:
        """Drop pending updates of a record superseded by a successful remote write."""
        if not any(self._is_superseded(e, record_id) for e in self._entries):
            return
        async with self._lock:
            before = len(self._entries)
            self._entries = [e for e in self._entries if not self._is_superseded(e, record_id)]
            if len(self._entries) == before:
                return
            await self._save()
        self._emit()

    def _is_superseded(self, entry: OutboxEntry, record_id: str) -> bool:
        return entry.record_id == record_id and entry.kind == OutboxKind.Update and entry is not self._in_flight

    def _remap(self, temp_id: str, remote_id: str) -> None:
        for entry in self._entries:
            if entry.record_id == temp_id:
                entry.record_id = remote_id
                if entry.record is not None:
                    entry.record = dataclasses.replace(entry.record, id=remote_id)

    async def clear(self) -> None:
        async with self._lock:
            self._entries = []
            await self._save()
        self._emit()

    def overlay(self, records: Iterable[Record]) -> List[Record]:
        """Apply the pending entries to an authoritative snapshot."""
        by_id: Dict[str, Record] = {}
        for record in records:
            by_id[record.id] = record
        for entry in self._entries:
            if entry.kind == OutboxKind.Delete:
                by_id.pop(entry.record_id, None)
            elif entry.record is not None:
                by_id[entry.record_id] = entry.record
        return list(by_id.values())

    async def _apply(self, remote, entry: OutboxEntry) -> Optional[str]:
        if entry.kind == OutboxKind.Create:
            record_id = await remote.create(entry.record)
            logging.debug(f'{self.family}: "{entry.record_id}" committed as "{record_id}".')
            return record_id
        if entry.kind == OutboxKind.Update:
            await remote.update(entry.record_id, entry.record)
        else:
            await remote.delete(entry.record_id)
        return None

    async def _commit(self, remote, entry: OutboxEntry) -> Optional[str]:
        attempts = 0
        wait = self.wait_seconds
        last_exception: Optional[BaseException] = None
        while attempts < self.max_attempts:
            attempts += 1
            try:
                return await self._apply(remote, entry)
            except (
                    status.RecordNotFoundException,
                    status.RemoteNotConfiguredException,
                    status.WorksheetNotFoundException,
            ):
                raise
            except Exception as ex:
                last_exception = ex
                entry.attempts += 1
                entry.last_error = str(ex)
                logging.warning(f'{self.family}: {entry.kind} of "{entry.record_id}" failed '
                                f'(attempt {attempts}/{self.max_attempts}): {ex}')
                if attempts < self.max_attempts:
                    await self._sleep(wait)
                    wait *= self.backoff
        raise last_exception

    async def flush(self, remote) -> int:
        """Replay the queue against ``remote`` in order.

        Stops at the first entry that still fails after all retries, leaving it and the
        entries behind it queued. Entries whose record no longer exists remotely are dropped.
        The queue stays writable while an entry is being committed, and entries queued for a
        record whose create commits meanwhile are moved to the record's remote id.

        Returns:
            int: The number of entries committed.
        """
        committed = 0
        async with self._flushing:
            while True:
                async with self._lock:
                    if not self._entries:
                        break
                    entry = self._in_flight = self._entries[0]

                remote_id = None
                try:
                    remote_id = await self._commit(remote, entry)
                    committed += 1
                except status.RecordNotFoundException:
                    logging.warning(f'{self.family}: "{entry.record_id}" no longer exists remotely, '
                                    f'dropping its {entry.kind}.')
                except asyncio.CancelledError:
                    self._in_flight = None
                    await self._save()
                    raise
                except Exception as ex:
                    self._in_flight = None
                    logging.error(f'{self.family}: giving up flushing for now, {self.pending_count} pending: {ex}')
                    async with self._lock:
                        await self._save()
                    break

                async with self._lock:
                    self._in_flight = None
                    self._entries = [e for e in self._entries if e is not entry]
                    if remote_id is not None:
                        self._remap(entry.record_id, remote_id)
                    await self._save()

            if committed:
                logging.info(f'{self.family}: committed {committed} queued change(s).')
        self._emit()
        return committed
