"""Partitioned cache store with rolling TTL expiry.

Each entity family owns one :class:`PartitionedCacheStore`. Records are grouped into
partitions by the family's partition key function (per day, per month, or a single constant
partition) and every partition is stored as one encrypted envelope. A metadata entry lists the
partition keys the family currently has envelopes for.

Storage keys, all scoped by the session namespace::

    <namespace>/<family>/meta
    <namespace>/<family>/partition/<partition key>
    <namespace>/<family>/aggregate

The cache is an optimization layer only. Storage failures are logged and turned into a miss
(reads) or dropped (writes), and corrupt data invalidates the family so the authoritative
path can rebuild it.
"""
import asyncio
import datetime
import enum
import logging
from typing import Any, Callable, Dict, Iterable, List, Optional

from . import codec
from .codec import Envelope, PartitionMetadata
from .records import Aggregate, Record, now_utc
from .storage import EncryptedStorage
from ..status import status


class CacheState(enum.StrEnum):
    """Enum for cache state values."""
    Uninitialized = 'cache is uninitialized'
    Empty = 'cache is empty'
    Stale = 'cache is stale'
    Valid = 'cache is valid'


def family_prefix(namespace: str, family: str) -> str:
    return f'{namespace}/{family}' if namespace else family


class PartitionedCacheStore:
    """Cache of one entity family split into independently expiring partitions.

    Args:
        storage: The encrypted storage the envelopes are written to.
        family: Entity family name.
        partition_key: Function deriving a record's partition key.
        ttl: How long an envelope stays fresh after it was captured.
        namespace: Key namespace of the active session.
        clock: Returns the current time. Injectable for tests.
    """

    def __init__(
            self,
            storage: EncryptedStorage,
            family: str,
            partition_key: Callable[[Record], str],
            ttl: datetime.timedelta,
            namespace: str = '',
            clock: Callable[[], datetime.datetime] = now_utc,
    ) -> None:
        self.storage = storage
        self.family = family
        self.partition_key = partition_key
        self.ttl = ttl
        self.namespace = namespace
        self.clock = clock

        # This store is the sole writer of its keys, the lock serializes read-modify-write cycles
        self._lock = asyncio.Lock()

    @property
    def prefix(self) -> str:
        return family_prefix(self.namespace, self.family)

    @property
    def meta_key(self) -> str:
        return f'{self.prefix}/meta'

    def envelope_key(self, partition_key: str) -> str:
        return f'{self.prefix}/partition/{partition_key}'

    def is_expired(self, captured_at: datetime.datetime) -> bool:
        return self.clock() - captured_at > self.ttl

    async def _read_meta(self) -> Optional[PartitionMetadata]:
        data = await self.storage.read_json(self.meta_key)
        if data is None:
            return None
        return codec.decode_metadata(data)

    async def _write_meta(self, keys: Iterable[str]) -> None:
        metadata = PartitionMetadata(family=self.family, keys=set(keys), updated_at=self.clock())
        await self.storage.write_json(self.meta_key, codec.encode_metadata(metadata))

    async def _read_envelope(self, partition_key: str) -> Optional[Envelope]:
        data = await self.storage.read_json(self.envelope_key(partition_key))
        if data is None:
            return None
        envelope = codec.decode_envelope(data)
        if envelope.partition_key != partition_key:
            raise status.CacheCorruptException(
                f'Envelope "{self.envelope_key(partition_key)}" holds partition "{envelope.partition_key}".')
        return envelope

    async def _write_envelope(self, partition_key: str, items: List[Record],
                              captured_at: Optional[datetime.datetime] = None) -> None:
        envelope = Envelope(partition_key=partition_key, items=items, captured_at=captured_at or self.clock())
        await self.storage.write_json(self.envelope_key(partition_key), codec.encode_envelope(envelope))

    def _group(self, items: Iterable[Record]) -> Dict[str, List[Record]]:
        groups: Dict[str, List[Record]] = {}
        for record in items:
            groups.setdefault(self.partition_key(record), []).append(record)
        return groups

    async def _invalidate(self) -> None:
        try:
            metadata = await self._read_meta()
        except status.CacheCorruptException:
            metadata = None

        if metadata:
            for key in metadata.keys:
                await self.storage.delete(self.envelope_key(key))
        await self.storage.delete(self.meta_key)

        from ..signals import signals
        signals.cacheInvalidated.emit(self.prefix)

    async def _invalidate_quietly(self) -> None:
        try:
            await self._invalidate()
        except (status.BaseStatusException, OSError) as ex:
            logging.error(f'Failed to invalidate the {self.prefix} cache: {ex}')

    async def put(self, items: Iterable[Record], replace: bool = False,
                  replace_since: Optional[datetime.datetime] = None) -> bool:
        """Write records grouped by partition, one envelope per partition touched.

        Partition metadata is rewritten after the envelopes, then expired partitions are pruned.

        Args:
            items: The records to cache.
            replace: The records are a complete, unfiltered snapshot. Partitions they do not
                touch are deleted.
            replace_since: The records are a complete snapshot of everything at or after this
                instant. Cached records in that range are dropped unless ``items`` carries them,
                older records are kept.

        Returns:
            bool: True if the write succeeded.
        """
        async with self._lock:
            try:
                groups = self._group(items)

                try:
                    metadata = await self._read_meta()
                except status.CacheCorruptException:
                    metadata = None
                known = set(metadata.keys) if metadata else set()

                older: Dict[str, Optional[Envelope]] = {}
                if not replace and replace_since is not None:
                    older = await self._envelopes_from(known, replace_since)

                for key, group in groups.items():
                    envelope = older.pop(key, None)
                    kept = [r for r in envelope.items if r.timestamp < replace_since] if envelope else []
                    await self._write_envelope(key, kept + group)

                if replace:
                    for key in known - set(groups):
                        await self.storage.delete(self.envelope_key(key))
                    keys = set(groups)
                else:
                    keys = known | set(groups)
                    for key, envelope in older.items():
                        kept = [r for r in envelope.items if r.timestamp < replace_since] if envelope else []
                        if not kept:
                            await self.storage.delete(self.envelope_key(key))
                            keys.discard(key)
                        elif len(kept) != len(envelope.items):
                            await self._write_envelope(key, kept, captured_at=envelope.captured_at)

                await self._write_meta(keys)
                await self._prune(keys, skip=set(groups))

                logging.debug(f'Cached {sum(len(g) for g in groups.values())} {self.family} record(s) '
                              f'in {len(groups)} partition(s).')
                return True
            except (status.BaseStatusException, TypeError, ValueError) as ex:
                logging.error(f'Failed to write the {self.prefix} cache: {ex}')
                return False

    async def _envelopes_from(self, keys: set, since: datetime.datetime) -> Dict[str, Optional[Envelope]]:
        """Read every cached partition that may hold records at or after ``since``.

        Partitions keyed before the partition of ``since`` are left out. Unreadable partitions
        map to None.
        """
        since_key = self.partition_key(Record(None, {}, since))
        envelopes: Dict[str, Optional[Envelope]] = {}
        for key in sorted(keys):
            if key < since_key:
                continue
            try:
                envelopes[key] = await self._read_envelope(key)
            except status.CacheCorruptException:
                envelopes[key] = None
        return envelopes

    async def _prune(self, keys: set, skip: set) -> None:
        survivors = set(keys)
        for key in sorted(keys - skip):
            try:
                envelope = await self._read_envelope(key)
            except status.CacheCorruptException:
                envelope = None
            if envelope is None or self.is_expired(envelope.captured_at):
                logging.debug(f'Pruning expired {self.family} partition "{key}".')
                await self.storage.delete(self.envelope_key(key))
                survivors.discard(key)
        if survivors != keys:
            await self._write_meta(survivors)

    async def get_all(self) -> Optional[List[Record]]:
        """Return the cached records of every fresh partition.

        Expired partitions are deleted and dropped from the metadata as they are found.

        Returns:
            The concatenated records, an empty list for a fresh cache of an empty collection,
            or None when nothing usable is cached.
        """
        async with self._lock:
            try:
                metadata = await self._read_meta()
                if metadata is None:
                    return None

                items: List[Record] = []
                survivors: List[str] = []
                for key in sorted(metadata.keys):
                    envelope = await self._read_envelope(key)
                    if envelope is None:
                        logging.warning(f'{self.family} partition "{key}" is listed but missing.')
                        continue
                    if self.is_expired(envelope.captured_at):
                        logging.debug(f'{self.family} partition "{key}" expired, deleting.')
                        await self.storage.delete(self.envelope_key(key))
                        continue
                    survivors.append(key)
                    items.extend(envelope.items)

                if not survivors:
                    if metadata.keys or self.is_expired(metadata.updated_at):
                        await self.storage.delete(self.meta_key)
                        return None
                    # An empty collection was cached on purpose
                    return []

                if len(survivors) != len(metadata.keys):
                    await self._write_meta(survivors)
                return items

            except status.CacheCorruptException as ex:
                logging.warning(f'The {self.prefix} cache is corrupt, invalidating: {ex}')
                await self._invalidate_quietly()
                return None
            except status.BaseStatusException as ex:
                logging.error(f'Failed to read the {self.prefix} cache: {ex}')
                return None

    async def upsert_one(self, record: Record) -> bool:
        """Insert or replace one record, rewriting only its own partition.

        The partition keeps its capture time, so the record expires with the snapshot it
        joined. Nothing is written while the family has no cache at all.

        Returns:
            bool: True if the envelope was written.
        """
        async with self._lock:
            try:
                metadata = await self._read_meta()
                if metadata is None:
                    logging.debug(f'No {self.family} cache to upsert into.')
                    return False

                key = self.partition_key(record)
                envelope = await self._read_envelope(key) if key in metadata.keys else None

                items = list(envelope.items) if envelope else []
                index = next((i for i, r in enumerate(items) if r.id == record.id), None)
                if index is None:
                    items.append(record)
                else:
                    items[index] = record

                await self._write_envelope(key, items, envelope.captured_at if envelope else None)
                if key not in metadata.keys:
                    await self._write_meta(metadata.keys | {key})
                return True

            except status.CacheCorruptException as ex:
                logging.warning(f'The {self.prefix} cache is corrupt, invalidating: {ex}')
                await self._invalidate_quietly()
                return False
            except (status.BaseStatusException, TypeError, ValueError) as ex:
                logging.error(f'Failed to upsert into the {self.prefix} cache: {ex}')
                return False

    async def delete_one(self, record_id: str, partition_key: Optional[str] = None) -> bool:
        """Remove one record, rewriting only the partition that holds it.

        Args:
            record_id: Id of the record to remove.
            partition_key: The record's partition. Without it every known partition is searched.

        Returns:
            bool: True if the record was found and removed.
        """
        async with self._lock:
            try:
                metadata = await self._read_meta()
                if metadata is None:
                    return False

                if partition_key is None:
                    keys = sorted(metadata.keys)
                else:
                    keys = [partition_key] if partition_key in metadata.keys else []

                for key in keys:
                    envelope = await self._read_envelope(key)
                    if envelope is None:
                        continue
                    items = [r for r in envelope.items if r.id != record_id]
                    if len(items) == len(envelope.items):
                        continue
                    await self._write_envelope(key, items, envelope.captured_at)
                    return True
                return False

            except status.CacheCorruptException as ex:
                logging.warning(f'The {self.prefix} cache is corrupt, invalidating: {ex}')
                await self._invalidate_quietly()
                return False
            except (status.BaseStatusException, TypeError, ValueError) as ex:
                logging.error(f'Failed to delete from the {self.prefix} cache: {ex}')
                return False

    async def invalidate(self) -> None:
        """Delete every envelope of the family and its metadata."""
        async with self._lock:
            await self._invalidate_quietly()

    async def status(self) -> Dict[str, Any]:
        """Describe the cache of the family, partition by partition.

        Returns:
            dict: ``state``, ``updated_at`` and per-partition ``captured_at``, ``expires_at``,
            ``expired`` and ``item_count``.
        """
        async with self._lock:
            result: Dict[str, Any] = {
                'family': self.family,
                'state': CacheState.Uninitialized,
                'updated_at': None,
                'partitions': {},
            }
            try:
                metadata = await self._read_meta()
                if metadata is None:
                    return result
                result['updated_at'] = metadata.updated_at

                for key in sorted(metadata.keys):
                    envelope = await self._read_envelope(key)
                    if envelope is None:
                        continue
                    result['partitions'][key] = {
                        'captured_at': envelope.captured_at,
                        'expires_at': envelope.captured_at + self.ttl,
                        'expired': self.is_expired(envelope.captured_at),
                        'item_count': envelope.item_count,
                    }
            except status.BaseStatusException as ex:
                logging.warning(f'Failed to read the {self.prefix} cache status: {ex}')
                result['state'] = CacheState.Stale
                return result

            partitions = result['partitions'].values()
            if not partitions:
                result['state'] = CacheState.Empty
            elif all(p['expired'] for p in partitions):
                result['state'] = CacheState.Stale
            else:
                result['state'] = CacheState.Valid
            return result


class AggregateCache:
    """Cache of a family's dashboard aggregate, stored as a single entry.

    Args:
        storage: The encrypted storage.
        family: Entity family name.
        ttl: How long the aggregate stays fresh.
        namespace: Key namespace of the active session.
        clock: Returns the current time.
    """

    def __init__(
            self,
            storage: EncryptedStorage,
            family: str,
            ttl: datetime.timedelta,
            namespace: str = '',
            clock: Callable[[], datetime.datetime] = now_utc,
    ) -> None:
        self.storage = storage
        self.family = family
        self.ttl = ttl
        self.namespace = namespace
        self.clock = clock

    @property
    def key(self) -> str:
        return f'{family_prefix(self.namespace, self.family)}/aggregate'

    async def get(self) -> Optional[Aggregate]:
        try:
            data = await self.storage.read_json(self.key)
            if data is None:
                return None
            aggregate = codec.decode_aggregate(data)
        except status.CacheCorruptException as ex:
            logging.warning(f'The {self.family} aggregate is corrupt, discarding: {ex}')
            await self.invalidate()
            return None
        except status.BaseStatusException as ex:
            logging.error(f'Failed to read the {self.family} aggregate: {ex}')
            return None

        if self.clock() - aggregate.captured_at > self.ttl:
            logging.debug(f'The {self.family} aggregate expired.')
            await self.invalidate()
            return None
        return aggregate

    async def put(self, aggregate: Aggregate) -> bool:
        try:
            await self.storage.write_json(self.key, codec.encode_aggregate(aggregate))
            return True
        except status.BaseStatusException as ex:
            logging.error(f'Failed to write the {self.family} aggregate: {ex}')
            return False

    async def invalidate(self) -> None:
        try:
            await self.storage.delete(self.key)
        except status.BaseStatusException as ex:
            logging.error(f'Failed to delete the {self.family} aggregate: {ex}')
