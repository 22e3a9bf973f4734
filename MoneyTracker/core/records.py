"""Records, dashboard aggregates and entity family descriptions.

A :class:`Record` is the unit every layer of the sync engine moves around. The engine only
inspects a few things about it: its id, its timestamp (or a grouping field) to derive the
partition key, and the identity and watched fields named by its :class:`FamilySpec`.
"""
import dataclasses
import datetime
import logging
import time
import uuid
from decimal import Decimal
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

TEMP_ID_PREFIX: str = 'temp_'
CONSTANT_PARTITION: str = 'all'


def now_utc() -> datetime.datetime:
    """Return the current UTC time as an aware datetime."""
    return datetime.datetime.now(datetime.timezone.utc)


def new_temp_id() -> str:
    """Return a local-only identifier that can never collide with a remote one."""
    return f'{TEMP_ID_PREFIX}{int(time.time() * 1000)}_{uuid.uuid4().hex[:8]}'


def is_temporary(record_id: Optional[str]) -> bool:
    return bool(record_id) and record_id.startswith(TEMP_ID_PREFIX)


@dataclasses.dataclass
class Record:
    """A generic entity record.

    Attributes:
        id: Remote identifier, a temporary id until the remote store assigns one, or None.
        fields: Business fields of the record.
        timestamp: The instant used for partitioning and ordering.
        version: Local revision counter, bumped by every local mutation.
    """
    id: Optional[str]
    fields: Dict[str, Any]
    timestamp: datetime.datetime
    version: int = 0

    def get(self, name: str, default: Any = None) -> Any:
        """Return a field value, or the id, timestamp or version when asked by name."""
        if name == 'id':
            return self.id
        if name == 'timestamp':
            return self.timestamp
        if name == 'version':
            return self.version
        return self.fields.get(name, default)

    @property
    def is_temporary(self) -> bool:
        return is_temporary(self.id)

    def updated(self, changes: Dict[str, Any]) -> 'Record':
        """Return a copy with ``changes`` applied and the version bumped.

        A ``timestamp`` key in ``changes`` moves the record in time.
        """
        changes = dict(changes)
        timestamp = changes.pop('timestamp', self.timestamp)
        fields = {**self.fields, **changes}
        return dataclasses.replace(self, fields=fields, timestamp=timestamp, version=self.version + 1)


def day_key(record: Record) -> str:
    """Partition by calendar day, ``YYYY-MM-DD``."""
    return record.timestamp.strftime('%Y-%m-%d')


def month_key(record: Record) -> str:
    """Partition by calendar month of the timestamp, ``YYYY-MM``."""
    return record.timestamp.strftime('%Y-%m')


def field_month_key(record: Record) -> str:
    """Partition by the ``year`` and ``month`` fields, falling back to the timestamp."""
    year, month = record.fields.get('year'), record.fields.get('month')
    if year is None or month is None:
        return month_key(record)
    return f'{int(year):04d}-{int(month):02d}'


def constant_key(record: Record) -> str:
    """Put every record into the single global partition."""
    return CONSTANT_PARTITION


@dataclasses.dataclass(frozen=True)
class Aggregate:
    """A pre-reduced dashboard summary kept alongside a collection."""
    count: int
    sum_a: Decimal
    sum_b: Decimal
    captured_at: datetime.datetime

    def apply(self, count: int, sum_a: Decimal, sum_b: Decimal,
              captured_at: Optional[datetime.datetime] = None) -> 'Aggregate':
        """Return a new aggregate moved by the given delta."""
        return Aggregate(
            count=self.count + count,
            sum_a=self.sum_a + sum_a,
            sum_b=self.sum_b + sum_b,
            captured_at=captured_at or now_utc(),
        )


Contribution = Tuple[int, Decimal, Decimal]
ZERO_CONTRIBUTION: Contribution = (0, Decimal(0), Decimal(0))


def to_decimal(value: Any) -> Decimal:
    """Convert a numeric field value to Decimal, treating missing values as zero."""
    if value is None or value == '':
        return Decimal(0)
    if isinstance(value, Decimal):
        return value
    if isinstance(value, float):
        return Decimal(str(value))
    try:
        return Decimal(value)
    except (ArithmeticError, TypeError, ValueError):
        logging.debug(f'Cannot convert "{value}" to Decimal. Using 0.')
        return Decimal(0)


@dataclasses.dataclass(frozen=True)
class AggregateSpec:
    """Describes how a single record contributes to its family's aggregate."""
    sum_a: Callable[[Record], Decimal]
    sum_b: Callable[[Record], Decimal]

    def contribution(self, record: Optional[Record]) -> Contribution:
        if record is None:
            return ZERO_CONTRIBUTION
        return 1, to_decimal(self.sum_a(record)), to_decimal(self.sum_b(record))

    def delta(self, old: Optional[Record], new: Optional[Record]) -> Contribution:
        """The change moving from ``old`` to ``new``: +new on create, new - old on update, -old on delete."""
        old_c = self.contribution(old)
        new_c = self.contribution(new)
        return new_c[0] - old_c[0], new_c[1] - old_c[1], new_c[2] - old_c[2]

    def reduce(self, records: Iterable[Record], captured_at: Optional[datetime.datetime] = None) -> Aggregate:
        count, sum_a, sum_b = ZERO_CONTRIBUTION
        for record in records:
            c, a, b = self.contribution(record)
            count, sum_a, sum_b = count + c, sum_a + a, sum_b + b
        return Aggregate(count, sum_a, sum_b, captured_at or now_utc())


def sort_records(records: Iterable[Record], key: str = 'timestamp', reverse: bool = False) -> List[Record]:
    """Return records in a deterministic order: by ``key``, ties broken by id."""
    return sorted(records, key=lambda r: (r.get(key), r.id or ''), reverse=reverse)


@dataclasses.dataclass(frozen=True)
class FamilySpec:
    """Everything the engine needs to know about one entity family.

    Attributes:
        name: Family name, also the cache key namespace of the family.
        partition_key: Function deriving a record's partition key.
        ttl: How long a cached partition stays fresh.
        watched: The field compared during reconciliation besides the identity.
        identity: The identity field compared during reconciliation.
        sort_key: Field giving the family's deterministic order.
        reverse: Sort newest first.
        field_types: Field names mapped to their type names, used by remote stores.
        aggregate: How records reduce into the dashboard aggregate, if the family has one.
    """
    name: str
    partition_key: Callable[[Record], str]
    ttl: datetime.timedelta
    watched: str
    identity: str = 'id'
    sort_key: str = 'timestamp'
    reverse: bool = False
    field_types: Dict[str, str] = dataclasses.field(default_factory=dict)
    aggregate: Optional[AggregateSpec] = None

    def sort(self, records: Iterable[Record]) -> List[Record]:
        return sort_records(records, key=self.sort_key, reverse=self.reverse)

    def with_ttl(self, hours: float) -> 'FamilySpec':
        return dataclasses.replace(self, ttl=datetime.timedelta(hours=hours))
