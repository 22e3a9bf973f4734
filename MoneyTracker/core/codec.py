"""Cache envelope codec.

Serializes cache envelopes, partition metadata and dashboard aggregates into plain JSON
objects, and back. Values JSON cannot represent losslessly are tagged:

    ============  ===========================
    Python type   Encoded as
    ============  ===========================
    Decimal       ``{"$dec": "12.50"}``
    datetime      ``{"$dt": "<isoformat>"}``
    date          ``{"$date": "YYYY-MM-DD"}``
    float nan/inf ``{"$float": "nan"}``
    dict          ``{"$map": {...}}``
    ============  ===========================

Decoding is strict. Any missing field, unexpected type, unknown tag, item count mismatch or
schema version mismatch raises :class:`~MoneyTracker.status.status.CacheCorruptException`,
so callers can fail closed and rebuild the cache from the remote store.
"""
import dataclasses
import datetime
import math
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Optional, Set

from .records import Aggregate, Record
from ..status import status

SCHEMA_VERSION: int = 1


@dataclasses.dataclass
class Envelope:
    """The persisted unit holding one partition's items plus capture metadata."""
    partition_key: str
    items: List[Record]
    captured_at: datetime.datetime
    item_count: Optional[int] = None

    def __post_init__(self):
        if self.item_count is None:
            self.item_count = len(self.items)


@dataclasses.dataclass
class PartitionMetadata:
    """The set of partition keys an entity family currently has envelopes for."""
    family: str
    keys: Set[str]
    updated_at: datetime.datetime


def encode_value(value: Any) -> Any:
    if value is None or isinstance(value, (bool, int, str)):
        return value
    if isinstance(value, float):
        if math.isfinite(value):
            return value
        return {'$float': repr(value)}
    if isinstance(value, Decimal):
        return {'$dec': str(value)}
    if isinstance(value, datetime.datetime):
        return {'$dt': value.isoformat()}
    if isinstance(value, datetime.date):
        return {'$date': value.isoformat()}
    if isinstance(value, (list, tuple)):
        return [encode_value(v) for v in value]
    if isinstance(value, dict):
        for k in value:
            if not isinstance(k, str):
                raise TypeError(f'Cannot encode mapping key {k!r}, keys must be strings.')
        return {'$map': {k: encode_value(v) for k, v in value.items()}}
    raise TypeError(f'Cannot encode value of type {type(value).__name__}.')


def decode_value(value: Any) -> Any:
    if value is None or isinstance(value, (bool, int, float, str)):
        return value
    if isinstance(value, list):
        return [decode_value(v) for v in value]
    if not isinstance(value, dict) or len(value) != 1:
        raise status.CacheCorruptException(f'Unexpected encoded value: {value!r}')

    tag, payload = next(iter(value.items()))
    try:
        if tag == '$dec':
            return Decimal(payload)
        if tag == '$dt':
            return datetime.datetime.fromisoformat(payload)
        if tag == '$date':
            return datetime.date.fromisoformat(payload)
        if tag == '$float':
            return float(payload)
        if tag == '$map':
            return {k: decode_value(v) for k, v in payload.items()}
    except (InvalidOperation, TypeError, ValueError, AttributeError) as ex:
        raise status.CacheCorruptException(f'Cannot decode {tag} value {payload!r}: {ex}') from ex
    raise status.CacheCorruptException(f'Unknown value tag "{tag}".')


def _require(data: Dict[str, Any], name: str, _type) -> Any:
    if not isinstance(data, dict):
        raise status.CacheCorruptException(f'Expected an object, got {type(data).__name__}.')
    if name not in data:
        raise status.CacheCorruptException(f'Missing field "{name}".')
    value = data[name]
    if isinstance(value, bool) and _type is not bool:
        raise status.CacheCorruptException(f'Field "{name}" must be {_type}, got bool.')
    if not isinstance(value, _type):
        raise status.CacheCorruptException(f'Field "{name}" must be {_type}, got {type(value).__name__}.')
    return value


def _parse_datetime(value: str, name: str) -> datetime.datetime:
    try:
        return datetime.datetime.fromisoformat(value)
    except ValueError as ex:
        raise status.CacheCorruptException(f'Field "{name}" is not an ISO timestamp: {value!r}') from ex


def _check_schema(data: Dict[str, Any]) -> None:
    schema = _require(data, 'schema', int)
    if schema != SCHEMA_VERSION:
        raise status.CacheCorruptException(f'Schema version {schema} does not match {SCHEMA_VERSION}.')


def encode_record(record: Record) -> Dict[str, Any]:
    return {
        'id': record.id,
        'timestamp': record.timestamp.isoformat(),
        'version': record.version,
        'fields': {k: encode_value(v) for k, v in record.fields.items()},
    }


def decode_record(data: Dict[str, Any]) -> Record:
    if not isinstance(data, dict) or 'id' not in data:
        raise status.CacheCorruptException('Record is missing "id".')
    record_id = data['id']
    if record_id is not None and not isinstance(record_id, str):
        raise status.CacheCorruptException(f'Record id must be a string, got {type(record_id).__name__}.')

    fields = _require(data, 'fields', dict)
    return Record(
        id=record_id,
        fields={k: decode_value(v) for k, v in fields.items()},
        timestamp=_parse_datetime(_require(data, 'timestamp', str), 'timestamp'),
        version=_require(data, 'version', int),
    )


def encode_envelope(envelope: Envelope) -> Dict[str, Any]:
    """Encode an envelope.

    Raises:
        ValueError: If the envelope's item count does not match its items.
        TypeError: If a field value has no encoding.
    """
    if envelope.item_count != len(envelope.items):
        raise ValueError(
            f'Envelope "{envelope.partition_key}" claims {envelope.item_count} items '
            f'but holds {len(envelope.items)}.')
    return {
        'schema': SCHEMA_VERSION,
        'partition_key': envelope.partition_key,
        'captured_at': envelope.captured_at.isoformat(),
        'item_count': envelope.item_count,
        'items': [encode_record(r) for r in envelope.items],
    }


def decode_envelope(data: Dict[str, Any]) -> Envelope:
    _check_schema(data)
    items = [decode_record(r) for r in _require(data, 'items', list)]
    item_count = _require(data, 'item_count', int)
    if item_count != len(items):
        raise status.CacheCorruptException(f'Envelope claims {item_count} items but holds {len(items)}.')
    return Envelope(
        partition_key=_require(data, 'partition_key', str),
        items=items,
        captured_at=_parse_datetime(_require(data, 'captured_at', str), 'captured_at'),
        item_count=item_count,
    )


def encode_metadata(metadata: PartitionMetadata) -> Dict[str, Any]:
    return {
        'schema': SCHEMA_VERSION,
        'family': metadata.family,
        'keys': sorted(metadata.keys),
        'updated_at': metadata.updated_at.isoformat(),
    }


def decode_metadata(data: Dict[str, Any]) -> PartitionMetadata:
    _check_schema(data)
    keys = _require(data, 'keys', list)
    if not all(isinstance(k, str) for k in keys):
        raise status.CacheCorruptException('Partition keys must be strings.')
    return PartitionMetadata(
        family=_require(data, 'family', str),
        keys=set(keys),
        updated_at=_parse_datetime(_require(data, 'updated_at', str), 'updated_at'),
    )


def encode_aggregate(aggregate: Aggregate) -> Dict[str, Any]:
    return {
        'schema': SCHEMA_VERSION,
        'count': aggregate.count,
        'sum_a': str(aggregate.sum_a),
        'sum_b': str(aggregate.sum_b),
        'captured_at': aggregate.captured_at.isoformat(),
    }


def decode_aggregate(data: Dict[str, Any]) -> Aggregate:
    _check_schema(data)
    try:
        sum_a = Decimal(_require(data, 'sum_a', str))
        sum_b = Decimal(_require(data, 'sum_b', str))
    except InvalidOperation as ex:
        raise status.CacheCorruptException(f'Aggregate sums are not decimals: {ex}') from ex
    return Aggregate(
        count=_require(data, 'count', int),
        sum_a=sum_a,
        sum_b=sum_b,
        captured_at=_parse_datetime(_require(data, 'captured_at', str), 'captured_at'),
    )
