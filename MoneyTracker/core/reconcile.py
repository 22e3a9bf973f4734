"""Reconciliation of authoritative snapshots with the published collection.

Change detection is deliberately shallow: two collections are considered equal when they have
the same length and, position by position, the same identity and watched field values. Both
sides are put in the family's deterministic order first, so the ordinal comparison never
misses a real change because of ordering differences.
"""
import enum
import logging
from typing import Optional, Sequence

from .records import Record
from .remote import RecordFilter


class ReconcileResult(enum.StrEnum):
    """Outcome of a reconciliation."""
    Updated = 'updated'
    Unchanged = 'unchanged'
    Stale = 'stale'
    Failed = 'failed'


def has_changed(candidate: Sequence[Record], current: Sequence[Record], identity: str = 'id',
                watched: str = None) -> bool:
    """Return True unless both sequences agree on identity and watched field at every position.

    Args:
        candidate: The freshly fetched, sorted records.
        current: The currently published, sorted records.
        identity: Name of the identity field.
        watched: Name of the watched field. Only the identity is compared if None.
    """
    if len(candidate) != len(current):
        return True
    for a, b in zip(candidate, current):
        if a.get(identity) != b.get(identity):
            return True
        if watched is not None and a.get(watched) != b.get(watched):
            return True
    return False


async def reconcile(container, fresh: Sequence[Record], generation: int,
                    record_filter: Optional[RecordFilter] = None) -> ReconcileResult:
    """Replace the container's state and cache with ``fresh`` if it differs.

    Pending local changes of the container's outbox are laid over the snapshot first, so a
    reconciliation never hides data the remote store has not received yet. Returns
    :attr:`ReconcileResult.Unchanged` without side effects when nothing changed.

    Args:
        container: The :class:`~MoneyTracker.core.state.StateContainer` to reconcile.
        fresh: The authoritative snapshot.
        generation: The session generation the snapshot was requested in.
        record_filter: The filter ``fresh`` was read with. The cache is replaced only in the
            range the filter covers.
    """
    family = container.family
    if generation != container.generation:
        logging.debug(f'Dropping {family.name} snapshot from an ended session.')
        return ReconcileResult.Stale

    candidate = family.sort(container.overlay(fresh))
    current = family.sort(container.items)

    if not has_changed(candidate, current, identity=family.identity, watched=family.watched):
        logging.debug(f'{family.name}: remote snapshot unchanged ({len(candidate)} record(s)).')
        return ReconcileResult.Unchanged

    logging.debug(f'{family.name}: remote snapshot changed, publishing {len(candidate)} record(s).')
    container.publish(candidate)
    since = record_filter.since if record_filter is not None else None
    await container.cache.put(candidate, replace=since is None, replace_since=since)

    if generation != container.generation:
        return ReconcileResult.Stale

    await container.recompute_aggregate()
    return ReconcileResult.Updated
