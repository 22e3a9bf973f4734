"""Per-session deduplication of derived events.

The guard is owned by whatever composes the notification subsystem and lives for one user
session. Nothing is persisted.
"""
import logging


def idempotency_key(source_id: str, period_key: str) -> str:
    """Return the composite key of a derived event, e.g. ``'<budget id>:2025-03'``."""
    return f'{source_id}:{period_key}'


class SessionGuard:
    """Remembers which derived events were already evaluated in this session."""

    def __init__(self) -> None:
        self._keys: set = set()
        self._batch_checked: bool = False

    def __contains__(self, key: str) -> bool:
        return key in self._keys

    def __len__(self) -> int:
        return len(self._keys)

    def should_process(self, key: str) -> bool:
        """Return True and remember ``key`` the first time it is seen, False afterwards."""
        if key in self._keys:
            return False
        self._keys.add(key)
        return True

    def begin_batch(self) -> bool:
        """Return True the first time a batch check runs in this session, False afterwards."""
        if self._batch_checked:
            return False
        self._batch_checked = True
        return True

    @property
    def has_checked(self) -> bool:
        return self._batch_checked

    def reset(self) -> None:
        """Forget every key and allow the batch check again."""
        logging.debug(f'Resetting session guard ({len(self._keys)} key(s)).')
        self._keys.clear()
        self._batch_checked = False
