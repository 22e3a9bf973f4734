"""
Core package for MoneyTracker providing the cache synchronization engine.

This package includes:

- :mod:`MoneyTracker.core.records` – Records, aggregates, entity family descriptions and partition keys.
- :mod:`MoneyTracker.core.storage` – Encrypted on-disk key-value storage.
- :mod:`MoneyTracker.core.codec` – Lossless serialization of cache envelopes.
- :mod:`MoneyTracker.core.cache` – Partitioned cache store with rolling TTL expiry and the aggregate cache.
- :mod:`MoneyTracker.core.reconcile` – Cheap change detection and snapshot reconciliation.
- :mod:`MoneyTracker.core.remote` – Remote store interface and the Google Sheets implementation.
- :mod:`MoneyTracker.core.state` – Observable state containers with cache-first loading.
- :mod:`MoneyTracker.core.mutation` – Optimistic create, update and delete.
- :mod:`MoneyTracker.core.outbox` – Persisted queue of mutations waiting to be committed remotely.
- :mod:`MoneyTracker.core.session` – Per-session deduplication of derived events.
- :mod:`MoneyTracker.core.client` – Per-user composition of all entity families.
"""
