"""
MoneyTracker data package: entity families, reports and notifications.

This package provides:

- :mod:`MoneyTracker.data.models` – The four entity families and record builders.
- :mod:`MoneyTracker.data.data` – pandas based reports over the published collections.
- :mod:`MoneyTracker.data.notifications` – Budget alerts and notification housekeeping.
"""
