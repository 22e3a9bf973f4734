"""
Logging subsystem for MoneyTracker.

Modules:

- :mod:`MoneyTracker.log.log` – Log setup and the in-memory tank handler integrating with Python logging.
"""
