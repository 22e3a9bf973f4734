"""
Settings package: configuration API and locale formatting.

This package provides:

- :mod:`MoneyTracker.settings.lib` – Core settings management and schema validation.
- :mod:`MoneyTracker.settings.locale` – Localization utilities for formatting money and percentages.
"""
