"""
Settings package.

This package provides:

- :mod:`FinanceTracker.settings.lib` – Settings management, application paths and schema validation.
"""
