"""
Core package for FinanceTracker providing the offline-first sync engine.

This package includes:

- :mod:`FinanceTracker.core.models` – Entity types, field validation and value conversion.
- :mod:`FinanceTracker.core.database` – Local SQLite store with cascade and nullify delete rules.
- :mod:`FinanceTracker.core.tracker` – Pending change counting and sync status transitions.
- :mod:`FinanceTracker.core.migration` – Schema versions, staged migrations and backups.
- :mod:`FinanceTracker.core.remote` – Remote store interface and the in-memory backend.
- :mod:`FinanceTracker.core.service` – Google Sheets backend and background worker helpers.
- :mod:`FinanceTracker.core.sync` – Push/pull orchestration with last-writer-wins conflict resolution.
- :mod:`FinanceTracker.core.connectivity` – Network reachability and the sync queue status.
- :mod:`FinanceTracker.core.stack` – Assembly of the components from the settings.
"""
