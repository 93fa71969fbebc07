"""Sync infrastructure for HealthSync.

Modules:
    token_store     — Per-data-type continuation tokens with freshness checks
    changes         — Incremental fetch with full-sync fallback
    stats           — Persistent background execution statistics
    device_profiles — Manufacturer background-compatibility table
    scheduler       — Periodic background sync tasks
"""
