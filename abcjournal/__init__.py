# -*- coding: utf-8 -*-
"""ABCJournal core package.

Modules:
    clock:       Clock protocol + ISO-8601 helpers.
    errors:      Error taxonomy shared by adapters and the AI pipeline.
    models:      Entry record, AI result types, sync state machine.
    adapter:     Storage-agnostic EntriesAdapter contract.
    memory:      Dict-backed adapter.
    db:          SQLite schema, migrations and connection bootstrap.
    sql:         aiosqlite-backed adapter.
    crypto:      Crypto primitives and field cipher.
    vault:       Passphrase-protected master key.
    ai:          AI service boundary + payload normalization.
    coordinator: Single-attempt AI enrichment.
    scheduler:   Backoff policy and enrichment queue.
    config:      JSON config on disk.
    testing:     Deterministic clock/ids and adapter factory.
"""

__all__ = [
    "adapter",
    "ai",
    "clock",
    "config",
    "coordinator",
    "crypto",
    "db",
    "errors",
    "memory",
    "models",
    "scheduler",
    "sql",
    "testing",
    "vault",
]
