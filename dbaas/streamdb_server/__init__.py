"""
StreamDB Server - tenant-partitioned stream/event storage.

This package implements the storage side of a personal-data platform:
- Streams form a per-tenant forest of named nodes
- Events attach to one or more streams and keep a version history
- Attachments are binary files derived from event records
- SQLite holds one database file per tenant

The hard part is the cascading stream deletion engine (see ``deletion``),
which removes or re-attaches every dependent record of a deleted stream
subtree across collections that share no transaction.

Invariants:
    - All operations require tenant_id
    - Streams form a forest (no cycles)
    - A live event always has at least one stream membership
    - History rows (head_id set) are never touched by membership updates

How to change safely:
    - Every multi-step write must stay idempotent under re-run
    - Keep the ordering events -> streams when deleting
"""

from ._version import __version__

__all__ = ["__version__"]
