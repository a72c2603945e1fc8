"""capfilter allow-list store.

Public API:
    Allowlist       — frozenset of permitted resource-type names
    AllowlistEntry  — one persisted allow-list row
    AllowlistSource — protocol the capability filter depends on
    AllowlistStore  — read-only aiosqlite implementation
"""
from capfilter.allowlist.store import (
    EMPTY_ALLOWLIST,
    Allowlist,
    AllowlistEntry,
    AllowlistSource,
    AllowlistStore,
    StoreHealth,
)

__all__ = [
    "EMPTY_ALLOWLIST",
    "Allowlist",
    "AllowlistEntry",
    "AllowlistSource",
    "AllowlistStore",
    "StoreHealth",
]
