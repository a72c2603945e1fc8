"""Read-only accessor for the resource-type allow-list table.

The allow-list lives in a SQLite table maintained by an external admin tool:

    CREATE TABLE whitelist_config (resource_type TEXT);

AllowlistStore reads it on every metadata request so that edits made by the
admin tool take effect on the next request without a restart. Nothing here
writes to the database; the connection is opened with ``mode=ro``.

Failure policy: every error (missing file, missing table, driver error,
timeout, anything unexpected) is logged and turned into an empty allow-list.
CapabilityFilter treats an empty allow-list as "apply no filtering", so a
store outage degrades to an unfiltered capability statement instead of a
failed /metadata request.

Uses aiosqlite exclusively. Each call opens its own connection and cursor and
releases both (cursor first, then connection) on every exit path.
"""

from __future__ import annotations

import asyncio
import os
import pathlib
from dataclasses import dataclass
from typing import Optional, Protocol, runtime_checkable

import aiosqlite

from capfilter.constants import (
    ALLOWLIST_COLUMN,
    DEFAULT_ALLOWLIST_TABLE,
    DEFAULT_QUERY_TIMEOUT_S,
    SLOW_LOAD_THRESHOLD_MS,
)
from capfilter.utils.logger import OperationTimer, get_logger
from capfilter.utils.metrics import FilterMetrics

logger = get_logger(__name__)


Allowlist = frozenset[str]

EMPTY_ALLOWLIST: Allowlist = frozenset()


# ─── AllowlistEntry ───────────────────────────────────────────────────────────


@dataclass(frozen=True)
class AllowlistEntry:
    """One persisted row of the allow-list table.

    resource_type is stored trimmed; rows that trim to nothing never become
    entries. Duplicates are allowed — consumers apply set semantics.
    """

    resource_type: str


def normalize_rows(rows: list) -> list[AllowlistEntry]:
    """Turn raw ``(resource_type,)`` rows into trimmed entries.

    NULL, empty, whitespace-only and non-text values are skipped with a
    WARNING each. Never raises on bad row contents.
    """
    entries: list[AllowlistEntry] = []
    for index, row in enumerate(rows):
        value = row[0] if row else None
        if not isinstance(value, str):
            logger.warning(
                "allowlist_row_skipped",
                reason="null" if value is None else "not_text",
                index=index,
                actual_type=type(value).__name__,
            )
            continue
        trimmed = value.strip()
        if not trimmed:
            logger.warning("allowlist_row_skipped", reason="empty", index=index)
            continue
        entries.append(AllowlistEntry(resource_type=trimmed))
    return entries


# ─── Protocol ─────────────────────────────────────────────────────────────────


@runtime_checkable
class AllowlistSource(Protocol):
    """Anything that can produce the current allow-list snapshot.

    Implementations must never raise: failures become an empty set.
    """

    async def load_allowlist(self) -> Allowlist:
        ...


@dataclass
class StoreHealth:
    """Result of a readiness check against the allow-list database."""

    ok: bool
    entry_count: int
    error: Optional[str] = None


# ─── AllowlistStore ───────────────────────────────────────────────────────────


class AllowlistStore:
    """Read-only SQLite allow-list source.

    Usage:
        store = AllowlistStore("/app/instance/fhir_ig.db")
        allowlist = await store.load_allowlist()   # frozenset[str], never raises

    Args:
        db_path:         Path to the SQLite database (``~`` is expanded).
        table:           Table holding the ``resource_type`` column.
        query_timeout_s: Upper bound for connect + query + fetch, also used
                         as sqlite's busy timeout when a writer holds the lock.
        metrics:         Optional FilterMetrics receiving error counts and
                         load latency.

    Raises:
        ValueError: If ``table`` is not a plain ASCII SQL identifier. The
                    table name is interpolated into the query, so this is
                    checked once at construction.
    """

    def __init__(
        self,
        db_path: str,
        table: str = DEFAULT_ALLOWLIST_TABLE,
        query_timeout_s: float = DEFAULT_QUERY_TIMEOUT_S,
        metrics: Optional[FilterMetrics] = None,
    ) -> None:
        if not (table.isascii() and table.isidentifier()):
            raise ValueError(f"Invalid allow-list table name: {table!r}")
        self._db_path: str = os.path.expanduser(db_path)
        self._table: str = table
        self._query_timeout_s: float = query_timeout_s
        self._metrics: Optional[FilterMetrics] = metrics
        self._query: str = f"SELECT {ALLOWLIST_COLUMN} FROM {table}"

    @property
    def db_path(self) -> str:
        return self._db_path

    @property
    def table(self) -> str:
        return self._table

    def _read_only_uri(self) -> str:
        # mode=ro: never create a missing file, never write.
        return pathlib.Path(self._db_path).absolute().as_uri() + "?mode=ro"

    async def _fetch_rows(self) -> list:
        # sqlite's busy wait shares the query bound; cancellation cannot close
        # the connection before the worker thread returns.
        async with aiosqlite.connect(
            self._read_only_uri(), uri=True, timeout=self._query_timeout_s
        ) as db:
            async with db.execute(self._query) as cursor:
                return list(await cursor.fetchall())

    async def read_entries(self) -> list[AllowlistEntry]:
        """Read and normalize every row. Raises on any store failure.

        Raises:
            aiosqlite.Error:      driver / query failure (missing file or table).
            asyncio.TimeoutError: the read exceeded ``query_timeout_s``.
        """
        rows = await asyncio.wait_for(self._fetch_rows(), timeout=self._query_timeout_s)
        return normalize_rows(rows)

    async def load_allowlist(self) -> Allowlist:
        """Return the current allow-list snapshot.

        Never raises. Any failure is logged at ERROR and yields an empty set.
        """
        timer = OperationTimer(
            "allowlist_load", logger=logger, slow_threshold_ms=SLOW_LOAD_THRESHOLD_MS, db_path=self._db_path
        )
        try:
            with timer:
                entries = await self.read_entries()
        except asyncio.TimeoutError:
            logger.error(
                "allowlist_load_timeout",
                db_path=self._db_path,
                timeout_s=self._query_timeout_s,
            )
            return self._failed()
        except aiosqlite.Error as exc:
            logger.error(
                "allowlist_load_failed",
                db_path=self._db_path,
                table=self._table,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return self._failed()
        except Exception as exc:  # noqa: BLE001
            logger.error(
                "allowlist_load_unexpected_error",
                db_path=self._db_path,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return self._failed()
        finally:
            if self._metrics is not None:
                self._metrics.record_load(timer.duration_ms)

        allowlist: Allowlist = frozenset(entry.resource_type for entry in entries)
        logger.info(
            "allowlist_loaded",
            rows=len(entries),
            count=len(allowlist),
            resource_types=sorted(allowlist),
        )
        return allowlist

    def _failed(self) -> Allowlist:
        if self._metrics is not None:
            self._metrics.record_store_error()
        return EMPTY_ALLOWLIST

    async def check(self) -> StoreHealth:
        """Probe the database for the readiness endpoint. Never raises."""
        try:
            entries = await self.read_entries()
        except asyncio.TimeoutError:
            return StoreHealth(ok=False, entry_count=0, error="timeout")
        except Exception as exc:  # noqa: BLE001
            return StoreHealth(
                ok=False, entry_count=0, error=f"{type(exc).__name__}: {exc}"
            )
        return StoreHealth(ok=True, entry_count=len({e.resource_type for e in entries}))
