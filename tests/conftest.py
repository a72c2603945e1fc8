"""Root test configuration for capfilter.

Clears every capfilter environment variable for each test so a developer's
shell (or a previous test) can never flip the filtering toggle or redirect the
upstream. Tests that need a variable set it with monkeypatch.

Also provides:
  - make_allowlist_db — writes a SQLite allow-list table to a temp file
  - make_statement    — builds a CapabilityStatement with given resource types
"""

from __future__ import annotations

import sqlite3
from typing import Callable, Optional, Sequence

import pytest

from capfilter.constants import (
    ENV_ALLOWLIST_DB,
    ENV_CONFIG_PATH,
    ENV_PORT,
    ENV_UPSTREAM_URL,
    ENV_WHITELIST_ENABLED,
)


@pytest.fixture(autouse=True)
def clean_capfilter_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in (ENV_WHITELIST_ENABLED, ENV_CONFIG_PATH, ENV_PORT, ENV_UPSTREAM_URL, ENV_ALLOWLIST_DB):
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def make_allowlist_db(tmp_path) -> Callable[..., str]:
    """Return a factory writing ``whitelist_config`` rows to a fresh database.

    Values are inserted as given — None becomes NULL, ints stay ints — so tests
    can exercise the store's row normalisation.
    """
    counter = {"n": 0}

    def _make(
        values: Sequence[Optional[object]] = (),
        table: str = "whitelist_config",
        create_table: bool = True,
    ) -> str:
        counter["n"] += 1
        path = str(tmp_path / f"allowlist_{counter['n']}.db")
        conn = sqlite3.connect(path)
        try:
            if create_table:
                conn.execute(f"CREATE TABLE {table} (id INTEGER PRIMARY KEY, resource_type)")
                conn.executemany(
                    f"INSERT INTO {table} (resource_type) VALUES (?)",
                    [(value,) for value in values],
                )
            conn.commit()
        finally:
            conn.close()
        return path

    return _make


def _resource(resource_type: str) -> dict:
    return {
        "type": resource_type,
        "profile": f"http://hl7.org/fhir/StructureDefinition/{resource_type}",
        "interaction": [{"code": "read"}, {"code": "search-type"}],
        "searchParam": [{"name": "_id", "type": "token"}],
    }


@pytest.fixture
def make_statement() -> Callable[..., dict]:
    """Return a builder for CapabilityStatements.

    ``make_statement(["Patient", "Encounter"], ["Patient"])`` gives a
    document with two rest groups (modes "server", then "client").
    """

    def _make(*groups: Sequence[str]) -> dict:
        modes = ["server", "client"]
        return {
            "resourceType": "CapabilityStatement",
            "status": "active",
            "date": "2025-01-01T00:00:00Z",
            "kind": "instance",
            "fhirVersion": "4.0.1",
            "format": ["application/fhir+json", "application/fhir+xml"],
            "software": {"name": "HAPI FHIR Server", "version": "7.2.0"},
            "rest": [
                {
                    "mode": modes[index % len(modes)],
                    "resource": [_resource(resource_type) for resource_type in types],
                    "interaction": [{"code": "transaction"}],
                }
                for index, types in enumerate(groups)
            ],
        }

    return _make
