"""Unit tests for capfilter/config.py — toggle parsing, file loading, env overrides.

Covers:
  - parse_toggle(): only a case-insensitive "true" enables filtering
  - load_config(): defaults when no file, SystemExit(1) on invalid files
  - FEATURE_WHITELIST_ENABLED / CAPFILTER_* overrides always win over the file
"""

from __future__ import annotations

import textwrap

import pytest

from capfilter.config import (
    SUPPORTED_VERSIONS,
    Config,
    load_config,
    parse_toggle,
)
from capfilter.constants import (
    DEFAULT_ALLOWLIST_DB_PATH,
    DEFAULT_ALLOWLIST_TABLE,
    DEFAULT_QUERY_TIMEOUT_S,
    DEFAULT_UPSTREAM_URL,
)


def _write_config(tmp_path, content: str) -> str:
    path = tmp_path / "config.yaml"
    path.write_text(textwrap.dedent(content))
    return str(path)


@pytest.fixture
def no_default_config(tmp_path, monkeypatch):
    """Run from an empty directory so .capfilter/config.yaml is never picked up."""
    monkeypatch.chdir(tmp_path)
    monkeypatch.setattr("capfilter.config.DEFAULT_CONFIG_PATHS", [])


# ─── parse_toggle ─────────────────────────────────────────────────────────────


class TestParseToggle:
    @pytest.mark.parametrize("value", ["true", "TRUE", "True", "tRuE"])
    def test_true_in_any_case_enables(self, value: str) -> None:
        assert parse_toggle(value) is True

    @pytest.mark.parametrize("value", [None, "", "false", "1", "yes", "on", " true", "true "])
    def test_everything_else_disables(self, value) -> None:
        assert parse_toggle(value) is False


# ─── Defaults ─────────────────────────────────────────────────────────────────


class TestDefaults:
    def test_missing_file_returns_defaults(self, tmp_path, no_default_config) -> None:
        config = load_config(str(tmp_path / "nope.yaml"))
        assert config.path is None
        assert config.filter.enabled is False
        assert config.upstream.base_url == DEFAULT_UPSTREAM_URL
        assert config.allowlist.db_path == DEFAULT_ALLOWLIST_DB_PATH
        assert config.allowlist.table == DEFAULT_ALLOWLIST_TABLE
        assert config.allowlist.query_timeout_s == DEFAULT_QUERY_TIMEOUT_S
        assert config.proxy.host == "127.0.0.1"
        assert config.proxy.port == 8081
        assert config.proxy.base_path == "/fhir"

    def test_version_only_file_populates_defaults(self, tmp_path) -> None:
        config = load_config(_write_config(tmp_path, "version: 1\n"))
        assert config.version == 1
        assert config.filter.enabled is False
        assert config.upstream.base_url == DEFAULT_UPSTREAM_URL

    def test_supported_versions(self) -> None:
        assert SUPPORTED_VERSIONS == frozenset({1})


# ─── File contents ────────────────────────────────────────────────────────────


class TestFileValues:
    def test_full_file(self, tmp_path) -> None:
        path = _write_config(
            tmp_path,
            """
            version: 1
            upstream:
              base_url: http://hapi:8080/fhir/
              timeout_s: 5
            allowlist:
              db_path: /data/ig.db
              table: allowed_types
              query_timeout_s: 0.5
            filter:
              enabled: true
            proxy:
              host: 10.0.0.1
              port: 9000
              base_path: r4/
            """,
        )
        config = load_config(path)
        assert config.path == path
        assert config.upstream.base_url == "http://hapi:8080/fhir"
        assert config.upstream.timeout_s == 5.0
        assert config.allowlist.db_path == "/data/ig.db"
        assert config.allowlist.table == "allowed_types"
        assert config.allowlist.query_timeout_s == 0.5
        assert config.filter.enabled is True
        assert config.proxy.host == "10.0.0.1"
        assert config.proxy.port == 9000
        assert config.proxy.base_path == "/r4"

    @pytest.mark.parametrize("base_path", ["/", '""'])
    def test_root_base_path(self, tmp_path, base_path: str) -> None:
        path = _write_config(tmp_path, f"version: 1\nproxy:\n  base_path: {base_path}\n")
        assert load_config(path).proxy.base_path == ""

    @pytest.mark.parametrize("raw, expected", [('"true"', True), ('"TRUE"', True), ('"yes"', False), ("false", False)])
    def test_quoted_toggle_follows_env_rule(self, tmp_path, raw: str, expected: bool) -> None:
        path = _write_config(tmp_path, f"version: 1\nfilter:\n  enabled: {raw}\n")
        assert load_config(path).filter.enabled is expected

    def test_from_dict_ignores_unknown_keys(self) -> None:
        config = Config.from_dict({"version": 1, "scanner": {"mode": "lite"}})
        assert config.filter.enabled is False


# ─── Invalid files → SystemExit(1) ────────────────────────────────────────────


class TestInvalidFiles:
    @pytest.mark.parametrize(
        "content",
        [
            "",
            "upstream:\n  base_url: http://x\n",
            "version: 2\n",
            "version: [1\n",
            "- version\n- 1\n",
            "version: 1\nproxy:\n  port: eighty\n",
            "version: 1\nallowlist:\n  query_timeout_s: 0\n",
            "version: 1\nupstream:\n  timeout_s: -1\n",
            "version: 1\nfilter: true\n",
        ],
    )
    def test_refuses_to_start(self, tmp_path, content: str, capsys) -> None:
        with pytest.raises(SystemExit) as exc_info:
            load_config(_write_config(tmp_path, content))
        assert exc_info.value.code == 1
        assert "CONFIG ERROR" in capsys.readouterr().err


# ─── Environment overrides ────────────────────────────────────────────────────


class TestEnvOverrides:
    @pytest.mark.parametrize("value, expected", [("true", True), ("TRUE", True), ("false", False), ("", False), ("1", False)])
    def test_toggle_env_without_file(self, monkeypatch, no_default_config, value: str, expected: bool) -> None:
        monkeypatch.setenv("FEATURE_WHITELIST_ENABLED", value)
        assert load_config().filter.enabled is expected

    def test_toggle_env_overrides_file(self, tmp_path, monkeypatch) -> None:
        path = _write_config(tmp_path, "version: 1\nfilter:\n  enabled: true\n")
        monkeypatch.setenv("FEATURE_WHITELIST_ENABLED", "false")
        assert load_config(path).filter.enabled is False

    def test_unset_toggle_env_keeps_file_value(self, tmp_path) -> None:
        path = _write_config(tmp_path, "version: 1\nfilter:\n  enabled: true\n")
        assert load_config(path).filter.enabled is True

    def test_port_upstream_and_db_overrides(self, monkeypatch, no_default_config) -> None:
        monkeypatch.setenv("CAPFILTER_PORT", "9191")
        monkeypatch.setenv("CAPFILTER_UPSTREAM_URL", "http://fhir.internal/base/")
        monkeypatch.setenv("CAPFILTER_ALLOWLIST_DB", "/tmp/other.db")
        config = load_config()
        assert config.proxy.port == 9191
        assert config.upstream.base_url == "http://fhir.internal/base"
        assert config.allowlist.db_path == "/tmp/other.db"

    def test_invalid_port_env_exits(self, monkeypatch, no_default_config) -> None:
        monkeypatch.setenv("CAPFILTER_PORT", "not-a-port")
        with pytest.raises(SystemExit) as exc_info:
            load_config()
        assert exc_info.value.code == 1

    def test_config_path_env(self, tmp_path, monkeypatch, no_default_config) -> None:
        path = _write_config(tmp_path, "version: 1\nproxy:\n  port: 7000\n")
        monkeypatch.setenv("CAPFILTER_CONFIG", path)
        config = load_config()
        assert config.path == path
        assert config.proxy.port == 7000
