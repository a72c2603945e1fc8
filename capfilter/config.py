"""Config loading for capfilter.

Reads `.capfilter/config.yaml` (or `~/.capfilter/config.yaml`).
Raises SystemExit on parse errors or a missing `version` field.
If no config file is found, returns default values (safe to run without config).

Config search order:
  1. `config_path` argument (explicit override, used by tests)
  2. CAPFILTER_CONFIG environment variable (if set)
  3. `.capfilter/config.yaml` (working directory)
  4. `~/.capfilter/config.yaml` (home directory)

Environment variable overrides (applied after the file, so they always win):
  FEATURE_WHITELIST_ENABLED — capability filtering toggle ("true" enables)
  CAPFILTER_PORT            — overrides proxy.port
  CAPFILTER_UPSTREAM_URL    — overrides upstream.base_url
  CAPFILTER_ALLOWLIST_DB    — overrides allowlist.db_path

Example file:

    version: 1
    upstream:
      base_url: http://hapi:8080/fhir
    allowlist:
      db_path: /app/instance/fhir_ig.db
      table: whitelist_config
      query_timeout_s: 2.0
    filter:
      enabled: true
    proxy:
      host: 0.0.0.0
      port: 8081
      base_path: /fhir
"""

from __future__ import annotations

import os
import sys
from dataclasses import dataclass, field
from typing import Any, NoReturn, Optional

import yaml

from capfilter.constants import (
    DEFAULT_ALLOWLIST_DB_PATH,
    DEFAULT_ALLOWLIST_TABLE,
    DEFAULT_BASE_PATH,
    DEFAULT_QUERY_TIMEOUT_S,
    DEFAULT_UPSTREAM_URL,
    ENV_ALLOWLIST_DB,
    ENV_CONFIG_PATH,
    ENV_PORT,
    ENV_UPSTREAM_URL,
    ENV_WHITELIST_ENABLED,
    UPSTREAM_TIMEOUT,
)
from capfilter.utils.logger import get_logger

logger = get_logger(__name__)

# ─── Version constants ────────────────────────────────────────────────────────

SUPPORTED_CONFIG_VERSION = 1

SUPPORTED_VERSIONS: frozenset[int] = frozenset({1})

DEFAULT_CONFIG_PATHS = [
    ".capfilter/config.yaml",
    os.path.expanduser("~/.capfilter/config.yaml"),
]


# ─── Toggle parsing ───────────────────────────────────────────────────────────


def parse_toggle(value: Optional[str]) -> bool:
    """Resolve the filtering toggle from a raw configuration signal.

    Only a case-insensitive ``"true"`` enables filtering. ``None`` (unset),
    the empty string, and every other value disable it.
    """
    if value is None:
        return False
    return value.lower() == "true"


# ─── Dataclasses ─────────────────────────────────────────────────────────────


@dataclass
class UpstreamConfig:
    """The FHIR server whose capability statement is filtered.

    base_url:  FHIR base URL of the server (``{base_url}/metadata`` is fetched).
    timeout_s: Total timeout for one upstream request.
    """

    base_url: str = DEFAULT_UPSTREAM_URL
    timeout_s: float = UPSTREAM_TIMEOUT


@dataclass
class AllowlistConfig:
    """Location of the allow-list table.

    The allow-list database is independent of the FHIR server's own store.
    """

    db_path: str = DEFAULT_ALLOWLIST_DB_PATH
    table: str = DEFAULT_ALLOWLIST_TABLE
    query_timeout_s: float = DEFAULT_QUERY_TIMEOUT_S


@dataclass
class FilterConfig:
    enabled: bool = False  # conservative default: unfiltered until opted in


@dataclass
class ProxyConfig:
    """Proxy binding configuration."""

    host: str = "127.0.0.1"
    port: int = 8081
    base_path: str = DEFAULT_BASE_PATH


@dataclass
class Config:
    """Root configuration object populated from .capfilter/config.yaml.

    All fields have safe defaults — capfilter can start without any config file.
    """

    version: int = SUPPORTED_CONFIG_VERSION
    upstream: UpstreamConfig = field(default_factory=UpstreamConfig)
    allowlist: AllowlistConfig = field(default_factory=AllowlistConfig)
    filter: FilterConfig = field(default_factory=FilterConfig)
    proxy: ProxyConfig = field(default_factory=ProxyConfig)
    path: Optional[str] = None  # Path to the loaded config file

    @classmethod
    def defaults(cls) -> "Config":
        """Return a fully-default Config (no file required)."""
        return cls()

    @classmethod
    def from_dict(cls, raw: dict, path: Optional[str] = None) -> "Config":
        """Construct Config from a parsed YAML dict.

        Merges user-supplied values onto defaults; unknown keys are silently ignored.

        Raises:
            SystemExit(1): On a numeric field that is not a number, or a
                           non-positive timeout.
        """
        upstream_raw = _section(raw, "upstream")
        upstream = UpstreamConfig(
            base_url=str(upstream_raw.get("base_url", DEFAULT_UPSTREAM_URL)).rstrip("/"),
            timeout_s=_positive_float(
                upstream_raw.get("timeout_s", UPSTREAM_TIMEOUT), "upstream.timeout_s"
            ),
        )

        allowlist_raw = _section(raw, "allowlist")
        allowlist = AllowlistConfig(
            db_path=str(allowlist_raw.get("db_path", DEFAULT_ALLOWLIST_DB_PATH)),
            table=str(allowlist_raw.get("table", DEFAULT_ALLOWLIST_TABLE)),
            query_timeout_s=_positive_float(
                allowlist_raw.get("query_timeout_s", DEFAULT_QUERY_TIMEOUT_S),
                "allowlist.query_timeout_s",
            ),
        )

        filter_raw = _section(raw, "filter")
        enabled_raw = filter_raw.get("enabled", False)
        # YAML gives us a bool for `true`; quoted strings follow the env rule.
        enabled = enabled_raw if isinstance(enabled_raw, bool) else parse_toggle(str(enabled_raw))

        proxy_raw = _section(raw, "proxy")
        proxy = ProxyConfig(
            host=str(proxy_raw.get("host", "127.0.0.1")),
            port=_int(proxy_raw.get("port", 8081), "proxy.port"),
            base_path=_normalize_base_path(str(proxy_raw.get("base_path", DEFAULT_BASE_PATH))),
        )

        return cls(
            version=raw.get("version", SUPPORTED_CONFIG_VERSION),
            upstream=upstream,
            allowlist=allowlist,
            filter=FilterConfig(enabled=enabled),
            proxy=proxy,
            path=path,
        )


# ─── Value helpers ────────────────────────────────────────────────────────────


def _section(raw: dict, key: str) -> dict:
    value = raw.get(key) or {}
    if not isinstance(value, dict):
        _fail(f"CONFIG ERROR: '{key}' must be a mapping, got {type(value).__name__}.")
    return value


def _int(value: Any, name: str) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        _fail(f"CONFIG ERROR: {name} must be an integer, got '{value}'.")


def _positive_float(value: Any, name: str) -> float:
    try:
        result = float(value)
    except (TypeError, ValueError):
        _fail(f"CONFIG ERROR: {name} must be a number, got '{value}'.")
    if result <= 0:
        _fail(f"CONFIG ERROR: {name} must be greater than zero, got {result}.")
    return result


def _normalize_base_path(value: str) -> str:
    """Return the base path with one leading slash and no trailing slash.

    ``""`` and ``"/"`` both mean the FHIR base is served at the root.
    """
    stripped = value.strip().strip("/")
    return f"/{stripped}" if stripped else ""


def _fail(msg: str) -> NoReturn:
    print(msg, file=sys.stderr)
    raise SystemExit(1)


# ─── Config loading ───────────────────────────────────────────────────────────


def load_config(config_path: Optional[str] = None) -> Config:
    """Load and validate capfilter configuration.

    If no file is found at any search path, returns default Config (not an error).
    If a file is found but invalid, writes the error to stderr and raises SystemExit(1).

    Environment overrides are applied whether or not a file was found.

    Raises:
        SystemExit(1): On YAML parse error, missing ``version`` field, unsupported
                       version, invalid numeric values, or invalid ``CAPFILTER_PORT``.
    """
    search_paths: list[str] = []
    if config_path:
        search_paths.append(config_path)
    env_config = os.environ.get(ENV_CONFIG_PATH)
    if env_config:
        search_paths.append(env_config)
    search_paths.extend(DEFAULT_CONFIG_PATHS)

    found_path: Optional[str] = None
    for candidate in search_paths:
        expanded = os.path.expanduser(candidate)
        if os.path.isfile(expanded):
            found_path = expanded
            break

    if found_path is None:
        logger.info("No config file found — using defaults", searched=search_paths)
        config = Config.defaults()
        _apply_env_overrides(config)
        return config

    logger.info("Loading config", path=found_path)

    try:
        with open(found_path) as fh:
            raw = yaml.safe_load(fh)
    except yaml.YAMLError as exc:
        _fail(
            f"CONFIG ERROR: Failed to parse {found_path}: {exc}\n"
            "capfilter refuses to start with an invalid config. "
            "Check the YAML syntax and try again."
        )
    except OSError as exc:
        _fail(f"CONFIG ERROR: Could not read {found_path}: {exc}")

    if not isinstance(raw, dict):
        if raw is None:
            _fail(
                f"CONFIG ERROR: {found_path} is missing the required 'version' field.\n"
                "Add 'version: 1' to the top of your config file."
            )
        _fail(
            f"CONFIG ERROR: {found_path} is not a valid YAML mapping.\n"
            "The config file must be a YAML dictionary at the top level."
        )

    version = raw.get("version")
    if version is None:
        _fail(
            f"CONFIG ERROR: {found_path} is missing the required 'version' field.\n"
            "Add 'version: 1' to the top of your config file."
        )

    if version not in SUPPORTED_VERSIONS:
        _fail(
            f"CONFIG ERROR: Unsupported config version: {version}. "
            f"Supported versions: {sorted(SUPPORTED_VERSIONS)}."
        )

    config = Config.from_dict(raw, path=found_path)
    _apply_env_overrides(config)

    if config.proxy.host == "0.0.0.0":
        logger.warning(
            "capfilter is configured to bind on 0.0.0.0 (all interfaces)",
            host=config.proxy.host,
        )

    logger.info(
        "Config loaded",
        path=found_path,
        version=config.version,
        upstream=config.upstream.base_url,
        filter_enabled=config.filter.enabled,
    )
    return config


def _apply_env_overrides(config: Config) -> None:
    """Apply environment variable overrides to a Config object in-place.

    FEATURE_WHITELIST_ENABLED is only consulted when set: an unset variable
    leaves ``filter.enabled`` from the file alone, while any set value (even
    an empty one) decides the toggle via :func:`parse_toggle`.

    Raises:
        SystemExit(1): If CAPFILTER_PORT is set but not a valid integer.
    """
    env_toggle = os.environ.get(ENV_WHITELIST_ENABLED)
    if env_toggle is not None:
        config.filter.enabled = parse_toggle(env_toggle)

    env_port = os.environ.get(ENV_PORT)
    if env_port is not None:
        try:
            config.proxy.port = int(env_port)
        except ValueError:
            _fail(
                f"CONFIG ERROR: {ENV_PORT} environment variable is not a valid "
                f"integer: '{env_port}'"
            )

    env_upstream = os.environ.get(ENV_UPSTREAM_URL)
    if env_upstream:
        config.upstream.base_url = env_upstream.rstrip("/")

    env_db = os.environ.get(ENV_ALLOWLIST_DB)
    if env_db:
        config.allowlist.db_path = env_db
