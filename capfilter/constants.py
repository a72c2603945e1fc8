"""Shared constants for capfilter.

Environment variable names, default paths and numeric limits used across
modules are defined here. Import from here rather than repeating literals.
"""

# ─── Feature toggle ───────────────────────────────────────────────────────────

# Read once at startup. Case-insensitive "true" enables filtering; unset,
# empty, or any other value leaves the capability statement unfiltered.
ENV_WHITELIST_ENABLED: str = "FEATURE_WHITELIST_ENABLED"

# ─── Other environment overrides ──────────────────────────────────────────────

ENV_CONFIG_PATH: str = "CAPFILTER_CONFIG"
ENV_PORT: str = "CAPFILTER_PORT"
ENV_UPSTREAM_URL: str = "CAPFILTER_UPSTREAM_URL"
ENV_ALLOWLIST_DB: str = "CAPFILTER_ALLOWLIST_DB"

# ─── Allow-list store ─────────────────────────────────────────────────────────

DEFAULT_ALLOWLIST_DB_PATH: str = "/app/instance/fhir_ig.db"
DEFAULT_ALLOWLIST_TABLE: str = "whitelist_config"

# Column holding the permitted resource-type names.
ALLOWLIST_COLUMN: str = "resource_type"

# Upper bound for one allow-list read (connect + query + fetch).
# A stalled store must not stall the metadata endpoint.
DEFAULT_QUERY_TIMEOUT_S: float = 2.0

# Loads slower than this are logged at WARNING.
SLOW_LOAD_THRESHOLD_MS: float = 50.0

# ─── Upstream FHIR server ─────────────────────────────────────────────────────

DEFAULT_UPSTREAM_URL: str = "http://localhost:8080/fhir"
DEFAULT_BASE_PATH: str = "/fhir"

FHIR_JSON_MEDIA_TYPE: str = "application/fhir+json"

# The only document type the filter understands. Anything else (DSTU2
# "Conformance", OperationOutcome, ...) passes through untouched.
CAPABILITY_STATEMENT_TYPE: str = "CapabilityStatement"

# Connection pool sizing for the shared upstream client.
POOL_MAX_CONNECTIONS: int = 100
POOL_MAX_KEEPALIVE: int = 100
POOL_KEEPALIVE_EXPIRY: float = 30.0  # seconds
UPSTREAM_TIMEOUT: float = 30.0  # seconds

# ─── Request tracing ──────────────────────────────────────────────────────────

REQUEST_ID_HEADER: str = "X-Request-ID"

# Client-supplied request IDs longer than this are replaced with a fresh ULID.
MAX_REQUEST_ID_LENGTH: int = 128
