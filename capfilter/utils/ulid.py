"""ULID generation for request identifiers.

A ULID is minted for every incoming request that does not already carry an
``X-Request-ID`` header. The same value is bound to the logging context,
forwarded upstream, and echoed back to the client.

Uses the ``python-ulid`` library.
"""

from __future__ import annotations

from ulid import ULID


def generate_ulid() -> str:
    """Return a new 26-character ULID string (Crockford Base32, uppercase)."""
    return str(ULID())
