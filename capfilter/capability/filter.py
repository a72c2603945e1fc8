"""CapabilityFilter — post-processes the host's CapabilityStatement.

Invoked once per metadata request through the host extension point:

    host = UpstreamFhirHost(base_url, http_client)
    capability_filter = CapabilityFilter(host=host, store=store, enabled=config.filter.enabled)
    host.register_filter(capability_filter)

Decision sequence for every request:
  1. Always fetch the unfiltered document from the host first.
  2. Toggle disabled             → return it unchanged (same object).
  3. Not a CapabilityStatement   → return it unchanged, store untouched.
  4. Load the allow-list snapshot from the store (never raises).
  5. Empty allow-list            → return it unchanged (fail-open).
  6. Malformed rest/resource     → return it unchanged.
  7. Otherwise                   → return the filtered copy.

The toggle is captured at construction and never re-read. The filter holds no
other state between requests, so concurrent calls need no coordination;
metrics counters lock internally.

Host failures propagate; nothing else does. A client of /metadata never sees
an error caused by this class.
"""

from __future__ import annotations

from typing import Any, Optional

from capfilter.allowlist.store import AllowlistSource
from capfilter.capability.document import (
    FilterResult,
    UnexpectedDocumentShape,
    filter_capability_statement,
    is_capability_statement,
)
from capfilter.host import CapabilityHost, MetadataRequest
from capfilter.utils.logger import get_logger
from capfilter.utils.metrics import FilterMetrics, PassthroughReason

logger = get_logger(__name__)


class CapabilityFilter:
    """Allow-list filter over the host's resource descriptors.

    Args:
        host:    The CapabilityHost producing the unfiltered document.
        store:   Source of the allow-list snapshot.
        enabled: Feature toggle, resolved once at startup by the caller.
        metrics: Optional FilterMetrics updated on every request.
    """

    def __init__(
        self,
        host: CapabilityHost,
        store: AllowlistSource,
        enabled: bool,
        metrics: Optional[FilterMetrics] = None,
    ) -> None:
        self._host = host
        self._store = store
        self._enabled = bool(enabled)
        self._metrics = metrics
        logger.info("capability_filter_created", enabled=self._enabled)

    @property
    def enabled(self) -> bool:
        return self._enabled

    async def on_metadata_request(self, context: MetadataRequest) -> Any:
        """Produce the (possibly filtered) capability document for one request."""
        document = await self._host.produce_document(context)
        if self._metrics is not None:
            self._metrics.record_request()

        if not self._enabled:
            logger.debug("capability_filter_disabled")
            return self._passthrough(document, "disabled")

        if not is_capability_statement(document):
            logger.warning(
                "capability_filter_skipped",
                reason="unexpected_shape",
                resource_type=document.get("resourceType") if isinstance(document, dict) else None,
                document_type=type(document).__name__,
            )
            return self._passthrough(document, "unexpected_shape")

        allowlist = await self._store.load_allowlist()
        if not allowlist:
            logger.warning(
                "capability_filter_skipped",
                reason="allow-list is empty; returning unfiltered capability statement",
            )
            return self._passthrough(document, "empty_allowlist")

        try:
            result = filter_capability_statement(document, allowlist)
        except UnexpectedDocumentShape as exc:
            logger.warning("capability_filter_skipped", reason="unexpected_shape", error=str(exc))
            return self._passthrough(document, "unexpected_shape")

        self._log_result(result)
        if self._metrics is not None:
            self._metrics.record_filtered(result.removed_count)
        return result.document

    def _passthrough(self, document: Any, reason: PassthroughReason) -> Any:
        if self._metrics is not None:
            self._metrics.record_passthrough(reason)
        return document

    @staticmethod
    def _log_result(result: FilterResult) -> None:
        for group in result.groups:
            if group.removed:
                logger.info(
                    "capability_filtered",
                    mode=group.mode,
                    kept_count=len(group.kept),
                    kept=group.kept,
                    removed_count=len(group.removed),
                    removed=group.removed,
                )
            else:
                logger.info(
                    "capability_unchanged",
                    mode=group.mode,
                    kept_count=len(group.kept),
                    kept=group.kept,
                )
