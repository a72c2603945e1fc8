"""FHIR OperationOutcome response builders for capfilter's own error replies.

FHIR clients expect errors as an OperationOutcome resource, so every reply the
proxy produces itself (as opposed to forwarding from the upstream) uses one:

  build_upstream_unavailable_response():
      HTTP 502 — upstream FHIR server unreachable (connect error, timeout,
      protocol error). The capability filter never produces this; it is the
      host's failure surfacing.

  build_config_error_response():
      HTTP 500 — the upstream URL is malformed (operator misconfiguration).

  build_not_found_response():
      HTTP 404 — request outside the configured FHIR base path.

Every response carries X-Request-ID for log correlation.
"""

from __future__ import annotations

from typing import Optional

from fastapi.responses import JSONResponse

from capfilter.constants import FHIR_JSON_MEDIA_TYPE, REQUEST_ID_HEADER


def operation_outcome(
    code: str,
    diagnostics: str,
    severity: str = "error",
) -> dict:
    """Return a single-issue OperationOutcome resource."""
    return {
        "resourceType": "OperationOutcome",
        "issue": [
            {
                "severity": severity,
                "code": code,
                "diagnostics": diagnostics,
            }
        ],
    }


def _outcome_response(status_code: int, outcome: dict, request_id: Optional[str]) -> JSONResponse:
    response = JSONResponse(
        status_code=status_code,
        content=outcome,
        media_type=FHIR_JSON_MEDIA_TYPE,
    )
    if request_id:
        response.headers[REQUEST_ID_HEADER] = request_id
    return response


def build_upstream_unavailable_response(
    request_id: Optional[str],
    reason: str = "",
) -> JSONResponse:
    """HTTP 502 for upstream connectivity failures.

    Args:
        request_id: ID of the failed request.
        reason:     Short reason such as ``"ConnectError"``. Must not carry
                    credentials or internal config details.
    """
    diagnostics = "Upstream FHIR server unavailable"
    if reason:
        diagnostics = f"{diagnostics} ({reason})"
    return _outcome_response(502, operation_outcome("transient", diagnostics), request_id)


def build_config_error_response(request_id: Optional[str]) -> JSONResponse:
    """HTTP 500 for a malformed upstream URL."""
    return _outcome_response(
        500,
        operation_outcome("exception", "Internal configuration error"),
        request_id,
    )


def build_not_found_response(path: str, request_id: Optional[str]) -> JSONResponse:
    """HTTP 404 for paths outside the FHIR base path."""
    return _outcome_response(
        404,
        operation_outcome("not-found", f"Not found: /{path.lstrip('/')}"),
        request_id,
    )
