"""capfilter models package.

  - outcome.py — FHIR OperationOutcome response builders for the proxy's
                 own error replies (upstream unavailable, misconfiguration,
                 unknown path)
"""
