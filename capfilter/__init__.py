"""capfilter — allow-list filter for FHIR CapabilityStatements."""

__version__ = "1.0.0"
