"""Capability statement filtering.

Public API:
    CapabilityFilter            — per-request filter registered with the host
    filter_capability_statement — pure allow-list filter over a document
    UnexpectedDocumentShape     — raised for documents the filter cannot walk
"""
from capfilter.capability.document import (
    FilterResult,
    GroupReport,
    UnexpectedDocumentShape,
    filter_capability_statement,
    is_capability_statement,
    resource_types,
)
from capfilter.capability.filter import CapabilityFilter

__all__ = [
    "CapabilityFilter",
    "FilterResult",
    "GroupReport",
    "UnexpectedDocumentShape",
    "filter_capability_statement",
    "is_capability_statement",
    "resource_types",
]
