"""CapabilityStatement filtering — the pure part of the capability filter.

filter_capability_statement() takes a parsed CapabilityStatement (the JSON
object returned by ``GET [base]/metadata``) and an allow-list, and returns a
new document in which every ``rest[].resource[]`` entry whose ``type`` is not
in the allow-list has been removed.

INVARIANTS:
  - The input document is never mutated. A new top-level dict and new
    ``rest`` group dicts are built; retained resource descriptors are the
    same objects as in the input.
  - Retained descriptors keep their original relative order.
  - Every field other than ``rest[].resource`` is carried over untouched.
  - Each ``rest`` group (one per interaction mode) is filtered independently
    with the same allow-list snapshot.
  - Filtering a filtered document with the same allow-list is a no-op.

Shape checks happen before any filtering, so a malformed document is
rejected as a whole (UnexpectedDocumentShape) and never half-filtered.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Optional

from capfilter.constants import CAPABILITY_STATEMENT_TYPE


class UnexpectedDocumentShape(Exception):
    """The host document is not a CapabilityStatement this filter understands."""


@dataclass(frozen=True)
class GroupReport:
    """What happened to one ``rest`` group during a filter pass."""

    mode: Optional[str]
    kept: list[str] = field(default_factory=list)
    removed: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class FilterResult:
    document: dict
    groups: list[GroupReport]

    @property
    def removed_count(self) -> int:
        return sum(len(group.removed) for group in self.groups)


def is_capability_statement(document: Any) -> bool:
    return isinstance(document, dict) and document.get("resourceType") == CAPABILITY_STATEMENT_TYPE


def _describe(document: Any) -> str:
    if isinstance(document, dict):
        return str(document.get("resourceType", "<no resourceType>"))
    return type(document).__name__


def _validate(document: Any) -> list:
    """Return the ``rest`` list of a well-formed CapabilityStatement.

    Raises:
        UnexpectedDocumentShape: on any structure the filter cannot walk.
    """
    if not is_capability_statement(document):
        raise UnexpectedDocumentShape(
            f"expected {CAPABILITY_STATEMENT_TYPE}, got {_describe(document)}"
        )
    rest = document.get("rest", [])
    if not isinstance(rest, list):
        raise UnexpectedDocumentShape(f"rest is {type(rest).__name__}, not a list")
    for group_index, group in enumerate(rest):
        if not isinstance(group, dict):
            raise UnexpectedDocumentShape(
                f"rest[{group_index}] is {type(group).__name__}, not an object"
            )
        resources = group.get("resource", [])
        if not isinstance(resources, list):
            raise UnexpectedDocumentShape(
                f"rest[{group_index}].resource is {type(resources).__name__}, not a list"
            )
        for resource_index, resource in enumerate(resources):
            if not isinstance(resource, dict):
                raise UnexpectedDocumentShape(
                    f"rest[{group_index}].resource[{resource_index}] is "
                    f"{type(resource).__name__}, not an object"
                )
    return rest


def filter_capability_statement(document: Any, allowlist: frozenset[str]) -> FilterResult:
    """Remove resource descriptors whose type is not in ``allowlist``.

    A descriptor without a string ``type`` can never match and is removed.
    Groups without a ``resource`` key are copied unchanged (no key added).

    Raises:
        UnexpectedDocumentShape: if ``document`` is not a walkable
            CapabilityStatement. Nothing is modified in that case.
    """
    rest = _validate(document)

    new_rest: list = []
    reports: list[GroupReport] = []
    for group in rest:
        mode = group.get("mode")
        if "resource" not in group:
            new_rest.append(dict(group))
            reports.append(GroupReport(mode=mode))
            continue

        kept_resources: list = []
        kept: list[str] = []
        removed: list[str] = []
        for resource in group["resource"]:
            resource_type = resource.get("type")
            if isinstance(resource_type, str) and resource_type in allowlist:
                kept_resources.append(resource)
                kept.append(resource_type)
            else:
                removed.append(str(resource_type))

        new_group = dict(group)
        new_group["resource"] = kept_resources
        new_rest.append(new_group)
        reports.append(GroupReport(mode=mode, kept=kept, removed=removed))

    new_document = dict(document)
    if "rest" in document:
        new_document["rest"] = new_rest
    return FilterResult(document=new_document, groups=reports)


def resource_types(document: Any) -> list[list[str]]:
    """Per-group resource types of a CapabilityStatement, in document order.

    Raises:
        UnexpectedDocumentShape: if ``document`` cannot be walked.
    """
    return [
        [str(resource.get("type")) for resource in group.get("resource", [])]
        for group in _validate(document)
    ]
