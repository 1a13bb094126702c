"""
Export eligibility predicates.

Predicates see only the resolved entity; they never depend on runner state,
so the transform stage stays a pure function of entity + field specs.
"""

from typing import Any, Iterable

from bulk_export.transformers import Predicate, always, extract_path, MISSING
from schemas.records import ResolvedEntity


def field_equals(path: str, expected: Any) -> Predicate:
    def _check(entity: ResolvedEntity) -> bool:
        return extract_path(entity.data, path) == expected
    return _check


def field_missing(path: str) -> Predicate:
    """True when the field is absent or null."""
    def _check(entity: ResolvedEntity) -> bool:
        value = extract_path(entity.data, path)
        return value is MISSING or value is None
    return _check


def field_not_true(path: str) -> Predicate:
    """True unless the field holds literally `True`; absent counts as not set."""
    def _check(entity: ResolvedEntity) -> bool:
        return extract_path(entity.data, path) is not True
    return _check


def all_of(*predicates: Predicate) -> Predicate:
    def _check(entity: ResolvedEntity) -> bool:
        return all(p(entity) for p in predicates)
    return _check


def any_line(path: str, predicate) -> Predicate:
    """True when at least one element of the list at `path` satisfies `predicate`."""
    def _check(entity: ResolvedEntity) -> bool:
        lines = extract_path(entity.data, path)
        if lines is MISSING or not isinstance(lines, Iterable):
            return False
        return any(predicate(line) for line in lines if isinstance(line, dict))
    return _check


active_only = field_equals("active", True)

# Open, non-manual orders with at least one automatically exported line that
# was never sent
eligible_for_edi_export = all_of(
    field_equals("workflowStatus", "Open"),
    field_not_true("manualPo"),
    any_line(
        "compositePoLines",
        lambda line: bool(line.get("automaticExport")) and line.get("lastEDIExportDate") is None
    ),
)

NAMED_PREDICATES = {
    "active_only": active_only,
    "edi_eligible": eligible_for_edi_export,
}

__all__ = [
    "always",
    "field_equals",
    "field_missing",
    "field_not_true",
    "all_of",
    "any_line",
    "active_only",
    "eligible_for_edi_export",
    "NAMED_PREDICATES",
]
