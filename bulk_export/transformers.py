"""
Transform stage: map resolved entities into export rows, one per output format
"""

import json
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple, Type

from core.exceptions import TransformError
from bulk_export.results import StageResult
from models.base import OutputFormat
from schemas.formats import FieldSpec, column_headers, field_names
from schemas.records import ExportRow, ResolvedEntity
import logging

logger = logging.getLogger(__name__)

Predicate = Callable[[ResolvedEntity], bool]

MISSING = object()


def extract_path(data: Dict[str, Any], path: str) -> Any:
    """Follow a dotted path; returns the `MISSING` sentinel if any key is absent."""
    value: Any = data
    for part in path.split("."):
        if not isinstance(value, dict) or part not in value:
            return MISSING
        value = value[part]
    return value


class RowFormat(ABC):
    """Per-format rendering of extracted field values."""

    output_format: OutputFormat

    def __init__(self, specs: Sequence[FieldSpec]):
        self.specs = list(specs)

    @property
    @abstractmethod
    def columns(self) -> Tuple[str, ...]:
        pass

    @abstractmethod
    def render(self, value: Any) -> Any:
        pass

    def build(self, identifier: str, values: List[Any]) -> ExportRow:
        return ExportRow(
            format=self.output_format,
            identifier=identifier,
            columns=self.columns,
            values=tuple(self.render(v) for v in values)
        )


class CsvRowFormat(RowFormat):
    """Display headers as columns, every value rendered as text."""

    output_format = OutputFormat.CSV

    @property
    def columns(self) -> Tuple[str, ...]:
        return column_headers(self.specs)

    def render(self, value: Any) -> str:
        if value is None:
            return ""
        if isinstance(value, bool):
            return "true" if value else "false"
        if isinstance(value, (list, tuple)):
            return "|".join(self.render(v) for v in value)
        if isinstance(value, dict):
            return json.dumps(value, separators=(",", ":"), sort_keys=True)
        return str(value)


class JsonRowFormat(RowFormat):
    """Field paths as keys, native JSON values."""

    output_format = OutputFormat.JSON

    @property
    def columns(self) -> Tuple[str, ...]:
        return field_names(self.specs)

    def render(self, value: Any) -> Any:
        return value


ROW_FORMATS: Dict[OutputFormat, Type[RowFormat]] = {
    OutputFormat.CSV: CsvRowFormat,
    OutputFormat.JSON: JsonRowFormat,
}


def always(entity: ResolvedEntity) -> bool:
    return True


class RowTransformer:
    """
    Map a resolved entity into one ExportRow per configured format.

    Handles:
    - Ordered field extraction (dotted paths)
    - Per-field post-processing
    - Filtering through an injected predicate (filtered entities yield no rows)
    """

    def __init__(
        self,
        specs: Sequence[FieldSpec],
        formats: Sequence[OutputFormat],
        predicate: Optional[Predicate] = None
    ):
        if not formats:
            raise ValueError("At least one output format is required")
        self.specs = list(specs)
        self.formats = list(dict.fromkeys(formats))
        self.row_formats = [ROW_FORMATS[f](self.specs) for f in self.formats]
        self.predicate = predicate or always

    def columns_by_format(self) -> Dict[OutputFormat, Tuple[str, ...]]:
        return {rf.output_format: rf.columns for rf in self.row_formats}

    def _extract(self, entity: ResolvedEntity) -> List[Any]:
        identifier = entity.identifier.value
        values = []
        for spec in self.specs:
            raw = extract_path(entity.data, spec.path)
            if raw is MISSING:
                if spec.required:
                    raise TransformError(
                        f"Field '{spec.path}' is missing",
                        context={"identifier": identifier, "field": spec.path}
                    )
                values.append(None)
                continue
            try:
                values.append(spec.processor(raw))
            except Exception as e:
                raise TransformError(
                    f"Field '{spec.path}' could not be processed",
                    context={"identifier": identifier, "field": spec.path},
                    original_exception=e
                )
        return values

    def transform(
        self, entity: ResolvedEntity
    ) -> StageResult[Optional[Dict[OutputFormat, ExportRow]]]:
        try:
            keep = self.predicate(entity)
        except Exception as e:
            return StageResult.skip(TransformError(
                "Filter could not be evaluated",
                context={
                    "identifier": entity.identifier.value,
                    "line_number": entity.identifier.line_number,
                },
                original_exception=e
            ))
        if not keep:
            logger.debug(f"Filtered out {entity.identifier.value}")
            return StageResult.ok(None)

        try:
            values = self._extract(entity)
        except TransformError as e:
            e.context["line_number"] = entity.identifier.line_number
            return StageResult.skip(e)

        identifier = entity.identifier.value
        return StageResult.ok({
            rf.output_format: rf.build(identifier, values) for rf in self.row_formats
        })
