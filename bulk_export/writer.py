"""
Multi-format streaming writer.

Rows are appended to local, append-only staging files (one per output
format) and promoted to durable storage once, when the job finalizes.

Guarantees:
- CSV header written exactly once, on the first append
- Row order preserved; row i describes the same entity in every format
- A chunk is all-or-nothing: on failure every staging file is truncated back
  to its last committed offset
- finalize() promotes at most once; staged files are kept when promotion fails
"""

import json
import shutil
from pathlib import Path
from typing import Dict, List, Optional, Sequence, TextIO, Tuple

import pandas as pd

from core.exceptions import WriteError
from models.base import OutputFormat
from schemas.records import ExportRow, SkipRecord
from storage.base import Storage
import logging

logger = logging.getLogger(__name__)

CONTENT_TYPES = {
    OutputFormat.CSV: "text/csv",
    OutputFormat.JSON: "application/json",
}

ERROR_COLUMNS = ("identifier", "line_number", "error_type", "reason")


def encode_csv(columns: Sequence[str], rows: List[Tuple], with_header: bool) -> str:
    frame = pd.DataFrame(rows, columns=list(columns), dtype=object)
    return frame.to_csv(index=False, header=with_header, lineterminator="\n")


def encode_json_lines(columns: Sequence[str], rows: List[Tuple]) -> str:
    return "".join(
        json.dumps(dict(zip(columns, values)), ensure_ascii=False, default=str) + "\n"
        for values in rows
    )


class StagedOutput:
    """Append-only local staging file for one output format."""

    def __init__(self, path: Path, columns: Tuple[str, ...], output_format: OutputFormat):
        self.path = path
        self.columns = columns
        self.format = output_format
        self._handle: Optional[TextIO] = None
        self.header_written = False
        self.committed_offset = 0
        self._committed_header = False
        self.rows_written = 0
        self._committed_rows = 0

    def _open(self) -> TextIO:
        if self._handle is None:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self._handle = open(self.path, "w", encoding="utf-8", newline="")
        return self._handle

    def encode(self, rows: List[ExportRow]) -> str:
        for row in rows:
            if row.format != self.format or row.columns != self.columns:
                raise ValueError(
                    f"Row for {row.identifier} does not match the {self.format.value} columns"
                )
        values = [row.values for row in rows]
        if self.format == OutputFormat.CSV:
            return encode_csv(self.columns, values, with_header=not self.header_written)
        return encode_json_lines(self.columns, values)

    def append(self, rows: List[ExportRow]):
        payload = self.encode(rows)
        handle = self._open()
        handle.write(payload)
        handle.flush()
        self.header_written = True
        self.rows_written += len(rows)

    def commit(self):
        if self._handle is not None:
            self._handle.flush()
            self.committed_offset = self._handle.tell()
        self._committed_header = self.header_written
        self._committed_rows = self.rows_written

    def rollback(self):
        if self._handle is not None:
            self._handle.seek(self.committed_offset)
            self._handle.truncate()
            self._handle.flush()
        self.header_written = self._committed_header
        self.rows_written = self._committed_rows

    def close(self):
        if self._handle is not None:
            self._handle.flush()
            self._handle.close()
            self._handle = None


class StreamingWriter:
    """
    Writes rows for every configured format in lockstep and promotes the
    staged files under `<prefix>/<job_id>/<name><ext>`.
    """

    def __init__(
        self,
        job_id: str,
        columns_by_format: Dict[OutputFormat, Tuple[str, ...]],
        staging_dir: str,
        storage: Storage,
        prefix: str = "bulk-edit",
        name: Optional[str] = None,
        segment: Optional[int] = None,
        cleanup: bool = True
    ):
        if not columns_by_format:
            raise ValueError("At least one output format is required")
        self.job_id = job_id
        self.storage = storage
        self.prefix = prefix.strip("/")
        self.name = name or job_id
        self.segment = segment
        self.cleanup = cleanup
        suffix = "" if segment is None else f".part-{segment:05d}"
        # Segment writers of one job stage side by side without sharing a directory
        self.staging_root = Path(staging_dir) / job_id
        if segment is not None:
            self.staging_root = self.staging_root / f"part-{segment:05d}"
        self.outputs: Dict[OutputFormat, StagedOutput] = {
            fmt: StagedOutput(
                self.staging_root / f"{self.name}{suffix}{fmt.extension}", tuple(columns), fmt
            )
            for fmt, columns in columns_by_format.items()
        }
        self.errors_path = self.staging_root / f"{self.name}{suffix}-errors.csv"
        self._errors_staged = False
        self._finalized: Optional[Dict[str, str]] = None

    def object_key(self, filename: str) -> str:
        return f"{self.prefix}/{self.job_id}/{filename}" if self.prefix else f"{self.job_id}/{filename}"

    def _output(self, output_format: OutputFormat) -> StagedOutput:
        if output_format not in self.outputs:
            raise WriteError(
                f"Format {output_format.value} is not configured for this job",
                context={"job_id": self.job_id, "format": output_format.value}
            )
        return self.outputs[output_format]

    def append(self, rows: List[ExportRow], output_format: OutputFormat):
        """Append rows to one format's staging file (committed immediately)."""
        if self._finalized is not None:
            raise WriteError("Writer already finalized", context={"job_id": self.job_id})
        if not rows:
            return
        output = self._output(output_format)
        try:
            output.append(rows)
            output.commit()
        except (OSError, ValueError) as e:
            output.rollback()
            raise WriteError(
                "Failed to append rows",
                context={"job_id": self.job_id, "format": output_format.value, "path": str(output.path)},
                original_exception=e
            )

    def append_chunk(self, rows: List[Dict[OutputFormat, ExportRow]]):
        """
        Atomically append one chunk to every format.

        Args:
            rows: One mapping per surviving entity, in input order
        """
        if self._finalized is not None:
            raise WriteError("Writer already finalized", context={"job_id": self.job_id})
        if not rows:
            return

        current = None
        try:
            for fmt, output in self.outputs.items():
                current = fmt
                output.append([row[fmt] for row in rows])
        except (OSError, ValueError, KeyError) as e:
            for output in self.outputs.values():
                output.rollback()
            raise WriteError(
                "Failed to append chunk, rolled back",
                context={"job_id": self.job_id, "format": current.value if current else None, "rows": len(rows)},
                original_exception=e
            )

        for output in self.outputs.values():
            output.commit()
        logger.debug(f"Appended {len(rows)} rows to {len(self.outputs)} formats for job {self.job_id}")

    def record_errors(self, skip_records: List[SkipRecord]):
        """Stage the errors file listing every skipped identifier."""
        if not skip_records:
            return
        rows = [
            (s.identifier, "" if s.line_number is None else str(s.line_number), s.error_type, s.reason)
            for s in skip_records
        ]
        try:
            self.errors_path.parent.mkdir(parents=True, exist_ok=True)
            with open(self.errors_path, "w", encoding="utf-8", newline="") as handle:
                handle.write(encode_csv(ERROR_COLUMNS, rows, with_header=True))
            self._errors_staged = True
        except OSError as e:
            raise WriteError(
                "Failed to stage errors file",
                context={"job_id": self.job_id, "path": str(self.errors_path)},
                original_exception=e
            )

    def finalize(self) -> Dict[str, str]:
        """
        Close every staged output and promote it to durable storage.

        Returns:
            Mapping of format value (and "errors") to object key
        """
        if self._finalized is not None:
            logger.warning(f"Writer for job {self.job_id} already finalized")
            return self._finalized

        for output in self.outputs.values():
            output.close()

        promoted: Dict[str, str] = {}
        staged = [
            (fmt.value, output.path, CONTENT_TYPES[fmt])
            for fmt, output in self.outputs.items()
            if output.path.exists()
        ]
        if self._errors_staged:
            staged.append(("errors", self.errors_path, "text/csv"))

        for label, path, content_type in staged:
            key = self.object_key(path.name)
            try:
                self.storage.upload_file(key, path, content_type=content_type)
            except Exception as e:
                self._finalized = promoted
                raise WriteError(
                    "Failed to promote staged output",
                    context={"job_id": self.job_id, "format": label, "path": str(path), "key": key},
                    original_exception=e
                )
            promoted[label] = key
            logger.info(f"Promoted {path.name} to {key}")

        self._finalized = promoted

        if self.cleanup and self.staging_root.exists():
            shutil.rmtree(self.staging_root, ignore_errors=True)

        return promoted


def compose_segments(
    storage: Storage,
    prefix: str,
    job_id: str,
    name: str,
    extensions: Sequence[str],
    segment_count: int
) -> Dict[str, str]:
    """
    Compose the promoted parts of disjoint segment writers into one object
    per extension and delete the parts.

    Only the first CSV segment keeps its header line: later segments must be
    written by writers that already skipped the header (see `continuation_writer`).
    """
    prefix = prefix.strip("/")
    base = f"{prefix}/{job_id}" if prefix else job_id
    composed: Dict[str, str] = {}
    for extension in extensions:
        parts = [
            f"{base}/{name}.part-{segment:05d}{extension}"
            for segment in range(segment_count)
        ]
        parts = [p for p in parts if storage.exists(p)]
        if not parts:
            continue
        target = f"{base}/{name}{extension}"
        try:
            storage.compose(target, parts)
        except Exception as e:
            raise WriteError(
                "Failed to compose segments",
                context={"job_id": job_id, "key": target, "parts": len(parts)},
                original_exception=e
            )
        for part in parts:
            storage.delete(part)
        composed[extension.lstrip(".")] = target
        logger.info(f"Composed {len(parts)} segments into {target}")
    return composed


def continuation_writer(writer: StreamingWriter) -> StreamingWriter:
    """Mark a segment writer as continuing an earlier segment (no CSV header)."""
    for output in writer.outputs.values():
        output.header_written = True
        output.commit()
    return writer
