"""
Identifier source: reads an uploaded delimited file into IdentifierRecords
"""

import io
import re
from dataclasses import dataclass
from pathlib import Path
from typing import BinaryIO, Iterator, List, Optional, Tuple, Union

import pandas as pd

from core.exceptions import EmptyInputError, MalformedInputError
from models.base import EntityType
from schemas.records import IdentifierRecord
import logging

logger = logging.getLogger(__name__)

IdentifierInput = Union[str, Path, bytes, BinaryIO]

_PANDAS_LINE = re.compile(r"line (\d+)")


@dataclass(frozen=True)
class IdentifierSchema:
    """Column layout of an identifiers file."""

    columns: Tuple[str, ...] = ("identifier",)
    identifier_column: str = "identifier"
    delimiter: str = ","
    has_header: bool = False


DEFAULT_SCHEMAS = {
    EntityType.USER: IdentifierSchema(columns=("userIdentifier",), identifier_column="userIdentifier"),
    EntityType.HOLDINGS_RECORD: IdentifierSchema(columns=("holdingsIdentifier",), identifier_column="holdingsIdentifier"),
    EntityType.ITEM: IdentifierSchema(columns=("itemId",), identifier_column="itemId"),
    EntityType.PURCHASE_ORDER: IdentifierSchema(columns=("orderIdentifier",), identifier_column="orderIdentifier"),
}


def default_identifier_schema(entity_type: EntityType) -> IdentifierSchema:
    return DEFAULT_SCHEMAS[entity_type]


class IdentifierReader:
    """
    Lazy reader over an identifiers file.

    Supports:
    - Optional header line
    - Restart from a data-row offset
    - Line numbers that match the original file (blank lines included)
    """

    READ_BLOCK_SIZE = 1000

    def __init__(
        self,
        source: IdentifierInput,
        schema: Optional[IdentifierSchema] = None,
        name: Optional[str] = None
    ):
        self.source = source
        self.schema = schema or IdentifierSchema()
        if self.schema.identifier_column not in self.schema.columns:
            raise ValueError(
                f"Identifier column {self.schema.identifier_column!r} is not one of {self.schema.columns}"
            )
        self.name = name or (str(source) if isinstance(source, (str, Path)) else "<upload>")

    def _open(self) -> BinaryIO:
        if isinstance(self.source, (str, Path)):
            return open(self.source, "rb")
        if isinstance(self.source, (bytes, bytearray)):
            return io.BytesIO(self.source)
        if not self.source.seekable():
            raise MalformedInputError(
                "Identifier stream is not restartable",
                context={"source": self.name}
            )
        self.source.seek(0)
        return self.source

    def _malformed(self, message: str, line_number: Optional[int], error: Optional[Exception] = None):
        return MalformedInputError(
            message,
            context={"source": self.name, "line_number": line_number},
            original_exception=error
        )

    def _frames(self, handle: BinaryIO) -> Iterator[pd.DataFrame]:
        schema = self.schema
        try:
            reader = pd.read_csv(
                handle,
                sep=schema.delimiter,
                header=0 if schema.has_header else None,
                dtype=str,
                keep_default_na=False,
                skip_blank_lines=False,
                engine="python",
                encoding="utf-8-sig",
                chunksize=self.READ_BLOCK_SIZE,
            )
            for frame in reader:
                yield frame
        except pd.errors.EmptyDataError:
            return
        except pd.errors.ParserError as e:
            match = _PANDAS_LINE.search(str(e))
            line_number = int(match.group(1)) if match else None
            raise self._malformed("Identifier line does not match the declared columns", line_number, e)
        except UnicodeDecodeError as e:
            raise self._malformed("Identifier file is not valid UTF-8", None, e)

    def _conform(self, frame: pd.DataFrame) -> pd.DataFrame:
        """Check the block against the schema and label its columns."""
        columns = list(self.schema.columns)
        if self.schema.has_header:
            missing = [c for c in columns if c not in frame.columns]
            if missing:
                raise self._malformed(f"Header is missing columns: {missing}", 1)
            return frame

        # Without a header the first line sets the width; only blank extra fields are tolerated
        if frame.shape[1] > len(columns):
            extra = frame.iloc[:, len(columns):]
            for position, row in zip(extra.index, extra.itertuples(index=False, name=None)):
                if not all(self._blank(v) for v in row):
                    raise self._malformed(
                        f"Expected {len(columns)} fields", int(position) + 1
                    )
            frame = frame.iloc[:, :len(columns)]
        frame = frame.copy()
        frame.columns = columns[:frame.shape[1]]
        return frame

    def records(self, offset: int = 0) -> Iterator[IdentifierRecord]:
        """
        Yield identifier records in file order.

        Args:
            offset: Number of data rows to skip (restart point)
        """
        header_lines = 1 if self.schema.has_header else 0
        seen = 0
        handle = self._open()
        try:
            for frame in self._frames(handle):
                frame = self._conform(frame)
                for position, row in zip(frame.index, frame.itertuples(index=False, name=None)):
                    line_number = int(position) + 1 + header_lines
                    values = dict(zip(frame.columns, row))
                    if all(self._blank(v) for v in values.values()):
                        continue
                    value = values.get(self.schema.identifier_column)
                    if self._blank(value):
                        raise self._malformed("Identifier column is empty", line_number)
                    seen += 1
                    if seen <= offset:
                        continue
                    yield IdentifierRecord(value=str(value), line_number=line_number)
        finally:
            if handle is not self.source:
                handle.close()

    def chunks(self, size: int, offset: int = 0) -> Iterator[List[IdentifierRecord]]:
        """Group records into lists of exactly `size` (the last one may be shorter)."""
        if size < 1:
            raise ValueError("Chunk size must be positive")
        chunk: List[IdentifierRecord] = []
        for record in self.records(offset=offset):
            chunk.append(record)
            if len(chunk) == size:
                yield chunk
                chunk = []
        if chunk:
            yield chunk

    def validate(self) -> int:
        """
        Scan the whole file once.

        Returns:
            Number of data rows

        Raises:
            MalformedInputError: On the first row that does not fit the schema
            EmptyInputError: When the file holds no data rows
        """
        count = sum(1 for _ in self.records())
        if count == 0:
            raise EmptyInputError(
                "Identifier file contains no identifiers",
                context={"source": self.name}
            )
        logger.info(f"Validated {count} identifiers in {self.name}")
        return count

    @staticmethod
    def _blank(value) -> bool:
        if value is None:
            return True
        if isinstance(value, float) and pd.isna(value):
            return True
        return isinstance(value, str) and not value.strip()
