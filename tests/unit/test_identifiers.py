"""
Unit tests for the identifier source
"""

import io
import pytest

from bulk_export.identifiers import IdentifierReader, IdentifierSchema, default_identifier_schema
from core.exceptions import EmptyInputError, MalformedInputError
from models.base import EntityType


class TestIdentifierReader:
    """Test reading uploaded identifier files"""

    def test_reads_one_identifier_per_line(self):
        reader = IdentifierReader(b"123\n456\n789\n")

        records = list(reader.records())

        assert [r.value for r in records] == ["123", "456", "789"]
        assert [r.line_number for r in records] == [1, 2, 3]

    def test_identifiers_are_stripped(self):
        reader = IdentifierReader(b"  abc  \n def\n")

        assert [r.value for r in reader.records()] == ["abc", "def"]

    def test_blank_lines_skipped_but_counted(self):
        reader = IdentifierReader(b"a\n\nb\n   \nc\n")

        records = list(reader.records())

        assert [r.value for r in records] == ["a", "b", "c"]
        assert [r.line_number for r in records] == [1, 3, 5]

    def test_header_line_numbers(self):
        schema = IdentifierSchema(columns=("barcode",), identifier_column="barcode", has_header=True)
        reader = IdentifierReader(b"barcode\nA\nB\n", schema)

        records = list(reader.records())

        assert [(r.value, r.line_number) for r in records] == [("A", 2), ("B", 3)]

    def test_header_missing_declared_column(self):
        schema = IdentifierSchema(columns=("barcode",), identifier_column="barcode", has_header=True)
        reader = IdentifierReader(b"userId\nA\n", schema)

        with pytest.raises(MalformedInputError) as exc_info:
            list(reader.records())

        assert exc_info.value.line_number == 1

    def test_multi_column_schema(self):
        schema = IdentifierSchema(columns=("barcode", "note"), identifier_column="barcode", delimiter=";")
        reader = IdentifierReader(b"A;first\nB;second\n", schema)

        assert [r.value for r in reader.records()] == ["A", "B"]

    def test_too_many_fields_is_malformed(self):
        reader = IdentifierReader(b"a\nb,c\nd\n")

        with pytest.raises(MalformedInputError) as exc_info:
            list(reader.records())

        assert exc_info.value.line_number == 2

    def test_empty_identifier_column_is_malformed(self):
        schema = IdentifierSchema(columns=("barcode", "note"), identifier_column="barcode")
        reader = IdentifierReader(b"A,x\n,y\n", schema)

        with pytest.raises(MalformedInputError) as exc_info:
            list(reader.records())

        assert exc_info.value.line_number == 2

    def test_restart_from_offset(self):
        reader = IdentifierReader(b"a\nb\nc\nd\n")

        assert [r.value for r in reader.records(offset=2)] == ["c", "d"]
        # restartable: reading again starts from the beginning
        assert [r.value for r in reader.records()] == ["a", "b", "c", "d"]

    def test_seekable_stream_source(self):
        reader = IdentifierReader(io.BytesIO(b"x\ny\n"), name="upload.csv")

        assert reader.validate() == 2
        assert [r.value for r in reader.records()] == ["x", "y"]

    def test_path_source(self, tmp_path):
        path = tmp_path / "ids.csv"
        path.write_text("﻿10\n20\n", encoding="utf-8")
        reader = IdentifierReader(path)

        assert [r.value for r in reader.records()] == ["10", "20"]

    def test_chunks_of_exact_size(self):
        reader = IdentifierReader(b"1\n2\n3\n4\n5\n")

        chunks = list(reader.chunks(2))

        assert [[r.value for r in c] for c in chunks] == [["1", "2"], ["3", "4"], ["5"]]

    def test_chunk_size_must_be_positive(self):
        with pytest.raises(ValueError):
            list(IdentifierReader(b"1\n").chunks(0))

    def test_validate_counts_rows(self):
        assert IdentifierReader(b"1\n2\n\n3\n").validate() == 3

    @pytest.mark.parametrize("content", [b"", b"\n\n  \n"])
    def test_validate_rejects_empty_input(self, content):
        with pytest.raises(EmptyInputError):
            IdentifierReader(content).validate()

    def test_empty_input_is_malformed_input(self):
        assert issubclass(EmptyInputError, MalformedInputError)

    def test_unknown_identifier_column_rejected(self):
        with pytest.raises(ValueError):
            IdentifierReader(b"1\n", IdentifierSchema(columns=("a",), identifier_column="b"))

    def test_default_schemas_per_entity(self):
        assert default_identifier_schema(EntityType.ITEM).columns == ("itemId",)
        assert default_identifier_schema(EntityType.USER).has_header is False
