"""Unit tests for the CSV record source.

Tests cover:
- Record counting and metadata
- Random access reads by record offset
- Blank cells and NA-like strings kept verbatim
- TSV and custom delimiters
- Undecodable bytes surfacing as replacement characters
- Error handling for missing and unsupported files
"""

import csv

import pandas as pd
import pytest

from clinical_intake.adapters.ingesters import get_source
from clinical_intake.adapters.ingesters.csv_source import CSVRecordSource, DataFrameRecordSource
from clinical_intake.domain.ports import SourceNotFoundError, UnsupportedSourceError

HEADER = ["PatientID", "collected", "glucose"]


def write_csv(path, rows, delimiter=","):
    with open(path, "w", newline="", encoding="utf-8") as f:
        writer = csv.writer(f, delimiter=delimiter)
        writer.writerow(HEADER)
        writer.writerows(rows)
    return str(path)


def lab_rows(count):
    return [[f"MRN{i:03d}", "2023-02-13", f"{100 + i} mg/dL"] for i in range(count)]


class TestCSVSourceInitialization:
    """Test construction and format detection."""

    def test_missing_file(self, tmp_path):
        with pytest.raises(SourceNotFoundError):
            CSVRecordSource(str(tmp_path / "missing.csv"))

    def test_default_delimiters(self, tmp_path):
        csv_path = write_csv(tmp_path / "labs.csv", lab_rows(1))
        tsv_path = write_csv(tmp_path / "labs.tsv", lab_rows(1), delimiter="\t")
        assert CSVRecordSource(csv_path).delimiter == ","
        assert CSVRecordSource(tsv_path).delimiter == "\t"

    @pytest.mark.parametrize("source,expected", [
        ("labs.csv", True),
        ("LABS.TSV", True),
        ("labs.xml", False),
        ("", False),
    ])
    def test_can_ingest(self, source, expected):
        assert CSVRecordSource.can_ingest(source) is expected


class TestCSVSourceMetadata:
    """Test counting and metadata."""

    def test_counts_records_across_index_strides(self, tmp_path):
        path = write_csv(tmp_path / "labs.csv", lab_rows(5))
        source = CSVRecordSource(path, index_stride=2)
        assert source.count_records() == 5
        assert source.column_names() == HEADER

    def test_quoted_newlines_do_not_split_records(self, tmp_path):
        rows = lab_rows(5)
        rows[2][1] = "pending\nsee note, \"repeat\""
        path = write_csv(tmp_path / "labs.csv", rows)
        source = CSVRecordSource(path, index_stride=2)

        assert source.count_records() == 5
        assert source.read_records(2, 3).loc[0, "collected"] == "pending\nsee note, \"repeat\""
        assert list(source.read_records(3, 5)["PatientID"]) == ["MRN003", "MRN004"]

    def test_blank_lines_are_not_records(self, tmp_path):
        path = tmp_path / "labs.csv"
        path.write_bytes(b"PatientID,glucose\r\nMRN001,1 g/L\r\n\r\n  \r\nMRN002,2 g/L\r\nMRN003,3 g/L\r\n")
        source = CSVRecordSource(str(path), index_stride=2)

        assert source.count_records() == 3
        assert list(source.read_records(1, 3)["PatientID"]) == ["MRN002", "MRN003"]

    @pytest.mark.parametrize("delimiter", ["||", "\"", "\u00a7"])
    def test_unusable_delimiter(self, tmp_path, delimiter):
        path = write_csv(tmp_path / "labs.csv", lab_rows(1))
        with pytest.raises(UnsupportedSourceError):
            CSVRecordSource(path, delimiter=delimiter)

    def test_file_metadata(self, tmp_path):
        path = write_csv(tmp_path / "labs.csv", lab_rows(5))
        metadata = CSVRecordSource(path).file_metadata(sample_size=2)

        assert metadata.total_records == 5
        assert len(metadata.sample_records) == 2
        assert metadata.sample_records[0]["PatientID"] == "MRN000"
        size = (tmp_path / "labs.csv").stat().st_size
        assert metadata.average_record_size_bytes == pytest.approx(size / 5)

    def test_empty_file(self, tmp_path):
        """Test a zero-byte file plans to zero chunks instead of failing."""
        path = tmp_path / "empty.csv"
        path.write_text("")
        source = CSVRecordSource(str(path))

        assert source.column_names() == []
        metadata = source.file_metadata()
        assert metadata.total_records == 0
        assert metadata.average_record_size_bytes > 0

    def test_header_only(self, tmp_path):
        path = write_csv(tmp_path / "labs.csv", [])
        source = CSVRecordSource(path)
        assert source.count_records() == 0
        assert source.column_names() == HEADER
        assert list(source.read_records(0, 10).columns) == HEADER

    def test_source_info(self, tmp_path):
        path = write_csv(tmp_path / "labs.tsv", lab_rows(2), delimiter="\t")
        info = CSVRecordSource(path).get_source_info()
        assert info["format"] == "tsv"
        assert info["columns"] == HEADER


class TestCSVSourceReads:
    """Test random access reads."""

    def test_read_range(self, tmp_path):
        path = write_csv(tmp_path / "labs.csv", lab_rows(10))
        frame = CSVRecordSource(path).read_records(2, 4)

        assert list(frame["PatientID"]) == ["MRN002", "MRN003"]
        assert list(frame.index) == [0, 1]

    def test_read_past_end_is_short(self, tmp_path):
        path = write_csv(tmp_path / "labs.csv", lab_rows(5))
        frame = CSVRecordSource(path).read_records(3, 10)
        assert list(frame["PatientID"]) == ["MRN003", "MRN004"]

    def test_read_seeks_past_earlier_records(self, tmp_path):
        """Test a later range is read without parsing the records before it.

        The first records are overwritten in place with an unterminated quote after
        indexing; a read that re-parsed the file from the top would swallow every
        following line into one field.
        """
        path = tmp_path / "labs.csv"
        write_csv(path, lab_rows(10))
        source = CSVRecordSource(str(path), index_stride=4)
        assert source.count_records() == 10
        assert source.column_names() == HEADER

        content = path.read_bytes()
        first_record = content.index(b"MRN000")
        second_record_end = content.index(b"MRN002")
        garbage = b"\"" + b"x" * (second_record_end - first_record - 1)
        path.write_bytes(content[:first_record] + garbage + content[second_record_end:])

        assert list(source.read_records(4, 6)["PatientID"]) == ["MRN004", "MRN005"]
        assert list(source.read_records(6, 9)["PatientID"]) == ["MRN006", "MRN007", "MRN008"]

    def test_empty_range(self, tmp_path):
        path = write_csv(tmp_path / "labs.csv", lab_rows(5))
        frame = CSVRecordSource(path).read_records(3, 3)
        assert len(frame) == 0
        assert list(frame.columns) == HEADER

    def test_cells_are_strings_and_blanks_stay_empty(self, tmp_path):
        """Test no dtype inference and no NA conversion."""
        path = write_csv(tmp_path / "labs.csv", [["00123", "", "NA"], ["00124", "N/A", "null"]])
        frame = CSVRecordSource(path).read_records(0, 2)

        assert frame.loc[0, "PatientID"] == "00123"
        assert frame.loc[0, "collected"] == ""
        assert frame.loc[0, "glucose"] == "NA"
        assert frame.loc[1, "collected"] == "N/A"
        assert frame.loc[1, "glucose"] == "null"

    def test_undecodable_bytes_are_replaced(self, tmp_path):
        """Test invalid UTF-8 becomes U+FFFD rather than raising."""
        path = tmp_path / "latin1.csv"
        path.write_bytes(b"PatientID,name\nMRN001,Jos\xe9\nMRN002,Ana\n")
        frame = CSVRecordSource(str(path)).read_records(0, 2)

        assert frame.loc[0, "name"] == "Jos\ufffd"
        assert frame.loc[1, "name"] == "Ana"

    def test_tsv(self, tmp_path):
        path = write_csv(tmp_path / "labs.tsv", lab_rows(3), delimiter="\t")
        frame = CSVRecordSource(path).read_records(1, 3)
        assert list(frame["glucose"]) == ["101 mg/dL", "102 mg/dL"]


class TestGetSource:
    """Test the record source factory."""

    def test_csv(self, tmp_path):
        path = write_csv(tmp_path / "labs.csv", lab_rows(1))
        assert isinstance(get_source(path), CSVRecordSource)

    def test_explicit_delimiter_for_other_extensions(self, tmp_path):
        path = write_csv(tmp_path / "labs.txt", lab_rows(2), delimiter="|")
        source = get_source(path, delimiter="|")
        assert source.column_names() == HEADER
        assert source.count_records() == 2

    def test_unsupported_extension(self, tmp_path):
        path = tmp_path / "labs.xml"
        path.write_text("<labs/>")
        with pytest.raises(UnsupportedSourceError):
            get_source(str(path))

    def test_missing_file(self, tmp_path):
        with pytest.raises(SourceNotFoundError):
            get_source(str(tmp_path / "nope.csv"))


class TestDataFrameSource:

    def test_missing_values_become_empty_strings(self):
        frame = pd.DataFrame({"PatientID": ["MRN001", None], "glucose": [1.5, float("nan")]})
        source = DataFrameRecordSource(frame)

        records = source.read_records(0, 2)
        assert records.loc[1, "PatientID"] == ""
        assert records.loc[1, "glucose"] == ""
        assert records.loc[0, "glucose"] == "1.5"

    def test_metadata(self):
        source = DataFrameRecordSource(pd.DataFrame({"a": ["x"] * 4}))
        metadata = source.file_metadata(sample_size=3)
        assert metadata.total_records == 4
        assert len(metadata.sample_records) == 3
        assert metadata.average_record_size_bytes >= 1.0
