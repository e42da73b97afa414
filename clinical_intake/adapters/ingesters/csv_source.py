"""CSV Record Source Adapter.

This adapter implements the RecordSourcePort contract for delimited text exports
(CSV, TSV). Every cell is read as a string; blank cells stay empty strings and are
never turned into NaN, so validators see exactly what the export contained.

Architecture:
    - Implements RecordSourcePort (Hexagonal Architecture)
    - Random access by record offset: counting the records also builds a sparse index
      of the byte offset of every ``index_stride``-th record, so ``read_records(start,
      stop)`` seeks close to ``start`` instead of re-parsing the file from the top
    - Record boundaries follow CSV quoting (a quoted field may span lines) and skip
      blank lines the way pandas does; the encoding must be ASCII-compatible
    - Undecodable bytes are replaced with U+FFFD rather than raising, so corrupted
      values surface as critical encoding errors in the ValidationReport
"""

import logging
from itertools import islice
from pathlib import Path
from threading import Lock
from typing import IO, Any, Dict, Iterator, List, Optional

import pandas as pd
from pandas.errors import EmptyDataError

from clinical_intake.domain.models import FileMetadata
from clinical_intake.domain.ports import RecordSourcePort, SourceNotFoundError, UnsupportedSourceError

logger = logging.getLogger(__name__)

SUPPORTED_EXTENSIONS = ('.csv', '.tsv')

QUOTE = ord('"')


def _quote_open_after(line: bytes, delimiter: int, in_quotes: bool) -> bool:
    """Whether a quoted field is still open at the end of ``line``.

    A quote opens a quoted field only at the start of a field; inside one, a doubled
    quote is an escaped quote character.
    """
    at_field_start = not in_quotes
    index = 0
    length = len(line)
    while index < length:
        byte = line[index]
        if in_quotes:
            if byte == QUOTE:
                if index + 1 < length and line[index + 1] == QUOTE:
                    index += 2
                    continue
                in_quotes = False
        elif byte == QUOTE and at_field_start:
            in_quotes = True
            at_field_start = False
        else:
            at_field_start = byte == delimiter
        index += 1
    return in_quotes


class CSVRecordSource(RecordSourcePort):
    """Record source over a CSV or TSV file with a header row.

    Parameters:
        source: Path to the file
        delimiter: Single-character field delimiter (default: tab for ``.tsv``, comma otherwise)
        encoding: Text encoding of the export (default: utf-8)
        index_stride: Records between two indexed byte offsets; a read scans at most
                      this many record boundaries before handing off to pandas

    Example Usage:
        ```python
        source = CSVRecordSource("exports/labs_2023.csv")
        metadata = source.file_metadata(sample_size=100)
        frame = source.read_records(10_000, 20_000)
        ```
    """

    def __init__(
        self,
        source: str,
        delimiter: Optional[str] = None,
        encoding: str = 'utf-8',
        index_stride: int = 10_000,
    ):
        self.source = str(source)
        self.source_path = Path(source)
        if not self.source_path.exists():
            raise SourceNotFoundError(f"CSV source not found: {source}", source=self.source)

        self.delimiter = delimiter or ('\t' if self.source_path.suffix.lower() == '.tsv' else ',')
        if len(self.delimiter) != 1 or not self.delimiter.isascii() or self.delimiter in '"\r\n':
            raise UnsupportedSourceError(
                f"Delimiter must be a single ASCII character other than a quote or newline, "
                f"got {self.delimiter!r}",
                source=self.source,
                adapter="csv_source",
            )
        if index_stride < 1:
            raise ValueError(f"index_stride must be at least 1, got {index_stride}")

        self.encoding = encoding
        self.index_stride = index_stride
        self.adapter_name = "csv_source"

        self._delimiter_byte = ord(self.delimiter)
        # pandas skips lines holding only whitespace, unless that whitespace is the delimiter
        self._blank_bytes = bytes(b for b in b' \t\r\n' if b != self._delimiter_byte)
        self._columns: Optional[List[str]] = None
        self._total_records: Optional[int] = None
        self._record_index: List[int] = []
        self._index_lock = Lock()

    @staticmethod
    def can_ingest(source: str) -> bool:
        """Check if this adapter can handle the given source.

        Parameters:
            source: Source identifier (file path)

        Returns:
            bool: True if source is a CSV or TSV file, False otherwise
        """
        if not source:
            return False
        return Path(source).suffix.lower() in SUPPORTED_EXTENSIONS

    def _read_csv(self, source: Any = None, **kwargs: Any):
        return pd.read_csv(
            self.source_path if source is None else source,
            delimiter=self.delimiter,
            dtype=str,
            keep_default_na=False,
            encoding=self.encoding,
            encoding_errors='replace',
            **kwargs
        )

    def column_names(self) -> List[str]:
        if self._columns is None:
            try:
                header = self._read_csv(header=0, nrows=0)
                self._columns = [str(column) for column in header.columns]
            except EmptyDataError:
                logger.warning(f"CSV source has no header row: {self.source}")
                self._columns = []
        return list(self._columns)

    def _record_starts(self, handle: IO[bytes]) -> Iterator[int]:
        """Yield the byte offset of every record from the handle's position on."""
        position = handle.tell()
        in_quotes = False
        for line in handle:
            line_start = position
            position += len(line)
            if in_quotes:
                in_quotes = _quote_open_after(line, self._delimiter_byte, True)
                continue
            if not line.strip(self._blank_bytes):
                continue
            yield line_start
            if QUOTE in line:
                in_quotes = _quote_open_after(line, self._delimiter_byte, False)

    def count_records(self) -> int:
        """Count data records (header excluded), indexing record offsets on the way."""
        with self._index_lock:
            if self._total_records is None:
                total = 0
                record_index: List[int] = []
                with open(self.source_path, 'rb') as handle:
                    starts = self._record_starts(handle)
                    next(starts, None)  # header
                    for offset in starts:
                        if total % self.index_stride == 0:
                            record_index.append(offset)
                        total += 1
                self._record_index = record_index
                self._total_records = total
                logger.debug(
                    f"Indexed {total} records of {self.source} at {len(record_index)} offsets"
                )
            return self._total_records

    def file_metadata(self, sample_size: int = 100) -> FileMetadata:
        total_records = self.count_records()
        file_size = self.source_path.stat().st_size

        samples: List[Dict[str, Any]] = []
        if total_records > 0 and sample_size > 0:
            samples = self._read_csv(header=0, nrows=sample_size).to_dict(orient='records')

        # An empty file still needs a positive size so planning yields zero chunks
        average_record_size = file_size / total_records if total_records > 0 else float(max(file_size, 1))

        logger.info(
            f"CSV source {self.source}: {total_records} records, {file_size} bytes, "
            f"~{average_record_size:.0f} bytes/record"
        )
        return FileMetadata(
            total_records=total_records,
            sample_records=tuple(samples),
            average_record_size_bytes=average_record_size,
        )

    def read_records(self, start: int, stop: int) -> pd.DataFrame:
        """Read data records ``[start, stop)``.

        Seeks to the nearest indexed record at or before ``start`` and skips the
        remaining record boundaries, so earlier parts of the file are not parsed.

        Raises:
            OSError: If the file cannot be opened or read
        """
        columns = self.column_names()
        total_records = self.count_records()
        if stop <= start or start >= total_records:
            return pd.DataFrame(columns=columns, dtype=str)

        anchor, skip = divmod(start, self.index_stride)
        with open(self.source_path, 'rb') as handle:
            offset = self._record_index[anchor]
            if skip:
                handle.seek(offset)
                offset = next(islice(self._record_starts(handle), skip, None), None)
                if offset is None:
                    logger.warning(f"{self.source} has fewer records than indexed; was it modified?")
                    return pd.DataFrame(columns=columns, dtype=str)
            handle.seek(offset)
            try:
                frame = self._read_csv(handle, header=None, names=columns, nrows=stop - start)
            except EmptyDataError:
                return pd.DataFrame(columns=columns, dtype=str)
        return frame.reset_index(drop=True)

    def get_source_info(self) -> Optional[dict]:
        """Get metadata about the CSV source.

        Returns:
            Optional[dict]: Metadata dictionary or None if unavailable
        """
        try:
            stat = self.source_path.stat()
            return {
                'format': 'tsv' if self.delimiter == '\t' else 'csv',
                'size': stat.st_size,
                'encoding': self.encoding,
                'exists': True,
                'delimiter': self.delimiter,
                'columns': self.column_names(),
            }
        except (OSError, ValueError):
            return None


class DataFrameRecordSource(RecordSourcePort):
    """Record source over an in-memory DataFrame (already decoded).

    Cells are converted to strings and missing values to empty strings, matching
    what CSVRecordSource returns.
    """

    def __init__(self, frame: pd.DataFrame, name: str = 'dataframe'):
        self.frame = frame.fillna('').astype(str).reset_index(drop=True)
        self.frame.columns = [str(column) for column in self.frame.columns]
        self.source = name
        self.adapter_name = "dataframe_source"

    def column_names(self) -> List[str]:
        return list(self.frame.columns)

    def file_metadata(self, sample_size: int = 100) -> FileMetadata:
        total_records = len(self.frame)
        if total_records > 0:
            average_record_size = float(self.frame.memory_usage(deep=True, index=False).sum()) / total_records
        else:
            average_record_size = 1.0
        return FileMetadata(
            total_records=total_records,
            sample_records=tuple(self.frame.head(sample_size).to_dict(orient='records')),
            average_record_size_bytes=max(average_record_size, 1.0),
        )

    def read_records(self, start: int, stop: int) -> pd.DataFrame:
        return self.frame.iloc[start:stop].reset_index(drop=True)

    def get_source_info(self) -> Optional[dict]:
        return {'format': 'dataframe', 'rows': len(self.frame), 'columns': self.column_names()}
