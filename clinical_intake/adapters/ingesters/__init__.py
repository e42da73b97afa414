"""Record source adapters for Clinical Intake.

This module contains the adapters that implement RecordSourcePort for reading
decoded, column-labelled records from exports.
"""

from pathlib import Path

from clinical_intake.adapters.ingesters.csv_source import CSVRecordSource, DataFrameRecordSource
from clinical_intake.domain.ports import RecordSourcePort, UnsupportedSourceError

__all__ = ["CSVRecordSource", "DataFrameRecordSource", "get_source"]


def get_source(source: str, **kwargs) -> RecordSourcePort:
    """Factory function to get the appropriate record source for a file.

    Parameters:
        source: Path to the export
        **kwargs: Additional arguments passed to the source constructor
            (delimiter, encoding, index_stride)

    Returns:
        RecordSourcePort: Record source for the file

    Raises:
        SourceNotFoundError: If the file does not exist
        UnsupportedSourceError: If no record source can handle the file

    Example Usage:
        ```python
        source = get_source("labs.tsv")
        source = get_source("labs.txt", delimiter="|")
        ```
    """
    if CSVRecordSource.can_ingest(source) or 'delimiter' in kwargs:
        return CSVRecordSource(source, **kwargs)

    raise UnsupportedSourceError(
        f"No record source found for: {source}. Supported formats: CSV, TSV "
        f"(other extensions require an explicit delimiter, got '{Path(source).suffix}')",
        source=source,
    )
