"""Record sinks implementing RecordSinkPort.

Sinks are shared by all chunk workers, so every write is serialised by a lock.
Record order in a sink is the order in which batches were committed, which is
not file order when chunks run in parallel; ``_offset`` gives the file position.
"""

import dataclasses
import json
import logging
from datetime import date, datetime
from pathlib import Path
from threading import Lock
from typing import Any, Dict, List, Optional

from clinical_intake.domain.ports import RecordSinkPort

logger = logging.getLogger(__name__)


def _json_default(value: Any) -> Any:
    """Serialise normalised values (dates, measurements) that json cannot handle."""
    if isinstance(value, (date, datetime)):
        return value.isoformat()
    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        return dataclasses.asdict(value)
    return str(value)


def record_to_json(record: Dict[str, Any]) -> str:
    return json.dumps(record, default=_json_default, ensure_ascii=False)


class ListRecordSink(RecordSinkPort):
    """Keeps records in memory; used by tests and the ``validate`` preview."""

    def __init__(self):
        self.records: List[Dict[str, Any]] = []
        self.quarantined: List[Dict[str, Any]] = []
        self._lock = Lock()

    def write(self, records: List[Dict[str, Any]]) -> None:
        with self._lock:
            self.records.extend(records)

    def quarantine(self, records: List[Dict[str, Any]]) -> None:
        with self._lock:
            self.quarantined.extend(records)

    def offsets(self) -> List[int]:
        """Sorted ``_offset`` values of every written record."""
        with self._lock:
            return sorted(record["_offset"] for record in self.records)


class JsonLinesRecordSink(RecordSinkPort):
    """Appends cleaned records to a JSON Lines file, quarantined ones to a second file.

    Parameters:
        output_path: File receiving cleaned records
        quarantine_path: File receiving quarantined records
            (default: ``<output stem>.quarantine.jsonl`` next to the output)

    Files are opened in append mode for each batch, so a resumed job continues the
    output of the interrupted run.
    """

    def __init__(self, output_path: str, quarantine_path: Optional[str] = None):
        self.output_path = Path(output_path)
        if quarantine_path is None:
            quarantine_path = self.output_path.with_name(f"{self.output_path.stem}.quarantine.jsonl")
        self.quarantine_path = Path(quarantine_path)
        self.output_path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = Lock()

    def _append(self, path: Path, records: List[Dict[str, Any]]) -> None:
        lines = "".join(record_to_json(record) + "\n" for record in records)
        with self._lock:
            with open(path, "a", encoding="utf-8") as handle:
                handle.write(lines)
                handle.flush()
        logger.debug(f"Appended {len(records)} records to {path}")

    def write(self, records: List[Dict[str, Any]]) -> None:
        self._append(self.output_path, records)

    def quarantine(self, records: List[Dict[str, Any]]) -> None:
        self._append(self.quarantine_path, records)
