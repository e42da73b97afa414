"""In-memory checkpoint medium, for tests and single-process runs without durability."""

import logging
from threading import Lock
from typing import Dict, List, Optional

from clinical_intake.domain.ports import CheckpointMediumPort

logger = logging.getLogger(__name__)


class InMemoryCheckpointMedium(CheckpointMediumPort):
    """Thread-safe dict-backed medium that keeps every version put for a key."""

    def __init__(self):
        self._versions: Dict[str, List[str]] = {}
        self._lock = Lock()

    def put(self, key: str, value: str) -> None:
        with self._lock:
            self._versions.setdefault(key, []).append(value)

    def get_latest(self, key: str) -> Optional[str]:
        with self._lock:
            versions = self._versions.get(key)
            return versions[-1] if versions else None

    def delete(self, key: str) -> None:
        with self._lock:
            self._versions.pop(key, None)

    def keys(self, prefix: str = "") -> List[str]:
        """Keys currently present, sorted; mainly for inspection in tests."""
        with self._lock:
            return sorted(key for key in self._versions if key.startswith(prefix))

    def overwrite_latest(self, key: str, value: str) -> None:
        """Replace the newest version in place, simulating corruption of stored data."""
        with self._lock:
            versions = self._versions.get(key)
            if not versions:
                raise KeyError(key)
            versions[-1] = value
