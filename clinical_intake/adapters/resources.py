"""Host resource probes implementing ResourceProbePort."""

import logging
import os

import psutil

from clinical_intake.domain.ports import ResourceProbePort

logger = logging.getLogger(__name__)


class PsutilResourceProbe(ResourceProbePort):
    """Reads available memory and CPU cores of the current host via psutil."""

    def available_memory_bytes(self) -> float:
        available = float(psutil.virtual_memory().available)
        logger.debug(f"Available memory: {available / (1024 * 1024):.1f} MB")
        return available

    def cpu_core_count(self) -> int:
        return psutil.cpu_count(logical=True) or os.cpu_count() or 1


class StaticResourceProbe(ResourceProbePort):
    """Fixed resource figures, for reproducible plans (tests, capped containers)."""

    def __init__(self, available_memory_bytes: float, cpu_core_count: int = 1):
        if available_memory_bytes < 0:
            raise ValueError(f"available_memory_bytes must be >= 0, got {available_memory_bytes}")
        if cpu_core_count < 1:
            raise ValueError(f"cpu_core_count must be >= 1, got {cpu_core_count}")
        self._available_memory_bytes = float(available_memory_bytes)
        self._cpu_core_count = cpu_core_count

    def available_memory_bytes(self) -> float:
        return self._available_memory_bytes

    def cpu_core_count(self) -> int:
        return self._cpu_core_count
