"""Recoverable anomaly bookkeeping shared by the decoding pipeline."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Dict

LOGGER = logging.getLogger("itmtrace.anomalies")

UNKNOWN_HEADER = "unknown_header"
RESYNC = "resync"
OVERFLOW = "overflow"
EXCEPTION_MISMATCH = "exception_mismatch"
UNRESOLVED_PC = "unresolved_pc"


class ItmTraceError(RuntimeError):
    """Base class for fatal itmtrace errors."""


class ByteSourceError(ItmTraceError):
    """Raised when the byte source fails to provide data."""


class SymbolTableError(ItmTraceError):
    """Raised when a symbol table cannot be built."""


@dataclass
class AnomalyCounter:
    """Per-category count of recoverable anomalies.

    Components record into a shared counter instead of raising; the caller
    decides whether a non-zero total should change the exit status.
    """

    counts: Dict[str, int] = field(default_factory=dict)

    def record(self, category: str) -> None:
        self.counts[category] = self.counts.get(category, 0) + 1
        LOGGER.debug("anomaly %s (total %d)", category, self.counts[category])

    def get(self, category: str) -> int:
        return self.counts.get(category, 0)

    @property
    def total(self) -> int:
        return sum(self.counts.values())

    def summary(self) -> str:
        if not self.counts:
            return "no anomalies"
        return ", ".join(f"{name}={count}" for name, count in sorted(self.counts.items()))
