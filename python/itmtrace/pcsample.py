"""PC sampling profiler: symbol tables and the sample histogram."""

from __future__ import annotations

import bisect
import logging
import shutil
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Protocol, Sequence

from .anomalies import UNRESOLVED_PC, AnomalyCounter, SymbolTableError
from .packets import DecodedPacket, PcSample

LOGGER = logging.getLogger("itmtrace.pcsample")

SLEEP_LABEL = "*SLEEP*"
UNRESOLVED_LABEL = "*UNRESOLVED*"

_FUNCTION_TYPES = frozenset("TtWw")


@dataclass(frozen=True)
class Symbol:
    name: str
    start: int
    end: int

    def contains(self, address: int) -> bool:
        return self.start <= address < self.end


class SymbolResolver(Protocol):
    def resolve(self, address: int) -> Optional[Symbol]:
        ...


class SymbolTable:
    """Address-range lookup over function symbols."""

    def __init__(self, symbols: Iterable[Symbol]) -> None:
        self._symbols = sorted(symbols, key=lambda sym: (sym.start, -sym.end))
        self._starts = [sym.start for sym in self._symbols]
        # _reach[i] is the furthest end of any symbol up to and including i
        self._reach: List[int] = []
        for sym in self._symbols:
            self._reach.append(max(sym.end, self._reach[-1]) if self._reach else sym.end)

    def __len__(self) -> int:
        return len(self._symbols)

    @property
    def symbols(self) -> Sequence[Symbol]:
        return tuple(self._symbols)

    def resolve(self, address: int) -> Optional[Symbol]:
        idx = bisect.bisect_right(self._starts, address) - 1
        # walk back past nested symbols that end before the address
        while idx >= 0 and self._reach[idx] > address:
            if self._symbols[idx].contains(address):
                # aliases share a start address; the widest one sorts first
                return self._symbols[bisect.bisect_left(self._starts, self._symbols[idx].start)]
            idx -= 1
        return None

    @classmethod
    def from_nm_output(cls, text: str) -> "SymbolTable":
        return cls(parse_nm_output(text))

    @classmethod
    def from_elf(cls, path: Path, *, nm: Optional[str] = None, demangle: bool = True) -> "SymbolTable":
        """Build the table by running ``nm`` over an ELF image."""

        tool = nm or shutil.which("arm-none-eabi-nm") or shutil.which("nm")
        if not tool:
            raise SymbolTableError("no nm tool found (install binutils or pass --nm)")
        cmd = [tool, "--print-size", "--defined-only"]
        if demangle:
            cmd.append("--demangle")
        cmd.append(str(path))
        try:
            res = subprocess.run(cmd, check=False, capture_output=True, text=True)
        except OSError as exc:
            raise SymbolTableError(f"failed to run {tool}: {exc}") from exc
        if res.returncode != 0:
            raise SymbolTableError(f"{tool} failed on {path}: {res.stderr.strip()}")
        table = cls.from_nm_output(res.stdout)
        if not len(table):
            raise SymbolTableError(f"no function symbols in {path}")
        LOGGER.info("loaded %d function symbols from %s", len(table), path)
        return table


def parse_nm_output(text: str) -> List[Symbol]:
    """Parse ``nm --print-size`` output, keeping sized function symbols.

    Lines look like ``08000400 0000002c T main``.  The Thumb bit is cleared
    from addresses so sampled PCs land inside the right range.
    """

    symbols: List[Symbol] = []
    for line in text.splitlines():
        parts = line.strip().split(None, 3)
        if len(parts) < 4 or parts[2] not in _FUNCTION_TYPES:
            continue
        try:
            address = int(parts[0], 16) & ~1
            size = int(parts[1], 16)
        except ValueError:
            continue
        if size <= 0:
            continue
        symbols.append(Symbol(parts[3], address, address + size))
    return symbols


@dataclass(frozen=True)
class HistogramRow:
    label: str
    count: int
    percentage: float


@dataclass(frozen=True)
class HistogramReport:
    rows: List[HistogramRow]
    total: int

    @property
    def buckets(self) -> int:
        return len(self.rows)


class PcSampler:
    """Count PC samples per function.

    Without a resolver, samples are bucketed by raw address.
    """

    def __init__(self, resolver: Optional[SymbolResolver] = None, anomalies: Optional[AnomalyCounter] = None) -> None:
        self.resolver = resolver
        self.anomalies = anomalies if anomalies is not None else AnomalyCounter()
        self.sleep = 0
        self.total = 0
        # keyed by label; insertion order doubles as first-seen order for ties
        self._counts: Dict[str, int] = {}

    def _bucket(self, address: int) -> str:
        if self.resolver is None:
            return f"0x{address:08x}"
        symbol = self.resolver.resolve(address)
        if symbol is None:
            LOGGER.debug("unresolved PC 0x%08x", address)
            self.anomalies.record(UNRESOLVED_PC)
            return UNRESOLVED_LABEL
        # same-named local functions share one bucket
        return symbol.name

    def add(self, sample: PcSample) -> None:
        self.total += 1
        if sample.address is None:
            self.sleep += 1
            return
        label = self._bucket(sample.address)
        self._counts[label] = self._counts.get(label, 0) + 1

    def feed(self, packets: Iterable[DecodedPacket]) -> None:
        for item in packets:
            if isinstance(item.packet, PcSample):
                self.add(item.packet)

    def counts(self) -> Dict[str, int]:
        merged = {SLEEP_LABEL: self.sleep}
        merged.update(self._counts)
        return merged

    def _percent(self, count: int) -> float:
        if not self.total:
            return 0.0
        return 100.0 * count / self.total

    def report(self) -> HistogramReport:
        """Sleep first, then buckets by descending count (ties in first-seen order)."""

        rows = [HistogramRow(SLEEP_LABEL, self.sleep, self._percent(self.sleep))]
        ranking = sorted(self._counts.items(), key=lambda entry: -entry[1])
        for label, count in ranking:
            rows.append(HistogramRow(label, count, self._percent(count)))
        return HistogramReport(rows, self.total)
