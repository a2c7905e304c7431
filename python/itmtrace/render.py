"""Output helpers for the itmtrace tools."""

from __future__ import annotations

import json
from enum import Enum
from typing import Any, Dict, List, Mapping

from tabulate import tabulate

from .excevt import TimelineEvent
from .packets import DecodedPacket, ExceptionFunction
from .pcsample import HistogramReport
from .timestamps import ClockState, Precision

TIMELINE_HEADER = " TIMESTAMP   EXCEPTION"
HISTOGRAM_HEADER = "    % FUNCTION"

_ARROWS = {
    ExceptionFunction.ENTER: "→",
    ExceptionFunction.EXIT: "←",
    ExceptionFunction.RETURN: "↓",
}

_PRECISION_MARKS = {
    Precision.EXACT: "=",
    Precision.LOWER_BOUND: "<",
    Precision.RESET_BY_LOSS: "!",
}


def json_dump(payload: Any) -> str:
    return json.dumps(payload, indent=2, sort_keys=True)


def format_clock(state: ClockState) -> str:
    if state.stale:
        return " ?????????"
    return f"{_PRECISION_MARKS[state.precision]}{state.cycles:09d}"


def format_event(event: TimelineEvent) -> str:
    line = f"{format_clock(event.time)} {_ARROWS[event.kind]} {event.name}"
    if event.anomaly:
        line += f"  [{event.anomaly}]"
    return line


def event_to_dict(event: TimelineEvent) -> Dict[str, Any]:
    return {
        "cycles": event.time.cycles if event.time.known else None,
        "precision": event.time.precision.value,
        "kind": event.kind.name.lower(),
        "number": event.number,
        "name": event.name,
        "anomaly": event.anomaly,
    }


def format_histogram(report: HistogramReport) -> List[str]:
    lines = [HISTOGRAM_HEADER]
    for row in report.rows:
        lines.append(f"{row.percentage:5.2f} {row.label}")
    lines.append("-----")
    lines.append(f" 100% {report.total} samples, {report.buckets} buckets")
    return lines


def histogram_table(report: HistogramReport) -> str:
    rows = [(row.percentage, row.label, row.count) for row in report.rows]
    rows.append((100.0, "total", report.total))
    return tabulate(rows, headers=["%", "function", "samples"], tablefmt="github", floatfmt=".2f")


def report_to_dict(report: HistogramReport) -> Dict[str, Any]:
    return {
        "rows": [
            {"label": row.label, "count": row.count, "percentage": round(row.percentage, 2)}
            for row in report.rows
        ],
        "buckets": report.buckets,
        "total": report.total,
    }


def format_packet(item: DecodedPacket) -> str:
    return f"{item.offset:08x} {item.packet!r}"


def packet_to_dict(item: DecodedPacket) -> Mapping[str, Any]:
    packet = item.packet
    fields: Dict[str, Any] = {"offset": item.offset, "size": item.size, "kind": packet.kind.value}
    for name, value in vars(packet).items():
        if isinstance(value, bytes):
            value = value.hex()
        elif isinstance(value, Enum):
            value = value.name.lower()
        fields[name] = value
    return fields
