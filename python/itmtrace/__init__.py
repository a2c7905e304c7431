"""
itmtrace - decoding tools for ARM ITM trace captures.

The package turns a raw ITM byte stream into exception timelines, PC
sampling profiles and per-port instrumentation streams.  Each stage lives in
its own module:

    packets.py     → packet model, exception names, encoder
    decoder.py     → byte stream to packet sequence
    timestamps.py  → clock estimate and precision per packet
    excevt.py      → interrupt nesting timeline
    pcsample.py    → symbol tables and sample histogram
    demux.py       → per-port byte sinks
    render.py      → text / JSON / table output
    cli.py         → itm-decode, excevt, pcsampl and port-demux tools
"""

from .anomalies import AnomalyCounter, ByteSourceError, ItmTraceError, SymbolTableError  # noqa: F401
from .packets import (  # noqa: F401
    DecodedPacket,
    ExceptionFunction,
    ExceptionTrace,
    Instrumentation,
    LocalTimestamp,
    Overflow,
    PacketKind,
    PcSample,
    Synchronization,
    TimeContext,
    Unknown,
    encode_packet,
    exception_name,
)
from .decoder import DecoderConfig, decode_bytes, decode_packet, decode_stream, iter_packets  # noqa: F401
from .timestamps import ClockState, Precision, TimestampTracker, TrackerConfig  # noqa: F401
from .excevt import ExceptionTracer, InterruptFrame, TimelineEvent  # noqa: F401
from .pcsample import PcSampler, Symbol, SymbolTable, parse_nm_output  # noqa: F401
from .demux import DemuxConfig, FileSink, PortDemux, file_sink_factory  # noqa: F401

__all__ = [
    "AnomalyCounter",
    "ByteSourceError",
    "ItmTraceError",
    "SymbolTableError",
    "DecodedPacket",
    "ExceptionFunction",
    "ExceptionTrace",
    "Instrumentation",
    "LocalTimestamp",
    "Overflow",
    "PacketKind",
    "PcSample",
    "Synchronization",
    "TimeContext",
    "Unknown",
    "encode_packet",
    "exception_name",
    "DecoderConfig",
    "decode_bytes",
    "decode_packet",
    "decode_stream",
    "iter_packets",
    "ClockState",
    "Precision",
    "TimestampTracker",
    "TrackerConfig",
    "ExceptionTracer",
    "InterruptFrame",
    "TimelineEvent",
    "PcSampler",
    "Symbol",
    "SymbolTable",
    "parse_nm_output",
    "DemuxConfig",
    "FileSink",
    "PortDemux",
    "file_sink_factory",
]

__version__ = "0.1.0"
