"""Instrumentation port demultiplexer.

Each stimulus port gets its own append-only sink, created the first time a
packet for that port shows up.  Payload bytes are copied verbatim; nothing
here looks at what they contain.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import BinaryIO, Callable, Dict, Iterable, List, Optional, Protocol

from .packets import DecodedPacket, Instrumentation

LOGGER = logging.getLogger("itmtrace.demux")


class PortSink(Protocol):
    def write(self, data: bytes) -> None:
        ...

    def flush(self) -> None:
        ...

    def close(self) -> None:
        ...


SinkFactory = Callable[[int], PortSink]


@dataclass
class DemuxConfig:
    streaming: bool = False
    output_dir: Path = field(default_factory=lambda: Path("."))
    suffix: str = ".stim"


class FileSink:
    """Port sink backed by a binary file."""

    def __init__(self, path: Path) -> None:
        self.path = path
        self._fh: Optional[BinaryIO] = open(path, "wb")

    def write(self, data: bytes) -> None:
        if self._fh is None:
            raise ValueError(f"sink {self.path} is closed")
        self._fh.write(data)

    def flush(self) -> None:
        if self._fh is not None:
            self._fh.flush()

    def close(self) -> None:
        if self._fh is not None:
            self._fh.close()
            self._fh = None


def file_sink_factory(config: DemuxConfig) -> SinkFactory:
    """Return a factory writing port ``n`` to ``<output_dir>/<n><suffix>``."""

    def _open(port: int) -> PortSink:
        path = Path(config.output_dir) / f"{port}{config.suffix}"
        LOGGER.info("port %d -> %s", port, path)
        return FileSink(path)

    return _open


class PortDemux:
    """Fan instrumentation payloads out to per-port sinks.

    In batch mode payloads accumulate in memory and reach the sinks when the
    demultiplexer is finished.  In streaming mode every payload is written and
    flushed as soon as it arrives, so an interrupted run keeps everything
    received so far.
    """

    def __init__(self, sink_factory: SinkFactory, *, streaming: bool = False) -> None:
        self.sink_factory = sink_factory
        self.streaming = streaming
        self._sinks: Dict[int, PortSink] = {}
        self._buffers: Dict[int, bytearray] = {}
        self._closed = False

    @property
    def ports(self) -> List[int]:
        return sorted(self._sinks)

    def _sink(self, port: int) -> PortSink:
        sink = self._sinks.get(port)
        if sink is None:
            LOGGER.debug("new port %d", port)
            sink = self.sink_factory(port)
            self._sinks[port] = sink
            self._buffers[port] = bytearray()
        return sink

    def push(self, port: int, payload: bytes) -> None:
        if self._closed:
            raise ValueError("demultiplexer is closed")
        sink = self._sink(port)
        if self.streaming:
            sink.write(bytes(payload))
            sink.flush()
        else:
            self._buffers[port] += payload

    def feed(self, packets: Iterable[DecodedPacket]) -> None:
        for item in packets:
            packet = item.packet
            if isinstance(packet, Instrumentation):
                self.push(packet.port, packet.payload)

    def close(self) -> None:
        """Write out buffered payloads and close every sink.

        Called at end of input and on cancellation alike; only complete
        payloads ever reach the buffers, so there is nothing partial to drop.
        """

        if self._closed:
            return
        self._closed = True
        errors: List[Exception] = []
        for port, sink in self._sinks.items():
            pending = self._buffers.get(port)
            try:
                if pending:
                    sink.write(bytes(pending))
                    sink.flush()
                    pending.clear()
            except Exception as exc:
                LOGGER.error("writing port %d failed: %s", port, exc)
                errors.append(exc)
            try:
                sink.close()
            except Exception as exc:
                LOGGER.error("closing port %d failed: %s", port, exc)
                errors.append(exc)
        if errors:
            # every sink has had its chance; report the first failure
            raise errors[0]

    def __enter__(self) -> "PortDemux":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()
