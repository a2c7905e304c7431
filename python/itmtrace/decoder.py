"""ITM packet decoder.

The decoder is a forward-only scan driven by the header byte of each packet.
:func:`decode_packet` is stateless: given a buffer and a position it returns
the packet found there and its length, or ``None`` when the buffer ends in
the middle of a packet.  :func:`iter_packets` layers a pull-based generator
over any iterable of byte chunks so captures of any size decode in bounded
memory, whether they come from a file, a pipe or a growing log.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import BinaryIO, Callable, Iterable, Iterator, List, Optional, Tuple, Union

from .anomalies import UNKNOWN_HEADER, AnomalyCounter, ByteSourceError
from .packets import (
    HW_EXCEPTION_TRACE,
    HW_PC_SAMPLE,
    OVERFLOW_HEADER,
    PAYLOAD_SIZES,
    SYNC_TRAILER,
    SYNC_ZERO_BYTES,
    DecodedPacket,
    ExceptionFunction,
    ExceptionTrace,
    Instrumentation,
    LocalTimestamp,
    Overflow,
    Packet,
    PcSample,
    Synchronization,
    TimeContext,
    Unknown,
)

LOGGER = logging.getLogger("itmtrace.decoder")

Buffer = Union[bytes, bytearray, memoryview]

# (value, bytes used) or None when the payload is cut short; -1 bytes marks
# a payload whose continuation bit never clears.
_Continuation = Optional[Tuple[int, int]]


@dataclass
class DecoderConfig:
    chunk_size: int = 4096
    follow: bool = False
    poll_interval: float = 0.1


def _read_continuation(data: Buffer, start: int, max_bytes: int) -> _Continuation:
    value = 0
    for index in range(max_bytes):
        if start + index >= len(data):
            return None
        byte = data[start + index]
        value |= (byte & 0x7F) << (7 * index)
        if not byte & 0x80:
            return value, index + 1
    return value, -1


def _malformed(data: Buffer, pos: int, length: int = 1) -> Tuple[Packet, int]:
    return Unknown(bytes(data[pos:pos + length]), malformed=True), length


def _decode_zero_run(data: Buffer, pos: int) -> Optional[Tuple[Packet, int]]:
    end = pos
    while end < len(data) and data[end] == 0:
        end += 1
    if end >= len(data):
        return None
    zeros = end - pos
    if zeros >= SYNC_ZERO_BYTES and data[end] == SYNC_TRAILER:
        return Synchronization(zeros), zeros + 1
    return _malformed(data, pos, zeros)


def _decode_local_timestamp(data: Buffer, pos: int, header: int) -> Optional[Tuple[Packet, int]]:
    if not header & 0x80:
        # single byte form, 0b0DDD0000 with DDD in 1..6
        return LocalTimestamp((header >> 4) & 0x07, TimeContext.SYNC, 1), 1
    found = _read_continuation(data, pos + 1, 4)
    if found is None:
        return None
    value, used = found
    if used < 0:
        return _malformed(data, pos)
    context = TimeContext((header >> 4) & 0x03)
    return LocalTimestamp(value, context, 1 + used), 1 + used


def _decode_skipped(data: Buffer, pos: int, max_payload: int) -> Optional[Tuple[Packet, int]]:
    found = _read_continuation(data, pos + 1, max_payload)
    if found is None:
        return None
    _, used = found
    if used < 0:
        return _malformed(data, pos)
    return Unknown(bytes(data[pos:pos + 1 + used])), 1 + used


def _decode_hardware(data: Buffer, pos: int, header: int, payload: bytes) -> Tuple[Packet, int]:
    length = 1 + len(payload)
    source_id = header >> 3
    if source_id == HW_EXCEPTION_TRACE:
        if len(payload) != 2:
            return _malformed(data, pos)
        function = (payload[1] >> 4) & 0x03
        if function == 0:
            return _malformed(data, pos, length)
        number = payload[0] | ((payload[1] & 0x01) << 8)
        return ExceptionTrace(ExceptionFunction(function), number), length
    if source_id == HW_PC_SAMPLE:
        if len(payload) == 4:
            address = int.from_bytes(payload, "little")
            return PcSample(address or None), length
        if len(payload) == 1 and payload[0] == 0:
            return PcSample(None), length
        return _malformed(data, pos)
    # event counters, data trace and anything newer: length is all we need
    return Unknown(bytes(data[pos:pos + length])), length


def _decode_source(data: Buffer, pos: int, header: int) -> Optional[Tuple[Packet, int]]:
    size = PAYLOAD_SIZES[header & 0x03]
    if pos + 1 + size > len(data):
        return None
    payload = bytes(data[pos + 1:pos + 1 + size])
    if header & 0x04:
        return _decode_hardware(data, pos, header, payload)
    return Instrumentation(header >> 3, payload), 1 + size


def decode_packet(data: Buffer, pos: int = 0) -> Optional[Tuple[Packet, int]]:
    """Decode the packet starting at ``data[pos]``.

    Returns ``(packet, length)``, or ``None`` if ``data`` ends before the
    packet is complete.  Headers that match no packet class decode as a
    malformed :class:`Unknown` of the shortest plausible length so the scan
    can carry on with the next byte.
    """

    if pos >= len(data):
        return None
    header = data[pos]
    if header == 0:
        return _decode_zero_run(data, pos)
    if header == OVERFLOW_HEADER:
        return Overflow(), 1
    if header & 0x03:
        return _decode_source(data, pos, header)
    if header & 0x0F == 0:
        return _decode_local_timestamp(data, pos, header)
    if header & 0xDF == 0x94:
        # global timestamp, GTS2 carries up to 6 payload bytes
        return _decode_skipped(data, pos, 6)
    if header & 0x08:
        if header & 0x80:
            return _decode_skipped(data, pos, 4)
        return Unknown(bytes(data[pos:pos + 1])), 1
    return _malformed(data, pos)


def _guarded(chunks: Iterable[bytes]) -> Iterator[bytes]:
    iterator = iter(chunks)
    while True:
        try:
            chunk = next(iterator)
        except StopIteration:
            return
        except OSError as exc:
            raise ByteSourceError(f"byte source failed: {exc}") from exc
        yield chunk


def iter_packets(
    chunks: Iterable[bytes],
    anomalies: Optional[AnomalyCounter] = None,
) -> Iterator[DecodedPacket]:
    """Lazily decode packets from an iterable of byte chunks.

    Packets may straddle chunk boundaries.  A partial packet left over when
    the source is exhausted is discarded.
    """

    buffer = bytearray()
    base = 0
    for chunk in _guarded(chunks):
        if not chunk:
            continue
        buffer += chunk
        pos = 0
        while True:
            result = decode_packet(buffer, pos)
            if result is None:
                break
            packet, size = result
            if isinstance(packet, Unknown):
                if packet.malformed:
                    LOGGER.warning("unrecognised header 0x%02x at offset %d", packet.header, base + pos)
                    if anomalies is not None:
                        anomalies.record(UNKNOWN_HEADER)
                else:
                    LOGGER.debug("skipping packet with header 0x%02x at offset %d", packet.header, base + pos)
            yield DecodedPacket(packet, base + pos, size)
            pos += size
        del buffer[:pos]
        base += pos
    if buffer:
        LOGGER.debug("discarding %d trailing byte(s) of a partial packet", len(buffer))


def decode_bytes(data: bytes, anomalies: Optional[AnomalyCounter] = None) -> List[DecodedPacket]:
    """Decode a complete in-memory capture."""

    return list(iter_packets([data], anomalies))


def read_chunks(
    stream: BinaryIO,
    config: Optional[DecoderConfig] = None,
    *,
    sleep: Callable[[float], None] = time.sleep,
) -> Iterator[bytes]:
    """Yield chunks read from ``stream``.

    In follow mode an empty read does not end the sequence; the stream is
    polled again after ``poll_interval`` seconds so appended data is picked
    up, like ``tail -f``.
    """

    cfg = config or DecoderConfig()
    read = getattr(stream, "read1", stream.read)
    while True:
        chunk = read(cfg.chunk_size)
        if chunk:
            yield chunk
            continue
        if not cfg.follow:
            return
        sleep(cfg.poll_interval)


def decode_stream(
    stream: BinaryIO,
    config: Optional[DecoderConfig] = None,
    anomalies: Optional[AnomalyCounter] = None,
) -> Iterator[DecodedPacket]:
    return iter_packets(read_chunks(stream, config), anomalies)
