"""ITM packet model and encoder.

Every packet the decoder produces is one of the frozen dataclasses below.
The set is closed: consumers dispatch on ``packet.kind`` and new packet
kinds are added by extending :class:`PacketKind` together with a new
dataclass, never by subclassing an existing one.

Header layout reference (first byte of every packet)::

    0b00000000          part of a synchronization packet (>= 47 zero bits, then a 1)
    0b01110000          overflow
    0bCDDD0000          local timestamp (C=1: continuation payload follows)
    0bCDDD1S00          extension (skipped)
    0b10T10100          global timestamp (skipped)
    0bAAAAA0SS          instrumentation, port AAAAA, SS = 1/2/4 byte payload
    0bAAAAA1SS          hardware source, AAAAA selects the packet type
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum, IntEnum
from typing import ClassVar, Optional, Union

SYNC_ZERO_BYTES = 5
SYNC_TRAILER = 0x80
OVERFLOW_HEADER = 0x70
EXCEPTION_TRACE_HEADER = 0x0E
PC_SAMPLE_HEADER = 0x17
PC_SLEEP_HEADER = 0x15

# hardware source discriminator ids (header >> 3)
HW_EXCEPTION_TRACE = 1
HW_PC_SAMPLE = 2

SIZE_CLASSES = {1: 0b01, 2: 0b10, 4: 0b11}
PAYLOAD_SIZES = (0, 1, 2, 4)

# exception numbers 0-15 are architectural; external interrupts start at 16
EXTERNAL_IRQ_BASE = 16

CORE_EXCEPTIONS = {
    0: "Thread",
    1: "Reset",
    2: "NMI",
    3: "HardFault",
    4: "MemManage",
    5: "BusFault",
    6: "UsageFault",
    11: "SVCall",
    12: "DebugMonitor",
    14: "PendSV",
    15: "SysTick",
}


class PacketKind(Enum):
    SYNCHRONIZATION = "sync"
    OVERFLOW = "overflow"
    LOCAL_TIMESTAMP = "local_timestamp"
    EXCEPTION_TRACE = "exception_trace"
    PC_SAMPLE = "pc_sample"
    INSTRUMENTATION = "instrumentation"
    UNKNOWN = "unknown"


class ExceptionFunction(IntEnum):
    """Function field of an exception trace packet."""

    ENTER = 1
    EXIT = 2
    RETURN = 3


class TimeContext(IntEnum):
    """TC field of a local timestamp packet."""

    SYNC = 0
    TIMESTAMP_DELAYED = 1
    EVENT_DELAYED = 2
    BOTH_DELAYED = 3


def exception_name(number: int) -> str:
    """Return the display name for an exception number."""

    if number in CORE_EXCEPTIONS:
        return CORE_EXCEPTIONS[number]
    if number >= EXTERNAL_IRQ_BASE:
        return f"IRQ({number - EXTERNAL_IRQ_BASE})"
    return f"Reserved({number})"


@dataclass(frozen=True)
class Synchronization:
    kind: ClassVar[PacketKind] = PacketKind.SYNCHRONIZATION
    zero_bytes: int = SYNC_ZERO_BYTES


@dataclass(frozen=True)
class Overflow:
    kind: ClassVar[PacketKind] = PacketKind.OVERFLOW


@dataclass(frozen=True)
class LocalTimestamp:
    kind: ClassVar[PacketKind] = PacketKind.LOCAL_TIMESTAMP
    delta: int
    time_context: TimeContext = TimeContext.SYNC
    encoded_length: int = 1

    @property
    def precise(self) -> bool:
        return self.time_context == TimeContext.SYNC


@dataclass(frozen=True)
class ExceptionTrace:
    kind: ClassVar[PacketKind] = PacketKind.EXCEPTION_TRACE
    function: ExceptionFunction
    number: int

    @property
    def name(self) -> str:
        return exception_name(self.number)


@dataclass(frozen=True)
class PcSample:
    kind: ClassVar[PacketKind] = PacketKind.PC_SAMPLE
    address: Optional[int]

    @property
    def sleep(self) -> bool:
        return self.address is None


@dataclass(frozen=True)
class Instrumentation:
    kind: ClassVar[PacketKind] = PacketKind.INSTRUMENTATION
    port: int
    payload: bytes


@dataclass(frozen=True)
class Unknown:
    """A packet the tools do not act on.

    ``malformed`` is False for well-formed packets of kinds we merely skip
    (DWT event counters, data trace, global timestamps, extensions) and True
    for headers that match no packet class at all.
    """

    kind: ClassVar[PacketKind] = PacketKind.UNKNOWN
    data: bytes
    malformed: bool = False

    @property
    def header(self) -> int:
        return self.data[0] if self.data else 0


Packet = Union[
    Synchronization,
    Overflow,
    LocalTimestamp,
    ExceptionTrace,
    PcSample,
    Instrumentation,
    Unknown,
]


@dataclass(frozen=True)
class DecodedPacket:
    """A packet together with its position in the byte stream."""

    packet: Packet
    offset: int
    size: int

    @property
    def kind(self) -> PacketKind:
        return self.packet.kind


def _continuation_bytes(value: int, max_bytes: int) -> bytes:
    out = bytearray()
    for index in range(max_bytes):
        chunk = value & 0x7F
        value >>= 7
        if value and index < max_bytes - 1:
            out.append(chunk | 0x80)
            continue
        out.append(chunk)
        break
    if value:
        raise ValueError("value does not fit in continuation payload")
    return bytes(out)


def encode_packet(packet: Packet) -> bytes:
    """Serialise ``packet`` to its wire encoding.

    Used to build captures for tests and replay; the decoder is the inverse.
    ``Unknown`` packets are emitted verbatim.
    """

    if isinstance(packet, Synchronization):
        return b"\x00" * max(SYNC_ZERO_BYTES, packet.zero_bytes) + bytes([SYNC_TRAILER])
    if isinstance(packet, Overflow):
        return bytes([OVERFLOW_HEADER])
    if isinstance(packet, LocalTimestamp):
        if packet.delta < 0:
            raise ValueError("timestamp delta must be non-negative")
        if packet.encoded_length == 1:
            if not 1 <= packet.delta <= 6 or packet.time_context != TimeContext.SYNC:
                raise ValueError("single byte timestamps carry a delta of 1..6 in sync")
            return bytes([packet.delta << 4])
        header = 0xC0 | (int(packet.time_context) << 4)
        payload = _continuation_bytes(packet.delta, 4)
        return bytes([header]) + payload
    if isinstance(packet, ExceptionTrace):
        if not 0 <= packet.number <= 0x1FF:
            raise ValueError(f"exception number out of range: {packet.number}")
        low = packet.number & 0xFF
        high = ((packet.number >> 8) & 0x01) | (int(packet.function) << 4)
        return bytes([EXCEPTION_TRACE_HEADER, low, high])
    if isinstance(packet, PcSample):
        if packet.address is None:
            return bytes([PC_SLEEP_HEADER, 0])
        return bytes([PC_SAMPLE_HEADER]) + (packet.address & 0xFFFFFFFF).to_bytes(4, "little")
    if isinstance(packet, Instrumentation):
        size_class = SIZE_CLASSES.get(len(packet.payload))
        if size_class is None:
            raise ValueError("instrumentation payload must be 1, 2 or 4 bytes")
        if not 0 <= packet.port <= 31:
            raise ValueError(f"stimulus port out of range: {packet.port}")
        return bytes([(packet.port << 3) | size_class]) + bytes(packet.payload)
    if isinstance(packet, Unknown):
        return bytes(packet.data)
    raise TypeError(f"cannot encode {packet!r}")


def encode_instrumentation(port: int, data: bytes) -> bytes:
    """Encode ``data`` for ``port`` the way firmware writes it: 4-byte words, then the tail."""

    out = bytearray()
    index = 0
    while index < len(data):
        remaining = len(data) - index
        width = 4 if remaining >= 4 else (2 if remaining >= 2 else 1)
        out += encode_packet(Instrumentation(port, bytes(data[index:index + width])))
        index += width
    return bytes(out)
