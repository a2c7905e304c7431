"""Running clock estimate over a decoded ITM packet stream.

ITM local timestamps are deltas that the hardware emits *after* the packets
they time, and only when it gets round to it.  The tracker therefore holds
back the packets seen since the previous timestamp and releases them once the
covering timestamp arrives: the last one gets the new clock value exactly,
the earlier ones only know they happened no later than that.

Overflow packets, synchronization packets and malformed headers all mean
timing information may have been lost.  Each starts a new epoch: the clock
restarts at zero with precision ``RESET_BY_LOSS`` until a timestamp anchors
it again.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Iterable, Iterator, List, Optional, Tuple

from .anomalies import OVERFLOW, RESYNC, AnomalyCounter
from .packets import DecodedPacket, LocalTimestamp, PacketKind, Unknown

LOGGER = logging.getLogger("itmtrace.timestamps")


class Precision(Enum):
    EXACT = "exact"
    LOWER_BOUND = "lower_bound"
    RESET_BY_LOSS = "reset_by_loss"


@dataclass(frozen=True)
class ClockState:
    """Clock value attached to one packet.

    ``stale`` is set while no timestamp has been seen since the epoch began;
    such a state carries no usable time and renders as unknown.
    """

    cycles: int
    precision: Precision
    stale: bool = False

    @property
    def known(self) -> bool:
        return not self.stale


UNKNOWN_TIME = ClockState(0, Precision.RESET_BY_LOSS, stale=True)

Annotated = Tuple[DecodedPacket, ClockState]


@dataclass
class TrackerConfig:
    expect_timestamps: bool = True


class TimestampTracker:
    """Annotate each packet with the :class:`ClockState` valid when it was emitted."""

    def __init__(self, config: Optional[TrackerConfig] = None, anomalies: Optional[AnomalyCounter] = None) -> None:
        self.config = config or TrackerConfig()
        self.anomalies = anomalies if anomalies is not None else AnomalyCounter()
        self.cycles = 0
        self.anchored = False
        self.epoch = 0
        self._expecting = self.config.expect_timestamps
        self._pending: List[DecodedPacket] = []
        self._seen_data = False

    @property
    def pending(self) -> int:
        return len(self._pending)

    def _current(self, precision: Precision) -> ClockState:
        return ClockState(self.cycles, precision)

    def _release_unknown(self) -> List[Annotated]:
        released = [(item, UNKNOWN_TIME) for item in self._pending]
        self._pending.clear()
        return released

    def _new_epoch(self, reason: str) -> List[Annotated]:
        released = self._release_unknown()
        if self.anchored:
            LOGGER.info("clock reset (%s) at %d cycles", reason, self.cycles)
        self.cycles = 0
        self.anchored = False
        self.epoch += 1
        return released

    def _on_timestamp(self, item: DecodedPacket, stamp: LocalTimestamp) -> List[Annotated]:
        if not self._expecting:
            LOGGER.info("timestamp seen at offset %d; timing packets from here on", item.offset)
            self._expecting = True
        batch = self._pending
        self._pending = []
        released: List[Annotated] = []
        if not self.anchored:
            # the first delta of an epoch is measured from an unknown origin
            self.anchored = True
            self.cycles = 0
            state = self._current(Precision.RESET_BY_LOSS)
            released.extend((pending, state) for pending in batch)
            released.append((item, state))
            return released
        self.cycles += stamp.delta
        if batch:
            bound = self._current(Precision.LOWER_BOUND)
            released.extend((pending, bound) for pending in batch[:-1])
            last = self._current(Precision.EXACT if stamp.precise else Precision.LOWER_BOUND)
            released.append((batch[-1], last))
        released.append((item, self._current(Precision.EXACT)))
        return released

    def step(self, item: DecodedPacket) -> List[Annotated]:
        """Feed one packet; return the packets whose clock state is now settled."""

        packet = item.packet
        kind = packet.kind
        if kind is PacketKind.LOCAL_TIMESTAMP:
            return self._on_timestamp(item, packet)
        if kind is PacketKind.SYNCHRONIZATION:
            if self._seen_data:
                LOGGER.warning("resynchronized at offset %d", item.offset)
                self.anomalies.record(RESYNC)
            return self._new_epoch("sync") + [(item, UNKNOWN_TIME)]
        if kind is PacketKind.OVERFLOW:
            LOGGER.warning("overflow at offset %d; trace data was dropped", item.offset)
            self.anomalies.record(OVERFLOW)
            return self._new_epoch("overflow") + [(item, UNKNOWN_TIME)]
        self._seen_data = True
        if isinstance(packet, Unknown) and packet.malformed:
            return self._new_epoch("desync") + [(item, UNKNOWN_TIME)]
        if not self._expecting:
            return [(item, UNKNOWN_TIME)]
        self._pending.append(item)
        return []

    def finish(self) -> List[Annotated]:
        """Release held-back packets at end of input; their time stays unknown."""

        return self._release_unknown()

    def track(self, packets: Iterable[DecodedPacket]) -> Iterator[Annotated]:
        for item in packets:
            yield from self.step(item)
        yield from self.finish()
