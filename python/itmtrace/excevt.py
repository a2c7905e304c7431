"""Exception nesting reconstruction from exception trace packets."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Iterable, Iterator, List, Optional

from .anomalies import EXCEPTION_MISMATCH, AnomalyCounter
from .packets import ExceptionFunction, ExceptionTrace, exception_name
from .timestamps import Annotated, ClockState

LOGGER = logging.getLogger("itmtrace.excevt")

THREAD_MODE = 0


@dataclass(frozen=True)
class InterruptFrame:
    number: int
    entered_at: ClockState


@dataclass(frozen=True)
class TimelineEvent:
    time: ClockState
    kind: ExceptionFunction
    number: int
    anomaly: Optional[str] = None

    @property
    def name(self) -> str:
        return exception_name(self.number)


class ExceptionTracer:
    """Track the interrupt stack and emit one timeline event per exception packet.

    The top of the stack is the handler currently executing; everything below
    it has been preempted.  Inconsistent packets never abort the trace: the
    stack is updated in arrival order and the event carries an ``anomaly``
    note instead.
    """

    def __init__(self, anomalies: Optional[AnomalyCounter] = None) -> None:
        self.anomalies = anomalies if anomalies is not None else AnomalyCounter()
        self.stack: List[InterruptFrame] = []
        self.enters = 0
        self.exits = 0

    @property
    def depth(self) -> int:
        return len(self.stack)

    @property
    def current(self) -> int:
        """Exception number of the running context, ``0`` in thread mode."""

        return self.stack[-1].number if self.stack else THREAD_MODE

    def _mismatch(self, message: str) -> str:
        LOGGER.warning(message)
        self.anomalies.record(EXCEPTION_MISMATCH)
        return message

    def step(self, trace: ExceptionTrace, time: ClockState) -> TimelineEvent:
        number = trace.number
        anomaly = None
        if trace.function is ExceptionFunction.ENTER:
            self.stack.append(InterruptFrame(number, time))
            self.enters += 1
        elif trace.function is ExceptionFunction.EXIT:
            self.exits += 1
            if not self.stack:
                anomaly = self._mismatch(f"exit from {exception_name(number)} with no active handler")
            else:
                frame = self.stack.pop()
                if frame.number != number:
                    anomaly = self._mismatch(
                        f"exit from {exception_name(number)} while {exception_name(frame.number)} was active"
                    )
        else:
            if self.current != number:
                anomaly = self._mismatch(
                    f"return to {exception_name(number)} while {exception_name(self.current)} is current"
                )
        return TimelineEvent(time, trace.function, number, anomaly)

    def feed(self, annotated: Iterable[Annotated]) -> Iterator[TimelineEvent]:
        """Consume ``(packet, clock)`` pairs, ignoring everything but exception traces."""

        for item, clock in annotated:
            packet = item.packet
            if isinstance(packet, ExceptionTrace):
                yield self.step(packet, clock)
