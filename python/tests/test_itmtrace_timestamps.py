from itmtrace.anomalies import OVERFLOW, RESYNC, AnomalyCounter
from itmtrace.decoder import decode_bytes
from itmtrace.packets import ExceptionTrace, Overflow, PacketKind, Synchronization, TimeContext, Unknown
from itmtrace.timestamps import UNKNOWN_TIME, ClockState, Precision, TimestampTracker, TrackerConfig
from trace_builders import capture, enter, leave, nesting_trace, stamp


def _exception_states(data: bytes, tracker: TimestampTracker = None):
    tracker = tracker or TimestampTracker()
    return [
        (item.packet, clock)
        for item, clock in tracker.track(decode_bytes(data))
        if isinstance(item.packet, ExceptionTrace)
    ]


def test_nesting_trace_clock_sequence():
    states = _exception_states(capture(*nesting_trace()))
    assert [clock.cycles for _, clock in states] == [0, 20, 548, 551, 819, 826]
    assert states[0][1] == ClockState(0, Precision.RESET_BY_LOSS)
    assert all(clock.precision is Precision.EXACT for _, clock in states[1:])
    assert all(clock.known for _, clock in states)


def test_without_timestamps_every_time_is_unknown():
    states = _exception_states(capture(*nesting_trace(with_timestamps=False)))
    assert len(states) == 6
    assert all(clock == UNKNOWN_TIME for _, clock in states)
    assert all(clock.precision is Precision.RESET_BY_LOSS and not clock.known for _, clock in states)


def test_timestamps_disabled_releases_packets_immediately():
    tracker = TimestampTracker(TrackerConfig(expect_timestamps=False))
    items = decode_bytes(capture(enter(22), leave(22)))
    assert tracker.step(items[0]) == [(items[0], UNKNOWN_TIME)]
    assert tracker.pending == 0


def test_batch_before_timestamp_is_lower_bound_except_last():
    data = capture(enter(22), stamp(10), enter(24), leave(24), enter(25), stamp(40))
    states = _exception_states(data)
    assert [clock for _, clock in states[1:]] == [
        ClockState(40, Precision.LOWER_BOUND),
        ClockState(40, Precision.LOWER_BOUND),
        ClockState(40, Precision.EXACT),
    ]


def test_delayed_timestamp_is_only_a_lower_bound():
    data = capture(enter(22), stamp(10), enter(24), stamp(12, TimeContext.EVENT_DELAYED))
    states = _exception_states(data)
    assert states[1][1] == ClockState(12, Precision.LOWER_BOUND)


def test_overflow_starts_a_new_epoch():
    anomalies = AnomalyCounter()
    tracker = TimestampTracker(anomalies=anomalies)
    data = capture(enter(22), stamp(10), enter(24), stamp(50), Overflow(), leave(24), stamp(9), leave(22), stamp(4))
    states = _exception_states(data, tracker)
    assert [clock for _, clock in states] == [
        ClockState(0, Precision.RESET_BY_LOSS),
        ClockState(50, Precision.EXACT),
        ClockState(0, Precision.RESET_BY_LOSS),
        ClockState(4, Precision.EXACT),
    ]
    assert tracker.epoch == 1
    assert anomalies.get(OVERFLOW) == 1


def test_overflow_releases_pending_packets_as_unknown():
    data = capture(enter(22), stamp(10), enter(24), Overflow(), stamp(5))
    states = _exception_states(data)
    assert states[1][1] == UNKNOWN_TIME


def test_synchronization_mid_stream_counts_as_resync():
    anomalies = AnomalyCounter()
    tracker = TimestampTracker(anomalies=anomalies)
    data = capture(Synchronization(), enter(22), stamp(10), Synchronization(), enter(24), stamp(7))
    states = _exception_states(data, tracker)
    assert [clock.precision for _, clock in states] == [Precision.RESET_BY_LOSS, Precision.RESET_BY_LOSS]
    assert anomalies.get(RESYNC) == 1


def test_malformed_header_resets_the_clock():
    data = capture(enter(22), stamp(10), enter(24), stamp(20), Unknown(b"\x04", malformed=True), leave(24), stamp(8))
    states = _exception_states(data)
    assert states[2][1] == ClockState(0, Precision.RESET_BY_LOSS)


def test_clock_is_monotonic_within_an_epoch():
    deltas = [1, 6, 200, 3, 70000, 5, 2**20]
    packets = [enter(16)]
    for delta in deltas:
        packets += [stamp(delta), leave(16), enter(16)]
    tracker = TimestampTracker()
    seen = []
    for item in decode_bytes(capture(*packets)):
        tracker.step(item)
        if item.kind is PacketKind.LOCAL_TIMESTAMP:
            seen.append(tracker.cycles)
    assert seen == sorted(seen)
    assert tracker.epoch == 0
    assert seen[-1] == sum(deltas[1:])


def test_standalone_timestamp_advances_clock():
    data = capture(enter(22), stamp(10), stamp(1_999_999), leave(22), stamp(1))
    states = _exception_states(data)
    assert states[1][1] == ClockState(2_000_000, Precision.EXACT)


def test_long_burst_keeps_the_clock_running():
    burst = [enter(n) for n in range(24, 41)]
    data = capture(enter(22), stamp(10), enter(23), stamp(100), *burst, stamp(5), enter(41), stamp(5))
    tracker = TimestampTracker()
    states = _exception_states(data, tracker)
    assert len(states) == 20
    assert states[1][1] == ClockState(100, Precision.EXACT)
    assert [clock for _, clock in states[2:18]] == [ClockState(105, Precision.LOWER_BOUND)] * 16
    assert states[18][1] == ClockState(105, Precision.EXACT)
    assert states[19][1] == ClockState(110, Precision.EXACT)
    assert tracker.epoch == 0
