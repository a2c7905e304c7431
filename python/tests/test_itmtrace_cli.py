import json

from itmtrace import cli
from itmtrace.packets import Instrumentation, PcSample, Unknown, encode_instrumentation
from trace_builders import capture, enter, leave, nesting_trace


def test_excevt_prints_the_timeline(capture_file, capsys):
    path = capture_file(capture(*nesting_trace()))
    assert cli.main(["excevt", "-t", str(path)]) == 0
    lines = capsys.readouterr().out.splitlines()
    assert lines == [
        " TIMESTAMP   EXCEPTION",
        "!000000000 → IRQ(6)",
        "=000000020 → IRQ(8)",
        "=000000548 ← IRQ(8)",
        "=000000551 → IRQ(7)",
        "=000000819 ← IRQ(7)",
        "=000000826 ↓ IRQ(6)",
    ]


def test_excevt_without_timestamps_prints_unknown_times(capture_file, capsys):
    path = capture_file(capture(*nesting_trace(with_timestamps=False)))
    assert cli.main(["excevt", str(path)]) == 0
    lines = capsys.readouterr().out.splitlines()
    assert lines[1] == " ????????? → IRQ(6)"
    assert len(lines) == 7


def test_excevt_json_marks_mismatches(capture_file, capsys):
    path = capture_file(capture(enter(22), leave(23)))
    assert cli.main(["excevt", "--json", str(path)]) == 0
    events = json.loads(capsys.readouterr().out)
    assert [event["kind"] for event in events] == ["enter", "exit"]
    assert events[0]["cycles"] is None
    assert events[1]["anomaly"]


def test_strict_mode_turns_anomalies_into_exit_status(capture_file, capsys):
    path = capture_file(capture(enter(22), leave(23)))
    assert cli.main(["excevt", "--strict", str(path)]) == cli.EXIT_ANOMALIES


def test_itm_decode_lists_packets(capture_file, capsys):
    path = capture_file(capture(enter(22), Unknown(b"\x04", malformed=True), Instrumentation(1, b"hi")))
    assert cli.main(["itm-decode", "--json", str(path)]) == 0
    rows = [json.loads(line) for line in capsys.readouterr().out.splitlines()]
    assert [row["kind"] for row in rows] == ["exception_trace", "unknown", "instrumentation"]
    assert rows[0]["function"] == "enter"
    assert rows[1]["malformed"] is True
    assert rows[2]["payload"] == "6869"


def test_pcsampl_without_elf(capture_file, capsys):
    path = capture_file(capture(PcSample(None), PcSample(None), PcSample(None), PcSample(0x08000400)))
    assert cli.main(["pcsampl", str(path)]) == 0
    lines = capsys.readouterr().out.splitlines()
    assert lines == [
        "    % FUNCTION",
        "75.00 *SLEEP*",
        "25.00 0x08000400",
        "-----",
        " 100% 4 samples, 2 buckets",
    ]


def test_pcsampl_table_output(capture_file, capsys):
    path = capture_file(capture(PcSample(None), PcSample(0x08000400)))
    assert cli.main(["pcsampl", "--table", str(path)]) == 0
    out = capsys.readouterr().out
    assert "| function" in out
    assert "*SLEEP*" in out


def test_port_demux_writes_files(capture_file, tmp_path):
    data = encode_instrumentation(0, b"Hell") + encode_instrumentation(1, b"fox") + encode_instrumentation(0, b"o")
    path = capture_file(data)
    out_dir = tmp_path / "ports"
    assert cli.main(["port-demux", "-o", str(out_dir), str(path)]) == 0
    assert (out_dir / "0.stim").read_bytes() == b"Hello"
    assert (out_dir / "1.stim").read_bytes() == b"fox"


def test_missing_input_is_fatal(tmp_path, capsys):
    assert cli.main(["itm-decode", str(tmp_path / "missing.bin")]) == cli.EXIT_FATAL
    assert "error:" in capsys.readouterr().err


def test_tool_entry_points_prefix_the_tool(capture_file, capsys):
    path = capture_file(capture(enter(22)))
    assert cli.itm_decode_main([str(path)]) == 0
    assert "ExceptionTrace" in capsys.readouterr().out
