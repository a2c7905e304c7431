"""Command line front-end for the itmtrace tools.

Four tools share one decoder::

    itm-decode   dump every packet in a capture
    excevt       exception entry/exit timeline
    pcsampl      PC sampling profile
    port-demux   split instrumentation ports into <port>.stim files

Each is reachable as ``python -m itmtrace <tool>`` or through its own
console script.
"""

from __future__ import annotations

import argparse
import contextlib
import json
import logging
import os
import sys
from pathlib import Path
from typing import BinaryIO, Callable, Dict, Iterator, List, Optional

from .anomalies import AnomalyCounter, ItmTraceError
from .decoder import DecoderConfig, decode_stream
from .demux import DemuxConfig, PortDemux, file_sink_factory
from .excevt import ExceptionTracer
from .pcsample import PcSampler, SymbolTable
from .render import (
    TIMELINE_HEADER,
    event_to_dict,
    format_event,
    format_histogram,
    format_packet,
    histogram_table,
    json_dump,
    packet_to_dict,
    report_to_dict,
)
from .timestamps import TimestampTracker, TrackerConfig

LOG = logging.getLogger("itmtrace.cli")

EXIT_OK = 0
EXIT_FATAL = 1
EXIT_ANOMALIES = 3
EXIT_INTERRUPTED = 130


def _configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.WARNING),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@contextlib.contextmanager
def _open_source(path: Optional[str]) -> Iterator[BinaryIO]:
    if path is None or path == "-":
        yield sys.stdin.buffer
        return
    with open(path, "rb") as fh:
        yield fh


def _decoder_config(args: argparse.Namespace) -> DecoderConfig:
    return DecoderConfig(chunk_size=args.chunk_size, follow=args.follow, poll_interval=args.poll_interval)


def _run_decode(args: argparse.Namespace, anomalies: AnomalyCounter) -> int:
    with _open_source(args.file) as fh:
        for item in decode_stream(fh, _decoder_config(args), anomalies):
            if args.json:
                print(json.dumps(packet_to_dict(item), sort_keys=True), flush=args.follow)
            else:
                print(format_packet(item), flush=args.follow)
    return EXIT_OK


def _run_excevt(args: argparse.Namespace, anomalies: AnomalyCounter) -> int:
    tracker = TimestampTracker(
        TrackerConfig(expect_timestamps=args.timestamp),
        anomalies,
    )
    tracer = ExceptionTracer(anomalies)
    with _open_source(args.file) as fh:
        events = tracer.feed(tracker.track(decode_stream(fh, _decoder_config(args), anomalies)))
        if args.json:
            print(json_dump([event_to_dict(event) for event in events]))
            return EXIT_OK
        print(TIMELINE_HEADER)
        for event in events:
            print(format_event(event), flush=args.follow)
    return EXIT_OK


def _run_pcsampl(args: argparse.Namespace, anomalies: AnomalyCounter) -> int:
    resolver = None
    if args.elf:
        resolver = SymbolTable.from_elf(args.elf, nm=args.nm, demangle=not args.no_demangle)
    sampler = PcSampler(resolver, anomalies)
    with _open_source(args.file) as fh:
        sampler.feed(decode_stream(fh, _decoder_config(args), anomalies))
    report = sampler.report()
    if args.json:
        print(json_dump(report_to_dict(report)))
    elif args.table:
        print(histogram_table(report))
    else:
        print("\n".join(format_histogram(report)))
    return EXIT_OK


def _run_demux(args: argparse.Namespace, anomalies: AnomalyCounter) -> int:
    config = DemuxConfig(streaming=args.stream or args.follow, output_dir=args.output_dir, suffix=args.suffix)
    config.output_dir.mkdir(parents=True, exist_ok=True)
    with _open_source(args.file) as fh, PortDemux(file_sink_factory(config), streaming=config.streaming) as demux:
        demux.feed(decode_stream(fh, _decoder_config(args), anomalies))
        ports = demux.ports
    LOG.info("demultiplexed %d port(s): %s", len(ports), ", ".join(str(port) for port in ports) or "none")
    return EXIT_OK


_TOOLS: Dict[str, Callable[[argparse.Namespace, AnomalyCounter], int]] = {
    "itm-decode": _run_decode,
    "excevt": _run_excevt,
    "pcsampl": _run_pcsampl,
    "port-demux": _run_demux,
}


def _common_options() -> argparse.ArgumentParser:
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument("file", nargs="?", help="ITM binary dump to process; stdin when omitted or '-'")
    common.add_argument("-f", "--follow", action="store_true", help="Process appended data as the file grows")
    common.add_argument("--chunk-size", type=int, default=4096, help="Read size in bytes (default 4096)")
    common.add_argument("--poll-interval", type=float, default=0.1, help="Follow mode poll interval in seconds")
    common.add_argument(
        "--log-level",
        default=os.environ.get("ITMTRACE_LOG", "WARNING"),
        help="Logging level (default WARNING, or $ITMTRACE_LOG)",
    )
    common.add_argument(
        "--strict",
        action="store_true",
        help=f"Exit with status {EXIT_ANOMALIES} if any recoverable anomaly was seen",
    )
    return common


def build_arg_parser() -> argparse.ArgumentParser:
    common = _common_options()
    parser = argparse.ArgumentParser(prog="itmtrace", description="ITM trace decoding tools")
    tools = parser.add_subparsers(dest="tool", required=True)

    decode = tools.add_parser("itm-decode", parents=[common], help="Decode an ITM binary dump into packets")
    decode.add_argument("--json", action="store_true", help="Emit one JSON object per packet")

    excevt = tools.add_parser("excevt", parents=[common], help="Pretty print exception traces")
    excevt.add_argument("-t", "--timestamp", action="store_true", help="Expect local timestamps")
    excevt.add_argument("--json", action="store_true", help="Emit the timeline as JSON")

    pcsampl = tools.add_parser("pcsampl", parents=[common], help="ITM-based program profiler")
    pcsampl.add_argument("-e", "--elf", type=Path, help="ELF file of the profiled program")
    pcsampl.add_argument("--nm", help="nm executable to read symbols with (default arm-none-eabi-nm, then nm)")
    pcsampl.add_argument("--no-demangle", action="store_true", help="Show raw symbol names")
    output = pcsampl.add_mutually_exclusive_group()
    output.add_argument("--json", action="store_true", help="Emit the profile as JSON")
    output.add_argument("--table", action="store_true", help="Emit the profile as a table")

    demux = tools.add_parser("port-demux", parents=[common], help="Demux instrumentation packets")
    demux.add_argument("-o", "--output-dir", type=Path, default=Path("."), help="Directory for the port files")
    demux.add_argument("--suffix", default=".stim", help="Port file suffix (default .stim)")
    demux.add_argument("--stream", action="store_true", help="Flush every payload as it arrives")
    return parser


def main(argv: List[str] | None = None) -> int:
    parser = build_arg_parser()
    args = parser.parse_args(argv)
    _configure_logging(args.log_level)
    anomalies = AnomalyCounter()
    try:
        status = _TOOLS[args.tool](args, anomalies)
    except KeyboardInterrupt:
        LOG.info("interrupted")
        return EXIT_INTERRUPTED
    except (ItmTraceError, OSError) as exc:
        print(f"error: {exc}", file=sys.stderr)
        return EXIT_FATAL
    if anomalies.total:
        LOG.warning("recoverable anomalies: %s", anomalies.summary())
        if args.strict:
            return EXIT_ANOMALIES
    return status


def _tool_main(tool: str) -> Callable[[Optional[List[str]]], int]:
    def _entry(argv: Optional[List[str]] = None) -> int:
        rest = sys.argv[1:] if argv is None else argv
        return main([tool, *rest])

    _entry.__name__ = tool.replace("-", "_") + "_main"
    return _entry


itm_decode_main = _tool_main("itm-decode")
excevt_main = _tool_main("excevt")
pcsampl_main = _tool_main("pcsampl")
port_demux_main = _tool_main("port-demux")


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
