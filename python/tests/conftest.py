"""
Pytest configuration and fixtures for itmtrace tests.
"""
from typing import Dict

import pytest

from trace_builders import MemorySink


@pytest.fixture
def memory_sinks():
    """Sink factory collecting one MemorySink per port."""

    sinks: Dict[int, MemorySink] = {}

    def factory(port: int) -> MemorySink:
        sink = MemorySink(port)
        sinks[port] = sink
        return sink

    factory.sinks = sinks
    return factory


@pytest.fixture
def capture_file(tmp_path):
    """Write capture bytes to a file and return its path."""

    def _write(data: bytes, name: str = "itm.bin"):
        path = tmp_path / name
        path.write_bytes(data)
        return path

    return _write
