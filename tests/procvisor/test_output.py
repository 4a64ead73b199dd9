from __future__ import annotations

from procvisor.process.output import OutputSink
from procvisor.process.types import StreamTag


def test_streams_are_independent() -> None:
    sink = OutputSink()
    sink.append(StreamTag.OUT, b"out-1 ")
    sink.append(StreamTag.ERR, b"err-1 ")
    sink.append(StreamTag.OUT, b"out-2")

    assert sink.read(StreamTag.OUT) == b"out-1 out-2"
    assert sink.read(StreamTag.ERR) == b"err-1 "


def test_incremental_cursor() -> None:
    sink = OutputSink()
    sink.append(StreamTag.OUT, b"abc")
    assert sink.read_incremental(StreamTag.OUT) == b"abc"
    assert sink.read_incremental(StreamTag.OUT) == b""

    sink.append(StreamTag.OUT, b"def")
    assert sink.read_incremental(StreamTag.OUT) == b"def"
    # full read is unaffected by the cursor
    assert sink.read(StreamTag.OUT) == b"abcdef"


def test_incremental_cursors_are_per_stream() -> None:
    sink = OutputSink()
    sink.append(StreamTag.OUT, b"o")
    sink.append(StreamTag.ERR, b"e")
    assert sink.read_incremental(StreamTag.OUT) == b"o"
    assert sink.read_incremental(StreamTag.ERR) == b"e"


def test_clear_resets_buffer_and_cursor() -> None:
    sink = OutputSink()
    sink.append(StreamTag.ERR, b"first")
    sink.read_incremental(StreamTag.ERR)
    sink.clear(StreamTag.ERR)

    assert sink.read(StreamTag.ERR) == b""
    sink.append(StreamTag.ERR, b"second")
    assert sink.read_incremental(StreamTag.ERR) == b"second"
