from __future__ import annotations

import contextlib
import io
import os
import tempfile
from collections.abc import Callable, Iterator

import pytest

from procvisor.process.pipes import FilePollingMultiplexer, PipeMultiplexer
from procvisor.process.types import StreamTag

pytestmark = pytest.mark.skipif(os.name != "posix", reason="selectable pipes are POSIX only")


@pytest.fixture
def out_err() -> Iterator[tuple[tuple[int, int], tuple[int, int]]]:
    out_pipe, err_pipe = os.pipe(), os.pipe()
    yield out_pipe, err_pipe
    # read ends belong to the multiplexer under test
    for _, write_fd in (out_pipe, err_pipe):
        with contextlib.suppress(OSError):
            os.close(write_fd)


Chunks = list[tuple[StreamTag, bytes]]


def _poll_until(
    mux: PipeMultiplexer, predicate: Callable[[Chunks], bool], ticks: int = 200
) -> Chunks:
    chunks: Chunks = []
    for _ in range(ticks):
        chunks.extend(mux.poll(0.01))
        if predicate(chunks):
            break
    return chunks


# ---- 1) Tagged chunks from both streams ----
def test_chunks_are_tagged(out_err) -> None:
    (out_r, out_w), (err_r, err_w) = out_err
    mux = PipeMultiplexer({out_r: StreamTag.OUT, err_r: StreamTag.ERR})

    os.write(out_w, b"hello")
    os.write(err_w, b"oops")
    chunks = _poll_until(mux, lambda c: len(c) >= 2)

    assert sorted(chunks) == [(StreamTag.ERR, b"oops"), (StreamTag.OUT, b"hello")]
    assert not mux.is_done
    mux.close()
    assert mux.is_done


# ---- 2) At most one chunk per stream per tick ----
def test_one_chunk_per_stream_per_tick(out_err) -> None:
    (out_r, out_w), (err_r, err_w) = out_err
    mux = PipeMultiplexer({out_r: StreamTag.OUT, err_r: StreamTag.ERR}, chunk_size=4)

    os.write(out_w, b"0123456789")
    os.write(err_w, b"ab")
    first = mux.poll(0.5)

    assert (StreamTag.OUT, b"0123") in first
    assert sum(1 for tag, _ in first if tag is StreamTag.OUT) == 1

    def out_bytes(chunks: Chunks) -> bytes:
        return b"".join(d for t, d in chunks if t is StreamTag.OUT)

    rest = _poll_until(mux, lambda c: out_bytes(c) == b"456789")
    assert out_bytes(rest) == b"456789"
    mux.close()


# ---- 3) EOF closes read ends; drain collects leftovers ----
def test_eof_marks_done(out_err) -> None:
    (out_r, out_w), (err_r, err_w) = out_err
    mux = PipeMultiplexer({out_r: StreamTag.OUT, err_r: StreamTag.ERR}, chunk_size=2)

    os.write(out_w, b"tail!")
    os.close(out_w)
    os.close(err_w)

    chunks = mux.drain()
    assert b"".join(d for _, d in chunks) == b"tail!"
    assert mux.is_done
    mux.close()


# ---- 4) Literal input is written, then stdin is closed ----
def test_literal_input_then_eof() -> None:
    child_r, stdin_w = os.pipe()
    mux = PipeMultiplexer({}, stdin_fd=stdin_w, input_source=b"payload")
    try:
        for _ in range(10):
            mux.poll(0.01)
        received = b""
        while chunk := os.read(child_r, 1024):
            received += chunk
        assert received == b"payload"
    finally:
        mux.close()
        os.close(child_r)


# ---- 5) Stream input without a descriptor is read per tick ----
def test_stream_input() -> None:
    child_r, stdin_w = os.pipe()
    source = io.BytesIO(b"x" * 50)
    mux = PipeMultiplexer({}, stdin_fd=stdin_w, input_source=source, chunk_size=16)
    try:
        for _ in range(20):
            mux.poll(0.01)
        received = b""
        while chunk := os.read(child_r, 1024):
            received += chunk
        assert received == b"x" * 50
    finally:
        mux.close()
        os.close(child_r)


# ---- 6) Text streams are encoded ----
def test_text_stream_input() -> None:
    child_r, stdin_w = os.pipe()
    mux = PipeMultiplexer({}, stdin_fd=stdin_w, input_source=io.StringIO("héllo"))
    try:
        for _ in range(5):
            mux.poll(0.01)
        assert os.read(child_r, 1024) == "héllo".encode()
    finally:
        mux.close()
        os.close(child_r)


# ---- 7) Reader gone: input dropped silently ----
def test_broken_pipe_is_tolerated() -> None:
    child_r, stdin_w = os.pipe()
    os.close(child_r)
    mux = PipeMultiplexer({}, stdin_fd=stdin_w, input_source=b"nobody listens")
    for _ in range(3):
        assert mux.poll(0.01) == []
    mux.close()


# ---- 8) Status pipe collects the report ----
def test_status_report(out_err) -> None:
    (out_r, out_w), _ = out_err
    status_r, status_w = os.pipe()
    mux = PipeMultiplexer({out_r: StreamTag.OUT}, status_fd=status_r)

    os.write(status_w, b"3\n")
    os.close(status_w)
    os.close(out_w)
    mux.drain()

    assert mux.status_report == b"3\n"
    assert mux.is_done
    mux.close()


# ---- 9) File polling fallback ----
def test_file_polling_multiplexer() -> None:
    files = {tag: tempfile.TemporaryFile() for tag in StreamTag}
    mux = FilePollingMultiplexer(files)

    files[StreamTag.OUT].write(b"first")
    files[StreamTag.OUT].flush()
    assert mux.poll(0) == [(StreamTag.OUT, b"first")]
    assert mux.poll(0) == []

    files[StreamTag.OUT].seek(0, os.SEEK_END)
    files[StreamTag.OUT].write(b" second")
    files[StreamTag.ERR].write(b"err")
    files[StreamTag.OUT].flush()
    files[StreamTag.ERR].flush()

    assert not mux.is_done
    assert mux.drain() == [(StreamTag.OUT, b" second"), (StreamTag.ERR, b"err")]
    assert mux.is_done
    mux.close()
