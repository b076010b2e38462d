from __future__ import annotations

import threading

import allure
import pytest

from gidterm.executor.buffer import OutputBuffer, OutputChunk

pytestmark = [
    allure.epic("Process Execution"),
    allure.feature("Output Buffering"),
]


def test_read_returns_appended_bytes_in_order() -> None:
    buffer = OutputBuffer(cap_bytes=1024)
    buffer.append(b"hello ")
    buffer.append(b"world")

    assert buffer.read(timeout=0.1) == OutputChunk(data=b"hello world", dropped=0)


def test_read_times_out_when_nothing_arrives() -> None:
    buffer = OutputBuffer(cap_bytes=16)

    assert buffer.read(timeout=0.01) is None
    assert not buffer.exhausted()


def test_closed_buffer_drains_before_reporting_end_of_stream() -> None:
    buffer = OutputBuffer(cap_bytes=16)
    buffer.append(b"tail")
    buffer.close()

    assert buffer.read(timeout=0.1) == OutputChunk(data=b"tail")
    assert buffer.read(timeout=0.1) is None
    assert buffer.exhausted()


def test_append_after_close_is_ignored() -> None:
    buffer = OutputBuffer(cap_bytes=16)
    buffer.close()
    buffer.append(b"late")

    assert buffer.read(timeout=0.01) is None


def test_overflow_drops_oldest_bytes_and_reports_the_count() -> None:
    buffer = OutputBuffer(cap_bytes=8)
    buffer.append(b"0123456789")
    buffer.append(b"abc")

    chunk = buffer.read(timeout=0.1)

    assert chunk == OutputChunk(data=b"56789abc", dropped=5)
    assert buffer.dropped_total == 5


def test_drop_count_is_reported_once() -> None:
    buffer = OutputBuffer(cap_bytes=4)
    buffer.append(b"abcdef")
    first = buffer.read(timeout=0.1)
    buffer.append(b"gh")

    assert first is not None and first.dropped == 2
    assert buffer.read(timeout=0.1) == OutputChunk(data=b"gh", dropped=0)


def test_blocked_reader_wakes_up_on_append() -> None:
    buffer = OutputBuffer(cap_bytes=64)
    received: list[OutputChunk | None] = []
    reader = threading.Thread(target=lambda: received.append(buffer.read(timeout=5.0)))
    reader.start()

    buffer.append(b"ping")
    reader.join(timeout=5.0)

    assert received == [OutputChunk(data=b"ping")]


def test_cap_must_be_positive() -> None:
    with pytest.raises(ValueError, match="cap_bytes"):
        OutputBuffer(cap_bytes=0)
