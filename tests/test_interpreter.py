from __future__ import annotations

from collections.abc import Sequence

import allure
import pytest

from gidterm.executor.buffer import OutputChunk
from gidterm.semantic.interpreter import OutputInterpreter, strip_ansi
from gidterm.semantic.parsers import TrainingParser, generic_parser
from gidterm.semantic.state import SemanticState

pytestmark = [
    allure.epic("Output Interpretation"),
    allure.feature("Line Assembly"),
]


class _RecordingParser:
    name = "recording"

    def __init__(self) -> None:
        self.lines: list[str] = []

    def consume(self, lines: Sequence[str], state: SemanticState) -> SemanticState:
        self.lines.extend(lines)
        return state


class _ExplodingParser:
    name = "exploding"

    def consume(self, lines: Sequence[str], state: SemanticState) -> SemanticState:
        raise RuntimeError("parser bug")


def test_line_split_across_chunks_is_parsed_once_complete() -> None:
    interpreter = OutputInterpreter(TrainingParser())

    interpreter.feed(b"Epoch 3/1")
    assert interpreter.state.progress is None

    state = interpreter.feed(b"0 loss=0.45\n")

    assert state.progress == pytest.approx(0.3)
    assert state.metric("loss").as_float() == pytest.approx(0.45)
    assert interpreter.transcript() == ("Epoch 3/10 loss=0.45",)


def test_crlf_and_bare_carriage_returns_terminate_lines() -> None:
    parser = _RecordingParser()
    interpreter = OutputInterpreter(parser)

    interpreter.feed(b"one\r\ntwo\r")
    interpreter.feed(b"\nthree\rfour\n")

    assert parser.lines == ["one", "two", "three", "four"]
    assert interpreter.state.lines_seen == 4


def test_redrawn_progress_bar_updates_progress() -> None:
    interpreter = OutputInterpreter(generic_parser())

    interpreter.feed(b"[==>   ] 20%\r[====> ] 40%\r[======>] 70%\r")

    assert interpreter.state.progress == pytest.approx(0.7)


def test_multibyte_character_split_across_chunks() -> None:
    parser = _RecordingParser()
    interpreter = OutputInterpreter(parser)
    encoded = "température ok\n".encode()
    split_at = encoded.index(b"\xc3") + 1

    interpreter.feed(encoded[:split_at])
    interpreter.feed(encoded[split_at:])

    assert parser.lines == ["température ok"]


def test_ansi_sequences_are_stripped_before_parsing() -> None:
    interpreter = OutputInterpreter(generic_parser())

    state = interpreter.feed(b"\x1b[31merror:\x1b[0m linker failed\n")

    assert state.errors[0].message == "error: linker failed"
    assert strip_ansi("\x1b[1;32mok\x1b[0m") == "ok"


def test_flush_emits_trailing_partial_line() -> None:
    interpreter = OutputInterpreter(generic_parser())
    interpreter.feed(b"Stage: packaging")

    assert interpreter.state.phase is None
    assert interpreter.flush().phase == "packaging"


def test_blank_lines_are_counted_but_not_parsed() -> None:
    parser = _RecordingParser()
    interpreter = OutputInterpreter(parser)

    interpreter.feed(b"\n\nvalue\n")

    assert interpreter.state.lines_seen == 3
    assert parser.lines == ["value"]


def test_parser_failure_keeps_prior_state() -> None:
    interpreter = OutputInterpreter(_ExplodingParser())

    state = interpreter.feed(b"anything\n")

    assert state.lines_seen == 1
    assert state.issues == ()


def test_dropped_bytes_leave_a_marker_and_reset_the_partial_line() -> None:
    parser = _RecordingParser()
    interpreter = OutputInterpreter(parser)
    interpreter.feed(b"partial head")

    state = interpreter.feed_chunk(OutputChunk(data=b"tail\nnext\n", dropped=4096))

    assert state.truncated_bytes == 4096
    assert interpreter.output_truncated
    assert interpreter.transcript()[0] == "[gidterm] 4096 bytes of output dropped"
    assert parser.lines == ["tail", "next"]


def test_transcript_keeps_only_the_tail() -> None:
    interpreter = OutputInterpreter(_RecordingParser(), tail_lines=2)

    interpreter.feed(b"a\nb\nc\n")

    assert interpreter.transcript() == ("b", "c")
    assert interpreter.output_truncated
    assert interpreter.state.lines_seen == 3
