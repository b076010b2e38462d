"""Incremental byte stream to SemanticState conversion for one task run."""

from __future__ import annotations

import codecs
import logging
import re
from collections import deque

from gidterm.executor.buffer import OutputChunk
from gidterm.semantic.parsers.base import OutputParser
from gidterm.semantic.state import SemanticState

logger = logging.getLogger(__name__)

TRUNCATION_MARKER = "[gidterm] {dropped} bytes of output dropped"
MAX_PARTIAL_LINE_CHARS = 65_536

_LINE_BREAK = re.compile(r"\r\n|\r|\n")
_ANSI_ESCAPE = re.compile(
    r"\x1b(?:\[[0-?]*[ -/]*[@-~]|\][^\x07\x1b]*(?:\x07|\x1b\\)|[@-Z\\-_])",
)


def strip_ansi(text: str) -> str:
    """Remove terminal colour and cursor control sequences."""

    return _ANSI_ESCAPE.sub("", text)


class OutputInterpreter:
    """Turn terminal bytes into complete lines and fold them through a parser.

    Lines may arrive split across any number of chunks; bytes are buffered
    until a terminator (``\\n``, ``\\r\\n`` or a bare ``\\r`` as used by
    redrawn progress bars) arrives. Parser failures are logged and the prior
    state kept, so malformed output never interrupts the task.
    """

    def __init__(self, parser: OutputParser, *, tail_lines: int = 500) -> None:
        self.parser = parser
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._partial = ""
        self._skip_lf = False
        self._transcript: deque[str] = deque(maxlen=tail_lines)
        self._evicted_lines = 0
        self._state = SemanticState()

    @property
    def state(self) -> SemanticState:
        return self._state

    @property
    def output_truncated(self) -> bool:
        return self._evicted_lines > 0 or self._state.truncated_bytes > 0

    def transcript(self) -> tuple[str, ...]:
        return tuple(self._transcript)

    def feed_chunk(self, chunk: OutputChunk) -> SemanticState:
        return self.feed(chunk.data, dropped=chunk.dropped)

    def feed(self, data: bytes, *, dropped: int = 0) -> SemanticState:
        """Consume raw terminal bytes; ``dropped`` reports bytes elided before ``data``."""

        if dropped:
            self._note_truncation(dropped)
        if data:
            self._apply(self._split(self._decoder.decode(data)))
        return self._state

    def flush(self) -> SemanticState:
        """End of stream: emit whatever partial line is still buffered."""

        lines = self._split(self._decoder.decode(b"", final=True))
        if self._partial:
            lines.append(self._partial)
            self._partial = ""
        self._apply(lines)
        return self._state

    def _split(self, text: str) -> list[str]:
        if not text:
            return []
        if self._skip_lf and text.startswith("\n"):
            text = text[1:]
        self._skip_lf = text.endswith("\r")
        buffer = self._partial + text
        parts = _LINE_BREAK.split(buffer)
        self._partial = parts.pop()
        if len(self._partial) > MAX_PARTIAL_LINE_CHARS:
            parts.append(self._partial)
            self._partial = ""
        return parts

    def _apply(self, lines: list[str]) -> None:
        if not lines:
            return
        cleaned = [strip_ansi(line) for line in lines]
        for line in cleaned:
            self._remember(line)

        state = self._state.with_lines_seen(len(cleaned))
        meaningful = [line for line in cleaned if line.strip()]
        if meaningful:
            try:
                state = self.parser.consume(meaningful, state)
            except Exception:  # noqa: BLE001
                logger.debug(
                    "Parser %s failed on %d lines, keeping prior state",
                    self.parser.name,
                    len(meaningful),
                    exc_info=True,
                )
        self._state = state

    def _note_truncation(self, dropped: int) -> None:
        # The buffered fragment lost its continuation and a multi-byte
        # sequence may have been cut, so both restart clean.
        self._partial = ""
        self._skip_lf = False
        self._decoder.reset()
        self._remember(TRUNCATION_MARKER.format(dropped=dropped))
        self._state = self._state.with_truncated(dropped)
        logger.debug("Output for parser %s truncated by %d bytes", self.parser.name, dropped)

    def _remember(self, line: str) -> None:
        if self._transcript.maxlen is not None and len(self._transcript) == self._transcript.maxlen:
            self._evicted_lines += 1
        self._transcript.append(line)
