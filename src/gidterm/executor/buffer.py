"""Bounded, ordered byte buffer between a pty reader and its consumer."""

from __future__ import annotations

import logging
import threading
import time
from collections import deque
from dataclasses import dataclass

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class OutputChunk:
    """Bytes handed to the consumer.

    ``dropped`` counts bytes elided immediately before ``data`` because the
    consumer fell behind the buffer cap.
    """

    data: bytes
    dropped: int = 0


class OutputBuffer:
    """Append-only byte queue with a size cap.

    Writers append in arrival order. When unconsumed bytes exceed the cap the
    oldest ones are dropped and counted; the count is reported with the next
    chunk handed out by :meth:`read`, never silently discarded.
    """

    def __init__(self, cap_bytes: int) -> None:
        if cap_bytes <= 0:
            raise ValueError("cap_bytes must be positive")
        self._cap = cap_bytes
        self._chunks: deque[bytes] = deque()
        self._size = 0
        self._dropped_pending = 0
        self._dropped_total = 0
        self._closed = False
        self._condition = threading.Condition()

    @property
    def dropped_total(self) -> int:
        with self._condition:
            return self._dropped_total

    @property
    def closed(self) -> bool:
        with self._condition:
            return self._closed

    def append(self, data: bytes) -> None:
        if not data:
            return
        with self._condition:
            if self._closed:
                return
            self._chunks.append(data)
            self._size += len(data)
            self._enforce_cap()
            self._condition.notify_all()

    def close(self) -> None:
        """Mark end of stream; pending bytes stay readable."""

        with self._condition:
            self._closed = True
            self._condition.notify_all()

    def read(self, timeout: float | None = None) -> OutputChunk | None:
        """Return every buffered byte as one chunk, waiting up to ``timeout``.

        Returns ``None`` on timeout, or once the buffer is closed and drained.
        """

        deadline = None if timeout is None else time.monotonic() + timeout
        with self._condition:
            while not self._chunks and not self._dropped_pending:
                if self._closed:
                    return None
                if deadline is None:
                    self._condition.wait()
                    continue
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    return None
                self._condition.wait(remaining)

            data = b"".join(self._chunks)
            self._chunks.clear()
            self._size = 0
            dropped = self._dropped_pending
            self._dropped_pending = 0
            return OutputChunk(data=data, dropped=dropped)

    def exhausted(self) -> bool:
        """True once closed and every byte has been consumed."""

        with self._condition:
            return self._closed and not self._chunks and not self._dropped_pending

    def _enforce_cap(self) -> None:
        overflow = self._size - self._cap
        elided = 0
        while overflow > 0 and self._chunks:
            head = self._chunks[0]
            if len(head) <= overflow:
                self._chunks.popleft()
                removed = len(head)
            else:
                self._chunks[0] = head[overflow:]
                removed = overflow
            self._size -= removed
            self._dropped_pending += removed
            self._dropped_total += removed
            elided += removed
            overflow -= removed
        if elided:
            logger.debug("Output buffer over cap, elided %d bytes", elided)
