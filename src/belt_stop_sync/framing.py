"""Newline framing for the device's notification stream.

BLE notifications arrive in MTU-sized fragments that rarely line up with
protocol lines. ``LineFramer`` accumulates the fragments and hands back
complete lines only, in arrival order.
"""

from __future__ import annotations

import codecs
import logging
from typing import Iterator, Union

logger = logging.getLogger(__name__)


class LineFramer:
    """Reassemble raw chunks into trimmed, non-empty protocol lines.

    The framer owns a single text buffer. After each call to ``feed`` has
    been fully consumed the buffer holds at most one partial line (the text
    after the last newline seen so far).

    There is no upper bound on the buffered tail: a peer that never sends a
    newline grows the buffer without limit.

    Example:
        >>> framer = LineFramer()
        >>> list(framer.feed(b"EV,17000"))
        []
        >>> list(framer.feed(b"00000,4523,17\\nSYNC"))
        ['EV,1700000000,4523,17']
    """

    def __init__(self) -> None:
        self._buffer = ""
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")

    def feed(self, chunk: Union[bytes, bytearray]) -> Iterator[str]:
        """Append ``chunk`` and return a lazy iterator over completed lines.

        Args:
            chunk: Raw bytes as delivered by the transport.

        Returns:
            Iterator of complete lines with surrounding whitespace stripped.
            Blank lines are swallowed. Lines are removed from the buffer as
            they are yielded.
        """
        # Buffer eagerly so the chunk is kept even if the caller never iterates
        self._buffer += self._decoder.decode(bytes(chunk))
        logger.debug(
            "Chunk received: %d bytes (pending=%d)", len(chunk), len(self._buffer)
        )
        return self._drain()

    def _drain(self) -> Iterator[str]:
        while True:
            idx = self._buffer.find("\n")
            if idx < 0:
                return
            line = self._buffer[:idx].strip()
            self._buffer = self._buffer[idx + 1 :]
            if line:
                yield line

    def reset(self) -> None:
        """Drop any buffered partial line."""
        if self._buffer:
            logger.debug("Discarding %d buffered characters", len(self._buffer))
        self._buffer = ""
        self._decoder.reset()

    @property
    def pending(self) -> int:
        """Number of buffered characters not yet terminated by a newline."""
        return len(self._buffer)
