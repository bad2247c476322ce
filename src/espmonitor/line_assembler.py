"""Reassembly of a fragmented serial byte stream into log lines.

A serial read returns whatever happened to be in the driver buffer: half a
line, three lines and a bit, or the second byte of a UTF-8 sequence.  The
`LineAssembler` keeps the one unterminated fragment between reads and
hands back only complete lines, each already passed through the line
processor (normally the address symbolicator).

A device that prints a partial line and then falls silent (a crash in the
middle of ``printf``) would otherwise leave that text invisible, so a
fragment older than ``UNFINISHED_LINE_TIMEOUT`` is emitted on its own.
"""

from __future__ import annotations

import codecs
import logging
import time
from typing import Callable, List, Optional

from typeguard import typechecked

from . import UNFINISHED_LINE_TIMEOUT
from .types import LineProcessor

logger = logging.getLogger("espmonitor.line_assembler")


@typechecked
class LineAssembler:
    """Turns raw chunks into completed, processed lines.

    Example::

        assembler = LineAssembler(process_line=symbolicator.symbolicate)
        assembler.feed(b"boot: ESP-IDF v4.4 2nd stage")   # -> []
        assembler.feed(b" bootloader\\r\\nI (29) boot")   # -> ["boot: ... bootloader\\r"]
        ...
        assembler.check_timeout()  # -> "I (29) boot" once 5 s have passed

    Line feeds delimit lines; a carriage return sent by the device stays
    part of the line.  Empty lines are dropped.
    """

    def __init__(
        self,
        process_line: Optional[LineProcessor] = None,
        timeout_s: float = UNFINISHED_LINE_TIMEOUT,
        clock: Callable[[], float] = time.monotonic,
        encoding: str = "utf-8",
    ) -> None:
        """Initialize line assembler.

        Args:
            process_line: Applied to every completed line before it is
                returned.  ``None`` returns lines as received.
            timeout_s: Age after which an unterminated fragment is flushed.
            clock: Monotonic time source, in seconds.
            encoding: Character encoding of the device output.  Undecodable
                bytes become U+FFFD.
        """
        self.process_line = process_line
        self.timeout_s = timeout_s
        self._clock = clock
        # A multi-byte character split across two
        # reads is decoded once both halves are in.
        self._decoder = codecs.getincrementaldecoder(encoding)("replace")
        self._pending = ""
        self._pending_since = clock()

    @property
    def pending(self) -> str:
        """The unterminated fragment currently held back."""
        return self._pending

    def feed(self, chunk: bytes) -> List[str]:
        """Consume one raw read and return the lines it completed.

        When the chunk leaves no new fragment, an old one that has exceeded
        the timeout is flushed as well.  A fragment that keeps growing is
        never flushed by age: each extension restarts its clock.
        """
        text = self._decoder.decode(chunk, False)
        if not text:
            # Only part of a multi-byte character so far
            return []

        segments = text.split("\n")
        new_fragment = None if text.endswith("\n") else segments.pop()
        if new_fragment is None:
            # split() leaves an empty string after the final "\n"
            segments.pop()

        lines = []
        for segment in segments:
            full_line = self._pending + segment
            self._pending = ""
            if full_line:
                lines.append(self._complete(full_line))

        if new_fragment is not None:
            self._pending += new_fragment
            self._pending_since = self._clock()
        else:
            flushed = self.check_timeout()
            if flushed is not None:
                lines.append(flushed)

        return lines

    def check_timeout(self, now: Optional[float] = None) -> Optional[str]:
        """Flush the pending fragment if it is older than the timeout.

        Returns the processed line, or ``None`` when nothing was due.
        """
        if not self._pending:
            return None

        if now is None:
            now = self._clock()
        age = now - self._pending_since
        if age <= self.timeout_s:
            return None

        # Bytes of an unfinished character go out as U+FFFD with the line
        fragment = self._pending + self._decoder.decode(b"", True)
        self._decoder.reset()
        self._pending = ""
        logger.debug(
            "[LINE-TIMEOUT] Flushing %d-character fragment after %.1fs without a newline",
            len(fragment), age,
        )
        return self._complete(fragment)

    def _complete(self, line: str) -> str:
        if self.process_line is None:
            return line
        return self.process_line(line)
