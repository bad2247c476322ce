"""Pytest configuration — path setup, logging, and shared fakes."""

import logging
import os
import sys
import threading

import pytest

# ---------------------------------------------------------------------------
# Path setup: ensure the package is importable regardless of installation
# ---------------------------------------------------------------------------
_SRC_DIR = os.path.join(os.path.dirname(__file__), os.pardir, "src")
_SRC_DIR = os.path.normpath(_SRC_DIR)
if _SRC_DIR not in sys.path:
    sys.path.insert(0, _SRC_DIR)

# ---------------------------------------------------------------------------
# Logging: route all library log output to the console so pytest -s shows it
# ---------------------------------------------------------------------------
logging.basicConfig(
    level=logging.DEBUG,
    format="%(asctime)s | %(levelname)-7s | %(threadName)s | %(name)s | %(message)s",
    datefmt="%H:%M:%S",
)


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeSerial:
    """Stands in for an open ``serial.Serial``.

    ``chunks`` are returned by successive reads; once they run out, reads
    return ``b""`` and ``on_empty`` (if given) is called.  Control-line
    changes and reads are recorded in ``events`` in the order they happen.
    """

    def __init__(self, chunks=None, on_empty=None) -> None:
        self.is_open = True
        self.chunks = list(chunks or [])
        self.on_empty = on_empty
        self.events = []
        self.read_error = None
        self._events_lock = threading.Lock()
        self._dtr = False
        self._rts = False

    def _record(self, event) -> None:
        with self._events_lock:
            self.events.append(event)

    @property
    def in_waiting(self) -> int:
        return len(self.chunks[0]) if self.chunks else 0

    def read(self, size: int = 1) -> bytes:
        if self.read_error is not None:
            raise self.read_error
        if self.chunks:
            chunk = self.chunks.pop(0)
            self._record(("read", chunk))
            return chunk
        if self.on_empty is not None:
            self.on_empty()
        return b""

    @property
    def dtr(self) -> bool:
        return self._dtr

    @dtr.setter
    def dtr(self, value: bool) -> None:
        self._dtr = value
        self._record(("dtr", value))

    @property
    def rts(self) -> bool:
        return self._rts

    @rts.setter
    def rts(self, value: bool) -> None:
        self._rts = value
        self._record(("rts", value))

    def close(self) -> None:
        self.is_open = False


@pytest.fixture()
def fake_clock():
    return FakeClock()
