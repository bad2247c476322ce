"""Raw terminal handling and keyboard commands.

While the monitor runs, the controlling terminal is in raw mode: keystrokes
arrive one at a time, unechoed, and CTRL+C is delivered as a character
instead of SIGINT.  ``RawTerminal`` enters that mode through pyserial's
miniterm console and guarantees it is left again exactly once, whichever
way the process ends.

``KeyListener`` is the second thread of a session.  It polls for keys and
acts on two chords:

    CTRL+R    reset the chip (serialized with reads by the device lock)
    CTRL+C    stop the session
"""

from __future__ import annotations

import atexit
import logging
import os
import platform
import sys
import threading
import time
from typing import TYPE_CHECKING, Optional

from serial.tools.miniterm import Console

from . import KEY_POLL_TIMEOUT
from .exceptions import SerialCommunicationError, TerminalInputError

if TYPE_CHECKING:
    from .serial_comm import DeviceSession

logger = logging.getLogger("espmonitor.terminal")

_IS_WINDOWS = platform.system() == "Windows"

if _IS_WINDOWS:
    import ctypes
    import ctypes.wintypes
    import msvcrt
    _CONSOLE_ERRORS = (OSError, ValueError)
else:
    import select
    import termios
    _CONSOLE_ERRORS = (OSError, ValueError, termios.error)

CTRL_C = "\x03"
CTRL_R = "\x12"

# Console input flag that turns CTRL+C into SIGINT instead of a keystroke
_ENABLE_PROCESSED_INPUT = 0x0001
_STD_INPUT_HANDLE = -10

# Keeps lines from the read loop and reset messages from the key
# listener from interleaving mid-line.
_OUTPUT_LOCK = threading.Lock()


def rprint(text: str = "", end: str = "\r\n") -> None:
    """Write *text* to stdout with a raw-mode friendly CRLF ending."""
    with _OUTPUT_LOCK:
        sys.stdout.write(text + end)
        sys.stdout.flush()


def _get_console_input_mode() -> int:
    kernel32 = ctypes.windll.kernel32
    mode = ctypes.wintypes.DWORD()
    if not kernel32.GetConsoleMode(kernel32.GetStdHandle(_STD_INPUT_HANDLE), ctypes.byref(mode)):
        raise ctypes.WinError()
    return mode.value


def _set_console_input_mode(mode: int) -> None:
    kernel32 = ctypes.windll.kernel32
    if not kernel32.SetConsoleMode(kernel32.GetStdHandle(_STD_INPUT_HANDLE), mode):
        raise ctypes.WinError()


class RawTerminal:
    """Scoped raw mode for the controlling terminal.

    Example::

        with RawTerminal() as terminal:
            keys = terminal.read_keys(0.25)

    `restore` is idempotent and also registered with ``atexit``, so the
    terminal is restored after normal exit, an exception, or a handled
    termination signal, and only once.  miniterm's own ``atexit`` cleanup
    is unregistered in favour of ours.

    On Windows the miniterm console leaves line processing alone, so
    processed input is switched off here to receive CTRL+C as a key.  The
    console also replaces ``sys.stdout``/``sys.stderr``; both are put back
    on restore.
    """

    def __init__(self) -> None:
        self._console: Optional[Console] = None
        self._active = False
        self._restore_lock = threading.Lock()
        self._saved_input_mode: Optional[int] = None
        self._saved_streams = None

    @property
    def active(self) -> bool:
        return self._active

    def enter(self) -> None:
        """Switch the terminal to raw mode."""
        if self._active:
            return
        if _IS_WINDOWS:
            self._saved_streams = (sys.stdout, sys.stderr)
        try:
            if self._console is None:
                self._console = Console()
                if not _IS_WINDOWS:
                    atexit.unregister(self._console.cleanup)
            self._console.setup()
            if _IS_WINDOWS:
                mode = _get_console_input_mode()
                _set_console_input_mode(mode & ~_ENABLE_PROCESSED_INPUT)
                self._saved_input_mode = mode
        except _CONSOLE_ERRORS as exc:
            self._restore_windows_console()
            raise TerminalInputError(
                f"Cannot switch the terminal to raw mode: {exc}. "
                f"espmonitor must be run from an interactive terminal."
            ) from exc
        self._active = True
        atexit.register(self.restore)
        logger.debug("[TERMINAL] Raw mode enabled")

    def restore(self) -> None:
        """Leave raw mode if it is active."""
        with self._restore_lock:
            if not self._active:
                return
            self._active = False
            try:
                self._restore_windows_console()
                self._console.cleanup()
            except _CONSOLE_ERRORS as exc:
                logger.warning("[TERMINAL] Failed to restore terminal mode: %s", exc)
            else:
                logger.debug("[TERMINAL] Raw mode disabled")
        atexit.unregister(self.restore)

    def _restore_windows_console(self) -> None:
        if self._saved_streams is not None:
            sys.stdout, sys.stderr = self._saved_streams
            self._saved_streams = None
        if self._saved_input_mode is not None:
            mode, self._saved_input_mode = self._saved_input_mode, None
            _set_console_input_mode(mode)

    def read_keys(self, timeout_s: float) -> str:
        """Wait up to *timeout_s* for keyboard input.

        Returns:
            The characters typed, or ``""`` if none arrived in time.

        Raises:
            TerminalInputError: If reading from the terminal fails.
        """
        try:
            if _IS_WINDOWS:
                return self._read_keys_windows(timeout_s)
            return self._read_keys_posix(timeout_s)
        except OSError as exc:
            raise TerminalInputError(str(exc)) from exc

    def _read_keys_posix(self, timeout_s: float) -> str:
        fd = sys.stdin.fileno()
        ready, _, _ = select.select([fd], [], [], timeout_s)
        if not ready:
            return ""
        data = os.read(fd, 32)
        if not data:
            raise TerminalInputError("standard input was closed")
        return data.decode("utf-8", errors="replace")

    def _read_keys_windows(self, timeout_s: float) -> str:
        deadline = time.monotonic() + timeout_s
        while not msvcrt.kbhit():
            if time.monotonic() >= deadline:
                return ""
            time.sleep(0.01)
        return self._console.getkey()

    # ---- Context manager ----

    def __enter__(self) -> RawTerminal:
        self.enter()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:  # type: ignore[no-untyped-def]
        self.restore()


class KeyListener(threading.Thread):
    """Background thread turning key chords into session actions.

    After the thread ends, ``quit_requested`` tells whether the user asked
    to exit and ``error`` holds the exception that stopped it, if any.  In
    every case ``stop_event`` is set on the way out so the read loop stops
    too.
    """

    def __init__(
        self,
        session: DeviceSession,
        terminal: RawTerminal,
        stop_event: threading.Event,
        poll_timeout_s: float = KEY_POLL_TIMEOUT,
    ) -> None:
        super().__init__(name="espmonitor-keys", daemon=True)
        self.session = session
        self.terminal = terminal
        self.stop_event = stop_event
        self.poll_timeout_s = poll_timeout_s
        self.quit_requested = False
        self.error: Optional[Exception] = None

    def run(self) -> None:
        try:
            self._listen()
        except TerminalInputError as exc:
            logger.error("[KEYS] Terminal input failed: %s", exc)
            rprint(f"Error reading from terminal: {exc}")
            self.error = exc
        except SerialCommunicationError as exc:
            logger.error("[KEYS] Reset failed: %s", exc)
            rprint(f"Error: {exc}")
            self.error = exc
        finally:
            self.stop_event.set()

    def _listen(self) -> None:
        while not self.stop_event.is_set():
            for key in self.terminal.read_keys(self.poll_timeout_s):
                if key == CTRL_R:
                    logger.info("[KEYS] CTRL+R — resetting chip")
                    self.session.reset_chip()
                elif key == CTRL_C:
                    logger.info("[KEYS] CTRL+C — quitting")
                    self.quit_requested = True
                    return
