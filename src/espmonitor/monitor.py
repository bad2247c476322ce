"""Monitor session: banner, device setup, read loop and key listener.

`run` owns the whole lifecycle of one session and returns the process exit
code.  Two threads run while the device is open: the main thread reads
and prints, the key listener handles CTRL+R / CTRL+C.  Quitting is
cooperative: CTRL+C, a fatal error on either thread, or SIGTERM/SIGHUP set
one shared event, both threads wind down, and the terminal is restored
once on the way out.
"""

from __future__ import annotations

import logging
import os
import signal
import threading
from typing import Dict

from . import KEY_POLL_TIMEOUT, __version__
from .config import SessionConfig
from .exceptions import SerialCommunicationError
from .line_assembler import LineAssembler
from .serial_comm import DeviceSession, SerialConnectionManager
from .symbolicate import AddressSymbolicator
from .terminal import KeyListener, RawTerminal, rprint

logger = logging.getLogger("espmonitor.monitor")

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_SIGNALED = 255

# Signals that end the session the same way an abnormal exit would
_TERMINATING_SIGNALS = tuple(
    sig for sig in (getattr(signal, "SIGTERM", None), getattr(signal, "SIGHUP", None))
    if sig is not None
)


def print_banner() -> None:
    rprint(f"ESPMonitor {__version__}")
    rprint()
    rprint("Commands:")
    rprint("    CTRL+R    Reset chip")
    rprint("    CTRL+C    Exit")
    rprint()


def run(config: SessionConfig) -> int:
    """Run a monitor session until the user quits or something fails.

    Returns:
        ``0`` after CTRL+C, ``1`` after a device or terminal failure, and
        ``255`` when the process was told to terminate by a signal.
    """
    stop_event = threading.Event()
    received: Dict[str, int] = {}

    def on_signal(signum, frame):  # type: ignore[no-untyped-def]
        logger.warning("[MONITOR] Received signal %d — stopping", signum)
        received["signal"] = signum
        stop_event.set()

    previous_handlers = {}
    if threading.current_thread() is threading.main_thread():
        for sig in _TERMINATING_SIGNALS:
            previous_handlers[sig] = signal.signal(sig, on_signal)

    try:
        with RawTerminal() as terminal:
            exit_code = _run_session(config, terminal, stop_event)
    except KeyboardInterrupt:
        # CTRL+C arrived as SIGINT instead of a keystroke
        logger.info("[MONITOR] Interrupted, quitting")
        exit_code = EXIT_OK
    finally:
        for sig, handler in previous_handlers.items():
            signal.signal(sig, handler)

    if "signal" in received:
        return EXIT_SIGNALED
    return exit_code


def _run_session(
    config: SessionConfig,
    terminal: RawTerminal,
    stop_event: threading.Event,
) -> int:
    print_banner()
    rprint(f"Opening {config.serial} with speed {config.baud_rate}")
    logger.info(
        "[MONITOR] Session for %s (%s), symbolication %s",
        config.target, config.serial, "on" if config.bin else "off",
    )

    if config.bin is not None:
        if os.path.exists(config.bin):
            rprint(f"Using {config.bin} as flash image")
        else:
            rprint(f"WARNING: Flash image {config.bin} does not exist (you may need to build it)")

    manager = SerialConnectionManager(config.serial, baud_rate=config.baud_rate)
    listener = None
    try:
        with manager:
            session = DeviceSession(manager)
            if config.reset:
                session.reset_chip()

            symbolicator = AddressSymbolicator(config.bin, config.tool_prefix)
            assembler = LineAssembler(process_line=symbolicator.symbolicate)

            listener = KeyListener(session, terminal, stop_event)
            listener.start()
            try:
                session.run(assembler, rprint, stop_event)
            finally:
                stop_event.set()
                listener.join(timeout=KEY_POLL_TIMEOUT * 4)
    except SerialCommunicationError as exc:
        rprint(f"Error: {exc}")
        return EXIT_FAILURE

    if listener is not None and listener.quit_requested:
        return EXIT_OK
    return EXIT_FAILURE
