"""Serial device access shared between the read loop and the key listener.

``SerialConnectionManager`` opens and closes the port.  ``DeviceSession``
wraps the open port behind a single lock:

* the main thread runs `DeviceSession.run`, holding the lock only for one
  bounded read at a time and sleeping briefly after an empty read;
* the key listener calls `DeviceSession.reset_chip`, which takes the same
  lock, so a reset never interleaves with a read in progress.

Cross-platform: works on both Windows (COMx) and Linux/macOS
(/dev/ttyUSB*, /dev/ttyACM*, /dev/cu.*).

Default line settings: 115200 8N1 (no flow control).
"""

from __future__ import annotations

import errno
import logging
import platform
import threading
import time
from typing import Optional

import serial
import serial.tools.list_ports
from typeguard import typechecked

from . import (
    DEFAULT_BAUD_RATE,
    SERIAL_IDLE_SLEEP,
    SERIAL_READ_CHUNK_SIZE,
    SERIAL_READ_TIMEOUT,
    SERIAL_WRITE_TIMEOUT,
)
from .exceptions import SerialCommunicationError
from .line_assembler import LineAssembler
from .terminal import rprint
from .types import LineSink

logger = logging.getLogger("espmonitor.serial_comm")

_IS_WINDOWS = platform.system() == "Windows"

# OSError codes that mean "nothing to read yet" rather than a dead device
_RETRYABLE_ERRNOS = frozenset(
    code for code in (
        getattr(errno, "EAGAIN", None),
        getattr(errno, "EWOULDBLOCK", None),
        getattr(errno, "ETIMEDOUT", None),
        getattr(errno, "EINTR", None),
    ) if code is not None
)


class SerialConnectionManager:
    """Manages a serial port connection with automatic resource cleanup.

    Example::

        with SerialConnectionManager("/dev/ttyUSB0", baud_rate=115200) as mgr:
            session = DeviceSession(mgr)
            session.reset_chip()
    """

    def __init__(
        self,
        port: str,
        baud_rate: int = DEFAULT_BAUD_RATE,
        read_timeout: float = SERIAL_READ_TIMEOUT,
        write_timeout: Optional[float] = SERIAL_WRITE_TIMEOUT,
    ) -> None:
        """Initialize serial connection manager.

        Args:
            port: Serial port path — e.g. ``/dev/ttyUSB0`` (Linux) or ``COM3`` (Windows).
            baud_rate: Baud rate (default: 115200).
            read_timeout: Upper bound for one blocking read, in seconds.
                          Default: 0.2.
            write_timeout: Write timeout in seconds.  ``None`` blocks forever.

        Raises:
            SerialCommunicationError: If any parameter value is invalid.
        """
        self.port = port
        self.baud_rate = baud_rate
        self.read_timeout = read_timeout
        self.write_timeout = write_timeout
        self._serial: Optional[serial.Serial] = None

        if baud_rate <= 0:
            raise SerialCommunicationError(
                f"Invalid baud rate {baud_rate!r} for port {port}. "
                f"Baud rate must be a positive integer. "
                f"Common values: 9600, 74880, 115200, 921600."
            )

        if read_timeout < 0:
            raise SerialCommunicationError(
                f"Invalid read_timeout {read_timeout!r} for port {port}. "
                f"Must be 0 (non-blocking) or a positive number of seconds."
            )

        logger.info(
            "[SERIAL-INIT] Configured %s — %d 8N1 (read_timeout=%.2fs, write_timeout=%s)",
            port, baud_rate, read_timeout,
            f"{write_timeout:.2f}s" if write_timeout is not None else "None (blocking)",
        )

    def open(self, context: str) -> None:
        """Open the serial port.

        DTR and RTS are set deasserted before the port opens so that opening
        does not pulse the chip's reset circuit.

        Args:
            context: Description of the purpose, embedded into error messages.

        Raises:
            SerialCommunicationError: If the port cannot be opened.  The error
                message includes the OS-level reason, the port path, and
                platform-specific troubleshooting hints.
        """
        if self._serial is not None and self._serial.is_open:
            logger.debug("[SERIAL-OPEN] [%s] Port %s is already open — skipping", context, self.port)
            return

        logger.info(
            "[SERIAL-OPEN] [%s] Opening %s at %d baud ...", context, self.port, self.baud_rate,
        )

        ser = serial.Serial()
        ser.port = self.port
        ser.baudrate = self.baud_rate
        ser.bytesize = serial.EIGHTBITS
        ser.parity = serial.PARITY_NONE
        ser.stopbits = serial.STOPBITS_ONE
        ser.timeout = self.read_timeout
        ser.write_timeout = self.write_timeout
        ser.dtr = False
        ser.rts = False

        try:
            ser.open()
        except (serial.SerialException, OSError) as exc:
            hint = self._platform_hint()
            msg = (
                f"[{context}] Failed to open serial port {self.port} at {self.baud_rate} baud: {exc}. "
                f"{hint}"
            )
            logger.error("[SERIAL-OPEN] FAILED — %s", msg)
            raise SerialCommunicationError(msg) from exc

        self._serial = ser
        logger.info("[SERIAL-OPEN] [%s] Successfully opened %s", context, self.port)

    def is_open(self) -> bool:
        """Check whether the serial port is currently open."""
        return self._serial is not None and self._serial.is_open

    def close(self) -> None:
        """Close the serial port if open."""
        was_open = self.is_open()

        if self._serial is not None:
            try:
                self._serial.close()
            except Exception as exc:
                logger.warning(
                    "[SERIAL-CLOSE] Error closing port %s: %s", self.port, exc,
                )
            finally:
                self._serial = None

        if was_open:
            logger.info("[SERIAL-CLOSE] Closed %s", self.port)
        else:
            logger.debug(
                "[SERIAL-CLOSE] close() called on already-closed port %s", self.port,
            )

    def get_serial(self) -> serial.Serial:
        """Return the underlying ``serial.Serial`` object.

        Raises:
            SerialCommunicationError: If the port is not open.
        """
        if self._serial is None or not self._serial.is_open:
            raise SerialCommunicationError(
                f"Cannot access serial port {self.port}: port is not open. "
                f"Call open() or use the context manager first."
            )
        return self._serial

    # ---- Context manager ----

    def __enter__(self) -> SerialConnectionManager:
        """Context manager entry — opens the serial port."""
        self.open(context=f"Opening {self.port}")
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:  # type: ignore[no-untyped-def]
        """Context manager exit — ensures the port is closed."""
        self.close()

    # ---- Helpers ----

    def _platform_hint(self) -> str:
        """Return a platform-specific troubleshooting hint."""
        available = ", ".join(p.device for p in serial.tools.list_ports.comports()) or "none"
        if _IS_WINDOWS:
            return (
                "On Windows: verify the COM port number in Device Manager "
                "(Ports → COM & LPT) and that no other program (idf.py monitor, "
                "Arduino IDE, PuTTY) has the port open. "
                f"Available ports: {available}."
            )
        return (
            "On Linux: verify the device path exists (ls /dev/ttyUSB* /dev/ttyACM*) "
            "and that your user is in the 'dialout' group "
            "(sudo usermod -aG dialout $USER). Make sure no other monitor "
            "(idf.py monitor, minicom, screen) has the port open. "
            f"Available ports: {available}."
        )


@typechecked
class DeviceSession:
    """The open device, shared by the read loop and the key listener.

    Every access to the port goes through ``self.lock`` and holds it for
    exactly one operation: one read, or one reset sequence.
    """

    def __init__(
        self,
        connection_manager: SerialConnectionManager,
        chunk_size: int = SERIAL_READ_CHUNK_SIZE,
        idle_sleep_s: float = SERIAL_IDLE_SLEEP,
    ) -> None:
        """Initialize device session.

        Args:
            connection_manager: An **open** ``SerialConnectionManager``.
            chunk_size: Maximum bytes returned by one read.
            idle_sleep_s: Pause after an empty read, with the lock released.
        """
        self.connection_manager = connection_manager
        self.chunk_size = chunk_size
        self.idle_sleep_s = idle_sleep_s
        self.lock = threading.Lock()

    def read_chunk(self) -> bytes:
        """Read whatever the device has sent, waiting at most the read timeout.

        Returns:
            The bytes read, or ``b""`` when the read timed out or the port
            reported it would block.

        Raises:
            SerialCommunicationError: On any other read failure.
        """
        port_name = self.connection_manager.port
        with self.lock:
            ser = self.connection_manager.get_serial()
            try:
                size = min(max(ser.in_waiting, 1), self.chunk_size)
                return ser.read(size)
            except serial.SerialException as exc:
                msg = (
                    f"Serial read error on {port_name}: {exc}. "
                    f"The device may have been disconnected or reset into download mode."
                )
                logger.error("[SERIAL-READ] ERROR — %s", msg)
                raise SerialCommunicationError(msg) from exc
            except OSError as exc:
                if exc.errno in _RETRYABLE_ERRNOS:
                    return b""
                msg = (
                    f"OS error reading from {port_name}: {exc}. "
                    f"The device may have been physically removed."
                )
                logger.error("[SERIAL-READ] OS ERROR — %s", msg)
                raise SerialCommunicationError(msg) from exc

    def reset_chip(self) -> None:
        """Pulse the chip's EN line through the auto-reset circuit.

        DTR is released, then RTS is asserted and released, which pulls EN
        low on the standard ESP32/ESP8266 dev-board wiring while keeping
        GPIO0 high (normal boot, not download mode).

        Raises:
            SerialCommunicationError: If the control lines cannot be set.
        """
        port_name = self.connection_manager.port
        rprint("Resetting device... ", end="")
        with self.lock:
            ser = self.connection_manager.get_serial()
            try:
                ser.dtr = False
                ser.rts = True
                ser.rts = False
            except (serial.SerialException, OSError) as exc:
                msg = f"Failed to reset device on {port_name}: {exc}."
                logger.error("[SERIAL-RESET] ERROR — %s", msg)
                raise SerialCommunicationError(msg) from exc
        logger.info("[SERIAL-RESET] Reset pulse sent on %s", port_name)
        rprint("done")

    def run(
        self,
        assembler: LineAssembler,
        emit: LineSink,
        stop_event: threading.Event,
    ) -> None:
        """Read loop: device bytes -> assembler -> *emit*, until *stop_event*.

        Raises:
            SerialCommunicationError: On a fatal read error.  Lines assembled
                before the failure have already been emitted.
        """
        logger.info("[SERIAL-LOOP] Read loop started on %s", self.connection_manager.port)
        while not stop_event.is_set():
            chunk = self.read_chunk()
            if chunk:
                for line in assembler.feed(chunk):
                    emit(line)
                continue

            flushed = assembler.check_timeout()
            if flushed is not None:
                emit(flushed)
            # Give the key listener a chance to take the lock for a reset
            time.sleep(self.idle_sleep_s)
        logger.info("[SERIAL-LOOP] Read loop stopped on %s", self.connection_manager.port)
