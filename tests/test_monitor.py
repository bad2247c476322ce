"""
Monitor session test suite.

Runs `espmonitor.monitor.run` end to end against a ``FakeSerial`` device,
with the raw terminal and key listener replaced by fakes.

Run with full visibility:
    pytest tests/test_monitor.py -v -s
"""

from __future__ import annotations

import errno
import os
import platform
import signal
import subprocess
import threading
from unittest.mock import patch

import pytest

from conftest import FakeSerial

from espmonitor import __version__, monitor
from espmonitor.config import SessionConfig
from espmonitor.serial_comm import SerialConnectionManager

_IS_WINDOWS = platform.system() == "Windows"


class FakeTerminal:
    """RawTerminal stand-in that records enter/restore."""

    instances = []

    def __init__(self) -> None:
        self.entered = 0
        self.restored = 0
        FakeTerminal.instances.append(self)

    def __enter__(self):
        self.entered += 1
        return self

    def __exit__(self, *exc_info):
        self.restored += 1


def _listener_factory(on_start):
    """Build a KeyListener stand-in whose start() runs *on_start(listener)*."""

    class FakeListener:
        def __init__(self, session, terminal, stop_event) -> None:
            self.session = session
            self.stop_event = stop_event
            self.quit_requested = False
            self.error = None

        def start(self) -> None:
            on_start(self)

        def join(self, timeout=None) -> None:
            pass

    return FakeListener


def _quit_immediately(listener) -> None:
    listener.quit_requested = True
    listener.stop_event.set()


def _quit_when_idle(device: FakeSerial):
    """on_start hook that quits once *device* has no more data."""
    drained = threading.Event()
    device.on_empty = drained.set

    def on_start(listener) -> None:
        def wait_then_quit() -> None:
            drained.wait(timeout=5)
            _quit_immediately(listener)
        threading.Thread(target=wait_then_quit, daemon=True).start()

    return on_start


@pytest.fixture()
def device():
    """Patch the connection manager so opening yields a FakeSerial."""
    fake = FakeSerial()

    class FakeManager(SerialConnectionManager):
        def open(self, context: str) -> None:
            self._serial = fake

    with patch("espmonitor.monitor.SerialConnectionManager", FakeManager):
        yield fake


@pytest.fixture(autouse=True)
def fake_terminal():
    FakeTerminal.instances = []
    with patch("espmonitor.monitor.RawTerminal", FakeTerminal):
        yield


def _run(config: SessionConfig, on_start=_quit_immediately) -> int:
    with patch("espmonitor.monitor.KeyListener", _listener_factory(on_start)):
        return monitor.run(config)


# ═══════════════════════════════════════════════════════════════════════════
#  TESTS — Output
# ═══════════════════════════════════════════════════════════════════════════

class TestSessionOutput:

    def test_banner_and_open_message(self, device, capsys) -> None:
        assert _run(SessionConfig(serial="/dev/ttyUSB0", reset=False)) == 0
        out = capsys.readouterr().out
        assert out.startswith(
            f"ESPMonitor {__version__}\r\n"
            "\r\n"
            "Commands:\r\n"
            "    CTRL+R    Reset chip\r\n"
            "    CTRL+C    Exit\r\n"
            "\r\n"
            "Opening /dev/ttyUSB0 with speed 115200\r\n"
        )
        assert "Resetting" not in out

    def test_reset_on_start(self, device, capsys) -> None:
        assert _run(SessionConfig(serial="/dev/ttyUSB0", speed=74880)) == 0
        out = capsys.readouterr().out
        assert "Opening /dev/ttyUSB0 with speed 74880\r\n" in out
        assert "Resetting device... done\r\n" in out
        assert device.events == [("dtr", False), ("rts", True), ("rts", False)]

    def test_missing_binary_warning(self, device, capsys, tmp_path) -> None:
        missing = str(tmp_path / "nope.elf")
        _run(SessionConfig(serial="/dev/ttyUSB0", bin=missing, reset=False))
        out = capsys.readouterr().out
        assert f"WARNING: Flash image {missing} does not exist (you may need to build it)\r\n" in out

    def test_existing_binary_message(self, device, capsys, tmp_path) -> None:
        elf = tmp_path / "app.elf"
        elf.write_bytes(b"\x7fELF")
        _run(SessionConfig(serial="/dev/ttyUSB0", bin=str(elf), reset=False))
        assert f"Using {elf} as flash image\r\n" in capsys.readouterr().out

    def test_device_lines_printed_until_quit(self, device, capsys) -> None:
        device.chunks = [b"rst:0x1 (POWERON_RESET)\r\n", b"I (29) boot: ", b"ready\n"]
        config = SessionConfig(serial="/dev/ttyUSB0", reset=False)
        assert _run(config, on_start=_quit_when_idle(device)) == 0
        out = capsys.readouterr().out
        assert "rst:0x1 (POWERON_RESET)\r\r\n" in out
        assert "I (29) boot: ready\r\n" in out

    @patch("espmonitor.symbolicate.subprocess.run")
    def test_addresses_symbolicated(self, mock_run, device, capsys, tmp_path) -> None:
        mock_run.return_value = subprocess.CompletedProcess(
            args=[], returncode=0, stdout=b"0x400d1234: app_main at main.c:9\n",
        )
        elf = tmp_path / "app.elf"
        elf.write_bytes(b"\x7fELF")
        device.chunks = [b"PC      : 0x400d1234\n"]
        config = SessionConfig(serial="/dev/ttyUSB0", bin=str(elf), reset=False)
        assert _run(config, on_start=_quit_when_idle(device)) == 0
        assert "PC      : 0x400d1234 [app_main:main.c:9]\r\n" in capsys.readouterr().out
        assert mock_run.call_args[0][0][0] == "xtensa-esp32-elf-addr2line"


# ═══════════════════════════════════════════════════════════════════════════
#  TESTS — Exit codes
# ═══════════════════════════════════════════════════════════════════════════

class TestExitCodes:

    def test_quit_is_zero(self, device) -> None:
        assert _run(SessionConfig(serial="/dev/ttyUSB0", reset=False)) == monitor.EXIT_OK == 0

    def test_listener_failure_is_one(self, device) -> None:
        def fail(listener) -> None:
            listener.error = RuntimeError("terminal gone")
            listener.stop_event.set()

        assert _run(SessionConfig(serial="/dev/ttyUSB0", reset=False), on_start=fail) == 1

    def test_device_failure_is_one(self, device, capsys) -> None:
        device.read_error = OSError(errno.EIO, "Input/output error")
        assert _run(SessionConfig(serial="/dev/ttyUSB0", reset=False), on_start=lambda l: None) == 1
        assert "Error: OS error reading from /dev/ttyUSB0" in capsys.readouterr().out

    def test_keyboard_interrupt_is_quit(self, device) -> None:
        device.read_error = KeyboardInterrupt()
        config = SessionConfig(serial="COM3", reset=False)
        assert _run(config, on_start=lambda l: None) == monitor.EXIT_OK
        (terminal,) = FakeTerminal.instances
        assert terminal.restored == 1
        assert not device.is_open

    def test_open_failure_is_one(self, capsys) -> None:
        config = SessionConfig(serial="/dev/ttyNONEXISTENT_99", reset=False)
        assert _run(config) == 1
        assert "Error: [Opening /dev/ttyNONEXISTENT_99] Failed to open serial port" in capsys.readouterr().out

    @pytest.mark.skipif(_IS_WINDOWS, reason="SIGTERM delivery to self requires POSIX")
    def test_sigterm_is_255(self, device) -> None:
        previous = signal.getsignal(signal.SIGTERM)

        def terminate(listener) -> None:
            os.kill(os.getpid(), signal.SIGTERM)

        assert _run(SessionConfig(serial="/dev/ttyUSB0", reset=False), on_start=terminate) == 255
        assert signal.getsignal(signal.SIGTERM) is previous


# ═══════════════════════════════════════════════════════════════════════════
#  TESTS — Terminal restoration
# ═══════════════════════════════════════════════════════════════════════════

class TestTerminalRestoration:

    def test_restored_after_quit(self, device) -> None:
        _run(SessionConfig(serial="/dev/ttyUSB0", reset=False))
        (terminal,) = FakeTerminal.instances
        assert (terminal.entered, terminal.restored) == (1, 1)

    def test_restored_after_device_failure(self, device) -> None:
        device.read_error = OSError(errno.EIO, "Input/output error")
        _run(SessionConfig(serial="/dev/ttyUSB0", reset=False), on_start=lambda l: None)
        (terminal,) = FakeTerminal.instances
        assert (terminal.entered, terminal.restored) == (1, 1)

    def test_restored_after_unexpected_error(self, device) -> None:
        def explode(listener) -> None:
            raise RuntimeError("unexpected")

        with pytest.raises(RuntimeError):
            _run(SessionConfig(serial="/dev/ttyUSB0", reset=False), on_start=explode)
        (terminal,) = FakeTerminal.instances
        assert terminal.restored == 1
