"""
ESPMonitor - serial console for ESP32 / ESP8266 microcontrollers

This package watches the serial output of an Espressif chip from a terminal.
It includes:

- **Line reassembly** of an arbitrarily fragmented byte stream, with a
  forced flush for lines the device never finishes
- **Address symbolication** of ``0x4xxxxxxx`` program addresses through the
  toolchain's ``addr2line``
- **Chip reset** over the DTR/RTS auto-reset circuit (CTRL+R)
- **Raw terminal handling** that is restored on every exit path

Default line settings are 115200 8N1 (no flow control).
"""

import logging
import os

logging.getLogger("espmonitor").addHandler(logging.NullHandler())

__version__ = "0.1.0"

# Serial communication settings
DEFAULT_BAUD_RATE = 115200
SERIAL_READ_TIMEOUT = 0.2     # seconds, bounded so the key listener can take the lock
SERIAL_WRITE_TIMEOUT = 10     # seconds
SERIAL_READ_CHUNK_SIZE = 1024  # max bytes handed to the line assembler per read
SERIAL_IDLE_SLEEP = 0.025     # seconds, pause after an empty read

# Keyboard polling
KEY_POLL_TIMEOUT = 0.25       # seconds

# Line assembly
UNFINISHED_LINE_TIMEOUT = 5.0  # seconds before a dangling fragment is printed anyway

# Symbolication
ADDR2LINE_TIMEOUT = 10.0      # seconds per addr2line invocation

# Default serial device.  Override via the ESPMONITOR_PORT environment
# variable or the SERIAL_DEVICE argument.
#   Linux:   /dev/ttyUSB0, /dev/ttyACM0
#   Windows: COM3
DEFAULT_SERIAL_PORT = os.environ.get("ESPMONITOR_PORT", "")
