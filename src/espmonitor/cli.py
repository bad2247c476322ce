"""Command-line interface for ESPMonitor."""

from __future__ import annotations

import argparse
import logging
import sys
from typing import List, Optional

from . import DEFAULT_BAUD_RATE, DEFAULT_SERIAL_PORT, __version__
from .config import Chip, Framework, SessionConfig
from .exceptions import ConfigurationError, EspMonitorError
from .monitor import EXIT_FAILURE, run


def build_parser() -> argparse.ArgumentParser:
    """Build the argument parser."""
    parser = argparse.ArgumentParser(
        prog="espmonitor",
        description="Serial monitor for ESP32/ESP8266 with panic address decoding",
        epilog="While running: CTRL+R resets the chip, CTRL+C exits.",
    )

    parser.add_argument(
        "serial", metavar="SERIAL_DEVICE", nargs="?", default=DEFAULT_SERIAL_PORT,
        help="Path to the serial device (default: $ESPMONITOR_PORT)",
    )
    parser.add_argument(
        "--chip", default="esp32",
        help="Which ESP chip to target: esp32 or esp8266 (default: esp32)",
    )
    parser.add_argument(
        "--framework", default="baremetal",
        help="Framework the firmware uses: baremetal or esp-idf (default: baremetal)",
    )
    parser.add_argument(
        "--target", default=None,
        help="Target triple, e.g. xtensa-esp32-espidf. "
             "Overrides --chip and --framework.",
    )
    parser.add_argument(
        "--speed", type=int, default=None, metavar="BAUD",
        help=f"Baud rate of serial device (default: {DEFAULT_BAUD_RATE})",
    )
    parser.add_argument(
        "--bin", default=None, metavar="BINARY",
        help="Path to executable matching what is on the device",
    )

    reset_group = parser.add_mutually_exclusive_group()
    reset_group.add_argument(
        "--reset", dest="reset", action="store_true", default=True,
        help="Reset the chip on start (default)",
    )
    reset_group.add_argument(
        "--no-reset", dest="reset", action="store_false",
        help="Do not reset the chip on start",
    )

    parser.add_argument(
        "--log-file", default=None, metavar="PATH",
        help="Write diagnostic logs to PATH (the terminal shows device output only)",
    )
    parser.add_argument(
        "-v", "--verbose", action="store_true", default=False,
        help="Log at DEBUG level (with --log-file)",
    )
    parser.add_argument(
        "--version", action="version", version=f"%(prog)s {__version__}",
    )
    return parser


def config_from_args(args: argparse.Namespace) -> SessionConfig:
    """Turn parsed arguments into a `.SessionConfig`.

    Raises:
        ConfigurationError: For an unknown chip, framework or target, a
            missing serial device, or a non-positive baud rate.
    """
    if args.target:
        chip = Chip.from_target(args.target)
        framework = Framework.from_target(args.target)
    else:
        chip = Chip.from_name(args.chip)
        framework = Framework.from_name(args.framework)

    return SessionConfig(
        serial=args.serial or "",
        chip=chip,
        framework=framework,
        speed=args.speed,
        bin=args.bin,
        reset=args.reset,
    )


def configure_logging(log_file: Optional[str], verbose: bool) -> None:
    """Send library logs to *log_file*; without one, logging stays silent."""
    if not log_file:
        return
    logging.basicConfig(
        filename=log_file,
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s | %(levelname)-7s | %(threadName)s | %(name)s | %(message)s",
    )


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point for CLI."""
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        config = config_from_args(args)
    except ConfigurationError as e:
        print(f"Error: {e}")
        print()
        parser.print_usage()
        return EXIT_FAILURE

    configure_logging(args.log_file, args.verbose)

    try:
        return run(config)
    except EspMonitorError as e:
        print(f"Error: {str(e)}", file=sys.stderr)
        return EXIT_FAILURE


if __name__ == "__main__":
    sys.exit(main())
