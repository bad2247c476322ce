"""Custom exceptions for monitor operations."""

from __future__ import annotations


class EspMonitorError(Exception):
    """Common base exception for all espmonitor errors."""
    pass


class ConfigurationError(EspMonitorError):
    """Exception for invalid chip, framework, target or session settings.

    Always raised before the serial device is opened.
    """
    pass


class SerialCommunicationError(EspMonitorError):
    """Base exception for serial communication errors.

    Raised when the serial port cannot be opened, configured, read from,
    or when toggling the control lines fails.  Read timeouts are *not*
    errors: they are the normal outcome of an idle poll.
    """
    pass


class SymbolicationError(EspMonitorError):
    """Exception for a failed ``addr2line`` lookup.

    Attributes:
        address: The address token that could not be resolved.
    """

    def __init__(self, message: str, *, address: str) -> None:
        super().__init__(message)
        self.address = address


class TerminalInputError(EspMonitorError):
    """Exception for failures reading keystrokes from the controlling terminal."""
    pass
