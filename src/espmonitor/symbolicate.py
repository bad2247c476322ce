"""Program-address symbolication with the toolchain's ``addr2line``.

Panic handlers on the ESP32 family print raw program counters such as::

    Guru Meditation Error: Core  0 panic'ed (LoadProhibited)
    PC      : 0x400d1234  PS      : 0x00060330
    Backtrace:0x400d1234:0x3ffb5678 0x400d5678:0x3ffb9abc

Executable code lives in the ``0x4xxxxxxx`` region, so every
``0x4`` + 7 hex digit token is looked up with::

    xtensa-esp32-elf-addr2line -pfiaCe firmware.elf 0x400d1234

and annotated in place as ``0x400d1234 [app_main:/src/main.c:42]``.
Lookup failures of any kind leave the token untouched; they are logged at
DEBUG level and never reach the caller.
"""

from __future__ import annotations

import dataclasses
import logging
import re
import subprocess
from typing import Dict, List, Optional

from typeguard import typechecked

from . import ADDR2LINE_TIMEOUT
from .exceptions import SymbolicationError
from .types import SymbolLocation

logger = logging.getLogger("espmonitor.symbolicate")

# 32-bit address in the instruction bus region
FUNC_ADDR_RE = re.compile(r"0x4[0-9a-f]{7}")

# First line of `addr2line -pfiaC` output:
#   0x400d1234: app_main at /home/me/proj/main/main.c:42
#   0x400d1234: foo at ??:?
# A bare "?? ??:0" (nothing known) has no "at" and counts as unresolved.
# The address prefix is only printed with -a; the line may be followed by
# " (discriminator N)".  The path is greedy so Windows drive letters survive.
ADDR2LINE_RE = re.compile(
    r"^(?:0x[0-9a-fA-F]+:)?\s*([^ ]+)\s+at\s+(\?\?|.+):(\?|[0-9]+)"
)


@dataclasses.dataclass(frozen=True)
class SymbolMatch:
    """One address token found in a line.

    Attributes:
        address: The matched token, e.g. ``"0x400d1234"``.
        start: Offset of the token in the line.
        end: Offset one past the token.
        location: ``(function, file, line)`` when resolved, else ``None``.
    """
    address: str
    start: int
    end: int
    location: Optional[SymbolLocation] = None

    @property
    def annotated(self) -> str:
        """The replacement text for this occurrence."""
        if self.location is None:
            return self.address
        function, file, line = self.location
        return f"{self.address} [{function}:{file}:{line}]"


def parse_addr2line_output(output: str) -> Optional[SymbolLocation]:
    """Parse the first line of ``addr2line -pfiaC`` output.

    Returns ``(function, file, line)`` or ``None`` when the output does not
    follow the expected grammar.  Unknown components keep their ``??``/``?``
    placeholders.
    """
    first_line = output.split("\n", 1)[0].rstrip("\r")
    match = ADDR2LINE_RE.match(first_line)
    if match is None:
        return None
    return (match.group(1), match.group(2), match.group(3))


@typechecked
class AddressSymbolicator:
    """Annotates program addresses in log lines.

    Example::

        symbolicator = AddressSymbolicator("build/app.elf", "xtensa-esp32-elf-")
        print(symbolicator.symbolicate("PC      : 0x400d1234"))
        # PC      : 0x400d1234 [app_main:/src/main.c:42]

    With ``binary_path=None`` every line is returned unchanged.
    """

    def __init__(
        self,
        binary_path: Optional[str],
        tool_prefix: str,
        timeout_s: float = ADDR2LINE_TIMEOUT,
    ) -> None:
        """Initialize symbolicator.

        Args:
            binary_path: ELF image matching the firmware on the device, or
                ``None`` to disable symbolication.
            tool_prefix: Toolchain prefix, e.g. ``xtensa-esp32-elf-``.
            timeout_s: Upper bound for a single ``addr2line`` run.
        """
        self.binary_path = binary_path
        self.tool_prefix = tool_prefix
        self.timeout_s = timeout_s

    @property
    def tool(self) -> str:
        """Name of the addr2line executable for this toolchain."""
        return f"{self.tool_prefix}addr2line"

    def find_addresses(self, line: str) -> List[SymbolMatch]:
        """Return every address token in *line*, unresolved, in order."""
        return [
            SymbolMatch(address=m.group(0), start=m.start(), end=m.end())
            for m in FUNC_ADDR_RE.finditer(line)
        ]

    def resolve_address(self, address: str) -> SymbolLocation:
        """Run ``addr2line`` for one address token.

        Raises:
            SymbolicationError: If the tool cannot be run, exits non-zero,
                times out, or prints something that is not a location.
        """
        if self.binary_path is None:
            raise SymbolicationError(
                f"Cannot resolve {address}: no binary configured", address=address,
            )

        cmd = [self.tool, "-pfiaCe", self.binary_path, address]
        try:
            result = subprocess.run(
                cmd,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.DEVNULL,
                timeout=self.timeout_s,
            )
        except subprocess.TimeoutExpired as exc:
            raise SymbolicationError(
                f"{self.tool} timed out after {self.timeout_s:.1f}s resolving {address}",
                address=address,
            ) from exc
        except OSError as exc:
            raise SymbolicationError(
                f"Cannot run {self.tool} for {address}: {exc}. "
                f"Make sure the toolchain's bin directory is on PATH.",
                address=address,
            ) from exc

        if result.returncode != 0:
            raise SymbolicationError(
                f"{self.tool} exited with code {result.returncode} for {address}",
                address=address,
            )

        try:
            output = result.stdout.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise SymbolicationError(
                f"{self.tool} printed non-UTF-8 output for {address}: {exc}",
                address=address,
            ) from exc

        location = parse_addr2line_output(output)
        if location is None:
            raise SymbolicationError(
                f"Unrecognized {self.tool} output for {address}: {output[:80]!r}",
                address=address,
            )
        return location

    def symbolicate(self, line: str) -> str:
        """Return *line* with every resolvable address annotated.

        Each occurrence is handled on its own: a failed lookup leaves that
        token verbatim and does not stop the remaining ones.
        """
        if self.binary_path is None:
            return line

        matches = self.find_addresses(line)
        if not matches:
            return line

        # Same token twice in one line -> one lookup
        resolved: Dict[str, Optional[SymbolLocation]] = {}
        for match in matches:
            if match.address in resolved:
                continue
            try:
                resolved[match.address] = self.resolve_address(match.address)
            except SymbolicationError as exc:
                logger.debug("[SYMBOLICATE] %s", exc)
                resolved[match.address] = None

        pieces = []
        cursor = 0
        for match in matches:
            match = dataclasses.replace(match, location=resolved[match.address])
            pieces.append(line[cursor:match.start])
            pieces.append(match.annotated)
            cursor = match.end
        pieces.append(line[cursor:])
        return "".join(pieces)


def symbolicate(line: str, binary_path: Optional[str], tool_prefix: str) -> str:
    """Annotate the program addresses in *line* (see `AddressSymbolicator`)."""
    return AddressSymbolicator(binary_path, tool_prefix).symbolicate(line)
