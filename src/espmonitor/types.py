"""Type definitions for ESPMonitor."""

from typing import Callable, Tuple

# Symbolication types
SymbolLocation = Tuple[str, str, str]  # (function, file, line)

# Line pipeline types
LineProcessor = Callable[[str], str]  # completed line -> annotated line
LineSink = Callable[[str], None]  # receives each line ready for display
