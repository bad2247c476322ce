"""Session configuration: target chip, framework and serial settings.

Chip and framework can be given by name (``esp32``, ``esp-idf``) or derived
from a Rust-style target triple such as ``xtensa-esp32-espidf``.  Every
validation problem raises `.ConfigurationError` before a device is touched.
"""

from __future__ import annotations

import dataclasses
import enum
from typing import Optional

from . import DEFAULT_BAUD_RATE
from .exceptions import ConfigurationError


class Framework(enum.Enum):
    """Software framework the firmware was built against."""

    BAREMETAL = "baremetal"
    ESP_IDF = "esp-idf"

    @classmethod
    def from_name(cls, name: str) -> Framework:
        """Parse a framework name as typed on the command line."""
        if name == "baremetal":
            return cls.BAREMETAL
        if name in ("esp-idf", "espidf"):
            return cls.ESP_IDF
        raise ConfigurationError(f"'{name}' is not a valid framework")

    @classmethod
    def from_target(cls, target: str) -> Framework:
        """Derive the framework from a target triple suffix."""
        if target.endswith("-espidf"):
            return cls.ESP_IDF
        if target.endswith("-none-elf"):
            return cls.BAREMETAL
        raise ConfigurationError(f"Can't figure out framework from target '{target}'")


# Chip -> (name used in target triples, toolchain prefix)
_CHIP_TOOLCHAINS = {
    "ESP32": ("esp32", "xtensa-esp32-elf-"),
    "ESP32S2": ("esp32s2", "xtensa-esp32s2-elf-"),
    "ESP8266": ("esp8266", "xtensa-esp8266-elf-"),
}

# Suffix appended to "xtensa-<chip>-" for each framework
_FRAMEWORK_TARGET_SUFFIX = {
    Framework.BAREMETAL: "none-elf",
    Framework.ESP_IDF: "espidf",
}


class Chip(enum.Enum):
    """Supported Espressif chip families."""

    ESP32 = "esp32"
    ESP32S2 = "esp32s2"
    ESP8266 = "esp8266"

    @classmethod
    def from_name(cls, name: str) -> Chip:
        """Parse a chip name as accepted by ``--chip``.

        Only ``esp32`` and ``esp8266`` are selectable by name; the S2 is
        reachable through `from_target`.
        """
        if name == "esp32":
            return cls.ESP32
        if name == "esp8266":
            return cls.ESP8266
        raise ConfigurationError(f"'{name}' is not a valid chip")

    @classmethod
    def from_target(cls, target: str) -> Chip:
        """Derive the chip from a target triple such as ``xtensa-esp32-none-elf``."""
        for chip in cls:
            if f"-{_CHIP_TOOLCHAINS[chip.name][0]}-" in target:
                return chip
        raise ConfigurationError(f"Can't figure out chip from target '{target}'")

    @property
    def tool_prefix(self) -> str:
        """Prefix of the GNU binutils for this chip, e.g. ``xtensa-esp32-elf-``."""
        return _CHIP_TOOLCHAINS[self.name][1]

    def target(self, framework: Framework) -> str:
        """Build the target triple for this chip and *framework*."""
        return f"xtensa-{_CHIP_TOOLCHAINS[self.name][0]}-{_FRAMEWORK_TARGET_SUFFIX[framework]}"


@dataclasses.dataclass(frozen=True)
class SessionConfig:
    """Everything one monitor session needs, fixed for its lifetime.

    Attributes:
        serial: Serial device path (``/dev/ttyUSB0``, ``COM3``).
        chip: Target chip family.
        framework: Target framework.
        speed: Explicit baud rate, or ``None`` for 115200.
        bin: Path to the ELF image matching the device firmware, used for
            symbolication.  ``None`` disables symbolication.
        reset: Reset the chip right after opening the port.
    """

    serial: str
    chip: Chip = Chip.ESP32
    framework: Framework = Framework.BAREMETAL
    speed: Optional[int] = None
    bin: Optional[str] = None
    reset: bool = True

    def __post_init__(self) -> None:
        if not self.serial:
            raise ConfigurationError(
                "No serial device given. Pass SERIAL_DEVICE or set ESPMONITOR_PORT."
            )
        if self.speed is not None and self.speed <= 0:
            raise ConfigurationError(
                f"Invalid baud rate {self.speed!r}. Baud rate must be a positive "
                f"integer. Common values: 9600, 74880, 115200, 921600."
            )

    @classmethod
    def from_target(cls, serial: str, target: str, **kwargs) -> SessionConfig:
        """Build a config whose chip and framework come from *target*."""
        return cls(
            serial=serial,
            chip=Chip.from_target(target),
            framework=Framework.from_target(target),
            **kwargs,
        )

    @property
    def baud_rate(self) -> int:
        return self.speed if self.speed is not None else DEFAULT_BAUD_RATE

    @property
    def tool_prefix(self) -> str:
        return self.chip.tool_prefix

    @property
    def target(self) -> str:
        return self.chip.target(self.framework)
