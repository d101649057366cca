"""Common types used across tmcsync modules.

Classes:
    InstrumentIdentity: Instrument identification metadata.
    Timestamp: High-resolution timestamp with nanosecond precision.
"""

from __future__ import annotations

import time
from dataclasses import dataclass


@dataclass(frozen=True)
class InstrumentIdentity:
    """Instrument identification metadata.

    Represents the four standard fields returned by the IEEE 488.2 ``*IDN?``
    query.

    Attributes:
        manufacturer: Instrument manufacturer name (e.g., "KEYSIGHT TECHNOLOGIES").
        model: Instrument model number or name (e.g., "DSO-X 2024A").
        serial: Serial number string.
        firmware: Firmware or hardware version string.

    Example:
        >>> identity = InstrumentIdentity(
        ...     manufacturer="KEYSIGHT TECHNOLOGIES",
        ...     model="DSO-X 2024A",
        ...     serial="MY12345678",
        ...     firmware="02.43.2018020635"
        ... )
    """

    manufacturer: str
    model: str
    serial: str
    firmware: str

    def __str__(self) -> str:
        return f"{self.manufacturer} {self.model} (SN {self.serial}, FW {self.firmware})"


@dataclass(frozen=True)
class Timestamp:
    """High-resolution timestamp with nanosecond precision.

    Timestamps are stored as nanoseconds since the Unix epoch
    (1970-01-01 00:00:00 UTC).

    Attributes:
        unix_ns: Nanoseconds since Unix epoch.
    """

    unix_ns: int

    @classmethod
    def now(cls) -> Timestamp:
        """Create a timestamp for the current time."""
        return cls(unix_ns=time.time_ns())

    def seconds_since(self, earlier: Timestamp) -> float:
        """Return the elapsed seconds between *earlier* and this timestamp.

        Args:
            earlier: The reference timestamp.

        Returns:
            Elapsed seconds; negative if *earlier* is later than this one.
        """
        return (self.unix_ns - earlier.unix_ns) / 1_000_000_000
