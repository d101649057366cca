"""Configuration loading for tmcsync.

A config file ties together the instrument address, the synchronization
timing defaults, the block transfer chunk size, and the instrument-specific
command strings used by the driver check suite.

Example YAML:
    instrument:
      resource: "USB0::0x0957::0x1796::MY00000000::INSTR"
      timeout_ms: 5000

    sync:
      poll_interval_ms: 10
      poll_cap: 100
      notify_timeout_s: 5.0

    block:
      chunk_size: 1024

    suite:
      measure_query: ":MEAS:FREQ?;VRMS?;VPP? CHAN1"
      operation_command: ":DIG CHAN1"
      srq_iterations: 100
      srq_timeout_ms: 1000

Every section and field is optional.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml


@dataclass(frozen=True)
class InstrumentConfig:
    """Instrument connection configuration.

    Attributes:
        resource: VISA resource string, or None when given on the command line.
        timeout_ms: Transport I/O timeout in milliseconds.
    """

    resource: str | None = None
    timeout_ms: int = 5000

    def __post_init__(self) -> None:
        if self.timeout_ms <= 0:
            raise ValueError("instrument.timeout_ms must be > 0")


@dataclass(frozen=True)
class SyncConfig:
    """Synchronization timing defaults.

    The defaults give an active poll of about one second: 100 reads spaced
    10 ms apart.

    Attributes:
        poll_interval_s: Delay between active status byte polls.
        poll_cap: Maximum number of active polls.
        notify_timeout_s: Bound for notification and timed waits without
            an explicit timeout.
    """

    poll_interval_s: float = 0.01
    poll_cap: int = 100
    notify_timeout_s: float = 5.0

    def __post_init__(self) -> None:
        if self.poll_interval_s < 0:
            raise ValueError("sync.poll_interval_ms must be >= 0")
        if self.poll_cap < 1:
            raise ValueError("sync.poll_cap must be >= 1")
        if self.notify_timeout_s <= 0:
            raise ValueError("sync.notify_timeout_s must be > 0")


@dataclass(frozen=True)
class BlockConfig:
    """Binary block transfer configuration.

    Attributes:
        chunk_size: Largest single read issued while collecting a payload.
    """

    chunk_size: int = 1024

    def __post_init__(self) -> None:
        if self.chunk_size < 1:
            raise ValueError("block.chunk_size must be >= 1")


@dataclass(frozen=True)
class SuiteConfig:
    """Instrument-specific strings and counts for the driver check suite.

    Attributes:
        measure_query: Compound query whose response has several ``;``
            separated parts.
        operation_command: Command that starts an overlapped operation.
        srq_iterations: Query/wait round trips in the ``srq`` check.
        srq_timeout_ms: Bound used by the ``wait_for_srq`` timing check.
    """

    measure_query: str = "*IDN?;*ESE?;*SRE?"
    operation_command: str = "*WAI"
    srq_iterations: int = 100
    srq_timeout_ms: int = 1000

    def __post_init__(self) -> None:
        if not self.measure_query:
            raise ValueError("suite.measure_query must be non-empty")
        if not self.operation_command:
            raise ValueError("suite.operation_command must be non-empty")
        if self.srq_iterations < 1:
            raise ValueError("suite.srq_iterations must be >= 1")
        if self.srq_timeout_ms <= 0:
            raise ValueError("suite.srq_timeout_ms must be > 0")


@dataclass(frozen=True)
class TmcsyncConfig:
    """Complete tmcsync configuration."""

    instrument: InstrumentConfig = field(default_factory=InstrumentConfig)
    sync: SyncConfig = field(default_factory=SyncConfig)
    block: BlockConfig = field(default_factory=BlockConfig)
    suite: SuiteConfig = field(default_factory=SuiteConfig)
    source_path: Path | None = None


def _section(data: dict[str, Any], name: str) -> dict[str, Any]:
    section = data.get(name) or {}
    if not isinstance(section, dict):
        raise ValueError(f"Config section '{name}' must be a mapping")
    return section


def config_from_dict(data: dict[str, Any], source_path: Path | None = None) -> TmcsyncConfig:
    """Build a :class:`TmcsyncConfig` from parsed YAML data.

    Raises:
        ValueError: If a section is not a mapping or a value is invalid.
    """
    instrument_data = _section(data, "instrument")
    sync_data = _section(data, "sync")
    block_data = _section(data, "block")
    suite_data = _section(data, "suite")

    instrument = InstrumentConfig(
        resource=instrument_data.get("resource"),
        timeout_ms=int(instrument_data.get("timeout_ms", 5000)),
    )
    sync = SyncConfig(
        poll_interval_s=float(sync_data.get("poll_interval_ms", 10)) / 1000.0,
        poll_cap=int(sync_data.get("poll_cap", 100)),
        notify_timeout_s=float(sync_data.get("notify_timeout_s", 5.0)),
    )
    block = BlockConfig(chunk_size=int(block_data.get("chunk_size", 1024)))
    defaults = SuiteConfig()
    suite = SuiteConfig(
        measure_query=str(suite_data.get("measure_query", defaults.measure_query)),
        operation_command=str(suite_data.get("operation_command", defaults.operation_command)),
        srq_iterations=int(suite_data.get("srq_iterations", defaults.srq_iterations)),
        srq_timeout_ms=int(suite_data.get("srq_timeout_ms", defaults.srq_timeout_ms)),
    )
    return TmcsyncConfig(
        instrument=instrument,
        sync=sync,
        block=block,
        suite=suite,
        source_path=source_path,
    )


def load_config(path: str | Path) -> TmcsyncConfig:
    """Load configuration from a YAML file.

    Args:
        path: Path to the configuration YAML file.

    Returns:
        Parsed TmcsyncConfig.

    Raises:
        FileNotFoundError: If the config file doesn't exist.
        ValueError: If the file is not a mapping or a value is invalid.
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Config not found: {path}")

    with open(path, encoding="utf-8") as f:
        data = yaml.safe_load(f)

    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise ValueError("Config must be a YAML mapping")

    return config_from_dict(data, source_path=path)
