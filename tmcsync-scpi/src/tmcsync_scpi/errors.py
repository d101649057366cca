"""SCPI protocol error types.

This module defines the exception classes raised by the protocol layer and
the :class:`ScpiAnomaly` record used for conditions that are reported but do
not abort an operation. All exceptions inherit from
:class:`tmcsync_core.errors.TmcsyncError`.

Taxonomy:
    TransportError: transport read/write failure. Surfaced to the caller,
        never retried internally. Read failures clear the device first.
    ScpiTimeoutError: a wait exceeded its bound. The caller decides whether
        to re-issue the command.
    ScpiProtocolError: malformed binary block header, length, or a short
        read. The connection should be cleared before reuse.
    ScpiAnomaly: status mismatch or missing terminator. Reported through an
        ``on_anomaly`` callback and the operation continues.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable

from tmcsync_core.errors import TmcsyncError

logger = logging.getLogger(__name__)


class ScpiError(TmcsyncError):
    """Base exception for SCPI protocol errors.

    All SCPI-related exceptions inherit from this class, allowing callers
    to catch all SCPI errors with a single except clause.
    """


class TransportError(ScpiError):
    """Raised when the underlying transport fails to read or write.

    Attributes:
        operation: Transport operation that failed (``"read"``, ``"write"``,
            ``"read_stb"``, ``"wait_for_srq"`` ...).
        detail: Description of the failure.
    """

    def __init__(self, operation: str, detail: str) -> None:
        self.operation = operation
        self.detail = detail
        super().__init__(f"transport {operation} failed: {detail}")


class ScpiTimeoutError(ScpiError):
    """Raised when a wait for an instrument condition exceeds its bound.

    Attributes:
        phase: What was being waited for (e.g. ``"active poll for ESB"``).
        timeout_s: The bound that was exceeded in seconds, or None when the
            bound was an iteration count.
    """

    def __init__(self, phase: str, timeout_s: float | None = None) -> None:
        self.phase = phase
        self.timeout_s = timeout_s
        if timeout_s is None:
            message = f"timed out during {phase}"
        else:
            message = f"timed out after {timeout_s:g}s during {phase}"
        super().__init__(message)


class ScpiProtocolError(ScpiError):
    """Raised when the instrument's byte stream violates the framing rules.

    Attributes:
        phase: Decode phase (``"header"``, ``"length"``, ``"payload"``) or
            the register operation that received the bad response.
        detail: Short description such as ``"bad header"``.
    """

    def __init__(self, phase: str, detail: str) -> None:
        self.phase = phase
        self.detail = detail
        super().__init__(f"{phase}: {detail}")


@dataclass(frozen=True)
class ScpiInstrumentError:
    """Single error from an instrument's error queue.

    Attributes:
        code: SCPI error code (negative for standard errors, positive for device-specific).
        message: Human-readable error description from the instrument.
    """

    code: int
    message: str

    def __str__(self) -> str:
        return f'{self.code},"{self.message}"'


class ScpiCommandError(ScpiError):
    """Raised when an instrument reports errors after a command or query.

    Attributes:
        errors: One or more errors drained from the instrument's error queue.
    """

    def __init__(self, errors: tuple[ScpiInstrumentError, ...]) -> None:
        self.errors = errors
        messages = "; ".join(str(e) for e in errors)
        super().__init__(f"SCPI instrument error(s): {messages}")


@dataclass(frozen=True)
class ScpiAnomaly:
    """A protocol irregularity that is reported without aborting.

    Attributes:
        phase: Where it was seen (``"terminator"``, ``"status byte"`` ...).
        detail: Human-readable description.
    """

    phase: str
    detail: str

    def __str__(self) -> str:
        return f"{self.phase}: {self.detail}"


AnomalyHandler = Callable[[ScpiAnomaly], None]


def log_anomaly(anomaly: ScpiAnomaly) -> None:
    """Default anomaly handler: log the anomaly as a warning."""
    logger.warning("SCPI anomaly: %s", anomaly)
