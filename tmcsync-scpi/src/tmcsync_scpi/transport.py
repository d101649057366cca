"""USBTMC transport protocol definition.

This module defines the :class:`TmcTransport` protocol, the byte-level
interface that the synchronization engine and block decoder depend on.
Transports handle the physical link to the instrument plus the side-channel
control operations of a USB Test-and-Measurement class device (device
clear, out-of-band status byte read, service request wait).

Implementations include:
- :class:`tmcsync_scpi.VisaTransport`: PyVISA-backed transport for real hardware
- :class:`tmcsync_scpi.TmcEmulator`: in-process instrument for tests and demos
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import IntFlag
from typing import Callable, Protocol


class Capability(IntFlag):
    """USBTMC-488 interface capabilities.

    Bit values follow the capability mask reported by the Linux usbtmc
    driver. REN_CONTROL, GOTO_LOCAL and LOCAL_LOCKOUT share one bit (the
    USB488 "simple" capability), so the latter two are aliases.
    """

    TRIGGER = 1
    REN_CONTROL = 2
    GOTO_LOCAL = 2
    LOCAL_LOCKOUT = 2
    IEEE488_2 = 4
    DT1 = 16
    RL1 = 32
    SR1 = 64
    FULL_SCPI = 128


@dataclass(frozen=True)
class TerminatorConfig:
    """Read termination character configuration.

    Attributes:
        char: The termination character (a single character).
        enabled: Whether reads stop after the termination character.
    """

    char: str = "\n"
    enabled: bool = False

    def __post_init__(self) -> None:
        if len(self.char) != 1:
            raise ValueError(f"termination char must be a single character, got {self.char!r}")


SrqCallback = Callable[[], None]


class TmcTransport(Protocol):
    """Protocol for a USBTMC byte-stream transport.

    This is a structural subtyping protocol (duck typing). Any class that
    implements these methods with the correct signatures is a valid
    transport. Callers are responsible for opening the transport before
    handing it to :class:`tmcsync_scpi.TmcConnection`.

    One transport is one logical connection. At most one pending operation
    may be in flight at a time.
    """

    @property
    def timeout_ms(self) -> int | None:
        """I/O timeout in milliseconds; None means wait forever."""
        ...

    @timeout_ms.setter
    def timeout_ms(self, value: int | None) -> None: ...

    def write(self, data: bytes) -> int:
        """Send raw bytes to the instrument.

        Returns:
            Number of bytes accepted.

        Raises:
            TransportError: If the write fails.
        """
        ...

    def read(self, max_len: int) -> bytes:
        """Read at most *max_len* bytes of the current response message.

        A transport may return fewer bytes than requested. ``b""`` means the
        current response message has been delivered completely.

        Raises:
            TransportError: If the read fails. The transport issues a device
                clear before raising.
        """
        ...

    def clear(self) -> None:
        """Device clear: abort in-flight operations and flush buffers."""
        ...

    def configure_terminator(self, char: str, enabled: bool) -> TerminatorConfig:
        """Set the read termination character.

        Returns:
            The configuration that was in effect before the call.
        """
        ...

    def set_eom(self, enabled: bool) -> None:
        """Enable or disable end-of-message marking on subsequent writes."""
        ...

    def read_stb(self) -> int:
        """Read the status byte out-of-band (does not consume MAV).

        Reading the status byte also clears a pending service request
        condition on the controller side.
        """
        ...

    def wait_for_srq(self, timeout_ms: int | None) -> None:
        """Block until a service request is asserted.

        Args:
            timeout_ms: Upper bound in milliseconds, or None to wait forever.

        Raises:
            ScpiTimeoutError: If no service request occurs in time.
        """
        ...

    def enable_srq_notification(self, callback: SrqCallback) -> None:
        """Invoke *callback* each time a service request is asserted.

        The callback runs in the notification context. It must not call back
        into the transport; it should only set a flag the waiting context
        observes.
        """
        ...

    def disable_srq_notification(self) -> None:
        """Stop service request notifications. Safe when none is armed."""
        ...

    def trigger(self) -> None:
        """Send a bus-level trigger to the instrument."""
        ...

    def ren_control(self, enabled: bool) -> None:
        """Assert or deassert the remote enable (REN) line.

        Deasserting REN returns the instrument to local control and cancels
        a local lockout.
        """
        ...

    def local_lockout(self) -> None:
        """Send local lockout (LLO); requires REN to be asserted."""
        ...

    def goto_local(self) -> None:
        """Send go to local (GTL) without deasserting REN."""
        ...

    def capabilities(self) -> Capability:
        """Return the static instrument/driver capability flags."""
        ...

    def close(self) -> None:
        """Close the transport and release resources."""
        ...
