"""SCPI text layer over a USBTMC byte transport.

This module provides the :class:`TmcConnection` class, which wraps a
:class:`~tmcsync_scpi.transport.TmcTransport` to provide line-oriented SCPI
commands and queries, the IEEE 488.2 register accessors, and error queue
draining.

Typical usage::

    from tmcsync_scpi import TmcConnection, VisaTransport

    transport = VisaTransport("USB0::0x0957::0x1796::MY12345678::INSTR")
    transport.open()
    conn = TmcConnection(transport)

    identity = conn.get_identity()
    conn.set_register(RegisterKind.SRE, StatusBit.MAV)
    print(format_register(RegisterKind.ESR, conn.get_register(RegisterKind.ESR)))

    conn.close()
"""

from __future__ import annotations

import logging
import re
from typing import TYPE_CHECKING, Iterable

from tmcsync_core.types import InstrumentIdentity

from tmcsync_scpi.block import DEFAULT_CHUNK_SIZE, decode_block
from tmcsync_scpi.errors import (
    AnomalyHandler,
    ScpiCommandError,
    ScpiInstrumentError,
    ScpiProtocolError,
)
from tmcsync_scpi.number import parse_int
from tmcsync_scpi.registers import RegisterBit, RegisterKind, encode_enable_mask

if TYPE_CHECKING:
    from tmcsync_scpi.transport import TmcTransport

logger = logging.getLogger(__name__)


def parse_idn_response(response: str) -> InstrumentIdentity:
    """Parse a SCPI ``*IDN?`` response into an :class:`InstrumentIdentity`.

    The standard ``*IDN?`` response format is four comma-separated fields::

        manufacturer,model,serial_number,firmware_version

    If the response contains more than four comma-separated fields, the
    extra fields are joined into the firmware string.

    Raises:
        ValueError: If the response has fewer than four fields.
    """
    parts = [p.strip() for p in response.split(",")]
    if len(parts) < 4:
        raise ValueError(
            f"Expected at least 4 comma-separated fields in *IDN? response, "
            f"got {len(parts)}: {response!r}"
        )
    return InstrumentIdentity(
        manufacturer=parts[0],
        model=parts[1],
        serial=parts[2],
        firmware=",".join(parts[3:]),
    )


# Matches SCPI error responses: optional +/- code, comma, optional quoted message.
_ERROR_RE = re.compile(r"^\s*([+-]?\d+)\s*,\s*\"?([^\"]*)\"?\s*$")

# Safety stop for draining the error queue of a misbehaving instrument.
_MAX_QUEUED_ERRORS = 64


class TmcConnection:
    """Line-oriented SCPI access to a USBTMC transport.

    Commands are ASCII encoded and terminated with a line feed. Responses
    are read until the line feed or until the transport reports the end of
    the response message.

    Unlike a general-purpose SCPI wrapper, the error queue is not drained
    after every command by default: a ``SYST:ERR?`` round trip sets MAV and
    would disturb the status byte the synchronization engine is watching.

    Args:
        transport: An open transport implementing :class:`TmcTransport`.
        check_errors: If True, every command and query is followed by
            draining the instrument error queue. Errors raise
            :class:`ScpiCommandError`.
        read_chunk_size: Largest single transport read for text responses
            and block payloads.
    """

    def __init__(
        self,
        transport: TmcTransport,
        *,
        check_errors: bool = False,
        read_chunk_size: int = DEFAULT_CHUNK_SIZE,
    ) -> None:
        self._transport = transport
        self._check_errors = check_errors
        self._read_chunk_size = read_chunk_size

    @property
    def transport(self) -> TmcTransport:
        """The underlying transport."""
        return self._transport

    @property
    def read_chunk_size(self) -> int:
        """Largest single transport read issued by this connection."""
        return self._read_chunk_size

    # -- Core operations -----------------------------------------------------

    def write(self, cmd: str) -> None:
        """Send *cmd* with a line feed terminator, without error checking."""
        data = cmd if cmd.endswith("\n") else cmd + "\n"
        logger.debug("-> %r", data)
        self._transport.write(data.encode("ascii"))

    def read(self) -> str:
        """Read one response message and return it without the terminator."""
        buf = bytearray()
        while not buf.endswith(b"\n"):
            chunk = self._transport.read(self._read_chunk_size)
            if not chunk:
                break
            buf += chunk
        text = buf.decode("ascii", errors="replace")
        logger.debug("<- %r", text)
        return text.rstrip("\r\n")

    def command(self, cmd: str, *, check: bool | None = None) -> None:
        """Send a SCPI command (no response expected).

        Raises:
            ScpiCommandError: If error checking is enabled and the instrument
                reports errors.
        """
        self.write(cmd)
        self._check(check)

    def query(self, cmd: str, *, check: bool | None = None) -> str:
        """Send a SCPI query and return the response with whitespace stripped.

        Raises:
            ScpiCommandError: If error checking is enabled and the instrument
                reports errors.
        """
        self.write(cmd)
        response = self.read().strip()
        self._check(check)
        return response

    def query_int(self, cmd: str, *, check: bool | None = None) -> int:
        """Query and parse the response as an NR1 integer.

        Raises:
            ScpiProtocolError: If the response is not an integer.
        """
        raw = self.query(cmd, check=check)
        try:
            return parse_int(raw)
        except ValueError as exc:
            raise ScpiProtocolError(cmd, str(exc)) from exc

    def query_block(
        self, cmd: str, *, on_anomaly: AnomalyHandler | None = None
    ) -> bytes:
        """Send a query whose response is a definite-length block.

        Returns:
            The block payload.

        Raises:
            ScpiProtocolError: If the block is malformed or truncated.
        """
        self.write(cmd)
        return decode_block(
            self._transport, chunk_size=self._read_chunk_size, on_anomaly=on_anomaly
        )

    # -- IEEE 488.2 registers ------------------------------------------------

    def get_register(self, kind: RegisterKind) -> int:
        """Query a status register with ``*<kind>?``.

        Querying ``ESR`` clears it on the instrument. Querying ``STB`` this
        way queues a response, so MAV is set until the response is read;
        use :meth:`TmcTransport.read_stb` for an out-of-band read.
        """
        value = self.query_int(f"*{kind.value}?", check=False)
        if not 0 <= value <= 0xFF:
            raise ScpiProtocolError(f"*{kind.value}?", f"register value out of range: {value}")
        return value

    def set_register(self, kind: RegisterKind, value: int | Iterable[RegisterBit]) -> None:
        """Write an enable register with ``*<kind> <value>``.

        Args:
            kind: ``RegisterKind.SRE`` or ``RegisterKind.ESE``.
            value: Raw byte, a flag value, or an iterable of named bits.

        Raises:
            ValueError: If *kind* is read-only or the value is invalid.
        """
        if not kind.writable:
            raise ValueError(f"{kind.value} is read-only")
        mask = int(value) if isinstance(value, int) else encode_enable_mask(kind, value)
        if not 0 <= mask <= 0xFF:
            raise ValueError(f"{kind.value} value out of range 0..255: {mask}")
        logger.debug("Setting %s to %d", kind.value, mask)
        self.command(f"*{kind.value} {mask}", check=False)

    # -- IEEE 488.2 convenience methods --------------------------------------

    def identify(self) -> str:
        """Query the raw instrument identification string (``*IDN?``)."""
        return self.query("*IDN?")

    def get_identity(self) -> InstrumentIdentity:
        """Query and parse the instrument identification (``*IDN?``)."""
        return parse_idn_response(self.identify())

    def reset(self) -> None:
        """Send a reset command (``*RST``)."""
        self.command("*RST")

    def clear_status(self) -> None:
        """Clear the status registers and error queue (``*CLS``)."""
        self.command("*CLS", check=False)

    def device_clear(self) -> None:
        """Issue a transport-level device clear.

        Required before reusing the connection after an abandoned operation
        or a protocol error.
        """
        logger.debug("Device clear")
        self._transport.clear()

    # -- Error queue ---------------------------------------------------------

    def get_errors(self) -> tuple[ScpiInstrumentError, ...]:
        """Drain the instrument error queue with ``SYST:ERR?``.

        Returns:
            A tuple of :class:`ScpiInstrumentError` for every queued error.
            Empty if no errors.
        """
        errors: list[ScpiInstrumentError] = []
        for _ in range(_MAX_QUEUED_ERRORS):
            self.write("SYST:ERR?")
            error = self._parse_error_response(self.read().strip())
            if error is None:
                break
            errors.append(error)
        return tuple(errors)

    # -- Lifecycle -----------------------------------------------------------

    def close(self) -> None:
        """Close the underlying transport."""
        self._transport.close()

    # -- Private helpers -----------------------------------------------------

    def _check(self, override: bool | None) -> None:
        should_check = self._check_errors if override is None else override
        if not should_check:
            return
        errors = self.get_errors()
        if errors:
            raise ScpiCommandError(errors)

    @staticmethod
    def _parse_error_response(raw: str) -> ScpiInstrumentError | None:
        """Parse a ``SYST:ERR?`` response; None for code 0 or no match."""
        match = _ERROR_RE.match(raw)
        if match is None:
            return None
        code = int(match.group(1))
        if code == 0:
            return None
        return ScpiInstrumentError(code=code, message=match.group(2).strip())
