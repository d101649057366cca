"""IEEE 488.2 definite-length arbitrary block decoding.

A definite-length block is the only binary framing embedded in the
otherwise line-oriented SCPI byte stream::

    #<n><n decimal digits giving L><L payload bytes>\\n

The declared length is the only trustworthy boundary. A transport may hand
the payload back in arbitrarily short chunks; an empty read before ``L``
bytes have arrived is a protocol violation, never end-of-data.

Typical usage::

    conn.write(":DISP:DATA? PNG, COL")
    png = decode_block(transport, chunk_size=4096)
"""

from __future__ import annotations

import logging
import sys
from dataclasses import dataclass
from typing import TYPE_CHECKING

from tmcsync_scpi.errors import AnomalyHandler, ScpiAnomaly, ScpiProtocolError, log_anomaly

if TYPE_CHECKING:
    from tmcsync_scpi.transport import TmcTransport

logger = logging.getLogger(__name__)

BLOCK_MARKER = b"#"
BLOCK_TERMINATOR = b"\n"
DEFAULT_CHUNK_SIZE = 1024

PHASE_HEADER = "header"
PHASE_LENGTH = "length"
PHASE_PAYLOAD = "payload"
PHASE_TERMINATOR = "terminator"


@dataclass(frozen=True)
class BinaryBlock:
    """A fully received definite-length block.

    Attributes:
        digit_count: Number of decimal digits in the length field (1-9).
        declared_length: Payload length announced by the header.
        payload: Exactly ``declared_length`` bytes.
        terminated: Whether the trailing line feed was present.
    """

    digit_count: int
    declared_length: int
    payload: bytes
    terminated: bool = True

    def __post_init__(self) -> None:
        if len(self.payload) != self.declared_length:
            raise ValueError(
                f"payload has {len(self.payload)} bytes, header declared {self.declared_length}"
            )


def _read_exact(transport: TmcTransport, count: int, phase: str, chunk_size: int) -> bytes:
    """Read exactly *count* bytes, accumulating short chunks."""
    buf = bytearray()
    while len(buf) < count:
        want = min(chunk_size, count - len(buf))
        chunk = transport.read(want)
        if not chunk:
            raise ScpiProtocolError(
                phase, f"short read: got {len(buf)} of {count} bytes before end of message"
            )
        if len(chunk) > want:
            raise ScpiProtocolError(phase, f"transport returned {len(chunk)} bytes, asked for {want}")
        buf += chunk
        logger.debug("%s: %d/%d bytes", phase, len(buf), count)
    return bytes(buf)


def parse_header(header: bytes) -> int:
    """Validate the two header bytes and return the length-of-length digit.

    Raises:
        ScpiProtocolError: Unless byte 0 is ``#`` and byte 1 is a digit 1-9.
    """
    if len(header) != 2 or header[:1] != BLOCK_MARKER or header[1:2] not in b"123456789":
        raise ScpiProtocolError(PHASE_HEADER, f"bad header {header!r}")
    return header[1] - ord("0")


def parse_length(digits: bytes) -> int:
    """Parse the decimal length field.

    Only ASCII digits are accepted: no sign, no whitespace.

    Raises:
        ScpiProtocolError: If a byte is not a digit or the value does not fit
            the platform's size type.
    """
    if not digits or not all(0x30 <= b <= 0x39 for b in digits):
        raise ScpiProtocolError(PHASE_LENGTH, f"bad length {digits!r}")
    length = int(digits.decode("ascii"))
    if length > sys.maxsize:
        raise ScpiProtocolError(PHASE_LENGTH, f"bad length {length}: exceeds platform size")
    return length


def read_block(
    transport: TmcTransport,
    *,
    chunk_size: int = DEFAULT_CHUNK_SIZE,
    on_anomaly: AnomalyHandler | None = None,
) -> BinaryBlock:
    """Read one definite-length block from *transport*.

    Args:
        transport: An open transport positioned at the ``#`` marker.
        chunk_size: Largest single read issued for the payload.
        on_anomaly: Called with a :class:`ScpiAnomaly` when the trailing
            line feed is missing. Defaults to logging a warning.

    Returns:
        The decoded block.

    Raises:
        ScpiProtocolError: On a bad header, bad length, or short read.
        TransportError: If the transport fails.
    """
    if chunk_size < 1:
        raise ValueError("chunk_size must be >= 1")
    report = on_anomaly or log_anomaly

    digit_count = parse_header(_read_exact(transport, 2, PHASE_HEADER, chunk_size))
    length = parse_length(_read_exact(transport, digit_count, PHASE_LENGTH, chunk_size))
    logger.debug("Block header: %d digits, %d bytes", digit_count, length)

    payload = _read_exact(transport, length, PHASE_PAYLOAD, chunk_size)

    tail = transport.read(1)
    terminated = tail == BLOCK_TERMINATOR
    if not terminated:
        found = "end of message" if not tail else repr(tail)
        report(ScpiAnomaly(PHASE_TERMINATOR, f"missing trailing terminator, found {found}"))

    return BinaryBlock(
        digit_count=digit_count,
        declared_length=length,
        payload=payload,
        terminated=terminated,
    )


def decode_block(
    transport: TmcTransport,
    *,
    chunk_size: int = DEFAULT_CHUNK_SIZE,
    on_anomaly: AnomalyHandler | None = None,
) -> bytes:
    """Read one definite-length block and return its payload.

    See :func:`read_block` for arguments and errors.
    """
    return read_block(transport, chunk_size=chunk_size, on_anomaly=on_anomaly).payload


def encode_block(payload: bytes, *, terminator: bool = True) -> bytes:
    """Frame *payload* as a definite-length block.

    Args:
        payload: Raw payload bytes.
        terminator: Append the trailing line feed.

    Raises:
        ValueError: If the payload needs more than 9 length digits.
    """
    length = str(len(payload)).encode("ascii")
    if len(length) > 9:
        raise ValueError(f"payload of {len(payload)} bytes is too large for a definite-length block")
    framed = BLOCK_MARKER + str(len(length)).encode("ascii") + length + payload
    return framed + BLOCK_TERMINATOR if terminator else framed
