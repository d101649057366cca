"""IEEE 488.2 status register model.

Pure encode/decode helpers for the four status registers. No I/O happens
here; :class:`tmcsync_scpi.connection.TmcConnection` reads and writes the
registers and hands the raw bytes to these functions.

Registers:
    STB: Status Byte. Read-only summary, refreshed on every read.
    SRE: Service Request Enable. Same bit positions as STB minus MSS.
    ESR: Event Status Register. Reading it clears it on the instrument.
    ESE: Event Status Enable. Same bit positions as ESR.
"""

from __future__ import annotations

from enum import Enum, IntFlag
from typing import Iterable, Union


class StatusBit(IntFlag):
    """Status Byte (STB) and Service Request Enable (SRE) bits."""

    TRG = 1
    USR = 2
    MSG = 4
    MAV = 16
    ESB = 32
    MSS = 64
    OSR = 128


class EventBit(IntFlag):
    """Event Status Register (ESR) and Event Status Enable (ESE) bits."""

    OPC = 1
    RQL = 2
    QYE = 4
    DDE = 8
    EXE = 16
    CME = 32
    URQ = 64
    PON = 128


class RegisterKind(Enum):
    """The four IEEE 488.2 status registers, valued by SCPI mnemonic."""

    STB = "STB"
    SRE = "SRE"
    ESR = "ESR"
    ESE = "ESE"

    @property
    def bit_type(self) -> type[StatusBit] | type[EventBit]:
        """Return the flag class describing this register's bits."""
        if self in (RegisterKind.STB, RegisterKind.SRE):
            return StatusBit
        return EventBit

    @property
    def defined_bits(self) -> tuple[StatusBit, ...] | tuple[EventBit, ...]:
        """Return the named bits that are valid for this register."""
        if self is RegisterKind.SRE:
            return tuple(bit for bit in StatusBit if bit is not StatusBit.MSS)
        return tuple(self.bit_type)

    @property
    def writable(self) -> bool:
        """Return True if the register can be written with ``*<name> <n>``."""
        return self in (RegisterKind.SRE, RegisterKind.ESE)


RegisterBit = Union[StatusBit, EventBit]


def _mask(bits: Iterable[RegisterBit]) -> int:
    value = 0
    for bit in bits:
        value |= int(bit)
    return value


def decode_register(kind: RegisterKind, value: int) -> frozenset[RegisterBit]:
    """Decode a register byte into the set of its named bits.

    Bits with no defined name (bit 3 of the status byte, and MSS for SRE)
    are ignored.

    Args:
        kind: Which register the value was read from.
        value: Raw register value (0..255).

    Returns:
        Frozen set of the named bits that are set in *value*.

    Raises:
        ValueError: If *value* does not fit in a byte.
    """
    if not 0 <= value <= 0xFF:
        raise ValueError(f"{kind.value} value out of range 0..255: {value}")
    return frozenset(bit for bit in kind.defined_bits if value & bit)


def decode_status_byte(value: int) -> frozenset[StatusBit]:
    """Decode a Status Byte into its named bits."""
    return decode_register(RegisterKind.STB, value)  # type: ignore[return-value]


def decode_event_status(value: int) -> frozenset[EventBit]:
    """Decode an Event Status Register value into its named bits."""
    return decode_register(RegisterKind.ESR, value)  # type: ignore[return-value]


def encode_enable_mask(kind: RegisterKind, bits: Iterable[RegisterBit | str]) -> int:
    """Encode named bits into a register byte.

    Accepts flag members or their names (``"MAV"``, ``"OPC"``).

    Args:
        kind: Register the mask is meant for.
        bits: Bits to set.

    Returns:
        The register value.

    Raises:
        ValueError: If a bit does not belong to *kind* (for example MSS in an
            SRE mask, or an ESR bit in an STB mask).
    """
    allowed = kind.defined_bits
    members: list[RegisterBit] = []
    for bit in bits:
        if isinstance(bit, str):
            try:
                member = kind.bit_type[bit.upper()]
            except KeyError:
                raise ValueError(f"{bit!r} is not a {kind.value} bit") from None
        else:
            member = bit
        if member not in allowed or not isinstance(member, kind.bit_type):
            raise ValueError(f"{member!r} is not a valid {kind.value} bit")
        members.append(member)
    return _mask(members)


def format_register(kind: RegisterKind, value: int) -> str:
    """Render a register value for diagnostics.

    Bits are listed from most to least significant, e.g. ``"STB = ESB MAV"``.
    A value with no named bits renders as ``"STB = (none)"``.
    """
    names = [
        bit.name or str(int(bit))
        for bit in sorted(decode_register(kind, value), key=int, reverse=True)
    ]
    return f"{kind.value} = {' '.join(names) if names else '(none)'}"
