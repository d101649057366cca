"""USBTMC synchronization and binary block library for tmcsync.

This package implements the protocol layer between an application and a
SCPI / IEEE 488.2 instrument on a USB Test and Measurement class transport:

- Transport abstraction with PyVISA-backed and emulated implementations
- IEEE 488.2 status register model (STB, SRE, ESR, ESE)
- Operation-complete synchronization with four interchangeable strategies
- Definite-length binary block decoding
- A driver check suite and command-line interface

Typical usage::

    from tmcsync_scpi import SyncEngine, SyncStrategy, TmcConnection, VisaTransport

    transport = VisaTransport("USB0::0x0957::0x1796::MY12345678::INSTR")
    transport.open()
    engine = SyncEngine(TmcConnection(transport))
    image = engine.query_block(":DISP:DATA? PNG", SyncStrategy.TIMED_WAIT, timeout_s=10)
    transport.close()
"""

from tmcsync_scpi.block import BinaryBlock, decode_block, encode_block, read_block
from tmcsync_scpi.config import (
    BlockConfig,
    InstrumentConfig,
    SuiteConfig,
    SyncConfig,
    TmcsyncConfig,
    load_config,
)
from tmcsync_scpi.connection import TmcConnection, parse_idn_response
from tmcsync_scpi.emulator import EmulatorConfig, TmcEmulator
from tmcsync_scpi.errors import (
    ScpiAnomaly,
    ScpiCommandError,
    ScpiError,
    ScpiInstrumentError,
    ScpiProtocolError,
    ScpiTimeoutError,
    TransportError,
)
from tmcsync_scpi.registers import (
    EventBit,
    RegisterKind,
    StatusBit,
    decode_event_status,
    decode_register,
    decode_status_byte,
    encode_enable_mask,
    format_register,
)
from tmcsync_scpi.suite import CheckResult, CheckStatus, SuiteContext, SuiteResult, run_suite
from tmcsync_scpi.sync import PendingOperation, SyncEngine, SyncStrategy
from tmcsync_scpi.transport import Capability, TerminatorConfig, TmcTransport
from tmcsync_scpi.visa import VisaTransport

__all__ = [
    # Block
    "BinaryBlock",
    "decode_block",
    "encode_block",
    "read_block",
    # Config
    "BlockConfig",
    "InstrumentConfig",
    "SuiteConfig",
    "SyncConfig",
    "TmcsyncConfig",
    "load_config",
    # Connection
    "TmcConnection",
    "parse_idn_response",
    # Emulator
    "EmulatorConfig",
    "TmcEmulator",
    # Errors
    "ScpiAnomaly",
    "ScpiCommandError",
    "ScpiError",
    "ScpiInstrumentError",
    "ScpiProtocolError",
    "ScpiTimeoutError",
    "TransportError",
    # Registers
    "EventBit",
    "RegisterKind",
    "StatusBit",
    "decode_event_status",
    "decode_register",
    "decode_status_byte",
    "encode_enable_mask",
    "format_register",
    # Suite
    "CheckResult",
    "CheckStatus",
    "SuiteContext",
    "SuiteResult",
    "run_suite",
    # Sync
    "PendingOperation",
    "SyncEngine",
    "SyncStrategy",
    # Transport
    "Capability",
    "TerminatorConfig",
    "TmcTransport",
    # VISA
    "VisaTransport",
]
