"""In-process USBTMC instrument emulator.

Provides :class:`TmcEmulator`, an implementation of the ``TmcTransport``
protocol backed by an IEEE 488.2 status model instead of hardware:

- STB summary bits: TRG from bus triggers, MAV while response bytes are
  queued, ESB while ``ESR & ESE`` is non-zero, MSS while ``STB & SRE`` is.
- A service request is the rising edge of MSS. It is latched until the
  status byte is read out-of-band or a wait consumes it.
- ``*ESR?`` is read-destructive.
- Writes made with end-of-message disabled are held until a write with
  end-of-message enabled completes the message.
- Response completion (queued output, the OPC event) can be delayed on a
  timer thread to model overlapped operations.
- Asserting REN puts the instrument in remote state on the next message.
  Go to local and deasserting REN return it to local state.
"""

from __future__ import annotations

import logging
import threading
from collections import deque
from dataclasses import dataclass
from typing import Callable, Union

from tmcsync_scpi.block import encode_block
from tmcsync_scpi.errors import ScpiTimeoutError, TransportError
from tmcsync_scpi.registers import EventBit, StatusBit
from tmcsync_scpi.transport import Capability, SrqCallback, TerminatorConfig

logger = logging.getLogger(__name__)

QueryHandler = Callable[[str], Union[str, bytes]]
CommandHandler = Callable[[str], None]

DEFAULT_CAPABILITIES = (
    Capability.TRIGGER
    | Capability.REN_CONTROL
    | Capability.IEEE488_2
    | Capability.DT1
    | Capability.RL1
    | Capability.SR1
    | Capability.FULL_SCPI
)

_SRE_WRITABLE = 0xFF & ~int(StatusBit.MSS)


# ---------------------------------------------------------------------------
# Message parsing
# ---------------------------------------------------------------------------


def _split_units(message: str) -> list[str]:
    """Split a program message on ``;`` outside quoted strings."""
    units: list[str] = []
    buf: list[str] = []
    quote: str | None = None
    for ch in message:
        if quote is not None:
            buf.append(ch)
            if ch == quote:
                quote = None
        elif ch in "\"'":
            quote = ch
            buf.append(ch)
        elif ch == ";":
            units.append("".join(buf))
            buf = []
        else:
            buf.append(ch)
    units.append("".join(buf))
    return [unit.strip() for unit in units if unit.strip()]


def _normalize_header(header: str) -> str:
    """Uppercase a header and strip its leading colon."""
    return header.strip().upper().lstrip(":")


def _parse_unit(unit: str) -> tuple[str, str]:
    """Split a message unit into (normalized header, args)."""
    header, _, args = unit.partition(" ")
    return _normalize_header(header), args.strip()


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class EmulatorConfig:
    """Configuration for a :class:`TmcEmulator`.

    Args:
        identity: ``*IDN?`` response string.
        operation_delay_s: Delay before a message's responses are queued and
            its ``*OPC`` event is set. Zero completes inline.
        max_read_chunk: Largest number of bytes returned by one read, or
            None for no limit.
        capabilities: Capability flags reported by the transport.
    """

    identity: str = "TMCSYNC,EMULATOR,0,1.0"
    operation_delay_s: float = 0.0
    max_read_chunk: int | None = None
    capabilities: Capability = DEFAULT_CAPABILITIES

    def __post_init__(self) -> None:
        if not self.identity:
            raise ValueError("identity must be non-empty")
        if self.operation_delay_s < 0:
            raise ValueError("operation_delay_s must be >= 0")
        if self.max_read_chunk is not None and self.max_read_chunk < 1:
            raise ValueError("max_read_chunk must be >= 1")


# ---------------------------------------------------------------------------
# Emulator
# ---------------------------------------------------------------------------


class TmcEmulator:
    """In-process USBTMC-488 instrument implementing ``TmcTransport``.

    Args:
        config: Emulator configuration. Defaults to an instant, unchunked
            instrument.
    """

    def __init__(self, config: EmulatorConfig | None = None) -> None:
        self._config = config or EmulatorConfig()
        self._cond = threading.Condition(threading.RLock())
        self._input = bytearray()
        self._output = bytearray()
        self._sre = 0
        self._ese = 0
        self._esr = int(EventBit.PON)
        self._trg = False
        self._mss = False
        self._srq_pending = False
        self._srq_callback: SrqCallback | None = None
        self._timeout_ms: int | None = 5000
        self._terminator = TerminatorConfig()
        self._eom = True
        self._closed = False
        self._ren = False
        self._remote = False
        self._locked_out = False
        self._pending_completions = 0
        self._timers: list[threading.Timer] = []
        self._errors: deque[tuple[int, str]] = deque()
        self._messages: list[str] = []
        self._query_handlers: dict[str, QueryHandler] = {}
        self._command_handlers: dict[str, CommandHandler] = {}

    # -- Customization -------------------------------------------------------

    def add_query(self, header: str, handler: QueryHandler) -> None:
        """Register a query handler.

        The handler receives the query's argument text. A ``str`` result is
        sent as text; a ``bytes`` result is framed as a definite-length block.
        """
        key = _normalize_header(header)
        if not key.endswith("?"):
            raise ValueError(f"query header must end with '?': {header!r}")
        self._query_handlers[key] = handler

    def add_command(self, header: str, handler: CommandHandler) -> None:
        """Register a command handler receiving the command's argument text."""
        key = _normalize_header(header)
        if key.endswith("?"):
            raise ValueError(f"command header must not end with '?': {header!r}")
        self._command_handlers[key] = handler

    def raise_event(self, bits: EventBit) -> None:
        """Set Event Status Register bits as if the instrument reported them."""
        with self._cond:
            self._esr |= int(bits)
            self._update_srq()

    def push_error(self, code: int, message: str) -> None:
        """Append an entry to the instrument error queue."""
        with self._cond:
            self._errors.append((code, message))

    # -- Inspection ----------------------------------------------------------

    @property
    def config(self) -> EmulatorConfig:
        """The emulator configuration."""
        return self._config

    @property
    def messages(self) -> list[str]:
        """Complete program messages received, in order."""
        with self._cond:
            return list(self._messages)

    @property
    def status_byte(self) -> int:
        """Current status byte without consuming a service request."""
        with self._cond:
            return self._summary()

    @property
    def srq_pending(self) -> bool:
        """Whether a service request is latched."""
        with self._cond:
            return self._srq_pending

    @property
    def eom_enabled(self) -> bool:
        """Whether writes currently end the program message."""
        return self._eom

    @property
    def ren_asserted(self) -> bool:
        """Whether the remote enable line is asserted."""
        return self._ren

    @property
    def remote(self) -> bool:
        """Whether the instrument is in remote state."""
        return self._remote

    @property
    def locked_out(self) -> bool:
        """Whether front-panel return to local is locked out."""
        return self._locked_out

    # -- Transport interface -------------------------------------------------

    @property
    def timeout_ms(self) -> int | None:
        """I/O timeout in milliseconds; None means wait forever."""
        return self._timeout_ms

    @timeout_ms.setter
    def timeout_ms(self, value: int | None) -> None:
        if value is not None and value < 0:
            raise ValueError("timeout_ms must be >= 0 or None")
        self._timeout_ms = value

    def write(self, data: bytes) -> int:
        """Accept program message bytes."""
        with self._cond:
            self._require_open("write")
            if self._ren:
                self._remote = True
            self._input += data
            if not self._eom:
                return len(data)
            message = bytes(self._input).decode("ascii", errors="replace")
            self._input.clear()
            self._process_message(message)
        return len(data)

    def read(self, max_len: int) -> bytes:
        """Return up to *max_len* queued response bytes.

        Waits up to the I/O timeout while a delayed response is still
        pending; returns ``b""`` when nothing is queued or pending.

        Raises:
            TransportError: On timeout; the device is cleared first.
        """
        if max_len < 1:
            raise ValueError("max_len must be >= 1")
        with self._cond:
            self._require_open("read")
            timeout = None if self._timeout_ms is None else self._timeout_ms / 1000.0
            ready = self._cond.wait_for(
                lambda: self._output or not self._pending_completions or self._closed,
                timeout=timeout,
            )
            if not ready:
                self.clear()
                raise TransportError("read", f"timed out after {self._timeout_ms} ms")
            if not self._output:
                return b""
            count = min(max_len, len(self._output))
            if self._config.max_read_chunk is not None:
                count = min(count, self._config.max_read_chunk)
            if self._terminator.enabled:
                index = self._output.find(self._terminator.char.encode("latin-1"), 0, count)
                if index >= 0:
                    count = index + 1
            data = bytes(self._output[:count])
            del self._output[:count]
            self._update_srq()
            return data

    def clear(self) -> None:
        """Device clear: drop buffered input/output and pending completions."""
        with self._cond:
            for timer in self._timers:
                timer.cancel()
            self._timers.clear()
            self._pending_completions = 0
            self._input.clear()
            self._output.clear()
            self._srq_pending = False
            self._update_srq()
            self._cond.notify_all()
        logger.debug("Emulator device clear")

    def configure_terminator(self, char: str, enabled: bool) -> TerminatorConfig:
        """Set the read termination character and return the previous setting."""
        new = TerminatorConfig(char=char, enabled=enabled)
        with self._cond:
            previous, self._terminator = self._terminator, new
        return previous

    def set_eom(self, enabled: bool) -> None:
        """Enable or disable end-of-message on subsequent writes."""
        self._eom = enabled

    def read_stb(self) -> int:
        """Return the status byte and clear a latched service request."""
        with self._cond:
            self._require_open("read_stb")
            self._srq_pending = False
            return self._summary()

    def wait_for_srq(self, timeout_ms: int | None) -> None:
        """Wait for a latched service request and consume it.

        Raises:
            ScpiTimeoutError: If none is asserted within *timeout_ms*.
        """
        timeout = None if timeout_ms is None else timeout_ms / 1000.0
        with self._cond:
            self._require_open("wait_for_srq")
            signalled = self._cond.wait_for(
                lambda: self._srq_pending or self._closed, timeout=timeout
            )
            if self._closed:
                raise TransportError("wait_for_srq", "transport closed")
            if not signalled:
                raise ScpiTimeoutError("wait for service request", timeout)
            self._srq_pending = False

    def enable_srq_notification(self, callback: SrqCallback) -> None:
        """Call *callback* on every service request edge."""
        with self._cond:
            self._srq_callback = callback

    def disable_srq_notification(self) -> None:
        """Stop service request notifications."""
        with self._cond:
            self._srq_callback = None

    def trigger(self) -> None:
        """Bus trigger: sets TRG in the status byte."""
        with self._cond:
            self._require_open("trigger")
            if not self._config.capabilities & Capability.TRIGGER:
                raise TransportError("trigger", "instrument does not support bus triggers")
            self._trg = True
            self._update_srq()

    def ren_control(self, enabled: bool) -> None:
        """Assert or deassert REN; deasserting returns to local."""
        with self._cond:
            self._require_ren("ren_control")
            self._ren = enabled
            if not enabled:
                self._remote = False
                self._locked_out = False

    def local_lockout(self) -> None:
        """Lock out the front-panel return to local."""
        with self._cond:
            self._require_ren("local_lockout")
            if not self._ren:
                raise TransportError("local_lockout", "REN is not asserted")
            self._locked_out = True

    def goto_local(self) -> None:
        """Return to local state; REN and any lockout stay in effect."""
        with self._cond:
            self._require_ren("goto_local")
            self._remote = False

    def capabilities(self) -> Capability:
        """Return the configured capability flags."""
        return self._config.capabilities

    def close(self) -> None:
        """Close the emulator and wake any blocked waiter."""
        with self._cond:
            for timer in self._timers:
                timer.cancel()
            self._timers.clear()
            self._closed = True
            self._cond.notify_all()

    # -- Status model --------------------------------------------------------

    def _summary(self) -> int:
        stb = 0
        if self._trg:
            stb |= StatusBit.TRG
        if self._output:
            stb |= StatusBit.MAV
        if self._esr & self._ese:
            stb |= StatusBit.ESB
        if stb & self._sre & _SRE_WRITABLE:
            stb |= StatusBit.MSS
        return int(stb)

    def _update_srq(self) -> None:
        """Latch a service request on the rising edge of MSS."""
        mss = bool(self._summary() & StatusBit.MSS)
        if mss and not self._mss:
            self._srq_pending = True
            self._cond.notify_all()
            if self._srq_callback is not None:
                self._srq_callback()
        self._mss = mss

    def _require_open(self, operation: str) -> None:
        if self._closed:
            raise TransportError(operation, "transport closed")

    def _require_ren(self, operation: str) -> None:
        self._require_open(operation)
        if not self._config.capabilities & Capability.REN_CONTROL:
            raise TransportError(operation, "instrument does not support remote control")

    # -- Message execution ---------------------------------------------------

    def _process_message(self, message: str) -> None:
        self._messages.append(message.rstrip("\r\n"))
        units = _split_units(message.strip())
        if not units:
            return
        is_query = any(_parse_unit(u)[0].endswith("?") for u in units)
        if is_query and (self._output or self._pending_completions):
            self._output.clear()
            self._queue_error(-410, "Query INTERRUPTED", EventBit.QYE)

        responses: list[bytes] = []
        opc = False
        for unit in units:
            header, args = _parse_unit(unit)
            if header == "*OPC":
                opc = True
                continue
            response = self._execute(header, args)
            if response is not None:
                responses.append(response)
            self._update_srq()

        if not responses and not opc:
            return
        delay = self._config.operation_delay_s
        if delay <= 0:
            self._complete(responses, opc, None)
            return
        self._pending_completions += 1
        timer = threading.Timer(delay, lambda: self._complete(responses, opc, timer))
        timer.daemon = True
        self._timers.append(timer)
        timer.start()

    def _complete(
        self, responses: list[bytes], opc: bool, timer: threading.Timer | None
    ) -> None:
        with self._cond:
            if timer is not None:
                if timer not in self._timers:
                    return
                self._timers.remove(timer)
                self._pending_completions -= 1
            if responses:
                self._output += b";".join(responses) + b"\n"
            if opc:
                self._esr |= EventBit.OPC
            self._update_srq()
            self._cond.notify_all()

    def _execute(self, header: str, args: str) -> bytes | None:
        """Execute one message unit; return its response for queries."""
        common = self._execute_common(header, args)
        if common is not False:
            return common  # type: ignore[return-value]

        if header.endswith("?"):
            query = self._query_handlers.get(header)
            if query is not None:
                result = query(args)
                if isinstance(result, bytes):
                    return encode_block(result, terminator=False)
                return result.encode("ascii")
        else:
            command = self._command_handlers.get(header)
            if command is not None:
                command(args)
                return None
        self._queue_error(-113, "Undefined header", EventBit.CME)
        return None

    def _execute_common(self, header: str, args: str) -> bytes | None | bool:
        """Handle IEEE 488.2 common commands; False when not handled."""
        if header == "*CLS":
            self._esr = 0
            self._trg = False
            self._errors.clear()
            return None
        if header in ("*ESE", "*SRE"):
            try:
                value = int(float(args))
            except ValueError:
                self._queue_error(-104, "Data type error", EventBit.CME)
                return None
            if not 0 <= value <= 255:
                self._queue_error(-222, "Data out of range", EventBit.EXE)
                return None
            if header == "*ESE":
                self._ese = value
            else:
                self._sre = value & _SRE_WRITABLE
            return None
        if header == "*ESE?":
            return str(self._ese).encode("ascii")
        if header == "*SRE?":
            return str(self._sre).encode("ascii")
        if header == "*STB?":
            return str(self._summary()).encode("ascii")
        if header == "*ESR?":
            value, self._esr = self._esr, 0
            return str(value).encode("ascii")
        if header == "*IDN?":
            return self._config.identity.encode("ascii")
        if header == "*OPC?":
            return b"1"
        if header == "*TRG":
            self._trg = True
            return None
        if header in ("*RST", "*WAI"):
            return None
        if header in ("SYST:ERR?", "SYSTEM:ERROR?", "SYST:ERR:NEXT?"):
            code, message = self._errors.popleft() if self._errors else (0, "No error")
            return f'{code},"{message}"'.encode("ascii")
        return False

    def _queue_error(self, code: int, message: str, event: EventBit) -> None:
        logger.debug("Emulator error %d: %s", code, message)
        self._errors.append((code, message))
        self._esr |= event
