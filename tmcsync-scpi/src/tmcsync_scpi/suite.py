"""Driver check suite.

An ordered list of named checks that exercise a USBTMC driver and
instrument through every synchronization path: timeouts, the status byte,
remote enable control, end-of-message handling on both directions,
termination characters, blocking and notified service requests, bus
triggers, and timed waits.

Checks share one :class:`SuiteContext` and run in the order of
:data:`CHECKS`. A check passes, fails with a message, is skipped, or errors
on an unexpected :class:`~tmcsync_core.errors.TmcsyncError`. After a
failure or error the suite issues a device clear before the next check.

Example:
    ctx = SuiteContext.create(transport, config)
    result = run_suite(ctx, only=["stb", "srq"])
    print(f"Passed: {result.passed}/{result.total}")
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any, Callable, Iterable

from tmcsync_core.errors import TmcsyncError
from tmcsync_core.types import Timestamp

from tmcsync_scpi.config import TmcsyncConfig
from tmcsync_scpi.connection import TmcConnection
from tmcsync_scpi.errors import ScpiTimeoutError, TransportError
from tmcsync_scpi.number import split_response
from tmcsync_scpi.registers import EventBit, RegisterKind, StatusBit, format_register
from tmcsync_scpi.sync import OPC_SUFFIX, PendingOperation, SyncEngine, SyncStrategy
from tmcsync_scpi.transport import Capability

if TYPE_CHECKING:
    from tmcsync_scpi.transport import TmcTransport

logger = logging.getLogger(__name__)

# Relative tolerance for the timed wait duration check.
TIMED_WAIT_TOLERANCE = 0.10

# Timeout written and read back by the timeout check.
_ROUND_TRIP_TIMEOUT_MS = 2500

# Timeouts at the edges of the driver's range: zero and above INT_MAX.
_BOUNDARY_TIMEOUTS_MS = (0, 0xFFFFFFFF)

# Piece size for the end-of-message input check.
_EOM_IN_PIECE = 4


class CheckStatus(Enum):
    """Outcome of one suite check."""

    PASSED = "passed"
    FAILED = "failed"
    SKIPPED = "skipped"
    ERROR = "error"


class CheckFailed(Exception):
    """Raised by a check when the instrument behaved incorrectly."""


class CheckSkipped(Exception):
    """Raised by a check that does not apply to the instrument."""


@dataclass(frozen=True)
class CheckResult:
    """Result of executing one check."""

    name: str
    status: CheckStatus
    start_time: Timestamp
    end_time: Timestamp
    message: str = ""

    @property
    def passed(self) -> bool:
        """Return True if the check passed."""
        return self.status == CheckStatus.PASSED

    @property
    def duration_seconds(self) -> float:
        """Return check duration in seconds."""
        return self.end_time.seconds_since(self.start_time)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "name": self.name,
            "status": self.status.value,
            "start_time": self.start_time.unix_ns,
            "end_time": self.end_time.unix_ns,
            "duration_seconds": self.duration_seconds,
            "message": self.message,
        }


@dataclass
class SuiteResult:
    """Aggregated results of a suite run."""

    results: tuple[CheckResult, ...]
    total: int = 0
    passed: int = 0
    failed: int = 0
    skipped: int = 0
    errors: int = 0

    def __post_init__(self) -> None:
        """Calculate statistics."""
        self.total = len(self.results)
        self.passed = sum(1 for r in self.results if r.status == CheckStatus.PASSED)
        self.failed = sum(1 for r in self.results if r.status == CheckStatus.FAILED)
        self.skipped = sum(1 for r in self.results if r.status == CheckStatus.SKIPPED)
        self.errors = sum(1 for r in self.results if r.status == CheckStatus.ERROR)

    @property
    def all_passed(self) -> bool:
        """Return True if no check failed or errored."""
        return self.failed == 0 and self.errors == 0

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "results": [r.to_dict() for r in self.results],
            "total": self.total,
            "passed": self.passed,
            "failed": self.failed,
            "skipped": self.skipped,
            "errors": self.errors,
            "all_passed": self.all_passed,
        }


@dataclass
class SuiteContext:
    """Shared state for the checks of one suite run."""

    transport: TmcTransport
    connection: TmcConnection
    engine: SyncEngine
    config: TmcsyncConfig = field(default_factory=TmcsyncConfig)

    @classmethod
    def create(cls, transport: TmcTransport, config: TmcsyncConfig | None = None) -> SuiteContext:
        """Build a context with a connection and engine configured from *config*."""
        config = config or TmcsyncConfig()
        connection = TmcConnection(transport, read_chunk_size=config.block.chunk_size)
        engine = SyncEngine.from_config(connection, config.sync)
        return cls(transport=transport, connection=connection, engine=engine, config=config)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _expect(condition: bool, message: str) -> None:
    if not condition:
        raise CheckFailed(message)


def _expect_bit(stb: int, bit: StatusBit, when: str) -> None:
    _expect(
        bool(stb & bit),
        f"{bit.name} not set {when}: {format_register(RegisterKind.STB, stb)}",
    )


def _read_pieces(transport: TmcTransport, size: int) -> list[bytes]:
    """Read one response message as the transport delivers it."""
    pieces: list[bytes] = []
    while not pieces or not pieces[-1].endswith(b"\n"):
        piece = transport.read(size)
        if not piece:
            break
        pieces.append(piece)
    return pieces


# ---------------------------------------------------------------------------
# Checks
# ---------------------------------------------------------------------------


def _try_timeout(transport: TmcTransport, value: int) -> str:
    try:
        transport.timeout_ms = value
    except (ValueError, TransportError) as exc:
        return f"{value} rejected ({exc})"
    return f"{value} -> {transport.timeout_ms}"


def check_timeout(ctx: SuiteContext) -> str:
    """Try the boundary timeouts, then round-trip an ordinary one.

    The boundary values are reported, not judged: drivers may accept,
    clamp or reject them.
    """
    transport = ctx.transport
    previous = transport.timeout_ms
    try:
        outcomes = [_try_timeout(transport, value) for value in _BOUNDARY_TIMEOUTS_MS]
        for outcome in outcomes:
            logger.info("Timeout %s", outcome)
        transport.timeout_ms = _ROUND_TRIP_TIMEOUT_MS
        actual = transport.timeout_ms
    finally:
        transport.timeout_ms = previous
    _expect(
        actual == _ROUND_TRIP_TIMEOUT_MS,
        f"timeout read back as {actual}, set {_ROUND_TRIP_TIMEOUT_MS}",
    )
    return f"default {previous}; {'; '.join(outcomes)}; round trip {_ROUND_TRIP_TIMEOUT_MS} ms"


def check_stb(ctx: SuiteContext) -> str:
    """Compare status byte reads, then poll for operation complete."""
    ctx.engine.check_status_consistency()
    stb = ctx.engine.issue_and_wait_opc(ctx.config.suite.measure_query, SyncStrategy.ACTIVE_POLL)
    _expect_bit(stb, StatusBit.ESB, "after active poll")
    response = ctx.connection.read()
    _expect(bool(response), "empty response after active poll")
    return format_register(RegisterKind.STB, stb)


def check_remote(ctx: SuiteContext) -> str:
    """Step through remote disable, remote enable, lockout and go to local.

    The instrument must keep answering ``*IDN?`` after every step.
    """
    transport = ctx.transport
    if not transport.capabilities() & Capability.REN_CONTROL:
        raise CheckSkipped("instrument does not support remote enable control")
    steps: tuple[tuple[str, Callable[[], None]], ...] = (
        ("REN off", lambda: transport.ren_control(False)),
        ("REN on", lambda: transport.ren_control(True)),
        ("LLO", transport.local_lockout),
        ("GTL", transport.goto_local),
    )
    for label, step in steps:
        step()
        _expect(bool(ctx.connection.identify()), f"no *IDN? response after {label}")
        logger.debug("Remote step %s done", label)
    ctx.connection.clear_status()
    return ", ".join(label for label, _ in steps)


def check_eom(ctx: SuiteContext) -> str:
    """Send one message split over two writes, END only on the second."""
    transport = ctx.transport
    query = ctx.config.suite.measure_query
    split = max(1, len(query) // 2)
    ctx.engine.enable_completion(StatusBit.ESB)
    transport.set_eom(False)
    try:
        transport.write(query[:split].encode("ascii"))
    finally:
        transport.set_eom(True)
    transport.write((query[split:] + OPC_SUFFIX + "\n").encode("ascii"))
    stb = ctx.engine.wait(PendingOperation(command=query, strategy=SyncStrategy.BLOCKING_WAIT))
    _expect_bit(stb, StatusBit.ESB, "after split message")
    response = ctx.connection.read()
    _expect(bool(response), "empty response to split message")
    return f"split at {split}: {response!r}"


def check_eom_in(ctx: SuiteContext) -> str:
    """Read a response in small pieces until the message ends."""
    ctx.connection.write("*IDN?")
    pieces = _read_pieces(ctx.transport, _EOM_IN_PIECE)
    _expect(bool(pieces), "no response to *IDN?")
    oversized = [p for p in pieces if len(p) > _EOM_IN_PIECE]
    _expect(not oversized, f"read returned {len(oversized[0]) if oversized else 0} bytes")
    _expect(pieces[-1].endswith(b"\n"), "response did not end with a line feed")
    return f"{len(pieces)} pieces of at most {_EOM_IN_PIECE} bytes"


def check_termchar(ctx: SuiteContext) -> str:
    """Read a compound response split at ``;`` termination characters."""
    transport = ctx.transport
    ctx.connection.write(ctx.config.suite.measure_query)
    previous = transport.configure_terminator(";", True)
    try:
        pieces = _read_pieces(transport, ctx.connection.read_chunk_size)
    finally:
        transport.configure_terminator(previous.char, previous.enabled)
    crossing = [piece for piece in pieces if b";" in piece[:-1]]
    if crossing:
        raise CheckFailed(f"read continued past ';': {crossing[0]!r}")
    stops = sum(1 for piece in pieces if piece.endswith(b";"))
    _expect(stops > 0, f"expected several parts, got {stops + 1}")
    units = split_response(b"".join(pieces).decode("ascii", errors="replace"))
    _expect(
        len(units) == stops + 1,
        f"{stops + 1} parts reassemble into {len(units)} responses: {units!r}",
    )
    return f"{stops + 1} parts in {len(pieces)} reads: {', '.join(units)}"


def _check_opc_wait(ctx: SuiteContext, strategy: SyncStrategy) -> str:
    stb = ctx.engine.issue_and_wait_opc(ctx.config.suite.operation_command, strategy)
    _expect_bit(stb, StatusBit.ESB, f"after {strategy.value}")
    events = ctx.engine.read_event_status()
    _expect(EventBit.OPC in events, f"OPC not in event status: {sorted(e.name for e in events)}")
    return format_register(RegisterKind.STB, stb)


def check_blocking_wait(ctx: SuiteContext) -> str:
    """Wait for the operation complete service request without a bound."""
    return _check_opc_wait(ctx, SyncStrategy.BLOCKING_WAIT)


def check_async_notify(ctx: SuiteContext) -> str:
    """Wait for the operation complete service request by notification."""
    return _check_opc_wait(ctx, SyncStrategy.ASYNC_NOTIFY)


def check_trigger(ctx: SuiteContext) -> str:
    """Assert a bus trigger and wait for the TRG service request."""
    transport = ctx.transport
    if not transport.capabilities() & Capability.TRIGGER:
        raise CheckSkipped("instrument does not accept bus triggers")
    conn = ctx.connection
    conn.clear_status()
    conn.set_register(RegisterKind.SRE, StatusBit.TRG)
    transport.read_stb()
    transport.trigger()
    transport.wait_for_srq(ctx.config.suite.srq_timeout_ms)
    stb = transport.read_stb()
    _expect_bit(stb, StatusBit.TRG, "after bus trigger")
    conn.clear_status()
    return format_register(RegisterKind.STB, stb)


def check_wait_for_srq(ctx: SuiteContext) -> str:
    """Time out an idle bounded wait, then wake on message available."""
    transport = ctx.transport
    conn = ctx.connection
    timeout_ms = ctx.config.suite.srq_timeout_ms
    conn.clear_status()
    conn.set_register(RegisterKind.SRE, StatusBit.MAV)
    transport.read_stb()

    for bound in (0, timeout_ms):
        start = time.monotonic()
        try:
            transport.wait_for_srq(bound)
        except ScpiTimeoutError:
            pass
        else:
            raise CheckFailed(f"unexpected service request while idle ({bound} ms)")
        elapsed_ms = (time.monotonic() - start) * 1000.0
        logger.debug("Idle wait of %d ms took %.1f ms", bound, elapsed_ms)
        if bound:
            _expect(
                abs(elapsed_ms - bound) <= bound * TIMED_WAIT_TOLERANCE,
                f"timed wait of {bound} ms took {elapsed_ms:.1f} ms",
            )

    conn.write("*IDN?")
    transport.wait_for_srq(timeout_ms)
    stb = transport.read_stb()
    _expect_bit(stb, StatusBit.MAV, "after *IDN?")
    _expect(bool(conn.read()), "empty *IDN? response")
    return f"idle timeouts within {TIMED_WAIT_TOLERANCE:.0%}, woke for MAV"


def check_srq(ctx: SuiteContext) -> str:
    """Repeat query round trips, each waiting for the MAV service request."""
    transport = ctx.transport
    conn = ctx.connection
    iterations = ctx.config.suite.srq_iterations
    conn.clear_status()
    conn.set_register(RegisterKind.SRE, StatusBit.MAV)
    transport.read_stb()
    for iteration in range(1, iterations + 1):
        conn.write("*IDN?")
        transport.wait_for_srq(None)
        stb = transport.read_stb()
        _expect_bit(stb, StatusBit.MAV, f"on iteration {iteration}")
        _expect(bool(conn.read()), f"empty response on iteration {iteration}")
    return f"{iterations} service requests"


SuiteCheck = Callable[[SuiteContext], str]

CHECKS: tuple[tuple[str, SuiteCheck], ...] = (
    ("timeout", check_timeout),
    ("stb", check_stb),
    ("remote", check_remote),
    ("eom", check_eom),
    ("eom_in", check_eom_in),
    ("termchar", check_termchar),
    ("blocking_wait", check_blocking_wait),
    ("async_notify", check_async_notify),
    ("trigger", check_trigger),
    ("wait_for_srq", check_wait_for_srq),
    ("srq", check_srq),
)


def check_names() -> tuple[str, ...]:
    """Return the check names in execution order."""
    return tuple(name for name, _ in CHECKS)


# ---------------------------------------------------------------------------
# Runner
# ---------------------------------------------------------------------------


def run_check(ctx: SuiteContext, name: str, check: SuiteCheck) -> CheckResult:
    """Run one check and classify its outcome."""
    logger.info("Running check %s", name)
    start = Timestamp.now()
    try:
        message = check(ctx)
        status = CheckStatus.PASSED
    except CheckSkipped as exc:
        status, message = CheckStatus.SKIPPED, str(exc)
    except CheckFailed as exc:
        status, message = CheckStatus.FAILED, str(exc)
    except TmcsyncError as exc:
        status, message = CheckStatus.ERROR, f"{type(exc).__name__}: {exc}"
    end = Timestamp.now()

    if status in (CheckStatus.FAILED, CheckStatus.ERROR):
        logger.warning("Check %s %s: %s", name, status.value, message)
        try:
            ctx.connection.device_clear()
        except TmcsyncError:
            logger.exception("Device clear after check %s failed", name)
    else:
        logger.info("Check %s %s: %s", name, status.value, message)
    return CheckResult(name=name, status=status, start_time=start, end_time=end, message=message)


def run_suite(
    ctx: SuiteContext,
    only: Iterable[str] | None = None,
    on_result: Callable[[CheckResult], None] | None = None,
) -> SuiteResult:
    """Run the checks in order.

    Args:
        ctx: Shared suite context.
        only: Names of the checks to run; all checks when None. Order is
            always the suite order.
        on_result: Optional callback called after each check completes.

    Raises:
        ValueError: If *only* names an unknown check.
    """
    selected = set(only) if only is not None else set(check_names())
    unknown = selected - set(check_names())
    if unknown:
        raise ValueError(f"Unknown checks: {', '.join(sorted(unknown))}")

    results: list[CheckResult] = []
    for name, check in CHECKS:
        if name not in selected:
            continue
        result = run_check(ctx, name, check)
        results.append(result)
        if on_result is not None:
            on_result(result)
    return SuiteResult(results=tuple(results))
