"""Operation-complete synchronization.

This module provides :class:`SyncEngine`, which sends a command and then
blocks until the instrument reports that the operation has completed. Four
interchangeable strategies detect completion; all of them converge on the
same register semantics: ``*ESE`` enables OPC into the ESB summary bit,
``*SRE`` enables ESB (or MAV) into the service request, and the status byte
read after the wait is the authoritative result.

Strategies:
    ACTIVE_POLL: read the status byte out-of-band at a fixed interval, up to
        an iteration cap.
    BLOCKING_WAIT: one unbounded wait for a service request.
    TIMED_WAIT: one bounded wait for a service request.
    ASYNC_NOTIFY: arm a notification callback that only sets a flag; the
        waiting context observes the flag and re-reads the status byte.

Typical usage::

    engine = SyncEngine(TmcConnection(transport))
    stb = engine.issue_and_wait_opc(":DIG CHAN1", SyncStrategy.TIMED_WAIT, timeout_s=5)
    if StatusBit.ESB in stb:
        errors = engine.read_event_status()
"""

from __future__ import annotations

import logging
import math
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Callable

from tmcsync_core.errors import StateError

from tmcsync_scpi.block import decode_block
from tmcsync_scpi.errors import AnomalyHandler, ScpiAnomaly, ScpiTimeoutError, log_anomaly
from tmcsync_scpi.registers import (
    EventBit,
    RegisterKind,
    StatusBit,
    decode_event_status,
    format_register,
)

if TYPE_CHECKING:
    from tmcsync_scpi.config import SyncConfig
    from tmcsync_scpi.connection import TmcConnection

logger = logging.getLogger(__name__)

OPC_SUFFIX = ";*OPC"


class SyncStrategy(Enum):
    """How to wait for an operation-complete condition."""

    ACTIVE_POLL = "active_poll"
    BLOCKING_WAIT = "blocking_wait"
    TIMED_WAIT = "timed_wait"
    ASYNC_NOTIFY = "async_notify"


@dataclass
class PendingOperation:
    """One "send command, await operation complete" cycle.

    Created by :meth:`SyncEngine.issue` and consumed exactly once by
    :meth:`SyncEngine.wait`. It is never retried automatically.

    Attributes:
        command: The command text sent, without the ``*OPC`` suffix.
        strategy: The synchronization strategy selected.
        completion: Status byte bit(s) that indicate completion.
        timeout_s: Optional bound for the wait in seconds.
        status: Status byte observed at completion, set by the wait.
        consumed: Whether a wait has already been attempted.
    """

    command: str
    strategy: SyncStrategy
    completion: StatusBit = StatusBit.ESB
    timeout_s: float | None = None
    status: StatusBit | None = None
    consumed: bool = False
    _signal: threading.Event = field(default_factory=threading.Event, repr=False)

    @property
    def satisfied(self) -> bool:
        """Return True if the observed status byte meets the completion predicate."""
        return self.status is not None and bool(self.status & self.completion)


class SyncEngine:
    """Issues commands and waits for operation complete.

    One engine drives one connection. A transport failure during a wait
    is fatal to that pending operation only; after a device clear the same
    engine can issue the next command.

    Args:
        connection: Text layer over the transport.
        poll_interval_s: Delay between ACTIVE_POLL status reads.
        poll_cap: Maximum ACTIVE_POLL status reads when no timeout is given.
        notify_timeout_s: ASYNC_NOTIFY bound when no timeout is given.
        on_anomaly: Called with status mismatches. Defaults to logging.
        sleep: Sleep function used between polls.
    """

    def __init__(
        self,
        connection: TmcConnection,
        *,
        poll_interval_s: float = 0.01,
        poll_cap: int = 100,
        notify_timeout_s: float = 5.0,
        on_anomaly: AnomalyHandler | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        if poll_interval_s < 0:
            raise ValueError("poll_interval_s must be >= 0")
        if poll_cap < 1:
            raise ValueError("poll_cap must be >= 1")
        self._connection = connection
        self._transport = connection.transport
        self._poll_interval_s = poll_interval_s
        self._poll_cap = poll_cap
        self._notify_timeout_s = notify_timeout_s
        self._on_anomaly = on_anomaly or log_anomaly
        self._sleep = sleep
        self._waiters: dict[SyncStrategy, Callable[[PendingOperation], StatusBit]] = {
            SyncStrategy.ACTIVE_POLL: self._wait_active_poll,
            SyncStrategy.BLOCKING_WAIT: self._wait_blocking,
            SyncStrategy.TIMED_WAIT: self._wait_timed,
            SyncStrategy.ASYNC_NOTIFY: self._wait_async_notify,
        }

    @classmethod
    def from_config(
        cls,
        connection: TmcConnection,
        config: SyncConfig,
        *,
        on_anomaly: AnomalyHandler | None = None,
    ) -> SyncEngine:
        """Create an engine with the timing values of a :class:`SyncConfig`."""
        return cls(
            connection,
            poll_interval_s=config.poll_interval_s,
            poll_cap=config.poll_cap,
            notify_timeout_s=config.notify_timeout_s,
            on_anomaly=on_anomaly,
        )

    @property
    def connection(self) -> TmcConnection:
        """The connection this engine drives."""
        return self._connection

    # -- Issue / wait --------------------------------------------------------

    def issue(
        self,
        command: str,
        strategy: SyncStrategy,
        timeout_s: float | None = None,
        *,
        completion: StatusBit = StatusBit.ESB,
    ) -> PendingOperation:
        """Enable the completion condition, then send *command* with ``*OPC``.

        Status is cleared and ``*ESE``/``*SRE`` are written before the
        command is sent, so the condition cannot become true before it is
        enabled. A stale service request is drained with an out-of-band
        status byte read.

        Args:
            command: SCPI command or query text.
            strategy: How :meth:`wait` will detect completion.
            timeout_s: Optional bound for the wait.
            completion: ``StatusBit.ESB`` to wait for the OPC event, or
                ``StatusBit.MAV`` to wait for queued response data.

        Returns:
            The pending operation to pass to :meth:`wait`.
        """
        operation = PendingOperation(
            command=command,
            strategy=strategy,
            completion=completion,
            timeout_s=timeout_s,
        )
        self.enable_completion(completion)

        if strategy is SyncStrategy.ASYNC_NOTIFY:
            # Known hazard: an edge delivered between the drain above and the
            # arming below is lost. Arm-before-send narrows the window but
            # cannot close it without a driver-level guarantee.
            self._transport.enable_srq_notification(operation._signal.set)
            operation._signal.clear()

        self._connection.write(command.rstrip("\n") + OPC_SUFFIX)
        logger.debug("Issued %r using %s", command, strategy.value)
        return operation

    def enable_completion(self, completion: StatusBit = StatusBit.ESB) -> StatusBit:
        """Clear status and enable *completion* into the service request.

        Sends ``*CLS``, ``*ESE`` with OPC and ``*SRE`` with *completion*,
        then drains a stale service request with an out-of-band read.

        Returns:
            The drained status byte.

        Raises:
            ValueError: If *completion* is empty or includes MSS.
        """
        if not completion or completion & StatusBit.MSS:
            raise ValueError(f"invalid completion bits: {completion!r}")
        conn = self._connection
        conn.clear_status()
        conn.set_register(RegisterKind.ESE, EventBit.OPC)
        conn.set_register(RegisterKind.SRE, completion)
        stale = StatusBit(self._transport.read_stb())
        logger.debug("Before issue: %s", format_register(RegisterKind.STB, stale))
        return stale

    def wait(self, operation: PendingOperation) -> StatusBit:
        """Block until *operation* completes according to its strategy.

        Returns:
            The status byte observed at completion.

        Raises:
            StateError: If the operation was already waited on.
            ScpiTimeoutError: If the wait exceeded its bound.
            TransportError: If the transport failed during the wait.
        """
        if operation.consumed:
            raise StateError(f"operation {operation.command!r} was already waited on")
        operation.consumed = True
        try:
            status = self._waiters[operation.strategy](operation)
        finally:
            if operation.strategy is SyncStrategy.ASYNC_NOTIFY:
                self._transport.disable_srq_notification()
        operation.status = status
        if not operation.satisfied:
            logger.warning(
                "%s woke without %s: %s",
                operation.strategy.value,
                operation.completion.name,
                format_register(RegisterKind.STB, status),
            )
        return status

    def issue_and_wait_opc(
        self,
        command: str,
        strategy: SyncStrategy,
        timeout_s: float | None = None,
        *,
        completion: StatusBit = StatusBit.ESB,
    ) -> StatusBit:
        """Send *command* followed by ``*OPC`` and wait for completion.

        See :meth:`issue` and :meth:`wait`.

        Returns:
            The status byte observed at completion. For BLOCKING_WAIT and
            TIMED_WAIT this is the status after one service request wake;
            callers check it for the completion bit since several enabled
            conditions may alias into one wake.
        """
        return self.wait(self.issue(command, strategy, timeout_s, completion=completion))

    def query_block(
        self,
        command: str,
        strategy: SyncStrategy,
        timeout_s: float | None = None,
    ) -> bytes:
        """Issue a query answered with a binary block and read it after OPC.

        Raises:
            ScpiTimeoutError: If operation complete is not reported in time.
            ScpiProtocolError: If the block is malformed or truncated.
        """
        self.issue_and_wait_opc(command, strategy, timeout_s)
        return decode_block(
            self._transport,
            chunk_size=self._connection.read_chunk_size,
            on_anomaly=self._on_anomaly,
        )

    # -- Status --------------------------------------------------------------

    def read_event_status(self) -> frozenset[EventBit]:
        """Read and decode the Event Status Register with ``*ESR?``.

        The read clears the register on the instrument. The returned set is
        the only view of the events since the previous clear.
        """
        value = self._connection.get_register(RegisterKind.ESR)
        logger.debug(format_register(RegisterKind.ESR, value))
        return decode_event_status(value)

    def check_status_consistency(self) -> StatusBit:
        """Compare the out-of-band status byte with a ``*STB?`` query.

        The out-of-band read happens first because the query itself sets
        MAV. The two reads are not atomic, so a mismatch is reported as an
        anomaly instead of raising.

        Returns:
            The out-of-band status byte.
        """
        direct = self._transport.read_stb()
        queried = self._connection.get_register(RegisterKind.STB)
        if direct != queried:
            self._on_anomaly(
                ScpiAnomaly(
                    "status byte",
                    f"*STB? returned {queried:#04x} ({format_register(RegisterKind.STB, queried)}), "
                    f"out-of-band read returned {direct:#04x} "
                    f"({format_register(RegisterKind.STB, direct)})",
                )
            )
        return StatusBit(direct)

    # -- Strategies ----------------------------------------------------------

    def _poll_limit(self, timeout_s: float | None) -> int:
        if timeout_s is None or self._poll_interval_s == 0:
            return self._poll_cap
        return max(1, math.ceil(timeout_s / self._poll_interval_s))

    def _wait_active_poll(self, operation: PendingOperation) -> StatusBit:
        limit = self._poll_limit(operation.timeout_s)
        for iteration in range(1, limit + 1):
            stb = StatusBit(self._transport.read_stb())
            if stb & operation.completion:
                logger.debug("Active poll complete after %d iterations", iteration)
                return stb
            if iteration < limit:
                self._sleep(self._poll_interval_s)
        raise ScpiTimeoutError(
            f"active poll for {operation.completion.name} ({limit} iterations)",
            operation.timeout_s,
        )

    def _wait_blocking(self, operation: PendingOperation) -> StatusBit:
        self._transport.wait_for_srq(None)
        return StatusBit(self._transport.read_stb())

    def _wait_timed(self, operation: PendingOperation) -> StatusBit:
        timeout_s = operation.timeout_s if operation.timeout_s is not None else self._notify_timeout_s
        self._transport.wait_for_srq(int(round(timeout_s * 1000)))
        return StatusBit(self._transport.read_stb())

    def _wait_async_notify(self, operation: PendingOperation) -> StatusBit:
        timeout_s = operation.timeout_s if operation.timeout_s is not None else self._notify_timeout_s
        deadline = time.monotonic() + timeout_s
        signal = operation._signal
        while True:
            remaining = deadline - time.monotonic()
            if remaining <= 0 or not signal.wait(remaining):
                raise ScpiTimeoutError(
                    f"service request notification for {operation.completion.name}", timeout_s
                )
            signal.clear()
            stb = StatusBit(self._transport.read_stb())
            if stb & operation.completion:
                return stb
            logger.warning(
                "Spurious service request notification: %s",
                format_register(RegisterKind.STB, stb),
            )
