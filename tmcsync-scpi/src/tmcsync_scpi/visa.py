"""PyVISA transport for USBTMC instruments.

This module provides a VISA-based implementation of
:class:`~tmcsync_scpi.transport.TmcTransport`. It wraps the PyVISA library,
which is lazily imported so the rest of tmcsync-scpi works without VISA
installed.

Transport operations map onto VISA as follows:

- bounded reads: ``visalib.read`` on the session; a read that ends with END
  completes the response message
- device clear: ``Resource.clear``
- out-of-band status byte: ``Resource.read_stb`` (USB488 READ_STATUS_BYTE)
- service request waits: ``enable_event`` + ``wait_on_event`` on the
  service request event queue
- notifications: ``install_handler`` on the service request event
- end-of-message marking: ``send_end``
- termination character: ``VI_ATTR_TERMCHAR`` / ``VI_ATTR_TERMCHAR_EN``
- remote enable line operations: ``control_ren``
"""

from __future__ import annotations

import logging
from typing import Any

from tmcsync_core.errors import TmcsyncError

from tmcsync_scpi.errors import ScpiTimeoutError, TransportError
from tmcsync_scpi.transport import Capability, SrqCallback, TerminatorConfig

logger = logging.getLogger(__name__)


class VisaTransport:
    """USBTMC transport backed by PyVISA.

    Uses NI-style VISA resource strings (e.g.
    ``"USB0::0x0957::0x1796::MY12345678::INSTR"``) to address instruments.

    Args:
        resource_string: VISA resource address.
        timeout_ms: I/O timeout in milliseconds (applied on open).
        capabilities: Static capability flags. When None, only
            ``IEEE488_2`` is inferred from the resource's 488.2 compliance
            attribute.

    Example:
        >>> transport = VisaTransport("USB0::0x0957::0x1796::MY12345678::INSTR")
        >>> transport.open()
        >>> transport.write(b"*IDN?\\n")
        >>> print(transport.read(256))
        >>> transport.close()
    """

    def __init__(
        self,
        resource_string: str,
        *,
        timeout_ms: int | None = 5000,
        capabilities: Capability | None = None,
    ) -> None:
        self._resource_string = resource_string
        self._timeout_ms = timeout_ms
        self._capabilities = capabilities
        self._pyvisa: Any = None
        self._rm: Any = None
        self._resource: Any = None
        self._message_complete = False
        self._srq_queue_enabled = False
        self._srq_handler: Any = None
        self._srq_user_handle: Any = None

    # -- Properties ----------------------------------------------------------

    @property
    def resource_string(self) -> str:
        """The VISA resource string."""
        return self._resource_string

    @property
    def is_open(self) -> bool:
        """Return True if the resource is currently open."""
        return self._resource is not None

    @property
    def timeout_ms(self) -> int | None:
        """I/O timeout in milliseconds; None means wait forever."""
        if self._resource is None:
            return self._timeout_ms
        value = self._resource.timeout
        if value is None or value == float("inf"):
            return None
        return int(value)

    @timeout_ms.setter
    def timeout_ms(self, value: int | None) -> None:
        if value is not None and value < 0:
            raise ValueError("timeout_ms must be >= 0 or None")
        if self._resource is not None:
            try:
                self._resource.timeout = value
            except Exception as exc:
                raise TransportError("set timeout", str(exc)) from exc
        self._timeout_ms = value

    # -- Lifecycle -----------------------------------------------------------

    def open(self) -> None:
        """Open the VISA resource.

        Lazily imports ``pyvisa`` and creates a ``ResourceManager``.

        Raises:
            TmcsyncError: If ``pyvisa`` is not installed or the resource
                cannot be opened.
        """
        if self._resource is not None:
            return

        try:
            import pyvisa  # type: ignore[import-not-found]  # pylint: disable=import-outside-toplevel
        except ImportError as exc:
            raise TmcsyncError(
                "pyvisa library is not installed. Install with: pip install pyvisa"
            ) from exc

        try:
            self._rm = pyvisa.ResourceManager()
            self._resource = self._rm.open_resource(self._resource_string)
            self._resource.timeout = self._timeout_ms
        except Exception as exc:
            self._resource = None
            if self._rm is not None:
                try:
                    self._rm.close()
                except Exception:  # pylint: disable=broad-except
                    pass
            self._rm = None
            raise TmcsyncError(
                f"Failed to open VISA resource {self._resource_string!r}: {exc}"
            ) from exc
        self._pyvisa = pyvisa
        self._message_complete = False
        logger.info("Opened %s", self._resource_string)

    def close(self) -> None:
        """Close the VISA resource and resource manager.

        Safe to call multiple times.
        """
        if self._resource is not None:
            try:
                self.disable_srq_notification()
                if self._srq_queue_enabled:
                    self._resource.disable_event(
                        self._constants.EventType.service_request,
                        self._constants.EventMechanism.queue,
                    )
            except Exception:  # pylint: disable=broad-except
                logger.debug("Ignoring error while disabling events", exc_info=True)
            try:
                self._resource.close()
            except Exception:  # pylint: disable=broad-except
                pass
            self._resource = None
        if self._rm is not None:
            try:
                self._rm.close()
            except Exception:  # pylint: disable=broad-except
                pass
            self._rm = None
        self._srq_queue_enabled = False

    # -- Transport interface -------------------------------------------------

    def write(self, data: bytes) -> int:
        """Send raw bytes to the instrument.

        Raises:
            TmcsyncError: If the resource is not open.
            TransportError: If the write fails.
        """
        resource = self._require_open()
        try:
            count = resource.write_raw(data)
        except Exception as exc:
            raise TransportError("write", str(exc)) from exc
        self._message_complete = False
        return int(count) if isinstance(count, int) else len(data)

    def read(self, max_len: int) -> bytes:
        """Read at most *max_len* bytes of the current response message.

        Returns ``b""`` once a previous read has delivered the END of the
        message and no new command has been written since.

        Raises:
            TransportError: If the read fails; a device clear is issued first.
        """
        resource = self._require_open()
        if self._message_complete:
            return b""
        try:
            data, status = resource.visalib.read(resource.session, max_len)
        except Exception as exc:
            self._clear_after_error()
            raise TransportError("read", str(exc)) from exc
        self._message_complete = status == self._constants.StatusCode.success
        return bytes(data)

    def clear(self) -> None:
        """Send a device clear."""
        resource = self._require_open()
        try:
            resource.clear()
        except Exception as exc:
            raise TransportError("clear", str(exc)) from exc
        self._message_complete = False

    def configure_terminator(self, char: str, enabled: bool) -> TerminatorConfig:
        """Set the termination character and return the previous setting."""
        new = TerminatorConfig(char=char, enabled=enabled)
        resource = self._require_open()
        constants = self._constants
        try:
            previous = TerminatorConfig(
                char=chr(resource.get_visa_attribute(constants.VI_ATTR_TERMCHAR)),
                enabled=bool(resource.get_visa_attribute(constants.VI_ATTR_TERMCHAR_EN)),
            )
            resource.set_visa_attribute(constants.VI_ATTR_TERMCHAR, ord(new.char))
            resource.set_visa_attribute(constants.VI_ATTR_TERMCHAR_EN, int(new.enabled))
        except Exception as exc:
            raise TransportError("configure_terminator", str(exc)) from exc
        return previous

    def set_eom(self, enabled: bool) -> None:
        """Enable or disable END on the last byte of each write."""
        resource = self._require_open()
        resource.send_end = enabled

    def read_stb(self) -> int:
        """Read the status byte with the USB488 control request.

        Once the service request queue is enabled, queued service request
        events are discarded so the next wait only sees new requests.
        """
        resource = self._require_open()
        try:
            stb = int(resource.read_stb()) & 0xFF
            if self._srq_queue_enabled:
                resource.discard_events(
                    self._constants.EventType.service_request,
                    self._constants.EventMechanism.queue,
                )
        except Exception as exc:
            raise TransportError("read_stb", str(exc)) from exc
        return stb

    def wait_for_srq(self, timeout_ms: int | None) -> None:
        """Wait on the service request event queue.

        The event queue is enabled on first use and stays enabled until the
        resource is closed.

        Raises:
            ScpiTimeoutError: If no service request arrives in time.
            TransportError: If the wait fails for another reason.
        """
        resource = self._require_open()
        constants = self._constants
        event_type = constants.EventType.service_request
        try:
            if not self._srq_queue_enabled:
                resource.enable_event(event_type, constants.EventMechanism.queue)
                self._srq_queue_enabled = True
            visa_timeout = constants.VI_TMO_INFINITE if timeout_ms is None else timeout_ms
            response = resource.wait_on_event(event_type, visa_timeout, capture_timeout=True)
        except Exception as exc:
            raise TransportError("wait_for_srq", str(exc)) from exc
        if response.timed_out:
            raise ScpiTimeoutError(
                "wait for service request",
                None if timeout_ms is None else timeout_ms / 1000.0,
            )

    def enable_srq_notification(self, callback: SrqCallback) -> None:
        """Install a VISA service request handler that calls *callback*."""
        resource = self._require_open()
        constants = self._constants
        self.disable_srq_notification()

        def handler(session: Any, event_type: Any, context: Any, user_handle: Any) -> None:
            callback()

        event_type = constants.EventType.service_request
        try:
            self._srq_user_handle = resource.install_handler(event_type, handler)
            self._srq_handler = handler
            resource.enable_event(event_type, constants.EventMechanism.handler)
        except Exception as exc:
            raise TransportError("enable_srq_notification", str(exc)) from exc

    def disable_srq_notification(self) -> None:
        """Remove the service request handler, if one is installed."""
        if self._srq_handler is None or self._resource is None:
            return
        event_type = self._constants.EventType.service_request
        try:
            self._resource.disable_event(event_type, self._constants.EventMechanism.handler)
            self._resource.uninstall_handler(event_type, self._srq_handler, self._srq_user_handle)
        except Exception as exc:
            raise TransportError("disable_srq_notification", str(exc)) from exc
        finally:
            self._srq_handler = None
            self._srq_user_handle = None

    def trigger(self) -> None:
        """Assert a bus trigger."""
        resource = self._require_open()
        try:
            resource.assert_trigger()
        except Exception as exc:
            raise TransportError("trigger", str(exc)) from exc

    def ren_control(self, enabled: bool) -> None:
        """Assert or deassert the remote enable line."""
        operation = self._constants.RENLineOperation
        self._control_ren(operation.assert_ if enabled else operation.deassert, "ren_control")

    def local_lockout(self) -> None:
        """Disable the instrument's front-panel return-to-local control."""
        self._control_ren(self._constants.RENLineOperation.assert_llo, "local_lockout")

    def goto_local(self) -> None:
        """Return the instrument to local control, keeping REN asserted."""
        self._control_ren(self._constants.RENLineOperation.address_gtl, "goto_local")

    def capabilities(self) -> Capability:
        """Return the configured capabilities, or infer 488.2 compliance."""
        if self._capabilities is not None:
            return self._capabilities
        resource = self._require_open()
        caps = Capability(0)
        if getattr(resource, "is_4882_compliant", False) is True:
            caps |= Capability.IEEE488_2
        return caps

    # -- Private helpers -----------------------------------------------------

    @property
    def _constants(self) -> Any:
        return self._pyvisa.constants

    def _require_open(self) -> Any:
        if self._resource is None:
            raise TmcsyncError("VISA resource is not open")
        return self._resource

    def _clear_after_error(self) -> None:
        try:
            self._resource.clear()
        except Exception:  # pylint: disable=broad-except
            logger.warning("Device clear after read failure also failed", exc_info=True)
        self._message_complete = False

    def _control_ren(self, mode: Any, operation: str) -> None:
        resource = self._require_open()
        try:
            resource.control_ren(mode)
        except Exception as exc:
            raise TransportError(operation, str(exc)) from exc
        logger.debug("%s: %s", operation, mode)
