"""Tests for the in-process USBTMC instrument emulator."""

from __future__ import annotations

import time

import pytest

from tmcsync_scpi.connection import TmcConnection
from tmcsync_scpi.emulator import EmulatorConfig, TmcEmulator
from tmcsync_scpi.errors import ScpiTimeoutError, TransportError
from tmcsync_scpi.registers import EventBit, RegisterKind, StatusBit
from tmcsync_scpi.transport import Capability, TerminatorConfig


def _read_all(emu: TmcEmulator, size: int = 1024) -> bytes:
    data = bytearray()
    while True:
        chunk = emu.read(size)
        if not chunk:
            return bytes(data)
        data += chunk


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


class TestEmulatorConfig:
    """Tests for EmulatorConfig validation."""

    def test_defaults(self) -> None:
        config = EmulatorConfig()
        assert config.operation_delay_s == 0.0
        assert config.max_read_chunk is None
        assert Capability.TRIGGER in config.capabilities

    @pytest.mark.parametrize(
        "kwargs",
        [{"identity": ""}, {"operation_delay_s": -1.0}, {"max_read_chunk": 0}],
    )
    def test_invalid(self, kwargs: dict) -> None:
        with pytest.raises(ValueError):
            EmulatorConfig(**kwargs)


# ---------------------------------------------------------------------------
# Message processing
# ---------------------------------------------------------------------------


class TestMessages:
    """Tests for program message execution."""

    def test_idn(self, emulator: TmcEmulator) -> None:
        emulator.write(b"*IDN?\n")
        assert _read_all(emulator) == b"TMCSYNC,EMULATOR,0,1.0\n"

    def test_compound_responses_joined(self, emulator: TmcEmulator) -> None:
        emulator.write(b"*ESE 33;*SRE 16;*ESE?;*SRE?\n")
        assert _read_all(emulator) == b"33;16\n"

    def test_sre_ignores_mss(self, emulator: TmcEmulator) -> None:
        emulator.write(b"*SRE 255\n")
        emulator.write(b"*SRE?\n")
        assert _read_all(emulator) == b"191\n"

    def test_esr_is_destructive(self, emulator: TmcEmulator) -> None:
        emulator.write(b"*ESR?\n")
        assert _read_all(emulator) == b"128\n"
        emulator.write(b"*ESR?\n")
        assert _read_all(emulator) == b"0\n"

    def test_opc_sets_event(self, emulator: TmcEmulator) -> None:
        emulator.write(b"*CLS;*OPC\n")
        emulator.write(b"*ESR?\n")
        assert _read_all(emulator) == b"1\n"

    def test_undefined_header(self, emulator: TmcEmulator) -> None:
        emulator.write(b"*CLS;BOGUS:CMD\n")
        conn = TmcConnection(emulator)
        assert EventBit.CME & conn.get_register(RegisterKind.ESR)
        assert conn.get_errors()[0].code == -113

    def test_data_out_of_range(self, emulator: TmcEmulator) -> None:
        emulator.write(b"*CLS;*ESE 300\n")
        conn = TmcConnection(emulator)
        assert conn.get_errors()[0].code == -222

    def test_quoted_semicolon_not_split(self, emulator: TmcEmulator) -> None:
        seen: list[str] = []
        emulator.add_command("DISP:TEXT", seen.append)
        emulator.write(b':DISP:TEXT "a;b"\n')
        assert seen == ['"a;b"']

    def test_custom_text_query(self, emulator: TmcEmulator) -> None:
        emulator.add_query(":MEAS:FREQ?", lambda args: "1.0E+03")
        emulator.write(b":meas:freq? CHAN1\n")
        assert _read_all(emulator) == b"1.0E+03\n"

    def test_custom_block_query(self, emulator: TmcEmulator) -> None:
        emulator.add_query(":DISP:DATA?", lambda args: b"\x00\x01")
        emulator.write(b":DISP:DATA? PNG\n")
        assert _read_all(emulator) == b"#12\x00\x01\n"

    def test_handler_header_validation(self, emulator: TmcEmulator) -> None:
        with pytest.raises(ValueError):
            emulator.add_query("MEAS", lambda args: "")
        with pytest.raises(ValueError):
            emulator.add_command("MEAS?", lambda args: None)

    def test_query_interrupted(self, emulator: TmcEmulator) -> None:
        emulator.write(b"*IDN?\n")
        emulator.write(b"*ESE?\n")
        assert _read_all(emulator) == b"0\n"
        emulator.write(b"SYST:ERR?\n")
        assert _read_all(emulator).startswith(b"-410")

    def test_messages_recorded(self, emulator: TmcEmulator) -> None:
        emulator.write(b"*CLS\n")
        assert emulator.messages == ["*CLS"]


# ---------------------------------------------------------------------------
# Status model
# ---------------------------------------------------------------------------


class TestStatusModel:
    """Tests for STB summary bits and service requests."""

    def test_mav_follows_output_queue(self, emulator: TmcEmulator) -> None:
        emulator.write(b"*IDN?\n")
        assert emulator.status_byte & StatusBit.MAV
        _read_all(emulator)
        assert not emulator.status_byte & StatusBit.MAV

    def test_esb_follows_enabled_events(self, emulator: TmcEmulator) -> None:
        emulator.write(b"*CLS;*ESE 1;*OPC\n")
        assert emulator.status_byte & StatusBit.ESB
        emulator.write(b"*ESE 0\n")
        assert not emulator.status_byte & StatusBit.ESB

    def test_raise_event(self, emulator: TmcEmulator) -> None:
        emulator.write(b"*CLS;*ESE 16;*SRE 32\n")
        emulator.raise_event(EventBit.EXE)
        assert emulator.srq_pending
        assert emulator.status_byte & StatusBit.ESB
        emulator.write(b"*ESR?\n")
        assert _read_all(emulator) == b"16\n"

    def test_push_error_drained_by_connection(self, emulator: TmcEmulator) -> None:
        emulator.push_error(-222, "Data out of range")
        errors = TmcConnection(emulator).get_errors()
        assert [(e.code, e.message) for e in errors] == [(-222, "Data out of range")]

    def test_srq_on_rising_edge(self, emulator: TmcEmulator) -> None:
        emulator.write(b"*CLS;*ESE 1;*SRE 32\n")
        assert not emulator.srq_pending
        emulator.write(b"*OPC\n")
        assert emulator.srq_pending
        assert emulator.read_stb() & StatusBit.MSS
        assert not emulator.srq_pending
        emulator.write(b"*OPC\n")
        assert not emulator.srq_pending

    def test_notification_callback(self, emulator: TmcEmulator) -> None:
        calls: list[int] = []
        emulator.enable_srq_notification(lambda: calls.append(1))
        emulator.write(b"*SRE 16;*IDN?\n")
        assert calls == [1]
        emulator.disable_srq_notification()
        _read_all(emulator)
        emulator.write(b"*IDN?\n")
        assert calls == [1]

    def test_wait_for_srq_consumes(self, emulator: TmcEmulator) -> None:
        emulator.write(b"*SRE 16;*IDN?\n")
        emulator.wait_for_srq(0)
        with pytest.raises(ScpiTimeoutError):
            emulator.wait_for_srq(0)

    def test_wait_for_srq_timeout_duration(self, emulator: TmcEmulator) -> None:
        start = time.monotonic()
        with pytest.raises(ScpiTimeoutError):
            emulator.wait_for_srq(200)
        assert 0.18 <= time.monotonic() - start <= 0.35

    def test_trigger(self, emulator: TmcEmulator) -> None:
        emulator.write(b"*SRE 1\n")
        emulator.trigger()
        emulator.wait_for_srq(0)
        assert emulator.read_stb() & StatusBit.TRG
        emulator.write(b"*CLS\n")
        assert not emulator.read_stb() & StatusBit.TRG

    def test_trigger_unsupported(self) -> None:
        emu = TmcEmulator(EmulatorConfig(capabilities=Capability.IEEE488_2))
        with pytest.raises(TransportError, match="trigger"):
            emu.trigger()


# ---------------------------------------------------------------------------
# Transport behaviour
# ---------------------------------------------------------------------------


class TestTransport:
    """Tests for read framing and transport controls."""

    def test_eom_holds_partial_message(self, emulator: TmcEmulator) -> None:
        emulator.set_eom(False)
        assert not emulator.eom_enabled
        emulator.write(b"*ESE 4;*E")
        assert emulator.messages == []
        emulator.set_eom(True)
        emulator.write(b"SE?\n")
        assert emulator.messages == ["*ESE 4;*ESE?"]
        assert _read_all(emulator) == b"4\n"

    def test_max_read_chunk(self) -> None:
        emu = TmcEmulator(EmulatorConfig(max_read_chunk=4))
        emu.write(b"*IDN?\n")
        assert len(emu.read(1024)) == 4

    def test_termination_character(self, emulator: TmcEmulator) -> None:
        previous = emulator.configure_terminator(";", True)
        assert previous == TerminatorConfig()
        emulator.write(b"*ESE?;*SRE?;*ESE?\n")
        assert emulator.read(1024) == b"0;"
        assert emulator.read(1024) == b"0;"
        assert emulator.read(1024) == b"0\n"
        assert emulator.read(1024) == b""

    def test_clear_flushes_output(self, emulator: TmcEmulator) -> None:
        emulator.write(b"*IDN?\n")
        emulator.clear()
        assert emulator.read(1024) == b""

    def test_delayed_response_waits_in_read(self) -> None:
        emu = TmcEmulator(EmulatorConfig(operation_delay_s=0.05))
        emu.write(b"*IDN?\n")
        assert emu.read(1024) == b"TMCSYNC,EMULATOR,0,1.0\n"
        emu.close()

    def test_read_timeout_clears(self) -> None:
        emu = TmcEmulator(EmulatorConfig(operation_delay_s=5.0))
        emu.timeout_ms = 50
        emu.write(b"*IDN?\n")
        with pytest.raises(TransportError, match="timed out"):
            emu.read(1024)
        assert emu.read(1024) == b""
        emu.close()

    def test_closed_transport(self, emulator: TmcEmulator) -> None:
        emulator.close()
        with pytest.raises(TransportError, match="closed"):
            emulator.write(b"*IDN?\n")

    def test_timeout_property(self, emulator: TmcEmulator) -> None:
        emulator.timeout_ms = None
        assert emulator.timeout_ms is None
        with pytest.raises(ValueError):
            emulator.timeout_ms = -1


# ---------------------------------------------------------------------------
# Remote enable control
# ---------------------------------------------------------------------------


class TestRemoteControl:
    """Tests for REN, local lockout and go to local."""

    def test_starts_local(self, emulator: TmcEmulator) -> None:
        emulator.write(b"*IDN?\n")
        assert not emulator.ren_asserted
        assert not emulator.remote

    def test_addressed_with_ren_goes_remote(self, emulator: TmcEmulator) -> None:
        emulator.ren_control(True)
        assert not emulator.remote
        emulator.write(b"*CLS\n")
        assert emulator.remote

    def test_goto_local_keeps_lockout(self, emulator: TmcEmulator) -> None:
        emulator.ren_control(True)
        emulator.write(b"*CLS\n")
        emulator.local_lockout()
        emulator.goto_local()
        assert not emulator.remote
        assert emulator.locked_out
        assert emulator.ren_asserted

    def test_ren_off_cancels_lockout(self, emulator: TmcEmulator) -> None:
        emulator.ren_control(True)
        emulator.write(b"*CLS\n")
        emulator.local_lockout()
        emulator.ren_control(False)
        assert not emulator.remote
        assert not emulator.locked_out

    def test_lockout_requires_ren(self, emulator: TmcEmulator) -> None:
        with pytest.raises(TransportError, match="REN is not asserted"):
            emulator.local_lockout()

    def test_unsupported(self) -> None:
        emu = TmcEmulator(EmulatorConfig(capabilities=Capability.IEEE488_2))
        with pytest.raises(TransportError, match="remote control"):
            emu.ren_control(True)
        with pytest.raises(TransportError, match="goto_local"):
            emu.goto_local()
        emu.close()
