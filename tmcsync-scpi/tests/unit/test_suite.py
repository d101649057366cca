"""Tests for the driver check suite against the emulator."""

from __future__ import annotations

import pytest

from tmcsync_core.types import Timestamp

from tmcsync_scpi.config import SuiteConfig, TmcsyncConfig
from tmcsync_scpi.emulator import EmulatorConfig, TmcEmulator
from tmcsync_scpi.suite import (
    CheckResult,
    CheckStatus,
    SuiteContext,
    SuiteResult,
    check_names,
    run_suite,
)
from tmcsync_scpi.transport import Capability, TerminatorConfig

FAST_CONFIG = TmcsyncConfig(suite=SuiteConfig(srq_iterations=5, srq_timeout_ms=300))


class CountingEmulator(TmcEmulator):
    """Emulator that counts device clears."""

    def __init__(self, config: EmulatorConfig | None = None) -> None:
        super().__init__(config)
        self.clears = 0

    def clear(self) -> None:
        self.clears += 1
        super().clear()


def _result(status: CheckStatus) -> CheckResult:
    now = Timestamp.now()
    return CheckResult(name="x", status=status, start_time=now, end_time=now)


# ---------------------------------------------------------------------------
# Check registry
# ---------------------------------------------------------------------------


class TestCheckNames:
    """Tests for the ordered check list."""

    def test_order(self) -> None:
        assert check_names() == (
            "timeout",
            "stb",
            "remote",
            "eom",
            "eom_in",
            "termchar",
            "blocking_wait",
            "async_notify",
            "trigger",
            "wait_for_srq",
            "srq",
        )


# ---------------------------------------------------------------------------
# run_suite
# ---------------------------------------------------------------------------


class TestRunSuite:
    """Tests for running checks against the emulator."""

    def test_full_suite_passes(self) -> None:
        emu = CountingEmulator()
        result = run_suite(SuiteContext.create(emu, FAST_CONFIG))
        failures = [(r.name, r.message) for r in result.results if not r.passed]
        assert failures == []
        assert result.total == 11
        assert result.all_passed
        assert emu.clears == 0
        emu.close()

    def test_only_runs_in_suite_order(self, emulator: TmcEmulator) -> None:
        result = run_suite(SuiteContext.create(emulator, FAST_CONFIG), only=["srq", "stb"])
        assert [r.name for r in result.results] == ["stb", "srq"]

    def test_unknown_check(self, emulator: TmcEmulator) -> None:
        with pytest.raises(ValueError, match="Unknown checks: bogus"):
            run_suite(SuiteContext.create(emulator), only=["bogus"])

    def test_on_result_callback(self, emulator: TmcEmulator) -> None:
        seen: list[str] = []
        run_suite(
            SuiteContext.create(emulator, FAST_CONFIG),
            only=["timeout", "eom_in"],
            on_result=lambda r: seen.append(r.name),
        )
        assert seen == ["timeout", "eom_in"]

    def test_trigger_skipped_without_capability(self) -> None:
        emu = TmcEmulator(EmulatorConfig(capabilities=Capability.IEEE488_2 | Capability.SR1))
        result = run_suite(SuiteContext.create(emu, FAST_CONFIG), only=["trigger"])
        assert result.results[0].status is CheckStatus.SKIPPED
        assert result.skipped == 1
        assert result.all_passed
        emu.close()

    def test_failure_clears_device(self) -> None:
        emu = CountingEmulator()
        config = TmcsyncConfig(suite=SuiteConfig(measure_query="*IDN?"))
        result = run_suite(SuiteContext.create(emu, config), only=["termchar"])
        assert result.results[0].status is CheckStatus.FAILED
        assert "several parts" in result.results[0].message
        assert emu.clears == 1
        assert not result.all_passed
        emu.close()

    def test_transport_error_is_error(self) -> None:
        emu = CountingEmulator()
        emu.close()
        result = run_suite(SuiteContext.create(emu), only=["stb"])
        assert result.results[0].status is CheckStatus.ERROR
        assert "TransportError" in result.results[0].message
        assert result.errors == 1

    def test_chunked_reads(self) -> None:
        emu = TmcEmulator(EmulatorConfig(max_read_chunk=3))
        result = run_suite(
            SuiteContext.create(emu, FAST_CONFIG), only=["stb", "eom", "termchar", "srq"]
        )
        assert result.all_passed
        emu.close()


# ---------------------------------------------------------------------------
# Individual checks
# ---------------------------------------------------------------------------


class IgnoresTerminatorEmulator(TmcEmulator):
    """Emulator whose reads never stop at the termination character."""

    def configure_terminator(self, char: str, enabled: bool) -> TerminatorConfig:
        return TerminatorConfig()


def _run_one(emu: TmcEmulator, name: str) -> CheckResult:
    return run_suite(SuiteContext.create(emu, FAST_CONFIG), only=[name]).results[0]


class TestChecks:
    """Tests for the behaviour of single checks."""

    def test_timeout_reports_boundaries_and_restores(self, emulator: TmcEmulator) -> None:
        emulator.timeout_ms = 1234
        result = _run_one(emulator, "timeout")
        assert result.passed
        assert "0 -> 0" in result.message
        assert "4294967295 -> 4294967295" in result.message
        assert emulator.timeout_ms == 1234

    def test_remote_sequence(self, emulator: TmcEmulator) -> None:
        result = _run_one(emulator, "remote")
        assert result.passed
        assert result.message == "REN off, REN on, LLO, GTL"
        assert emulator.ren_asserted
        assert emulator.locked_out
        # The closing *CLS addresses the instrument again while REN is asserted.
        assert emulator.messages[-1] == "*CLS"
        assert emulator.remote

    def test_remote_skipped_without_capability(self) -> None:
        emu = TmcEmulator(EmulatorConfig(capabilities=Capability.TRIGGER | Capability.IEEE488_2))
        result = _run_one(emu, "remote")
        assert result.status is CheckStatus.SKIPPED
        emu.close()

    def test_termchar_reports_reassembled_responses(self, emulator: TmcEmulator) -> None:
        result = _run_one(emulator, "termchar")
        assert result.passed
        assert result.message == "3 parts in 3 reads: TMCSYNC,EMULATOR,0,1.0, 0, 0"

    def test_termchar_fails_when_reads_ignore_terminator(self) -> None:
        emu = IgnoresTerminatorEmulator()
        result = _run_one(emu, "termchar")
        assert result.status is CheckStatus.FAILED
        assert "read continued past ';'" in result.message
        emu.close()


# ---------------------------------------------------------------------------
# Result types
# ---------------------------------------------------------------------------


class TestSuiteResult:
    """Tests for result aggregation."""

    def test_counts(self) -> None:
        result = SuiteResult(
            results=(
                _result(CheckStatus.PASSED),
                _result(CheckStatus.FAILED),
                _result(CheckStatus.SKIPPED),
                _result(CheckStatus.ERROR),
            )
        )
        assert (result.total, result.passed, result.failed, result.skipped, result.errors) == (
            4,
            1,
            1,
            1,
            1,
        )
        assert not result.all_passed

    def test_to_dict(self) -> None:
        data = SuiteResult(results=(_result(CheckStatus.PASSED),)).to_dict()
        assert data["all_passed"] is True
        assert data["results"][0]["status"] == "passed"
        assert data["results"][0]["duration_seconds"] == 0.0
