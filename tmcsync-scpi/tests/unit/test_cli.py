"""Tests for the tmcsync command-line interface."""

from __future__ import annotations

from pathlib import Path

import pytest

from tmcsync_scpi.cli import main

FAST_SUITE = """\
suite:
  srq_iterations: 3
  srq_timeout_ms: 300
"""


@pytest.fixture
def fast_config(tmp_path: Path) -> str:
    path = tmp_path / "fast.yaml"
    path.write_text(FAST_SUITE)
    return str(path)


class TestStatus:
    """Tests for the status command."""

    def test_emulated_status(self, capsys: pytest.CaptureFixture[str]) -> None:
        assert main(["status", "--emulate"]) == 0
        out = capsys.readouterr().out
        assert "Instrument: TMCSYNC EMULATOR (SN 0, FW 1.0)" in out
        assert "STB = (none)" in out
        assert "ESR = PON" in out

    def test_missing_resource(self, capsys: pytest.CaptureFixture[str]) -> None:
        assert main(["status"]) == 1
        assert "No instrument resource" in capsys.readouterr().out


class TestSuite:
    """Tests for the suite command."""

    def test_selected_checks(self, fast_config: str, capsys: pytest.CaptureFixture[str]) -> None:
        assert main(["suite", "--emulate", "--config", fast_config, "--only", "stb", "eom"]) == 0
        out = capsys.readouterr().out
        assert "Passed: 2/2" in out
        assert "PASSED" in out

    def test_full_suite(self, fast_config: str, capsys: pytest.CaptureFixture[str]) -> None:
        assert main(["suite", "--emulate", "-c", fast_config]) == 0
        assert "Passed: 11/11" in capsys.readouterr().out

    def test_failing_check_exit_code(
        self, tmp_path: Path, capsys: pytest.CaptureFixture[str]
    ) -> None:
        path = tmp_path / "idn.yaml"
        path.write_text('suite:\n  measure_query: "*IDN?"\n')
        assert main(["suite", "--emulate", "-c", str(path), "--only", "termchar"]) == 1
        assert "Failed: 1" in capsys.readouterr().out

    def test_missing_config(self, tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
        assert main(["suite", "--emulate", "-c", str(tmp_path / "nope.yaml")]) == 1
        assert "Error: Config not found" in capsys.readouterr().out

    def test_unknown_check_rejected(self) -> None:
        with pytest.raises(SystemExit):
            main(["suite", "--emulate", "--only", "bogus"])


class TestMain:
    """Tests for argument handling."""

    def test_no_command(self) -> None:
        assert main([]) == 1

    def test_resource_and_emulate_exclusive(self) -> None:
        with pytest.raises(SystemExit):
            main(["status", "--emulate", "--resource", "USB0::1::2::3::INSTR"])
