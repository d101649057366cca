"""Tests for common types."""

import pytest

from tmcsync_core.types import InstrumentIdentity, Timestamp


class TestInstrumentIdentity:
    """Tests for the InstrumentIdentity class."""

    def test_fields(self) -> None:
        identity = InstrumentIdentity(
            manufacturer="KEYSIGHT TECHNOLOGIES",
            model="DSO-X 2024A",
            serial="MY12345678",
            firmware="02.43.2018020635",
        )
        assert identity.manufacturer == "KEYSIGHT TECHNOLOGIES"
        assert identity.model == "DSO-X 2024A"
        assert identity.serial == "MY12345678"
        assert identity.firmware == "02.43.2018020635"

    def test_immutable(self) -> None:
        identity = InstrumentIdentity(manufacturer="Test", model="M1", serial="S1", firmware="F1")
        with pytest.raises(AttributeError):
            identity.model = "M2"  # type: ignore[misc]

    def test_equality(self) -> None:
        a = InstrumentIdentity("Mfr", "Model", "SN1", "FW1")
        b = InstrumentIdentity("Mfr", "Model", "SN1", "FW1")
        assert a == b

    def test_inequality(self) -> None:
        a = InstrumentIdentity("Mfr", "Model", "SN1", "FW1")
        b = InstrumentIdentity("Mfr", "Model", "SN2", "FW1")
        assert a != b

    def test_str(self) -> None:
        identity = InstrumentIdentity("Mfr", "Model", "SN1", "FW1")
        assert str(identity) == "Mfr Model (SN SN1, FW FW1)"


class TestTimestamp:
    """Tests for the Timestamp class."""

    def test_now(self) -> None:
        """Test creating a timestamp for current time."""
        ts = Timestamp.now()
        assert ts.unix_ns > 0

    def test_seconds_since(self) -> None:
        start = Timestamp(unix_ns=1_000_000_000)
        end = Timestamp(unix_ns=3_500_000_000)
        assert end.seconds_since(start) == pytest.approx(2.5)
        assert start.seconds_since(end) == pytest.approx(-2.5)

    def test_ordering_of_now(self) -> None:
        first = Timestamp.now()
        second = Timestamp.now()
        assert second.seconds_since(first) >= 0
