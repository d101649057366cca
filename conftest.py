"""Root conftest.py for the tmcsync repository.

This provides shared pytest configuration and fixtures across both packages.
It also marks tests that use mocking or in-memory fake transports.
"""

from __future__ import annotations

import ast
import inspect
import sys
from pathlib import Path
from typing import TYPE_CHECKING, Iterator

import pytest

if TYPE_CHECKING:
    from _pytest.config import Config
    from _pytest.nodes import Item

    from tmcsync_scpi.emulator import TmcEmulator


# Add all package src directories to path for imports
PROJECT_ROOT = Path(__file__).parent
for pkg_dir in PROJECT_ROOT.glob("tmcsync-*/src"):
    if str(pkg_dir) not in sys.path:
        sys.path.insert(0, str(pkg_dir))

# Names whose use marks a test as mocked
MOCK_NAMES = frozenset({
    "MagicMock",
    "Mock",
    "patch",
    "create_autospec",
    "FakeTransport",
    "ScriptedTransport",
})


def pytest_configure(config: Config) -> None:
    """Register custom markers.

    Args:
        config: pytest configuration object.
    """
    config.addinivalue_line(
        "markers",
        "uses_mock: Test uses mocking (auto-detected or manually marked)",
    )
    config.addinivalue_line(
        "markers",
        "integration: Integration test requiring a real USBTMC instrument",
    )
    config.addinivalue_line(
        "markers",
        "slow: Slow-running test",
    )


def _uses_mock(item: Item) -> bool:
    """Return True if a test function's source refers to a mock or fake."""
    name = getattr(item, "name", "").lower()
    if "mock" in name or "fake" in name:
        return True
    obj = getattr(item, "obj", None)
    if obj is None:
        return False
    try:
        tree = ast.parse(inspect.getsource(obj).lstrip())
    except (OSError, TypeError, SyntaxError):
        return False
    for node in ast.walk(tree):
        if isinstance(node, ast.Name) and node.id in MOCK_NAMES:
            return True
        if isinstance(node, ast.Attribute) and node.attr in MOCK_NAMES:
            return True
        if isinstance(node, ast.arg) and "mock" in node.arg.lower():
            return True
    return False


def pytest_collection_modifyitems(config: Config, items: list[Item]) -> None:
    """Auto-detect and mark tests that use mocking.

    Args:
        config: pytest configuration object.
        items: List of collected test items.
    """
    for item in items:
        if item.get_closest_marker("uses_mock"):
            continue
        if _uses_mock(item):
            item.add_marker(pytest.mark.uses_mock)


def pytest_report_header(config: Config) -> list[str]:
    """Add coverage mode info to pytest header.

    Args:
        config: pytest configuration object.

    Returns:
        List of header lines.
    """
    lines = ["tmcsync test suite"]
    if getattr(config.option, "cov_source", None):
        lines.append("Coverage: enabled with mock detection")
    return lines


@pytest.fixture
def emulator() -> Iterator[TmcEmulator]:
    """An instant in-process instrument, closed after the test."""
    from tmcsync_scpi.emulator import TmcEmulator

    emu = TmcEmulator()
    yield emu
    emu.close()
