"""Core library for tmcsync.

This package provides the base exception hierarchy and the small value types
shared by the tmcsync packages. It is stdlib-only so it can serve as the base
layer for the protocol packages.

Example:
    >>> from tmcsync_core import InstrumentIdentity, Timestamp
    >>> start = Timestamp.now()
"""

from tmcsync_core.errors import StateError, TmcsyncError
from tmcsync_core.types import InstrumentIdentity, Timestamp

__version__ = "0.1.0"

__all__ = [
    # Version
    "__version__",
    # Types
    "InstrumentIdentity",
    "Timestamp",
    # Errors
    "StateError",
    "TmcsyncError",
]
