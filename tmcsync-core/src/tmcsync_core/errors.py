"""Exception types for tmcsync-core.

This module defines the root of the exception hierarchy used throughout
tmcsync. All tmcsync exceptions inherit from TmcsyncError, allowing consumers
to catch all framework-specific errors with a single except clause.

Exception hierarchy:
    TmcsyncError (base)
    +-- StateError: Object used in a state that does not allow the operation
    +-- ScpiError (tmcsync-scpi): Protocol layer failures
"""


class TmcsyncError(Exception):
    """Base exception for all tmcsync errors.

    This is the root of the tmcsync exception hierarchy. Catch this to handle
    any framework-specific error.
    """


class StateError(TmcsyncError):
    """Raised for invalid state or lifecycle errors.

    This may occur when an operation that can only be consumed once is
    waited on a second time, or when a resource is used before it is opened.
    """
