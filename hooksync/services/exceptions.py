"""Typed exception hierarchy for sync errors.

Configuration problems (bad identifiers, unsupported destinations) subclass
``ValueError`` so they can be reported as validation failures; everything
else derives from ``SyncError``.
"""


class SyncError(Exception):
    """Base exception for sync target errors."""

    pass


class InvalidIdentifier(ValueError):
    """A schema, table, or column name failed validation."""

    def __init__(self, message: str, identifier: str = ""):
        self.identifier = identifier
        super().__init__(message)


class UnsupportedDestination(ValueError):
    """The destination URL scheme has no adapter or sync path."""

    def __init__(self, message: str, scheme: str = ""):
        self.scheme = scheme
        super().__init__(message)


class InvalidConnection(SyncError):
    """A destination could not be reached or rejected our credentials.

    The message never contains the raw connection URL.
    """

    pass


class NotSupportedError(SyncError, NotImplementedError):
    """The destination family has no equivalent for the requested operation."""

    pass


class InvalidPrecondition(SyncError):
    """A caller broke the contract of an operation."""

    pass
