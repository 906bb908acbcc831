"""
Error types shared across the relay.
"""


class RelayError(Exception):
    """Base class for relay failures."""


class TransportUnavailable(RelayError):
    """The inbound conversation source could not be read. Aborts the cycle."""


class StorageUnavailable(RelayError):
    """The database could not be reached for a store or ledger operation."""


class DispatchRetryable(RelayError):
    """A delivery attempt failed in a way that may succeed on retry."""

    def __init__(self, message: str, status: int = None):
        super().__init__(message)
        self.status = status


class DispatchFatal(RelayError):
    """A delivery can never succeed without operator intervention."""
