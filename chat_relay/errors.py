"""
Error kinds raised by the chat relay.

- ValidationError: the client sent something we refuse to store
- PersistenceError: the message store could not read or write
- SweepError: a retention sweep failed
"""


class RelayError(Exception):
    """Base class for all chat relay errors."""


class ValidationError(RelayError):
    """
    Raised when an inbound message is rejected.

    The message text is user-facing and is sent back to the originating
    session as-is.
    """


class PersistenceError(RelayError):
    """Raised by a message store when the underlying read or write fails."""


class SweepError(RelayError):
    """Raised when a retention sweep could not delete expired messages."""
