"""
Session error taxonomy.

None of these are fatal to the process. Commands raise NotConnectedError or
NotAuthenticatedError without changing state; TransportError leaves the
session in the error status until the operator connects again; DecodeError
never escapes inbound message handling.
"""


class SessionError(Exception):
    """Base class for session errors."""

    pass


class TransportError(SessionError):
    """Raised when the transport fails to open or to send."""

    pass


class NotConnectedError(SessionError):
    """Raised when a command needs an open transport."""

    def __init__(self, message: str = "Not connected"):
        super().__init__(message)


class NotAuthenticatedError(SessionError):
    """Raised when a command needs a confirmed login."""

    def __init__(self, message: str = "Please login first"):
        super().__init__(message)


class DecodeError(SessionError):
    """Raised when an inbound frame is not a JSON object."""

    def __init__(self, message: str, raw: str = ""):
        super().__init__(message)
        self.raw = raw
