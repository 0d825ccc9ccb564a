from __future__ import annotations


class SessionNotFoundError(Exception):
    """Raised when a session record does not exist in the session store."""

    pass


class InvalidStatusTransitionError(Exception):
    """Raised when a terminal session is asked to move to a different status."""

    pass


class TransportError(Exception):
    """Raised inside the transport when a request attempt fails."""

    def __init__(self, message: str, status_code: int | None = None, retryable: bool = True):
        super().__init__(message)
        self.status_code = status_code
        self.retryable = retryable
