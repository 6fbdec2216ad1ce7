"""Exception hierarchy for the chat client."""

from typing import Optional


class ChatClientError(Exception):
    """Base class for all chat client errors."""

    pass


class AuthenticationError(ChatClientError):
    """Access token missing, rejected or expired."""

    pass


class TransportError(ChatClientError):
    """The remote service could not be reached."""

    pass


class BackendError(ChatClientError):
    """The remote service answered with a non-success status."""

    def __init__(self, message: str, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.detail = message


class CacheFetchError(ChatClientError):
    """A cache fetch kept failing after its retries were used up."""

    pass
