"""Error taxonomy shared by the real-time and HTTP entry points."""

from __future__ import annotations


class ChatError(Exception):
    """Base class for every refusal an operation can report to its caller."""

    status = 500

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class Unauthorized(ChatError):
    """Bad, missing or expired credential. Terminal for the connection attempt."""

    status = 401


class Forbidden(ChatError):
    """Valid identity, but not allowed to act on the target."""

    status = 403


class NotFound(ChatError):
    status = 404


class ValidationError(ChatError):
    """Empty or malformed input, refused before any side effect."""

    status = 400


class DependencyFailure(ChatError):
    """The document store or the attachment store failed."""

    status = 502
