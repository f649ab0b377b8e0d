"""Error taxonomy for Stream Status."""

from __future__ import annotations

from typing import Optional


class StreamStatusError(Exception):
    """Base class for all errors raised by Stream Status."""


class ConflictError(StreamStatusError):
    """A record with the same primary key already exists."""


class NotFoundError(StreamStatusError):
    def __init__(self, stream_id: str, message: Optional[str] = None):
        self.stream_id = stream_id
        super().__init__(message or f"Stream not found: {stream_id}")


class ValidationError(StreamStatusError):
    """Invalid input. `field` names the offending parameter."""

    def __init__(self, field: str, message: str):
        self.field = field
        super().__init__(f"{field}: {message}")


class TransientGitError(StreamStatusError):
    """A git subprocess failed.

    Only raised inside the git adapter; its public methods convert it
    into an empty result.
    """


class LockStaleError(StreamStatusError):
    """The server lock file points at a dead or unresponsive server."""
