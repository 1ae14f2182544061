"""Exception types shared by the library, pipeline and HTTP layers.

Every error carries the HTTP status the API layer should answer with, so route
handlers can translate them with a single ``raise_api_error`` call.
"""
from __future__ import annotations

from typing import Any, Optional


class StreamletError(Exception):
    status_code = 500

    def __init__(self, message: str = "", *, data: Optional[Any] = None):
        super().__init__(message or self.__class__.__name__)
        self.data = data


class InvalidIdentifier(StreamletError):
    status_code = 400


class RootIndexOutOfRange(InvalidIdentifier):
    pass


class AccessDenied(StreamletError):
    status_code = 403


class NotFound(StreamletError):
    status_code = 404


class IOFailure(StreamletError):
    status_code = 500


class ExternalToolFailure(StreamletError):
    status_code = 500


class Conflict(StreamletError):
    """A batch run of the same kind is already active; ``data`` holds its progress."""

    status_code = 409


__all__ = [
    "StreamletError",
    "InvalidIdentifier",
    "RootIndexOutOfRange",
    "AccessDenied",
    "NotFound",
    "IOFailure",
    "ExternalToolFailure",
    "Conflict",
]
