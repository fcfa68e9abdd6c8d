from __future__ import annotations


class SessionError(Exception):
    """Base class for errors reported back to the requesting connection."""

    code = "session_error"

    def __init__(self, message: str = "") -> None:
        super().__init__(message or self.code)
        self.message = message or self.code


class RoomNotFound(SessionError):
    """The request referenced a room that does not exist or has expired."""

    code = "room_not_found"


class Forbidden(SessionError):
    """A non-host attempted a host-only mutation, or the host secret was wrong."""

    code = "forbidden"


class CreateFailed(SessionError):
    code = "create_failed"


class InvalidRequest(SessionError):
    code = "invalid_request"


class FeatureDisabled(SessionError):
    code = "disabled"
