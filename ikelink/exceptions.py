"""
Custom exceptions for ikelink.

Provides specific exception types for configuration, session and dispatch errors.
"""


class IkeLinkError(Exception):
    """Base exception for all ikelink errors."""
    pass


# ---------------- Configuration Errors ----------------

class ConfigError(IkeLinkError):
    """Base class for configuration errors."""
    pass


class InvalidParamsError(ConfigError):
    """Session parameters failed validation."""

    def __init__(self, message: str, field_name: str = "unknown"):
        super().__init__(message)
        self.field_name = field_name


# ---------------- Session Errors ----------------

class SessionError(IkeLinkError):
    """Base class for session-related errors."""
    pass


class SessionClosedError(SessionError):
    """Operation attempted on a session that has been torn down."""

    def __init__(self, session_id: int):
        super().__init__(f"Session {session_id} is closed")
        self.session_id = session_id


class RetransmissionFailedError(SessionError):
    """Request was not acknowledged before the retransmission schedule ran out."""

    def __init__(self, message_id: int, attempts: int):
        super().__init__(
            f"Request {message_id} unacknowledged after {attempts} transmissions"
        )
        self.message_id = message_id
        self.attempts = attempts


class NetworkLostError(SessionError):
    """Underlying network went away; the session is kept alive."""
    pass


# ---------------- Dispatch Errors ----------------

class DispatchError(IkeLinkError):
    """Base class for event dispatch errors."""
    pass


class DispatchTimeoutError(DispatchError):
    """Blocking handoff into a session handler did not complete in time."""

    def __init__(self, handler_name: str, timeout: float):
        super().__init__(f"Dispatch into {handler_name} timed out after {timeout}s")
        self.handler_name = handler_name
        self.timeout = timeout
