"""
Signature session errors.

Raised by the store; the HTTP layer maps them to status codes.
"""


class SessionError(Exception):
    """Base class for session state errors."""

    def __init__(self, session_id: str, message: str):
        super().__init__(message)
        self.session_id = session_id


class SessionNotFoundError(SessionError):
    """Unknown session id (or already deleted by the retention sweep)."""

    def __init__(self, session_id: str):
        super().__init__(session_id, "Session not found")


class SessionExpiredError(SessionError):
    """Session aged past its TTL before a submission arrived."""

    def __init__(self, session_id: str):
        super().__init__(session_id, "Session expired")


class SessionAlreadyCompletedError(SessionError):
    """Session already accepted its one submission."""

    def __init__(self, session_id: str):
        super().__init__(session_id, "Session already completed")
