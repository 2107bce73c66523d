"""Base exceptions for qrpass.

Every error carries the HTTP status and stable error code the server
reports for it, so handlers map exceptions to responses in one place.
"""

from typing import Any, Optional

from qrpass.logging import short_id


class QrPassError(Exception):
    """Base exception for all qrpass errors."""

    status = 500
    code = "internal_error"


class ValidationError(QrPassError):
    """Bad target kind, target data or lifetime. Never stored."""

    status = 400
    code = "validation_error"


class AuthError(QrPassError):
    """Missing or unknown owner credentials."""

    status = 401
    code = "unauthorized"


class NotOwnerError(QrPassError):
    """Caller does not own the session."""

    status = 403
    code = "forbidden"


class SessionNotFoundError(QrPassError):
    """Session ID was never issued."""

    status = 404
    code = "not_found"

    def __init__(self, session_id: str):
        super().__init__(f"Session not found: {short_id(session_id)}")
        self.session_id = session_id


class SessionGoneError(QrPassError):
    """Session finished and has been cleaned up.

    Attributes:
        final_status: Terminal status the session had when it was removed.
    """

    status = 410
    code = "gone"

    def __init__(self, session_id: str, final_status: Optional[str] = None):
        super().__init__(f"Session already finished: {short_id(session_id)}")
        self.session_id = session_id
        self.final_status = final_status


class SessionExpiredError(QrPassError):
    """Complete arrived after the deadline. The one user-visible scan failure."""

    status = 410
    code = "expired"

    def __init__(self, session_id: str):
        super().__init__("Code expired, request a new one")
        self.session_id = session_id


class AlreadyFinalizedError(QrPassError):
    """Transition attempted on a terminal session.

    Attributes:
        session: Snapshot of the session in its current terminal state.
    """

    status = 409
    code = "already_finalized"

    def __init__(self, session: Any):
        super().__init__(
            f"Session {short_id(session.session_id)} already {session.status.value}"
        )
        self.session = session


class InvalidTransitionError(QrPassError):
    """Operation not allowed from the session's current state."""

    status = 409
    code = "invalid_transition"


class TooManySessionsError(QrPassError):
    """Owner has too many active sessions, or a caller is rate limited."""

    status = 429
    code = "rate_limited"


class ResourceCreationError(QrPassError):
    """The scan succeeded but the pass could not be saved.

    Attributes:
        session_id: Session whose completion triggered the failure.
        rolled_back: True if the session went back to active because
            nothing was written, so the code can be scanned again.
    """

    status = 502
    code = "resource_creation_failed"

    def __init__(self, session_id: str, message: str, rolled_back: bool = False):
        super().__init__(message)
        self.session_id = session_id
        self.rolled_back = rolled_back


class PassCreationError(QrPassError):
    """Raised by pass creators.

    Attributes:
        partial: True if some side effect may already have happened.
    """

    def __init__(self, message: str, partial: bool = False):
        super().__init__(message)
        self.partial = partial


class DuplicateSessionError(QrPassError):
    """Session ID already present in the store."""

    pass


class StorageError(QrPassError):
    """Storage operation error."""

    pass
