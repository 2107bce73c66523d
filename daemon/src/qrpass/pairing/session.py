"""Pairing session state machine.

Represents a short-lived pairing session with status transitions
and deadline handling.
"""

import dataclasses
import secrets
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional

from qrpass.errors import InvalidTransitionError


class SessionStatus(Enum):
    """Pairing session statuses."""

    ACTIVE = "active"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    EXPIRED = "expired"

    @property
    def is_terminal(self) -> bool:
        return self is not SessionStatus.ACTIVE


VALID_TRANSITIONS = {
    SessionStatus.ACTIVE: {
        SessionStatus.COMPLETED,
        SessionStatus.CANCELLED,
        SessionStatus.EXPIRED,
    },
    SessionStatus.COMPLETED: set(),
    SessionStatus.CANCELLED: set(),
    SessionStatus.EXPIRED: set(),
}


def generate_session_id(num_bytes: int = 16) -> str:
    """Generate an unguessable session ID (2 hex chars per byte)."""
    return secrets.token_hex(num_bytes)


@dataclass
class PairingSession:
    """A pairing session waiting for a second device to scan it.

    Attributes:
        session_id: Unique session identifier, also the scan capability.
        payload: Data encoded in the QR code (the scan URL).
        target_kind: Kind of pass created on completion.
        target_data: Template fields for the pass, opaque to the store.
        owner_ref: User that created the session.
        created_at: Unix timestamp when session was created.
        expires_at: Absolute unix deadline.
        status: Current status.
        finalized_at: When the session reached a terminal status.
        scanner_ref: Optional identifier sent by the scanning device.
        result_ref: ID of the created pass.
        error: Why the pass could not be saved, if the scan succeeded
            but creation failed.
        claimed: A scan is creating the pass right now. Never sent
            over the wire.
    """

    session_id: str
    payload: str
    target_kind: str
    target_data: dict[str, Any]
    owner_ref: str
    created_at: float
    expires_at: float
    status: SessionStatus = SessionStatus.ACTIVE
    finalized_at: Optional[float] = None
    scanner_ref: Optional[str] = None
    result_ref: Optional[str] = None
    error: Optional[str] = None
    claimed: bool = False

    @classmethod
    def create(
        cls,
        target_kind: str,
        target_data: dict[str, Any],
        owner_ref: str,
        lifetime_seconds: int,
        base_url: str,
        id_bytes: int = 16,
        now: Optional[float] = None,
    ) -> "PairingSession":
        """Create a new active pairing session.

        Args:
            target_kind: Pass kind to create on completion.
            target_data: Pass template fields.
            owner_ref: Creating user.
            lifetime_seconds: Already-clamped lifetime.
            base_url: Base URL the scan link is built from.
            id_bytes: Session ID entropy in bytes.
            now: Creation time, defaults to time.time().

        Returns:
            New PairingSession instance.
        """
        created_at = time.time() if now is None else now
        session_id = generate_session_id(id_bytes)
        return cls(
            session_id=session_id,
            payload=f"{base_url.rstrip('/')}/scan/{session_id}",
            target_kind=target_kind,
            target_data=dict(target_data),
            owner_ref=owner_ref,
            created_at=created_at,
            expires_at=created_at + lifetime_seconds,
        )

    @property
    def lifetime_seconds(self) -> int:
        return int(round(self.expires_at - self.created_at))

    @property
    def scanned(self) -> bool:
        return self.status == SessionStatus.COMPLETED

    def is_expired(self, now: Optional[float] = None) -> bool:
        """Check if the deadline has passed.

        Only meaningful for active sessions; terminal sessions keep
        their terminal status.
        """
        now = time.time() if now is None else now
        return now > self.expires_at

    def time_remaining(self, now: Optional[float] = None) -> int:
        """Whole seconds left before the deadline, never negative."""
        now = time.time() if now is None else now
        return max(0, int(self.expires_at - now))

    def transition_to(self, new_status: SessionStatus, now: Optional[float] = None) -> None:
        """Transition to a new status with validation.

        Args:
            new_status: Target status.
            now: Transition time, recorded as finalized_at.

        Raises:
            InvalidTransitionError: If transition is not valid from current status.
        """
        if new_status not in VALID_TRANSITIONS[self.status]:
            raise InvalidTransitionError(
                f"Invalid transition: {self.status.value} -> {new_status.value}"
            )

        self.status = new_status
        self.finalized_at = time.time() if now is None else now
        self.claimed = False

    def claim(self, scanner_ref: Optional[str] = None) -> None:
        """Reserve an active session for the scan being processed.

        A claimed session still reads as active and unscanned; it only
        becomes completed once its pass exists.
        """
        if self.status != SessionStatus.ACTIVE:
            raise InvalidTransitionError(f"Cannot claim a {self.status.value} session")
        if self.claimed:
            raise InvalidTransitionError("Session is already claimed")

        self.claimed = True
        self.scanner_ref = scanner_ref

    def release_claim(self) -> None:
        """Drop the claim after pass creation wrote nothing."""
        if not self.claimed:
            raise InvalidTransitionError("Session is not claimed")

        self.claimed = False
        self.scanner_ref = None

    def snapshot(self) -> "PairingSession":
        """Copy safe to hand out of the store."""
        return dataclasses.replace(self, target_data=dict(self.target_data))

    def to_status_dict(self, now: Optional[float] = None) -> dict[str, Any]:
        """Wire representation for the status endpoint."""
        data: dict[str, Any] = {
            "sessionId": self.session_id,
            "status": self.status.value,
            "scanned": self.scanned,
            "expiresAt": self.expires_at,
            "timeRemaining": (
                self.time_remaining(now) if self.status == SessionStatus.ACTIVE else 0
            ),
            "targetKind": self.target_kind,
        }
        if self.result_ref is not None:
            data["resultRef"] = self.result_ref
        if self.error is not None:
            data["error"] = self.error
        return data
