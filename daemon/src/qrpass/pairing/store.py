"""Session store for pairing sessions.

Holds ephemeral PairingSession records keyed by session ID. Every
status change goes through compare_and_swap_status, which is atomic
with respect to every other store operation.

Deleted sessions leave a tombstone so that readers can tell a session
that finished and was cleaned up (SessionGoneError) from one that was
never issued (SessionNotFoundError).
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, Protocol

from qrpass.errors import (
    AlreadyFinalizedError,
    DuplicateSessionError,
    InvalidTransitionError,
    SessionGoneError,
    SessionNotFoundError,
    TooManySessionsError,
)
from qrpass.logging import short_id
from qrpass.pairing.session import PairingSession, SessionStatus

logger = logging.getLogger(__name__)

# Fields compare_and_swap_status and update may change besides status
MUTABLE_FIELDS = frozenset({"scanner_ref", "result_ref", "error"})


@dataclass
class Tombstone:
    """Trace of a deleted session."""

    session_id: str
    final_status: SessionStatus
    deleted_at: float


@dataclass
class SweepResult:
    """Counts from one sweep pass."""

    expired: int = 0
    deleted: int = 0
    pruned: int = 0


class SessionStore(Protocol):
    """Protocol for pairing session storage."""

    async def put(self, session: PairingSession, max_active_for_owner: Optional[int] = None) -> None:
        """Insert a new session. Raises DuplicateSessionError or TooManySessionsError."""
        ...

    async def get(self, session_id: str) -> PairingSession:
        """Return a snapshot, applying lazy expiry first."""
        ...

    async def claim(self, session_id: str, scanner_ref: Optional[str] = None) -> PairingSession:
        """Reserve an active session for pass creation, still reading as active."""
        ...

    async def release_claim(self, session_id: str) -> PairingSession:
        """Drop a claim whose pass creation wrote nothing."""
        ...

    async def compare_and_swap_status(
        self,
        session_id: str,
        expected: SessionStatus,
        new: SessionStatus,
        **changes: Any,
    ) -> PairingSession:
        """Atomically move expected -> new. Raises AlreadyFinalizedError."""
        ...

    async def update(self, session_id: str, **changes: Any) -> PairingSession:
        """Set non-status fields on a session."""
        ...

    async def delete(self, session_id: str) -> bool:
        """Remove a session, leaving a tombstone."""
        ...

    async def sweep(self, now: Optional[float] = None) -> SweepResult:
        """Expire overdue sessions and drop old terminal ones."""
        ...

    async def list_for_owner(self, owner_ref: str) -> list[PairingSession]:
        """Snapshots of an owner's sessions."""
        ...


class InMemorySessionStore:
    """In-process session store guarded by a single asyncio lock.

    Example:
        store = InMemorySessionStore(retention_grace=10)
        await store.put(session)
        session = await store.get(session.session_id)
    """

    def __init__(
        self,
        retention_grace: float = 10.0,
        tombstone_ttl: float = 300.0,
        clock: Callable[[], float] = time.time,
    ):
        """Initialize store.

        Args:
            retention_grace: Seconds a terminal session stays readable
                before sweep deletes it.
            tombstone_ttl: Seconds a deleted session answers "gone".
            clock: Time source, injectable for testing.
        """
        self.retention_grace = retention_grace
        self.tombstone_ttl = tombstone_ttl
        self._clock = clock
        self._sessions: Dict[str, PairingSession] = {}
        self._tombstones: Dict[str, Tombstone] = {}
        self._lock = asyncio.Lock()

    def _lookup(self, session_id: str) -> PairingSession:
        """Find a live record and apply lazy expiry. Caller holds the lock."""
        session = self._sessions.get(session_id)
        if session is None:
            tombstone = self._tombstones.get(session_id)
            if tombstone is not None:
                raise SessionGoneError(session_id, tombstone.final_status.value)
            raise SessionNotFoundError(session_id)

        self._expire_if_due(session, self._clock())
        return session

    def _expire_if_due(self, session: PairingSession, now: float) -> bool:
        # A claimed session was scanned in time; its deadline no longer applies
        if session.status != SessionStatus.ACTIVE or session.claimed:
            return False
        if not session.is_expired(now):
            return False

        session.transition_to(SessionStatus.EXPIRED, now=session.expires_at)
        logger.info(f"Pairing session expired: {short_id(session.session_id)}")
        return True

    async def put(self, session: PairingSession, max_active_for_owner: Optional[int] = None) -> None:
        """Insert a new session.

        Args:
            session: Session to store.
            max_active_for_owner: Reject the session if its owner already
                holds this many active sessions.

        Raises:
            DuplicateSessionError: ID already used.
            TooManySessionsError: Owner is at the limit.
        """
        async with self._lock:
            if session.session_id in self._sessions or session.session_id in self._tombstones:
                raise DuplicateSessionError(
                    f"Session already exists: {short_id(session.session_id)}"
                )

            if max_active_for_owner is not None:
                now = self._clock()
                active = 0
                for existing in self._sessions.values():
                    if existing.owner_ref != session.owner_ref:
                        continue
                    self._expire_if_due(existing, now)
                    if existing.status == SessionStatus.ACTIVE:
                        active += 1
                if active >= max_active_for_owner:
                    raise TooManySessionsError("Too many active pairing sessions")

            self._sessions[session.session_id] = session.snapshot()

    async def get(self, session_id: str) -> PairingSession:
        async with self._lock:
            return self._lookup(session_id).snapshot()

    async def claim(self, session_id: str, scanner_ref: Optional[str] = None) -> PairingSession:
        """Reserve an active session while its pass is being created.

        The session keeps reading as active. Finish with
        compare_and_swap_status(ACTIVE, COMPLETED) or release_claim.

        Raises:
            AlreadyFinalizedError: Session is no longer active.
            InvalidTransitionError: Another scan holds the claim.
        """
        async with self._lock:
            session = self._lookup(session_id)
            if session.status != SessionStatus.ACTIVE:
                raise AlreadyFinalizedError(session.snapshot())
            session.claim(scanner_ref)
            return session.snapshot()

    async def release_claim(self, session_id: str) -> PairingSession:
        """Drop a claim so the code can be scanned again."""
        async with self._lock:
            session = self._lookup(session_id)
            session.release_claim()
            # The deadline may have passed while the pass was being created
            self._expire_if_due(session, self._clock())
            return session.snapshot()

    async def compare_and_swap_status(
        self,
        session_id: str,
        expected: SessionStatus,
        new: SessionStatus,
        **changes: Any,
    ) -> PairingSession:
        """Atomically move a session from expected to new status.

        A claimed session can only move to COMPLETED.

        Args:
            session_id: Session to update.
            expected: Status the session must currently have.
            new: Status to set.
            **changes: Extra fields to set in the same step
                (scanner_ref, result_ref, error).

        Returns:
            Snapshot after the update.

        Raises:
            SessionNotFoundError: Unknown session.
            SessionGoneError: Session was deleted.
            AlreadyFinalizedError: Current status is not `expected`.
            InvalidTransitionError: The move is not allowed.
        """
        unknown = set(changes) - MUTABLE_FIELDS
        if unknown:
            raise ValueError(f"Cannot set fields: {sorted(unknown)}")

        async with self._lock:
            session = self._lookup(session_id)
            if session.status != expected:
                raise AlreadyFinalizedError(session.snapshot())
            if session.claimed and new != SessionStatus.COMPLETED:
                raise InvalidTransitionError("Session is being completed")

            session.transition_to(new, now=self._clock())
            for name, value in changes.items():
                setattr(session, name, value)

            return session.snapshot()

    async def update(self, session_id: str, **changes: Any) -> PairingSession:
        unknown = set(changes) - MUTABLE_FIELDS
        if unknown:
            raise ValueError(f"Cannot set fields: {sorted(unknown)}")

        async with self._lock:
            session = self._lookup(session_id)
            for name, value in changes.items():
                setattr(session, name, value)
            return session.snapshot()

    def _delete_locked(self, session_id: str, now: float) -> bool:
        session = self._sessions.pop(session_id, None)
        if session is None:
            return False
        self._tombstones[session_id] = Tombstone(
            session_id=session_id,
            final_status=session.status,
            deleted_at=now,
        )
        return True

    async def delete(self, session_id: str) -> bool:
        async with self._lock:
            deleted = self._delete_locked(session_id, self._clock())
        if deleted:
            logger.debug(f"Pairing session removed: {short_id(session_id)}")
        return deleted

    async def sweep(self, now: Optional[float] = None) -> SweepResult:
        """Run one housekeeping pass.

        - unclaimed active sessions past their deadline become expired
        - terminal sessions older than retention_grace are deleted
        - tombstones older than tombstone_ttl are dropped

        Args:
            now: Sweep time, defaults to the store clock.

        Returns:
            Counts of what changed.
        """
        result = SweepResult()

        async with self._lock:
            now = self._clock() if now is None else now

            for session_id, session in list(self._sessions.items()):
                if self._expire_if_due(session, now):
                    result.expired += 1

                if (
                    session.status.is_terminal
                    and session.finalized_at is not None
                    and now - session.finalized_at >= self.retention_grace
                ):
                    self._delete_locked(session_id, now)
                    result.deleted += 1

            for session_id, tombstone in list(self._tombstones.items()):
                if now - tombstone.deleted_at >= self.tombstone_ttl:
                    del self._tombstones[session_id]
                    result.pruned += 1

        return result

    async def list_for_owner(self, owner_ref: str) -> list[PairingSession]:
        async with self._lock:
            return [
                self._lookup(session_id).snapshot()
                for session_id, session in list(self._sessions.items())
                if session.owner_ref == owner_ref
            ]

    def __len__(self) -> int:
        return len(self._sessions)

    def __contains__(self, session_id: str) -> bool:
        return session_id in self._sessions
