"""Pairing manager drives the pairing session lifecycle.

Creates sessions, answers status queries, and performs the atomic
claim on completion so that at most one pass is created per session,
however many times the scanning device retries.
"""

import asyncio
import logging
import math
import time
from dataclasses import dataclass
from typing import Any, Callable, Optional, Protocol

from qrpass.config import PairingConfig
from qrpass.errors import (
    AlreadyFinalizedError,
    DuplicateSessionError,
    InvalidTransitionError,
    NotOwnerError,
    PassCreationError,
    ResourceCreationError,
    SessionExpiredError,
    ValidationError,
)
from qrpass.logging import short_id
from qrpass.pairing.session import PairingSession, SessionStatus
from qrpass.pairing.store import SessionStore
from qrpass.passes.kinds import PassKindRegistry

logger = logging.getLogger(__name__)

ID_ATTEMPTS = 3


class CreatedResource(Protocol):
    """What a pass creator hands back."""

    pass_id: str


class PassCreator(Protocol):
    """Protocol for the subsystem that creates the pass on completion."""

    async def create_pass(self, session: PairingSession) -> CreatedResource:
        """Create the pass for a session, keyed by its session ID.

        Raises:
            PassCreationError: If the pass could not be created.
        """
        ...


@dataclass
class CompletionOutcome:
    """Result of a Complete call.

    Attributes:
        session: Session snapshot after the call.
        created: True only for the call that created the pass.
    """

    session: PairingSession
    created: bool


class PairingManager:
    """Orchestrates pairing sessions over a shared session store.

    All status changes go through the store's compare-and-swap, so
    callers need no extra locking. Completions of one session are
    serialized so a repeated scan waits for the pass being created.
    """

    def __init__(
        self,
        store: SessionStore,
        pass_creator: PassCreator,
        kinds: Optional[PassKindRegistry] = None,
        config: Optional[PairingConfig] = None,
        clock: Callable[[], float] = time.time,
    ):
        """Initialize pairing manager.

        Args:
            store: Shared session store.
            pass_creator: Creates the pass when a session completes.
            kinds: Registry used to validate target kinds and data.
            config: Lifetime limits and ID entropy.
            clock: Time source, injectable for testing.
        """
        self.store = store
        self.pass_creator = pass_creator
        self.kinds = kinds or PassKindRegistry()
        self.config = config or PairingConfig()
        self._clock = clock
        self._claims: dict[str, asyncio.Event] = {}

    def now(self) -> float:
        """Current time on the manager clock."""
        return self._clock()

    def clamp_lifetime(self, lifetime_seconds: Any) -> int:
        """Validate a requested lifetime and clamp it to the allowed range.

        Args:
            lifetime_seconds: Requested lifetime, or None for the default.

        Returns:
            Lifetime in whole seconds within [min_lifetime, max_lifetime].

        Raises:
            ValidationError: If the value is not a positive number.
        """
        if lifetime_seconds is None:
            lifetime_seconds = self.config.default_lifetime

        if isinstance(lifetime_seconds, bool) or not isinstance(lifetime_seconds, (int, float)):
            raise ValidationError("lifetimeSeconds must be a number")
        if not math.isfinite(lifetime_seconds) or lifetime_seconds <= 0:
            raise ValidationError("lifetimeSeconds must be a positive number")

        clamped = min(max(int(lifetime_seconds), self.config.min_lifetime), self.config.max_lifetime)
        if clamped != lifetime_seconds:
            logger.debug(f"Lifetime {lifetime_seconds}s clamped to {clamped}s")
        return clamped

    async def create(
        self,
        target_kind: str,
        target_data: Any,
        owner_ref: str,
        base_url: str,
        lifetime_seconds: Any = None,
    ) -> PairingSession:
        """Create a new pairing session.

        Args:
            target_kind: Pass kind to create on completion.
            target_data: Template fields for the pass.
            owner_ref: Creating user.
            base_url: Base URL for the scan link in the payload.
            lifetime_seconds: Requested lifetime, clamped.

        Returns:
            The created session.

        Raises:
            ValidationError: Bad kind, data or lifetime.
            TooManySessionsError: Owner already has too many active sessions.
        """
        data = self.kinds.validate(target_kind, target_data)
        lifetime = self.clamp_lifetime(lifetime_seconds)

        for attempt in range(ID_ATTEMPTS):
            session = PairingSession.create(
                target_kind=target_kind,
                target_data=data,
                owner_ref=owner_ref,
                lifetime_seconds=lifetime,
                base_url=base_url,
                id_bytes=self.config.id_bytes,
                now=self._clock(),
            )
            try:
                await self.store.put(
                    session, max_active_for_owner=self.config.max_sessions_per_owner
                )
                break
            except DuplicateSessionError:
                logger.warning(f"Session ID collision (attempt {attempt + 1})")
        else:
            raise DuplicateSessionError("Could not allocate a unique session ID")

        logger.info(
            f"Pairing session started: {short_id(session.session_id)} "
            f"({target_kind}, {lifetime}s, owner={owner_ref})"
        )
        return session

    async def status(self, session_id: str, owner_ref: Optional[str] = None) -> PairingSession:
        """Get the current state of a session.

        Terminal sessions report their terminal status until they are
        cleaned up.

        Raises:
            SessionNotFoundError: Never issued.
            SessionGoneError: Finished and cleaned up.
            NotOwnerError: owner_ref given and does not match.
        """
        session = await self.store.get(session_id)
        if owner_ref is not None and session.owner_ref != owner_ref:
            raise NotOwnerError("Session belongs to another user")
        return session

    async def complete(
        self, session_id: str, scanner_ref: Optional[str] = None
    ) -> CompletionOutcome:
        """Complete a session on scan and create its pass.

        Safe to call concurrently and repeatedly: the session is claimed
        while its pass is created and only then published as completed.
        Calls arriving meanwhile wait for that decision; later calls get
        the existing outcome back.

        Args:
            session_id: Scanned session.
            scanner_ref: Optional identifier of the scanning device.

        Returns:
            CompletionOutcome with the session snapshot.

        Raises:
            SessionExpiredError: Deadline passed before the scan.
            AlreadyFinalizedError: Session was cancelled.
            ResourceCreationError: Scan succeeded but the pass was not saved.
        """
        await self._wait_for_claim(session_id)

        done = asyncio.Event()
        self._claims[session_id] = done
        try:
            return await self._claim_and_create(session_id, scanner_ref)
        finally:
            del self._claims[session_id]
            done.set()

    async def _wait_for_claim(self, session_id: str) -> None:
        """Wait until no completion of this session is in progress."""
        while session_id in self._claims:
            await self._claims[session_id].wait()

    async def _claim_and_create(
        self, session_id: str, scanner_ref: Optional[str]
    ) -> CompletionOutcome:
        try:
            claimed = await self.store.claim(session_id, scanner_ref=scanner_ref)
        except AlreadyFinalizedError as e:
            current = e.session
            if current.status == SessionStatus.COMPLETED:
                logger.debug(f"Repeated completion for {short_id(session_id)}")
                return CompletionOutcome(session=current, created=False)
            if current.status == SessionStatus.EXPIRED:
                raise SessionExpiredError(session_id) from e
            raise

        try:
            created = await self.pass_creator.create_pass(claimed)
        except PassCreationError as e:
            if not e.partial:
                await self.store.release_claim(session_id)
                logger.warning(
                    f"Pass creation failed for {short_id(session_id)}, code still scannable: {e}"
                )
                raise ResourceCreationError(session_id, str(e), rolled_back=True) from e
            await self._record_failure(session_id, str(e))
            raise ResourceCreationError(session_id, str(e)) from e
        except Exception as e:
            await self._record_failure(session_id, str(e))
            raise ResourceCreationError(session_id, str(e)) from e

        session = await self.store.compare_and_swap_status(
            session_id,
            SessionStatus.ACTIVE,
            SessionStatus.COMPLETED,
            result_ref=created.pass_id,
        )
        logger.info(f"Pairing session completed: {short_id(session_id)} -> pass {created.pass_id[:8]}...")
        return CompletionOutcome(session=session, created=True)

    async def _record_failure(self, session_id: str, message: str) -> None:
        # The scan happened, so the session completes without a pass
        logger.error(
            f"Pass creation failed after scan of {short_id(session_id)}, "
            f"needs reconciliation: {message}"
        )
        await self.store.compare_and_swap_status(
            session_id, SessionStatus.ACTIVE, SessionStatus.COMPLETED, error=message
        )

    async def cancel(self, session_id: str, owner_ref: str) -> PairingSession:
        """Cancel a session on behalf of its owner.

        Idempotent: cancelling a session that already reached a terminal
        status returns that status. A cancel arriving while a scan is
        creating the pass waits for it, and loses if the pass is created.

        Raises:
            NotOwnerError: Caller is not the owner.
            SessionNotFoundError / SessionGoneError: Unknown or cleaned up.
        """
        session = await self.status(session_id, owner_ref=owner_ref)
        if session.status.is_terminal:
            return session

        await self._wait_for_claim(session_id)
        try:
            session = await self.store.compare_and_swap_status(
                session_id, SessionStatus.ACTIVE, SessionStatus.CANCELLED
            )
        except AlreadyFinalizedError as e:
            return e.session

        logger.info(f"Pairing session cancelled: {short_id(session_id)}")
        return session

    async def acknowledge(self, session_id: str, owner_ref: str) -> PairingSession:
        """Owner has seen the terminal status; drop the record now.

        Raises:
            InvalidTransitionError: Session is still active.
            NotOwnerError: Caller is not the owner.
        """
        session = await self.status(session_id, owner_ref=owner_ref)
        if not session.status.is_terminal:
            raise InvalidTransitionError("Session is still active")

        await self.store.delete(session_id)
        return session

    async def list_sessions(self, owner_ref: str) -> list[PairingSession]:
        """Get all sessions still held for an owner."""
        sessions = await self.store.list_for_owner(owner_ref)
        return sorted(sessions, key=lambda s: s.created_at)
