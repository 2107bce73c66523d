"""Tests for the in-memory session store."""

import asyncio

import pytest

from qrpass.errors import (
    AlreadyFinalizedError,
    DuplicateSessionError,
    InvalidTransitionError,
    SessionGoneError,
    SessionNotFoundError,
    TooManySessionsError,
)
from qrpass.pairing.session import PairingSession, SessionStatus
from qrpass.pairing.store import InMemorySessionStore


def make_session(clock, owner_ref="user-1", lifetime=60) -> PairingSession:
    return PairingSession.create(
        target_kind="event-ticket",
        target_data={"title": "Concert"},
        owner_ref=owner_ref,
        lifetime_seconds=lifetime,
        base_url="http://192.168.1.10:8780",
        now=clock(),
    )


@pytest.fixture
def store(clock):
    return InMemorySessionStore(retention_grace=10, tombstone_ttl=300, clock=clock)


class TestPutAndGet:
    """Tests for basic storage."""

    @pytest.mark.asyncio
    async def test_get_returns_stored_session(self, store, clock):
        session = make_session(clock)
        await store.put(session)

        fetched = await store.get(session.session_id)

        assert fetched.session_id == session.session_id
        assert fetched.status == SessionStatus.ACTIVE
        assert session.session_id in store
        assert len(store) == 1

    @pytest.mark.asyncio
    async def test_get_returns_copies(self, store, clock):
        """Mutating a returned session does not touch the store."""
        session = make_session(clock)
        await store.put(session)

        fetched = await store.get(session.session_id)
        fetched.status = SessionStatus.CANCELLED

        assert (await store.get(session.session_id)).status == SessionStatus.ACTIVE

    @pytest.mark.asyncio
    async def test_unknown_id_not_found(self, store):
        with pytest.raises(SessionNotFoundError):
            await store.get("0" * 32)

    @pytest.mark.asyncio
    async def test_duplicate_put_rejected(self, store, clock):
        session = make_session(clock)
        await store.put(session)

        with pytest.raises(DuplicateSessionError):
            await store.put(session)

    @pytest.mark.asyncio
    async def test_deleted_id_cannot_be_reused(self, store, clock):
        session = make_session(clock)
        await store.put(session)
        await store.delete(session.session_id)

        with pytest.raises(DuplicateSessionError):
            await store.put(session)


class TestLazyExpiry:
    """Readers never see an overdue session as active."""

    @pytest.mark.asyncio
    async def test_get_after_deadline_is_expired(self, store, clock):
        session = make_session(clock)
        await store.put(session)
        clock.advance(61)

        fetched = await store.get(session.session_id)

        assert fetched.status == SessionStatus.EXPIRED
        assert fetched.finalized_at == session.expires_at

    @pytest.mark.asyncio
    async def test_expiry_is_persisted(self, store, clock):
        session = make_session(clock)
        await store.put(session)
        clock.advance(61)
        await store.get(session.session_id)

        with pytest.raises(AlreadyFinalizedError) as exc_info:
            await store.compare_and_swap_status(
                session.session_id, SessionStatus.ACTIVE, SessionStatus.COMPLETED
            )
        assert exc_info.value.session.status == SessionStatus.EXPIRED

    @pytest.mark.asyncio
    async def test_cas_after_deadline_sees_expired(self, store, clock):
        """A claim arriving late loses to the deadline even without a read first."""
        session = make_session(clock)
        await store.put(session)
        clock.advance(60.5)

        with pytest.raises(AlreadyFinalizedError) as exc_info:
            await store.compare_and_swap_status(
                session.session_id, SessionStatus.ACTIVE, SessionStatus.COMPLETED
            )
        assert exc_info.value.session.status == SessionStatus.EXPIRED

    @pytest.mark.asyncio
    async def test_at_deadline_still_active(self, store, clock):
        session = make_session(clock)
        await store.put(session)
        clock.advance(60)

        assert (await store.get(session.session_id)).status == SessionStatus.ACTIVE

    @pytest.mark.asyncio
    async def test_list_applies_expiry(self, store, clock):
        await store.put(make_session(clock))
        clock.advance(61)

        sessions = await store.list_for_owner("user-1")

        assert [s.status for s in sessions] == [SessionStatus.EXPIRED]


class TestCompareAndSwap:
    """Tests for the atomic status change."""

    @pytest.mark.asyncio
    async def test_swap_applies_changes(self, store, clock):
        session = make_session(clock)
        await store.put(session)
        clock.advance(5)

        updated = await store.compare_and_swap_status(
            session.session_id,
            SessionStatus.ACTIVE,
            SessionStatus.COMPLETED,
            scanner_ref="phone-1",
        )

        assert updated.status == SessionStatus.COMPLETED
        assert updated.scanner_ref == "phone-1"
        assert updated.finalized_at == clock()

    @pytest.mark.asyncio
    async def test_mismatch_raises_with_snapshot(self, store, clock):
        session = make_session(clock)
        await store.put(session)
        await store.compare_and_swap_status(
            session.session_id, SessionStatus.ACTIVE, SessionStatus.CANCELLED
        )

        with pytest.raises(AlreadyFinalizedError) as exc_info:
            await store.compare_and_swap_status(
                session.session_id, SessionStatus.ACTIVE, SessionStatus.COMPLETED
            )

        assert exc_info.value.session.status == SessionStatus.CANCELLED

    @pytest.mark.asyncio
    async def test_concurrent_swaps_single_winner(self, store, clock):
        """Of many racing claims exactly one succeeds."""
        session = make_session(clock)
        await store.put(session)

        async def claim():
            try:
                await store.compare_and_swap_status(
                    session.session_id, SessionStatus.ACTIVE, SessionStatus.COMPLETED
                )
                return True
            except AlreadyFinalizedError:
                return False

        results = await asyncio.gather(*(claim() for _ in range(20)))

        assert results.count(True) == 1

    @pytest.mark.asyncio
    async def test_unknown_fields_rejected(self, store, clock):
        session = make_session(clock)
        await store.put(session)

        with pytest.raises(ValueError):
            await store.compare_and_swap_status(
                session.session_id,
                SessionStatus.ACTIVE,
                SessionStatus.COMPLETED,
                owner_ref="someone-else",
            )

    @pytest.mark.asyncio
    async def test_update_sets_fields(self, store, clock):
        session = make_session(clock)
        await store.put(session)

        updated = await store.update(session.session_id, result_ref="pass-1")

        assert updated.result_ref == "pass-1"
        with pytest.raises(ValueError):
            await store.update(session.session_id, status=SessionStatus.ACTIVE)


class TestClaim:
    """A claimed session reads as active until its pass exists."""

    @pytest.mark.asyncio
    async def test_claim_reads_as_active(self, store, clock):
        session = make_session(clock)
        await store.put(session)

        claimed = await store.claim(session.session_id, scanner_ref="phone-1")
        fetched = await store.get(session.session_id)

        assert claimed.claimed is True
        assert fetched.status == SessionStatus.ACTIVE
        assert fetched.scanned is False

    @pytest.mark.asyncio
    async def test_concurrent_claims_single_winner(self, store, clock):
        session = make_session(clock)
        await store.put(session)

        async def claim():
            try:
                await store.claim(session.session_id)
                return True
            except InvalidTransitionError:
                return False

        results = await asyncio.gather(*(claim() for _ in range(20)))

        assert results.count(True) == 1

    @pytest.mark.asyncio
    async def test_claim_terminal_raises_with_snapshot(self, store, clock):
        session = make_session(clock)
        await store.put(session)
        clock.advance(61)

        with pytest.raises(AlreadyFinalizedError) as exc_info:
            await store.claim(session.session_id)

        assert exc_info.value.session.status == SessionStatus.EXPIRED

    @pytest.mark.asyncio
    async def test_claimed_session_outlives_deadline(self, store, clock):
        session = make_session(clock)
        await store.put(session)
        await store.claim(session.session_id)
        clock.advance(61)

        assert (await store.get(session.session_id)).status == SessionStatus.ACTIVE
        assert (await store.sweep()).expired == 0

        completed = await store.compare_and_swap_status(
            session.session_id, SessionStatus.ACTIVE, SessionStatus.COMPLETED, result_ref="pass-1"
        )
        assert completed.status == SessionStatus.COMPLETED
        assert completed.claimed is False

    @pytest.mark.asyncio
    async def test_claimed_session_cannot_be_cancelled(self, store, clock):
        session = make_session(clock)
        await store.put(session)
        await store.claim(session.session_id)

        with pytest.raises(InvalidTransitionError):
            await store.compare_and_swap_status(
                session.session_id, SessionStatus.ACTIVE, SessionStatus.CANCELLED
            )

    @pytest.mark.asyncio
    async def test_release_reopens(self, store, clock):
        session = make_session(clock)
        await store.put(session)
        await store.claim(session.session_id, scanner_ref="phone-1")

        released = await store.release_claim(session.session_id)

        assert released.status == SessionStatus.ACTIVE
        assert released.claimed is False
        assert released.scanner_ref is None
        await store.claim(session.session_id)

    @pytest.mark.asyncio
    async def test_release_after_deadline_expires(self, store, clock):
        session = make_session(clock)
        await store.put(session)
        await store.claim(session.session_id)
        clock.advance(61)

        released = await store.release_claim(session.session_id)

        assert released.status == SessionStatus.EXPIRED


class TestOwnerLimit:
    """put enforces the active session limit under the store lock."""

    @pytest.mark.asyncio
    async def test_limit_counts_only_active(self, store, clock):
        first = make_session(clock)
        await store.put(first, max_active_for_owner=2)
        await store.put(make_session(clock), max_active_for_owner=2)

        with pytest.raises(TooManySessionsError):
            await store.put(make_session(clock), max_active_for_owner=2)

        await store.put(make_session(clock, owner_ref="user-2"), max_active_for_owner=2)
        await store.compare_and_swap_status(
            first.session_id, SessionStatus.ACTIVE, SessionStatus.CANCELLED
        )
        await store.put(make_session(clock), max_active_for_owner=2)

    @pytest.mark.asyncio
    async def test_expired_sessions_do_not_count(self, store, clock):
        await store.put(make_session(clock), max_active_for_owner=1)
        clock.advance(61)

        await store.put(make_session(clock), max_active_for_owner=1)

        assert len(store) == 2


class TestDeleteAndTombstones:
    """Deleted sessions answer gone, unknown ones not found."""

    @pytest.mark.asyncio
    async def test_deleted_session_is_gone_with_status(self, store, clock):
        session = make_session(clock)
        await store.put(session)
        await store.compare_and_swap_status(
            session.session_id, SessionStatus.ACTIVE, SessionStatus.COMPLETED
        )

        assert await store.delete(session.session_id) is True

        with pytest.raises(SessionGoneError) as exc_info:
            await store.get(session.session_id)
        assert exc_info.value.final_status == "completed"
        assert session.session_id not in store

    @pytest.mark.asyncio
    async def test_delete_unknown_returns_false(self, store):
        assert await store.delete("0" * 32) is False


class TestSweep:
    """Tests for housekeeping."""

    @pytest.mark.asyncio
    async def test_sweep_expires_overdue(self, store, clock):
        session = make_session(clock)
        await store.put(session)
        clock.advance(61)

        result = await store.sweep()

        assert result.expired == 1
        assert result.deleted == 0

    @pytest.mark.asyncio
    async def test_sweep_deletes_after_grace(self, store, clock):
        """Sessions are held no longer than lifetime plus grace."""
        session = make_session(clock)
        await store.put(session)
        clock.advance(60 + 10)

        result = await store.sweep()

        assert result.expired == 1
        assert result.deleted == 1
        assert len(store) == 0
        with pytest.raises(SessionGoneError) as exc_info:
            await store.get(session.session_id)
        assert exc_info.value.final_status == "expired"

    @pytest.mark.asyncio
    async def test_sweep_keeps_terminal_within_grace(self, store, clock):
        session = make_session(clock)
        await store.put(session)
        await store.compare_and_swap_status(
            session.session_id, SessionStatus.ACTIVE, SessionStatus.CANCELLED
        )
        clock.advance(5)

        result = await store.sweep()

        assert result.deleted == 0
        assert (await store.get(session.session_id)).status == SessionStatus.CANCELLED

    @pytest.mark.asyncio
    async def test_sweep_keeps_active(self, store, clock):
        await store.put(make_session(clock))
        clock.advance(30)

        result = await store.sweep()

        assert (result.expired, result.deleted, result.pruned) == (0, 0, 0)
        assert len(store) == 1

    @pytest.mark.asyncio
    async def test_sweep_prunes_old_tombstones(self, store, clock):
        session = make_session(clock)
        await store.put(session)
        await store.delete(session.session_id)
        clock.advance(300)

        result = await store.sweep()

        assert result.pruned == 1
        with pytest.raises(SessionNotFoundError):
            await store.get(session.session_id)


class TestListForOwner:
    """Tests for per-owner listing."""

    @pytest.mark.asyncio
    async def test_only_owner_sessions(self, store, clock):
        await store.put(make_session(clock, owner_ref="user-1"))
        await store.put(make_session(clock, owner_ref="user-1"))
        await store.put(make_session(clock, owner_ref="user-2"))

        assert len(await store.list_for_owner("user-1")) == 2
        assert len(await store.list_for_owner("user-2")) == 1
        assert await store.list_for_owner("user-3") == []
