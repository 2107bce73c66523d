"""Tests for JsonPassStore - pass persistence."""

import json
from unittest.mock import patch

import pytest

from qrpass.errors import PassCreationError, StorageError
from qrpass.pairing.session import PairingSession
from qrpass.passes.store import CreatedPass, JsonPassStore


def make_session(title="Concert", owner_ref="user-1") -> PairingSession:
    return PairingSession.create(
        target_kind="event-ticket",
        target_data={"title": title, "event": "Fest", "venue": "Garden", "date": "2026-07-01"},
        owner_ref=owner_ref,
        lifetime_seconds=60,
        base_url="http://192.168.1.10:8780",
    )


@pytest.fixture
def store(tmp_path):
    return JsonPassStore(tmp_path / "passes.json", render_images=False)


class TestCreatePass:
    """Tests for pass creation."""

    @pytest.mark.asyncio
    async def test_creates_pass_from_session(self, store):
        session = make_session()

        created = await store.create_pass(session)

        assert created.session_id == session.session_id
        assert created.owner_ref == "user-1"
        assert created.kind == "event-ticket"
        assert created.title == "Concert"
        assert created.data["venue"] == "Garden"
        assert "qr-scan" in created.tags
        assert store.get(created.pass_id) == created
        assert len(store) == 1

    @pytest.mark.asyncio
    async def test_idempotent_per_session(self, store):
        """Creating twice for one session returns the first pass."""
        session = make_session()

        first = await store.create_pass(session)
        second = await store.create_pass(session)

        assert first.pass_id == second.pass_id
        assert len(store) == 1

    @pytest.mark.asyncio
    async def test_title_falls_back_to_kind(self, store):
        session = make_session()
        session.target_data.pop("title")

        created = await store.create_pass(session)

        assert created.title == "event-ticket Pass"

    @pytest.mark.asyncio
    async def test_persists_to_disk(self, store, tmp_path):
        created = await store.create_pass(make_session())

        data = json.loads((tmp_path / "passes.json").read_text())

        assert data["passes"][0]["pass_id"] == created.pass_id
        assert data["passes"][0]["session_id"] == created.session_id

    @pytest.mark.asyncio
    async def test_save_failure_keeps_nothing(self, store):
        """A failed save is reported as a clean failure."""
        with patch.object(store, "save", side_effect=StorageError("disk full")):
            with pytest.raises(PassCreationError) as exc_info:
                await store.create_pass(make_session())

        assert exc_info.value.partial is False
        assert len(store) == 0

    @pytest.mark.asyncio
    async def test_renders_qr_image(self, tmp_path):
        store = JsonPassStore(tmp_path / "passes.json")

        created = await store.create_pass(make_session())

        assert created.qr_code_image.startswith("data:image/png;base64,")


class TestLoad:
    """Tests for loading."""

    @pytest.mark.asyncio
    async def test_round_trip(self, store, tmp_path):
        created = await store.create_pass(make_session())

        reloaded = JsonPassStore(tmp_path / "passes.json")
        await reloaded.load()

        assert reloaded.get(created.pass_id) == created
        assert reloaded.find_by_session(created.session_id) == created

    @pytest.mark.asyncio
    async def test_missing_file_is_empty(self, tmp_path):
        store = JsonPassStore(tmp_path / "missing.json")
        await store.load()
        assert len(store) == 0

    @pytest.mark.asyncio
    async def test_corrupt_file_is_empty(self, tmp_path):
        path = tmp_path / "passes.json"
        path.write_text("{not json")

        store = JsonPassStore(path)
        await store.load()

        assert len(store) == 0

    @pytest.mark.asyncio
    async def test_skips_malformed_entries(self, tmp_path):
        path = tmp_path / "passes.json"
        good = CreatedPass(
            pass_id="p1",
            session_id="s1",
            owner_ref="user-1",
            kind="gym-membership",
            title="Gym",
            data={},
            created_at="2026-01-01T00:00:00Z",
        )
        path.write_text(json.dumps({"passes": [good.to_dict(), {"pass_id": "p2"}]}))

        store = JsonPassStore(path)
        await store.load()

        assert [p.pass_id for p in store.all()] == ["p1"]


class TestQueries:
    """Tests for lookups."""

    @pytest.mark.asyncio
    async def test_for_owner(self, store):
        await store.create_pass(make_session(owner_ref="user-1"))
        await store.create_pass(make_session(owner_ref="user-1"))
        await store.create_pass(make_session(owner_ref="user-2"))

        assert len(store.for_owner("user-1")) == 2
        assert len(store.for_owner("user-3")) == 0

    def test_find_unknown_session(self, store):
        assert store.find_by_session("nope") is None
