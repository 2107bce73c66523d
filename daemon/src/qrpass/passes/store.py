"""Persist created passes to a JSON file."""

import json
import logging
import os
import tempfile
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

from qrpass.errors import PassCreationError, StorageError
from qrpass.logging import short_id
from qrpass.pairing.session import PairingSession
from qrpass.qr import QrGenerator

logger = logging.getLogger(__name__)


def _utc_now() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


@dataclass
class CreatedPass:
    """A pass created by completing a pairing session."""

    pass_id: str
    session_id: str  # Idempotency key, one pass per session
    owner_ref: str
    kind: str
    title: str
    data: dict[str, Any]
    created_at: str  # ISO format
    description: str = ""
    tags: list[str] = field(default_factory=list)
    qr_code_image: Optional[str] = None  # PNG data URL

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "pass_id": self.pass_id,
            "session_id": self.session_id,
            "owner_ref": self.owner_ref,
            "kind": self.kind,
            "title": self.title,
            "data": self.data,
            "created_at": self.created_at,
            "description": self.description,
            "tags": self.tags,
            "qr_code_image": self.qr_code_image,
        }

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> "CreatedPass":
        """Create from dictionary."""
        return cls(
            pass_id=d["pass_id"],
            session_id=d["session_id"],
            owner_ref=d["owner_ref"],
            kind=d["kind"],
            title=d["title"],
            data=d.get("data", {}),
            created_at=d["created_at"],
            description=d.get("description", ""),
            tags=d.get("tags", []),
            qr_code_image=d.get("qr_code_image"),
        )


class JsonPassStore:
    """JSON file-based pass storage.

    Implements the PassCreator protocol used by PairingManager.
    """

    def __init__(self, path: Path, render_images: bool = True):
        """Initialize pass store.

        Args:
            path: Path to JSON file for persistence.
            render_images: Attach a QR code image to each created pass.
        """
        self.path = path
        self.render_images = render_images
        self._passes: dict[str, CreatedPass] = {}

    async def load(self) -> None:
        """Load passes from file."""
        if not self.path.exists():
            logger.debug(f"No passes file at {self.path}")
            return

        try:
            with open(self.path) as f:
                data = json.load(f)

            for item in data.get("passes", []):
                try:
                    created = CreatedPass.from_dict(item)
                    self._passes[created.pass_id] = created
                except (KeyError, TypeError) as e:
                    logger.warning(f"Skipping malformed pass entry: {e}")

            logger.debug(f"Loaded {len(self._passes)} passes")

        except json.JSONDecodeError as e:
            logger.error(f"Failed to parse passes file: {e}")
        except OSError as e:
            logger.error(f"Failed to load passes: {e}")

    async def save(self) -> None:
        """Save passes to file atomically.

        Raises:
            StorageError: If the file could not be written.
        """
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)

            data = {"passes": [p.to_dict() for p in self._passes.values()]}

            fd, tmp_path = tempfile.mkstemp(dir=self.path.parent, suffix=".tmp")
            try:
                with os.fdopen(fd, "w") as f:
                    json.dump(data, f, indent=2)
                os.replace(tmp_path, self.path)
            except BaseException:
                os.unlink(tmp_path)
                raise

            logger.debug(f"Saved {len(self._passes)} passes")

        except OSError as e:
            raise StorageError(f"Failed to save passes: {e}") from e

    def _render_image(self, kind: str) -> Optional[str]:
        if not self.render_images:
            return None
        try:
            return QrGenerator(json.dumps({"type": kind})).to_data_url()
        except Exception as e:
            logger.warning(f"QR image generation failed for {kind}: {e}")
            return None

    async def create_pass(self, session: PairingSession) -> CreatedPass:
        """Create the pass for a completed session.

        Keyed by session ID: calling this again for the same session
        returns the pass created the first time.

        Args:
            session: Session whose target describes the pass.

        Returns:
            The created (or previously created) pass.

        Raises:
            PassCreationError: If the pass could not be saved. Nothing is
                kept in that case, so partial is False.
        """
        existing = self.find_by_session(session.session_id)
        if existing is not None:
            logger.info(f"Pass already exists for session {short_id(session.session_id)}")
            return existing

        title = str(session.target_data.get("title") or f"{session.target_kind} Pass")
        created = CreatedPass(
            pass_id=uuid.uuid4().hex,
            session_id=session.session_id,
            owner_ref=session.owner_ref,
            kind=session.target_kind,
            title=title,
            data=dict(session.target_data),
            created_at=_utc_now(),
            description=f"Created via QR scan - {title}",
            tags=["qr-scan", session.target_kind],
            qr_code_image=self._render_image(session.target_kind),
        )

        self._passes[created.pass_id] = created
        try:
            await self.save()
        except StorageError as e:
            del self._passes[created.pass_id]
            raise PassCreationError(str(e), partial=False) from e

        logger.info(f"Pass created for {created.owner_ref}: {created.title} ({created.pass_id[:8]}...)")
        return created

    def find_by_session(self, session_id: str) -> Optional[CreatedPass]:
        """Get the pass created for a session, if any."""
        for created in self._passes.values():
            if created.session_id == session_id:
                return created
        return None

    def get(self, pass_id: str) -> Optional[CreatedPass]:
        """Get pass by ID."""
        return self._passes.get(pass_id)

    def for_owner(self, owner_ref: str) -> list[CreatedPass]:
        """Get all passes of an owner."""
        return [p for p in self._passes.values() if p.owner_ref == owner_ref]

    def all(self) -> list[CreatedPass]:
        """Get all passes."""
        return list(self._passes.values())

    def __len__(self) -> int:
        return len(self._passes)
