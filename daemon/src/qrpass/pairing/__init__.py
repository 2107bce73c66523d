"""Pairing module for qrpass.

Provides QR pairing session functionality including:
- Pairing session state machine
- Session store with lazy expiry and compare-and-swap
- Session lifecycle management
- Background sweeping of expired and finished sessions
"""

from .manager import CompletionOutcome, PairingManager, PassCreator
from .session import PairingSession, SessionStatus
from .store import InMemorySessionStore, SessionStore, SweepResult
from .sweeper import PairingSweeper

__all__ = [
    "CompletionOutcome",
    "InMemorySessionStore",
    "PairingManager",
    "PairingSession",
    "PairingSweeper",
    "PassCreator",
    "SessionStatus",
    "SessionStore",
    "SweepResult",
]
