"""Pass creation for completed pairing sessions.

Provides:
- Pass kinds and template validation
- JSON-file pass storage keyed by session ID
"""

from .kinds import DEFAULT_KINDS, PassKind, PassKindRegistry
from .store import CreatedPass, JsonPassStore

__all__ = [
    "CreatedPass",
    "DEFAULT_KINDS",
    "JsonPassStore",
    "PassKind",
    "PassKindRegistry",
]
