"""Initiating-device side of the pairing flow."""

from qrpass.client.api import ApiError, PairingApiClient, SessionGoneApiError
from qrpass.client.watcher import PairingWatcher, WatchOutcome, WatchResult

__all__ = [
    "ApiError",
    "PairingApiClient",
    "PairingWatcher",
    "SessionGoneApiError",
    "WatchOutcome",
    "WatchResult",
]
