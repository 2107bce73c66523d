"""qrpass - create passes by scanning a short-lived QR pairing code."""

__version__ = "0.1.0"
