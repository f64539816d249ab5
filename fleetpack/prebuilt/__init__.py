"""Prebuilt artifact module.

This module handles:
- Fetching prebuilt artifacts from the artifact store
- Digest verification against manifest pins
- Bounded retry with exponential backoff
"""

from fleetpack.prebuilt.fetch import (
    ArtifactStore,
    DownloadError,
    HttpArtifactStore,
    TransportError,
    VerificationError,
    download_verified,
)
from fleetpack.prebuilt.retry import RetryExhaustedError, RetryPolicy

__all__ = [
    "ArtifactStore",
    "DownloadError",
    "HttpArtifactStore",
    "RetryExhaustedError",
    "RetryPolicy",
    "TransportError",
    "VerificationError",
    "download_verified",
]
