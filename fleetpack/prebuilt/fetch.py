"""Prebuilt artifact fetch module.

This module handles:
- URL construction for artifacts in the artifact store
- Streaming downloads over HTTP
- SHA-256 verification against the pinned digest
- Atomic placement of verified files into the download cache
"""

from __future__ import annotations

import hashlib
import logging
import os
import time
import uuid
from collections.abc import Callable, Iterator
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

import httpx

from fleetpack.prebuilt.retry import RetryExhaustedError, RetryPolicy

logger = logging.getLogger(__name__)

# Timeout for downloads (seconds)
DOWNLOAD_TIMEOUT = 3600

# Chunk size for downloads (bytes)
DOWNLOAD_CHUNK_SIZE = 64 * 1024  # 64 KB

# HTTP statuses worth retrying; other client errors fail immediately
RETRYABLE_STATUSES = frozenset({408, 425, 429, 500, 502, 503, 504})


class TransportError(Exception):
    """Raised when the artifact store cannot deliver bytes."""

    def __init__(
        self,
        message: str,
        code: str = "transport_error",
        retryable: bool = True,
    ) -> None:
        super().__init__(message)
        self.code = code
        self.retryable = retryable


class DownloadError(Exception):
    """Raised when a download fails after all retries."""

    def __init__(
        self, message: str, attempts: int = 0, code: str = "download_error"
    ) -> None:
        super().__init__(message)
        self.attempts = attempts
        self.code = code


class VerificationError(Exception):
    """Raised when checksum verification fails."""

    def __init__(
        self,
        message: str,
        expected: str,
        actual: str,
        code: str = "verification_error",
    ) -> None:
        super().__init__(message)
        self.expected = expected
        self.actual = actual
        self.code = code


class ArtifactStore(Protocol):
    """Source of prebuilt artifact bytes keyed by (repo, commit)."""

    def stream(self, repo: str, commit: str, filename: str) -> Iterator[bytes]:
        """Yield the artifact's bytes in chunks; raise TransportError on failure."""
        ...


class HttpArtifactStore:
    """Artifact store served over HTTP.

    Artifacts live at ``<base_url>/<repo>/image/<commit>/<filename>``.
    """

    def __init__(
        self,
        client: httpx.Client,
        base_url: str,
        timeout: float = DOWNLOAD_TIMEOUT,
        chunk_size: int = DOWNLOAD_CHUNK_SIZE,
    ) -> None:
        self.client = client
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.chunk_size = chunk_size

    def artifact_url(self, repo: str, commit: str, filename: str) -> str:
        """Return the URL of an artifact in the store."""
        return f"{self.base_url}/{repo}/image/{commit}/{filename}"

    def stream(self, repo: str, commit: str, filename: str) -> Iterator[bytes]:
        """Stream an artifact's bytes.

        Raises:
            TransportError: On HTTP, timeout or network failure.
        """
        url = self.artifact_url(repo, commit, filename)
        logger.info("Fetching %s", url)
        try:
            with self.client.stream("GET", url, timeout=self.timeout) as response:
                response.raise_for_status()
                yield from response.iter_bytes(self.chunk_size)
        except httpx.HTTPStatusError as e:
            status = e.response.status_code
            raise TransportError(
                f"HTTP error fetching {url}: {status} {e.response.reason_phrase}",
                code="http_error",
                retryable=status in RETRYABLE_STATUSES,
            ) from e
        except httpx.TimeoutException as e:
            raise TransportError(f"Timeout fetching {url}", code="timeout") from e
        except httpx.RequestError as e:
            raise TransportError(
                f"Network error fetching {url}: {e}", code="network_error"
            ) from e


@dataclass
class DownloadResult:
    """Result of a verified download."""

    path: Path
    checksum: str
    size_bytes: int
    attempts: int
    cached: bool = False


def compute_file_sha256(file_path: Path, chunk_size: int = DOWNLOAD_CHUNK_SIZE) -> str:
    """Compute SHA256 checksum of a file.

    Args:
        file_path: Path to the file.
        chunk_size: Size of chunks to read.

    Returns:
        SHA256 hex digest.
    """
    sha256 = hashlib.sha256()
    with file_path.open("rb") as f:
        while chunk := f.read(chunk_size):
            sha256.update(chunk)
    return sha256.hexdigest()


def cached_file_matches(path: Path, expected_checksum: str) -> bool:
    """Return True if ``path`` exists and hashes to ``expected_checksum``."""
    if not path.is_file():
        return False
    return compute_file_sha256(path) == expected_checksum.lower()


def _write_stream(chunks: Iterator[bytes], dest_path: Path) -> tuple[str, int]:
    """Write chunks to ``dest_path`` while hashing; return (sha256, size)."""
    sha256 = hashlib.sha256()
    total_bytes = 0
    with dest_path.open("wb") as f:
        for chunk in chunks:
            f.write(chunk)
            sha256.update(chunk)
            total_bytes += len(chunk)
    return sha256.hexdigest(), total_bytes


def download_verified(
    store: ArtifactStore,
    repo: str,
    commit: str,
    filename: str,
    dest_path: Path,
    expected_checksum: str,
    policy: RetryPolicy | None = None,
    sleep: Callable[[float], None] = time.sleep,
) -> DownloadResult:
    """Download an artifact, verify its digest and move it into place.

    The bytes are written to a temporary file next to ``dest_path``; only a
    file whose SHA-256 matches ``expected_checksum`` is renamed to
    ``dest_path``. A mismatching file is deleted.

    Args:
        store: Artifact store to fetch from.
        repo: Repository name in the store.
        commit: Commit the artifact was built from.
        filename: Artifact filename.
        dest_path: Final location of the verified file.
        expected_checksum: Pinned SHA-256 hex digest.
        policy: Retry policy for transport failures.
        sleep: Sleep function used between retries.

    Returns:
        DownloadResult for the verified file.

    Raises:
        DownloadError: If every attempt failed with a transport error, or a
            non-retryable transport error occurred.
        VerificationError: If the downloaded bytes do not match the digest.
    """
    if policy is None:
        policy = RetryPolicy()

    dest_path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = dest_path.with_name(f".{dest_path.name}.{uuid.uuid4().hex[:8]}.part")

    def attempt(number: int) -> tuple[str, int, int]:
        logger.debug("Download attempt %d for %s/%s/%s", number, repo, commit, filename)
        try:
            checksum, size = _write_stream(
                store.stream(repo, commit, filename), tmp_path
            )
        except TransportError:
            tmp_path.unlink(missing_ok=True)
            raise
        return checksum, size, number

    try:
        checksum, size_bytes, attempts = policy.call(
            attempt,
            retry_on=(TransportError,),
            retryable=lambda e: getattr(e, "retryable", True),
            sleep=sleep,
        )
    except RetryExhaustedError as e:
        raise DownloadError(
            f"Failed to fetch {filename}: {e.last_error}",
            attempts=e.attempts,
            code=getattr(e.last_error, "code", "download_error"),
        ) from e
    except TransportError as e:
        raise DownloadError(
            f"Failed to fetch {filename}: {e}", attempts=1, code=e.code
        ) from e

    expected = expected_checksum.lower()
    if checksum != expected:
        tmp_path.unlink(missing_ok=True)
        raise VerificationError(
            f"Checksum mismatch for {filename}: expected {expected}, got {checksum}",
            expected=expected,
            actual=checksum,
        )

    os.replace(tmp_path, dest_path)
    logger.info(
        "Downloaded %s (%d bytes, checksum: %s)",
        dest_path.name,
        size_bytes,
        checksum[:16] + "...",
    )
    return DownloadResult(
        path=dest_path,
        checksum=checksum,
        size_bytes=size_bytes,
        attempts=attempts,
    )


__all__ = [
    "ArtifactStore",
    "DOWNLOAD_CHUNK_SIZE",
    "DownloadError",
    "DownloadResult",
    "HttpArtifactStore",
    "TransportError",
    "VerificationError",
    "cached_file_matches",
    "compute_file_sha256",
    "download_verified",
]
