"""Streaming upload of a local file to a write credential.

This module provides:
- StreamingUploader: PUTs a file to a presigned/signed URL in blocks,
  hashing exactly the bytes that go over the wire
- UploadResult / UploadError
"""

from __future__ import annotations

import hashlib
import logging
from collections.abc import Iterator
from dataclasses import dataclass
from pathlib import Path
from typing import BinaryIO

import httpx

logger = logging.getLogger(__name__)

DEFAULT_CHUNK_SIZE = 1024 * 1024  # 1 MiB


class UploadError(Exception):
    """Raised when one upload attempt fails."""


@dataclass(frozen=True)
class UploadResult:
    """Outcome of a successful upload.

    Attributes:
        size: Number of bytes sent.
        digest: Hex SHA-256 of the bytes sent.
    """

    size: int
    digest: str


class _HashingReader:
    """Iterates over a file in blocks, counting and hashing what is read."""

    def __init__(self, f: BinaryIO, chunk_size: int) -> None:
        self._f = f
        self._chunk_size = chunk_size
        self._hasher = hashlib.sha256()
        self.sent = 0

    def __iter__(self) -> Iterator[bytes]:
        while block := self._f.read(self._chunk_size):
            self._hasher.update(block)
            self.sent += len(block)
            yield block

    @property
    def digest(self) -> str:
        return self._hasher.hexdigest()


class StreamingUploader:
    """Uploads files with a single streamed HTTP PUT.

    The body is never held in memory: blocks are read, hashed and sent one
    at a time. Content-Length is always set since presigned S3 URLs reject
    chunked transfer encoding.
    """

    def __init__(
        self,
        http: httpx.Client | None = None,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        timeout: float = 30.0,
        verify_ssl: bool = True,
    ) -> None:
        """Initialize the uploader.

        Args:
            http: HTTP client to send requests with. One is created (and
                owned by the uploader) when omitted.
            chunk_size: Size of the blocks read from disk.
            timeout: Request timeout in seconds for an owned client.
            verify_ssl: Whether an owned client verifies certificates.
        """
        self._owns_http = http is None
        self._http = http or httpx.Client(timeout=timeout, verify=verify_ssl)
        self._chunk_size = chunk_size

    def close(self) -> None:
        """Close the HTTP client if the uploader created it."""
        if self._owns_http:
            self._http.close()

    def upload(self, url: str, path: Path) -> UploadResult:
        """PUT the file at path to url.

        Args:
            url: Write credential URL.
            path: Local file to send.

        Returns:
            UploadResult with the size and digest of the bytes sent.

        Raises:
            UploadError: If the file cannot be read, the request fails or
                the server rejects the upload.
        """
        try:
            size = path.stat().st_size
            with open(path, "rb") as f:
                reader = _HashingReader(f, self._chunk_size)
                response = self._http.put(
                    url,
                    content=iter(reader),
                    headers={
                        "Content-Length": str(size),
                        "Content-Type": "application/octet-stream",
                    },
                )
        except OSError as e:
            raise UploadError(f"Cannot read {path}: {e}") from e
        except (httpx.RequestError, httpx.InvalidURL) as e:
            raise UploadError(f"Upload request failed: {e}") from e

        if response.is_error:
            raise UploadError(f"Upload rejected with HTTP {response.status_code}")

        if reader.sent != size:
            raise UploadError(f"File changed during upload: sent {reader.sent} of {size} bytes")

        logger.debug("Uploaded %s (%d bytes, sha256 %s)", path, size, reader.digest)
        return UploadResult(size=reader.sent, digest=reader.digest)
