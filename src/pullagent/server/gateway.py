"""Object store gateway: time-boxed credentials and object lookups.

This module provides:
- Abstract interface for the object store used by the orchestrator
- LocalFSGateway for development/testing (signed URLs served by this server)
- S3Gateway for production (AWS, MinIO, OVH) using presigned URLs
"""

from __future__ import annotations

import hashlib
import hmac
import logging
import os
import time
from abc import ABC, abstractmethod
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import TYPE_CHECKING
from urllib.parse import quote, urlencode

if TYPE_CHECKING:
    from collections.abc import Iterable, Iterator
    from typing import Any, BinaryIO

logger = logging.getLogger(__name__)


class GatewayError(Exception):
    """Raised when the object store cannot serve a request."""


class InvalidSignatureError(GatewayError):
    """Raised when a signed URL is forged, tampered with or expired."""


@dataclass(frozen=True)
class Credential:
    """A time-boxed URL granting one operation on one object.

    Attributes:
        url: The URL to call.
        method: HTTP method the URL is valid for ("PUT" or "GET").
        expires_at: When the URL stops working.
    """

    url: str
    method: str
    expires_at: datetime


@dataclass(frozen=True)
class ObjectMetadata:
    """Metadata of a stored object."""

    size: int
    etag: str | None = None


def _expiry(ttl_seconds: int) -> datetime:
    return datetime.now(UTC) + timedelta(seconds=ttl_seconds)


class ObjectStoreGateway(ABC):
    """Abstract interface to the object store."""

    @property
    @abstractmethod
    def location(self) -> str:
        """Return a human-readable description of where objects are stored."""

    @abstractmethod
    def issue_write_credential(self, object_key: str, ttl_seconds: int) -> Credential:
        """Issue a URL the agent can PUT the object to.

        Raises:
            GatewayError: If the backend cannot issue the credential.
        """

    @abstractmethod
    def issue_read_credential(
        self,
        object_key: str,
        ttl_seconds: int,
        disposition_name: str | None = None,
    ) -> Credential:
        """Issue a URL to GET the object.

        Args:
            object_key: Object to read.
            ttl_seconds: Credential lifetime.
            disposition_name: File name suggested to the downloader.

        Raises:
            GatewayError: If the backend cannot issue the credential.
        """

    @abstractmethod
    def exists(self, object_key: str) -> bool:
        """Check if an object exists."""

    @abstractmethod
    def stat_metadata(self, object_key: str) -> ObjectMetadata | None:
        """Get object metadata, or None if the object is not found."""


def content_disposition(name: str) -> str:
    """Build an attachment Content-Disposition header value for a file name."""
    ascii_name = name.encode("ascii", "ignore").decode("ascii").replace('"', "") or "file"
    return f"attachment; filename=\"{ascii_name}\"; filename*=UTF-8''{quote(name)}"


class LocalFSGateway(ObjectStoreGateway):
    """Local filesystem object store for development and testing.

    Credentials are HMAC-signed URLs pointing at this server's
    /objects/{key} routes, which check the signature and read or write the
    file under base_path.
    """

    def __init__(
        self,
        base_path: Path | str,
        public_url: str,
        secret: str | bytes | None = None,
    ) -> None:
        """Initialize local storage.

        Args:
            base_path: Base directory for object storage.
            public_url: Base URL agents and downloaders reach this server at.
            secret: Signing key. A random key is generated when omitted, so
                URLs do not survive a restart.
        """
        self._base_path = Path(base_path).resolve()
        self._base_path.mkdir(parents=True, exist_ok=True)
        self._public_url = public_url.rstrip("/")
        if secret is None:
            secret = os.urandom(32)
        self._secret = secret.encode("utf-8") if isinstance(secret, str) else secret

    @property
    def location(self) -> str:
        """Return the local storage path."""
        return f"Local filesystem: {self._base_path}"

    def object_path(self, object_key: str) -> Path:
        """Get the file path for an object key.

        Raises:
            GatewayError: If the key would resolve outside the base directory.
        """
        path = (self._base_path / object_key).resolve()
        if path == self._base_path or not path.is_relative_to(self._base_path):
            raise GatewayError(f"Invalid object key: {object_key}")
        return path

    def _signature(self, method: str, object_key: str, expires: int, disposition: str) -> str:
        payload = f"{method}\n{object_key}\n{expires}\n{disposition}".encode()
        return hmac.new(self._secret, payload, hashlib.sha256).hexdigest()

    def _signed_url(
        self,
        method: str,
        object_key: str,
        ttl_seconds: int,
        disposition: str = "",
    ) -> Credential:
        self.object_path(object_key)
        # The signature carries whole seconds; report the same instant.
        expires_at = _expiry(ttl_seconds).replace(microsecond=0)
        expires = int(expires_at.timestamp())
        params = {"expires": str(expires)}
        if disposition:
            params["disposition"] = disposition
        params["signature"] = self._signature(method, object_key, expires, disposition)
        url = f"{self._public_url}/objects/{quote(object_key)}?{urlencode(params)}"
        return Credential(url=url, method=method, expires_at=expires_at)

    def issue_write_credential(self, object_key: str, ttl_seconds: int) -> Credential:
        """Issue a signed PUT URL."""
        credential = self._signed_url("PUT", object_key, ttl_seconds)
        logger.debug("Issued PUT URL for %s, expires in %ds", object_key, ttl_seconds)
        return credential

    def issue_read_credential(
        self,
        object_key: str,
        ttl_seconds: int,
        disposition_name: str | None = None,
    ) -> Credential:
        """Issue a signed GET URL."""
        credential = self._signed_url("GET", object_key, ttl_seconds, disposition_name or "")
        logger.debug("Issued GET URL for %s, expires in %ds", object_key, ttl_seconds)
        return credential

    def verify(
        self,
        method: str,
        object_key: str,
        expires: int,
        signature: str,
        disposition: str = "",
    ) -> None:
        """Check a signed URL presented to the /objects routes.

        Raises:
            InvalidSignatureError: If the signature is wrong or expired.
        """
        expected = self._signature(method, object_key, expires, disposition)
        if not hmac.compare_digest(expected, signature):
            raise InvalidSignatureError("Signature does not match")
        if expires < time.time():
            raise InvalidSignatureError("URL expired")

    @contextmanager
    def writer(self, object_key: str) -> Iterator[BinaryIO]:
        """Open an object for writing.

        The object only becomes visible once the block exits without error;
        on error the partial file is removed.
        """
        path = self.object_path(object_key)
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = path.with_name(path.name + ".part")
        try:
            with open(tmp_path, "wb") as f:
                yield f
            tmp_path.replace(path)
        finally:
            tmp_path.unlink(missing_ok=True)

    def write(self, object_key: str, blocks: Iterable[bytes]) -> int:
        """Store an object from an iterable of byte blocks.

        Returns:
            Number of bytes written.
        """
        written = 0
        with self.writer(object_key) as f:
            for block in blocks:
                f.write(block)
                written += len(block)
        return written

    def exists(self, object_key: str) -> bool:
        """Check if an object exists."""
        try:
            return self.object_path(object_key).is_file()
        except GatewayError:
            return False

    def stat_metadata(self, object_key: str) -> ObjectMetadata | None:
        """Get object size from the filesystem."""
        try:
            stat = self.object_path(object_key).stat()
        except (GatewayError, FileNotFoundError):
            return None
        return ObjectMetadata(size=stat.st_size, etag=f"{stat.st_mtime_ns:x}-{stat.st_size:x}")


class S3Gateway(ObjectStoreGateway):
    """S3-compatible object store (AWS, MinIO, OVH, etc.)."""

    def __init__(
        self,
        bucket: str,
        endpoint_url: str | None = None,
        public_endpoint_url: str | None = None,
        access_key: str | None = None,
        secret_key: str | None = None,
        region: str = "us-east-1",
    ) -> None:
        """Initialize S3 gateway.

        Args:
            bucket: S3 bucket name.
            endpoint_url: Custom endpoint URL (for OVH, MinIO, etc.).
            public_endpoint_url: Endpoint used to sign download URLs handed
                to callers outside the server's network. Defaults to
                endpoint_url.
            access_key: AWS access key ID.
            secret_key: AWS secret access key.
            region: AWS region (default: us-east-1).
        """
        import boto3

        self._bucket = bucket
        self._endpoint_url = endpoint_url
        self._client: Any = boto3.client(
            "s3",
            endpoint_url=endpoint_url,
            aws_access_key_id=access_key,
            aws_secret_access_key=secret_key,
            region_name=region,
        )
        if public_endpoint_url and public_endpoint_url != endpoint_url:
            self._public_client: Any = boto3.client(
                "s3",
                endpoint_url=public_endpoint_url,
                aws_access_key_id=access_key,
                aws_secret_access_key=secret_key,
                region_name=region,
            )
        else:
            self._public_client = self._client

    @property
    def location(self) -> str:
        """Return the S3 bucket location."""
        if self._endpoint_url:
            return f"S3: {self._endpoint_url}/{self._bucket}"
        return f"S3: s3://{self._bucket}"

    def ensure_bucket(self) -> None:
        """Create the bucket if it does not exist."""
        from botocore.exceptions import ClientError

        try:
            self._client.head_bucket(Bucket=self._bucket)
            logger.info("Bucket already exists: %s", self._bucket)
        except ClientError:
            self._client.create_bucket(Bucket=self._bucket)
            logger.info("Created bucket: %s", self._bucket)

    def issue_write_credential(self, object_key: str, ttl_seconds: int) -> Credential:
        """Issue a presigned PUT URL."""
        from botocore.exceptions import BotoCoreError, ClientError

        expires_at = _expiry(ttl_seconds)
        try:
            url = self._client.generate_presigned_url(
                "put_object",
                Params={"Bucket": self._bucket, "Key": object_key},
                ExpiresIn=ttl_seconds,
            )
        except (BotoCoreError, ClientError) as e:
            raise GatewayError(f"Cannot presign PUT for {object_key}: {e}") from e
        logger.debug("Issued PUT URL for %s, expires in %ds", object_key, ttl_seconds)
        return Credential(url=url, method="PUT", expires_at=expires_at)

    def issue_read_credential(
        self,
        object_key: str,
        ttl_seconds: int,
        disposition_name: str | None = None,
    ) -> Credential:
        """Issue a presigned GET URL."""
        from botocore.exceptions import BotoCoreError, ClientError

        params = {"Bucket": self._bucket, "Key": object_key}
        if disposition_name:
            params["ResponseContentDisposition"] = content_disposition(disposition_name)

        expires_at = _expiry(ttl_seconds)
        try:
            url = self._public_client.generate_presigned_url(
                "get_object",
                Params=params,
                ExpiresIn=ttl_seconds,
            )
        except (BotoCoreError, ClientError) as e:
            raise GatewayError(f"Cannot presign GET for {object_key}: {e}") from e
        logger.debug("Issued GET URL for %s, expires in %ds", object_key, ttl_seconds)
        return Credential(url=url, method="GET", expires_at=expires_at)

    def _head(self, object_key: str) -> dict[str, Any] | None:
        from botocore.exceptions import ClientError

        try:
            response: dict[str, Any] = self._client.head_object(
                Bucket=self._bucket,
                Key=object_key,
            )
            return response
        except ClientError as e:
            code = e.response.get("Error", {}).get("Code")
            if code in ("404", "NoSuchKey", "NotFound"):
                return None
            raise GatewayError(f"Cannot stat {object_key}: {e}") from e

    def exists(self, object_key: str) -> bool:
        """Check if an object exists."""
        return self._head(object_key) is not None

    def stat_metadata(self, object_key: str) -> ObjectMetadata | None:
        """Get object size and ETag."""
        head = self._head(object_key)
        if head is None:
            return None
        etag = head.get("ETag")
        return ObjectMetadata(
            size=int(head["ContentLength"]),
            etag=etag.strip('"') if etag else None,
        )


def create_gateway(config: dict[str, str | None]) -> ObjectStoreGateway:
    """Factory function to create a gateway from configuration.

    Args:
        config: Gateway configuration dict with keys:
            - type: "local" or "s3"
            - For local: local_path, public_url, secret
            - For S3: bucket, endpoint_url, public_endpoint_url, access_key,
              secret_key, region

    Returns:
        Configured ObjectStoreGateway instance.

    Raises:
        ValueError: If gateway type is unknown or configuration is incomplete.
    """
    gateway_type = config.get("type", "local")

    if gateway_type == "local":
        return LocalFSGateway(
            config.get("local_path") or "./objects",
            public_url=config.get("public_url") or "http://localhost:8000",
            secret=config.get("secret"),
        )

    if gateway_type == "s3":
        bucket = config.get("bucket")
        if not bucket:
            raise ValueError("S3 gateway requires 'bucket' configuration")
        return S3Gateway(
            bucket=bucket,
            endpoint_url=config.get("endpoint_url"),
            public_endpoint_url=config.get("public_endpoint_url"),
            access_key=config.get("access_key"),
            secret_key=config.get("secret_key"),
            region=config.get("region") or "us-east-1",
        )

    raise ValueError(f"Unknown gateway type: {gateway_type}")
