"""
Blob storage for uploaded novels and generated artifacts.

BlobStore is the uniform contract the pipeline uses; LocalBlobStore keeps
blobs on the local filesystem and hands out server-mediated presigned URLs.
"""

import hashlib
import hmac
import mimetypes
import os
import time
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional
from urllib.parse import quote, urlencode

from novel_video_agent.errors import InvalidInputError, NotFoundError
from novel_video_agent.utils.file_utils import atomic_write
from novel_video_agent.utils.logger import get_logger

logger = get_logger(__name__)


def validate_key(key: str) -> str:
    """Reject keys that could escape the storage root.

    Args:
        key: Slash separated object key.

    Returns:
        The key unchanged.

    Raises:
        InvalidInputError: If the key is empty, absolute or contains '..'.
    """
    if not key or not key.strip():
        raise InvalidInputError("Storage key must be non-empty")
    if key.startswith("/") or key.startswith("\\") or "\\" in key:
        raise InvalidInputError(f"Storage key must be relative: {key}")
    parts = key.split("/")
    if any(part in ("", ".", "..") for part in parts):
        raise InvalidInputError(f"Invalid storage key: {key}")
    return key


class BlobStore(ABC):
    """Upload/download/presign/delete contract over binary object storage."""

    @abstractmethod
    def upload(self, key: str, data: bytes, content_type: Optional[str] = None) -> str:
        """Store bytes under key and return a retrievable locator."""

    @abstractmethod
    def download(self, key: str) -> bytes:
        """Return the bytes under key. Raises NotFoundError if absent."""

    @abstractmethod
    def exists(self, key: str) -> bool:
        """Whether key is present."""

    @abstractmethod
    def delete(self, key: str) -> None:
        """Remove key. Deleting an absent key is not an error."""

    @abstractmethod
    def presign_upload(self, key: str, ttl_seconds: Optional[int] = None) -> str:
        """Time-bounded URL a client can PUT to."""

    @abstractmethod
    def presign_download(self, key: str, ttl_seconds: Optional[int] = None) -> str:
        """Time-bounded URL a client can GET from."""

    @abstractmethod
    def file_info(self, key: str) -> Dict[str, Any]:
        """Size, content type and modification time for key."""

    @property
    @abstractmethod
    def storage_type(self) -> str:
        """Short backend name recorded on resources."""


class LocalBlobStore(BlobStore):
    """Filesystem-backed blob store.

    Presigned URLs point at a server that mediates access; the signature is
    an HMAC-SHA256 over method, key and expiry so the server can verify it
    with verify_presigned().

    Examples:
        >>> blobs = LocalBlobStore("storage", secret="s3cret")
        >>> blobs.upload("u1/2025/01/01/abc.txt", b"hello", "text/plain")
        'file:///.../storage/u1/2025/01/01/abc.txt'
    """

    def __init__(self, root: str, public_base_url: Optional[str] = None,
                 secret: str = "dev-secret", default_ttl_seconds: int = 900):
        self.root = os.path.abspath(root)
        self.public_base_url = (public_base_url or "").rstrip("/")
        self.secret = secret.encode("utf-8")
        self.default_ttl_seconds = default_ttl_seconds
        os.makedirs(self.root, exist_ok=True)

    @property
    def storage_type(self) -> str:
        return "local"

    def _path(self, key: str) -> str:
        validate_key(key)
        return os.path.join(self.root, *key.split("/"))

    def upload(self, key: str, data: bytes, content_type: Optional[str] = None) -> str:
        path = self._path(key)
        atomic_write(path, data)
        logger.debug(f"[STORAGE] Stored {len(data)} bytes at {key}")
        if self.public_base_url:
            return f"{self.public_base_url}/blobs/{quote(key)}"
        return f"file://{path}"

    def download(self, key: str) -> bytes:
        path = self._path(key)
        if not os.path.isfile(path):
            raise NotFoundError(f"Blob not found: {key}")
        with open(path, "rb") as f:
            return f.read()

    def exists(self, key: str) -> bool:
        return os.path.isfile(self._path(key))

    def delete(self, key: str) -> None:
        path = self._path(key)
        try:
            os.remove(path)
            logger.debug(f"[STORAGE] Deleted {key}")
        except FileNotFoundError:
            pass

    def file_info(self, key: str) -> Dict[str, Any]:
        path = self._path(key)
        if not os.path.isfile(path):
            raise NotFoundError(f"Blob not found: {key}")
        stat = os.stat(path)
        content_type, _ = mimetypes.guess_type(path)
        return {
            "key": key,
            "size": stat.st_size,
            "content_type": content_type or "application/octet-stream",
            "modified_at": stat.st_mtime,
        }

    def _sign(self, method: str, key: str, expires: int) -> str:
        message = f"{method}\n{key}\n{expires}".encode("utf-8")
        return hmac.new(self.secret, message, hashlib.sha256).hexdigest()

    def _presign(self, method: str, key: str, ttl_seconds: Optional[int]) -> str:
        validate_key(key)
        ttl = self.default_ttl_seconds if ttl_seconds is None else ttl_seconds
        if ttl <= 0:
            raise InvalidInputError("Presign TTL must be positive")
        expires = int(time.time()) + ttl
        query = urlencode({"method": method, "expires": expires,
                           "signature": self._sign(method, key, expires)})
        return f"{self.public_base_url}/blobs/{quote(key)}?{query}"

    def presign_upload(self, key: str, ttl_seconds: Optional[int] = None) -> str:
        return self._presign("PUT", key, ttl_seconds)

    def presign_download(self, key: str, ttl_seconds: Optional[int] = None) -> str:
        return self._presign("GET", key, ttl_seconds)

    def verify_presigned(self, key: str, expires: int, signature: str,
                         method: str = "GET", now: Optional[float] = None) -> bool:
        """Check a presigned URL's signature and expiry.

        Args:
            key: Object key from the URL path.
            expires: Unix timestamp from the query string.
            signature: Hex signature from the query string.
            method: HTTP method the URL was issued for.
            now: Override for the current time.

        Returns:
            True if the signature matches and the URL has not expired.
        """
        current = time.time() if now is None else now
        if int(expires) < current:
            return False
        expected = self._sign(method, key, int(expires))
        return hmac.compare_digest(expected, signature)
