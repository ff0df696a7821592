"""Object storage for uploaded invoice files and the pre-signed upload URLs that write to it."""

import hashlib
import hmac
import logging
import os
import re
import threading
import time
from abc import ABC, abstractmethod
from typing import Callable, Dict, Tuple
from urllib.parse import urlencode

from .errors import ObjectNotFound

logger = logging.getLogger("invoice_import.objects")

Clock = Callable[[], float]

DEFAULT_OBJECT_LIFETIME_SECONDS = 24 * 60 * 60

_KEY_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]{0,127}$")


def is_valid_key(key: str) -> bool:
    return bool(_KEY_PATTERN.match(key))


class ObjectAccess(ABC):
    def __init__(
        self,
        bucket: str,
        signing_secret: str,
        public_base_url: str,
        lifetime_seconds: int = DEFAULT_OBJECT_LIFETIME_SECONDS,
        clock: Clock = time.time,
    ) -> None:
        self.bucket = bucket
        self._secret = signing_secret.encode("utf-8")
        self._public_base_url = public_base_url.rstrip("/")
        self._lifetime_seconds = lifetime_seconds
        self._clock = clock

    def _signature(self, key: str, expires: int) -> str:
        message = f"PUT\n{self.bucket}\n{key}\n{expires}".encode("utf-8")
        return hmac.new(self._secret, message, hashlib.sha256).hexdigest()

    def create_upload_url(self, key: str, expires_in: int) -> str:
        """Return a URL that allows a single PUT of ``key`` for ``expires_in`` seconds."""
        if not is_valid_key(key):
            raise ValueError(f"Invalid object key: {key!r}")
        expires = int(self._clock()) + expires_in
        query = urlencode({"expires": expires, "signature": self._signature(key, expires)})
        return f"{self._public_base_url}/uploads/{self.bucket}/{key}?{query}"

    def verify_upload(self, key: str, expires: int, signature: str) -> bool:
        if not is_valid_key(key):
            return False
        if expires < self._clock():
            logger.info("Upload URL for key=%s expired at %s", key, expires)
            return False
        return hmac.compare_digest(self._signature(key, expires), signature)

    @abstractmethod
    def put(self, key: str, data: bytes) -> None:
        ...

    @abstractmethod
    def get(self, key: str) -> bytes:
        """Raises ObjectNotFound when the key is absent."""

    @abstractmethod
    def delete(self, key: str) -> None:
        """Remove the object; deleting a missing key is not an error."""

    @abstractmethod
    def purge_expired(self) -> int:
        """Remove objects older than the bucket lifetime, returning how many were removed."""


class LocalObjectStore(ObjectAccess):
    """Bucket backed by a directory on the local filesystem."""

    def __init__(self, root_dir: str, *args, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self._dir = os.path.join(root_dir, self.bucket)
        os.makedirs(self._dir, exist_ok=True)

    def _path(self, key: str) -> str:
        if not is_valid_key(key):
            raise ValueError(f"Invalid object key: {key!r}")
        return os.path.join(self._dir, key)

    def put(self, key: str, data: bytes) -> None:
        path = self._path(key)
        tmp_path = f"{path}.{threading.get_ident()}.part"
        with open(tmp_path, "wb") as fh:
            fh.write(data)
        os.replace(tmp_path, path)
        logger.info("Stored object %s/%s (%s bytes)", self.bucket, key, len(data))

    def get(self, key: str) -> bytes:
        try:
            with open(self._path(key), "rb") as fh:
                return fh.read()
        except FileNotFoundError as exc:
            raise ObjectNotFound(self.bucket, key) from exc

    def delete(self, key: str) -> None:
        try:
            os.remove(self._path(key))
            logger.info("Deleted object %s/%s", self.bucket, key)
        except FileNotFoundError:
            logger.info("Object %s/%s already deleted", self.bucket, key)

    def purge_expired(self) -> int:
        cutoff = self._clock() - self._lifetime_seconds
        removed = 0
        with os.scandir(self._dir) as entries:
            for entry in entries:
                if not entry.is_file() or entry.stat().st_mtime >= cutoff:
                    continue
                try:
                    os.remove(entry.path)
                    removed += 1
                except FileNotFoundError:
                    continue
        if removed:
            logger.info("Purged %s expired objects from bucket %s", removed, self.bucket)
        return removed


class InMemoryObjectStore(ObjectAccess):
    def __init__(
        self,
        bucket: str = "invoices",
        signing_secret: str = "test-secret",
        public_base_url: str = "http://testserver",
        **kwargs,
    ) -> None:
        super().__init__(bucket, signing_secret, public_base_url, **kwargs)
        self._lock = threading.Lock()
        self.objects: Dict[str, Tuple[bytes, float]] = {}

    def put(self, key: str, data: bytes) -> None:
        with self._lock:
            self.objects[key] = (data, self._clock())

    def get(self, key: str) -> bytes:
        with self._lock:
            entry = self.objects.get(key)
        if entry is None:
            raise ObjectNotFound(self.bucket, key)
        return entry[0]

    def delete(self, key: str) -> None:
        with self._lock:
            self.objects.pop(key, None)

    def purge_expired(self) -> int:
        cutoff = self._clock() - self._lifetime_seconds
        with self._lock:
            stale = [key for key, (_, stored_at) in self.objects.items() if stored_at < cutoff]
            for key in stale:
                del self.objects[key]
        return len(stale)
