"""Cache storage backends.

This module handles:
- The storage key addressing a bundle independent of local layout
- The storage contract (exists / fetch / store)
- A local directory backend and a remote HTTP backend
- Role bindings (producer / consumer) supplied per run

Backends raise StorageError; the cache system decides whether an error
degrades to a miss (fetch) or a warning (store).
"""

from __future__ import annotations

import logging
import shutil
import tarfile
import tempfile
import uuid
from collections.abc import Iterable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Protocol, runtime_checkable

import httpx

from bundlesmith.builds.fingerprint import fingerprint_hex
from bundlesmith.graph.schema import Product
from bundlesmith.types import CacheRole

logger = logging.getLogger(__name__)

# Timeout for HEAD requests (seconds)
HEAD_TIMEOUT = 30

# Timeout for bundle transfers (seconds)
TRANSFER_TIMEOUT = 600

# Chunk size for downloads (bytes)
DOWNLOAD_CHUNK_SIZE = 64 * 1024  # 64 KB


class StorageError(Exception):
    """Raised when a storage backend fails."""

    def __init__(self, message: str, code: str = "storage_error") -> None:
        super().__init__(message)
        self.code = code


@dataclass(frozen=True)
class CacheStorageKey:
    """Address of one bundle in a storage backend."""

    package_id: str
    target_name: str
    fingerprint: str

    @classmethod
    def for_product(cls, product: Product, fingerprint: str) -> CacheStorageKey:
        return cls(
            package_id=product.package_id,
            target_name=product.target_name,
            fingerprint=fingerprint,
        )

    @property
    def bundle_name(self) -> str:
        return f"{self.target_name}.xcframework"

    def relative_path(self) -> str:
        """Return the storage path ``<target>/<fingerprint hex>``."""
        return f"{self.target_name}/{fingerprint_hex(self.fingerprint)}"


@runtime_checkable
class CacheStorage(Protocol):
    """Contract every storage backend implements."""

    def exists(self, key: CacheStorageKey) -> bool:
        """Return whether a bundle is stored under ``key``."""
        ...

    def fetch(self, key: CacheStorageKey, destination: Path) -> Path | None:
        """Materialize the bundle for ``key`` inside ``destination``.

        Returns the path of the materialized bundle, or None on a miss.
        """
        ...

    def store(self, key: CacheStorageKey, bundle_path: Path) -> bool:
        """Store the bundle at ``bundle_path`` under ``key``."""
        ...


class LocalCacheStorage:
    """Storage backend backed by a local directory tree.

    Layout: ``<root>/<target>/<fingerprint hex>/<Target>.xcframework``.
    """

    def __init__(self, root: Path) -> None:
        self.root = root

    def __repr__(self) -> str:
        return f"LocalCacheStorage(root={str(self.root)!r})"

    def _bundle_path(self, key: CacheStorageKey) -> Path:
        return self.root / key.relative_path() / key.bundle_name

    def exists(self, key: CacheStorageKey) -> bool:
        bundle = self._bundle_path(key)
        return bundle.is_dir() and any(bundle.iterdir())

    def fetch(self, key: CacheStorageKey, destination: Path) -> Path | None:
        source = self._bundle_path(key)
        if not source.is_dir():
            return None
        target = destination / key.bundle_name
        try:
            destination.mkdir(parents=True, exist_ok=True)
            shutil.copytree(source, target, symlinks=True)
        except OSError as e:
            raise StorageError(
                f"Failed to copy {source} from local storage: {e}",
                code="local_fetch_error",
            ) from e
        logger.debug("Fetched %s from %s", key.relative_path(), self.root)
        return target

    def store(self, key: CacheStorageKey, bundle_path: Path) -> bool:
        entry_dir = self.root / key.relative_path()
        staging_dir = entry_dir.parent / f".{entry_dir.name}.{uuid.uuid4().hex[:8]}"
        try:
            staging_dir.mkdir(parents=True, exist_ok=True)
            shutil.copytree(
                bundle_path, staging_dir / key.bundle_name, symlinks=True
            )
            if entry_dir.exists():
                shutil.rmtree(entry_dir)
            staging_dir.rename(entry_dir)
        except OSError as e:
            shutil.rmtree(staging_dir, ignore_errors=True)
            raise StorageError(
                f"Failed to store {bundle_path} in local storage: {e}",
                code="local_store_error",
            ) from e
        logger.debug("Stored %s in %s", key.relative_path(), self.root)
        return True


class HTTPCacheStorage:
    """Storage backend backed by a remote HTTP store.

    Bundles are transferred as gzip tarballs at
    ``<base_url>/<target>/<fingerprint hex>.tar.gz`` with HEAD, GET and PUT.
    """

    def __init__(
        self,
        base_url: str,
        client: httpx.Client | None = None,
        timeout: float = TRANSFER_TIMEOUT,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.client = client or httpx.Client(follow_redirects=True)
        self.timeout = timeout

    def __repr__(self) -> str:
        return f"HTTPCacheStorage(base_url={self.base_url!r})"

    def url_for(self, key: CacheStorageKey) -> str:
        return f"{self.base_url}/{key.relative_path()}.tar.gz"

    def exists(self, key: CacheStorageKey) -> bool:
        url = self.url_for(key)
        try:
            response = self.client.head(url, timeout=HEAD_TIMEOUT)
        except httpx.RequestError as e:
            raise StorageError(
                f"Network error checking {url}: {e}", code="network_error"
            ) from e
        if response.status_code == 404:
            return False
        if response.is_success:
            return True
        raise StorageError(
            f"HTTP error checking {url}: {response.status_code}", code="http_error"
        )

    def fetch(self, key: CacheStorageKey, destination: Path) -> Path | None:
        url = self.url_for(key)
        destination.mkdir(parents=True, exist_ok=True)
        with tempfile.TemporaryDirectory(prefix="bundlesmith_fetch_") as tmp:
            archive_path = Path(tmp) / "bundle.tar.gz"
            try:
                with self.client.stream("GET", url, timeout=self.timeout) as response:
                    if response.status_code == 404:
                        return None
                    response.raise_for_status()
                    with archive_path.open("wb") as f:
                        for chunk in response.iter_bytes(DOWNLOAD_CHUNK_SIZE):
                            f.write(chunk)
            except httpx.HTTPStatusError as e:
                raise StorageError(
                    f"HTTP error downloading {url}: {e.response.status_code}",
                    code="http_error",
                ) from e
            except httpx.RequestError as e:
                raise StorageError(
                    f"Network error downloading {url}: {e}", code="network_error"
                ) from e

            try:
                with tarfile.open(archive_path, "r:gz") as tar:
                    tar.extractall(destination, filter="data")
            except (tarfile.TarError, OSError) as e:
                raise StorageError(
                    f"Failed to extract bundle from {url}: {e}",
                    code="extraction_error",
                ) from e

        bundle = destination / key.bundle_name
        if not bundle.is_dir():
            raise StorageError(
                f"Archive from {url} does not contain {key.bundle_name}",
                code="invalid_archive",
            )
        logger.debug("Fetched %s from %s", key.relative_path(), self.base_url)
        return bundle

    def store(self, key: CacheStorageKey, bundle_path: Path) -> bool:
        url = self.url_for(key)
        with tempfile.TemporaryDirectory(prefix="bundlesmith_store_") as tmp:
            archive_path = Path(tmp) / "bundle.tar.gz"
            try:
                with tarfile.open(archive_path, "w:gz") as tar:
                    tar.add(bundle_path, arcname=key.bundle_name)
            except (tarfile.TarError, OSError) as e:
                raise StorageError(
                    f"Failed to archive {bundle_path} for {url}: {e}",
                    code="archive_error",
                ) from e

            try:
                with archive_path.open("rb") as f:
                    response = self.client.put(
                        url,
                        content=f.read(),
                        headers={"Content-Type": "application/gzip"},
                        timeout=self.timeout,
                    )
                response.raise_for_status()
            except httpx.HTTPStatusError as e:
                raise StorageError(
                    f"HTTP error uploading {url}: {e.response.status_code}",
                    code="http_error",
                ) from e
            except httpx.RequestError as e:
                raise StorageError(
                    f"Network error uploading {url}: {e}", code="network_error"
                ) from e
        logger.debug("Stored %s at %s", key.relative_path(), self.base_url)
        return True


@dataclass(frozen=True)
class StorageBinding:
    """A storage backend together with the roles it plays in this run."""

    storage: CacheStorage
    roles: frozenset[CacheRole] = field(
        default_factory=lambda: frozenset({CacheRole.CONSUMER, CacheRole.PRODUCER})
    )

    @classmethod
    def of(cls, storage: CacheStorage, roles: Iterable[CacheRole]) -> StorageBinding:
        return cls(storage=storage, roles=frozenset(roles))

    @property
    def is_consumer(self) -> bool:
        return CacheRole.CONSUMER in self.roles

    @property
    def is_producer(self) -> bool:
        return CacheRole.PRODUCER in self.roles


__all__ = [
    "CacheStorage",
    "CacheStorageKey",
    "HTTPCacheStorage",
    "LocalCacheStorage",
    "StorageBinding",
    "StorageError",
]
