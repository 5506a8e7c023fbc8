"""Cache system for product bundles.

This module handles:
- Version record persistence next to each bundle
- The reuse/rebuild decision (local record, then consumer storages)
- Atomic publishing of staged bundles
- Per-key file locks so one key is never built twice concurrently
- Pushing freshly built bundles to producer storages

A version record is trusted only when its bundle directory exists and is
non-empty; anything else is a miss.
"""

from __future__ import annotations

import fcntl
import hashlib
import logging
import os
import shutil
import time
import uuid
from collections.abc import Iterator, Sequence
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from bundlesmith.builds.fingerprint import FINGERPRINT_SCHEMA_VERSION
from bundlesmith.builds.options import BuildOptions
from bundlesmith.builds.storage import CacheStorageKey, StorageBinding, StorageError
from bundlesmith.graph.schema import Product
from bundlesmith.types import CacheMode, CacheSource

logger = logging.getLogger(__name__)

STAGING_DIRNAME = ".staging"
LOCKS_DIRNAME = ".locks"


class VersionRecord(BaseModel):
    """Persisted fingerprint marker for one product bundle.

    Attributes:
        schema_version: Fingerprint schema the record was written with.
        product: Product identity.
        fingerprint: Fingerprint of the published bundle.
        toolchain_version: Toolchain that produced the bundle.
        build_options: Resolved options summary, for human diffing.
    """

    model_config = ConfigDict(extra="ignore")

    schema_version: str = FINGERPRINT_SCHEMA_VERSION
    product: dict[str, str] = Field(default_factory=dict)
    fingerprint: str
    toolchain_version: str = ""
    build_options: dict[str, Any] = Field(default_factory=dict)


@dataclass(frozen=True)
class CacheDecision:
    """Outcome of a cache lookup for one product.

    Attributes:
        hit: Whether the existing bundle may be reused.
        source: Where the reused bundle came from.
        reason: Short human-readable explanation.
    """

    hit: bool
    source: CacheSource | None = None
    reason: str = ""

    @classmethod
    def miss(cls, reason: str) -> CacheDecision:
        return cls(hit=False, reason=reason)


@contextmanager
def build_lock(
    lock_dir: Path,
    key: str,
    timeout: float | None = None,
) -> Iterator[None]:
    """Acquire an exclusive lock for a cache key.

    Uses a file-based lock so concurrent threads and processes sharing the
    output directory never build the same key twice.

    Args:
        lock_dir: Directory for lock files.
        key: Key to lock on.
        timeout: Lock acquisition timeout in seconds (None = blocking).

    Yields:
        None when lock is acquired.

    Raises:
        TimeoutError: If lock cannot be acquired within timeout.
    """
    lock_dir.mkdir(parents=True, exist_ok=True)

    digest = hashlib.sha256(key.encode("utf-8")).hexdigest()[:32]
    lock_file = lock_dir / f"build_{digest}.lock"

    logger.debug("Acquiring build lock for key: %s", key)

    fd = os.open(str(lock_file), os.O_RDWR | os.O_CREAT, 0o600)
    lock_acquired = False
    try:
        if timeout is not None:
            start = time.monotonic()
            while True:
                try:
                    fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
                    lock_acquired = True
                    break
                except BlockingIOError:
                    if time.monotonic() - start >= timeout:
                        raise TimeoutError(
                            f"Timeout waiting for build lock on {key}"
                        ) from None
                    time.sleep(0.1)
        else:
            fcntl.flock(fd, fcntl.LOCK_EX)
            lock_acquired = True

        logger.debug("Build lock acquired for key: %s", key)
        yield
    finally:
        if lock_acquired:
            fcntl.flock(fd, fcntl.LOCK_UN)
            logger.debug("Build lock released for key: %s", key)
        os.close(fd)


def publish_bundle(staged: Path, final: Path) -> Path:
    """Move a fully assembled bundle into its final location.

    A previous bundle is moved aside before the swap and removed after it,
    so readers see either the old or the new bundle, never a mix. The
    staged directory must live on the same filesystem as ``final``.

    Args:
        staged: Completely assembled bundle directory.
        final: Published bundle location.

    Returns:
        The published path.
    """
    final.parent.mkdir(parents=True, exist_ok=True)
    backup: Path | None = None
    if final.exists():
        backup = final.parent / f".{final.name}.old-{uuid.uuid4().hex[:8]}"
        final.rename(backup)
    try:
        staged.rename(final)
    except OSError:
        if backup is not None:
            backup.rename(final)
        raise
    if backup is not None:
        shutil.rmtree(backup, ignore_errors=True)
    logger.info("Published %s", final)
    return final


def is_bundle_intact(bundle: Path) -> bool:
    """Return whether a bundle directory exists and is non-empty."""
    return bundle.is_dir() and any(bundle.iterdir())


class CacheSystem:
    """Reuse/rebuild decisions and cache state for one run.

    Args:
        output_dir: Directory holding bundles and version records.
        mode: Cache mode of the run.
        toolchain_version: Active toolchain version string.
        storages: Storage bindings with their roles (used in storage mode).
        force_rebuild: Treat every lookup as a miss.
    """

    def __init__(
        self,
        output_dir: Path,
        mode: CacheMode = CacheMode.PROJECT,
        toolchain_version: str = "",
        storages: Sequence[StorageBinding] = (),
        force_rebuild: bool = False,
    ) -> None:
        self.output_dir = output_dir
        self.mode = mode
        self.toolchain_version = toolchain_version
        self.storages = list(storages) if mode is CacheMode.STORAGE else []
        self.force_rebuild = force_rebuild

    @property
    def enabled(self) -> bool:
        return self.mode is not CacheMode.DISABLED

    @property
    def staging_root(self) -> Path:
        return self.output_dir / STAGING_DIRNAME

    @property
    def lock_dir(self) -> Path:
        return self.output_dir / LOCKS_DIRNAME

    def bundle_path(self, product: Product) -> Path:
        return self.output_dir / product.bundle_name

    def version_file_path(self, product: Product) -> Path:
        return self.output_dir / f".{product.display_name}.version"

    def new_staging_dir(self, product: Product) -> Path:
        """Create a unique staging directory for one product."""
        staging = (
            self.staging_root / f"{product.display_name}-{uuid.uuid4().hex[:12]}"
        )
        staging.mkdir(parents=True)
        return staging

    @contextmanager
    def lock(self, product: Product, timeout: float | None = None) -> Iterator[None]:
        """Lock the product's bundle in this output directory."""
        key = f"{product.package_id}/{product.target_name}"
        with build_lock(self.lock_dir, key, timeout=timeout):
            yield

    def read_version_record(self, product: Product) -> VersionRecord | None:
        """Read the product's version record.

        Unreadable records and records from another schema version are
        treated as absent.
        """
        path = self.version_file_path(product)
        if not path.is_file():
            return None
        try:
            record = VersionRecord.model_validate_json(path.read_text(encoding="utf-8"))
        except (OSError, ValidationError, ValueError) as e:
            logger.warning("Ignoring unreadable version record %s: %s", path, e)
            return None
        if record.schema_version != FINGERPRINT_SCHEMA_VERSION:
            logger.info(
                "Ignoring version record %s with schema %s",
                path,
                record.schema_version,
            )
            return None
        return record

    def write_version_record(
        self,
        product: Product,
        fingerprint: str,
        options: BuildOptions,
    ) -> Path:
        """Write the product's version record atomically.

        Args:
            product: Product whose bundle was just published.
            fingerprint: Fingerprint of that bundle.
            options: Resolved build options of the product.

        Returns:
            Path of the version record.
        """
        record = VersionRecord(
            product=product.identity(),
            fingerprint=fingerprint,
            toolchain_version=self.toolchain_version,
            build_options=options.summary(),
        )
        path = self.version_file_path(product)
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = path.with_name(f"{path.name}.{uuid.uuid4().hex[:8]}.tmp")
        tmp_path.write_text(record.model_dump_json(indent=2) + "\n", encoding="utf-8")
        os.replace(tmp_path, path)
        logger.debug("Wrote version record %s", path)
        return path

    def invalidate(self, product: Product) -> None:
        """Remove the product's version record before its bundle changes."""
        self.version_file_path(product).unlink(missing_ok=True)

    def lookup(
        self,
        product: Product,
        fingerprint: str,
        options: BuildOptions,
    ) -> CacheDecision:
        """Decide whether the product's bundle can be reused.

        Checks the local version record first, then every consumer storage.
        A remote hit is materialized, published and recorded before
        returning.

        Args:
            product: Product to look up.
            fingerprint: Freshly computed fingerprint.
            options: Resolved build options of the product.

        Returns:
            CacheDecision.
        """
        if not self.enabled:
            return CacheDecision.miss("cache disabled")
        if self.force_rebuild:
            return CacheDecision.miss("rebuild forced")

        bundle = self.bundle_path(product)
        record = self.read_version_record(product)
        if record is not None and record.fingerprint == fingerprint:
            if is_bundle_intact(bundle):
                logger.info("Cache hit for %s (local)", product.display_name)
                return CacheDecision(
                    hit=True, source=CacheSource.LOCAL, reason="version record matches"
                )
            logger.info(
                "Version record for %s matches but bundle is missing or empty",
                product.display_name,
            )

        key = CacheStorageKey.for_product(product, fingerprint)
        for binding in self.storages:
            if not binding.is_consumer:
                continue
            if self._restore_from(binding, key, product, fingerprint, options):
                return CacheDecision(
                    hit=True,
                    source=CacheSource.REMOTE,
                    reason=f"restored from {binding.storage!r}",
                )

        if record is None:
            return CacheDecision.miss("no version record")
        if record.fingerprint != fingerprint:
            return CacheDecision.miss("fingerprint changed")
        return CacheDecision.miss("bundle missing")

    def _restore_from(
        self,
        binding: StorageBinding,
        key: CacheStorageKey,
        product: Product,
        fingerprint: str,
        options: BuildOptions,
    ) -> bool:
        storage = binding.storage
        staging: Path | None = None
        try:
            if not storage.exists(key):
                return False
            staging = self.new_staging_dir(product)
            fetched = storage.fetch(key, staging)
            if fetched is None or not is_bundle_intact(fetched):
                return False
            self.invalidate(product)
            publish_bundle(fetched, self.bundle_path(product))
        except (StorageError, OSError) as e:
            logger.warning(
                "Storage %r failed for %s, treating as miss: %s",
                storage,
                product.display_name,
                e,
            )
            return False
        finally:
            if staging is not None:
                shutil.rmtree(staging, ignore_errors=True)

        self.write_version_record(product, fingerprint, options)
        logger.info("Cache hit for %s (%r)", product.display_name, storage)
        return True

    def commit(
        self,
        product: Product,
        fingerprint: str,
        options: BuildOptions,
    ) -> None:
        """Record a freshly published bundle and push it to producers.

        Must be called only after the bundle was published. Storage
        failures are logged and never raised.
        """
        if not self.enabled:
            return
        self.write_version_record(product, fingerprint, options)

        key = CacheStorageKey.for_product(product, fingerprint)
        bundle = self.bundle_path(product)
        for binding in self.storages:
            if not binding.is_producer:
                continue
            try:
                binding.storage.store(key, bundle)
                logger.info(
                    "Stored %s in %r", product.display_name, binding.storage
                )
            except (StorageError, OSError) as e:
                logger.warning(
                    "Failed to store %s in %r: %s",
                    product.display_name,
                    binding.storage,
                    e,
                )


__all__ = [
    "CacheDecision",
    "CacheSystem",
    "VersionRecord",
    "build_lock",
    "is_bundle_intact",
    "publish_bundle",
]
