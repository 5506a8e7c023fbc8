"""Fingerprint computation for products.

This module handles:
- Content digests of source trees (relative paths + file contents)
- Digests of declared inputs (resources, module map and its headers)
- Canonical input snapshots from product identity, options and toolchain
- Deterministic hashing of the snapshot into a fingerprint

Fingerprints never include absolute paths or timestamps, so caches stay
valid when a checkout moves to another directory or machine.
"""

from __future__ import annotations

import hashlib
import json
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any

from bundlesmith.builds.modulemap import ModuleMapError, convert_module_map
from bundlesmith.builds.options import BuildOptions
from bundlesmith.graph.schema import Product
from bundlesmith.types import ProductKind

# Schema version for fingerprint format; bump when the format changes
FINGERPRINT_SCHEMA_VERSION = "2"

# Directories that never contribute to a source digest
IGNORED_DIRECTORIES = frozenset({".build", ".git", ".swiftpm", "__pycache__"})

HASH_CHUNK_SIZE = 64 * 1024  # 64KB


@dataclass
class FingerprintInputs:
    """Canonical representation of everything a bundle depends on.

    Attributes:
        schema_version: Version of the fingerprint schema.
        product: Product identity (package id, target, kind).
        revision: Pinned package revision, if any.
        source_digest: Content digest of the source tree.
        declared_inputs: Digests of declared resources, the custom module
            map and the headers it references, keyed by declared path.
        build_options: Resolved build options snapshot.
        toolchain_version: Active toolchain version string.
    """

    schema_version: str = FINGERPRINT_SCHEMA_VERSION
    product: dict[str, str] = field(default_factory=dict)
    revision: str | None = None
    source_digest: str = ""
    declared_inputs: dict[str, str] = field(default_factory=dict)
    build_options: dict[str, Any] = field(default_factory=dict)
    toolchain_version: str = ""

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return asdict(self)


def _file_digest(path: Path) -> str:
    sha256 = hashlib.sha256()
    with path.open("rb") as f:
        while chunk := f.read(HASH_CHUNK_SIZE):
            sha256.update(chunk)
    return sha256.hexdigest()


def iter_tree_files(root: Path) -> list[Path]:
    """List regular files under ``root`` sorted by relative POSIX path.

    Ignored directories are pruned at any depth.

    Args:
        root: Directory to walk.

    Returns:
        Sorted list of file paths.
    """
    files = [
        path
        for path in root.rglob("*")
        if path.is_file()
        and not any(
            part in IGNORED_DIRECTORIES for part in path.relative_to(root).parts[:-1]
        )
    ]
    return sorted(files, key=lambda p: p.relative_to(root).as_posix())


def compute_source_digest(root: Path) -> str:
    """Compute a content digest of a directory tree.

    The digest covers each file's relative POSIX path and content, visited
    in sorted order. A missing directory hashes like an empty one.

    Args:
        root: Directory to hash. A single file is hashed by name and content.

    Returns:
        SHA-256 hex digest.
    """
    sha256 = hashlib.sha256()
    if root.is_file():
        sha256.update(root.name.encode("utf-8"))
        sha256.update(b"\0")
        sha256.update(_file_digest(root).encode("ascii"))
        return sha256.hexdigest()
    if not root.is_dir():
        return sha256.hexdigest()

    for path in iter_tree_files(root):
        sha256.update(path.relative_to(root).as_posix().encode("utf-8"))
        sha256.update(b"\0")
        sha256.update(_file_digest(path).encode("ascii"))
        sha256.update(b"\n")
    return sha256.hexdigest()


def product_content_root(product: Product) -> Path:
    """Return the directory whose content defines the product."""
    if product.kind is ProductKind.BINARY and product.binary_path is not None:
        return product.binary_path
    return product.source_dir


def declared_input_digests(product: Product) -> dict[str, str]:
    """Digest every input a product declares by path.

    Declared paths may point outside the source directory, so they are
    hashed on their own. Keys are the declared relative paths.

    Args:
        product: Product whose declarations are hashed.

    Returns:
        Mapping of ``<kind>:<declared path>`` to content digest.
    """
    digests = {
        f"resource:{resource}": compute_source_digest(product.source_dir / resource)
        for resource in product.resources
    }
    if product.module_map is None:
        return digests

    module_map = product.source_dir / product.module_map
    digests[f"module_map:{product.module_map}"] = compute_source_digest(module_map)
    if module_map.is_file():
        try:
            conversion = convert_module_map(
                module_map.read_text(encoding="utf-8", errors="replace")
            )
        except ModuleMapError:
            # Reported by assembly; the map's own digest covers it here
            return digests
        for declared in [*conversion.headers, *conversion.umbrella_dirs]:
            digests[f"header:{declared}"] = compute_source_digest(
                module_map.parent / declared
            )
    return digests


def create_fingerprint_inputs(
    product: Product,
    options: BuildOptions,
    toolchain_version: str,
) -> FingerprintInputs:
    """Create canonical fingerprint inputs for a product.

    Args:
        product: Product to fingerprint.
        options: Fully resolved build options for the product.
        toolchain_version: Active toolchain version string.

    Returns:
        FingerprintInputs instance.
    """
    return FingerprintInputs(
        schema_version=FINGERPRINT_SCHEMA_VERSION,
        product=product.identity(),
        revision=product.revision,
        source_digest=compute_source_digest(product_content_root(product)),
        declared_inputs=declared_input_digests(product),
        build_options=options.summary(),
        toolchain_version=toolchain_version,
    )


def compute_fingerprint_from_inputs(inputs: FingerprintInputs) -> str:
    """Hash fingerprint inputs.

    Args:
        inputs: FingerprintInputs instance.

    Returns:
        Fingerprint as ``sha256:<hex>``.
    """
    canonical_json = json.dumps(
        inputs.to_dict(),
        sort_keys=True,
        separators=(",", ":"),
    )
    return "sha256:" + hashlib.sha256(canonical_json.encode("utf-8")).hexdigest()


def fingerprint(
    product: Product,
    options: BuildOptions,
    toolchain_version: str,
) -> str:
    """Compute the fingerprint of a product under a build configuration.

    Pure and deterministic: any change to source content, any build option
    or the toolchain version yields a different value.

    Args:
        product: Product to fingerprint.
        options: Fully resolved build options for the product.
        toolchain_version: Active toolchain version string.

    Returns:
        Fingerprint as ``sha256:<hex>``.
    """
    return compute_fingerprint_from_inputs(
        create_fingerprint_inputs(product, options, toolchain_version)
    )


def fingerprint_hex(value: str) -> str:
    """Strip the algorithm prefix from a fingerprint."""
    return value.split(":", 1)[-1]


__all__ = [
    "FINGERPRINT_SCHEMA_VERSION",
    "IGNORED_DIRECTORIES",
    "FingerprintInputs",
    "compute_fingerprint_from_inputs",
    "compute_source_digest",
    "create_fingerprint_inputs",
    "declared_input_digests",
    "fingerprint",
    "fingerprint_hex",
    "iter_tree_files",
    "product_content_root",
]
