"""Shared type definitions for bundlesmith.

This module contains the closed enumerations shared across subpackages to
avoid circular imports.
"""

from enum import Enum


class ProductKind(str, Enum):
    """Kind of compilation unit described by the resolved graph."""

    LIBRARY = "library"
    FOREIGN_MODULE = "foreign-module"
    BINARY = "binary"
    RESOURCES = "resources"


class Platform(str, Enum):
    """Target platform family."""

    IOS = "ios"
    MACOS = "macos"
    TVOS = "tvos"
    WATCHOS = "watchos"
    VISIONOS = "visionos"


class BuildConfiguration(str, Enum):
    """Compiler build configuration."""

    DEBUG = "debug"
    RELEASE = "release"


class FrameworkType(str, Enum):
    """Linkage of the produced frameworks."""

    DYNAMIC = "dynamic"
    STATIC = "static"


class CacheMode(str, Enum):
    """How the cache participates in a run."""

    DISABLED = "disabled"
    PROJECT = "project"
    STORAGE = "storage"


class CacheRole(str, Enum):
    """Role a storage backend plays in a run."""

    PRODUCER = "producer"
    CONSUMER = "consumer"


class CacheSource(str, Enum):
    """Where a reused bundle came from."""

    LOCAL = "local"
    REMOTE = "remote"


class ProductOutcome(str, Enum):
    """User-visible result for one product."""

    REUSED = "reused"
    REBUILT = "rebuilt"
    FAILED = "failed"


class RunMode(str, Enum):
    """Which products of the graph are in scope."""

    PREPARE_DEPENDENCIES = "prepare"
    CREATE_PACKAGE = "create"


__all__ = [
    "BuildConfiguration",
    "CacheMode",
    "CacheRole",
    "CacheSource",
    "FrameworkType",
    "Platform",
    "ProductKind",
    "ProductOutcome",
    "RunMode",
]
